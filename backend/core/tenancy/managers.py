from django.db import models

from tenancy.context import get_current_company


class TenantQuerySet(models.QuerySet):
    def for_company(self, company):
        return self.filter(company=company)

    def for_current_company(self):
        company = get_current_company()
        if company is None:
            return self.none()
        return self.for_company(company)


class TenantManager(models.Manager.from_queryset(TenantQuerySet)):
    """Sees only the rows of the tenant bound by `tenancy.context.tenant_context`.

    Without a bound tenant it returns nothing. The worker and operator
    services are cross-tenant and go through `all_objects`.
    """

    def get_queryset(self):
        return super().get_queryset().for_current_company()
