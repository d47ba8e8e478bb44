from django.core.exceptions import ValidationError
from django.db import models

from tenancy.context import get_current_company
from tenancy.managers import TenantManager


class TenantScopeError(ValidationError):
    """A write targets a company other than the tenant bound to the context."""


class BaseTenantModel(models.Model):
    """Row owned by one `customers.Company`.

    Writes inside `tenant_context(company)` default to that company and are
    refused for any other one. Writes outside a tenant context (worker,
    operator commands) must set `company` explicitly.
    """

    company = models.ForeignKey(
        "customers.Company",
        on_delete=models.PROTECT,
        related_name="%(app_label)s_%(class)s_set",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = TenantManager()
    all_objects = models.Manager()

    class Meta:
        abstract = True

    def check_company_scope(self) -> None:
        active = get_current_company()
        if self.company_id is None:
            if active is None:
                raise ValidationError({"company": "company is required outside a tenant context."})
            self.company = active
            return

        if active is not None and self.company_id != active.id:
            raise TenantScopeError(
                f"Cross-tenant write blocked: row belongs to company {self.company_id}, "
                f"active tenant is {active.id}."
            )

    def save(self, *args, **kwargs):
        self.check_company_scope()
        return super().save(*args, **kwargs)
