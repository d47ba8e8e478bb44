import re

from django.core.exceptions import ValidationError
from django.db import models


def _normalize_tenant_code(value: str) -> str:
    """Normalize a tenant code into a lowercase slug."""

    normalized = (value or "").strip().lower()
    normalized = re.sub(r"[^a-z0-9_-]+", "-", normalized).strip("-")
    return normalized[:63]


class Company(models.Model):
    """Tenant (store/company) that owns fiscal documents and their jobs."""

    name = models.CharField(max_length=150)
    tenant_code = models.SlugField(
        max_length=63,
        unique=True,
        help_text="Stable tenant identifier used in logs and audit chains.",
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("name",)
        verbose_name = "Company"
        verbose_name_plural = "Companies"

    def __str__(self):
        return f"{self.name} ({self.tenant_code})"

    def clean(self):
        super().clean()
        self.tenant_code = _normalize_tenant_code(self.tenant_code)
        if not self.tenant_code:
            raise ValidationError({"tenant_code": "tenant_code is required."})

    def save(self, *args, **kwargs):
        self.tenant_code = _normalize_tenant_code(self.tenant_code)
        return super().save(*args, **kwargs)
