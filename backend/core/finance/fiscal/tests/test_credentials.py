from django.test import TestCase, override_settings

from finance.fiscal.credentials import (
    SOURCE_DB,
    SOURCE_ENV,
    CredentialsNotConfigured,
    CredentialsProvider,
    build_sol_user,
    mask_username,
)
from finance.fiscal.crypto import TokenCipher
from finance.fiscal.models import TenantFiscalConfig
from finance.fiscal.tests.factories import create_company, create_fiscal_config


class _MonotonicClock:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


@override_settings(FISCAL_SOL_USER="", FISCAL_SOL_PASSWORD="")
class CredentialsProviderTests(TestCase):
    def setUp(self):
        self.company = create_company()
        self.config = create_fiscal_config(self.company, sol_user="MODDATOS", sol_password="secreto")
        self.clock = _MonotonicClock()
        self.provider = CredentialsProvider(ttl_seconds=300, clock=self.clock)

    def test_reads_tenant_config_and_decrypts_password(self):
        credentials = self.provider.resolve_sync(self.company.id)
        self.assertEqual(credentials.username, "20123456789MODDATOS")
        self.assertEqual(credentials.password, "secreto")
        self.assertEqual(credentials.source, SOURCE_DB)

    def test_password_is_stored_encrypted(self):
        stored = TenantFiscalConfig.all_objects.get(pk=self.config.pk).sol_password
        self.assertNotEqual(stored, "secreto")
        self.assertEqual(TokenCipher.from_settings().decrypt(stored), "secreto")

    def test_environment_pair_takes_precedence(self):
        with self.settings(FISCAL_SOL_USER="20999999999ENVUSER", FISCAL_SOL_PASSWORD="envpass"):
            credentials = CredentialsProvider().resolve_sync(self.company.id)
        self.assertEqual(credentials.username, "20999999999ENVUSER")
        self.assertEqual(credentials.source, SOURCE_ENV)

    def test_incomplete_configuration_raises(self):
        TenantFiscalConfig.all_objects.filter(pk=self.config.pk).update(sol_password="")
        with self.assertRaises(CredentialsNotConfigured):
            self.provider.resolve_sync(self.company.id)

        other = create_company(tenant_code="other", name="Otra SAC")
        with self.assertRaises(CredentialsNotConfigured):
            self.provider.resolve_sync(other.id)
        self.assertFalse(self.provider.has_credentials(other.id))

    def test_cache_honours_ttl_and_invalidation(self):
        first = self.provider.resolve_sync(self.company.id)

        self.config.set_sol_password("nuevo")
        self.config.save()
        self.assertEqual(self.provider.resolve_sync(self.company.id), first)

        self.provider.invalidate(self.company.id)
        self.assertEqual(self.provider.resolve_sync(self.company.id).password, "nuevo")

        self.config.set_sol_password("otro")
        self.config.save()
        self.clock.value += 301
        self.assertEqual(self.provider.resolve_sync(self.company.id).password, "otro")

    def test_repr_and_log_fields_hide_password(self):
        credentials = self.provider.resolve_sync(self.company.id)
        self.assertNotIn("secreto", repr(credentials))
        self.assertEqual(credentials.for_log(), {"username": "2012***", "source": SOURCE_DB})


class CredentialHelpersTests(TestCase):
    def test_mask_username(self):
        self.assertEqual(mask_username("20123456789MODDATOS"), "2012***")
        self.assertEqual(mask_username("abcd"), "***")
        self.assertEqual(mask_username(""), "***")

    def test_build_sol_user(self):
        self.assertEqual(build_sol_user("20123456789", "MODDATOS"), "20123456789MODDATOS")
        self.assertEqual(build_sol_user("20123456789", "20123456789MODDATOS"), "20123456789MODDATOS")
