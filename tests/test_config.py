"""
Tests for settings, honoring routes and the adapter registry.
"""

import pytest

from clearing.config import ProviderSettings, Settings, parse_routes
from clearing.db import DatabaseConfig, InMemoryClaimStore, InMemoryNarrativeStore, MirrorDriver, get_mirror_driver
from clearing.honoring.adapters import MoovCashOutAdapter, TangoGiftCardAdapter
from clearing.honoring.registry import build_adapter, build_dispatcher, resolve_routes
from clearing.ledger import InMemoryLedgerGateway
from clearing.schemas import AnchorType
from clearing.wiring import build_pipeline, create_ledger


MOOV_ENV = {
    "CLEARING_MOOV_API_KEY": "moov-key",
    "CLEARING_MOOV_PARTNER_ID": "partner-1",
}

TANGO_ENV = {
    "CLEARING_TANGO_PLATFORM_NAME": "platform",
    "CLEARING_TANGO_PLATFORM_KEY": "secret",
    "CLEARING_TANGO_ACCOUNT_ID": "acct-1",
    "CLEARING_TANGO_CUSTOMER_ID": "cust-1",
    "CLEARING_TANGO_UTID": "U123456",
}


class TestSettings:

    def test_defaults(self):
        settings = Settings.from_env({})

        assert not settings.production
        assert settings.ledger_driver == "memory"
        assert settings.debit_account_id == 1010
        assert settings.credit_account_id == 1000
        assert settings.ledger_exists_codes == ("exists",)
        assert settings.honoring_routes == {}
        assert settings.honoring_max_attempts == 3
        assert settings.sandbox
        assert not settings.verify_webhook_signatures
        assert set(settings.providers) == {"moov", "tango", "arcus"}

    def test_values_from_env(self):
        settings = Settings.from_env({
            "CLEARING_LEDGER_DRIVER": "TigerBeetle",
            "CLEARING_LEDGER_ADDRESSES": "3000, 3001",
            "CLEARING_LEDGER_TIMEOUT_SECONDS": "2.5",
            "CLEARING_LEDGER_EXISTS_CODES": "exists,already_posted",
            "CLEARING_TRUSTED_PUBLIC_KEYS": "a,b",
            "CLEARING_ATTESTATION_MAX_AGE_SECONDS": "300",
            "CLEARING_HONORING_ROUTES": "cash_out=Moov",
            "CLEARING_MOOV_MAX_CONCURRENCY": "2",
            "CLEARING_MOOV_WEBHOOK_SECRET": "whsec",
            **MOOV_ENV,
        })

        assert settings.ledger_driver == "tigerbeetle"
        assert settings.ledger_addresses == ("3000", "3001")
        assert settings.ledger_timeout_seconds == 2.5
        assert settings.ledger_exists_codes == ("exists", "already_posted")
        assert settings.trusted_public_keys == ("a", "b")
        assert settings.attestation_max_age_seconds == 300.0
        assert settings.honoring_routes == {AnchorType.CASH_OUT: "moov"}
        assert settings.provider("moov").api_key == "moov-key"
        assert settings.provider("moov").max_concurrency == 2
        assert settings.webhook_secret("moov") == "whsec"

    def test_production_verifies_webhooks(self):
        assert Settings.from_env({"CLEARING_PRODUCTION": "true"}).verify_webhook_signatures
        assert not Settings.from_env({
            "CLEARING_PRODUCTION": "true",
            "CLEARING_VERIFY_WEBHOOK_SIGNATURES": "false",
        }).verify_webhook_signatures

    def test_compliance_limits(self):
        defaults = Settings.from_env({})
        assert defaults.compliance_enabled
        assert defaults.compliance_max_hourly_claims == 20
        assert defaults.compliance_max_daily_claims == 100
        assert defaults.compliance_max_daily_amount == 50_000_000_000
        assert defaults.compliance_max_claim_amount is None

        settings = Settings.from_env({
            "CLEARING_COMPLIANCE_ENABLED": "false",
            "CLEARING_COMPLIANCE_MAX_HOURLY_CLAIMS": "0",
            "CLEARING_COMPLIANCE_MAX_DAILY_CLAIMS": "none",
            "CLEARING_COMPLIANCE_MAX_CLAIM_AMOUNT": "1000000",
        })
        assert not settings.compliance_enabled
        assert settings.compliance_max_hourly_claims is None
        assert settings.compliance_max_daily_claims is None
        assert settings.compliance_max_claim_amount == 1_000_000

    def test_malformed_number(self):
        with pytest.raises(ValueError):
            Settings.from_env({"CLEARING_LEDGER_ID": "one"})

    def test_unknown_provider_has_empty_settings(self):
        assert Settings().provider("nope") == ProviderSettings(name="nope")


class TestParseRoutes:

    def test_valid(self):
        assert parse_routes(" CASH_OUT=moov , utility=ARCUS ") == {
            AnchorType.CASH_OUT: "moov",
            AnchorType.UTILITY: "arcus",
        }

    def test_empty(self):
        assert parse_routes(None) == {}
        assert parse_routes("") == {}

    @pytest.mark.parametrize("value", ["CASH_OUT", "CASH_OUT=", "LOTTERY=moov"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_routes(value)


class TestRegistry:

    def test_unconfigured_providers_skipped(self):
        assert resolve_routes(Settings.from_env({})) == {}

    def test_default_routes_for_configured_providers(self):
        routes = resolve_routes(Settings.from_env({**MOOV_ENV, **TANGO_ENV}))

        assert isinstance(routes[AnchorType.CASH_OUT], MoovCashOutAdapter)
        assert isinstance(routes[AnchorType.GROCERY], TangoGiftCardAdapter)
        assert routes[AnchorType.GROCERY] is routes[AnchorType.FUEL]
        assert AnchorType.UTILITY not in routes

    def test_explicit_routes_keep_unconfigured_providers(self):
        routes = resolve_routes(Settings.from_env({"CLEARING_HONORING_ROUTES": "UTILITY=arcus"}))
        assert list(routes) == [AnchorType.UTILITY]
        assert routes[AnchorType.UTILITY].validate_config()

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_adapter("paypal", Settings())

    def test_provider_api_url_override(self):
        settings = Settings.from_env({**MOOV_ENV, "CLEARING_MOOV_API_URL": "https://sandbox.moov.test"})
        assert build_adapter("moov", settings).api_url == "https://sandbox.moov.test"

    def test_build_dispatcher_routes(self):
        dispatcher = build_dispatcher(Settings.from_env({**MOOV_ENV, **TANGO_ENV}))

        assert sorted(dispatcher.adapters) == ["moov", "tango"]
        assert dispatcher.adapter_for(AnchorType.CASH_OUT).name == "moov"
        assert dispatcher.adapter_for(AnchorType.MOBILE).name == "tango"
        assert dispatcher.adapter_for(AnchorType.HOUSING) is None
        assert dispatcher.adapter_for(None) is None


class TestWiring:

    def test_memory_ledger_seeds_accounts(self):
        ledger = create_ledger(Settings())
        assert isinstance(ledger, InMemoryLedgerGateway)
        assert ledger.lookup_balance(1010) == 0
        assert ledger.lookup_balance(1000) == 0

    def test_unknown_ledger_driver(self):
        with pytest.raises(ValueError):
            create_ledger(Settings(ledger_driver="sqlite"))

    def test_pipeline_uses_configured_accounts(self):
        settings = Settings(debit_account_id=2010, credit_account_id=2000)
        pipeline = build_pipeline(settings, narrative_store=InMemoryNarrativeStore(), claim_store=InMemoryClaimStore())

        assert pipeline.orchestrator.config.debit_account_id == 2010
        assert pipeline.ledger.lookup_balance(2000) == 0
        assert pipeline.mirror.store is pipeline.narrative_store

    def test_pipeline_wires_compliance_and_event_log(self):
        settings = Settings(compliance_max_daily_claims=5)
        pipeline = build_pipeline(
            settings,
            narrative_store=InMemoryNarrativeStore(),
            claim_store=InMemoryClaimStore(),
        )

        assert pipeline.orchestrator.compliance is pipeline.compliance
        assert pipeline.compliance.config.max_daily_claims == 5
        assert pipeline.orchestrator.events is pipeline.claim_store


class TestDatabaseConfig:

    def test_driver_defaults_to_memory(self, monkeypatch):
        for name in ("MIRROR_DRIVER", "DATABASE_URL", "DATABASE_HOST"):
            monkeypatch.delenv(name, raising=False)
        assert get_mirror_driver() == MirrorDriver.MEMORY

    def test_database_url_selects_postgres(self, monkeypatch):
        monkeypatch.delenv("MIRROR_DRIVER", raising=False)
        monkeypatch.setenv("DATABASE_URL", "postgresql://clearing:pw@db:5432/mirror")
        assert get_mirror_driver() == MirrorDriver.PSYCOPG2

    def test_from_url(self):
        config = DatabaseConfig.from_url("postgresql://clearing:pw@db:5433/mirror")

        assert config.host == "db"
        assert config.port == 5433
        assert config.database == "mirror"
        assert "pw" not in config.to_url(include_password=False)
