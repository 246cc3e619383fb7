"""
Pipeline Configuration

Every tunable of the clearing pipeline, read from the environment once
at startup and passed down explicitly. Nothing reads os.environ after
Settings.from_env() returns (the mirror database settings are resolved
by clearing.db.config).

Environment Variables:
    CLEARING_PRODUCTION                 Production mode (no ephemeral keys, JSON logs)

    CLEARING_LEDGER_DRIVER              memory | tigerbeetle (default memory)
    CLEARING_LEDGER_CLUSTER_ID          TigerBeetle cluster id (default 0)
    CLEARING_LEDGER_ADDRESSES           TigerBeetle replica addresses (default 3000)
    CLEARING_LEDGER_ID                  Ledger partition for transfers (default 1)
    CLEARING_LEDGER_CODE                Transfer code (default 1)
    CLEARING_DEBIT_ACCOUNT_ID           Account debited on clearing (default 1010)
    CLEARING_CREDIT_ACCOUNT_ID          Account credited on clearing (default 1000)
    CLEARING_LEDGER_TIMEOUT_SECONDS     Per-call ledger timeout (default 10)
    CLEARING_LEDGER_RESUBMIT_ATTEMPTS   Resubmissions after a timeout (default 1)
    CLEARING_LEDGER_EXISTS_CODES        Result names treated as idempotent success (default exists)

    CLEARING_SIGNING_PRIVATE_KEY        Base64 Ed25519 private key
    CLEARING_SIGNING_PUBLIC_KEY         Base64 Ed25519 public key
    CLEARING_SIGNER_ID                  Signer name recorded in attestations (default clearing-system)
    CLEARING_TRUSTED_PUBLIC_KEYS        Extra trusted public keys, comma separated
    CLEARING_ATTESTATION_MAX_AGE_SECONDS  Reject attestations older than this

    CLEARING_SANDBOX                    Provider sandbox mode (default true)
    CLEARING_HONORING_ROUTES            e.g. CASH_OUT=moov,GROCERY=tango,UTILITY=arcus
    CLEARING_HONORING_MAX_ATTEMPTS      (default 3)
    CLEARING_HONORING_BASE_DELAY_SECONDS (default 1.0)
    CLEARING_HONORING_MAX_DELAY_SECONDS (default 10.0)
    CLEARING_HONORING_TIMEOUT_SECONDS   Per-attempt timeout (default 30.0)
    CLEARING_<PROVIDER>_MAX_CONCURRENCY, CLEARING_<PROVIDER>_MIN_INTERVAL_SECONDS
    CLEARING_<PROVIDER>_API_URL, provider credentials (see ProviderSettings)

    CLEARING_COMPLIANCE_ENABLED         Compliance gate ahead of the ledger (default true)
    CLEARING_COMPLIANCE_MAX_HOURLY_CLAIMS  Per subject (default 20, 0 disables)
    CLEARING_COMPLIANCE_MAX_DAILY_CLAIMS   Per subject, UTC day (default 100, 0 disables)
    CLEARING_COMPLIANCE_MAX_DAILY_AMOUNT   Micro-units per subject, UTC day (default 50000000000, 0 disables)
    CLEARING_COMPLIANCE_MAX_CLAIM_AMOUNT   Micro-units per claim (default unset)

    CLEARING_VERIFY_WEBHOOK_SIGNATURES  Require x-webhook-signature (default true in production)
    CLEARING_<PROVIDER>_WEBHOOK_SECRET  HMAC secret per provider

    CLEARING_COMPLIANCE_ENABLED         Compliance gate ahead of the ledger (default true)
    CLEARING_COMPLIANCE_MAX_HOURLY_CLAIMS  Per subject (default 20, 0 disables)
    CLEARING_COMPLIANCE_MAX_DAILY_CLAIMS   Per subject per UTC day (default 100, 0 disables)
    CLEARING_COMPLIANCE_MAX_DAILY_AMOUNT   Micro-units per subject per UTC day (default 50000000000, 0 disables)
    CLEARING_COMPLIANCE_MAX_CLAIM_AMOUNT   Micro-units per claim (default unset)
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .schemas import AnchorType, LedgerAccountId


PROVIDERS = ("moov", "tango", "arcus")

DEFAULT_ROUTES = {
    AnchorType.CASH_OUT: "moov",
    AnchorType.GROCERY: "tango",
    AnchorType.FUEL: "tango",
    AnchorType.MOBILE: "tango",
    AnchorType.UTILITY: "arcus",
    AnchorType.HOUSING: "arcus",
}


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes")


def _csv(value: Optional[str]) -> tuple[str, ...]:
    return tuple(part.strip() for part in (value or "").split(",") if part.strip())


def _limit(value: Optional[str], default: Optional[int]) -> Optional[int]:
    """A positive cap, or None when set to 0 or "none"."""
    if value is None or value.strip() == "":
        return default
    if value.strip().lower() == "none":
        return None
    limit = int(value)
    return limit if limit > 0 else None


def parse_routes(value: Optional[str]) -> dict[AnchorType, str]:
    """
    Parse "CASH_OUT=moov,GROCERY=tango" into an anchor-type routing table.

    Raises:
        ValueError: Unknown anchor type or malformed pair
    """
    routes: dict[AnchorType, str] = {}
    for pair in _csv(value):
        anchor, sep, provider = pair.partition("=")
        if not sep or not provider.strip():
            raise ValueError(f"Malformed honoring route: {pair!r} (expected ANCHOR=provider)")
        try:
            routes[AnchorType(anchor.strip().upper())] = provider.strip().lower()
        except ValueError:
            raise ValueError(f"Unknown anchor type in honoring route: {anchor!r}") from None
    return routes


@dataclass
class ProviderSettings:
    """Credentials and limits for one honoring provider."""
    name: str
    api_url: str = ""
    api_key: str = ""
    partner_id: str = ""
    platform_name: str = ""
    platform_key: str = ""
    account_id: str = ""
    customer_id: str = ""
    utid: str = ""
    webhook_secret: str = ""
    max_concurrency: int = 4
    min_interval_seconds: float = 0.0

    @classmethod
    def from_env(cls, name: str, env: Mapping[str, str]) -> "ProviderSettings":
        prefix = f"CLEARING_{name.upper()}_"

        def get(key: str, default: str = "") -> str:
            return env.get(prefix + key, default)

        return cls(
            name=name,
            api_url=get("API_URL"),
            api_key=get("API_KEY"),
            partner_id=get("PARTNER_ID"),
            platform_name=get("PLATFORM_NAME"),
            platform_key=get("PLATFORM_KEY"),
            account_id=get("ACCOUNT_ID"),
            customer_id=get("CUSTOMER_ID"),
            utid=get("UTID"),
            webhook_secret=get("WEBHOOK_SECRET"),
            max_concurrency=int(get("MAX_CONCURRENCY", "4")),
            min_interval_seconds=float(get("MIN_INTERVAL_SECONDS", "0")),
        )


@dataclass
class Settings:
    """Resolved pipeline configuration."""
    production: bool = False

    # Ledger
    ledger_driver: str = "memory"
    ledger_cluster_id: int = 0
    ledger_addresses: tuple[str, ...] = ("3000",)
    ledger_id: int = 1
    ledger_code: int = 1
    debit_account_id: int = int(LedgerAccountId.STABLECOIN)
    credit_account_id: int = int(LedgerAccountId.ODFI)
    ledger_timeout_seconds: float = 10.0
    ledger_resubmit_attempts: int = 1
    ledger_exists_codes: tuple[str, ...] = ("exists",)

    # Signing
    signing_private_key: str = ""
    signing_public_key: str = ""
    signer_id: str = "clearing-system"
    trusted_public_keys: tuple[str, ...] = ()
    attestation_max_age_seconds: Optional[float] = None

    # Honoring
    sandbox: bool = True
    honoring_routes: dict[AnchorType, str] = field(default_factory=dict)
    honoring_max_attempts: int = 3
    honoring_base_delay_seconds: float = 1.0
    honoring_max_delay_seconds: float = 10.0
    honoring_timeout_seconds: float = 30.0
    providers: dict[str, ProviderSettings] = field(default_factory=dict)

    # Webhooks
    verify_webhook_signatures: bool = False

    # Compliance
    compliance_enabled: bool = True
    compliance_max_hourly_claims: Optional[int] = 20
    compliance_max_daily_claims: Optional[int] = 100
    compliance_max_daily_amount: Optional[int] = 50_000_000_000
    compliance_max_claim_amount: Optional[int] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Read settings from the environment (or a given mapping).

        Raises:
            ValueError: Malformed numeric value or honoring route
        """
        env = os.environ if env is None else env
        production = _flag(env.get("CLEARING_PRODUCTION"))
        max_age = env.get("CLEARING_ATTESTATION_MAX_AGE_SECONDS")

        return cls(
            production=production,
            ledger_driver=env.get("CLEARING_LEDGER_DRIVER", "memory").lower(),
            ledger_cluster_id=int(env.get("CLEARING_LEDGER_CLUSTER_ID", "0")),
            ledger_addresses=_csv(env.get("CLEARING_LEDGER_ADDRESSES", "3000")),
            ledger_id=int(env.get("CLEARING_LEDGER_ID", "1")),
            ledger_code=int(env.get("CLEARING_LEDGER_CODE", "1")),
            debit_account_id=int(env.get("CLEARING_DEBIT_ACCOUNT_ID", str(int(LedgerAccountId.STABLECOIN)))),
            credit_account_id=int(env.get("CLEARING_CREDIT_ACCOUNT_ID", str(int(LedgerAccountId.ODFI)))),
            ledger_timeout_seconds=float(env.get("CLEARING_LEDGER_TIMEOUT_SECONDS", "10")),
            ledger_resubmit_attempts=int(env.get("CLEARING_LEDGER_RESUBMIT_ATTEMPTS", "1")),
            ledger_exists_codes=_csv(env.get("CLEARING_LEDGER_EXISTS_CODES", "exists")),
            signing_private_key=env.get("CLEARING_SIGNING_PRIVATE_KEY", ""),
            signing_public_key=env.get("CLEARING_SIGNING_PUBLIC_KEY", ""),
            signer_id=env.get("CLEARING_SIGNER_ID", "clearing-system"),
            trusted_public_keys=_csv(env.get("CLEARING_TRUSTED_PUBLIC_KEYS")),
            attestation_max_age_seconds=float(max_age) if max_age else None,
            sandbox=_flag(env.get("CLEARING_SANDBOX"), default=True),
            honoring_routes=parse_routes(env.get("CLEARING_HONORING_ROUTES")),
            honoring_max_attempts=int(env.get("CLEARING_HONORING_MAX_ATTEMPTS", "3")),
            honoring_base_delay_seconds=float(env.get("CLEARING_HONORING_BASE_DELAY_SECONDS", "1.0")),
            honoring_max_delay_seconds=float(env.get("CLEARING_HONORING_MAX_DELAY_SECONDS", "10.0")),
            honoring_timeout_seconds=float(env.get("CLEARING_HONORING_TIMEOUT_SECONDS", "30.0")),
            providers={name: ProviderSettings.from_env(name, env) for name in PROVIDERS},
            verify_webhook_signatures=_flag(
                env.get("CLEARING_VERIFY_WEBHOOK_SIGNATURES"),
                default=production,
            ),
            compliance_enabled=_flag(env.get("CLEARING_COMPLIANCE_ENABLED"), default=True),
            compliance_max_hourly_claims=_limit(env.get("CLEARING_COMPLIANCE_MAX_HOURLY_CLAIMS"), 20),
            compliance_max_daily_claims=_limit(env.get("CLEARING_COMPLIANCE_MAX_DAILY_CLAIMS"), 100),
            compliance_max_daily_amount=_limit(env.get("CLEARING_COMPLIANCE_MAX_DAILY_AMOUNT"), 50_000_000_000),
            compliance_max_claim_amount=_limit(env.get("CLEARING_COMPLIANCE_MAX_CLAIM_AMOUNT"), None),
        )

    def provider(self, name: str) -> ProviderSettings:
        return self.providers.get(name) or ProviderSettings(name=name)

    def webhook_secret(self, adapter_name: str) -> str:
        return self.provider(adapter_name).webhook_secret
