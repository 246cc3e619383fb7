"""
Pipeline Wiring

Builds every component of the clearing pipeline from Settings and hands
them over explicitly. There are no module-level instances: the HTTP app
keeps the Pipeline on app.state, the CLI and tests build their own.

Mirror storage is chosen by clearing.db.config:
- MIRROR_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: In-memory mirror (default for development)

The claim event log uses the same driver and database as the mirror.

The mirror and the claim event log are advisory. Outside production an
unreachable database falls back to the in-memory store; the ledger never
falls back.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from .config import Settings
from .core import (
    AttestationEngine,
    ClearingConfig,
    ClearingOrchestrator,
    ComplianceConfig,
    ComplianceGate,
    NarrativeMirror,
    load_signing_identity,
)
from .db import (
    ClaimStore,
    DatabaseConfig,
    InMemoryClaimStore,
    InMemoryNarrativeStore,
    MirrorDriver,
    NarrativeStore,
    get_database_url,
    get_mirror_driver,
)
from .honoring.dispatcher import HonoringDispatcher
from .honoring.registry import build_dispatcher
from .honoring.retry import Sleep
from .ledger import InMemoryLedgerGateway, LedgerGateway, LedgerResultMap
from .observability import MetricsCollector, get_logger
from .schemas import AccountResult, LedgerAccount


logger = get_logger(__name__)


@dataclass
class Pipeline:
    """Everything a running clearing service needs, wired together."""
    settings: Settings
    engine: AttestationEngine
    ledger: LedgerGateway
    narrative_store: NarrativeStore
    mirror: NarrativeMirror
    dispatcher: HonoringDispatcher
    orchestrator: ClearingOrchestrator
    metrics: MetricsCollector = field(default_factory=MetricsCollector)
    claim_store: ClaimStore = field(default_factory=InMemoryClaimStore)
    compliance: Optional[ComplianceGate] = None

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
        self.ledger.close()
        self.narrative_store.close()
        self.claim_store.close()


def create_engine(settings: Settings) -> AttestationEngine:
    identity = load_signing_identity(
        private_key=settings.signing_private_key,
        public_key=settings.signing_public_key,
        signer_id=settings.signer_id,
        production=settings.production,
    )
    if identity.is_ephemeral:
        logger.warning("Using an ephemeral signing key", signer_id=identity.signer_id)
    max_age = settings.attestation_max_age_seconds
    return AttestationEngine(
        identity,
        trusted_public_keys=settings.trusted_public_keys,
        max_age=timedelta(seconds=max_age) if max_age else None,
    )


def clearing_accounts(settings: Settings) -> list[LedgerAccount]:
    """The debit and credit accounts every cleared transfer moves between."""
    return [
        LedgerAccount(id=settings.debit_account_id, ledger=settings.ledger_id, code=settings.ledger_code),
        LedgerAccount(id=settings.credit_account_id, ledger=settings.ledger_id, code=settings.ledger_code),
    ]


def create_ledger(settings: Settings) -> LedgerGateway:
    """
    Raises:
        ValueError: Unknown CLEARING_LEDGER_DRIVER
    """
    result_map = LedgerResultMap.from_names(settings.ledger_exists_codes)

    if settings.ledger_driver == "memory":
        if settings.production:
            logger.warning("In-memory ledger in production mode: nothing is durable")
        ledger = InMemoryLedgerGateway(result_map)
        ensure_accounts(ledger, settings)
        logger.info("Using in-memory ledger")
        return ledger

    if settings.ledger_driver == "tigerbeetle":
        from .ledger.tigerbeetle import TigerBeetleLedgerGateway

        ledger = TigerBeetleLedgerGateway(
            cluster_id=settings.ledger_cluster_id,
            addresses=",".join(settings.ledger_addresses),
            result_map=result_map,
        )
        logger.info(
            "Using TigerBeetle ledger",
            cluster_id=settings.ledger_cluster_id,
            addresses=list(settings.ledger_addresses),
        )
        return ledger

    raise ValueError(
        f"Unknown CLEARING_LEDGER_DRIVER: {settings.ledger_driver}. Valid values: memory, tigerbeetle"
    )


def ensure_accounts(ledger: LedgerGateway, settings: Settings) -> list[AccountResult]:
    """Create the clearing accounts; already-existing identical accounts are fine."""
    results = ledger.create_accounts(clearing_accounts(settings))
    for result in results:
        if not result.created and not result.exists:
            logger.error("Ledger account creation failed", account_id=result.account_id, reason=result.reason)
    return results


def create_narrative_store(settings: Settings) -> NarrativeStore:
    driver = get_mirror_driver()

    if driver == MirrorDriver.MEMORY:
        logger.info("Using in-memory narrative mirror (no persistence)")
        return InMemoryNarrativeStore()

    db_url = get_database_url()
    if db_url is None:
        logger.warning("MIRROR_DRIVER is psycopg2 but no database is configured; using in-memory mirror")
        return InMemoryNarrativeStore()

    config = DatabaseConfig.from_url(db_url) if "://" in db_url else DatabaseConfig.from_env()
    return _create_psycopg2_store(config, settings)


def _create_psycopg2_store(config: DatabaseConfig, settings: Settings) -> NarrativeStore:
    import psycopg2

    from .db.store import MirrorWriteError, PostgresNarrativeStore

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    try:
        store = PostgresNarrativeStore(connection_factory)
        store.ensure_schema()
    except (MirrorWriteError, psycopg2.Error) as e:
        if settings.production:
            raise
        logger.warning("Could not reach mirror database; using in-memory mirror", error=str(e))
        return InMemoryNarrativeStore()

    logger.info(
        "PostgreSQL narrative mirror connected",
        database=config.to_url(include_password=False),
    )
    return store


def create_claim_store(settings: Settings) -> ClaimStore:
    if get_mirror_driver() == MirrorDriver.MEMORY:
        logger.info("Using in-memory claim event log (no persistence)")
        return InMemoryClaimStore()

    db_url = get_database_url()
    if db_url is None:
        logger.warning("MIRROR_DRIVER is psycopg2 but no database is configured; using in-memory claim event log")
        return InMemoryClaimStore()

    import psycopg2

    from .db.claims import ClaimStoreError, PostgresClaimStore

    config = DatabaseConfig.from_url(db_url) if "://" in db_url else DatabaseConfig.from_env()

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    try:
        store = PostgresClaimStore(connection_factory)
        store.ensure_schema()
    except (ClaimStoreError, psycopg2.Error) as e:
        if settings.production:
            raise
        logger.warning("Could not reach claim event database; using in-memory claim event log", error=str(e))
        return InMemoryClaimStore()

    logger.info("PostgreSQL claim event log connected", database=config.to_url(include_password=False))
    return store


def create_compliance_gate(settings: Settings) -> Optional[ComplianceGate]:
    if not settings.compliance_enabled:
        logger.warning("Compliance gate disabled")
        return None
    return ComplianceGate(
        ComplianceConfig(
            max_hourly_claims=settings.compliance_max_hourly_claims,
            max_daily_claims=settings.compliance_max_daily_claims,
            max_daily_amount=settings.compliance_max_daily_amount,
            max_claim_amount=settings.compliance_max_claim_amount,
        )
    )


def build_pipeline(
    settings: Optional[Settings] = None,
    ledger: Optional[LedgerGateway] = None,
    narrative_store: Optional[NarrativeStore] = None,
    metrics: Optional[MetricsCollector] = None,
    sleep: Sleep = asyncio.sleep,
    claim_store: Optional[ClaimStore] = None,
) -> Pipeline:
    """
    Build the full pipeline.

    Args:
        settings: Defaults to Settings.from_env()
        ledger: Pre-built gateway (tests); otherwise from settings
        narrative_store: Pre-built store (tests); otherwise from the environment
        metrics: Shared metrics collector
        sleep: Honoring backoff sleep (tests inject a recorder)
        claim_store: Pre-built claim event store (tests); otherwise from the environment
    """
    settings = settings or Settings.from_env()
    metrics = metrics or MetricsCollector()

    engine = create_engine(settings)
    if ledger is None:
        ledger = create_ledger(settings)
    if narrative_store is None:
        narrative_store = create_narrative_store(settings)
    if claim_store is None:
        claim_store = create_claim_store(settings)
    compliance = create_compliance_gate(settings)
    mirror = NarrativeMirror(narrative_store)
    dispatcher = build_dispatcher(settings, mirror=mirror, metrics=metrics, sleep=sleep)
    orchestrator = ClearingOrchestrator(
        engine,
        ledger,
        mirror=mirror,
        dispatcher=dispatcher,
        config=ClearingConfig(
            ledger_id=settings.ledger_id,
            code=settings.ledger_code,
            debit_account_id=settings.debit_account_id,
            credit_account_id=settings.credit_account_id,
            ledger_timeout=settings.ledger_timeout_seconds,
            resubmit_attempts=settings.ledger_resubmit_attempts,
        ),
        metrics=metrics,
        compliance=compliance,
        events=claim_store,
    )

    logger.info(
        "Clearing pipeline ready",
        signer_id=engine.signer_id,
        ledger=type(ledger).__name__,
        mirror=type(narrative_store).__name__,
        claim_events=type(claim_store).__name__,
        compliance=compliance is not None,
        honoring_adapters=sorted(dispatcher.adapters),
    )
    return Pipeline(
        settings=settings,
        engine=engine,
        ledger=ledger,
        narrative_store=narrative_store,
        mirror=mirror,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        metrics=metrics,
        claim_store=claim_store,
        compliance=compliance,
    )
