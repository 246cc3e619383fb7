"""
Adapter registry: builds the configured honoring adapters and a
dispatcher routing anchor types to them.

Routing comes from CLEARING_HONORING_ROUTES. When no routes are set, the
default table applies to every provider whose credentials are complete.
"""

import asyncio
from typing import Callable, Optional

from ..config import DEFAULT_ROUTES, ProviderSettings, Settings
from ..core.mirror import NarrativeMirror
from ..observability import MetricsCollector, get_logger
from ..schemas import AnchorType
from .adapters import ArcusBillPayAdapter, MoovCashOutAdapter, TangoGiftCardAdapter
from .adapters.arcus import ARCUS_API_URL
from .adapters.moov import MOOV_API_URL
from .dispatcher import HonoringDispatcher, RateLimit
from .protocol import HonoringAdapter
from .retry import RetryPolicy, Sleep


logger = get_logger(__name__)


def _moov(provider: ProviderSettings, settings: Settings) -> HonoringAdapter:
    return MoovCashOutAdapter(
        api_key=provider.api_key,
        partner_id=provider.partner_id,
        api_url=provider.api_url or MOOV_API_URL,
        sandbox=settings.sandbox,
        timeout_s=settings.honoring_timeout_seconds,
    )


def _tango(provider: ProviderSettings, settings: Settings) -> HonoringAdapter:
    return TangoGiftCardAdapter(
        platform_name=provider.platform_name,
        platform_key=provider.platform_key,
        account_id=provider.account_id,
        customer_id=provider.customer_id,
        utid=provider.utid,
        sandbox=settings.sandbox,
        base_url=provider.api_url or None,
        timeout_s=settings.honoring_timeout_seconds,
    )


def _arcus(provider: ProviderSettings, settings: Settings) -> HonoringAdapter:
    return ArcusBillPayAdapter(
        api_key=provider.api_key,
        api_url=provider.api_url or ARCUS_API_URL,
        timeout_s=settings.honoring_timeout_seconds,
    )


ADAPTER_FACTORIES: dict[str, Callable[[ProviderSettings, Settings], HonoringAdapter]] = {
    "moov": _moov,
    "tango": _tango,
    "arcus": _arcus,
}


def build_adapter(name: str, settings: Settings) -> HonoringAdapter:
    """
    Raises:
        ValueError: No adapter implementation with that name
    """
    factory = ADAPTER_FACTORIES.get(name)
    if factory is None:
        raise ValueError(
            f"Unknown honoring provider: {name}. Valid values: {', '.join(sorted(ADAPTER_FACTORIES))}"
        )
    return factory(settings.provider(name), settings)


def resolve_routes(settings: Settings) -> dict[AnchorType, HonoringAdapter]:
    """Anchor type -> adapter instance, one instance per provider."""
    instances: dict[str, HonoringAdapter] = {}
    routes: dict[AnchorType, HonoringAdapter] = {}

    explicit = bool(settings.honoring_routes)
    for anchor_type, name in (settings.honoring_routes or DEFAULT_ROUTES).items():
        if name not in instances:
            adapter = build_adapter(name, settings)
            if not explicit and adapter.validate_config():
                logger.debug("Skipping unconfigured honoring provider", provider=name)
                continue
            instances[name] = adapter
        routes[anchor_type] = instances[name]
    return routes


def build_dispatcher(
    settings: Settings,
    mirror: Optional[NarrativeMirror] = None,
    metrics: Optional[MetricsCollector] = None,
    sleep: Sleep = asyncio.sleep,
) -> HonoringDispatcher:
    dispatcher = HonoringDispatcher(
        mirror=mirror,
        policy=RetryPolicy(
            max_attempts=settings.honoring_max_attempts,
            base_delay=settings.honoring_base_delay_seconds,
            max_delay=settings.honoring_max_delay_seconds,
            attempt_timeout=settings.honoring_timeout_seconds,
        ),
        rate_limits={
            name: RateLimit(
                max_concurrency=provider.max_concurrency,
                min_interval=provider.min_interval_seconds,
            )
            for name, provider in settings.providers.items()
        },
        sleep=sleep,
        metrics=metrics,
    )

    by_adapter: dict[str, list[AnchorType]] = {}
    adapters: dict[str, HonoringAdapter] = {}
    for anchor_type, adapter in resolve_routes(settings).items():
        adapters[adapter.name] = adapter
        by_adapter.setdefault(adapter.name, []).append(anchor_type)
    for name, anchor_types in by_adapter.items():
        dispatcher.register(adapters[name], anchor_types)

    if not adapters:
        logger.warning("No honoring providers configured; fulfillment claims will route to manual review")
    return dispatcher
