"""
Maps payout method types onto rail families and their adapters.
"""

from typing import Dict, Optional, Union

from ...core.config import Settings
from ...core.logging import get_logger
from ...models.payout_method import PayoutMethodType
from .base import RailAdapter
from .http import HttpRail
from .mock import MockRail

logger = get_logger(__name__)

RAIL_FAMILIES: Dict[PayoutMethodType, str] = {
    PayoutMethodType.bank_transfer: "bank",
    PayoutMethodType.bank_transfer_international: "bank",
    PayoutMethodType.paypal: "wallet",
    PayoutMethodType.card_express: "card",
    PayoutMethodType.card_standard: "card",
    PayoutMethodType.western_union: "cash_pickup",
    PayoutMethodType.moneygram: "cash_pickup",
    PayoutMethodType.crypto: "crypto",
}

DEFAULT_FAMILY = "bank"


def rail_family_for(method_type: Union[PayoutMethodType, str]) -> str:
    try:
        return RAIL_FAMILIES[PayoutMethodType(method_type)]
    except (ValueError, KeyError):
        return DEFAULT_FAMILY


class RailRegistry:
    """Adapter lookup by rail family."""

    def __init__(self, adapters: Dict[str, RailAdapter]):
        if not adapters:
            raise ValueError("At least one rail adapter is required")
        self._adapters = dict(adapters)

    @classmethod
    def single(cls, adapter: RailAdapter) -> "RailRegistry":
        """Route every family to one adapter."""
        return cls({family: adapter for family in set(RAIL_FAMILIES.values())})

    def for_family(self, family: str) -> RailAdapter:
        adapter = self._adapters.get(family) or self._adapters.get(DEFAULT_FAMILY)
        if adapter is None:
            raise LookupError(f"No rail adapter registered for family '{family}'")
        return adapter

    def for_method(self, method_type: Union[PayoutMethodType, str]) -> RailAdapter:
        return self.for_family(rail_family_for(method_type))

    def by_name(self, name: str) -> Optional[RailAdapter]:
        for adapter in self._adapters.values():
            if adapter.name == name:
                return adapter
        return None

    def adapters(self) -> list[RailAdapter]:
        unique: list[RailAdapter] = []
        for adapter in self._adapters.values():
            if adapter not in unique:
                unique.append(adapter)
        return unique

    async def aclose(self) -> None:
        for adapter in self.adapters():
            await adapter.aclose()


def build_rail_registry(settings: Settings) -> RailRegistry:
    """Mock mode shares one in-memory rail; http mode builds one client per family."""
    if settings.rail_mode == "mock":
        logger.info("Using mock payment rail", extra={"auto_settle": settings.mock_rail_auto_settle})
        return RailRegistry.single(MockRail(name="mock", auto_settle=settings.mock_rail_auto_settle))

    adapters: Dict[str, RailAdapter] = {}
    for family, base_url in settings.rail_base_urls.items():
        adapters[family] = HttpRail(
            name=family,
            base_url=base_url,
            api_key=settings.rail_api_key,
            timeout=settings.rail_submit_timeout_seconds,
        )
    logger.info("Using HTTP payment rails", extra={"families": sorted(adapters)})
    return RailRegistry(adapters)
