"""
Tier Configuration
==================

Static tier table (credits and resource limits per tier) and the
Stripe price -> tier mapping. Both are built once at process start from
deployment configuration into an immutable ``TierCatalog`` that is
injected wherever tier resolution is needed.
"""

import json
import logging
from functools import lru_cache
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


FREE_TIER = "free"

# Highest first. "admin" is deliberately absent: no provider path grants it.
PAID_TIER_PRECEDENCE: tuple[str, ...] = ("premium", "pro", "adfree")


class TierLimits(BaseModel):
    """Entitlements for a single tier (-1 means unlimited)."""

    model_config = ConfigDict(frozen=True)

    monthly_credits: int = Field(ge=0)
    max_shopping_lists: int = 5
    max_total_items: int = 50
    max_tasks: int = 10
    max_custom_recipes: int = 5
    has_ads: bool = True


DEFAULT_TIER_CONFIG: dict[str, dict] = {
    "free": {
        "monthly_credits": 15,
        "max_shopping_lists": 5,
        "max_total_items": 50,
        "max_tasks": 10,
        "max_custom_recipes": 5,
        "has_ads": True,
    },
    "adfree": {
        "monthly_credits": 25,
        "max_shopping_lists": 10,
        "max_total_items": 200,
        "max_tasks": 25,
        "max_custom_recipes": 10,
        "has_ads": False,
    },
    "pro": {
        "monthly_credits": 100,
        "max_shopping_lists": 25,
        "max_total_items": 500,
        "max_tasks": 100,
        "max_custom_recipes": 50,
        "has_ads": False,
    },
    "premium": {
        "monthly_credits": 250,
        "max_shopping_lists": -1,
        "max_total_items": -1,
        "max_tasks": -1,
        "max_custom_recipes": -1,
        "has_ads": False,
    },
    "admin": {
        "monthly_credits": 1000,
        "max_shopping_lists": -1,
        "max_total_items": -1,
        "max_tasks": -1,
        "max_custom_recipes": -1,
        "has_ads": False,
    },
}


class TierCatalog:
    """
    Read-only view over the tier table and the price map.

    Instances are built by ``build_tier_catalog`` and never mutated.
    """

    def __init__(
        self,
        tiers: Mapping[str, TierLimits],
        price_to_tier: Mapping[str, str],
        fallback_ceiling: str,
    ):
        if FREE_TIER not in tiers:
            raise ValueError("Tier table must define the 'free' tier")

        unknown = sorted({t for t in price_to_tier.values() if t not in tiers})
        if unknown:
            raise ValueError(f"Price map references unknown tiers: {unknown}")

        if fallback_ceiling not in PAID_TIER_PRECEDENCE or fallback_ceiling not in tiers:
            raise ValueError(
                f"Fallback tier ceiling must be a configured paid tier, got {fallback_ceiling!r}"
            )

        self._tiers = MappingProxyType(dict(tiers))
        self._price_to_tier = MappingProxyType(dict(price_to_tier))
        self._fallback_ceiling = fallback_ceiling

    @property
    def tiers(self) -> Mapping[str, TierLimits]:
        return self._tiers

    @property
    def price_to_tier(self) -> Mapping[str, str]:
        return self._price_to_tier

    @property
    def fallback_ceiling(self) -> str:
        """Highest tier a client claim may obtain without server verification."""
        return self._fallback_ceiling

    @property
    def lowest_paid_tier(self) -> str:
        configured = [t for t in PAID_TIER_PRECEDENCE if t in self._tiers]
        return configured[-1]

    def has_tier(self, tier: Optional[str]) -> bool:
        return tier is not None and tier in self._tiers

    def limits(self, tier: str) -> TierLimits:
        """Limits for a configured tier. Raises KeyError for unknown tiers."""
        return self._tiers[tier]

    def monthly_credits(self, tier: str) -> int:
        return self.limits(tier).monthly_credits

    def tier_for_price(self, price_ref: Optional[str]) -> Optional[str]:
        if not price_ref:
            return None
        return self._price_to_tier.get(price_ref)

    def known_price_refs(self) -> list[str]:
        return sorted(self._price_to_tier)

    @staticmethod
    def rank(tier: Optional[str]) -> int:
        """Precedence rank: higher wins. Free and unknown tiers rank 0."""
        if tier in PAID_TIER_PRECEDENCE:
            return len(PAID_TIER_PRECEDENCE) - PAID_TIER_PRECEDENCE.index(tier)
        return 0

    def highest(self, candidates: Iterable[str]) -> Optional[str]:
        """Highest-precedence paid tier among candidates, or None."""
        best = None
        for tier in candidates:
            if tier not in PAID_TIER_PRECEDENCE or tier not in self._tiers:
                continue
            if best is None or self.rank(tier) > self.rank(best):
                best = tier
        return best

    def is_paid(self, tier: Optional[str]) -> bool:
        return self.rank(tier) > 0

    def as_dict(self) -> list[dict]:
        """Tier table in precedence order (free first), for API responses."""
        ordered = [FREE_TIER] + list(reversed(PAID_TIER_PRECEDENCE))
        return [
            {"tier": name, **self._tiers[name].model_dump()}
            for name in ordered
            if name in self._tiers
        ]


def _load_tier_table(raw_json: Optional[str]) -> dict[str, TierLimits]:
    table = DEFAULT_TIER_CONFIG
    if raw_json:
        parsed = json.loads(raw_json)
        if not isinstance(parsed, dict):
            raise ValueError("TIER_CONFIG_JSON must be a JSON object")
        table = parsed
    return {name: TierLimits(**values) for name, values in table.items()}


def build_tier_catalog(settings: Settings) -> TierCatalog:
    """Build the tier catalog from settings. Raises ValueError on bad config."""
    catalog = TierCatalog(
        tiers=_load_tier_table(settings.TIER_CONFIG_JSON),
        price_to_tier=settings.stripe_price_map,
        fallback_ceiling=settings.NATIVE_FALLBACK_TIER_CEILING,
    )
    if not catalog.price_to_tier:
        logger.warning("No Stripe price IDs configured; every web checkout will be rejected")
    logger.info(
        "Tier catalog loaded: tiers=%s prices=%d ceiling=%s",
        sorted(catalog.tiers),
        len(catalog.price_to_tier),
        catalog.fallback_ceiling,
    )
    return catalog


@lru_cache
def get_tier_catalog() -> TierCatalog:
    """
    FastAPI dependency returning the process-wide catalog.

    Built on first use from the cached settings.
    """
    return build_tier_catalog(get_settings())
