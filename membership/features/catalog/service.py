"""
membership/features/catalog/service.py

Tier catalog: which capabilities each tier unlocks and how much of each
metered capability it grants per billing period.

Handles:
- Default catalog (free, premium, pro)
- Load-time validation (fail fast on a malformed table)
- Pure lookups used on the request path (never raise)
"""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Union
import logging

from membership.core.errors import ValidationError
from membership.models.tier import Tier, Capability


logger = logging.getLogger(__name__)

UNLIMITED = -1


class CatalogConfigError(Exception):
    """Raised when the catalog table is malformed. Fatal at startup."""
    pass


# Default tier configurations
DEFAULT_TIERS = {
    "free": {"name": "Free", "rank": 0, "monthly_price": "0.00"},
    "premium": {"name": "Premium", "rank": 1, "monthly_price": "9.99"},
    "pro": {"name": "Pro", "rank": 2, "monthly_price": "19.99"},
}

# capability -> {"allowed": {tier: bool}, "limits": {tier: int}} (limits only for metered)
DEFAULT_CAPABILITIES = {
    "basic-troubleshooting": {"allowed": {"free": True, "premium": True, "pro": True}},
    "advanced-troubleshooting": {"allowed": {"free": False, "premium": True, "pro": True}},
    "ai-assistant": {"allowed": {"free": False, "premium": True, "pro": True}},
    "premium-ebooks": {"allowed": {"free": False, "premium": True, "pro": True}},
    "priority-support": {"allowed": {"free": False, "premium": True, "pro": True}},
    "unlimited-flows": {"allowed": {"free": False, "premium": False, "pro": True}},
    "ebook-creation": {"allowed": {"free": False, "premium": False, "pro": True}},
    "analytics": {"allowed": {"free": False, "premium": False, "pro": True}},
    "csv-import": {"allowed": {"free": False, "premium": False, "pro": True}},
    "monthly-flows": {
        "allowed": {"free": True, "premium": True, "pro": True},
        "limits": {"free": 10, "premium": 100, "pro": UNLIMITED},
    },
    "monthly-ai-requests": {
        "allowed": {"free": False, "premium": True, "pro": True},
        "limits": {"free": 0, "premium": 50, "pro": 200},
    },
}


@dataclass(frozen=True)
class TierDefinition:
    tier: Tier
    name: str
    rank: int
    monthly_price: Decimal


@dataclass(frozen=True)
class CapabilityRule:
    capability: Capability
    allowed: Mapping[Tier, bool]
    limits: Optional[Mapping[Tier, int]] = None

    @property
    def metered(self) -> bool:
        return self.limits is not None


def _coerce_tier(value: Union[Tier, str, None]) -> Optional[Tier]:
    if isinstance(value, Tier):
        return value
    try:
        return Tier(value)
    except ValueError:
        return None


def _coerce_capability(value: Union[Capability, str, None]) -> Optional[Capability]:
    if isinstance(value, Capability):
        return value
    try:
        return Capability(value)
    except ValueError:
        return None


def parse_tier(value: Union[Tier, str, None]) -> Tier:
    """Validate external tier input."""
    tier = _coerce_tier(value)
    if tier is None:
        raise ValidationError(f"Unknown tier: {value!r}", code="unknown_tier")
    return tier


def parse_capability(value: Union[Capability, str, None]) -> Capability:
    """Validate external capability input."""
    capability = _coerce_capability(value)
    if capability is None:
        raise ValidationError(f"Unknown feature: {value!r}", code="unknown_feature")
    return capability


class TierCatalog:
    """
    Immutable tier/capability table.

    Construct once, validate, inject. Lookups for unknown tiers or features
    deny (or return 0) and log a warning instead of raising.
    """

    def __init__(self, tiers: Dict[str, Dict], capabilities: Dict[str, Dict]):
        self._tiers = MappingProxyType(self._load_tiers(tiers))
        self._rules = MappingProxyType(self._load_capabilities(capabilities))

    @staticmethod
    def _load_tiers(raw: Dict[str, Dict]) -> Dict[Tier, TierDefinition]:
        loaded: Dict[Tier, TierDefinition] = {}
        for key, config in raw.items():
            tier = _coerce_tier(key)
            if tier is None:
                raise CatalogConfigError(f"Unknown tier in catalog: {key!r}")
            rank = config.get("rank")
            if not isinstance(rank, int) or isinstance(rank, bool) or rank < 0:
                raise CatalogConfigError(f"Tier {key} has invalid rank: {rank!r}")
            price = Decimal(str(config.get("monthly_price", "0")))
            if price < 0:
                raise CatalogConfigError(f"Tier {key} has negative price")
            loaded[tier] = TierDefinition(
                tier=tier,
                name=config.get("name", tier.value.title()),
                rank=rank,
                monthly_price=price,
            )

        missing = [t.value for t in Tier if t not in loaded]
        if missing:
            raise CatalogConfigError(f"Catalog is missing tiers: {', '.join(missing)}")

        # Ranks must strictly increase in tier order
        ranks = [loaded[t].rank for t in Tier]
        if any(later <= earlier for earlier, later in zip(ranks, ranks[1:])):
            raise CatalogConfigError(f"Tier ranks must strictly increase: {ranks}")
        return loaded

    @staticmethod
    def _load_capabilities(raw: Dict[str, Dict]) -> Dict[Capability, CapabilityRule]:
        loaded: Dict[Capability, CapabilityRule] = {}
        for key, config in raw.items():
            capability = _coerce_capability(key)
            if capability is None:
                raise CatalogConfigError(f"Unknown capability in catalog: {key!r}")

            allowed_raw = config.get("allowed") or {}
            allowed: Dict[Tier, bool] = {}
            for tier in Tier:
                value = allowed_raw.get(tier.value)
                if not isinstance(value, bool):
                    raise CatalogConfigError(
                        f"Capability {key} has no explicit allowed flag for tier {tier.value}"
                    )
                allowed[tier] = value

            limits: Optional[Dict[Tier, int]] = None
            if "limits" in config:
                limits_raw = config["limits"] or {}
                limits = {}
                for tier in Tier:
                    value = limits_raw.get(tier.value)
                    valid = isinstance(value, int) and not isinstance(value, bool) and (
                        value >= 0 or value == UNLIMITED
                    )
                    if not valid:
                        raise CatalogConfigError(
                            f"Capability {key} has invalid limit for tier {tier.value}: {value!r}"
                        )
                    limits[tier] = value

            loaded[capability] = CapabilityRule(
                capability=capability,
                allowed=MappingProxyType(allowed),
                limits=MappingProxyType(limits) if limits is not None else None,
            )

        missing = [c.value for c in Capability if c not in loaded]
        if missing:
            raise CatalogConfigError(f"Catalog is missing capabilities: {', '.join(missing)}")
        return loaded

    def tiers(self) -> List[TierDefinition]:
        """Tier definitions ordered by rank."""
        return sorted(self._tiers.values(), key=lambda d: d.rank)

    def rank_of(self, tier: Union[Tier, str]) -> int:
        """Rank of a tier; unknown tiers rank below every real tier."""
        resolved = _coerce_tier(tier)
        if resolved is None:
            logger.warning("[catalog] unknown tier", extra={"tier": str(tier)})
            return -1
        return self._tiers[resolved].rank

    def price_of(self, tier: Union[Tier, str]) -> Decimal:
        resolved = _coerce_tier(tier)
        if resolved is None:
            logger.warning("[catalog] unknown tier", extra={"tier": str(tier)})
            return Decimal("0")
        return self._tiers[resolved].monthly_price

    def _rule(self, tier: Union[Tier, str], feature: Union[Capability, str]):
        resolved_tier = _coerce_tier(tier)
        rule = self._rules.get(_coerce_capability(feature))
        if resolved_tier is None or rule is None:
            logger.warning(
                "[catalog] unknown tier or feature",
                extra={"tier": str(tier), "feature": str(feature)},
            )
            return None, None
        return resolved_tier, rule

    def is_allowed(self, tier: Union[Tier, str], feature: Union[Capability, str]) -> bool:
        resolved_tier, rule = self._rule(tier, feature)
        if rule is None:
            return False
        return rule.allowed[resolved_tier]

    def is_metered(self, feature: Union[Capability, str]) -> bool:
        rule = self._rules.get(_coerce_capability(feature))
        return bool(rule and rule.metered)

    def limit_for(self, tier: Union[Tier, str], feature: Union[Capability, str]) -> int:
        """
        Per-period limit for a tier.

        Returns UNLIMITED (-1) for allowed capabilities that are not metered,
        and 0 for capabilities the tier does not unlock.
        """
        resolved_tier, rule = self._rule(tier, feature)
        if rule is None:
            return 0
        if not rule.metered:
            return UNLIMITED if rule.allowed[resolved_tier] else 0
        return rule.limits[resolved_tier]

    def metered_capabilities(self) -> List[Capability]:
        return [c for c, rule in self._rules.items() if rule.metered]

    def monotonicity_exceptions(self) -> List[Capability]:
        """
        Capabilities that a lower tier has but a higher tier lacks (or grants
        less of). The default catalog has none.
        """
        ordered = [d.tier for d in self.tiers()]
        exceptions = []
        for capability, rule in self._rules.items():
            for lower, higher in zip(ordered, ordered[1:]):
                if rule.allowed[lower] and not rule.allowed[higher]:
                    exceptions.append(capability)
                    break
                if rule.metered and _limit_exceeds(rule.limits[lower], rule.limits[higher]):
                    exceptions.append(capability)
                    break
        return exceptions

    def describe(self) -> List[Dict]:
        """Public plan listing: price, rank and per-feature grants for each tier."""
        plans = []
        for definition in self.tiers():
            features = {}
            for capability, rule in self._rules.items():
                entry = {"allowed": rule.allowed[definition.tier]}
                if rule.metered:
                    limit = rule.limits[definition.tier]
                    entry["limit"] = None if limit == UNLIMITED else limit
                features[capability.value] = entry
            plans.append({
                "tier": definition.tier.value,
                "name": definition.name,
                "rank": definition.rank,
                "monthly_price": str(definition.monthly_price),
                "features": features,
            })
        return plans


def _limit_exceeds(lower: int, higher: int) -> bool:
    if lower == UNLIMITED:
        return higher != UNLIMITED
    if higher == UNLIMITED:
        return False
    return lower > higher


def build_default_catalog() -> TierCatalog:
    """Build and validate the default catalog."""
    return TierCatalog(DEFAULT_TIERS, DEFAULT_CAPABILITIES)


@lru_cache(maxsize=1)
def get_catalog() -> TierCatalog:
    """Process-wide catalog, built on first use."""
    return build_default_catalog()
