"""
Plan catalogue: limits, prices and features per tier.

Pure data plus pure helpers. This module imports nothing from the rest of
the entitlements package; the resolver depends on it, never the reverse.

Numeric limits use -1 for "unlimited" and 0 for "not included".
"""

from dataclasses import dataclass, fields
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union

UNLIMITED = -1


class PlanTier(str, Enum):
    """Subscription tiers, ordered START < PREMIUM < ETERNAL."""
    START = "START"
    PREMIUM = "PREMIUM"
    ETERNAL = "ETERNAL"


PLAN_ORDER: tuple[PlanTier, ...] = (PlanTier.START, PlanTier.PREMIUM, PlanTier.ETERNAL)


@dataclass(frozen=True)
class PlanLimits:
    max_gifts: int
    max_photos_per_gift: int
    max_music_per_gift: int
    max_photo_size_mb: int
    max_music_size_mb: int
    custom_qr_code: bool
    custom_domain: bool
    priority_support: bool
    lifetime_editing: bool
    premium_animations: bool
    time_counter: bool
    analytics: bool

    def to_dict(self) -> dict[str, Union[int, bool]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class PlanConfig:
    tier: PlanTier
    display_name: str
    price_cents: int
    description: str
    popular: bool
    limits: PlanLimits
    features: tuple[str, ...]

    @property
    def price_display(self) -> str:
        return f"R$ {self.price_cents // 100}"


FEATURE_NAMES = frozenset(f.name for f in fields(PlanLimits))

# Client-facing feature names accepted alongside the PlanLimits field names.
FEATURE_ALIASES: Mapping[str, str] = MappingProxyType({
    "music": "max_music_per_gift",
    "customQRCode": "custom_qr_code",
    "customDomain": "custom_domain",
    "premiumAnimations": "premium_animations",
    "prioritySupport": "priority_support",
    "lifetimeEditing": "lifetime_editing",
    "timeCounter": "time_counter",
})


PLAN_CONFIG: Mapping[PlanTier, PlanConfig] = MappingProxyType({
    PlanTier.START: PlanConfig(
        tier=PlanTier.START,
        display_name="Start",
        price_cents=2900,
        description="Perfect for getting started with digital gifts",
        popular=False,
        limits=PlanLimits(
            max_gifts=UNLIMITED,
            max_photos_per_gift=5,
            max_music_per_gift=0,
            max_photo_size_mb=5,
            max_music_size_mb=0,
            custom_qr_code=False,
            custom_domain=False,
            priority_support=False,
            lifetime_editing=False,
            premium_animations=False,
            time_counter=False,
            analytics=False,
        ),
        features=(
            "Unlimited gift pages",
            "HD photos",
            "Custom text",
            "Public link",
            "Standard QR code",
        ),
    ),
    PlanTier.PREMIUM: PlanConfig(
        tier=PlanTier.PREMIUM,
        display_name="Premium",
        price_cents=5900,
        description="Most popular choice for special moments",
        popular=True,
        limits=PlanLimits(
            max_gifts=UNLIMITED,
            max_photos_per_gift=15,
            max_music_per_gift=1,
            max_photo_size_mb=10,
            max_music_size_mb=10,
            custom_qr_code=True,
            custom_domain=False,
            priority_support=False,
            lifetime_editing=False,
            premium_animations=True,
            time_counter=True,
            analytics=True,
        ),
        features=(
            "Unlimited gift pages",
            "Up to 15 HD photos per page",
            "Background music",
            "Time counter",
            "Premium animations",
            "Custom QR code",
        ),
    ),
    PlanTier.ETERNAL: PlanConfig(
        tier=PlanTier.ETERNAL,
        display_name="Eternal",
        price_cents=9900,
        description="The definitive experience for lasting memories",
        popular=False,
        limits=PlanLimits(
            max_gifts=UNLIMITED,
            max_photos_per_gift=30,
            max_music_per_gift=UNLIMITED,
            max_photo_size_mb=20,
            max_music_size_mb=50,
            custom_qr_code=True,
            custom_domain=True,
            priority_support=True,
            lifetime_editing=True,
            premium_animations=True,
            time_counter=True,
            analytics=True,
        ),
        features=(
            "Unlimited gift pages",
            "Up to 30 HD photos per page",
            "Unlimited music",
            "Custom domain",
            "Lifetime editing",
            "Priority support",
        ),
    ),
})


def parse_plan(value: Union[str, PlanTier, None]) -> Optional[PlanTier]:
    """Coerce a stored plan string to PlanTier; unknown values map to None."""
    if value is None:
        return None
    if isinstance(value, PlanTier):
        return value
    try:
        return PlanTier(str(value).upper())
    except ValueError:
        return None


def get_plan_config(plan: PlanTier) -> PlanConfig:
    return PLAN_CONFIG[plan]


def get_plan_limits(plan: PlanTier) -> PlanLimits:
    return PLAN_CONFIG[plan].limits


def plan_rank(plan: PlanTier) -> int:
    return PLAN_ORDER.index(plan)


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def remaining_slots(limit: int, current_count: int) -> int:
    """-1 when unlimited, otherwise never negative."""
    if is_unlimited(limit):
        return UNLIMITED
    return max(0, limit - current_count)


def resolve_feature_name(feature: str) -> Optional[str]:
    """PlanLimits field for a feature name or alias; None when unknown."""
    if feature in FEATURE_NAMES:
        return feature
    return FEATURE_ALIASES.get(feature)


def plan_has_feature(plan: PlanTier, feature: str) -> bool:
    """
    Boolean limits map directly; numeric limits are available iff non-zero.

    Unknown feature names are not available.
    """
    field_name = resolve_feature_name(feature)
    if field_name is None:
        return False
    value = getattr(PLAN_CONFIG[plan].limits, field_name)
    if isinstance(value, bool):
        return value
    return value != 0


def get_upgrade_price(current_plan: PlanTier, target_plan: PlanTier) -> int:
    current = PLAN_CONFIG[current_plan].price_cents
    target = PLAN_CONFIG[target_plan].price_cents
    return max(0, target - current)


def get_available_upgrades(current_plan: PlanTier) -> list[PlanTier]:
    return list(PLAN_ORDER[plan_rank(current_plan) + 1:])


def format_price(cents: int) -> str:
    """2900 -> 'R$ 29,00'."""
    return f"R$ {cents / 100:.2f}".replace(".", ",")


def get_plan_by_price(price_cents: int) -> Optional[PlanTier]:
    for tier, config in PLAN_CONFIG.items():
        if config.price_cents == price_cents:
            return tier
    return None
