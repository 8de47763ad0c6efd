"""Tenant tier <-> limits mapping.

The protocol engine stores explicit numeric limits on a tenant; the legacy
platform stores a named tenant profile. This table is the single place the
two encodings meet. Both directions are total: unknown tiers and unmatched
limits resolve to the default tier.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Mapping


class Tier(str, Enum):
    """Tenant profile names understood by the legacy platform."""

    BASIC = "basic"
    DEFAULT = "default"
    PREMIUM = "premium"


@dataclass(frozen=True)
class TenantLimits:
    max_users: int
    max_devices: int
    max_assets: int
    max_customers: int

    def to_dict(self) -> dict[str, int]:
        """Source-schema representation (camelCase keys)."""
        return {
            "maxUsers": self.max_users,
            "maxDevices": self.max_devices,
            "maxAssets": self.max_assets,
            "maxCustomers": self.max_customers,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TenantLimits | None":
        """Parse source-schema limits. None if any field is missing or not an int."""
        try:
            values = [
                data["maxUsers"],
                data["maxDevices"],
                data["maxAssets"],
                data["maxCustomers"],
            ]
        except (KeyError, TypeError):
            return None
        if not all(isinstance(v, int) and not isinstance(v, bool) for v in values):
            return None
        return cls(*values)


DEFAULT_TIER = Tier.DEFAULT

TIER_LIMITS: dict[Tier, TenantLimits] = {
    Tier.BASIC: TenantLimits(max_users=50, max_devices=500, max_assets=250, max_customers=25),
    Tier.DEFAULT: TenantLimits(max_users=100, max_devices=1000, max_assets=500, max_customers=50),
    Tier.PREMIUM: TenantLimits(max_users=200, max_devices=2000, max_assets=1000, max_customers=100),
}

# Limits must stay unique per tier or the reverse lookup loses a tier.
_LIMITS_TIER: dict[TenantLimits, Tier] = {limits: tier for tier, limits in TIER_LIMITS.items()}


def parse_tier(value: Any) -> Tier:
    """Resolve a tier key, falling back to the default tier."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        return DEFAULT_TIER


def tier_to_limits(tier: Any) -> dict[str, int]:
    """Limits for a tier key, in source schema. Unknown keys get the default."""
    return TIER_LIMITS[parse_tier(tier)].to_dict()


def limits_to_tier(limits: Mapping[str, Any] | None) -> str:
    """Tier key for source-schema limits. Unmatched or missing gets the default."""
    if not limits:
        return DEFAULT_TIER.value
    parsed = TenantLimits.from_dict(limits)
    if parsed is None:
        return DEFAULT_TIER.value
    return _LIMITS_TIER.get(parsed, DEFAULT_TIER).value


def all_tiers() -> list[dict[str, Any]]:
    """Every tier with its limits, in table order."""
    return [{"tier": tier.value, **asdict(limits)} for tier, limits in TIER_LIMITS.items()]
