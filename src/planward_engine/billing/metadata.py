"""Plan metadata parsing.

Two metadata shapes feed the entitlement engine:

* flat ``str -> str`` metadata attached to billing provider products, e.g.
  ``{"features": "SSO,Audit Logs", "limits": "members=3", "limit_projects": "5"}``
* structured metadata stored on catalog plans, e.g.
  ``{"tier": "business", "planLevel": 1, "featureFlags": {"sso": True},
  "limits": {"team_members": 20}, "inherits": ["Basic"]}``

Both are reduced to the same normalized :class:`EntitlementValues`.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

Number = int | float

FEATURE_ALIASES: dict[str, str] = {
    "webhook": "webhooks",
    "team_webhook": "webhooks",
    "dsync": "directory_sync",
    "team_dsync": "directory_sync",
    "audit_logs": "team_audit_log",
    "team_audit_logs": "team_audit_log",
    "api_key": "api_keys",
    "team_api_key": "api_keys",
}

_TRUTHY = frozenset({"true", "1", "yes", "on"})
_SEPARATORS = re.compile(r"[\s-]+")


def normalize_key(value: str) -> str:
    """Lower-case, trim, and collapse whitespace/hyphen runs to ``_``."""
    return _SEPARATORS.sub("_", value.strip().lower())


def normalize_feature_key(value: str) -> str:
    """Normalize a feature name and resolve it through the alias table."""
    key = normalize_key(value)
    return FEATURE_ALIASES.get(key, key)


def parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    if isinstance(value, (int, float)):
        return value == 1
    return False


def parse_number(value: Any) -> Number | None:
    """Parse a finite number, returning ``None`` for anything else.

    Integral values come back as ``int`` so limits compare and render cleanly.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        # float() accepts digit separators, which are not numeric here
        if not text or "_" in text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class EntitlementValues:
    """Normalized feature flags and numeric limits."""

    features: dict[str, bool] = field(default_factory=dict)
    limits: dict[str, Number] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.features and not self.limits

    def copy(self) -> "EntitlementValues":
        return EntitlementValues(features=dict(self.features), limits=dict(self.limits))


def merge_values(base: EntitlementValues, incoming: EntitlementValues) -> EntitlementValues:
    """Merge ``incoming`` into ``base`` in place and return ``base``.

    Features are OR-ed, so a granted feature is never revoked. Limits take
    the larger value when both sides define one. Both operations are
    commutative and associative, which keeps aggregation order-independent.
    """
    for feature, enabled in incoming.features.items():
        base.features[feature] = base.features.get(feature, False) or enabled
    for key, value in incoming.limits.items():
        existing = base.limits.get(key)
        base.limits[key] = value if existing is None else max(existing, value)
    return base


@dataclass
class PlanMetadata:
    """Plan graph fields plus the entitlements a plan declares itself."""

    feature_flags: dict[str, bool] = field(default_factory=dict)
    limits: dict[str, Number] = field(default_factory=dict)
    features: list[str] = field(default_factory=list)
    tier: str | None = None
    plan_level: Number | None = None
    inherits: list[str] = field(default_factory=list)
    is_default: bool = False
    recommended: bool = False
    custom: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Structured form, as stored on a catalog plan."""
        return {
            "featureFlags": dict(self.feature_flags),
            "limits": dict(self.limits),
            "tier": self.tier,
            "planLevel": self.plan_level,
            "inherits": list(self.inherits),
            "isDefault": self.is_default,
            "recommended": self.recommended,
            "custom": self.custom,
        }


# ── Flat (billing provider) metadata ──


def parse_provider_metadata(metadata: Mapping[str, Any] | None) -> PlanMetadata:
    """Parse flat provider product metadata.

    Recognized keys (after normalization): ``features`` (comma list),
    ``limits`` (comma list of ``key=value``), ``feature_<name>``,
    ``limit_<name>``, and the catalog fields ``tier``, ``plan_level``,
    ``inherits``, ``is_default``/``default``, ``recommended``, ``custom``.
    Everything else is ignored. Non-numeric limits are dropped.
    """
    parsed = PlanMetadata()
    if not metadata:
        return parsed

    for raw_key, raw_value in metadata.items():
        if not raw_value or not isinstance(raw_value, str):
            continue
        key = normalize_key(raw_key)

        if key == "features":
            for item in _split_list(raw_value):
                feature = normalize_feature_key(item)
                parsed.feature_flags[feature] = True
                if feature not in parsed.features:
                    parsed.features.append(feature)
        elif key == "limits":
            for entry in _split_list(raw_value):
                limit_key, sep, limit_value = entry.partition("=")
                if not sep:
                    continue
                number = parse_number(limit_value)
                if number is not None and normalize_key(limit_key):
                    parsed.limits[normalize_key(limit_key)] = number
        elif key.startswith("feature_"):
            feature = normalize_feature_key(key[len("feature_"):])
            enabled = parse_boolean(raw_value)
            parsed.feature_flags[feature] = enabled
            if enabled and feature not in parsed.features:
                parsed.features.append(feature)
        elif key.startswith("limit_"):
            number = parse_number(raw_value)
            if number is not None:
                parsed.limits[normalize_key(key[len("limit_"):])] = number
        elif key == "tier":
            parsed.tier = normalize_key(raw_value) or None
        elif key == "plan_level":
            parsed.plan_level = parse_number(raw_value)
        elif key == "inherits":
            parsed.inherits = _split_list(raw_value)
        elif key in ("is_default", "default"):
            parsed.is_default = parse_boolean(raw_value)
        elif key == "recommended":
            parsed.recommended = parse_boolean(raw_value)
        elif key == "custom":
            parsed.custom = parse_boolean(raw_value)

    return parsed


def parse_provider_entitlements(metadata: Mapping[str, Any] | None) -> EntitlementValues:
    """Entitlements carried by flat provider metadata."""
    parsed = parse_provider_metadata(metadata)
    return EntitlementValues(features=parsed.feature_flags, limits=parsed.limits)


# ── Structured (catalog) metadata ──


def _first_present(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return None


def parse_plan_metadata(metadata: Any) -> PlanMetadata:
    """Parse the structured metadata object stored on a catalog plan."""
    parsed = PlanMetadata()
    if not isinstance(metadata, Mapping):
        return parsed

    tier = metadata.get("tier")
    if isinstance(tier, str):
        parsed.tier = normalize_key(tier) or None

    parsed.plan_level = parse_number(_first_present(metadata, "planLevel", "plan_level"))

    inherits = metadata.get("inherits")
    if isinstance(inherits, str):
        parsed.inherits = _split_list(inherits)
    elif isinstance(inherits, (list, tuple)):
        parsed.inherits = [
            item.strip() for item in inherits if isinstance(item, str) and item.strip()
        ]

    parsed.is_default = parse_boolean(
        _first_present(metadata, "isDefault", "is_default", "default")
    )
    parsed.recommended = parse_boolean(metadata.get("recommended"))
    parsed.custom = parse_boolean(metadata.get("custom"))

    feature_flags = metadata.get("featureFlags")
    if isinstance(feature_flags, Mapping):
        for feature, enabled in feature_flags.items():
            if parse_boolean(enabled):
                parsed.feature_flags[normalize_feature_key(feature)] = True

    limits = metadata.get("limits")
    if isinstance(limits, Mapping):
        for limit_key, limit_value in limits.items():
            number = parse_number(limit_value)
            if number is not None:
                parsed.limits[normalize_key(limit_key)] = number

    return parsed


def parse_plan_entitlements(
    features: list[str] | None, metadata: PlanMetadata
) -> EntitlementValues:
    """A plan's own entitlements: its feature list plus structured metadata."""
    values = EntitlementValues()
    for feature in features or []:
        if isinstance(feature, str) and feature.strip():
            values.features[normalize_feature_key(feature)] = True
    for feature, enabled in metadata.feature_flags.items():
        if enabled:
            values.features[feature] = True
    values.limits.update(metadata.limits)
    return values
