"""
Access tier gate.

Rule: a premium column is locked when the user's tier is not a paid tier,
unless the dataset is the free universe (config.FREE_DATASET) or the user has
the allow-override flag. watchlist / rank / name are never locked.

The lock applies to two surfaces that must agree:
  1. column visibility: a locked column cannot be turned on
  2. sort selection: a locked column cannot be the active sort key

Preset layouts follow the same rule: a locked layout shows up disabled in the
menu, and applying it leaves the current visibility untouched. A saved custom
layout always applies, with its locked columns stripped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from stockscreener import config
from stockscreener.services.columns import (
    ALL_COLUMNS,
    CustomLayout,
    EXTRA_SORT_KEYS,
    NEVER_LOCKED,
    PAID_TIERS,
    PRESET_LAYOUTS,
    get_column,
    layout_visibility,
)
from stockscreener.services.errors import LockedColumnError

logger = logging.getLogger(__name__)


def is_paid_tier(tier: str | None) -> bool:
    return (tier or "").strip().lower() in PAID_TIERS


# ---------------------------------------------------------------------------
# Feature flags
# ---------------------------------------------------------------------------

def _to_int32(x: int) -> int:
    x &= 0xFFFFFFFF
    return x - 0x100000000 if x >= 0x80000000 else x


def _utf16_first_unit(ch: str) -> int:
    cp = ord(ch)
    if cp > 0xFFFF:
        return 0xD800 + ((cp - 0x10000) >> 10)
    return cp


def rollout_bucket(key: str) -> int:
    """Stable 0-99 bucket for a flag key; same hash the web client uses."""
    acc = 0
    for ch in key:
        acc = _to_int32(_to_int32(acc) << 5) - acc + _utf16_first_unit(ch)
    return abs(acc) % 100


@dataclass
class FeatureFlags:
    """Flags payload from the account source: {key: {enabled?, rolloutPercent?}}."""

    flags: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "FeatureFlags":
        raw = payload.get("flags") if isinstance(payload, dict) else None
        if not isinstance(raw, dict):
            return cls()
        return cls({k: v for k, v in raw.items() if isinstance(v, dict)})

    def is_enabled(self, key: str) -> bool:
        flag = self.flags.get(key)
        if not flag:
            return False
        enabled = flag.get("enabled")
        if isinstance(enabled, bool):
            return enabled
        pct = flag.get("rolloutPercent")
        if isinstance(pct, (int, float)) and not isinstance(pct, bool):
            return rollout_bucket(key) < max(0, min(100, pct))
        return False


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AccessContext:
    tier: str | None = None
    allow_override: bool = False

    @classmethod
    def from_account(cls, tier: str | None, flags: FeatureFlags | None = None) -> "AccessContext":
        override = flags.is_enabled(config.PREMIUM_OVERRIDE_FLAG) if flags else False
        return cls(tier=tier, allow_override=override)

    @property
    def is_paid(self) -> bool:
        return is_paid_tier(self.tier)

    def unlocked_for(self, dataset: str) -> bool:
        """True when nothing is gated for this user on this dataset."""
        return self.is_paid or self.allow_override or dataset == config.FREE_DATASET


def is_locked(column_id: str, tier: str | None, dataset: str, allow_override: bool = False) -> bool:
    column = get_column(column_id)
    if column is None:
        return False
    return column.is_locked(tier, dataset, allow_override)


def _locked(column_id: str, ctx: AccessContext, dataset: str) -> bool:
    return is_locked(column_id, ctx.tier, dataset, ctx.allow_override)


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------

def default_visibility(ctx: AccessContext, dataset: str) -> dict[str, bool]:
    return {
        c.id: c.default_visible and not _locked(c.id, ctx, dataset)
        for c in ALL_COLUMNS
    }


def enforce_visibility(visibility: dict[str, bool], ctx: AccessContext, dataset: str) -> dict[str, bool]:
    """Force locked columns off and identity columns on (e.g. after a dataset switch)."""
    out = dict(visibility)
    for c in ALL_COLUMNS:
        if c.id in NEVER_LOCKED:
            out[c.id] = True
        elif _locked(c.id, ctx, dataset):
            out[c.id] = False
    return out


def toggle_column(
    visibility: dict[str, bool],
    column_id: str,
    visible: bool,
    ctx: AccessContext,
    dataset: str,
) -> dict[str, bool]:
    """Returns a new visibility map. Turning a locked column on is a no-op."""
    if get_column(column_id) is None:
        logger.warning("[AccessGate] toggle of unknown column %s ignored", column_id)
        return dict(visibility)
    if column_id in NEVER_LOCKED:
        return {**visibility, column_id: True}
    if visible and _locked(column_id, ctx, dataset):
        logger.info("[AccessGate] %s is locked on %s for tier=%s", column_id, dataset, ctx.tier)
        return dict(visibility)
    return {**visibility, column_id: bool(visible)}


# ---------------------------------------------------------------------------
# Sort selection
# ---------------------------------------------------------------------------

def can_sort_by(column_id: str, ctx: AccessContext, dataset: str) -> bool:
    if column_id in EXTRA_SORT_KEYS:
        return True
    if column_id == "watchlist" or get_column(column_id) is None:
        return False
    return not _locked(column_id, ctx, dataset)


def check_sort_key(column_id: str, ctx: AccessContext, dataset: str) -> None:
    """Raise if column_id cannot be the active sort key. ValueError for unknown ids."""
    if column_id in EXTRA_SORT_KEYS:
        return
    if column_id == "watchlist" or get_column(column_id) is None:
        raise ValueError(f"unknown sort column: {column_id!r}")
    if _locked(column_id, ctx, dataset):
        raise LockedColumnError(column_id)


def sort_menu(ctx: AccessContext, dataset: str) -> list[dict[str, Any]]:
    return [
        {"id": c.id, "label": c.label, "disabled": _locked(c.id, ctx, dataset)}
        for c in ALL_COLUMNS
        if c.id != "watchlist"
    ]


# ---------------------------------------------------------------------------
# Layouts
# ---------------------------------------------------------------------------

def is_layout_locked(layout_key: str, ctx: AccessContext, dataset: str) -> bool:
    """
    A premium layout is locked whenever the gate is closed; any layout is
    locked if one of its columns is.
    """
    preset = PRESET_LAYOUTS.get(layout_key)
    if preset is None:
        raise KeyError(layout_key)
    if preset.premium and not ctx.unlocked_for(dataset):
        return True
    return any(_locked(col, ctx, dataset) for col in preset.columns)


def layout_menu(ctx: AccessContext, dataset: str) -> list[dict[str, Any]]:
    return [
        {"key": key, "name": preset.name, "disabled": is_layout_locked(key, ctx, dataset)}
        for key, preset in PRESET_LAYOUTS.items()
    ]


def apply_layout(
    visibility: dict[str, bool],
    layout_key: str,
    ctx: AccessContext,
    dataset: str,
) -> dict[str, bool]:
    """Visibility for the chosen layout, or the current visibility if the layout is locked."""
    if is_layout_locked(layout_key, ctx, dataset):
        logger.info("[AccessGate] layout %s is locked on %s for tier=%s", layout_key, dataset, ctx.tier)
        return dict(visibility)
    return layout_visibility(PRESET_LAYOUTS[layout_key])


# ---------------------------------------------------------------------------
# User-defined layouts
# ---------------------------------------------------------------------------

def custom_layout_locked_columns(layout: CustomLayout, ctx: AccessContext, dataset: str) -> list[str]:
    return [col for col in layout.columns if _locked(col, ctx, dataset)]


def apply_custom_layout(
    layout: CustomLayout,
    ctx: AccessContext,
    dataset: str,
) -> tuple[dict[str, bool], list[str]]:
    """
    Visibility for a saved layout plus the columns it asked for but could not
    show. Unlike presets a custom layout is never refused as a whole: locked
    columns are stripped and the rest applies.
    """
    stripped = custom_layout_locked_columns(layout, ctx, dataset)
    visibility = {
        c.id: c.id in NEVER_LOCKED or (c.id in layout.columns and c.id not in stripped)
        for c in ALL_COLUMNS
    }
    if stripped:
        logger.info(
            "[AccessGate] layout %r on %s: locked columns stripped for tier=%s: %s",
            layout.name, dataset, ctx.tier, ", ".join(stripped),
        )
    return visibility, stripped


def custom_layout_menu(layouts: list[CustomLayout], ctx: AccessContext, dataset: str) -> list[dict[str, Any]]:
    """Saved layouts are never disabled; the menu lists what each would lose to the gate."""
    return [
        {
            "key": layout.key,
            "name": layout.name,
            "disabled": False,
            "custom": True,
            "lockedColumns": custom_layout_locked_columns(layout, ctx, dataset),
        }
        for layout in layouts
    ]
