# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Overlay classification rules — lexicons, thresholds, and reference predicates.

The rule tables are plain data. ``OverlayRules.to_payload()`` serialises them
into the argument of the in-page suppression script, so the browser side never
carries its own copy of a keyword list. The predicates below evaluate the same
rules over an ``ElementSignals`` tuple and are the unit-testable reference for
what the script does per element.

Three passes:

- **A (positional)**: fixed/sticky element whose class/id tokens hit the deny
  lexicon or whose z-index exceeds ``high_z_index``. Navigation always wins.
- **B (selector)**: element matched by an attribute-substring selector that is
  either large (> half the viewport on one axis) or pinned.
- **C (corner)**: small pinned element anchored near a bottom corner.

Bump ``RULES_VERSION`` whenever a table or threshold changes; the version is
reported with every suppression run.
"""

from __future__ import annotations

from dataclasses import dataclass

RULES_VERSION = "2026.10.1"

PINNED_POSITIONS = frozenset({"fixed", "sticky"})

# Pass A: navigation allow-list (always wins over the deny-list)
NAVIGATION_TAGS = frozenset({"nav", "header"})
NAVIGATION_TOKENS = ("nav", "header", "gnb", "menu")

# Pass A: overlay deny-list
OVERLAY_CLASS_TOKENS = (
    "popup",
    "modal",
    "overlay",
    "banner",
    "floating",
    "float",
    "sticky",
    "fixed",
    "layer",
    "dialog",
    "toast",
    "snackbar",
    "notification",
    "cookie",
    "consent",
    "chat",
    "talk",
    "kakao",
    "channel",
    "quick",
    "side",
    "right",
)
OVERLAY_ID_TOKENS = ("popup", "modal", "overlay", "banner", "floating", "layer", "chat", "talk")
HIGH_Z_INDEX = 1000

# Pass B: attribute-substring selectors
SELECTOR_CLASS_TOKENS = (
    "popup",
    "modal",
    "overlay",
    "layer-popup",
    "floating",
    "float-",
    "quick-menu",
    "side-menu",
    "fixed-",
    "sticky-",
    "toast",
    "snackbar",
    "cookie",
    "consent",
    "chat-",
    "kakao",
    "channel",
    "talk",
)
SELECTOR_ID_TOKENS = ("popup", "modal", "overlay", "layer", "floating", "chat")
BACKDROP_CLASSES = ("dim", "dimmed", "backdrop")
DIALOG_SELECTORS = ('[role="dialog"]', '[role="alertdialog"]', '[aria-modal="true"]')
STRUCTURAL_TAGS = frozenset({"html", "body", "head"})
LARGE_OVERLAY_RATIO = 0.5

# Pass C: corner-anchored floating buttons (CSS px)
CORNER_EDGE_X = 200
CORNER_EDGE_Y = 300
CORNER_MAX_WIDTH = 300
CORNER_MAX_HEIGHT = 400

# Close controls activated after the three passes
CLOSE_CLASS_TOKENS = ("close", "Close", "btn-close", "btn_close", "popup-close")
CLOSE_ARIA_TOKENS = ("close", "Close")
CLOSE_EXTRA_SELECTORS = (".close-btn", ".closeBtn", "#close", "#closeBtn")


@dataclass(frozen=True, slots=True)
class Box:
    """Bounding client rect in CSS pixels, viewport-relative."""

    left: float
    top: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height


@dataclass(frozen=True, slots=True)
class Viewport:
    width: float
    height: float


@dataclass(frozen=True, slots=True)
class ElementSignals:
    """Per-element signal tuple evaluated during one suppression pass."""

    tag: str
    position: str
    box: Box
    viewport: Viewport
    z_index: int = 0
    class_tokens: str = ""
    id_tokens: str = ""

    @classmethod
    def from_raw(
        cls,
        *,
        tag: str,
        position: str,
        box: Box,
        viewport: Viewport,
        z_index: str | int = "auto",
        class_name: str = "",
        element_id: str = "",
    ) -> ElementSignals:
        """Normalise raw DOM values the way the in-page script does."""
        return cls(
            tag=tag.lower(),
            position=position.lower(),
            box=box,
            viewport=viewport,
            z_index=parse_z_index(z_index),
            class_tokens=class_name.lower(),
            id_tokens=element_id.lower(),
        )

    @property
    def pinned(self) -> bool:
        return self.position in PINNED_POSITIONS


def parse_z_index(raw: str | int | None) -> int:
    """Mirror of JS ``parseInt(value) || 0`` for computed z-index strings."""
    if raw is None:
        return 0
    if isinstance(raw, int):
        return raw
    text = raw.strip()
    digits = ""
    for i, ch in enumerate(text):
        if ch.isdigit() or (i == 0 and ch in "+-"):
            digits += ch
        else:
            break
    try:
        return int(digits)
    except ValueError:
        return 0


@dataclass(frozen=True, slots=True)
class OverlayRules:
    """Versioned bundle of every table and threshold the passes use."""

    version: str = RULES_VERSION
    navigation_tags: frozenset[str] = NAVIGATION_TAGS
    navigation_tokens: tuple[str, ...] = NAVIGATION_TOKENS
    overlay_class_tokens: tuple[str, ...] = OVERLAY_CLASS_TOKENS
    overlay_id_tokens: tuple[str, ...] = OVERLAY_ID_TOKENS
    high_z_index: int = HIGH_Z_INDEX
    selector_class_tokens: tuple[str, ...] = SELECTOR_CLASS_TOKENS
    selector_id_tokens: tuple[str, ...] = SELECTOR_ID_TOKENS
    backdrop_classes: tuple[str, ...] = BACKDROP_CLASSES
    dialog_selectors: tuple[str, ...] = DIALOG_SELECTORS
    structural_tags: frozenset[str] = STRUCTURAL_TAGS
    large_overlay_ratio: float = LARGE_OVERLAY_RATIO
    corner_edge_x: int = CORNER_EDGE_X
    corner_edge_y: int = CORNER_EDGE_Y
    corner_max_width: int = CORNER_MAX_WIDTH
    corner_max_height: int = CORNER_MAX_HEIGHT
    close_class_tokens: tuple[str, ...] = CLOSE_CLASS_TOKENS
    close_aria_tokens: tuple[str, ...] = CLOSE_ARIA_TOKENS
    close_extra_selectors: tuple[str, ...] = CLOSE_EXTRA_SELECTORS

    def sweep_selectors(self) -> list[str]:
        """Pass B selector list, in evaluation order."""
        selectors = [f'[class*="{t}"]' for t in self.selector_class_tokens]
        selectors += [f'[id*="{t}"]' for t in self.selector_id_tokens]
        selectors += [f".{c}" for c in self.backdrop_classes]
        selectors += list(self.dialog_selectors)
        return selectors

    def close_selector(self) -> str:
        """Single comma-joined selector for close controls."""
        parts = [f'[class*="{t}"]' for t in self.close_class_tokens]
        parts += [f'[aria-label*="{t}"]' for t in self.close_aria_tokens]
        parts += list(self.close_extra_selectors)
        return ", ".join(parts)

    def to_payload(self) -> dict:
        """JSON-serialisable argument for the in-page suppression script."""
        return {
            "version": self.version,
            "pinned": sorted(PINNED_POSITIONS),
            "navTags": sorted(self.navigation_tags),
            "navTokens": list(self.navigation_tokens),
            "overlayClassTokens": list(self.overlay_class_tokens),
            "overlayIdTokens": list(self.overlay_id_tokens),
            "highZIndex": self.high_z_index,
            "sweepSelectors": self.sweep_selectors(),
            "structuralTags": sorted(self.structural_tags),
            "largeRatio": self.large_overlay_ratio,
            "cornerEdgeX": self.corner_edge_x,
            "cornerEdgeY": self.corner_edge_y,
            "cornerMaxWidth": self.corner_max_width,
            "cornerMaxHeight": self.corner_max_height,
            "closeSelector": self.close_selector(),
        }


DEFAULT_RULES = OverlayRules()


# ── Reference predicates ─────────────────────────────────────────────


def is_navigation(signals: ElementSignals, rules: OverlayRules = DEFAULT_RULES) -> bool:
    if signals.tag in rules.navigation_tags:
        return True
    return any(t in signals.class_tokens or t in signals.id_tokens for t in rules.navigation_tokens)


def matches_overlay_lexicon(signals: ElementSignals, rules: OverlayRules = DEFAULT_RULES) -> bool:
    return any(t in signals.class_tokens for t in rules.overlay_class_tokens) or any(
        t in signals.id_tokens for t in rules.overlay_id_tokens
    )


def is_overlay_candidate(signals: ElementSignals, rules: OverlayRules = DEFAULT_RULES) -> bool:
    return matches_overlay_lexicon(signals, rules) or signals.z_index > rules.high_z_index


def positional_match(signals: ElementSignals, rules: OverlayRules = DEFAULT_RULES) -> bool:
    """Pass A decision for one element."""
    if not signals.pinned:
        return False
    return is_overlay_candidate(signals, rules) and not is_navigation(signals, rules)


def is_large_overlay(signals: ElementSignals, rules: OverlayRules = DEFAULT_RULES) -> bool:
    ratio = rules.large_overlay_ratio
    return signals.box.width > signals.viewport.width * ratio or signals.box.height > signals.viewport.height * ratio


def selector_match(signals: ElementSignals, rules: OverlayRules = DEFAULT_RULES) -> bool:
    """Pass B decision for an element already matched by a sweep selector."""
    if signals.tag in rules.structural_tags:
        return False
    return is_large_overlay(signals, rules) or signals.pinned


def corner_match(signals: ElementSignals, rules: OverlayRules = DEFAULT_RULES) -> bool:
    """Pass C decision: small pinned element near the bottom-left/right corner."""
    if not signals.pinned:
        return False
    box, vp = signals.box, signals.viewport
    if box.width >= rules.corner_max_width or box.height >= rules.corner_max_height:
        return False
    if box.bottom <= vp.height - rules.corner_edge_y:
        return False
    return box.right > vp.width - rules.corner_edge_x or box.left < rules.corner_edge_x
