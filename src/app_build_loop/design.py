from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable

# =============================================================================
# Criterion registry
# =============================================================================


@dataclass
class CriterionResult:
    criterion: str
    passed: bool
    message: str = ""
    details: list[str] = field(default_factory=list)


DesignRule = Callable[[str, float], CriterionResult]

DESIGN_RULES: dict[str, DesignRule] = {}


def design_rule(name: str) -> Callable[[DesignRule], DesignRule]:
    """Register a design criterion under ``name``."""

    def register(func: DesignRule) -> DesignRule:
        DESIGN_RULES[name] = func
        return func

    return register


def evaluate_design(text: str, criteria: Iterable[str], min_ratio: float = 4.5) -> list[CriterionResult]:
    """Evaluate each named criterion over the combined UI artifact text.

    Unknown criterion names fail rather than being skipped.
    """
    results: list[CriterionResult] = []
    for criterion in criteria:
        rule = DESIGN_RULES.get(criterion)
        if rule is None:
            results.append(CriterionResult(criterion, False, f"unknown design criterion {criterion!r}"))
            continue
        results.append(rule(text, min_ratio))
    return results


# =============================================================================
# Colour math (WCAG 2.x)
# =============================================================================

_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def _parse_hex(value: str) -> tuple[int, int, int]:
    match = _HEX_RE.match(value.strip())
    if match is None:
        raise ValueError(f"not a hex colour: {value!r}")
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def relative_luminance(color: str) -> float:
    def channel(value: int) -> float:
        c = value / 255
        return c / 12.92 if c <= 0.03928 else ((c + 0.055) / 1.055) ** 2.4

    r, g, b = _parse_hex(color)
    return 0.2126 * channel(r) + 0.7152 * channel(g) + 0.0722 * channel(b)


def contrast_ratio(foreground: str, background: str) -> float:
    lighter, darker = sorted((relative_luminance(foreground), relative_luminance(background)), reverse=True)
    return (lighter + 0.05) / (darker + 0.05)


# =============================================================================
# Built-in criteria
# =============================================================================

_HERO_RE = re.compile(r"<h1\b|\btext-(?:[4-9]xl)\b|\bhero\b", re.I)
_TAILWIND_WEIGHT_RE = re.compile(r"\bfont-(thin|extralight|light|normal|medium|semibold|bold|extrabold|black)\b")
_CSS_WEIGHT_RE = re.compile(r"font-weight\s*:\s*([a-z]+|\d{3})", re.I)
_BREAKPOINT_RE = re.compile(r"(?<![\w-])(?:sm|md|lg|xl|2xl):[\w\[]|@media\b")
_CLASS_ATTR_RE = re.compile(r"""class(?:Name)?\s*=\s*(?:\{\s*)?["'`]([^"'`]*)["'`]""")
_TEXT_HEX_RE = re.compile(r"(?<![\w:-])text-\[(#[0-9a-fA-F]{3,6})\]")
_BG_HEX_RE = re.compile(r"(?<![\w:-])bg-\[(#[0-9a-fA-F]{3,6})\]")
_CSS_BLOCK_RE = re.compile(r"\{([^{}]*)\}")
_CSS_COLOR_RE = re.compile(r"(?<![\w-])color\s*:\s*(#[0-9a-fA-F]{3,6})\b")
_CSS_BG_RE = re.compile(r"background(?:-color)?\s*:\s*(#[0-9a-fA-F]{3,6})\b")


@design_rule("visual-hero")
def _visual_hero(text: str, _min_ratio: float) -> CriterionResult:
    if _HERO_RE.search(text):
        return CriterionResult("visual-hero", True)
    return CriterionResult("visual-hero", False, "no dominant heading or hero element found")


@design_rule("weight-hierarchy")
def _weight_hierarchy(text: str, _min_ratio: float) -> CriterionResult:
    weights = {match.group(1).lower() for match in _TAILWIND_WEIGHT_RE.finditer(text)}
    weights |= {f"css:{match.group(1).lower()}" for match in _CSS_WEIGHT_RE.finditer(text)}
    if len(weights) >= 2:
        return CriterionResult("weight-hierarchy", True, details=sorted(weights))
    return CriterionResult(
        "weight-hierarchy",
        False,
        f"expected at least two distinct font weights, found {len(weights)}",
        details=sorted(weights),
    )


def color_pairs(text: str) -> list[tuple[str, str]]:
    """Explicit foreground/background hex pairs declared together."""
    pairs: list[tuple[str, str]] = []
    for match in _CLASS_ATTR_RE.finditer(text):
        classes = match.group(1)
        fg = _TEXT_HEX_RE.search(classes)
        bg = _BG_HEX_RE.search(classes)
        if fg and bg:
            pairs.append((fg.group(1), bg.group(1)))
    for match in _CSS_BLOCK_RE.finditer(text):
        body = match.group(1)
        fg = _CSS_COLOR_RE.search(body)
        bg = _CSS_BG_RE.search(body)
        if fg and bg:
            pairs.append((fg.group(1), bg.group(1)))
    return pairs


@design_rule("contrast-ratio")
def _contrast(text: str, min_ratio: float) -> CriterionResult:
    failures: list[str] = []
    for fg, bg in color_pairs(text):
        try:
            ratio = contrast_ratio(fg, bg)
        except ValueError:
            continue
        if ratio < min_ratio:
            failures.append(f"{fg} on {bg} = {ratio:.2f}:1")
    if failures:
        return CriterionResult("contrast-ratio", False, f"contrast below {min_ratio}:1", details=failures)
    return CriterionResult("contrast-ratio", True)


@design_rule("responsive-breakpoints")
def _responsive(text: str, _min_ratio: float) -> CriterionResult:
    if _BREAKPOINT_RE.search(text):
        return CriterionResult("responsive-breakpoints", True)
    return CriterionResult("responsive-breakpoints", False, "no responsive breakpoint prefixes or media queries")
