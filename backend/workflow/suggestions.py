"""
Rule-based suggestions derived from a workflow's output.

Pure functions over the architecture and design produced by a workflow.
Every rule only fires when the data it inspects is present. Suggestions
get deterministic slug ids so the same output always yields the same
list, which also makes de-duplication trivial.

Expected shapes (all keys optional):
    architecture: {pages: [{name, route, access_control: {public},
                   sections: [{type, components}]}],
                   authentication: {required}, database: {models: [{name,
                   fields: [{name}]}]}, api: {endpoints: [{rate_limit}]},
                   integrations: [{service}]}
    design:       {color_scheme: {palette: {primary: {"500"}},
                   semantic: {background}, dark_mode}, typography:
                   {line_heights: {normal}}, accessibility: {reduced_motion},
                   layout: {grid: {columns}}, responsive: {strategy}}
"""

import re
from typing import Any, Optional

from workflow.models import Suggestion

MAX_SUGGESTIONS = 20

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def _hex_to_rgb(value: Any) -> Optional[tuple[int, int, int]]:
    if not isinstance(value, str):
        return None
    match = re.fullmatch(r"#?([0-9a-fA-F]{2})([0-9a-fA-F]{2})([0-9a-fA-F]{2})", value.strip())
    if not match:
        return None
    return tuple(int(part, 16) for part in match.groups())


def _luminance(rgb: tuple[int, int, int]) -> float:
    channels = []
    for c in rgb:
        c = c / 255
        channels.append(c / 12.92 if c <= 0.03928 else ((c + 0.055) / 1.055) ** 2.4)
    r, g, b = channels
    return 0.2126 * r + 0.7152 * g + 0.0722 * b


def contrast_ratio(color1: str, color2: str) -> Optional[float]:
    """WCAG contrast ratio of two hex colors, None if either does not parse."""
    rgb1, rgb2 = _hex_to_rgb(color1), _hex_to_rgb(color2)
    if rgb1 is None or rgb2 is None:
        return None
    l1, l2 = _luminance(rgb1), _luminance(rgb2)
    return (max(l1, l2) + 0.05) / (min(l1, l2) + 0.05)


def _dig(data: Any, *path: str, default: Any = None) -> Any:
    for key in path:
        if not isinstance(data, dict) or key not in data:
            return default
        data = data[key]
    return data


# ─── Architecture rules ───────────────────────────────────────

def _architecture_rules(architecture: dict, options: dict) -> list[Suggestion]:
    found: list[Suggestion] = []
    pages = architecture.get("pages")

    if isinstance(pages, list):
        if len(pages) < 3:
            found.append(Suggestion(
                id="add-essential-pages",
                category="ux",
                title="Add Essential Pages",
                description="Most applications need at least a home page, about page, and contact page.",
                reason="These pages help establish trust and provide necessary information.",
                priority="medium", effort="medium", impact=7, confidence=90,
                tags=["pages", "navigation"],
            ))

        if _dig(architecture, "authentication", "required") and not any(
            not _dig(p, "access_control", "public", default=True) for p in pages
        ):
            found.append(Suggestion(
                id="add-protected-routes",
                category="security",
                title="Add Protected Routes",
                description="Authentication is enabled but no pages are protected.",
                reason="Protected content adds value for authenticated users.",
                priority="high", effort="low", impact=8, confidence=95,
                tags=["authentication", "security"],
            ))

        sections = [s for p in pages for s in (p.get("sections") or [])]
        if pages and not any(s.get("type") in ("cta", "hero") for s in sections):
            found.append(Suggestion(
                id="add-call-to-action",
                category="conversion",
                title="Add Call-to-Action Sections",
                description="Pages without CTAs have lower conversion rates.",
                reason="Clear CTAs guide users toward desired actions.",
                priority="high", effort="low", impact=9, confidence=90,
                tags=["cta", "conversion", "marketing"],
            ))

    for model in _dig(architecture, "database", "models", default=[]) or []:
        field_names = {f.get("name") for f in model.get("fields") or []}
        if "created_at" not in field_names and "createdAt" not in field_names:
            name = model.get("name", "model")
            found.append(Suggestion(
                id=f"add-timestamps-{slugify(name)}",
                category="ux",
                title=f"Add Timestamps to {name}",
                description="Add created_at and updated_at fields for audit trails.",
                reason="Timestamps help with debugging, sorting, and user experience.",
                priority="low", effort="trivial", impact=5, confidence=85,
                tags=["database", "audit"],
            ))

    endpoints = _dig(architecture, "api", "endpoints", default=[]) or []
    if endpoints:
        missing = [e for e in endpoints if not e.get("rate_limit")]
        if len(missing) > len(endpoints) / 2:
            found.append(Suggestion(
                id="add-rate-limiting",
                category="security",
                title="Add Rate Limiting",
                description="Most API endpoints should have rate limiting.",
                reason="Rate limiting prevents abuse and ensures fair usage.",
                priority="high", effort="medium", impact=9, confidence=90,
                tags=["api", "security", "rate-limiting"],
            ))

    integrations = architecture.get("integrations") or []
    if options.get("industry") == "ecommerce" and not any(i.get("service") == "stripe" for i in integrations):
        found.append(Suggestion(
            id="add-payment-processing",
            category="feature",
            title="Add Payment Processing",
            description="E-commerce applications typically need payment processing.",
            reason="Stripe is a reliable and well-documented payment solution.",
            priority="high", effort="high", impact=10, source="industry", confidence=85,
            tags=["payments", "ecommerce", "integration"],
        ))

    return found


# ─── Design rules ─────────────────────────────────────────────

def _design_rules(design: dict) -> list[Suggestion]:
    found: list[Suggestion] = []

    primary = _dig(design, "color_scheme", "palette", "primary")
    if isinstance(primary, dict):
        primary_color = primary.get("500") or primary.get("DEFAULT")
    else:
        primary_color = primary
    background = _dig(design, "color_scheme", "semantic", "background")
    ratio = contrast_ratio(primary_color, background) if primary_color and background else None
    if ratio is not None and ratio < 4.5:
        found.append(Suggestion(
            id="improve-color-contrast",
            category="accessibility",
            title="Improve Color Contrast",
            description=f"Primary color contrast is {ratio:.2f}:1 against the background.",
            reason="WCAG 2.1 AA requires minimum 4.5:1 contrast ratio for text.",
            priority="critical", effort="low", impact=9, confidence=95,
            tags=["accessibility", "color", "wcag"],
        ))

    line_height = _dig(design, "typography", "line_heights", "normal")
    if isinstance(line_height, (int, float)) and line_height < 1.4:
        found.append(Suggestion(
            id="increase-line-height",
            category="typography",
            title="Increase Body Line Height",
            description="Line height for body text could be more readable.",
            reason="Optimal line height for body text is 1.5-1.7.",
            priority="medium", effort="trivial", impact=6, confidence=85,
            tags=["typography", "readability"],
        ))

    if "accessibility" in design and not _dig(design, "accessibility", "reduced_motion"):
        found.append(Suggestion(
            id="support-reduced-motion",
            category="accessibility",
            title="Support Reduced Motion",
            description="Add prefers-reduced-motion media query support.",
            reason="Users with vestibular disorders may experience discomfort.",
            priority="high", effort="low", impact=8, confidence=95,
            tags=["accessibility", "animation", "motion"],
        ))

    columns = _dig(design, "layout", "grid", "columns")
    if columns is not None and columns != 12:
        found.append(Suggestion(
            id="use-12-column-grid",
            category="layout",
            title="Use 12-Column Grid",
            description=f"The layout uses {columns} columns; 12 offers more flexibility.",
            reason="12 divides evenly by 2, 3, 4, and 6 for flexible responsive layouts.",
            priority="low", effort="medium", impact=5, confidence=70,
            tags=["layout", "grid", "responsive"],
        ))

    if "color_scheme" in design and not _dig(design, "color_scheme", "dark_mode"):
        found.append(Suggestion(
            id="add-dark-mode",
            category="ux",
            title="Add Dark Mode Support",
            description="Dark mode is increasingly expected by users.",
            reason="Dark mode reduces eye strain and is a common user preference.",
            priority="medium", effort="medium", impact=7, source="analytics", confidence=75,
            tags=["dark-mode", "ux", "theme"],
        ))

    if _dig(design, "responsive", "strategy") != "mobile-first":
        found.append(Suggestion(
            id="mobile-first",
            category="ux",
            title="Consider Mobile-First Approach",
            description="Mobile traffic often exceeds desktop traffic.",
            reason="Most web traffic comes from mobile devices.",
            priority="medium", effort="high", impact=8, source="analytics", confidence=75,
            tags=["mobile", "responsive", "strategy"],
        ))

    return found


def prioritize(suggestions: list[Suggestion], limit: int = MAX_SUGGESTIONS) -> list[Suggestion]:
    """De-duplicate by id, sort by priority then impact, keep the top ``limit``."""
    unique: dict[str, Suggestion] = {}
    for suggestion in suggestions:
        unique.setdefault(suggestion.id, suggestion)
    ordered = sorted(
        unique.values(),
        key=lambda s: (PRIORITY_ORDER.get(s.priority, len(PRIORITY_ORDER)), -s.impact),
    )
    return ordered[:limit]


def derive_suggestions(output: dict[str, Any], options: Optional[dict[str, Any]] = None) -> list[Suggestion]:
    """
    Derive improvement suggestions from a workflow output.

    Args:
        output: Workflow output (``architecture``, ``design``, ...)
        options: Workflow options; ``industry`` enables industry rules

    Returns:
        At most 20 suggestions, most important first
    """
    options = options or {}
    found: list[Suggestion] = []

    architecture = output.get("architecture")
    if isinstance(architecture, dict):
        found.extend(_architecture_rules(architecture, options))

    design = output.get("design")
    if isinstance(design, dict):
        found.extend(_design_rules(design))

    return prioritize(found)
