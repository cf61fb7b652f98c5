"""Deterministic hazard flags for household cleaning products.

Each rule is a plain data record matched by substring containment against a
lowercased haystack built from the product label. No tokenization, no
stemming: "quat" also matches "quaternary".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple, Union

from ..domain.models import (
    Flag,
    LEVEL_CAUTION,
    LEVEL_INFO,
    OVERALL_CONSIDER_SWAP,
    OVERALL_KEEP,
    OVERALL_USE_WITH_CARE,
    Preferences,
    ProductLabel,
    ProductScore,
)
from ..logging import get_logger


LOG = get_logger("scan-rules")

SCOPE_ALL = "all"
SCOPE_WARNINGS = "warnings"

# Escalation to "consider_swap": at least this many flags, one of them severe.
CONSIDER_SWAP_MIN_FLAGS = 3
SEVERE_FLAG_MARKERS: Tuple[str, ...] = ("corrosive",)
SEVERE_FLAG_PREFIXES: Tuple[str, ...] = ("strong_",)


@dataclass(frozen=True)
class HazardRule:
    id: str
    title: str
    reason: str
    level: str
    terms: Tuple[str, ...]
    gate: Optional[str] = None
    tips: Tuple[str, ...] = ()
    sensitive_tips: Tuple[str, ...] = ()
    scope: str = SCOPE_ALL

    def is_enabled(self, preferences: Preferences) -> bool:
        return self.gate is None or bool(getattr(preferences, self.gate))

    def to_flag(self) -> Flag:
        return Flag(id=self.id, title=self.title, reason=self.reason, level=self.level)


# Evaluation order is part of the contract: it fixes the handling-tip sequence.
HAZARD_RULES: Tuple[HazardRule, ...] = (
    HazardRule(
        id="contains_fragrance",
        title="Contains fragrance",
        reason="Fragrance can be irritating for sensitive users. Consider fragrance free alternatives.",
        level=LEVEL_INFO,
        terms=("fragrance", "parfum", "perfume"),
        gate="fragrance_free",
    ),
    HazardRule(
        id="contains_bleach",
        title="Contains chlorine bleach",
        reason="Bleach is effective but can be harsh and can form harmful gases if mixed with acids or ammonia.",
        level=LEVEL_CAUTION,
        terms=("sodium hypochlorite", "hypochlorite", "chlorine bleach", "bleach"),
        gate="bleach_free",
        tips=("Never mix bleach with acids (vinegar) or ammonia. Ventilate well.",),
    ),
    HazardRule(
        id="contains_ammonia",
        title="Contains ammonia",
        reason="Ammonia can be irritating and should never be mixed with bleach.",
        level=LEVEL_CAUTION,
        terms=("ammonia", "ammonium hydroxide"),
        gate="ammonia_free",
        tips=("Never mix ammonia with bleach. Ventilate well.",),
    ),
    HazardRule(
        id="contains_quats",
        title="Contains quaternary ammonium compounds",
        reason="Some people prefer to avoid quats due to sensitivity concerns and residues on surfaces.",
        level=LEVEL_INFO,
        terms=(
            "benzalkonium chloride",
            "didecyldimethylammonium chloride",
            "alkyl dimethyl benzyl ammonium chloride",
            "quat",
        ),
        gate="avoid_quats",
    ),
    HazardRule(
        id="corrosive_warning",
        title="Corrosive or burn warning",
        reason="Label indicates corrosive risk. Use gloves and avoid contact with skin and eyes.",
        level=LEVEL_CAUTION,
        terms=("corrosive", "causes burns", "severe skin burns", "eye damage"),
        tips=("Use gloves. Avoid splashes. Keep away from children and pets.",),
        scope=SCOPE_WARNINGS,
    ),
    HazardRule(
        id="strong_alkali",
        title="Strong alkaline ingredient",
        reason="Strong alkalis can cause burns and should be handled carefully.",
        level=LEVEL_CAUTION,
        terms=("sodium hydroxide", "lye", "caustic"),
        tips=("Avoid contact. Rinse thoroughly. Store securely.",),
    ),
    HazardRule(
        id="strong_acid",
        title="Strong acid ingredient",
        reason="Strong acids can cause burns and release fumes. Use with ventilation.",
        level=LEVEL_CAUTION,
        terms=("hydrochloric acid", "muriatic", "sulfuric acid", "phosphoric acid"),
        tips=("Ventilate well. Avoid mixing with bleach.",),
    ),
    HazardRule(
        id="solvent_based",
        title="Solvent based cleaner",
        reason="Solvents can be irritating. Consider low odor or soap based alternatives if sensitive.",
        level=LEVEL_INFO,
        terms=("2-butoxyethanol", "glycol ether", "solvent"),
        sensitive_tips=("Ventilate well and avoid prolonged exposure.",),
    ),
    HazardRule(
        id="aerosol",
        title="Aerosol product",
        reason="Aerosols can increase inhalation exposure. Consider pump sprays or liquids.",
        level=LEVEL_INFO,
        terms=("aerosol", "propellant", "pressurized"),
    ),
)


def _norm(value: Any) -> str:
    return str(value or "").lower().strip()


def _coerce_product(product: Union[ProductLabel, Mapping[str, Any], None]) -> ProductLabel:
    if isinstance(product, ProductLabel):
        return product
    if isinstance(product, Mapping):
        return ProductLabel.from_dict(product)
    return ProductLabel()


def warnings_text(product: ProductLabel) -> str:
    return " | ".join(_norm(w) for w in product.warnings)


def build_haystack(product: ProductLabel) -> str:
    """Every text field of the label, lowercased and joined with " | "."""
    return " | ".join(
        [
            _norm(product.name),
            _norm(product.ingredients_raw),
            " ".join(str(item) for item in product.ingredients_list).lower(),
            warnings_text(product),
        ]
    )


def has_any(text: str, terms: Tuple[str, ...]) -> bool:
    t = _norm(text)
    return any(term in t for term in terms)


def rule_matches(rule: HazardRule, haystack: str, warnings: str = "") -> bool:
    target = warnings if rule.scope == SCOPE_WARNINGS else haystack
    return has_any(target, rule.terms)


def is_severe_flag(flag: Flag) -> bool:
    return any(m in flag.id for m in SEVERE_FLAG_MARKERS) or flag.id.startswith(SEVERE_FLAG_PREFIXES)


def overall_bucket(flags: List[Flag]) -> str:
    overall = OVERALL_KEEP
    if any(f.level == LEVEL_CAUTION for f in flags):
        overall = OVERALL_USE_WITH_CARE
    if len(flags) >= CONSIDER_SWAP_MIN_FLAGS and any(is_severe_flag(f) for f in flags):
        overall = OVERALL_CONSIDER_SWAP
    return overall


def score_product(
    product: Union[ProductLabel, Mapping[str, Any], None],
    preferences: Union[Preferences, Mapping[str, Any], None] = None,
    *,
    rules: Tuple[HazardRule, ...] = HAZARD_RULES,
) -> ProductScore:
    """Score one product label against the hazard rules, in table order."""
    label = _coerce_product(product)
    prefs = preferences if isinstance(preferences, Preferences) else Preferences.from_dict(preferences)

    haystack = build_haystack(label)
    warnings = warnings_text(label)

    flags: List[Flag] = []
    tips: List[str] = []
    for rule in rules:
        if not rule.is_enabled(prefs):
            continue
        if not rule_matches(rule, haystack, warnings):
            continue
        flags.append(rule.to_flag())
        tips.extend(rule.tips)
        if prefs.sensitive_mode:
            tips.extend(rule.sensitive_tips)

    score = ProductScore(flags=flags, handling_tips=tips, overall=overall_bucket(flags))
    LOG.debug(
        "Scored %r: flags=%s overall=%s",
        label.name,
        [f.id for f in flags],
        score.overall,
    )
    return score


__all__ = [
    "CONSIDER_SWAP_MIN_FLAGS",
    "HAZARD_RULES",
    "HazardRule",
    "build_haystack",
    "overall_bucket",
    "rule_matches",
    "score_product",
]
