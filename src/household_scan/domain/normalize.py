import re
from typing import Any, Iterable, List, Mapping, Union

from ..logging import get_logger
from .models import RISK_AVOID, RISK_CAUTION, RISK_ORDER, RISK_SAFE

_LOG = get_logger("normalize")

_AVOID_TERMS = {"avoid", "high", "severe", "very high"}
_CAUTION_TERMS = {"caution", "moderate", "medium", "unknown"}

_NON_SLUG = re.compile(r"[^a-z0-9]+")
_NON_PRINTABLE = re.compile(r"[^\x09\x0A\x0D\x20-\x7E]")
_FALLBACK_SPLIT = re.compile(r"[,;\n]")


def slugify(value: Any) -> str:
    """Canonical id for a display name: lowercase, hyphen-delimited.

    "Sodium Lauryl-Sulfate (SLS)" -> "sodium-lauryl-sulfate-sls".
    """
    if value is None:
        return ""
    s = str(value).lower().strip()
    return _NON_SLUG.sub("-", s).strip("-")


def dedupe_names(names: Iterable[Any]) -> List[str]:
    """Keep the first occurrence per slug with its original casing.

    Names that produce an empty slug are dropped.
    """
    seen = set()
    out: List[str] = []
    for raw in names or []:
        name = str(raw or "").strip()
        slug = slugify(name)
        if not slug or slug in seen:
            continue
        seen.add(slug)
        out.append(name)
    return out


def normalize_risk(value: Any) -> str:
    """Map any risk label onto safe / caution / avoid. Never raises."""
    if value is None:
        return RISK_SAFE
    normalized = str(value).strip().lower()
    if normalized in _AVOID_TERMS:
        return RISK_AVOID
    if normalized in _CAUTION_TERMS:
        return RISK_CAUTION
    return RISK_SAFE


def _risk_of(item: Union[Mapping[str, Any], Any]) -> Any:
    if isinstance(item, Mapping):
        return item.get("risk")
    return getattr(item, "risk", None)


def get_overall_risk(items: Iterable[Any]) -> str:
    """Maximum severity across the set; "safe" when empty."""
    top = RISK_SAFE
    for item in items or []:
        risk = normalize_risk(_risk_of(item))
        if RISK_ORDER[risk] > RISK_ORDER[top]:
            top = risk
    return top


def split_ingredient_text(text: Any) -> List[str]:
    """Split raw label text on commas, semicolons and newlines."""
    return [part.strip() for part in _FALLBACK_SPLIT.split(str(text or "")) if part.strip()]


def normalize_label_text(text: Any) -> str:
    """Clean OCR output from a label photo before it is parsed.

    - Unifies line endings and replaces tabs with spaces.
    - Drops non-printable characters, pipe artifacts and ___/=== rules.
    - Collapses repeated spaces and blank-line runs.
    """
    s = str(text or "")
    s = s.replace("\r\n", "\n").replace("\r", "\n").replace("\t", " ")
    s = _NON_PRINTABLE.sub("", s)
    s = re.sub(r"[|¦]+", "", s)
    s = re.sub(r"[_=]{3,}", "", s)
    s = re.sub(r" {2,}", " ", s)
    s = re.sub(r"\n +", "\n", s)
    s = re.sub(r"\n{3,}", "\n\n", s)
    cleaned = s.strip()
    if cleaned != str(text or "").strip():
        _LOG.debug("Label text normalized: %d -> %d chars", len(str(text or "")), len(cleaned))
    return cleaned
