"""Questions answered strictly from an already computed scan."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from ..domain.models import ScanResult, SourceRef
from ..errors import FatalServiceError, InputValidationError
from ..logging import get_logger
from .extraction import UNAVAILABLE_MESSAGE, IngredientExtractor


LOG = get_logger("scan-chat")

NO_PROOF_ANSWER = "I don't have enough proof to answer that."


def _field(item: Any, *names: str) -> Any:
    for name in names:
        if isinstance(item, Mapping):
            if name in item:
                return item[name]
        elif hasattr(item, name):
            return getattr(item, name)
    return None


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def collect_sources(ingredients: Sequence[Any]) -> List[SourceRef]:
    """Unique sources across the scan, by case-insensitive (title, url)."""
    seen = set()
    sources: List[SourceRef] = []
    for ingredient in ingredients or []:
        items = _field(ingredient, "sources")
        for source in items if isinstance(items, list) else []:
            title = _text(_field(source, "title"))
            url = _text(_field(source, "url"))
            if not title and not url:
                continue
            key = (title.lower(), url.lower())
            if key in seen:
                continue
            seen.add(key)
            sources.append(SourceRef(title=title or None, url=url or None))
    return sources


def build_context(summary: str, overall_risk: str, ingredients: Sequence[Any]) -> str:
    lines: List[str] = []
    if summary:
        lines.append(f"Summary: {summary}")
    if overall_risk:
        lines.append(f"Overall risk: {overall_risk}")
    if ingredients:
        lines.append("Ingredients:")
        for ingredient in ingredients:
            name = _text(_field(ingredient, "name"))
            if not name:
                continue
            risk = _text(_field(ingredient, "risk"))
            notes = _text(_field(ingredient, "notes"))
            regulatory = _text(_field(ingredient, "regulatory_notes", "regulatoryNotes"))
            extras = "; ".join(
                part
                for part in (
                    f"risk: {risk}" if risk else "",
                    f"notes: {notes}" if notes else "",
                    f"regulatory: {regulatory}" if regulatory else "",
                )
                if part
            )
            lines.append(f"- {name} ({extras})" if extras else f"- {name}")
    return "\n".join(lines)


def answer_question(
    extractor: Optional[IngredientExtractor],
    question: str,
    scan: Union[ScanResult, Mapping[str, Any], None],
) -> Dict[str, Any]:
    """Answer ``question`` using only ``scan``; cited sources come from the scan itself."""
    question = _text(question)
    if not question:
        raise InputValidationError("Missing question.")
    if extractor is None:
        raise FatalServiceError(UNAVAILABLE_MESSAGE, details="no extractor configured")

    ingredients = _field(scan, "ingredients") if scan is not None else None
    ingredients = ingredients if isinstance(ingredients, list) else []
    summary = _text(_field(scan, "summary")) if scan is not None else ""
    overall = _text(_field(scan, "overall_risk", "overallRisk")) if scan is not None else ""

    sources = collect_sources(ingredients)
    context = build_context(summary, overall, ingredients)
    titles = [s.title for s in sources if s.title]

    answer, cited = extractor.answer_question(question, context, titles)

    by_title: Dict[str, SourceRef] = {}
    for source in sources:
        if source.title:
            by_title.setdefault(source.title.lower(), source)
    matched = [by_title[t.lower()] for t in cited if t.lower() in by_title]
    if len(matched) < len(cited):
        LOG.info("Dropped %d cited title(s) not present in the scan", len(cited) - len(matched))

    return {
        "answer": answer or NO_PROOF_ANSWER,
        "sources": [s.as_dict() for s in matched],
    }


__all__ = ["NO_PROOF_ANSWER", "answer_question", "build_context", "collect_sources"]
