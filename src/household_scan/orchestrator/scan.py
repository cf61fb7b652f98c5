from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from ..domain.models import (
    ExtractedIngredient,
    Extraction,
    Ingredient,
    LabelImage,
    Preferences,
    ProductLabel,
    RISK_AVOID,
    RISK_CAUTION,
    RISK_SAFE,
    ScanResult,
)
from ..domain.normalize import (
    dedupe_names,
    get_overall_risk,
    normalize_label_text,
    normalize_risk,
    slugify,
    split_ingredient_text,
)
from ..errors import FatalServiceError, InputValidationError
from ..logging import get_logger
from .extraction import UNAVAILABLE_MESSAGE, IngredientExtractor
from .overlay import IngredientOverlay, OverlayLookup
from .rules import score_product
from .swaps import suggest_swaps


LOG = get_logger("scan-aggregator")

FALLBACK_SUMMARY = "Fallback parser used because AI extraction was unavailable."
EMPTY_SUMMARY = "No recognizable ingredients were found in this scan."


def fallback_extraction(text: str) -> Extraction:
    """Non-AI split of raw label text; every item is marked caution."""
    ingredients = [
        ExtractedIngredient(name=name, slug=slugify(name), risk=RISK_CAUTION)
        for name in split_ingredient_text(text)
        if slugify(name)
    ]
    return Extraction(ingredients=ingredients, summary=FALLBACK_SUMMARY)


def summarize_ingredients(ingredients: Sequence[Ingredient]) -> str:
    if not ingredients:
        return EMPTY_SUMMARY
    counts: Dict[str, int] = {RISK_AVOID: 0, RISK_CAUTION: 0, RISK_SAFE: 0}
    for item in ingredients:
        counts[item.risk] = counts.get(item.risk, 0) + 1
    return (
        f"Detected {len(ingredients)} ingredient(s): {counts[RISK_AVOID]} avoid, "
        f"{counts[RISK_CAUTION]} caution, {counts[RISK_SAFE]} safe."
    )


def merge_extractions(parts: Sequence[Extraction]) -> Extraction:
    """Concatenate per-image extractions in order; summaries joined by a space."""
    ingredients: List[ExtractedIngredient] = []
    summaries: List[str] = []
    for part in parts:
        ingredients.extend(part.ingredients)
        if part.summary and part.summary not in summaries:
            summaries.append(part.summary)
    return Extraction(ingredients=ingredients, summary=" ".join(summaries))


class ScanService:
    """Resolve a scan request into one ScanResult.

    Sources in decreasing trust: overlay record, AI extraction, local default.
    The extractor and the overlay are both optional; without them the
    service still answers from the fallback parser and defaults.
    """

    def __init__(
        self,
        extractor: Optional[IngredientExtractor] = None,
        overlay: Union[OverlayLookup, IngredientOverlay, None] = None,
        *,
        classify_names: bool = True,
    ) -> None:
        self.extractor = extractor
        self.overlay = overlay if isinstance(overlay, OverlayLookup) else OverlayLookup(overlay)
        self.classify_names = classify_names

    # ---- extraction source selection ---------------------------------------------
    def _extract_text(self, text: str) -> Extraction:
        if self.extractor is None:
            LOG.warning("No extractor configured; using fallback parser")
            return fallback_extraction(text)
        try:
            return self.extractor.extract_from_text(text)
        except Exception as exc:  # noqa: BLE001 - any extractor failure degrades to the fallback parser
            LOG.warning("AI extraction failed; using fallback parser: %s", exc)
            return fallback_extraction(text)

    def _classify_names(self, names: Sequence[str]) -> Extraction:
        if self.extractor is None or not self.classify_names:
            return Extraction.empty()
        try:
            return self.extractor.classify_names(names)
        except Exception as exc:  # noqa: BLE001 - classification is optional
            LOG.warning("AI classification failed; relying on overlay/defaults: %s", exc)
            return Extraction.empty()

    def _resolve_ingredient(self, name: str, ai: Optional[ExtractedIngredient]) -> Ingredient:
        slug = slugify(name)
        record = self.overlay.lookup(slug)
        if record is not None:
            LOG.debug("Overlay record used for %s (risk=%s)", slug, record.risk)
            return Ingredient(
                name=record.name,
                slug=record.slug,
                risk=normalize_risk(record.risk),
                notes=record.notes or (ai.notes if ai else None),
                regulatory_notes=record.regulatory_notes or None,
                sources=list(record.sources),
                health_flags=list(record.health_flags),
                category=record.category,
                aliases=list(record.aliases),
            )
        return Ingredient(
            name=name,
            slug=slug,
            risk=normalize_risk(ai.risk if ai else RISK_CAUTION),
            notes=ai.notes if ai else None,
        )

    # ---- public API ----------------------------------------------------------------
    def create_scan_result(
        self,
        text: Optional[str] = None,
        ingredient_names: Optional[Sequence[Any]] = None,
        precomputed: Optional[Extraction] = None,
    ) -> ScanResult:
        text = normalize_label_text(text)
        names = [str(n).strip() for n in ingredient_names or [] if str(n or "").strip()]

        if precomputed is not None:
            extraction = precomputed
        elif text:
            extraction = self._extract_text(text)
        elif names:
            extraction = self._classify_names(names)
        else:
            raise InputValidationError("Body must include either text:string or ingredients:string[].")

        source_names = [item.name for item in extraction.ingredients] if extraction.ingredients else names
        unique_names = dedupe_names(source_names)
        ai_by_slug: Dict[str, ExtractedIngredient] = {}
        for item in extraction.ingredients:
            ai_by_slug.setdefault(item.slug, item)

        ingredients = [self._resolve_ingredient(name, ai_by_slug.get(slugify(name))) for name in unique_names]
        summary = extraction.summary or summarize_ingredients(ingredients)
        result = ScanResult(ingredients=ingredients, overall_risk=get_overall_risk(ingredients), summary=summary)
        LOG.info("Scan resolved %d ingredient(s); overall=%s", len(ingredients), result.overall_risk)
        return result

    def analyze_label_images(self, front: LabelImage, back: LabelImage) -> ScanResult:
        """Extract both label faces concurrently and build one result.

        One failing side is tolerated; if both fail, the front error is raised.
        """
        if self.extractor is None:
            raise FatalServiceError(UNAVAILABLE_MESSAGE, details="no extractor configured")
        extractor = self.extractor
        sides = [front, back]
        with ThreadPoolExecutor(max_workers=len(sides), thread_name_prefix="label") as pool:
            futures = [pool.submit(extractor.extract_from_images, [image]) for image in sides]

        parts: List[Extraction] = []
        errors: List[Exception] = []
        for image, future in zip(sides, futures):
            try:
                parts.append(future.result())
            except Exception as exc:  # noqa: BLE001 - one failed side must not discard the other
                LOG.warning("Label image %s failed: %s", image.label, exc)
                errors.append(exc)
        if not parts:
            raise errors[0]
        return self.create_scan_result(precomputed=merge_extractions(parts))

    def score_label(
        self,
        product: Union[ProductLabel, Mapping[str, Any]],
        preferences: Union[Preferences, Mapping[str, Any], None] = None,
    ) -> Dict[str, Any]:
        """Rule-engine score plus swap suggestions for one product label."""
        prefs = preferences if isinstance(preferences, Preferences) else Preferences.from_dict(preferences)
        scored = score_product(product, prefs)
        payload = scored.as_dict()
        payload["swapSuggestions"] = [s.as_dict() for s in suggest_swaps(scored, prefs)]
        return payload

    def analyze_product_photo(
        self,
        image: LabelImage,
        preferences: Union[Preferences, Mapping[str, Any], None] = None,
    ) -> Dict[str, Any]:
        """Detect the products on one photo and score each of them.

        Extraction errors propagate; there is no local fallback for photos.
        """
        if self.extractor is None:
            raise FatalServiceError(UNAVAILABLE_MESSAGE, details="no extractor configured")
        products, notes = self.extractor.extract_products(image)
        results = []
        for product in products:
            entry = product.as_dict()
            entry.update(self.score_label(product, preferences))
            results.append(entry)
        if not results:
            LOG.info("No products detected on photo %s", image.label)
        return {"results": results, "notesForUserConfirmation": notes}


def create_scan_result(
    text: Optional[str] = None,
    ingredient_names: Optional[Sequence[Any]] = None,
    precomputed: Optional[Extraction] = None,
    *,
    extractor: Optional[IngredientExtractor] = None,
    overlay: Union[OverlayLookup, IngredientOverlay, None] = None,
) -> ScanResult:
    """One-shot convenience wrapper around ScanService."""
    service = ScanService(extractor=extractor, overlay=overlay)
    return service.create_scan_result(text=text, ingredient_names=ingredient_names, precomputed=precomputed)


__all__ = [
    "EMPTY_SUMMARY",
    "FALLBACK_SUMMARY",
    "ScanService",
    "create_scan_result",
    "fallback_extraction",
    "merge_extractions",
    "summarize_ingredients",
]
