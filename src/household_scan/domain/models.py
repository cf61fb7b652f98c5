from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

RISK_SAFE = "safe"
RISK_CAUTION = "caution"
RISK_AVOID = "avoid"

# Severity order used for the overall risk of an ingredient set.
RISK_ORDER: Dict[str, int] = {
    RISK_SAFE: 1,
    RISK_CAUTION: 2,
    RISK_AVOID: 3,
}

LEVEL_INFO = "info"
LEVEL_CAUTION = "caution"

OVERALL_KEEP = "keep"
OVERALL_USE_WITH_CARE = "use_with_care"
OVERALL_CONSIDER_SWAP = "consider_swap"


@dataclass(frozen=True)
class SourceRef:
    title: Optional[str] = None
    url: Optional[str] = None

    def as_dict(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        if self.title:
            out["title"] = self.title
        if self.url:
            out["url"] = self.url
        return out


@dataclass
class Ingredient:
    name: str
    slug: str
    risk: str
    notes: Optional[str] = None
    regulatory_notes: Optional[str] = None
    sources: List[SourceRef] = field(default_factory=list)
    health_flags: List[str] = field(default_factory=list)
    category: Optional[str] = None
    aliases: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        """Wire shape; empty optional fields are omitted."""
        out: Dict[str, Any] = {"name": self.name, "slug": self.slug, "risk": self.risk}
        if self.notes:
            out["notes"] = self.notes
        if self.regulatory_notes:
            out["regulatoryNotes"] = self.regulatory_notes
        if self.sources:
            out["sources"] = [s.as_dict() for s in self.sources]
        if self.health_flags:
            out["healthFlags"] = list(self.health_flags)
        if self.category:
            out["category"] = self.category
        if self.aliases:
            out["aliases"] = list(self.aliases)
        return out


@dataclass(frozen=True)
class ExtractedIngredient:
    name: str
    slug: str
    risk: str
    notes: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "slug": self.slug, "risk": self.risk}
        if self.notes:
            out["notes"] = self.notes
        return out


@dataclass
class Extraction:
    """Validated structured-extractor output."""

    ingredients: List[ExtractedIngredient] = field(default_factory=list)
    summary: str = ""

    @classmethod
    def empty(cls) -> "Extraction":
        return cls(ingredients=[], summary="")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ingredients": [item.as_dict() for item in self.ingredients],
            "summary": self.summary,
        }


@dataclass
class IngredientRecord:
    """Authoritative ingredient record read from the overlay store."""

    slug: str
    name: str
    risk: str
    notes: Optional[str] = None
    regulatory_notes: str = ""
    sources: List[SourceRef] = field(default_factory=list)
    aliases: List[str] = field(default_factory=list)
    category: str = "other"
    health_flags: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "slug": self.slug,
            "risk": self.risk,
            "notes": self.notes,
            "aliases": list(self.aliases),
            "category": self.category,
            "healthFlags": list(self.health_flags),
            "regulatoryNotes": self.regulatory_notes,
            "sources": [s.as_dict() for s in self.sources],
        }


@dataclass
class ScanResult:
    ingredients: List[Ingredient]
    overall_risk: str
    summary: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ingredients": [item.as_dict() for item in self.ingredients],
            "overallRisk": self.overall_risk,
            "summary": self.summary,
        }


@dataclass(frozen=True)
class Flag:
    id: str
    title: str
    reason: str
    level: str = LEVEL_CAUTION

    def as_dict(self) -> Dict[str, str]:
        return {"id": self.id, "title": self.title, "reason": self.reason, "level": self.level}


@dataclass
class ProductScore:
    flags: List[Flag] = field(default_factory=list)
    handling_tips: List[str] = field(default_factory=list)
    overall: str = OVERALL_KEEP

    def as_dict(self) -> Dict[str, Any]:
        return {
            "flags": [f.as_dict() for f in self.flags],
            "handlingTips": list(self.handling_tips),
            "overall": self.overall,
        }


@dataclass
class ProductLabel:
    """Label data for one product, as read from a photo or typed in."""

    name: str = ""
    ingredients_raw: Optional[str] = None
    ingredients_list: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    brand: Optional[str] = None
    category: str = "other"
    confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProductLabel":
        def _str_list(value: Any) -> List[str]:
            if not isinstance(value, list):
                return []
            return [str(item) for item in value if item is not None]

        confidence = data.get("confidence")
        raw = data.get("ingredients_raw")
        brand = data.get("brand_guess", data.get("brand"))
        return cls(
            name=str(data.get("name_guess") or data.get("name") or ""),
            ingredients_raw=str(raw) if raw is not None else None,
            ingredients_list=_str_list(data.get("ingredients_list")),
            warnings=_str_list(data.get("warnings")),
            brand=str(brand) if brand else None,
            category=str(data.get("category_guess") or data.get("category") or "other"),
            confidence=float(confidence) if isinstance(confidence, (int, float)) and not isinstance(confidence, bool) else 0.0,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name_guess": self.name,
            "brand_guess": self.brand,
            "category_guess": self.category,
            "ingredients_raw": self.ingredients_raw,
            "ingredients_list": list(self.ingredients_list),
            "warnings": list(self.warnings),
            "confidence": self.confidence,
        }


_PREFERENCE_KEYS: Dict[str, str] = {
    "fragranceFree": "fragrance_free",
    "bleachFree": "bleach_free",
    "ammoniaFree": "ammonia_free",
    "avoidQuats": "avoid_quats",
    "sensitiveMode": "sensitive_mode",
}


@dataclass(frozen=True)
class Preferences:
    fragrance_free: bool = True
    bleach_free: bool = False
    ammonia_free: bool = False
    avoid_quats: bool = False
    sensitive_mode: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "Preferences":
        """Build from camelCase or snake_case keys; unknown keys are ignored.

        A key explicitly set to None keeps its default.
        """
        if not isinstance(data, Mapping):
            return cls()
        values: Dict[str, bool] = {}
        for key, value in data.items():
            attr = _PREFERENCE_KEYS.get(key, key)
            if attr in _PREFERENCE_KEYS.values() and value is not None:
                values[attr] = bool(value)
        return cls(**values)

    def as_dict(self) -> Dict[str, bool]:
        return {camel: getattr(self, attr) for camel, attr in _PREFERENCE_KEYS.items()}


@dataclass(frozen=True)
class SwapSuggestion:
    title: str
    why: str
    type: str = "pattern"

    def as_dict(self) -> Dict[str, str]:
        return {"title": self.title, "why": self.why, "type": self.type}


@dataclass(frozen=True)
class LabelImage:
    label: str
    data: bytes
    mime_type: str = "image/jpeg"
