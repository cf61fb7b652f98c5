"""Structured ingredient extraction through the Gemini generateContent API.

The client always returns a validated structure or raises a classified
ExtractionError; deciding how to degrade is left to the caller.
"""

from __future__ import annotations

import base64
import json
import math
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from ..config import load_gemini
from ..domain.models import ExtractedIngredient, Extraction, LabelImage, ProductLabel
from ..domain.normalize import normalize_risk, slugify
from ..errors import (
    ConfigurationError,
    FatalServiceError,
    InputValidationError,
    MalformedResponseError,
    RetryableServiceError,
)
from ..logging import get_logger


LOG = get_logger("scan-extraction")

GEMINI_ENDPOINT_BASE = "https://generativelanguage.googleapis.com/v1beta"

RETRYABLE_STATUS = frozenset({429})
RETRY_BASE_SECONDS = 0.6
RETRY_JITTER_SECONDS = 0.25

BUSY_MESSAGE = "The analysis service is busy right now. Please try again in a moment."
UNAVAILABLE_MESSAGE = "The analysis service is temporarily unavailable. Please try again in a moment."

SCAN_SCHEMA_HINT = '{"ingredients":[{"name":"string","risk":"safe|caution|avoid","notes":"string"}],"summary":"string"}'
CHAT_SCHEMA_HINT = '{"answer":"string","sourceTitles":["string"]}'
PRODUCT_SCHEMA_HINT: Dict[str, Any] = {
    "products": [
        {
            "name_guess": "string",
            "brand_guess": "string|null",
            "category_guess": "cleaner|laundry|dish|other",
            "ingredients_raw": "string|null",
            "ingredients_list": ["string"],
            "warnings": ["string"],
            "confidence": 0.0,
        }
    ],
    "notes_for_user_confirmation": ["string"],
}
MAX_PRODUCTS_PER_PHOTO = 5


@dataclass(frozen=True)
class GeminiConfig:
    """Configuration set required to talk to the Gemini API."""

    api_key: str
    model_name: str
    vision_model_name: Optional[str] = None
    temperature: float = 0.1
    max_output_tokens: int = 1200
    timeout_seconds: int = 30
    max_retries: int = 2
    endpoint_base: str = GEMINI_ENDPOINT_BASE

    @classmethod
    def from_env(cls, dotenv_dir: Optional[str] = None) -> "GeminiConfig":
        settings = load_gemini(dotenv_dir)
        if not settings.api_key:
            raise ConfigurationError("Missing GEMINI_API_KEY.")
        return cls(
            api_key=settings.api_key,
            model_name=settings.model,
            vision_model_name=settings.vision_model,
        )


# ---------- retry policy ----------


def retry_delay_seconds(
    attempt: int,
    retry_after: Optional[str] = None,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt`` (0-based).

    A positive numeric Retry-After (seconds) wins; otherwise exponential
    backoff from 600 ms doubling per attempt plus 0-250 ms jitter.
    """
    if retry_after is not None:
        try:
            hinted = float(str(retry_after).strip())
        except ValueError:
            hinted = 0.0
        if math.isfinite(hinted) and hinted > 0:
            return hinted
    return RETRY_BASE_SECONDS * (2 ** attempt) + rng() * RETRY_JITTER_SECONDS


def friendly_error_message(status: Optional[int], details: str) -> str:
    """User-safe message for a failed model call."""
    upper = (details or "").upper()
    if status == 429 or "RESOURCE_EXHAUSTED" in upper:
        return BUSY_MESSAGE
    if status is None or status >= 500:
        return UNAVAILABLE_MESSAGE
    return f"Gemini API error {status}: {details}"


# ---------- tiered JSON parsing ----------

TIER_DIRECT = "direct"
TIER_FENCE_STRIPPED = "fence_stripped"
TIER_BRACE_SLICE = "brace_slice"

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"```\s*$")


@dataclass(frozen=True)
class ParseAttempt:
    tier: str
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def strip_code_fence(text: str) -> str:
    """If the model wrapped JSON in ``` or ```json fences, drop the markers."""
    cleaned = str(text or "").strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def parse_direct(text: str) -> ParseAttempt:
    try:
        return ParseAttempt(TIER_DIRECT, json.loads(str(text or "")))
    except ValueError as exc:
        return ParseAttempt(TIER_DIRECT, error=str(exc))


def parse_fence_stripped(text: str) -> ParseAttempt:
    try:
        return ParseAttempt(TIER_FENCE_STRIPPED, json.loads(strip_code_fence(text)))
    except ValueError as exc:
        return ParseAttempt(TIER_FENCE_STRIPPED, error=str(exc))


def parse_brace_slice(text: str) -> ParseAttempt:
    """Parse the slice between the first '{' and the last '}'."""
    cleaned = strip_code_fence(text)
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return ParseAttempt(TIER_BRACE_SLICE, error="no JSON object found")
    try:
        return ParseAttempt(TIER_BRACE_SLICE, json.loads(cleaned[start : end + 1]))
    except ValueError as exc:
        return ParseAttempt(TIER_BRACE_SLICE, error=str(exc))


PARSE_TIERS: Tuple[Callable[[str], ParseAttempt], ...] = (parse_direct, parse_fence_stripped, parse_brace_slice)


def parse_model_json(text: str) -> Any:
    """Run the parse tiers in order; raise MalformedResponseError if all fail."""
    attempts: List[ParseAttempt] = []
    for tier in PARSE_TIERS:
        attempt = tier(text)
        if attempt.ok:
            if attempts:
                LOG.debug("Model JSON recovered by tier=%s", attempt.tier)
            return attempt.value
        attempts.append(attempt)
    LOG.debug(
        "JSON parse failed on all tiers (%s); first 500 chars: %r",
        "; ".join(f"{a.tier}: {a.error}" for a in attempts),
        str(text or "")[:500],
    )
    raise MalformedResponseError("Gemini returned invalid JSON.")


# ---------- output hardening ----------


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def normalize_extraction(raw: Any) -> Extraction:
    """Harden model output into an Extraction.

    Missing arrays/strings default to empty, risks are normalized, slugs are
    recomputed and items without a usable name are dropped.
    """
    record = raw if isinstance(raw, Mapping) else {}
    items = record.get("ingredients")
    if not isinstance(items, list):
        items = []
    ingredients: List[ExtractedIngredient] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        name = _text(item.get("name"))
        slug = slugify(name)
        if not slug:
            continue
        notes = _text(item.get("notes"))
        ingredients.append(
            ExtractedIngredient(
                name=name,
                slug=slug,
                risk=normalize_risk(item.get("risk")),
                notes=notes or None,
            )
        )
    dropped = len(items) - len(ingredients)
    if dropped:
        LOG.debug("Dropped %d unusable ingredient item(s) from model output", dropped)
    return Extraction(ingredients=ingredients, summary=_text(record.get("summary")))


def normalize_products(raw: Any) -> Tuple[List[ProductLabel], List[str]]:
    record = raw if isinstance(raw, Mapping) else {}
    products_in = record.get("products")
    if not isinstance(products_in, list):
        products_in = []
    products = [
        ProductLabel.from_dict(p if isinstance(p, Mapping) else {})
        for p in products_in[:MAX_PRODUCTS_PER_PHOTO]
    ]
    notes_in = record.get("notes_for_user_confirmation")
    notes = [str(n) for n in notes_in if n] if isinstance(notes_in, list) else []
    return products, notes


# ---------- HTTP client ----------


class GeminiClient:
    """Thin wrapper around Gemini generateContent requests with retry and logging."""

    def __init__(
        self,
        config: GeminiConfig,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.s = session or requests.Session()
        self.s.headers.update({"Content-Type": "application/json", "X-goog-api-key": config.api_key})
        self._sleep = sleep

    def __enter__(self) -> "GeminiClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self.s.close()

    def _url(self, model: str) -> str:
        return f"{self.config.endpoint_base.rstrip('/')}/models/{model}:generateContent"

    def build_body(
        self,
        prompt: str,
        images: Sequence[LabelImage] = (),
        *,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        for image in images:
            parts.append(
                {
                    "inlineData": {
                        "mimeType": image.mime_type or "image/jpeg",
                        "data": base64.b64encode(image.data).decode("ascii"),
                    }
                }
            )
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": self.config.temperature if temperature is None else temperature,
                "maxOutputTokens": self.config.max_output_tokens if max_output_tokens is None else max_output_tokens,
            },
        }

    def _post_with_retry(self, url: str, body: Dict[str, Any]) -> requests.Response:
        attempt = 0
        while True:
            try:
                resp = self.s.post(url, json=body, timeout=self.config.timeout_seconds)
            except requests.RequestException as exc:
                LOG.error("Gemini request failed: %s", exc)
                raise FatalServiceError(UNAVAILABLE_MESSAGE, details=str(exc)) from exc
            if resp.status_code not in RETRYABLE_STATUS or attempt >= self.config.max_retries:
                return resp
            delay = retry_delay_seconds(attempt, resp.headers.get("retry-after"))
            LOG.info(
                "Gemini HTTP %s; retry %d/%d in %.2fs",
                resp.status_code,
                attempt + 1,
                self.config.max_retries,
                delay,
            )
            self._sleep(delay)
            attempt += 1

    def generate(
        self,
        prompt: str,
        *,
        images: Sequence[LabelImage] = (),
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> str:
        """Return the concatenated candidate text for one prompt."""
        model_name = model or self.config.model_name
        body = self.build_body(prompt, images, temperature=temperature, max_output_tokens=max_output_tokens)
        resp = self._post_with_retry(self._url(model_name), body)

        if not 200 <= resp.status_code < 300:
            details = resp.text or ""
            LOG.error("Gemini HTTP %s: %s", resp.status_code, details[:500])
            message = friendly_error_message(resp.status_code, details)
            if resp.status_code in RETRYABLE_STATUS or message == BUSY_MESSAGE:
                raise RetryableServiceError(message, status=resp.status_code, details=details)
            raise FatalServiceError(message, status=resp.status_code, details=details)

        try:
            payload = resp.json()
        except ValueError as exc:
            raise MalformedResponseError("Gemini returned a non-JSON HTTP body.") from exc
        return self._candidate_text(payload)

    @staticmethod
    def _candidate_text(payload: Any) -> str:
        candidates = payload.get("candidates") if isinstance(payload, Mapping) else None
        if not isinstance(candidates, list) or not candidates:
            LOG.warning("Gemini returned no candidates")
            return ""
        content = candidates[0].get("content") if isinstance(candidates[0], Mapping) else None
        parts = content.get("parts") if isinstance(content, Mapping) else None
        if not isinstance(parts, list):
            return ""
        texts = [p.get("text") for p in parts if isinstance(p, Mapping) and p.get("text")]
        return "\n".join(str(t) for t in texts)

    def generate_json(self, prompt: str, **kwargs: Any) -> Any:
        return parse_model_json(self.generate(prompt, **kwargs))


# ---------- prompts ----------


def _scan_prompt(text: str = "", names: Sequence[str] = ()) -> str:
    return (
        "You analyze household cleaner ingredients for app users. "
        "Return only valid JSON with this schema: "
        f"{SCAN_SCHEMA_HINT}. "
        "Keep notes short and practical. "
        "Never provide medical diagnosis. "
        + (f"Input text to parse: {text}" if text else f"Ingredient list to classify: {json.dumps(list(names))}")
    )


def _image_prompt() -> str:
    return (
        "You extract ingredient lists from product label photos for a household cleaner app. "
        "Return only valid JSON with this schema: "
        f"{SCAN_SCHEMA_HINT}. "
        "Only include ingredients visible on the label. "
        "Keep notes short. If none visible, return an empty ingredient list and a brief summary."
    )


def _products_prompt() -> str:
    return (
        "You extract structured label data from household cleaning product photos. "
        "Do not give medical advice. Do not claim health outcomes. "
        "Return only valid JSON, no markdown, matching the schema. "
        "If text is unclear, return low confidence and add a note asking user to retake photo. "
        f"From this image, identify up to {MAX_PRODUCTS_PER_PHOTO} cleaning products visible. "
        "For each, extract the product name (best guess), brand (if visible), "
        "category guess (cleaner, laundry, dish, other), ingredient list text, "
        "warnings and safety statements (like 'Danger', 'Corrosive', 'Do not mix'), "
        "and a confidence from 0.0 to 1.0. "
        "Normalize ingredients_list to lowercase tokens where possible. "
        f"Schema: {json.dumps(PRODUCT_SCHEMA_HINT)}"
    )


def _chat_prompt(question: str, context: str, source_titles: Sequence[str]) -> str:
    sources = "\n".join(f"- {title}" for title in source_titles)
    return (
        "You answer questions about household cleaner ingredients. "
        "Use only the provided context. "
        "If the answer is not supported by the context, say you don't have proof and suggest checking sources. "
        "Return only valid JSON with this schema: "
        f"{CHAT_SCHEMA_HINT}. "
        "Only include sourceTitles from the provided Sources list. "
        "Keep the answer short and practical. "
        f"Context:\n{context}\n\nSources:\n{sources}\n\nQuestion: {question}"
    )


# ---------- extractor ----------


class IngredientExtractor:
    """High-level extraction calls on top of a GeminiClient."""

    IMAGE_MAX_OUTPUT_TOKENS = 600
    CHAT_TEMPERATURE = 0.2
    CHAT_MAX_OUTPUT_TOKENS = 600

    def __init__(self, client: GeminiClient) -> None:
        self.client = client

    @classmethod
    def from_env(cls, dotenv_dir: Optional[str] = None) -> "IngredientExtractor":
        return cls(GeminiClient(GeminiConfig.from_env(dotenv_dir)))

    def close(self) -> None:
        self.client.close()

    def extract(
        self,
        *,
        text: Optional[str] = None,
        ingredient_names: Optional[Sequence[str]] = None,
        images: Optional[Sequence[LabelImage]] = None,
    ) -> Extraction:
        if text and text.strip():
            return self.extract_from_text(text)
        names = [str(n).strip() for n in ingredient_names or [] if str(n or "").strip()]
        if names:
            return self.classify_names(names)
        if images:
            return self.extract_from_images(images)
        raise InputValidationError("Provide text, ingredient names or images to extract from.")

    def extract_from_text(self, text: str) -> Extraction:
        LOG.info("Extracting ingredients from %d chars of label text", len(text))
        return normalize_extraction(self.client.generate_json(_scan_prompt(text=text.strip())))

    def classify_names(self, names: Sequence[str]) -> Extraction:
        LOG.info("Classifying %d ingredient name(s)", len(names))
        return normalize_extraction(self.client.generate_json(_scan_prompt(names=names)))

    def extract_from_images(self, images: Sequence[LabelImage]) -> Extraction:
        LOG.info("Extracting ingredients from %d label image(s): %s", len(images), [i.label for i in images])
        raw = self.client.generate_json(
            _image_prompt(),
            images=images,
            model=self.client.config.vision_model_name or self.client.config.model_name,
            max_output_tokens=self.IMAGE_MAX_OUTPUT_TOKENS,
        )
        return normalize_extraction(raw)

    def extract_products(self, image: LabelImage) -> Tuple[List[ProductLabel], List[str]]:
        """Product-level label data (name, ingredients, warnings) from one photo."""
        raw = self.client.generate_json(
            _products_prompt(),
            images=[image],
            model=self.client.config.vision_model_name or self.client.config.model_name,
            temperature=0.2,
        )
        if not isinstance(raw, Mapping):
            raise MalformedResponseError("Gemini returned empty output")
        products, notes = normalize_products(raw)
        LOG.info("Model reported %d product(s) on the photo", len(products))
        return products, notes

    def answer_question(self, question: str, context: str, source_titles: Sequence[str]) -> Tuple[str, List[str]]:
        raw = self.client.generate_json(
            _chat_prompt(question, context, source_titles),
            temperature=self.CHAT_TEMPERATURE,
            max_output_tokens=self.CHAT_MAX_OUTPUT_TOKENS,
        )
        record = raw if isinstance(raw, Mapping) else {}
        answer = _text(record.get("answer"))
        titles_in = record.get("sourceTitles")
        titles = [_text(t) for t in titles_in if _text(t)] if isinstance(titles_in, list) else []
        return answer, titles


__all__ = [
    "GeminiClient",
    "GeminiConfig",
    "IngredientExtractor",
    "ParseAttempt",
    "friendly_error_message",
    "normalize_extraction",
    "parse_brace_slice",
    "parse_direct",
    "parse_fence_stripped",
    "parse_model_json",
    "retry_delay_seconds",
    "strip_code_fence",
]
