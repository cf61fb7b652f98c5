from __future__ import annotations

import contextlib
import json
from typing import Any, AsyncIterator, List, Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..config import load_allowed_origins
from ..domain.models import LabelImage, Preferences, ProductLabel
from ..domain.normalize import slugify
from ..errors import ConfigurationError, ExtractionError, InputValidationError, OverlayUnavailableError
from ..logging import get_logger
from ..orchestrator.chat import answer_question
from ..orchestrator.extraction import IngredientExtractor
from ..orchestrator.overlay import IngredientStore
from ..orchestrator.scan import ScanService


LOG = get_logger("scan-api")

SERVICE_NAME = "household-scan-api"


def _error(message: str, status_code: int, details: Optional[str] = None) -> JSONResponse:
    body: dict = {"error": message}
    if details:
        body["details"] = details
    return JSONResponse(body, status_code=status_code)


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw or b"null")
    except ValueError as exc:
        raise InputValidationError("Request body must be valid JSON.") from exc


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


async def _read_image(form: Any, field: str) -> Optional[LabelImage]:
    upload = form.get(field)
    if not isinstance(upload, UploadFile):
        return None
    data = await upload.read()
    if not data:
        return None
    label = field.replace("image_", "")
    return LabelImage(label=label, data=data, mime_type=upload.content_type or "image/jpeg")


def build_default_service(dotenv_dir: Optional[str] = None) -> tuple[ScanService, Optional[IngredientStore]]:
    """Wire extractor and ingredient store from env/.env; both are optional."""
    extractor: Optional[IngredientExtractor] = None
    try:
        extractor = IngredientExtractor.from_env(dotenv_dir)
    except ConfigurationError as exc:
        LOG.warning("AI extraction disabled: %s", exc)

    store: Optional[IngredientStore] = IngredientStore.from_env(dotenv_dir)
    try:
        store.open()
    except OverlayUnavailableError as exc:
        LOG.warning("Ingredient overlay disabled: %s", exc)
        store = None
    return ScanService(extractor=extractor, overlay=store), store


def create_app(
    service: Optional[ScanService] = None,
    *,
    store: Optional[IngredientStore] = None,
    allow_origins: Optional[List[str]] = None,
    dotenv_dir: Optional[str] = None,
) -> Starlette:
    """Create a Starlette app exposing the scan pipeline as a JSON API.

    When ``service`` is omitted it is built from env/.env; a store passed in
    (or built here) is closed on shutdown.
    """
    if service is None:
        service, store = build_default_service(dotenv_dir)

    @contextlib.asynccontextmanager
    async def lifespan(_: Starlette) -> AsyncIterator[None]:
        LOG.info(
            "Scan API ready (extractor=%s, overlay=%s)",
            service.extractor is not None,
            service.overlay.enabled,
        )
        try:
            yield
        finally:
            if store is not None:
                store.close()
            if service.extractor is not None:
                service.extractor.close()
            LOG.info("Scan API shut down")

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"ok": True, "service": SERVICE_NAME})

    async def scan(request: Request) -> JSONResponse:
        try:
            body = await _json_body(request)
        except InputValidationError as exc:
            return _error(str(exc), 400)
        body = body if isinstance(body, dict) else {}
        text = body.get("text").strip() if isinstance(body.get("text"), str) else ""
        ingredients = _string_list(body.get("ingredients"))
        if not text and not ingredients:
            return _error("Body must include either text:string or ingredients:string[].", 400)
        try:
            result = await run_in_threadpool(
                service.create_scan_result,
                text=text or None,
                ingredient_names=ingredients or None,
            )
        except InputValidationError as exc:
            return _error(str(exc), 400)
        except Exception as exc:  # noqa: BLE001 - surfaced as a classified 500
            LOG.exception("Scan failed")
            return _error("Failed to process scan.", 500, str(exc))
        return JSONResponse(result.as_dict())

    async def analyze(request: Request) -> JSONResponse:
        try:
            form = await request.form()
        except Exception as exc:  # noqa: BLE001 - malformed multipart body
            return _error("Request body must be multipart/form-data.", 400, str(exc))
        front = await _read_image(form, "image_front")
        back = await _read_image(form, "image_back")
        if front is None or back is None:
            return _error("Missing images. Provide image_front and image_back.", 400)
        try:
            result = await run_in_threadpool(service.analyze_label_images, front, back)
        except ExtractionError as exc:
            return _error("Failed to analyze images.", 502, str(exc))
        except Exception as exc:  # noqa: BLE001 - surfaced as a classified 500
            LOG.exception("Image analysis failed")
            return _error("Failed to analyze images.", 500, str(exc))
        return JSONResponse(result.as_dict())

    async def products(request: Request) -> JSONResponse:
        try:
            form = await request.form()
        except Exception as exc:  # noqa: BLE001 - malformed multipart body
            return _error("Request body must be multipart/form-data.", 400, str(exc))
        image = await _read_image(form, "image")
        if image is None:
            return _error("Missing image file. Attach as form field: image", 400)
        raw_prefs = form.get("preferences")
        preferences = None
        if isinstance(raw_prefs, str) and raw_prefs.strip():
            try:
                preferences = json.loads(raw_prefs)
            except ValueError:
                return _error("preferences must be valid JSON string", 400)
        try:
            payload = await run_in_threadpool(service.analyze_product_photo, image, preferences)
        except ExtractionError as exc:
            return _error("Failed to analyze image.", 502, str(exc))
        except Exception as exc:  # noqa: BLE001 - surfaced as a classified 500
            LOG.exception("Product photo analysis failed")
            return _error("Failed to analyze image.", 500, str(exc))
        if not payload["results"]:
            payload["message"] = "No products detected with confidence. Try closer photo of one label."
        return JSONResponse(payload)

    async def score(request: Request) -> JSONResponse:
        try:
            body = await _json_body(request)
        except InputValidationError as exc:
            return _error(str(exc), 400)
        body = body if isinstance(body, dict) else {}
        product = body.get("product")
        if not isinstance(product, dict):
            return _error("Body must include product:object.", 400)
        preferences = Preferences.from_dict(body.get("preferences"))
        payload = service.score_label(ProductLabel.from_dict(product), preferences)
        return JSONResponse(payload)

    async def chat(request: Request) -> JSONResponse:
        try:
            body = await _json_body(request)
        except InputValidationError as exc:
            return _error(str(exc), 400)
        body = body if isinstance(body, dict) else {}
        question = body.get("question") if isinstance(body.get("question"), str) else ""
        scan_payload = body.get("scan") if isinstance(body.get("scan"), dict) else {}
        try:
            payload = await run_in_threadpool(answer_question, service.extractor, question, scan_payload)
        except InputValidationError as exc:
            return _error(str(exc), 400)
        except Exception as exc:  # noqa: BLE001 - surfaced as a classified 500
            LOG.exception("Question answering failed")
            return _error("Failed to answer question.", 500, str(exc))
        return JSONResponse(payload)

    async def ingredient(request: Request) -> JSONResponse:
        slug = slugify(request.query_params.get("slug") or "")
        if not slug:
            return _error("Missing slug query parameter.", 400)
        if store is None:
            return _error("Ingredient store is not configured. Set INGREDIENT_DB_PATH.", 503)
        try:
            record = await run_in_threadpool(store.get, slug)
        except OverlayUnavailableError as exc:
            return _error("Failed to fetch ingredient.", 503, str(exc))
        if record is None:
            return _error("Ingredient not found.", 404)
        return JSONResponse({"ok": True, "ingredient": record.as_dict()})

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/scan", scan, methods=["POST"]),
        Route("/api/analyze", analyze, methods=["POST"]),
        Route("/api/products", products, methods=["POST"]),
        Route("/api/score", score, methods=["POST"]),
        Route("/api/chat", chat, methods=["POST"]),
        Route("/api/ingredients", ingredient, methods=["GET"]),
    ]

    app = Starlette(debug=False, routes=routes, lifespan=lifespan)

    origins = allow_origins or load_allowed_origins(dotenv_dir)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in origins else origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    return app


__all__ = ["create_app", "build_default_service"]
