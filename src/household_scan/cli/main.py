from __future__ import annotations

import argparse
import json
import mimetypes
import os
import sys
from typing import Optional, Sequence, Tuple

from ..domain.models import LabelImage, Preferences, ProductLabel
from ..errors import ConfigurationError, ExtractionError, HouseholdScanError, OverlayUnavailableError
from ..logging import get_logger
from ..orchestrator.extraction import IngredientExtractor
from ..orchestrator.overlay import IngredientStore
from ..orchestrator.scan import ScanService
from ..paths import expand_abs

LOG = get_logger("cli-main")


def _print_json(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _load_json_arg(value: Optional[str]) -> Optional[dict]:
    """Accept inline JSON or a path to a JSON file."""
    if not value:
        return None
    candidate = expand_abs(value)
    if os.path.isfile(candidate):
        with open(candidate, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    else:
        data = json.loads(value)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


def _read_label_image(path: str, label: str) -> LabelImage:
    full = expand_abs(path)
    with open(full, "rb") as fh:
        data = fh.read()
    mime = mimetypes.guess_type(full)[0] or "image/jpeg"
    return LabelImage(label=label, data=data, mime_type=mime)


def _build_service(use_ai: bool, use_overlay: bool = True) -> Tuple[ScanService, Optional[IngredientStore]]:
    extractor: Optional[IngredientExtractor] = None
    if use_ai:
        try:
            extractor = IngredientExtractor.from_env(os.getcwd())
        except ConfigurationError as exc:
            LOG.warning(f"AI extraction disabled: {exc}")
    store: Optional[IngredientStore] = None
    if use_overlay:
        store = IngredientStore.from_env(os.getcwd())
        try:
            store.open()
        except OverlayUnavailableError as exc:
            LOG.warning(f"Ingredient overlay disabled: {exc}")
            store = None
    return ScanService(extractor=extractor, overlay=store), store


def _shutdown(service: ScanService, store: Optional[IngredientStore]) -> None:
    if store is not None:
        store.close()
    if service.extractor is not None:
        service.extractor.close()


def _handle_scan(ns: argparse.Namespace) -> int:
    text = ns.text
    if ns.text_file:
        with open(expand_abs(ns.text_file), "r", encoding="utf-8") as fh:
            text = fh.read()
    names = ns.ingredients or []
    if not (text or "").strip() and not names:
        LOG.error("Provide --text/--text-file or at least one --ingredient.")
        return 2
    service, store = _build_service(use_ai=not ns.no_ai, use_overlay=not ns.no_overlay)
    try:
        result = service.create_scan_result(text=text, ingredient_names=names)
    finally:
        _shutdown(service, store)
    _print_json(result.as_dict())
    return 0


def _handle_analyze(ns: argparse.Namespace) -> int:
    front = _read_label_image(ns.front, "front")
    back = _read_label_image(ns.back, "back")
    service, store = _build_service(use_ai=True, use_overlay=not ns.no_overlay)
    try:
        result = service.analyze_label_images(front, back)
    except ExtractionError as exc:
        LOG.error(f"Image analysis failed: {exc}")
        return 1
    finally:
        _shutdown(service, store)
    _print_json(result.as_dict())
    return 0


def _handle_products(ns: argparse.Namespace) -> int:
    image = _read_label_image(ns.image, "photo")
    preferences = Preferences.from_dict(_load_json_arg(ns.preferences_json))
    service, store = _build_service(use_ai=True, use_overlay=False)
    try:
        payload = service.analyze_product_photo(image, preferences)
    except ExtractionError as exc:
        LOG.error(f"Product photo analysis failed: {exc}")
        return 1
    finally:
        _shutdown(service, store)
    _print_json(payload)
    return 0


def _handle_score(ns: argparse.Namespace) -> int:
    try:
        product = _load_json_arg(ns.product_json)
        preferences = _load_json_arg(ns.preferences_json)
    except (OSError, ValueError) as exc:
        LOG.error(f"Invalid JSON argument: {exc}")
        return 2
    if product is None:
        LOG.error("--product-json is required")
        return 2
    service = ScanService()
    _print_json(service.score_label(ProductLabel.from_dict(product), Preferences.from_dict(preferences)))
    return 0


def _handle_ingredient(ns: argparse.Namespace) -> int:
    store = IngredientStore(expand_abs(ns.db)) if ns.db else IngredientStore.from_env(os.getcwd())
    try:
        with store:
            record = store.get(ns.slug)
    except OverlayUnavailableError as exc:
        LOG.error(str(exc))
        return 1
    if record is None:
        LOG.error(f"Ingredient not found: {ns.slug}")
        return 1
    _print_json(record.as_dict())
    return 0


def _handle_init_db(ns: argparse.Namespace) -> int:
    store = IngredientStore(expand_abs(ns.db) if ns.db else None, create_schema=True)
    with store:
        LOG.info(f"Ingredient store ready at: {store.db_path}")
    print(store.db_path)
    return 0


def _handle_serve(ns: argparse.Namespace) -> int:
    from ..api import create_app
    import uvicorn

    allow_origins = ns.allow_origins
    if allow_origins and "*" in allow_origins:
        allow_origins = ["*"]

    app = create_app(allow_origins=allow_origins, dotenv_dir=os.getcwd())
    uvicorn.run(
        app,
        host=ns.host,
        port=ns.port,
        log_level=ns.log_level,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="household-scan",
        description="Resolve household cleaning-product labels into ingredient risk reports.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Resolve label text or ingredient names into a scan result.")
    scan.add_argument("--text", help="Raw label text (ingredients section)")
    scan.add_argument("--text-file", help="Read label text from a file")
    scan.add_argument("--ingredient", action="append", dest="ingredients", help="Ingredient name (repeatable)")
    scan.add_argument("--no-ai", action="store_true", help="Skip Gemini and use the local fallback parser")
    scan.add_argument("--no-overlay", action="store_true", help="Do not consult the ingredient store")
    scan.set_defaults(handler=_handle_scan)

    analyze = subparsers.add_parser("analyze", help="Extract ingredients from front and back label photos.")
    analyze.add_argument("--front", required=True)
    analyze.add_argument("--back", required=True)
    analyze.add_argument("--no-overlay", action="store_true")
    analyze.set_defaults(handler=_handle_analyze)

    products = subparsers.add_parser("products", help="Detect products on one photo and score each label.")
    products.add_argument("--image", required=True)
    products.add_argument("--preferences-json", help="Inline JSON or path to a JSON file")
    products.set_defaults(handler=_handle_products)

    score = subparsers.add_parser("score", help="Run the hazard rules on a product label (no AI).")
    score.add_argument("--product-json", required=True, help="Inline JSON or path to a JSON file")
    score.add_argument("--preferences-json", help="Inline JSON or path to a JSON file")
    score.set_defaults(handler=_handle_score)

    ingredient = subparsers.add_parser("ingredient", help="Look up one ingredient record by slug.")
    ingredient.add_argument("--slug", required=True)
    ingredient.add_argument("--db", help="Override INGREDIENT_DB_PATH")
    ingredient.set_defaults(handler=_handle_ingredient)

    init_db = subparsers.add_parser("init-db", help="Create the ingredient store schema if missing.")
    init_db.add_argument("--db", help="Override INGREDIENT_DB_PATH")
    init_db.set_defaults(handler=_handle_init_db)

    serve = subparsers.add_parser("serve", help="Run the scan JSON API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8787)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_handle_serve)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")

    args = build_parser().parse_args(provided)
    try:
        code = args.handler(args)
    except HouseholdScanError as exc:
        LOG.error(f"{args.command} failed: {exc}")
        code = 1
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
