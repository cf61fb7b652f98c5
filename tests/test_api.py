from __future__ import annotations

import json
from pathlib import Path

from starlette.testclient import TestClient

from household_scan.api import create_app
from household_scan.domain.models import ExtractedIngredient, Extraction, ProductLabel
from household_scan.errors import RetryableServiceError
from household_scan.orchestrator.extraction import BUSY_MESSAGE
from household_scan.orchestrator.overlay import IngredientStore
from household_scan.orchestrator.scan import FALLBACK_SUMMARY, ScanService


class StubExtractor:
    def __init__(self, busy: bool = False) -> None:
        self.busy = busy
        self.closed = False

    def _check(self):
        if self.busy:
            raise RetryableServiceError(BUSY_MESSAGE, status=429)

    def extract_from_text(self, text):
        self._check()
        return Extraction(
            ingredients=[ExtractedIngredient(name="Ammonia", slug="ammonia", risk="avoid", notes="Irritant")],
            summary="One harsh ingredient.",
        )

    def classify_names(self, names):
        self._check()
        return Extraction.empty()

    def extract_from_images(self, images):
        self._check()
        return Extraction(
            ingredients=[ExtractedIngredient(name="Water", slug="water", risk="safe")],
            summary=f"{images[0].label} label",
        )

    def extract_products(self, image):
        self._check()
        return [ProductLabel(name="Oven cleaner", ingredients_raw="sodium hydroxide")], []

    def answer_question(self, question, context, source_titles):
        return "Ventilate the room.", list(source_titles)

    def close(self):
        self.closed = True


def _client(extractor=None, store=None) -> TestClient:
    service = ScanService(extractor=extractor, overlay=store)
    app = create_app(service, store=store, allow_origins=["*"])
    return TestClient(app)


def test_health():
    resp = _client().get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "service": "household-scan-api"}


def test_scan_text_with_ai():
    resp = _client(StubExtractor()).post("/api/scan", json={"text": "Water, Ammonia"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["overallRisk"] == "avoid"
    assert body["summary"] == "One harsh ingredient."
    assert body["ingredients"] == [{"name": "Ammonia", "slug": "ammonia", "risk": "avoid", "notes": "Irritant"}]


def test_scan_text_falls_back_when_ai_busy():
    resp = _client(StubExtractor(busy=True)).post("/api/scan", json={"text": "Water, Ammonia"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["summary"] == FALLBACK_SUMMARY
    assert [i["slug"] for i in body["ingredients"]] == ["water", "ammonia"]


def test_scan_validation_errors():
    client = _client()
    assert client.post("/api/scan", json={}).status_code == 400
    assert client.post("/api/scan", json={"text": "  ", "ingredients": ["", 3]}).status_code == 200
    resp = client.post("/api/scan", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Request body must be valid JSON."


def test_analyze_requires_both_images():
    client = _client(StubExtractor())
    resp = client.post("/api/analyze", files={"image_front": ("front.jpg", b"front", "image/jpeg")})
    assert resp.status_code == 400


def test_analyze_merges_both_sides():
    client = _client(StubExtractor())
    resp = client.post(
        "/api/analyze",
        files={
            "image_front": ("front.jpg", b"front", "image/jpeg"),
            "image_back": ("back.jpg", b"back", "image/jpeg"),
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert [i["slug"] for i in body["ingredients"]] == ["water"]
    assert body["summary"] == "front label back label"


def test_analyze_surfaces_busy_message():
    client = _client(StubExtractor(busy=True))
    resp = client.post(
        "/api/analyze",
        files={
            "image_front": ("front.jpg", b"front", "image/jpeg"),
            "image_back": ("back.jpg", b"back", "image/jpeg"),
        },
    )
    assert resp.status_code == 502
    assert resp.json() == {"error": "Failed to analyze images.", "details": BUSY_MESSAGE}


def test_products_scores_detected_labels():
    client = _client(StubExtractor())
    resp = client.post(
        "/api/products",
        files={"image": ("shelf.jpg", b"shelf", "image/jpeg")},
        data={"preferences": json.dumps({"sensitiveMode": True})},
    )
    assert resp.status_code == 200
    result = resp.json()["results"][0]
    assert result["name_guess"] == "Oven cleaner"
    assert [f["id"] for f in result["flags"]] == ["strong_alkali"]
    assert result["swapSuggestions"][0]["title"] == "Milder pH cleaner for routine use"


def test_products_rejects_bad_preferences():
    client = _client(StubExtractor())
    resp = client.post(
        "/api/products",
        files={"image": ("shelf.jpg", b"shelf", "image/jpeg")},
        data={"preferences": "{oops"},
    )
    assert resp.status_code == 400


def test_score_endpoint():
    client = _client()
    resp = client.post(
        "/api/score",
        json={"product": {"name_guess": "Bleach spray", "ingredients_raw": "sodium hypochlorite"}, "preferences": {"bleachFree": True}},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert [f["id"] for f in body["flags"]] == ["contains_bleach"]
    assert body["overall"] == "use_with_care"
    assert body["handlingTips"] == ["Never mix bleach with acids (vinegar) or ammonia. Ventilate well."]
    assert client.post("/api/score", json={"preferences": {}}).status_code == 400


def test_chat_endpoint():
    client = _client(StubExtractor())
    scan = {"ingredients": [{"name": "Ammonia", "risk": "avoid", "sources": [{"title": "NIOSH"}]}]}
    resp = client.post("/api/chat", json={"question": "Is it safe?", "scan": scan})
    assert resp.status_code == 200
    assert resp.json() == {"answer": "Ventilate the room.", "sources": [{"title": "NIOSH"}]}
    assert client.post("/api/chat", json={"scan": scan}).status_code == 400


def test_ingredient_lookup(tmp_path: Path):
    store = IngredientStore(str(tmp_path / "ingredients.sqlite3"), create_schema=True)
    conn = store.open()
    conn.execute(
        "INSERT INTO ingredients (slug, name, risk_level, notes) VALUES (?, ?, ?, ?)",
        ("ammonia", "Ammonia", "high", "Do not mix with bleach."),
    )
    conn.commit()
    try:
        client = _client(store=store)
        resp = client.get("/api/ingredients", params={"slug": "Ammonia"})
        assert resp.status_code == 200
        ingredient = resp.json()["ingredient"]
        assert ingredient["risk"] == "avoid"
        assert ingredient["notes"] == "Do not mix with bleach."

        assert client.get("/api/ingredients", params={"slug": "lye"}).status_code == 404
        assert client.get("/api/ingredients").status_code == 400

        # Overlay record wins over the fallback default for text scans.
        body = client.post("/api/scan", json={"text": "Ammonia"}).json()
        assert body["ingredients"][0]["risk"] == "avoid"
    finally:
        store.close()


def test_ingredient_lookup_without_store():
    assert _client().get("/api/ingredients", params={"slug": "water"}).status_code == 503


def test_lifespan_closes_extractor():
    extractor = StubExtractor()
    with _client(extractor) as client:
        assert client.get("/api/health").status_code == 200
    assert extractor.closed
