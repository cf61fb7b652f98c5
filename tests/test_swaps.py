from __future__ import annotations

from household_scan.domain.models import Flag, Preferences, ProductLabel
from household_scan.orchestrator.rules import score_product
from household_scan.orchestrator.swaps import BASELINE_SUGGESTION, MAX_SUGGESTIONS, suggest_swaps


def test_no_flags_returns_baseline_only():
    assert suggest_swaps([]) == [BASELINE_SUGGESTION]
    assert suggest_swaps(None) == [BASELINE_SUGGESTION]


def test_bleach_and_fragrance_fill_the_cap():
    titles = [s.title for s in suggest_swaps(["contains_bleach", "contains_fragrance"])]
    assert titles == [
        "Oxygen based cleaner (non chlorine)",
        "Hydrogen peroxide bathroom cleaner",
        "Fragrance free all purpose cleaner",
        "Fragrance free dish soap or laundry detergent",
    ]
    assert len(titles) == MAX_SUGGESTIONS


def test_harsh_flags_share_one_suggestion():
    flags = [
        Flag(id="strong_acid", title="", reason=""),
        Flag(id="corrosive_warning", title="", reason=""),
    ]
    titles = [s.title for s in suggest_swaps(flags)]
    assert titles == ["Milder pH cleaner for routine use", BASELINE_SUGGESTION.title]


def test_accepts_score_and_flag_dicts():
    score = score_product(ProductLabel(ingredients_raw="propellant, benzalkonium chloride"), Preferences(avoid_quats=True))
    from_score = suggest_swaps(score)
    from_dicts = suggest_swaps([f.as_dict() for f in score.flags])
    assert from_score == from_dicts
    assert [s.title for s in from_score] == [
        "Pump spray alternative",
        "Soap based cleaner",
        BASELINE_SUGGESTION.title,
    ]
    assert all(s.as_dict()["type"] == "pattern" for s in from_score)
