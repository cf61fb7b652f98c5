from __future__ import annotations

from household_scan.domain.models import Preferences, ProductLabel
from household_scan.orchestrator.rules import HAZARD_RULES, build_haystack, score_product


def _ids(score):
    return [f.id for f in score.flags]


def test_rule_table_order_is_fixed():
    assert [r.id for r in HAZARD_RULES] == [
        "contains_fragrance",
        "contains_bleach",
        "contains_ammonia",
        "contains_quats",
        "corrosive_warning",
        "strong_alkali",
        "strong_acid",
        "solvent_based",
        "aerosol",
    ]


def test_plain_soap_keeps():
    product = ProductLabel(name="Castile soap", ingredients_list=["water", "potassium oleate"])
    score = score_product(product, Preferences())
    assert score.flags == []
    assert score.handling_tips == []
    assert score.overall == "keep"


def test_fragrance_flag_is_info_and_gated():
    product = {"name_guess": "Lavender spray", "ingredients_raw": "Water, Parfum"}
    score = score_product(product)
    assert _ids(score) == ["contains_fragrance"]
    assert score.flags[0].level == "info"
    assert score.overall == "keep"

    score = score_product(product, {"fragranceFree": False})
    assert score.flags == []


def test_bleach_requires_preference_gate():
    product = ProductLabel(name="Toilet gel", ingredients_raw="Sodium Hypochlorite 4.5%")
    assert score_product(product, Preferences()).flags == []

    score = score_product(product, Preferences(bleach_free=True))
    assert _ids(score) == ["contains_bleach"]
    assert score.overall == "use_with_care"
    assert score.handling_tips == ["Never mix bleach with acids (vinegar) or ammonia. Ventilate well."]


def test_quat_matches_as_substring():
    product = ProductLabel(ingredients_list=["Quaternary ammonium compounds"])
    score = score_product(product, Preferences(fragrance_free=False, avoid_quats=True))
    assert _ids(score) == ["contains_quats"]


def test_corrosive_only_from_warnings():
    in_name = ProductLabel(name="Not corrosive formula", ingredients_raw="water")
    assert "corrosive_warning" not in _ids(score_product(in_name))

    in_warnings = ProductLabel(name="Drain opener", warnings=["DANGER: Causes severe skin burns and eye damage"])
    score = score_product(in_warnings)
    assert _ids(score) == ["corrosive_warning"]
    assert score.overall == "use_with_care"


def test_strong_product_escalates_to_consider_swap():
    product = ProductLabel(
        name="Heavy duty drain cleaner",
        ingredients_raw="Sodium Hydroxide, Sodium Hypochlorite, fragrance",
        warnings=["Corrosive. Causes burns."],
    )
    score = score_product(product, Preferences(bleach_free=True))
    assert _ids(score) == ["contains_fragrance", "contains_bleach", "corrosive_warning", "strong_alkali"]
    assert score.overall == "consider_swap"
    assert score.handling_tips == [
        "Never mix bleach with acids (vinegar) or ammonia. Ventilate well.",
        "Use gloves. Avoid splashes. Keep away from children and pets.",
        "Avoid contact. Rinse thoroughly. Store securely.",
    ]


def test_three_info_flags_do_not_escalate():
    product = ProductLabel(ingredients_raw="fragrance, 2-butoxyethanol, propellant")
    score = score_product(product)
    assert _ids(score) == ["contains_fragrance", "solvent_based", "aerosol"]
    assert score.overall == "keep"


def test_sensitive_mode_adds_solvent_tip():
    product = ProductLabel(ingredients_raw="Glycol ether solvent blend")
    assert score_product(product).handling_tips == []

    score = score_product(product, Preferences(sensitive_mode=True))
    assert score.handling_tips == ["Ventilate well and avoid prolonged exposure."]


def test_haystack_joins_all_fields_lowercased():
    product = ProductLabel(
        name="Glass CLEANER",
        ingredients_raw="Water, Ammonia",
        ingredients_list=["Water", "Ammonia"],
        warnings=["Keep Out Of Reach"],
    )
    assert build_haystack(product) == "glass cleaner | water, ammonia | water ammonia | keep out of reach"


def test_score_as_dict_shape():
    payload = score_product(ProductLabel(ingredients_raw="muriatic acid")).as_dict()
    assert payload["overall"] == "use_with_care"
    assert payload["flags"][0] == {
        "id": "strong_acid",
        "title": "Strong acid ingredient",
        "reason": "Strong acids can cause burns and release fumes. Use with ventilation.",
        "level": "caution",
    }
    assert payload["handlingTips"] == ["Ventilate well. Avoid mixing with bleach."]


def test_severe_flag_below_threshold_stays_use_with_care():
    product = ProductLabel(ingredients_raw="lye", warnings=["Corrosive"])
    score = score_product(product)
    assert _ids(score) == ["corrosive_warning", "strong_alkali"]
    assert score.overall == "use_with_care"


def test_three_flags_with_one_strong_escalates():
    product = ProductLabel(ingredients_raw="fragrance, propellant, muriatic acid")
    score = score_product(product)
    assert _ids(score) == ["contains_fragrance", "strong_acid", "aerosol"]
    assert score.overall == "consider_swap"
