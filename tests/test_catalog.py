"""
Tests for IOC catalog loading, validation and the evaluator registry.
"""

from __future__ import annotations

import json

import pytest

from m365_identity_risk.indicators import (
    EVALUATORS,
    CatalogError,
    IndicatorFamily,
    catalog_from_dict,
    load_catalog,
    register,
)
from m365_identity_risk.scoring import RiskLevel


def _doc(indicators=None, scoring=None) -> dict:
    doc = {
        "version": "test",
        "indicators": indicators if indicators is not None else [
            {"id": "UR-01", "family": "UserRisk", "points": 3},
            {"id": "SR-01", "family": "SignInRisk", "points": 3},
        ],
    }
    if scoring is not None:
        doc["scoring"] = scoring
    return doc


def test_packaged_catalog_loads(catalog):
    assert catalog.version
    assert len(catalog.family(IndicatorFamily.USER_RISK)) == 8
    assert len(catalog.family(IndicatorFamily.SIGN_IN_RISK)) == 16
    assert {d.id for d in catalog} == set(EVALUATORS)
    assert catalog.get("UR-01").base_points == 3
    assert catalog.get("SR-15").mitigating
    assert catalog.get("SR-16").mitigating


def test_packaged_catalog_default_scoring(catalog):
    thresholds = catalog.settings.thresholds
    assert thresholds.level_for(10) == RiskLevel.CRITICAL
    assert thresholds.level_for(7) == RiskLevel.HIGH
    assert thresholds.level_for(4) == RiskLevel.MEDIUM
    assert thresholds.level_for(1) == RiskLevel.LOW
    assert thresholds.level_for(0) == RiskLevel.NONE
    weights = catalog.settings.weights
    assert (weights.user_risk, weights.high_sign_in_risk, weights.sign_in_cap) == (2, 4, 3)
    assert catalog.settings.allow_negative_totals is False


def test_only_abuse_reported_ip_is_scaled(catalog):
    scaled = [d.id for d in catalog if d.scaling is not None]
    assert scaled == ["SR-11"]
    sr11 = catalog.get("SR-11")
    assert sr11.points_for({"abuse_score": 95}) == 3
    assert sr11.points_for({"abuse_score": 80}) == 2
    assert sr11.points_for({"abuse_score": 60}) == 1
    assert sr11.points_for({"abuse_score": 30}) == sr11.base_points
    assert sr11.points_for({}) == sr11.base_points


def test_indicators_sorted_by_id():
    catalog = catalog_from_dict(_doc(indicators=[
        {"id": "SR-02", "family": "SignInRisk", "points": 2},
        {"id": "sr-01", "family": "SignInRisk", "points": 3},
    ]))
    assert [d.id for d in catalog] == ["SR-01", "SR-02"]


def test_unknown_indicator_id_is_rejected():
    with pytest.raises(CatalogError, match="SR-99"):
        catalog_from_dict(_doc(indicators=[{"id": "SR-99", "family": "SignInRisk", "points": 1}]))


def test_unknown_id_allowed_without_evaluators():
    catalog = catalog_from_dict(
        _doc(indicators=[{"id": "SR-99", "family": "SignInRisk", "points": 1}]),
        require_evaluators=False,
    )
    assert "SR-99" in catalog


def test_duplicate_indicator_id_is_rejected():
    with pytest.raises(CatalogError, match="Duplicate"):
        catalog_from_dict(_doc(indicators=[
            {"id": "UR-01", "family": "UserRisk", "points": 3},
            {"id": "UR-01", "family": "UserRisk", "points": 2},
        ]))


def test_family_must_match_prefix():
    with pytest.raises(CatalogError, match="prefix"):
        catalog_from_dict(_doc(indicators=[{"id": "UR-01", "family": "SignInRisk", "points": 3}]))


@pytest.mark.parametrize("points", ["3", 2.5, None, True])
def test_points_must_be_integers(points):
    with pytest.raises(CatalogError, match="points"):
        catalog_from_dict(_doc(indicators=[{"id": "UR-01", "family": "UserRisk", "points": points}]))


def test_empty_catalog_is_rejected():
    with pytest.raises(CatalogError):
        catalog_from_dict(_doc(indicators=[]))


def test_non_descending_thresholds_are_rejected():
    scoring = {"thresholds": [
        {"level": "Critical", "min": 6},
        {"level": "High", "min": 7},
        {"level": "Medium", "min": 4},
        {"level": "Low", "min": 1},
    ]}
    with pytest.raises(CatalogError, match="scoring"):
        catalog_from_dict(_doc(scoring=scoring))


def test_unknown_threshold_level_is_rejected():
    with pytest.raises(CatalogError):
        catalog_from_dict(_doc(scoring={"thresholds": [{"level": "Severe", "min": 9}]}))


def test_custom_scoring_settings():
    catalog = catalog_from_dict(_doc(scoring={
        "thresholds": [{"level": "Critical", "min": 12}, {"level": "High", "min": 8},
                       {"level": "Medium", "min": 4}, {"level": "Low", "min": 1}],
        "executive_summary": {"user_risk_weight": 3},
        "allow_negative_totals": True,
    }))
    assert catalog.settings.thresholds.level_for(11) == RiskLevel.HIGH
    assert catalog.settings.weights.user_risk == 3
    assert catalog.settings.weights.high_sign_in_risk == 4
    assert catalog.settings.allow_negative_totals


def test_catalog_round_trips_through_dict(catalog):
    again = catalog_from_dict(catalog.to_dict())
    assert again == catalog


def test_load_catalog_errors(tmp_path):
    with pytest.raises(CatalogError, match="Cannot read"):
        load_catalog(tmp_path / "missing.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(CatalogError, match="not valid JSON"):
        load_catalog(broken)


def test_load_catalog_from_file(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(_doc()), encoding="utf-8")
    catalog = load_catalog(path)
    assert catalog.version == "test"
    assert len(catalog) == 2


def test_registry_rejects_duplicates_and_unknown_prefixes():
    with pytest.raises(ValueError, match="already registered"):
        register("SR-01")(lambda ctx, sign_in: None)
    with pytest.raises(ValueError, match="prefix"):
        register("XX-01")
