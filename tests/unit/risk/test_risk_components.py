"""Unit tests for risk component scoring, aggregation and classification."""

from datetime import timedelta
from decimal import Decimal

import pytest

from supplytrace.models.risk.risk_models import (
    AlertSeverity,
    BatchRecord,
    CountryRisk,
    CountryRiskLevel,
    DeforestationAlert,
    DocumentType,
    ProductionUnit,
    RiskComponent,
    RiskLevel,
)
from supplytrace.services.risk.risk_components import (
    DEFAULT_COMPONENTS,
    REQUIRED_DOCUMENTS,
    WEIGHTS,
    BatchEvidence,
    RiskPolicy,
    aggregate,
    classify,
    commodity_risk,
    country_risk,
    deforestation_risk,
    documentation_risk,
    geospatial_risk,
    recommend,
    replace_component,
    run_component,
)

from conftest import NOW

POLICY = RiskPolicy()


def _batch(commodity="Avocado", units=("pu-1",)):
    return BatchRecord(
        id="b-1", commodity=commodity, countryOfProduction="BR", productionUnitIds=list(units),
    )


def _unit(uid="pu-1", verified=True):
    return ProductionUnit(id=uid, lastVerifiedAt=NOW if verified else None)


def _alert(severity, days_ago=10, unit="pu-1"):
    return DeforestationAlert(
        id=f"a-{severity.value}-{days_ago}",
        productionUnitId=unit,
        severity=severity,
        detectedAt=NOW - timedelta(days=days_ago),
    )


def _evidence(**kw):
    data = dict(batch=_batch(), assessed_at=NOW, production_units=(_unit(),))
    data.update(kw)
    return BatchEvidence(**data)


class TestWeightsAndThresholds:

    def test_weights_sum_to_exactly_one(self):
        assert sum(WEIGHTS.values()) == Decimal("1")

    def test_every_component_has_a_weight(self):
        assert {c.key for c in DEFAULT_COMPONENTS} == set(WEIGHTS)

    @pytest.mark.parametrize("score,level", [
        (0.8, RiskLevel.HIGH),
        (0.7999, RiskLevel.MEDIUM),
        (0.5, RiskLevel.MEDIUM),
        (0.4999, RiskLevel.LOW),
        (0.2001, RiskLevel.LOW),
        (0.2, RiskLevel.NONE),
        (0.0, RiskLevel.NONE),
        (1.0, RiskLevel.HIGH),
    ])
    def test_classify_boundaries(self, score, level):
        assert classify(score) is level


class TestComponents:

    @pytest.mark.parametrize("level,score", [
        (CountryRiskLevel.LOW, 0.2),
        (CountryRiskLevel.STANDARD, 0.5),
        (CountryRiskLevel.HIGH, 0.9),
    ])
    def test_country_levels(self, level, score):
        ev = _evidence(country=CountryRisk(countryCode="BR", countryName="Brazil", riskLevel=level))
        assert country_risk(ev, POLICY).score == score

    def test_unknown_country_fails_toward_caution(self):
        comp = country_risk(_evidence(country=None), POLICY)

        assert comp.score == 0.7
        assert "manual review" in comp.justification

    @pytest.mark.parametrize("alerts,score", [
        ((), 0.1),
        ((AlertSeverity.LOW,), 0.3),
        ((AlertSeverity.MEDIUM,), 0.5),
        ((AlertSeverity.MEDIUM, AlertSeverity.MEDIUM, AlertSeverity.MEDIUM), 0.7),
        ((AlertSeverity.LOW, AlertSeverity.HIGH), 0.9),
    ])
    def test_deforestation_tiers(self, alerts, score):
        ev = _evidence(alerts=tuple(_alert(s, days_ago=i + 1) for i, s in enumerate(alerts)))
        assert deforestation_risk(ev, POLICY).score == score

    def test_old_alerts_fall_outside_window(self):
        ev = _evidence(alerts=(_alert(AlertSeverity.HIGH, days_ago=400),))
        assert deforestation_risk(ev, POLICY).score == 0.1

    def test_no_units_is_risky_not_safe(self):
        ev = _evidence(batch=_batch(units=()), production_units=())

        assert deforestation_risk(ev, POLICY).score == 0.8
        assert geospatial_risk(ev, POLICY).score == 0.9

    @pytest.mark.parametrize("commodity,score", [
        ("Palm Oil", 0.7),
        ("arabica COFFEE beans", 0.7),
        ("Cocoa", 0.7),
        ("Avocado", 0.3),
    ])
    def test_commodity(self, commodity, score):
        assert commodity_risk(_evidence(batch=_batch(commodity=commodity)), POLICY).score == score

    def test_documentation_counts_required_types_only(self):
        ev = _evidence(document_types=frozenset({DocumentType.HARVEST_RECORD, DocumentType.EXPORT_LICENSE}))
        comp = documentation_risk(ev, POLICY)

        assert comp.score == pytest.approx(1 - 1 / 3)
        assert comp.evidence["presentDocTypes"] == 1

    def test_full_documentation(self):
        comp = documentation_risk(_evidence(document_types=frozenset(REQUIRED_DOCUMENTS)), POLICY)
        assert comp.score == 0.0

    def test_geospatial_ratio(self):
        ev = _evidence(production_units=(_unit("pu-1"), _unit("pu-2", verified=False)))
        assert geospatial_risk(ev, POLICY).score == 0.5


class TestDegradation:

    def test_unavailable_alerts_degrade_to_conservative_score(self):
        spec = next(c for c in DEFAULT_COMPONENTS if c.key == "deforestation")
        ev = _evidence(alerts=None, errors={"alerts": "provider timeout"})

        comp = run_component(spec, ev, POLICY)

        assert comp.degraded is True
        assert comp.score == 0.9
        assert "provider timeout" in comp.justification

    def test_crashing_component_degrades(self):
        def broken(ev, policy):
            raise RuntimeError("boom")

        components = replace_component(DEFAULT_COMPONENTS, "supplier", broken)
        spec = next(c for c in components if c.key == "supplier")

        comp = run_component(spec, _evidence(), POLICY)

        assert comp.degraded is True
        assert comp.score == 1.0

    def test_replace_unknown_component(self):
        with pytest.raises(KeyError):
            replace_component(DEFAULT_COMPONENTS, "weather", lambda ev, p: None)


class TestAggregation:

    def test_reference_scenario_is_medium(self):
        ev = _evidence(
            country=CountryRisk(countryCode="BR", countryName="Brazil", riskLevel=CountryRiskLevel.HIGH),
            alerts=(_alert(AlertSeverity.HIGH),),
            document_types=frozenset(REQUIRED_DOCUMENTS),
        )
        comps = [run_component(spec, ev, POLICY) for spec in DEFAULT_COMPONENTS]

        score = aggregate(comps)

        # 0.25*0.9 + 0.30*0.9 + 0.15*0.3 + 0.10*0.3 + 0 + 0
        assert score == pytest.approx(0.57)
        assert classify(score) is RiskLevel.MEDIUM

    def test_all_maximum_scores_aggregate_to_one(self):
        comps = [
            RiskComponent(key=k, name=k, score=1.0, level="HIGH", justification="")
            for k in WEIGHTS
        ]
        assert aggregate(comps) == 1.0


class TestRecommendations:

    def test_targeted_rules_follow_level_rules(self):
        ev = _evidence(
            production_units=(_unit(verified=False),),
            document_types=frozenset({DocumentType.GEOLOCATION_DATA}),
        )
        comps = [run_component(spec, ev, POLICY) for spec in DEFAULT_COMPONENTS]

        recs = recommend(RiskLevel.MEDIUM, ev, comps, POLICY)

        assert recs[0] == "Enhanced due diligence recommended"
        assert "Obtain land rights certificate from supplier" in recs
        assert "Obtain harvest records covering this batch" in recs
        assert "Verify geospatial data for all production units" in recs
        assert len(recs) == len(set(recs))
