"""Unit tests for RiskAssessmentService and the reference-data cache."""

from datetime import timedelta
from unittest.mock import Mock

import pytest
from pydantic import ValidationError as PydanticValidationError

from supplytrace.errors import ConfigurationError, NotFoundError
from supplytrace.models.risk.risk_models import (
    AlertSeverity,
    BatchRecord,
    CountryRisk,
    CountryRiskLevel,
    DeforestationAlert,
    DocumentType,
    RiskLevel,
)
from supplytrace.services.risk.reference_data import ReferenceData
from supplytrace.services.risk.risk_components import (
    DEFAULT_COMPONENTS,
    EvidenceUnavailable,
    REQUIRED_DOCUMENTS,
)
from supplytrace.services.risk.risk_service import RISK_ASSESSED_EVENT, RiskAssessmentService

from conftest import NOW, FakeMonotonic


def _high_risk_batch(store):
    store.add_batch(BatchRecord(
        id="batch-br",
        commodity="Cattle",
        countryOfProduction="BR",
        productionUnitIds=["pu-br"],
    ))
    store.add_alert(DeforestationAlert(
        id="alert-1",
        productionUnitId="pu-br",
        severity=AlertSeverity.HIGH,
        detectedAt=NOW - timedelta(days=20),
    ))


class TestAssessBatch:

    def test_unknown_batch(self, risk_service):
        with pytest.raises(NotFoundError):
            risk_service.assess_batch("missing")

    def test_assessment_updates_batch_and_history(self, risk_service, evidence_store):
        for doc in REQUIRED_DOCUMENTS:
            evidence_store.add_document("batch-1", doc)

        result = risk_service.assess_batch("batch-1")

        # KE standard 0.5, no alerts 0.1, supplier 0.3, avocado 0.3, docs 0, verified 0
        assert result.overallScore == pytest.approx(0.125 + 0.03 + 0.045 + 0.03)
        assert result.riskLevel is RiskLevel.LOW
        assert result.weightsVersion == "2024.1"
        assert [c.key for c in result.components] == [c.key for c in DEFAULT_COMPONENTS]

        batch = evidence_store.get_batch("batch-1")
        assert batch.riskLevel is RiskLevel.LOW
        assert batch.riskRationale.startswith("Risk Assessment Summary:")
        assert risk_service.history("batch-1") == [result]

    def test_unlinked_batch_with_no_units_is_high(self, risk_service, evidence_store):
        evidence_store.add_batch(BatchRecord(id="bare", commodity="Palm oil", countryOfProduction="BR"))

        result = risk_service.assess_batch("bare")

        # 0.25*0.9 + 0.30*0.8 + 0.15*0.3 + 0.10*0.7 + 0.10*1.0 + 0.10*0.9
        assert result.overallScore == pytest.approx(0.77)
        assert result.riskLevel is RiskLevel.MEDIUM
        assert "Link at least one production unit to the batch" in result.recommendations

    def test_notarizes_result(self, risk_service, ledger):
        result = risk_service.assess_batch("batch-1")

        event_type, _, fields = ledger.calls[-1]
        assert event_type == RISK_ASSESSED_EVENT
        assert fields["batchId"] == "batch-1"
        assert fields["riskLevel"] is result.riskLevel

    def test_ledger_outage_does_not_fail_assessment(self, risk_service, ledger, queue):
        ledger.fail = True

        result = risk_service.assess_batch("batch-1")

        assert result.riskLevel is not None
        assert queue.pending_count() == 1

    def test_alert_source_failure_degrades_deforestation(self, evidence_store, queue):
        alerts = Mock()
        alerts.alerts_for_units.side_effect = TimeoutError("alert provider down")
        service = RiskAssessmentService(evidence_store, alert_source=alerts, notarizer=queue, clock=lambda: NOW)

        result = service.assess_batch("batch-1")

        comp = result.component("deforestation")
        assert comp.degraded is True
        assert comp.score == 0.9
        assert "Re-run assessment once evidence for Deforestation Risk is available" in result.recommendations

    def test_document_store_failure_degrades_documentation(self, evidence_store):
        evidence_store.document_types = Mock(side_effect=ConnectionError("mongo down"))
        service = RiskAssessmentService(evidence_store, clock=lambda: NOW)

        comp = service.assess_batch("batch-1").component("documentation")

        assert comp.degraded is True
        assert comp.score == 1.0

    def test_current_is_latest(self, evidence_store):
        times = iter([NOW, NOW + timedelta(hours=1)])
        service = RiskAssessmentService(evidence_store, clock=lambda: next(times))

        service.assess_batch("batch-1")
        evidence_store.add_document("batch-1", DocumentType.LAND_RIGHTS_CERTIFICATE)
        second = service.assess_batch("batch-1")

        assert len(service.history("batch-1")) == 2
        assert service.current("batch-1") == second
        assert service.current("other") is None

    def test_result_cannot_rewrite_history(self, risk_service):
        result = risk_service.assess_batch("batch-1")

        with pytest.raises(PydanticValidationError):
            result.riskLevel = RiskLevel.NONE
        with pytest.raises(PydanticValidationError):
            result.components[0].score = 0.0
        with pytest.raises(AttributeError):
            result.recommendations.append("ignore everything")

        stored = risk_service.current("batch-1")
        assert stored.riskLevel is RiskLevel.LOW
        assert stored.components[0].score == result.components[0].score

    def test_assess_many_skips_unknown(self, risk_service, evidence_store):
        _high_risk_batch(evidence_store)

        results = risk_service.assess_many(["batch-1", "ghost", "batch-br"])

        assert set(results) == {"batch-1", "batch-br"}
        assert results["batch-br"].component("deforestation").score == 0.8

    def test_mismatched_weights_rejected(self, evidence_store):
        with pytest.raises(ConfigurationError):
            RiskAssessmentService(evidence_store, components=DEFAULT_COMPONENTS[:5])


class TestReferenceData:

    def _loader(self, level=CountryRiskLevel.LOW):
        return Mock(return_value={"KE": CountryRisk(countryCode="KE", countryName="Kenya", riskLevel=level)})

    def test_snapshot_is_cached_until_ttl(self):
        loader = self._loader()
        clock = FakeMonotonic()
        ref = ReferenceData(loader, ttl_seconds=60, clock=clock)

        ref.snapshot()
        ref.snapshot()
        assert loader.call_count == 1

        clock.advance(61)
        ref.snapshot()
        assert loader.call_count == 2

    def test_snapshot_unaffected_by_later_edit(self):
        ref = ReferenceData(self._loader(), ttl_seconds=60, clock=FakeMonotonic())
        snap = ref.snapshot()

        ref.set_country_risk(CountryRisk(countryCode="ke", countryName="Kenya", riskLevel=CountryRiskLevel.HIGH))

        assert snap.country("KE").riskLevel is CountryRiskLevel.LOW
        assert ref.snapshot().country("ke").riskLevel is CountryRiskLevel.HIGH

    def test_failed_refresh_serves_stale_table(self):
        loader = self._loader()
        clock = FakeMonotonic()
        ref = ReferenceData(loader, ttl_seconds=60, clock=clock)
        ref.snapshot()

        loader.side_effect = ConnectionError("down")
        clock.advance(120)

        assert ref.snapshot().country("KE") is not None

    def test_never_loaded_raises_evidence_unavailable(self):
        ref = ReferenceData(Mock(side_effect=ConnectionError("down")))
        with pytest.raises(EvidenceUnavailable):
            ref.snapshot()

    def test_unavailable_table_degrades_country(self, evidence_store):
        ref = ReferenceData(Mock(side_effect=ConnectionError("down")))
        service = RiskAssessmentService(evidence_store, reference=ref, clock=lambda: NOW)

        comp = service.assess_batch("batch-1").component("country")

        assert comp.degraded is True
        assert comp.score == 0.9
