# supplytrace/services/risk/risk_service.py

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from supplytrace.blockchain import ledger_fields
from supplytrace.errors import ConfigurationError, NotFoundError
from supplytrace.models.risk.risk_models import (
    BatchRecord,
    MitigationRecord,
    RiskAssessmentResult,
)
from supplytrace.notarization import NotarizationQueue
from supplytrace.services.risk.batch_store import as_utc
from supplytrace.services.risk.reference_data import ReferenceData
from supplytrace.services.risk.risk_components import (
    DEFAULT_COMPONENTS,
    HIGH_RISK_COMMODITIES,
    WEIGHTS,
    WEIGHTS_VERSION,
    BatchEvidence,
    ComponentSpec,
    RiskPolicy,
    aggregate,
    classify,
    rationale,
    recommend,
    run_component,
)

logger = logging.getLogger(__name__)

RISK_ASSESSED_EVENT = "RISK_ASSESSED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskAssessmentService:
    """
    Scores a batch from its evidence and records the outcome.

    Evidence is gathered once per assessment; any source that fails only
    degrades the components reading it. The result, the batch's stored risk
    level and the history entry are written before the best-effort ledger
    submission.
    """

    def __init__(
        self,
        store,
        reference: Optional[ReferenceData] = None,
        alert_source=None,
        notarizer: Optional[NotarizationQueue] = None,
        policy: Optional[RiskPolicy] = None,
        components: Sequence[ComponentSpec] = DEFAULT_COMPONENTS,
        weights: Mapping[str, Decimal] = WEIGHTS,
        weights_version: str = WEIGHTS_VERSION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        keys = [c.key for c in components]
        if sorted(keys) != sorted(weights):
            raise ConfigurationError(f"Risk components {keys} do not match weights {sorted(weights)}")
        if sum(weights.values()) != Decimal("1"):
            raise ConfigurationError("Risk weights must sum to exactly 1")

        self.store = store
        self.reference = reference or ReferenceData.from_store(store)
        self.alert_source = alert_source or store
        self.notarizer = notarizer
        self.policy = policy or RiskPolicy()
        self.components = tuple(components)
        self.weights = weights
        self.weights_version = weights_version
        self._clock = clock

    @classmethod
    def from_config(cls, store, config, notarizer: Optional[NotarizationQueue] = None) -> "RiskAssessmentService":
        return cls(
            store,
            reference=ReferenceData.from_store(store, ttl_seconds=config.reference_data_ttl_seconds),
            notarizer=notarizer,
            policy=RiskPolicy(alert_window_days=config.risk_alert_window_days),
        )

    # -------------------------------------------------
    # ASSESS
    # -------------------------------------------------
    def assess_batch(self, batch_id: str) -> RiskAssessmentResult:
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch not found: {batch_id}")

        ev = self._gather(batch)
        comps = [run_component(spec, ev, self.policy) for spec in self.components]
        score = aggregate(comps, self.weights)
        level = classify(score)
        recs = recommend(level, ev, comps, self.policy)

        result = RiskAssessmentResult(
            batchId=batch.id,
            overallScore=score,
            riskLevel=level,
            assessedAt=ev.assessed_at,
            weightsVersion=self.weights_version,
            components=comps,
            recommendations=recs,
        )

        self.store.update_risk(batch.id, level, rationale(level, score, comps, recs))
        self.store.append_assessment(result)

        degraded = [c.key for c in comps if c.degraded]
        logger.info(
            "Batch %s assessed: %s (%.4f), degraded components: %s",
            batch.id, level.value, score, degraded or "none",
        )

        self._notarize(result)
        return result

    def assess_many(self, batch_ids: Iterable[str]) -> Dict[str, RiskAssessmentResult]:
        """Assess several batches; unknown ids are logged and skipped."""
        out: Dict[str, RiskAssessmentResult] = {}
        for batch_id in batch_ids:
            try:
                out[batch_id] = self.assess_batch(batch_id)
            except NotFoundError as e:
                logger.warning("Skipping batch %s: %s", batch_id, e)
        return out

    # -------------------------------------------------
    # HISTORY
    # -------------------------------------------------
    def history(self, batch_id: str) -> List[RiskAssessmentResult]:
        return self.store.assessment_history(batch_id)

    def current(self, batch_id: str) -> Optional[RiskAssessmentResult]:
        """Latest assessment; history is ordered by assessedAt, then insertion."""
        rows = self.history(batch_id)
        return rows[-1] if rows else None

    # -------------------------------------------------
    # MITIGATION
    # -------------------------------------------------
    def attach_mitigation(self, mitigation: MitigationRecord) -> None:
        if self.store.get_batch(mitigation.batchId) is None:
            raise NotFoundError(f"Batch not found: {mitigation.batchId}")
        self.store.attach_mitigation(mitigation)
        logger.info("Mitigation %s attached to batch %s", mitigation.id, mitigation.batchId)

    def has_mitigation(self, batch_id: str) -> bool:
        return len(self.store.mitigations_for(batch_id)) > 0

    # -------------------------------------------------
    # INTERNAL
    # -------------------------------------------------
    def _gather(self, batch: BatchRecord) -> BatchEvidence:
        now = self._clock()
        errors: Dict[str, str] = {}

        country = None
        commodities = HIGH_RISK_COMMODITIES
        try:
            snap = self.reference.snapshot()
            country = snap.country(batch.countryOfProduction)
            commodities = snap.commodities
        except Exception as e:
            errors["country"] = str(e)
            logger.warning("Reference data unavailable for batch %s: %s", batch.id, e)

        units = ()
        try:
            units = tuple(self.store.production_units(batch.productionUnitIds))
        except Exception as e:
            errors["units"] = str(e)
            logger.warning("Production units unavailable for batch %s: %s", batch.id, e)

        alerts = ()
        if units:
            start = now - timedelta(days=self.policy.alert_window_days)
            try:
                rows = self.alert_source.alerts_for_units([u.id for u in units], start, now)
                alerts = tuple(a.model_copy(update={"detectedAt": as_utc(a.detectedAt)}) for a in rows)
            except Exception as e:
                alerts = None
                errors["alerts"] = str(e)
                logger.warning("Deforestation alerts unavailable for batch %s: %s", batch.id, e)

        try:
            documents = frozenset(self.store.document_types(batch.id))
        except Exception as e:
            documents = None
            errors["documents"] = str(e)
            logger.warning("Documents unavailable for batch %s: %s", batch.id, e)

        return BatchEvidence(
            batch=batch,
            assessed_at=now,
            country=country,
            high_risk_commodities=commodities,
            production_units=units,
            alerts=alerts,
            document_types=documents,
            errors=errors,
        )

    def _notarize(self, result: RiskAssessmentResult) -> Optional[str]:
        if self.notarizer is None:
            return None

        fields = ledger_fields({
            "batchId": result.batchId,
            "riskLevel": result.riskLevel,
            "overallScore": f"{result.overallScore:.4f}",
            "weightsVersion": result.weightsVersion,
            "assessedAt": result.assessedAt,
            "components": {c.key: f"{c.score:.4f}" for c in result.components},
        })
        tx_ref = self.notarizer.submit(RISK_ASSESSED_EVENT, result.batchId, fields)
        if tx_ref is None:
            logger.warning("Assessment of batch %s recorded locally; notarization pending", result.batchId)
        return tx_ref
