# supplytrace/services/compliance/pipeline_service.py

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from supplytrace.blockchain import ledger_fields
from supplytrace.errors import InvalidStateError, NotFoundError, SupplyTraceError, ValidationError
from supplytrace.models.compliance.pipeline_models import (
    ComplianceStage,
    CompliancePipelineState,
    PipelineProgress,
    StageAdvancementResult,
    StageEvent,
    StageGuidance,
    StageStatus,
    StageSummary,
)
from supplytrace.models.risk.risk_models import AlertSeverity, MitigationRecord, ProductionUnit, RiskLevel
from supplytrace.models.transfer.transfer_models import TransferStatus
from supplytrace.notarization import NotarizationQueue
from supplytrace.services.compliance import stages
from supplytrace.services.risk.risk_service import RiskAssessmentService
from supplytrace.services.transfer.transfer_service import TransferService

logger = logging.getLogger(__name__)

STAGE_ADVANCED_EVENT = "STAGE_ADVANCED"

DDS_BLOCKER_HIGH_RISK = "Risk level is HIGH and no mitigation record is attached"
DDS_BLOCKER_NO_ASSESSMENT = "No risk assessment on record for this batch"

# statuses a caller may set by hand; COMPLETED goes through complete_stage
_MANUAL_STATUSES = (
    StageStatus.IN_PROGRESS,
    StageStatus.PENDING_REVIEW,
    StageStatus.BLOCKED,
    StageStatus.SKIPPED,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CompliancePipelineService:
    """
    Moves a batch through the fixed EUDR stage sequence.

    The pointer only moves one stage at a time: forward from a COMPLETED stage
    (or a skipped optional stage) via `advance`, backward only via `rollback`.
    Stages 1 to 4 and 6 only complete on evidence from the stores. Entering Risk
    Assessment runs the risk engine; entering the Due Diligence Statement is
    refused (BLOCKED) while the stored risk level is HIGH with no mitigation.
    """

    def __init__(
        self,
        store,
        transfers: TransferService,
        risk: RiskAssessmentService,
        notarizer: Optional[NotarizationQueue] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.transfers = transfers
        self.risk = risk
        self.notarizer = notarizer
        self._clock = clock

    # -------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------
    def start(self, batch_id: str) -> CompliancePipelineState:
        if self.risk.store.get_batch(batch_id) is None:
            raise NotFoundError(f"Batch not found: {batch_id}")

        now = self._clock()
        first = stages.first_stage()
        progress = stages.initial_stages()
        progress[first].status = StageStatus.IN_PROGRESS
        progress[first].startedAt = now

        state = CompliancePipelineState(
            batchId=batch_id,
            currentStage=first,
            stages=progress,
            createdAt=now,
            updatedAt=now,
        )
        if not self.store.insert(state):
            raise InvalidStateError(f"Compliance pipeline already started for batch {batch_id}")

        logger.info("Compliance pipeline started for batch %s", batch_id)
        return state

    def get_state(self, batch_id: str) -> CompliancePipelineState:
        state = self.store.get(batch_id)
        if state is None:
            raise NotFoundError(f"No compliance pipeline for batch {batch_id}")
        return state

    def progress(self, batch_id: str) -> PipelineProgress:
        state = self.get_state(batch_id)
        summaries = []
        for stage in stages.ORDERED:
            p = state.progress_for(stage)
            d = stages.definition(stage)
            summaries.append(StageSummary(
                stage=stage,
                order=d.order,
                displayName=d.displayName,
                status=p.status,
                completionPercent=stages.completion_percent(p),
                pendingActions=stages.pending_actions(p),
                blockers=list(p.blockers),
            ))
        return PipelineProgress(
            batchId=batch_id,
            currentStage=state.currentStage,
            overallPercent=stages.overall_progress(state.currentStage),
            riskLevel=state.riskLevel,
            stages=summaries,
        )

    def guidance(self, stage: ComplianceStage) -> StageGuidance:
        return stages.guidance(stage)

    # -------------------------------------------------
    # CURRENT STAGE WORK
    # -------------------------------------------------
    def complete_action(self, batch_id: str, action: str) -> CompliancePipelineState:
        state = self.get_state(batch_id)
        current = state.current
        required = stages.definition(state.currentStage).requiredActions
        if action not in required:
            raise ValidationError(f"'{action}' is not a required action of {state.currentStage.value}")
        if current.status.is_done:
            raise InvalidStateError(f"Stage {state.currentStage.value} is already {current.status.value}")

        if action not in current.completedActions:
            current.completedActions.append(action)
        if current.status is StageStatus.NOT_STARTED:
            current.status = StageStatus.IN_PROGRESS
            current.startedAt = self._clock()
        return self._save(state)

    def set_status(self, batch_id: str, status: StageStatus, note: Optional[str] = None) -> CompliancePipelineState:
        if status not in _MANUAL_STATUSES:
            raise ValidationError(f"Status {status.value} cannot be set directly")

        state = self.get_state(batch_id)
        current = state.current
        if current.status is StageStatus.COMPLETED:
            raise InvalidStateError(f"Stage {state.currentStage.value} is already COMPLETED")
        if status is StageStatus.SKIPPED and not stages.can_skip(state.currentStage):
            raise InvalidStateError(f"{stages.definition(state.currentStage).displayName} cannot be skipped")

        if status is StageStatus.BLOCKED:
            if note:
                current.blockers.append(note)
        else:
            gate = self._gate_blockers(state)
            if gate:
                raise InvalidStateError("; ".join(gate))
            current.blockers = []

        old = current.status
        current.status = status
        if current.startedAt is None:
            current.startedAt = self._clock()
        if note:
            current.notes = note
        if status is StageStatus.SKIPPED:
            current.completedAt = self._clock()
        state.events.append(StageEvent(
            kind="STATUS", fromStage=state.currentStage, toStage=state.currentStage,
            at=self._clock(), reason=f"{old.value} -> {status.value}",
        ))

        logger.info("Batch %s stage %s set to %s", batch_id, state.currentStage.value, status.value)
        return self._save(state)

    def complete_stage(self, batch_id: str) -> CompliancePipelineState:
        state = self.get_state(batch_id)
        current = state.current
        if current.status.is_done:
            raise InvalidStateError(f"Stage {state.currentStage.value} is already {current.status.value}")

        blockers = [f"Pending action: {a}" for a in stages.pending_actions(current)]
        if current.status is StageStatus.BLOCKED:
            blockers += current.blockers or ["Stage is blocked"]
        blockers += [b for b in self._gate_blockers(state) if b not in blockers]
        blockers += [b for b in self._completion_blockers(state) if b not in blockers]
        if blockers:
            raise InvalidStateError(
                f"Cannot complete {state.currentStage.value}: " + "; ".join(blockers)
            )

        current.status = StageStatus.COMPLETED
        current.completedAt = self._clock()
        current.blockers = []
        logger.info("Batch %s completed stage %s", batch_id, state.currentStage.value)
        return self._save(state)

    # -------------------------------------------------
    # EVIDENCE GATES
    # -------------------------------------------------
    def _completion_blockers(self, state: CompliancePipelineState) -> List[str]:
        check = {
            ComplianceStage.PRODUCTION_REGISTRATION: self._registration_blockers,
            ComplianceStage.GEOLOCATION_VERIFICATION: self._geolocation_blockers,
            ComplianceStage.DEFORESTATION_CHECK: self._deforestation_blockers,
            ComplianceStage.COLLECTION_AGGREGATION: self._collection_blockers,
            ComplianceStage.RISK_ASSESSMENT: self._assessment_blockers,
        }.get(state.currentStage)
        if check is None:
            return []
        try:
            return check(state)
        except SupplyTraceError:
            raise
        except Exception as e:
            logger.warning(
                "Evidence for %s unavailable for batch %s: %s", state.currentStage.value, state.batchId, e
            )
            return [f"Evidence unavailable: {e}"]

    def _units(self, state: CompliancePipelineState) -> List[ProductionUnit]:
        batch = self.risk.store.get_batch(state.batchId)
        if batch is None or not batch.productionUnitIds:
            return []
        return list(self.risk.store.production_units(batch.productionUnitIds))

    def _registration_blockers(self, state: CompliancePipelineState) -> List[str]:
        batch = self.risk.store.get_batch(state.batchId)
        if batch is None or not batch.productionUnitIds:
            return ["No production units linked to this batch. Link at least one production unit to proceed."]
        found = {u.id for u in self._units(state)}
        missing = [uid for uid in batch.productionUnitIds if uid not in found]
        if missing:
            return [f"Production unit(s) not registered: {', '.join(missing)}"]
        return []

    def _geolocation_blockers(self, state: CompliancePipelineState) -> List[str]:
        units = self._units(state)
        if not units:
            return ["No production units linked to this batch"]
        unverified = [u for u in units if not u.is_verified]
        if unverified:
            return [f"{len(unverified)} production unit(s) need geolocation verification"]
        return []

    def _deforestation_blockers(self, state: CompliancePipelineState) -> List[str]:
        units = self._units(state)
        if not units:
            return ["No production units linked to this batch"]

        now = self._clock()
        start = now - timedelta(days=self.risk.policy.alert_window_days)
        alerts = self.risk.alert_source.alerts_for_units([u.id for u in units], start, now)

        open_alerts: Dict[str, int] = {}
        for a in alerts:
            if a.isReviewed or a.severity is AlertSeverity.INFO:
                continue
            open_alerts[a.productionUnitId] = open_alerts.get(a.productionUnitId, 0) + 1

        names = {u.id: u.unitName or u.id for u in units}
        return [
            f"Production unit {names.get(uid, uid)} has {n} unreviewed deforestation alert(s)"
            for uid, n in sorted(open_alerts.items())
        ]

    def _assessment_blockers(self, state: CompliancePipelineState) -> List[str]:
        blockers = []
        if state.aggregatedQuantityKg is None:
            blockers.append("No collection data recorded. At least one collection is required for risk assessment.")
        if self._refresh_risk(state) is None:
            blockers.append(DDS_BLOCKER_NO_ASSESSMENT)
        return blockers

    # -------------------------------------------------
    # COLLECTION & AGGREGATION
    # -------------------------------------------------
    def link_transfer(self, batch_id: str, transfer_id: str) -> CompliancePipelineState:
        state = self.get_state(batch_id)
        collection = stages.definition(ComplianceStage.COLLECTION_AGGREGATION)
        if stages.definition(state.currentStage).order > collection.order:
            raise InvalidStateError(f"Batch {batch_id} is past {collection.displayName}")

        transfer = self.transfers.get(transfer_id)
        if transfer.batchId is not None and transfer.batchId != batch_id:
            raise ValidationError(f"Transfer {transfer_id} belongs to batch {transfer.batchId}")

        if transfer_id in state.linkedTransferIds:
            return state
        state.linkedTransferIds.append(transfer_id)
        logger.info("Transfer %s linked to batch %s", transfer_id, batch_id)
        return self._save(state)

    def _collection_blockers(self, state: CompliancePipelineState) -> List[str]:
        linked = [self.transfers.get(tid) for tid in state.linkedTransferIds]
        for t in self.transfers.for_batch(state.batchId):
            if t.id not in state.linkedTransferIds:
                linked.append(t)

        confirmed = [t for t in linked if t.status is TransferStatus.CONFIRMED]
        pending = [t for t in linked if t.status is TransferStatus.PENDING]

        blockers = []
        if not confirmed:
            blockers.append("No confirmed transfer linked to batch")
        if pending:
            blockers.append(f"{len(pending)} transfer(s) still awaiting receiver confirmation")

        if not blockers:
            total = sum((t.receiverQuantityKg for t in confirmed), Decimal("0"))
            state.aggregatedQuantityKg = total
            state.current.notes = f"Aggregated {total} kg from {len(confirmed)} confirmed transfer(s)"
        return blockers

    # -------------------------------------------------
    # MOVEMENT
    # -------------------------------------------------
    def advance(self, batch_id: str) -> StageAdvancementResult:
        state = self.get_state(batch_id)
        from_stage = state.currentStage
        current = state.current

        if not stages.is_finished(current):
            raise InvalidStateError(
                f"Stage {from_stage.value} is {current.status.value}; complete it before advancing"
            )

        to_stage = stages.next_stage(from_stage)
        if to_stage is None:
            return StageAdvancementResult(
                success=False,
                previousStage=from_stage,
                currentStage=from_stage,
                message="Workflow is already at the final stage",
            )

        now = self._clock()
        self._on_exit(state, from_stage)

        state.currentStage = to_stage
        entered = state.current
        entered.status = StageStatus.IN_PROGRESS
        entered.startedAt = now
        entered.completedAt = None
        entered.blockers = []
        state.events.append(StageEvent(kind="ADVANCE", fromStage=from_stage, toStage=to_stage, at=now))

        self._on_enter(state, to_stage)
        saved = self._save(state)

        target = stages.definition(to_stage)
        logger.info("Batch %s advanced from %s to %s", batch_id, from_stage.value, to_stage.value)
        self._notarize_move(saved, from_stage, to_stage)

        if saved.current.status is StageStatus.BLOCKED:
            return StageAdvancementResult(
                success=True,
                previousStage=from_stage,
                currentStage=to_stage,
                message=f"Entered {target.displayName} but it is blocked",
                blockers=list(saved.current.blockers),
            )
        return StageAdvancementResult(
            success=True,
            previousStage=from_stage,
            currentStage=to_stage,
            message=f"Successfully advanced to {target.displayName}",
        )

    def rollback(self, batch_id: str, reason: str) -> StageAdvancementResult:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rollback reason is required")

        state = self.get_state(batch_id)
        from_stage = state.currentStage
        to_stage = stages.previous_stage(from_stage)
        if to_stage is None:
            return StageAdvancementResult(
                success=False,
                previousStage=from_stage,
                currentStage=from_stage,
                message="Cannot revert from the first stage",
            )

        left = state.current
        left.status = StageStatus.NOT_STARTED
        left.startedAt = None
        left.completedAt = None
        left.blockers = []

        state.currentStage = to_stage
        reopened = state.current
        reopened.status = StageStatus.IN_PROGRESS
        reopened.completedAt = None
        state.events.append(StageEvent(
            kind="ROLLBACK", fromStage=from_stage, toStage=to_stage, at=self._clock(), reason=reason,
        ))
        self._save(state)

        logger.warning("Batch %s reverted from %s to %s: %s", batch_id, from_stage.value, to_stage.value, reason)
        return StageAdvancementResult(
            success=True,
            previousStage=from_stage,
            currentStage=to_stage,
            message=f"Reverted to {stages.definition(to_stage).displayName} for corrections",
        )

    # -------------------------------------------------
    # MITIGATION
    # -------------------------------------------------
    def attach_mitigation(self, batch_id: str, mitigation: MitigationRecord) -> CompliancePipelineState:
        if mitigation.batchId != batch_id:
            raise ValidationError(f"Mitigation {mitigation.id} is for batch {mitigation.batchId}")

        state = self.get_state(batch_id)
        self.risk.attach_mitigation(mitigation)

        if (
            state.currentStage is ComplianceStage.DUE_DILIGENCE_STATEMENT
            and state.current.status is StageStatus.BLOCKED
            and not self._gate_blockers(state)
        ):
            state.current.status = StageStatus.IN_PROGRESS
            state.current.blockers = []
            logger.info("Due Diligence Statement unblocked for batch %s", batch_id)
            return self._save(state)
        return state

    # -------------------------------------------------
    # HOOKS
    # -------------------------------------------------
    def _on_exit(self, state: CompliancePipelineState, stage: ComplianceStage) -> None:
        if stage is ComplianceStage.RISK_ASSESSMENT:
            logger.info("Risk assessment stage closed for batch %s at %s", state.batchId, state.riskLevel)

    def _on_enter(self, state: CompliancePipelineState, stage: ComplianceStage) -> None:
        if stage is ComplianceStage.RISK_ASSESSMENT:
            result = self.risk.assess_batch(state.batchId)
            state.riskLevel = result.riskLevel
            state.riskScore = result.overallScore
            state.assessedAt = result.assessedAt
        elif stage is ComplianceStage.DUE_DILIGENCE_STATEMENT:
            blockers = self._gate_blockers(state)
            if blockers:
                state.current.status = StageStatus.BLOCKED
                state.current.blockers = blockers
                logger.warning("Due Diligence Statement blocked for batch %s: %s", state.batchId, blockers)

    def _gate_blockers(self, state: CompliancePipelineState) -> List[str]:
        if state.currentStage is not ComplianceStage.DUE_DILIGENCE_STATEMENT:
            return []

        level = self._refresh_risk(state)
        if level is None:
            return [DDS_BLOCKER_NO_ASSESSMENT]
        if level is RiskLevel.HIGH and not self.risk.has_mitigation(state.batchId):
            return [DDS_BLOCKER_HIGH_RISK]
        return []

    def _refresh_risk(self, state: CompliancePipelineState) -> Optional[RiskLevel]:
        """Sync the pipeline's risk snapshot with the latest stored assessment."""
        latest = self.risk.current(state.batchId)
        if latest is not None:
            state.riskLevel = latest.riskLevel
            state.riskScore = latest.overallScore
            state.assessedAt = latest.assessedAt
            return latest.riskLevel
        batch = self.risk.store.get_batch(state.batchId)
        return batch.riskLevel if batch is not None else None

    # -------------------------------------------------
    # INTERNAL
    # -------------------------------------------------
    def _save(self, state: CompliancePipelineState) -> CompliancePipelineState:
        expected = state.version
        state.version = expected + 1
        state.updatedAt = self._clock()
        if not self.store.replace(state, expected):
            raise InvalidStateError(f"Compliance pipeline for batch {state.batchId} was modified concurrently")
        return state

    def _notarize_move(self, state: CompliancePipelineState, from_stage: ComplianceStage, to_stage: ComplianceStage) -> None:
        if self.notarizer is None:
            return
        self.notarizer.submit(STAGE_ADVANCED_EVENT, state.batchId, ledger_fields({
            "batchId": state.batchId,
            "fromStage": from_stage,
            "toStage": to_stage,
            "riskLevel": state.riskLevel,
            "aggregatedQuantityKg": state.aggregatedQuantityKg,
            "at": state.updatedAt,
        }))
