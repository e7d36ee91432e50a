# supplytrace/models/compliance/pipeline_models.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from supplytrace.models.risk.risk_models import RiskLevel


class ComplianceStage(str, Enum):
    PRODUCTION_REGISTRATION = "PRODUCTION_REGISTRATION"
    GEOLOCATION_VERIFICATION = "GEOLOCATION_VERIFICATION"
    DEFORESTATION_CHECK = "DEFORESTATION_CHECK"
    COLLECTION_AGGREGATION = "COLLECTION_AGGREGATION"
    PROCESSING = "PROCESSING"
    RISK_ASSESSMENT = "RISK_ASSESSMENT"
    DUE_DILIGENCE_STATEMENT = "DUE_DILIGENCE_STATEMENT"
    EXPORT_SHIPMENT = "EXPORT_SHIPMENT"
    CUSTOMS_CLEARANCE = "CUSTOMS_CLEARANCE"
    DELIVERY_COMPLETE = "DELIVERY_COMPLETE"


class StageStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_REVIEW = "PENDING_REVIEW"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"

    @property
    def is_done(self) -> bool:
        return self in (StageStatus.COMPLETED, StageStatus.SKIPPED)


# -------------------------------------------------
# Static stage metadata (shared by every batch)
# -------------------------------------------------
class StageDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: ComplianceStage
    order: int
    displayName: str
    description: str
    requiredActions: Tuple[str, ...]
    automatedActions: Tuple[str, ...]
    nextStage: Optional[ComplianceStage] = None
    previousStage: Optional[ComplianceStage] = None
    # only stages flagged here may be closed as SKIPPED instead of COMPLETED
    skippable: bool = False
    regulationRef: str = "EUDR Regulation (EU) 2023/1115"
    nextSteps: Tuple[str, ...] = ()
    tips: Tuple[str, ...] = ()


class ActionItem(BaseModel):
    id: str
    action: str
    type: str  # REQUIRED | AUTOMATED
    helpText: Optional[str] = None


class StageGuidance(BaseModel):
    stage: ComplianceStage
    order: int
    displayName: str
    description: str
    requiredActions: List[ActionItem]
    automatedActions: List[ActionItem]
    nextSteps: List[str]
    regulationRef: str
    tips: List[str]


# -------------------------------------------------
# Per-batch state
# -------------------------------------------------
class StageProgress(BaseModel):
    stage: ComplianceStage
    status: StageStatus = StageStatus.NOT_STARTED
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    completedActions: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class StageEvent(BaseModel):
    """Audit trail entry for moves between stages."""

    kind: str  # ADVANCE | ROLLBACK | STATUS
    fromStage: ComplianceStage
    toStage: ComplianceStage
    at: datetime
    reason: Optional[str] = None


class CompliancePipelineState(BaseModel):
    batchId: str
    currentStage: ComplianceStage
    stages: Dict[ComplianceStage, StageProgress]

    # copy of the latest stored assessment, refreshed whenever a gate reads it
    riskLevel: Optional[RiskLevel] = None
    riskScore: Optional[float] = None
    assessedAt: Optional[datetime] = None

    linkedTransferIds: List[str] = Field(default_factory=list)
    aggregatedQuantityKg: Optional[Decimal] = None

    events: List[StageEvent] = Field(default_factory=list)
    createdAt: datetime
    updatedAt: datetime
    version: int = 0

    def progress_for(self, stage: ComplianceStage) -> StageProgress:
        return self.stages[stage]

    @property
    def current(self) -> StageProgress:
        return self.stages[self.currentStage]


class StageAdvancementResult(BaseModel):
    success: bool
    previousStage: ComplianceStage
    currentStage: ComplianceStage
    message: str
    blockers: List[str] = Field(default_factory=list)


class StageSummary(BaseModel):
    stage: ComplianceStage
    order: int
    displayName: str
    status: StageStatus
    completionPercent: int
    pendingActions: List[str]
    blockers: List[str]


class PipelineProgress(BaseModel):
    batchId: str
    currentStage: ComplianceStage
    overallPercent: int
    riskLevel: Optional[RiskLevel] = None
    stages: List[StageSummary]
