# supplytrace/services/compliance/stages.py
"""
The fixed EUDR stage sequence.

Stages are immutable metadata shared by every batch; per-batch progress lives
in `CompliancePipelineState`. Everything here is a pure function of the table.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from supplytrace.models.compliance.pipeline_models import (
    ActionItem,
    ComplianceStage,
    CompliancePipelineState,
    StageDefinition,
    StageGuidance,
    StageProgress,
    StageStatus,
)

S = ComplianceStage

_DEFINITIONS: Tuple[StageDefinition, ...] = (
    StageDefinition(
        stage=S.PRODUCTION_REGISTRATION,
        order=1,
        displayName="Production Registration",
        description="Register production units (farms/plots) with geolocation data for traceability",
        requiredActions=(
            "Register production unit with GPS coordinates",
            "Upload land ownership/use documents",
            "Specify commodity type and production capacity",
            "Link to farmer profile",
        ),
        automatedActions=(
            "Generate unique production unit ID",
            "Record registration on ledger",
            "Calculate plot area from coordinates",
        ),
        nextStage=S.GEOLOCATION_VERIFICATION,
        regulationRef="Article 9(1)(a) - Geolocation of plots",
        nextSteps=(
            "After registering production units, proceed to verify their geolocations",
            "Ensure all GPS coordinates are accurate before advancing",
        ),
        tips=(
            "Use the latest satellite imagery for boundary verification",
            "Include a buffer zone around your production area",
        ),
    ),
    StageDefinition(
        stage=S.GEOLOCATION_VERIFICATION,
        order=2,
        displayName="Geolocation Verification",
        description="Verify that production coordinates are accurate and within registered boundaries",
        requiredActions=(
            "Review plotted coordinates on map",
            "Confirm boundary accuracy",
            "Upload supporting evidence (satellite imagery, field photos)",
        ),
        automatedActions=(
            "Cross-reference with national land registries",
            "Validate coordinate format and precision",
            "Record verification on ledger",
        ),
        nextStage=S.DEFORESTATION_CHECK,
        previousStage=S.PRODUCTION_REGISTRATION,
        regulationRef="Article 9(1)(a) - Verification of coordinates",
    ),
    StageDefinition(
        stage=S.DEFORESTATION_CHECK,
        order=3,
        displayName="Deforestation Risk Assessment",
        description="Check if production area has deforestation alerts using satellite monitoring",
        requiredActions=(
            "Review deforestation check results",
            "Address any flagged alerts",
            "Provide evidence if alerts are false positives",
        ),
        automatedActions=(
            "Query deforestation alert provider",
            "Analyze satellite imagery for forest loss",
            "Calculate risk score based on proximity to protected areas",
            "Generate deforestation-free certificate if passed",
        ),
        nextStage=S.COLLECTION_AGGREGATION,
        previousStage=S.GEOLOCATION_VERIFICATION,
        regulationRef="Article 10 - Risk assessment requirements",
        nextSteps=(
            "If deforestation alerts are found, investigate and provide evidence",
            "Contact the farmer to clarify any flagged areas",
        ),
        tips=(
            "Deforestation cutoff date is December 31, 2020",
            "Degradation of primary forests is also prohibited",
        ),
    ),
    StageDefinition(
        stage=S.COLLECTION_AGGREGATION,
        order=4,
        displayName="Collection & Aggregation",
        description="Collect produce from verified production units and consolidate at aggregation points",
        requiredActions=(
            "Record collection from each production unit",
            "Specify quantity, quality grade, and collection date",
            "Assign to aggregator/collection center",
            "Generate batch number for consolidated produce",
        ),
        automatedActions=(
            "Calculate total quantity from confirmed transfers",
            "Verify all source units passed deforestation check",
            "Record aggregation event on ledger",
        ),
        nextStage=S.PROCESSING,
        previousStage=S.DEFORESTATION_CHECK,
    ),
    StageDefinition(
        stage=S.PROCESSING,
        order=5,
        displayName="Processing",
        description="Process raw commodities (if applicable) while maintaining chain of custody",
        requiredActions=(
            "Record input quantity from aggregation",
            "Specify processing type and output quantity",
            "Maintain mass balance records",
            "Link output batch to input batches",
        ),
        automatedActions=(
            "Verify processor is certified and registered",
            "Calculate processing yield/conversion rate",
            "Record processing event on ledger",
            "Update batch status",
        ),
        nextStage=S.RISK_ASSESSMENT,
        previousStage=S.COLLECTION_AGGREGATION,
        skippable=True,
    ),
    StageDefinition(
        stage=S.RISK_ASSESSMENT,
        order=6,
        displayName="Risk Assessment",
        description="Conduct comprehensive risk assessment based on country, product, and supply chain complexity",
        requiredActions=(
            "Review automated risk score",
            "Address any high-risk factors identified",
            "Implement additional mitigation measures if needed",
        ),
        automatedActions=(
            "Run risk scoring engine on the batch",
            "Store risk classification on the batch",
        ),
        nextStage=S.DUE_DILIGENCE_STATEMENT,
        previousStage=S.PROCESSING,
        regulationRef="Article 10 - Due diligence obligations",
        nextSteps=(
            "Review the automated risk assessment results",
            "Implement mitigation measures for high-risk factors",
        ),
    ),
    StageDefinition(
        stage=S.DUE_DILIGENCE_STATEMENT,
        order=7,
        displayName="Due Diligence Statement (DDS)",
        description="Generate and submit the Due Diligence Statement required for EU market access",
        requiredActions=(
            "Review all collected information",
            "Verify completeness of documentation",
            "Sign/authorize the DDS",
            "Submit to EU Information System (if direct submission)",
        ),
        automatedActions=(
            "Check risk classification and mitigation records",
            "Compile all supply chain data into DDS format",
            "Generate unique DDS reference number",
            "Hash and record DDS on ledger",
        ),
        nextStage=S.EXPORT_SHIPMENT,
        previousStage=S.RISK_ASSESSMENT,
        regulationRef="Article 4 - Due Diligence Statement",
        nextSteps=(
            "The DDS will be generated automatically from your workflow data",
            "Review all information before authorizing the statement",
        ),
        tips=(
            "Keep your DDS for at least 5 years",
            "Be prepared to provide information to competent authorities",
        ),
    ),
    StageDefinition(
        stage=S.EXPORT_SHIPMENT,
        order=8,
        displayName="Export & Shipment",
        description="Ship products to EU destination with all compliance documentation",
        requiredActions=(
            "Create shipment with destination details",
            "Attach DDS reference to shipping documents",
            "Notify importer of shipment",
            "Provide customs reference numbers",
        ),
        automatedActions=(
            "Issue EUDR compliance certificate",
            "Record export event on ledger",
            "Update batch status to IN_TRANSIT",
        ),
        nextStage=S.CUSTOMS_CLEARANCE,
        previousStage=S.DUE_DILIGENCE_STATEMENT,
        regulationRef="Article 12 - Placing on the market",
    ),
    StageDefinition(
        stage=S.CUSTOMS_CLEARANCE,
        order=9,
        displayName="Customs Clearance",
        description="Clear customs at EU port of entry with EUDR documentation",
        requiredActions=(
            "Provide DDS to customs authorities",
            "Present compliance certificate",
            "Address any customs queries",
        ),
        automatedActions=(
            "Verify DDS with EU Information System",
            "Validate compliance certificate",
            "Record customs verification on ledger",
        ),
        nextStage=S.DELIVERY_COMPLETE,
        previousStage=S.EXPORT_SHIPMENT,
    ),
    StageDefinition(
        stage=S.DELIVERY_COMPLETE,
        order=10,
        displayName="Delivery Complete",
        description="Goods delivered to importer, compliance cycle complete",
        requiredActions=(
            "Confirm receipt by importer",
            "Archive all documentation for 5-year retention",
            "Transfer certificate ownership to importer",
        ),
        automatedActions=(
            "Mark workflow as COMPLETED",
            "Generate final compliance report",
            "Archive on ledger for audit trail",
        ),
        previousStage=S.CUSTOMS_CLEARANCE,
    ),
)

STAGES: Mapping[ComplianceStage, StageDefinition] = MappingProxyType({d.stage: d for d in _DEFINITIONS})

ORDERED: Tuple[ComplianceStage, ...] = tuple(d.stage for d in sorted(_DEFINITIONS, key=lambda d: d.order))


def _check_table() -> None:
    if set(STAGES) != set(ComplianceStage):
        raise RuntimeError("Stage table does not cover every ComplianceStage")
    for i, stage in enumerate(ORDERED):
        d = STAGES[stage]
        if d.order != i + 1:
            raise RuntimeError(f"Stage {stage.value} has order {d.order}, expected {i + 1}")
        expected_prev = ORDERED[i - 1] if i > 0 else None
        expected_next = ORDERED[i + 1] if i + 1 < len(ORDERED) else None
        if d.previousStage != expected_prev or d.nextStage != expected_next:
            raise RuntimeError(f"Stage {stage.value} is not linked linearly")


_check_table()


# -------------------------------------------------
# Navigation
# -------------------------------------------------
def definition(stage: ComplianceStage) -> StageDefinition:
    return STAGES[stage]


def next_stage(stage: ComplianceStage) -> Optional[ComplianceStage]:
    return STAGES[stage].nextStage


def previous_stage(stage: ComplianceStage) -> Optional[ComplianceStage]:
    return STAGES[stage].previousStage


def first_stage() -> ComplianceStage:
    return ORDERED[0]


def last_stage() -> ComplianceStage:
    return ORDERED[-1]


def stage_by_order(order: int) -> Optional[ComplianceStage]:
    if 1 <= order <= len(ORDERED):
        return ORDERED[order - 1]
    return None


def stage_by_name(name: str) -> Optional[ComplianceStage]:
    try:
        return ComplianceStage((name or "").strip().upper())
    except ValueError:
        return None


# -------------------------------------------------
# Progress
# -------------------------------------------------
def pending_actions(progress: StageProgress) -> List[str]:
    done = set(progress.completedActions)
    return [a for a in STAGES[progress.stage].requiredActions if a not in done]


def is_finished(progress: StageProgress) -> bool:
    """COMPLETED, or SKIPPED on a stage that allows skipping."""
    if progress.status is StageStatus.COMPLETED:
        return True
    return progress.status is StageStatus.SKIPPED and STAGES[progress.stage].skippable


def can_skip(stage: ComplianceStage) -> bool:
    return STAGES[stage].skippable


def completion_percent(progress: StageProgress) -> int:
    if is_finished(progress):
        return 100
    required = STAGES[progress.stage].requiredActions
    if not required:
        return 0
    done = len(required) - len(pending_actions(progress))
    return (done * 100) // len(required)


def can_advance(state: CompliancePipelineState) -> bool:
    """True when the current stage is finished and a next stage exists."""
    return is_finished(state.current) and next_stage(state.currentStage) is not None


def overall_progress(stage: ComplianceStage) -> int:
    return ((STAGES[stage].order - 1) * 100) // len(ORDERED)


# -------------------------------------------------
# Guidance
# -------------------------------------------------
def help_text(action: str) -> str:
    lowered = action.lower()
    if "gps" in lowered or "coordinates" in lowered:
        return "Use a GPS device or the map interface to capture precise location data"
    if "upload" in lowered:
        return "Accepted formats: PDF, PNG, JPG. Maximum file size: 10MB"
    if "verify" in lowered:
        return "Review the information carefully and confirm it is accurate"
    if "ledger" in lowered:
        return "This action will be recorded immutably on the ledger"
    return "Complete this action to proceed with the compliance workflow"


def guidance(stage: ComplianceStage) -> StageGuidance:
    d = STAGES[stage]
    return StageGuidance(
        stage=stage,
        order=d.order,
        displayName=d.displayName,
        description=d.description,
        requiredActions=[
            ActionItem(id=f"{stage.value}_REQ_{i}", action=a, type="REQUIRED", helpText=help_text(a))
            for i, a in enumerate(d.requiredActions)
        ],
        automatedActions=[
            ActionItem(id=f"{stage.value}_AUTO_{i}", action=a, type="AUTOMATED")
            for i, a in enumerate(d.automatedActions)
        ],
        nextSteps=list(d.nextSteps) or ["Complete all required actions to advance to the next stage"],
        regulationRef=d.regulationRef,
        tips=list(d.tips),
    )


def initial_stages() -> Dict[ComplianceStage, StageProgress]:
    return {s: StageProgress(stage=s) for s in ORDERED}


__all__ = [
    "STAGES",
    "ORDERED",
    "definition",
    "next_stage",
    "previous_stage",
    "first_stage",
    "last_stage",
    "stage_by_order",
    "stage_by_name",
    "pending_actions",
    "is_finished",
    "can_skip",
    "completion_percent",
    "can_advance",
    "overall_progress",
    "help_text",
    "guidance",
    "initial_stages",
]
