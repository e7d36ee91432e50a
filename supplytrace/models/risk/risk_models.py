# supplytrace/models/risk/risk_models.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class RiskLevel(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class CountryRiskLevel(str, Enum):
    LOW = "LOW"
    STANDARD = "STANDARD"
    HIGH = "HIGH"


class AlertSeverity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


class DocumentType(str, Enum):
    LAND_RIGHTS_CERTIFICATE = "LAND_RIGHTS_CERTIFICATE"
    LAND_OWNERSHIP_CERTIFICATE = "LAND_OWNERSHIP_CERTIFICATE"
    HARVEST_RECORD = "HARVEST_RECORD"
    GEOLOCATION_DATA = "GEOLOCATION_DATA"
    FARMING_LICENSE = "FARMING_LICENSE"
    EXPORT_LICENSE = "EXPORT_LICENSE"
    PHYTOSANITARY_CERTIFICATE = "PHYTOSANITARY_CERTIFICATE"
    PROCESSING_RECORD = "PROCESSING_RECORD"
    TRANSPORT_DOCUMENT = "TRANSPORT_DOCUMENT"
    SUPPLIER_DECLARATION = "SUPPLIER_DECLARATION"
    THIRD_PARTY_VERIFICATION = "THIRD_PARTY_VERIFICATION"
    SATELLITE_IMAGERY = "SATELLITE_IMAGERY"
    OTHER = "OTHER"


# -------------------------------------------------
# Reference / evidence records
# -------------------------------------------------
class CountryRisk(BaseModel):
    countryCode: str
    countryName: str
    riskLevel: CountryRiskLevel
    riskJustification: Optional[str] = None
    lastUpdated: Optional[datetime] = None


class ProductionUnit(BaseModel):
    id: str
    unitName: Optional[str] = None
    farmerId: Optional[str] = None
    countryCode: Optional[str] = None
    lastVerifiedAt: Optional[datetime] = None

    @property
    def is_verified(self) -> bool:
        return self.lastVerifiedAt is not None


class DeforestationAlert(BaseModel):
    id: str
    productionUnitId: str
    severity: AlertSeverity
    detectedAt: datetime
    source: Optional[str] = None
    isReviewed: bool = False


class BatchRecord(BaseModel):
    id: str
    commodity: str
    countryOfProduction: str
    createdBy: Optional[str] = None
    productionUnitIds: List[str] = Field(default_factory=list)
    riskLevel: Optional[RiskLevel] = None
    riskRationale: Optional[str] = None


class MitigationRecord(BaseModel):
    """Evidence that a HIGH-risk batch has an approved mitigation plan."""

    id: str
    batchId: str
    riskLevel: RiskLevel
    createdBy: str
    createdAt: datetime
    description: Optional[str] = None
    actions: List[str] = Field(default_factory=list)


# -------------------------------------------------
# Assessment output
# -------------------------------------------------
class RiskComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    score: float = Field(ge=0.0, le=1.0)
    level: str
    justification: str
    evidence: Dict[str, Any] = Field(default_factory=dict)
    degraded: bool = False


class RiskAssessmentResult(BaseModel):
    """One immutable entry of a batch's assessment history."""

    model_config = ConfigDict(frozen=True)

    batchId: str
    overallScore: float = Field(ge=0.0, le=1.0)
    riskLevel: RiskLevel
    assessedAt: datetime
    weightsVersion: str
    components: Tuple[RiskComponent, ...]
    recommendations: Tuple[str, ...] = ()

    def component(self, key: str) -> Optional[RiskComponent]:
        for c in self.components:
            if c.key == key:
                return c
        return None
