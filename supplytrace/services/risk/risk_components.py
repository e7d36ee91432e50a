# supplytrace/services/risk/risk_components.py
"""
Scoring pieces of the risk engine.

Each component is a pure function `(BatchEvidence, RiskPolicy) -> RiskComponent`
registered in `DEFAULT_COMPONENTS` together with the weight key it feeds and
the conservative score used when its evidence cannot be gathered. The overall
score is the fixed weighted sum in `WEIGHTS`; changing those numbers must come
with a new `WEIGHTS_VERSION`, because regulators audit the formula.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

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

logger = logging.getLogger(__name__)


# -------------------------------------------------
# Weights + thresholds
# -------------------------------------------------
WEIGHTS_VERSION = "2024.1"

WEIGHTS: Mapping[str, Decimal] = MappingProxyType({
    "country": Decimal("0.25"),
    "deforestation": Decimal("0.30"),
    "supplier": Decimal("0.15"),
    "commodity": Decimal("0.10"),
    "documentation": Decimal("0.10"),
    "geospatial": Decimal("0.10"),
})

HIGH_RISK_THRESHOLD = 0.8
MEDIUM_RISK_THRESHOLD = 0.5
LOW_RISK_THRESHOLD = 0.2

RECENT_ALERT_DAYS = 365

# Policy values a compliance owner may want to tune.
UNKNOWN_COUNTRY_SCORE = 0.7
NO_UNITS_DEFORESTATION_SCORE = 0.8
NO_UNITS_GEOSPATIAL_SCORE = 0.9
SUPPLIER_BASELINE_SCORE = 0.3
HIGH_RISK_COMMODITY_SCORE = 0.7
STANDARD_COMMODITY_SCORE = 0.3

COUNTRY_LEVEL_SCORES: Mapping[CountryRiskLevel, float] = MappingProxyType({
    CountryRiskLevel.LOW: 0.2,
    CountryRiskLevel.STANDARD: 0.5,
    CountryRiskLevel.HIGH: 0.9,
})

# EUDR Annex I commodities and their common names
HIGH_RISK_COMMODITIES: FrozenSet[str] = frozenset({
    "cattle", "beef", "leather",
    "palm oil", "palm",
    "soy", "soya",
    "coffee",
    "cocoa", "cacao",
    "rubber",
    "timber", "wood",
    "maize",
})

REQUIRED_DOCUMENTS: Tuple[DocumentType, ...] = (
    DocumentType.LAND_RIGHTS_CERTIFICATE,
    DocumentType.HARVEST_RECORD,
    DocumentType.GEOLOCATION_DATA,
)


@dataclass(frozen=True)
class RiskPolicy:
    unknown_country_score: float = UNKNOWN_COUNTRY_SCORE
    no_units_deforestation_score: float = NO_UNITS_DEFORESTATION_SCORE
    no_units_geospatial_score: float = NO_UNITS_GEOSPATIAL_SCORE
    supplier_baseline_score: float = SUPPLIER_BASELINE_SCORE
    high_risk_commodity_score: float = HIGH_RISK_COMMODITY_SCORE
    standard_commodity_score: float = STANDARD_COMMODITY_SCORE
    alert_window_days: int = RECENT_ALERT_DAYS
    required_documents: Tuple[DocumentType, ...] = REQUIRED_DOCUMENTS


class EvidenceUnavailable(Exception):
    """A component's evidence source could not be read."""


@dataclass(frozen=True)
class BatchEvidence:
    """Everything one assessment reads, captured once up front."""

    batch: BatchRecord
    assessed_at: datetime
    country: Optional[CountryRisk] = None
    high_risk_commodities: FrozenSet[str] = HIGH_RISK_COMMODITIES
    production_units: Tuple[ProductionUnit, ...] = ()
    # None means the source could not be read
    alerts: Optional[Tuple[DeforestationAlert, ...]] = ()
    document_types: Optional[FrozenSet[DocumentType]] = frozenset()
    errors: Mapping[str, str] = field(default_factory=dict)

    @property
    def has_units(self) -> bool:
        return len(self.production_units) > 0

    def missing_documents(self, policy: RiskPolicy) -> List[DocumentType]:
        if self.document_types is None:
            return []
        return [d for d in policy.required_documents if d not in self.document_types]


def classify(score: float) -> RiskLevel:
    if score >= HIGH_RISK_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_RISK_THRESHOLD:
        return RiskLevel.MEDIUM
    if score > LOW_RISK_THRESHOLD:
        return RiskLevel.LOW
    return RiskLevel.NONE


# -------------------------------------------------
# Components
# -------------------------------------------------
def country_risk(ev: BatchEvidence, policy: RiskPolicy) -> RiskComponent:
    if "country" in ev.errors:
        raise EvidenceUnavailable(ev.errors["country"])

    code = ev.batch.countryOfProduction
    if ev.country is None:
        return RiskComponent(
            key="country",
            name="Country Risk",
            score=policy.unknown_country_score,
            level="UNKNOWN",
            justification="Country not found in risk matrix - requires manual review",
            evidence={"countryCode": code},
        )

    return RiskComponent(
        key="country",
        name="Country Risk",
        score=COUNTRY_LEVEL_SCORES[ev.country.riskLevel],
        level=ev.country.riskLevel.value,
        justification=ev.country.riskJustification or "Based on country risk matrix",
        evidence={
            "countryCode": code,
            "countryName": ev.country.countryName,
            "riskLevel": ev.country.riskLevel.value,
        },
    )


def deforestation_risk(ev: BatchEvidence, policy: RiskPolicy) -> RiskComponent:
    if "units" in ev.errors:
        raise EvidenceUnavailable(ev.errors["units"])
    if not ev.has_units:
        return RiskComponent(
            key="deforestation",
            name="Deforestation Risk",
            score=policy.no_units_deforestation_score,
            level=RiskLevel.HIGH.value,
            justification="No production units associated with batch",
            evidence={"totalUnits": 0},
        )
    if ev.alerts is None:
        raise EvidenceUnavailable(ev.errors.get("alerts", "deforestation alerts unavailable"))

    window_start = ev.assessed_at - timedelta(days=policy.alert_window_days)
    unit_ids = {u.id for u in ev.production_units}
    recent = [
        a for a in ev.alerts
        if a.productionUnitId in unit_ids and window_start <= a.detectedAt <= ev.assessed_at
    ]
    high = sum(1 for a in recent if a.severity is AlertSeverity.HIGH)
    medium = sum(1 for a in recent if a.severity is AlertSeverity.MEDIUM)

    if high > 0:
        score = 0.9
    elif medium > 2:
        score = 0.7
    elif medium > 0:
        score = 0.5
    elif recent:
        score = 0.3
    else:
        score = 0.1

    return RiskComponent(
        key="deforestation",
        name="Deforestation Risk",
        score=score,
        level=classify(score).value,
        justification="Based on recent deforestation alerts near production units",
        evidence={
            "totalAlerts": len(recent),
            "highSeverityAlerts": high,
            "mediumSeverityAlerts": medium,
            "assessmentPeriodDays": policy.alert_window_days,
        },
    )


def supplier_risk(ev: BatchEvidence, policy: RiskPolicy) -> RiskComponent:
    # Baseline until supplier history and certifications are scored.
    score = policy.supplier_baseline_score
    return RiskComponent(
        key="supplier",
        name="Supplier Risk",
        score=score,
        level=classify(score).value,
        justification="Baseline supplier risk; verification history not yet scored",
        evidence={"supplierId": ev.batch.createdBy, "verificationStatus": "BASELINE"},
    )


def commodity_risk(ev: BatchEvidence, policy: RiskPolicy) -> RiskComponent:
    commodity = ev.batch.commodity
    normalized = commodity.strip().lower()
    is_high = any(c in normalized for c in ev.high_risk_commodities)
    score = policy.high_risk_commodity_score if is_high else policy.standard_commodity_score

    return RiskComponent(
        key="commodity",
        name="Commodity Risk",
        score=score,
        level=classify(score).value,
        justification="Based on commodity type and EUDR risk classification",
        evidence={"commodity": commodity, "isHighRiskCommodity": is_high},
    )


def documentation_risk(ev: BatchEvidence, policy: RiskPolicy) -> RiskComponent:
    if ev.document_types is None:
        raise EvidenceUnavailable(ev.errors.get("documents", "document store unavailable"))

    required = policy.required_documents
    present = [d for d in required if d in ev.document_types]
    missing = ev.missing_documents(policy)
    score = 1.0 - (len(present) / len(required))

    return RiskComponent(
        key="documentation",
        name="Documentation Risk",
        score=score,
        level=classify(score).value,
        justification="Based on completeness of required documentation",
        evidence={
            "requiredDocTypes": len(required),
            "presentDocTypes": len(present),
            "missingDocTypes": [d.value for d in missing],
        },
    )


def geospatial_risk(ev: BatchEvidence, policy: RiskPolicy) -> RiskComponent:
    if "units" in ev.errors:
        raise EvidenceUnavailable(ev.errors["units"])
    if not ev.has_units:
        return RiskComponent(
            key="geospatial",
            name="Geospatial Risk",
            score=policy.no_units_geospatial_score,
            level=RiskLevel.HIGH.value,
            justification="No geospatial data available for batch",
            evidence={"totalUnits": 0},
        )

    total = len(ev.production_units)
    verified = sum(1 for u in ev.production_units if u.is_verified)
    ratio = verified / total
    score = 1.0 - ratio

    return RiskComponent(
        key="geospatial",
        name="Geospatial Risk",
        score=score,
        level=classify(score).value,
        justification="Based on geospatial verification status of production units",
        evidence={
            "totalUnits": total,
            "verifiedUnits": verified,
            "verificationRatio": round(ratio, 2),
        },
    )


# -------------------------------------------------
# Registry
# -------------------------------------------------
ComponentFn = Callable[[BatchEvidence, RiskPolicy], RiskComponent]


@dataclass(frozen=True)
class ComponentSpec:
    key: str
    name: str
    fn: ComponentFn
    conservative_score: float


DEFAULT_COMPONENTS: Tuple[ComponentSpec, ...] = (
    ComponentSpec("country", "Country Risk", country_risk, 0.9),
    ComponentSpec("deforestation", "Deforestation Risk", deforestation_risk, 0.9),
    ComponentSpec("supplier", "Supplier Risk", supplier_risk, 1.0),
    ComponentSpec("commodity", "Commodity Risk", commodity_risk, 0.7),
    ComponentSpec("documentation", "Documentation Risk", documentation_risk, 1.0),
    ComponentSpec("geospatial", "Geospatial Risk", geospatial_risk, 1.0),
)


def replace_component(
    components: Sequence[ComponentSpec], key: str, fn: ComponentFn
) -> Tuple[ComponentSpec, ...]:
    """Swap one scorer (e.g. a real supplier-history model) keeping its slot."""
    if key not in {c.key for c in components}:
        raise KeyError(f"Unknown risk component: {key}")
    return tuple(
        ComponentSpec(c.key, c.name, fn, c.conservative_score) if c.key == key else c
        for c in components
    )


def run_component(spec: ComponentSpec, ev: BatchEvidence, policy: RiskPolicy) -> RiskComponent:
    """Score one component, degrading to its conservative score on failure."""
    try:
        comp = spec.fn(ev, policy)
        if comp.key != spec.key:
            comp = comp.model_copy(update={"key": spec.key})
        return comp
    except EvidenceUnavailable as e:
        reason = str(e)
        logger.warning("%s degraded for batch %s: %s", spec.name, ev.batch.id, reason)
    except Exception as e:
        reason = repr(e)
        logger.error("%s failed for batch %s", spec.name, ev.batch.id, exc_info=True)

    score = spec.conservative_score
    return RiskComponent(
        key=spec.key,
        name=spec.name,
        score=score,
        level=classify(score).value,
        justification=f"Evidence unavailable ({reason}); conservative score applied",
        evidence={"error": reason},
        degraded=True,
    )


def aggregate(components: Sequence[RiskComponent], weights: Mapping[str, Decimal] = WEIGHTS) -> float:
    total = Decimal("0")
    for comp in components:
        total += Decimal(repr(comp.score)) * weights[comp.key]
    return float(min(Decimal("1"), max(Decimal("0"), total)))


# -------------------------------------------------
# Recommendations (independent, ordered rules)
# -------------------------------------------------
RecommendationRule = Callable[[RiskLevel, BatchEvidence, Sequence[RiskComponent], RiskPolicy], List[str]]

_LEVEL_RECOMMENDATIONS: Dict[RiskLevel, List[str]] = {
    RiskLevel.HIGH: [
        "Immediate mitigation required - consider batch rejection or enhanced due diligence",
        "Obtain additional documentation from supplier",
        "Conduct on-site verification of production units",
        "Consult legal/compliance team before proceeding",
    ],
    RiskLevel.MEDIUM: [
        "Enhanced due diligence recommended",
        "Verify supplier certifications and documentation",
        "Monitor production units for deforestation alerts",
        "Consider third-party verification",
    ],
    RiskLevel.LOW: [
        "Standard due diligence procedures sufficient",
        "Regular monitoring of production units recommended",
    ],
    RiskLevel.NONE: [
        "Low risk - standard procedures acceptable",
    ],
}


def _by_level(level, ev, comps, policy) -> List[str]:
    return list(_LEVEL_RECOMMENDATIONS[level])


def _missing_land_rights(level, ev, comps, policy) -> List[str]:
    if DocumentType.LAND_RIGHTS_CERTIFICATE in ev.missing_documents(policy):
        return ["Obtain land rights certificate from supplier"]
    return []


def _missing_harvest_record(level, ev, comps, policy) -> List[str]:
    if DocumentType.HARVEST_RECORD in ev.missing_documents(policy):
        return ["Obtain harvest records covering this batch"]
    return []


def _missing_geolocation(level, ev, comps, policy) -> List[str]:
    if DocumentType.GEOLOCATION_DATA in ev.missing_documents(policy):
        return ["Upload geolocation data for every production unit"]
    return []


def _no_units(level, ev, comps, policy) -> List[str]:
    if not ev.has_units:
        return ["Link at least one production unit to the batch"]
    return []


def _unverified_units(level, ev, comps, policy) -> List[str]:
    if any(not u.is_verified for u in ev.production_units):
        return ["Verify geospatial data for all production units"]
    return []


def _high_alerts(level, ev, comps, policy) -> List[str]:
    comp = next((c for c in comps if c.key == "deforestation"), None)
    if comp is not None and comp.evidence.get("highSeverityAlerts", 0) > 0:
        return ["Investigate high-severity deforestation alerts and attach evidence"]
    return []


def _unknown_country(level, ev, comps, policy) -> List[str]:
    comp = next((c for c in comps if c.key == "country"), None)
    if comp is not None and comp.level == "UNKNOWN":
        return [f"Add {ev.batch.countryOfProduction} to the country risk matrix or review manually"]
    return []


def _degraded(level, ev, comps, policy) -> List[str]:
    return [
        f"Re-run assessment once evidence for {c.name} is available"
        for c in comps if c.degraded
    ]


RECOMMENDATION_RULES: Tuple[RecommendationRule, ...] = (
    _by_level,
    _missing_land_rights,
    _missing_harvest_record,
    _missing_geolocation,
    _no_units,
    _unverified_units,
    _high_alerts,
    _unknown_country,
    _degraded,
)


def recommend(
    level: RiskLevel,
    ev: BatchEvidence,
    comps: Sequence[RiskComponent],
    policy: RiskPolicy,
    rules: Sequence[RecommendationRule] = RECOMMENDATION_RULES,
) -> List[str]:
    out: List[str] = []
    for rule in rules:
        for rec in rule(level, ev, comps, policy):
            if rec not in out:
                out.append(rec)
    return out


def rationale(
    level: RiskLevel, score: float, comps: Sequence[RiskComponent], recommendations: Sequence[str]
) -> str:
    lines = [
        "Risk Assessment Summary:",
        f"Overall Risk Level: {level.value}",
        f"Risk Score: {score:.2f}",
        "",
        "Key Risk Factors:",
    ]
    lines += [f"- {c.name}: {c.level} ({c.score:.2f})" for c in comps]
    lines += ["", "Recommendations:"]
    lines += [f"- {r}" for r in recommendations]
    return "\n".join(lines)
