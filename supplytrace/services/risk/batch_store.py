# supplytrace/services/risk/batch_store.py
"""
Read side the risk engine depends on: batches, production units, documents,
deforestation alerts, country risk table, mitigation records and the
assessment history. The in-memory store backs tests and embedded use; the
Mongo store maps the same methods onto collections.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from pymongo import ASCENDING, DESCENDING

from supplytrace.models.risk.risk_models import (
    BatchRecord,
    CountryRisk,
    DeforestationAlert,
    DocumentType,
    MitigationRecord,
    ProductionUnit,
    RiskAssessmentResult,
    RiskLevel,
)
from supplytrace.mongo import get_col
from supplytrace.services.transfer.transfer_store import _require, from_bson, to_bson


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes; make them comparable."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


class InMemoryEvidenceStore:
    def __init__(self):
        self._lock = threading.Lock()
        self.batches: Dict[str, BatchRecord] = {}
        self.units: Dict[str, ProductionUnit] = {}
        self.documents: Dict[str, Set[DocumentType]] = defaultdict(set)
        self.alerts: List[DeforestationAlert] = []
        self.countries: Dict[str, CountryRisk] = {}
        self.mitigations: Dict[str, List[MitigationRecord]] = defaultdict(list)
        self.assessments: Dict[str, List[RiskAssessmentResult]] = defaultdict(list)

    # -------------------------
    # Seeding
    # -------------------------
    def add_batch(self, batch: BatchRecord) -> None:
        self.batches[batch.id] = batch

    def add_unit(self, unit: ProductionUnit) -> None:
        self.units[unit.id] = unit

    def add_document(self, batch_id: str, doc_type: DocumentType) -> None:
        self.documents[batch_id].add(doc_type)

    def add_alert(self, alert: DeforestationAlert) -> None:
        self.alerts.append(alert)

    def add_country(self, country: CountryRisk) -> None:
        self.countries[country.countryCode.upper()] = country

    # -------------------------
    # Batches
    # -------------------------
    def get_batch(self, batch_id: str) -> Optional[BatchRecord]:
        return self.batches.get(batch_id)

    def update_risk(self, batch_id: str, level: RiskLevel, rationale: str) -> None:
        with self._lock:
            batch = self.batches[batch_id]
            self.batches[batch_id] = batch.model_copy(update={"riskLevel": level, "riskRationale": rationale})

    # -------------------------
    # Production units + documents
    # -------------------------
    def production_units(self, unit_ids: Iterable[str]) -> List[ProductionUnit]:
        return [self.units[u] for u in unit_ids if u in self.units]

    def is_unit_verified(self, unit_id: str) -> bool:
        unit = self.units.get(unit_id)
        return unit is not None and unit.is_verified

    def document_types(self, batch_id: str) -> Set[DocumentType]:
        return set(self.documents.get(batch_id, set()))

    def has_document(self, batch_id: str, doc_type: DocumentType) -> bool:
        return doc_type in self.documents.get(batch_id, set())

    # -------------------------
    # Alerts
    # -------------------------
    def alerts_for_units(self, unit_ids: Iterable[str], start: datetime, end: datetime) -> List[DeforestationAlert]:
        ids = set(unit_ids)
        return [
            a for a in self.alerts
            if a.productionUnitId in ids and start <= as_utc(a.detectedAt) <= end
        ]

    # -------------------------
    # Country table
    # -------------------------
    def load_country_risks(self) -> Dict[str, CountryRisk]:
        return dict(self.countries)

    # -------------------------
    # Mitigation + history
    # -------------------------
    def attach_mitigation(self, record: MitigationRecord) -> None:
        with self._lock:
            self.mitigations[record.batchId].append(record)

    def mitigations_for(self, batch_id: str) -> List[MitigationRecord]:
        return list(self.mitigations.get(batch_id, []))

    def append_assessment(self, result: RiskAssessmentResult) -> None:
        with self._lock:
            self.assessments[result.batchId].append(result)

    def assessment_history(self, batch_id: str) -> List[RiskAssessmentResult]:
        return sorted(self.assessments.get(batch_id, []), key=lambda r: r.assessedAt)


class MongoEvidenceStore:
    BATCHES = "batches"
    UNITS = "production_units"
    DOCUMENTS = "batch_documents"
    ALERTS = "deforestation_alerts"
    COUNTRIES = "country_risks"
    MITIGATIONS = "mitigation_records"
    ASSESSMENTS = "risk_assessments"

    def __init__(self, db=None):
        self._db = db

    def _col(self, name: str):
        if self._db is not None:
            return self._db[name]
        return _require(get_col(name), name)

    def ensure_indexes(self) -> None:
        self._col(self.DOCUMENTS).create_index([("batchId", ASCENDING), ("documentType", ASCENDING)])
        self._col(self.ALERTS).create_index([("productionUnitId", ASCENDING), ("detectedAt", DESCENDING)])
        self._col(self.MITIGATIONS).create_index([("batchId", ASCENDING)])
        self._col(self.ASSESSMENTS).create_index([("batchId", ASCENDING), ("assessedAt", DESCENDING)])

    # -------------------------
    # Batches
    # -------------------------
    def get_batch(self, batch_id: str) -> Optional[BatchRecord]:
        doc = self._col(self.BATCHES).find_one({"_id": batch_id})
        if not doc:
            return None
        data = from_bson(doc)
        data.setdefault("id", batch_id)
        return BatchRecord.model_validate(data)

    def update_risk(self, batch_id: str, level: RiskLevel, rationale: str) -> None:
        self._col(self.BATCHES).update_one(
            {"_id": batch_id},
            {"$set": {"riskLevel": level.value, "riskRationale": rationale, "updated_at": datetime.now(timezone.utc)}},
        )

    # -------------------------
    # Production units + documents
    # -------------------------
    def production_units(self, unit_ids: Iterable[str]) -> List[ProductionUnit]:
        ids = list(unit_ids)
        if not ids:
            return []
        out = []
        for doc in self._col(self.UNITS).find({"_id": {"$in": ids}}):
            data = from_bson(doc)
            data.setdefault("id", doc["_id"])
            data["lastVerifiedAt"] = as_utc(data.get("lastVerifiedAt"))
            out.append(ProductionUnit.model_validate(data))
        return out

    def is_unit_verified(self, unit_id: str) -> bool:
        doc = self._col(self.UNITS).find_one({"_id": unit_id}, {"lastVerifiedAt": 1})
        return bool(doc and doc.get("lastVerifiedAt"))

    def document_types(self, batch_id: str) -> Set[DocumentType]:
        found: Set[DocumentType] = set()
        for raw in self._col(self.DOCUMENTS).distinct("documentType", {"batchId": batch_id}):
            try:
                found.add(DocumentType(raw))
            except ValueError:
                found.add(DocumentType.OTHER)
        return found

    def has_document(self, batch_id: str, doc_type: DocumentType) -> bool:
        return self._col(self.DOCUMENTS).count_documents(
            {"batchId": batch_id, "documentType": doc_type.value}, limit=1
        ) > 0

    # -------------------------
    # Alerts
    # -------------------------
    def alerts_for_units(self, unit_ids: Iterable[str], start: datetime, end: datetime) -> List[DeforestationAlert]:
        cur = self._col(self.ALERTS).find({
            "productionUnitId": {"$in": list(unit_ids)},
            "detectedAt": {"$gte": start, "$lte": end},
        })
        out = []
        for doc in cur:
            data = from_bson(doc)
            data.setdefault("id", str(doc["_id"]))
            data["detectedAt"] = as_utc(data["detectedAt"])
            out.append(DeforestationAlert.model_validate(data))
        return out

    # -------------------------
    # Country table
    # -------------------------
    def load_country_risks(self) -> Dict[str, CountryRisk]:
        out: Dict[str, CountryRisk] = {}
        for doc in self._col(self.COUNTRIES).find({}):
            data = from_bson(doc)
            data.setdefault("countryCode", doc["_id"])
            risk = CountryRisk.model_validate(data)
            out[risk.countryCode.upper()] = risk
        return out

    # -------------------------
    # Mitigation + history
    # -------------------------
    def attach_mitigation(self, record: MitigationRecord) -> None:
        doc = to_bson(record.model_dump())
        doc["_id"] = record.id
        self._col(self.MITIGATIONS).insert_one(doc)

    def mitigations_for(self, batch_id: str) -> List[MitigationRecord]:
        cur = self._col(self.MITIGATIONS).find({"batchId": batch_id}).sort([("createdAt", ASCENDING)])
        return [MitigationRecord.model_validate(from_bson(d)) for d in cur]

    def append_assessment(self, result: RiskAssessmentResult) -> None:
        self._col(self.ASSESSMENTS).insert_one(to_bson(result.model_dump()))

    def assessment_history(self, batch_id: str) -> List[RiskAssessmentResult]:
        cur = (
            self._col(self.ASSESSMENTS)
            .find({"batchId": batch_id})
            .sort([("assessedAt", ASCENDING), ("_id", ASCENDING)])
        )
        return [RiskAssessmentResult.model_validate(from_bson(d)) for d in cur]
