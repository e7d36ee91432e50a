# supplytrace/services/transfer/transfer_store.py
"""
Persistence for transfer records and the supplier directory.

Both stores expose the same methods. Every receiver/sender mutation goes
through `apply_if_pending`, a conditional write that only succeeds while
the stored record is still PENDING, so two concurrent confirmations of
one transfer cannot both win.
"""

from __future__ import annotations

import threading
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from bson.decimal128 import Decimal128
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from supplytrace.errors import ConfigurationError
from supplytrace.models.transfer.transfer_models import (
    PartyType,
    SupplierRef,
    TransferRecord,
    TransferStatus,
)
from supplytrace.mongo import get_col


# -------------------------------------------------
# BSON conversion
# -------------------------------------------------
def to_bson(value: Any) -> Any:
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {(k.value if isinstance(k, Enum) else k): to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_bson(v) for v in value]
    return value


def from_bson(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: from_bson(v) for k, v in value.items() if k != "_id"}
    if isinstance(value, list):
        return [from_bson(v) for v in value]
    return value


def _require(col, name: str):
    if col is None:
        raise ConfigurationError(f"Mongo is disabled/unavailable (collection {name}).")
    return col


# -------------------------------------------------
# Transfer stores
# -------------------------------------------------
class InMemoryTransferStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, TransferRecord] = {}

    def insert(self, record: TransferRecord) -> TransferRecord:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Duplicate transfer id: {record.id}")
            self._records[record.id] = record
        return record

    def get(self, transfer_id: str) -> Optional[TransferRecord]:
        with self._lock:
            return self._records.get(transfer_id)

    def apply_if_pending(self, transfer_id: str, updates: Dict[str, Any]) -> Optional[TransferRecord]:
        with self._lock:
            current = self._records.get(transfer_id)
            if current is None or current.status is not TransferStatus.PENDING:
                return None
            data = current.model_dump()
            data.update(updates)
            data["version"] = current.version + 1
            updated = TransferRecord.model_validate(data)
            self._records[transfer_id] = updated
            return updated

    def set_ledger_reference(self, transfer_id: str, tx_ref: str) -> bool:
        with self._lock:
            current = self._records.get(transfer_id)
            if (
                current is None
                or current.status is not TransferStatus.CONFIRMED
                or current.ledgerTransactionRef is not None
            ):
                return False
            self._records[transfer_id] = current.model_copy(
                update={"ledgerTransactionRef": tx_ref, "version": current.version + 1}
            )
            return True

    def find(
        self,
        receiver_supplier_id: Optional[str] = None,
        origin_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        status: Optional[TransferStatus] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[TransferRecord]:
        with self._lock:
            rows = list(self._records.values())

        if receiver_supplier_id is not None:
            rows = [r for r in rows if r.receiverSupplierId == receiver_supplier_id]
        if origin_id is not None:
            rows = [r for r in rows if r.origin_id == origin_id]
        if batch_id is not None:
            rows = [r for r in rows if r.batchId == batch_id]
        if status is not None:
            rows = [r for r in rows if r.status is status]

        rows.sort(key=lambda r: r.createdAt, reverse=True)
        rows = rows[skip:]
        return rows[:limit] if limit is not None else rows

    def count(self, receiver_supplier_id: str, status: TransferStatus) -> int:
        return len(self.find(receiver_supplier_id=receiver_supplier_id, status=status))


class MongoTransferStore:
    COLLECTION = "transfer_records"

    def __init__(self, collection=None):
        self._col = collection

    @property
    def col(self):
        return _require(self._col if self._col is not None else get_col(self.COLLECTION), self.COLLECTION)

    def ensure_indexes(self) -> None:
        self.col.create_index([("receiverSupplierId", ASCENDING), ("createdAt", DESCENDING)])
        self.col.create_index([("originId", ASCENDING), ("createdAt", DESCENDING)])
        self.col.create_index([("batchId", ASCENDING)])
        self.col.create_index([("status", ASCENDING)])

    @staticmethod
    def _to_doc(record: TransferRecord) -> Dict[str, Any]:
        doc = to_bson(record.model_dump())
        doc["_id"] = record.id
        # flat copy of the origin id so both parties can query by it
        doc["originId"] = record.origin_id
        return doc

    @staticmethod
    def _from_doc(doc: Optional[Dict[str, Any]]) -> Optional[TransferRecord]:
        if not doc:
            return None
        data = from_bson(doc)
        data.pop("originId", None)
        return TransferRecord.model_validate(data)

    def insert(self, record: TransferRecord) -> TransferRecord:
        self.col.insert_one(self._to_doc(record))
        return record

    def get(self, transfer_id: str) -> Optional[TransferRecord]:
        return self._from_doc(self.col.find_one({"_id": transfer_id}))

    def apply_if_pending(self, transfer_id: str, updates: Dict[str, Any]) -> Optional[TransferRecord]:
        current = self.get(transfer_id)
        if current is None or current.status is not TransferStatus.PENDING:
            return None
        # the merged record must satisfy the model invariants before it is written
        data = current.model_dump()
        data.update(updates)
        TransferRecord.model_validate(data)

        doc = self.col.find_one_and_update(
            {"_id": transfer_id, "status": TransferStatus.PENDING.value},
            {"$set": to_bson(updates), "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return self._from_doc(doc)

    def set_ledger_reference(self, transfer_id: str, tx_ref: str) -> bool:
        res = self.col.update_one(
            {
                "_id": transfer_id,
                "status": TransferStatus.CONFIRMED.value,
                "ledgerTransactionRef": None,
            },
            {"$set": {"ledgerTransactionRef": tx_ref}, "$inc": {"version": 1}},
        )
        return res.modified_count == 1

    def find(
        self,
        receiver_supplier_id: Optional[str] = None,
        origin_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        status: Optional[TransferStatus] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[TransferRecord]:
        q: Dict[str, Any] = {}
        if receiver_supplier_id is not None:
            q["receiverSupplierId"] = receiver_supplier_id
        if origin_id is not None:
            q["originId"] = origin_id
        if batch_id is not None:
            q["batchId"] = batch_id
        if status is not None:
            q["status"] = status.value

        cur = self.col.find(q).sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
        if skip:
            cur = cur.skip(skip)
        if limit is not None:
            cur = cur.limit(limit)
        return [self._from_doc(d) for d in cur]

    def count(self, receiver_supplier_id: str, status: TransferStatus) -> int:
        return self.col.count_documents(
            {"receiverSupplierId": receiver_supplier_id, "status": status.value}
        )


# -------------------------------------------------
# Supplier directory
# -------------------------------------------------
class InMemorySupplierDirectory:
    def __init__(self, suppliers: Optional[List[SupplierRef]] = None):
        self._suppliers: Dict[str, SupplierRef] = {s.id: s for s in suppliers or []}

    def add(self, supplier: SupplierRef) -> None:
        self._suppliers[supplier.id] = supplier

    def get(self, supplier_id: str) -> Optional[SupplierRef]:
        return self._suppliers.get(supplier_id)


class MongoSupplierDirectory:
    COLLECTION = "suppliers"

    def __init__(self, collection=None):
        self._col = collection

    @property
    def col(self):
        return _require(self._col if self._col is not None else get_col(self.COLLECTION), self.COLLECTION)

    def get(self, supplier_id: str) -> Optional[SupplierRef]:
        doc = self.col.find_one({"$or": [{"_id": supplier_id}, {"supplierId": supplier_id}]})
        if not doc:
            return None

        raw_type = (doc.get("partyType") or doc.get("supplierType") or "OTHER").upper()
        try:
            party_type = PartyType(raw_type)
        except ValueError:
            party_type = PartyType.OTHER

        return SupplierRef(
            id=supplier_id,
            name=doc.get("name") or doc.get("supplierName") or supplier_id,
            partyType=party_type,
        )
