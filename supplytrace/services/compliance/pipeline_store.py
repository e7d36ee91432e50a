# supplytrace/services/compliance/pipeline_store.py
"""
Pipeline state persistence.

`replace` is an optimistic write: it only lands when the stored version still
equals `expected_version`, and it returns False otherwise.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from supplytrace.models.compliance.pipeline_models import CompliancePipelineState
from supplytrace.mongo import get_col
from supplytrace.services.transfer.transfer_store import _require, from_bson, to_bson


class InMemoryPipelineStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._states: Dict[str, CompliancePipelineState] = {}

    def insert(self, state: CompliancePipelineState) -> bool:
        with self._lock:
            if state.batchId in self._states:
                return False
            self._states[state.batchId] = state.model_copy(deep=True)
            return True

    def get(self, batch_id: str) -> Optional[CompliancePipelineState]:
        with self._lock:
            state = self._states.get(batch_id)
            return state.model_copy(deep=True) if state is not None else None

    def replace(self, state: CompliancePipelineState, expected_version: int) -> bool:
        with self._lock:
            current = self._states.get(state.batchId)
            if current is None or current.version != expected_version:
                return False
            self._states[state.batchId] = state.model_copy(deep=True)
            return True


class MongoPipelineStore:
    COLLECTION = "compliance_pipelines"

    def __init__(self, collection=None):
        self._col = collection

    @property
    def col(self):
        return _require(self._col if self._col is not None else get_col(self.COLLECTION), self.COLLECTION)

    @staticmethod
    def _to_doc(state: CompliancePipelineState) -> Dict[str, Any]:
        doc = to_bson(state.model_dump())
        doc["_id"] = state.batchId
        return doc

    def insert(self, state: CompliancePipelineState) -> bool:
        try:
            self.col.insert_one(self._to_doc(state))
        except DuplicateKeyError:
            return False
        return True

    def get(self, batch_id: str) -> Optional[CompliancePipelineState]:
        doc = self.col.find_one({"_id": batch_id})
        if not doc:
            return None
        return CompliancePipelineState.model_validate(from_bson(doc))

    def replace(self, state: CompliancePipelineState, expected_version: int) -> bool:
        res = self.col.replace_one(
            {"_id": state.batchId, "version": expected_version},
            self._to_doc(state),
        )
        # matched, not modified: an identical document still counts as written
        return res.matched_count == 1
