"""Unit tests for the optimistic version check in the pipeline stores."""

from unittest.mock import MagicMock

from supplytrace.models.compliance.pipeline_models import ComplianceStage, CompliancePipelineState
from supplytrace.services.compliance import stages
from supplytrace.services.compliance.pipeline_store import InMemoryPipelineStore, MongoPipelineStore

from conftest import NOW


def _state(version=0):
    return CompliancePipelineState(
        batchId="batch-1",
        currentStage=ComplianceStage.PRODUCTION_REGISTRATION,
        stages=stages.initial_stages(),
        createdAt=NOW,
        updatedAt=NOW,
        version=version,
    )


class TestMongoPipelineStore:

    def test_replace_filters_on_expected_version(self):
        col = MagicMock()
        col.replace_one.return_value = MagicMock(matched_count=1, modified_count=0)

        assert MongoPipelineStore(collection=col).replace(_state(version=4), 3) is True

        filt, doc = col.replace_one.call_args[0]
        assert filt == {"_id": "batch-1", "version": 3}
        assert doc["version"] == 4

    def test_stale_version_is_rejected(self):
        col = MagicMock()
        col.replace_one.return_value = MagicMock(matched_count=0, modified_count=0)

        assert MongoPipelineStore(collection=col).replace(_state(version=4), 3) is False


class TestInMemoryPipelineStore:

    def test_stale_version_is_rejected(self):
        store = InMemoryPipelineStore()
        store.insert(_state())

        assert store.replace(_state(version=1), 0) is True
        assert store.replace(_state(version=1), 0) is False
        assert store.get("batch-1").version == 1
