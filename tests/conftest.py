"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from supplytrace.errors import LedgerUnavailableError
from supplytrace.models.risk.risk_models import (
    BatchRecord,
    CountryRisk,
    CountryRiskLevel,
    ProductionUnit,
)
from supplytrace.models.transfer.transfer_models import PartyType, SenderInfo, SupplierRef
from supplytrace.notarization import NotarizationQueue
from supplytrace.services.compliance.pipeline_service import CompliancePipelineService
from supplytrace.services.compliance.pipeline_store import InMemoryPipelineStore
from supplytrace.services.risk.batch_store import InMemoryEvidenceStore
from supplytrace.services.risk.reference_data import ReferenceData
from supplytrace.services.risk.risk_service import RiskAssessmentService
from supplytrace.services.transfer.transfer_service import TransferService
from supplytrace.services.transfer.transfer_store import (
    InMemorySupplierDirectory,
    InMemoryTransferStore,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeLedger:
    """LedgerClient that records calls and can be switched off."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def record_event(self, event_type, payload_hash, fields):
        if self.fail:
            raise LedgerUnavailableError("rpc timeout")
        self.calls.append((event_type, payload_hash, dict(fields)))
        return f"0x{len(self.calls):064x}"


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def queue(ledger, monotonic) -> NotarizationQueue:
    return NotarizationQueue(ledger, max_attempts=3, backoff_seconds=2.0, max_backoff_seconds=60.0, clock=monotonic)


@pytest.fixture
def suppliers() -> InMemorySupplierDirectory:
    return InMemorySupplierDirectory([
        SupplierRef(id="sup-agg", name="Kisii Aggregators", partyType=PartyType.AGGREGATOR),
        SupplierRef(id="sup-proc", name="Nyeri Processing", partyType=PartyType.PROCESSOR),
    ])


@pytest.fixture
def transfer_store() -> InMemoryTransferStore:
    return InMemoryTransferStore()


@pytest.fixture
def transfer_service(transfer_store, suppliers, queue) -> TransferService:
    return TransferService(transfer_store, suppliers, notarizer=queue, clock=lambda: NOW)


@pytest.fixture
def farmer() -> SenderInfo:
    return SenderInfo(farmerId="farmer-1", name="Jane Wanjiru", partyType=PartyType.FARMER)


@pytest.fixture
def evidence_store() -> InMemoryEvidenceStore:
    store = InMemoryEvidenceStore()
    store.add_country(CountryRisk(countryCode="KE", countryName="Kenya", riskLevel=CountryRiskLevel.STANDARD))
    store.add_country(CountryRisk(
        countryCode="BR",
        countryName="Brazil",
        riskLevel=CountryRiskLevel.HIGH,
        riskJustification="High deforestation rates",
    ))
    store.add_unit(ProductionUnit(id="pu-1", farmerId="farmer-1", countryCode="KE", lastVerifiedAt=NOW - timedelta(days=30)))
    store.add_batch(BatchRecord(
        id="batch-1",
        commodity="Avocado",
        countryOfProduction="KE",
        createdBy="sup-agg",
        productionUnitIds=["pu-1"],
    ))
    return store


@pytest.fixture
def risk_service(evidence_store, queue) -> RiskAssessmentService:
    return RiskAssessmentService(
        evidence_store,
        reference=ReferenceData.from_store(evidence_store),
        notarizer=queue,
        clock=lambda: NOW,
    )


@pytest.fixture
def pipeline_service(transfer_service, risk_service) -> CompliancePipelineService:
    return CompliancePipelineService(
        InMemoryPipelineStore(),
        transfers=transfer_service,
        risk=risk_service,
        clock=lambda: NOW,
    )
