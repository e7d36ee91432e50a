"""Unit tests for the two-party transfer handshake."""

import threading
from decimal import Decimal

import pytest

from supplytrace.blockchain import payload_hash
from supplytrace.errors import InvalidStateError, NotFoundError, ValidationError
from supplytrace.models.transfer.transfer_models import SenderInfo, TransferStatus
from supplytrace.services.transfer.transfer_service import TRANSFER_CONFIRMED_EVENT


class TestPropose:

    def test_creates_pending_record(self, transfer_service, farmer):
        rec = transfer_service.propose(farmer, "sup-agg", "Coffee", "500", quality_grade="AA")

        assert rec.status is TransferStatus.PENDING
        assert rec.senderQuantityKg == Decimal("500")
        assert rec.receiverQuantityKg is None
        assert rec.receiverName == "Kisii Aggregators"
        assert rec.senderConfirmedAt is not None
        assert rec.ledgerTransactionRef is None

    @pytest.mark.parametrize("qty", ["0", "-1", "abc", None])
    def test_rejects_bad_quantity(self, transfer_service, farmer, qty):
        with pytest.raises(ValidationError):
            transfer_service.propose(farmer, "sup-agg", "Coffee", qty)

    def test_rejects_unknown_receiver(self, transfer_service, farmer):
        with pytest.raises(ValidationError, match="not found"):
            transfer_service.propose(farmer, "sup-missing", "Coffee", "10")

    def test_rejects_blank_commodity(self, transfer_service, farmer):
        with pytest.raises(ValidationError):
            transfer_service.propose(farmer, "sup-agg", "   ", "10")

    def test_rejects_ambiguous_sender(self, transfer_service):
        sender = SenderInfo(farmerId="f-1", productionUnitId="pu-1", name="Both")
        with pytest.raises(ValidationError):
            transfer_service.propose(sender, "sup-agg", "Coffee", "10")

    def test_rejects_transfer_to_self(self, transfer_service):
        sender = SenderInfo(supplierId="sup-agg", name="Kisii Aggregators")
        with pytest.raises(ValidationError):
            transfer_service.propose(sender, "sup-agg", "Coffee", "10")


class TestReconcile:

    def test_matching_quantities_confirm_and_notarize(self, transfer_service, farmer, ledger):
        rec = transfer_service.propose(farmer, "sup-agg", "Coffee", "500")

        done = transfer_service.confirm(rec.id, "500.00")

        assert done.status is TransferStatus.CONFIRMED
        assert done.receiverQuantityKg == Decimal("500.00")
        assert done.ledgerTransactionRef is not None
        assert len(ledger.calls) == 1
        event_type, digest, fields = ledger.calls[0]
        assert event_type == TRANSFER_CONFIRMED_EVENT
        assert digest == payload_hash(fields)
        assert fields["transferId"] == rec.id

    def test_mismatch_is_disputed_without_ledger_write(self, transfer_service, farmer, ledger):
        rec = transfer_service.propose(farmer, "sup-agg", "Coffee", "500")

        done = transfer_service.confirm(rec.id, "420")

        assert done.status is TransferStatus.DISPUTED
        assert done.senderQuantityKg == Decimal("500")
        assert done.receiverQuantityKg == Decimal("420")
        assert done.discrepancy_kg() == Decimal("80")
        assert done.ledgerTransactionRef is None
        assert ledger.calls == []

    def test_explicit_dispute_keeps_reason(self, transfer_service, farmer, ledger):
        rec = transfer_service.propose(farmer, "sup-agg", "Coffee", "500")

        done = transfer_service.dispute(rec.id, "480", "Two sacks wet on arrival")

        assert done.status is TransferStatus.DISPUTED
        assert done.disputeReason == "Two sacks wet on arrival"
        assert ledger.calls == []

    def test_dispute_requires_reason(self, transfer_service, farmer):
        rec = transfer_service.propose(farmer, "sup-agg", "Coffee", "500")
        with pytest.raises(ValidationError):
            transfer_service.dispute(rec.id, "480", " ")

    def test_reject_and_cancel(self, transfer_service, farmer, ledger):
        a = transfer_service.propose(farmer, "sup-agg", "Coffee", "10")
        b = transfer_service.propose(farmer, "sup-agg", "Coffee", "20")

        assert transfer_service.reject(a.id, "Wrong grade").status is TransferStatus.REJECTED
        assert transfer_service.cancel(b.id, requested_by="farmer-1").status is TransferStatus.CANCELLED
        assert ledger.calls == []

    def test_only_sender_can_cancel(self, transfer_service, farmer):
        rec = transfer_service.propose(farmer, "sup-agg", "Coffee", "10")
        with pytest.raises(ValidationError):
            transfer_service.cancel(rec.id, requested_by="sup-agg")

    @pytest.mark.parametrize("action", ["confirm", "reject", "cancel", "dispute"])
    def test_terminal_records_are_frozen(self, transfer_service, farmer, action):
        rec = transfer_service.propose(farmer, "sup-agg", "Coffee", "10")
        transfer_service.confirm(rec.id, "10")

        calls = {
            "confirm": lambda: transfer_service.confirm(rec.id, "10"),
            "reject": lambda: transfer_service.reject(rec.id),
            "cancel": lambda: transfer_service.cancel(rec.id),
            "dispute": lambda: transfer_service.dispute(rec.id, "9", "late"),
        }
        with pytest.raises(InvalidStateError):
            calls[action]()

    def test_unknown_transfer(self, transfer_service):
        with pytest.raises(NotFoundError):
            transfer_service.confirm("nope", "10")


class TestConcurrency:

    def test_only_one_concurrent_confirm_wins(self, transfer_service, farmer):
        rec = transfer_service.propose(farmer, "sup-agg", "Coffee", "500")
        barrier = threading.Barrier(8)
        wins, losses = [], []

        def worker(qty):
            barrier.wait()
            try:
                wins.append(transfer_service.confirm(rec.id, qty))
            except InvalidStateError:
                losses.append(qty)

        threads = [threading.Thread(target=worker, args=("500" if i % 2 else "450",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(losses) == 7
        stored = transfer_service.get(rec.id)
        assert stored.status is wins[0].status
        assert stored.receiverQuantityKg == wins[0].receiverQuantityKg


class TestLedgerOutage:

    def test_outage_keeps_confirmation_and_backfills(self, transfer_service, farmer, ledger, queue, monotonic):
        ledger.fail = True
        rec = transfer_service.propose(farmer, "sup-agg", "Coffee", "500")

        done = transfer_service.confirm(rec.id, "500")

        assert done.status is TransferStatus.CONFIRMED
        assert done.ledgerTransactionRef is None
        assert queue.pending_count() == 1

        ledger.fail = False
        monotonic.advance(5)
        assert queue.retry_pending() == 1

        assert queue.pending_count() == 0
        assert transfer_service.get(rec.id).ledgerTransactionRef is not None


class TestQueries:

    def test_incoming_outgoing_and_inventory(self, transfer_service, farmer):
        a = transfer_service.propose(farmer, "sup-agg", "Coffee", "500", batch_id="batch-1")
        transfer_service.propose(farmer, "sup-agg", "Coffee", "100")
        transfer_service.propose(farmer, "sup-proc", "Cocoa", "50")
        transfer_service.confirm(a.id, "500")

        assert len(transfer_service.incoming("sup-agg")) == 2
        assert len(transfer_service.outgoing("farmer-1")) == 3
        assert transfer_service.count_pending("sup-agg") == 1
        assert [t.id for t in transfer_service.for_batch("batch-1")] == [a.id]

        inventory = transfer_service.inventory("sup-agg")
        assert len(inventory) == 1
        assert inventory[0].quantityKg == Decimal("500")
        assert transfer_service.inventory_total_kg("sup-agg", "coffee") == Decimal("500")
