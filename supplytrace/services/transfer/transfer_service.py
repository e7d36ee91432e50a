# supplytrace/services/transfer/transfer_service.py

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from supplytrace.blockchain import ledger_fields
from supplytrace.errors import InvalidStateError, NotFoundError, ValidationError
from supplytrace.models.transfer.transfer_models import (
    InventoryItem,
    SenderInfo,
    TransferRecord,
    TransferStatus,
    parse_quantity,
)
from supplytrace.notarization import NotarizationQueue

logger = logging.getLogger(__name__)

TRANSFER_CONFIRMED_EVENT = "TRANSFER_CONFIRMED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransferService:
    """
    Two-party handshake for physical hand-offs.

    The sender proposes a quantity, the receiver answers exactly once. Only an
    exact quantity match is CONFIRMED and anchored on the ledger; any mismatch
    is kept as DISPUTED with both claims untouched.
    """

    def __init__(
        self,
        store,
        suppliers,
        notarizer: Optional[NotarizationQueue] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.suppliers = suppliers
        self.notarizer = notarizer
        self._clock = clock

    # -------------------------------------------------
    # SENDER
    # -------------------------------------------------
    def propose(
        self,
        sender: SenderInfo,
        receiver_supplier_id: str,
        commodity: str,
        sender_quantity_kg: Any,
        quality_grade: Optional[str] = None,
        notes: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> TransferRecord:
        origin = sender.to_origin()
        qty = parse_quantity(sender_quantity_kg, "senderQuantityKg")

        commodity = (commodity or "").strip()
        if not commodity:
            raise ValidationError("commodity is required")

        receiver_supplier_id = (receiver_supplier_id or "").strip()
        if not receiver_supplier_id:
            raise ValidationError("receiverSupplierId is required")
        receiver = self.suppliers.get(receiver_supplier_id)
        if receiver is None:
            raise ValidationError(f"Receiver supplier not found: {receiver_supplier_id}")
        if origin.kind == "supplier" and origin.origin_id == receiver_supplier_id:
            raise ValidationError("Sender and receiver must be different suppliers")

        now = self._clock()
        try:
            record = TransferRecord(
                id=str(uuid.uuid4()),
                origin=origin,
                senderName=sender.name,
                senderType=sender.partyType,
                receiverSupplierId=receiver.id,
                receiverName=receiver.name,
                receiverType=receiver.partyType,
                commodity=commodity,
                qualityGrade=quality_grade,
                batchId=batch_id,
                senderQuantityKg=qty,
                status=TransferStatus.PENDING,
                createdAt=now,
                senderConfirmedAt=now,
                senderNotes=notes,
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        self.store.insert(record)
        logger.info(
            "Transfer %s proposed: %s %s -> supplier %s, %s kg %s",
            record.id, origin.kind, origin.origin_id, receiver.id, qty, commodity,
        )
        return record

    def cancel(self, transfer_id: str, requested_by: Optional[str] = None) -> TransferRecord:
        current = self._get_pending(transfer_id)
        if requested_by is not None and requested_by != current.origin_id:
            raise ValidationError("Only the sender can cancel a transfer")

        updated = self._apply(transfer_id, {
            "status": TransferStatus.CANCELLED,
            "cancelledAt": self._clock(),
        })
        logger.info("Transfer %s cancelled by sender", transfer_id)
        return updated

    # -------------------------------------------------
    # RECEIVER
    # -------------------------------------------------
    def confirm(self, transfer_id: str, received_quantity_kg: Any, notes: Optional[str] = None) -> TransferRecord:
        qty = parse_quantity(received_quantity_kg, "receivedQuantityKg")
        current = self._get_pending(transfer_id)

        matched = qty == current.senderQuantityKg
        status = TransferStatus.CONFIRMED if matched else TransferStatus.DISPUTED

        updated = self._apply(transfer_id, {
            "receiverQuantityKg": qty,
            "receiverNotes": notes,
            "receiverConfirmedAt": self._clock(),
            "status": status,
        })

        if not matched:
            logger.warning(
                "Transfer %s disputed: sent %s kg, received %s kg",
                transfer_id, updated.senderQuantityKg, qty,
            )
            return updated

        logger.info("Transfer %s confirmed with %s kg", transfer_id, qty)
        return self._notarize(updated)

    def dispute(self, transfer_id: str, actual_quantity_kg: Any, reason: str) -> TransferRecord:
        """Receiver explicitly contests the hand-off. Never written to the ledger."""
        qty = parse_quantity(actual_quantity_kg, "actualQuantityKg")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A dispute reason is required")
        self._get_pending(transfer_id)

        updated = self._apply(transfer_id, {
            "receiverQuantityKg": qty,
            "disputeReason": reason,
            "receiverConfirmedAt": self._clock(),
            "status": TransferStatus.DISPUTED,
        })
        logger.warning("Transfer %s disputed: %s", transfer_id, reason)
        return updated

    def reject(self, transfer_id: str, reason: Optional[str] = None) -> TransferRecord:
        self._get_pending(transfer_id)
        updated = self._apply(transfer_id, {
            "status": TransferStatus.REJECTED,
            "receiverNotes": reason,
            "receiverConfirmedAt": self._clock(),
        })
        logger.info("Transfer %s rejected: %s", transfer_id, reason)
        return updated

    # -------------------------------------------------
    # QUERIES
    # -------------------------------------------------
    def get(self, transfer_id: str) -> TransferRecord:
        record = self.store.get(transfer_id)
        if record is None:
            raise NotFoundError(f"Transfer not found: {transfer_id}")
        return record

    def incoming(self, supplier_id: str, limit: int = 50, skip: int = 0) -> List[TransferRecord]:
        return self.store.find(receiver_supplier_id=supplier_id, limit=limit, skip=skip)

    def outgoing(self, origin_id: str, limit: int = 50, skip: int = 0) -> List[TransferRecord]:
        return self.store.find(origin_id=origin_id, limit=limit, skip=skip)

    def for_batch(self, batch_id: str) -> List[TransferRecord]:
        return self.store.find(batch_id=batch_id)

    def count_pending(self, supplier_id: str) -> int:
        return self.store.count(supplier_id, TransferStatus.PENDING)

    def inventory(self, supplier_id: str) -> List[InventoryItem]:
        confirmed = self.store.find(receiver_supplier_id=supplier_id, status=TransferStatus.CONFIRMED)
        return [
            InventoryItem(
                transferId=t.id,
                commodity=t.commodity,
                qualityGrade=t.qualityGrade or "N/A",
                quantityKg=t.receiverQuantityKg if t.receiverQuantityKg is not None else t.senderQuantityKg,
                sourceName=t.senderName,
                sourceType=t.senderType,
                receivedAt=t.receiverConfirmedAt or t.createdAt,
                ledgerTransactionRef=t.ledgerTransactionRef,
            )
            for t in confirmed
        ]

    def inventory_total_kg(self, supplier_id: str, commodity: Optional[str] = None) -> Decimal:
        total = Decimal("0")
        for item in self.inventory(supplier_id):
            if commodity is None or item.commodity.lower() == commodity.lower():
                total += item.quantityKg
        return total

    # -------------------------------------------------
    # INTERNAL
    # -------------------------------------------------
    def _get_pending(self, transfer_id: str) -> TransferRecord:
        current = self.get(transfer_id)
        if current.status is not TransferStatus.PENDING:
            raise InvalidStateError(
                f"Transfer {transfer_id} is {current.status.value}, expected PENDING"
            )
        return current

    def _apply(self, transfer_id: str, updates: Dict[str, Any]) -> TransferRecord:
        try:
            updated = self.store.apply_if_pending(transfer_id, updates)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        if updated is None:
            # lost the race: another writer moved it out of PENDING first
            latest = self.get(transfer_id)
            raise InvalidStateError(
                f"Transfer {transfer_id} is {latest.status.value}, expected PENDING"
            )
        return updated

    def _notarize(self, record: TransferRecord) -> TransferRecord:
        if self.notarizer is None:
            logger.warning("No notarizer configured; transfer %s left un-anchored", record.id)
            return record

        fields = ledger_fields({
            "transferId": record.id,
            "originKind": record.origin.kind,
            "originId": record.origin_id,
            "senderName": record.senderName,
            "senderType": record.senderType,
            "receiverSupplierId": record.receiverSupplierId,
            "receiverName": record.receiverName,
            "commodity": record.commodity,
            "qualityGrade": record.qualityGrade,
            "batchId": record.batchId,
            "senderQuantityKg": record.senderQuantityKg,
            "receiverQuantityKg": record.receiverQuantityKg,
            "senderConfirmedAt": record.senderConfirmedAt,
            "receiverConfirmedAt": record.receiverConfirmedAt,
            "status": record.status,
        })

        tx_ref = self.notarizer.submit(
            TRANSFER_CONFIRMED_EVENT,
            record.id,
            fields,
            on_success=lambda ref: self.store.set_ledger_reference(record.id, ref),
        )
        if tx_ref is None:
            logger.warning("Transfer %s confirmed locally; notarization pending", record.id)
            return record

        return self.store.get(record.id) or record
