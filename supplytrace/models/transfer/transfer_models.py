# supplytrace/models/transfer/transfer_models.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from supplytrace.errors import ValidationError


class TransferStatus(str, Enum):
    PENDING = "PENDING"        # sender proposed, awaiting receiver
    CONFIRMED = "CONFIRMED"    # both parties agree, anchored on the ledger
    DISPUTED = "DISPUTED"      # receiver reported a different quantity
    REJECTED = "REJECTED"      # receiver refused the hand-off
    CANCELLED = "CANCELLED"    # sender withdrew before the receiver acted

    @property
    def is_terminal(self) -> bool:
        return self is not TransferStatus.PENDING


class PartyType(str, Enum):
    FARMER = "FARMER"
    AGGREGATOR = "AGGREGATOR"
    COOPERATIVE = "COOPERATIVE"
    PROCESSOR = "PROCESSOR"
    DISTRIBUTOR = "DISTRIBUTOR"
    EXPORTER = "EXPORTER"
    IMPORTER = "IMPORTER"
    OTHER = "OTHER"


# -------------------------------------------------
# Origin (exactly one kind)
# -------------------------------------------------
class FarmerOrigin(BaseModel):
    kind: Literal["farmer"] = "farmer"
    farmerId: str
    # plot the produce was harvested from; provenance only, not an origin kind
    harvestUnitId: Optional[str] = None

    @property
    def origin_id(self) -> str:
        return self.farmerId


class SupplierOrigin(BaseModel):
    kind: Literal["supplier"] = "supplier"
    supplierId: str

    @property
    def origin_id(self) -> str:
        return self.supplierId


class ProductionUnitOrigin(BaseModel):
    kind: Literal["production_unit"] = "production_unit"
    productionUnitId: str

    @property
    def origin_id(self) -> str:
        return self.productionUnitId


OriginRef = Annotated[
    Union[FarmerOrigin, SupplierOrigin, ProductionUnitOrigin],
    Field(discriminator="kind"),
]


class SenderInfo(BaseModel):
    """Sender identity as it arrives from the API layer."""

    farmerId: Optional[str] = None
    supplierId: Optional[str] = None
    productionUnitId: Optional[str] = None
    harvestUnitId: Optional[str] = None

    name: str
    partyType: PartyType = PartyType.OTHER

    def to_origin(self) -> Union[FarmerOrigin, SupplierOrigin, ProductionUnitOrigin]:
        given = {
            k: v.strip()
            for k, v in (
                ("farmerId", self.farmerId),
                ("supplierId", self.supplierId),
                ("productionUnitId", self.productionUnitId),
            )
            if v is not None and v.strip()
        }
        if not given:
            raise ValidationError("Sender must supply one of farmerId, supplierId, productionUnitId")
        if len(given) > 1:
            raise ValidationError(
                f"Sender must supply exactly one origin kind, got: {', '.join(sorted(given))}"
            )

        if "farmerId" in given:
            return FarmerOrigin(farmerId=given["farmerId"], harvestUnitId=self.harvestUnitId or None)
        if self.harvestUnitId:
            raise ValidationError("harvestUnitId is only valid for farmer senders")
        if "supplierId" in given:
            return SupplierOrigin(supplierId=given["supplierId"])
        return ProductionUnitOrigin(productionUnitId=given["productionUnitId"])


class SupplierRef(BaseModel):
    id: str
    name: str
    partyType: PartyType = PartyType.OTHER


# -------------------------------------------------
# Transfer record
# -------------------------------------------------
class TransferRecord(BaseModel):
    id: str
    origin: OriginRef
    senderName: str
    senderType: PartyType

    receiverSupplierId: str
    receiverName: Optional[str] = None
    receiverType: Optional[PartyType] = None

    commodity: str
    qualityGrade: Optional[str] = None
    batchId: Optional[str] = None

    # both claims are kept side by side, neither is ever overwritten
    senderQuantityKg: Decimal
    receiverQuantityKg: Optional[Decimal] = None

    status: TransferStatus = TransferStatus.PENDING

    createdAt: datetime
    senderConfirmedAt: datetime
    receiverConfirmedAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None

    senderNotes: Optional[str] = None
    receiverNotes: Optional[str] = None
    disputeReason: Optional[str] = None

    ledgerTransactionRef: Optional[str] = None

    version: int = 0

    @model_validator(mode="after")
    def _check_invariants(self) -> "TransferRecord":
        if self.senderQuantityKg <= 0:
            raise ValueError("senderQuantityKg must be > 0")
        if self.status is TransferStatus.PENDING and self.receiverQuantityKg is not None:
            raise ValueError("receiverQuantityKg must be empty while PENDING")
        if self.status in (TransferStatus.CONFIRMED, TransferStatus.DISPUTED) and self.receiverQuantityKg is None:
            raise ValueError(f"receiverQuantityKg is required when {self.status.value}")
        if self.ledgerTransactionRef and self.status is not TransferStatus.CONFIRMED:
            raise ValueError("Only CONFIRMED transfers carry a ledger reference")
        return self

    @property
    def origin_id(self) -> str:
        return self.origin.origin_id

    def has_discrepancy(self) -> bool:
        return self.receiverQuantityKg is not None and self.receiverQuantityKg != self.senderQuantityKg

    def discrepancy_kg(self) -> Optional[Decimal]:
        """Positive = receiver reports less than the sender claimed."""
        if self.receiverQuantityKg is None:
            return None
        return self.senderQuantityKg - self.receiverQuantityKg

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_fully_confirmed(self) -> bool:
        return self.status is TransferStatus.CONFIRMED and self.receiverConfirmedAt is not None

    def is_notarized(self) -> bool:
        return self.ledgerTransactionRef is not None


class InventoryItem(BaseModel):
    """A supplier's stock line derived from one confirmed incoming transfer."""

    transferId: str
    commodity: str
    qualityGrade: str = "N/A"
    quantityKg: Decimal
    sourceName: str
    sourceType: PartyType
    receivedAt: datetime
    ledgerTransactionRef: Optional[str] = None


# -------------------------------------------------
# Helpers
# -------------------------------------------------
def parse_quantity(value: Any, field_name: str = "quantityKg") -> Decimal:
    """Coerce a caller-supplied quantity to a positive, finite Decimal."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required")
    try:
        qty = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} is not a valid decimal: {value!r}")
    if not qty.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    if qty <= 0:
        raise ValidationError(f"{field_name} must be greater than 0")
    return qty
