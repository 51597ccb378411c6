# crowdpass/schemas/credential.py
"""
Canonical pass entities. Every Pass, Penalty and scan/extension record is
declared here once and validated when constructed; services never re-check
these constraints ad hoc.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Literal, Optional
from crowdpass.utils.clock import ensure_utc

HOLDER_ID_PATTERN = r"^\d{12}$"

PassStatus = Literal["active", "used", "expired", "cancelled"]
Relation = Literal["spouse", "child", "parent", "sibling", "grandparent", "grandchild", "other"]


class ScanRecord(BaseModel):
    time: datetime
    checkpoint: str
    zone: str


class ExtensionRecord(BaseModel):
    granted_at: datetime
    additional_hours: int = Field(gt=0)
    cost: int = Field(ge=0)
    new_deadline: datetime
    tent_booked: bool = False


class Pricing(BaseModel):
    base_price: int = Field(ge=0)
    surge_multiplier: float = Field(gt=0)
    final_price: int = Field(ge=0)

    @classmethod
    def compute(cls, base_price: int, surge_multiplier: float) -> "Pricing":
        final = Decimal(str(base_price)) * Decimal(str(surge_multiplier))
        return cls(
            base_price=base_price,
            surge_multiplier=surge_multiplier,
            final_price=int(final.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
        )


class GroupMember(BaseModel):
    name: str = Field(min_length=1)
    age: int = Field(ge=0, le=120)
    relation: Relation = "other"
    holder_identifier: Optional[str] = Field(default=None, pattern=HOLDER_ID_PATTERN)


class Pass(BaseModel):
    pass_id: str
    holder_identifier: str = Field(pattern=HOLDER_ID_PATTERN)
    holder_hash: str
    group_size: int = Field(ge=1, le=10)
    group_members: list[GroupMember] = []
    slot_start: datetime
    exit_deadline: datetime
    status: PassStatus = "active"
    entry_scans: list[ScanRecord] = []
    exit_scans: list[ScanRecord] = []
    extensions: list[ExtensionRecord] = []
    pricing: Pricing
    token: str = ""
    issued_at: datetime
    cancel_reason: Optional[str] = None

    @field_validator("slot_start", "exit_deadline", "issued_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _deadline_after_slot(self):
        if self.exit_deadline < self.slot_start:
            raise ValueError("exit_deadline must not precede slot_start")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class Penalty(BaseModel):
    pass_id: str
    holder_hash: str
    hours_late: int = Field(ge=1)
    amount: int = Field(ge=0)
    paid: bool = False
    reason: Literal["late_exit", "no_exit_scan"] = "late_exit"
    assessed_at: datetime
    paid_at: Optional[datetime] = None


class TokenPayload(BaseModel):
    """Decoded QR payload. Carries no raw holder identifier."""
    pass_id: str = Field(min_length=1)
    holder_hash: str = Field(min_length=1)
    slot_start: datetime
    exit_deadline: datetime
    group_size: int = Field(ge=1, le=10)
    issued_at: datetime
    checksum: str = Field(min_length=1)

    @field_validator("slot_start", "exit_deadline", "issued_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


# ── Operation results ────────────────────────────────────────────────────────
class EntryResult(BaseModel):
    pass_id: str
    status: PassStatus
    scanned_at: datetime
    checkpoint_id: str
    zone_id: str
    group_size: int
    entry_count: int


class ExitResult(BaseModel):
    pass_id: str
    status: PassStatus
    scanned_at: datetime
    late: bool = False
    penalty_amount: Optional[int] = None
    hours_late: Optional[int] = None


class ExtensionResult(BaseModel):
    pass_id: str
    additional_hours: int
    amount_charged: int
    new_exit_deadline: datetime
    tent_booked: bool


# ── API request / response bodies ────────────────────────────────────────────
class PassIssue(BaseModel):
    holder_identifier: str
    group_members: list[GroupMember] = []
    slot_start: datetime
    duration_hours: Optional[int] = Field(default=None, gt=0)
    surge_multiplier: Optional[float] = Field(default=None, gt=0)


class ScanRequest(BaseModel):
    token: str
    checkpoint_id: str
    zone_id: str
    scan_type: Literal["entry", "exit"]


class ExtendRequest(BaseModel):
    additional_hours: int
    tent_booking: bool = False


class CancelRequest(BaseModel):
    reason: str = "administrative"


class PassOut(BaseModel):
    pass_id: str
    holder_hash: str
    group_size: int
    slot_start: datetime
    exit_deadline: datetime
    status: PassStatus
    entry_scans: list[ScanRecord]
    exit_scans: list[ScanRecord]
    extensions: list[ExtensionRecord]
    pricing: Pricing
    token: str

    class Config:
        from_attributes = True
