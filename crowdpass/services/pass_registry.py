# crowdpass/services/pass_registry.py
"""
Pass lifecycle: issuance, entry/exit scans, extensions, expiry.

State machine (active is the only initial state, the rest are terminal):
  active → used       exit scan on or before exit_deadline
  active → expired    late exit scan (penalty) or expiry sweep (maximum penalty)
  active → cancelled  administrative cancel

How it works:
  - Each pass has its own re-entrant lock; at most one scan or extension
    mutates a given pass at a time, different passes run in parallel.
  - Every mutation is applied to a deep copy, persisted, then swapped in.
    Any failure (including the store) leaves the stored pass untouched.
  - Issued passes are pushed onto an expiry heap keyed by exit_deadline;
    expiry_sweep() pops the overdue ones.
"""

import heapq
import re
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from crowdpass.errors import (
    ChecksumMismatch, EntrySlotExpired, GroupSizeExceeded, InvalidExtension,
    InvalidHolderIdentifier, PassNotActive, PassNotFound, PaymentFailed,
)
from crowdpass.schemas.credential import (
    EntryResult, ExitResult, ExtensionRecord, ExtensionResult, GroupMember,
    HOLDER_ID_PATTERN, Pass, Penalty, Pricing, ScanRecord,
)
from crowdpass.services.credential_codec import CredentialCodec, hash_holder
from crowdpass.services.penalty_calculator import PenaltyCalculator
from crowdpass.utils.clock import utcnow, ensure_utc, to_epoch_ms
from crowdpass.utils.logger import audit, get_logger

logger = get_logger(__name__)

_HOLDER_ID_RE = re.compile(HOLDER_ID_PATTERN)


class PassRegistry:
    def __init__(
        self,
        codec: CredentialCodec,
        calculator: PenaltyCalculator,
        *,
        base_price: int = 50,
        default_surge_multiplier: float = 1.0,
        extension_hourly_rate: int = 100,
        tent_flat_fee: int = 2000,
        default_duration_hours: int = 24,
        entry_grace: timedelta = timedelta(hours=2),
        cancellation_grace: timedelta = timedelta(hours=6),
        max_group_size: int = 10,
        store=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.codec = codec
        self.calculator = calculator
        self.base_price = base_price
        self.default_surge_multiplier = default_surge_multiplier
        self.extension_hourly_rate = extension_hourly_rate
        self.tent_flat_fee = tent_flat_fee
        self.default_duration_hours = default_duration_hours
        self.entry_grace = entry_grace
        self.cancellation_grace = cancellation_grace
        self.max_group_size = max_group_size
        self.store = store
        self.clock = clock

        self._passes: dict[str, Pass] = {}
        self._penalties: dict[str, Penalty] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()   # membership, id minting, expiry heap
        self._reserved: set[str] = set()          # ids minted but not yet persisted
        self._expiry_heap: list[tuple[datetime, str]] = []

    @classmethod
    def from_settings(cls, settings, codec, calculator, store=None, clock=utcnow) -> "PassRegistry":
        return cls(
            codec, calculator,
            base_price=settings.BASE_PASS_PRICE,
            default_surge_multiplier=settings.DEFAULT_SURGE_MULTIPLIER,
            extension_hourly_rate=settings.EXTENSION_HOURLY_RATE,
            tent_flat_fee=settings.TENT_FLAT_FEE,
            default_duration_hours=settings.DEFAULT_PASS_DURATION_HOURS,
            entry_grace=timedelta(hours=settings.ENTRY_GRACE_HOURS),
            cancellation_grace=timedelta(hours=settings.CANCELLATION_GRACE_HOURS),
            max_group_size=settings.MAX_GROUP_SIZE,
            store=store,
            clock=clock,
        )

    # ── Issuance ──────────────────────────────────────────────────────────
    def issue(
        self,
        holder_identifier: str,
        group_members: Iterable[GroupMember | dict] = (),
        slot_start: Optional[datetime] = None,
        duration_hours: Optional[int] = None,
        surge_multiplier: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Pass:
        now = ensure_utc(now) if now else self.clock()
        if not isinstance(holder_identifier, str) or not _HOLDER_ID_RE.fullmatch(holder_identifier):
            raise InvalidHolderIdentifier("Invalid Aadhaar number format")

        members = [m if isinstance(m, GroupMember) else GroupMember.model_validate(m)
                   for m in group_members]
        group_size = len(members) + 1
        if group_size > self.max_group_size:
            raise GroupSizeExceeded(
                f"Maximum {self.max_group_size} people allowed per pass (got {group_size})",
                group_size=group_size,
            )

        duration = duration_hours if duration_hours is not None else self.default_duration_hours
        if duration <= 0:
            raise ValueError("duration_hours must be positive")
        slot_start = ensure_utc(slot_start) if slot_start else now
        pricing = Pricing.compute(self.base_price, surge_multiplier or self.default_surge_multiplier)

        with self._registry_lock:
            pass_id = self._mint_pass_id(now)
            self._reserved.add(pass_id)

        try:
            pass_ = Pass(
                pass_id=pass_id,
                holder_identifier=holder_identifier,
                holder_hash=hash_holder(holder_identifier),
                group_size=group_size,
                group_members=members,
                slot_start=slot_start,
                exit_deadline=slot_start + timedelta(hours=duration),
                pricing=pricing,
                issued_at=now,
            )
            pass_.token = self.codec.encode(pass_, issued_at=now)
            self._persist(pass_)
        except Exception:
            with self._registry_lock:
                self._reserved.discard(pass_id)
            raise

        with self._registry_lock:
            self._reserved.discard(pass_id)
            self._passes[pass_id] = pass_
            self._locks[pass_id] = threading.RLock()
            heapq.heappush(self._expiry_heap, (pass_.exit_deadline, pass_id))

        logger.info(f"[REGISTRY] Issued {pass_.pass_id} | group={group_size} "
                    f"slot={slot_start.isoformat()} deadline={pass_.exit_deadline.isoformat()} "
                    f"price={pricing.final_price}")
        audit("pass.issued", pass_id=pass_.pass_id, group=group_size,
              deadline=pass_.exit_deadline.isoformat(), price=pricing.final_price)
        return pass_.model_copy(deep=True)

    def _mint_pass_id(self, now: datetime) -> str:
        # Caller holds _registry_lock.
        while True:
            pass_id = f"PASS_{to_epoch_ms(now)}_{uuid.uuid4().hex[:9].upper()}"
            if pass_id not in self._passes and pass_id not in self._reserved:
                return pass_id

    # ── Scanning ──────────────────────────────────────────────────────────
    def scan_entry(self, token: str, checkpoint_id: str, zone_id: str,
                   now: Optional[datetime] = None) -> EntryResult:
        now = ensure_utc(now) if now else self.clock()
        payload = self.codec.decode(token, now=now)

        with self._locked(payload.pass_id) as current:
            self._verify_token_matches(current, payload)
            self._require_active(current)
            if now > current.slot_start + self.entry_grace:
                raise EntrySlotExpired("Entry slot expired", pass_id=current.pass_id)

            updated = current.model_copy(deep=True)
            updated.entry_scans.append(ScanRecord(time=now, checkpoint=checkpoint_id, zone=zone_id))
            self._commit(updated)

        logger.info(f"[REGISTRY] ENTRY {updated.pass_id} at {checkpoint_id}/{zone_id} "
                    f"(scan #{len(updated.entry_scans)})")
        audit("pass.entry", pass_id=updated.pass_id, checkpoint=checkpoint_id, zone=zone_id)
        return EntryResult(pass_id=updated.pass_id, status=updated.status, scanned_at=now,
                           checkpoint_id=checkpoint_id, zone_id=zone_id,
                           group_size=updated.group_size, entry_count=len(updated.entry_scans))

    def scan_exit(self, token: str, checkpoint_id: str, zone_id: str,
                  now: Optional[datetime] = None) -> ExitResult:
        now = ensure_utc(now) if now else self.clock()
        payload = self.codec.decode(token, now=now)

        with self._locked(payload.pass_id) as current:
            self._verify_token_matches(current, payload)
            self._require_active(current)

            updated = current.model_copy(deep=True)
            updated.exit_scans.append(ScanRecord(time=now, checkpoint=checkpoint_id, zone=zone_id))
            hours_late = self.calculator.hours_late(now, current.exit_deadline)

            if hours_late == 0:
                updated.status = "used"
                self._commit(updated)
                logger.info(f"[REGISTRY] EXIT {updated.pass_id} on time at {checkpoint_id}")
                audit("pass.exit", pass_id=updated.pass_id, checkpoint=checkpoint_id, status="used")
                return ExitResult(pass_id=updated.pass_id, status="used", scanned_at=now)

            penalty = Penalty(
                pass_id=updated.pass_id,
                holder_hash=updated.holder_hash,
                hours_late=hours_late,
                amount=self.calculator.amount(hours_late),
                reason="late_exit",
                assessed_at=now,
            )
            updated.status = "expired"
            self._persist_penalty(penalty)
            self._commit(updated)
            self._penalties[penalty.pass_id] = penalty

        logger.warning(f"[REGISTRY] LATE EXIT {updated.pass_id}: {hours_late}h late, "
                       f"penalty {penalty.amount}")
        audit("pass.exit", pass_id=updated.pass_id, checkpoint=checkpoint_id, status="expired",
              hours_late=hours_late, penalty=penalty.amount)
        return ExitResult(pass_id=updated.pass_id, status="expired", scanned_at=now, late=True,
                          penalty_amount=penalty.amount, hours_late=hours_late)

    # ── Extensions ────────────────────────────────────────────────────────
    def quote_extension(self, additional_hours: int, tent_booking: bool = False) -> int:
        self._validate_hours(additional_hours)
        return additional_hours * self.extension_hourly_rate + (self.tent_flat_fee if tent_booking else 0)

    def extend(self, pass_id: str, additional_hours: int, tent_booking: bool,
               payment_result: bool, now: Optional[datetime] = None) -> ExtensionResult:
        now = ensure_utc(now) if now else self.clock()
        cost = self.quote_extension(additional_hours, tent_booking)

        with self._locked(pass_id) as current:
            self._require_active(current)
            if not payment_result:
                raise PaymentFailed("Payment failed for extension", pass_id=pass_id)

            updated = current.model_copy(deep=True)
            updated.exit_deadline = current.exit_deadline + timedelta(hours=additional_hours)
            updated.extensions.append(ExtensionRecord(
                granted_at=now,
                additional_hours=additional_hours,
                cost=cost,
                new_deadline=updated.exit_deadline,
                tent_booked=tent_booking,
            ))
            self._commit(updated)
            with self._registry_lock:
                heapq.heappush(self._expiry_heap, (updated.exit_deadline, pass_id))

        logger.info(f"[REGISTRY] Extended {pass_id} by {additional_hours}h "
                    f"→ {updated.exit_deadline.isoformat()} (charged {cost}, tent={tent_booking})")
        audit("pass.extended", pass_id=pass_id, hours=additional_hours, charged=cost,
              deadline=updated.exit_deadline.isoformat())
        return ExtensionResult(pass_id=pass_id, additional_hours=additional_hours,
                               amount_charged=cost, new_exit_deadline=updated.exit_deadline,
                               tent_booked=tent_booking)

    def extend_with_payment(self, pass_id: str, additional_hours: int, tent_booking: bool,
                            processor, now: Optional[datetime] = None) -> ExtensionResult:
        """Quote, charge through the payment collaborator, then extend, all under the pass lock."""
        cost = self.quote_extension(additional_hours, tent_booking)
        with self._locked(pass_id) as current:
            self._require_active(current)
            paid = processor.charge(reference=f"EXT_{pass_id}", amount=cost)
            return self.extend(pass_id, additional_hours, tent_booking, paid, now=now)

    # ── Administrative ────────────────────────────────────────────────────
    def cancel(self, pass_id: str, reason: str = "administrative",
               now: Optional[datetime] = None) -> Pass:
        with self._locked(pass_id) as current:
            self._require_active(current)
            updated = current.model_copy(deep=True)
            updated.status = "cancelled"
            updated.cancel_reason = reason
            self._commit(updated)
        logger.info(f"[REGISTRY] Cancelled {pass_id}: {reason}")
        audit("pass.cancelled", pass_id=pass_id, reason=reason)
        return updated.model_copy(deep=True)

    def settle_penalty(self, pass_id: str, payment_result: bool,
                       now: Optional[datetime] = None) -> Penalty:
        now = ensure_utc(now) if now else self.clock()
        with self._locked(pass_id):
            penalty = self._penalties.get(pass_id)
            if penalty is None:
                raise PassNotFound("No penalty found", pass_id=pass_id)
            if penalty.paid:
                return penalty.model_copy()
            if not payment_result:
                raise PaymentFailed("Payment failed. Please try again.", pass_id=pass_id)
            settled = penalty.model_copy(update={"paid": True, "paid_at": now})
            self._persist_penalty(settled)
            self._penalties[pass_id] = settled
        logger.info(f"[REGISTRY] Penalty for {pass_id} paid ({settled.amount})")
        audit("penalty.paid", pass_id=pass_id, amount=settled.amount)
        return settled.model_copy()

    def pay_penalty(self, pass_id: str, processor, now: Optional[datetime] = None) -> Penalty:
        """Charge an unpaid penalty through the payment collaborator, under the pass lock."""
        with self._locked(pass_id):
            penalty = self._penalties.get(pass_id)
            if penalty is None:
                raise PassNotFound("No penalty found", pass_id=pass_id)
            if penalty.paid:
                return penalty.model_copy()
            paid = processor.charge(reference=f"PEN_{pass_id}", amount=penalty.amount)
            if not paid:
                logger.warning(f"[REGISTRY] Penalty payment declined for {pass_id}")
            return self.settle_penalty(pass_id, paid, now=now)

    def expiry_sweep(self, now: Optional[datetime] = None) -> list[Penalty]:
        """
        Expire active passes whose deadline plus cancellation grace has passed
        without an exit scan, charging the maximum penalty.
        """
        now = ensure_utc(now) if now else self.clock()
        with self._registry_lock:
            due = []
            while self._expiry_heap and self._expiry_heap[0][0] + self.cancellation_grace < now:
                due.append(heapq.heappop(self._expiry_heap))

        assessed = []
        for deadline, pass_id in due:
            try:
                penalty = self._expire_unreturned(pass_id, now)
            except Exception as e:
                logger.error(f"[REGISTRY] Expiry of {pass_id} failed, will retry: {e}", exc_info=True)
                with self._registry_lock:
                    heapq.heappush(self._expiry_heap, (deadline, pass_id))
                continue
            if penalty:
                assessed.append(penalty)

        if assessed:
            logger.warning(f"[REGISTRY] Expiry sweep expired {len(assessed)} pass(es)")
        return assessed

    def _expire_unreturned(self, pass_id: str, now: datetime) -> Optional[Penalty]:
        with self._locked(pass_id) as current:
            if not current.is_active or current.exit_scans:
                return None
            if current.exit_deadline + self.cancellation_grace >= now:
                return None   # Extended since this heap entry was pushed
            penalty = Penalty(
                pass_id=pass_id,
                holder_hash=current.holder_hash,
                hours_late=self.calculator.max_hours,
                amount=self.calculator.maximum(),
                reason="no_exit_scan",
                assessed_at=now,
            )
            updated = current.model_copy(deep=True)
            updated.status = "expired"
            self._persist_penalty(penalty)
            self._commit(updated)
            self._penalties[pass_id] = penalty
        logger.warning(f"[REGISTRY] {pass_id} never scanned out — expired, penalty {penalty.amount}")
        audit("pass.expired", pass_id=pass_id, reason="no_exit_scan", penalty=penalty.amount)
        return penalty

    # ── Read side ─────────────────────────────────────────────────────────
    def get(self, pass_id: str) -> Pass:
        pass_ = self._passes.get(pass_id)
        if pass_ is None:
            raise PassNotFound("Pass not found", pass_id=pass_id)
        return pass_.model_copy(deep=True)

    def list_passes(self, status: Optional[str] = None) -> list[Pass]:
        with self._registry_lock:
            passes = list(self._passes.values())
        return [p.model_copy(deep=True) for p in passes if status is None or p.status == status]

    def get_penalty(self, pass_id: str) -> Penalty:
        penalty = self._penalties.get(pass_id)
        if penalty is None:
            raise PassNotFound("No penalty found", pass_id=pass_id)
        return penalty.model_copy()

    def penalties(self, unpaid_only: bool = False) -> list[Penalty]:
        return [p.model_copy() for p in list(self._penalties.values())
                if not (unpaid_only and p.paid)]

    def occupancy_by_zone(self) -> dict[str, int]:
        """People currently inside, per zone of their latest entry scan."""
        with self._registry_lock:
            passes = list(self._passes.values())
        occupancy: dict[str, int] = {}
        for p in passes:
            if p.is_active and p.entry_scans:
                zone = p.entry_scans[-1].zone
                occupancy[zone] = occupancy.get(zone, 0) + p.group_size
        return occupancy

    def stats(self) -> dict:
        with self._registry_lock:
            passes = list(self._passes.values())
        by_status = {"active": 0, "used": 0, "expired": 0, "cancelled": 0}
        for p in passes:
            by_status[p.status] += 1
        penalties = list(self._penalties.values())
        return {
            "total_passes": len(passes),
            "passes_by_status": by_status,
            "people_inside": sum(self.occupancy_by_zone().values()),
            "total_penalties": sum(p.amount for p in penalties),
            "unpaid_penalties": sum(p.amount for p in penalties if not p.paid),
            "penalty_count": len(penalties),
        }

    # ── Internals ─────────────────────────────────────────────────────────
    @contextmanager
    def _locked(self, pass_id: str):
        with self._registry_lock:
            lock = self._locks.get(pass_id)
        if lock is None:
            raise PassNotFound("Pass not found", pass_id=pass_id)
        with lock:
            yield self._passes[pass_id]

    @staticmethod
    def _require_active(pass_: Pass):
        if not pass_.is_active:
            raise PassNotActive(f"Pass is not active (status={pass_.status})",
                                pass_id=pass_.pass_id, status=pass_.status)

    @staticmethod
    def _verify_token_matches(pass_: Pass, payload):
        # The codec checksum is forgeable; the registry is the authority on what it issued.
        if payload.holder_hash != pass_.holder_hash or payload.group_size != pass_.group_size:
            logger.warning(f"[REGISTRY] Token for {pass_.pass_id} does not match the issued pass")
            raise ChecksumMismatch("Token does not match the issued pass", pass_id=pass_.pass_id)

    @staticmethod
    def _validate_hours(additional_hours: int):
        if not isinstance(additional_hours, int) or isinstance(additional_hours, bool) or additional_hours <= 0:
            raise InvalidExtension("additional_hours must be a positive whole number")

    def _commit(self, updated: Pass):
        # Caller holds the pass lock.
        self._persist(updated)
        self._passes[updated.pass_id] = updated

    def _persist(self, pass_: Pass):
        if self.store is not None:
            self.store.save_pass(pass_)

    def _persist_penalty(self, penalty: Penalty):
        if self.store is not None:
            self.store.save_penalty(penalty)
