# crowdpass/services/credential_codec.py
"""
QR token codec for entry passes.

Token = compact JSON, rendered as a QR code by the scanner/printing side:
  {pass_id, holder_hash, slot_start, exit_deadline, group_size, issued_at, checksum}

  - holder_hash: first 16 hex chars of SHA-256(holder identifier). The raw
    12-digit identifier is never embedded, so a leaked token exposes no ID.
  - issued_at:   epoch milliseconds.
  - checksum:    first 8 hex chars of MD5 over the payload fields, in order.

The checksum is a WEAK integrity check, not a signature. The payload is
plaintext and the digest is unkeyed, so anyone who reads the format can
recompute it. It catches accidental corruption and naive edits only.
Authenticity is enforced by PassRegistry, which cross-checks every decoded
token against the pass it issued.

The codec is stateless: it never looks at pass status.
"""

import hashlib
from datetime import datetime, timedelta
from typing import Callable, Optional
from pydantic import ValidationError
from crowdpass.errors import MalformedToken, ChecksumMismatch, TokenStale
from crowdpass.schemas.credential import Pass, TokenPayload
from crowdpass.utils.clock import utcnow, ensure_utc, parse_iso, to_epoch_ms, from_epoch_ms
from crowdpass.utils.json_parser import safe_parse_json, dumps_compact
from crowdpass.utils.logger import get_logger

logger = get_logger(__name__)

REQUIRED_FIELDS = ("pass_id", "holder_hash", "slot_start", "exit_deadline", "group_size", "issued_at", "checksum")
DEFAULT_MAX_AGE = timedelta(days=7)


def hash_holder(holder_identifier: str) -> str:
    return hashlib.sha256(holder_identifier.encode("utf-8")).hexdigest()[:16]


def compute_checksum(pass_id: str, holder_hash: str, group_size: int,
                     slot_start: str, exit_deadline: str, issued_at: int) -> str:
    # Order matters: swapping two fields must change the digest.
    material = f"{pass_id}|{holder_hash}|{group_size}|{slot_start}|{exit_deadline}|{issued_at}"
    return hashlib.md5(material.encode("utf-8")).hexdigest()[:8]


class CredentialCodec:
    def __init__(self, max_token_age: timedelta = DEFAULT_MAX_AGE,
                 clock: Callable[[], datetime] = utcnow):
        self.max_token_age = max_token_age
        self.clock = clock

    def encode(self, pass_: Pass, issued_at: Optional[datetime] = None) -> str:
        issued_ms = to_epoch_ms(issued_at or self.clock())
        holder_hash = hash_holder(pass_.holder_identifier)
        slot_start = pass_.slot_start.isoformat()
        exit_deadline = pass_.exit_deadline.isoformat()
        payload = {
            "pass_id": pass_.pass_id,
            "holder_hash": holder_hash,
            "slot_start": slot_start,
            "exit_deadline": exit_deadline,
            "group_size": pass_.group_size,
            "issued_at": issued_ms,
            "checksum": compute_checksum(pass_.pass_id, holder_hash, pass_.group_size,
                                         slot_start, exit_deadline, issued_ms),
        }
        return dumps_compact(payload)

    def decode(self, token: str | bytes, now: Optional[datetime] = None) -> TokenPayload:
        """
        Parse and verify a scanned token.
        Raises MalformedToken, ChecksumMismatch or TokenStale.
        """
        data = safe_parse_json(token) if token else None
        if data is None:
            raise MalformedToken("Invalid QR code format")

        for field in REQUIRED_FIELDS:
            if data.get(field) in (None, ""):
                raise MalformedToken(f"Missing field: {field}", field=field)

        group_size, issued_ms = data["group_size"], data["issued_at"]
        if not _is_int(group_size) or not _is_int(issued_ms):
            raise MalformedToken("group_size and issued_at must be integers")
        if not all(isinstance(data[f], str) for f in ("pass_id", "holder_hash", "slot_start", "exit_deadline", "checksum")):
            raise MalformedToken("Token text fields must be strings")

        expected = compute_checksum(data["pass_id"], data["holder_hash"], group_size,
                                    data["slot_start"], data["exit_deadline"], issued_ms)
        if expected != data["checksum"]:
            logger.warning(f"[CODEC] Checksum mismatch for pass {data['pass_id']}")
            raise ChecksumMismatch("Token checksum does not match its contents", pass_id=data["pass_id"])

        try:
            payload = TokenPayload(
                pass_id=data["pass_id"],
                holder_hash=data["holder_hash"],
                slot_start=parse_iso(data["slot_start"]),
                exit_deadline=parse_iso(data["exit_deadline"]),
                group_size=group_size,
                issued_at=from_epoch_ms(issued_ms),
                checksum=data["checksum"],
            )
        except (ValueError, ValidationError, OverflowError) as e:
            raise MalformedToken(f"Invalid token field: {e}") from e

        now = ensure_utc(now) if now else self.clock()
        if now - payload.issued_at > self.max_token_age:
            raise TokenStale("QR code expired", pass_id=payload.pass_id)

        return payload


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
