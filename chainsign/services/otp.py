"""
One-time passcode challenge protecting a signer's identity.
"""
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta

import bcrypt
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..errors import OTPError, ValidationFailed
from ..models import AuditEvent, OTPRecord, Signer, utcnow
from .audit import AuditLedger

logger = logging.getLogger(__name__)

OTP_FORMAT = re.compile(r"^\d{6}$")


def generate() -> str:
    """A 6-digit numeric code, zero-padded."""
    return f"{secrets.randbelow(1_000_000):06d}"


def hash_code(code: str) -> str:
    return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_code(code: str, otp_hash: str) -> bool:
    return bcrypt.checkpw(code.encode("utf-8"), otp_hash.encode("utf-8"))


@dataclass
class OTPIssue:
    record_id: str
    code: str
    expires_at: object


class OTPChallenge:
    def __init__(self, db: Session, ledger: AuditLedger, ttl: timedelta = timedelta(minutes=10),
                 max_attempts: int = 3):
        self.db = db
        self.ledger = ledger
        self.ttl = ttl
        self.max_attempts = max_attempts

    def _lock_signer(self, signer_id: str):
        """Row lock on the signer; concurrent issues for one signer queue behind it."""
        return self.db.query(Signer).filter(Signer.id == signer_id).with_for_update()

    def issue(self, signer: Signer) -> OTPIssue:
        """Invalidate prior unused codes and store the hash of a fresh one.

        The raw code is returned for out-of-band delivery and never stored.
        Records ``otp_sent``; the caller commits.
        """
        self._lock_signer(signer.id).one()
        self.db.execute(
            update(OTPRecord)
            .where(OTPRecord.signer_id == signer.id, OTPRecord.used.is_(False))
            .values(used=True)
        )
        code = generate()
        record = OTPRecord(
            signer_id=signer.id,
            otp_hash=hash_code(code),
            expires_at=utcnow() + self.ttl,
            attempts=0,
            used=False,
        )
        self.db.add(record)
        self.db.flush()
        self.ledger.record(
            signer.document_id, AuditEvent.OTP_SENT, signer.email, signer_id=signer.id,
            metadata={"expires_at": record.expires_at.isoformat()},
        )
        return OTPIssue(record.id, code, record.expires_at)

    def _current(self, signer_id: str):
        return (
            self.db.query(OTPRecord)
            .filter(OTPRecord.signer_id == signer_id, OTPRecord.used.is_(False))
            .order_by(OTPRecord.created_at.desc())
            .first()
        )

    def verify(self, signer: Signer, submitted_code) -> OTPRecord:
        """Check a submitted code against the signer's live record.

        Raises ``OTPError`` for every failure. Failure outcomes are recorded
        and committed before raising so that a rollback by the caller cannot
        erase an attempt.
        """
        if not isinstance(submitted_code, str) or not OTP_FORMAT.match(submitted_code):
            raise ValidationFailed("invalid_otp", "OTP must be a 6-digit number.")

        record = self._current(signer.id)
        if record is None:
            self._record_failure(signer, {"reason": "not_found"})
            raise OTPError("otp_not_found", "No active OTP found. Please request a new one.")

        if record.expires_at < utcnow():
            self._record_failure(signer, {"reason": "expired"})
            raise OTPError("otp_expired", "OTP has expired. Please request a new one.")

        if record.attempts >= self.max_attempts:
            self._record_failure(signer, {"reason": "locked"})
            raise OTPError("otp_locked", "Too many failed attempts. Please request a new OTP.")

        if not check_code(submitted_code, record.otp_hash):
            attempts = self._register_attempt(record)
            remaining = max(self.max_attempts - attempts, 0)
            self.ledger.record(
                signer.document_id, AuditEvent.OTP_FAILED, signer.email, signer_id=signer.id,
                metadata={"attempt": attempts, "max_attempts": self.max_attempts},
            )
            if attempts >= self.max_attempts:
                self.ledger.record(
                    signer.document_id, AuditEvent.OTP_LOCKED, signer.email, signer_id=signer.id,
                    metadata={"attempts": attempts},
                )
                logger.warning("otp locked for signer %s", signer.id)
            self.db.commit()
            raise OTPError(
                "invalid_otp",
                f"Incorrect code. {remaining} attempt(s) remaining.",
                remaining_attempts=remaining,
            )

        consumed = self.db.execute(
            update(OTPRecord)
            .where(OTPRecord.id == record.id, OTPRecord.used.is_(False))
            .values(used=True)
        ).rowcount
        if not consumed:
            # another request consumed or superseded this record first
            raise OTPError("otp_not_found", "No active OTP found. Please request a new one.")

        self.ledger.record(signer.document_id, AuditEvent.OTP_VERIFIED, signer.email, signer_id=signer.id)
        return record

    def _register_attempt(self, record: OTPRecord) -> int:
        """Atomically bump the attempt counter and return its new value."""
        self.db.execute(
            update(OTPRecord)
            .where(OTPRecord.id == record.id)
            .values(attempts=OTPRecord.attempts + 1)
        )
        self.db.refresh(record)
        return record.attempts

    def _record_failure(self, signer: Signer, metadata: dict):
        self.ledger.record(
            signer.document_id, AuditEvent.OTP_FAILED, signer.email, signer_id=signer.id, metadata=metadata,
        )
        self.db.commit()
