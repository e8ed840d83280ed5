"""
Audit ledger: append-only, hash-chained event records per document.
"""
import hashlib
import json
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..models import AuditEvent, AuditLog, utcnow

logger = logging.getLogger(__name__)


def generate_hash(data: dict) -> str:
    """SHA-256 of a dictionary (deterministic, sorted keys)."""
    canonical = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


def generate_chain_hash(data: dict, previous_hash: str = "") -> str:
    """SHA-256(previous_hash + SHA-256(data))."""
    chain_input = f"{previous_hash}{generate_hash(data)}".encode("utf-8")
    return hashlib.sha256(chain_input).hexdigest()


def _entry_payload(entry: AuditLog) -> dict:
    return {
        "document_id": entry.document_id,
        "signer_id": entry.signer_id,
        "actor_email": entry.actor_email,
        "event_type": entry.event_type,
        "metadata": entry.event_metadata or {},
        "created_at": entry.created_at.isoformat(),
    }


class AuditLedger:
    """Appends immutable audit rows inside the caller's transaction.

    Rows are only ever inserted; the ledger exposes no update or delete.
    The caller commits together with the state change being recorded.
    """

    def __init__(self, db: Session):
        self.db = db

    def _last_entry(self, document_id: str) -> Optional[AuditLog]:
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.document_id == document_id)
            .order_by(AuditLog.id.desc())
            .first()
        )

    def record(
        self,
        document_id: str,
        event: AuditEvent,
        actor_email: str,
        signer_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuditLog:
        event = AuditEvent(event)
        last = self._last_entry(document_id)
        previous_hash = last.entry_hash if last else ""

        entry = AuditLog(
            document_id=document_id,
            signer_id=signer_id,
            actor_email=actor_email,
            event_type=event.value,
            event_metadata=metadata or {},
            previous_hash=previous_hash,
            created_at=utcnow(),
        )
        entry.entry_hash = generate_chain_hash(_entry_payload(entry), previous_hash)

        self.db.add(entry)
        self.db.flush()
        logger.debug("audit %s document=%s actor=%s", event.value, document_id, actor_email)
        return entry

    def trail(self, document_id: str, newest_first: bool = False) -> list[AuditLog]:
        """The canonical event history, ordered by timestamp."""
        query = self.db.query(AuditLog).filter(AuditLog.document_id == document_id)
        if newest_first:
            return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).all()
        return query.order_by(AuditLog.created_at.asc(), AuditLog.id.asc()).all()

    def events(self, document_id: str) -> list[str]:
        return [entry.event_type for entry in self.trail(document_id)]

    def verify_chain(self, document_id: str) -> dict:
        """Recompute every link of the document's chain.

        Returns a dict with ``valid``, ``total_entries`` and ``broken_at``.
        """
        entries = (
            self.db.query(AuditLog)
            .filter(AuditLog.document_id == document_id)
            .order_by(AuditLog.id.asc())
            .all()
        )

        previous_hash = ""
        for entry in entries:
            expected = generate_chain_hash(_entry_payload(entry), previous_hash)
            if entry.previous_hash != previous_hash or entry.entry_hash != expected:
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.id,
                    "message": f"Chain broken at entry {entry.id} ({entry.event_type})",
                }
            previous_hash = entry.entry_hash

        return {"valid": True, "total_entries": len(entries), "broken_at": None}
