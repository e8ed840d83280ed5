"""
Signer chain controller.

Drives a document through its ordered signers one turn at a time:

    document: draft -> sent -> in_progress -> completed
                          \\________________\\-> cancelled   (any decline)
    signer:   pending -> awaiting_turn -> signed | declined

Every status change is a compare-and-set ``UPDATE ... WHERE status IN (...)``
checked by row count, so two requests racing on the same signer or document
cannot both advance it. A signer's turn is claimed inside the same
transaction that burns their signatures, so a failed burn leaves the chain
exactly where it was.

Notifications go out only after the transition is committed and are
best-effort: each delivery is audited as ``email_delivered`` or
``email_failed`` and never rolls anything back.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import ConflictError, TurnError, ValidationFailed
from ..models import (
    AuditEvent,
    Document,
    DocumentKind,
    DocumentStatus,
    Placeholder,
    Signature,
    Signer,
    SignerStatus,
    utcnow,
)
from .audit import AuditLedger
from .notifications import Notifier
from .pdf_service import BurnItem, burn_signatures
from .tokens import TokenService, hash_token

logger = logging.getLogger(__name__)

TURN_MESSAGES = {
    SignerStatus.PENDING.value: (
        "not_your_turn",
        "It is not yet your turn to sign. You will receive an email when it is.",
    ),
    SignerStatus.SIGNED.value: ("already_signed", "You have already signed this document."),
    SignerStatus.DECLINED.value: ("declined", "You have declined to sign this document."),
}

ACTIVE_DOCUMENT = (DocumentStatus.SENT.value, DocumentStatus.IN_PROGRESS.value)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def check_turn(signer: Signer):
    """Reject any signer that does not currently hold the turn."""
    if signer.status == SignerStatus.AWAITING_TURN.value:
        return
    code, message = TURN_MESSAGES.get(signer.status, ("invalid_status", "Signer is in an invalid state."))
    raise TurnError(code, message)


@dataclass
class SignerInput:
    email: str
    priority: int


@dataclass
class SignOutcome:
    final: bool
    next_signer: Optional[Signer] = None


class SignerChainController:
    def __init__(self, db: Session, storage, notifier: Notifier, tokens: TokenService, settings: Settings):
        self.db = db
        self.storage = storage
        self.notifier = notifier
        self.tokens = tokens
        self.settings = settings
        self.ledger = AuditLedger(db)

    # --- compare-and-set writes ---

    def _cas_signer(self, signer_id: str, expected, **values) -> bool:
        result = self.db.execute(
            update(Signer)
            .where(Signer.id == signer_id, Signer.status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def _cas_document(self, document_id: str, expected, status: DocumentStatus) -> bool:
        result = self.db.execute(
            update(Document)
            .where(Document.id == document_id, Document.status.in_(expected))
            .values(status=status.value, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def _lost_race(self, signer_id: str):
        """Roll back and explain why the signer could not be advanced."""
        self.db.rollback()
        current = self.db.get(Signer, signer_id)
        logger.warning("signer %s already advanced (status=%s)", signer_id, current and current.status)
        if current is not None:
            check_turn(current)
        raise ConflictError("conflict", "This signer has already been processed.")

    # --- helpers ---

    def sign_link(self, token: str) -> str:
        return f"{self.settings.APP_URL.rstrip('/')}/sign/{token}"

    def _promote(self, signer: Signer, document: Document) -> str:
        """pending -> awaiting_turn with a freshly issued magic link."""
        token = self.tokens.issue_magic_link(signer.id, document.id)
        if not self._cas_signer(
            signer.id,
            (SignerStatus.PENDING.value,),
            status=SignerStatus.AWAITING_TURN.value,
            token_hash=hash_token(token),
        ):
            self.db.rollback()
            raise ConflictError("conflict", "The next signer was already promoted.")
        logger.info("document %s: signer #%d (%s) is up", document.id, signer.priority, signer.id)
        return token

    def notify(self, document: Document, actor_email: str, to: str, signer_id, kind: str, send, **kwargs) -> bool:
        """Deliver one notification and audit the outcome.

        Runs after the triggering transition is committed; failures are
        recorded and swallowed.
        """
        try:
            send(to=to, **kwargs)
        except Exception as e:
            logger.warning("%s notification to %s failed: %s", kind, to, e)
            event, metadata, delivered = AuditEvent.EMAIL_FAILED, {"to": to, "kind": kind, "error": str(e)}, False
        else:
            event, metadata, delivered = AuditEvent.EMAIL_DELIVERED, {"to": to, "kind": kind}, True

        try:
            self.ledger.record(document.id, event, actor_email, signer_id=signer_id, metadata=metadata)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("could not audit %s notification for document %s", kind, document.id)
        return delivered

    def _signers(self, document_id: str) -> list:
        return (
            self.db.query(Signer)
            .filter(Signer.document_id == document_id)
            .order_by(Signer.priority.asc())
            .all()
        )

    def assigned_placeholders(self, document_id: str, email: str) -> list:
        return (
            self.db.query(Placeholder)
            .filter(Placeholder.document_id == document_id, Placeholder.assigned_signer_email == email)
            .all()
        )

    @staticmethod
    def match_batch(placeholders: list, submissions: list) -> list:
        """Pair a submitted batch with the signer's placeholders.

        ``submissions`` is a list of ``(placeholder_id, image_bytes)``; it
        must cover every assigned placeholder exactly once.
        """
        owned = {p.id: p for p in placeholders}
        seen = set()
        items = []
        for placeholder_id, image_bytes in submissions:
            if placeholder_id not in owned:
                raise ValidationFailed(
                    "placeholder_not_assigned",
                    f"Placeholder {placeholder_id} is not assigned to you.",
                    status_code=403,
                )
            if placeholder_id in seen:
                raise ValidationFailed("duplicate_placeholder", f"Placeholder {placeholder_id} was submitted twice.")
            seen.add(placeholder_id)
            items.append(BurnItem(owned[placeholder_id], image_bytes))
        if len(items) != len(owned):
            raise ValidationFailed(
                "incomplete_batch",
                f"You must sign all {len(owned)} field(s). You signed {len(items)}.",
            )
        return items

    def _persist_and_burn(self, document: Document, signer: Signer, items: list, actor_email: str, metadata=None):
        """Insert signature rows and burn them into the latest stored PDF.

        Must run inside the transaction that claimed the signer's turn.
        """
        for item in items:
            self.db.add(Signature(
                signer_id=signer.id,
                placeholder_id=item.placeholder.id,
                image_data=item.image_bytes,
            ))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("conflict", "These fields have already been signed.")

        self.ledger.record(
            document.id, AuditEvent.SIGNATURE_SUBMITTED, actor_email, signer_id=signer.id,
            metadata=dict(metadata or {}, count=len(items)),
        )
        if not items:
            return

        # always the freshest stored copy: earlier signers' burns must be visible
        pdf_bytes = self.storage.download(document.file_path)
        burned = burn_signatures(pdf_bytes, items)
        stored_ref = self.storage.upload(burned, document.file_path)
        if stored_ref != document.file_path:
            document.file_path = stored_ref
        self.ledger.record(
            document.id, AuditEvent.PDF_BURNED, actor_email, signer_id=signer.id,
            metadata={"placeholders": [item.placeholder.id for item in items]},
        )

    # --- initialization ---

    def initialize(self, document: Document, sender_email: str, signer_inputs: list) -> list:
        """Create the chain and hand the first turn to the lowest priority."""
        if document.kind != DocumentKind.REQUEST.value:
            raise ValidationFailed("invalid_kind", "Self-sign documents are not sent to signers.")
        if document.status != DocumentStatus.DRAFT.value:
            raise ConflictError("invalid_status", "Document has already been sent.")
        if not signer_inputs:
            raise ValidationFailed("no_signers", "At least one signer is required.")

        emails = [normalize_email(s.email) for s in signer_inputs]
        priorities = [s.priority for s in signer_inputs]
        if any(not isinstance(p, int) or p < 1 for p in priorities):
            raise ValidationFailed("invalid_priority", "Priorities are positive integers starting at 1.")
        if len(set(priorities)) != len(priorities):
            raise ValidationFailed("duplicate_priority", "Each signer must have a unique priority.")
        if len(set(emails)) != len(emails):
            raise ValidationFailed("duplicate_signer", "Each signer email may appear only once.")

        placeholders = self.db.query(Placeholder).filter(Placeholder.document_id == document.id).all()
        unknown = sorted({p.assigned_signer_email for p in placeholders} - set(emails))
        if unknown:
            raise ValidationFailed(
                "unknown_signer",
                f"Placeholders are assigned to emails that are not signers: {', '.join(unknown)}.",
            )

        if not self._cas_document(document.id, (DocumentStatus.DRAFT.value,), DocumentStatus.SENT):
            self.db.rollback()
            raise ConflictError("invalid_status", "Document has already been sent.")

        signers = [
            Signer(document_id=document.id, email=email, priority=s.priority, status=SignerStatus.PENDING.value)
            for email, s in zip(emails, signer_inputs)
        ]
        self.db.add_all(signers)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("invalid_status", "Document has already been sent.")

        signers.sort(key=lambda s: s.priority)
        first = signers[0]
        token = self._promote(first, document)

        self.ledger.record(
            document.id, AuditEvent.DOCUMENT_SENT, sender_email,
            metadata={"signer_count": len(signers)},
        )
        self.db.commit()
        logger.info("document %s sent to %d signer(s)", document.id, len(signers))

        self.notify(
            document, sender_email, first.email, first.id, "signing_request",
            self.notifier.signing_request,
            document_name=document.name,
            sender_email=sender_email,
            sign_link=self.sign_link(token),
        )
        for other in signers[1:]:
            self.notify(
                document, sender_email, other.email, other.id, "queue_notice",
                self.notifier.queue_notice,
                document_name=document.name,
                sender_email=sender_email,
                current_signer_email=first.email,
                position=other.priority,
                total=len(signers),
            )

        for signer in signers:
            self.db.refresh(signer)
        return signers

    # --- advance on sign ---

    def advance_on_sign(self, signer: Signer, submissions: list) -> SignOutcome:
        """Accept the turn-holder's complete batch and move the chain on."""
        check_turn(signer)
        document = signer.document
        if document.status not in ACTIVE_DOCUMENT:
            raise TurnError("invalid_status", "This document is no longer open for signing.")

        items = self.match_batch(self.assigned_placeholders(document.id, signer.email), submissions)
        sender_email = document.owner.email
        signed_at = utcnow()

        # claiming the turn first makes a concurrent retry fail before it can burn
        if not self._cas_signer(
            signer.id,
            (SignerStatus.AWAITING_TURN.value,),
            status=SignerStatus.SIGNED.value,
            signed_at=signed_at,
        ):
            self._lost_race(signer.id)

        try:
            self._persist_and_burn(document, signer, items, signer.email)
        except Exception:
            self.db.rollback()
            raise

        self._cas_document(document.id, (DocumentStatus.SENT.value,), DocumentStatus.IN_PROGRESS)
        logger.info("document %s: signer #%d signed", document.id, signer.priority)

        next_signer = (
            self.db.query(Signer)
            .filter(Signer.document_id == document.id, Signer.status == SignerStatus.PENDING.value)
            .order_by(Signer.priority.asc())
            .first()
        )
        if next_signer is not None:
            token = self._promote(next_signer, document)
            self.ledger.record(
                document.id, AuditEvent.NEXT_SIGNER_NOTIFIED, sender_email, signer_id=next_signer.id,
                metadata={"to": next_signer.email, "priority": next_signer.priority},
            )
            self.db.commit()
            self._announce_next(document, sender_email, signer, next_signer, token)
            return SignOutcome(final=False, next_signer=next_signer)

        if not self._cas_document(document.id, ACTIVE_DOCUMENT, DocumentStatus.COMPLETED):
            self.db.rollback()
            raise ConflictError("invalid_status", "Document is no longer open for signing.")
        self.ledger.record(document.id, AuditEvent.DOCUMENT_COMPLETED, sender_email, signer_id=signer.id)
        self.db.commit()
        logger.info("document %s completed", document.id)
        self._announce_completion(document, sender_email)
        return SignOutcome(final=True)

    def _announce_next(self, document, sender_email, previous, next_signer, token):
        signers = self._signers(document.id)
        self.notify(
            document, sender_email, next_signer.email, next_signer.id, "your_turn",
            self.notifier.your_turn,
            document_name=document.name,
            previous_signer_email=previous.email,
            sign_link=self.sign_link(token),
            position=next_signer.priority,
            total=len(signers),
        )
        remaining = sum(1 for s in signers if s.status != SignerStatus.SIGNED.value)
        for observer in signers:
            if observer.status != SignerStatus.PENDING.value:
                continue
            self.notify(
                document, sender_email, observer.email, observer.id, "progress_update",
                self.notifier.progress_update,
                document_name=document.name,
                previous_signer_email=previous.email,
                next_signer_email=next_signer.email,
                remaining=remaining,
            )

    def _announce_completion(self, document, sender_email):
        signers = self._signers(document.id)
        download_url = self.storage.signed_url(
            document.file_path, document.id, sender_email, self.settings.COMPLETION_URL_TTL_SECONDS,
        )
        summary = [
            {"email": s.email, "signed_at": s.signed_at.isoformat() if s.signed_at else ""}
            for s in signers
        ]
        recipients = [(sender_email, None)] + [(s.email, s.id) for s in signers]
        for to, signer_id in recipients:
            self.notify(
                document, sender_email, to, signer_id, "completion",
                self.notifier.completion,
                document_name=document.name,
                signers=summary,
                download_url=download_url,
            )

    # --- decline ---

    def decline(self, signer: Signer, reason: Optional[str] = None):
        """The turn-holder refuses; the document is cancelled for good."""
        check_turn(signer)
        document = signer.document
        sender_email = document.owner.email

        if not self._cas_signer(signer.id, (SignerStatus.AWAITING_TURN.value,), status=SignerStatus.DECLINED.value):
            self._lost_race(signer.id)
        if not self._cas_document(document.id, ACTIVE_DOCUMENT, DocumentStatus.CANCELLED):
            self.db.rollback()
            raise TurnError("invalid_status", "This document is no longer open for signing.")

        declined_at = utcnow()
        self.ledger.record(
            document.id, AuditEvent.SIGNER_DECLINED, signer.email, signer_id=signer.id,
            metadata={"reason": reason} if reason else {},
        )
        self.db.commit()
        logger.info("document %s cancelled: signer #%d declined", document.id, signer.priority)

        self.notify(
            document, signer.email, sender_email, signer.id, "declined",
            self.notifier.declined,
            document_name=document.name,
            signer_email=signer.email,
            declined_at=declined_at.isoformat(),
        )

    # --- self-sign ---

    def self_sign(self, document: Document, owner_email: str, submissions: list) -> Signer:
        """Owner signs their own document directly: draft -> completed."""
        if document.kind != DocumentKind.SELF_SIGN.value:
            raise ValidationFailed("invalid_kind", "This document is not a self-sign document.")
        if document.status != DocumentStatus.DRAFT.value:
            raise ConflictError("invalid_status", "Document is already completed.")

        owner_email = normalize_email(owner_email)
        placeholders = self.assigned_placeholders(document.id, owner_email)
        if not placeholders:
            raise ValidationFailed("no_placeholders", "No placeholders are assigned to you on this document.")
        items = self.match_batch(placeholders, submissions)

        if not self._cas_document(document.id, (DocumentStatus.DRAFT.value,), DocumentStatus.COMPLETED):
            self.db.rollback()
            raise ConflictError("invalid_status", "Document is already completed.")

        signer = Signer(
            document_id=document.id,
            email=owner_email,
            priority=1,
            status=SignerStatus.SIGNED.value,
            signed_at=utcnow(),
        )
        self.db.add(signer)
        try:
            self.db.flush()
            self._persist_and_burn(document, signer, items, owner_email, metadata={"mode": "self_sign"})
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("invalid_status", "Document is already completed.")
        except Exception:
            self.db.rollback()
            raise

        self.ledger.record(
            document.id, AuditEvent.DOCUMENT_COMPLETED, owner_email, signer_id=signer.id,
            metadata={"mode": "self_sign"},
        )
        self.db.commit()
        logger.info("document %s self-signed", document.id)
        return signer
