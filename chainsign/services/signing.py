"""
Signer-facing operations, one per inbound request.

Each method is a self-contained unit of work over explicit collaborators; no
state survives between calls except what is committed to the database. The
magic-link token identifies the signer on every call, the session token
authorises reads and writes once the OTP challenge has been passed.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import InvalidTokenError, NotFoundError, ValidationFailed
from ..models import AuditEvent, Document, Signer
from .. import schemas
from .audit import AuditLedger
from .chain import SignerChainController, check_turn
from .notifications import Notifier
from .otp import OTPChallenge
from .pdf_service import decode_image
from .tokens import TokenService

logger = logging.getLogger(__name__)


class SigningService:
    def __init__(self, db: Session, storage, notifier: Notifier, settings: Settings,
                 tokens: Optional[TokenService] = None):
        self.db = db
        self.storage = storage
        self.notifier = notifier
        self.settings = settings
        self.tokens = tokens or TokenService.from_settings(settings)
        self.ledger = AuditLedger(db)
        self.otp = OTPChallenge(
            db,
            self.ledger,
            ttl=timedelta(minutes=settings.OTP_TTL_MINUTES),
            max_attempts=settings.OTP_MAX_ATTEMPTS,
        )
        self.chain = SignerChainController(db, storage, notifier, self.tokens, settings)

    def _signer_for_link(self, token: str) -> Signer:
        """Verify the magic link: signature, expiry and type, then the turn, then the stored hash."""
        claims = self.tokens.verify_magic_link(token, check_hash=False)
        signer = self.db.get(Signer, claims.signer_id)
        if signer is None or signer.document_id != claims.document_id:
            raise NotFoundError("not_found", "This signing request no longer exists.")
        check_turn(signer)
        if not self.tokens.matches_hash(token, signer.token_hash):
            raise InvalidTokenError("invalid_token", "This link is invalid.")
        return signer

    def _signer_for_session(self, token: str, session_token: Optional[str]) -> Signer:
        signer = self._signer_for_link(token)
        claims = self.tokens.verify_session(session_token)
        if claims.signer_id != signer.id or claims.document_id != signer.document_id:
            raise InvalidTokenError("invalid_token", "Invalid session.")
        return signer

    def open_link(self, token: str) -> schemas.LinkInfo:
        """Magic-link visit: verify, enforce the turn, issue and send an OTP."""
        signer = self._signer_for_link(token)
        document = self.db.get(Document, signer.document_id)

        self.ledger.record(document.id, AuditEvent.LINK_OPENED, signer.email, signer_id=signer.id)
        issued = self.otp.issue(signer)
        self.db.commit()

        self.chain.notify(
            document, signer.email, signer.email, signer.id, "otp_code",
            self.notifier.otp_code,
            document_name=document.name,
            code=issued.code,
            expires_minutes=self.settings.OTP_TTL_MINUTES,
        )
        return schemas.LinkInfo(document_name=document.name, signer_email=signer.email)

    def verify_otp(self, token: str, otp) -> schemas.SessionIssued:
        signer = self._signer_for_link(token)
        self.otp.verify(signer, otp)
        session_token = self.tokens.issue_session(signer.id, signer.document_id)
        self.db.commit()
        return schemas.SessionIssued(
            session_token=session_token,
            expires_in=int(self.tokens.session_ttl.total_seconds()),
        )

    def fetch_info(self, token: str, session_token: Optional[str]) -> schemas.SigningInfo:
        signer = self._signer_for_session(token, session_token)
        document = self.db.get(Document, signer.document_id)
        placeholders = self.chain.assigned_placeholders(document.id, signer.email)

        pdf_url = self.storage.signed_url(
            document.file_path, document.id, signer.email, self.settings.VIEW_URL_TTL_SECONDS,
        )
        self.ledger.record(
            document.id, AuditEvent.PLACEHOLDER_VIEWED, signer.email, signer_id=signer.id,
            metadata={"count": len(placeholders)},
        )
        self.db.commit()
        return schemas.SigningInfo(
            document_name=document.name,
            signer_email=signer.email,
            placeholders=[schemas.Placeholder.model_validate(p) for p in placeholders],
            pdf_url=pdf_url,
        )

    def submit(self, token: str, session_token: Optional[str], request: schemas.SubmitRequest) -> schemas.SubmitResult:
        signer = self._signer_for_session(token, session_token)

        if request.action == "decline":
            self.chain.decline(signer, reason=request.reason)
            return schemas.SubmitResult(action="declined")

        if request.signatures is None:
            raise ValidationFailed("incomplete_batch", "signatures array is required for sign action.")
        # decode everything before any write so a bad image rejects the whole batch
        submissions = [(s.placeholder_id, decode_image(s.image_base64)) for s in request.signatures]
        outcome = self.chain.advance_on_sign(signer, submissions)
        return schemas.SubmitResult(action="signed", final=outcome.final)
