from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.orm import Session

from .. import models, schemas
from ..database import get_db
from ..dependencies import bearer_token, get_signing_service, get_storage, get_tokens
from ..services.audit import AuditLedger
from ..services.signing import SigningService
from ..services.tokens import TokenService
from .documents import safe_filename

router = APIRouter()


@router.get("/sign/{token}", response_model=schemas.LinkInfo)
def open_signing_link(token: str, service: SigningService = Depends(get_signing_service)):
    """Verify the magic link, enforce the turn and email a one-time code."""
    return service.open_link(token)


@router.post("/sign/{token}/verify-otp", response_model=schemas.SessionIssued)
def verify_otp(
    token: str,
    payload: schemas.OTPVerify,
    service: SigningService = Depends(get_signing_service),
):
    return service.verify_otp(token, payload.otp)


@router.get("/sign/{token}/info", response_model=schemas.SigningInfo)
def signing_info(
    token: str,
    session_token: Optional[str] = Depends(bearer_token),
    service: SigningService = Depends(get_signing_service),
):
    return service.fetch_info(token, session_token)


@router.post("/sign/{token}/submit", response_model=schemas.SubmitResult)
def submit_signatures(
    token: str,
    payload: schemas.SubmitRequest,
    session_token: Optional[str] = Depends(bearer_token),
    service: SigningService = Depends(get_signing_service),
):
    return service.submit(token, session_token, payload)


@router.get("/files/{token}")
def download_by_link(
    token: str,
    tokens: TokenService = Depends(get_tokens),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    claims = tokens.verify_download(token)
    file_content = storage.download(claims.file_path)

    document = db.get(models.Document, claims.document_id)
    filename = safe_filename(document.name) if document is not None else "document.pdf"
    response = Response(
        content=file_content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )

    if document is not None:
        AuditLedger(db).record(
            document.id, models.AuditEvent.DOCUMENT_DOWNLOADED, claims.actor_email,
            metadata={"via": "link"},
        )
        db.commit()
    return response
