import re
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models, schemas
from ..database import get_db
from ..dependencies import get_chain_controller, get_storage
from ..errors import ValidationFailed
from ..services.audit import AuditLedger
from ..services.chain import SignerChainController, SignerInput, normalize_email
from ..services.coordinates import fits_on_page
from ..services.pdf_service import count_pages, decode_image
from .users import get_current_user

router = APIRouter()


def safe_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", name or "document.pdf")


def get_owned_document(document_id: str, user: models.User, db: Session) -> models.Document:
    document = (
        db.query(models.Document)
        .filter(models.Document.id == document_id, models.Document.owner_id == user.id)
        .first()
    )
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


@router.post("/upload", response_model=schemas.Document)
async def upload_document(
    file: UploadFile = File(...),
    category: Optional[str] = Form(None),
    kind: models.DocumentKind = Form(models.DocumentKind.REQUEST),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    content = await file.read()
    pages = count_pages(content)

    document_id = str(uuid.uuid4())
    file_path = storage.upload(content, f"documents/{document_id}/{safe_filename(file.filename)}")

    db_document = models.Document(
        id=document_id,
        owner_id=current_user.id,
        name=file.filename or "document.pdf",
        file_path=file_path,
        category=category,
        kind=kind.value,
        status=models.DocumentStatus.DRAFT.value,
    )
    db.add(db_document)
    db.flush()
    AuditLedger(db).record(
        document_id, models.AuditEvent.DOCUMENT_CREATED, current_user.email,
        metadata={"pages": pages, "kind": kind.value},
    )
    db.commit()
    db.refresh(db_document)
    return db_document


@router.get("/", response_model=list[schemas.Document])
def list_documents(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return (
        db.query(models.Document)
        .filter(models.Document.owner_id == current_user.id)
        .order_by(models.Document.created_at.desc())
        .all()
    )


@router.get("/{document_id}/download")
def download_document(
    document_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    document = get_owned_document(document_id, current_user, db)
    file_content = storage.download(document.file_path)

    AuditLedger(db).record(document.id, models.AuditEvent.DOCUMENT_DOWNLOADED, current_user.email)
    db.commit()

    filename = safe_filename(document.name)
    if document.status == models.DocumentStatus.COMPLETED.value:
        filename = f"signed_{filename}"
    return Response(
        content=file_content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{document_id}/placeholders", response_model=list[schemas.Placeholder])
def list_placeholders(
    document_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    document = get_owned_document(document_id, current_user, db)
    return document.placeholders


@router.put("/{document_id}/placeholders", response_model=list[schemas.Placeholder])
def replace_placeholders(
    document_id: str,
    payload: schemas.PlaceholdersReplace,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    document = get_owned_document(document_id, current_user, db)
    if document.status != models.DocumentStatus.DRAFT.value:
        raise HTTPException(status_code=409, detail="Placeholders can only be edited while the document is a draft")
    if not payload.placeholders:
        raise ValidationFailed("no_placeholders", "placeholders array is required.")

    pages = count_pages(storage.download(document.file_path))
    ids = [p.id for p in payload.placeholders if p.id]
    if len(set(ids)) != len(ids):
        raise ValidationFailed("duplicate_placeholder", "Placeholder ids must be unique.")
    for p in payload.placeholders:
        if p.page_number > pages:
            raise ValidationFailed("invalid_page", f"Page {p.page_number} does not exist in this document.")
        if not fits_on_page(p.x_percent, p.y_percent, p.width_percent, p.height_percent):
            raise ValidationFailed("invalid_geometry", "Placeholders must lie inside the page.")

    # replaced wholesale, never patched
    db.query(models.Placeholder).filter(models.Placeholder.document_id == document.id).delete()
    rows = [
        models.Placeholder(
            id=p.id or str(uuid.uuid4()),
            document_id=document.id,
            page_number=p.page_number,
            x_percent=p.x_percent,
            y_percent=p.y_percent,
            width_percent=p.width_percent,
            height_percent=p.height_percent,
            label=p.label.value if p.label else None,
            assigned_signer_email=normalize_email(p.assigned_signer_email),
        )
        for p in payload.placeholders
    ]
    db.add_all(rows)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationFailed("duplicate_placeholder", "Placeholder ids must be unique.")
    return rows


@router.post("/{document_id}/send", response_model=list[schemas.Signer])
def send_document(
    document_id: str,
    payload: schemas.SendRequest,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    chain: SignerChainController = Depends(get_chain_controller),
):
    document = get_owned_document(document_id, current_user, db)
    signers = chain.initialize(
        document,
        current_user.email,
        [SignerInput(email=s.email, priority=s.priority) for s in payload.signers],
    )
    return signers


@router.get("/{document_id}/status", response_model=schemas.DocumentStatus)
def document_status(
    document_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    document = get_owned_document(document_id, current_user, db)
    return schemas.DocumentStatus(
        id=document.id,
        name=document.name,
        status=document.status,
        signers=[schemas.Signer.model_validate(s) for s in document.signers],
    )


@router.get("/{document_id}/logs", response_model=schemas.AuditTrail)
def document_logs(
    document_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    document = get_owned_document(document_id, current_user, db)
    entries = AuditLedger(db).trail(document.id, newest_first=True)
    return schemas.AuditTrail(logs=[schemas.AuditEntry.model_validate(e) for e in entries])


@router.get("/{document_id}/logs/verify", response_model=schemas.ChainVerification)
def verify_document_logs(
    document_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    document = get_owned_document(document_id, current_user, db)
    return AuditLedger(db).verify_chain(document.id)


@router.post("/{document_id}/self-sign", response_model=schemas.SubmitResult)
def self_sign_document(
    document_id: str,
    payload: schemas.SelfSignRequest,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    chain: SignerChainController = Depends(get_chain_controller),
):
    document = get_owned_document(document_id, current_user, db)
    submissions = [(s.placeholder_id, decode_image(s.image_base64)) for s in payload.signatures]
    chain.self_sign(document, current_user.email, submissions)
    return schemas.SubmitResult(action="signed", final=True)
