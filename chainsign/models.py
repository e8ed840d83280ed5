import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow():
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


class DocumentStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DocumentKind(str, enum.Enum):
    REQUEST = "request"
    SELF_SIGN = "self_sign"


class SignerStatus(str, enum.Enum):
    PENDING = "pending"
    AWAITING_TURN = "awaiting_turn"
    SIGNED = "signed"
    DECLINED = "declined"


class FieldType(str, enum.Enum):
    SIGNATURE = "signature"
    NAME = "name"
    TITLE = "title"
    DESIGNATION = "designation"
    DATE = "date"


class AuditEvent(str, enum.Enum):
    DOCUMENT_CREATED = "document_created"
    DOCUMENT_SENT = "document_sent"
    EMAIL_DELIVERED = "email_delivered"
    EMAIL_FAILED = "email_failed"
    LINK_OPENED = "link_opened"
    OTP_SENT = "otp_sent"
    OTP_VERIFIED = "otp_verified"
    OTP_FAILED = "otp_failed"
    OTP_LOCKED = "otp_locked"
    PLACEHOLDER_VIEWED = "placeholder_viewed"
    SIGNATURE_SUBMITTED = "signature_submitted"
    PDF_BURNED = "pdf_burned"
    SIGNER_DECLINED = "signer_declined"
    NEXT_SIGNER_NOTIFIED = "next_signer_notified"
    DOCUMENT_COMPLETED = "document_completed"
    DOCUMENT_DOWNLOADED = "document_downloaded"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(320), unique=True, index=True, nullable=False)
    hashed_password = Column(String(128), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    documents = relationship("Document", back_populates="owner")


class Document(Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    file_path = Column(String(1024), nullable=False)
    category = Column(String(120), nullable=True)
    kind = Column(String(16), nullable=False, default=DocumentKind.REQUEST.value)
    status = Column(String(16), nullable=False, default=DocumentStatus.DRAFT.value)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="documents")
    signers = relationship("Signer", back_populates="document", order_by="Signer.priority")
    placeholders = relationship("Placeholder", back_populates="document")
    audit_logs = relationship("AuditLog", back_populates="document")


class Signer(Base):
    __tablename__ = "signers"
    __table_args__ = (UniqueConstraint("document_id", "priority", name="uq_signers_document_priority"),)

    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False, index=True)
    email = Column(String(320), nullable=False)
    priority = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default=SignerStatus.PENDING.value)
    signed_at = Column(DateTime, nullable=True)
    # sha256 of the magic-link token currently valid for this signer
    token_hash = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    document = relationship("Document", back_populates="signers")
    signatures = relationship("Signature", back_populates="signer")
    otp_records = relationship("OTPRecord", back_populates="signer")


class Placeholder(Base):
    __tablename__ = "placeholders"

    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)
    x_percent = Column(Float, nullable=False)
    y_percent = Column(Float, nullable=False)
    width_percent = Column(Float, nullable=False)
    height_percent = Column(Float, nullable=False)
    label = Column(String(32), nullable=True)
    assigned_signer_email = Column(String(320), nullable=False)

    document = relationship("Document", back_populates="placeholders")


class Signature(Base):
    __tablename__ = "signatures"

    id = Column(String(36), primary_key=True, default=new_id)
    signer_id = Column(String(36), ForeignKey("signers.id"), nullable=False, index=True)
    # one signature per placeholder, ever
    placeholder_id = Column(String(36), ForeignKey("placeholders.id"), nullable=False, unique=True)
    image_data = Column(LargeBinary, nullable=False)
    signed_at = Column(DateTime, default=utcnow)

    signer = relationship("Signer", back_populates="signatures")
    placeholder = relationship("Placeholder")


class OTPRecord(Base):
    __tablename__ = "otp_records"

    id = Column(String(36), primary_key=True, default=new_id)
    signer_id = Column(String(36), ForeignKey("signers.id"), nullable=False, index=True)
    otp_hash = Column(String(128), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    signer = relationship("Signer", back_populates="otp_records")

    # at most one live code per signer
    __table_args__ = (
        Index(
            "uq_otp_records_live_signer",
            "signer_id",
            unique=True,
            postgresql_where=used.is_(False),
            sqlite_where=used.is_(False),
        ),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False, index=True)
    signer_id = Column(String(36), ForeignKey("signers.id"), nullable=True)
    actor_email = Column(String(320), nullable=False)
    event_type = Column(String(32), nullable=False)
    event_metadata = Column(JSON, default=dict)
    entry_hash = Column(String(64), nullable=False)
    previous_hash = Column(String(64), nullable=False, default="")
    created_at = Column(DateTime, default=utcnow, index=True)

    document = relationship("Document", back_populates="audit_logs")
