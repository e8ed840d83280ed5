from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field

from .models import FieldType


class UserBase(BaseModel):
    email: EmailStr


class UserCreate(UserBase):
    password: str = Field(min_length=8)


class User(UserBase):
    id: str
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class Token(BaseModel):
    access_token: str
    token_type: str


# --- sender side ---

class Document(BaseModel):
    id: str
    name: str
    category: Optional[str] = None
    kind: str
    status: str
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class PlaceholderIn(BaseModel):
    id: Optional[str] = None
    page_number: int = Field(alias="pageNumber", ge=1)
    x_percent: float = Field(alias="xPercent")
    y_percent: float = Field(alias="yPercent")
    width_percent: float = Field(alias="widthPercent")
    height_percent: float = Field(alias="heightPercent")
    label: Optional[FieldType] = None
    assigned_signer_email: EmailStr = Field(alias="assignedSignerEmail")
    model_config = ConfigDict(populate_by_name=True)


class PlaceholdersReplace(BaseModel):
    placeholders: List[PlaceholderIn]


class Placeholder(BaseModel):
    id: str
    page_number: int
    x_percent: float
    y_percent: float
    width_percent: float
    height_percent: float
    label: Optional[str] = None
    assigned_signer_email: str
    model_config = ConfigDict(from_attributes=True)


class SignerIn(BaseModel):
    email: EmailStr
    priority: int = Field(ge=1)


class SendRequest(BaseModel):
    signers: List[SignerIn]


class Signer(BaseModel):
    id: str
    email: str
    priority: int
    status: str
    signed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class DocumentStatus(BaseModel):
    id: str
    name: str
    status: str
    signers: List[Signer]


class AuditEntry(BaseModel):
    id: int
    signer_id: Optional[str] = None
    actor_email: str
    event_type: str
    metadata: Dict[str, Any] = Field(validation_alias=AliasChoices("event_metadata", "metadata"))
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class AuditTrail(BaseModel):
    logs: List[AuditEntry]


class ChainVerification(BaseModel):
    valid: bool
    total_entries: int
    broken_at: Optional[int] = None
    message: Optional[str] = None


# --- signer side ---

class LinkInfo(BaseModel):
    document_name: str = Field(alias="documentName")
    signer_email: str = Field(alias="signerEmail")
    model_config = ConfigDict(populate_by_name=True)


class OTPVerify(BaseModel):
    otp: Any = None


class SessionIssued(BaseModel):
    session_token: str = Field(alias="sessionToken")
    expires_in: int = Field(alias="expiresIn")
    model_config = ConfigDict(populate_by_name=True)


class SigningInfo(BaseModel):
    document_name: str = Field(alias="documentName")
    signer_email: str = Field(alias="signerEmail")
    placeholders: List[Placeholder]
    pdf_url: str = Field(alias="pdfUrl")
    model_config = ConfigDict(populate_by_name=True)


class SignatureIn(BaseModel):
    placeholder_id: str = Field(alias="placeholderId")
    image_base64: str = Field(alias="imageBase64")
    model_config = ConfigDict(populate_by_name=True)


class SubmitRequest(BaseModel):
    action: Literal["sign", "decline"]
    signatures: Optional[List[SignatureIn]] = None
    reason: Optional[str] = None


class SelfSignRequest(BaseModel):
    signatures: List[SignatureIn]


class SubmitResult(BaseModel):
    success: bool = True
    action: str
    final: bool = False
