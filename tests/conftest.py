import base64
import io
import uuid

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from reportlab.pdfgen import canvas
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chainsign import models
from chainsign.config import Settings, get_settings
from chainsign.database import Base, get_db
from chainsign.dependencies import get_notifier, get_storage
from chainsign.main import app
from chainsign.services.chain import SignerChainController, SignerInput
from chainsign.services.notifications import Notifier
from chainsign.services.signing import SigningService
from chainsign.services.storage import LocalStorage
from chainsign.services.tokens import TokenService

SENDER = "sender@example.com"


def make_pdf(pages=1, size=(595, 842)) -> bytes:
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=size)
    for i in range(pages):
        c.drawString(72, 72, f"Contract page {i + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def make_png(color=(20, 20, 120), size=(120, 40), fmt="PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


def png_data_url(**kwargs) -> str:
    return "data:image/png;base64," + base64.b64encode(make_png(**kwargs)).decode()


class RecordingNotifier(Notifier):
    """Keeps every notification call; recipients in ``failing`` raise on delivery."""

    def __init__(self):
        self.calls = []
        self.failing = set()

    def deliver(self, to, subject, body):
        if to in self.failing:
            raise ConnectionError(f"mailbox unavailable: {to}")

    def _record(self, kind, kwargs):
        self.calls.append((kind, kwargs))

    def signing_request(self, **kwargs):
        self._record("signing_request", kwargs)
        super().signing_request(**kwargs)

    def queue_notice(self, **kwargs):
        self._record("queue_notice", kwargs)
        super().queue_notice(**kwargs)

    def your_turn(self, **kwargs):
        self._record("your_turn", kwargs)
        super().your_turn(**kwargs)

    def progress_update(self, **kwargs):
        self._record("progress_update", kwargs)
        super().progress_update(**kwargs)

    def completion(self, **kwargs):
        self._record("completion", kwargs)
        super().completion(**kwargs)

    def declined(self, **kwargs):
        self._record("declined", kwargs)
        super().declined(**kwargs)

    def otp_code(self, **kwargs):
        self._record("otp_code", kwargs)
        super().otp_code(**kwargs)

    def of_kind(self, kind, to=None):
        return [kw for k, kw in self.calls if k == kind and (to is None or kw["to"] == to)]

    def link_token(self, to):
        """The magic-link token most recently sent to ``to``."""
        links = [kw["sign_link"] for k, kw in self.calls if k in ("signing_request", "your_turn") and kw["to"] == to]
        assert links, f"no signing link was sent to {to}"
        return links[-1].rsplit("/", 1)[1]

    def otp(self, to):
        codes = self.of_kind("otp_code", to)
        assert codes, f"no code was sent to {to}"
        return codes[-1]["code"]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        SECRET_KEY="test-secret",
        APP_URL="http://testserver",
        UPLOAD_DIR=str(tmp_path / "blobs"),
        DATABASE_URL="sqlite://",
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tokens(settings):
    return TokenService.from_settings(settings)


@pytest.fixture
def storage(settings, tokens):
    return LocalStorage(settings.UPLOAD_DIR, settings.APP_URL, tokens)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def controller(db, storage, notifier, tokens, settings):
    return SignerChainController(db, storage, notifier, tokens, settings)


@pytest.fixture
def service(db, storage, notifier, tokens, settings):
    return SigningService(db, storage, notifier, settings, tokens=tokens)


@pytest.fixture
def document_factory(db, storage):
    """A draft document with one placeholder per signer email on page ``pages``."""

    def _create(signer_emails, pages=1, kind=models.DocumentKind.REQUEST.value, owner_email=SENDER,
                fields_per_signer=1):
        owner = db.query(models.User).filter(models.User.email == owner_email).first()
        if owner is None:
            owner = models.User(email=owner_email, hashed_password="not-used")
            db.add(owner)
            db.flush()

        document_id = str(uuid.uuid4())
        file_path = storage.upload(make_pdf(pages), f"documents/{document_id}/contract.pdf")
        document = models.Document(
            id=document_id,
            owner_id=owner.id,
            name="contract.pdf",
            file_path=file_path,
            kind=kind,
            status=models.DocumentStatus.DRAFT.value,
        )
        db.add(document)
        for i, email in enumerate(signer_emails):
            for j in range(fields_per_signer):
                db.add(models.Placeholder(
                    document_id=document_id,
                    page_number=pages,
                    x_percent=10 + 40 * j,
                    y_percent=5 + 15 * i,
                    width_percent=30,
                    height_percent=8,
                    label=models.FieldType.SIGNATURE.value,
                    assigned_signer_email=email,
                ))
        db.commit()
        return document

    return _create


@pytest.fixture
def sent_document(db, controller, document_factory):
    """Three signers, priorities 1-3, already sent."""
    emails = ["first@example.com", "second@example.com", "third@example.com"]
    document = document_factory(emails)
    signers = controller.initialize(
        document, SENDER, [SignerInput(email, priority) for priority, email in enumerate(emails, start=1)]
    )
    return document, signers


def batch_for(db, signer, image=None):
    """A complete ``(placeholder_id, image_bytes)`` batch for ``signer``."""
    placeholders = (
        db.query(models.Placeholder)
        .filter(
            models.Placeholder.document_id == signer.document_id,
            models.Placeholder.assigned_signer_email == signer.email,
        )
        .all()
    )
    return [(p.id, image or make_png()) for p in placeholders]


@pytest.fixture
def client(session_factory, settings, storage, notifier):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_notifier] = lambda: notifier
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
