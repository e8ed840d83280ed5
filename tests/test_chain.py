import io

import pytest
from pypdf import PdfReader

from chainsign import models
from chainsign.errors import ConflictError, StorageError, TurnError, ValidationFailed
from chainsign.services.audit import AuditLedger
from chainsign.services.chain import SignerChainController, SignerInput
from chainsign.services.tokens import hash_token
from conftest import SENDER, batch_for, make_png

EMAILS = ["first@example.com", "second@example.com", "third@example.com"]
COLORS = [(200, 0, 0), (0, 200, 0), (0, 0, 200)]


def statuses(db, document_id):
    return [
        s.status
        for s in db.query(models.Signer)
        .filter(models.Signer.document_id == document_id)
        .order_by(models.Signer.priority)
    ]


def reload(db, signer):
    db.expire_all()
    return db.get(models.Signer, signer.id)


def sign(controller, db, signer, color=(20, 20, 120)):
    signer = reload(db, signer)
    return controller.advance_on_sign(signer, batch_for(db, signer, make_png(color=color)))


def stored_images(storage, document):
    return len(PdfReader(io.BytesIO(storage.download(document.file_path))).pages[0].images)


# --- initialize ---


def test_initialize_hands_the_turn_to_priority_one(db, sent_document, notifier):
    document, signers = sent_document
    assert [s.email for s in signers] == EMAILS
    assert [s.status for s in signers] == ["awaiting_turn", "pending", "pending"]
    db.refresh(document)
    assert document.status == "sent"

    token = notifier.link_token(EMAILS[0])
    assert signers[0].token_hash == hash_token(token)
    assert signers[1].token_hash is None

    assert len(notifier.of_kind("signing_request")) == 1
    queued = notifier.of_kind("queue_notice")
    assert [q["to"] for q in queued] == EMAILS[1:]
    assert [q["position"] for q in queued] == [2, 3]
    assert all(q["current_signer_email"] == EMAILS[0] for q in queued)


def test_initialize_sorts_by_priority_not_input_order(db, controller, document_factory, notifier):
    document = document_factory(EMAILS)
    signers = controller.initialize(document, SENDER, [
        SignerInput("third@example.com", 3),
        SignerInput("First@Example.com", 1),
        SignerInput("second@example.com", 2),
    ])
    assert [s.email for s in signers] == EMAILS
    assert notifier.of_kind("signing_request")[0]["to"] == EMAILS[0]


@pytest.mark.parametrize(
    "inputs, code",
    [
        ([], "no_signers"),
        ([SignerInput("first@example.com", 1), SignerInput("second@example.com", 1)], "duplicate_priority"),
        ([SignerInput("first@example.com", 1), SignerInput("first@example.com", 2)], "duplicate_signer"),
        ([SignerInput("first@example.com", 0)], "invalid_priority"),
        ([SignerInput("first@example.com", 1)], "unknown_signer"),
    ],
)
def test_initialize_validation_writes_nothing(db, controller, document_factory, notifier, inputs, code):
    document = document_factory(["first@example.com", "second@example.com"])
    with pytest.raises(ValidationFailed) as exc:
        controller.initialize(document, SENDER, inputs)
    assert exc.value.code == code

    db.rollback()
    db.refresh(document)
    assert document.status == "draft"
    assert db.query(models.Signer).filter(models.Signer.document_id == document.id).count() == 0
    assert AuditLedger(db).events(document.id) == []
    assert notifier.calls == []


def test_initialize_twice_conflicts(controller, sent_document):
    document, _ = sent_document
    with pytest.raises(ConflictError):
        controller.initialize(document, SENDER, [SignerInput(email, i) for i, email in enumerate(EMAILS, 1)])


def test_self_sign_document_cannot_be_sent(controller, document_factory):
    document = document_factory([SENDER], kind=models.DocumentKind.SELF_SIGN.value)
    with pytest.raises(ValidationFailed) as exc:
        controller.initialize(document, SENDER, [SignerInput(SENDER, 1)])
    assert exc.value.code == "invalid_kind"


# --- turns ---


def test_full_chain_in_priority_order(db, controller, storage, notifier, sent_document):
    document, signers = sent_document

    outcome = sign(controller, db, signers[0], COLORS[0])
    assert not outcome.final
    assert outcome.next_signer.id == signers[1].id
    assert statuses(db, document.id) == ["signed", "awaiting_turn", "pending"]
    assert db.get(models.Document, document.id).status == "in_progress"

    turn = notifier.of_kind("your_turn", EMAILS[1])[0]
    assert turn["previous_signer_email"] == EMAILS[0]
    assert turn["position"] == 2
    assert [p["to"] for p in notifier.of_kind("progress_update")] == [EMAILS[2]]

    assert not sign(controller, db, signers[1], COLORS[1]).final
    assert sign(controller, db, signers[2], COLORS[2]).final

    db.expire_all()
    assert statuses(db, document.id) == ["signed", "signed", "signed"]
    document = db.get(models.Document, document.id)
    assert document.status == "completed"
    assert stored_images(storage, document) == 3

    signed = [s.signed_at for s in document.signers]
    assert signed == sorted(signed)


def test_only_the_turn_holder_may_sign(db, controller, sent_document):
    _, signers = sent_document
    for waiting in signers[1:]:
        waiting = reload(db, waiting)
        with pytest.raises(TurnError) as exc:
            controller.advance_on_sign(waiting, batch_for(db, waiting))
        assert exc.value.code == "not_your_turn"
        assert exc.value.status_code == 403
    assert statuses(db, signers[0].document_id) == ["awaiting_turn", "pending", "pending"]


def test_second_submit_is_rejected_and_burns_nothing(db, controller, storage, sent_document):
    document, signers = sent_document
    sign(controller, db, signers[0])
    with pytest.raises(TurnError) as exc:
        sign(controller, db, signers[0])
    assert exc.value.code == "already_signed"
    assert exc.value.status_code == 409
    assert stored_images(storage, db.get(models.Document, document.id)) == 1
    assert db.query(models.Signature).count() == 1


def test_batch_must_cover_every_assigned_field(db, controller, document_factory):
    document = document_factory(["solo@example.com"], fields_per_signer=2)
    (signer,) = controller.initialize(document, SENDER, [SignerInput("solo@example.com", 1)])
    batch = batch_for(db, signer)
    assert len(batch) == 2

    with pytest.raises(ValidationFailed) as exc:
        controller.advance_on_sign(signer, batch[:1])
    assert exc.value.code == "incomplete_batch"

    with pytest.raises(ValidationFailed) as exc:
        controller.advance_on_sign(signer, [batch[0], batch[0]])
    assert exc.value.code == "duplicate_placeholder"
    assert reload(db, signer).status == "awaiting_turn"

    assert controller.advance_on_sign(signer, batch).final


def test_foreign_placeholder_is_rejected(db, controller, sent_document):
    _, signers = sent_document
    foreign = batch_for(db, signers[1])
    own = batch_for(db, signers[0])
    with pytest.raises(ValidationFailed) as exc:
        controller.advance_on_sign(reload(db, signers[0]), own + foreign)
    assert exc.value.code == "placeholder_not_assigned"
    assert exc.value.status_code == 403
    assert db.query(models.Signature).count() == 0


def test_signer_without_fields_signs_an_empty_batch(db, controller, document_factory):
    document = document_factory(["first@example.com"])
    signers = controller.initialize(document, SENDER, [
        SignerInput("first@example.com", 1), SignerInput("witness@example.com", 2),
    ])
    sign(controller, db, signers[0])
    witness = reload(db, signers[1])
    assert controller.advance_on_sign(witness, []).final
    assert AuditLedger(db).events(document.id).count("pdf_burned") == 1


def test_failed_burn_leaves_the_chain_untouched(db, controller, storage, sent_document):
    document, signers = sent_document
    storage.upload(b"corrupted", document.file_path)

    with pytest.raises(StorageError):
        sign(controller, db, signers[0])

    assert statuses(db, document.id) == ["awaiting_turn", "pending", "pending"]
    assert db.get(models.Document, document.id).status == "sent"
    assert db.query(models.Signature).count() == 0
    assert "signature_submitted" not in AuditLedger(db).events(document.id)


# --- decline ---


def test_decline_cancels_for_good(db, controller, notifier, sent_document):
    document, signers = sent_document
    sign(controller, db, signers[0])
    controller.decline(reload(db, signers[1]), reason="Terms changed")

    assert statuses(db, document.id) == ["signed", "declined", "pending"]
    assert db.get(models.Document, document.id).status == "cancelled"
    notice = notifier.of_kind("declined", SENDER)[0]
    assert notice["signer_email"] == EMAILS[1]

    with pytest.raises(TurnError) as exc:
        sign(controller, db, signers[2])
    assert exc.value.code == "not_your_turn"

    with pytest.raises(TurnError) as exc:
        controller.decline(reload(db, signers[1]))
    assert exc.value.code == "declined"

    entry = [e for e in AuditLedger(db).trail(document.id) if e.event_type == "signer_declined"][0]
    assert entry.event_metadata == {"reason": "Terms changed"}


# --- notifications ---


def test_failed_notification_does_not_stall_the_chain(db, controller, notifier, sent_document):
    document, signers = sent_document
    notifier.failing.add(EMAILS[1])

    sign(controller, db, signers[0])

    assert statuses(db, document.id) == ["signed", "awaiting_turn", "pending"]
    failures = [
        e for e in AuditLedger(db).trail(document.id)
        if e.event_type == "email_failed"
    ]
    assert [f.event_metadata["kind"] for f in failures] == ["your_turn"]
    assert AuditLedger(db).verify_chain(document.id)["valid"]


def test_completion_goes_to_sender_and_every_signer(db, controller, notifier, sent_document):
    _, signers = sent_document
    for signer, color in zip(signers, COLORS):
        sign(controller, db, signer, color)

    completions = notifier.of_kind("completion")
    assert [c["to"] for c in completions] == [SENDER] + EMAILS
    assert completions[0]["download_url"].startswith("http://testserver/files/")
    assert [s["email"] for s in completions[0]["signers"]] == EMAILS


def test_audit_trail_of_a_completed_chain(db, controller, sent_document):
    document, signers = sent_document
    for signer, color in zip(signers, COLORS):
        sign(controller, db, signer, color)

    events = [e for e in AuditLedger(db).events(document.id) if not e.startswith("email_")]
    assert events == [
        "document_sent",
        "signature_submitted", "pdf_burned", "next_signer_notified",
        "signature_submitted", "pdf_burned", "next_signer_notified",
        "signature_submitted", "pdf_burned", "document_completed",
    ]
    assert AuditLedger(db).verify_chain(document.id)["valid"]


# --- self-sign ---


def test_self_sign(db, controller, storage, document_factory):
    document = document_factory([SENDER], kind=models.DocumentKind.SELF_SIGN.value)
    placeholder = db.query(models.Placeholder).filter(models.Placeholder.document_id == document.id).one()

    signer = controller.self_sign(document, SENDER, [(placeholder.id, make_png())])

    assert signer.status == "signed"
    db.expire_all()
    document = db.get(models.Document, document.id)
    assert document.status == "completed"
    assert stored_images(storage, document) == 1

    with pytest.raises(ConflictError):
        controller.self_sign(document, SENDER, [(placeholder.id, make_png())])


def test_self_sign_requires_own_fields(controller, document_factory):
    document = document_factory(["other@example.com"], kind=models.DocumentKind.SELF_SIGN.value)
    with pytest.raises(ValidationFailed) as exc:
        controller.self_sign(document, SENDER, [])
    assert exc.value.code == "no_placeholders"


# --- racing requests ---


@pytest.fixture
def other_request(session_factory, storage, notifier, tokens, settings):
    """A second, independent unit of work against the same database."""
    session = session_factory()
    try:
        yield session, SignerChainController(session, storage, notifier, tokens, settings)
    finally:
        session.close()


def test_stale_sign_loses_to_the_first(db, controller, storage, sent_document, other_request):
    document, signers = sent_document
    session, racer = other_request
    stale = session.get(models.Signer, signers[0].id)
    assert stale.status == "awaiting_turn"
    assert stale.document.status == "sent"
    stale_batch = batch_for(session, stale, make_png(color=COLORS[1]))

    sign(controller, db, signers[0], COLORS[0])

    with pytest.raises(TurnError) as exc:
        racer.advance_on_sign(stale, stale_batch)
    assert exc.value.code == "already_signed"

    db.expire_all()
    assert stored_images(storage, db.get(models.Document, document.id)) == 1
    assert db.query(models.Signature).count() == 1
    assert statuses(db, document.id) == ["signed", "awaiting_turn", "pending"]


def test_stale_decline_loses_to_a_signature(db, controller, sent_document, other_request):
    document, signers = sent_document
    session, racer = other_request
    stale = session.get(models.Signer, signers[0].id)

    sign(controller, db, signers[0])

    with pytest.raises(TurnError) as exc:
        racer.decline(stale, reason="too late")
    assert exc.value.code == "already_signed"

    db.expire_all()
    assert db.get(models.Document, document.id).status == "in_progress"
    assert statuses(db, document.id) == ["signed", "awaiting_turn", "pending"]
    assert "signer_declined" not in AuditLedger(db).events(document.id)


def test_stale_sign_loses_to_a_decline(db, controller, storage, sent_document, other_request):
    document, signers = sent_document
    session, racer = other_request
    stale = session.get(models.Signer, signers[0].id)
    stale_batch = batch_for(session, stale)
    assert stale.document.status == "sent"

    controller.decline(reload(db, signers[0]))

    with pytest.raises(TurnError) as exc:
        racer.advance_on_sign(stale, stale_batch)
    assert exc.value.code == "declined"

    db.expire_all()
    assert db.get(models.Document, document.id).status == "cancelled"
    assert db.query(models.Signature).count() == 0
    assert stored_images(storage, db.get(models.Document, document.id)) == 0
