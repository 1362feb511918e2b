"""
End-to-End Tests der Pipeline: Ingest -> Job-Queue -> Entwurf -> Sent-Event -> Profil

Alle Jobs laufen über den In-Memory-Broker in eigenen Sessions, wie es
die Celery-Worker tun. Nach jedem Lauf wird die Test-Session expired.
"""

import logging

from tone_drafter.exceptions import ProviderError, ProviderErrorKind
from tone_drafter.models import DraftTracking, JobRecord, JobStatus, QueueName, SentMessage, ToneProfile
from tone_drafter.services.message_ingest import HistoricalMessage

EMAIL = QueueName.EMAIL_PROCESSING.value
PROFILE = QueueName.TONE_PROFILE.value

HISTORY = [
    HistoricalMessage("<h1@acme.com>", "bob@acme.com", "Hi Bob,\n\nanbei die Zahlen für Q2.\n\nCheers\nAlice"),
    HistoricalMessage("<h2@acme.com>", "carol@acme.com", "Hi Carol,\n\ndas Meeting passt mir.\n\nCheers\nAlice"),
    HistoricalMessage("<h3@acme.com>", "dave@acme.com", "Hi Dave,\n\nkurzer Stand: alles erledigt.\n\nCheers\nAlice"),
]


def _receive(runtime, session, user, account, message_id="<m1@acme.com>"):
    return runtime.ingest.receive_inbound(
        session,
        user.id,
        account.id,
        message_id=message_id,
        sender_address="bob@acme.com",
        sender_name="Bob",
        subject="Budget",
        body="Hi Alice, kannst du mir das Budget für Q3 schicken?",
    )


def test_first_draft_without_history(session, user, account, runtime, run_jobs, llm_client):
    job = _receive(runtime, session, user, account)

    processed = run_jobs()
    session.expire_all()

    assert processed == [(job.id, JobStatus.COMPLETED.value)]
    draft = session.query(DraftTracking).one()
    assert draft.context_data["profile"]["emails_analyzed"] == 0
    assert draft.relationship_type == "colleague"
    assert "noch kein Stil-Profil" in llm_client.prompts[0].user
    assert session.query(ToneProfile).count() == 0


def test_imported_history_shapes_the_draft(session, user, account, runtime, run_jobs, llm_client):
    imported = runtime.ingest.import_history(session, user.id, account.id, HISTORY)
    assert imported == {"colleague": 3}

    run_jobs(PROFILE)
    session.expire_all()
    profile = session.query(ToneProfile).filter_by(user_id=user.id, relationship_type="colleague").one()
    assert profile.emails_analyzed == 3
    assert all(m.analyzed_at is not None for m in session.query(SentMessage))

    _receive(runtime, session, user, account)
    run_jobs(EMAIL)
    session.expire_all()

    draft = session.query(DraftTracking).one()
    signals = draft.context_data["profile"]
    assert signals["emails_analyzed"] == 3
    assert signals["top_greeting"] == "hi {name}"
    assert signals["top_closing"] == "cheers"
    retrieved = {c["message_id"] for c in draft.context_data["retrieved"]}
    assert retrieved and retrieved <= {"<h1@acme.com>", "<h2@acme.com>", "<h3@acme.com>"}
    assert "Basierend auf 3 gesendeten Mails" in llm_client.prompts[-1].user


def test_history_import_is_deduplicated(session, user, account, runtime, broker):
    runtime.ingest.import_history(session, user.id, account.id, HISTORY)
    again = runtime.ingest.import_history(session, user.id, account.id, HISTORY)

    assert again == {}
    assert session.query(SentMessage).count() == 3
    assert len(broker.messages) == 1


def test_user_edit_feeds_back_into_profile(session, user, account, runtime, run_jobs, llm_client, caplog):
    llm_client.reply = "Hi, thanks!"
    _receive(runtime, session, user, account)
    run_jobs(EMAIL)

    runtime.ingest.record_sent(
        session, user.id, account.id,
        message_id="<s1@acme.com>",
        recipient_address="bob@acme.com",
        body="Hi Sam, thank you so much!",
        in_reply_to="<m1@acme.com>",
    )
    session.expire_all()

    draft = session.query(DraftTracking).one()
    first_sent_at = draft.sent_at
    assert first_sent_at is not None
    assert draft.user_sent_content == "Hi Sam, thank you so much!"
    assert draft.edit_analysis["length_change"] == "increase"
    assert draft.edit_analysis["greeting_name_added"] == "Sam"
    assert session.query(SentMessage).filter_by(message_id="<s1@acme.com>").one().draft_tracking_id == draft.id

    with caplog.at_level(logging.WARNING, logger="tone_drafter.services.message_ingest"):
        runtime.ingest.record_sent(
            session, user.id, account.id,
            message_id="<s2@acme.com>",
            recipient_address="bob@acme.com",
            body="Hi Sam, noch ein Nachtrag.",
            in_reply_to="<m1@acme.com>",
        )
    session.expire_all()
    assert session.query(DraftTracking).one().sent_at == first_sent_at
    assert any("verworfen" in r.getMessage() for r in caplog.records)

    run_jobs(PROFILE)
    session.expire_all()
    profile = session.query(ToneProfile).filter_by(user_id=user.id, relationship_type="colleague").one()
    assert profile.profile_data["edit_feedback"]["drafts_reviewed"] == 1
    assert profile.profile_data["edit_feedback"]["greeting_name_added_rate"] == 1.0
    assert profile.emails_analyzed == 2


def test_duplicate_delivery_creates_one_job_and_one_draft(session, user, account, runtime, run_jobs, llm_client):
    first = _receive(runtime, session, user, account)
    second = _receive(runtime, session, user, account)

    assert first.id == second.id
    run_jobs()
    session.expire_all()

    assert session.query(JobRecord).filter_by(queue=EMAIL).count() == 1
    assert session.query(DraftTracking).count() == 1
    assert len(llm_client.prompts) == 1


def test_rate_limit_is_retried_until_success(session, user, account, runtime, run_jobs, llm_client):
    llm_client.errors.append(ProviderError(ProviderErrorKind.RATE_LIMITED, "429", "ollama"))
    job = _receive(runtime, session, user, account)

    processed = run_jobs()
    session.expire_all()

    assert processed == [
        (job.id, JobStatus.FAILED_RETRYABLE.value),
        (job.id, JobStatus.COMPLETED.value),
    ]
    stored = session.get(JobRecord, job.id)
    assert stored.attempts == 2
    assert session.query(DraftTracking).count() == 1


def test_auth_failure_is_terminal_without_draft(session, user, account, runtime, run_jobs, llm_client):
    llm_client.errors.append(ProviderError(ProviderErrorKind.AUTH_FAILED, "401", "ollama"))
    job = _receive(runtime, session, user, account)

    processed = run_jobs()
    session.expire_all()

    assert processed == [(job.id, JobStatus.FAILED_TERMINAL.value)]
    assert session.query(DraftTracking).count() == 0


def test_deactivating_account_cancels_waiting_jobs(session, user, account, runtime, run_jobs, llm_client):
    job = _receive(runtime, session, user, account)

    assert runtime.accounts.deactivate(session, user.id, account.id) == 1
    processed = run_jobs()
    session.expire_all()

    assert processed == [(job.id, JobStatus.CANCELLED.value)]
    assert llm_client.prompts == []
    assert session.query(DraftTracking).count() == 0


def test_unedited_draft_sent_with_quote_counts_as_unchanged(session, user, account, runtime, run_jobs, llm_client):
    _receive(runtime, session, user, account)
    run_jobs(EMAIL)
    session.expire_all()
    draft_text = session.query(DraftTracking).one().generated_content

    runtime.ingest.record_sent(
        session, user.id, account.id,
        message_id="<s1@acme.com>",
        recipient_address="bob@acme.com",
        body=draft_text + "\n\nOn Mon, Jun 3, 2024 at 10:00 AM Bob <bob@acme.com> wrote:\n"
        "> Hi Alice, kannst du mir das Budget für Q3 schicken?\n",
        in_reply_to="<m1@acme.com>",
    )
    session.expire_all()

    draft = session.query(DraftTracking).one()
    assert draft.user_sent_content == draft_text
    assert draft.edit_analysis["unchanged"] is True
    assert draft.edit_analysis["closing_changed"] is False
