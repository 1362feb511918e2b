"""Tests für den Draft Orchestrator (Degradierung, Idempotenz, Atomizität)"""

import pytest

from tone_drafter.draft_orchestrator import DraftOrchestrator, new_draft_message_id
from tone_drafter.exceptions import ProviderError, ProviderErrorKind
from tone_drafter.models import DraftTracking, InboundMessage, ToneProfile
from tone_drafter.prompt_builder import GENERIC_PROFILE_TEXT
from tone_drafter.relationships import RelationshipClassifier


class BrokenClassifier(RelationshipClassifier):
    def classify(self, session, user_id, sender_address, account=None):
        raise RuntimeError("NER-Service nicht erreichbar")


def _inbound(session, user, account, message_id="<m1@acme.com>", sender="bob@acme.com",
             body="Hi Alice, kannst du mir das Budget für Q3 schicken?"):
    message = InboundMessage(
        user_id=user.id,
        email_account_id=account.id,
        message_id=message_id,
        sender_address=sender,
        sender_name="Bob",
        subject="Budget",
        body=body,
    )
    session.add(message)
    session.commit()
    return message


@pytest.fixture
def orchestrator(runtime):
    return runtime.orchestrator


def test_draft_without_profile_uses_generic_instructions(session, user, account, orchestrator, llm_client):
    message = _inbound(session, user, account)

    result = orchestrator.generate_draft(session, user.id, account, message)

    assert result.created
    assert result.relationship_type == "colleague"
    assert result.context["profile"]["emails_analyzed"] == 0
    assert result.context["relationship"] == {"type": "colleague", "confidence": 0.6, "method": "domain"}
    assert GENERIC_PROFILE_TEXT in llm_client.prompts[0].user
    assert session.query(ToneProfile).count() == 0

    row = session.query(DraftTracking).one()
    assert row.generated_content == llm_client.reply
    assert row.sent_at is None
    assert row.draft_message_id.startswith("<draft-")


def test_existing_draft_skips_llm_call(session, user, account, orchestrator, llm_client):
    message = _inbound(session, user, account)

    first = orchestrator.generate_draft(session, user.id, account, message)
    second = orchestrator.generate_draft(session, user.id, account, message)

    assert not second.created
    assert second.draft_id == first.draft_id
    assert len(llm_client.prompts) == 1
    assert session.query(DraftTracking).count() == 1


def test_retrieval_failure_degrades_to_empty_context(session, user, account, orchestrator, embedder):
    message = _inbound(session, user, account)
    embedder.fail = True

    result = orchestrator.generate_draft(session, user.id, account, message)

    assert result.created
    assert result.retrieval_degraded
    assert result.context["retrieved"] == []


def test_classifier_failure_degrades_to_external(session, user, account, runtime, static_resolver):
    orchestrator = DraftOrchestrator(
        runtime.retriever, runtime.profile_store, BrokenClassifier(), static_resolver
    )
    message = _inbound(session, user, account)

    result = orchestrator.generate_draft(session, user.id, account, message)

    assert result.relationship_type == "external"
    assert result.context["relationship"]["method"] == "fallback"


def test_retrieved_context_excludes_target_message(session, user, account, runtime, orchestrator, llm_client):
    runtime.retriever.index_message(user.id, "<old@acme.com>", "Budget Q2 anbei", relationship_type="colleague")
    message = _inbound(session, user, account)
    runtime.retriever.index_message(user.id, message.message_id, message.body, relationship_type="colleague")

    result = orchestrator.generate_draft(session, user.id, account, message)

    assert [c["message_id"] for c in result.context["retrieved"]] == ["<old@acme.com>"]
    assert "Budget Q2 anbei" in llm_client.prompts[0].user


def test_provider_error_leaves_no_partial_row(session, user, account, orchestrator, llm_client):
    message = _inbound(session, user, account)
    llm_client.errors.append(ProviderError(ProviderErrorKind.TIMEOUT, "slow", "ollama"))

    with pytest.raises(ProviderError):
        orchestrator.generate_draft(session, user.id, account, message)

    assert session.query(DraftTracking).count() == 0


def test_empty_reply_is_malformed(session, user, account, orchestrator, llm_client):
    message = _inbound(session, user, account)
    llm_client.reply = 'Betreff: Re: Budget\n""'

    with pytest.raises(ProviderError) as exc_info:
        orchestrator.generate_draft(session, user.id, account, message)

    assert exc_info.value.kind == ProviderErrorKind.MALFORMED_RESPONSE
    assert session.query(DraftTracking).count() == 0


def test_draft_message_ids_are_unique():
    assert new_draft_message_id() != new_draft_message_id()
