"""Tests für Tone Profile Store, Blending und Batch-Builder"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from tone_drafter.edit_feedback import analyze
from tone_drafter.exceptions import LockUnavailable
from tone_drafter.helpers.locks import LocalLockProvider, tone_profile_lock_name
from tone_drafter.models import SentMessage, ToneProfile, User
from tone_drafter.tone_profiles import (
    ProfileSnapshot,
    StyleObservations,
    ToneProfileBuilder,
    ToneProfileStore,
    blend_profile_data,
    empty_profile_data,
)

BATCH_ONE = [
    "Hi Bob,\n\nkurz und knapp: passt!\n\nCheers\nAlice",
    "Hi Carol,\n\ndanke, erledigt.\n\nCheers\nAlice",
]
BATCH_TWO = [
    "Dear Mr. Smith,\n\nplease find attached the report regarding the budget.\n\nKind regards,\nAlice",
]


@pytest.fixture
def store():
    return ToneProfileStore(LocalLockProvider(blocking_timeout=1))


class TestBlending:
    def test_weighted_running_average(self):
        current = dict(empty_profile_data(), formality=0.2, avg_word_count=10.0)
        batch = dict(empty_profile_data(), formality=0.8, avg_word_count=40.0)

        blended = blend_profile_data(current, 3, batch, 1)

        assert blended["formality"] == pytest.approx((0.2 * 3 + 0.8) / 4)
        assert blended["avg_word_count"] == pytest.approx(17.5)

    def test_phrase_counts_are_summed(self):
        current = dict(empty_profile_data(), greetings={"hi {name}": 2})
        batch = dict(empty_profile_data(), greetings={"hi {name}": 1, "dear {name}": 1})

        blended = blend_profile_data(current, 2, batch, 2)

        assert blended["greetings"] == {"hi {name}": 3, "dear {name}": 1}

    def test_empty_batch_keeps_numeric_values(self):
        current = dict(empty_profile_data(), formality=0.3)
        assert blend_profile_data(current, 5, empty_profile_data(), 0)["formality"] == 0.3

    def test_observations_normalize_greeting_names(self):
        observations = StyleObservations.from_texts(BATCH_ONE)
        data = observations.to_profile_data()

        assert observations.count == 2
        assert data["greetings"] == {"hi {name}": 2}
        assert data["closings"] == {"cheers": 2}

    def test_edit_feedback_is_blended_by_drafts_reviewed(self):
        analyses = [analyze("Hi, thanks!", "Hi Sam, thank you so much!")]
        batch = StyleObservations(edit_analyses=analyses).to_profile_data()

        blended = blend_profile_data(empty_profile_data(), 0, batch, 0)

        assert blended["edit_feedback"]["drafts_reviewed"] == 1
        assert blended["edit_feedback"]["greeting_name_added_rate"] == 1.0
        assert blended["edit_feedback"]["avg_length_ratio"] == 3.0


class TestToneProfileStore:
    def test_get_returns_empty_profile(self, session, store, user):
        profile = store.get(session, user.id, "colleague")

        assert profile.is_empty
        assert profile.emails_analyzed == 0
        assert profile.data["formality"] == 0.5
        assert session.query(ToneProfile).count() == 0

    def test_merge_creates_and_increments(self, session, store, user):
        first = store.merge(session, user.id, "colleague", StyleObservations.from_texts(BATCH_ONE))
        second = store.merge(session, user.id, "colleague", StyleObservations.from_texts(BATCH_TWO))

        assert first.emails_analyzed == 2
        assert second.emails_analyzed == 3
        assert second.data["formality"] > first.data["formality"]
        assert session.query(ToneProfile).filter_by(user_id=user.id).count() == 1

    def test_merge_order_does_not_change_count(self, session, store, user):
        other = User(email="bob@acme.com")
        session.add(other)
        session.commit()

        store.merge(session, user.id, "friend", StyleObservations.from_texts(BATCH_ONE))
        store.merge(session, user.id, "friend", StyleObservations.from_texts(BATCH_TWO))
        store.merge(session, other.id, "friend", StyleObservations.from_texts(BATCH_TWO))
        store.merge(session, other.id, "friend", StyleObservations.from_texts(BATCH_ONE))

        ab = store.get(session, user.id, "friend")
        ba = store.get(session, other.id, "friend")
        assert ab.emails_analyzed == ba.emails_analyzed == 3
        assert ab.data["formality"] == pytest.approx(ba.data["formality"], abs=1e-3)

    def test_empty_observations_do_not_touch_profile(self, session, store, user):
        profile = store.merge(session, user.id, "family", StyleObservations())
        assert profile.is_empty
        assert session.query(ToneProfile).count() == 0

    def test_merge_waits_for_lock(self, session, user):
        provider = LocalLockProvider(blocking_timeout=0.05)
        store = ToneProfileStore(provider)

        with provider.hold(tone_profile_lock_name(user.id, "colleague")):
            with pytest.raises(LockUnavailable):
                store.merge(session, user.id, "colleague", StyleObservations.from_texts(BATCH_ONE))

    def test_signals(self):
        snapshot = ProfileSnapshot(
            user_id=1,
            relationship_type="colleague",
            data=dict(empty_profile_data(), greetings={"hi {name}": 3, "hallo {name}": 1}),
            emails_analyzed=4,
        )
        signals = snapshot.signals()

        assert signals["emails_analyzed"] == 4
        assert signals["top_greeting"] == "hi {name}"
        assert signals["top_closing"] is None


class TestToneProfileBuilder:
    def _sent(self, session, user, account, message_id, body, relationship_type="colleague"):
        row = SentMessage(
            user_id=user.id,
            email_account_id=account.id,
            message_id=message_id,
            recipient_address="bob@acme.com",
            relationship_type=relationship_type,
            body=body,
        )
        session.add(row)
        session.commit()
        return row

    def test_build_consumes_each_message_once(self, session, store, user, account):
        for index, body in enumerate(BATCH_ONE + BATCH_TWO):
            self._sent(session, user, account, f"<s{index}@acme.com>", body)
        self._sent(session, user, account, "<f@acme.com>", "Hey Mum!", relationship_type="family")
        builder = ToneProfileBuilder(store, window=50)

        result = builder.build(session, user.id, "colleague")
        again = builder.build(session, user.id, "colleague")

        assert result == {"analyzed": 3, "drafts_reviewed": 0, "emails_analyzed": 3}
        assert again == {"analyzed": 0, "drafts_reviewed": 0, "emails_analyzed": 3}
        pending = session.query(SentMessage).filter(SentMessage.analyzed_at.is_(None)).all()
        assert [m.message_id for m in pending] == ["<f@acme.com>"]

    def test_build_respects_window(self, session, store, user, account):
        for index, body in enumerate(BATCH_ONE + BATCH_TWO):
            self._sent(session, user, account, f"<s{index}@acme.com>", body)
        builder = ToneProfileBuilder(store, window=2)

        assert builder.build(session, user.id, "colleague")["analyzed"] == 2
        assert builder.build(session, user.id, "colleague")["emails_analyzed"] == 3

    @pytest.mark.parametrize(
        "error",
        [
            OperationalError("UPDATE tone_profiles", {}, Exception("database is locked")),
            IntegrityError("INSERT INTO tone_profiles", {}, Exception("duplicate key")),
        ],
    )
    def test_failed_merge_leaves_prior_profile_untouched(self, session, store, user, account, error):
        for index, body in enumerate(BATCH_ONE):
            self._sent(session, user, account, f"<s{index}@acme.com>", body)
        builder = ToneProfileBuilder(store, window=50)
        builder.build(session, user.id, "colleague")
        before = store.get(session, user.id, "colleague")
        self._sent(session, user, account, "<s9@acme.com>", BATCH_TWO[0])

        with patch.object(session, "commit", side_effect=error):
            with pytest.raises(type(error)):
                builder.build(session, user.id, "colleague")
        # wie der JobRunner nach einem Handler-Fehler
        session.rollback()
        session.expire_all()

        after = store.get(session, user.id, "colleague")
        assert after.emails_analyzed == before.emails_analyzed == 2
        assert after.data == before.data
        assert after.last_updated == before.last_updated
        late = session.query(SentMessage).filter_by(message_id="<s9@acme.com>").one()
        assert late.analyzed_at is None
