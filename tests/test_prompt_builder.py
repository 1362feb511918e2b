"""Tests für Prompt-Aufbau, Profil-Zusammenfassung und Debug-Logging"""

import pytest

from tone_drafter.ai_client import Prompt
from tone_drafter.context_retriever import RetrievedContext
from tone_drafter.debug_logger import DebugLogger
from tone_drafter.prompt_builder import (
    GENERIC_PROFILE_TEXT,
    REPLY_SYSTEM_PROMPT,
    build_prompt,
    cleanup_reply_text,
    summarize_profile,
)
from tone_drafter.tone_profiles import ProfileSnapshot, empty_profile_data


def _profile(emails_analyzed=12, **data):
    return ProfileSnapshot(
        user_id=1,
        relationship_type="colleague",
        data=dict(empty_profile_data(), **data),
        emails_analyzed=emails_analyzed,
    )


class TestSummarizeProfile:
    def test_empty_profile_is_generic(self):
        assert summarize_profile(ProfileSnapshot.empty(1, "friend")) == GENERIC_PROFILE_TEXT

    def test_signals_are_described(self):
        profile = _profile(
            formality=0.2,
            avg_word_count=42.0,
            greetings={"hi {name}": 9, "hey": 2},
            closings={"cheers": 7},
            contraction_rate=0.8,
        )

        summary = summarize_profile(profile)

        assert summary.startswith("Basierend auf 12 gesendeten Mails:")
        assert "sehr locker" in summary
        assert "ca. 42 Wörter" in summary
        assert '"hi {name}"' in summary
        assert '"cheers"' in summary
        assert "Kurzformen" in summary
        assert "keine Emojis" in summary

    def test_edit_feedback_hints(self):
        profile = _profile(
            edit_feedback={
                "drafts_reviewed": 4,
                "avg_length_ratio": 1.6,
                "avg_formality_shift": 0.3,
                "greeting_name_added_rate": 0.75,
            }
        )

        summary = summarize_profile(profile)

        assert "zu kurz" in summary
        assert "formeller" in summary
        assert "mit Namen" in summary


class TestBuildPrompt:
    def test_prompt_contains_template_profile_context_and_original(self):
        context = [RetrievedContext("<old@x>", 0.91, "Q2-Zahlen anbei")]

        prompt = build_prompt(
            original_sender="bob@acme.com",
            original_subject="Budget",
            original_body="Kannst du mir das Budget schicken?",
            relationship_type="colleague",
            profile=_profile(),
            context=context,
            sender_name="Bob",
        )

        assert isinstance(prompt, Prompt)
        assert prompt.system == REPLY_SYSTEM_PROMPT
        assert "Kollege/Kollegin" in prompt.user
        assert "[1] (Ähnlichkeit 0.91) Q2-Zahlen anbei" in prompt.user
        assert "Von: Bob <bob@acme.com>" in prompt.user
        assert "Kannst du mir das Budget schicken?" in prompt.user

    def test_unknown_relationship_uses_external_template(self):
        prompt = build_prompt("x@y.z", None, "Hallo", "nachbar", ProfileSnapshot.empty(1, "nachbar"), [])

        assert "Beziehung zum Absender ist unbekannt" in prompt.user
        assert "(Kein Betreff)" in prompt.user
        assert "FRÜHERE NACHRICHTEN" not in prompt.user
        assert GENERIC_PROFILE_TEXT in prompt.user


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Betreff: Re: Budget\n\nHallo Bob,\nanbei.", "Hallo Bob,\nanbei."),
        ('"Hi Bob, passt!"', "Hi Bob, passt!"),
        ("Subject: x\nFrom: me\nHi", "Hi"),
        ("", ""),
        (None, ""),
    ],
)
def test_cleanup_reply_text(raw, expected):
    assert cleanup_reply_text(raw) == expected


class TestDebugLogger:
    def test_disabled_by_default(self, tmp_path, monkeypatch):
        monkeypatch.setattr(DebugLogger, "LOG_DIR", tmp_path / "debug")

        DebugLogger.log_output("roh", "sauber", session_id="1")

        assert not (tmp_path / "debug").exists()

    def test_writes_prompt_and_output(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DRAFT_DEBUG_LOG", "true")
        monkeypatch.setattr(DebugLogger, "LOG_DIR", tmp_path / "debug")

        DebugLogger.log_prompt(Prompt(system="SYS", user="USER"), "ollama", "llama3.2", session_id="42")
        DebugLogger.log_output("Betreff: x\nHallo", "Hallo", session_id="42")

        ai_input = (tmp_path / "debug" / DebugLogger.AI_INPUT).read_text(encoding="utf-8")
        ai_output = (tmp_path / "debug" / DebugLogger.AI_OUTPUT).read_text(encoding="utf-8")
        assert "[Session: 42]" in ai_input
        assert "MODEL: llama3.2" in ai_input
        assert "USER" in ai_input
        assert "CLEANED (5 Zeichen)" in ai_output
