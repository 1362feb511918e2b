"""Tests für den Edit-Feedback Analyzer"""

from tone_drafter.edit_feedback import EditAnalysis, analyze
from tone_drafter.style_analyzer import NameExtractor


def test_greeting_name_and_length_increase():
    analysis = analyze("Hi, thanks!", "Hi Sam, thank you so much!")

    assert analysis.length_change == "increase"
    assert analysis.length_increased
    assert analysis.length_ratio == 3.0
    assert analysis.greeting_name_added == "Sam"
    assert analysis.greeting_changed
    assert analysis.additions == ["sam", "thank", "you", "so", "much"]
    assert analysis.deletions == ["thanks"]
    assert not analysis.unchanged


def test_unchanged_draft():
    text = "Hallo Bob,\n\npasst, bis Freitag.\n\nViele Grüße"
    analysis = analyze(text, text)

    assert analysis.unchanged
    assert analysis.similarity == 1.0
    assert analysis.length_change == "unchanged"
    assert analysis.additions == []
    assert analysis.deletions == []
    assert analysis.formality_shift == 0.0
    assert analysis.greeting_name_added is None


def test_shortened_and_more_formal():
    draft = "hey Bob!! yeah, gonna send it later, can't do it now, sorry!!"
    sent = "Dear Bob,\n\nI will send the report later.\n\nKind regards"
    analysis = analyze(draft, sent)

    assert analysis.formality_shift > 0
    assert analysis.closing_after == "kind regards"
    assert analysis.closing_changed
    # Name stand schon im Entwurf
    assert analysis.greeting_name_added is None


def test_empty_draft_does_not_divide_by_zero():
    analysis = analyze("", "Hallo")
    assert analysis.length_ratio == 1.0
    assert analysis.sent_word_count == 1


def test_custom_name_extractor():
    class FixedName(NameExtractor):
        def greeting_name(self, text):
            return "Sam" if "Sam" in text else None

    analysis = analyze("Hallo,", "Moin Sam", name_extractor=FixedName())
    assert analysis.greeting_name_added == "Sam"


def test_dict_roundtrip_ignores_unknown_keys():
    analysis = analyze("Hi, thanks!", "Hi Sam, thank you so much!")
    data = analysis.to_dict()
    data["legacy_field"] = 1

    restored = EditAnalysis.from_dict(data)
    assert restored == analysis
