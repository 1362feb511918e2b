"""
Tone Drafter - Prompt-Aufbau für Antwort-Entwürfe

Template pro Beziehungstyp + Zusammenfassung des Tone-Profils +
abgerufener Kontext + Original-Mail. Das Ergebnis ist ein
provider-unabhängiger Prompt.
"""

from typing import Dict, List, Optional

from tone_drafter.ai_client import Prompt
from tone_drafter.context_retriever import RetrievedContext
from tone_drafter.tone_profiles import ProfileSnapshot

MAX_ORIGINAL_CHARS = 4000
MAX_CONTEXT_CHARS = 2500

RELATIONSHIP_PROMPTS: Dict[str, Dict[str, str]] = {
    "colleague": {
        "name": "Kollege/Kollegin",
        "instructions": """
Die Mail kommt von einem Kollegen oder einer Kollegin:
- Sachlich und kollegial, ohne steife Floskeln
- Direkt auf Fragen und nächste Schritte eingehen
""",
    },
    "client": {
        "name": "Kunde",
        "instructions": """
Die Mail kommt von einem Kunden:
- Höflich, verbindlich und lösungsorientiert
- Keine internen Details, keine Zusagen ohne Grundlage
""",
    },
    "family": {
        "name": "Familie",
        "instructions": """
Die Mail kommt aus der Familie:
- Warm, persönlich und locker
- Kurze Sätze, keine geschäftlichen Floskeln
""",
    },
    "friend": {
        "name": "Freund/Freundin",
        "instructions": """
Die Mail kommt von einem Freund oder einer Freundin:
- Locker und persönlich
- Humor und Emojis nur, wenn der User sie auch verwendet
""",
    },
    "external": {
        "name": "Extern",
        "instructions": """
Die Beziehung zum Absender ist unbekannt:
- Neutral-höflicher Ton
- Weder zu förmlich noch zu vertraut
""",
    },
}

REPLY_SYSTEM_PROMPT = """
Du bist ein E-Mail-Assistent, der Antwort-Entwürfe IM STIL DES USERS schreibt.

WICHTIGE REGELN:
1. Schreibe NUR den E-Mail-Text (Body), KEINE Betreffzeile
2. Verwende die GLEICHE SPRACHE wie die Original-E-Mail
3. Beziehe dich auf den Inhalt der Original-E-Mail
4. Halte dich an das STIL-PROFIL des Users (Anrede, Grußformel, Länge, Formalität)
5. Frühere Nachrichten dienen nur als Stil- und Faktenkontext, nicht als Vorlage zum Kopieren
6. Erfinde KEINE Fakten, Termine oder Zusagen
7. Formatiere den Text mit Absätzen für bessere Lesbarkeit

Gib NUR den E-Mail-Text zurück, keine Metadaten, keine Erklärungen!
""".strip()

GENERIC_PROFILE_TEXT = (
    "Für diesen Beziehungstyp liegt noch kein Stil-Profil vor. "
    "Schreibe natürlich, freundlich und eher knapp."
)


def _formality_label(score: float) -> str:
    if score >= 0.75:
        return "sehr formell"
    if score >= 0.6:
        return "eher formell"
    if score >= 0.4:
        return "neutral"
    if score >= 0.25:
        return "eher locker"
    return "sehr locker"


def summarize_profile(profile: ProfileSnapshot) -> str:
    """Kurze Text-Zusammenfassung des Profils für den Prompt"""
    if profile.is_empty:
        return GENERIC_PROFILE_TEXT

    data = profile.data
    formality = float(data.get("formality", 0.5))
    lines = [
        f"Basierend auf {profile.emails_analyzed} gesendeten Mails:",
        f"- Formalität: {_formality_label(formality)} ({formality:.2f})",
        f"- Typische Länge: ca. {round(float(data.get('avg_word_count', 0)))} Wörter, "
        f"{float(data.get('avg_sentence_length', 0)):.0f} Wörter pro Satz",
    ]

    greeting = profile.top_phrase("greetings")
    if greeting:
        lines.append(f"- Typische Anrede: \"{greeting}\" ({{name}} = Vorname des Empfängers)")
    closing = profile.top_phrase("closings")
    if closing:
        lines.append(f"- Typische Grußformel: \"{closing}\"")
    if float(data.get("contraction_rate", 0)) >= 0.5:
        lines.append("- Verwendet häufig Kurzformen (z.B. I'm, don't)")
    if float(data.get("emoji_rate", 0)) >= 0.3:
        lines.append("- Verwendet gelegentlich Emojis")
    elif float(data.get("emoji_rate", 0)) == 0:
        lines.append("- Verwendet keine Emojis")
    if float(data.get("exclamation_rate", 0)) >= 0.5:
        lines.append("- Verwendet gerne Ausrufezeichen")

    feedback = data.get("edit_feedback") or {}
    if feedback.get("drafts_reviewed"):
        ratio = float(feedback.get("avg_length_ratio", 1.0))
        if ratio > 1.15:
            lines.append("- Frühere Entwürfe waren dem User zu kurz: etwas ausführlicher schreiben")
        elif ratio < 0.85:
            lines.append("- Frühere Entwürfe waren dem User zu lang: knapper schreiben")
        shift = float(feedback.get("avg_formality_shift", 0.0))
        if shift > 0.1:
            lines.append("- Der User macht Entwürfe meist formeller")
        elif shift < -0.1:
            lines.append("- Der User macht Entwürfe meist lockerer")
        if float(feedback.get("greeting_name_added_rate", 0.0)) >= 0.5:
            lines.append("- Den Empfänger in der Anrede mit Namen ansprechen")
    return "\n".join(lines)


def _format_context(context: List[RetrievedContext]) -> str:
    parts = []
    used = 0
    for index, item in enumerate(context, start=1):
        entry = f"[{index}] (Ähnlichkeit {item.score:.2f}) {item.snippet}"
        if used + len(entry) > MAX_CONTEXT_CHARS:
            break
        parts.append(entry)
        used += len(entry)
    return "\n".join(parts)


def build_prompt(
    original_sender: str,
    original_subject: Optional[str],
    original_body: str,
    relationship_type: str,
    profile: ProfileSnapshot,
    context: List[RetrievedContext],
    sender_name: Optional[str] = None,
    max_tokens: int = 800,
) -> Prompt:
    """Rendert den Prompt für den Antwort-Entwurf"""
    template = RELATIONSHIP_PROMPTS.get(relationship_type, RELATIONSHIP_PROMPTS["external"])
    sender = f"{sender_name} <{original_sender}>" if sender_name else original_sender

    user_prompt = f"""
{template["instructions"].strip()}

STIL-PROFIL DES USERS ({template["name"]}):
{summarize_profile(profile)}
"""
    if context:
        user_prompt += f"""
FRÜHERE NACHRICHTEN (relevanter Kontext):
{_format_context(context)}
"""
    user_prompt += f"""
ORIGINAL E-MAIL:
Von: {sender or "Unbekannt"}
Betreff: {original_subject or "(Kein Betreff)"}

{(original_body or "")[:MAX_ORIGINAL_CHARS]}

AUFGABE:
Schreibe JETZT die Antwort-E-Mail (nur Body-Text, keine Betreffzeile!) im Stil des Users.
"""
    return Prompt(system=REPLY_SYSTEM_PROMPT, user=user_prompt.strip(), max_tokens=max_tokens)


def cleanup_reply_text(text: str) -> str:
    """Entfernt Betreff-/Header-Zeilen und umschließende Anführungszeichen"""
    if not text:
        return ""

    cleaned_lines = []
    for line in text.split("\n"):
        line_lower = line.lower().strip()
        if line_lower.startswith(("subject:", "betreff:")):
            continue
        if line_lower.startswith(("von:", "from:", "to:", "an:")):
            continue
        cleaned_lines.append(line)

    cleaned = "\n".join(cleaned_lines).strip()
    if len(cleaned) > 1 and cleaned.startswith('"') and cleaned.endswith('"'):
        cleaned = cleaned[1:-1].strip()
    return cleaned
