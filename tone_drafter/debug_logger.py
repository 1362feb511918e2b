"""
Debug Logging für die Draft-Generierung
=======================================

Schreibt vollständige Prompts und rohe LLM-Antworten in separate
Log-Files, um den Datenfluss zu verfolgen.

⚠️ ACHTUNG: NUR FÜR ENTWICKLUNG/DEBUGGING!
   Die Logs enthalten Mail-Inhalte. Aktivierung über DRAFT_DEBUG_LOG=true.

Usage:
    from tone_drafter.debug_logger import DebugLogger

    DebugLogger.log_prompt(prompt, provider="ollama", model="llama3.2", session_id=job_id)
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from tone_drafter import config

logger = logging.getLogger(__name__)


class DebugLogger:
    """Opt-in Debug-Logging für Prompt und LLM-Output"""

    LOG_DIR = Path("logs/debug_drafts")

    AI_INPUT = "ai_input.log"
    AI_OUTPUT = "ai_output.log"

    @classmethod
    def is_enabled(cls) -> bool:
        return config.debug_logging_enabled()

    @classmethod
    def _write_log(cls, filename: str, content: str, session_id: Optional[str] = None):
        if not cls.is_enabled():
            return

        try:
            cls.LOG_DIR.mkdir(parents=True, exist_ok=True)
            log_path = cls.LOG_DIR / filename

            timestamp = datetime.now().isoformat()
            session_marker = f" [Session: {session_id}]" if session_id else ""
            separator = "=" * 80

            with open(log_path, "a", encoding="utf-8") as f:
                f.write(f"\n{separator}\n")
                f.write(f"[{timestamp}]{session_marker}\n")
                f.write(f"{separator}\n")
                f.write(content)
                f.write(f"\n{separator}\n\n")

            logger.debug(f"🔍 Debug-Log geschrieben: {log_path}")

        except OSError as e:
            logger.error(f"❌ Debug-Logging fehlgeschlagen: {e}")

    @classmethod
    def log_prompt(cls, prompt, provider: str, model: str, session_id: Optional[str] = None):
        """Loggt den vollständigen Prompt, der an den Provider geht"""
        if not cls.is_enabled():
            return

        content = f"""AI INPUT
═══════════════════════════════════════════════════════

PROVIDER: {provider}
MODEL: {model}
MAX TOKENS: {prompt.max_tokens}

SYSTEM PROMPT:
{prompt.system}

USER PROMPT:
{prompt.user}
"""
        cls._write_log(cls.AI_INPUT, content, session_id)

    @classmethod
    def log_output(cls, raw_text: str, cleaned_text: str, session_id: Optional[str] = None):
        """Loggt rohe und bereinigte LLM-Antwort"""
        if not cls.is_enabled():
            return

        content = f"""AI OUTPUT
═══════════════════════════════════════════════════════

RAW ({len(raw_text or '')} Zeichen):
{raw_text}

CLEANED ({len(cleaned_text or '')} Zeichen):
{cleaned_text}
"""
        cls._write_log(cls.AI_OUTPUT, content, session_id)
