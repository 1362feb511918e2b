"""
Tone Drafter - Environment Validator
Prüft beim Worker-Start, ob alle erforderlichen Umgebungsvariablen gesetzt sind
"""

import os
import sys

from tone_drafter.ai_client import PROVIDER_REGISTRY


class EnvironmentValidator:
    """Validiert Umgebungsvariablen basierend auf der Konfiguration"""

    CRITICAL_VARS = {
        "DRAFT_MASTER_KEY": {
            "description": "Master-Key für Postfach-Passwörter und Provider-API-Keys",
            "hint": 'Generiere mit: python -c "import secrets; print(secrets.token_urlsafe(32))"',
        },
    }

    @staticmethod
    def _is_placeholder(value):
        return not value or value.startswith("your-") or value.startswith("<")

    @staticmethod
    def validate():
        """Hauptvalidierungs-Methode"""
        errors = []
        warnings = []

        errors.extend(EnvironmentValidator._check_critical_vars())
        errors.extend(EnvironmentValidator._check_embedding_backend())
        warnings.extend(EnvironmentValidator._check_key_version())

        if errors:
            EnvironmentValidator._print_errors(errors, warnings)
            sys.exit(1)

        if warnings:
            EnvironmentValidator._print_warnings(warnings)

        print("✅ Alle erforderlichen Umgebungsvariablen sind gesetzt\n")
        return True

    @staticmethod
    def _check_critical_vars():
        """Prüft kritische Variablen die immer erforderlich sind"""
        errors = []

        for var, info in EnvironmentValidator.CRITICAL_VARS.items():
            if EnvironmentValidator._is_placeholder(os.getenv(var)):
                errors.append(
                    {
                        "var": var,
                        "description": info["description"],
                        "hint": info["hint"],
                        "severity": "CRITICAL",
                    }
                )

        return errors

    @staticmethod
    def _check_embedding_backend():
        """Cloud-Embeddings brauchen einen API-Key, Ollama braucht nichts"""
        provider = os.getenv("EMBEDDING_PROVIDER", "ollama").strip().lower()
        provider_config = PROVIDER_REGISTRY.get(provider)

        if provider_config is None:
            return [
                {
                    "var": "EMBEDDING_PROVIDER",
                    "description": f"Unbekannter Provider '{provider}'",
                    "hint": f"Erlaubt: {', '.join(sorted(PROVIDER_REGISTRY))}",
                    "severity": "CRITICAL",
                }
            ]
        if not provider_config.get("supports_embeddings"):
            return [
                {
                    "var": "EMBEDDING_PROVIDER",
                    "description": f"Provider '{provider}' bietet keine Embeddings an",
                    "hint": "Verwende ollama, openai oder mistral",
                    "severity": "CRITICAL",
                }
            ]

        env_key = provider_config.get("env_key")
        if provider_config.get("requires_api_key") and EnvironmentValidator._is_placeholder(os.getenv(env_key)):
            return [
                {
                    "var": env_key,
                    "description": f"API-Key für Embeddings via {provider}",
                    "hint": f"Setze {env_key} oder EMBEDDING_PROVIDER=ollama",
                    "severity": "CRITICAL",
                }
            ]
        return []

    @staticmethod
    def _check_key_version():
        raw = os.getenv("DRAFT_MASTER_KEY_VERSION")
        if raw is None or raw.strip().isdigit():
            return []
        return [f"DRAFT_MASTER_KEY_VERSION={raw!r} ist keine Zahl, Version 1 wird angenommen"]

    @staticmethod
    def _print_errors(errors, warnings):
        """Gibt Fehler formatiert aus"""
        print("\n" + "=" * 70)
        print("🚨 FEHLER: Kritische Umgebungsvariablen fehlen oder sind ungültig")
        print("=" * 70 + "\n")

        for i, error in enumerate(errors, 1):
            print(f"{i}. ❌ {error['var']}")
            print(f"   Beschreibung: {error['description']}")
            print(f"   💡 Hinweis: {error['hint']}")
            print()

        print("=" * 70)
        print("📋 Lösung: .env bzw. .env.local bearbeiten und setzen:")
        for error in errors:
            print(f"   {error['var']}=<wert>")
        print()

        if warnings:
            EnvironmentValidator._print_warnings(warnings)

    @staticmethod
    def _print_warnings(warnings):
        print("⚠️  WARNUNGEN:")
        for warning in warnings:
            print(f"   - {warning}")
        print()


def validate_environment():
    """Entry-Point für den Worker-Start"""
    return EnvironmentValidator.validate()
