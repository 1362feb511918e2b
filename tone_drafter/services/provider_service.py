# tone_drafter/services/provider_service.py
"""
LLM-Provider-Konfiguration pro User

Höchstens ein Provider ist Default (partieller Unique-Index); nur der
aktive Default wird für die Generierung verwendet, weitere Provider
bleiben zum Testen und Vergleichen erhalten.
"""

import logging
from typing import List, Optional, Tuple

from tone_drafter.ai_client import PROVIDER_REGISTRY, AIClient, build_client, provider_requires_api_key, resolve_model
from tone_drafter.encryption import CredentialManager, KeyRing
from tone_drafter.exceptions import ConfigurationError, EntityNotFound
from tone_drafter.models import LlmProviderConfig

logger = logging.getLogger(__name__)


class ProviderService:
    """Verwaltung von LlmProviderConfig + Client-Erzeugung"""

    def __init__(self, keyring: KeyRing):
        self.keyring = keyring

    def _get_owned(self, session, user_id: int, config_id: int) -> LlmProviderConfig:
        provider = session.query(LlmProviderConfig).filter_by(id=config_id, user_id=user_id).first()
        if not provider:
            raise EntityNotFound(f"Provider {config_id} nicht gefunden oder gehört anderem User")
        return provider

    def add_provider(
        self,
        session,
        user_id: int,
        provider_name: str,
        provider_type: str,
        model_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        make_default: bool = False,
    ) -> LlmProviderConfig:
        provider_key = (provider_type or "").lower()
        if provider_key not in PROVIDER_REGISTRY:
            raise ValueError(f"Unbekannter Provider-Typ: {provider_type}")
        if provider_requires_api_key(provider_key) and not api_key:
            raise ValueError(f"{PROVIDER_REGISTRY[provider_key]['label']} benötigt einen API-Key")

        provider = LlmProviderConfig(
            user_id=user_id,
            provider_name=provider_name,
            provider_type=provider_key,
            model_name=resolve_model(provider_key, model_name),
            encrypted_api_key=CredentialManager.encrypt_api_key(api_key, self.keyring) if api_key else None,
            api_endpoint=api_endpoint,
            is_active=True,
            is_default=False,
        )
        session.add(provider)
        session.flush()

        has_default = session.query(LlmProviderConfig).filter_by(user_id=user_id, is_default=True).count() > 0
        if make_default or not has_default:
            return self.set_default(session, user_id, provider.id)

        session.commit()
        logger.info(f"✅ Provider {provider.id} ({provider_key}/{provider.model_name}) für User {user_id} angelegt")
        return provider

    def set_default(self, session, user_id: int, config_id: int) -> LlmProviderConfig:
        """Setzt den Default; der bisherige Default wird in derselben Transaktion entfernt"""
        provider = self._get_owned(session, user_id, config_id)
        if not provider.is_active:
            raise ConfigurationError(f"Provider {config_id} ist deaktiviert")

        session.query(LlmProviderConfig).filter(
            LlmProviderConfig.user_id == user_id,
            LlmProviderConfig.id != config_id,
            LlmProviderConfig.is_default.is_(True),
        ).update({"is_default": False}, synchronize_session="fetch")
        provider.is_default = True
        session.commit()
        logger.info(f"⭐ Provider {config_id} ist Default für User {user_id}")
        return provider

    def get_default(self, session, user_id: int) -> Optional[LlmProviderConfig]:
        return session.query(LlmProviderConfig).filter_by(
            user_id=user_id, is_default=True, is_active=True
        ).first()

    def list_providers(self, session, user_id: int) -> List[LlmProviderConfig]:
        return (
            session.query(LlmProviderConfig)
            .filter_by(user_id=user_id)
            .order_by(LlmProviderConfig.created_at.asc(), LlmProviderConfig.id.asc())
            .all()
        )

    def deactivate(self, session, user_id: int, config_id: int) -> LlmProviderConfig:
        provider = self._get_owned(session, user_id, config_id)
        provider.is_active = False
        provider.is_default = False
        session.commit()
        logger.info(f"🔕 Provider {config_id} für User {user_id} deaktiviert")
        return provider

    def build_client_for(self, provider: LlmProviderConfig) -> AIClient:
        """Adapter für eine Konfiguration; DecryptionError propagiert"""
        api_key = None
        if provider.encrypted_api_key:
            api_key = CredentialManager.decrypt_api_key(provider.encrypted_api_key, self.keyring)
        return build_client(
            provider.provider_type,
            model=provider.model_name,
            api_key=api_key,
            base_url=provider.api_endpoint,
        )

    def resolve_client(self, session, user_id: int) -> Tuple[AIClient, LlmProviderConfig]:
        provider = self.get_default(session, user_id)
        if provider is None:
            raise ConfigurationError(f"Kein aktiver Default-Provider für User {user_id}")
        return self.build_client_for(provider), provider
