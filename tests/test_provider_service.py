"""Tests für die LLM-Provider-Verwaltung pro User"""

import pytest

from tone_drafter.ai_client import LocalOllamaClient, OpenAIClient
from tone_drafter.encryption import KeyRing
from tone_drafter.exceptions import ConfigurationError, DecryptionError, EntityNotFound
from tone_drafter.models import LlmProviderConfig, User
from tone_drafter.services.provider_service import ProviderService


@pytest.fixture
def service(keyring):
    return ProviderService(keyring)


def test_first_provider_becomes_default(session, user, service):
    provider = service.add_provider(session, user.id, "Lokal", "ollama")

    assert provider.is_default
    assert provider.model_name == "llama3.2"
    assert service.get_default(session, user.id).id == provider.id


def test_exactly_one_default(session, user, service):
    first = service.add_provider(session, user.id, "Lokal", "ollama")
    second = service.add_provider(session, user.id, "OpenAI", "openai", api_key="sk-test", make_default=True)
    third = service.add_provider(session, user.id, "Mistral", "mistral", api_key="mk-test")

    session.refresh(first)
    assert not first.is_default
    assert second.is_default
    assert not third.is_default
    assert session.query(LlmProviderConfig).filter_by(user_id=user.id, is_default=True).count() == 1

    service.set_default(session, user.id, first.id)
    defaults = session.query(LlmProviderConfig).filter_by(user_id=user.id, is_default=True).all()
    assert [p.id for p in defaults] == [first.id]


def test_api_key_is_stored_encrypted(session, user, service, keyring):
    provider = service.add_provider(session, user.id, "OpenAI", "openai", api_key="sk-secret")

    assert "sk-secret" not in provider.encrypted_api_key
    assert keyring.decrypt(provider.encrypted_api_key) == "sk-secret"


def test_validation(session, user, service):
    with pytest.raises(ValueError):
        service.add_provider(session, user.id, "X", "gemini")
    with pytest.raises(ValueError):
        service.add_provider(session, user.id, "OpenAI", "openai")


def test_resolve_client(session, user, service):
    service.add_provider(session, user.id, "OpenAI", "openai", model_name="gpt-4o", api_key="sk-secret")

    client, provider = service.resolve_client(session, user.id)

    assert isinstance(client, OpenAIClient)
    assert client.api_key == "sk-secret"
    assert client.model == "gpt-4o"
    assert provider.provider_type == "openai"


def test_resolve_without_default_raises(session, user, service):
    provider = service.add_provider(session, user.id, "Lokal", "ollama")
    service.deactivate(session, user.id, provider.id)

    with pytest.raises(ConfigurationError):
        service.resolve_client(session, user.id)
    with pytest.raises(ConfigurationError):
        service.set_default(session, user.id, provider.id)


def test_wrong_master_key_surfaces_decryption_error(session, user, service):
    provider = service.add_provider(session, user.id, "OpenAI", "openai", api_key="sk-secret")

    with pytest.raises(DecryptionError):
        ProviderService(KeyRing({1: "other-key"}, 1)).build_client_for(provider)


def test_ownership_check(session, user, service):
    other = User(email="mallory@evil.com")
    session.add(other)
    session.commit()
    provider = service.add_provider(session, user.id, "Lokal", "ollama")

    with pytest.raises(EntityNotFound):
        service.deactivate(session, other.id, provider.id)
    assert service.list_providers(session, other.id) == []
    assert isinstance(service.build_client_for(provider), LocalOllamaClient)
