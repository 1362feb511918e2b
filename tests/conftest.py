# tests/conftest.py
"""Pytest Configuration & Shared Fixtures.

SQLite-Datei pro Test (der Vector-Index nutzt eigene Sessions), schneller
Vault, deterministischer Embedder, Fake-LLM und In-Memory-Broker.
Kein Redis, kein Netzwerk.
"""

import hashlib
from types import SimpleNamespace

import pytest

from tone_drafter import models
from tone_drafter.ai_client import AIClient
from tone_drafter.config import RetryPolicy
from tone_drafter.encryption import CredentialVault, KeyRing
from tone_drafter.exceptions import ProviderError, ProviderErrorKind
from tone_drafter.helpers.locks import LocalLockProvider
from tone_drafter.job_queue import InMemoryBroker
from tone_drafter.runtime import build_runtime
from tone_drafter.style_analyzer import WORD

EMBEDDING_DIM = 16


# ===== FAKES =====

class FakeEmbedder:
    """Bag-of-Words über Hash-Buckets, deterministisch"""

    def __init__(self, dimension: int = EMBEDDING_DIM):
        self.dimension = dimension
        self.fail = False
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        if self.fail:
            raise ProviderError(ProviderErrorKind.TIMEOUT, "embedding down", "fake")
        vector = [0.0] * self.dimension
        for word in WORD.findall((text or "").lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        return vector


class FakeLLMClient(AIClient):
    """Gibt eine feste Antwort zurück oder wirft vorbereitete Fehler"""

    provider_type = "ollama"

    def __init__(self, reply="Hallo,\n\ndanke für die Nachricht, ich melde mich morgen.\n\nViele Grüße"):
        super().__init__("fake-model", timeout=1)
        self.reply = reply
        self.errors = []
        self.prompts = []

    def complete(self, prompt, model=None):
        self.prompts.append(prompt)
        if self.errors:
            raise self.errors.pop(0)
        return self.reply


class StaticClientResolver:
    def __init__(self, client):
        self.client = client
        self.provider = SimpleNamespace(provider_type="ollama", model_name="fake-model")

    def resolve_client(self, session, user_id):
        return self.client, self.provider


# ===== ENVIRONMENT =====

@pytest.fixture(autouse=True)
def fast_vault(monkeypatch):
    """PBKDF2 mit wenigen Iterationen, damit die Tests schnell bleiben"""
    monkeypatch.setattr(CredentialVault, "ITERATIONS", 1000)


@pytest.fixture(autouse=True)
def quiet_env(monkeypatch):
    monkeypatch.delenv("DRAFT_DEBUG_LOG", raising=False)


# ===== DATABASE FIXTURES =====

@pytest.fixture
def session_factory(tmp_path):
    """Frische SQLite-Datei pro Test"""
    engine, Session = models.init_db(str(tmp_path / "tone_drafter_test.db"))
    yield Session
    engine.dispose()


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def user(session):
    user = models.User(email="alice@acme.com", display_name="Alice")
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def account(session, user, keyring):
    account = models.EmailAccount(
        user_id=user.id,
        email_address="alice@acme.com",
        transport_host="imap.acme.com",
        transport_username="alice",
        encrypted_password=keyring.encrypt("imap-secret"),
    )
    session.add(account)
    session.commit()
    return account


@pytest.fixture
def keyring():
    return KeyRing({1: "test-master-key-v1"}, current_version=1)


# ===== PIPELINE FIXTURES =====

@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm_client():
    return FakeLLMClient()


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay=1.0, factor=2.0, max_delay=10.0)


@pytest.fixture
def static_resolver(llm_client):
    return StaticClientResolver(llm_client)


@pytest.fixture
def runtime(broker, session_factory, embedder, keyring, static_resolver, retry_policy):
    return build_runtime(
        broker,
        session_factory=session_factory,
        embedder=embedder,
        lock_provider=LocalLockProvider(blocking_timeout=1),
        keyring=keyring,
        client_resolver=static_resolver,
        retry_policy=retry_policy,
        embedding_dim=EMBEDDING_DIM,
    )


@pytest.fixture
def run_jobs(runtime, broker, session_factory):
    """Arbeitet die Broker-Nachrichten ab (inkl. erneut eingeplanter Retries)"""

    def _run(queue=None, max_rounds=20):
        processed = []
        for _ in range(max_rounds):
            messages = broker.drain(queue)
            if not messages:
                break
            for _queue, job_id, _countdown in messages:
                with session_factory() as db:
                    job = runtime.runner.run(db, job_id)
                    processed.append((job_id, job.status if job else None))
        return processed

    return _run

