"""
Tone Drafter - Datenbankmodelle (SQLAlchemy)

Kern-Tabellen: email_accounts, tone_profiles, draft_tracking,
llm_provider_configs, message_vectors
Unterstützend: users, inbound_messages, sent_messages,
contact_relationships, job_records
"""

from datetime import datetime, UTC
from enum import Enum

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    LargeBinary,
    JSON,
    event,
    text,
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool


Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(UTC)


class ProviderType(str, Enum):
    """LLM-Provider-Typen (bestimmt den Wire-Adapter)"""

    OLLAMA = "ollama"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    MISTRAL = "mistral"


class QueueName(str, Enum):
    EMAIL_PROCESSING = "email-processing"
    TONE_PROFILE = "tone-profile"


class JobStatus(str, Enum):
    """Zustände eines Jobs

    queued -> active -> completed
                     -> failed_retryable -> (Backoff) -> queued
                     -> failed_terminal
    queued/failed_retryable -> cancelled

    Ein verwaister active-Job (Worker verloren) zählt als fehlgeschlagener
    Versuch und läuft über failed_retryable bzw. failed_terminal weiter.
    """

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"
    CANCELLED = "cancelled"


PENDING_JOB_STATES = (JobStatus.QUEUED.value, JobStatus.FAILED_RETRYABLE.value)


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    SENT = "sent"


DEFAULT_RELATIONSHIP = "external"


# =============================================================================
# User & Accounts
# =============================================================================
class User(Base):
    """Besitzer aller user-scoped Zeilen (angelegt vom Session-Layer)"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(255))
    created_at = Column(DateTime, default=utcnow)

    email_accounts = relationship(
        "EmailAccount", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    tone_profiles = relationship(
        "ToneProfile", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    draft_trackings = relationship(
        "DraftTracking", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    llm_providers = relationship(
        "LlmProviderConfig", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"


class EmailAccount(Base):
    """Verbundenes Postfach eines Users

    Wird beim Deaktivieren nicht gelöscht (Historie bleibt erhalten).
    """

    __tablename__ = "email_accounts"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    email_address = Column(String(255), nullable=False)

    transport_host = Column(String(255))
    transport_port = Column(Integer, default=993)
    transport_username = Column(String(255))
    encrypted_password = Column(Text)

    is_active = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="email_accounts")
    draft_trackings = relationship(
        "DraftTracking", back_populates="email_account", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "email_address", name="uq_user_email_account"),
    )

    @property
    def domain(self) -> str:
        return self.email_address.rsplit("@", 1)[-1].lower() if self.email_address else ""

    def __repr__(self):
        return f"<EmailAccount(id={self.id}, user={self.user_id}, address='{self.email_address}')>"


# =============================================================================
# Tone Profiles
# =============================================================================
class ToneProfile(Base):
    """Gelerntes Schreibstil-Profil pro (User, Beziehungstyp)

    Einziger Schreibpfad ist ToneProfileStore.merge(); emails_analyzed
    steigt nur.
    """

    __tablename__ = "tone_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    relationship_type = Column(String(50), nullable=False)
    profile_data = Column(JSON, nullable=False, default=dict)
    emails_analyzed = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="tone_profiles")

    __table_args__ = (
        UniqueConstraint("user_id", "relationship_type", name="uq_tone_profile_user_relationship"),
        CheckConstraint("emails_analyzed >= 0", name="ck_tone_profile_emails_analyzed"),
    )

    def __repr__(self):
        return (
            f"<ToneProfile(user={self.user_id}, relationship='{self.relationship_type}', "
            f"emails_analyzed={self.emails_analyzed})>"
        )


class ContactRelationship(Base):
    """Vom User zugewiesener Beziehungstyp pro Kontakt-Adresse"""

    __tablename__ = "contact_relationships"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    contact_address = Column(String(255), nullable=False)
    relationship_type = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "contact_address", name="uq_contact_relationship"),
    )


# =============================================================================
# Draft Tracking
# =============================================================================
class DraftTracking(Base):
    """Ein generierter Entwurf und sein späteres Schicksal

    sent_at/user_sent_content/edit_analysis werden genau einmal gesetzt
    (guarded UPDATE auf sent_at IS NULL), danach ist die Zeile unveränderlich.
    """

    __tablename__ = "draft_tracking"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    email_account_id = Column(
        Integer, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False
    )

    original_message_id = Column(String(255), nullable=False)
    draft_message_id = Column(String(255), nullable=False)
    generated_content = Column(Text, nullable=False)
    relationship_type = Column(String(50), nullable=False, default=DEFAULT_RELATIONSHIP)
    context_data = Column(JSON)

    user_sent_content = Column(Text)
    edit_analysis = Column(JSON)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    sent_at = Column(DateTime)

    user = relationship("User", back_populates="draft_trackings")
    email_account = relationship("EmailAccount", back_populates="draft_trackings")

    __table_args__ = (
        UniqueConstraint("user_id", "original_message_id", name="uq_draft_original_message"),
        Index("ix_draft_tracking_account", "email_account_id"),
    )

    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None

    def __repr__(self):
        return f"<DraftTracking(id={self.id}, original='{self.original_message_id}', sent={self.is_sent})>"


# =============================================================================
# LLM Provider
# =============================================================================
class LlmProviderConfig(Base):
    """LLM-Provider eines Users; höchstens einer ist Default"""

    __tablename__ = "llm_provider_configs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider_name = Column(String(255), nullable=False)
    provider_type = Column(String(50), nullable=False)
    model_name = Column(String(255), nullable=False)
    encrypted_api_key = Column(Text)
    api_endpoint = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="llm_providers")

    __table_args__ = (
        CheckConstraint(
            "provider_type IN (" + ", ".join(f"'{p.value}'" for p in ProviderType) + ")",
            name="ck_llm_provider_type",
        ),
        Index(
            "uq_llm_provider_default_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default = true"),
        ),
    )

    def __repr__(self):
        return f"<LlmProviderConfig(id={self.id}, type='{self.provider_type}', model='{self.model_name}')>"


# =============================================================================
# Vector Records
# =============================================================================
class MessageVector(Base):
    """Embedding einer Nachricht + minimale Filter-Metadaten

    Embedding als float32-Bytes; die Dimension ist pro Deployment fix.
    """

    __tablename__ = "message_vectors"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message_id = Column(String(255), nullable=False)
    relationship_type = Column(String(50))
    sender = Column(String(255))
    direction = Column(String(10), default=MessageDirection.INBOUND.value)
    snippet = Column(Text)
    embedding = Column(LargeBinary, nullable=False)
    dimension = Column(Integer, nullable=False)
    message_timestamp = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "message_id", name="uq_message_vector"),
        Index("ix_message_vectors_user_relationship", "user_id", "relationship_type"),
    )


# =============================================================================
# Nachrichten (geliefert vom Mail-Transport-Layer)
# =============================================================================
class InboundMessage(Base):
    """Eingegangene Mail, für die ein Entwurf erzeugt werden soll"""

    __tablename__ = "inbound_messages"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    email_account_id = Column(
        Integer, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False
    )
    message_id = Column(String(255), nullable=False)
    thread_id = Column(String(255))
    sender_address = Column(String(255), nullable=False)
    sender_name = Column(String(255))
    subject = Column(Text)
    body = Column(Text, nullable=False, default="")
    received_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("email_account_id", "message_id", name="uq_inbound_message"),
    )


class SentMessage(Base):
    """Vom User tatsächlich gesendete Mail

    analyzed_at wird gesetzt, sobald die Mail in ein Tone-Profil eingeflossen ist.
    """

    __tablename__ = "sent_messages"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    email_account_id = Column(
        Integer, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False
    )
    message_id = Column(String(255), nullable=False)
    in_reply_to = Column(String(255))
    recipient_address = Column(String(255))
    relationship_type = Column(String(50), nullable=False, default=DEFAULT_RELATIONSHIP)
    body = Column(Text, nullable=False, default="")
    sent_at = Column(DateTime, default=utcnow)
    draft_tracking_id = Column(Integer, ForeignKey("draft_tracking.id", ondelete="SET NULL"))
    analyzed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    draft_tracking = relationship("DraftTracking")

    __table_args__ = (
        UniqueConstraint("email_account_id", "message_id", name="uq_sent_message"),
        Index("ix_sent_messages_pending", "user_id", "relationship_type", "analyzed_at"),
    )


# =============================================================================
# Jobs
# =============================================================================
class JobRecord(Base):
    """Persistierte Zustandsmaschine eines Jobs

    Der Broker transportiert nur die Job-ID; Status, Versuche und letzter
    Fehler liegen hier.
    """

    __tablename__ = "job_records"

    id = Column(Integer, primary_key=True)
    queue = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.QUEUED.value)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    email_account_id = Column(Integer, ForeignKey("email_accounts.id", ondelete="CASCADE"))

    idempotency_key = Column(String(255))
    coalesce_key = Column(String(255))
    payload = Column(JSON, nullable=False, default=dict)
    result = Column(JSON)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=4)
    last_error = Column(Text)
    next_run_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("queue", "user_id", "idempotency_key", name="uq_job_idempotency"),
        Index("ix_job_records_coalesce", "queue", "user_id", "coalesce_key", "status"),
        Index("ix_job_records_account_status", "email_account_id", "status"),
        CheckConstraint(
            "status IN ('queued', 'active', 'completed', 'failed_retryable', 'failed_terminal', 'cancelled')",
            name="ck_job_status",
        ),
    )

    def __repr__(self):
        return f"<JobRecord(id={self.id}, queue='{self.queue}', status='{self.status}', attempts={self.attempts})>"


def init_db(db_path="tone_drafter.db"):
    """Initialisiert die Datenbank und legt alle Tabellen an

    Args:
        db_path: SQLite-Pfad, ":memory:" oder vollständige SQLAlchemy-URL

    Returns:
        (engine, sessionmaker)
    """
    if "://" in db_path:
        url = db_path
    else:
        url = f"sqlite:///{db_path}"

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url.endswith(":memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=False, **kwargs)

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """foreign_keys für CASCADE, WAL für parallele Worker"""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous = NORMAL")
            cursor.execute("PRAGMA busy_timeout = 5000")
            cursor.close()
    else:
        engine = create_engine(url, echo=False, pool_pre_ping=True)

    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    return engine, Session
