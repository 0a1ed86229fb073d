# paperless_ai_db/models.py
import enum
import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    DEFAULT = "DEFAULT"
    ADMIN = "ADMIN"


class Permission(str, enum.Enum):
    READ = "READ"
    WRITE = "WRITE"
    ADMIN = "ADMIN"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_permission_type = Enum(Permission, name="permission")


def _id_column():
    return Column(String(36), primary_key=True, default=_new_id)


def _created_at():
    return Column(DateTime(timezone=True), nullable=False, default=_utcnow)


def _updated_at():
    return Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class Setting(Base):
    __tablename__ = "settings"
    setting_key = Column(String(255), primary_key=True)
    setting_value = Column(Text, nullable=False)
    created_at = _created_at()
    updated_at = _updated_at()


class User(Base):
    __tablename__ = "users"
    id = _id_column()
    username = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(Enum(UserRole, name="user_role"), nullable=False, default=UserRole.DEFAULT)
    must_change_password = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = _created_at()
    updated_at = _updated_at()

    owned_paperless_instances = relationship(
        "PaperlessInstance", back_populates="owner", lazy="raise", passive_deletes=True
    )
    owned_ai_providers = relationship("AiProvider", back_populates="owner", lazy="raise", passive_deletes=True)
    owned_ai_bots = relationship("AiBot", back_populates="owner", lazy="raise", passive_deletes=True)
    paperless_instance_access = relationship(
        "UserPaperlessInstanceAccess", back_populates="user", lazy="raise", passive_deletes=True
    )
    ai_provider_access = relationship(
        "UserAiProviderAccess", back_populates="user", lazy="raise", passive_deletes=True
    )
    ai_bot_access = relationship("UserAiBotAccess", back_populates="user", lazy="raise", passive_deletes=True)
    ai_usage_metrics = relationship("AiUsageMetric", back_populates="user", lazy="raise", passive_deletes=True)


class PaperlessInstance(Base):
    __tablename__ = "paperless_instances"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_paperless_instances_owner_name"),)
    id = _id_column()
    name = Column(String(255), nullable=False)
    api_url = Column(String(2048), nullable=False)
    api_token = Column(Text, nullable=False)  # secret, stored as given
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = _created_at()
    updated_at = _updated_at()
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    owner = relationship("User", back_populates="owned_paperless_instances", lazy="raise")
    shared_with = relationship(
        "UserPaperlessInstanceAccess", back_populates="paperless_instance", lazy="raise", passive_deletes=True
    )
    processed_documents = relationship(
        "ProcessedDocument", back_populates="paperless_instance", lazy="raise", passive_deletes=True
    )
    processing_queue = relationship(
        "ProcessingQueue", back_populates="paperless_instance", lazy="raise", passive_deletes=True
    )


class AiProvider(Base):
    __tablename__ = "ai_providers"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_ai_providers_owner_name"),)
    id = _id_column()
    name = Column(String(255), nullable=False)
    provider = Column(String(100), nullable=False)  # openai, anthropic, ollama, ...
    model = Column(String(255), nullable=False)
    api_key = Column(Text, nullable=False)  # secret, stored as given
    base_url = Column(String(2048), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = _created_at()
    updated_at = _updated_at()
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    owner = relationship("User", back_populates="owned_ai_providers", lazy="raise")
    shared_with = relationship(
        "UserAiProviderAccess", back_populates="ai_provider", lazy="raise", passive_deletes=True
    )
    ai_bots = relationship("AiBot", back_populates="ai_provider", lazy="raise", passive_deletes=True)


class AiBot(Base):
    __tablename__ = "ai_bots"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_ai_bots_owner_name"),)
    id = _id_column()
    name = Column(String(255), nullable=False)
    system_prompt = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = _created_at()
    updated_at = _updated_at()
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # a provider with bots cannot be deleted
    ai_provider_id = Column(
        String(36), ForeignKey("ai_providers.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    owner = relationship("User", back_populates="owned_ai_bots", lazy="raise")
    ai_provider = relationship("AiProvider", back_populates="ai_bots", lazy="raise")
    shared_with = relationship("UserAiBotAccess", back_populates="ai_bot", lazy="raise", passive_deletes=True)
    ai_usage_metrics = relationship("AiUsageMetric", back_populates="ai_bot", lazy="raise", passive_deletes=True)


class UserPaperlessInstanceAccess(Base):
    __tablename__ = "user_paperless_instance_access"
    __table_args__ = (
        UniqueConstraint("user_id", "paperless_instance_id", name="uq_user_paperless_instance_access"),
    )
    id = _id_column()
    permission = Column(_permission_type, nullable=False, default=Permission.READ)
    created_at = _created_at()
    updated_at = _updated_at()
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    paperless_instance_id = Column(
        String(36), ForeignKey("paperless_instances.id", ondelete="CASCADE"), nullable=False, index=True
    )

    user = relationship("User", back_populates="paperless_instance_access", lazy="raise")
    paperless_instance = relationship("PaperlessInstance", back_populates="shared_with", lazy="raise")


class UserAiProviderAccess(Base):
    __tablename__ = "user_ai_provider_access"
    __table_args__ = (UniqueConstraint("user_id", "ai_provider_id", name="uq_user_ai_provider_access"),)
    id = _id_column()
    permission = Column(_permission_type, nullable=False, default=Permission.READ)
    created_at = _created_at()
    updated_at = _updated_at()
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    ai_provider_id = Column(
        String(36), ForeignKey("ai_providers.id", ondelete="CASCADE"), nullable=False, index=True
    )

    user = relationship("User", back_populates="ai_provider_access", lazy="raise")
    ai_provider = relationship("AiProvider", back_populates="shared_with", lazy="raise")


class UserAiBotAccess(Base):
    __tablename__ = "user_ai_bot_access"
    __table_args__ = (UniqueConstraint("user_id", "ai_bot_id", name="uq_user_ai_bot_access"),)
    id = _id_column()
    permission = Column(_permission_type, nullable=False, default=Permission.READ)
    created_at = _created_at()
    updated_at = _updated_at()
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    ai_bot_id = Column(String(36), ForeignKey("ai_bots.id", ondelete="CASCADE"), nullable=False, index=True)

    user = relationship("User", back_populates="ai_bot_access", lazy="raise")
    ai_bot = relationship("AiBot", back_populates="shared_with", lazy="raise")


class ProcessedDocument(Base):
    __tablename__ = "processed_documents"
    __table_args__ = (
        UniqueConstraint("paperless_instance_id", "paperless_id", name="uq_processed_documents_instance_doc"),
    )
    id = _id_column()
    paperless_id = Column(Integer, nullable=False)  # document id inside Paperless
    title = Column(String(1024), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    ai_provider = Column(String(255), nullable=False)
    tokens_used = Column(Integer, nullable=False, default=0)
    changes = Column(JSON(none_as_null=True), nullable=True)
    original_title = Column(String(1024), nullable=True)
    original_correspondent = Column(String(255), nullable=True)
    original_document_type = Column(String(255), nullable=True)
    original_tags = Column(JSON, nullable=False, default=list, info={"python_type": List[str]})
    created_at = _created_at()
    updated_at = _updated_at()
    paperless_instance_id = Column(
        String(36), ForeignKey("paperless_instances.id", ondelete="CASCADE"), nullable=False, index=True
    )

    paperless_instance = relationship("PaperlessInstance", back_populates="processed_documents", lazy="raise")


class ProcessingQueue(Base):
    __tablename__ = "processing_queue"
    __table_args__ = (
        UniqueConstraint("paperless_instance_id", "paperless_id", name="uq_processing_queue_instance_doc"),
    )
    id = _id_column()
    paperless_id = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False, default=QueueStatus.PENDING.value, index=True)
    priority = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()
    paperless_instance_id = Column(
        String(36), ForeignKey("paperless_instances.id", ondelete="CASCADE"), nullable=False, index=True
    )

    paperless_instance = relationship("PaperlessInstance", back_populates="processing_queue", lazy="raise")


class AiUsageMetric(Base):
    __tablename__ = "ai_usage_metrics"
    id = _id_column()
    provider = Column(String(100), nullable=False)
    model = Column(String(255), nullable=False)
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    estimated_cost = Column(Float, nullable=True)
    document_id = Column(String(36), nullable=True)
    created_at = _created_at()
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    ai_bot_id = Column(String(36), ForeignKey("ai_bots.id", ondelete="SET NULL"), nullable=True, index=True)

    user = relationship("User", back_populates="ai_usage_metrics", lazy="raise")
    ai_bot = relationship("AiBot", back_populates="ai_usage_metrics", lazy="raise")
