############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# models.py: SQLAlchemy ORM models for all database entities
#
############################################################

"""SQLAlchemy database models for SandboxRelay.

Users are owned by the external auth collaborator; every table keys on the
opaque ``user_id`` string it hands us.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.db.base import Base, CreatedAtMixin, TimestampMixin

# Use enum values (lowercase) for database storage, not enum names (uppercase)
_enum_values = lambda obj: [e.value for e in obj]

USER_ID_LENGTH = 64


# Enums
class MachineStatus(str, PyEnum):
    """Local view of a user's backing machine."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class MessageRole(str, PyEnum):
    """Conversation message author."""
    USER = "user"
    ASSISTANT = "assistant"


class TransactionType(str, PyEnum):
    """Credit transaction kinds."""
    PURCHASE = "purchase"
    USAGE = "usage"
    BONUS = "bonus"
    REFUND = "refund"


class MachineRecord(Base, TimestampMixin):
    """One row per user mapping them to their remote machine."""

    __tablename__ = "machines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), unique=True, nullable=False)
    remote_machine_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[MachineStatus] = mapped_column(
        Enum(MachineStatus, values_callable=_enum_values, name="machine_status"),
        nullable=False,
        default=MachineStatus.STOPPED,
    )
    version: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class ConversationMessage(Base, CreatedAtMixin):
    """Immutable chat message."""

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), nullable=False)
    role: Mapped[MessageRole] = mapped_column(
        Enum(MessageRole, values_callable=_enum_values, name="message_role"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("ix_messages_user_created", "user_id", "created_at"),
    )


class CreditAccount(Base):
    """Cached credit balance; always equals the sum of the user's transactions."""

    __tablename__ = "credit_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), unique=True, nullable=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_purchased: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CreditTransaction(Base, CreatedAtMixin):
    """Append-only audit row; positive amount adds credits, negative deducts."""

    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, values_callable=_enum_values, name="transaction_type"), nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
    )


class UsageLog(Base, CreatedAtMixin):
    """Token usage for one completed assistant turn."""

    __tablename__ = "usage_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), nullable=False)
    message_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)

    __table_args__ = (
        Index("ix_usage_logs_user_created", "user_id", "created_at"),
    )


class Memory(Base, TimestampMixin):
    """Per-user key/value fact handed to the user's machine on sync."""

    __tablename__ = "memories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "key", name="uq_memories_user_key"),
    )
