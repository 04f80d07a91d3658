############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# crud.py: Database CRUD operations for machines, messages and memories
#
############################################################

"""Database CRUD operations for SandboxRelay.

Functions flush but never commit; the caller owns the transaction.
"""

from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.models import (
    ConversationMessage,
    MachineRecord,
    MachineStatus,
    Memory,
    MessageRole,
)


# Machine CRUD
async def get_machine_record(db: AsyncSession, user_id: str) -> Optional[MachineRecord]:
    """Get the machine record for a user."""
    result = await db.execute(select(MachineRecord).where(MachineRecord.user_id == user_id))
    return result.scalar_one_or_none()


async def create_machine_record(db: AsyncSession, user_id: str) -> MachineRecord:
    """Create a stopped machine record with no remote machine.

    Raises IntegrityError if the user already has one.
    """
    record = MachineRecord(user_id=user_id, status=MachineStatus.STOPPED)
    db.add(record)
    await db.flush()
    return record


async def update_machine_record(
    db: AsyncSession, user_id: str, **values
) -> Optional[MachineRecord]:
    """Update columns of a user's machine record and return the fresh row."""
    await db.execute(
        update(MachineRecord)
        .where(MachineRecord.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(MachineRecord)
        .where(MachineRecord.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# Message CRUD
async def create_message(
    db: AsyncSession, user_id: str, role: MessageRole, content: str
) -> ConversationMessage:
    """Append a message to a user's conversation."""
    message = ConversationMessage(user_id=user_id, role=role, content=content)
    db.add(message)
    await db.flush()
    return message


async def get_messages(
    db: AsyncSession,
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    before_id: Optional[int] = None,
) -> List[ConversationMessage]:
    """Newest-first page of a user's messages.

    ``before_id`` restricts the page to messages written before that one.
    """
    query = select(ConversationMessage).where(ConversationMessage.user_id == user_id)
    if before_id is not None:
        query = query.where(ConversationMessage.id < before_id)
    result = await db.execute(
        query.order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def delete_messages(db: AsyncSession, user_id: str) -> int:
    """Delete a user's whole conversation. Returns rows removed."""
    result = await db.execute(
        delete(ConversationMessage).where(ConversationMessage.user_id == user_id)
    )
    return result.rowcount or 0


# Memory CRUD
async def get_memories(db: AsyncSession, user_id: str) -> List[Memory]:
    result = await db.execute(
        select(Memory).where(Memory.user_id == user_id).order_by(Memory.key)
    )
    return list(result.scalars().all())


async def upsert_memory(db: AsyncSession, user_id: str, key: str, value: str) -> Memory:
    """Insert or overwrite a memory by key."""
    result = await db.execute(
        select(Memory).where(Memory.user_id == user_id, Memory.key == key)
    )
    memory = result.scalar_one_or_none()
    if memory is None:
        memory = Memory(user_id=user_id, key=key, value=value)
        db.add(memory)
    else:
        memory.value = value
    await db.flush()
    return memory


async def delete_memory(db: AsyncSession, user_id: str, key: str) -> bool:
    result = await db.execute(
        delete(Memory).where(Memory.user_id == user_id, Memory.key == key)
    )
    return bool(result.rowcount)
