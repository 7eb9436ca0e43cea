"""
Database models and operations for the chat client.

Uses SQLAlchemy with SQLite (aiosqlite) to keep sender-key states and group
membership of local identities. Every row is scoped to an identity_id.
"""

import json
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from crypto.sender_keys import SenderKeyState, SenderKeyStore
from .groups import Group, GroupDirectory

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SenderKeyRow(Base):
    """Serialized SenderKeyState"""
    __tablename__ = "sender_keys"
    __table_args__ = (UniqueConstraint("identity_id", "group_id", "sender_public_key"),)

    id = Column(Integer, primary_key=True, index=True)
    identity_id = Column(String(64), index=True, nullable=False)
    group_id = Column(String(128), index=True, nullable=False)
    sender_public_key = Column(String(64), nullable=False)
    state = Column(Text, nullable=False)  # JSON from SenderKeyState.to_dict()
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class GroupRow(Base):
    """Group membership record"""
    __tablename__ = "groups"
    __table_args__ = (UniqueConstraint("identity_id", "group_id"),)

    id = Column(Integer, primary_key=True, index=True)
    identity_id = Column(String(64), index=True, nullable=False)
    group_id = Column(String(128), nullable=False)
    name = Column(String(255), nullable=False)
    members = Column(Text, nullable=False)  # JSON array of public keys
    creator_public_key = Column(String(64), nullable=False)
    version = Column(Integer, default=0, nullable=False)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    def to_group(self) -> Group:
        return Group(
            group_id=self.group_id,
            name=self.name,
            members=json.loads(self.members),
            creator_public_key=self.creator_public_key,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at
        )


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./client_data/chat.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def load_sender_key(self, identity_id: str, group_id: str,
                              sender_public_key: str) -> Optional[SenderKeyState]:
        async with self.async_session() as session:
            result = await session.execute(select(SenderKeyRow).where(
                SenderKeyRow.identity_id == identity_id,
                SenderKeyRow.group_id == group_id,
                SenderKeyRow.sender_public_key == sender_public_key
            ))
            row = result.scalar_one_or_none()
            return SenderKeyState.from_dict(json.loads(row.state)) if row else None

    async def store_sender_key(self, identity_id: str, state: SenderKeyState):
        """Insert or replace one state in a single transaction"""
        async with self.async_session() as session:
            result = await session.execute(select(SenderKeyRow).where(
                SenderKeyRow.identity_id == identity_id,
                SenderKeyRow.group_id == state.group_id,
                SenderKeyRow.sender_public_key == state.sender_public_key
            ))
            row = result.scalar_one_or_none()
            serialized = json.dumps(state.to_dict())

            if row:
                row.state = serialized
                row.updated_at = _utcnow()
            else:
                session.add(SenderKeyRow(
                    identity_id=identity_id,
                    group_id=state.group_id,
                    sender_public_key=state.sender_public_key,
                    state=serialized
                ))
            await session.commit()

    async def delete_sender_keys(self, identity_id: str, group_id: str,
                                 sender_public_key: Optional[str] = None):
        """Delete one state, or every state of the group if no sender is given"""
        async with self.async_session() as session:
            statement = delete(SenderKeyRow).where(
                SenderKeyRow.identity_id == identity_id,
                SenderKeyRow.group_id == group_id
            )
            if sender_public_key is not None:
                statement = statement.where(SenderKeyRow.sender_public_key == sender_public_key)
            await session.execute(statement)
            await session.commit()

    async def get_group(self, identity_id: str, group_id: str) -> Optional[Group]:
        async with self.async_session() as session:
            result = await session.execute(select(GroupRow).where(
                GroupRow.identity_id == identity_id,
                GroupRow.group_id == group_id
            ))
            row = result.scalar_one_or_none()
            return row.to_group() if row else None

    async def save_group(self, identity_id: str, group: Group):
        async with self.async_session() as session:
            result = await session.execute(select(GroupRow).where(
                GroupRow.identity_id == identity_id,
                GroupRow.group_id == group.group_id
            ))
            row = result.scalar_one_or_none()
            if row is None:
                row = GroupRow(identity_id=identity_id, group_id=group.group_id)
                session.add(row)

            row.name = group.name
            row.members = json.dumps(group.members)
            row.creator_public_key = group.creator_public_key
            row.version = group.version
            row.created_at = group.created_at
            row.updated_at = group.updated_at
            await session.commit()

    async def delete_group(self, identity_id: str, group_id: str):
        async with self.async_session() as session:
            await session.execute(delete(GroupRow).where(
                GroupRow.identity_id == identity_id,
                GroupRow.group_id == group_id
            ))
            await session.commit()

    async def list_groups(self, identity_id: str) -> List[Group]:
        async with self.async_session() as session:
            result = await session.execute(
                select(GroupRow).where(GroupRow.identity_id == identity_id).order_by(GroupRow.id)
            )
            return [row.to_group() for row in result.scalars().all()]


class DatabaseSenderKeyStore(SenderKeyStore):
    """SenderKeyStore backed by the client database"""

    def __init__(self, database: Database, identity_id: str):
        self.database = database
        self.identity_id = identity_id

    async def load(self, group_id: str, sender_public_key: str) -> Optional[SenderKeyState]:
        return await self.database.load_sender_key(self.identity_id, group_id, sender_public_key)

    async def persist(self, state: SenderKeyState) -> None:
        await self.database.store_sender_key(self.identity_id, state)

    async def delete(self, group_id: str, sender_public_key: str) -> None:
        await self.database.delete_sender_keys(self.identity_id, group_id, sender_public_key)

    async def purge_group(self, group_id: str) -> None:
        await self.database.delete_sender_keys(self.identity_id, group_id)


class DatabaseGroupDirectory(GroupDirectory):
    """GroupDirectory backed by the client database"""

    def __init__(self, database: Database, identity_id: str):
        self.database = database
        self.identity_id = identity_id

    async def get_group(self, group_id: str) -> Optional[Group]:
        return await self.database.get_group(self.identity_id, group_id)

    async def save_group(self, group: Group) -> None:
        await self.database.save_group(self.identity_id, group)

    async def delete_group(self, group_id: str) -> None:
        await self.database.delete_group(self.identity_id, group_id)

    async def list_groups(self) -> List[Group]:
        return await self.database.list_groups(self.identity_id)
