"""
Durable key/value store.

A single ``kv`` table partitioned into named trees, backed by SQLAlchemy 2.0
async on aiosqlite. Keys are raw bytes so reward keys (8-byte big-endian block
time) sort chronologically under SQLite's memcmp BLOB ordering. Every write
commits before returning.
"""

import struct
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterable, List, Optional, Tuple, Union

import structlog
from sqlalchemy import LargeBinary, String, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from .exceptions import StoreError
from ..models.records import (
    DaemonStatusCheckpoint,
    OutboundNotification,
    PendingStakeStatus,
    PendingZapStatus,
    RewardRecord,
    ScheduledTask,
    ServerReadiness,
    TaskName,
)


logger = structlog.get_logger(__name__)

KeyLike = Union[bytes, str, int]

# Tree names
REWARDS = "rewards"
DAEMON_STATUS = "daemon_status"
SERVER_READINESS = "server_readyness"
TASK_QUEUE = "task_queue"
TG_BOT_QUEUE = "tg_bot_queue"
ZAP_STATUS = "zap_status"
NEW_STAKE_STATUS = "new_stake_status"

DAEMON_STATUS_KEY = "daemon_status"
SERVER_READY_KEY = "server_ready"

CLEARABLE_TREES = (REWARDS, DAEMON_STATUS, ZAP_STATUS, NEW_STAKE_STATUS)


class Base(DeclarativeBase):
    pass


class KVEntry(Base):
    """One value in one tree."""

    __tablename__ = "kv"

    tree: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[bytes] = mapped_column(LargeBinary, primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    def __repr__(self) -> str:
        return f"<KVEntry(tree={self.tree}, key={self.key!r})>"


def reward_key(timestamp: int) -> bytes:
    """Reward records are keyed by block time, big-endian."""
    return struct.pack(">Q", timestamp)


def decode_reward_key(key: bytes) -> int:
    return struct.unpack(">Q", key)[0]


def _key(key: KeyLike) -> bytes:
    if isinstance(key, bytes):
        return key
    if isinstance(key, int):
        return reward_key(key)
    return key.encode()


class Store:
    """Tree-partitioned embedded store with typed accessors per record."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.session_maker: Optional[async_sessionmaker[AsyncSession]] = None
        self.logger = logger.bind(service="store")

    async def initialize(self) -> None:
        """Open the engine and create the table."""
        self.logger.info("Initializing store", url=self.database_url)

        engine_kwargs = {}
        if ":memory:" in self.database_url:
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}

        self.engine = create_async_engine(self.database_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Store initialized")

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.session_maker = None
        self.logger.info("Store closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error."""
        if not self.session_maker:
            raise StoreError("Store not initialized. Call initialize() first.")

        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreError("Store operation failed", {"error": str(e)})
            except Exception:
                await session.rollback()
                raise

    # Raw tree access

    async def get(self, tree: str, key: KeyLike) -> Optional[bytes]:
        async with self.session() as session:
            entry = await session.get(KVEntry, (tree, _key(key)))
            return entry.value if entry else None

    async def put(self, tree: str, key: KeyLike, value: bytes) -> None:
        async with self.session() as session:
            await session.merge(KVEntry(tree=tree, key=_key(key), value=value))

    async def remove(self, tree: str, key: KeyLike) -> bool:
        async with self.session() as session:
            result = await session.execute(
                delete(KVEntry).where(KVEntry.tree == tree, KVEntry.key == _key(key))
            )
            return result.rowcount > 0

    async def contains(self, tree: str, key: KeyLike) -> bool:
        return await self.get(tree, key) is not None

    async def items(self, tree: str) -> List[Tuple[bytes, bytes]]:
        """All entries of a tree in key order."""
        async with self.session() as session:
            result = await session.execute(
                select(KVEntry.key, KVEntry.value).where(KVEntry.tree == tree).order_by(KVEntry.key)
            )
            return [(row.key, row.value) for row in result]

    async def range(self, tree: str, start: KeyLike, end: KeyLike) -> List[Tuple[bytes, bytes]]:
        """Entries with ``start <= key <= end``."""
        async with self.session() as session:
            result = await session.execute(
                select(KVEntry.key, KVEntry.value)
                .where(KVEntry.tree == tree, KVEntry.key >= _key(start), KVEntry.key <= _key(end))
                .order_by(KVEntry.key)
            )
            return [(row.key, row.value) for row in result]

    async def first(self, tree: str) -> Optional[Tuple[bytes, bytes]]:
        return await self._edge(tree, descending=False)

    async def last(self, tree: str) -> Optional[Tuple[bytes, bytes]]:
        return await self._edge(tree, descending=True)

    async def _edge(self, tree: str, descending: bool) -> Optional[Tuple[bytes, bytes]]:
        order = KVEntry.key.desc() if descending else KVEntry.key
        async with self.session() as session:
            result = await session.execute(
                select(KVEntry.key, KVEntry.value).where(KVEntry.tree == tree).order_by(order).limit(1)
            )
            row = result.first()
            return (row.key, row.value) if row else None

    async def clear(self, trees: Iterable[str]) -> None:
        async with self.session() as session:
            await session.execute(delete(KVEntry).where(KVEntry.tree.in_(list(trees))))

    async def clear_db(self) -> None:
        """Drop rewards, checkpoint, zaps and pending stakes."""
        await self.clear(CLEARABLE_TREES)
        self.logger.info("Store cleared", trees=list(CLEARABLE_TREES))

    # Rewards

    async def get_reward(self, timestamp: int) -> Optional[RewardRecord]:
        raw = await self.get(REWARDS, reward_key(timestamp))
        return RewardRecord.from_bytes(raw) if raw else None

    async def set_reward(self, record: RewardRecord) -> None:
        await self.put(REWARDS, reward_key(record.timestamp), record.to_bytes())

    async def remove_reward(self, timestamp: int) -> bool:
        return await self.remove(REWARDS, reward_key(timestamp))

    async def first_reward(self) -> Optional[RewardRecord]:
        entry = await self.first(REWARDS)
        return RewardRecord.from_bytes(entry[1]) if entry else None

    async def last_reward(self) -> Optional[RewardRecord]:
        entry = await self.last(REWARDS)
        return RewardRecord.from_bytes(entry[1]) if entry else None

    async def rewards_between(self, start: int, end: int) -> List[RewardRecord]:
        """Rewards with ``start <= timestamp <= end``."""
        if start > end:
            return []
        entries = await self.range(REWARDS, reward_key(max(start, 0)), reward_key(end))
        return [RewardRecord.from_bytes(value) for _, value in entries]

    async def all_rewards(self) -> List[RewardRecord]:
        return [RewardRecord.from_bytes(value) for _, value in await self.items(REWARDS)]

    # Checkpoint

    async def get_checkpoint(self) -> Optional[DaemonStatusCheckpoint]:
        raw = await self.get(DAEMON_STATUS, DAEMON_STATUS_KEY)
        return DaemonStatusCheckpoint.from_bytes(raw) if raw else None

    async def set_checkpoint(self, height: int, block_hash: str) -> None:
        record = DaemonStatusCheckpoint(height=height, block_hash=block_hash)
        await self.put(DAEMON_STATUS, DAEMON_STATUS_KEY, record.to_bytes())

    # Readiness

    async def get_readiness(self) -> ServerReadiness:
        raw = await self.get(SERVER_READINESS, SERVER_READY_KEY)
        return ServerReadiness.from_bytes(raw) if raw else ServerReadiness()

    async def set_readiness(self, readiness: ServerReadiness) -> None:
        await self.put(SERVER_READINESS, SERVER_READY_KEY, readiness.to_bytes())

    async def set_daemon_ready(self, daemon_ready: bool, reason: Optional[str] = None) -> ServerReadiness:
        """Flip ``daemon_ready`` keeping ``ready`` as it is."""
        readiness = await self.get_readiness()
        readiness.daemon_ready = daemon_ready
        readiness.reason = reason
        await self.set_readiness(readiness)
        return readiness

    # Scheduled tasks

    async def get_task(self, name: TaskName) -> Optional[ScheduledTask]:
        raw = await self.get(TASK_QUEUE, name.value)
        return ScheduledTask.from_bytes(raw) if raw else None

    async def set_task(self, task: ScheduledTask) -> None:
        await self.put(TASK_QUEUE, task.name.value, task.to_bytes())

    async def all_tasks(self) -> List[ScheduledTask]:
        return [ScheduledTask.from_bytes(value) for _, value in await self.items(TASK_QUEUE)]

    # Notification queue

    async def get_notification(self, key: str) -> Optional[OutboundNotification]:
        raw = await self.get(TG_BOT_QUEUE, key)
        return OutboundNotification.from_bytes(raw) if raw else None

    async def has_notification(self, key: str) -> bool:
        return await self.contains(TG_BOT_QUEUE, key)

    async def set_notification(self, key: str, notification: OutboundNotification) -> None:
        await self.put(TG_BOT_QUEUE, key, notification.to_bytes())

    async def remove_notification(self, key: str) -> bool:
        return await self.remove(TG_BOT_QUEUE, key)

    async def notifications(self) -> List[Tuple[str, OutboundNotification]]:
        return [
            (key.decode(), OutboundNotification.from_bytes(value))
            for key, value in await self.items(TG_BOT_QUEUE)
        ]

    # Zaps

    async def get_zap(self, txid: str) -> Optional[PendingZapStatus]:
        raw = await self.get(ZAP_STATUS, txid)
        return PendingZapStatus.from_bytes(raw) if raw else None

    async def set_zap(self, zap: PendingZapStatus) -> None:
        await self.put(ZAP_STATUS, zap.txid, zap.to_bytes())

    async def remove_zap(self, txid: str) -> bool:
        return await self.remove(ZAP_STATUS, txid)

    async def zaps(self) -> List[PendingZapStatus]:
        return [PendingZapStatus.from_bytes(value) for _, value in await self.items(ZAP_STATUS)]

    # Pending stakes

    async def get_stake_status(self, txid: str) -> Optional[PendingStakeStatus]:
        raw = await self.get(NEW_STAKE_STATUS, txid)
        return PendingStakeStatus.from_bytes(raw) if raw else None

    async def set_stake_status(self, status: PendingStakeStatus) -> None:
        await self.put(NEW_STAKE_STATUS, status.txid, status.to_bytes())

    async def remove_stake_status(self, txid: str) -> bool:
        return await self.remove(NEW_STAKE_STATUS, txid)

    async def stake_statuses(self) -> List[PendingStakeStatus]:
        return [PendingStakeStatus.from_bytes(value) for _, value in await self.items(NEW_STAKE_STATUS)]
