"""Persistence Gateway - Atomic access to user state and the update log.

Backed by SQLAlchemy's async ORM. PostgreSQL (asyncpg) in production,
SQLite (aiosqlite) in tests.
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field
from sqlalchemy import JSON, BigInteger, DateTime, String, Uuid, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.core.errors import PersistenceError
from src.core.fsm import ConversationState, StateTag
from src.utils.logger import get_logger

logger = get_logger(__name__)

RESERVED = "reserved"
FINALIZED = "finalized"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    chat_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    state_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    state_context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UpdateLogRow(Base):
    __tablename__ = "update_log"

    update_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    outcome: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )


class User(BaseModel):
    """A chat user and their conversation state."""

    id: uuid.UUID
    chat_id: int
    state: ConversationState
    created_at: datetime
    updated_at: datetime
    persisted: bool = Field(
        default=True,
        description="False until the first commit inserts the row",
    )


class UpdateRecord(BaseModel):
    """Dedup record of one inbound update."""

    update_id: str
    chat_id: int
    user_id: uuid.UUID | None = None
    status: Literal["reserved", "finalized"]
    reserved_at: datetime
    processed_at: datetime | None = None
    outcome: dict[str, Any] | None = None


def _state_to_columns(state: ConversationState) -> dict[str, Any]:
    return {
        "state_tag": state.tag.value,
        "state_context": {
            "stage": state.stage,
            "reason": state.reason,
            "data": state.context,
        },
    }


def _state_from_columns(tag: str, context: dict[str, Any]) -> ConversationState:
    return ConversationState(
        tag=StateTag(tag),
        stage=context.get("stage"),
        reason=context.get("reason"),
        context=context.get("data") or {},
    )


def _to_user(row: UserRow) -> User:
    return User(
        id=row.id,
        chat_id=row.chat_id,
        state=_state_from_columns(row.state_tag, row.state_context),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_record(row: UpdateLogRow) -> UpdateRecord:
    return UpdateRecord(
        update_id=row.update_id,
        chat_id=row.chat_id,
        user_id=row.user_id,
        status=row.status,
        reserved_at=row.reserved_at,
        processed_at=row.processed_at,
        outcome=row.outcome,
    )


class PersistenceGateway:
    """Encapsulated operations on the relational store.

    The engine (and its connection pool) is injected; the gateway holds no
    global state.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        """Inicializa o gateway com um engine SQLAlchemy.

        Args:
            engine: Async engine owning the connection pool.
        """
        self.engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs: Any) -> "PersistenceGateway":
        """Create a gateway with its own engine."""
        engine = create_async_engine(database_url, **engine_kwargs)
        logger.info("database_engine_created", dialect=engine.dialect.name)
        return cls(engine)

    async def create_schema(self) -> None:
        """Create tables if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ready")

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("database_engine_disposed")

    async def load(self, chat_id: int) -> User:
        """Busca o usuário ou devolve um novo em Idle.

        Args:
            chat_id: External chat identifier.

        Returns:
            Stored user, or an unsaved user with a fresh id in Idle.
        """
        try:
            async with self._sessions() as session:
                row = await session.scalar(
                    select(UserRow).where(UserRow.chat_id == chat_id)
                )
        except SQLAlchemyError as e:
            logger.error("user_load_failed", chat_id=chat_id, error=str(e))
            raise PersistenceError(f"failed to load user {chat_id}: {e}") from e

        if row is None:
            now = utcnow()
            return User(
                id=uuid.uuid4(),
                chat_id=chat_id,
                state=ConversationState.idle(),
                created_at=now,
                updated_at=now,
                persisted=False,
            )
        return _to_user(row)

    async def commit(
        self,
        user: User,
        update_id: str,
        next_state: ConversationState,
        outcome: dict[str, Any],
    ) -> User:
        """Write the new state and finalize the update record atomically.

        Args:
            user: User as loaded for this unit of work.
            update_id: Reserved update identifier.
            next_state: State computed by the transition.
            outcome: Outcome recorded on the update.

        Returns:
            The user with the committed state.

        Raises:
            PersistenceError: Nothing was written (rollback).
        """
        now = utcnow()
        columns = _state_to_columns(next_state)

        try:
            async with self._sessions.begin() as session:
                if user.persisted:
                    result = await session.execute(
                        update(UserRow)
                        .where(UserRow.id == user.id)
                        .values(updated_at=now, **columns)
                    )
                    if result.rowcount != 1:
                        raise PersistenceError(f"user {user.id} vanished")
                else:
                    session.add(
                        UserRow(
                            id=user.id,
                            chat_id=user.chat_id,
                            created_at=user.created_at,
                            updated_at=now,
                            **columns,
                        )
                    )
                    await session.flush()

                result = await session.execute(
                    update(UpdateLogRow)
                    .where(
                        UpdateLogRow.update_id == update_id,
                        UpdateLogRow.status == RESERVED,
                    )
                    .values(
                        status=FINALIZED,
                        user_id=user.id,
                        processed_at=now,
                        outcome=outcome,
                    )
                )
                if result.rowcount != 1:
                    raise PersistenceError(f"update {update_id} is not reserved")
        except SQLAlchemyError as e:
            logger.error(
                "state_commit_failed",
                update_id=update_id,
                chat_id=user.chat_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PersistenceError(f"commit of update {update_id} failed: {e}") from e

        logger.info(
            "state_committed",
            update_id=update_id,
            chat_id=user.chat_id,
            state=next_state.label,
        )
        return user.model_copy(
            update={"state": next_state, "updated_at": now, "persisted": True}
        )

    async def reserve_update(
        self, update_id: str, chat_id: int, stale_after: float
    ) -> tuple[bool, UpdateRecord | None]:
        """Insert a reservation for an update id.

        A reservation older than ``stale_after`` seconds is taken over.

        Returns:
            Tuple of (reserved, existing):
            - reserved: True if this call now owns the update
            - existing: The conflicting record when not reserved
        """
        try:
            for _ in range(2):
                now = utcnow()
                try:
                    async with self._sessions.begin() as session:
                        session.add(
                            UpdateLogRow(
                                update_id=update_id,
                                chat_id=chat_id,
                                status=RESERVED,
                                reserved_at=now,
                            )
                        )
                    return True, None
                except IntegrityError:
                    pass

                cutoff = now - timedelta(seconds=stale_after)
                async with self._sessions.begin() as session:
                    result = await session.execute(
                        update(UpdateLogRow)
                        .where(
                            UpdateLogRow.update_id == update_id,
                            UpdateLogRow.status == RESERVED,
                            UpdateLogRow.reserved_at < cutoff,
                        )
                        .values(reserved_at=now, chat_id=chat_id)
                    )
                    if result.rowcount == 1:
                        logger.warning("stale_reservation_taken_over", update_id=update_id)
                        return True, None
                    row = await session.get(UpdateLogRow, update_id)

                if row is not None:
                    return False, _to_record(row)
                # Released between insert and read: try again
        except SQLAlchemyError as e:
            logger.error("update_reservation_failed", update_id=update_id, error=str(e))
            raise PersistenceError(f"failed to reserve update {update_id}: {e}") from e

        raise PersistenceError(f"update {update_id} kept changing during reservation")

    async def finalize_update(self, update_id: str, outcome: dict[str, Any]) -> None:
        """Record an outcome on a reserved update without touching user state."""
        try:
            async with self._sessions.begin() as session:
                result = await session.execute(
                    update(UpdateLogRow)
                    .where(
                        UpdateLogRow.update_id == update_id,
                        UpdateLogRow.status == RESERVED,
                    )
                    .values(status=FINALIZED, processed_at=utcnow(), outcome=outcome)
                )
                if result.rowcount != 1:
                    raise PersistenceError(f"update {update_id} is not reserved")
        except SQLAlchemyError as e:
            raise PersistenceError(f"failed to finalize update {update_id}: {e}") from e

    async def release_update(self, update_id: str) -> bool:
        """Drop an unfinalized reservation.

        Returns:
            True if a reservation was removed.
        """
        try:
            async with self._sessions.begin() as session:
                result = await session.execute(
                    delete(UpdateLogRow).where(
                        UpdateLogRow.update_id == update_id,
                        UpdateLogRow.status == RESERVED,
                    )
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"failed to release update {update_id}: {e}") from e
        return result.rowcount == 1

    async def get_update(self, update_id: str) -> UpdateRecord | None:
        try:
            async with self._sessions() as session:
                row = await session.get(UpdateLogRow, update_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"failed to read update {update_id}: {e}") from e
        return _to_record(row) if row is not None else None
