import asyncio
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from drasbot.models import ContextRecord, MessageLogRecord, UserRecord
from drasbot.services.domain import ConversationContext, MessageLogEntry, MessageWrites, RateCounters, User, ensure_aware
from drasbot.services.permissions import PermissionLevel


def _user_from_record(record: UserRecord) -> User:
    return User(
        identity=record.identity,
        level=PermissionLevel.parse(record.level),
        display_name=record.display_name,
        is_registered=bool(record.is_registered),
        message_count=record.message_count or 0,
        rate=RateCounters.from_dict(record.rate_counters),
        last_completed_context=record.last_completed_context,
        last_completed_at=ensure_aware(record.last_completed_at),
        metadata=dict(record.user_metadata or {}),
        created_at=ensure_aware(record.created_at),
        last_seen_at=ensure_aware(record.last_seen_at),
    )


def _context_from_record(record: ContextRecord) -> ConversationContext:
    return ConversationContext(
        id=record.id,
        identity=record.user_identity,
        context_type=record.context_type,
        step=record.step or 0,
        payload=dict(record.payload or {}),
        created_at=ensure_aware(record.created_at),
        last_touched_at=ensure_aware(record.last_touched_at),
        ttl_seconds=record.ttl_seconds,
    )


class SqlPersistence:
    """SQLAlchemy-backed persistence. Blocking session work runs in a worker thread."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._in_session, fn, *args)

    def _in_session(self, fn, *args):
        db: Session = self.session_factory()
        try:
            result = fn(db, *args)
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def get_user(self, identity: str) -> Optional[User]:
        return await self._run(self._get_user, identity)

    async def upsert_user(self, user: User) -> None:
        await self._run(self._upsert_user, user)

    async def get_context(self, identity: str) -> Optional[ConversationContext]:
        return await self._run(self._get_context, identity)

    async def save_context(self, context: ConversationContext) -> None:
        await self._run(self._save_context, context)

    async def delete_context(self, identity: str) -> bool:
        return await self._run(self._delete_context, identity)

    async def list_contexts(self) -> list[ConversationContext]:
        return await self._run(self._list_contexts)

    async def append_message_log(self, entry: MessageLogEntry) -> None:
        await self._run(self._append_message_log, entry)

    async def apply_writes(self, writes: MessageWrites) -> None:
        await self._run(self._apply_writes, writes)

    @staticmethod
    def _apply_writes(db: Session, writes: MessageWrites) -> None:
        SqlPersistence._upsert_user(db, writes.user)
        if writes.save_context is not None:
            SqlPersistence._save_context(db, writes.save_context)
        elif writes.delete_context:
            SqlPersistence._delete_context(db, writes.user.identity)
        SqlPersistence._append_message_log(db, writes.inbound)

    @staticmethod
    def _get_user(db: Session, identity: str) -> Optional[User]:
        record = db.query(UserRecord).filter(UserRecord.identity == identity).first()
        return _user_from_record(record) if record else None

    @staticmethod
    def _upsert_user(db: Session, user: User) -> None:
        record = db.query(UserRecord).filter(UserRecord.identity == user.identity).first()
        if record is None:
            record = UserRecord(identity=user.identity, created_at=user.created_at)
            db.add(record)
        record.level = user.level.label
        record.display_name = user.display_name
        record.is_registered = user.is_registered
        record.message_count = user.message_count
        record.rate_counters = user.rate.to_dict()
        record.last_completed_context = user.last_completed_context
        record.last_completed_at = user.last_completed_at
        record.user_metadata = dict(user.metadata)
        record.last_seen_at = user.last_seen_at

    @staticmethod
    def _get_context(db: Session, identity: str) -> Optional[ConversationContext]:
        record = db.query(ContextRecord).filter(ContextRecord.user_identity == identity).first()
        return _context_from_record(record) if record else None

    @staticmethod
    def _save_context(db: Session, context: ConversationContext) -> None:
        record = db.query(ContextRecord).filter(ContextRecord.user_identity == context.identity).first()
        if record is not None and record.id != context.id:
            # A new context replaces whatever the user had.
            db.delete(record)
            db.flush()
            record = None
        if record is None:
            record = ContextRecord(id=context.id, user_identity=context.identity)
            db.add(record)
        record.context_type = context.context_type
        record.step = context.step
        record.payload = dict(context.payload)
        record.created_at = context.created_at
        record.last_touched_at = context.last_touched_at
        record.ttl_seconds = context.ttl_seconds

    @staticmethod
    def _delete_context(db: Session, identity: str) -> bool:
        deleted = db.query(ContextRecord).filter(ContextRecord.user_identity == identity).delete()
        return deleted > 0

    @staticmethod
    def _list_contexts(db: Session) -> list[ConversationContext]:
        return [_context_from_record(record) for record in db.query(ContextRecord).all()]

    @staticmethod
    def _append_message_log(db: Session, entry: MessageLogEntry) -> None:
        db.add(
            MessageLogRecord(
                user_identity=entry.identity,
                direction=entry.direction,
                text=entry.text,
                message_type=entry.message_type,
                route=entry.route,
                processing_id=entry.processing_id,
                delivered=entry.delivered,
                created_at=entry.created_at,
            )
        )

    def count_message_log(self, identity: Optional[str] = None) -> int:
        db: Session = self.session_factory()
        try:
            query = db.query(MessageLogRecord)
            if identity:
                query = query.filter(MessageLogRecord.user_identity == identity)
            return query.count()
        finally:
            db.close()
