import asyncio
import logging
import random

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

from .config import DB_RETRY_ATTEMPTS, DB_RETRY_BACKOFF_MAX_SECONDS, DB_RETRY_BACKOFF_SECONDS
from .errors import StoreUnavailable

logger = logging.getLogger(__name__)


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


class PersistenceGateway:
    """
    The only place the service touches the store.

    Every call runs in its own short transaction. Transient store errors
    (lost connections, lock timeouts) are retried here with exponential
    backoff, so callers only ever see a result or a business error.
    Writers that race must use conditional_update / update_where with a
    precondition; there is no read-then-write helper.
    """

    def __init__(
        self,
        session_factory,
        *,
        retry_attempts: int = DB_RETRY_ATTEMPTS,
        backoff_seconds: float = DB_RETRY_BACKOFF_SECONDS,
        backoff_max_seconds: float = DB_RETRY_BACKOFF_MAX_SECONDS,
    ):
        self._session_factory = session_factory
        self.retry_attempts = max(1, retry_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds

    async def _run(self, op, name: str):
        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with self._session_factory() as db:
                    return await op(db)
            except DBAPIError as e:
                if not _is_transient(e):
                    raise
                if attempt >= self.retry_attempts:
                    logger.error("store call %s failed after %d attempts: %s", name, attempt, e)
                    raise StoreUnavailable(f"Store unavailable during {name}") from e
                delay = min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)
                delay += delay * random.uniform(0.0, 0.3)
                logger.warning("transient store error in %s (attempt %d), retrying in %.3fs", name, attempt, delay)
                await asyncio.sleep(delay)

    @staticmethod
    def _key(model):
        return getattr(model, model.lookup_key)

    async def get(self, model, key: str):
        async def op(db):
            res = await db.execute(select(model).where(self._key(model) == key))
            return res.scalar_one_or_none()

        return await self._run(op, f"get {model.__tablename__}")

    async def query(self, model, *criteria, order_by=None, limit: int | None = None, offset: int | None = None):
        async def op(db):
            stmt = select(model).where(*criteria)
            if order_by is not None:
                stmt = stmt.order_by(*order_by) if isinstance(order_by, (list, tuple)) else stmt.order_by(order_by)
            if offset:
                stmt = stmt.offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)
            res = await db.execute(stmt)
            return list(res.scalars().all())

        return await self._run(op, f"query {model.__tablename__}")

    async def count(self, model, *criteria) -> int:
        async def op(db):
            res = await db.execute(select(func.count()).select_from(model).where(*criteria))
            return int(res.scalar_one())

        return await self._run(op, f"count {model.__tablename__}")

    async def insert(self, record) -> bool:
        """
        Returns False when a unique constraint rejects the row.
        """
        async def op(db):
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
            return True

        return await self._run(op, f"insert {record.__tablename__}")

    async def conditional_update(self, model, key: str, expected, patch: dict) -> bool:
        """
        Compare-and-set on one record.

        expected is either the record's current version (int) or an
        iterable of SQL predicates. Versioned models get version + 1.
        Returns True on success, False on conflict / missing record.
        """
        criteria = [self._key(model) == key]
        if isinstance(expected, int):
            criteria.append(model.version == expected)
        elif expected is not None:
            criteria.extend(expected)
        return await self.update_where(model, *criteria, patch=patch) == 1

    async def update_where(self, model, *criteria, patch: dict) -> int:
        values = dict(patch)
        if hasattr(model, "version"):
            values["version"] = model.version + 1

        async def op(db):
            stmt = (
                update(model)
                .where(*criteria)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            res = await db.execute(stmt)
            await db.commit()
            return res.rowcount or 0

        return await self._run(op, f"update {model.__tablename__}")
