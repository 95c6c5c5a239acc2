import logging
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quizdesk.errors import StateFailure, UpstreamFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Repository:
    """Narrow CRUD client over one SQLAlchemy session.

    Reads are retried once after a store failure, unless this session already
    holds uncommitted writes that the retry's rollback would discard. Writes are
    never retried so a half-applied insert cannot be repeated. Every store failure
    leaves here as an ``UpstreamFailure`` (or ``StateFailure`` for uniqueness
    conflicts).
    """

    def __init__(self, db: Session):
        self.db = db
        self._flushed = False

    def _has_uncommitted_writes(self) -> bool:
        return self._flushed or bool(self.db.new or self.db.dirty or self.db.deleted)

    def read(self, fn: Callable[[Session], T]) -> T:
        try:
            return fn(self.db)
        except SQLAlchemyError as exc:
            # A rollback would silently drop this request's earlier writes.
            if self._has_uncommitted_writes():
                self.db.rollback()
                self._flushed = False
                raise UpstreamFailure("Storage is temporarily unavailable") from exc
            logger.warning("Store read failed (%s); retrying once", exc.__class__.__name__)
            self.db.rollback()
        try:
            return fn(self.db)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise UpstreamFailure("Storage is temporarily unavailable") from exc

    def write(self, fn: Callable[[Session], T]) -> T:
        try:
            result = fn(self.db)
            self.db.flush()
            self._flushed = True
            return result
        except IntegrityError as exc:
            self.db.rollback()
            self._flushed = False
            raise StateFailure("Conflicting write, reload and try again", code="conflict") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._flushed = False
            logger.error("Store write failed: %s", exc.__class__.__name__)
            raise UpstreamFailure("Failed to write to storage") from exc

    def get(self, model: type[T], ident: Any) -> T | None:
        return self.read(lambda db: db.get(model, ident))

    def list_by_user(self, model: type[T], user_id: str, *criteria, order_by=None) -> list[T]:
        def _list(db: Session):
            query = db.query(model).filter(model.user_id == user_id, *criteria)
            if order_by is not None:
                query = query.order_by(order_by)
            return query.all()

        return self.read(_list)

    def find(self, model: type[T], *criteria, order_by=None, limit: int | None = None, offset: int = 0) -> list[T]:
        def _find(db: Session):
            query = db.query(model).filter(*criteria)
            if order_by is not None:
                query = query.order_by(order_by)
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return query.all()

        return self.read(_find)

    def find_one(self, model: type[T], *criteria) -> T | None:
        return self.read(lambda db: db.query(model).filter(*criteria).first())

    def count(self, model, *criteria) -> int:
        return self.read(lambda db: db.query(model).filter(*criteria).count())

    def insert(self, obj: T) -> T:
        return self.write(lambda db: db.add(obj) or obj)

    def insert_all(self, objs: list[T]) -> list[T]:
        return self.write(lambda db: db.add_all(objs) or objs)

    def update(self, obj: T, **fields) -> T:
        def _update(_db: Session):
            for key, value in fields.items():
                setattr(obj, key, value)
            return obj

        return self.write(_update)

    def update_where(self, model, criteria, values: dict) -> int:
        """Single conditional UPDATE; returns the matched row count."""
        return self.write(
            lambda db: db.query(model).filter(*criteria).update(values, synchronize_session=False)
        )

    def delete(self, obj) -> None:
        self.write(lambda db: db.delete(obj))

    def commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise StateFailure("Conflicting write, reload and try again", code="conflict") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Store commit failed: %s", exc.__class__.__name__)
            raise UpstreamFailure("Failed to write to storage") from exc
        finally:
            self._flushed = False

    def refresh(self, obj: T) -> T:
        self.read(lambda db: db.refresh(obj))
        return obj
