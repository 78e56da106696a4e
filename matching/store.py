"""Entity store: versioned records with an atomic compare-and-update.

``compare_and_update`` is the only concurrency primitive the rest of the engine
relies on. Records handed out by a store are always private copies.
"""
import logging
import threading
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Type, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from models import Donation, Match, Request

from .errors import Conflict, NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

RECORD_KINDS = (Donation, Request, Match)

T = TypeVar("T", Donation, Request, Match)
Mutator = Callable[[T], None]
Predicate = Callable[[T], bool]


def clone(record: T) -> T:
    return type(record).model_validate(record.model_dump())


def _check_kind(kind: type) -> None:
    if kind not in RECORD_KINDS:
        raise TypeError(f"Unsupported record kind: {kind!r}")


def _matches(record, predicate: Optional[Predicate], equals: dict) -> bool:
    for field, value in equals.items():
        if getattr(record, field) != value:
            return False
    return predicate is None or predicate(record)


class EntityStore:
    """Contract every store adapter implements."""

    def get(self, kind: Type[T], record_id: str) -> T:
        raise NotImplementedError

    def create(self, kind: Type[T], record: T) -> str:
        raise NotImplementedError

    def compare_and_update(
        self,
        kind: Type[T],
        record_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> int:
        raise NotImplementedError

    def query(
        self,
        kind: Type[T],
        predicate: Optional[Predicate] = None,
        **equals,
    ) -> List[T]:
        raise NotImplementedError


class MemoryStore(EntityStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tables: Dict[type, "OrderedDict[str, SQLModel]"] = {
            kind: OrderedDict() for kind in RECORD_KINDS
        }

    def get(self, kind, record_id):
        _check_kind(kind)
        with self._lock:
            record = self._tables[kind].get(record_id)
            if record is None:
                raise NotFound(f"{kind.__name__} {record_id} not found", id=record_id)
            return clone(record)

    def create(self, kind, record):
        _check_kind(kind)
        stored = clone(record)
        with self._lock:
            table = self._tables[kind]
            if stored.id in table:
                raise Conflict(f"{kind.__name__} {stored.id} already exists", id=stored.id)
            table[stored.id] = stored
        return stored.id

    def compare_and_update(self, kind, record_id, expected_version, mutator):
        _check_kind(kind)
        with self._lock:
            table = self._tables[kind]
            current = table.get(record_id)
            if current is None:
                raise NotFound(f"{kind.__name__} {record_id} not found", id=record_id)
            if current.version != expected_version:
                raise Conflict(
                    f"{kind.__name__} {record_id} is at version {current.version}, "
                    f"expected {expected_version}",
                    id=record_id,
                )
            draft = clone(current)
            mutator(draft)
            draft.id = record_id
            draft.version = expected_version + 1
            table[record_id] = draft
            return draft.version

    def query(self, kind, predicate=None, **equals):
        _check_kind(kind)
        with self._lock:
            rows = list(self._tables[kind].values())
        return [clone(row) for row in rows if _matches(row, predicate, equals)]


class SqlStore(EntityStore):
    """Store backed by a SQLModel engine.

    The compare-and-update is a single conditional UPDATE, so the database's
    own row locking decides races between processes as well as threads.
    """

    def __init__(self, engine) -> None:
        self._engine = engine

    def get(self, kind, record_id):
        _check_kind(kind)
        try:
            with Session(self._engine) as session:
                record = session.get(kind, record_id)
                if record is None:
                    raise NotFound(f"{kind.__name__} {record_id} not found", id=record_id)
                return clone(record)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def create(self, kind, record):
        _check_kind(kind)
        stored = clone(record)
        record_id = stored.id
        try:
            with Session(self._engine) as session:
                if session.get(kind, record_id) is not None:
                    raise Conflict(f"{kind.__name__} {record_id} already exists", id=record_id)
                session.add(stored)
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return record_id

    def compare_and_update(self, kind, record_id, expected_version, mutator):
        _check_kind(kind)
        try:
            with Session(self._engine) as session:
                current = session.get(kind, record_id)
                if current is None:
                    raise NotFound(f"{kind.__name__} {record_id} not found", id=record_id)
                if current.version != expected_version:
                    raise Conflict(
                        f"{kind.__name__} {record_id} is at version {current.version}, "
                        f"expected {expected_version}",
                        id=record_id,
                    )
                draft = clone(current)
                mutator(draft)
                values = draft.model_dump(exclude={"id", "version"})
                new_version = expected_version + 1

                statement = (
                    update(kind)
                    .where(kind.id == record_id, kind.version == expected_version)
                    .values(version=new_version, **values)
                )
                result = session.exec(statement)
                if result.rowcount != 1:
                    session.rollback()
                    raise Conflict(
                        f"{kind.__name__} {record_id} changed before the update",
                        id=record_id,
                    )
                session.commit()
                return new_version
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def query(self, kind, predicate=None, **equals):
        _check_kind(kind)
        statement = select(kind)
        for field, value in equals.items():
            statement = statement.where(getattr(kind, field) == value)
        statement = statement.order_by(kind.created_at)
        try:
            with Session(self._engine) as session:
                rows = session.exec(statement).all()
                snapshot = [clone(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc
        if predicate is None:
            return snapshot
        return [row for row in snapshot if predicate(row)]
