"""Persistence and SQLModel definitions for KidVolts."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, TypeVar
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from .config import DATABASE_URL, DEFAULT_SAVE_ATTEMPTS
from .exceptions import ConflictError, RecordNotFoundError
from .models import HistoryStatus, Role

ModelT = TypeVar("ModelT", bound=SQLModel)
T = TypeVar("T")


def new_record_id() -> str:
    return uuid4().hex[:15]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form history timestamps are stored in."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=new_record_id, primary_key=True)
    username: str = ""
    role: str = Role.CHILD.value
    points: int = 0
    missions_completed: int = 0
    avatar_url: Optional[str] = None
    version: int = 0


class Mission(SQLModel, table=True):
    __tablename__ = "missions"

    id: str = Field(default_factory=new_record_id, primary_key=True)
    title: str
    icon: str = ""
    base_points: int
    is_active: bool = True
    version: int = 0


class HistoryRecord(SQLModel, table=True):
    __tablename__ = "history"

    id: str = Field(default_factory=new_record_id, primary_key=True)
    user_id: str = Field(index=True)
    mission_id: str
    status: str = HistoryStatus.SUBMITTED.value
    points_awarded: Optional[int] = None
    decided_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=False), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=False), nullable=False))
    version: int = 0


class BazaarItem(SQLModel, table=True):
    __tablename__ = "bazaar"

    id: str = Field(default_factory=new_record_id, primary_key=True)
    item_name: str
    cost: int
    stock: int = 0
    max_stock: int = 0
    claimed_by: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    version: int = 0

    @property
    def claimants(self) -> frozenset[str]:
        return frozenset(self.claimed_by or ())


class MetaKV(SQLModel, table=True):
    k: str = Field(primary_key=True)
    v: str


COLLECTION_MODELS: Dict[str, Type[SQLModel]] = {
    "users": User,
    "missions": Mission,
    "history": HistoryRecord,
    "bazaar": BazaarItem,
}


def collection_fields(collection: str) -> frozenset[str]:
    """Return the field names a rule may reference for ``collection``."""

    try:
        model = COLLECTION_MODELS[collection]
    except KeyError as exc:
        raise KeyError(f"Unknown collection '{collection}'.") from exc
    return frozenset(model.model_fields)


def record_fields(record: SQLModel) -> Dict[str, Any]:
    """Return the record's fields as a plain mapping for rule evaluation."""

    return record.model_dump()


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------
def make_engine(url: str = DATABASE_URL, *, echo: bool = False) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo)
    kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=echo, **kwargs)


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def _is_lock_error(exc: Exception) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database table is locked" in message


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------
class StoreSession:
    """A single optimistic unit of work.

    Records handed out are detached from the underlying SQLModel session, so
    mutating them never writes anything by itself. Changes reach the database
    only through :meth:`save`, which conditions every update on the version
    the record was read with.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def find_by_id(self, model: Type[ModelT], record_id: str) -> ModelT:
        record = self._session.get(model, record_id)
        if record is None:
            raise RecordNotFoundError(f"{model.__tablename__} record '{record_id}' does not exist.")
        self._session.expunge(record)
        return record

    def find_all(self, model: Type[ModelT], *criteria: Any) -> List[ModelT]:
        statement = select(model)
        if criteria:
            statement = statement.where(*criteria)
        records = list(self._session.exec(statement.order_by(model.id)))
        for record in records:
            self._session.expunge(record)
        return records

    def save(self, record: ModelT) -> ModelT:
        model = type(record)
        if record.version == 0:
            record.version = 1
            self._session.add(record)
            try:
                self._session.flush()
            except IntegrityError as exc:
                record.version = 0
                raise ConflictError(f"{model.__tablename__} record '{record.id}' already exists.") from exc
            self._session.expunge(record)
            return record

        table = model.__table__
        values = {
            column.name: getattr(record, column.name)
            for column in table.columns
            if column.name not in ("id", "version")
        }
        values["version"] = record.version + 1
        statement = (
            update(table)
            .where(table.c.id == record.id)
            .where(table.c.version == record.version)
            .values(**values)
        )
        result = self._session.connection().execute(statement)
        if result.rowcount != 1:
            raise ConflictError(
                f"{model.__tablename__} record '{record.id}' changed since version {record.version}."
            )
        record.version += 1
        return record

    def get_meta(self, key: str) -> Optional[str]:
        row = self._session.get(MetaKV, key)
        return row.v if row else None

    def set_meta(self, key: str, value: str) -> None:
        row = self._session.get(MetaKV, key)
        if row:
            row.v = value
            self._session.add(row)
        else:
            self._session.add(MetaKV(k=key, v=value))
        self._session.flush()


class RecordStore:
    """Versioned record store over a SQLModel engine."""

    def __init__(self, engine: Engine, *, attempts: int = DEFAULT_SAVE_ATTEMPTS) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1.")
        self.engine = engine
        self.attempts = attempts

    @contextmanager
    def session(self) -> Iterator[StoreSession]:
        """Open a unit of work that commits on success and rolls back on error."""

        with Session(self.engine, expire_on_commit=False) as session:
            try:
                yield StoreSession(session)
                session.commit()
            except BaseException:
                session.rollback()
                raise

    def atomic(self, fn: Callable[[StoreSession], T], *, attempts: int | None = None) -> T:
        """Run ``fn`` in a unit of work, retrying on optimistic-write conflicts."""

        limit = attempts or self.attempts
        last_error: Exception | None = None
        for _ in range(limit):
            try:
                with self.session() as uow:
                    return fn(uow)
            except ConflictError as exc:
                last_error = exc
            except OperationalError as exc:
                if not _is_lock_error(exc):
                    raise
                last_error = exc
        raise ConflictError(f"Gave up after {limit} conflicting attempts: {last_error}") from last_error

    def find_by_id(self, model: Type[ModelT], record_id: str) -> ModelT:
        with self.session() as uow:
            return uow.find_by_id(model, record_id)

    def find_all(self, model: Type[ModelT], *criteria: Any) -> List[ModelT]:
        with self.session() as uow:
            return uow.find_all(model, *criteria)

    def save(self, record: ModelT) -> ModelT:
        with self.session() as uow:
            return uow.save(record)

    def get_meta(self, key: str) -> Optional[str]:
        with self.session() as uow:
            return uow.get_meta(key)

    def set_meta(self, key: str, value: str) -> None:
        with self.session() as uow:
            uow.set_meta(key, value)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------
DEFAULT_MISSIONS = (
    {"title": "Make Bed", "icon": "bed", "base_points": 10},
    {"title": "Dishes", "icon": "kitchen", "base_points": 20},
    {"title": "Vacuum", "icon": "cleaning_services", "base_points": 30},
    {"title": "Laundry", "icon": "local_laundry_service", "base_points": 25},
    {"title": "Feed Pet", "icon": "pets", "base_points": 15},
    {"title": "Take Trash", "icon": "delete", "base_points": 15},
)

DEFAULT_BAZAAR_ITEMS = (
    {"item_name": "Extra Screen Time", "cost": 50, "stock": 99},
    {"item_name": "Ice Cream Trip", "cost": 100, "stock": 5},
    {"item_name": "Movie Night Pick", "cost": 75, "stock": 10},
    {"item_name": "Late Bedtime", "cost": 40, "stock": 7},
    {"item_name": "Skip a Chore", "cost": 30, "stock": 3},
    {"item_name": "Pizza Party", "cost": 200, "stock": 2},
)


def seed_defaults(store: RecordStore) -> Dict[str, int]:
    """Insert the starter missions and bazaar items into empty collections."""

    created = {"missions": 0, "bazaar": 0}
    with store.session() as uow:
        if not uow.find_all(Mission):
            for entry in DEFAULT_MISSIONS:
                uow.save(Mission(is_active=True, **entry))
                created["missions"] += 1
        if not uow.find_all(BazaarItem):
            for entry in DEFAULT_BAZAAR_ITEMS:
                uow.save(BazaarItem(max_stock=entry["stock"], **entry))
                created["bazaar"] += 1
    return created


__all__ = [
    "User",
    "Mission",
    "HistoryRecord",
    "BazaarItem",
    "MetaKV",
    "COLLECTION_MODELS",
    "collection_fields",
    "record_fields",
    "new_record_id",
    "utcnow",
    "make_engine",
    "create_db_and_tables",
    "StoreSession",
    "RecordStore",
    "DEFAULT_MISSIONS",
    "DEFAULT_BAZAAR_ITEMS",
    "seed_defaults",
]
