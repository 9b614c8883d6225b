from __future__ import annotations

import logging
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterator

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    event,
    func,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class Money(TypeDecorator):
    """Decimal amounts kept as integer cents, so in-database arithmetic stays exact."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(int(value)) / 100).quantize(CENT)


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("email", String(255), unique=True, nullable=False),
    Column("phone", String(50)),
    Column("hashed_password", String(255), nullable=False),
    Column("status", String(20), nullable=False, server_default="Pending"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(50), nullable=False),
    Column("number", String(64), nullable=False),
    Column("institution", String(255), nullable=False),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("balance", Money, nullable=False),
    Column("opening_balance", Money, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "number", name="uq_accounts_user_number"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("name", String(255)),
    Column("amount", Money, nullable=False),
    Column("category", String(50), nullable=False),
    Column("type", String(50), nullable=False),
    Column("date", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category", String(50), nullable=False),
    Column("spending_limit", Money, nullable=False),
    Column("month", String(7), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "category", "month", name="uq_budgets_user_category_month"),
)


class DatabaseNotInitialized(RuntimeError):
    """Raised when the handle is used before connect() or after disconnect()."""


def _is_memory_sqlite(url: str) -> bool:
    return url in {"sqlite://", "sqlite:///"} or ":memory:" in url


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {}
    options: dict = {"connect_args": {"check_same_thread": False}}
    if _is_memory_sqlite(url):
        # every checkout must see the same in-memory database
        options["poolclass"] = StaticPool
    return options


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Process-wide handle on the relational store.

    Created once per application and handed to request handlers through a
    dependency. ``connect`` must run before any query; until then (and after
    ``disconnect``) every access raises ``DatabaseNotInitialized``.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Engine | None = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    def connect(self) -> Engine:
        if self._engine is not None:
            return self._engine
        engine = create_engine(self.url, **_engine_options(self.url))
        if engine.dialect.name == "sqlite":
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        metadata.create_all(engine)
        self._engine = engine
        logger.info("Connected to database %s", engine.url.render_as_string(hide_password=True))
        return engine

    def get(self) -> Engine:
        if self._engine is None:
            raise DatabaseNotInitialized("Database is not initialized. Call connect() first.")
        return self._engine

    @property
    def engine(self) -> Engine:
        return self.get()

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Yield a connection inside one transaction; any exception rolls it back."""
        with self.get().begin() as conn:
            yield conn

    def disconnect(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        logger.info("Disconnected from database")
