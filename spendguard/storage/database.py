"""Database models and connection management."""

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    String,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    insert,
    select,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from spendguard.utils.helpers import DEFAULT_COST_PRECISION, quantize_cost, utcnow

Base = declarative_base()


class Money(TypeDecorator):
    """Decimal amount stored as a scaled integer, so sums in SQL stay exact."""

    impl = BigInteger
    cache_ok = True

    def __init__(self, precision: int = DEFAULT_COST_PRECISION):
        super().__init__()
        self.precision = precision

    def process_bind_param(self, value: Any, dialect: Any) -> Optional[int]:
        if value is None:
            return None
        return int(quantize_cost(value, self.precision).scaleb(self.precision))

    def process_result_value(self, value: Any, dialect: Any) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-self.precision)


def naive_utc(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc_naive_now() -> datetime:
    return naive_utc(utcnow())


class PriceRecord(Base):
    """Persistent price table row, keyed by (provider, model, effective_date)."""

    __tablename__ = "price_records"
    __table_args__ = (UniqueConstraint("provider", "model", "effective_date", name="uq_price_effective"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False, index=True)
    model = Column(String, nullable=False, index=True)
    unit = Column(String, nullable=False)
    input_rate = Column(Money(), nullable=True)
    output_rate = Column(Money(), nullable=True)
    flat_rate = Column(Money(), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    billing_model = Column(String, nullable=False, default="pay_per_use")
    effective_date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utc_naive_now)

    def __repr__(self) -> str:
        return (
            f"<PriceRecord({self.provider}/{self.model}, unit={self.unit}, "
            f"effective={self.effective_date})>"
        )


class BudgetLimitRecord(Base):
    """One limit per (scope, period_type); deactivated rather than deleted."""

    __tablename__ = "budget_limits"
    __table_args__ = (
        UniqueConstraint("scope_type", "scope_id", "period_type", name="uq_budget_limit_scope_period"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope_type = Column(String, nullable=False)
    scope_id = Column(String, nullable=False)
    period_type = Column(String, nullable=False)
    limit_amount = Column(Money(), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    alert_thresholds = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, nullable=False, default=_utc_naive_now, onupdate=_utc_naive_now)


class SpendAggregateRecord(Base):
    """Accumulated spend per (scope, period_type, period_start)."""

    __tablename__ = "spend_aggregates"
    __table_args__ = (
        UniqueConstraint(
            "scope_type", "scope_id", "period_type", "period_start", name="uq_spend_aggregate_period"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope_type = Column(String, nullable=False)
    scope_id = Column(String, nullable=False)
    period_type = Column(String, nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    accumulated_amount = Column(Money(), nullable=False, default=Decimal(0))
    updated_at = Column(DateTime, nullable=False, default=_utc_naive_now)


class SpendEntryRecord(Base):
    """Idempotency key: one row per request per aggregate it was added to."""

    __tablename__ = "spend_entries"
    __table_args__ = (
        UniqueConstraint(
            "request_id",
            "scope_type",
            "scope_id",
            "period_type",
            "period_start",
            name="uq_spend_entry_request",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String, nullable=False, index=True)
    scope_type = Column(String, nullable=False)
    scope_id = Column(String, nullable=False)
    period_type = Column(String, nullable=False)
    period_start = Column(DateTime, nullable=False)
    amount = Column(Money(), nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utc_naive_now)


class CostRecord(Base):
    """Actual cost of one request."""

    __tablename__ = "cost_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String, nullable=False, unique=True)
    provider = Column(String, nullable=False, index=True)
    model = Column(String, nullable=False, index=True)
    input_units = Column(Integer, nullable=False)
    output_units = Column(Integer, nullable=False)
    input_cost = Column(Money(), nullable=False)
    output_cost = Column(Money(), nullable=False)
    total_cost = Column(Money(), nullable=False)
    currency = Column(String(3), nullable=False)
    unit = Column(String, nullable=False)
    price_source = Column(String, nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    recorded_at = Column(DateTime, nullable=False, default=_utc_naive_now, index=True)

    def __repr__(self) -> str:
        return (
            f"<CostRecord(request_id={self.request_id}, model={self.model}, "
            f"total_cost={self.total_cost} {self.currency})>"
        )


class AlertEventRecord(Base):
    """Fired threshold; the unique key makes each threshold fire once per period."""

    __tablename__ = "alert_events"
    __table_args__ = (
        UniqueConstraint(
            "scope_type",
            "scope_id",
            "period_type",
            "period_start",
            "threshold_percentage",
            name="uq_alert_threshold_period",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope_type = Column(String, nullable=False)
    scope_id = Column(String, nullable=False)
    period_type = Column(String, nullable=False)
    period_start = Column(DateTime, nullable=False)
    threshold_percentage = Column(Integer, nullable=False)
    spend_at_trigger = Column(Money(), nullable=False)
    limit_at_trigger = Column(Money(), nullable=False)
    severity = Column(String, nullable=False)
    request_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=_utc_naive_now)


class DatabaseManager:
    """Manager for database connections and operations."""

    def __init__(self, database_path: Optional[str] = None, database_url: Optional[str] = None):
        """Initialize the database manager.

        Args:
            database_path: Path to SQLite database file
            database_url: Full SQLAlchemy URL; takes precedence over the path
        """
        if database_url is None:
            if database_path is None:
                raise ValueError("database_path or database_url is required")
            self.database_path: Optional[Path] = Path(database_path)
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            database_url = f"sqlite:///{self.database_path}"
        else:
            self.database_path = None

        connect_args: Dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 5}

        self.engine = create_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,
            connect_args=connect_args,
        )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False,
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def init_db(self) -> None:
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """Drop all database tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session context manager.

        Commits on success, rolls back on any exception.

        Yields:
            SQLAlchemy Session object
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert_ignore(self, session: Session, model: Any, values: Dict[str, Any]) -> bool:
        """Insert a row unless it collides with a unique key.

        Uses the dialect's ON CONFLICT DO NOTHING where available.

        Returns:
            True if a row was inserted
        """
        if self.dialect_name == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        elif self.dialect_name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            dialect_insert = None

        table = model.__table__
        if dialect_insert is not None:
            stmt = dialect_insert(table).values(**values).on_conflict_do_nothing()
            return session.execute(stmt).rowcount == 1

        # Other dialects: look the unique key up first.
        unique_columns = [
            column.name
            for constraint in table.constraints
            if isinstance(constraint, UniqueConstraint)
            for column in constraint.columns
        ]
        criteria = [table.c[name] == values[name] for name in unique_columns if name in values]
        if criteria and session.execute(select(table.c.id).where(*criteria)).first() is not None:
            return False
        session.execute(insert(table).values(**values))
        return True
