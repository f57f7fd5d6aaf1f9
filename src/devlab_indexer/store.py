"""
Relational persistence for transactions, decoded events and metric samples.

Tables mirror the dashboard backend's layout: ``transaction_logs`` keyed by
transaction hash, ``contract_events`` unique by (transaction hash, log index),
and the append-only ``realtime_metrics`` time series. Transaction and event
inserts are insert-or-ignore so that redelivered blocks are absorbed.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    and_,
    case,
    delete,
    func,
    insert,
    select,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .models import (
    ContractEventRecord,
    MetricSample,
    MetricType,
    TransactionRecord,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

transaction_logs = Table(
    "transaction_logs",
    metadata,
    Column("transaction_hash", String(66), primary_key=True),
    Column("block_number", BigInteger, nullable=False, index=True),
    Column("block_hash", String(66), nullable=False),
    Column("from_address", String(42), nullable=False),
    Column("to_address", String(42)),
    Column("value", String(78), nullable=False, default="0"),
    Column("gas_used", BigInteger, nullable=False, default=0),
    Column("gas_price", String(78), nullable=False, default="0"),
    Column("status", String(10), nullable=False),
    Column("contract_address", String(42)),
    Column("logs", JSON, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False, index=True),
)

contract_events = Table(
    "contract_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("contract_address", String(42), nullable=False, index=True),
    Column("event_name", String(100), nullable=False, index=True),
    Column("block_number", BigInteger, nullable=False, index=True),
    Column("transaction_hash", String(66), nullable=False),
    Column("log_index", Integer, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    UniqueConstraint("transaction_hash", "log_index", name="uq_contract_events_tx_log"),
)

realtime_metrics = Table(
    "realtime_metrics",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("metric_type", String(20), nullable=False),
    Column("value", Float, nullable=False),
    Column("block_number", BigInteger),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Index("ix_realtime_metrics_type_timestamp", "metric_type", "timestamp"),
)


def to_async_url(database_url: str) -> str:
    """Select the async driver for plain postgres/sqlite URLs."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PersistenceStore:
    """Async SQLAlchemy store shared by the pipeline, aggregator and API."""

    def __init__(self, database_url: str, engine: AsyncEngine | None = None, echo: bool = False) -> None:
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy database URL
            engine: Preconfigured async engine (overrides database_url)
            echo: Log emitted SQL
        """
        self.database_url = to_async_url(database_url)

        if engine is not None:
            self.engine = engine
        elif self.database_url.startswith("postgresql"):
            self.engine = create_async_engine(
                self.database_url,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                echo=echo,
            )
        else:
            self.engine = create_async_engine(self.database_url, echo=echo)

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def ping(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def create_tables(self) -> None:
        """Create missing tables. Schema migration is out of scope."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def _insert_ignore(self, table: Table, values: dict[str, Any], conflict_columns: list[str]) -> bool:
        """
        Insert a row unless it collides with the given unique key.

        :return: True if a row was written, False for an existing key
        """
        match self.dialect:
            case "postgresql":
                stmt = postgresql.insert(table).values(**values).on_conflict_do_nothing(
                    index_elements=conflict_columns
                )
            case "sqlite":
                stmt = sqlite.insert(table).values(**values).on_conflict_do_nothing(
                    index_elements=conflict_columns
                )
            case _:
                stmt = insert(table).values(**values)

        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
        except IntegrityError:
            return False

        return result.rowcount > 0

    async def insert_transaction(self, record: TransactionRecord) -> bool:
        """Persist a transaction record; a known hash is a no-op."""
        return await self._insert_ignore(
            transaction_logs,
            {
                "transaction_hash": record.hash,
                "block_number": record.block_number,
                "block_hash": record.block_hash,
                "from_address": record.from_address,
                "to_address": record.to_address,
                "value": record.value,
                "gas_used": record.gas_used,
                "gas_price": record.gas_price,
                "status": record.status.value,
                "contract_address": record.contract_address,
                "logs": list(record.raw_logs),
                "timestamp": record.observed_at,
            },
            ["transaction_hash"],
        )

    async def insert_event(self, record: ContractEventRecord) -> bool:
        """Persist a decoded event; a known (tx, log index) is a no-op."""
        return await self._insert_ignore(
            contract_events,
            {
                "contract_address": record.contract_address,
                "event_name": record.event_name,
                "block_number": record.block_number,
                "transaction_hash": record.transaction_hash,
                "log_index": record.log_index,
                "event_data": record.decoded_args,
                "timestamp": record.observed_at,
            },
            ["transaction_hash", "log_index"],
        )

    async def insert_metric(self, sample: MetricSample) -> None:
        """Append a metric sample."""
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(realtime_metrics).values(
                    metric_type=sample.metric_type.value,
                    value=sample.value,
                    block_number=sample.block_number,
                    timestamp=sample.observed_at,
                )
            )

    async def count_transactions_since(self, since: datetime) -> int:
        """Number of transactions observed strictly after ``since``."""
        stmt = select(func.count()).select_from(transaction_logs).where(
            transaction_logs.c.timestamp > since
        )
        async with self.engine.connect() as conn:
            return int((await conn.execute(stmt)).scalar_one())

    async def error_counts_since(self, since: datetime) -> tuple[int, int]:
        """Return (total, reverted) transaction counts after ``since``."""
        stmt = select(
            func.count(),
            func.count(case((transaction_logs.c.status == TransactionStatus.REVERT.value, 1))),
        ).where(transaction_logs.c.timestamp > since)
        async with self.engine.connect() as conn:
            total, failed = (await conn.execute(stmt)).one()
        return int(total or 0), int(failed or 0)

    async def average_gas_since(self, since: datetime) -> float:
        """Mean gas used by transactions with nonzero gas after ``since``, 0 if none."""
        stmt = select(func.avg(transaction_logs.c.gas_used)).where(
            and_(transaction_logs.c.timestamp > since, transaction_logs.c.gas_used > 0)
        )
        async with self.engine.connect() as conn:
            avg_gas = (await conn.execute(stmt)).scalar_one()
        return float(avg_gas) if avg_gas is not None else 0.0

    async def delete_metrics_before(self, cutoff: datetime) -> int:
        """Remove metric samples older than ``cutoff``, returning the count."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                delete(realtime_metrics).where(realtime_metrics.c.timestamp < cutoff)
            )
        return result.rowcount or 0

    async def get_metric_history(
        self, since: datetime, metric_type: MetricType | None = None
    ) -> list[MetricSample]:
        """Metric samples after ``since``, oldest first."""
        stmt = select(realtime_metrics).where(realtime_metrics.c.timestamp > since)
        if metric_type is not None:
            stmt = stmt.where(realtime_metrics.c.metric_type == metric_type.value)
        stmt = stmt.order_by(realtime_metrics.c.timestamp.asc(), realtime_metrics.c.id.asc())

        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()

        return [
            MetricSample(
                metric_type=MetricType(row["metric_type"]),
                value=row["value"],
                block_number=row["block_number"],
                observed_at=_as_utc(row["timestamp"]),
            )
            for row in rows
        ]

    async def get_events(
        self,
        contract_address: str | None = None,
        event_name: str | None = None,
        block_number: int | None = None,
        limit: int = 100,
    ) -> list[ContractEventRecord]:
        """Decoded events matching the given filters, newest first."""
        stmt = select(contract_events)
        if contract_address:
            stmt = stmt.where(
                func.lower(contract_events.c.contract_address) == contract_address.lower()
            )
        if event_name:
            stmt = stmt.where(contract_events.c.event_name == event_name)
        if block_number is not None:
            stmt = stmt.where(contract_events.c.block_number == block_number)
        stmt = stmt.order_by(
            contract_events.c.block_number.desc(), contract_events.c.log_index.desc()
        ).limit(limit)

        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()

        return [
            ContractEventRecord(
                contract_address=row["contract_address"],
                event_name=row["event_name"],
                block_number=row["block_number"],
                transaction_hash=row["transaction_hash"],
                log_index=row["log_index"],
                decoded_args=row["event_data"],
                observed_at=_as_utc(row["timestamp"]),
            )
            for row in rows
        ]

    async def get_transactions(
        self, block_number: int | None = None, limit: int = 100
    ) -> list[TransactionRecord]:
        """Transaction records, optionally for one block, newest first."""
        stmt = select(transaction_logs)
        if block_number is not None:
            stmt = stmt.where(transaction_logs.c.block_number == block_number)
        stmt = stmt.order_by(
            transaction_logs.c.timestamp.desc(), transaction_logs.c.block_number.desc()
        ).limit(limit)

        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()

        return [self._row_to_transaction(row) for row in rows]

    async def get_transaction(self, tx_hash: str) -> TransactionRecord | None:
        stmt = select(transaction_logs).where(transaction_logs.c.transaction_hash == tx_hash)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).mappings().first()
        return self._row_to_transaction(row) if row else None

    @staticmethod
    def _row_to_transaction(row: Any) -> TransactionRecord:
        return TransactionRecord(
            hash=row["transaction_hash"],
            block_number=row["block_number"],
            block_hash=row["block_hash"],
            from_address=row["from_address"],
            to_address=row["to_address"],
            value=row["value"],
            gas_used=row["gas_used"],
            gas_price=row["gas_price"],
            status=TransactionStatus(row["status"]),
            contract_address=row["contract_address"],
            raw_logs=tuple(row["logs"] or ()),
            observed_at=_as_utc(row["timestamp"]),
        )
