"""Temperature History Data Model and Database Management

This module defines the SQLAlchemy ORM model for the daily temperature history
and the database interface used by the ingestion pipeline and the frontend API.

Core Components:

Database Model:
- TemperatureHistory: One row per calendar date, unique on date

Database Management:
- DatabaseEngine: Engine configuration from environment variables or an explicit URL
- TemperatureDatabase: Session-scoped interface for all database operations

Key Features:
- Date-keyed upserts (insert-or-replace) executed as one transaction per batch
- Incremental inserts that skip dates already stored in the target window
- Null filtering so only complete records reach the table
- Lookback queries providing moving-average context for new data
- Per-year queries for chart overlays

Data Schema:
- date: Calendar date, unique
- temp_high, temp_low, temp_avg: Daily max, min and mean temperature at 2m in Celsius
- temp_avg7: Trailing 7-day mean of temp_avg
- source: Provenance tag of the upstream provider

Database Configuration:
The connection URL is taken from DATABASE_URL if set. Otherwise a PostgreSQL URL
with the psycopg2 driver is built from:
- POSTGRES_USER: Database username
- POSTGRES_PASSWORD: Database password
- POSTGRES_HOST: Database server hostname
- POSTGRES_PORT: Database server port
- POSTGRES_DB: Target database name

Session Management:
    with TemperatureDatabase(engine) as database:
        database.upsert_records(records)
"""

import logging
import math
import os
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import pandas as pd
from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    Engine,
    Float,
    Integer,
    String,
    create_engine,
    extract,
    func,
    inspect,
    select,
    text,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

SOURCE = "Open-Meteo"

REQUIRED_FIELDS = ("temp_high", "temp_low", "temp_avg", "temp_avg7")

Base = declarative_base()


class TemperatureHistory(Base):
    """Daily temperature history table. One row per calendar date."""

    __tablename__ = "temperature_history"

    idx = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(Date, index=True, unique=True, nullable=False)
    temp_high = Column(Float, nullable=False)
    temp_low = Column(Float, nullable=False)
    temp_avg = Column(Float, nullable=False)
    temp_avg7 = Column(Float, nullable=False)
    source = Column(String(length=32), nullable=False, default=SOURCE)

    __table_args__ = (
        CheckConstraint(
            f"source IN ('{SOURCE}')", name="TemperatureHistory-check_source"
        ),
    )


class DatabaseEngine:
    """Database Engine Configuration and Connection Management

    Uses the given URL, the DATABASE_URL env var, or a PostgreSQL URL with the
    psycopg2 driver built from the POSTGRES_* env vars, in that order.
    In-memory SQLite URLs share one connection so all sessions see the same data.
    """

    __DIALECT = "postgresql"
    __DRIVER = "psycopg2"

    def __init__(self, url: str | None = None, echo: bool = False) -> None:
        url = url or os.getenv("DATABASE_URL") or DatabaseEngine.__postgres_url()

        kwargs: Dict[str, Any] = {}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs = {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }

        self.__engine = create_engine(url, echo=echo, **kwargs)

    @staticmethod
    def __postgres_url() -> str:
        return (
            f"{DatabaseEngine.__DIALECT}+{DatabaseEngine.__DRIVER}://"
            f"{os.getenv('POSTGRES_USER')}:{os.getenv('POSTGRES_PASSWORD')}"
            f"@{os.getenv('POSTGRES_HOST')}:{os.getenv('POSTGRES_PORT')}/{os.getenv('POSTGRES_DB')}"
        )

    @property
    def get_engine(self) -> Engine:
        return self.__engine


def is_complete(record: Mapping[str, Any]) -> bool:
    """Check that a record has every required temperature field populated."""
    for name in REQUIRED_FIELDS:
        value = record.get(name)
        if value is None or (isinstance(value, float) and math.isnan(value)):
            return False
    return True


class TemperatureDatabase:
    """Temperature Database Management Class

    Wraps one SQLAlchemy session on a shared engine. Instances are meant to be
    scoped to a single operation (one request, one service run) and closed
    afterwards, either through close() or by using the instance as a context
    manager.

    Write operations run in a single transaction per batch. On failure the
    transaction is rolled back and the error re-raised, so either the whole batch
    lands or none of it does.

    Attributes:
        logger: Configured logger instance for database operations
        DB_SESSION: SQLAlchemy session for database transactions
        bootstrap: Property indicating if the table is missing or empty

    Example:
        with TemperatureDatabase(engine) as database:
            if database.bootstrap:
                database.create_tables()
    """

    def __init__(self, engine: Engine | None = None) -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
        )
        self.logger = logging.getLogger(name=self.__class__.__name__)

        self.__engine = engine or DatabaseEngine().get_engine

        self.DB_SESSION = sessionmaker(bind=self.__engine)()

    def __enter__(self) -> "TemperatureDatabase":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def create_tables(self) -> None:
        """Creates all tables from base."""
        Base.metadata.create_all(self.__engine)

    def __bootstrap(self) -> bool:
        inspector = inspect(self.__engine)

        if TemperatureHistory.__tablename__ not in inspector.get_table_names():
            self.logger.info(
                f"Table {TemperatureHistory.__tablename__} does not exist in database."
            )
            return True

        if self.DB_SESSION.scalar(select(TemperatureHistory.idx).limit(1)) is None:
            self.logger.info(f"Table {TemperatureHistory.__tablename__} is empty")
            return True

        self.logger.info(
            f"Table {TemperatureHistory.__tablename__} exists and contains data."
        )
        return False

    def upsert_records(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Insert or replace records keyed by date.

        Records with a missing required temperature field are skipped. Existing
        dates are overwritten with the new values.

        Args:
            records (Iterable[Mapping[str, Any]]): Records with keys date, temp_high,
                temp_low, temp_avg, temp_avg7 and optionally source.

        Raises:
            SQLAlchemyError: When the write fails. The batch is rolled back.

        Returns:
            int: Number of records written.
        """
        rows = self.__prepare_rows(records)
        if not rows:
            return 0

        dialect = self.__engine.dialect.name

        def write() -> None:
            if dialect in ("postgresql", "sqlite"):
                insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
                # Bound parameter limits differ per backend, 500 rows stay below all of them.
                for offset in range(0, len(rows), 500):
                    statement = insert(TemperatureHistory).values(
                        rows[offset : offset + 500]
                    )
                    statement = statement.on_conflict_do_update(
                        index_elements=[TemperatureHistory.date],
                        set_={
                            name: statement.excluded[name]
                            for name in (*REQUIRED_FIELDS, "source")
                        },
                    )
                    self.DB_SESSION.execute(statement)
            else:
                for row in rows:
                    existing = self.DB_SESSION.scalar(
                        select(TemperatureHistory).where(
                            TemperatureHistory.date == row["date"]
                        )
                    )
                    if existing is None:
                        self.DB_SESSION.add(TemperatureHistory(**row))
                    else:
                        for name, value in row.items():
                            setattr(existing, name, value)

        self.__run_in_transaction(write)

        self.logger.info(f"Upserted {len(rows)} records.")

        return len(rows)

    def insert_new_records(
        self,
        records: Iterable[Mapping[str, Any]],
        start_date: date,
        end_date: date,
    ) -> int:
        """Insert records whose date is not yet stored within [start_date, end_date].

        Filters apply in order: dates already present in the window are dropped,
        then records with a missing required temperature field.

        Args:
            records (Iterable[Mapping[str, Any]]): Records to insert.
            start_date (date): First day of the window considered already ingested.
            end_date (date): Last day of the window (inclusive).

        Raises:
            SQLAlchemyError: When the write fails. The batch is rolled back.

        Returns:
            int: Number of records written.
        """
        existing_dates = self.get_existing_dates(start_date, end_date)

        new_records = [
            record for record in records if record["date"] not in existing_dates
        ]
        rows = self.__prepare_rows(new_records)

        if not rows:
            self.logger.info(
                "No new data to insert after filtering existing dates and null values."
            )
            return 0

        self.__run_in_transaction(
            lambda: self.DB_SESSION.add_all([TemperatureHistory(**row) for row in rows])
        )

        self.logger.info(f"Inserted {len(rows)} records.")

        return len(rows)

    def __prepare_rows(
        self, records: Iterable[Mapping[str, Any]]
    ) -> List[Dict[str, Any]]:
        rows = []
        for record in records:
            if not is_complete(record):
                self.logger.debug(f"Skip {record.get('date')}: missing values")
                continue

            rows.append(
                {
                    "date": record["date"],
                    "temp_high": float(record["temp_high"]),
                    "temp_low": float(record["temp_low"]),
                    "temp_avg": float(record["temp_avg"]),
                    "temp_avg7": float(record["temp_avg7"]),
                    "source": record.get("source") or SOURCE,
                }
            )

        return rows

    def __run_in_transaction(self, operation: Any) -> None:
        try:
            operation()
            self.DB_SESSION.commit()
        except Exception as e:
            self.logger.error(f"Error during writing data: {e}")
            self.logger.info("Rolling back transaction...")
            self.DB_SESSION.rollback()
            raise

    def update_moving_averages(self, values: Mapping[date, float]) -> int:
        """Overwrite temp_avg7 for the given dates in one transaction.

        Args:
            values (Mapping[date, float]): New temp_avg7 per date.

        Returns:
            int: Number of rows updated.
        """
        items = [(datum, float(value)) for datum, value in values.items()]
        if not items:
            return 0

        def write() -> None:
            for datum, value in items:
                self.DB_SESSION.execute(
                    update(TemperatureHistory)
                    .where(TemperatureHistory.date == datum)
                    .values(temp_avg7=value)
                )

        self.__run_in_transaction(write)

        self.logger.info(f"Updated temp_avg7 of {len(items)} records.")

        return len(items)

    def get_latest_date(self) -> Optional[date]:
        """Most recent stored date, None if the table is empty."""
        return self.DB_SESSION.scalar(select(func.max(TemperatureHistory.date)))

    def get_date_range(self) -> Tuple[Optional[date], Optional[date]]:
        """First and last stored dates, (None, None) if the table is empty."""
        row = self.DB_SESSION.execute(
            select(func.min(TemperatureHistory.date), func.max(TemperatureHistory.date))
        ).one()

        return row[0], row[1]

    def get_existing_dates(self, start_date: date, end_date: date) -> Set[date]:
        return set(
            self.DB_SESSION.scalars(
                select(TemperatureHistory.date).where(
                    TemperatureHistory.date.between(start_date, end_date)
                )
            ).all()
        )

    def get_avg_history(self, start_date: date, end_date: date) -> pd.Series:
        """Stored temp_avg values within an inclusive date range.

        Args:
            start_date (date): First day of the range.
            end_date (date): Last day of the range (inclusive).

        Returns:
            pd.Series: temp_avg indexed by date in ascending order. Empty if nothing is stored.
        """
        rows = self.DB_SESSION.execute(
            select(TemperatureHistory.date, TemperatureHistory.temp_avg)
            .where(TemperatureHistory.date.between(start_date, end_date))
            .order_by(TemperatureHistory.date)
        ).all()

        return pd.Series(
            [row[1] for row in rows],
            index=[row[0] for row in rows],
            dtype="float64",
            name="temp_avg",
        )

    def get_lookback_history(self, start_date: date, days: int = 7) -> pd.Series:
        """Stored temp_avg values of the days immediately before start_date."""
        return self.get_avg_history(
            start_date - timedelta(days=days), start_date - timedelta(days=1)
        )

    def get_data_by_years(self, years: Iterable[int]) -> Sequence[TemperatureHistory]:
        """Retrieve all records within the given calendar years, ordered by date.

        Args:
            years (Iterable[int]): Calendar years.

        Returns:
            Sequence[TemperatureHistory]: Matching ORM objects. Empty if no year matches.
        """
        years = sorted(set(years))
        if not years:
            return []

        return self.DB_SESSION.scalars(
            select(TemperatureHistory)
            .where(extract("year", TemperatureHistory.date).in_(years))
            .order_by(TemperatureHistory.date)
        ).all()

    def get_table(self) -> Sequence[TemperatureHistory]:
        """Retrieve all records ordered by date."""
        self.logger.info(f"Retrieving table {TemperatureHistory.__tablename__}...")

        return self.DB_SESSION.scalars(
            select(TemperatureHistory).order_by(TemperatureHistory.date)
        ).all()

    def to_dataframe(self, data: Sequence[TemperatureHistory]) -> pd.DataFrame:
        """Convert ORM objects to a DataFrame with one column per table column."""
        columns = [column.name for column in TemperatureHistory.__table__.columns]

        return pd.DataFrame(
            [{column: getattr(obj, column) for column in columns} for obj in data],
            columns=columns,
        )

    def connectivity_test(self) -> bool:
        """Run a trivial statement against the database."""
        try:
            self.DB_SESSION.execute(text("SELECT 1"))
            return True
        except Exception as e:
            self.logger.error(f"Connectivity test failed: {e}")
            return False

    def close(self) -> None:
        """Closes the session to the database. All operations should be completed before calling this method."""
        self.logger.info("Closing Database Session...")
        self.DB_SESSION.close()

    @property
    def bootstrap(self) -> bool:
        """True if the temperature history table is missing or empty."""
        return self.__bootstrap()
