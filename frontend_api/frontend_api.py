"""
Temperature History Frontend API

A FastAPI application that serves the stored daily temperature history to the charting
frontend and exposes the ingestion trigger.

Features:
    - Health check endpoint for monitoring database connectivity
    - Time span query for the range of stored dates
    - Per-year temperature series merged by month-day for overlay charts
    - Ingestion triggers for the incremental update and the full backfill

Endpoints:
    GET /health - Service and database health status
    GET /timespan - First and last stored date
    GET /temperatures?years=2023,2024 - Per-year 7-day average, high and low by month-day
    POST /etl - Fetch the days after the most recent stored date
    POST /etl/backfill - Fetch the full lookback window

Data Flow:
    Each request opens its own TemperatureDatabase session on the engine created at
    startup and closes it when the response is sent. Temperature series are cached per
    set of stored years, up to READ_CACHE_SIZE sets; the cache is cleared after every
    ingestion run. All ingestion runs share one archive client created at startup.
    Only one ingestion run is executed at a time, overlapping triggers are rejected.

Configuration:
    - DATABASE_URL or POSTGRES_*: Database connection, see temperature_models
    - CONFIG_FILE: OpenMeteo client config, see openmeteo_client
"""

import logging
import re
import threading
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, Iterator, List, Literal, Optional, Sequence, Tuple

import pandas as pd
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from pydantic import BaseModel

from openmeteo_client import (
    ChunkedArchiveFetcher,
    OpenMeteoArchiveClient,
    OpenMeteoClientConfig,
)
from temperature_etl import IngestionResult, TemperatureETL
from temperature_models import DatabaseEngine, TemperatureDatabase, TemperatureHistory

YEAR_PATTERN = r"^\d{4}$"

EMPTY_YEARS_MESSAGE = "Request requires at least one year. Expected comma-separated years, e.g. ?years=2023,2024"
INGESTION_RUNNING_MESSAGE = "An ingestion run is already in progress."

READ_CACHE_SIZE = 64

CHART_METRICS = {
    "temp_avg7": "avg7",
    "temp_high": "high",
    "temp_low": "low",
}

logger = logging.getLogger(name="Frontend API")


class TimeSpanResponse(BaseModel):
    start: date
    end: date


class HealthResponse(BaseModel):
    status: str
    database: str
    message: Optional[str] = None


class ReadCache:
    """Chart rows per year set, bounded to maxsize entries.

    clear() starts a new generation. Rows computed by a read that began in an
    earlier generation are not stored, so a read overlapping an ingestion run
    cannot put data from before the run back into the cache. When full, the
    oldest entry is evicted.
    """

    def __init__(self, maxsize: int = READ_CACHE_SIZE) -> None:
        self.maxsize = maxsize
        self.generation = 0
        self.__entries: Dict[Tuple[int, ...], List[Dict[str, Any]]] = {}
        self.__lock = threading.Lock()

    def get(self, key: Tuple[int, ...]) -> Optional[List[Dict[str, Any]]]:
        with self.__lock:
            return self.__entries.get(key)

    def put(
        self, key: Tuple[int, ...], rows: List[Dict[str, Any]], generation: int
    ) -> bool:
        """Store rows computed during the given generation. Returns False if the cache was cleared since."""
        with self.__lock:
            if generation != self.generation:
                return False

            if key not in self.__entries and len(self.__entries) >= self.maxsize:
                self.__entries.pop(next(iter(self.__entries)))

            self.__entries[key] = rows
            return True

    def clear(self) -> None:
        with self.__lock:
            self.__entries.clear()
            self.generation += 1

    def __len__(self) -> int:
        return len(self.__entries)

    def __contains__(self, key: object) -> bool:
        return key in self.__entries


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan definition of FastAPI app.

    - Creates the database engine and the tables on startup.
    - Creates the OpenMeteo archive client shared by all ingestion runs.
    - Closes the client session and disposes the engine on shutdown.

    Args:
        app (FastAPI): FastAPI instance.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    engine = DatabaseEngine().get_engine
    client = OpenMeteoArchiveClient(OpenMeteoClientConfig.from_file())
    try:
        app.state.engine = engine
        app.state.client = client

        with TemperatureDatabase(engine) as database:
            database.create_tables()

        yield
    finally:
        client.close()
        engine.dispose()


app = FastAPI(
    title="Temperature History API",
    description="API for retrieving the daily temperature history and triggering its ingestion",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.read_cache = ReadCache()
app.state.ingestion_lock = threading.Lock()


def get_database(request: Request) -> Iterator[TemperatureDatabase]:
    """Open a database session for the duration of one request."""
    database = TemperatureDatabase(request.app.state.engine)
    try:
        yield database
    finally:
        database.close()


def get_fetcher(request: Request) -> ChunkedArchiveFetcher:
    return ChunkedArchiveFetcher(request.app.state.client)


def parse_years(years: str | None) -> List[int]:
    """Parse a comma-separated list of years. Tokens that are not 4-digit years are ignored.

    Args:
        years (str | None): Raw query parameter, e.g. "2023,2024".

    Returns:
        List[int]: Unique years in ascending order.
    """
    if not years:
        return []

    tokens = [token.strip() for token in years.split(",")]

    return sorted({int(token) for token in tokens if re.fullmatch(YEAR_PATTERN, token)})


def build_chart_rows(records: Sequence[TemperatureHistory]) -> List[Dict[str, Any]]:
    """Merge per-year records into one row per month-day.

    Each row holds the month-day as "MM-DD" under "date" and "<year>_avg7",
    "<year>_high" and "<year>_low" for every year with data on that month-day.

    Args:
        records (Sequence[TemperatureHistory]): Records ordered by date.

    Returns:
        List[Dict[str, Any]]: Rows sorted ascending by month-day.
    """
    if not records:
        return []

    data = pd.DataFrame(
        [
            {
                "year": record.date.year,
                "date": record.date.strftime("%m-%d"),
                **{column: getattr(record, column) for column in CHART_METRICS},
            }
            for record in records
        ]
    )

    merged: pd.DataFrame | None = None
    for year, group in data.groupby("year", sort=True):
        part = group.drop(columns="year").rename(
            columns={
                column: f"{year}_{suffix}" for column, suffix in CHART_METRICS.items()
            }
        )
        merged = part if merged is None else merged.merge(part, on="date", how="outer")

    merged = merged.sort_values("date")  # type: ignore

    return [
        {key: value for key, value in row.items() if not pd.isna(value)}
        for row in merged.to_dict(orient="records")
    ]


def _run_ingestion(
    app: FastAPI,
    etl: TemperatureETL,
    mode: Literal["update", "backfill"],
    response: Response,
) -> IngestionResult:
    if not app.state.ingestion_lock.acquire(blocking=False):
        response.status_code = 409
        return IngestionResult(success=False, message=INGESTION_RUNNING_MESSAGE)

    try:
        result = etl.run(mode)
    finally:
        app.state.read_cache.clear()
        app.state.ingestion_lock.release()

    if not result.success:
        response.status_code = 500

    return result


@app.get("/health", response_model=HealthResponse)
def health_check(
    database: TemperatureDatabase = Depends(get_database),
) -> HealthResponse:
    """Health check endpoint that verifies database connectivity

    Raises:
        HTTPException: Raised when the database connectivity test fails.

    Returns:
        HealthResponse: HealthResponse object.
    """
    if database.connectivity_test():
        return HealthResponse(
            status="healthy",
            database="connected",
            message="Temperature database is accessible",
        )

    raise HTTPException(
        status_code=503,
        detail={"status": "unhealthy", "database": "disconnected"},
    )


@app.get("/timespan", response_model=TimeSpanResponse)
def get_timespan(
    database: TemperatureDatabase = Depends(get_database),
) -> TimeSpanResponse:
    """Get the first and last stored date.

    Raises:
        HTTPException: Status 404 when the store is empty.

    Returns:
        TimeSpanResponse: Object containing start and end dates.
    """
    start_date, end_date = database.get_date_range()

    if start_date is None or end_date is None:
        raise HTTPException(status_code=404, detail="No temperature data stored.")

    return TimeSpanResponse(start=start_date, end=end_date)


@app.get("/temperatures", response_model=List[Dict[str, Any]])
def get_temperatures(
    request: Request,
    years: str | None = Query(default=None),
    database: TemperatureDatabase = Depends(get_database),
) -> List[Dict[str, Any]]:
    """Get the 7-day average, high and low of the given years merged by month-day.

    Args:
        years (str | None): Comma-separated years, e.g. "2023,2024". Invalid tokens are ignored.

    Raises:
        HTTPException: Status 400 when no valid year is given.
        HTTPException: Status 500 when data retrieval fails.

    Returns:
        List[Dict[str, Any]]: Rows like {"date": "01-01", "2023_avg7": 5.2, "2023_high": 9.1, "2023_low": 1.3}
    """
    parsed_years = parse_years(years)

    if not parsed_years:
        raise HTTPException(status_code=400, detail=EMPTY_YEARS_MESSAGE)

    cache: ReadCache = request.app.state.read_cache
    generation = cache.generation

    try:
        start_date, end_date = database.get_date_range()
        if start_date is None or end_date is None:
            return []

        # Years outside the stored range have no rows and are never cached.
        cache_key = tuple(
            year for year in parsed_years if start_date.year <= year <= end_date.year
        )
        if not cache_key:
            return []

        rows = cache.get(cache_key)
        if rows is not None:
            return rows

        rows = build_chart_rows(database.get_data_by_years(cache_key))
    except Exception:
        logger.exception("Error retrieving temperature data: ")
        raise HTTPException(status_code=500, detail="Internal Server Error")

    cache.put(cache_key, rows, generation)

    return rows


@app.post("/etl", response_model=IngestionResult)
def trigger_update(
    request: Request,
    response: Response,
    database: TemperatureDatabase = Depends(get_database),
    fetcher: ChunkedArchiveFetcher = Depends(get_fetcher),
) -> IngestionResult:
    """Fetch and store the days after the most recent stored date.

    Returns:
        IngestionResult: Success flag, status message and number of added records.
    """
    return _run_ingestion(
        request.app, TemperatureETL(database, fetcher), "update", response
    )


@app.post("/etl/backfill", response_model=IngestionResult)
def trigger_backfill(
    request: Request,
    response: Response,
    database: TemperatureDatabase = Depends(get_database),
    fetcher: ChunkedArchiveFetcher = Depends(get_fetcher),
) -> IngestionResult:
    """Fetch and upsert the full lookback window.

    Returns:
        IngestionResult: Success flag, status message and number of written records.
    """
    return _run_ingestion(
        request.app, TemperatureETL(database, fetcher), "backfill", response
    )
