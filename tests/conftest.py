from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

from openmeteo_client import (
    ChunkedArchiveFetcher,
    OpenMeteoArchiveClient,
    OpenMeteoClientConfig,
)
from temperature_models import DatabaseEngine, TemperatureDatabase


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def build_payload(
    days: List[date],
    mean: Optional[List[Optional[float]]] = None,
    low: Optional[List[Optional[float]]] = None,
    high: Optional[List[Optional[float]]] = None,
) -> Dict[str, Any]:
    """Archive API body for the given days. Defaults derive the values from the day of month."""
    mean = mean if mean is not None else [float(day.day) for day in days]
    return {
        "latitude": 35.7,
        "longitude": 139.6875,
        "timezone": "Asia/Tokyo",
        "daily_units": {"time": "iso8601"},
        "daily": {
            "time": [day.isoformat() for day in days],
            "temperature_2m_mean": mean,
            "temperature_2m_min": low
            if low is not None
            else [None if v is None else v - 5 for v in mean],
            "temperature_2m_max": high
            if high is not None
            else [None if v is None else v + 5 for v in mean],
        },
    }


class ArchiveStub:
    """Fake HTTP session serving archive responses for any requested range.

    Every day gets temperature_2m_mean = day of month, min = mean - 5, max = mean + 5,
    unless overridden through `values`. Requests starting on a date in `failing_starts`
    answer with status 500.
    """

    def __init__(
        self,
        values: Optional[Dict[date, Optional[float]]] = None,
        failing_starts: Optional[Set[date]] = None,
        overrides: Optional[Callable[[date, date], Optional[FakeResponse]]] = None,
    ):
        self.values = values or {}
        self.failing_starts = failing_starts or set()
        self.overrides = overrides
        self.calls: List[Dict[str, Any]] = []

    def get(self, url: str, params: Dict[str, Any], timeout: float) -> FakeResponse:
        self.calls.append(dict(params, url=url, timeout=timeout))

        start = datetime.strptime(params["start_date"], "%Y-%m-%d").date()
        end = datetime.strptime(params["end_date"], "%Y-%m-%d").date()

        if self.overrides:
            response = self.overrides(start, end)
            if response is not None:
                return response

        if start in self.failing_starts:
            return FakeResponse(500, text='{"error": true, "reason": "Internal"}')

        days = [start + timedelta(days=i) for i in range((end - start).days + 1)]
        mean = [self.values.get(day, float(day.day)) for day in days]

        return FakeResponse(200, payload=build_payload(days, mean=mean))

    @property
    def requested_ranges(self) -> List[tuple]:
        return [(call["start_date"], call["end_date"]) for call in self.calls]


@pytest.fixture
def config() -> OpenMeteoClientConfig:
    return OpenMeteoClientConfig(request_delay=0.0)


@pytest.fixture
def archive_stub() -> ArchiveStub:
    return ArchiveStub()


@pytest.fixture
def client(config: OpenMeteoClientConfig, archive_stub: ArchiveStub) -> OpenMeteoArchiveClient:
    return OpenMeteoArchiveClient(config, session=archive_stub)  # type: ignore[arg-type]


@pytest.fixture
def fetcher(client: OpenMeteoArchiveClient) -> ChunkedArchiveFetcher:
    return ChunkedArchiveFetcher(client)


@pytest.fixture
def engine():
    engine = DatabaseEngine("sqlite://").get_engine
    with TemperatureDatabase(engine) as database:
        database.create_tables()
    yield engine
    engine.dispose()


@pytest.fixture
def database(engine):
    database = TemperatureDatabase(engine)
    yield database
    database.close()


def make_record(
    datum: date,
    temp_avg: Optional[float] = 10.0,
    temp_high: Optional[float] = 15.0,
    temp_low: Optional[float] = 5.0,
    temp_avg7: Optional[float] = 10.0,
) -> Dict[str, Any]:
    return {
        "date": datum,
        "temp_high": temp_high,
        "temp_low": temp_low,
        "temp_avg": temp_avg,
        "temp_avg7": temp_avg7,
    }
