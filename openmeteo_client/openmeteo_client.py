"""OpenMeteo Archive Client Library for Daily Temperature Retrieval

This module provides the client library used by the temperature history service
to retrieve daily temperature observations for a single fixed location from the
OpenMeteo Archive API. It covers configuration, request execution, response
validation and the chunked retrieval of multi-year date ranges.

Core Components:

Configuration Management:
- OpenMeteoClientConfig: Configuration system supporting JSON files and keyword overrides
- Parameter validation and type conversion for API compatibility

API Client Architecture:
- OpenMeteoArchiveClient: One request per date range, JSON response validation and
  normalization into DailyObservation records
- ChunkedArchiveFetcher: Splits long date ranges into chunks of at most 365 days and
  retrieves them sequentially with a fixed delay between requests

Error Handling:
- OpenMeteoClientError: Base class for all client errors
- ArchiveRequestError: Non-success HTTP status, carries status code and response body
- ArchiveValidationError: Response does not match the expected daily schema
- Network failures are propagated as requests exceptions

API Endpoint Supported:

OpenMeteo Archive API:
- Endpoint: https://archive-api.open-meteo.com/v1/archive
- Purpose: Historical daily weather observations
- Response: {"daily": {"time": [...], "temperature_2m_mean": [...],
  "temperature_2m_min": [...], "temperature_2m_max": [...]}}, entries nullable

Usage Patterns:

Single range:\n
    config = OpenMeteoClientConfig.from_file()
    client = OpenMeteoArchiveClient(config)
    observations = client.get_data(date(2024, 1, 1), date(2024, 1, 31))

Multi-year range:\n
    fetcher = ChunkedArchiveFetcher(client, policy="skip")
    observations = fetcher.fetch(date(2015, 1, 1), date.today())

Dependencies:
- requests_cache: HTTP caching for archive responses
- retry_requests: Connection retry configuration for the cached session
- pydantic: Response schema validation
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from time import sleep
from typing import Any, Dict, List, Literal, Optional, Tuple

import requests
import requests_cache
from pydantic import BaseModel, StrictFloat, ValidationError, model_validator
from retry_requests import retry

ChunkFailurePolicy = Literal["abort", "skip"]

DEFAULT_CONFIG_FILE = os.path.join(
    os.path.dirname(__file__), os.getenv("CONFIG_FILE", "config.json")
)

DEFAULT_METRICS = [
    "temperature_2m_mean",
    "temperature_2m_min",
    "temperature_2m_max",
]


class OpenMeteoClientError(Exception):
    """Base class for errors raised while retrieving archive data."""


class ArchiveRequestError(OpenMeteoClientError):
    """Raised when the archive API answers with a non-success status code."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(
            f"Failed to fetch OpenMeteo archive data: Status {status_code}, {body}"
        )


class ArchiveValidationError(OpenMeteoClientError):
    """Raised when the archive API response does not match the expected schema."""


@dataclass(frozen=True)
class DailyObservation:
    """Daily temperature observation as reported by the archive API.

    Temperatures are in degrees Celsius. Each value is None when the archive
    has no data for that day.
    """

    date: date
    temp_high: Optional[float]
    temp_low: Optional[float]
    temp_mean: Optional[float]


class DailySection(BaseModel):
    time: List[date]
    temperature_2m_mean: List[Optional[StrictFloat]]
    temperature_2m_min: List[Optional[StrictFloat]]
    temperature_2m_max: List[Optional[StrictFloat]]

    @model_validator(mode="after")
    def check_parallel_arrays(self) -> "DailySection":
        expected = len(self.time)
        for name in DEFAULT_METRICS:
            length = len(getattr(self, name))
            if length != expected:
                raise ValueError(
                    f"daily.{name} has {length} entries, expected {expected} to match daily.time"
                )
        return self


class ArchiveResponse(BaseModel):
    daily: DailySection


@dataclass
class OpenMeteoClientConfig:
    """Configuration of the OpenMeteo archive client and the ingestion pipeline.

    Config parameters are:
        - latitude, longitude: Fixed location to retrieve observations for.
        - timezone: Timezone the daily values are aggregated in.
        - metrics: Daily metrics requested from the archive API.
        - lookback_years: Number of years covered by a full backfill.
        - chunk_days: Maximum length of a single archive request in days. Must be between 1 and 365 (incl.)
        - request_delay: Seconds to wait between two chunk requests.
        - epoch_start_date: Start date of an incremental update on an empty store.
        - export_start_year: First year written by the CSV export.
        - request_timeout: Seconds before a single request fails.
        - retries: Connection retries per request. Status codes are never retried.
        - cache_file: Path of the requests_cache database.
        - cache_expire_after: Seconds a cached archive response stays valid.

    Config file needs to be in json format and may contain any subset of the
    parameters above, e.g.:

    {
        "latitude": 35.6895,
        "longitude": 139.6917,
        "timezone": "Asia/Tokyo",
        "epoch_start_date": "2023-01-01"
    }

    Raises:
        ValueError: When a parameter does not match its expected type or range.
    """

    latitude: float = 35.6895
    longitude: float = 139.6917
    timezone: str = "Asia/Tokyo"
    metrics: List[str] = field(default_factory=lambda: list(DEFAULT_METRICS))
    lookback_years: int = 10
    chunk_days: int = 365
    request_delay: float = 0.5
    epoch_start_date: date = date(2023, 1, 1)
    export_start_year: int = 2000
    request_timeout: float = 30.0
    retries: int = 0
    cache_file: str = "/tmp/.openmeteo_cache"
    cache_expire_after: int = 86399

    def __post_init__(self) -> None:
        self.latitude = self.__check_coordinate("latitude", self.latitude, 90.0)
        self.longitude = self.__check_coordinate("longitude", self.longitude, 180.0)
        self.epoch_start_date = self.__parse_date(self.epoch_start_date)

        if not isinstance(self.metrics, list) or set(DEFAULT_METRICS) - set(
            self.metrics
        ):
            raise ValueError(
                f"Parameter metrics must contain {DEFAULT_METRICS}. Got {self.metrics} instead."
            )

        if not isinstance(self.chunk_days, int) or not 365 >= self.chunk_days > 0:
            raise ValueError(
                f"Parameter chunk_days must be between 1 and 365(incl.) Got {self.chunk_days}"
            )

        if not isinstance(self.lookback_years, int) or self.lookback_years <= 0:
            raise ValueError(
                f"Parameter lookback_years must be >0. Got {self.lookback_years}"
            )

        if self.request_delay < 0:
            raise ValueError(
                f"Parameter request_delay must be >=0. Got {self.request_delay}"
            )

        if not isinstance(self.retries, int) or self.retries < 0:
            raise ValueError(f"Parameter retries must be >=0. Got {self.retries}")

    @classmethod
    def from_file(
        cls, config_file: str | None = None, **kwargs: Any
    ) -> "OpenMeteoClientConfig":
        """Load config from a json file. Kwargs overwrite parameters from the file if set.

        Args:
            config_file (str | None, optional): Path to the config file. Defaults to the
                config.json next to this module, or the CONFIG_FILE env var.

        Returns:
            OpenMeteoClientConfig: Validated config.
        """
        with open(file=config_file or DEFAULT_CONFIG_FILE, mode="r") as file:
            config: Dict[str, Any] = json.load(fp=file)

        config.update({k: v for k, v in kwargs.items() if v is not None})

        return cls(**config)

    @staticmethod
    def __parse_date(value: Any) -> date:
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            return datetime.strptime(value, "%Y-%m-%d").date()
        raise ValueError(
            f"Parameter epoch_start_date expected {date} or YYYY-MM-DD string. Got {type(value)} instead."
        )

    @staticmethod
    def __check_coordinate(name: str, value: Any, bound: float) -> float:
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise ValueError(
                f"Parameter {name} expected {float}. Got {type(value)} instead."
            )
        if not -bound <= value <= bound:
            raise ValueError(
                f"Parameter {name} must be between {-bound} and {bound}. Got {value}"
            )
        return float(value)


def split_date_range(
    start_date: date, end_date: date, chunk_days: int = 365
) -> List[Tuple[date, date]]:
    """Split an inclusive date range into consecutive chunks.

    Chunks cover the range without gaps or overlaps, each spanning at most
    chunk_days days. The last chunk is clipped to end_date.

    Args:
        start_date (date): First day of the range.
        end_date (date): Last day of the range (inclusive).
        chunk_days (int, optional): Maximum chunk length in days. Defaults to 365.

    Returns:
        List[Tuple[date, date]]: Inclusive (start, end) pairs. Empty if start_date > end_date.
    """
    if chunk_days <= 0:
        raise ValueError(f"Parameter chunk_days must be >0. Got {chunk_days}")

    chunks = []
    cursor = start_date
    while cursor <= end_date:
        chunk_end = min(cursor + timedelta(days=chunk_days - 1), end_date)
        chunks.append((cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)

    return chunks


class OpenMeteoArchiveClient:
    """OpenMeteo Archive API client for daily temperature observations.

    Issues exactly one GET request per call to get_data() for the given date
    range at the configured location and timezone, validates the JSON response
    and converts it into DailyObservation records.

    Session Configuration:
    - Cached sessions, expiring after config.cache_expire_after seconds
    - Connection retries as configured (config.retries), status codes are never retried

    Attributes:
        URL (str): Archive API endpoint.
        config: OpenMeteoClientConfig instance with API parameters
        session: HTTP session used for requests
        logger: Configured logger for operation monitoring
    """

    URL = "https://archive-api.open-meteo.com/v1/archive"

    def __init__(
        self,
        config: OpenMeteoClientConfig,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config

        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
        )
        self.logger = logging.getLogger(name=self.__class__.__name__)

        self.session = session or retry(
            requests_cache.CachedSession(
                config.cache_file, expire_after=config.cache_expire_after
            ),
            retries=config.retries,
            backoff_factor=2,
            status_to_retry=(),
        )

    def close(self) -> None:
        """Closes the HTTP session and its cache backend."""
        self.session.close()

    def build_params(self, start_date: date, end_date: date) -> Dict[str, Any]:
        return {
            "latitude": self.config.latitude,
            "longitude": self.config.longitude,
            "start_date": start_date.strftime("%Y-%m-%d"),
            "end_date": end_date.strftime("%Y-%m-%d"),
            "daily": ",".join(self.config.metrics),
            "timezone": self.config.timezone,
        }

    def get_data(self, start_date: date, end_date: date) -> List[DailyObservation]:
        """Retrieve daily observations for an inclusive date range.

        Args:
            start_date (date): First day to retrieve.
            end_date (date): Last day to retrieve (inclusive).

        Raises:
            ValueError: When start_date is after end_date.
            ArchiveRequestError: When the API answers with a non-success status.
            ArchiveValidationError: When the response does not match the expected schema.
            requests.RequestException: On network failures or timeouts.

        Returns:
            List[DailyObservation]: Observations for the days present in the response.
                Possibly fewer than requested, empty if the response holds no days.
        """
        if start_date > end_date:
            raise ValueError(
                f"Parameter start_date must not be after end_date. Got {start_date} > {end_date}"
            )

        self.logger.info(
            f"Retrieving historic data for Lat.: {self.config.latitude}° (N), Lon.: {self.config.longitude}° (E) from {start_date} to {end_date}"
        )

        response = self.session.get(
            OpenMeteoArchiveClient.URL,
            params=self.build_params(start_date, end_date),
            timeout=self.config.request_timeout,
        )

        if not response.ok:
            raise ArchiveRequestError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            raise ArchiveValidationError(
                f"OpenMeteo response is not valid JSON: {e}"
            ) from e

        observations = self.process_response(payload)

        self.logger.info(f"Fetched {len(observations)} records from OpenMeteo.")

        return observations

    def process_response(self, payload: Any) -> List[DailyObservation]:
        """Validate an archive response body and convert it into observations.

        Args:
            payload (Any): Decoded JSON body.

        Raises:
            ArchiveValidationError: When the body does not match the expected schema.

        Returns:
            List[DailyObservation]: One observation per entry of daily.time.
        """
        if not isinstance(payload, dict):
            raise ArchiveValidationError(
                f"Error during processing response. Expected type: {dict} Got: {type(payload)} instead."
            )

        daily = payload.get("daily")
        if not daily or (isinstance(daily, dict) and not daily.get("time")):
            self.logger.warning(
                "OpenMeteo response is missing daily data or time array."
            )
            return []

        try:
            parsed = ArchiveResponse.model_validate(payload)
        except ValidationError as e:
            raise ArchiveValidationError(f"Invalid OpenMeteo response: {e}") from e

        daily_data = parsed.daily

        return [
            DailyObservation(
                date=datum,
                temp_high=daily_data.temperature_2m_max[idx],
                temp_low=daily_data.temperature_2m_min[idx],
                temp_mean=daily_data.temperature_2m_mean[idx],
            )
            for idx, datum in enumerate(daily_data.time)
        ]


class ChunkedArchiveFetcher:
    """Sequential multi-chunk retrieval on top of OpenMeteoArchiveClient.

    Chunks are requested strictly in chronological order, one at a time, with
    config.request_delay seconds between two requests.

    Chunk failure policies:
    - "abort": The first failing chunk propagates its error and ends the run.
    - "skip": A failing chunk is logged and recorded in failed_chunks, the run continues.

    Attributes:
        client: Archive client used per chunk
        policy: Chunk failure policy
        failed_chunks: (start, end, error) of chunks skipped during the last run
    """

    def __init__(
        self,
        client: OpenMeteoArchiveClient,
        policy: ChunkFailurePolicy = "abort",
    ) -> None:
        if policy not in ("abort", "skip"):
            raise ValueError(
                f"Parameter policy must be 'abort' or 'skip'. Got {policy} instead."
            )

        self.client = client
        self.policy = policy
        self.failed_chunks: List[Tuple[date, date, Exception]] = []
        self.logger = logging.getLogger(name=self.__class__.__name__)

    def fetch(self, start_date: date, end_date: date) -> List[DailyObservation]:
        """Retrieve an arbitrarily long date range in chunks of at most config.chunk_days days.

        Args:
            start_date (date): First day to retrieve.
            end_date (date): Last day to retrieve (inclusive).

        Returns:
            List[DailyObservation]: Observations of all successful chunks in chronological order.
        """
        chunks = split_date_range(
            start_date, end_date, chunk_days=self.client.config.chunk_days
        )

        return self._fetch_chunks(chunks)

    def fetch_years(
        self, start_year: int, end_year: int, today: date | None = None
    ) -> List[DailyObservation]:
        """Retrieve whole calendar years, one request per year. The current year ends today.

        Args:
            start_year (int): First year to retrieve.
            end_year (int): Last year to retrieve (inclusive).
            today (date | None, optional): Reference date. Defaults to date.today().

        Returns:
            List[DailyObservation]: Observations of all successful years in chronological order.
        """
        today = today or date.today()

        chunks = []
        for year in range(start_year, min(end_year, today.year) + 1):
            chunk_end = date(year, 12, 31) if year < today.year else today
            chunks.append((date(year, 1, 1), chunk_end))

        return self._fetch_chunks(chunks)

    def _fetch_chunks(self, chunks: List[Tuple[date, date]]) -> List[DailyObservation]:
        self.failed_chunks = []
        observations: List[DailyObservation] = []

        self.logger.info(
            f"Processing {len(chunks)} requests. This will take ~ {str(timedelta(seconds=self.client.config.request_delay * max(len(chunks) - 1, 0)))}"
        )

        for idx, (chunk_start, chunk_end) in enumerate(chunks):
            if idx > 0:
                sleep(self.client.config.request_delay)

            try:
                observations.extend(self.client.get_data(chunk_start, chunk_end))
            except (OpenMeteoClientError, requests.RequestException) as e:
                if self.policy == "abort":
                    raise

                self.logger.error(
                    f"Skipping chunk {chunk_start} to {chunk_end} after error: {e}"
                )
                self.failed_chunks.append((chunk_start, chunk_end, e))

        return observations
