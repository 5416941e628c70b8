"""Temperature History ETL Pipeline

This module ties the OpenMeteo archive client, the moving-average engine and the
temperature database together into the ingestion routines of the service.

Pipeline Operations:
- backfill(): Retrieves the configured lookback window (10 years by default) through
  today and upserts every complete day
- update_latest(): Retrieves the days after the most recent stored date through today
  and inserts the days not yet stored
- recompute_averages(): Recomputes temp_avg7 for every stored day from stored temp_avg
- export_csv(): Retrieves whole years and writes complete days to a CSV file

Moving Averages:
temp_avg7 is the mean of the temp_avg values present within the 7 calendar days ending
at a date. New data is averaged together with the stored temp_avg of the 7 days before
the first fetched day, so the first days of a new range get a full window. The stored
days only provide context and are never written again.

Chunk Failures:
backfill() and update_latest() use the fetcher they are given, which aborts on the
first failing chunk by default so no partial range is written. export_csv() always
skips failing years and logs them.

Usage:
    with TemperatureDatabase(engine) as database:
        etl = TemperatureETL(database, ChunkedArchiveFetcher(client))
        result = etl.run("update")
"""

import logging
import os
from datetime import date, timedelta
from typing import Any, Dict, List, Literal, Optional

import numpy as np
import pandas as pd
from pydantic import BaseModel

from openmeteo_client import ChunkedArchiveFetcher, DailyObservation
from temperature_models import SOURCE, TemperatureDatabase

from .moving_average import WINDOW_DAYS, calendar_moving_average

CSV_COLUMNS = {
    "date": "date",
    "temp_high": "tempHigh",
    "temp_low": "tempLow",
    "temp_avg": "tempAvg",
    "temp_avg7": "tempAvg7",
    "source": "source",
}


class IngestionResult(BaseModel):
    success: bool
    message: str
    added_count: Optional[int] = None


def subtract_years(datum: date, years: int) -> date:
    """Same calendar day a number of years earlier. February 29 maps to February 28."""
    try:
        return datum.replace(year=datum.year - years)
    except ValueError:
        return datum.replace(year=datum.year - years, day=28)


def build_records(
    observations: List[DailyObservation], history: pd.Series | None = None
) -> pd.DataFrame:
    """Convert observations into temperature records with their 7-day average.

    Args:
        observations (List[DailyObservation]): Fetched observations.
        history (pd.Series | None, optional): Stored temp_avg indexed by date, used as
            averaging context only. Fetched values win for dates present in both.

    Returns:
        pd.DataFrame: Columns date, temp_high, temp_low, temp_avg, temp_avg7, source,
            one row per observation, sorted by date. Missing values are NaN.
    """
    frame = pd.DataFrame(
        [
            {
                "date": observation.date,
                "temp_high": observation.temp_high,
                "temp_low": observation.temp_low,
                "temp_avg": observation.temp_mean,
            }
            for observation in observations
        ],
        columns=["date", "temp_high", "temp_low", "temp_avg"],
    )

    if frame.empty:
        return frame.assign(temp_avg7=pd.Series(dtype="float64"), source=SOURCE)

    frame = frame.drop_duplicates(subset="date", keep="last").sort_values("date")
    frame[["temp_high", "temp_low", "temp_avg"]] = frame[
        ["temp_high", "temp_low", "temp_avg"]
    ].astype("float64")

    series = pd.Series(frame["temp_avg"].to_numpy(), index=frame["date"].tolist())
    if history is not None and not history.empty:
        series = pd.concat([history.astype("float64"), series])

    averages = calendar_moving_average(series, window=WINDOW_DAYS)

    frame["temp_avg7"] = frame["date"].map(averages)
    frame["source"] = SOURCE

    return frame.reset_index(drop=True)


def to_records(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """DataFrame rows as dicts, NaN replaced by None."""
    return [
        {
            key: (None if isinstance(value, float) and np.isnan(value) else value)
            for key, value in row.items()
        }
        for row in frame.to_dict(orient="records")
    ]


class TemperatureETL:
    """Ingestion routines of the temperature history service.

    Attributes:
        database: Store handle, owned by the caller
        fetcher: Chunked archive fetcher
        logger: Configured logger for operation monitoring
    """

    def __init__(
        self,
        database: TemperatureDatabase | None,
        fetcher: ChunkedArchiveFetcher | None = None,
    ) -> None:
        self.database = database
        self.fetcher = fetcher

        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
        )
        self.logger = logging.getLogger(name=self.__class__.__name__)

    def __require_database(self) -> TemperatureDatabase:
        if self.database is None:
            raise RuntimeError("Database not initialized")
        return self.database

    def __require_fetcher(self) -> ChunkedArchiveFetcher:
        if self.fetcher is None:
            raise RuntimeError("Archive fetcher not initialized")
        return self.fetcher

    def backfill(self, today: date | None = None) -> int:
        """Fetch the lookback window through today and upsert every complete day.

        Args:
            today (date | None, optional): Last day to fetch. Defaults to date.today().

        Returns:
            int: Number of records written.
        """
        database = self.__require_database()
        fetcher = self.__require_fetcher()
        today = today or date.today()
        start_date = subtract_years(today, fetcher.client.config.lookback_years)

        self.logger.info(f"Starting backfill from {start_date} to {today}")

        observations = fetcher.fetch(start_date, today)
        if not observations:
            self.logger.info("No data fetched from OpenMeteo.")
            return 0

        frame = build_records(observations, database.get_lookback_history(start_date))

        return database.upsert_records(to_records(frame))

    def update_latest(self, today: date | None = None) -> int:
        """Fetch the days after the most recent stored date through today and insert them.

        Args:
            today (date | None, optional): Last day to fetch. Defaults to date.today().

        Returns:
            int: Number of records added. 0 if the store is already up to date.
        """
        database = self.__require_database()
        fetcher = self.__require_fetcher()
        today = today or date.today()

        latest_date = database.get_latest_date()
        start_date = (
            latest_date + timedelta(days=1)
            if latest_date
            else fetcher.client.config.epoch_start_date
        )

        self.logger.info(f"Determined fetch period: {start_date} to {today}")

        if start_date > today:
            self.logger.info("Data is already up to date.")
            return 0

        observations = fetcher.fetch(start_date, today)
        if not observations:
            self.logger.info("No new data fetched from OpenMeteo.")
            return 0

        frame = build_records(
            observations, database.get_lookback_history(start_date, days=WINDOW_DAYS)
        )
        frame = frame[(frame["date"] >= start_date) & (frame["date"] <= today)]

        return database.insert_new_records(to_records(frame), start_date, today)

    def recompute_averages(self) -> int:
        """Recompute temp_avg7 of every stored day from the stored temp_avg values.

        Returns:
            int: Number of records whose temp_avg7 changed.
        """
        database = self.__require_database()
        data = database.to_dataframe(database.get_table())

        if data.empty:
            self.logger.info("No data to recompute.")
            return 0

        series = pd.Series(data["temp_avg"].to_numpy(), index=data["date"].tolist())
        averages = calendar_moving_average(series)

        current = dict(zip(data["date"], data["temp_avg7"]))
        changed = {
            datum: float(value)
            for datum, value in averages.items()
            if not np.isclose(value, current[datum])
        }

        self.logger.info(f"{len(changed)} of {len(data)} moving averages changed.")

        return database.update_moving_averages(changed)

    def export_csv(
        self,
        path: str,
        start_year: int | None = None,
        end_year: int | None = None,
        today: date | None = None,
    ) -> int:
        """Fetch whole years and write every complete day to a CSV file.

        Years failing to load are logged and left out. The file is replaced atomically.

        Args:
            path (str): Target CSV file.
            start_year (int | None, optional): First year. Defaults to config.export_start_year.
            end_year (int | None, optional): Last year. Defaults to the current year.
            today (date | None, optional): Reference date. Defaults to date.today().

        Returns:
            int: Number of rows written.
        """
        client = self.__require_fetcher().client
        today = today or date.today()
        start_year = start_year or client.config.export_start_year
        end_year = end_year or today.year

        fetcher = ChunkedArchiveFetcher(client, policy="skip")
        observations = fetcher.fetch_years(start_year, end_year, today=today)

        for chunk_start, chunk_end, error in fetcher.failed_chunks:
            self.logger.warning(
                f"Year {chunk_start.year} missing from export ({chunk_start} to {chunk_end}): {error}"
            )

        frame = build_records(observations)
        frame = frame.dropna(
            subset=["temp_high", "temp_low", "temp_avg", "temp_avg7"]
        )

        export = frame.rename(columns=CSV_COLUMNS)[list(CSV_COLUMNS.values())].round(1)
        export["date"] = pd.to_datetime(export["date"]).dt.strftime("%Y-%m-%d")

        temp_csv = f"{path}.tmp"
        export.to_csv(temp_csv, index=False)
        os.replace(temp_csv, path)

        self.logger.info(f"CSV saved to {path} ({len(export)} rows)")

        return len(export)

    def run(self, mode: Literal["update", "backfill"] = "update") -> IngestionResult:
        """Run one ingestion pass and report the outcome instead of raising.

        Args:
            mode (Literal["update", "backfill"], optional): Ingestion routine. Defaults to "update".

        Returns:
            IngestionResult: Success flag, message and number of added records.
        """
        try:
            if mode == "backfill":
                count = self.backfill()
                message = f"Initial data load completed. {count} records written."
            else:
                count = self.update_latest()
                message = (
                    f"Added {count} new records."
                    if count
                    else "Data is already up to date."
                )

            return IngestionResult(success=True, message=message, added_count=count)

        except Exception as e:
            self.logger.exception("An error occurred during the ingestion routine: ")

            return IngestionResult(
                success=False,
                message=f"Error while updating temperature data: {e}",
            )
