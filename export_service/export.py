"""Temperature History CSV Export Module

This module writes the temperature history of whole calendar years to a CSV file
without touching the database. Every year is fetched with its own request; a year that
fails to load is logged and left out while the remaining years are still exported.

Output columns:
    date,tempHigh,tempLow,tempAvg,tempAvg7,source

Days with a missing value are not written. Values are rounded to one decimal. The
file is written next to the target first and moved into place once complete.

Example:
    python -m export_service.export --start-year 2000 --output output_temperature_history.csv
"""

import argparse
import logging
from typing import List

from openmeteo_client import (
    ChunkedArchiveFetcher,
    OpenMeteoArchiveClient,
    OpenMeteoClientConfig,
)
from temperature_etl import TemperatureETL


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Export the temperature history to CSV.")
    parser.add_argument("--output", default="output_temperature_history.csv")
    parser.add_argument("--start-year", type=int, default=None)
    parser.add_argument("--end-year", type=int, default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger(name="Export Service")

    try:
        config = OpenMeteoClientConfig.from_file()
        fetcher = ChunkedArchiveFetcher(OpenMeteoArchiveClient(config), policy="skip")

        count = TemperatureETL(None, fetcher).export_csv(
            args.output, start_year=args.start_year, end_year=args.end_year
        )

        logger.info(f"Export completed successfully! {count} rows written.")
        return 0
    except Exception:
        logger.exception("An error occurred during the export: ")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
