"""Temperature History Bootstrap Module

This module implements the initial setup and data population routine of the temperature
history database. It creates the table if needed and loads the configured lookback
window (10 years by default) from the OpenMeteo Archive API.

The bootstrap runs conditionally based on the TemperatureDatabase.bootstrap property:
it only loads data when the table is missing or empty, so routine restarts never
reload the full history. Use --force to run the backfill regardless; existing dates
are then overwritten with the freshly fetched values.

A failing chunk aborts the whole bootstrap, nothing is written in that case.

Example:
    python -m bootstrap_service.bootstrap [--force]

Note:
    The bootstrap issues one request per 365 days with a fixed delay in between, a
    10 year window takes around a dozen requests.
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
from temperature_models import TemperatureDatabase


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Load the initial temperature history.")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run the backfill even if the table already contains data.",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger(name="Bootstrap Service")

    database = TemperatureDatabase()

    try:
        if database.bootstrap or args.force:
            logger.info("Starting bootstrap routine...")

            database.create_tables()

            config = OpenMeteoClientConfig.from_file()
            fetcher = ChunkedArchiveFetcher(OpenMeteoArchiveClient(config))

            count = TemperatureETL(database, fetcher).backfill()

            logger.info(
                f"Bootstrap routine completed successfully! {count} records written."
            )
        else:
            logger.info("Table already contains data. Skipping bootstrap routine...")

        return 0
    except Exception:
        logger.exception("An error occurred during the bootstrap routine: ")
        return 1
    finally:
        database.close()


if __name__ == "__main__":
    raise SystemExit(main())
