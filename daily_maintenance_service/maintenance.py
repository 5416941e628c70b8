"""Temperature History Daily Maintenance Module

This module implements the daily update of the temperature history. It fetches the
days after the most recent stored date through today from the OpenMeteo Archive API
and inserts every complete day that is not stored yet.

Daily Maintenance Operations:
- Determines the most recent stored date, falling back to the configured epoch start
- Fetches the missing range in chunks of at most 365 days
- Computes the 7-day average using the 7 stored days before the range as context
- Inserts the new complete days in one transaction

Days the archive does not report yet (null values) are skipped and picked up by a
later run, since the next run starts after the most recent stored date.

Example:
    python -m daily_maintenance_service.maintenance

Scheduling:
    Run once a day. Runs must not overlap.
"""

import logging

from openmeteo_client import (
    ChunkedArchiveFetcher,
    OpenMeteoArchiveClient,
    OpenMeteoClientConfig,
)
from temperature_etl import TemperatureETL
from temperature_models import TemperatureDatabase


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger(name="Daily Maintenance Service")

    database = TemperatureDatabase()

    try:
        logger.info("Starting daily maintenance job...")

        database.create_tables()

        config = OpenMeteoClientConfig.from_file()
        fetcher = ChunkedArchiveFetcher(OpenMeteoArchiveClient(config))

        result = TemperatureETL(database, fetcher).run("update")

        if result.success:
            logger.info(
                f"Daily maintenance routine completed successfully! {result.message}"
            )
            return 0

        logger.error(f"Daily maintenance routine failed: {result.message}")
        return 1
    except Exception:
        logger.exception("An error occurred during the maintenance routine: ")
        return 1
    finally:
        database.close()


if __name__ == "__main__":
    raise SystemExit(main())
