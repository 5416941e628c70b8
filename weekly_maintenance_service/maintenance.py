"""Temperature History Weekly Maintenance Module

This module recomputes the 7-day average of every stored day from the stored daily
means. Daily updates only average new days against the 7 stored days before them, so
days that were stored later than their neighbours (e.g. after a skipped chunk was
backfilled) can carry an average computed over an incomplete window. The weekly job
brings all of them back in line.

Only rows whose average actually changed are updated, all in one transaction.

Example:
    python -m weekly_maintenance_service.maintenance

Scheduling:
    Run weekly, not concurrently with the daily maintenance.
"""

import logging

from temperature_etl import TemperatureETL
from temperature_models import TemperatureDatabase


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger(name="Weekly Maintenance Service")

    database = TemperatureDatabase()

    try:
        logger.info("Starting weekly maintenance job...")

        count = TemperatureETL(database).recompute_averages()

        logger.info(
            f"Weekly maintenance routine completed successfully! {count} moving averages updated."
        )
        return 0
    except Exception:
        logger.exception("An error occurred during the maintenance routine: ")
        return 1
    finally:
        database.close()


if __name__ == "__main__":
    raise SystemExit(main())
