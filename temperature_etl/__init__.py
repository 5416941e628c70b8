from .etl import IngestionResult, TemperatureETL, build_records, subtract_years
from .moving_average import WINDOW_DAYS, calendar_moving_average, moving_average

__all__ = [
    "IngestionResult",
    "TemperatureETL",
    "WINDOW_DAYS",
    "build_records",
    "calendar_moving_average",
    "moving_average",
    "subtract_years",
]
