from .temperature_models import (
    SOURCE,
    Base,
    DatabaseEngine,
    TemperatureDatabase,
    TemperatureHistory,
    is_complete,
)

__all__ = [
    "SOURCE",
    "Base",
    "DatabaseEngine",
    "TemperatureDatabase",
    "TemperatureHistory",
    "is_complete",
]
