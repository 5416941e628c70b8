from .openmeteo_client import (
    ArchiveRequestError,
    ArchiveValidationError,
    ChunkedArchiveFetcher,
    ChunkFailurePolicy,
    DailyObservation,
    OpenMeteoArchiveClient,
    OpenMeteoClientConfig,
    OpenMeteoClientError,
    split_date_range,
)

__all__ = [
    "ArchiveRequestError",
    "ArchiveValidationError",
    "ChunkedArchiveFetcher",
    "ChunkFailurePolicy",
    "DailyObservation",
    "OpenMeteoArchiveClient",
    "OpenMeteoClientConfig",
    "OpenMeteoClientError",
    "split_date_range",
]
