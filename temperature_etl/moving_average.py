"""Trailing moving averages over daily values with missing entries."""

import math
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

WINDOW_DAYS = 7


def moving_average(
    values: Sequence[Optional[float]], window: int = WINDOW_DAYS
) -> List[Optional[float]]:
    """Compute a trailing mean for each position of a sequence.

    Result i is the mean of the present values among inputs [max(0, i - window + 1) .. i].
    Missing values (None or NaN) are left out of both sum and count. If every value in
    the window is missing, result i is None.

    Args:
        values (Sequence[Optional[float]]): Ordered values, None or NaN for missing.
        window (int, optional): Window length including the current position. Defaults to 7.

    Raises:
        ValueError: When window is not positive.

    Returns:
        List[Optional[float]]: One result per input value.
    """
    if window <= 0:
        raise ValueError(f"Parameter window must be >0. Got {window}")

    if len(values) == 0:
        return []

    series = pd.Series(
        [np.nan if value is None else value for value in values], dtype="float64"
    )
    averages = series.rolling(window=window, min_periods=1).mean()

    return [None if math.isnan(value) else float(value) for value in averages]


def calendar_moving_average(series: pd.Series, window: int = WINDOW_DAYS) -> pd.Series:
    """Compute a trailing mean over calendar days for a date-indexed series.

    Each result averages the present values dated within the window days ending at
    and including its own date. Days missing from the index count as missing values.
    For duplicate dates the last value wins.

    Args:
        series (pd.Series): Values indexed by date (date, datetime or Timestamp).
        window (int, optional): Window length in days. Defaults to 7.

    Returns:
        pd.Series: Averages on the de-duplicated, sorted input index. NaN where the
            whole window is missing.
    """
    if series.empty:
        return pd.Series(dtype="float64", name=series.name)

    series = series[~series.index.duplicated(keep="last")].sort_index()
    index = pd.to_datetime(pd.Index(series.index))

    calendar = pd.date_range(start=index.min(), end=index.max(), freq="D")
    daily = pd.Series(series.to_numpy(dtype="float64"), index=index).reindex(calendar)

    averages = pd.Series(
        moving_average(daily.tolist(), window=window), index=calendar, dtype="float64"
    )

    return pd.Series(
        averages.loc[index].to_numpy(), index=series.index, name=series.name
    )
