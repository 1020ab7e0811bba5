# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Loading and preparing the daily ozone table.

The table has one row per observed day with ozone, humidity, temperature
(Fahrenheit), day-of-week (1-7) and day-of-year (1-366). Continuous columns are
standardized, index columns are kept as integer codes and incomplete rows are
dropped before any model is fitted.
"""

from dataclasses import dataclass
from pathlib import Path
import numpy as np
import pandas as pd
from sklearn.utils import check_random_state


class StandardizationError(ValueError):
    """Raised when a column cannot be rescaled to zero mean and unit variance."""


@dataclass
class OzoneColumns:
    """
    Column names of the observation table.

    Parameters
    ----------
    ozone : str, default='ozone'
        Ozone level (continuous, response).
    humidity : str, default='humidity'
        Relative humidity (continuous).
    temperature : str, default='temp'
        Temperature in Fahrenheit (continuous).
    day_of_week : str, default='dow'
        Day-of-week code, 1-7.
    day_of_year : str, default='doy'
        Day-of-year, 1-366.
    """
    ozone: str = 'ozone'
    humidity: str = 'humidity'
    temperature: str = 'temp'
    day_of_week: str = 'dow'
    day_of_year: str = 'doy'

    @property
    def continuous(self) -> list[str]:
        return [self.ozone, self.humidity, self.temperature]

    @property
    def categorical(self) -> list[str]:
        return [self.day_of_week, self.day_of_year]

    @property
    def required(self) -> list[str]:
        return self.continuous + self.categorical


# valid code ranges for the index columns
_CODE_RANGES = {
    'day_of_week': (1, 7),
    'day_of_year': (1, 366),
}


def _check_columns(df: pd.DataFrame, columns: OzoneColumns):
    missing = [c for c in columns.required if c not in df.columns]
    if missing:
        raise ValueError(
            f"Observation table is missing required columns {missing}. "
            f"Got columns {list(df.columns)}."
        )


def load_observations(path: str | Path, columns: OzoneColumns | None = None,
                      rename: dict[str, str] | None = None) -> pd.DataFrame:
    """
    Read the observation table from a CSV file.

    Parameters
    ----------
    path : str or Path
        CSV file with one row per day. Empty cells are read as missing.
    columns : OzoneColumns or None, default=None
        Expected column names. None uses the defaults.
    rename : dict or None, default=None
        Optional mapping from CSV column names to the names in ``columns``,
        applied before the check.

    Returns
    -------
    df : DataFrame
        The raw table, unmodified apart from stripped/renamed column names.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If a required column is missing.
    """
    columns = columns or OzoneColumns()
    df = pd.read_csv(path)
    df.columns = df.columns.str.strip()
    if rename:
        df = df.rename(columns=rename)
    _check_columns(df, columns)
    return df


def standardize(x):
    """
    Rescale values to zero mean and unit (sample) variance.

    Mean and standard deviation (ddof=1) are computed over the defined values
    only; missing values stay missing.

    Parameters
    ----------
    x : Series or array-like
        Values to standardize.

    Returns
    -------
    z : Series or ndarray
        Same type and shape as the input (a Series keeps its index and name).

    Raises
    ------
    StandardizationError
        If there are no defined values or the standard deviation is zero or not
        finite (e.g. a constant column or a single value).

    Examples
    --------
    >>> z = standardize(pd.Series([1.0, 2.0, 3.0]))
    >>> float(z.mean()), float(z.std())
    (0.0, 1.0)
    """
    is_series = isinstance(x, pd.Series)
    series = x.astype(float) if is_series else pd.Series(np.asarray(x, dtype=float).ravel())
    label = f"'{series.name}'" if series.name is not None else 'values'

    defined = series.dropna()
    if defined.empty:
        raise StandardizationError(f"Cannot standardize {label}: no defined values.")
    center = defined.mean()
    scale = defined.std(ddof=1)
    # a constant column leaves rounding noise in the standard deviation
    noise_floor = np.finfo(float).eps * max(1.0, abs(center)) * len(defined)
    if (not np.isfinite(center) or not np.isfinite(scale) or defined.nunique() < 2
            or scale <= noise_floor):
        raise StandardizationError(
            f"Cannot standardize {label}: standard deviation is {scale} "
            f"over {len(defined)} defined values."
        )

    z = (series - center) / scale
    if is_series:
        return z
    else:
        return z.to_numpy()


def complete_cases(df: pd.DataFrame, columns: list[str] | None = None) -> pd.DataFrame:
    """
    Drop rows with a missing value in any of ``columns`` (all columns if None).

    Applying this to a table without missing values returns an identical table.
    """
    return df.dropna(subset=columns)


def prepare_observations(df: pd.DataFrame, columns: OzoneColumns | None = None) -> pd.DataFrame:
    """
    Standardize continuous columns, cast index columns to integer codes and drop
    incomplete rows.

    Standardization uses every row where the column is defined, before rows
    with missing values in other columns are dropped. Day-of-week and
    day-of-year keep their raw values (e.g. 1-7, not one-hot). The input frame
    is not modified.

    Parameters
    ----------
    df : DataFrame
        Raw observation table.
    columns : OzoneColumns or None, default=None
        Column names. None uses the defaults.

    Returns
    -------
    prepared : DataFrame
        New frame with the same columns.

    Raises
    ------
    ValueError
        If a required column is missing, or an index column holds values that
        are not whole numbers within its range.
    StandardizationError
        If a continuous column has zero variance.
    """
    columns = columns or OzoneColumns()
    _check_columns(df, columns)

    prepared = df.copy()
    for name in columns.continuous:
        prepared[name] = standardize(prepared[name])
    prepared = complete_cases(prepared, columns.required)

    for field_name, (low, high) in _CODE_RANGES.items():
        name = getattr(columns, field_name)
        values = prepared[name].astype(float)
        if np.any(values != np.round(values)):
            raise ValueError(f"Column '{name}' must hold whole-number codes.")
        if len(values) and (values.min() < low or values.max() > high):
            raise ValueError(
                f"Column '{name}' must lie in [{low}, {high}], "
                f"got [{values.min()}, {values.max()}]."
            )
        prepared[name] = values.astype(int)

    return prepared


def make_synthetic_observations(n: int = 330, temperature_coef: float = 2.0,
                                noise_sd: float = 10.0, columns: OzoneColumns | None = None,
                                random_state=None) -> pd.DataFrame:
    """
    Build an ozone-like table with a known linear ozone/temperature relationship.

    ``ozone = temperature_coef * temp + noise``. Humidity is unrelated to
    ozone. Rows are distinct days of a 365-day year in calendar order, with
    day-of-week following the calendar.

    Parameters
    ----------
    n : int, default=330
        Number of days, at most 365.
    temperature_coef : float, default=2.0
        True ozone/temperature slope in raw units.
    noise_sd : float, default=10.0
        Standard deviation of the Gaussian noise on ozone.
    columns : OzoneColumns or None, default=None
        Column names. None uses the defaults.
    random_state : int, RandomState instance or None, default=None
        Random state for reproducible results.

    Returns
    -------
    df : DataFrame
        Raw (unstandardized) observation table with n rows.
    """
    if not 1 <= n <= 365:
        raise ValueError(f"n must be between 1 and 365, got {n}.")
    columns = columns or OzoneColumns()
    rng = check_random_state(random_state)

    doy = np.sort(rng.choice(np.arange(1, 366), size=n, replace=False))
    dow = (doy - 1) % 7 + 1
    temp = rng.normal(62.0, 12.0, size=n)
    humidity = np.clip(rng.normal(50.0, 15.0, size=n), 1.0, 100.0)
    ozone = temperature_coef * temp + rng.normal(0.0, noise_sd, size=n)

    return pd.DataFrame({
        columns.ozone: ozone,
        columns.humidity: humidity,
        columns.temperature: temp,
        columns.day_of_week: dow,
        columns.day_of_year: doy,
    })
