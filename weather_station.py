import datetime as dt
import enum
import hashlib
import logging
import math
import os
import pathlib
import re
import threading
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional

import numpy as np
import pandas as pd
import requests
import xarray as xr
from tqdm.auto import tqdm

_logger = logging.getLogger("weather_station")

__all__ = [
    "HEADER",
    "Insolation",
    "LineParseError",
    "SkipReason",
    "WeatherDataset",
    "WeatherFile",
    "WeatherFileError",
    "WeatherRecord",
    "compute_insolation",
    "parse_line",
]

# ------------------------------------------------------------------
# Constants
# ------------------------------------------------------------------

HEADER = "Time,W Spd m/s,W Dir,STD W Dir,Temp 2m,Temp 8m,Glob Rad W/m2,Rel Hum %"

TIME_FORMAT = "%d/%m/%Y %H:%M"

# strptime alone would also accept unpadded fields such as "1/7/2019 9:00"
_TIME_SHAPE = re.compile(r"\d{2}/\d{2}/\d{4} \d{2}:\d{2}")

# column positions in the station CSV
_NUM_FIELDS = 8
_TIME_FIELD = 0
_WIND_FIELD = 1
_TEMP_FIELD = 4
_SUN_FIELD = 6
_HUMID_FIELD = 7

SECONDS_IN_AN_HOUR = 3600

# measurements that can never be negative
_NON_NEGATIVE = ("wind_speed", "irradiance", "humidity")

_VARIABLES = ("wind_speed", "temperature", "irradiance", "humidity")

_STATISTICS = ("count", "mean", "std", "min", "max", "median", "q25", "q75")

_VAR_DESCRIPTIONS = {
    "wind_speed": "Wind speed (m/s)",
    "temperature": "Air temperature (°C)",
    "irradiance": "Solar irradiance (W/m²)",
    "humidity": "Relative humidity (%)",
}

# -----------------------------------------------------------------------------
# Download settings
# -----------------------------------------------------------------------------
_CACHE_DIR_ENV = "WEATHER_CACHE_DIR"
_DEFAULT_CACHE_DIR = "./weather_cache"

_CHUNK = 2 << 20  # 2 MiB streaming chunk size
_TIMEOUT = 60


# ------------------------------------------------------------------
# Records
# ------------------------------------------------------------------

def _format_value(value: Optional[float]) -> str:
    return "" if value is None else str(value)


@dataclass(frozen=True)
class WeatherRecord:
    """A set of weather station measurements made at a given point in time.

    Time of measurement is always required but the measurement values can
    be ``None`` to represent missing data (an instrument fault, maintenance,
    or simply no valid measurement).

    Attributes:
        time: Combined date & time of the measurements
        wind_speed: Wind speed in metres per second
        temperature: Air temperature in Celsius
        irradiance: Solar irradiance (Watts per square metre)
        humidity: Relative humidity (%)
    """

    time: dt.datetime
    wind_speed: Optional[float] = None
    temperature: Optional[float] = None
    irradiance: Optional[float] = None
    humidity: Optional[float] = None

    def __post_init__(self):
        for name in _NON_NEGATIVE:
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative (got {value})")

    def to_csv_line(self) -> str:
        """Render this record as a line of the 8-column station CSV.

        Columns this package does not read (wind direction, its standard
        deviation and the 8 m temperature) are left blank.
        """
        fields = [""] * _NUM_FIELDS
        fields[_TIME_FIELD] = self.time.strftime(TIME_FORMAT)
        fields[_WIND_FIELD] = _format_value(self.wind_speed)
        fields[_TEMP_FIELD] = _format_value(self.temperature)
        fields[_SUN_FIELD] = _format_value(self.irradiance)
        fields[_HUMID_FIELD] = _format_value(self.humidity)
        return ",".join(fields)

    def __str__(self) -> str:
        return ",".join([
            self.time.strftime(TIME_FORMAT),
            _format_value(self.wind_speed),
            _format_value(self.temperature),
            _format_value(self.irradiance),
            _format_value(self.humidity),
        ])


# ------------------------------------------------------------------
# Line parsing
# ------------------------------------------------------------------

class SkipReason(enum.Enum):
    """Why a line of station data was left out of a dataset."""

    WRONG_FIELD_COUNT = "wrong number of fields"
    MISSING_TIME = "missing date & time"
    BAD_TIME = "badly formatted date & time"
    INVALID_VALUE = "invalid measurement"


class LineParseError(ValueError):
    """A line of station data could not be turned into a record."""

    def __init__(self, reason: SkipReason, detail: str = ""):
        self.reason = reason
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)


def _optional_float(text: str) -> Optional[float]:
    """Parse a measurement, mapping blank or unusable text to ``None``."""
    try:
        value = float(text)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def parse_line(line: str) -> WeatherRecord:
    """Turn one line of station CSV (header excluded) into a record.

    Only the date & time is needed for a line to be valid; measurements
    that are blank or not numeric simply become ``None``.

    Raises:
        LineParseError: if the line has the wrong number of fields, a
            missing or badly formatted date & time, or a negative value
            where one isn't allowed.
    """
    fields = line.split(",")
    if len(fields) != _NUM_FIELDS:
        raise LineParseError(SkipReason.WRONG_FIELD_COUNT, f"expected {_NUM_FIELDS}, got {len(fields)}")

    text = fields[_TIME_FIELD]
    if not text.strip():
        raise LineParseError(SkipReason.MISSING_TIME)

    if not _TIME_SHAPE.fullmatch(text):
        raise LineParseError(SkipReason.BAD_TIME, repr(text))
    try:
        time = dt.datetime.strptime(text, TIME_FORMAT)
    except ValueError:
        raise LineParseError(SkipReason.BAD_TIME, repr(text)) from None

    try:
        return WeatherRecord(
            time,
            wind_speed=_optional_float(fields[_WIND_FIELD]),
            temperature=_optional_float(fields[_TEMP_FIELD]),
            irradiance=_optional_float(fields[_SUN_FIELD]),
            humidity=_optional_float(fields[_HUMID_FIELD]),
        )
    except ValueError as error:
        raise LineParseError(SkipReason.INVALID_VALUE, str(error)) from error


# -----------------------------------------------------------------------------
# Line source
# -----------------------------------------------------------------------------

class WeatherFileError(OSError):
    """A station CSV file is empty or lacks the expected header."""


def _is_url(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def _stream_to_file(url: str, dest: pathlib.Path, progress: bool = False) -> pathlib.Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.exists():
        _logger.debug("Using cached copy %s of %s", dest, url)
        return dest

    _logger.info("Downloading %s → %s", url, dest)
    partial = dest.with_name(dest.name + ".part")
    try:
        with requests.get(url, stream=True, timeout=_TIMEOUT) as r:
            r.raise_for_status()
            total = int(r.headers.get("content-length", 0)) or None
            with open(partial, "wb") as fh, tqdm(
                total=total, unit="B", unit_scale=True, desc=dest.name, disable=not progress
            ) as bar:
                for chunk in r.iter_content(chunk_size=_CHUNK):
                    fh.write(chunk)
                    bar.update(len(chunk))
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    partial.replace(dest)
    return dest


def _cache_name(url: str) -> str:
    """Cache file name unique to the whole URL, keeping its file name for readability."""
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
    return f"{digest}_{url.rstrip('/').split('/')[-1]}"


class WeatherFile:
    """A CSV file of weather station data.

    ``location`` may be a local path or an HTTP(S) URL. Remote files are
    downloaded once into ``cache_dir`` (``$WEATHER_CACHE_DIR`` or
    ``./weather_cache`` by default) and read from there.

    Raises:
        FileNotFoundError: if the file does not exist
        requests.RequestException: if a remote file can't be downloaded
    """

    def __init__(
        self,
        location: str | pathlib.Path,
        *,
        cache_dir: Optional[str | pathlib.Path] = None,
        progress: bool = False,
    ):
        location = str(location)
        if _is_url(location):
            if cache_dir is None:
                cache_dir = os.getenv(_CACHE_DIR_ENV, _DEFAULT_CACHE_DIR)
            dest = pathlib.Path(cache_dir) / _cache_name(location)
            self.path = _stream_to_file(location, dest, progress=progress)
        else:
            self.path = pathlib.Path(location)
        if not self.path.exists():
            raise FileNotFoundError(f"{self.path} does not exist")
        self.location = location

    def lines(self) -> Iterator[str]:
        """Yield lines of data from this file.

        The file is checked for a valid header line, but the header itself
        is not returned.

        Raises:
            WeatherFileError: if the file is empty or has no valid header
            OSError: if reading the file fails
        """
        # undecodable bytes become U+FFFD so a bad line is skipped, not fatal
        with open(self.path, "r", encoding="utf-8-sig", errors="replace", newline="") as fh:
            first = fh.readline()
            if not first:
                raise WeatherFileError(f"No header found in {self.path}")
            if first.rstrip("\r\n") != HEADER:
                raise WeatherFileError(f"Invalid header in {self.path}")
            for line in fh:
                yield line.rstrip("\r\n")

    def __repr__(self) -> str:
        return f"<WeatherFile {self.location}>"


# ------------------------------------------------------------------
# Insolation
# ------------------------------------------------------------------

class Insolation(NamedTuple):
    """Solar energy per square metre over one day.

    ``energy`` is in J/m²; ``hours`` is the number of hourly irradiance
    measurements it was computed from.
    """

    energy: float
    hours: int


def compute_insolation(records: Iterable[WeatherRecord]) -> Optional[Insolation]:
    """Integrate hourly irradiance over a group of records.

    Each record is assumed to cover one hour. Missing irradiance adds
    nothing to the total and isn't counted in ``hours``.

    Returns:
        ``None`` if ``records`` is empty, else an :class:`Insolation`
    """
    records = list(records)
    if not records:
        return None
    hours = sum(1 for r in records if r.irradiance is not None)
    total = sum(r.irradiance if r.irradiance is not None else 0.0 for r in records)
    return Insolation(SECONDS_IN_AN_HOUR * total, hours)


def _as_date(day: dt.date | str) -> dt.date:
    if isinstance(day, str):
        return dt.date.fromisoformat(day)
    if isinstance(day, dt.datetime):
        return day.date()
    return day


# ------------------------------------------------------------------
# Main dataset class
# ------------------------------------------------------------------

class WeatherDataset(Sequence):
    """A sequence of records from a weather station.

    Records are read from lines of station CSV. Lines with the wrong number
    of fields, a missing or badly formatted date & time, or a negative value
    where none is allowed are skipped and counted in :attr:`skipped`.

    A dataset is list-like: ``len()`` gives the number of records, ``[]``
    retrieves one by position and it can be iterated over any number of
    times. Missing-value counts and the extreme-record queries are cached
    after their first evaluation, since the records never change.
    """

    def __init__(self, lines: Iterable[str], source: Optional[str] = None):
        self.source = source
        self.skip_reasons: Counter = Counter()
        self._cache: Dict[str, Any] = {}
        self._lock = threading.Lock()

        records: List[WeatherRecord] = []
        for number, line in enumerate(lines, start=1):
            try:
                records.append(parse_line(line))
            except LineParseError as error:
                self.skip_reasons[error.reason] += 1
                _logger.debug("Skipping data line %d: %s", number, error)
        self._records = tuple(records)

        if self.skipped and not self._records:
            _logger.warning("No valid records in %s (%d lines skipped)", source or "dataset", self.skipped)
        _logger.info(
            "Loaded %d records (%d skipped) from %s", len(self._records), self.skipped, source or "lines"
        )

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_file(cls, location: str | pathlib.Path, **kwargs) -> "WeatherDataset":
        """Create from a station CSV file (local path or URL).

        Keyword arguments are passed on to :class:`WeatherFile`.
        """
        data_file = WeatherFile(location, **kwargs)
        return cls(data_file.lines(), source=data_file.location)

    # ------------------------------------------------------------------
    # Sequence protocol
    # ------------------------------------------------------------------
    @property
    def skipped(self) -> int:
        """Number of lines skipped due to errors."""
        return sum(self.skip_reasons.values())

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return list(self._records[index])
        if not 0 <= index < len(self._records):
            raise IndexError(f"record index {index} out of range for dataset of size {len(self._records)}")
        return self._records[index]

    def __iter__(self) -> Iterator[WeatherRecord]:
        return iter(self._records)

    # ------------------------------------------------------------------
    # Cached queries
    # ------------------------------------------------------------------
    def _cached(self, key: str, compute: Callable[[], Any]) -> Any:
        if key in self._cache:
            return self._cache[key]
        with self._lock:
            if key not in self._cache:
                self._cache[key] = compute()
            return self._cache[key]

    def _count_missing(self, variable: str) -> int:
        return sum(1 for r in self._records if getattr(r, variable) is None)

    def _extremum(self, variable: str, largest: bool) -> Optional[WeatherRecord]:
        # missing values never win; the earliest record wins a tie
        best = None
        best_value = None
        for record in self._records:
            value = getattr(record, variable)
            if value is None:
                continue
            if best is None or (value > best_value if largest else value < best_value):
                best, best_value = record, value
        return best

    @property
    def missing_wind_speed(self) -> int:
        """Number of missing wind speed measurements."""
        return self._cached("missing_wind_speed", lambda: self._count_missing("wind_speed"))

    @property
    def missing_temperature(self) -> int:
        """Number of missing temperature measurements."""
        return self._cached("missing_temperature", lambda: self._count_missing("temperature"))

    @property
    def missing_irradiance(self) -> int:
        """Number of missing solar irradiance measurements."""
        return self._cached("missing_irradiance", lambda: self._count_missing("irradiance"))

    @property
    def missing_humidity(self) -> int:
        """Number of missing humidity measurements."""
        return self._cached("missing_humidity", lambda: self._count_missing("humidity"))

    def max_wind_speed(self) -> Optional[WeatherRecord]:
        """Find the record with the highest wind speed, or ``None`` if there are no measurements."""
        return self._cached("max_wind_speed", lambda: self._extremum("wind_speed", largest=True))

    def min_temperature(self) -> Optional[WeatherRecord]:
        """Find the record with the lowest temperature, or ``None`` if there are no measurements."""
        return self._cached("min_temperature", lambda: self._extremum("temperature", largest=False))

    def max_temperature(self) -> Optional[WeatherRecord]:
        """Find the record with the highest temperature, or ``None`` if there are no measurements."""
        return self._cached("max_temperature", lambda: self._extremum("temperature", largest=True))

    def min_humidity(self) -> Optional[WeatherRecord]:
        """Find the record with the lowest humidity, or ``None`` if there are no measurements."""
        return self._cached("min_humidity", lambda: self._extremum("humidity", largest=False))

    def max_humidity(self) -> Optional[WeatherRecord]:
        """Find the record with the highest humidity, or ``None`` if there are no measurements."""
        return self._cached("max_humidity", lambda: self._extremum("humidity", largest=True))

    # ------------------------------------------------------------------
    # Daily insolation
    # ------------------------------------------------------------------
    def insolation(self, day: dt.date | str) -> Optional[Insolation]:
        """Compute insolation for a given 24-hour period.

        Args:
            day: Date for which insolation must be computed (a ``date``, a
                ``datetime`` or an ISO-8601 date string)

        Returns:
            ``None`` if the date isn't in this dataset, otherwise the energy
            (J/m²) and the number of hours over which irradiance was integrated
        """
        day = _as_date(day)
        return compute_insolation(r for r in self._records if r.time.date() == day)

    def dates(self) -> List[dt.date]:
        """Distinct dates covered by this dataset, in order of first appearance."""
        return list(dict.fromkeys(r.time.date() for r in self._records))

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------
    def get_time_range(self) -> Dict[str, Any]:
        """Get the time range of the dataset.

        Returns:
            Dictionary with start and end times
        """
        if not self._records:
            return {
                'start_time': None,
                'end_time': None,
                'duration_days': 0,
                'total_observations': 0
            }

        start_time = min(r.time for r in self._records)
        end_time = max(r.time for r in self._records)
        return {
            'start_time': start_time,
            'end_time': end_time,
            'duration_days': (end_time - start_time).days,
            'total_observations': len(self._records)
        }

    def get_data_availability(self) -> Dict[str, Dict[str, Any]]:
        """Get data availability statistics for each measurement."""
        missing = {
            "wind_speed": self.missing_wind_speed,
            "temperature": self.missing_temperature,
            "irradiance": self.missing_irradiance,
            "humidity": self.missing_humidity,
        }
        total_obs = len(self._records)

        stats = {}
        for var in _VARIABLES:
            description = _VAR_DESCRIPTIONS[var]
            valid_obs = total_obs - missing[var]
            stats[var] = {
                'total_observations': total_obs,
                'valid_observations': valid_obs,
                'missing_observations': missing[var],
                'completeness_percent': (valid_obs / total_obs * 100) if total_obs > 0 else 0,
                'description': description,
                'units': description.split('(')[-1].split(')')[0],
            }
        return stats

    def get_summary_statistics(self, variables: Optional[List[str]] = None) -> Dict[str, Dict[str, float]]:
        """Get summary statistics for specified measurements.

        Args:
            variables: Measurements to analyze. If None, analyze all four.

        Returns:
            Dictionary with statistics for each measurement
        """
        if variables is None:
            variables = list(_VARIABLES)

        unknown = set(variables) - set(_VARIABLES)
        if unknown:
            raise ValueError(f"Variables not found in dataset: {sorted(unknown)}")

        # describe() skips NaN and reports count 0 for an all-missing column
        described = self.to_dataframe()[list(variables)].describe()
        described = described.rename(index={"50%": "median", "25%": "q25", "75%": "q75"})

        stats = {}
        for var in variables:
            column = described[var].astype(float)
            stats[var] = {name: column[name] for name in _STATISTICS}
            stats[var]["count"] = int(stats[var]["count"])
        return stats

    # ------------------------------------------------------------------
    # Export methods
    # ------------------------------------------------------------------
    def to_dataframe(self) -> pd.DataFrame:
        """Convert to pandas DataFrame with DatetimeIndex; missing values become NaN."""
        index = pd.DatetimeIndex([r.time for r in self._records], name="time")
        columns = {
            var: np.array([getattr(r, var) for r in self._records], dtype=float)
            for var in _VARIABLES
        }
        return pd.DataFrame(columns, index=index)

    def to_xarray(self) -> xr.Dataset:
        """Convert to xarray Dataset."""
        ds = xr.Dataset.from_dataframe(self.to_dataframe())
        for var in _VARIABLES:
            ds[var].attrs["description"] = _VAR_DESCRIPTIONS[var]
        return ds

    def export_to_csv(self, filepath: str | pathlib.Path) -> None:
        """Write the records back out as station CSV, header included.

        Args:
            filepath: Path to output CSV file
        """
        with open(filepath, "w", encoding="utf-8", newline="") as fh:
            fh.write(HEADER + "\n")
            for record in self._records:
                fh.write(record.to_csv_line() + "\n")
        _logger.info("Exported %d records to %s", len(self._records), filepath)

    # ------------------------------------------------------------------
    # String representation
    # ------------------------------------------------------------------
    def __repr__(self) -> str:
        time_range = self.get_time_range()
        return (f"<WeatherDataset n={len(self._records)} skipped={self.skipped} "
                f"({time_range['start_time']} to {time_range['end_time']})>")
