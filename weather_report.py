#!/usr/bin/env python3
"""
Print a report on a CSV file of weather station data.

Usage:
    python weather_report.py DATAFILE           # summary of the whole dataset
    python weather_report.py DATAFILE 2019-07-01   # insolation on one day

With no date, the report covers record & skip counts, missing
measurements, the extreme wind speed, humidity and temperature records,
and the insolation on the days of the temperature extremes.
"""

import argparse
import datetime as dt
import logging
import sys

from weather_station import WeatherDataset


def _parse_date(text: str) -> dt.date:
    try:
        return dt.date.fromisoformat(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 date: {text!r}") from None


def display_summary(dataset: WeatherDataset) -> None:
    print(f"\n{len(dataset)} valid records, {dataset.skipped} skipped\n")
    print(f"Missing wind speed  : {dataset.missing_wind_speed}")
    print(f"Missing temperature : {dataset.missing_temperature}")
    print(f"Missing irradiance  : {dataset.missing_irradiance}")
    print(f"Missing humidity    : {dataset.missing_humidity}")


def display_max_wind_speed(dataset: WeatherDataset) -> None:
    rec = dataset.max_wind_speed()
    if rec is not None:
        print(f"\nHighest wind speed = {rec.wind_speed:.1f} m/s")
        print(f"(Measurement made at {rec.time:%Y-%m-%d %H:%M})\n")


def display_humidities(dataset: WeatherDataset) -> None:
    for label, rec in (("Lowest", dataset.min_humidity()), ("Highest", dataset.max_humidity())):
        if rec is not None:
            print(f"{label} humidity = {rec.humidity:.1f}%")
            print(f"(Measured at {rec.time:%Y-%m-%d %H:%M})\n")


def display_temperatures(dataset: WeatherDataset) -> None:
    for label, rec in (("Lowest", dataset.min_temperature()), ("Highest", dataset.max_temperature())):
        if rec is None:
            continue
        print(f"{label} temperature = {rec.temperature:.1f}°C")
        print(f"(Measured at {rec.time:%Y-%m-%d %H:%M})")
        day = rec.time.date()
        result = dataset.insolation(day)
        if result is not None:
            print(f"Insolation on {day} = {result.energy:.4g} J/m²")
        print()


def display_insolation(dataset: WeatherDataset, day: dt.date) -> None:
    result = dataset.insolation(day)
    if result is None:
        print("Date not found in dataset!")
        return
    print(f"Insolation on {day} = {result.energy:.4g} J/m²")
    print(f"Computed for {result.hours} hours of measurements")


def main(argv=None) -> int:
    """Run the report; returns the process exit status."""
    parser = argparse.ArgumentParser(description="Report on weather station data")
    parser.add_argument("datafile", help="path or URL of a station CSV file")
    parser.add_argument("date", nargs="?", type=_parse_date, help="ISO-8601 date for an insolation report")
    parser.add_argument("-v", "--verbose", action="store_true", help="log skipped lines")
    parser.add_argument("--progress", action="store_true", help="show download progress for URLs")
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse has already printed the usage message
        return 1 if exc.code else 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        dataset = WeatherDataset.from_file(args.datafile, progress=args.progress)
    except Exception as e:
        print(f"Error: {e}")
        return 2

    if args.date is not None:
        display_insolation(dataset, args.date)
    else:
        display_summary(dataset)
        display_max_wind_speed(dataset)
        display_humidities(dataset)
        display_temperatures(dataset)
    return 0


if __name__ == "__main__":
    sys.exit(main())
