#!/usr/bin/env python3
"""
Jovian Decameter Radio Storm Forecaster

Forecasts the times when Jupiter's decameter radio storms (the Io-A, Io-B, Io-C
and non-Io-A sources) are likely to be heard with a shortwave receiver, best
between 18 MHz and 23 MHz. Results can optionally be limited to the times when
Jupiter is above the horizon at the observer's location.

The storm model follows the classic spaceacademy.net.au Jupiter radio program:
System III central meridian longitude from projectpluto.com, Io's phase from
akkana's jsjupiter, and a fixed table of emission windows. Planet positions
come from JPL ephemeris kernels loaded with skyfield.

License: MIT
"""

import argparse
import csv
import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple
from urllib.parse import urljoin
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import numpy as np
import requests
from bs4 import BeautifulSoup
from skyfield.api import Loader, load
from skyfield.framelib import ecliptic_frame

__version__ = "0.2.0"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Time constants
SECONDS_PER_DAY = 86400
ONE_DAY = timedelta(days=1)
DAY_KEY_FORMAT = "%Y-%m-%d"
J2000_EPOCH = datetime(2000, 1, 1, 12, 0, tzinfo=timezone.utc)
J2000_JD = 2451545.0

FULL_CIRCLE = 2 * np.pi
LIGHT_SPEED_AU_PER_DAY = 173.0  # Light-time correction: dist / 173 days
STANDARD_ALTITUDE_STELLAR = -0.5667  # Degrees, refraction-corrected horizon for point sources
RECOMMEND_CUTOFF_HOURS = 3.0  # Recommend events within this many hours of transit

# Run defaults
DEFAULT_INTERVAL_MINUTES = 30
MIN_INTERVAL_MINUTES = 1
DEFAULT_DURATION = "720h"
DATA_DIR_ENV = "JOVIAN_NOISE_DATA"

NAIF_PLANETS_URL = "https://naif.jpl.nasa.gov/pub/naif/generic_kernels/spk/planets/"

# General-purpose planetary kernels. Every entry carries Earth, Sun and the
# Jupiter barycenter, which is all the forecast needs.
EPHEMERIS_METADATA = {
    "de421.bsp": {
        "start_year": 1900,
        "end_year": 2050,
        "size_mb": 17,
        "description": "Compact classic kernel, plenty for present-day forecasts",
        "accuracy": "high",
        "priority": 5,
    },
    "de422.bsp": {
        "start_year": -3000,
        "end_year": 3000,
        "size_mb": 623,
        "description": "Long-range kernel for historical storm reconstructions",
        "accuracy": "very_high",
        "priority": 3,
    },
    "de430t.bsp": {
        "start_year": 1550,
        "end_year": 2650,
        "size_mb": 128,
        "description": "DE430 with TT-TDB, NASA mission standard",
        "accuracy": "very_high",
        "priority": 4,
    },
    "de440.bsp": {
        "start_year": 1550,
        "end_year": 2650,
        "size_mb": 114,
        "description": "Current JPL standard planetary ephemeris",
        "accuracy": "exceptional",
        "priority": 6,
    },
    "de440s.bsp": {
        "start_year": 1849,
        "end_year": 2150,
        "size_mb": 32,
        "description": "Short DE440 span, best balance of size and accuracy",
        "accuracy": "exceptional",
        "priority": 7,
    },
    "de441.bsp": {
        "start_year": -13200,
        "end_year": 17191,
        "size_mb": 3100,
        "description": "Extended DE440 variant for research work",
        "accuracy": "exceptional",
        "priority": 2,
    },
}

FALLBACK_SEQUENCE = ["de440s.bsp", "de421.bsp", "de440.bsp"]


class ForecastError(RuntimeError):
    """Base class for failures inside the forecast engine."""


class EphemerisError(ForecastError):
    """The ephemeris could not answer a position or rise/set question."""


class CircumpolarError(EphemerisError):
    """Jupiter never rises or never sets for the given day and location."""


class CacheMissError(ForecastError):
    """A day, or a neighbouring day, is missing from the visibility cache."""


class NotVisibleError(ForecastError):
    """Jupiter is below the horizon at the requested instant."""


class ConfigurationError(ValueError):
    """Invalid run options, detected before the engine starts."""


def julian_date(instant: datetime) -> float:
    """Julian Date of a civil instant. Naive datetimes are taken to be UTC."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return J2000_JD + (instant - J2000_EPOCH).total_seconds() / SECONDS_PER_DAY


def _reduce(angle: float) -> float:
    """Reduce an angle in radians into [0, 2*pi)."""
    return float(np.mod(angle, FULL_CIRCLE))


def _normalize_degrees(angle: float) -> float:
    """Reduce an angle in degrees into [0, 360)."""
    result = float(np.mod(angle, 360.0))
    # np.mod rounds tiny negative angles up to exactly 360
    return 0.0 if result >= 360.0 else result


def meridian_correction(jd: float) -> float:
    """
    Periodic correction to the linear System III meridian, in degrees.

    Combines Jupiter's equation of centre (4332.9 day period) with the
    Earth-Jupiter synodic light-time term (398.88 day period), as given at
    http://www.projectpluto.com/grs_form.htm.

    Args:
        jd: Julian Date

    Returns:
        Correction in degrees
    """
    jup_mean = np.radians((jd - 2455636.938) * 360 / 4332.89709)
    eqn_center = 5.55 * np.sin(jup_mean)
    angle = np.radians((jd - 2451870.628) * 360 / 398.884 - eqn_center)
    correction = 11 * np.sin(angle) + 5 * np.cos(angle) - 1.25 * np.cos(jup_mean) - eqn_center
    return float(correction)


def system_iii_meridian(jd: float) -> float:
    """Jupiter's System III central meridian longitude seen from Earth, degrees in [0, 360)."""
    m_full = 138.41 + 870.4535567 * jd + meridian_correction(jd)
    return _normalize_degrees(m_full)


def io_phase(jd: float, distance_au: float) -> float:
    """
    Io's orbital phase angle, corrected for light time.

    Equations from https://github.com/akkana/scripts/blob/master/jsjupiter/jupiter.js.
    Every intermediate angle is in radians; only the result is in degrees.

    Args:
        jd: Julian Date
        distance_au: Earth-Jupiter distance in AU, must be positive

    Returns:
        Io phase in degrees, [0, 360)
    """
    if distance_au <= 0:
        raise ValueError(f"Earth-Jupiter distance must be positive, got {distance_au}")

    d = jd - 2415020
    v = _reduce(np.radians(134.63 + 0.00111587 * d))
    earth_anomaly = _reduce(np.radians(358.476 + 0.9856003 * d))
    jupiter_anomaly = _reduce(np.radians(225.328 + 0.0830853 * d + 0.33 * np.sin(v)))
    j = _reduce(np.radians(221.647 + 0.9025179 * d - 0.33 * np.sin(v)))
    a = _reduce(np.radians(1.916 * np.sin(earth_anomaly) + 0.020 * np.sin(2 * earth_anomaly)))
    b = _reduce(np.radians(5.552 * np.sin(jupiter_anomaly) + 0.167 * np.sin(2 * jupiter_anomaly)))
    k = _reduce(j + a - b)

    # Earth's radius vector
    r = 1.00014 - 0.01672 * np.cos(earth_anomaly) - 0.00014 * np.cos(2 * earth_anomaly)
    psi = np.arcsin(np.clip(r / distance_au * np.sin(k), -1.0, 1.0))

    io_angle = _reduce(
        np.radians(84.5506 + 203.4058630 * (d - distance_au / LIGHT_SPEED_AU_PER_DAY)) + psi - b
    )
    return _normalize_degrees(np.degrees(io_angle) + 180.0)


def angular_separation(lon1: float, lon2: float) -> float:
    """Shorter arc between two longitudes, in degrees [0, 180]."""
    diff = abs(lon2 - lon1) % 360.0
    return min(diff, 360.0 - diff)


def distance(e_lon: float, e_dist: float, j_lon: float, j_dist: float) -> float:
    """
    Earth-Jupiter distance from heliocentric longitudes and radii.

    Applies the law of cosines across the shorter arc between the longitudes,
    so longitudes straddling 0/360 degrees are handled.

    Args:
        e_lon: Earth heliocentric longitude in degrees
        e_dist: Earth heliocentric distance in AU
        j_lon: Jupiter heliocentric longitude in degrees
        j_dist: Jupiter heliocentric distance in AU

    Returns:
        Distance in AU
    """
    angle = np.radians(angular_separation(e_lon, j_lon))
    d2 = e_dist**2 + j_dist**2 - 2 * e_dist * j_dist * np.cos(angle)
    return float(np.sqrt(max(d2, 0.0)))


class RadioSource(Enum):
    """Decameter emission sources. NONE marks a sample outside every window."""

    NONE = 0
    IO_A = 1
    IO_B = 2
    IO_C = 3
    NON_IO_A = 4

    def __str__(self) -> str:
        return _RADIO_SOURCE_NAMES.get(self, "")


_RADIO_SOURCE_NAMES = {
    RadioSource.IO_A: "Io-A",
    RadioSource.IO_B: "Io-B",
    RadioSource.IO_C: "Io-C",
    RadioSource.NON_IO_A: "non-Io-A",
}
_RADIO_SOURCES_BY_NAME = {name: source for source, name in _RADIO_SOURCE_NAMES.items()}


def radio_source_name(source: RadioSource) -> str:
    """Serialized name of an emission source. NONE has no name."""
    try:
        return _RADIO_SOURCE_NAMES[source]
    except KeyError:
        raise ValueError(f"{source!r} is not a named radio source") from None


def radio_source_from_name(name: str) -> RadioSource:
    """Parse a serialized emission source name."""
    try:
        return _RADIO_SOURCES_BY_NAME[name]
    except KeyError:
        raise ValueError(f"The name '{name}' is not a valid radio source.") from None


def classify_radio_source(meridian: float, io_deg: float) -> RadioSource:
    """
    Match a (CML, Io phase) pair against the emission windows.

    The windows are checked in order and the first match wins. Io-A and
    non-Io-A overlap between 230 and 270 degrees CML, so a sample there is
    only non-Io-A when its Io phase falls outside the Io-A range.

    Args:
        meridian: System III central meridian longitude in degrees
        io_deg: Io phase in degrees

    Returns:
        The matching RadioSource, or RadioSource.NONE
    """
    if 200 <= meridian <= 270 and 205 < io_deg < 260:
        return RadioSource.IO_A
    if 105 < meridian < 185 and 80 < io_deg < 110:
        return RadioSource.IO_B
    if (300 < meridian < 360 or 0 < meridian < 20) and 225 < io_deg < 260:
        return RadioSource.IO_C
    if 230 < meridian < 280:
        return RadioSource.NON_IO_A
    return RadioSource.NONE


@dataclass(frozen=True)
class ObserverLocation:
    """Observer coordinates in decimal degrees."""

    latitude: float  # North positive
    longitude: float  # East positive


@dataclass(frozen=True)
class JupiterDayPosition:
    """Jupiter's rise/transit/set times and apparent place for one UTC day."""

    entry_date: datetime  # UTC midnight starting the day
    rising: float  # Seconds from entry_date
    transit: float  # Seconds from entry_date
    setting: float  # Seconds from entry_date
    ra: float  # Apparent right ascension, hours
    dec: float  # Apparent declination, degrees

    def skip(self, seconds: float) -> bool:
        """True when Jupiter is below the horizon `seconds` into the day."""
        if self.rising < self.setting:
            return not (self.rising < seconds < self.setting)
        if self.rising > self.setting:
            # Visibility window crosses midnight
            return not (seconds > self.rising or seconds < self.setting)
        return True

    def to_dict(self) -> Dict:
        return {
            "entry_date": self.entry_date.isoformat(),
            "rising": self.rising,
            "transit": self.transit,
            "set": self.setting,
            "ra": self.ra,
            "dec": self.dec,
        }


@dataclass(frozen=True)
class LocalCircumstances:
    """Observer-dependent part of a forecast record."""

    transit_ha: float  # Hours from transit, negative before
    altitude: float  # Degrees
    azimuth: float  # Degrees from north through east

    @property
    def recommended(self) -> bool:
        return abs(self.transit_ha) < RECOMMEND_CUTOFF_HOURS


@dataclass(frozen=True)
class ForecastRecord:
    """A sample at which a radio source is expected to be active."""

    instant: datetime
    io_phase: float
    meridian: float
    distance: float
    radio_source: RadioSource
    local: Optional[LocalCircumstances] = None

    @property
    def recommended(self) -> bool:
        return self.local is not None and self.local.recommended

    def to_dict(self) -> Dict:
        data = {
            "instant": self.instant.isoformat(),
            "io_phase": self.io_phase,
            "meridian": self.meridian,
            "distance": self.distance,
            "radio_source": radio_source_name(self.radio_source),
        }
        if self.local is not None:
            data["transit_ha"] = self.local.transit_ha
            data["altaz"] = {
                "altitude": self.local.altitude,
                "azimuth": self.local.azimuth,
            }
            data["recommended"] = self.local.recommended
        return data


def approx_rise_transit_set(
    location: ObserverLocation,
    standard_altitude: float,
    sidereal_time: float,
    ra: float,
    dec: float,
) -> Tuple[float, float, float]:
    """
    Approximate rising, transit and setting times for one day.

    Uses the hour-angle method (Meeus, Astronomical Algorithms, ch. 15) with
    the body's place at 0h UT. Each time is reduced into [0, 86400) seconds
    of the day, so a visibility window that crosses midnight comes back with
    rising later than setting.

    Args:
        location: Observer coordinates
        standard_altitude: Altitude of the body's centre at rise/set, degrees
        sidereal_time: Apparent sidereal time at Greenwich at 0h UT, hours
        ra: Apparent right ascension, hours
        dec: Apparent declination, degrees

    Returns:
        (rising, transit, setting) in seconds of the day

    Raises:
        CircumpolarError: When the body never rises or never sets
    """
    lat = np.radians(location.latitude)
    declination = np.radians(dec)
    cos_h0 = (np.sin(np.radians(standard_altitude)) - np.sin(lat) * np.sin(declination)) / (
        np.cos(lat) * np.cos(declination)
    )
    if cos_h0 > 1:
        raise CircumpolarError(
            f"Jupiter never rises at latitude {location.latitude} (dec {dec:.2f})"
        )
    if cos_h0 < -1:
        raise CircumpolarError(
            f"Jupiter never sets at latitude {location.latitude} (dec {dec:.2f})"
        )

    half_arc = np.degrees(np.arccos(cos_h0)) / 360 * SECONDS_PER_DAY
    transit = (ra * 15 - location.longitude - sidereal_time * 15) / 360 * SECONDS_PER_DAY

    def wrap(seconds):
        return float(np.mod(seconds, SECONDS_PER_DAY))

    return wrap(transit - half_arc), wrap(transit), wrap(transit + half_arc)


def horizontal_coordinates(
    location: ObserverLocation, ra: float, dec: float, sidereal_time: float
) -> Tuple[float, float]:
    """
    Convert an apparent equatorial place to altitude and azimuth.

    Args:
        location: Observer coordinates
        ra: Right ascension, hours
        dec: Declination, degrees
        sidereal_time: Apparent sidereal time at Greenwich, hours

    Returns:
        (altitude, azimuth) in degrees, azimuth measured from north through east
    """
    hour_angle = np.radians(sidereal_time * 15 + location.longitude - ra * 15)
    lat = np.radians(location.latitude)
    declination = np.radians(dec)

    sin_alt = np.sin(lat) * np.sin(declination) + np.cos(lat) * np.cos(declination) * np.cos(
        hour_angle
    )
    altitude = np.degrees(np.arcsin(np.clip(sin_alt, -1.0, 1.0)))
    # atan2 gives azimuth from the south; rotate to north-based
    azimuth = np.degrees(
        np.arctan2(
            np.sin(hour_angle),
            np.cos(hour_angle) * np.sin(lat) - np.tan(declination) * np.cos(lat),
        )
    )
    return float(altitude), _normalize_degrees(azimuth + 180.0)


class JupiterEphemeris:
    """Answers the forecast engine's position questions from a JPL kernel."""

    BODIES = {"earth": "earth", "jupiter": "jupiter barycenter"}

    def __init__(self, ephemeris, timescale):
        self.eph = ephemeris
        self.ts = timescale
        self.sun = ephemeris["sun"]
        self.earth = ephemeris["earth"]
        self.jupiter = ephemeris["jupiter barycenter"]

    def _time(self, jd: float):
        return self.ts.ut1_jd(jd)

    def planet_longitude_distance(self, body: str, jd: float) -> Tuple[float, float, float]:
        """
        Heliocentric ecliptic coordinates of a planet.

        Args:
            body: "earth" or "jupiter"
            jd: Julian Date

        Returns:
            (longitude in degrees, latitude in degrees, distance in AU)
        """
        try:
            target = self.eph[self.BODIES[body]]
        except KeyError:
            raise EphemerisError(f"No ephemeris target for body '{body}'") from None

        position = (target - self.sun).at(self._time(jd))
        lat, lon, dist = position.frame_latlon(ecliptic_frame)
        return float(lon.degrees), float(lat.degrees), float(dist.au)

    def apparent_ra_dec(self, jd: float) -> Tuple[float, float]:
        """Jupiter's apparent right ascension (hours) and declination (degrees) of date."""
        astrometric = self.earth.at(self._time(jd)).observe(self.jupiter)
        ra, dec, _ = astrometric.apparent().radec(epoch="date")
        return float(ra.hours), float(dec.degrees)

    def apparent_sidereal_time(self, jd: float) -> float:
        """Greenwich apparent sidereal time in hours."""
        return float(self._time(jd).gast)

    def approx_rise_transit_set(
        self,
        location: ObserverLocation,
        standard_altitude: float,
        sidereal_time: float,
        ra: float,
        dec: float,
    ) -> Tuple[float, float, float]:
        return approx_rise_transit_set(location, standard_altitude, sidereal_time, ra, dec)


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class VisibilityCache:
    """
    Jupiter's rise/transit/set times for every UTC day a run touches.

    Entries are keyed by the day's date string and never change once the
    cache is built. Lookups for a missing day raise CacheMissError instead
    of guessing at visibility.
    """

    def __init__(self, location: ObserverLocation):
        self.location = location
        self.positions: Dict[str, JupiterDayPosition] = {}

    def __len__(self) -> int:
        return len(self.positions)

    def __contains__(self, day: str) -> bool:
        return day in self.positions

    @staticmethod
    def day_start(instant: datetime) -> datetime:
        """UTC midnight at the start of the instant's day."""
        return _as_utc(instant).replace(hour=0, minute=0, second=0, microsecond=0)

    @classmethod
    def day_key(cls, instant: datetime) -> str:
        return cls.day_start(instant).strftime(DAY_KEY_FORMAT)

    @classmethod
    def build(
        cls, ephemeris, location: ObserverLocation, start: datetime, end: datetime
    ) -> "VisibilityCache":
        """
        Compute one entry per day from the day before `start` through two days after `end`.

        Args:
            ephemeris: Object implementing the JupiterEphemeris interface
            location: Observer coordinates
            start: First sample instant
            end: Last instant of the run

        Returns:
            A populated VisibilityCache

        Raises:
            CircumpolarError: When some day has no rise or set
        """
        cache = cls(location)
        day = cls.day_start(start) - ONE_DAY
        last = cls.day_start(end) + 2 * ONE_DAY

        logger.info(
            f"Building Jupiter visibility cache for {location.latitude}, {location.longitude} "
            f"from {day.strftime(DAY_KEY_FORMAT)} to {last.strftime(DAY_KEY_FORMAT)}"
        )
        while day <= last:
            cache.add(cls.compute_day_position(ephemeris, location, day))
            day += ONE_DAY

        return cache

    @staticmethod
    def compute_day_position(
        ephemeris, location: ObserverLocation, day: datetime
    ) -> JupiterDayPosition:
        """Ask the ephemeris for Jupiter's place and rise/transit/set at 0h UT of `day`."""
        jd = julian_date(day)
        ra, dec = ephemeris.apparent_ra_dec(jd)
        sidereal = ephemeris.apparent_sidereal_time(jd)
        try:
            rising, transit, setting = ephemeris.approx_rise_transit_set(
                location, STANDARD_ALTITUDE_STELLAR, sidereal, ra, dec
            )
        except CircumpolarError as e:
            raise CircumpolarError(f"{day.strftime(DAY_KEY_FORMAT)}: {e}") from e

        logger.debug(
            f"{day.strftime(DAY_KEY_FORMAT)}: rise {rising:.0f}s, transit {transit:.0f}s, "
            f"set {setting:.0f}s, RA {ra:.4f}h, Dec {dec:.3f}"
        )
        return JupiterDayPosition(
            entry_date=day, rising=rising, transit=transit, setting=setting, ra=ra, dec=dec
        )

    def add(self, position: JupiterDayPosition) -> None:
        self.positions[self.day_key(position.entry_date)] = position

    def get(self, day: datetime) -> JupiterDayPosition:
        key = self.day_key(day)
        try:
            return self.positions[key]
        except KeyError:
            raise CacheMissError(f"No Jupiter position found for day {key}") from None

    def entry_for(self, instant: datetime) -> JupiterDayPosition:
        return self.get(instant)

    def seconds_of_day(self, instant: datetime) -> float:
        return (_as_utc(instant) - self.day_start(instant)).total_seconds()

    def is_visible(self, instant: datetime) -> bool:
        return not self.entry_for(instant).skip(self.seconds_of_day(instant))

    def get_correct_transit(self, instant: datetime) -> float:
        """
        Transit time to measure the instant's hour angle against.

        Near midnight the transit that belongs to the current pass of Jupiter
        can sit in the previous or next day's entry. A previous-day transit
        comes back negative, as minus the sum of the seconds since midnight
        and the seconds from that transit to midnight. A next-day transit is
        given in seconds from the start of the instant's own day, so above
        86400.

        Raises:
            CacheMissError: When the day or the needed neighbour is missing
            NotVisibleError: When Jupiter is below the horizon at the instant
        """
        jp = self.entry_for(instant)
        cur = self.seconds_of_day(instant)
        key = self.day_key(instant)

        if jp.skip(cur):
            raise NotVisibleError(f"Jupiter is not visible during the given time: {key} {cur:.0f}s")

        if jp.rising < jp.setting or (
            jp.rising > jp.setting
            and (
                (jp.transit > jp.rising and cur > jp.rising)
                or (jp.transit < jp.setting and cur < jp.setting)
            )
        ):
            return jp.transit

        if jp.transit > jp.rising:
            # Rose and transited before midnight; the pass began yesterday
            try:
                previous = self.get(jp.entry_date - ONE_DAY)
            except CacheMissError:
                raise CacheMissError(f"No Jupiter position available for the day before {key}") from None
            offset = SECONDS_PER_DAY - previous.transit
            return -(cur + offset)

        if jp.transit < jp.setting:
            # Transit comes after midnight, on tomorrow's entry
            try:
                following = self.get(jp.entry_date + ONE_DAY)
            except CacheMissError:
                raise CacheMissError(f"No Jupiter position available for the day after {key}") from None
            return following.transit + SECONDS_PER_DAY

        raise ForecastError(f"Inconsistent rise/transit/set ordering for {key} at {cur:.0f}s")

    def transit_hour_angle(self, instant: datetime) -> float:
        """Hours from transit: negative before, positive after."""
        return (self.seconds_of_day(instant) - self.get_correct_transit(instant)) / 3600

    def to_dict(self) -> Dict:
        return {key: position.to_dict() for key, position in sorted(self.positions.items())}


@dataclass
class ForecastRun:
    """Request parameters, visibility cache and results of one forecast."""

    start: datetime
    duration: timedelta
    interval: int  # Minutes
    location: Optional[ObserverLocation] = None
    display_tz: Optional[tzinfo] = None
    include_non_io_a: bool = False
    cache: Optional[VisibilityCache] = None
    records: List[ForecastRecord] = field(default_factory=list)

    @property
    def end(self) -> datetime:
        return self.start + self.duration - timedelta(seconds=1)

    @property
    def local_forecast(self) -> bool:
        return self.location is not None

    def instants(self) -> Iterator[datetime]:
        step = timedelta(minutes=self.interval)
        instant = self.start
        end = self.end
        while instant < end:
            yield instant
            instant += step

    def to_dict(self) -> Dict:
        data = {
            "start_time": self.start.isoformat(),
            "end_time": self.end.isoformat(),
            "duration": self.duration.total_seconds(),
            "interval": self.interval,
            "local_forecast": self.local_forecast,
            "coords": None,
            "location_data": display_zone_name(self.display_tz, self.start),
            "intervals": [record.to_dict() for record in self.records],
        }
        if self.location is not None:
            data["coords"] = {"lat": self.location.latitude, "lon": self.location.longitude}
        if self.cache is not None:
            data["jupiter_positions"] = self.cache.to_dict()
        return data


class ForecastCalculator:
    """Steps through a run and collects the samples where a storm source is active."""

    def __init__(self, ephemeris):
        self.ephemeris = ephemeris

    def evaluate(self, instant: datetime) -> Tuple[float, float, float, RadioSource]:
        """
        Geometry and classification for a single instant.

        Returns:
            (meridian, io phase, Earth-Jupiter distance in AU, radio source)
        """
        jd = julian_date(instant)
        e_lon, _, e_dist = self.ephemeris.planet_longitude_distance("earth", jd)
        j_lon, _, j_dist = self.ephemeris.planet_longitude_distance("jupiter", jd)

        meridian = system_iii_meridian(jd)
        dist = distance(e_lon, e_dist, j_lon, j_dist)
        phase = io_phase(jd, dist)
        return meridian, phase, dist, classify_radio_source(meridian, phase)

    def local_circumstances(self, cache: VisibilityCache, instant: datetime) -> LocalCircumstances:
        jp = cache.entry_for(instant)
        sidereal = self.ephemeris.apparent_sidereal_time(julian_date(instant))
        altitude, azimuth = horizontal_coordinates(cache.location, jp.ra, jp.dec, sidereal)
        return LocalCircumstances(
            transit_ha=cache.transit_hour_angle(instant), altitude=altitude, azimuth=azimuth
        )

    def forecast(self, run: ForecastRun) -> List[ForecastRecord]:
        """
        Produce the forecast records for a run.

        When the run has a location, the visibility cache is built first and
        samples with Jupiter below the horizon are dropped before any
        geometry is computed. Samples outside every emission window, and
        non-Io-A samples unless requested, are dropped too.

        Args:
            run: The run to fill; its records and cache are replaced

        Returns:
            Records in time order
        """
        logger.info(f"Forecasting {run.start.isoformat()} to {run.end.isoformat()} every {run.interval} min")

        if run.location is not None and run.cache is None:
            run.cache = VisibilityCache.build(self.ephemeris, run.location, run.start, run.end)

        records = []
        samples = hidden = 0
        for instant in run.instants():
            samples += 1
            if run.cache is not None and not run.cache.is_visible(instant):
                hidden += 1
                continue

            meridian, phase, dist, source = self.evaluate(instant)
            if source is RadioSource.NONE:
                continue
            if source is RadioSource.NON_IO_A and not run.include_non_io_a:
                continue

            local = None
            if run.cache is not None:
                local = self.local_circumstances(run.cache, instant)

            records.append(
                ForecastRecord(
                    instant=instant,
                    io_phase=phase,
                    meridian=meridian,
                    distance=dist,
                    radio_source=source,
                    local=local,
                )
            )

        logger.info(f"{len(records)} forecast intervals from {samples} samples ({hidden} below horizon)")
        run.records = records
        return records


class EphemerisManager:
    """Picks, loads and lists the JPL kernels the forecast reads planet positions from."""

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = data_dir
        if data_dir:
            self.data_dir = os.path.expanduser(data_dir)
            os.makedirs(self.data_dir, exist_ok=True)
            self.loader = Loader(self.data_dir)
        else:
            self.loader = load
        self.available_online = {}
        self.load_timeout = 30

    def timescale(self):
        return self.loader.timescale()

    def fetch_available_files(self) -> Dict[str, Dict[str, str]]:
        """
        List the planetary kernels on the JPL NAIF server.

        Returns:
            Dictionary of kernel file names to size, date and download URL
        """
        available_files = {}
        try:
            logger.info(f"Scanning repository: {NAIF_PLANETS_URL}")
            response = requests.get(NAIF_PLANETS_URL, timeout=self.load_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Failed to access repository {NAIF_PLANETS_URL}: {e}")
            return available_files

        soup = BeautifulSoup(response.text, "html.parser")
        for link in soup.find_all("a", href=re.compile(r"\.bsp$", re.IGNORECASE)):
            filename = link.get("href")
            if not filename:
                continue

            size_info = date_info = "Unknown"
            parent_row = link.find_parent("tr")
            if parent_row:
                cells = parent_row.find_all("td")
                if len(cells) > 1:
                    date_info = cells[1].text.strip()
                if len(cells) > 2:
                    size_info = cells[2].text.strip()

            available_files[filename] = {
                "download_url": urljoin(NAIF_PLANETS_URL, filename),
                "size": self._format_file_size(size_info),
                "modified_date": date_info,
            }

        self.available_online = available_files
        return available_files

    def _format_file_size(self, size_str: str) -> str:
        """Convert a byte count to a human-readable size."""
        try:
            size_bytes = int(size_str)
        except (ValueError, TypeError):
            return size_str
        for limit, suffix in ((1024**3, "GB"), (1024**2, "MB"), (1024, "KB")):
            if size_bytes >= limit:
                return f"{size_bytes / limit:.1f} {suffix}"
        return f"{size_bytes} bytes"

    def select_optimal_ephemeris(self, start_date: datetime, end_date: datetime) -> str:
        """
        Pick the cataloged kernel best suited to a date range.

        Covering kernels are scored on priority, file size and accuracy.

        Args:
            start_date: Start of the forecast
            end_date: End of the forecast

        Returns:
            Kernel file name
        """
        start_year, end_year = start_date.year, end_date.year
        candidates = []

        for filename, metadata in EPHEMERIS_METADATA.items():
            if start_year < metadata["start_year"] or end_year > metadata["end_year"]:
                continue

            efficiency_score = 1.0 - min(metadata["size_mb"], 1000) / 1000.0
            priority_score = metadata["priority"] / 10.0
            accuracy_bonus = {"exceptional": 0.3, "very_high": 0.2, "high": 0.1}.get(
                metadata["accuracy"], 0.0
            )
            total_score = priority_score * 0.5 + efficiency_score * 0.3 + accuracy_bonus
            candidates.append((filename, total_score, metadata))

        if not candidates:
            logger.warning(f"No cataloged ephemeris fully covers {start_year}-{end_year}")
            return "de421.bsp"

        candidates.sort(key=lambda x: x[1], reverse=True)
        best_file, score, metadata = candidates[0]

        logger.info(f"Selected ephemeris: {best_file} (score: {score:.3f})")
        logger.debug(f"  Coverage: {metadata['start_year']}-{metadata['end_year']}, ~{metadata['size_mb']}MB")
        return best_file

    def load_with_fallback(self, ephemeris_file: str, start_date: datetime, end_date: datetime):
        """
        Load a kernel, falling back to known-good kernels if it fails.

        Args:
            ephemeris_file: Preferred kernel file name or URL
            start_date: Start of the forecast
            end_date: End of the forecast

        Returns:
            Loaded skyfield kernel

        Raises:
            RuntimeError: When no kernel could be loaded
        """
        sequence = list(dict.fromkeys([ephemeris_file] + FALLBACK_SEQUENCE))

        last_error = None
        for i, filename in enumerate(sequence):
            try:
                logger.info(f"Loading ephemeris: {filename}")
                ephemeris = self.loader(filename)
            except Exception as e:
                last_error = e
                logger.warning(f"Failed to load {filename}: {e}")
                continue

            if filename in EPHEMERIS_METADATA:
                self._validate_time_coverage(filename, start_date, end_date)
            if i > 0:
                logger.warning(f"Using fallback ephemeris: {filename}")
            return ephemeris

        raise RuntimeError(f"Unable to load any ephemeris file. Last error: {last_error}") from last_error

    def _validate_time_coverage(self, filename: str, start_date: datetime, end_date: datetime):
        metadata = EPHEMERIS_METADATA[filename]
        if start_date.year < metadata["start_year"] or end_date.year > metadata["end_year"]:
            logger.warning(
                f"Time range {start_date.year}-{end_date.year} may exceed reliable coverage of "
                f"{filename} ({metadata['start_year']}-{metadata['end_year']})"
            )


def display_zone_name(display_tz: Optional[tzinfo], when: datetime) -> Optional[str]:
    """Name shown for a display time zone: the IANA key where there is one."""
    if display_tz is None:
        return None
    if isinstance(display_tz, ZoneInfo):
        return display_tz.key
    return _as_utc(when).astimezone(display_tz).tzname()


def _tabulate(rows: List[List[str]]) -> str:
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return "\n".join(
        " ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows
    )


class ForecastReporter:
    """Formats forecast runs as text tables or JSON."""

    RULE = "#" * 80

    @staticmethod
    def _local_cell(record: ForecastRecord, display_tz: tzinfo) -> str:
        local = record.instant.astimezone(display_tz)
        utc = _as_utc(record.instant)
        marker = "*" if local.date() != utc.date() else ""
        return local.strftime("%H:%M") + marker

    @classmethod
    def build_table(cls, run: ForecastRun) -> str:
        heading = ["DY", "Date", "UTC"]
        if run.display_tz is not None:
            heading.append("Local")
        heading += ["Phase°", "CML", "Dist.", "Src"]
        if run.local_forecast:
            heading += ["TrHA", "Alt.", "Az.", "Rec"]

        rows = [heading, ["-" * len(cell) for cell in heading]]
        for record in run.records:
            utc = _as_utc(record.instant)
            row = [str(utc.timetuple().tm_yday), utc.strftime("%b %d"), utc.strftime("%H:%M")]
            if run.display_tz is not None:
                row.append(cls._local_cell(record, run.display_tz))
            row += [
                f"{record.io_phase:0.2f}",
                f"{record.meridian:0.2f}",
                f"{record.distance:0.2f}",
                str(record.radio_source),
            ]
            if record.local is not None:
                row += [
                    f"{record.local.transit_ha:+0.2f}",
                    f"{record.local.altitude:0.2f}°",
                    f"{record.local.azimuth:0.2f}°",
                    "Y" if record.recommended else "N",
                ]
            rows.append(row)
        return _tabulate(rows)

    @classmethod
    def format_forecast_report(cls, run: ForecastRun) -> None:
        """Print the forecast banner and table."""
        print(cls.RULE)
        print("                Jovian Decameter Radio Storm Forecast for:")
        print(f"                    {run.start.isoformat(sep=' ')}")
        print("                                until:")
        print(f"                    {run.end.isoformat(sep=' ')}")
        if run.location is not None:
            print(f"                --- For coordinates {run.location.latitude}º, {run.location.longitude}º ---")
        if run.display_tz is not None:
            offset = _as_utc(run.start).astimezone(run.display_tz).strftime("%z")
            print(f"                Local time zone: {display_zone_name(run.display_tz, run.start)} ({offset})")
        print(cls.RULE)

        if run.records:
            print(cls.build_table(run))
        else:
            print("No radio storm events forecast in the specified time range.")
        print(cls.RULE)

    @staticmethod
    def format_summary(records: List[ForecastRecord]) -> None:
        if not records:
            return
        counts = {}
        for record in records:
            name = str(record.radio_source)
            counts[name] = counts.get(name, 0) + 1

        print(f"\nSummary: {len(records)} forecast interval(s)")
        for name, count in sorted(counts.items()):
            print(f"   {name}: {count}")
        recommended = sum(1 for record in records if record.recommended)
        if any(record.local is not None for record in records):
            print(f"   Recommended (within {RECOMMEND_CUTOFF_HOURS:g}h of transit): {recommended}")

    @staticmethod
    def format_json(run: ForecastRun) -> str:
        return json.dumps(run.to_dict(), indent="\t")

    @staticmethod
    def display_ephemeris_catalog() -> None:
        """Print the kernels the forecaster knows about."""
        print("\nPlanetary Ephemeris Catalog")
        print("=" * 100)
        for filename, meta in sorted(
            EPHEMERIS_METADATA.items(), key=lambda item: item[1]["priority"], reverse=True
        ):
            print(
                f"  {filename:12} | {meta['start_year']:6d}-{meta['end_year']:5d} | "
                f"{meta['size_mb']:4.0f}MB | {meta['accuracy']:12} | {meta['description']}"
            )
        print(f"\nTotal ephemeris files in catalog: {len(EPHEMERIS_METADATA)}")


def save_results_to_csv(records: List[ForecastRecord], filename: str, local: bool) -> None:
    """Save forecast records to a CSV file."""
    fieldnames = ["instant_utc", "io_phase_deg", "meridian_deg", "distance_au", "radio_source"]
    if local:
        fieldnames += ["transit_ha_hours", "altitude_deg", "azimuth_deg", "recommended"]

    try:
        with open(filename, "w", newline="", encoding="utf-8") as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
            writer.writeheader()

            for record in records:
                row = {
                    "instant_utc": _as_utc(record.instant).strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "io_phase_deg": f"{record.io_phase:.2f}",
                    "meridian_deg": f"{record.meridian:.2f}",
                    "distance_au": f"{record.distance:.3f}",
                    "radio_source": radio_source_name(record.radio_source),
                }
                if local and record.local is not None:
                    row["transit_ha_hours"] = f"{record.local.transit_ha:+.2f}"
                    row["altitude_deg"] = f"{record.local.altitude:.2f}"
                    row["azimuth_deg"] = f"{record.local.azimuth:.2f}"
                    row["recommended"] = "Y" if record.recommended else "N"
                writer.writerow(row)

        logger.info(f"Results saved to {filename}")

    except OSError as e:
        logger.error(f"Failed to save results to CSV: {e}")


_DURATION_PATTERN = re.compile(r"(?:\d+(?:\.\d+)?[dhms])+")
_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)([dhms])")
_DURATION_UNITS = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}


def parse_duration(text: str) -> timedelta:
    """Parse durations such as "720h", "36h30m" or "2d"."""
    value = text.strip().lower()
    if not _DURATION_PATTERN.fullmatch(value):
        raise ConfigurationError(f"Invalid duration '{text}'. Use e.g. 720h, 36h30m or 2d")

    parts = {}
    for amount, unit in _DURATION_TOKEN.findall(value):
        key = _DURATION_UNITS[unit]
        parts[key] = parts.get(key, 0.0) + float(amount)
    return timedelta(**parts)


def parse_start_time(value: Optional[str], now: Optional[datetime] = None) -> datetime:
    """RFC 3339 start time in UTC. Defaults to `now`, or the current time."""
    if not value:
        return _as_utc(now or datetime.now(timezone.utc))
    try:
        parsed = datetime.fromisoformat(re.sub(r"[Zz]$", "+00:00", value.strip()))
    except ValueError:
        raise ConfigurationError(f"Invalid start time '{value}'. Use RFC 3339, e.g. 2024-01-01T00:00:00Z") from None
    return _as_utc(parsed)


def resolve_display_timezone(local_time: bool, tz_name: Optional[str], start: datetime) -> Optional[tzinfo]:
    """Time zone for the local-time column, or None when neither option is given."""
    if local_time and tz_name:
        raise ConfigurationError("--local-time and --timezone cannot be used together")
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"Unknown time zone '{tz_name}'") from None
    if local_time:
        return _as_utc(start).astimezone().tzinfo
    return None


def validate_forecast_options(
    interval: int,
    duration: timedelta,
    latitude: Optional[float],
    longitude: Optional[float],
) -> None:
    """Reject option combinations the engine cannot run with."""
    if interval < MIN_INTERVAL_MINUTES:
        raise ConfigurationError("--interval must be at least 1 minute")
    if duration < timedelta(minutes=interval):
        raise ConfigurationError("--duration really should be longer than the interval specified")
    if (latitude is None) != (longitude is None):
        raise ConfigurationError("Both --lat and --lon, or neither, must be supplied")
    if latitude is not None and not -90 <= latitude <= 90:
        raise ConfigurationError(f"--lat must be between -90 and 90, got {latitude}")
    if longitude is not None and not -180 <= longitude <= 180:
        raise ConfigurationError(f"--lon must be between -180 and 180, got {longitude}")


def build_forecast_run(args: argparse.Namespace, now: Optional[datetime] = None) -> ForecastRun:
    """Validate parsed options and turn them into a ForecastRun."""
    duration = parse_duration(args.duration)
    validate_forecast_options(args.interval, duration, args.lat, args.lon)
    start = parse_start_time(args.start_time, now)

    location = None
    if args.lat is not None:
        location = ObserverLocation(latitude=args.lat, longitude=args.lon)

    return ForecastRun(
        start=start,
        duration=duration,
        interval=args.interval,
        location=location,
        display_tz=resolve_display_timezone(args.local_time, args.timezone, start),
        include_non_io_a=args.non_io_a,
    )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Jovian Decameter Radio Storm Forecaster",
        epilog="""
Examples:
  %(prog)s --start-time 2024-01-01T00:00:00Z --duration 48h
  %(prog)s --lat 35.1 --lon -106.6 --timezone America/Denver --non-io-a
  %(prog)s --duration 7d --interval 10 --json
  %(prog)s --catalog
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--start-time",
        "-s",
        type=str,
        help="Start time in RFC 3339 format (default: now)",
    )
    parser.add_argument(
        "--duration",
        "-d",
        type=str,
        default=DEFAULT_DURATION,
        help=f"Forecast length, e.g. 720h, 36h30m or 2d (default: {DEFAULT_DURATION})",
    )
    parser.add_argument(
        "--interval",
        "-i",
        type=int,
        default=DEFAULT_INTERVAL_MINUTES,
        help=f"Sampling interval in minutes (default: {DEFAULT_INTERVAL_MINUTES})",
    )
    parser.add_argument(
        "--lat",
        type=float,
        help="Observer latitude. Limits results to when Jupiter is above the horizon. Requires --lon",
    )
    parser.add_argument(
        "--lon",
        type=float,
        help="Observer longitude, east positive. Requires --lat",
    )
    parser.add_argument(
        "--non-io-a",
        action="store_true",
        help="Include forecasts for the non-Io-A radio source",
    )
    parser.add_argument(
        "--local-time",
        "-l",
        action="store_true",
        help="Also show times in the system's local time zone",
    )
    parser.add_argument(
        "--timezone",
        "-z",
        type=str,
        help="Also show times in this IANA time zone, e.g. Europe/Berlin",
    )
    parser.add_argument("--json", "-j", action="store_true", help="Print the forecast as JSON")
    parser.add_argument("--output", "-f", type=str, help="Also save results to a CSV file")
    parser.add_argument(
        "--ephemeris",
        "--eph",
        type=str,
        help="Specific ephemeris file to use (default: auto-select optimal)",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=os.environ.get(DATA_DIR_ENV),
        help=f"Directory for ephemeris files (default: ${DATA_DIR_ENV} or the current directory)",
    )
    parser.add_argument(
        "--catalog",
        "-c",
        action="store_true",
        help="Display the ephemeris catalog and exit",
    )
    parser.add_argument(
        "--online-check",
        "-o",
        action="store_true",
        help="List planetary ephemeris files available from JPL and exit",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging output")
    parser.add_argument("--version", action="store_true", help="Print version number and exit")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """Main application entry point."""
    args = None
    try:
        args = parse_arguments(argv)

        if args.verbose:
            logging.getLogger().setLevel(logging.DEBUG)

        if args.version:
            print(f"jovian-noise version {__version__}")
            return

        if args.catalog:
            ForecastReporter.display_ephemeris_catalog()
            return

        eph_manager = EphemerisManager(args.data_dir)

        if args.online_check:
            print("Checking online ephemeris repositories...")
            online_files = eph_manager.fetch_available_files()
            if online_files:
                print(f"\nFound {len(online_files)} ephemeris files online:")
                print("-" * 80)
                for filename, info in sorted(online_files.items()):
                    print(f"  {filename:15} | {info['size']:>10} | {info['modified_date']}")
                    print(f"                  | {info['download_url']}")
            else:
                print("No online ephemeris files found or network error occurred")
            return

        try:
            run = build_forecast_run(args)
        except ConfigurationError as e:
            print(f"Error: {e}")
            sys.exit(1)

        if args.ephemeris:
            ephemeris_file = args.ephemeris
            logger.info(f"Using specified ephemeris: {ephemeris_file}")
        else:
            ephemeris_file = eph_manager.select_optimal_ephemeris(run.start, run.end)
        kernel = eph_manager.load_with_fallback(ephemeris_file, run.start, run.end)

        calculator = ForecastCalculator(JupiterEphemeris(kernel, eph_manager.timescale()))
        calculator.forecast(run)

        if args.json:
            print(ForecastReporter.format_json(run))
        else:
            ForecastReporter.format_forecast_report(run)
            ForecastReporter.format_summary(run.records)

        if args.output and run.records:
            save_results_to_csv(run.records, args.output, run.local_forecast)

    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Application error: {e}")
        if args is not None and args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
