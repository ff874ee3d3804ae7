"""
Study areas and date windows.

This module handles:
- Study area geometry validation and reprojection
- Seasonal date windows (year + MM-DD start/end)
- Ordering checks between the "before" and "after" windows
"""

from dataclasses import dataclass
from typing import List, Tuple

import geopandas as gpd
import pandas as pd
from shapely.geometry import MultiPolygon, Polygon, shape
from shapely.geometry.base import BaseGeometry

from .exceptions import InputError


@dataclass(frozen=True)
class StudyArea:
    """A named polygon used as the spatial filter for one pipeline run."""
    name: str
    geometry: BaseGeometry
    crs: str = "EPSG:4326"

    @classmethod
    def from_geojson(cls, name: str, geometry: dict, crs: str = "EPSG:4326") -> "StudyArea":
        """Build a study area from a GeoJSON geometry mapping."""
        try:
            geom = shape(geometry)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise InputError(f"Study area {name!r}: unreadable geometry ({e})") from e
        area = cls(name=name, geometry=geom, crs=crs)
        area.validate()
        return area

    def validate(self) -> "StudyArea":
        """
        Reject missing, empty, non-polygonal or invalid geometries.

        Returns
        -------
        StudyArea
            self, so calls can be chained

        Raises
        ------
        InputError
            If the geometry cannot be used as a spatial filter
        """
        geom = self.geometry
        if geom is None:
            raise InputError(f"Study area {self.name!r} has no geometry")
        if not isinstance(geom, (Polygon, MultiPolygon)):
            raise InputError(
                f"Study area {self.name!r} must be a Polygon or MultiPolygon, "
                f"got {geom.geom_type}"
            )
        if geom.is_empty:
            raise InputError(f"Study area {self.name!r} geometry is empty")
        if not geom.is_valid:
            from shapely.validation import explain_validity
            raise InputError(
                f"Study area {self.name!r} geometry is invalid: {explain_validity(geom)}"
            )
        return self

    def geometry_in(self, crs) -> BaseGeometry:
        """Return the geometry reprojected to ``crs``."""
        if crs is None or str(crs) == str(self.crs):
            return self.geometry
        series = gpd.GeoSeries([self.geometry], crs=self.crs).to_crs(crs)
        return series.iloc[0]

    @property
    def bounds_ll(self) -> List[float]:
        """Bounding box [west, south, east, north] in EPSG:4326."""
        return list(self.geometry_in("EPSG:4326").bounds)


@dataclass(frozen=True)
class DateWindow:
    """
    A seasonal window inside one year, e.g. (2019, "04-15", "06-15").

    Both ends are inclusive.
    """
    year: int
    start: str
    end: str

    def _parse(self, month_day: str) -> pd.Timestamp:
        try:
            return pd.Timestamp(f"{int(self.year):04d}-{month_day}")
        except (TypeError, ValueError) as e:
            raise InputError(f"Invalid date {self.year}-{month_day}: {e}") from e

    @property
    def start_date(self) -> pd.Timestamp:
        return self._parse(self.start)

    @property
    def end_date(self) -> pd.Timestamp:
        return self._parse(self.end)

    def validate(self) -> "DateWindow":
        """Raise InputError if the window is unparsable or ends before it starts."""
        if self.end_date < self.start_date:
            raise InputError(f"Date window {self} ends before it starts")
        return self

    def as_interval(self) -> Tuple[str, str]:
        """ISO start/end strings, end extended to the last second of the day."""
        self.validate()
        end = self.end_date + pd.Timedelta(days=1) - pd.Timedelta(seconds=1)
        return self.start_date.isoformat(), end.isoformat()

    def __str__(self) -> str:
        return f"{self.year}-{self.start}..{self.year}-{self.end}"


def validate_window_order(before: DateWindow, after: DateWindow) -> None:
    """
    Check that the two windows of a change run do not overlap and are ordered.

    Raises
    ------
    InputError
        If ``after`` does not start strictly after ``before`` ends
    """
    before.validate()
    after.validate()
    if after.start_date <= before.end_date:
        raise InputError(
            f"'after' window {after} must start after 'before' window {before} ends"
        )
