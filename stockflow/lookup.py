"""
Lookup tables (graphical functions) for the stockflow engine
Piecewise-linear interpolation with flat extrapolation at both ends
"""

from bisect import bisect_right
from typing import Any, List, Sequence

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from stockflow.config import get_settings
from stockflow.exceptions import LookupTooLargeError, UnsortedLookupPointsError


class LookupTable(BaseModel):
    """
    Represents a lookup table for interpolation

    Attributes:
        points: List of [x, y] pairs, strictly ascending in x
        interpolation: Interpolation method ('linear' or 'step')
    """

    points: List[List[float]] = Field(
        ..., description="List of [x, y] coordinate pairs"
    )
    interpolation: str = Field(
        "linear", description="Interpolation method: 'linear' or 'step'"
    )

    _xs: List[float] = PrivateAttr(default_factory=list)
    _ys: List[float] = PrivateAttr(default_factory=list)

    @field_validator("points")
    @classmethod
    def validate_points(cls, v: List[List[float]]) -> List[List[float]]:
        """
        Validate that points are properly formatted

        Args:
            v: List of points to validate

        Returns:
            Validated points list

        Raises:
            ValueError: If points are malformed
            UnsortedLookupPointsError: If x-values are not strictly ascending
        """
        if not v:
            raise ValueError("Lookup table must have at least 1 point")

        settings = get_settings()
        if len(v) > settings.max_lookup_table_points:
            raise ValueError(
                f"Lookup table has {len(v)} points, exceeding maximum of "
                f"{settings.max_lookup_table_points}"
            )

        for i, point in enumerate(v):
            if len(point) != 2:
                raise ValueError(f"Point {i} must have exactly 2 coordinates [x, y]")
            if i > 0 and point[0] <= v[i - 1][0]:
                raise UnsortedLookupPointsError(
                    f"Lookup x-values must be strictly ascending "
                    f"({v[i - 1][0]} then {point[0]})",
                    index=i,
                )
        return v

    @field_validator("interpolation")
    @classmethod
    def validate_interpolation(cls, v: str) -> str:
        if v not in ("linear", "step"):
            raise ValueError("Interpolation must be 'linear' or 'step'")
        return v

    def model_post_init(self, __context: Any) -> None:
        self._xs = [p[0] for p in self.points]
        self._ys = [p[1] for p in self.points]

    @classmethod
    def from_flat(cls, values: Sequence[float]) -> "LookupTable":
        """Build a table from alternating x1, y1, x2, y2, ... values"""
        check_point_count(len(values) // 2)
        pairs = [[values[i], values[i + 1]] for i in range(0, len(values) - 1, 2)]
        return cls(points=pairs)

    def lookup(self, x: float) -> float:
        """
        Interpolate the table at x

        Args:
            x: Input value

        Returns:
            The interpolated value; below the first point the first y, above
            the last point the last y
        """
        xs, ys = self._xs, self._ys
        if x <= xs[0]:
            return ys[0]
        if x >= xs[-1]:
            return ys[-1]

        # xs[i - 1] <= x < xs[i]
        i = bisect_right(xs, x)
        x1, y1 = xs[i - 1], ys[i - 1]
        if self.interpolation == "step":
            return y1
        x2, y2 = xs[i], ys[i]
        return y1 + (x - x1) * (y2 - y1) / (x2 - x1)


def check_point_count(count: int) -> None:
    """
    Raises:
        LookupTooLargeError: If count exceeds the configured table size
    """
    limit = get_settings().max_lookup_table_points
    if count > limit:
        raise LookupTooLargeError(count, limit)
