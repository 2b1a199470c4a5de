"""Piecewise linear functions defined by a list of control points."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator, TextIO

_EPS = 1e-6


@dataclass
class Interval:
    """A closed interval [start, end]."""

    start: float
    end: float

    def contains(self, value: float) -> bool:
        return self.start <= value <= self.end

    def clip(self, value: float) -> float:
        if value < self.start:
            return self.start
        if value > self.end:
            return self.end
        return value

    def length(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class Point:
    """A 2D point, also used as a vector."""

    x: float = 0.0
    y: float = 0.0

    def __add__(self, other: Point) -> Point:
        return Point(self.x + other.x, self.y + other.y)

    def __sub__(self, other: Point) -> Point:
        return Point(self.x - other.x, self.y - other.y)

    def __mul__(self, factor: float) -> Point:
        return Point(self.x * factor, self.y * factor)

    def __truediv__(self, factor: float) -> Point:
        return Point(self.x / factor, self.y / factor)

    def dot(self, other: Point) -> float:
        return self.x * other.x + self.y * other.y

    def len2(self) -> float:
        return self.x * self.x + self.y * self.y

    def length(self) -> float:
        return self.len2() ** 0.5


class PerpType(Enum):
    """Kind of closest point found by :meth:`Pwl.invert`."""

    NOT_FOUND = "not_found"
    START = "start"
    END = "end"
    VERTEX = "vertex"
    PERPENDICULAR = "perpendicular"


def _as_point(value) -> Point:
    if isinstance(value, Point):
        return value
    x, y = value
    return Point(float(x), float(y))


@dataclass
class Pwl:
    """A piecewise linear function with control points in increasing x."""

    points: list[Point] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.points = [_as_point(p) for p in self.points]

    def _require(self, count: int) -> None:
        if len(self.points) < count:
            raise ValueError(f"Pwl needs at least {count} control point(s)")

    def read(self, params: Iterable[float]) -> None:
        """Append control points from a flat sequence x0, y0, x1, y1, ..."""
        values = [float(v) for v in params]
        if len(values) % 2:
            raise ValueError("Pwl: odd number of values")
        for index, (x, y) in enumerate(zip(values[::2], values[1::2])):
            if index and x <= self.points[-1].x:
                raise ValueError("Pwl: x values must be strictly increasing")
            self.points.append(Point(x, y))
        if len(self.points) < 2:
            raise ValueError("Pwl: at least two points are required")

    def append(self, x: float, y: float, eps: float = _EPS) -> None:
        if not self.points or self.points[-1].x + eps < x:
            self.points.append(Point(x, y))

    def prepend(self, x: float, y: float, eps: float = _EPS) -> None:
        if not self.points or self.points[0].x - eps > x:
            self.points.insert(0, Point(x, y))

    def domain(self) -> Interval:
        self._require(1)
        return Interval(self.points[0].x, self.points[-1].x)

    def range(self) -> Interval:
        self._require(1)
        ys = [p.y for p in self.points]
        return Interval(min(ys), max(ys))

    def is_empty(self) -> bool:
        return not self.points

    def find_span(self, x: float, span: int) -> int:
        """Return the index of the segment used to evaluate at x."""
        self._require(2)
        points = self.points
        last_span = len(points) - 2
        span = max(0, min(last_span, span))
        while span < last_span and x >= points[span + 1].x:
            span += 1
        while span and x < points[span].x:
            span -= 1
        return span

    def eval(self, x: float, span: int | None = None) -> float:
        """Evaluate at x; span is an optional starting guess (-1 for none)."""
        self._require(2)
        if span is None or span == -1:
            span = len(self.points) // 2 - 1
        span = self.find_span(x, span)
        p0, p1 = self.points[span], self.points[span + 1]
        return p0.y + (x - p0.x) * (p1.y - p0.y) / (p1.x - p0.x)

    def invert(
        self, xy: Point, span: int = -1, eps: float = _EPS
    ) -> tuple[PerpType, Point | None, int]:
        """Find the closest point on the function to xy after segment span.

        Returns the kind of point found, the point itself (None if not found)
        and the segment index, which can be passed back in to continue.
        """
        if span < -1:
            raise ValueError("Pwl.invert: span must be at least -1")
        xy = _as_point(xy)
        points = self.points
        prev_off_end = False
        span += 1
        while span < len(points) - 1:
            span_vec = points[span + 1] - points[span]
            t = (xy - points[span]).dot(span_vec) / span_vec.len2()
            if t < -eps:
                if span == 0:
                    return PerpType.START, points[span], span
                if prev_off_end:
                    return PerpType.VERTEX, points[span], span
            elif t > 1 + eps:
                if span == len(points) - 2:
                    return PerpType.END, points[span + 1], span
                prev_off_end = True
            else:
                return PerpType.PERPENDICULAR, points[span] + span_vec * t, span
            span += 1
        return PerpType.NOT_FOUND, None, span

    def compose(self, other: Pwl, eps: float = _EPS) -> Pwl:
        """Return the function applying self first and then other."""
        points, others = self.points, other.points
        this_x, this_y = points[0].x, points[0].y
        this_span = 0
        other_span = other.find_span(this_y, 0)
        result = Pwl([Point(this_x, other.eval(this_y, other_span))])
        while this_span != len(points) - 1:
            dx = points[this_span + 1].x - points[this_span].x
            dy = points[this_span + 1].y - points[this_span].y
            if (
                abs(dy) > eps
                and other_span + 1 < len(others)
                and points[this_span + 1].y >= others[other_span + 1].x + eps
            ):
                # Where this function's y reaches the next span in other.
                this_x = points[this_span].x + (
                    others[other_span + 1].x - points[this_span].y
                ) * dx / dy
                other_span += 1
                this_y = others[other_span].x
            elif (
                abs(dy) > eps
                and other_span > 0
                and points[this_span + 1].y <= others[other_span - 1].x - eps
            ):
                # Where this function's y reaches the previous span in other.
                this_x = points[this_span].x + (
                    others[other_span + 1].x - points[this_span].y
                ) * dx / dy
                other_span -= 1
                this_y = others[other_span].x
            else:
                this_span += 1
                this_x, this_y = points[this_span].x, points[this_span].y
            result.append(this_x, other.eval(this_y, other_span), eps)
        return result

    def map(self) -> Iterator[tuple[float, float]]:
        """Yield (x, y) at every control point."""
        for p in self.points:
            yield p.x, p.y

    @staticmethod
    def map2(pwl0: Pwl, pwl1: Pwl) -> Iterator[tuple[float, float, float]]:
        """Yield (x, y0, y1) wherever either function has a control point."""
        p0, p1 = pwl0.points, pwl1.points
        span0 = span1 = 0
        x = min(p0[0].x, p1[0].x)
        yield x, pwl0.eval(x, span0), pwl1.eval(x, span1)
        while span0 < len(p0) - 1 or span1 < len(p1) - 1:
            if span0 == len(p0) - 1:
                span1 += 1
                x = p1[span1].x
            elif span1 == len(p1) - 1:
                span0 += 1
                x = p0[span0].x
            elif p0[span0 + 1].x > p1[span1 + 1].x:
                span1 += 1
                x = p1[span1].x
            else:
                span0 += 1
                x = p0[span0].x
            yield x, pwl0.eval(x, span0), pwl1.eval(x, span1)

    @staticmethod
    def combine(
        pwl0: Pwl,
        pwl1: Pwl,
        f: Callable[[float, float, float], float],
        eps: float = _EPS,
    ) -> Pwl:
        """Build a function whose y is f(x, y0, y1) at every knot of either."""
        result = Pwl()
        for x, y0, y1 in Pwl.map2(pwl0, pwl1):
            result.append(x, f(x, y0, y1), eps)
        return result

    def match_domain(
        self, domain: Interval, clip: bool = True, eps: float = _EPS
    ) -> None:
        """Extend to cover domain, either flat (clip) or linearly."""
        start_x = self.points[0].x if clip else domain.start
        self.prepend(domain.start, self.eval(start_x, 0), eps)
        end_x = self.points[-1].x if clip else domain.end
        self.append(domain.end, self.eval(end_x, len(self.points) - 2), eps)

    def generate_lut(self) -> list[float]:
        """Evaluate at every integer from 0 up to the end of the domain."""
        end = int(self.domain().end + 1)
        span = 0
        lut = []
        for x in range(end):
            span = self.find_span(x, span)
            lut.append(self.eval(x, span))
        return lut

    def __imul__(self, factor: float) -> Pwl:
        self.points = [Point(p.x, p.y * factor) for p in self.points]
        return self

    def debug(self, fp: TextIO | None = None) -> None:
        """Write the control points to fp (standard error by default)."""
        out = sys.stderr if fp is None else fp
        out.write("Pwl {\n")
        for p in self.points:
            out.write("\t(%g, %g)\n" % (p.x, p.y))
        out.write("}\n")