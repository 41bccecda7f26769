"""
Shared numerical kernel: monotonic interpolation and bisection.

Every tabulated relation in the package (lifetimes, cooling tracks, discovery
fractions) goes through `MonotonicLinear`; every inversion of an analytic
relation goes through `invert_monotonic` or `bisect_bracketed`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

import numpy as np

log = logging.getLogger(__name__)


class RootFindingError(RuntimeError):
    """A bisection did not converge; the relation it inverts is not monotonic."""


class BracketError(RootFindingError):
    """The search interval does not bracket the target value."""


def _interp_sorted(v: float, xs: np.ndarray, ys: np.ndarray) -> float:
    # Linear through the bracketing pair; edge pair outside the table.
    i = int(np.searchsorted(xs, v))
    i = min(max(i, 1), xs.size - 1)
    x0, x1 = xs[i - 1], xs[i]
    y0, y1 = ys[i - 1], ys[i]
    return float(y0 + (v - x0) * (y1 - y0) / (x1 - x0))


class MonotonicLinear:
    """
    Strictly monotonic tabulated function y(x) with linear interpolation.

    Queries outside the tabulated range are extrapolated from the two end points;
    use `is_extrapolated_x` / `is_extrapolated_y` to detect that.
    """

    def __init__(self, x: Sequence[float] | np.ndarray, y: Sequence[float] | np.ndarray) -> None:
        xa = np.asarray(x, dtype=float)
        ya = np.asarray(y, dtype=float)
        if xa.ndim != 1 or xa.shape != ya.shape:
            raise ValueError("x and y must be 1-D and of equal length")
        if xa.size < 2:
            raise ValueError("Need at least 2 points for a monotonic function")
        order = np.argsort(xa, kind="stable")
        xa = xa[order]
        ya = ya[order]
        if np.any(np.diff(xa) <= 0.0):
            raise ValueError("x values must be distinct")
        dy = np.diff(ya)
        if np.all(dy > 0.0):
            self.increasing = True
        elif np.all(dy < 0.0):
            self.increasing = False
        else:
            raise ValueError("y must be strictly monotonic in x")
        self.x = xa
        self.y = ya

    def __len__(self) -> int:
        return int(self.x.size)

    def y_at(self, x: float) -> float:
        return _interp_sorted(float(x), self.x, self.y)

    def x_at(self, y: float) -> float:
        if self.increasing:
            return _interp_sorted(float(y), self.y, self.x)
        return _interp_sorted(float(y), self.y[::-1], self.x[::-1])

    def is_extrapolated_x(self, x: float) -> bool:
        return bool(x < self.x[0] or x > self.x[-1])

    def is_extrapolated_y(self, y: float) -> bool:
        return bool(y < self.y.min() or y > self.y.max())


def invert_monotonic(
    f: Callable[[float], float],
    target: float,
    lo: float,
    hi: float,
    *,
    tol: float,
    max_iter: int = 100,
    what: str = "root",
) -> float:
    """
    Find x in [lo, hi] with |f(x) - target| < tol by bisection.

    f may be increasing or decreasing; the direction is taken from the end points.
    Raises RootFindingError after max_iter halvings.
    """
    if not hi > lo:
        raise ValueError("Search interval must have hi > lo")
    if tol <= 0:
        raise ValueError("tol must be positive")

    increasing = f(hi) >= f(lo)
    a, b = float(lo), float(hi)
    mid = 0.5 * (a + b)
    value = f(mid)
    n_iter = 0
    while abs(value - target) >= tol:
        if (value < target) == increasing:
            a = mid
        else:
            b = mid
        mid = 0.5 * (a + b)
        value = f(mid)
        n_iter += 1
        if n_iter > max_iter:
            raise RootFindingError(
                f"Couldn't locate {what} for target {target:g} in [{lo:g}, {hi:g}] "
                f"after {max_iter} iterations; check that the relation is monotonic"
            )
    log.debug("Bisection for %s converged in %d iterations", what, n_iter)
    return mid


def bisect_bracketed(
    f: Callable[[float], float],
    target: float,
    lo: float,
    hi: float,
    *,
    resolution: float,
    what: str = "root",
) -> float:
    """
    Two-sided bisection for a decreasing f with f(lo) >= target >= f(hi).

    Both bracket conditions are checked before narrowing and raise BracketError.
    Returns the midpoint of the last half-interval once it is narrower than
    `resolution`, or the midpoint itself on an exact hit.
    """
    if not hi > lo:
        raise ValueError("Search interval must have hi > lo")
    if resolution <= 0:
        raise ValueError("resolution must be positive")

    f_lo = f(lo)
    if not f_lo >= target:
        raise BracketError(f"{what}: f({lo:g}) = {f_lo:g} is below the target {target:g}")
    f_hi = f(hi)
    if not f_hi <= target:
        raise BracketError(f"{what}: f({hi:g}) = {f_hi:g} is above the target {target:g}")

    a, b = float(lo), float(hi)
    while True:
        mid = 0.5 * (a + b)
        value = f(mid)
        if value < target:
            if mid - a < resolution:
                return 0.5 * (a + mid)
            b = mid
        elif value > target:
            if b - mid < resolution:
                return 0.5 * (mid + b)
            a = mid
        else:
            return mid
