"""
Star formation rate models in look-back time t (years before present).

All models expose:
  rate(t)                   stars pc^-3 yr^-1 (zero outside [t_min, t_max])
  integrate() -> (n, std)   total stars pc^-3 formed
  draw_formation_time(rng)  look-back time of formation, distributed as rate(t)
  max_rate
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class ConstantSFR:
    level: float = 5e-12
    t_min: float = 0.0
    t_max: float = 1e10

    def __post_init__(self) -> None:
        if not (0.0 <= self.t_min < self.t_max):
            raise ValueError("Need 0 <= t_min < t_max")
        if self.level < 0:
            raise ValueError("SFR must be non-negative")

    @property
    def max_rate(self) -> float:
        return self.level

    def rate(self, t: float) -> float:
        return self.level if self.t_min <= t <= self.t_max else 0.0

    def integrate(self) -> tuple[float, float]:
        return self.level * (self.t_max - self.t_min), 0.0

    def draw_formation_time(self, rng: np.random.Generator) -> float:
        return float(rng.uniform(self.t_min, self.t_max))


def single_burst(onset: float = 9e9, duration: float = 1e8, level: float = 5e-12) -> ConstantSFR:
    """Constant SFR lasting `duration` years, starting `onset` years ago."""
    if duration <= 0:
        raise ValueError("Burst duration must be positive")
    return ConstantSFR(level=level, t_min=onset - duration, t_max=onset)


@dataclass(frozen=True)
class ExponentialDecaySFR:
    """
    SFR switched on at t_max with rate r0 and evolving with e-folding time tau:

    rate(t) = r0 exp((t - t_max) / tau)

    Positive tau declines towards the present, negative tau grows.
    """

    r0: float = 5e-12
    tau: float = 3e9
    t_min: float = 0.0
    t_max: float = 1e10

    def __post_init__(self) -> None:
        if not (0.0 <= self.t_min < self.t_max):
            raise ValueError("Need 0 <= t_min < t_max")
        if self.r0 < 0:
            raise ValueError("Initial star formation rate must be non-negative")
        if self.tau == 0:
            raise ValueError("Decay timescale must be non-zero")

    @property
    def max_rate(self) -> float:
        return max(self.rate(self.t_min), self.rate(self.t_max))

    def rate(self, t: float) -> float:
        if self.t_min <= t <= self.t_max:
            return self.r0 * math.exp((t - self.t_max) / self.tau)
        return 0.0

    def integrate(self) -> tuple[float, float]:
        return self.tau * self.r0 * (1.0 - math.exp((self.t_min - self.t_max) / self.tau)), 0.0

    def draw_formation_time(self, rng: np.random.Generator) -> float:
        # Invert the cumulative distribution from t_min
        cdf = float(rng.random()) * self.integrate()[0]
        return self.t_max + self.tau * math.log(
            cdf / (self.tau * self.r0) + math.exp((self.t_min - self.t_max) / self.tau)
        )


@dataclass(frozen=True)
class BinnedSFR:
    """
    Piecewise-constant SFR on contiguous look-back time bins.

    This is both the starting point of an inversion and its result; `errors`
    holds the 1σ uncertainty on each bin's rate.
    """

    edges: tuple[float, ...]
    rates: tuple[float, ...]
    errors: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        if len(self.edges) < 2 or len(self.rates) != len(self.edges) - 1:
            raise ValueError("Need one rate per bin and at least one bin")
        if any(b <= a for a, b in zip(self.edges[:-1], self.edges[1:])):
            raise ValueError("Bin edges must be strictly increasing")
        if self.edges[0] < 0:
            raise ValueError("Look-back times must be non-negative")
        if self.errors and len(self.errors) != len(self.rates):
            raise ValueError("Need one error per bin")
        if any(r < 0 for r in self.rates):
            raise ValueError("SFR must be non-negative")

    @classmethod
    def initial_guess(
        cls,
        *,
        t_min: float = 0.0,
        t_max: float = 14.5e9,
        n_bins: int = 50,
        level: float = 1.5e-12,
    ) -> BinnedSFR:
        if n_bins < 1:
            raise ValueError("n_bins must be positive")
        edges = tuple(float(e) for e in np.linspace(t_min, t_max, n_bins + 1))
        return cls(edges=edges, rates=(float(level),) * n_bins, errors=(0.0,) * n_bins)

    @property
    def t_min(self) -> float:
        return self.edges[0]

    @property
    def t_max(self) -> float:
        return self.edges[-1]

    @property
    def n_bins(self) -> int:
        return len(self.rates)

    @property
    def max_rate(self) -> float:
        return max(self.rates)

    def bins(self) -> list[tuple[float, float, float]]:
        return [(self.edges[i], self.edges[i + 1], self.rates[i]) for i in range(self.n_bins)]

    def centres(self) -> np.ndarray:
        e = np.asarray(self.edges)
        return 0.5 * (e[:-1] + e[1:])

    def widths(self) -> np.ndarray:
        return np.diff(np.asarray(self.edges))

    def rate(self, t: float) -> float:
        if t < self.t_min or t > self.t_max:
            return 0.0
        i = int(np.searchsorted(self.edges, t, side="right")) - 1
        return self.rates[min(i, self.n_bins - 1)]

    def integrate(self) -> tuple[float, float]:
        w = self.widths()
        n = float(np.sum(np.asarray(self.rates) * w))
        err = np.asarray(self.errors) if self.errors else np.zeros(self.n_bins)
        return n, float(np.sqrt(np.sum((err * w) ** 2)))

    def draw_formation_time(self, rng: np.random.Generator) -> float:
        mass = np.asarray(self.rates) * self.widths()
        total = mass.sum()
        if total <= 0:
            raise ValueError("Cannot draw formation times from a zero SFR")
        i = int(rng.choice(self.n_bins, p=mass / total))
        return float(rng.uniform(self.edges[i], self.edges[i + 1]))

    def with_rates(self, rates: list[float] | tuple[float, ...], errors: list[float] | tuple[float, ...]) -> BinnedSFR:
        return BinnedSFR(edges=self.edges, rates=tuple(float(r) for r in rates), errors=tuple(float(e) for e in errors))


SFRModel = ConstantSFR | ExponentialDecaySFR | BinnedSFR
