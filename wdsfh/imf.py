from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np


def _powerlaw_int(m0: float, m1: float, alpha: float) -> float:
    # ∫ m^{-alpha} dm from m0 to m1
    if m1 <= m0:
        return 0.0
    if abs(alpha - 1.0) < 1e-12:
        return math.log(m1 / m0)
    return (m1 ** (1.0 - alpha) - m0 ** (1.0 - alpha)) / (1.0 - alpha)


@dataclass(frozen=True)
class PowerLawIMF:
    """
    Single power-law IMF over the range of white dwarf progenitors:

    ξ(m) ∝ m^{-α} for m in [m_lower, m_upper]

    normalized to unit number, so `integral(m)` is the fraction of stars
    born with mass below m. Stars above m_upper end as neutron stars or black
    holes, stars below m_lower never leave the main sequence in a Hubble time.
    """

    alpha: float = 2.35
    m_lower: float = 0.6
    m_upper: float = 7.0

    def __post_init__(self) -> None:
        if not (0.0 < self.m_lower < self.m_upper):
            raise ValueError("IMF mass range must satisfy 0 < m_lower < m_upper")

    @property
    def _norm(self) -> float:
        return _powerlaw_int(self.m_lower, self.m_upper, self.alpha)

    def pdf(self, m: float) -> float:
        if m < self.m_lower or m > self.m_upper:
            return 0.0
        return m ** (-self.alpha) / self._norm

    def integral(self, m: float) -> float:
        if m <= self.m_lower:
            return 0.0
        if m >= self.m_upper:
            return 1.0
        return _powerlaw_int(self.m_lower, m, self.alpha) / self._norm

    def draw_mass(self, rng: np.random.Generator) -> float:
        # Inverse transform of the cumulative distribution
        u = float(rng.random())
        if abs(self.alpha - 1.0) < 1e-12:
            return self.m_lower * (self.m_upper / self.m_lower) ** u
        p = 1.0 - self.alpha
        lo = self.m_lower**p
        hi = self.m_upper**p
        return (lo + u * (hi - lo)) ** (1.0 / p)


IMF_PRESETS = ("salpeter", "kroupa", "top-heavy", "top-light")


def imf_preset(name: str) -> PowerLawIMF:
    """
    Simple presets for sensitivity studies. Only the high-mass slope matters
    over the white dwarf progenitor range.

    - salpeter: α=2.35
    - kroupa: α=2.3
    - top-heavy: flatter high-mass slope
    - top-light: steeper high-mass slope
    """
    name = name.strip().lower()
    if name == "salpeter":
        return PowerLawIMF(alpha=2.35)
    if name == "kroupa":
        return PowerLawIMF(alpha=2.3)
    if name in {"top-heavy", "topheavy"}:
        return PowerLawIMF(alpha=1.9)
    if name in {"top-light", "toplight"}:
        return PowerLawIMF(alpha=2.7)
    raise ValueError(f"Unknown IMF preset: {name!r}")
