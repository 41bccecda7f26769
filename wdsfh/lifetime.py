"""
Pre-white-dwarf lifetimes as a function of initial mass and composition.

Two models share one interface:
  lifetime(mass, z, y) -> years   (decreasing in mass)
  mass(lifetime, z, y) -> Msun    (inverse, by bisection)

- Hurley2000Lifetime: analytic main-sequence lifetime of Hurley, Pols & Tout
  (2000), eq. 4-6. Depends on Z only.
- TabulatedLifetime: lifetime(mass) tables on a (Z, Y) grid, bilinear in
  (Z, Y) with extrapolation from the edge pairs.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .numeric import MonotonicLinear, invert_monotonic

log = logging.getLogger(__name__)

_T_MS_TOL_MYR = 1e-6
_MAX_ITER = 100


def _hurley_coeffs(z: float) -> tuple[float, ...]:
    zeta = np.log10(z / 0.02)
    zeta2 = zeta * zeta
    zeta3 = zeta2 * zeta
    return (
        1.593890e3 + 2.053038e3 * zeta + 1.231226e3 * zeta2 + 2.327785e2 * zeta3,
        2.706708e3 + 1.483131e3 * zeta + 5.772723e2 * zeta2 + 7.411230e1 * zeta3,
        1.466143e2 - 1.048442e2 * zeta - 6.795374e1 * zeta2 - 1.391127e1 * zeta3,
        4.141960e-2 + 4.564888e-2 * zeta + 2.958542e-2 * zeta2 + 5.571483e-3 * zeta3,
        3.426349e-1,
        1.949814e1 + 1.758178e0 * zeta - 6.008212e0 * zeta2 - 4.470533e0 * zeta3,
        4.903830e0,
        5.212154e-2 + 3.166411e-2 * zeta - 2.750074e-3 * zeta2 - 2.271549e-3 * zeta3,
        1.312179e0 - 3.294936e-1 * zeta + 9.231860e-2 * zeta2 + 2.610989e-2 * zeta3,
        8.073972e-1,
    )


@dataclass(frozen=True)
class Hurley2000Lifetime:
    m_min: float = 0.7
    m_max: float = 50.0

    name = "Hurley et al. (2000)"

    def base_giant_branch_myr(self, mass: float, z: float) -> float:
        a = _hurley_coeffs(float(z))
        m2 = mass * mass
        m4 = m2 * m2
        m7 = m4 * m2 * mass
        return (a[0] + a[1] * m4 + a[2] * mass**5.5 + m7) / (a[3] * m2 + a[4] * m7)

    def main_sequence_myr(self, mass: float, z: float) -> float:
        if z <= 0:
            raise ValueError("Metallicity must be positive")
        a = _hurley_coeffs(float(z))
        zeta = np.log10(z / 0.02)
        t_bgb = self.base_giant_branch_myr(mass, z)
        x = max(0.95, min(0.95 - 0.03 * (zeta + 0.30103), 0.99))
        mu = max(0.5, 1.0 - 0.01 * max(a[5] / mass ** a[6], a[7] + a[8] / mass ** a[9]))
        return float(max(mu * t_bgb, x * t_bgb))

    def lifetime(self, mass: float, z: float, y: float) -> float:
        return self.main_sequence_myr(mass, z) * 1e6

    def mass(self, lifetime: float, z: float, y: float) -> float:
        t_myr = lifetime / 1e6
        # Outside the fitted mass range the edge masses are returned.
        if t_myr >= self.main_sequence_myr(self.m_min, z):
            return self.m_min
        if t_myr <= self.main_sequence_myr(self.m_max, z):
            return self.m_max
        return invert_monotonic(
            lambda m: self.main_sequence_myr(m, z),
            t_myr,
            self.m_min,
            self.m_max,
            tol=_T_MS_TOL_MYR,
            max_iter=_MAX_ITER,
            what="stellar mass from main sequence lifetime",
        )


def _bracket(keys: list[float], v: float) -> tuple[float, float]:
    # Two keys to interpolate/extrapolate between; a single key is paired with itself.
    if len(keys) == 1:
        return keys[0], keys[0]
    i = int(np.searchsorted(keys, v))
    i = min(max(i, 1), len(keys) - 1)
    return keys[i - 1], keys[i]


def _lerp(v: float, k0: float, k1: float, f0: float, f1: float) -> float:
    if k1 == k0:
        return f0
    return f0 + (v - k0) * (f1 - f0) / (k1 - k0)


class TabulatedLifetime:
    """
    Lifetime(mass) sequences keyed by metallicity Z then helium content Y.

    tables[z][y] is a MonotonicLinear of lifetime (years) against mass (Msun).
    """

    def __init__(self, tables: dict[float, dict[float, MonotonicLinear]], *, name: str = "tabulated") -> None:
        if not tables or any(not ys for ys in tables.values()):
            raise ValueError("Need at least one lifetime table")
        for ys in tables.values():
            for t in ys.values():
                if t.increasing:
                    raise ValueError("Lifetime must decrease with mass")
        self.tables = {float(z): {float(y): t for y, t in ys.items()} for z, ys in tables.items()}
        self.name = name
        self._z_keys = sorted(self.tables)
        all_tables = [t for ys in self.tables.values() for t in ys.values()]
        self.m_min = max(float(t.x[0]) for t in all_tables)
        self.m_max = min(float(t.x[-1]) for t in all_tables)
        self.rel_tol = 1e-9

    def _at_z(self, z_key: float, y: float, mass: float) -> float:
        ys = self.tables[z_key]
        y0, y1 = _bracket(sorted(ys), y)
        return _lerp(y, y0, y1, ys[y0].y_at(mass), ys[y1].y_at(mass))

    def lifetime(self, mass: float, z: float, y: float) -> float:
        z0, z1 = _bracket(self._z_keys, z)
        return _lerp(z, z0, z1, self._at_z(z0, y, mass), self._at_z(z1, y, mass))

    def mass(self, lifetime: float, z: float, y: float) -> float:
        if lifetime >= self.lifetime(self.m_min, z, y):
            return self.m_min
        if lifetime <= self.lifetime(self.m_max, z, y):
            return self.m_max
        return invert_monotonic(
            lambda m: self.lifetime(m, z, y),
            lifetime,
            self.m_min,
            self.m_max,
            tol=self.rel_tol * lifetime,
            max_iter=_MAX_ITER,
            what=f"stellar mass from {self.name} lifetimes",
        )


LifetimeModel = Hurley2000Lifetime | TabulatedLifetime


def load_lifetime_csv(path: Path | str) -> TabulatedLifetime:
    """
    Read a lifetime grid from CSV with columns z, y, mass_msun, lifetime_yr.
    """
    path = Path(path)
    rows: dict[float, dict[float, list[tuple[float, float]]]] = {}
    with path.open(newline="") as f:
        r = csv.DictReader(f)
        need = {"z", "y", "mass_msun", "lifetime_yr"}
        missing = need - set(r.fieldnames or [])
        if missing:
            raise RuntimeError(f"{path} missing columns: {sorted(missing)}")
        for row in r:
            z = float(row["z"])
            y = float(row["y"])
            rows.setdefault(z, {}).setdefault(y, []).append(
                (float(row["mass_msun"]), float(row["lifetime_yr"]))
            )
    if not rows:
        raise RuntimeError(f"{path} is empty")

    tables: dict[float, dict[float, MonotonicLinear]] = {}
    for z, ys in rows.items():
        for y, pts in ys.items():
            masses, lifetimes = zip(*pts)
            tables.setdefault(z, {})[y] = MonotonicLinear(masses, lifetimes)
    log.info("Loaded lifetime grid %s: %d metallicities", path, len(tables))
    return TabulatedLifetime(tables, name=path.stem)
