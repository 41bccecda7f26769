"""
White dwarf cooling sequences.

A CoolingGrid holds one monotonic track mag(tcool) per WD mass. Queries at an
arbitrary mass interpolate linearly between the two bracketing tracks (or
extrapolate from the two edge tracks). CoolingModels bundles grids by
(atmosphere, filter).
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path

import numpy as np

from .numeric import MonotonicLinear

log = logging.getLogger(__name__)

ATMOSPHERES = ("H", "He")


def _mass_pair(masses: list[float], mass: float) -> tuple[float, float]:
    if len(masses) == 1:
        return masses[0], masses[0]
    i = int(np.searchsorted(masses, mass))
    i = min(max(i, 1), len(masses) - 1)
    return masses[i - 1], masses[i]


class CoolingGrid:
    def __init__(self, tracks: dict[float, MonotonicLinear]) -> None:
        if not tracks:
            raise ValueError("Need at least one cooling track")
        for m, t in tracks.items():
            if not t.increasing:
                raise ValueError(f"Track for {m:g} Msun must fade with cooling time")
        self.tracks = {float(m): t for m, t in tracks.items()}
        self.masses = sorted(self.tracks)

    def _blend(self, mass: float, f0: float, f1: float, m0: float, m1: float) -> float:
        if m1 == m0:
            return f0
        return f0 + (mass - m0) * (f1 - f0) / (m1 - m0)

    def magnitude(self, tcool: float, mass: float) -> float:
        m0, m1 = _mass_pair(self.masses, mass)
        return self._blend(mass, self.tracks[m0].y_at(tcool), self.tracks[m1].y_at(tcool), m0, m1)

    def cooling_time(self, mag: float, mass: float) -> float:
        m0, m1 = _mass_pair(self.masses, mass)
        return self._blend(mass, self.tracks[m0].x_at(mag), self.tracks[m1].x_at(mag), m0, m1)

    def is_extrapolated(self, tcool: float, mass: float) -> bool:
        if mass < self.masses[0] or mass > self.masses[-1]:
            return True
        m0, m1 = _mass_pair(self.masses, mass)
        return self.tracks[m0].is_extrapolated_x(tcool) or self.tracks[m1].is_extrapolated_x(tcool)


class CoolingModels:
    """Cooling grids keyed by (atmosphere, filter)."""

    def __init__(self, grids: dict[tuple[str, str], CoolingGrid]) -> None:
        if not grids:
            raise ValueError("Need at least one cooling grid")
        self.grids = dict(grids)

    def grid(self, atmosphere: str, filter_name: str) -> CoolingGrid:
        try:
            return self.grids[(atmosphere, filter_name)]
        except KeyError:
            raise ValueError(f"No cooling models for atmosphere={atmosphere!r}, filter={filter_name!r}") from None

    @property
    def filters(self) -> list[str]:
        return sorted({f for _, f in self.grids})

    def magnitude(self, tcool: float, mass: float, atmosphere: str, filter_name: str) -> float:
        return self.grid(atmosphere, filter_name).magnitude(tcool, mass)

    def cooling_time(self, mag: float, mass: float, atmosphere: str, filter_name: str) -> float:
        return self.grid(atmosphere, filter_name).cooling_time(mag, mass)

    def is_extrapolated(self, tcool: float, mass: float, atmosphere: str, filter_name: str) -> bool:
        return self.grid(atmosphere, filter_name).is_extrapolated(tcool, mass)


def mestel_grid(
    *,
    masses: tuple[float, ...] = (0.5, 0.6, 0.7, 0.8, 0.9, 1.0, 1.1, 1.2, 1.3),
    mag_at_1gyr: float = 13.0,
    mass_term: float = 2.5,
    t_min_yr: float = 1e6,
    t_max_yr: float = 2e10,
    n_points: int = 80,
) -> CoolingGrid:
    """
    Analytic stand-in for tabulated cooling sequences.

    Mestel-like fading L ∝ t^{-7/5}, i.e. M = M(1 Gyr) + 3.5 log10(t / 1 Gyr),
    with heavier WDs fainter at fixed age by `mass_term` log10(m / 0.6).
    Good enough for demonstrations and tests, not for science.
    """
    t = np.geomspace(t_min_yr, t_max_yr, n_points)
    tracks: dict[float, MonotonicLinear] = {}
    for m in masses:
        mag = mag_at_1gyr + 3.5 * np.log10(t / 1e9) + mass_term * np.log10(m / 0.6)
        tracks[float(m)] = MonotonicLinear(t, mag)
    return CoolingGrid(tracks)


def mestel_models(filter_name: str = "Mbol", *, he_offset_mag: float = 0.2) -> CoolingModels:
    return CoolingModels(
        {
            ("H", filter_name): mestel_grid(),
            ("He", filter_name): mestel_grid(mag_at_1gyr=13.0 + he_offset_mag),
        }
    )


def load_cooling_csv(path: Path | str) -> CoolingGrid:
    """
    Read one cooling grid from CSV with columns mass_msun, tcool_yr, mag.
    """
    path = Path(path)
    rows: dict[float, list[tuple[float, float]]] = {}
    with path.open(newline="") as f:
        r = csv.DictReader(f)
        need = {"mass_msun", "tcool_yr", "mag"}
        missing = need - set(r.fieldnames or [])
        if missing:
            raise RuntimeError(f"{path} missing columns: {sorted(missing)}")
        for row in r:
            rows.setdefault(float(row["mass_msun"]), []).append((float(row["tcool_yr"]), float(row["mag"])))
    if not rows:
        raise RuntimeError(f"{path} is empty")
    tracks = {}
    for m, pts in rows.items():
        t, mag = zip(*pts)
        tracks[m] = MonotonicLinear(t, mag)
    log.info("Loaded cooling grid %s: %d tracks", path, len(tracks))
    return CoolingGrid(tracks)
