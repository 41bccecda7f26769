from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .binning import RangeMap


@dataclass(frozen=True)
class LuminosityFunction:
    """
    Binned white dwarf luminosity function: density (N pc^-3 mag^-1) and its
    1σ error in magnitude bins given by centre and width. Arrays are aligned by
    index and sorted by magnitude.
    """

    centres: np.ndarray
    widths: np.ndarray
    density: np.ndarray
    sigma: np.ndarray
    filter_name: str = "Mbol"
    target: str = ""

    def __post_init__(self) -> None:
        n = len(self.centres)
        if not (len(self.widths) == len(self.density) == len(self.sigma) == n):
            raise ValueError("centres, widths, density and sigma must have equal length")
        if n == 0:
            raise ValueError("Luminosity function has no bins")
        if np.any(np.asarray(self.widths) <= 0):
            raise ValueError("Bin widths must be positive")

    @classmethod
    def from_arrays(
        cls,
        centres,
        widths,
        density,
        sigma,
        *,
        filter_name: str = "Mbol",
        target: str = "",
    ) -> LuminosityFunction:
        c = np.asarray(centres, dtype=float)
        order = np.argsort(c)
        return cls(
            centres=c[order],
            widths=np.asarray(widths, dtype=float)[order],
            density=np.asarray(density, dtype=float)[order],
            sigma=np.asarray(sigma, dtype=float)[order],
            filter_name=filter_name,
            target=target,
        )

    def __len__(self) -> int:
        return len(self.centres)

    @property
    def mag_range(self) -> tuple[float, float]:
        return (
            float(self.centres[0] - 0.5 * self.widths[0]),
            float(self.centres[-1] + 0.5 * self.widths[-1]),
        )

    def empty_bins(self) -> RangeMap:
        """Fresh RangeMap with this function's bins, for synthetic stars."""
        return RangeMap.from_centres(list(self.centres), list(self.widths))

    def total_density(self) -> tuple[float, float]:
        n = float(np.sum(self.density * self.widths))
        err = float(np.sqrt(np.sum((self.sigma * self.widths) ** 2)))
        return n, err


def load_wdlf_csv(path: Path | str, *, filter_name: str = "Mbol") -> LuminosityFunction:
    """
    Read a luminosity function from CSV with columns mag, width, density, sigma.
    """
    path = Path(path)
    rows: list[tuple[float, float, float, float]] = []
    with path.open(newline="") as f:
        r = csv.DictReader(f)
        need = {"mag", "width", "density", "sigma"}
        missing = need - set(r.fieldnames or [])
        if missing:
            raise RuntimeError(f"{path} missing columns: {sorted(missing)}")
        for row in r:
            rows.append((float(row["mag"]), float(row["width"]), float(row["density"]), float(row["sigma"])))
    if not rows:
        raise RuntimeError(f"{path} is empty")
    c, w, d, s = zip(*rows)
    return LuminosityFunction.from_arrays(c, w, d, s, filter_name=filter_name, target=path.stem)


def write_wdlf_csv(lf: LuminosityFunction, path: Path | str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="") as f:
        w = csv.DictWriter(f, fieldnames=["mag", "width", "density", "sigma"])
        w.writeheader()
        for c, wd, d, s in zip(lf.centres, lf.widths, lf.density, lf.sigma):
            w.writerow({"mag": f"{c:.4f}", "width": f"{wd:.4f}", "density": f"{d:.6e}", "sigma": f"{s:.6e}"})
