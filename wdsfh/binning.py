from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

import numpy as np

from .star import Star


@dataclass
class Bin:
    lo: float
    hi: float
    stars: list[Star] = field(default_factory=list)

    @property
    def centre(self) -> float:
        return 0.5 * (self.lo + self.hi)

    @property
    def width(self) -> float:
        return self.hi - self.lo

    def __len__(self) -> int:
        return len(self.stars)

    def total(self) -> tuple[float, float]:
        """Summed number of represented stars and its variance."""
        n = sum(s.number for s in self.stars)
        var = sum(s.sigma2 for s in self.stars)
        return n, var


class RangeMap:
    """
    Ordered, non-overlapping [lo, hi) ranges, each collecting the stars whose
    value falls inside it. Used both for magnitude bins and for look-back time
    bins. Gaps between ranges are allowed; values in a gap are not stored.
    """

    def __init__(self, ranges: Sequence[tuple[float, float]]) -> None:
        if not ranges:
            raise ValueError("Need at least one range")
        ordered = sorted((float(lo), float(hi)) for lo, hi in ranges)
        for lo, hi in ordered:
            if not hi > lo:
                raise ValueError(f"Empty range [{lo:g}, {hi:g})")
        for (_, hi0), (lo1, _) in zip(ordered[:-1], ordered[1:]):
            if lo1 < hi0:
                raise ValueError("Ranges must not overlap")
        self.bins = [Bin(lo, hi) for lo, hi in ordered]
        self._los = np.array([b.lo for b in self.bins])

    @classmethod
    def from_edges(cls, edges: Sequence[float]) -> RangeMap:
        return cls(list(zip(edges[:-1], edges[1:])))

    @classmethod
    def from_centres(cls, centres: Sequence[float], widths: Sequence[float]) -> RangeMap:
        if len(centres) != len(widths):
            raise ValueError("Need one width per bin centre")
        return cls([(c - 0.5 * w, c + 0.5 * w) for c, w in zip(centres, widths)])

    def __len__(self) -> int:
        return len(self.bins)

    def __iter__(self) -> Iterator[Bin]:
        return iter(self.bins)

    def __getitem__(self, i: int) -> Bin:
        return self.bins[i]

    @property
    def lo(self) -> float:
        return self.bins[0].lo

    @property
    def hi(self) -> float:
        return self.bins[-1].hi

    def index(self, value: float) -> int | None:
        if not np.isfinite(value):
            return None
        i = int(np.searchsorted(self._los, value, side="right")) - 1
        if i < 0 or value >= self.bins[i].hi:
            return None
        return i

    def add(self, value: float, star: Star) -> bool:
        """Store star under value; False if value lies outside every range."""
        i = self.index(value)
        if i is None:
            return False
        self.bins[i].stars.append(star)
        return True

    def stars(self) -> Iterator[Star]:
        for b in self.bins:
            yield from b.stars

    def clear(self) -> None:
        for b in self.bins:
            b.stars.clear()
