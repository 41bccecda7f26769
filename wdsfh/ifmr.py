from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PiecewiseLinearIFMR:
    """
    Initial-final mass relation made of linear segments m_f = a m_i + b.

    `breaks` are the initial masses separating consecutive segments; the first
    and last segments are extrapolated beyond the calibrated range. An optional
    `mf_max` clamps the final mass (and the inverse accepts nothing above it).
    """

    name: str
    slopes: tuple[float, ...]
    intercepts: tuple[float, ...]
    breaks: tuple[float, ...] = ()
    mf_max: float | None = None

    def __post_init__(self) -> None:
        if len(self.slopes) != len(self.intercepts) or len(self.breaks) != len(self.slopes) - 1:
            raise ValueError("Need one intercept per slope and one break between each pair of segments")
        if any(a <= 0 for a in self.slopes):
            raise ValueError("IFMR segments must be increasing")

    def _segment_for_mi(self, mi: float) -> int:
        for i, b in enumerate(self.breaks):
            if mi <= b:
                return i
        return len(self.breaks)

    def final_mass(self, mi: float) -> float:
        i = self._segment_for_mi(mi)
        mf = self.slopes[i] * mi + self.intercepts[i]
        if self.mf_max is not None:
            mf = min(mf, self.mf_max)
        return mf

    def initial_mass(self, mf: float) -> float:
        if self.mf_max is not None:
            mf = min(mf, self.mf_max)
        i = 0
        for j, b in enumerate(self.breaks):
            # final mass at each break, on the lower segment
            if mf > self.slopes[j] * b + self.intercepts[j]:
                i = j + 1
        return (mf - self.intercepts[i]) / self.slopes[i]


def kalirai2008() -> PiecewiseLinearIFMR:
    return PiecewiseLinearIFMR(name="Kalirai et al. (2008)", slopes=(0.109,), intercepts=(0.428,))


def catalan2008() -> PiecewiseLinearIFMR:
    return PiecewiseLinearIFMR(
        name="Catalan et al. (2008)",
        slopes=(0.096, 0.137),
        intercepts=(0.429, 0.318),
        breaks=(2.7,),
        mf_max=1.2,
    )


def cummings2018() -> PiecewiseLinearIFMR:
    return PiecewiseLinearIFMR(
        name="Cummings et al. (2018)",
        slopes=(0.08, 0.187, 0.107),
        intercepts=(0.489, 0.184, 0.471),
        breaks=(2.85, 3.6),
    )


IFMR_PRESETS = ("kalirai2008", "catalan2008", "cummings2018")


def ifmr_preset(name: str) -> PiecewiseLinearIFMR:
    name = name.strip().lower()
    if name == "kalirai2008":
        return kalirai2008()
    if name == "catalan2008":
        return catalan2008()
    if name == "cummings2018":
        return cummings2018()
    raise ValueError(f"Unknown IFMR preset: {name!r}")
