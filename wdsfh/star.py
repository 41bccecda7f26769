from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Star:
    """
    One synthetic star. `number` is how many real stars (per pc^3) it stands
    for and `sigma2` the variance on that number; both change only through
    `reweight` and `add_variance`.

    Each star is owned by exactly one magnitude bin and one formation-time bin;
    the inverter never moves stars between bins.
    """

    initial_mass: float
    formation_time: float
    z: float
    y: float
    lifetime: float
    is_wd: bool = False
    wd_mass: float = float("nan")
    cooling_time: float = float("nan")
    atmosphere: str = "H"
    mag: float = float("nan")
    is_observed: bool = False
    extrapolated: bool = False
    number: float = 1.0
    sigma2: float = 1.0

    @property
    def total_age(self) -> float:
        return self.formation_time

    def reweight(self, w: float, sigma_w: float) -> None:
        """Scale the represented number by w ± sigma_w, propagating the variance."""
        self.sigma2 = self.number**2 * sigma_w**2 + w**2 * self.sigma2
        self.number *= w

    def add_variance(self, var: float) -> None:
        self.sigma2 += var
