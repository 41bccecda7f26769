"""
Density profiles and the generalized volume along a survey field's line of sight.

The generalized volume out to distance d is

  V_gen(d) = Ω ∫_0^d ρ(r)/ρ_sun r^2 dr

so a population's local density divided into the observed counts absorbs the
density gradient along each line of sight. Distances may be floats or arrays.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy.special import gammainc

if TYPE_CHECKING:
    from .survey import SurveyField

POPULATIONS = ("thin_disk", "thick_disk", "spheroid")


@dataclass(frozen=True)
class UniformDensity:
    name: str = "uniform"

    def generalized_volume(self, distance: float | np.ndarray, field: SurveyField) -> float | np.ndarray:
        d = np.maximum(distance, 0.0)
        return field.solid_angle * d**3 / 3.0


@dataclass(frozen=True)
class ExponentialDisk:
    """
    ρ(z) ∝ exp(-|z| / H), with z = d sin(b) the height above the plane
    (the Sun is placed in the plane).
    """

    scale_height_pc: float = 250.0
    name: str = "exponential disk"

    def __post_init__(self) -> None:
        if self.scale_height_pc <= 0:
            raise ValueError("scale_height_pc must be positive")

    def generalized_volume(self, distance: float | np.ndarray, field: SurveyField) -> float | np.ndarray:
        d = np.maximum(distance, 0.0)
        k = abs(math.sin(math.radians(field.latitude_deg))) / self.scale_height_pc
        if k == 0.0:
            return field.solid_angle * d**3 / 3.0
        # Ω ∫_0^d r^2 e^{-kr} dr = Ω Γ(3) P(3, kd) / k^3
        return field.solid_angle * 2.0 * gammainc(3.0, k * d) / k**3


DensityProfile = UniformDensity | ExponentialDisk


def default_profiles(
    *,
    thin_disk_h_pc: float = 250.0,
    thick_disk_h_pc: float = 1000.0,
) -> dict[str, DensityProfile]:
    return {
        "thin_disk": ExponentialDisk(thin_disk_h_pc, name="thin disk"),
        "thick_disk": ExponentialDisk(thick_disk_h_pc, name="thick disk"),
        "spheroid": UniformDensity(name="spheroid"),
    }
