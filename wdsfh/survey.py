"""
Survey selection function: generalized V, Vmax and marginalized Vmax.

A survey field selects an object when its apparent magnitudes lie between the
field's bright and faint limits in every band and its proper motion lies in
(mu_low(mag), mu_high]. The lower proper-motion limit follows the astrometric
error, a tabulated function of magnitude, so the distance at which an object
drops out of the survey is found by sweeping the line of sight in annuli of
constant magnitude step rather than in closed form.

All survey phases (low, intermediate and high proper motion) are instances of
one `Survey` type that differ only in their tables; their volumes add.
"""

from __future__ import annotations

import csv
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from .density import DensityProfile, default_profiles

log = logging.getLogger(__name__)

# km/s per (arcsec/yr * pc)
KAPPA = 4.74

_D_MIN_PC = 0.1
_VT_TABLE_MAX = 599.0


def distance_at_mag(limit: float, abs_mag: float) -> float:
    """Distance (pc) at which an object of absolute magnitude abs_mag has apparent magnitude limit."""
    return 10.0 ** ((limit - abs_mag + 5.0) / 5.0)


def absolute_mag(app_mag: float, distance_pc: float) -> float:
    return app_mag - 5.0 * math.log10(distance_pc) + 5.0


@dataclass(frozen=True)
class SurveyField:
    field_id: int
    hemisphere: str
    solid_angle: float
    bright_limits: dict[str, float]
    faint_limits: dict[str, float]
    latitude_deg: float = 90.0
    chi2_limit: float = 1.0
    chi2_completeness: float = 1.0
    included: bool = True

    def __post_init__(self) -> None:
        if self.hemisphere not in {"N", "S"}:
            raise ValueError(f"hemisphere must be 'N' or 'S', got {self.hemisphere!r}")
        if self.solid_angle < 0:
            raise ValueError("solid_angle must be non-negative")
        if not (0.0 < self.chi2_completeness <= 1.0):
            raise ValueError("chi2_completeness must be in (0, 1]")
        if not self.faint_limits:
            raise ValueError("A field needs at least one faint magnitude limit")

    @property
    def label(self) -> str:
        return f"{self.field_id}{self.hemisphere}"


@dataclass(frozen=True)
class ConstantLowerLimit:
    """Fixed lower proper-motion limit (arcsec/yr)."""

    mu: float

    def __call__(self, mag: float | np.ndarray, survey_field: SurveyField) -> float | np.ndarray:
        return np.full_like(np.asarray(mag, dtype=float), self.mu) if np.ndim(mag) else self.mu

    def floor(self) -> float:
        return self.mu


class AstrometricLowerLimit:
    """
    Lower proper-motion limit at `factor` times the astrometric error:

      mu_low(mag) = factor * (sigma_mu(mag) + offset) / 1000   [arcsec/yr]

    sigma_mu (mas/yr) is tabulated against magnitude per hemisphere and held
    constant beyond the ends of the table.
    """

    def __init__(
        self,
        tables: dict[str, tuple[Sequence[float], Sequence[float]]],
        *,
        offset_mas: float = 2.0,
        factor: float = 5.0,
    ) -> None:
        if not tables:
            raise ValueError("Need at least one astrometric error table")
        self.tables: dict[str, tuple[np.ndarray, np.ndarray]] = {}
        for hemi, (mags, sig) in tables.items():
            m = np.asarray(mags, dtype=float)
            s = np.asarray(sig, dtype=float)
            if m.shape != s.shape or m.size < 2 or np.any(np.diff(m) <= 0):
                raise ValueError(f"Bad astrometric error table for hemisphere {hemi!r}")
            self.tables[hemi] = (m, s)
        self.offset_mas = offset_mas
        self.factor = factor

    def __call__(self, mag: float | np.ndarray, survey_field: SurveyField) -> float | np.ndarray:
        try:
            mags, sig = self.tables[survey_field.hemisphere]
        except KeyError:
            raise ValueError(f"No astrometric errors for hemisphere {survey_field.hemisphere!r}") from None
        sigma = np.interp(mag, mags, sig)
        out = self.factor * (sigma + self.offset_mas) / 1000.0
        return out if np.ndim(mag) else float(out)

    def floor(self) -> float:
        return min(self.factor * (float(s.min()) + self.offset_mas) / 1000.0 for _, s in self.tables.values())


ProperMotionLimit = ConstantLowerLimit | AstrometricLowerLimit


@dataclass(frozen=True)
class Survey:
    name: str
    fields: tuple[SurveyField, ...]
    mu_lower: ProperMotionLimit
    mu_upper: float
    pm_band: str
    profiles: dict[str, DensityProfile] = field(default_factory=default_profiles)
    delta_mag: float = 0.01

    def __post_init__(self) -> None:
        if self.delta_mag <= 0:
            raise ValueError("delta_mag must be positive")
        if self.mu_upper <= self.mu_lower.floor():
            raise ValueError("mu_upper must exceed the lower proper-motion limit")

    @property
    def populations(self) -> tuple[str, ...]:
        return tuple(self.profiles)

    def included_fields(self) -> list[SurveyField]:
        return [f for f in self.fields if f.included and f.solid_angle > 0]

    @property
    def solid_angle(self) -> float:
        return sum(f.solid_angle for f in self.included_fields())


@dataclass(frozen=True)
class SurveyObject:
    """An observed (or hypothetical) object: apparent magnitudes, distance, proper motion."""

    mags: dict[str, float]
    distance_pc: float
    mu: float

    def __post_init__(self) -> None:
        if self.distance_pc <= 0:
            raise ValueError("distance_pc must be positive")
        if self.mu < 0:
            raise ValueError("Proper motion must be non-negative")

    @property
    def vt(self) -> float:
        return KAPPA * self.distance_pc * self.mu

    def absolute_mags(self) -> dict[str, float]:
        return {b: absolute_mag(m, self.distance_pc) for b, m in self.mags.items()}


def annuli(d_lo: float, d_hi: float, delta_mag: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Inner and outer radii of the annuli covering [d_lo, d_hi].

    Consecutive radii differ by a constant apparent-magnitude step delta_mag,
    d -> d 10^(delta_mag/5); the last annulus is clipped to d_hi.
    """
    if not (d_hi > d_lo > 0):
        return np.zeros(0), np.zeros(0)
    ratio = 10.0 ** (delta_mag / 5.0)
    n = max(1, math.ceil(math.log(d_hi / d_lo) / math.log(ratio)))
    edges = d_lo * ratio ** np.arange(n + 1)
    edges = edges[edges < d_hi]
    edges = np.append(edges, d_hi)
    return edges[:-1], edges[1:]


def _magnitude_window(survey_field: SurveyField, abs_mags: dict[str, float]) -> tuple[float, float]:
    try:
        d_faint = [distance_at_mag(lim, abs_mags[b]) for b, lim in survey_field.faint_limits.items()]
        d_bright = [distance_at_mag(lim, abs_mags[b]) for b, lim in survey_field.bright_limits.items()]
    except KeyError as exc:
        raise ValueError(f"Object has no magnitude in band {exc.args[0]!r} required by field {survey_field.label}") from None
    return max(d_bright, default=_D_MIN_PC), min(d_faint)


def distance_window(
    survey: Survey, survey_field: SurveyField, abs_mags: dict[str, float], vt_kms: float
) -> tuple[float, float]:
    """
    Distances over which the object could be selected in this field: the
    magnitude window intersected with the proper-motion window. May be empty
    (hi <= lo).
    """
    dmin_m, dmax_m = _magnitude_window(survey_field, abs_mags)
    if vt_kms <= 0:
        return 0.0, 0.0
    dmin_p = vt_kms / (KAPPA * survey.mu_upper)
    floor = survey.mu_lower.floor()
    dmax_p = vt_kms / (KAPPA * floor) if floor > 0 else math.inf
    return max(dmin_m, dmin_p), min(dmax_m, dmax_p)


def proper_motion_selected(
    survey: Survey, survey_field: SurveyField, *, vt_kms: float, distance_pc: float, mag: float
) -> bool:
    """Would an object with this tangential velocity, at this distance and magnitude, pass the proper-motion cuts?"""
    mu = vt_kms / (KAPPA * distance_pc)
    return bool(mu > survey.mu_lower(mag, survey_field) and mu <= survey.mu_upper)


def _swept_volume(
    survey: Survey,
    survey_field: SurveyField,
    pm_abs_mag: float,
    vt_kms: float,
    d_lo: float,
    d_hi: float,
) -> dict[str, float]:
    lo, hi = annuli(d_lo, d_hi, survey.delta_mag)
    if lo.size == 0:
        return {p: 0.0 for p in survey.profiles}
    mid = np.sqrt(lo * hi)
    mag = pm_abs_mag + 5.0 * np.log10(mid) - 5.0
    mu = vt_kms / (KAPPA * mid)
    keep = (mu > survey.mu_lower(mag, survey_field)) & (mu <= survey.mu_upper)
    out: dict[str, float] = {}
    for p, profile in survey.profiles.items():
        dv = profile.generalized_volume(hi, survey_field) - profile.generalized_volume(lo, survey_field)
        out[p] = float(np.sum(dv[keep]))
    return out


def vmax(survey: Survey, obj: SurveyObject) -> dict[str, tuple[float, float]]:
    """
    Generalized volume to the object's distance (V) and to the survey limit
    (Vmax), per population, summed over all included fields.
    """
    abs_mags = obj.absolute_mags()
    if survey.pm_band not in abs_mags:
        raise ValueError(f"Object has no magnitude in proper-motion band {survey.pm_band!r}")
    vt = obj.vt
    totals = {p: [0.0, 0.0] for p in survey.profiles}
    for f in survey.included_fields():
        lo, hi = distance_window(survey, f, abs_mags, vt)
        if hi <= lo:
            continue
        near = _swept_volume(survey, f, abs_mags[survey.pm_band], vt, lo, min(hi, obj.distance_pc))
        far = _swept_volume(survey, f, abs_mags[survey.pm_band], vt, max(lo, obj.distance_pc), hi)
        for p in totals:
            totals[p][0] += near[p]
            totals[p][1] += near[p] + far[p]
    return {p: (v, vm) for p, (v, vm) in totals.items()}


def combined_vmax(surveys: Sequence[Survey], obj: SurveyObject) -> dict[str, tuple[float, float]]:
    """V and Vmax over several survey phases; volumes of disjoint phases add."""
    out: dict[str, tuple[float, float]] = {}
    for s in surveys:
        for p, (v, vm) in vmax(s, obj).items():
            v0, vm0 = out.get(p, (0.0, 0.0))
            out[p] = (v0 + v, vm0 + vm)
    return out


class DiscoveryFractions:
    """
    Cumulative tangential-velocity distributions, per kinematic population.

    fraction(population, field, vt) is the fraction of the population's
    members towards that field with tangential velocity <= vt; it is
    non-decreasing in vt, 0 at vt = 0 and reaches 1 at the end of the table
    (599 km/s by default). A table registered for a specific (population,
    field, hemisphere) overrides the population default.
    """

    def __init__(
        self,
        v: Sequence[float],
        cumulative: dict[str, Sequence[float]],
        *,
        per_field: dict[tuple[str, int, str], Sequence[float]] | None = None,
    ) -> None:
        self.v = np.asarray(v, dtype=float)
        if self.v.ndim != 1 or self.v.size < 2 or np.any(np.diff(self.v) <= 0):
            raise ValueError("Velocity grid must be strictly increasing")
        self.cumulative = {p: self._check(c) for p, c in cumulative.items()}
        self.per_field = {k: self._check(c) for k, c in (per_field or {}).items()}

    def _check(self, c: Sequence[float]) -> np.ndarray:
        arr = np.asarray(c, dtype=float)
        if arr.shape != self.v.shape:
            raise ValueError("Need one cumulative fraction per velocity")
        if np.any(np.diff(arr) < 0) or arr.min() < 0 or arr.max() > 1:
            raise ValueError("Cumulative fractions must be non-decreasing within [0, 1]")
        return arr

    @property
    def v_max(self) -> float:
        return float(self.v[-1])

    @classmethod
    def rayleigh(cls, sigmas: dict[str, float], *, v_max: float = _VT_TABLE_MAX, n: int = 600) -> DiscoveryFractions:
        """
        Isotropic Gaussian velocity ellipsoid projected on the sky: v_tan is
        Rayleigh distributed with scale sigma (km/s).
        """
        v = np.linspace(0.0, v_max, n)
        cum = {p: 1.0 - np.exp(-(v**2) / (2.0 * s**2)) for p, s in sigmas.items()}
        # Anything beyond the table is counted in the last entry.
        for c in cum.values():
            c[-1] = 1.0
        return cls(v, cum)

    def fraction(self, population: str, survey_field: SurveyField, vt: float | np.ndarray) -> float | np.ndarray:
        if not survey_field.included:
            return np.zeros_like(np.asarray(vt, dtype=float)) if np.ndim(vt) else 0.0
        table = self.per_field.get((population, survey_field.field_id, survey_field.hemisphere))
        if table is None:
            try:
                table = self.cumulative[population]
            except KeyError:
                raise ValueError(f"No discovery fractions for population {population!r}") from None
        out = np.interp(vt, self.v, table)
        return out if np.ndim(vt) else float(out)


def marginalized_vmax(
    survey: Survey,
    abs_mags: dict[str, float],
    discovery: DiscoveryFractions,
    v_edges: Sequence[float],
    *,
    discrete: bool = True,
) -> dict[str, np.ndarray]:
    """
    Vmax split by tangential-velocity range, per population.

    v_edges are the lower limits of the velocity ranges. With discrete=True
    range i is [v_i, v_{i+1}) (the last unbounded above); otherwise range i is
    [v_i, inf) and the ranges overlap. Each annulus contributes its generalized
    volume times the fraction of the population whose v_tan is both inside the
    range and inside the annulus's proper-motion sensitivity, times the field's
    chi2 completeness.
    """
    edges = np.asarray(v_edges, dtype=float)
    if edges.ndim != 1 or edges.size == 0 or np.any(np.diff(edges) <= 0):
        raise ValueError("v_edges must be a non-empty, strictly increasing sequence")
    if survey.pm_band not in abs_mags:
        raise ValueError(f"No absolute magnitude in proper-motion band {survey.pm_band!r}")

    out = {p: np.zeros(edges.size) for p in survey.profiles}
    for f in survey.included_fields():
        d_lo, d_hi = _magnitude_window(f, abs_mags)
        lo, hi = annuli(d_lo, d_hi, survey.delta_mag)
        if lo.size == 0:
            continue
        mid = np.sqrt(lo * hi)
        mag = abs_mags[survey.pm_band] + 5.0 * np.log10(mid) - 5.0
        vt_min = np.minimum(KAPPA * mid * survey.mu_lower(mag, f), discovery.v_max)
        vt_max = np.minimum(KAPPA * mid * survey.mu_upper, discovery.v_max)

        for p, profile in survey.profiles.items():
            dv = (profile.generalized_volume(hi, f) - profile.generalized_volume(lo, f)) * f.chi2_completeness
            for i, v_lo in enumerate(edges):
                lower = np.maximum(v_lo, vt_min)
                if discrete and i + 1 < edges.size:
                    upper = np.minimum(edges[i + 1], vt_max)
                else:
                    upper = vt_max
                frac = np.where(
                    upper > lower,
                    discovery.fraction(p, f, upper) - discovery.fraction(p, f, lower),
                    0.0,
                )
                out[p][i] += float(np.sum(dv * frac))
    return out


def load_fields_csv(path: Path | str) -> list[SurveyField]:
    """
    Read survey fields from CSV.

    Required columns: field_id, hemisphere, solid_angle_sr. Magnitude limits
    come from any number of bright_<band> / faint_<band> columns. Optional:
    latitude_deg, chi2_limit, chi2_completeness, included (0/1).
    """
    path = Path(path)
    out: list[SurveyField] = []
    with path.open(newline="") as f:
        r = csv.DictReader(f)
        cols = set(r.fieldnames or [])
        need = {"field_id", "hemisphere", "solid_angle_sr"}
        missing = need - cols
        if missing:
            raise RuntimeError(f"{path} missing columns: {sorted(missing)}")
        bright = sorted(c for c in cols if c.startswith("bright_"))
        faint = sorted(c for c in cols if c.startswith("faint_"))
        if not faint:
            raise RuntimeError(f"{path} has no faint_<band> columns")
        for row in r:
            out.append(
                SurveyField(
                    field_id=int(row["field_id"]),
                    hemisphere=row["hemisphere"].strip().upper(),
                    solid_angle=float(row["solid_angle_sr"]),
                    bright_limits={c[len("bright_"):]: float(row[c]) for c in bright if row[c].strip()},
                    faint_limits={c[len("faint_"):]: float(row[c]) for c in faint if row[c].strip()},
                    latitude_deg=float(row.get("latitude_deg") or 90.0),
                    chi2_limit=float(row.get("chi2_limit") or 1.0),
                    chi2_completeness=float(row.get("chi2_completeness") or 1.0),
                    included=(row.get("included") or "1").strip() not in {"0", "false", "False"},
                )
            )
    if not out:
        raise RuntimeError(f"{path} is empty")
    return out


# Demo survey -----------------------------------------------------------------

# chi2 cuts and the fraction of real objects passing them, per hemisphere
_CHI2_LIMIT = {"N": 0.8, "S": 1.5}
_CHI2_COMPLETENESS = {"N": 0.83, "S": 0.98}


def demo_fields(
    *,
    n_per_hemisphere: int = 12,
    solid_angle: float = 0.0108,
    bright: dict[str, float] | None = None,
    faint: dict[str, float] | None = None,
) -> tuple[SurveyField, ...]:
    """
    Synthetic photographic-plate footprint: fields spread evenly in |b| from
    20 to 90 degrees in each hemisphere.
    """
    bright = {"B": 14.0} if bright is None else bright
    faint = {"B": 22.5, "R": 21.5, "I": 19.5} if faint is None else faint
    out = []
    for hemi in ("N", "S"):
        sign = 1.0 if hemi == "N" else -1.0
        for i, b in enumerate(np.linspace(20.0, 90.0, n_per_hemisphere)):
            out.append(
                SurveyField(
                    field_id=i + 1,
                    hemisphere=hemi,
                    solid_angle=solid_angle,
                    bright_limits=dict(bright),
                    faint_limits=dict(faint),
                    latitude_deg=sign * float(b),
                    chi2_limit=_CHI2_LIMIT[hemi],
                    chi2_completeness=_CHI2_COMPLETENESS[hemi],
                )
            )
    return tuple(out)


def demo_surveys(*, delta_mag: float = 0.05) -> list[Survey]:
    """
    A low and a high proper-motion survey phase over the same demo fields.
    The low phase is limited below by 5x the astrometric error.
    """
    fields = demo_fields()
    errors = (
        np.array([14.0, 16.0, 18.0, 20.0, 21.0, 22.0, 23.0]),
        np.array([4.0, 5.0, 7.0, 10.0, 14.0, 20.0, 30.0]),
    )
    low = Survey(
        name="low proper motion",
        fields=fields,
        mu_lower=AstrometricLowerLimit({"N": errors, "S": errors}),
        mu_upper=0.18,
        pm_band="B",
        delta_mag=delta_mag,
    )
    high = Survey(
        name="high proper motion",
        fields=fields,
        mu_lower=ConstantLowerLimit(0.18),
        mu_upper=10.0,
        pm_band="R",
        delta_mag=delta_mag,
    )
    return [low, high]


def demo_discovery_fractions() -> DiscoveryFractions:
    return DiscoveryFractions.rayleigh({"thin_disk": 32.0, "thick_disk": 64.0, "spheroid": 200.0})
