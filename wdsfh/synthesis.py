from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

import numpy as np

from .binning import RangeMap
from .cooling import CoolingModels, mestel_models
from .density import DensityProfile, UniformDensity
from .ifmr import PiecewiseLinearIFMR, kalirai2008
from .imf import PowerLawIMF
from .lifetime import Hurley2000Lifetime, LifetimeModel
from .luminosity_function import LuminosityFunction
from .sfr import BinnedSFR, ConstantSFR, SFRModel
from .star import Star
from .survey import SurveyField, distance_at_mag

log = logging.getLogger(__name__)

# Per-bin draws allowed for every WD requested before a formation-time bin is abandoned.
_MAX_DRAWS_PER_WD = 1000


@dataclass(frozen=True)
class ModellingParameters:
    """
    Everything the forward model needs besides the SFR being tested:
    the physics (IMF, IFMR, lifetimes, cooling) and the population's
    chemistry, atmosphere mix and photometric scatter.
    """

    sfr: SFRModel = field(default_factory=ConstantSFR)
    imf: PowerLawIMF = field(default_factory=PowerLawIMF)
    ifmr: PiecewiseLinearIFMR = field(default_factory=kalirai2008)
    lifetime: LifetimeModel = field(default_factory=Hurley2000Lifetime)
    cooling: CoolingModels = field(default_factory=mestel_models)
    filter_name: str = "Mbol"

    z_mean: float = 0.003
    z_sigma: float = 0.001
    y_mean: float = 0.26
    y_sigma: float = 0.001

    # Fraction of WDs with hydrogen atmospheres
    w_h: float = 1.0
    sigma_mag: float = 0.1

    def __post_init__(self) -> None:
        if not (0.0 <= self.w_h <= 1.0):
            raise ValueError("w_h must be in [0,1]")
        if self.z_mean <= 0 or self.y_mean <= 0:
            raise ValueError("Mean Z and Y must be positive")
        if self.z_sigma < 0 or self.y_sigma < 0 or self.sigma_mag < 0:
            raise ValueError("Dispersions must be non-negative")

    def with_sfr(self, sfr: SFRModel) -> ModellingParameters:
        return replace(self, sfr=sfr)


def _positive_normal(rng: np.random.Generator, mean: float, sigma: float) -> float:
    if sigma == 0:
        return mean
    while True:
        v = float(rng.normal(mean, sigma))
        if v > 0:
            return v


def draw_star(params: ModellingParameters, formation_time: float, rng: np.random.Generator) -> Star:
    """
    One star formed `formation_time` years ago. Stars still on the main sequence
    come back with is_wd=False and no WD properties.
    """
    mass = params.imf.draw_mass(rng)
    z = _positive_normal(rng, params.z_mean, params.z_sigma)
    y = _positive_normal(rng, params.y_mean, params.y_sigma)
    lifetime = params.lifetime.lifetime(mass, z, y)
    star = Star(initial_mass=mass, formation_time=formation_time, z=z, y=y, lifetime=lifetime)
    if not formation_time > lifetime:
        return star

    star.is_wd = True
    star.wd_mass = params.ifmr.final_mass(mass)
    star.cooling_time = formation_time - lifetime
    star.atmosphere = "H" if rng.random() < params.w_h else "He"
    mag = params.cooling.magnitude(star.cooling_time, star.wd_mass, star.atmosphere, params.filter_name)
    star.mag = mag + float(rng.normal()) * params.sigma_mag
    star.extrapolated = params.cooling.is_extrapolated(
        star.cooling_time, star.wd_mass, star.atmosphere, params.filter_name
    )
    return star


@dataclass(frozen=True)
class MagnitudeLimit:
    """
    Apparent-magnitude limited sampling: a WD of absolute magnitude M is seen
    out to d_max(M), so it is kept with probability V(d_max)/V_tot and, when
    kept, stands for V_tot/V(d_max) stars. V_tot is the volume over which the
    brightest WD considered, absolute magnitude `brightest_abs_mag`, is visible.
    """

    apparent_mag_limit: float
    survey_field: SurveyField
    profile: DensityProfile = field(default_factory=UniformDensity)
    brightest_abs_mag: float = -5.0

    def volume_fraction(self, abs_mag: float) -> float:
        d_tot = distance_at_mag(self.apparent_mag_limit, self.brightest_abs_mag)
        v_tot = self.profile.generalized_volume(d_tot, self.survey_field)
        v_max = self.profile.generalized_volume(distance_at_mag(self.apparent_mag_limit, abs_mag), self.survey_field)
        return float(min(v_max / v_tot, 1.0))


@dataclass
class SyntheticPopulation:
    """
    Output of a synthesis run. `by_mag` holds the WDs inside the luminosity
    function range (the observed ones), `wds` every WD drawn.
    """

    by_mag: RangeMap
    wds: list[Star]
    n_drawn: int
    n_real: float

    @property
    def observed(self) -> list[Star]:
        return [s for s in self.wds if s.is_observed]


def synthesize(
    params: ModellingParameters,
    mag_bins: RangeMap,
    n_wds: int,
    rng: np.random.Generator,
    *,
    magnitude_limit: MagnitudeLimit | None = None,
) -> SyntheticPopulation:
    """
    Draw stars from params.sfr until `n_wds` of them are WDs falling inside the
    magnitude bins. Every WD is then weighted by N_real / N_sim so the bins hold
    densities for the SFR's normalization.
    """
    if n_wds <= 0:
        raise ValueError("n_wds must be positive")
    n_real, _ = params.sfr.integrate()
    max_draws = _MAX_DRAWS_PER_WD * n_wds

    wds: list[Star] = []
    n_observed = 0
    n_drawn = 0
    while n_observed < n_wds:
        if n_drawn >= max_draws:
            raise RuntimeError(
                f"Only {n_observed} of {n_wds} WDs fell in [{mag_bins.lo:g}, {mag_bins.hi:g}] "
                f"after {n_drawn} draws; check the SFR and magnitude range"
            )
        star = draw_star(params, params.sfr.draw_formation_time(rng), rng)
        n_drawn += 1
        if not star.is_wd:
            continue
        if magnitude_limit is not None:
            p_obs = magnitude_limit.volume_fraction(star.mag)
            if p_obs <= 0 or rng.random() >= p_obs:
                continue
            star.reweight(1.0 / p_obs, 0.0)
        wds.append(star)
        star.is_observed = mag_bins.add(star.mag, star)
        if star.is_observed:
            n_observed += 1

    weight = n_real / n_drawn
    for s in wds:
        s.reweight(weight, 0.0)
    log.info("Synthesized %d WDs (%d in range) from %d draws", len(wds), n_observed, n_drawn)
    return SyntheticPopulation(by_mag=mag_bins, wds=wds, n_drawn=n_drawn, n_real=n_real)


def synthesize_time_bins(
    params: ModellingParameters,
    sfr: BinnedSFR,
    mag_bins: RangeMap,
    n_wds: int,
    rng: np.random.Generator,
) -> RangeMap:
    """
    Per-formation-time-bin synthesis used by the inverter.

    Each SFR bin draws formation times uniformly across itself until it has
    produced its share of WDs; its WDs are weighted by rate * width / N_sim.
    All WDs go into the returned time bins, and those inside the magnitude
    range also into `mag_bins`.
    """
    time_bins = RangeMap.from_edges(sfr.edges)
    per_bin = max(1, n_wds // sfr.n_bins)
    for (t_lo, t_hi, rate), tbin in zip(sfr.bins(), time_bins):
        n_sim = 0
        n_wd = 0
        while n_wd < per_bin:
            if n_sim >= _MAX_DRAWS_PER_WD * per_bin:
                log.warning(
                    "Formation time bin [%.3g, %.3g] yr produced only %d WDs in %d draws", t_lo, t_hi, n_wd, n_sim
                )
                break
            star = draw_star(params, float(rng.uniform(t_lo, t_hi)), rng)
            n_sim += 1
            if not star.is_wd:
                continue
            n_wd += 1
            star.is_observed = mag_bins.add(star.mag, star)
            tbin.stars.append(star)
        weight = rate * (t_hi - t_lo) / n_sim
        for s in tbin.stars:
            s.reweight(weight, 0.0)
    return time_bins


@dataclass(frozen=True)
class ModelLuminosityFunction:
    lf: LuminosityFunction
    mean_wd_mass: float
    mean_wd_mass_std: float
    mean_age: float
    mean_age_std: float
    n_drawn: int


def _weighted_mean_std(values: list[float], weights: list[float]) -> tuple[float, float]:
    if not values or sum(weights) <= 0:
        return float("nan"), float("nan")
    v = np.asarray(values)
    w = np.asarray(weights)
    mean = float(np.average(v, weights=w))
    return mean, float(np.sqrt(np.average((v - mean) ** 2, weights=w)))


def binned_density(by_mag: RangeMap, *, filter_name: str = "Mbol") -> LuminosityFunction:
    """Current density per magnitude bin; empty bins get density 0 and error 1e9."""
    centres, widths, dens, err = [], [], [], []
    for b in by_mag:
        n, var = b.total()
        centres.append(b.centre)
        widths.append(b.width)
        if len(b) == 0:
            dens.append(0.0)
            err.append(1e9)
        else:
            dens.append(n / b.width)
            err.append(float(np.sqrt(var)) / b.width)
    return LuminosityFunction.from_arrays(centres, widths, dens, err, filter_name=filter_name, target="model")


def luminosity_function_of(pop: SyntheticPopulation, *, filter_name: str = "Mbol") -> ModelLuminosityFunction:
    obs = pop.observed
    w = [s.number for s in obs]
    mass, mass_std = _weighted_mean_std([s.wd_mass for s in obs], w)
    age, age_std = _weighted_mean_std([s.total_age for s in obs], w)
    return ModelLuminosityFunction(
        lf=binned_density(pop.by_mag, filter_name=filter_name),
        mean_wd_mass=mass,
        mean_wd_mass_std=mass_std,
        mean_age=age,
        mean_age_std=age_std,
        n_drawn=pop.n_drawn,
    )


def model_luminosity_function(
    params: ModellingParameters,
    mag_bins: RangeMap,
    n_wds: int,
    rng: np.random.Generator,
    *,
    magnitude_limit: MagnitudeLimit | None = None,
) -> ModelLuminosityFunction:
    pop = synthesize(params, mag_bins, n_wds, rng, magnitude_limit=magnitude_limit)
    return luminosity_function_of(pop, filter_name=params.filter_name)


def mock_observed_wdlf(
    params: ModellingParameters,
    mag_bins: RangeMap,
    n_wds: int,
    rng: np.random.Generator,
    *,
    rel_error: float = 0.1,
) -> LuminosityFunction:
    """
    Mock observed luminosity function from the forward model of params.sfr.
    Empty bins are dropped; errors are at least rel_error of the density.
    """
    lf = model_luminosity_function(params, mag_bins, n_wds, rng).lf
    keep = lf.density > 0
    if not keep.any():
        raise RuntimeError("Synthetic luminosity function is empty")
    sigma = np.maximum(lf.sigma[keep], rel_error * lf.density[keep])
    return LuminosityFunction.from_arrays(
        lf.centres[keep], lf.widths[keep], lf.density[keep], sigma, filter_name=lf.filter_name, target="synthetic"
    )
