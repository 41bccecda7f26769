"""
Inversion of an observed luminosity function into a star formation history.

Each iteration synthesizes WDs per formation-time bin from the current SFR,
scales every magnitude bin of the synthetic population to the observed
density (propagating the observed errors onto the stars' weights), and reads
the SFR back off the reweighted stars of each formation-time bin after
correcting for

- WDs formed in the bin but falling outside the observed magnitude range, and
- progenitors still on the main sequence (below the turnoff mass).

Iterations stop once the chi2 of the match stops improving.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np

from .binning import Bin, RangeMap
from .luminosity_function import LuminosityFunction
from .numeric import bisect_bracketed
from .sfr import BinnedSFR
from .synthesis import ModellingParameters, binned_density, synthesize_time_bins

log = logging.getLogger(__name__)

# Tolerance on bin centres and widths when matching synthetic to observed bins
EPSILON = 1e-9
# Strips used to integrate the progenitor fraction across a time bin
N_STRIP = 10


class BinMismatchError(RuntimeError):
    """Synthetic and observed luminosity functions are not binned identically."""


@dataclass(frozen=True)
class SFRBinEstimate:
    t_min: float
    t_max: float
    rate: float
    sigma: float
    unobserved_correction: float
    low_mass_correction: float


@dataclass(frozen=True)
class NoSFRConstraint:
    """The data say nothing about the SFR in this bin."""

    t_min: float
    t_max: float
    reason: str


SFRResult = SFRBinEstimate | NoSFRConstraint


def _check_binning(by_mag: RangeMap, observed: LuminosityFunction) -> None:
    if len(by_mag) != len(observed):
        raise BinMismatchError(f"{len(by_mag)} synthetic bins vs {len(observed)} observed bins")
    for b, c, w in zip(by_mag, observed.centres, observed.widths):
        if abs(b.centre - c) > EPSILON or abs(b.width - w) > EPSILON:
            raise BinMismatchError(
                f"Synthetic bin {b.centre:.6f}±{b.width / 2:.6f} does not match observed bin {c:.6f}±{w / 2:.6f}"
            )


def add_observational_error(b: Bin, obs_sigma: float) -> None:
    """
    Spread the variance of the observed bin total, (obs_sigma * width)^2, over the
    bin's stars in proportion to their weights.
    """
    if len(b) == 0:
        return
    mean_n = sum(s.number for s in b.stars) / len(b)
    if mean_n <= 0:
        return
    var_per_real = obs_sigma**2 * b.width**2 / (len(b) * mean_n)
    for s in b.stars:
        s.add_variance(var_per_real * s.number)


def scale_to_observed_density(by_mag: RangeMap, observed: LuminosityFunction) -> float:
    """
    Reweight the stars of every magnitude bin so its density equals the observed
    one and return the chi2 of the match before scaling.
    """
    _check_binning(by_mag, observed)
    chi2 = 0.0
    for b, obs, obs_err in zip(by_mag, observed.density, observed.sigma):
        if not (obs > 0 and obs_err > 0):
            raise ValueError(
                f"Observed density and error must be positive, got {obs:g} ± {obs_err:g} at M = {b.centre:.2f}"
            )
        n, var = b.total()
        if len(b) == 0 or n <= 0:
            log.warning("No synthetic WDs in magnitude bin %.2f; bin skipped", b.centre)
            continue
        sim = n / b.width
        sim_err = math.sqrt(var) / b.width
        chi2 += (obs - sim) ** 2 / obs_err**2

        w = obs / sim
        sigma_w = math.sqrt(obs_err**2 / sim**2 + obs**2 * sim_err**2 / sim**4)
        for s in b.stars:
            s.reweight(w, sigma_w)
        add_observational_error(b, obs_err)
    return chi2


def fraction_wd_progenitors(
    params: ModellingParameters,
    t_min: float,
    t_max: float,
    *,
    n_strip: int = N_STRIP,
) -> float:
    """
    Fraction of the stars formed in [t_min, t_max] (look-back time) that have
    become WDs by now: one minus the IMF fraction below the turnoff mass,
    averaged over n_strip strips of the bin.
    """
    if not t_max > t_min:
        raise ValueError("Need t_max > t_min")
    if n_strip < 1:
        raise ValueError("n_strip must be positive")
    width = t_max - t_min
    dt = width / n_strip
    below = 0.0
    for i in range(n_strip):
        t = t_min + (i + 0.5) * dt
        m_turnoff = params.lifetime.mass(t, params.z_mean, params.y_mean)
        if m_turnoff < params.imf.m_upper:
            below += params.imf.integral(m_turnoff) * dt
        else:
            log.warning(
                "Turnoff mass %.2f at %.3g yr is above the IMF upper limit %.2f; no WDs formed",
                m_turnoff,
                t,
                params.imf.m_upper,
            )
            below += dt
    return 1.0 - below / width


def get_sfr(
    time_bin: Bin,
    params: ModellingParameters,
    *,
    stars_per_year: bool = True,
    progenitor_fraction: float | None = None,
) -> SFRResult:
    """
    SFR in one formation-time bin from the current weights of its stars.

    progenitor_fraction may be passed in when already known; it depends only on
    the bin and the stellar physics.
    """
    density = 0.0
    var = 0.0
    n_obs = 0
    for s in time_bin.stars:
        if s.is_observed:
            density += s.number
            var += s.sigma2
            n_obs += 1
    if n_obs == 0:
        return NoSFRConstraint(time_bin.lo, time_bin.hi, "no simulated WDs in the observed magnitude range")

    unobserved = len(time_bin) / n_obs
    density *= unobserved
    var *= unobserved**2

    frac = progenitor_fraction
    if frac is None:
        frac = fraction_wd_progenitors(params, time_bin.lo, time_bin.hi)
    if frac <= 0:
        return NoSFRConstraint(time_bin.lo, time_bin.hi, "no stars formed in this bin have become WDs")
    low_mass = 1.0 / frac
    density *= low_mass
    var *= low_mass**2

    if density < 0 or math.isnan(density):
        raise RuntimeError(f"Bad SFR {density} in bin [{time_bin.lo:g}, {time_bin.hi:g}]")
    if stars_per_year:
        density /= time_bin.width
        var /= time_bin.width**2
    return SFRBinEstimate(
        t_min=time_bin.lo,
        t_max=time_bin.hi,
        rate=density,
        sigma=math.sqrt(var),
        unobserved_correction=unobserved,
        low_mass_correction=low_mass,
    )


# Minimum WD mass ---------------------------------------------------------------


def total_age(params: ModellingParameters, mf: float, mag: float, atmosphere: str, filter_name: str) -> float:
    """Progenitor lifetime plus the time a WD of mass mf takes to cool to mag."""
    mi = min(params.ifmr.initial_mass(mf), params.imf.m_upper)
    return params.cooling.cooling_time(mag, mf, atmosphere, filter_name) + params.lifetime.lifetime(
        mi, params.z_mean, params.y_mean
    )


def min_wd_mass(
    params: ModellingParameters,
    *,
    age: float,
    mag: float,
    atmosphere: str = "H",
    filter_name: str | None = None,
    m0: float | None = None,
    m1: float | None = None,
    resolution: float = 1e-4,
) -> float:
    """
    Lowest WD mass that can be seen at magnitude `mag` in a population of the
    given age: below it, cooling to `mag` plus the progenitor's lifetime takes
    longer than `age`.

    The search runs over WD masses [m0, m1], by default the IFMR images of the
    IMF limits. The total age must be >= age at m0 and <= age at m1 (BracketError
    otherwise); a ValueError is raised when even the heaviest WD the IMF makes
    cannot reach `mag` within `age`.
    """
    filt = params.filter_name if filter_name is None else filter_name
    mf_top = params.ifmr.final_mass(params.imf.m_upper)
    lo = params.ifmr.final_mass(params.imf.m_lower) if m0 is None else m0
    hi = mf_top if m1 is None else m1

    t_top = total_age(params, mf_top, mag, atmosphere, filt)
    if t_top > age:
        raise ValueError(
            f"A {mf_top:.3f} Msun WD and its progenitor need {t_top:.3g} yr to reach M = {mag:.2f}, "
            f"longer than the age {age:.3g} yr"
        )

    return bisect_bracketed(
        lambda mf: total_age(params, mf, mag, atmosphere, filt),
        age,
        lo,
        hi,
        resolution=resolution,
        what=f"minimum WD mass at M = {mag:.2f}",
    )


def min_wd_mass_curve(
    params: ModellingParameters,
    *,
    age: float,
    mags: Sequence[float],
    atmosphere: str = "H",
    resolution: float = 1e-4,
) -> list[tuple[float, float]]:
    """
    Minimum WD mass against magnitude, brightest first. Magnitudes where every
    WD mass is old enough report the lower end of the mass range; the curve
    stops at the first magnitude the heaviest WD cannot reach.
    """
    mf_lo = params.ifmr.final_mass(params.imf.m_lower)
    mf_top = params.ifmr.final_mass(params.imf.m_upper)
    out: list[tuple[float, float]] = []
    for mag in sorted(mags):
        if total_age(params, mf_top, mag, atmosphere, params.filter_name) > age:
            out.append((float(mag), mf_top))
            break
        if total_age(params, mf_lo, mag, atmosphere, params.filter_name) < age:
            m = mf_lo
        else:
            m = min_wd_mass(params, age=age, mag=mag, atmosphere=atmosphere, resolution=resolution)
        out.append((float(mag), m))
    return out


# Convergence -------------------------------------------------------------------


@dataclass(frozen=True)
class Convergence:
    """
    Smoothed chi2 history. `kind` is "sliding-linear" (a straight line through
    the last `window` values) or "power-law" (chi2 = a * iteration^b through all
    values).
    """

    chi2: tuple[float, ...]
    kind: str = "sliding-linear"
    window: int = 5

    def __post_init__(self) -> None:
        if self.kind not in {"sliding-linear", "power-law"}:
            raise ValueError(f"Unknown convergence fit {self.kind!r}")
        if self.window < 2:
            raise ValueError("window must be at least 2")

    def _model(self) -> Callable[[np.ndarray], np.ndarray] | None:
        y = np.asarray(self.chi2, dtype=float)
        if y.size < 2:
            return None
        x = np.arange(1, y.size + 1, dtype=float)
        if self.kind == "power-law":
            if np.any(y <= 0):
                return None
            b, log_a = np.polyfit(np.log(x), np.log(y), 1)
            return lambda t: np.exp(log_a) * np.asarray(t, dtype=float) ** b
        m, c = np.polyfit(x[-self.window:], y[-self.window:], 1)
        return lambda t: m * np.asarray(t, dtype=float) + c

    def fitted(self) -> np.ndarray:
        """Fitted chi2 at each recorded iteration (iterations count from 1)."""
        y = np.asarray(self.chi2, dtype=float)
        model = self._model()
        if model is None:
            return y.copy()
        return model(np.arange(1, y.size + 1, dtype=float))

    def relative_change(self) -> float:
        """
        (fit(N) - fit(N+1)) / fit(N): the improvement the fit predicts for the
        next iteration. Falls back to the last two raw values when no fit exists.
        """
        n = len(self.chi2)
        if n < 2:
            return math.inf
        model = self._model()
        if model is None:
            cur, nxt = float(self.chi2[-2]), float(self.chi2[-1])
        else:
            cur, nxt = float(model(n)), float(model(n + 1))
        if cur == 0:
            return 0.0
        return (cur - nxt) / cur

    def has_converged(self, threshold: float, *, min_iterations: int = 5) -> bool:
        if len(self.chi2) < max(min_iterations, 2):
            return False
        return self.relative_change() < threshold


# Iterative inverter -----------------------------------------------------------


@dataclass(frozen=True)
class InversionConfig:
    n_wds: int = 10_000
    min_iterations: int = 5
    max_iterations: int = 50
    chi2_threshold: float = 0.01
    convergence: str = "sliding-linear"
    t_min: float = 0.0
    t_max: float = 14.5e9
    n_bins: int = 50
    initial_level: float = 1.5e-12
    seed: int | None = 1

    def __post_init__(self) -> None:
        if self.n_wds <= 0:
            raise ValueError("n_wds must be positive")
        if self.min_iterations < 1 or self.max_iterations < self.min_iterations:
            raise ValueError("Need 1 <= min_iterations <= max_iterations")
        if self.chi2_threshold <= 0:
            raise ValueError("chi2_threshold must be positive")


@dataclass
class InversionState:
    sfr: BinnedSFR
    estimates: list[SFRResult] = field(default_factory=list)
    chi2: list[float] = field(default_factory=list)
    model: LuminosityFunction | None = None
    converged: bool = False

    @property
    def iterations(self) -> int:
        return len(self.chi2)

    def table(self) -> list[dict[str, float | str]]:
        """One row per SFR bin of the latest estimate; unconstrained bins carry NaN."""
        rows: list[dict[str, float | str]] = []
        for est in self.estimates:
            if isinstance(est, SFRBinEstimate):
                rows.append(
                    {
                        "t_min": est.t_min,
                        "t_max": est.t_max,
                        "rate": est.rate,
                        "sigma": est.sigma,
                        "unobserved_correction": est.unobserved_correction,
                        "low_mass_correction": est.low_mass_correction,
                        "note": "",
                    }
                )
            else:
                rows.append(
                    {
                        "t_min": est.t_min,
                        "t_max": est.t_max,
                        "rate": float("nan"),
                        "sigma": float("nan"),
                        "unobserved_correction": float("nan"),
                        "low_mass_correction": float("nan"),
                        "note": est.reason,
                    }
                )
        return rows


class MonteCarloInverter:
    def __init__(
        self,
        params: ModellingParameters,
        observed: LuminosityFunction,
        config: InversionConfig | None = None,
    ) -> None:
        self.params = params
        self.observed = observed
        self.config = config or InversionConfig()
        self._fractions: dict[tuple[float, float], float] = {}

    def initial_state(self) -> InversionState:
        c = self.config
        return InversionState(
            sfr=BinnedSFR.initial_guess(t_min=c.t_min, t_max=c.t_max, n_bins=c.n_bins, level=c.initial_level)
        )

    def _progenitor_fraction(self, lo: float, hi: float) -> float:
        key = (lo, hi)
        if key not in self._fractions:
            self._fractions[key] = fraction_wd_progenitors(self.params, lo, hi)
        return self._fractions[key]

    def iterate(self, state: InversionState, rng: np.random.Generator) -> InversionState:
        """One synthesize / match / re-estimate cycle."""
        mag_bins = self.observed.empty_bins()
        time_bins = synthesize_time_bins(self.params, state.sfr, mag_bins, self.config.n_wds, rng)
        model = binned_density(mag_bins, filter_name=self.observed.filter_name)
        chi2 = scale_to_observed_density(mag_bins, self.observed)

        estimates: list[SFRResult] = []
        rates: list[float] = []
        errors: list[float] = []
        for tbin, old_rate, old_err in zip(time_bins, state.sfr.rates, state.sfr.errors or (0.0,) * state.sfr.n_bins):
            est = get_sfr(tbin, self.params, progenitor_fraction=self._progenitor_fraction(tbin.lo, tbin.hi))
            estimates.append(est)
            if isinstance(est, SFRBinEstimate):
                rates.append(est.rate)
                errors.append(est.sigma)
            else:
                log.warning("No SFR constraint in [%.3g, %.3g] yr: %s", est.t_min, est.t_max, est.reason)
                rates.append(old_rate)
                errors.append(old_err)

        return InversionState(
            sfr=state.sfr.with_rates(rates, errors),
            estimates=estimates,
            chi2=[*state.chi2, chi2],
            model=model,
        )

    def run(self, state: InversionState | None = None) -> InversionState:
        c = self.config
        rng = np.random.default_rng(c.seed)
        state = state or self.initial_state()
        while state.iterations < c.max_iterations:
            state = self.iterate(state, rng)
            conv = Convergence(tuple(state.chi2), kind=c.convergence)
            log.info("Iteration %d: chi2 = %.4g", state.iterations, state.chi2[-1])
            if conv.has_converged(c.chi2_threshold, min_iterations=c.min_iterations):
                state.converged = True
                log.info("Converged after %d iterations", state.iterations)
                break
        else:
            log.warning("No convergence after %d iterations", state.iterations)
        return state
