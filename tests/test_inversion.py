"""
Tests for the luminosity function inversion: density matching, the SFR
read-off, minimum WD masses and the iteration loop.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pytest

from wdsfh.binning import Bin, RangeMap
from wdsfh.imf import PowerLawIMF
from wdsfh.inversion import (
    BinMismatchError,
    Convergence,
    InversionConfig,
    MonteCarloInverter,
    NoSFRConstraint,
    SFRBinEstimate,
    fraction_wd_progenitors,
    get_sfr,
    min_wd_mass,
    min_wd_mass_curve,
    scale_to_observed_density,
    total_age,
)
from wdsfh.luminosity_function import LuminosityFunction
from wdsfh.numeric import BracketError, invert_monotonic
from wdsfh.sfr import BinnedSFR, ConstantSFR
from wdsfh.star import Star
from wdsfh.synthesis import ModellingParameters, mock_observed_wdlf, synthesize_time_bins


@dataclass(frozen=True)
class PowerLawLifetime:
    """t = t0 m^-2.5, invertible in closed form."""

    t0: float = 1e10

    def lifetime(self, mass, z, y):
        return self.t0 * mass**-2.5

    def mass(self, lifetime, z, y):
        return (lifetime / self.t0) ** -0.4


def _star(number=1.0, sigma2=1.0, observed=True) -> Star:
    return Star(
        initial_mass=2.0,
        formation_time=5e9,
        z=0.003,
        y=0.26,
        lifetime=1e9,
        is_wd=True,
        is_observed=observed,
        number=number,
        sigma2=sigma2,
    )


def _lf(centres, density, sigma, width=1.0) -> LuminosityFunction:
    return LuminosityFunction.from_arrays(centres, [width] * len(centres), density, sigma)


class TestScaleToObservedDensity:
    def test_hand_calculation(self):
        bins = RangeMap([(0.0, 1.0)])
        bins.add(0.5, _star())
        bins.add(0.5, _star())
        chi2 = scale_to_observed_density(bins, _lf([0.5], [4.0], [1.0]))
        assert chi2 == pytest.approx(4.0)
        for s in bins[0].stars:
            assert s.number == pytest.approx(2.0)
            # 2.25 from the weight error, 4 from the scaled star, 0.5 observational
            assert s.sigma2 == pytest.approx(6.75)

    def test_second_pass_is_a_no_op(self):
        bins = RangeMap([(0.0, 1.0), (1.0, 2.0)])
        for v, n in ((0.5, 1.0), (0.5, 3.0), (1.5, 2.0)):
            bins.add(v, _star(number=n))
        observed = _lf([0.5, 1.5], [8.0, 1.0], [1.0, 0.5])
        scale_to_observed_density(bins, observed)
        numbers = [s.number for s in bins.stars()]
        assert bins[0].total()[0] == pytest.approx(8.0)
        assert bins[1].total()[0] == pytest.approx(1.0)
        assert scale_to_observed_density(bins, observed) == pytest.approx(0.0, abs=1e-20)
        assert [s.number for s in bins.stars()] == pytest.approx(numbers)

    def test_bin_mismatch(self):
        bins = RangeMap([(0.0, 1.0)])
        with pytest.raises(BinMismatchError):
            scale_to_observed_density(bins, _lf([0.6], [1.0], [0.1]))
        with pytest.raises(BinMismatchError):
            scale_to_observed_density(bins, _lf([0.5, 1.5], [1.0, 1.0], [0.1, 0.1]))

    def test_rejects_non_positive_observation(self):
        bins = RangeMap([(0.0, 1.0)])
        bins.add(0.5, _star())
        with pytest.raises(ValueError):
            scale_to_observed_density(bins, _lf([0.5], [0.0], [0.1]))
        with pytest.raises(ValueError):
            scale_to_observed_density(bins, _lf([0.5], [1.0], [0.0]))

    def test_empty_bin_skipped(self, caplog):
        bins = RangeMap([(0.0, 1.0), (1.0, 2.0)])
        bins.add(0.5, _star())
        with caplog.at_level(logging.WARNING, logger="wdsfh.inversion"):
            chi2 = scale_to_observed_density(bins, _lf([0.5, 1.5], [3.0, 1.0], [1.0, 1.0]))
        assert chi2 == pytest.approx(4.0)
        assert "No synthetic WDs" in caplog.text


class TestProgenitorFraction:
    def test_matches_closed_form(self):
        """Power-law lifetimes and IMF give an analytic bin average."""
        params = ModellingParameters(imf=PowerLawIMF(alpha=2.35, m_lower=0.6, m_upper=7.0), lifetime=PowerLawLifetime())
        t0, t1, t2 = 1e10, 1e9, 1e10
        a, b, p = 0.6**-1.35, 7.0**-1.35, 0.54
        w = t2 - t1
        j = t0 / (p + 1) * ((t2 / t0) ** (p + 1) - (t1 / t0) ** (p + 1))
        exact = 1.0 - (a * w - j) / ((a - b) * w)
        errors = [abs(fraction_wd_progenitors(params, t1, t2, n_strip=n) - exact) for n in (10, 100, 1000)]
        assert errors[0] > errors[1] > errors[2]
        assert errors[2] < 1e-5

    def test_monotonic_in_bin_length(self):
        params = ModellingParameters()
        fr = [fraction_wd_progenitors(params, 0.0, t) for t in np.geomspace(1e7, 1.4e10, 12)]
        assert all(b >= a for a, b in zip(fr[:-1], fr[1:]))
        assert 0.0 <= fr[0] and fr[-1] <= 1.0

    def test_limits(self):
        assert fraction_wd_progenitors(ModellingParameters(), 0.0, 1e6) == pytest.approx(0.0, abs=1e-12)
        params = ModellingParameters(lifetime=PowerLawLifetime())
        assert fraction_wd_progenitors(params, 0.0, 1e12) == pytest.approx(1.0)

    def test_bad_arguments(self):
        with pytest.raises(ValueError):
            fraction_wd_progenitors(ModellingParameters(), 2e9, 1e9)
        with pytest.raises(ValueError):
            fraction_wd_progenitors(ModellingParameters(), 1e9, 2e9, n_strip=0)


class TestGetSFR:
    def _time_bins(self, n_wds=200):
        params = ModellingParameters(imf=PowerLawIMF(m_lower=1.5))
        sfr = BinnedSFR(edges=(8e9, 1e10), rates=(5e-12,))
        time_bins = synthesize_time_bins(params, sfr, RangeMap([(-50.0, 50.0)]), n_wds, np.random.default_rng(3))
        return params, time_bins[0]

    def test_recovers_rate_without_reweighting(self):
        params, tbin = self._time_bins()
        est = get_sfr(tbin, params)
        assert isinstance(est, SFRBinEstimate)
        assert est.rate == pytest.approx(5e-12, rel=1e-9)
        assert est.unobserved_correction == 1.0
        assert est.low_mass_correction == 1.0
        assert est.sigma > 0.0
        assert (est.t_min, est.t_max) == (8e9, 1e10)

    def test_unobserved_correction(self):
        params, tbin = self._time_bins()
        for s in tbin.stars[::2]:
            s.is_observed = False
        est = get_sfr(tbin, params)
        assert est.unobserved_correction == pytest.approx(2.0)
        assert est.rate == pytest.approx(5e-12, rel=1e-9)

    def test_total_not_per_year(self):
        params, tbin = self._time_bins()
        est = get_sfr(tbin, params, stars_per_year=False)
        assert est.rate == pytest.approx(5e-12 * 2e9, rel=1e-9)

    def test_no_observed_stars(self):
        b = Bin(1e9, 2e9, [_star(observed=False)])
        est = get_sfr(b, ModellingParameters())
        assert isinstance(est, NoSFRConstraint)
        assert "observed magnitude range" in est.reason

    def test_no_progenitors(self):
        b = Bin(0.0, 1e6, [_star()])
        est = get_sfr(b, ModellingParameters(), progenitor_fraction=0.0)
        assert isinstance(est, NoSFRConstraint)
        assert "become WDs" in est.reason

    def test_negative_rate(self):
        b = Bin(1e9, 2e9, [_star(number=-1.0)])
        with pytest.raises(RuntimeError):
            get_sfr(b, ModellingParameters(), progenitor_fraction=1.0)


class TestMinWDMass:
    def test_bracketed_solution(self):
        params = ModellingParameters()
        m = min_wd_mass(params, age=1e10, mag=16.0)
        assert total_age(params, m - 0.01, 16.0, "H", "Mbol") > 1e10
        assert total_age(params, m + 0.01, 16.0, "H", "Mbol") < 1e10

    def test_too_young_to_reach_magnitude(self):
        with pytest.raises(ValueError):
            min_wd_mass(ModellingParameters(), age=1e9, mag=16.0)

    def test_lower_bracket_checked(self):
        with pytest.raises(BracketError):
            min_wd_mass(ModellingParameters(), age=1e10, mag=16.0, m0=1.0, m1=1.19)

    def test_curve(self):
        params = ModellingParameters()
        curve = min_wd_mass_curve(params, age=1e10, mags=[20.0, 12.0, 16.0, 14.0, 18.0])
        assert [m for m, _ in curve] == [12.0, 14.0, 16.0, 18.0]
        masses = [mf for _, mf in curve]
        assert all(b >= a for a, b in zip(masses[:-1], masses[1:]))
        assert masses[-1] == pytest.approx(params.ifmr.final_mass(params.imf.m_upper))

    def test_progenitor_lifetime_counts_against_heaviest_wd(self):
        # Cooling alone fits in the age, cooling plus the progenitor lifetime does not
        params = ModellingParameters()
        mf_top = params.ifmr.final_mass(params.imf.m_upper)
        lt = params.lifetime.lifetime(params.imf.m_upper, params.z_mean, params.y_mean)
        tcool = 1e10 - 0.5 * lt
        mag = invert_monotonic(
            lambda m: params.cooling.cooling_time(m, mf_top, "H", "Mbol"), tcool, 10.0, 25.0, tol=1e3
        )
        assert params.cooling.cooling_time(mag, mf_top, "H", "Mbol") < 1e10
        assert total_age(params, mf_top, mag, "H", "Mbol") > 1e10
        with pytest.raises(ValueError):
            min_wd_mass(params, age=1e10, mag=mag)
        curve = min_wd_mass_curve(params, age=1e10, mags=[16.0, mag])
        assert len(curve) == 2
        assert curve[-1] == pytest.approx((mag, mf_top))


class TestConvergence:
    def test_linear_decline_not_converged(self):
        c = Convergence((10.0, 9.0, 8.0, 7.0, 6.0))
        assert c.relative_change() == pytest.approx(1.0 / 6.0)
        assert not c.has_converged(0.01)

    def test_flat_history_converges(self):
        assert Convergence((5.0,) * 6).has_converged(0.01)

    def test_rising_chi2_counts_as_converged(self):
        assert Convergence((1.0, 2.0, 3.0, 4.0, 5.0)).has_converged(0.01)

    def test_minimum_iterations(self):
        assert not Convergence((5.0,) * 3).has_converged(0.01, min_iterations=5)

    def test_power_law(self):
        c = Convergence(tuple(100.0 / i for i in range(1, 6)), kind="power-law")
        assert c.fitted() == pytest.approx([100.0, 50.0, 100.0 / 3, 25.0, 20.0])
        assert c.relative_change() == pytest.approx(1.0 / 6.0)

    def test_non_positive_power_law_uses_raw_values(self):
        c = Convergence((4.0, 0.0), kind="power-law")
        assert list(c.fitted()) == [4.0, 0.0]
        assert c.relative_change() == pytest.approx(1.0)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            Convergence((1.0,), kind="spline")


class TestMonteCarloInverter:
    def test_config_validation(self):
        with pytest.raises(ValueError):
            InversionConfig(n_wds=0)
        with pytest.raises(ValueError):
            InversionConfig(min_iterations=5, max_iterations=3)
        with pytest.raises(ValueError):
            InversionConfig(chi2_threshold=0.0)

    def test_run_improves_match(self):
        truth = ModellingParameters(sfr=ConstantSFR(level=5e-12, t_min=0.0, t_max=1e10))
        bins = RangeMap.from_edges(list(np.linspace(10.0, 16.0, 7)))
        observed = mock_observed_wdlf(truth, bins, 2000, np.random.default_rng(11))
        config = InversionConfig(n_wds=1000, n_bins=5, t_max=1e10, min_iterations=2, max_iterations=4, seed=3)
        inverter = MonteCarloInverter(ModellingParameters(), observed, config)
        state = inverter.run()
        assert 2 <= state.iterations <= 4
        assert state.chi2[-1] < state.chi2[0]
        assert state.sfr.n_bins == 5
        assert len(state.estimates) == 5
        rows = state.table()
        assert len(rows) == 5
        assert {"t_min", "t_max", "rate", "sigma", "note"} <= set(rows[0])
        assert state.model is not None and len(state.model) == len(observed)

    def test_unconstrained_bin_keeps_previous_rate(self):
        truth = ModellingParameters()
        bins = RangeMap.from_edges([14.0, 15.0, 16.0])
        observed = mock_observed_wdlf(truth, bins, 500, np.random.default_rng(12))
        # The youngest bin only makes bright WDs, far from the observed range
        config = InversionConfig(n_wds=300, n_bins=3, t_max=1.5e9, min_iterations=1, max_iterations=1)
        inverter = MonteCarloInverter(ModellingParameters(), observed, config)
        state = inverter.iterate(inverter.initial_state(), np.random.default_rng(13))
        first = state.estimates[0]
        assert isinstance(first, NoSFRConstraint)
        assert state.sfr.rates[0] == config.initial_level
        assert np.isnan(state.table()[0]["rate"])
