"""
Tests for the stellar physics: IMF, lifetimes, IFMR and cooling grids.
"""

import numpy as np
import pytest

from wdsfh.cooling import CoolingGrid, CoolingModels, load_cooling_csv, mestel_grid, mestel_models
from wdsfh.ifmr import IFMR_PRESETS, catalan2008, cummings2018, ifmr_preset, kalirai2008
from wdsfh.imf import IMF_PRESETS, PowerLawIMF, imf_preset
from wdsfh.lifetime import Hurley2000Lifetime, TabulatedLifetime, load_lifetime_csv
from wdsfh.numeric import MonotonicLinear


class TestPowerLawIMF:
    def test_integral_bounds(self):
        imf = PowerLawIMF()
        assert imf.integral(0.1) == 0.0
        assert imf.integral(imf.m_lower) == 0.0
        assert imf.integral(imf.m_upper) == 1.0
        assert imf.integral(100.0) == 1.0

    def test_integral_monotonic(self):
        imf = PowerLawIMF()
        vals = [imf.integral(m) for m in np.linspace(0.6, 7.0, 50)]
        assert all(b >= a for a, b in zip(vals[:-1], vals[1:]))

    def test_salpeter_closed_form(self):
        imf = PowerLawIMF(alpha=2.35, m_lower=0.6, m_upper=7.0)
        num = 0.6**-1.35 - 1.0**-1.35
        den = 0.6**-1.35 - 7.0**-1.35
        assert imf.integral(1.0) == pytest.approx(num / den)

    def test_draws_follow_integral(self):
        """The IMF integral of drawn masses is uniform on [0, 1]."""
        imf = PowerLawIMF()
        rng = np.random.default_rng(3)
        u = np.array([imf.integral(imf.draw_mass(rng)) for _ in range(20_000)])
        assert u.min() >= 0.0 and u.max() <= 1.0
        assert u.mean() == pytest.approx(0.5, abs=0.01)

    def test_presets(self):
        for name in IMF_PRESETS:
            assert isinstance(imf_preset(name), PowerLawIMF)
        assert imf_preset("top-heavy").alpha < imf_preset("salpeter").alpha < imf_preset("top-light").alpha
        with pytest.raises(ValueError):
            imf_preset("chabrier")

    def test_bad_range(self):
        with pytest.raises(ValueError):
            PowerLawIMF(m_lower=2.0, m_upper=1.0)


class TestHurleyLifetime:
    def test_decreasing_with_mass(self):
        lt = Hurley2000Lifetime()
        t = [lt.lifetime(m, 0.02, 0.28) for m in (0.8, 1.0, 2.0, 4.0, 7.0)]
        assert all(b < a for a, b in zip(t[:-1], t[1:]))

    def test_sun_like_star(self):
        t = Hurley2000Lifetime().lifetime(1.0, 0.02, 0.28)
        assert 7e9 < t < 1.3e10

    def test_mass_round_trip(self):
        lt = Hurley2000Lifetime()
        for m in (0.9, 1.5, 3.0, 6.0):
            t = lt.lifetime(m, 0.003, 0.26)
            assert lt.mass(t, 0.003, 0.26) == pytest.approx(m, rel=1e-4)

    def test_mass_clamps_to_fitted_range(self):
        lt = Hurley2000Lifetime()
        assert lt.mass(1e13, 0.003, 0.26) == lt.m_min
        assert lt.mass(1e3, 0.003, 0.26) == lt.m_max

    def test_varies_smoothly_with_metallicity(self):
        lt = Hurley2000Lifetime()
        a = lt.lifetime(1.0, 0.003, 0.26)
        b = lt.lifetime(1.0, 0.003 * (1 + 1e-4), 0.26)
        assert b != a
        assert b == pytest.approx(a, rel=1e-3)


def _power_law_table(t0: float, exponent: float) -> MonotonicLinear:
    m = np.linspace(0.6, 8.0, 60)
    return MonotonicLinear(m, t0 * m**exponent)


class TestTabulatedLifetime:
    def test_bilinear_in_z_and_y(self):
        lt = TabulatedLifetime(
            {
                0.001: {0.25: _power_law_table(1e10, -2.5), 0.30: _power_law_table(2e10, -2.5)},
                0.02: {0.25: _power_law_table(3e10, -2.5), 0.30: _power_law_table(4e10, -2.5)},
            }
        )
        m = 2.0
        base = m**-2.5
        got = lt.lifetime(m, 0.0105, 0.275)
        # table interpolation in mass is linear, so compare against the tables themselves
        expected = 0.25 * sum(
            t.y_at(m) for t in (lt.tables[0.001][0.25], lt.tables[0.001][0.30], lt.tables[0.02][0.25], lt.tables[0.02][0.30])
        )
        assert got == pytest.approx(expected, rel=1e-9)
        assert got == pytest.approx(2.5e10 * base, rel=0.05)

    def test_mass_inverse(self):
        lt = TabulatedLifetime({0.01: {0.27: _power_law_table(1e10, -2.5)}})
        for m in (1.0, 2.5, 5.0):
            assert lt.mass(lt.lifetime(m, 0.01, 0.27), 0.01, 0.27) == pytest.approx(m, rel=1e-6)

    def test_rejects_increasing_lifetime(self):
        with pytest.raises(ValueError):
            TabulatedLifetime({0.01: {0.27: MonotonicLinear([1.0, 2.0], [1e9, 2e9])}})

    def test_load_csv(self, tmp_path):
        path = tmp_path / "lifetimes.csv"
        lines = ["z,y,mass_msun,lifetime_yr"]
        for m in (1.0, 2.0, 4.0, 8.0):
            lines.append(f"0.01,0.27,{m},{1e10 * m**-2.5}")
        path.write_text("\n".join(lines) + "\n")
        lt = load_lifetime_csv(path)
        assert lt.name == "lifetimes"
        assert lt.lifetime(2.0, 0.01, 0.27) == pytest.approx(1e10 * 2.0**-2.5)

    def test_load_csv_missing_columns(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("z,mass_msun,lifetime_yr\n0.01,1.0,1e10\n")
        with pytest.raises(RuntimeError, match="missing columns"):
            load_lifetime_csv(path)


class TestIFMR:
    @pytest.mark.parametrize("factory", [kalirai2008, catalan2008, cummings2018])
    def test_inverse(self, factory):
        ifmr = factory()
        for mi in (0.8, 1.5, 2.7, 3.0, 4.5, 6.0):
            mf = ifmr.final_mass(mi)
            if ifmr.mf_max is not None and mf >= ifmr.mf_max:
                continue
            assert ifmr.initial_mass(mf) == pytest.approx(mi, rel=1e-9)

    @pytest.mark.parametrize("name", IFMR_PRESETS)
    def test_final_mass_increasing(self, name):
        ifmr = ifmr_preset(name)
        mf = [ifmr.final_mass(m) for m in np.linspace(0.6, 7.0, 40)]
        assert all(b >= a for a, b in zip(mf[:-1], mf[1:]))

    def test_kalirai_values(self):
        assert kalirai2008().final_mass(3.0) == pytest.approx(0.109 * 3.0 + 0.428)

    def test_catalan_clamped(self):
        assert catalan2008().final_mass(20.0) == 1.2

    def test_unknown_preset(self):
        with pytest.raises(ValueError):
            ifmr_preset("weidemann")


class TestCooling:
    def test_fades_with_time(self):
        g = mestel_grid()
        mags = [g.magnitude(t, 0.6) for t in (1e7, 1e8, 1e9, 1e10)]
        assert all(b > a for a, b in zip(mags[:-1], mags[1:]))

    def test_round_trip_between_tracks(self):
        g = mestel_grid()
        for mass in (0.55, 0.63, 0.87, 1.15):
            t = g.cooling_time(14.0, mass)
            assert g.magnitude(t, mass) == pytest.approx(14.0, abs=0.02)

    def test_heavier_is_fainter(self):
        g = mestel_grid()
        assert g.magnitude(1e9, 1.0) > g.magnitude(1e9, 0.6)
        assert g.cooling_time(15.0, 1.0) < g.cooling_time(15.0, 0.6)

    def test_extrapolation_flag(self):
        g = mestel_grid()
        assert g.is_extrapolated(1e9, 0.4)
        assert g.is_extrapolated(1e11, 0.6)
        assert not g.is_extrapolated(1e9, 0.65)

    def test_models_by_atmosphere_and_filter(self):
        models = mestel_models("Mbol", he_offset_mag=0.3)
        assert models.filters == ["Mbol"]
        dh = models.magnitude(1e9, 0.6, "He", "Mbol") - models.magnitude(1e9, 0.6, "H", "Mbol")
        assert dh == pytest.approx(0.3)
        with pytest.raises(ValueError):
            models.grid("H", "V")

    def test_track_must_fade(self):
        with pytest.raises(ValueError):
            CoolingGrid({0.6: MonotonicLinear([1e8, 1e9], [15.0, 12.0])})

    def test_load_csv(self, tmp_path):
        path = tmp_path / "da.csv"
        lines = ["mass_msun,tcool_yr,mag"]
        for m in (0.6, 0.8):
            for t in (1e8, 1e9, 1e10):
                lines.append(f"{m},{t},{12.0 + 3.5 * np.log10(t / 1e9) + (m - 0.6)}")
        path.write_text("\n".join(lines) + "\n")
        g = load_cooling_csv(path)
        models = CoolingModels({("H", "V"): g})
        assert models.magnitude(1e9, 0.7, "H", "V") == pytest.approx(12.1)
