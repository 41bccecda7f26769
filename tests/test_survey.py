"""
Tests for the survey selection function: generalized volumes, V/Vmax and
the velocity-marginalized Vmax.
"""

import math

import numpy as np
import pytest

from wdsfh.density import ExponentialDisk, UniformDensity, default_profiles
from wdsfh.survey import (
    KAPPA,
    ConstantLowerLimit,
    DiscoveryFractions,
    Survey,
    SurveyField,
    SurveyObject,
    absolute_mag,
    annuli,
    combined_vmax,
    demo_discovery_fractions,
    demo_surveys,
    distance_at_mag,
    distance_window,
    load_fields_csv,
    marginalized_vmax,
    proper_motion_selected,
    vmax,
)


def _field(**kw) -> SurveyField:
    args = dict(
        field_id=1,
        hemisphere="N",
        solid_angle=0.01,
        bright_limits={"B": 10.0},
        faint_limits={"B": 15.0},
    )
    args.update(kw)
    return SurveyField(**args)


def _uniform_survey(field: SurveyField, *, mu_low: float = 1e-4, mu_high: float = 100.0) -> Survey:
    return Survey(
        name="test",
        fields=(field,),
        mu_lower=ConstantLowerLimit(mu_low),
        mu_upper=mu_high,
        pm_band="B",
        profiles={"spheroid": UniformDensity()},
        delta_mag=0.01,
    )


class TestDistances:
    def test_distance_modulus_round_trip(self):
        d = distance_at_mag(15.0, 10.0)
        assert d == pytest.approx(100.0)
        assert absolute_mag(15.0, d) == pytest.approx(10.0)

    def test_annuli_cover_range(self):
        lo, hi = annuli(10.0, 100.0, 0.01)
        assert lo[0] == 10.0
        assert hi[-1] == 100.0
        assert np.all(hi > lo)
        assert np.allclose(lo[1:], hi[:-1])
        assert np.allclose(hi[:-1] / lo[:-1], 10 ** (0.01 / 5.0))

    def test_annuli_empty_window(self):
        lo, hi = annuli(100.0, 10.0, 0.01)
        assert lo.size == 0 and hi.size == 0


class TestGeneralizedVolume:
    def test_uniform_closed_form(self):
        f = _field()
        assert UniformDensity().generalized_volume(30.0, f) == pytest.approx(0.01 * 30.0**3 / 3.0)

    @pytest.mark.parametrize("profile", [UniformDensity(), ExponentialDisk(250.0), ExponentialDisk(1000.0)])
    def test_non_decreasing(self, profile):
        rng = np.random.default_rng(7)
        for lat in (5.0, 30.0, 90.0, -60.0):
            f = _field(latitude_deg=lat)
            d = np.sort(rng.uniform(0.0, 5000.0, 200))
            v = profile.generalized_volume(d, f)
            assert np.all(np.diff(v) >= 0.0)

    def test_disk_in_plane_is_uniform(self):
        f = _field(latitude_deg=0.0)
        assert ExponentialDisk(250.0).generalized_volume(400.0, f) == pytest.approx(
            UniformDensity().generalized_volume(400.0, f)
        )

    def test_disk_thins_out_above_plane(self):
        f = _field(latitude_deg=90.0)
        disk = ExponentialDisk(250.0).generalized_volume(1000.0, f)
        assert disk < UniformDensity().generalized_volume(1000.0, f)
        # Ω ∫ r² e^{-r/H} dr → 2 Ω H³ for d >> H
        assert ExponentialDisk(250.0).generalized_volume(1e6, f) == pytest.approx(2 * 0.01 * 250.0**3)

    def test_default_profiles(self):
        assert set(default_profiles()) == {"thin_disk", "thick_disk", "spheroid"}


class TestVmax:
    def test_closed_form_uniform_field(self):
        """Magnitude window 10-100 pc, no proper-motion cut inside it."""
        f = _field()
        survey = _uniform_survey(f)
        m_abs = 10.0
        d = 50.0
        obj = SurveyObject(mags={"B": m_abs + 5.0 * math.log10(d) - 5.0}, distance_pc=d, mu=0.1)
        v, v_max = vmax(survey, obj)["spheroid"]
        assert v_max == pytest.approx(0.01 / 3.0 * (100.0**3 - 10.0**3), rel=1e-9)
        assert v == pytest.approx(0.01 / 3.0 * (50.0**3 - 10.0**3), rel=1e-9)

    def test_proper_motion_window_truncates(self):
        f = _field()
        survey = _uniform_survey(f, mu_low=0.08, mu_high=0.18)
        obj = SurveyObject(mags={"B": 10.0 + 5.0 * math.log10(50.0) - 5.0}, distance_pc=50.0, mu=0.15)
        lo, hi = distance_window(survey, f, obj.absolute_mags(), obj.vt)
        assert lo == pytest.approx(obj.vt / (KAPPA * 0.18))
        assert hi == pytest.approx(obj.vt / (KAPPA * 0.08))
        v, v_max = vmax(survey, obj)["spheroid"]
        assert 0.0 < v <= v_max < 0.01 / 3.0 * (100.0**3 - 10.0**3)

    def test_proper_motion_inclusion_at_boundary(self):
        f = _field()
        survey = _uniform_survey(f, mu_low=0.08, mu_high=0.18)
        obj = SurveyObject(mags={"B": 13.0}, distance_pc=50.0, mu=0.15)
        assert obj.vt == pytest.approx(35.55)
        assert proper_motion_selected(survey, f, vt_kms=obj.vt, distance_pc=50.0, mag=13.0)
        vt_fast = KAPPA * 50.0 * 0.19
        assert not proper_motion_selected(survey, f, vt_kms=vt_fast, distance_pc=50.0, mag=13.0)

    def test_empty_window_contributes_nothing(self):
        f = _field()
        survey = _uniform_survey(f, mu_low=0.08, mu_high=0.18)
        # vt so large that the proper motion exceeds mu_high throughout the magnitude window
        obj = SurveyObject(mags={"B": 13.0}, distance_pc=50.0, mu=5.0)
        v, v_max = vmax(survey, obj)["spheroid"]
        assert v == 0.0 and v_max == 0.0

    def test_excluded_field_ignored(self):
        survey = _uniform_survey(_field(included=False))
        obj = SurveyObject(mags={"B": 13.0}, distance_pc=50.0, mu=0.1)
        assert vmax(survey, obj)["spheroid"] == (0.0, 0.0)

    def test_v_never_exceeds_vmax(self):
        surveys = demo_surveys(delta_mag=0.05)
        rng = np.random.default_rng(11)
        for _ in range(10):
            d = float(rng.uniform(10.0, 300.0))
            m_r = float(rng.uniform(11.0, 16.0))
            mod = 5.0 * math.log10(d) - 5.0
            obj = SurveyObject(
                mags={"B": m_r + 0.5 + mod, "R": m_r + mod, "I": m_r - 0.3 + mod},
                distance_pc=d,
                mu=float(rng.uniform(0.02, 1.5)),
            )
            for p, (v, v_max) in combined_vmax(surveys, obj).items():
                assert 0.0 <= v <= v_max * (1 + 1e-12), p

    def test_missing_band(self):
        survey = _uniform_survey(_field())
        obj = SurveyObject(mags={"R": 13.0}, distance_pc=50.0, mu=0.1)
        with pytest.raises(ValueError):
            vmax(survey, obj)


class TestDiscoveryFractions:
    def test_rayleigh_is_cumulative(self):
        df = demo_discovery_fractions()
        f = _field()
        vals = df.fraction("thin_disk", f, np.linspace(0.0, 700.0, 200))
        assert vals[0] == 0.0
        assert vals[-1] == 1.0
        assert np.all(np.diff(vals) >= 0.0)

    def test_excluded_field_is_zero(self):
        df = demo_discovery_fractions()
        assert df.fraction("spheroid", _field(included=False), 100.0) == 0.0

    def test_per_field_override(self):
        v = [0.0, 100.0, 600.0]
        df = DiscoveryFractions(v, {"spheroid": [0.0, 0.5, 1.0]}, per_field={("spheroid", 1, "N"): [0.0, 0.9, 1.0]})
        assert df.fraction("spheroid", _field(), 100.0) == pytest.approx(0.9)
        assert df.fraction("spheroid", _field(field_id=2), 100.0) == pytest.approx(0.5)

    def test_rejects_decreasing(self):
        with pytest.raises(ValueError):
            DiscoveryFractions([0.0, 1.0, 2.0], {"spheroid": [0.0, 0.6, 0.4]})

    def test_unknown_population(self):
        with pytest.raises(ValueError):
            demo_discovery_fractions().fraction("halo", _field(), 10.0)


class TestMarginalizedVmax:
    def test_discrete_ranges_sum_to_cumulative(self):
        surveys = demo_surveys(delta_mag=0.05)
        df = demo_discovery_fractions()
        abs_mags = {"B": 13.5, "R": 13.0, "I": 12.7}
        edges = [20.0, 40.0, 80.0, 160.0, 320.0]
        for s in surveys:
            disc = marginalized_vmax(s, abs_mags, df, edges, discrete=True)
            cum = marginalized_vmax(s, abs_mags, df, edges, discrete=False)
            for p in s.populations:
                assert disc[p].sum() == pytest.approx(cum[p][0], rel=1e-9)
                assert np.all(disc[p] >= 0.0)
                assert np.all(np.diff(cum[p]) <= 1e-12 * cum[p][0])

    def test_uniform_full_velocity_range(self):
        """With a wide proper-motion window and the whole velocity range, the result is the plain volume."""
        f = _field()
        survey = _uniform_survey(f, mu_low=1e-12, mu_high=1e6)
        df = DiscoveryFractions([0.0, 599.0], {"spheroid": [0.0, 1.0]})
        out = marginalized_vmax(survey, {"B": 10.0}, df, [0.0], discrete=True)
        assert out["spheroid"][0] == pytest.approx(0.01 / 3.0 * (100.0**3 - 10.0**3), rel=1e-9)

    def test_chi2_completeness_scales_volume(self):
        survey = _uniform_survey(_field(chi2_completeness=0.5), mu_low=1e-12, mu_high=1e6)
        df = DiscoveryFractions([0.0, 599.0], {"spheroid": [0.0, 1.0]})
        out = marginalized_vmax(survey, {"B": 10.0}, df, [0.0], discrete=True)
        assert out["spheroid"][0] == pytest.approx(0.5 * 0.01 / 3.0 * (100.0**3 - 10.0**3), rel=1e-9)

    def test_velocities_capped_at_table_end(self):
        survey = _uniform_survey(_field(), mu_low=1e-12, mu_high=1e6)
        df = DiscoveryFractions([0.0, 599.0], {"spheroid": [0.0, 1.0]})
        volume = 0.01 / 3.0 * (100.0**3 - 10.0**3)
        disc = marginalized_vmax(survey, {"B": 10.0}, df, [0.0, 300.0], discrete=True)
        assert disc["spheroid"][0] == pytest.approx(volume * 300.0 / 599.0, rel=1e-6)
        assert disc["spheroid"][1] == pytest.approx(volume * 299.0 / 599.0, rel=1e-6)
        cum = marginalized_vmax(survey, {"B": 10.0}, df, [0.0, 650.0], discrete=False)
        assert cum["spheroid"][0] == pytest.approx(volume, rel=1e-9)
        assert cum["spheroid"][1] == 0.0

    def test_range_beyond_proper_motion_sensitivity_is_empty(self):
        # Upper proper-motion limit 0.18"/yr at <= 100 pc allows at most ~85 km/s
        survey = _uniform_survey(_field(), mu_low=0.08, mu_high=0.18)
        assert KAPPA * 100.0 * 0.18 < 200.0
        out = marginalized_vmax(survey, {"B": 10.0}, demo_discovery_fractions(), [200.0], discrete=True)
        assert out["spheroid"][0] == 0.0

    def test_bad_edges(self):
        survey = _uniform_survey(_field())
        with pytest.raises(ValueError):
            marginalized_vmax(survey, {"B": 10.0}, demo_discovery_fractions(), [50.0, 20.0])


class TestFieldsCsv:
    def test_load(self, tmp_path):
        path = tmp_path / "fields.csv"
        path.write_text(
            "field_id,hemisphere,solid_angle_sr,bright_B,faint_B,faint_R,latitude_deg,included\n"
            "1,n,0.01,14,22.5,21.5,45,1\n"
            "2,S,0.02,14,22.0,,-60,0\n"
        )
        fields = load_fields_csv(path)
        assert [f.label for f in fields] == ["1N", "2S"]
        assert fields[0].faint_limits == {"B": 22.5, "R": 21.5}
        assert fields[1].faint_limits == {"B": 22.0}
        assert not fields[1].included

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "fields.csv"
        path.write_text("field_id,solid_angle_sr,faint_B\n1,0.01,22\n")
        with pytest.raises(RuntimeError, match="missing columns"):
            load_fields_csv(path)
