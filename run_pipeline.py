"""
One-file runner (no command-line flags).

Goal
----
Main output: the star formation history recovered from a white dwarf
luminosity function, as a table and plot, next to the SFR that made it.

How to run
----------
1) (Optional) create a clean environment and install the package:
     pip install -e .
2) Run:
     python3 run_pipeline.py

What to edit
------------
Edit the CONFIG section below (SFR, IMF, IFMR, sample sizes, outputs).

Notes
-----
Everything runs on demonstration inputs:
- the survey is a synthetic two-phase photographic footprint
- cooling sequences are a Mestel-like analytic law, not tabulated models
- the "observed" luminosity function is a forward model of a known SFR
Point CFG.wdlf_csv at a real luminosity function to invert that instead.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from wdsfh.binning import RangeMap
from wdsfh.decomposition import decompose, design_matrix, planted_counts
from wdsfh.ifmr import ifmr_preset
from wdsfh.imf import imf_preset
from wdsfh.inversion import Convergence, InversionConfig, MonteCarloInverter, min_wd_mass_curve
from wdsfh.luminosity_function import load_wdlf_csv, write_wdlf_csv
from wdsfh.plots import plot_chi2, plot_decomposition, plot_luminosity_functions, plot_sfr
from wdsfh.sfr import ConstantSFR
from wdsfh.survey import SurveyObject, combined_vmax, demo_discovery_fractions, demo_surveys
from wdsfh.synthesis import ModellingParameters, mock_observed_wdlf


# =========================
# CONFIG (edit this section)
# =========================


@dataclass(frozen=True)
class Config:
    # Observed WDLF (CSV with mag, width, density, sigma). None: make a mock one.
    wdlf_csv: Path | None = None

    # Stellar physics
    imf: str = "salpeter"
    ifmr: str = "kalirai2008"

    # SFR that generates the mock WDLF
    sfr_level: float = 5e-12
    sfr_t_max: float = 1e10

    # Magnitude bins of the mock WDLF
    mag_min: float = 10.0
    mag_max: float = 17.0
    mag_step: float = 0.5
    mock_rel_error: float = 0.1

    # Inversion
    n_wds: int = 10_000
    n_sfr_bins: int = 15
    sfr_bins_t_max: float = 13e9
    min_iterations: int = 5
    max_iterations: int = 30
    chi2_threshold: float = 0.01
    seed: int = 1

    # Demo object for the survey volumes
    object_mags: tuple[tuple[str, float], ...] = (("B", 19.5), ("R", 19.0), ("I", 18.7))
    object_distance_pc: float = 60.0
    object_mu: float = 0.35

    # Planted local densities per magnitude bin for the decomposition demo (pc^-3)
    planted: tuple[tuple[str, float], ...] = (("thin_disk", 2e-4), ("thick_disk", 2e-5), ("spheroid", 2e-6))
    v_edges: tuple[float, ...] = (30.0, 60.0, 120.0, 240.0)
    colours: tuple[tuple[str, float], ...] = (("B", 0.5), ("R", 0.0), ("I", -0.3))

    # Population age for the minimum-mass table
    min_mass_age: float = 1e10

    # Outputs
    out_dir: Path = Path("outputs")
    make_plots: bool = True


CFG = Config()


def _mag_bins() -> RangeMap:
    n = int(round((CFG.mag_max - CFG.mag_min) / CFG.mag_step))
    return RangeMap.from_edges(list(np.linspace(CFG.mag_min, CFG.mag_min + n * CFG.mag_step, n + 1)))


def main() -> None:
    CFG.out_dir.mkdir(parents=True, exist_ok=True)
    params = ModellingParameters(imf=imf_preset(CFG.imf), ifmr=ifmr_preset(CFG.ifmr))
    surveys = demo_surveys()

    print("[1/4] Survey volumes of a demo object")
    obj = SurveyObject(mags=dict(CFG.object_mags), distance_pc=CFG.object_distance_pc, mu=CFG.object_mu)
    for p, (v, vm) in combined_vmax(surveys, obj).items():
        print(f"  {p:>10s}: V={v:.4g} pc^3  Vmax={vm:.4g} pc^3  V/Vmax={v / vm if vm > 0 else float('nan'):.3f}")

    print("[2/4] Kinematic decomposition of a synthetic catalogue")
    bins = _mag_bins()
    centres = [b.centre for b in bins]
    colours = dict(CFG.colours)
    abs_mags = [{band: m + c for band, c in colours.items()} for m in centres]
    pops = surveys[0].populations
    planted = dict(CFG.planted)
    design = design_matrix(surveys, abs_mags, demo_discovery_fractions(), CFG.v_edges, populations=pops)
    densities = np.array([[planted.get(p, 0.0) for p in pops] for _ in centres])
    counts = planted_counts(design, densities, np.random.default_rng(CFG.seed))
    dec = decompose(design, counts, centres, pops)
    for p in pops:
        print(f"  {p:>10s}: {dec.total_density[p]:.4g} ± {dec.total_sigma[p]:.2g} (planted {planted[p] * len(centres):.4g})")
    if CFG.make_plots:
        out = CFG.out_dir / "decomposition.png"
        plot_decomposition(dec, out_png=out)
        print(f"Saved: {out}")

    print("[3/4] Inverting the luminosity function")
    truth = None
    if CFG.wdlf_csv is not None:
        observed = load_wdlf_csv(CFG.wdlf_csv)
    else:
        truth = ConstantSFR(level=CFG.sfr_level, t_max=CFG.sfr_t_max)
        observed = mock_observed_wdlf(
            params.with_sfr(truth),
            _mag_bins(),
            CFG.n_wds,
            np.random.default_rng(CFG.seed + 1000),
            rel_error=CFG.mock_rel_error,
        )
        out_lf = CFG.out_dir / "mock_wdlf.csv"
        write_wdlf_csv(observed, out_lf)
        print(f"Saved: {out_lf}")

    cfg = InversionConfig(
        n_wds=CFG.n_wds,
        min_iterations=CFG.min_iterations,
        max_iterations=CFG.max_iterations,
        chi2_threshold=CFG.chi2_threshold,
        t_max=CFG.sfr_bins_t_max,
        n_bins=CFG.n_sfr_bins,
        seed=CFG.seed,
    )
    state = MonteCarloInverter(params, observed, cfg).run()
    print(f"  {state.iterations} iterations, converged={state.converged}, chi2={state.chi2[-1]:.4g}")

    out_csv = CFG.out_dir / "sfr.csv"
    rows = state.table()
    with out_csv.open("w", newline="") as f:
        w = csv.DictWriter(f, fieldnames=list(rows[0]))
        w.writeheader()
        for r in rows:
            w.writerow({k: (f"{v:.6g}" if isinstance(v, float) else v) for k, v in r.items()})
    print(f"Saved: {out_csv}")

    if CFG.make_plots:
        out = CFG.out_dir / "sfr.png"
        plot_sfr(state, out_png=out, truth=truth)
        print(f"Saved: {out}")
        if state.model is not None:
            out = CFG.out_dir / "wdlf.png"
            plot_luminosity_functions([observed, state.model], out_png=out, labels=["observed", "model"])
            print(f"Saved: {out}")
        out = CFG.out_dir / "chi2.png"
        plot_chi2(state.chi2, out_png=out, fitted=Convergence(tuple(state.chi2)).fitted())
        print(f"Saved: {out}")

    print(f"[4/4] Minimum WD mass for a {CFG.min_mass_age / 1e9:g} Gyr population")
    mags = [b.lo for b in bins] + [bins.hi]
    for mag, m in min_wd_mass_curve(params, age=CFG.min_mass_age, mags=mags):
        print(f"  M={mag:6.2f}  {m:.4f} Msun")


if __name__ == "__main__":
    main()
