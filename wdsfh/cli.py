from __future__ import annotations

import argparse
import csv
import json
import logging
from pathlib import Path

import numpy as np

from . import __version__
from .binning import RangeMap
from .decomposition import decompose, design_matrix, planted_counts
from .ifmr import IFMR_PRESETS, ifmr_preset
from .imf import IMF_PRESETS, imf_preset
from .inversion import Convergence, InversionConfig, MonteCarloInverter, min_wd_mass_curve, total_age
from .luminosity_function import load_wdlf_csv, write_wdlf_csv
from .sfr import ConstantSFR, ExponentialDecaySFR, SFRModel, single_burst
from .survey import SurveyObject, combined_vmax, demo_discovery_fractions, demo_surveys, vmax
from .synthesis import ModellingParameters, mock_observed_wdlf, model_luminosity_function

log = logging.getLogger(__name__)

_SFR_CHOICES = ("constant", "burst", "exponential")
# Local densities per magnitude bin (pc^-3) used when none are given
_DEFAULT_PLANTED = {"thin_disk": 2e-4, "thick_disk": 2e-5, "spheroid": 2e-6}
# Offsets from the magnitude bin centre per band
_DEFAULT_COLOURS = ["B=0.5", "R=0.0", "I=-0.3"]


def _parse_pairs(items: list[str], what: str) -> dict[str, float]:
    out: dict[str, float] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep:
            raise SystemExit(f"Expected {what} as NAME=VALUE, got {item!r}")
        out[key.strip()] = float(value)
    return out


def _mag_bins(lo: float, hi: float, step: float) -> RangeMap:
    if step <= 0 or hi <= lo:
        raise SystemExit("Need --mag-max > --mag-min and a positive --mag-step")
    n = max(1, int(round((hi - lo) / step)))
    return RangeMap.from_edges(list(np.linspace(lo, lo + n * step, n + 1)))


def _sfr_from_args(args: argparse.Namespace) -> SFRModel:
    if args.sfr == "burst":
        return single_burst(onset=args.onset, duration=args.duration, level=args.level)
    if args.sfr == "exponential":
        return ExponentialDecaySFR(r0=args.level, tau=args.tau, t_max=args.t_max)
    return ConstantSFR(level=args.level, t_max=args.t_max)


def _params_from_args(args: argparse.Namespace, sfr: SFRModel | None = None) -> ModellingParameters:
    return ModellingParameters(
        sfr=sfr if sfr is not None else ConstantSFR(),
        imf=imf_preset(args.imf),
        ifmr=ifmr_preset(args.ifmr),
        w_h=args.w_h,
        sigma_mag=args.sigma_mag,
    )


def _cmd_vmax(args: argparse.Namespace) -> int:
    obj = SurveyObject(mags=_parse_pairs(args.mag, "--mag"), distance_pc=args.distance_pc, mu=args.mu)
    surveys = demo_surveys(delta_mag=args.delta_mag)
    print(f"Object: d={obj.distance_pc:g} pc, mu={obj.mu:g} arcsec/yr, vt={obj.vt:.1f} km/s")
    for s in surveys:
        for p, (v, vm) in vmax(s, obj).items():
            print(f"  {s.name:>20s}  {p:>10s}: V={v:.4g} pc^3  Vmax={vm:.4g} pc^3")
    for p, (v, vm) in combined_vmax(surveys, obj).items():
        ratio = v / vm if vm > 0 else float("nan")
        print(f"  {'combined':>20s}  {p:>10s}: V={v:.4g}  Vmax={vm:.4g}  V/Vmax={ratio:.3f}")
    return 0


def _cmd_decompose(args: argparse.Namespace) -> int:
    surveys = demo_surveys(delta_mag=args.delta_mag)
    discovery = demo_discovery_fractions()
    colours = _parse_pairs(args.colour or _DEFAULT_COLOURS, "--colour")
    planted = _parse_pairs(args.planted, "--planted") or dict(_DEFAULT_PLANTED)
    v_edges = args.v_edge or [30.0, 60.0, 120.0, 240.0]
    pops = surveys[0].populations
    unknown = set(planted) - set(pops)
    if unknown:
        raise SystemExit(f"Unknown populations: {sorted(unknown)} (expected {list(pops)})")

    bins = _mag_bins(args.mag_min, args.mag_max, args.mag_step)
    centres = [b.centre for b in bins]
    abs_mags = [{band: m + c for band, c in colours.items()} for m in centres]
    design = design_matrix(surveys, abs_mags, discovery, v_edges, populations=pops, discrete=True)
    densities = np.array([[planted.get(p, 0.0) for p in pops] for _ in centres])
    counts = planted_counts(design, densities, np.random.default_rng(args.seed))
    res = decompose(design, counts, centres, pops, discrete=True)

    for b in res.bins:
        if b.ok:
            cols = "  ".join(f"{p}={b.density[p]:.3g}±{b.sigma[p]:.2g}" for p in pops)
            print(f"M={b.mag:6.2f}  {cols}  chi2={b.chi2:.2f}/{b.dof}")
        else:
            print(f"M={b.mag:6.2f}  failed: {b.diagnostic}")
    for p in pops:
        truth = planted.get(p, 0.0) * len(centres)
        print(f"Total {p}: {res.total_density[p]:.4g} ± {res.total_sigma[p]:.2g} (planted {truth:.4g})")

    if args.out_csv is not None:
        args.out_csv.parent.mkdir(parents=True, exist_ok=True)
        with args.out_csv.open("w", newline="") as f:
            fields = ["mag", "ok", *[f"density__{p}" for p in pops], *[f"sigma__{p}" for p in pops], "chi2", "dof"]
            w = csv.DictWriter(f, fieldnames=fields)
            w.writeheader()
            for b in res.bins:
                row = {"mag": f"{b.mag:.4f}", "ok": int(b.ok), "chi2": f"{b.chi2:.6g}", "dof": b.dof}
                for p in pops:
                    row[f"density__{p}"] = f"{b.density[p]:.6e}"
                    row[f"sigma__{p}"] = f"{b.sigma[p]:.6e}"
                w.writerow(row)
        print(f"Saved: {args.out_csv}")
    if args.out_plot is not None:
        from .plots import plot_decomposition

        plot_decomposition(res, out_png=args.out_plot)
        print(f"Saved: {args.out_plot}")
    return 0


def _cmd_forward(args: argparse.Namespace) -> int:
    params = _params_from_args(args, _sfr_from_args(args))
    bins = _mag_bins(args.mag_min, args.mag_max, args.mag_step)
    model = model_luminosity_function(params, bins, args.n_wds, np.random.default_rng(args.seed))
    print(f"Drew {model.n_drawn} stars for {args.n_wds} WDs in [{args.mag_min:g}, {args.mag_max:g}]")
    print(f"Mean WD mass: {model.mean_wd_mass:.3f} ± {model.mean_wd_mass_std:.3f} Msun")
    print(f"Mean total age: {model.mean_age / 1e9:.3f} ± {model.mean_age_std / 1e9:.3f} Gyr")
    n, err = model.lf.total_density()
    print(f"Total density: {n:.4g} ± {err:.2g} pc^-3")
    if args.out_csv is not None:
        write_wdlf_csv(model.lf, args.out_csv)
        print(f"Saved: {args.out_csv}")
    if args.out_plot is not None:
        from .plots import plot_luminosity_functions

        plot_luminosity_functions([model.lf], out_png=args.out_plot, labels=[args.sfr])
        print(f"Saved: {args.out_plot}")
    return 0


def _cmd_invert(args: argparse.Namespace) -> int:
    params = _params_from_args(args)
    truth: SFRModel | None = None
    if args.wdlf is not None:
        observed = load_wdlf_csv(args.wdlf)
    else:
        truth = _sfr_from_args(args)
        observed = mock_observed_wdlf(
            params.with_sfr(truth),
            _mag_bins(args.mag_min, args.mag_max, args.mag_step),
            args.n_wds,
            np.random.default_rng(args.seed + 1000),
        )
    cfg = InversionConfig(
        n_wds=args.n_wds,
        min_iterations=args.min_iterations,
        max_iterations=args.max_iterations,
        chi2_threshold=args.chi2_threshold,
        convergence=args.convergence,
        t_max=args.sfr_t_max,
        n_bins=args.n_bins,
        seed=args.seed,
    )
    state = MonteCarloInverter(params, observed, cfg).run()
    status = "converged" if state.converged else "not converged"
    print(f"{state.iterations} iterations ({status}), final chi2={state.chi2[-1]:.4g}")
    rows = state.table()
    for r in rows:
        if r["note"]:
            print(f"  [{r['t_min'] / 1e9:6.2f}, {r['t_max'] / 1e9:6.2f}] Gyr: no constraint ({r['note']})")
        else:
            print(f"  [{r['t_min'] / 1e9:6.2f}, {r['t_max'] / 1e9:6.2f}] Gyr: {r['rate']:.3g} ± {r['sigma']:.2g}")

    if args.out_csv is not None:
        args.out_csv.parent.mkdir(parents=True, exist_ok=True)
        with args.out_csv.open("w", newline="") as f:
            w = csv.DictWriter(f, fieldnames=list(rows[0]))
            w.writeheader()
            for r in rows:
                w.writerow({k: (f"{v:.6g}" if isinstance(v, float) else v) for k, v in r.items()})
        print(f"Saved: {args.out_csv}")
    if args.out_json is not None:
        args.out_json.parent.mkdir(parents=True, exist_ok=True)
        args.out_json.write_text(
            json.dumps(
                {
                    "observed": observed.target,
                    "iterations": state.iterations,
                    "converged": state.converged,
                    "chi2": state.chi2,
                    "imf": args.imf,
                    "ifmr": args.ifmr,
                    "n_wds": cfg.n_wds,
                    "seed": cfg.seed,
                },
                indent=2,
            )
            + "\n"
        )
        print(f"Saved: {args.out_json}")
    if args.out_plot_dir is not None:
        from .plots import plot_chi2, plot_luminosity_functions, plot_sfr

        out = args.out_plot_dir
        plot_sfr(state, out_png=out / "sfr.png", truth=truth)
        lfs = [observed] + ([state.model] if state.model is not None else [])
        plot_luminosity_functions(lfs, out_png=out / "wdlf.png", labels=["observed", "model"][: len(lfs)])
        plot_chi2(state.chi2, out_png=out / "chi2.png", fitted=Convergence(tuple(state.chi2), kind=cfg.convergence).fitted())
        for name in ("sfr.png", "wdlf.png", "chi2.png"):
            print(f"Saved: {out / name}")
    return 0


def _cmd_min_mass(args: argparse.Namespace) -> int:
    params = _params_from_args(args)
    if args.mag:
        mags = sorted(args.mag)
    else:
        bins = _mag_bins(args.mag_min, args.mag_max, args.mag_step)
        mags = [b.lo for b in bins] + [bins.hi]
    curve = min_wd_mass_curve(params, age=args.age, mags=mags, atmosphere=args.atmosphere)
    print(f"Minimum WD mass for a {args.age / 1e9:g} Gyr population ({args.atmosphere} atmospheres):")
    for mag, m in curve:
        print(f"  M={mag:6.2f}  {m:.4f} Msun")
    last, _ = curve[-1]
    mf_top = params.ifmr.final_mass(params.imf.m_upper)
    if total_age(params, mf_top, last, args.atmosphere, params.filter_name) > args.age:
        print(f"No WD reaches M = {last:.2f} within {args.age / 1e9:g} Gyr")
    return 0


def _add_physics_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--imf", choices=list(IMF_PRESETS), default="salpeter")
    p.add_argument("--ifmr", choices=list(IFMR_PRESETS), default="kalirai2008")
    p.add_argument("--w-h", type=float, default=1.0, help="Fraction of WDs with H atmospheres")
    p.add_argument("--sigma-mag", type=float, default=0.1, help="Photometric scatter (mag)")


def _add_sfr_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--sfr", choices=list(_SFR_CHOICES), default="constant")
    p.add_argument("--level", type=float, default=5e-12, help="SFR level (N pc^-3 yr^-1)")
    p.add_argument("--t-max", type=float, default=1e10, help="Onset of star formation (yr ago)")
    p.add_argument("--onset", type=float, default=9e9, help="Burst onset (yr ago)")
    p.add_argument("--duration", type=float, default=1e8, help="Burst duration (yr)")
    p.add_argument("--tau", type=float, default=3e9, help="Exponential e-folding time (yr)")


def _add_mag_args(p: argparse.ArgumentParser, *, lo: float, hi: float, step: float) -> None:
    p.add_argument("--mag-min", type=float, default=lo)
    p.add_argument("--mag-max", type=float, default=hi)
    p.add_argument("--mag-step", type=float, default=step)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="wdsfh",
        description="White dwarf survey volumes, luminosity functions and star formation histories.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="WARNING")
    sub = p.add_subparsers(dest="cmd", required=True)

    vm = sub.add_parser("vmax", help="V and Vmax per population for one object in the demo survey.")
    vm.add_argument("--mag", action="append", required=True, help="Apparent magnitude BAND=VALUE (repeatable)")
    vm.add_argument("--distance-pc", type=float, required=True)
    vm.add_argument("--mu", type=float, required=True, help="Proper motion (arcsec/yr)")
    vm.add_argument("--delta-mag", type=float, default=0.01, help="Annulus step in apparent magnitude")
    vm.set_defaults(func=_cmd_vmax)

    de = sub.add_parser("decompose", help="Recover planted population densities from synthetic counts.")
    de.add_argument(
        "--planted",
        action="append",
        default=[],
        help="Planted density per magnitude bin POP=VALUE (pc^-3; repeatable)",
    )
    de.add_argument(
        "--colour",
        action="append",
        default=None,
        help="Absolute magnitude offset per band BAND=VALUE (repeatable; default B=0.5 R=0.0 I=-0.3)",
    )
    de.add_argument("--v-edge", type=float, action="append", default=None, help="Lower v_tan limit (km/s; repeatable)")
    de.add_argument("--delta-mag", type=float, default=0.05)
    de.add_argument("--seed", type=int, default=1)
    _add_mag_args(de, lo=10.0, hi=16.0, step=1.0)
    de.add_argument("--out-csv", type=Path, default=None)
    de.add_argument("--out-plot", type=Path, default=None)
    de.set_defaults(func=_cmd_decompose)

    fw = sub.add_parser("forward", help="Model luminosity function for a given SFR.")
    _add_sfr_args(fw)
    _add_physics_args(fw)
    _add_mag_args(fw, lo=10.0, hi=18.0, step=0.5)
    fw.add_argument("--n-wds", type=int, default=20_000)
    fw.add_argument("--seed", type=int, default=1)
    fw.add_argument("--out-csv", type=Path, default=None)
    fw.add_argument("--out-plot", type=Path, default=None)
    fw.set_defaults(func=_cmd_forward)

    inv = sub.add_parser("invert", help="Invert a luminosity function into a star formation history.")
    inv.add_argument("--wdlf", type=Path, default=None, help="Observed WDLF CSV; omit to invert a synthetic one")
    _add_sfr_args(inv)
    _add_physics_args(inv)
    _add_mag_args(inv, lo=10.0, hi=18.0, step=0.5)
    inv.add_argument("--n-wds", type=int, default=10_000, help="Synthetic WDs per iteration")
    inv.add_argument("--n-bins", type=int, default=20, help="SFR bins")
    inv.add_argument("--sfr-t-max", type=float, default=14.5e9, help="Oldest SFR bin edge (yr)")
    inv.add_argument("--min-iterations", type=int, default=5)
    inv.add_argument("--max-iterations", type=int, default=50)
    inv.add_argument("--chi2-threshold", type=float, default=0.01)
    inv.add_argument("--convergence", choices=["sliding-linear", "power-law"], default="sliding-linear")
    inv.add_argument("--seed", type=int, default=1)
    inv.add_argument("--out-csv", type=Path, default=None)
    inv.add_argument("--out-json", type=Path, default=None)
    inv.add_argument("--out-plot-dir", type=Path, default=None)
    inv.set_defaults(func=_cmd_invert)

    mm = sub.add_parser("min-mass", help="Minimum WD mass against magnitude for a population age.")
    mm.add_argument("--age", type=float, required=True, help="Population age (yr)")
    mm.add_argument("--mag", type=float, action="append", default=[], help="Magnitude (repeatable)")
    mm.add_argument("--atmosphere", choices=["H", "He"], default="H")
    _add_physics_args(mm)
    _add_mag_args(mm, lo=10.0, hi=18.0, step=1.0)
    mm.set_defaults(func=_cmd_min_mass)

    return p


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")
    return int(args.func(args))
