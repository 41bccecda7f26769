from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import numpy as np

from .decomposition import DecompositionResult
from .inversion import InversionState, SFRBinEstimate
from .luminosity_function import LuminosityFunction
from .sfr import SFRModel


def _ensure_matplotlib_cache_dirs() -> None:
    """
    Avoid slow imports + noisy warnings when user home is not writable.
    """
    import os

    tmp = Path(os.environ.get("TMPDIR", "/tmp"))
    Path(os.environ.setdefault("MPLCONFIGDIR", str(tmp / "matplotlib"))).mkdir(parents=True, exist_ok=True)
    Path(os.environ.setdefault("XDG_CACHE_HOME", str(tmp / "xdg_cache"))).mkdir(parents=True, exist_ok=True)


def plot_luminosity_functions(
    lfs: Sequence[LuminosityFunction],
    *,
    out_png: Path,
    labels: Sequence[str] | None = None,
    title: str = "White dwarf luminosity function",
) -> None:
    """
    Log density against magnitude with error bars, one series per function.
    Bins with no density are left out.
    """
    labels = list(labels) if labels is not None else [lf.target or f"LF {i}" for i, lf in enumerate(lfs)]

    _ensure_matplotlib_cache_dirs()
    import matplotlib.pyplot as plt

    out_png.parent.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(6.2, 4.6))
    for lf, label in zip(lfs, labels):
        ok = lf.density > 0
        ax.errorbar(
            lf.centres[ok],
            lf.density[ok],
            xerr=0.5 * lf.widths[ok],
            yerr=np.minimum(lf.sigma[ok], 0.999 * lf.density[ok]),
            fmt="o",
            ms=3,
            capsize=0,
            label=label,
        )
    ax.set_yscale("log")
    ax.set_xlabel(f"{lfs[0].filter_name} [mag]" if lfs else "mag")
    ax.set_ylabel(r"$\Phi$ [pc$^{-3}$ mag$^{-1}$]")
    ax.set_title(title)
    ax.legend(frameon=False, fontsize=9, loc="best")
    fig.tight_layout()
    fig.savefig(out_png, dpi=200)
    plt.close(fig)


def plot_sfr(
    state: InversionState,
    *,
    out_png: Path,
    truth: SFRModel | None = None,
) -> None:
    """
    Recovered SFR per formation-time bin (look-back time in Gyr), optionally
    over the SFR that generated the data.
    """
    est = [e for e in state.estimates if isinstance(e, SFRBinEstimate)]
    t = np.array([0.5 * (e.t_min + e.t_max) for e in est]) / 1e9
    half = np.array([0.5 * (e.t_max - e.t_min) for e in est]) / 1e9
    rate = np.array([e.rate for e in est])
    sigma = np.array([e.sigma for e in est])

    _ensure_matplotlib_cache_dirs()
    import matplotlib.pyplot as plt

    out_png.parent.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(6.2, 4.0))
    if est:
        ax.errorbar(t, rate, xerr=half, yerr=sigma, fmt="o", ms=3, color="black", label="recovered")
    if truth is not None:
        grid = np.linspace(state.sfr.t_min, state.sfr.t_max, 1000)
        ax.plot(grid / 1e9, [truth.rate(x) for x in grid], color="#d62728", lw=1.0, label="input")
    ax.set_xlabel("Look-back time [Gyr]")
    ax.set_ylabel(r"SFR [N pc$^{-3}$ yr$^{-1}$]")
    ax.set_title(f"Star formation rate ({state.iterations} iterations)")
    ax.legend(frameon=False, fontsize=9, loc="best")
    fig.tight_layout()
    fig.savefig(out_png, dpi=200)
    plt.close(fig)


def plot_chi2(chi2: Sequence[float], *, out_png: Path, fitted: Sequence[float] | None = None) -> None:
    it = np.arange(1, len(chi2) + 1)

    _ensure_matplotlib_cache_dirs()
    import matplotlib.pyplot as plt

    out_png.parent.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(5.6, 3.8))
    ax.plot(it, chi2, "o-", color="black", ms=3, label=r"$\chi^2$")
    if fitted is not None:
        ax.plot(it, fitted, "--", color="#1f77b4", label="fit")
    ax.set_yscale("log")
    ax.set_xlabel("Iteration")
    ax.set_ylabel(r"$\chi^2$")
    ax.legend(frameon=False, fontsize=9, loc="best")
    fig.tight_layout()
    fig.savefig(out_png, dpi=200)
    plt.close(fig)


def plot_decomposition(result: DecompositionResult, *, out_png: Path) -> None:
    """Luminosity function of each kinematic population from a decomposition."""
    ok = [b for b in result.bins if b.ok]

    _ensure_matplotlib_cache_dirs()
    import matplotlib.pyplot as plt

    out_png.parent.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(6.2, 4.6))
    for p in result.populations:
        mags = np.array([b.mag for b in ok])
        dens = np.array([b.density[p] for b in ok])
        err = np.array([b.sigma[p] for b in ok])
        keep = dens > 0
        if keep.any():
            ax.errorbar(mags[keep], dens[keep], yerr=np.minimum(err[keep], 0.999 * dens[keep]), fmt="o", ms=3, label=p)
    ax.set_yscale("log")
    ax.set_xlabel("M [mag]")
    ax.set_ylabel(r"$\Phi$ [pc$^{-3}$ mag$^{-1}$]")
    ax.set_title("Kinematic decomposition")
    ax.legend(frameon=False, fontsize=9, loc="best")
    fig.tight_layout()
    fig.savefig(out_png, dpi=200)
    plt.close(fig)
