"""
Kinematic decomposition of a luminosity function.

In each magnitude bin the numbers of stars found in several tangential-velocity
ranges are modelled as

  N_v = sum_pop A[v, pop] n_pop

with A the marginalized survey volumes (summed over survey phases and fields)
and n_pop the space density of each kinematic population. The densities are
recovered by weighted non-negative least squares, using Poisson variances on
N (correlated between ranges when the ranges are cumulative).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from scipy.optimize import nnls

from .survey import DiscoveryFractions, Survey, marginalized_vmax

log = logging.getLogger(__name__)

# Densities below this are treated as zero when summing variances.
_DENSITY_FLOOR = 9e-9
_MAX_CONDITION = 1e15


@dataclass(frozen=True)
class BinSolution:
    mag: float
    ok: bool
    density: dict[str, float]
    sigma: dict[str, float]
    chi2: float = float("nan")
    dof: int = 0
    n_rows: int = 0
    diagnostic: str = ""


@dataclass(frozen=True)
class DecompositionResult:
    populations: tuple[str, ...]
    bins: list[BinSolution]
    total_density: dict[str, float]
    total_sigma: dict[str, float]

    @property
    def failed(self) -> list[BinSolution]:
        return [b for b in self.bins if not b.ok]


def velocity_counts(
    vtans: Sequence[float],
    mags: Sequence[float],
    mag_edges: Sequence[float],
    v_edges: Sequence[float],
    *,
    weights: Sequence[float] | None = None,
    discrete: bool = True,
) -> np.ndarray:
    """
    Observation vectors N[mag_bin, v_range].

    A star counts in range i when vt > v_i and, for discrete ranges, vt < v_{i+1}
    (the last range is unbounded). Stars outside the magnitude bins are dropped.
    """
    vt = np.asarray(vtans, dtype=float)
    m = np.asarray(mags, dtype=float)
    w = np.ones_like(vt) if weights is None else np.asarray(weights, dtype=float)
    if not (vt.shape == m.shape == w.shape):
        raise ValueError("vtans, mags and weights must have equal length")
    me = np.asarray(mag_edges, dtype=float)
    ve = np.asarray(v_edges, dtype=float)

    out = np.zeros((me.size - 1, ve.size))
    idx = np.searchsorted(me, m, side="right") - 1
    in_range = (idx >= 0) & (idx < me.size - 1)
    for i, v_lo in enumerate(ve):
        sel = in_range & (vt > v_lo)
        if discrete and i + 1 < ve.size:
            sel &= vt < ve[i + 1]
        np.add.at(out[:, i], idx[sel], w[sel])
    return out


def design_matrix(
    surveys: Sequence[Survey],
    abs_mags_per_bin: Sequence[dict[str, float]],
    discovery: DiscoveryFractions,
    v_edges: Sequence[float],
    *,
    populations: Sequence[str] | None = None,
    discrete: bool = True,
) -> np.ndarray:
    """
    Marginalized volumes A[mag_bin, population, v_range], summed over survey phases.
    """
    pops = tuple(populations) if populations is not None else surveys[0].populations
    out = np.zeros((len(abs_mags_per_bin), len(pops), len(v_edges)))
    for k, abs_mags in enumerate(abs_mags_per_bin):
        for s in surveys:
            v = marginalized_vmax(s, abs_mags, discovery, v_edges, discrete=discrete)
            for j, p in enumerate(pops):
                out[k, j] += v[p]
        log.debug("Design matrix row %d done", k)
    return out


def _failed(mag: float, pops: tuple[str, ...], n_rows: int, why: str) -> BinSolution:
    nan = {p: float("nan") for p in pops}
    return BinSolution(mag=mag, ok=False, density=nan, sigma=dict(nan), n_rows=n_rows, diagnostic=why)


def decompose_bin(
    a: np.ndarray,
    n_obs: np.ndarray,
    *,
    populations: Sequence[str],
    mag: float = float("nan"),
    discrete: bool = True,
) -> BinSolution:
    """
    Weighted NNLS solution for one magnitude bin.

    a has shape (n_v, n_pop) and n_obs shape (n_v,). Velocity ranges with no
    stars are dropped; with fewer remaining ranges than populations, or a
    singular normal matrix, the bin is returned with ok=False and a diagnostic.
    """
    pops = tuple(populations)
    a = np.asarray(a, dtype=float)
    n_obs = np.asarray(n_obs, dtype=float)
    rows = np.flatnonzero(n_obs > 0)
    if rows.size < len(pops):
        why = f"{rows.size} non-empty velocity ranges for {len(pops)} populations"
        log.warning("Magnitude %.2f: insufficient data (%s)", mag, why)
        return _failed(mag, pops, int(rows.size), why)

    ar = a[rows]
    nr = n_obs[rows]
    cov_obs = np.diag(nr)
    if not discrete:
        # Cumulative ranges are nested: the count in the narrower range is shared.
        for j in range(nr.size):
            cov_obs[: j + 1, j] = nr[j]
            cov_obs[j, : j + 1] = nr[j]

    try:
        w = np.linalg.inv(cov_obs)
        atwa = ar.T @ w @ ar
        atwn = ar.T @ w @ nr
        if np.linalg.matrix_rank(atwa) < len(pops) or np.linalg.cond(atwa) > _MAX_CONDITION:
            raise np.linalg.LinAlgError("ill-conditioned")
        cov = np.linalg.inv(atwa)
    except np.linalg.LinAlgError:
        log.warning("Magnitude %.2f: ATWA singular", mag)
        return _failed(mag, pops, int(rows.size), "ATWA singular")

    x, _ = nnls(atwa, atwn)
    resid = nr - ar @ x
    chi2 = float(resid @ w @ resid)
    return BinSolution(
        mag=mag,
        ok=True,
        density={p: float(x[j]) for j, p in enumerate(pops)},
        sigma={p: float(np.sqrt(max(cov[j, j], 0.0))) for j, p in enumerate(pops)},
        chi2=chi2,
        dof=int(rows.size - len(pops)),
        n_rows=int(rows.size),
    )


def decompose(
    design: np.ndarray,
    counts: np.ndarray,
    mag_centres: Sequence[float],
    populations: Sequence[str],
    *,
    discrete: bool = True,
) -> DecompositionResult:
    """Solve every magnitude bin and integrate the luminosity function of each population."""
    pops = tuple(populations)
    if design.shape[0] != counts.shape[0] or design.shape[0] != len(mag_centres):
        raise ValueError("design, counts and mag_centres disagree on the number of magnitude bins")
    if design.shape[1] != len(pops) or design.shape[2] != counts.shape[1]:
        raise ValueError("design matrix shape does not match populations / velocity ranges")

    bins: list[BinSolution] = []
    total = {p: 0.0 for p in pops}
    var = {p: 0.0 for p in pops}
    for k, mag in enumerate(mag_centres):
        sol = decompose_bin(design[k].T, counts[k], populations=pops, mag=float(mag), discrete=discrete)
        bins.append(sol)
        if not sol.ok:
            continue
        for p in pops:
            total[p] += sol.density[p]
            if sol.density[p] > _DENSITY_FLOOR:
                var[p] += sol.sigma[p] ** 2
    n_failed = sum(1 for b in bins if not b.ok)
    if n_failed:
        log.info("%d of %d magnitude bins could not be decomposed", n_failed, len(bins))
    return DecompositionResult(
        populations=pops,
        bins=bins,
        total_density=total,
        total_sigma={p: float(np.sqrt(v)) for p, v in var.items()},
    )


def planted_counts(
    design: np.ndarray,
    densities: np.ndarray,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """
    Expected (or, with rng, Poisson-sampled) counts N[mag, v] for true
    densities[mag, pop]. Only meaningful for discrete velocity ranges.
    """
    expected = np.einsum("kpv,kp->kv", design, densities)
    if rng is None:
        return expected
    return rng.poisson(expected).astype(float)
