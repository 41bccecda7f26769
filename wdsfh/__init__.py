"""
wdsfh: star-formation history of the Galactic white dwarf population.

Main goal
---------
Turn a magnitude- and proper-motion-limited white dwarf survey into a
**star-formation rate as a function of look-back time**.

What this repo is / isn't
-------------------------
- Computes survey selection-function volumes (V, Vmax and the
  tangential-velocity marginalized Vmax) for disk and spheroid populations.
- Decomposes a catalogue into kinematic populations with a weighted NNLS fit.
- Forward-models white dwarf luminosity functions by Monte Carlo and inverts
  an observed one into SFR(t) by iterative density matching.

It does NOT ship the survey lookup tables, cooling sequences or stellar model
grids of any particular survey; those are inputs (CSV loaders and analytic
stand-ins are provided).
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
