"""
Full matching with a propensity caliper
=======================================
Fit a propensity score, match each treated unit to between one and three
comparison units on the rank-Mahalanobis distance, and forbid any pair whose
standardised propensity distance exceeds 0.5. Treated units left without a
feasible partner are excluded rather than failing the design.
"""

import numpy as np
import pandas as pd
from optstrata import (
    Caliper, DesignConfig, OptimalStratification, UnitCatalog, Infeasible, propensity_scores,
)

RNG = np.random.default_rng(1)
N = 400

# ── 1. Simulate data ──────────────────────────────────────────────────────────
x1 = RNG.normal(size=N)
x2 = RNG.normal(size=N)
p  = 1 / (1 + np.exp(-(-1.0 + 0.9 * x1 + 0.5 * x2)))
z  = RNG.binomial(1, p)

df = pd.DataFrame({"id": [f"u{i:03d}" for i in range(N)], "z": z, "x1": x1, "x2": x2})
catalog = UnitCatalog.from_frame(df, id="id", treatment="z")

# ── 2. Propensity score (external input to the design) ────────────────────────
df["ps"] = propensity_scores(catalog, ["x1", "x2"]).loc[df["id"]].to_numpy()
catalog = UnitCatalog.from_frame(df, id="id", treatment="z")

# ── 3. Full matching, strict first, then allowing exclusions ──────────────────
config = DesignConfig(
    covariates=("x1", "x2"),
    mode="full", min_controls=1, max_controls=3,
    calipers=(Caliper(0.5, metric="propensity", score="ps"),),
)
try:
    design = OptimalStratification(config).fit(catalog)
except Infeasible as exc:
    print(f"{len(exc.unit_ids)} treated unit(s) have no partner within the caliper.")
    design = OptimalStratification(config.replace(allow_exclusion=True)).fit(catalog)

print(design.summary())
print(design.balance(catalog, covariates=["x1", "x2"]).summary())
