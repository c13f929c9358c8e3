"""
Optimal pair matching — basic example
=====================================
Pair each treated unit with one comparison unit so that the total
rank-Mahalanobis distance on age and income is as small as possible, then
check covariate balance before and after matching.
"""

import numpy as np
import pandas as pd
from optstrata import DesignConfig, OptimalStratification, UnitCatalog, unstratified, StrataEvaluator

RNG = np.random.default_rng(0)
N = 300

# ── 1. Simulate data ──────────────────────────────────────────────────────────
age     = RNG.normal(45, 10, size=N)
income  = RNG.lognormal(10, 0.5, size=N)
latent  = 0.08 * (age - 45) + RNG.normal(size=N)
treated = (latent > np.quantile(latent, 0.7)).astype(int)   # ~30% treated

df = pd.DataFrame({"id": np.arange(N), "treated": treated, "age": age, "income": income})
catalog = UnitCatalog.from_frame(df, id="id", treatment="treated")

# ── 2. Balance before matching ────────────────────────────────────────────────
print(StrataEvaluator().evaluate(unstratified(catalog), catalog).summary())

# ── 3. Optimal pair matching ──────────────────────────────────────────────────
config = DesignConfig(covariates=("age", "income"), metric="rank_mahalanobis", mode="pair")
design = OptimalStratification(config).fit(catalog)

print(design.summary())
print(design.balance(catalog).summary())
