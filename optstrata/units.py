from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator

import numpy as np
import pandas as pd

NUMERIC     = "numeric"
CATEGORICAL = "categorical"


@dataclass(frozen=True)
class Unit:
    """A single unit of the study: its id, arm, and covariate values."""

    id: Any
    treated: bool
    covariates: tuple

    def __getitem__(self, index: int):
        return self.covariates[index]


def _infer_kind(series: pd.Series) -> str:
    if pd.api.types.is_bool_dtype(series) or pd.api.types.is_numeric_dtype(series):
        return NUMERIC
    return CATEGORICAL


class UnitCatalog:
    """
    Immutable table of units with treatment labels and covariates.

    The catalog is the input to every stage of a matched design. It keeps its
    own copy of the data, indexed by the unit id, and never hands out a view
    that could be used to modify it.

    Build one from a dataframe::

        catalog = UnitCatalog.from_frame(
            df, id="unit", treatment="treated",
            covariates=["age", "income", "sex"],
        )

    Covariate kinds are inferred (boolean and numeric columns are numeric;
    everything else is categorical) unless listed in ``categorical``.
    """

    def __init__(
        self,
        frame: pd.DataFrame,
        treatment: str,
        schema: dict[str, str],
    ) -> None:
        self._frame = frame
        self._treatment = treatment
        self._schema = dict(schema)
        self._is_treated = frame[treatment].to_numpy(dtype=bool)

    @classmethod
    def from_frame(
        cls,
        data: pd.DataFrame,
        id: str,
        treatment: str,
        covariates: list[str] | None = None,
        categorical: list[str] | None = None,
    ) -> UnitCatalog:
        """
        Validate a unit table and load it into a catalog.

        Parameters
        ----------
        data : pd.DataFrame
            One row per unit.
        id : str
            Column holding the unique, stable unit identifier.
        treatment : str
            Binary (0/1 or boolean) treatment column.
        covariates : list[str], optional
            Covariate columns to keep. Defaults to every other column.
        categorical : list[str], optional
            Columns to treat as categorical regardless of dtype.

        Raises
        ------
        ``ValueError``
            If a column is missing, ids are duplicated, treatment is not
            binary, or a covariate has missing values.
        """
        columns = set(data.columns)
        for label, var in [("Id", id), ("Treatment", treatment)]:
            if var not in columns:
                raise ValueError(f"{label} column '{var}' not found in dataframe.")

        if covariates is None:
            covariates = [c for c in data.columns if c not in (id, treatment)]
        covariates = list(covariates)
        missing = [c for c in covariates if c not in columns]
        if missing:
            raise ValueError(f"Covariate column(s) {missing} not found in dataframe.")
        if id in covariates or treatment in covariates:
            raise ValueError("Id and treatment columns cannot also be covariates.")

        dupes = data[id][data[id].duplicated()].unique().tolist()
        if dupes:
            raise ValueError(f"Unit ids must be unique. Duplicated: {dupes}")
        if data[id].isna().any():
            raise ValueError(f"Id column '{id}' contains missing values.")

        t_vals = set(data[treatment].dropna().unique())
        if data[treatment].isna().any() or not t_vals <= {0, 1, 0.0, 1.0, True, False}:
            raise ValueError(
                f"Treatment '{treatment}' must be binary (0/1). "
                f"Found values: {sorted(map(str, t_vals))}"
            )

        with_na = [c for c in covariates if data[c].isna().any()]
        if with_na:
            raise ValueError(
                f"Covariate(s) {with_na} contain missing values. "
                f"Impute or drop them before building a catalog."
            )

        categorical = set(categorical or [])
        schema = {
            c: CATEGORICAL if c in categorical else _infer_kind(data[c])
            for c in covariates
        }

        frame = data[[id, treatment, *covariates]].copy()
        frame[treatment] = frame[treatment].astype(bool)
        frame = frame.set_index(id)
        return cls(frame, treatment, schema)

    # ── Shape and schema ──────────────────────────────────────────────────────

    @property
    def treatment(self) -> str:
        """Name of the treatment column."""
        return self._treatment

    @property
    def schema(self) -> dict[str, str]:
        """Covariate name → ``"numeric"`` or ``"categorical"``."""
        return dict(self._schema)

    @property
    def covariates(self) -> list[str]:
        return list(self._schema)

    @property
    def ids(self) -> list:
        """All unit ids, in load order."""
        return self._frame.index.tolist()

    @property
    def treated_ids(self) -> list:
        return self._frame.index[self._is_treated].tolist()

    @property
    def control_ids(self) -> list:
        return self._frame.index[~self._is_treated].tolist()

    def __len__(self) -> int:
        return len(self._frame)

    def __contains__(self, unit_id) -> bool:
        return unit_id in self._frame.index

    # ── Access ────────────────────────────────────────────────────────────────

    def is_treated(self, ids=None) -> np.ndarray:
        """Boolean treatment indicator, for ``ids`` or every unit."""
        if ids is None:
            return self._is_treated.copy()
        return self._frame.loc[list(ids), self._treatment].to_numpy(dtype=bool)

    def values(self, covariate: str, ids=None) -> pd.Series:
        """Copy of one covariate column, optionally restricted to ``ids``."""
        if covariate not in self._schema and covariate != self._treatment:
            raise ValueError(
                f"'{covariate}' is not a covariate of this catalog. "
                f"Known covariates: {self.covariates}"
            )
        col = self._frame[covariate]
        if ids is not None:
            col = col.loc[list(ids)]
        return col.copy()

    def frame(self, ids=None) -> pd.DataFrame:
        """Copy of the underlying table (indexed by unit id)."""
        if ids is None:
            return self._frame.copy()
        return self._frame.loc[list(ids)].copy()

    def unit(self, unit_id) -> Unit:
        if unit_id not in self._frame.index:
            raise KeyError(f"Unknown unit id: {unit_id!r}")
        row = self._frame.loc[unit_id]
        return Unit(
            id=unit_id,
            treated=bool(row[self._treatment]),
            covariates=tuple(row[c] for c in self._schema),
        )

    def __iter__(self) -> Iterator[Unit]:
        for unit_id in self._frame.index:
            yield self.unit(unit_id)

    def subset(self, ids) -> UnitCatalog:
        """A new catalog holding only ``ids`` (same schema)."""
        ids = list(ids)
        unknown = [i for i in ids if i not in self._frame.index]
        if unknown:
            raise KeyError(f"Unknown unit id(s): {unknown}")
        return UnitCatalog(self._frame.loc[ids].copy(), self._treatment, self._schema)

    def __repr__(self) -> str:
        n_t = int(self._is_treated.sum())
        return (
            f"UnitCatalog({len(self)} units: {n_t} treated, {len(self) - n_t} comparison; "
            f"covariates={self.covariates})"
        )
