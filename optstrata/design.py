from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass

import pandas as pd

from ._assumptions import STRATIFICATION_ASSUMPTIONS, Assumption

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stratum:
    """One matched set: its treated and comparison unit ids."""

    id: str
    treated: tuple
    controls: tuple
    block: object = None
    distance: float = 0.0
    """Sum of the treated–comparison distances inside the stratum."""

    @property
    def n_treated(self) -> int:
        return len(self.treated)

    @property
    def n_controls(self) -> int:
        return len(self.controls)

    @property
    def size(self) -> int:
        return self.n_treated + self.n_controls

    @property
    def shape(self) -> str:
        """``"n_treated:n_controls"``, e.g. ``"1:2"``."""
        return f"{self.n_treated}:{self.n_controls}"

    @property
    def units(self) -> tuple:
        return self.treated + self.controls


class MatchedDesign:
    """
    A complete stratification of the study units.

    Every unit is either in exactly one stratum or excluded, and every
    stratum holds at least one treated and one comparison unit. A design is
    never modified after construction; re-solving yields a new design.

    Obtain one from ``OptimalStratification(config).fit(catalog)`` or
    ``OptimalMatchSolver(...).solve(blocks)``.
    """

    def __init__(
        self,
        strata,
        excluded=(),
        mode: str = "pair",
    ) -> None:
        strata = tuple(strata)
        assignment: dict = {}
        for s in strata:
            if not s.treated or not s.controls:
                raise ValueError(
                    f"Stratum '{s.id}' must contain treated and comparison units; "
                    f"got {s.shape}."
                )
            for unit_id in s.units:
                if unit_id in assignment:
                    raise ValueError(
                        f"Unit {unit_id!r} is in both stratum '{assignment[unit_id]}' "
                        f"and stratum '{s.id}'."
                    )
                assignment[unit_id] = s.id
        ids = [s.id for s in strata]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Stratum ids must be unique; got {ids}.")

        excluded = frozenset(excluded)
        both = sorted(map(repr, excluded & assignment.keys()))
        if both:
            raise ValueError(f"Unit(s) {both} are both matched and excluded.")

        self._strata = strata
        self._by_id = {s.id: s for s in strata}
        self._assignment = assignment
        self._excluded = excluded
        self._mode = mode
        self._objective = sum(s.distance for s in strata)

    # ── Contents ──────────────────────────────────────────────────────────────

    @property
    def strata(self) -> list[Stratum]:
        """All strata, in solve order (blocks in key order, then treated id order)."""
        return list(self._strata)

    def stratum(self, stratum_id: str) -> Stratum:
        return self._by_id[stratum_id]

    @property
    def n_strata(self) -> int:
        return len(self._strata)

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def objective(self) -> float:
        """Total within-stratum distance realised by the design."""
        return self._objective

    @property
    def excluded(self) -> frozenset:
        """Ids of units left out of every stratum."""
        return self._excluded

    @property
    def matched_ids(self) -> list:
        return list(self._assignment)

    @property
    def assignment(self) -> dict:
        """Unit id → stratum id, for matched units only."""
        return dict(self._assignment)

    def stratum_of(self, unit_id):
        """
        Stratum id of ``unit_id``, or ``None`` if it was excluded.

        Raises ``KeyError`` for an id the design never saw.
        """
        if unit_id in self._assignment:
            return self._assignment[unit_id]
        if unit_id in self._excluded:
            return None
        raise KeyError(f"Unit {unit_id!r} is not part of this design.")

    def __len__(self) -> int:
        return len(self._assignment)

    # ── Structure ─────────────────────────────────────────────────────────────

    def stratum_structure(self) -> dict[str, int]:
        """Number of strata of each ``treated:comparison`` shape."""
        counts = Counter(s.shape for s in self._strata)
        return dict(sorted(
            counts.items(),
            key=lambda kv: tuple(int(p) for p in kv[0].split(":")),
        ))

    @property
    def effective_sample_size(self) -> float:
        """
        Sum over strata of the harmonic weight ``2·n_T·n_C / (n_T + n_C)``.

        Equals the number of pairs for a pair-matched design; full matching
        trades some of it for using more units.
        """
        return sum(2.0 * s.n_treated * s.n_controls / s.size for s in self._strata)

    # ── Export ────────────────────────────────────────────────────────────────

    def to_series(self) -> pd.Series:
        """Unit id → stratum id; excluded units map to ``None``."""
        data = dict(self._assignment)
        for unit_id in self._excluded:
            data[unit_id] = None
        return pd.Series(data, name="stratum", dtype=object)

    def to_frame(self) -> pd.DataFrame:
        """One row per unit: ``unit``, ``stratum``, ``treated``, ``block``."""
        rows = []
        for s in self._strata:
            for unit_id in s.treated:
                rows.append({"unit": unit_id, "stratum": s.id, "treated": True, "block": s.block})
            for unit_id in s.controls:
                rows.append({"unit": unit_id, "stratum": s.id, "treated": False, "block": s.block})
        for unit_id in sorted(self._excluded, key=repr):
            rows.append({"unit": unit_id, "stratum": None, "treated": None, "block": None})
        return pd.DataFrame(rows, columns=["unit", "stratum", "treated", "block"])

    @property
    def assumptions(self) -> list[Assumption]:
        """Assumptions under which within-stratum comparisons are unconfounded."""
        return list(STRATIFICATION_ASSUMPTIONS)

    # ── Assessment ────────────────────────────────────────────────────────────

    def balance(self, catalog, covariates=None):
        """
        Assess covariate balance within this design's strata.

        Parameters
        ----------
        catalog : UnitCatalog
            The catalog the design was built from.
        covariates : list[str], optional
            Covariates to assess. Defaults to every covariate in the catalog.
        """
        from .balance import StrataEvaluator
        return StrataEvaluator(covariates).evaluate(self, catalog)

    def executive_summary(self) -> str:
        """Narrative explanation of the design, its assumptions, and its shape."""
        from ._explain import explain_design
        return explain_design(self)

    def summary(self) -> str:
        n_t = sum(s.n_treated for s in self._strata)
        n_c = sum(s.n_controls for s in self._strata)
        lines = [
            "",
            f"Matched design ({self._mode} matching)",
            "─" * 50,
            f"  Strata               : {self.n_strata:>10d}",
            f"  Matched treated      : {n_t:>10d}",
            f"  Matched comparison   : {n_c:>10d}",
            f"  Excluded units       : {len(self._excluded):>10d}",
            f"  Total distance       : {self._objective:>10.4f}",
            f"  Effective sample size: {self.effective_sample_size:>10.2f}",
            "",
            "  Stratum structure (treated:comparison)",
            "  " + "┄" * 36,
        ]
        for shape, count in self.stratum_structure().items():
            lines.append(f"  {shape:>8}  × {count}")
        lines.append("")
        return "\n".join(lines)

    def __eq__(self, other) -> bool:
        if not isinstance(other, MatchedDesign):
            return NotImplemented
        return (
            self._strata == other._strata
            and self._excluded == other._excluded
            and self._mode == other._mode
        )

    def __repr__(self) -> str:
        return self.summary()
