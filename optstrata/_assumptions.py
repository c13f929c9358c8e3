from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Assumption:
    """
    A condition under which within-stratum comparisons are unconfounded.

    ``check`` names the diagnostic that examines the condition in the data.
    It is ``None`` when only subject-matter argument can support it.
    """

    name: str
    check: str | None = None

    @property
    def testable(self) -> bool:
        return self.check is not None

    def fmt_tag(self) -> str:
        """Fixed-width label for summaries: ``[ checkable ]`` or ``[ argued    ]``."""
        return "[ checkable ]" if self.testable else "[ argued    ]"


STRATIFICATION_ASSUMPTIONS: list[Assumption] = [
    Assumption("No unobserved confounders given the stratifying covariates"),
    Assumption(
        "Balance: within strata, covariates look as if treatment were randomised",
        check="design.balance(catalog)",
    ),
    Assumption(
        "Overlap: every treated unit has comparable comparison units",
        check="Infeasible errors and excluded treated units",
    ),
    Assumption("Stable Unit Treatment Value Assumption (SUTVA)"),
]
