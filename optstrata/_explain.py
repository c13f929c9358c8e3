"""
Narrative explanation renderer for matched designs and balance reports.

``MatchedDesign.executive_summary()`` and ``BalanceReport.executive_summary()``
call the functions here; each returns a formatted multi-line string.
"""
from __future__ import annotations

_SEP = "━" * 66


# ── Shared helpers ─────────────────────────────────────────────────────────────

def _fmt_p(p: float) -> str:
    if p != p:
        return "p undefined"
    if p < 0.001:
        return "p < 0.001"
    return f"p = {p:.3f}"


def _list_vars(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def _assumptions_section(assumptions: list) -> str:
    n = len(assumptions)
    n_u = sum(1 for a in assumptions if not a.testable)
    n_t = n - n_u

    if n_u == n:
        intro = (
            f"All {n} assumptions are untestable from the data alone "
            f"and must be justified on substantive grounds."
        )
    elif n_t == n:
        intro = f"All {n} assumptions can be empirically checked in the data."
    else:
        intro = (
            f"{n_u} of the {n} assumptions {'is' if n_u == 1 else 'are'} untestable "
            f"and must be justified on substantive grounds; "
            f"{n_t} can be checked in the data."
        )

    lines = ["ASSUMPTIONS", intro, ""]
    for a in assumptions:
        lines.append(f"  {a.fmt_tag()}  {a.name}")
        if a.check is not None:
            lines.append(f"                 checked by: {a.check}")
    return "\n".join(lines)


# ── Design ─────────────────────────────────────────────────────────────────────

def explain_design(design) -> str:
    structure = design.stratum_structure()
    n_t = sum(s.n_treated for s in design.strata)
    n_c = sum(s.n_controls for s in design.strata)
    blocks_used = sorted({s.block for s in design.strata if s.block is not None}, key=repr)

    if design.mode == "pair":
        method = (
            "Optimal pair matching places each treated unit with exactly one "
            "comparison unit, choosing the pairs jointly so that the total "
            "treated–comparison distance is as small as possible. Comparison "
            "units left over are set aside."
        )
    else:
        method = (
            "Optimal full matching places each treated unit with one or more "
            "comparison units, within the configured bounds, using as many "
            "comparison units as possible and choosing the sets jointly so that "
            "the total treated–comparison distance is as small as possible."
        )
    if blocks_used:
        method += (
            f" Units were first split into {len(blocks_used)} exact-match blocks "
            f"and matched only within their own block."
        )

    shapes = ", ".join(f"{count} of shape {shape}" for shape, count in structure.items())
    excluded = len(design.excluded)
    result_lines = [
        "RESULT",
        f"The design has {design.n_strata} strata ({shapes or 'none'}) holding "
        f"{n_t} treated and {n_c} comparison units, with a total distance of "
        f"{design.objective:.4f} and an effective sample size of "
        f"{design.effective_sample_size:.2f}.",
    ]
    if excluded:
        result_lines += [
            "",
            f"{excluded} unit(s) were excluded. Comparisons involving the design "
            f"describe the matched units only.",
        ]

    blocks = [
        "\n".join([_SEP, "Executive Summary — Optimal Matched Design", _SEP]),
        "\n".join(["METHOD", method]),
        _assumptions_section(design.assumptions),
        "\n".join(result_lines),
        "\n".join([
            "CAVEATS",
            "A matched design removes bias from the covariates it matches on and "
            "nothing else. Check covariate balance before looking at outcomes, and "
            "revise the calipers or covariates if balance is poor.",
        ]),
        _SEP,
    ]
    return "\n\n".join(blocks)


# ── Balance ────────────────────────────────────────────────────────────────────

def explain_balance(report, alpha: float = 0.05) -> str:
    table = report.table
    flagged = table.index[table["p_adjusted"] < alpha].tolist()
    largest = table["std_diff"].abs().idxmax() if table["std_diff"].notna().any() else None

    if report.pvalue != report.pvalue:
        overall = "The overall test is undefined: no covariate varies within strata."
    elif report.pvalue < alpha:
        overall = (
            f"Taken together, the covariates are less balanced than re-randomising "
            f"treatment within strata would typically produce "
            f"(chi-square = {report.chisquare:.3f} on {report.df} df, {_fmt_p(report.pvalue)})."
        )
    else:
        overall = (
            f"Taken together, the covariates are as balanced as re-randomising "
            f"treatment within strata would typically produce "
            f"(chi-square = {report.chisquare:.3f} on {report.df} df, {_fmt_p(report.pvalue)})."
        )

    detail = []
    if flagged:
        detail.append(
            f"After Holm adjustment, {_list_vars([str(f) for f in flagged])} "
            f"{'shows' if len(flagged) == 1 else 'show'} imbalance at the {alpha:g} level."
        )
    else:
        detail.append(f"No single covariate is imbalanced at the {alpha:g} level after Holm adjustment.")
    if largest is not None:
        detail.append(
            f"The largest standardised difference is {table.loc[largest, 'std_diff']:.3f} "
            f"({largest})."
        )

    blocks = [
        "\n".join([_SEP, "Executive Summary — Covariate Balance", _SEP]),
        "\n".join([
            "METHOD",
            f"Within each of {report.n_strata} strata, the treated-minus-comparison mean "
            f"difference of every covariate is formed and the differences are combined "
            f"with {report.weighting} weights. Each combined difference is compared with "
            f"its distribution under random assignment of treatment within strata.",
        ]),
        "\n".join(["RESULT", overall, "", *detail]),
        _SEP,
    ]
    return "\n\n".join(blocks)
