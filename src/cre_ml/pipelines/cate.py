"""CATE decomposition: unpenalized OLS of ITE on selected rule indicators.

The fitted intercept is the baseline effect for units outside every rule; each
remaining coefficient is the additional effect of satisfying that rule.
Insignificant rules are removed by backward elimination, the intercept never.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
import statsmodels.api as sm

from cre_ml.pipelines.common import InvalidInputError, as_float_array, check_same_length
from cre_ml.pipelines.rule_filters import check_rules_matrix
from cre_ml.pipelines.rules import Rule, generate_rules_matrix

LOGGER = logging.getLogger(__name__)

INTERCEPT = "(Intercept)"
SUMMARY_COLUMNS = ["Rule", "Estimate", "Std_Error", "t_value", "P_Value", "CI_Lower", "CI_Upper"]


@dataclass
class CateModel:
    rules: list[Rule]
    intercept: float
    coefficients: np.ndarray
    results: Any = None

    def predict(self, rule_features: pd.DataFrame) -> np.ndarray:
        if not isinstance(rule_features, pd.DataFrame):
            raise InvalidInputError(f"'rule_features' must be a DataFrame, got {type(rule_features).__name__}.")
        names = [r.expression for r in self.rules]
        missing = [n for n in names if n not in rule_features.columns]
        if missing:
            raise InvalidInputError(f"Rule features missing columns: {missing}")
        out = np.full(len(rule_features), self.intercept, dtype=float)
        if names:
            out += rule_features[names].to_numpy(dtype=float) @ self.coefficients
        return out

    def predict_covariates(self, x: pd.DataFrame) -> np.ndarray:
        return self.predict(generate_rules_matrix(x, self.rules))


@dataclass
class CateResult:
    model: CateModel
    summary: pd.DataFrame


def full_rank_columns(values: np.ndarray) -> list[int]:
    n = values.shape[0]
    kept: list[int] = []
    design = np.ones((n, 1), dtype=float)
    for j in range(values.shape[1]):
        candidate = np.column_stack([design, values[:, j]])
        if np.linalg.matrix_rank(candidate) == candidate.shape[1]:
            kept.append(j)
            design = candidate
    return kept


def fit_ols(values: np.ndarray, ite: np.ndarray) -> Any:
    design = np.column_stack([np.ones(len(ite), dtype=float), values])
    return sm.OLS(ite, design).fit()


def build_summary(results: Any, names: Sequence[str], *, alpha: float) -> pd.DataFrame:
    ci = np.asarray(results.conf_int(alpha=alpha), dtype=float)
    return pd.DataFrame(
        {
            "Rule": [INTERCEPT, *names],
            "Estimate": np.asarray(results.params, dtype=float),
            "Std_Error": np.asarray(results.bse, dtype=float),
            "t_value": np.asarray(results.tvalues, dtype=float),
            "P_Value": np.asarray(results.pvalues, dtype=float),
            "CI_Lower": ci[:, 0],
            "CI_Upper": ci[:, 1],
        },
        columns=SUMMARY_COLUMNS,
    )


def estimate_cate(
    rules_matrix: Any,
    rules: Sequence[Rule] | None,
    ite: Any,
    t_pvalue: float = 0.05,
    *,
    alpha: float = 0.05,
) -> CateResult:
    if not 0.0 < t_pvalue < 1.0:
        raise InvalidInputError(f"'t_pvalue' must be in (0, 1), got {t_pvalue}.")
    if not 0.0 < alpha < 1.0:
        raise InvalidInputError(f"'alpha' must be in (0, 1), got {alpha}.")
    itev = as_float_array(ite, name="ite")
    if len(itev) < 2:
        raise InvalidInputError("CATE estimation needs at least 2 observations.")

    rules = list(rules or [])
    if rules:
        matrix = check_rules_matrix(rules_matrix, rules)
        check_same_length(rules_matrix=matrix, ite=itev)
        values = matrix.to_numpy(dtype=float)
    else:
        values = np.empty((len(itev), 0), dtype=float)

    active = full_rank_columns(values)
    if len(active) < len(rules):
        dropped = [rules[j].expression for j in range(len(rules)) if j not in active]
        LOGGER.info("Dropped %d collinear rules before CATE estimation: %s", len(dropped), dropped)

    results = fit_ols(values[:, active], itev)
    while active:
        pvals = np.asarray(results.pvalues, dtype=float)[1:]
        pvals = np.where(np.isnan(pvals), np.inf, pvals)
        worst = int(np.argmax(pvals))
        if pvals[worst] <= t_pvalue:
            break
        LOGGER.debug("Removing insignificant rule %s (p=%.4g).", rules[active[worst]].expression, pvals[worst])
        del active[worst]
        results = fit_ols(values[:, active], itev)

    kept_rules = [rules[j] for j in active]
    summary = build_summary(results, [r.expression for r in kept_rules], alpha=alpha)
    params = np.asarray(results.params, dtype=float)
    model = CateModel(
        rules=kept_rules,
        intercept=float(params[0]),
        coefficients=params[1:].copy(),
        results=results,
    )
    LOGGER.info("CATE decomposition: %d -> %d significant rules (t_pvalue=%s).", len(rules), len(kept_rules), t_pvalue)
    return CateResult(model=model, summary=summary)
