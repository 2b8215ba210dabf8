"""Discovery-side rule filters: irrelevant, extreme and correlated rules."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np
import pandas as pd

from cre_ml.pipelines.common import InvalidInputError, as_float_array, check_covariates, check_same_length
from cre_ml.pipelines.rules import Rule, check_rule_covariates, dedupe_rules

LOGGER = logging.getLogger(__name__)

MIN_ERROR = 1e-6


def _within_variance(ite: np.ndarray, mask: np.ndarray) -> float:
    if not mask.any():
        return float("nan")
    return float(np.var(ite[mask]))


def _combine(cond_masks: list[np.ndarray], keep: list[int], n: int) -> np.ndarray:
    out = np.ones(n, dtype=bool)
    for k in keep:
        out &= cond_masks[k]
    return out


def prune_rule(rule: Rule, x: pd.DataFrame, ite: np.ndarray, t_decay: float) -> Rule | None:
    """Drop conditions whose removal raises the in-rule ITE variance by less than ``t_decay``.

    Conditions are removed greedily, cheapest first, measuring the decay as
    ``(err_without - err) / max(err, 1e-6)``. Returns ``None`` when every
    condition is irrelevant.
    """
    n = len(ite)
    cond_masks = [cond.evaluate(x[cond.feature]) for cond in rule.conditions]
    keep = list(range(len(cond_masks)))
    err = _within_variance(ite, _combine(cond_masks, keep, n))
    if not np.isfinite(err):
        return rule

    while keep:
        trials: list[tuple[float, int, float]] = []
        for pos in keep:
            rest = [k for k in keep if k != pos]
            err_new = _within_variance(ite, _combine(cond_masks, rest, n))
            trials.append(((err_new - err) / max(err, MIN_ERROR), pos, err_new))
        decay, pos, err_new = min(trials, key=lambda t: (t[0], t[1]))
        if decay >= t_decay:
            break
        keep.remove(pos)
        err = err_new

    if not keep:
        return None
    if len(keep) == rule.length:
        return rule
    return Rule.from_conditions(rule.conditions[k] for k in keep)


def rule_relevance(rules: Sequence[Rule], x: pd.DataFrame, ite: Any) -> pd.Series:
    x = check_covariates(x)
    itev = as_float_array(ite, name="ite")
    check_same_length(X=x, ite=itev)
    check_rule_covariates(x, rules)

    total = float(np.sum((itev - itev.mean()) ** 2))
    scores: dict[str, float] = {}
    for rule in rules:
        mask = rule.mask(x)
        if total <= 0 or mask.all() or not mask.any():
            scores[rule.expression] = 0.0
            continue
        inside = itev[mask]
        outside = itev[~mask]
        within = float(np.sum((inside - inside.mean()) ** 2) + np.sum((outside - outside.mean()) ** 2))
        scores[rule.expression] = float(1.0 - within / total)
    return pd.Series(scores, dtype=float, name="relevance")


def filter_irrelevant_rules(rules: Sequence[Rule], x: pd.DataFrame, ite: Any, t_decay: float) -> list[Rule]:
    x = check_covariates(x)
    if t_decay < 0:
        raise InvalidInputError(f"'t_decay' must be >= 0, got {t_decay}.")
    rules = list(rules)
    if not rules:
        return []
    itev = as_float_array(ite, name="ite")
    check_same_length(X=x, ite=itev)
    check_rule_covariates(x, rules)
    if t_decay == 0:
        return dedupe_rules(rules)

    pruned: list[Rule] = []
    for rule in rules:
        out = prune_rule(rule, x, itev, t_decay)
        if out is not None:
            pruned.append(out)
    kept = dedupe_rules(pruned)
    LOGGER.info("Irrelevance filter (t_decay=%s): %d -> %d rules.", t_decay, len(rules), len(kept))
    return kept


def check_rules_matrix(rules_matrix: Any, rules: Sequence[Rule]) -> pd.DataFrame:
    if isinstance(rules_matrix, np.ndarray) and rules_matrix.ndim == 2 and rules_matrix.shape[1] == len(rules):
        rules_matrix = pd.DataFrame(rules_matrix, columns=[r.expression for r in rules])
    if not isinstance(rules_matrix, pd.DataFrame):
        raise InvalidInputError(f"'rules_matrix' must be a matrix (DataFrame or 2-D array), got {type(rules_matrix).__name__}.")
    if rules_matrix.shape[1] != len(rules):
        raise InvalidInputError(f"'rules_matrix' has {rules_matrix.shape[1]} columns but {len(rules)} rules were given.")
    non_numeric = [c for c in rules_matrix.columns if not pd.api.types.is_numeric_dtype(rules_matrix[c])]
    if non_numeric:
        raise InvalidInputError(f"'rules_matrix' has non-numeric columns: {non_numeric}")
    return rules_matrix


def filter_extreme_rules(
    rules_matrix: Any,
    rules: Sequence[Rule],
    t_ext: float,
) -> tuple[pd.DataFrame, list[Rule]]:
    rules = list(rules)
    matrix = check_rules_matrix(rules_matrix, rules)
    if not 0.0 <= t_ext < 0.5:
        raise InvalidInputError(f"'t_ext' must be in [0, 0.5), got {t_ext}.")
    if not rules:
        return matrix, rules

    support = matrix.mean(axis=0).to_numpy(dtype=float)
    keep = (support >= t_ext) & (support <= 1.0 - t_ext) & (support > 0.0) & (support < 1.0)
    kept_rules = [r for r, k in zip(rules, keep, strict=True) if k]
    LOGGER.info("Extremity filter (t_ext=%s): %d -> %d rules.", t_ext, len(rules), len(kept_rules))
    return matrix.loc[:, keep], kept_rules


def filter_correlated_rules(
    rules_matrix: Any,
    rules: Sequence[Rule],
    t_corr: float,
    relevance: Mapping[str, float] | pd.Series | None = None,
) -> tuple[pd.DataFrame, list[Rule]]:
    """Keep one rule per group of indicator columns correlated above ``t_corr``.

    Rules are visited by decreasing relevance (discovery order when no scores
    are given or scores tie); a rule survives unless its absolute correlation
    with an already kept rule exceeds ``t_corr``.
    """
    rules = list(rules)
    matrix = check_rules_matrix(rules_matrix, rules)
    if t_corr < 0:
        raise InvalidInputError(f"'t_corr' must be >= 0, got {t_corr}.")
    if len(rules) < 2:
        return matrix, rules

    values = matrix.to_numpy(dtype=float)
    with np.errstate(invalid="ignore", divide="ignore"):
        corr = np.abs(np.corrcoef(values, rowvar=False))
    corr = np.clip(np.nan_to_num(corr, nan=0.0), 0.0, 1.0)

    order = list(range(len(rules)))
    if relevance is not None:
        missing = [r.expression for r in rules if r.expression not in relevance]
        if missing:
            raise InvalidInputError(f"Relevance scores missing for rules: {missing[:5]}")
        scores = [float(relevance[r.expression]) for r in rules]
        order.sort(key=lambda i: (-scores[i], i))

    kept: list[int] = []
    for i in order:
        if all(corr[i, j] <= t_corr for j in kept):
            kept.append(i)
    kept.sort()

    kept_rules = [rules[i] for i in kept]
    LOGGER.info("Correlation filter (t_corr=%s): %d -> %d rules.", t_corr, len(rules), len(kept_rules))
    return matrix.iloc[:, kept], kept_rules
