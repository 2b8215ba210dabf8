"""Sparse rule selection with length-penalized Lasso and stability selection."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.linear_model import LassoCV, lasso_path
from sklearn.model_selection import KFold

from cre_ml.pipelines.common import InvalidInputError, as_float_array, check_same_length
from cre_ml.pipelines.rule_filters import check_rules_matrix
from cre_ml.pipelines.rules import Rule

LOGGER = logging.getLogger(__name__)

ZERO_TOL = 1e-12
TABLE_COLUMNS = [
    "rule",
    "length",
    "penalty_factor",
    "selected_count",
    "total_runs",
    "selection_rate",
    "selected",
]


@dataclass
class SelectionResult:
    rules: list[Rule]
    table: pd.DataFrame


def penalty_factors(rules: Sequence[Rule], penalty_rl: float) -> np.ndarray:
    lengths = np.asarray([r.length for r in rules], dtype=float)
    return lengths ** float(penalty_rl)


def stability_q(p: int, cutoff: float, pfer: float) -> int:
    # Meinshausen-Buhlmann bound: PFER <= q^2 / ((2 * cutoff - 1) * p).
    q = int(math.floor(math.sqrt(pfer * (2.0 * cutoff - 1.0) * p)))
    return max(1, min(q, p))


def scale_design(values: np.ndarray, factors: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    mean = values.mean(axis=0)
    sd = values.std(axis=0)
    usable = sd > 0
    scaled = np.zeros_like(values, dtype=float)
    scaled[:, usable] = (values[:, usable] - mean[usable]) / sd[usable] / factors[usable]
    return scaled, usable


def first_entered(values: np.ndarray, ite: np.ndarray, factors: np.ndarray, q: int) -> np.ndarray:
    scaled, usable = scale_design(values, factors)
    cols = np.flatnonzero(usable)
    if cols.size == 0:
        return cols
    y = ite - ite.mean()
    _alphas, coefs, _gaps = lasso_path(scaled[:, cols], y)
    nonzero = np.abs(coefs) > ZERO_TOL
    n_steps = coefs.shape[1]
    entered = np.where(nonzero.any(axis=1), nonzero.argmax(axis=1), n_steps)
    magnitude = np.abs(coefs[np.arange(cols.size), np.minimum(entered, n_steps - 1)])
    order = np.lexsort((-magnitude, entered))
    order = [i for i in order if entered[i] < n_steps][:q]
    return cols[order]


def run_stability_selection(
    values: np.ndarray,
    ite: np.ndarray,
    factors: np.ndarray,
    *,
    cutoff: float,
    pfer: float,
    seed: int,
    n_pairs: int = 50,
    n_jobs: int = 1,
) -> tuple[np.ndarray, int]:
    n, p = values.shape
    half = n // 2
    if half < 2:
        raise InvalidInputError(f"Stability selection needs at least 4 rows, got {n}.")
    q = stability_q(p, cutoff, pfer)
    rng = np.random.default_rng(seed)
    subsamples: list[np.ndarray] = []
    for _ in range(int(n_pairs)):
        perm = rng.permutation(n)
        subsamples.append(perm[:half])
        subsamples.append(perm[half : 2 * half])

    picks = Parallel(n_jobs=n_jobs)(
        delayed(first_entered)(values[idx], ite[idx], factors, q) for idx in subsamples
    )
    counts = np.zeros(p, dtype=int)
    for chosen in picks:
        counts[chosen] += 1
    LOGGER.debug("Stability selection: p=%d q=%d resamples=%d", p, q, len(subsamples))
    return counts, len(subsamples)


def lasso_cv_selection(values: np.ndarray, ite: np.ndarray, factors: np.ndarray, *, seed: int) -> np.ndarray:
    n = values.shape[0]
    if n < 4:
        raise InvalidInputError(f"Cross-validated Lasso needs at least 4 rows, got {n}.")
    scaled, usable = scale_design(values, factors)
    selected = np.zeros(values.shape[1], dtype=bool)
    cols = np.flatnonzero(usable)
    if cols.size == 0:
        return selected
    cv = KFold(n_splits=min(5, n // 2), shuffle=True, random_state=seed)
    model = LassoCV(cv=cv, random_state=seed)
    model.fit(scaled[:, cols], ite)
    selected[cols] = np.abs(model.coef_) > ZERO_TOL
    return selected


def select_rules(
    rules_matrix: Any,
    rules: Sequence[Rule],
    ite: Any,
    stability_selection: bool = True,
    cutoff: float = 0.9,
    pfer: float = 1.0,
    penalty_rl: float = 1.0,
    *,
    seed: int = 2021,
    n_jobs: int = 1,
    n_pairs: int = 50,
) -> SelectionResult:
    rules = list(rules)
    matrix = check_rules_matrix(rules_matrix, rules)
    if not 0.5 < cutoff <= 1.0:
        raise InvalidInputError(f"'cutoff' must be in (0.5, 1], got {cutoff}.")
    if pfer <= 0:
        raise InvalidInputError(f"'pfer' must be > 0, got {pfer}.")
    if penalty_rl < 0:
        raise InvalidInputError(f"'penalty_rl' must be >= 0, got {penalty_rl}.")
    if not rules:
        return SelectionResult(rules=[], table=pd.DataFrame(columns=TABLE_COLUMNS))

    itev = as_float_array(ite, name="ite")
    check_same_length(rules_matrix=matrix, ite=itev)
    values = matrix.to_numpy(dtype=float)
    factors = penalty_factors(rules, penalty_rl)

    if stability_selection:
        counts, total_runs = run_stability_selection(
            values,
            itev,
            factors,
            cutoff=cutoff,
            pfer=pfer,
            seed=seed,
            n_pairs=n_pairs,
            n_jobs=n_jobs,
        )
        rates = counts / total_runs
        selected = rates >= cutoff
    else:
        selected = lasso_cv_selection(values, itev, factors, seed=seed)
        counts = selected.astype(int)
        total_runs = 1
        rates = counts.astype(float)

    table = pd.DataFrame(
        {
            "rule": [r.expression for r in rules],
            "length": [r.length for r in rules],
            "penalty_factor": factors,
            "selected_count": counts,
            "total_runs": total_runs,
            "selection_rate": rates,
            "selected": selected,
        }
    )
    chosen = [r for r, s in zip(rules, selected, strict=True) if s]
    LOGGER.info(
        "Rule selection (%s): %d -> %d rules.",
        "stability" if stability_selection else "lasso_cv",
        len(rules),
        len(chosen),
    )
    return SelectionResult(rules=chosen, table=table)
