"""Candidate rule generation from shallow tree ensembles fitted on ITE.

Random-forest-style trees and gradient-boosted trees are fitted on
(covariates, ITE); every root-to-node path up to ``max_depth`` splits becomes a
candidate rule.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.ensemble import GradientBoostingRegressor
from sklearn.tree import DecisionTreeRegressor

from cre_ml.pipelines.common import InvalidInputError, as_float_array, check_covariates, check_same_length
from cre_ml.pipelines.rules import Condition, Rule, check_rule_covariates, dedupe_rules

LOGGER = logging.getLogger(__name__)

TREE_LEAF = -1
GBM_LEARNING_RATE = 0.01
GBM_SUBSAMPLE = 0.5
NO_REPLACE_FRACTION = 0.632


def tree_path_rules(tree: DecisionTreeRegressor, feature_names: Sequence[str], max_depth: int) -> list[Rule]:
    tree_ = tree.tree_
    out: list[Rule] = []

    def walk(node_id: int, conds: list[Condition]) -> None:
        if conds:
            out.append(Rule.from_conditions(conds))
        if tree_.children_left[node_id] == TREE_LEAF or len(conds) >= max_depth:
            return
        feat_name = str(feature_names[int(tree_.feature[node_id])])
        thr = float(tree_.threshold[node_id])
        walk(int(tree_.children_left[node_id]), conds + [Condition(feat_name, "<=", thr)])
        walk(int(tree_.children_right[node_id]), conds + [Condition(feat_name, ">", thr)])

    walk(0, [])
    return out


def _fit_forest_tree(
    x: np.ndarray,
    ite: np.ndarray,
    *,
    seed: int,
    replace: bool,
    node_size: int,
    max_nodes: int,
    max_features: int,
) -> DecisionTreeRegressor:
    rng = np.random.default_rng(seed)
    n = len(ite)
    size = n if replace else max(1, int(math.ceil(NO_REPLACE_FRACTION * n)))
    idx = rng.choice(n, size=size, replace=replace)
    tree = DecisionTreeRegressor(
        min_samples_leaf=node_size,
        max_leaf_nodes=max_nodes,
        max_features=max_features,
        random_state=seed,
    )
    tree.fit(x[idx], ite[idx])
    return tree


def fit_forest_trees(
    x: pd.DataFrame,
    ite: np.ndarray,
    *,
    ntrees: int,
    node_size: int,
    max_nodes: int,
    replace: bool,
    seed: int,
    n_jobs: int = 1,
) -> list[DecisionTreeRegressor]:
    if ntrees == 0:
        return []
    xv = x.to_numpy(dtype=float)
    max_features = max(1, x.shape[1] // 3)
    tree_seeds = np.random.SeedSequence(seed).generate_state(ntrees).tolist()
    return Parallel(n_jobs=n_jobs)(
        delayed(_fit_forest_tree)(
            xv,
            ite,
            seed=int(tree_seed),
            replace=replace,
            node_size=node_size,
            max_nodes=max_nodes,
            max_features=max_features,
        )
        for tree_seed in tree_seeds
    )


def fit_boosted_trees(
    x: pd.DataFrame,
    ite: np.ndarray,
    *,
    ntrees: int,
    node_size: int,
    max_nodes: int,
    seed: int,
) -> list[DecisionTreeRegressor]:
    if ntrees == 0:
        return []
    gbm = GradientBoostingRegressor(
        n_estimators=ntrees,
        learning_rate=GBM_LEARNING_RATE,
        subsample=GBM_SUBSAMPLE,
        min_samples_leaf=node_size,
        max_leaf_nodes=max_nodes,
        max_depth=None,
        random_state=seed,
    )
    gbm.fit(x.to_numpy(dtype=float), ite)
    return [est[0] for est in gbm.estimators_]


def generate_rules(
    x: pd.DataFrame,
    ite: Any,
    intervention_vars: Sequence[str] | None = None,
    ntrees_rf: int = 20,
    ntrees_gbm: int = 20,
    node_size: int = 20,
    max_nodes: int = 5,
    max_depth: int = 3,
    replace: bool = True,
    *,
    seed: int = 2021,
    n_jobs: int = 1,
) -> list[Rule]:
    x = check_covariates(x)
    for key, value, low in (
        ("ntrees_rf", ntrees_rf, 0),
        ("ntrees_gbm", ntrees_gbm, 0),
        ("node_size", node_size, 1),
        ("max_nodes", max_nodes, 2),
        ("max_depth", max_depth, 1),
    ):
        if isinstance(value, bool) or not isinstance(value, int) or value < low:
            raise InvalidInputError(f"'{key}' must be an integer >= {low}, got {value!r}.")
    if ntrees_rf == 0 and ntrees_gbm == 0:
        LOGGER.info("No trees requested (ntrees_rf=0, ntrees_gbm=0); no candidate rules generated.")
        return []

    itev = as_float_array(ite, name="ite")
    check_same_length(X=x, ite=itev)

    if intervention_vars:
        missing = [v for v in intervention_vars if v not in x.columns]
        if missing:
            raise InvalidInputError(f"'intervention_vars' not found among covariates: {missing}")
        x_gen = x[list(intervention_vars)]
    else:
        x_gen = x
    non_numeric = [c for c in x_gen.columns if not pd.api.types.is_numeric_dtype(x_gen[c])]
    if non_numeric:
        raise InvalidInputError(f"Rule generation needs numeric covariates; got non-numeric: {non_numeric}")
    if x_gen.isna().any().any():
        raise InvalidInputError("Rule generation covariates contain missing values.")

    trees = fit_forest_trees(
        x_gen,
        itev,
        ntrees=ntrees_rf,
        node_size=node_size,
        max_nodes=max_nodes,
        replace=replace,
        seed=seed,
        n_jobs=n_jobs,
    )
    trees += fit_boosted_trees(
        x_gen,
        itev,
        ntrees=ntrees_gbm,
        node_size=node_size,
        max_nodes=max_nodes,
        seed=seed + 1,
    )

    feature_names = [str(c) for c in x_gen.columns]
    candidates: list[Rule] = []
    for tree in trees:
        candidates.extend(tree_path_rules(tree, feature_names, max_depth))
    rules = dedupe_rules(candidates)
    check_rule_covariates(x, rules)
    LOGGER.info("Generated %d candidate rules from %d trees (%d paths).", len(rules), len(trees), len(candidates))
    return rules
