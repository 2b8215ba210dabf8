"""Causal rule ensemble: honest discovery and inference of decision rules.

Stages run strictly in order: split -> discover -> infer -> decompose ->
predict. Discovery works on one half of the data only; effect sizes and their
uncertainty come from the other half.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from cre_ml.pipelines.cate import CateModel, estimate_cate
from cre_ml.pipelines.common import (
    InvalidInputError,
    as_float_array,
    as_treatment_array,
    check_covariates,
    check_same_length,
    prepare_covariates,
)
from cre_ml.pipelines.honest_splitting import Subsample, honest_splitting
from cre_ml.pipelines.ite import build_ite_estimator
from cre_ml.pipelines.params import (
    OFFSET_METHODS,
    HyperParams,
    MethodParams,
    check_hyper_params,
    check_method_params,
)
from cre_ml.pipelines.rule_filters import (
    filter_correlated_rules,
    filter_extreme_rules,
    filter_irrelevant_rules,
    rule_relevance,
)
from cre_ml.pipelines.rule_generation import generate_rules
from cre_ml.pipelines.rule_selection import TABLE_COLUMNS, select_rules
from cre_ml.pipelines.rules import Rule, generate_rules_matrix

LOGGER = logging.getLogger(__name__)

STAGE_COUNTS = (
    "generated",
    "filter_irrelevant",
    "filter_extreme",
    "filter_correlated",
    "select_lasso",
    "select_significant",
)


@dataclass
class DiscoveryResult:
    rules: list[Rule]
    M: dict[str, int]
    relevance: pd.Series
    selection_table: pd.DataFrame | None = None


@dataclass
class CreResult:
    M: dict[str, int]
    CATE: pd.DataFrame
    method_params: MethodParams
    hyper_params: HyperParams
    ite_pred: np.ndarray
    rules: list[Rule] = field(default_factory=list)
    model: CateModel | None = None
    selection_table: pd.DataFrame | None = None
    encoded_levels: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "M": dict(self.M),
            "rules": [r.expression for r in self.rules],
            "method_params": self.method_params.to_dict(),
            "hyper_params": self.hyper_params.to_dict(),
        }


def expand_intervention_vars(names: Sequence[str] | None, x_prepared: pd.DataFrame) -> list[str] | None:
    if names is None:
        return None
    out: list[str] = []
    for name in names:
        if name in x_prepared.columns:
            out.append(name)
            continue
        encoded = [c for c in x_prepared.columns if c.startswith(f"{name}_")]
        if not encoded:
            raise InvalidInputError(f"Intervention variable {name!r} has no usable numeric encoding.")
        out.extend(encoded)
    return out


def encoded_levels(x: pd.DataFrame) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for col in x.columns:
        if pd.api.types.is_numeric_dtype(x[col]):
            continue
        out[str(col)] = list(prepare_covariates(x[[col]]).columns)
    return out


def estimate_phase_ite(
    sub: Subsample,
    *,
    ite_method: str,
    ps_method: str,
    or_method: str,
    offset: str | None,
    seed: int,
) -> np.ndarray:
    estimator = build_ite_estimator(
        ite_method,
        ps_method=ps_method,
        or_method=or_method,
        offset=offset if ite_method in OFFSET_METHODS else None,
        seed=seed,
    )
    return estimator.estimate(sub.y, sub.z, sub.x)


def discover_rules(
    x: pd.DataFrame,
    ite: np.ndarray,
    method_params: MethodParams,
    hyper_params: HyperParams,
    *,
    seed: int = 2021,
    n_jobs: int = 1,
) -> DiscoveryResult:
    hp = hyper_params
    counts = {name: 0 for name in STAGE_COUNTS}

    rules = generate_rules(
        x,
        ite,
        expand_intervention_vars(hp.intervention_vars, x),
        hp.ntrees_rf,
        hp.ntrees_gbm,
        hp.node_size,
        hp.max_nodes,
        hp.max_depth,
        hp.replace,
        seed=seed,
        n_jobs=n_jobs,
    )
    counts["generated"] = len(rules)
    if not rules:
        LOGGER.warning("No candidate rules generated; the run degenerates to the average treatment effect.")
        return DiscoveryResult(rules=[], M=counts, relevance=pd.Series(dtype=float, name="relevance"))

    rules = filter_irrelevant_rules(rules, x, ite, hp.t_decay)
    counts["filter_irrelevant"] = len(rules)
    relevance = rule_relevance(rules, x, ite)

    rules_matrix = generate_rules_matrix(x, rules)
    rules_matrix, rules = filter_extreme_rules(rules_matrix, rules, hp.t_ext)
    counts["filter_extreme"] = len(rules)

    rules_matrix, rules = filter_correlated_rules(rules_matrix, rules, hp.t_corr, relevance=relevance)
    counts["filter_correlated"] = len(rules)

    selection_table = None
    if method_params.selection_sample == "discovery":
        selection = select_rules(
            rules_matrix,
            rules,
            ite,
            hp.stability_selection,
            hp.cutoff,
            hp.pfer,
            hp.penalty_rl,
            seed=seed + 7,
            n_jobs=n_jobs,
        )
        rules = selection.rules
        selection_table = selection.table
        counts["select_lasso"] = len(rules)

    return DiscoveryResult(rules=rules, M=counts, relevance=relevance, selection_table=selection_table)


def cre(
    y: Any,
    z: Any,
    x: pd.DataFrame,
    method_params: MethodParams | Mapping[str, Any] | None = None,
    hyper_params: HyperParams | Mapping[str, Any] | None = None,
    ite: Any = None,
    *,
    seed: int = 2021,
    n_jobs: int = 1,
) -> CreResult:
    """Fit the causal rule ensemble and decompose the ITE into rule effects.

    Rule selection runs on the discovery sample by default, so the inference
    sample is used only for effect estimates. Pass
    ``selection_sample="inference"`` to select rules against the inference
    sample ITE instead.
    """
    st_time = time.perf_counter()

    # init
    yv = as_float_array(y, name="y")
    zv = as_treatment_array(z, name="z")
    x = check_covariates(x)
    itev = None if ite is None else as_float_array(ite, name="ite")
    check_same_length(y=yv, z=zv, X=x, ite=itev)
    mp = check_method_params(method_params)
    x_prepared = prepare_covariates(x).reset_index(drop=True)
    hp = check_hyper_params(
        hyper_params,
        list(x_prepared.columns) + [str(c) for c in x.columns],
        method_params=mp,
    )
    if hp.offset is not None and hp.offset not in x_prepared.columns:
        raise InvalidInputError(f"Offset covariate {hp.offset!r} must be numeric.")

    # split
    discovery, inference = honest_splitting(yv, zv, x_prepared, mp.ratio_dis, itev, seed=seed)
    LOGGER.info("Honest splitting: %d discovery rows, %d inference rows.", len(discovery), len(inference))

    # discover
    LOGGER.info("Starting rules discovery...")
    st_stage = time.perf_counter()
    if discovery.ite is None:
        ite_dis = estimate_phase_ite(
            discovery,
            ite_method=mp.ite_method_dis,
            ps_method=mp.ps_method_dis,
            or_method=mp.or_method_dis,
            offset=hp.offset,
            seed=seed + 1,
        )
    else:
        LOGGER.info("Using the provided ITE estimations for discovery.")
        ite_dis = discovery.ite
    found = discover_rules(discovery.x, ite_dis, mp, hp, seed=seed + 3, n_jobs=n_jobs)
    counts = dict(found.M)
    LOGGER.info("Done with rules discovery (%.2fs): %s", time.perf_counter() - st_stage, counts)

    # infer
    LOGGER.info("Starting inference...")
    st_stage = time.perf_counter()
    if inference.ite is None:
        ite_inf = estimate_phase_ite(
            inference,
            ite_method=mp.ite_method_inf,
            ps_method=mp.ps_method_inf,
            or_method=mp.or_method_inf,
            offset=hp.offset,
            seed=seed + 2,
        )
    else:
        LOGGER.info("Using the provided ITE estimations for inference.")
        ite_inf = inference.ite

    rules = found.rules
    selection_table = found.selection_table
    rules_matrix_inf = generate_rules_matrix(inference.x, rules)
    if mp.selection_sample == "inference" and rules:
        selection = select_rules(
            rules_matrix_inf,
            rules,
            ite_inf,
            hp.stability_selection,
            hp.cutoff,
            hp.pfer,
            hp.penalty_rl,
            seed=seed + 10,
            n_jobs=n_jobs,
        )
        rules = selection.rules
        selection_table = selection.table
        rules_matrix_inf = rules_matrix_inf[[r.expression for r in rules]]
        counts["select_lasso"] = len(rules)
    if selection_table is None:
        selection_table = pd.DataFrame(columns=TABLE_COLUMNS)

    # decompose
    cate_result = estimate_cate(rules_matrix_inf, rules, ite_inf, hp.t_pvalue)
    model = cate_result.model
    counts["select_significant"] = len(model.rules)

    # predict
    ite_pred = model.predict_covariates(x_prepared)
    LOGGER.info("Done with inference (%.2fs): %d significant rules.", time.perf_counter() - st_stage, len(model.rules))

    LOGGER.info("Done with running CRE (%.2fs).", time.perf_counter() - st_time)
    return CreResult(
        M=counts,
        CATE=cate_result.summary,
        method_params=mp,
        hyper_params=hp,
        ite_pred=ite_pred,
        rules=list(model.rules),
        model=model,
        selection_table=selection_table,
        encoded_levels=encoded_levels(x),
    )


def predict_ite(result: CreResult, x: pd.DataFrame) -> np.ndarray:
    if result.model is None:
        raise InvalidInputError("CRE result has no fitted decomposition model.")
    prepared = prepare_covariates(x)
    # Levels of a categorical column that new data never takes are all-zero indicators.
    present = {str(c) for c in x.columns}
    absent = [
        level
        for source, levels in result.encoded_levels.items()
        if source in present
        for level in levels
        if level not in prepared.columns
    ]
    if absent:
        prepared = prepared.assign(**{c: 0 for c in absent})
    return result.model.predict_covariates(prepared)
