"""Method and hyper-parameter sets for the causal rule ensemble.

Both sets are frozen dataclasses, validated once by ``check_method_params`` /
``check_hyper_params`` and then passed read-only through every stage.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, fields
from typing import Any

from cre_ml.pipelines.common import InvalidInputError, dedupe_keep_order

LOGGER = logging.getLogger(__name__)

ITE_METHODS = ("aipw", "sipw", "slearner", "tlearner", "xlearner", "tpoisson")
PS_METHODS = ("logistic", "random_forest", "xgboost")
OR_METHODS = ("linear", "random_forest", "xgboost", "catboost")
SELECTION_SAMPLES = ("discovery", "inference")
OFFSET_METHODS = {"tpoisson"}


@dataclass(frozen=True)
class MethodParams:
    ratio_dis: float = 0.5
    ite_method_dis: str = "aipw"
    ps_method_dis: str = "xgboost"
    or_method_dis: str = "xgboost"
    ite_method_inf: str = "aipw"
    ps_method_inf: str = "xgboost"
    or_method_inf: str = "xgboost"
    selection_sample: str = "discovery"

    def __post_init__(self) -> None:
        if not 0.0 < float(self.ratio_dis) < 1.0:
            raise InvalidInputError(f"'ratio_dis' must be in (0, 1), got {self.ratio_dis}.")
        for key in ("ite_method_dis", "ite_method_inf"):
            _check_choice(key, getattr(self, key), ITE_METHODS)
        for key in ("ps_method_dis", "ps_method_inf"):
            _check_choice(key, getattr(self, key), PS_METHODS)
        for key in ("or_method_dis", "or_method_inf"):
            _check_choice(key, getattr(self, key), OR_METHODS)
        _check_choice("selection_sample", self.selection_sample, SELECTION_SAMPLES)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class HyperParams:
    intervention_vars: tuple[str, ...] | None = None
    offset: str | None = None
    ntrees_rf: int = 20
    ntrees_gbm: int = 20
    node_size: int = 20
    max_nodes: int = 5
    max_depth: int = 3
    replace: bool = True
    t_decay: float = 0.025
    t_ext: float = 0.01
    t_corr: float = 1.0
    t_pvalue: float = 0.05
    stability_selection: bool = True
    cutoff: float = 0.9
    pfer: float = 1.0
    penalty_rl: float = 1.0

    def __post_init__(self) -> None:
        if self.intervention_vars is not None:
            if isinstance(self.intervention_vars, str):
                raise InvalidInputError("'intervention_vars' must be a sequence of covariate names.")
            names = tuple(dedupe_keep_order(str(v) for v in self.intervention_vars))
            if not names:
                raise InvalidInputError("'intervention_vars' must name at least one covariate (or be None).")
            object.__setattr__(self, "intervention_vars", names)
        for key in ("ntrees_rf", "ntrees_gbm"):
            _check_int(key, getattr(self, key), low=0)
        _check_int("node_size", self.node_size, low=1)
        _check_int("max_nodes", self.max_nodes, low=2)
        _check_int("max_depth", self.max_depth, low=1)
        if self.t_decay < 0:
            raise InvalidInputError(f"'t_decay' must be >= 0, got {self.t_decay}.")
        if not 0.0 < self.t_ext < 0.5:
            raise InvalidInputError(f"'t_ext' must be in (0, 0.5), got {self.t_ext}.")
        if self.t_corr < 0:
            raise InvalidInputError(f"'t_corr' must be >= 0, got {self.t_corr}.")
        if not 0.0 < self.t_pvalue < 1.0:
            raise InvalidInputError(f"'t_pvalue' must be in (0, 1), got {self.t_pvalue}.")
        if not 0.5 < self.cutoff <= 1.0:
            raise InvalidInputError(f"'cutoff' must be in (0.5, 1], got {self.cutoff}.")
        if self.pfer <= 0:
            raise InvalidInputError(f"'pfer' must be > 0, got {self.pfer}.")
        if self.penalty_rl < 0:
            raise InvalidInputError(f"'penalty_rl' must be >= 0, got {self.penalty_rl}.")

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        if self.intervention_vars is not None:
            out["intervention_vars"] = list(self.intervention_vars)
        return out


def _check_choice(key: str, value: str, options: Sequence[str]) -> None:
    if value not in options:
        raise InvalidInputError(f"Unsupported '{key}': {value!r}. Available: {list(options)}")


def _check_int(key: str, value: Any, *, low: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < low:
        raise InvalidInputError(f"'{key}' must be an integer >= {low}, got {value!r}.")


def _from_mapping(cls: type, params: Mapping[str, Any], label: str) -> Any:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(params) - known)
    if unknown:
        raise InvalidInputError(f"Unknown {label} keys: {unknown}. Available: {sorted(known)}")
    return cls(**{k: v for k, v in params.items() if v is not None or k in {"intervention_vars", "offset"}})


def check_method_params(params: MethodParams | Mapping[str, Any] | None = None) -> MethodParams:
    if params is None:
        return MethodParams()
    if isinstance(params, MethodParams):
        return params
    if not isinstance(params, Mapping):
        raise InvalidInputError(f"'method_params' must be a mapping, got {type(params).__name__}.")
    return _from_mapping(MethodParams, params, "method_params")


def check_hyper_params(
    params: HyperParams | Mapping[str, Any] | None,
    x_names: Sequence[str],
    *,
    method_params: MethodParams | None = None,
) -> HyperParams:
    if params is None:
        hp = HyperParams()
    elif isinstance(params, HyperParams):
        hp = params
    elif isinstance(params, Mapping):
        hp = _from_mapping(HyperParams, params, "hyper_params")
    else:
        raise InvalidInputError(f"'hyper_params' must be a mapping, got {type(params).__name__}.")

    names = {str(n) for n in x_names}
    if hp.intervention_vars is not None:
        missing = [v for v in hp.intervention_vars if v not in names]
        if missing:
            raise InvalidInputError(f"'intervention_vars' not found among covariates: {missing}")
    if hp.offset is not None:
        if hp.offset not in names:
            raise InvalidInputError(f"'offset' covariate not found: {hp.offset!r}")
        if method_params is not None:
            methods = {method_params.ite_method_dis, method_params.ite_method_inf}
            if not methods & OFFSET_METHODS:
                LOGGER.warning("Offset %r is only used by %s; ignoring it for %s.", hp.offset, sorted(OFFSET_METHODS), sorted(methods))
    return hp
