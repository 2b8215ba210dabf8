"""Individual treatment effect (ITE) estimators.

Each method is one ``ITEEstimator`` subclass with the same contract:
``estimate(y, z, x)`` returns one effect estimate per input row. The
orchestrator picks a class by name through ``build_ite_estimator``; the
pipeline itself never branches on the method.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor
from sklearn.linear_model import LinearRegression, LogisticRegression, PoissonRegressor
from sklearn.model_selection import StratifiedKFold
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler

from cre_ml.pipelines.common import (
    EstimationFailure,
    InvalidInputError,
    as_float_array,
    as_treatment_array,
    check_covariates,
    check_same_length,
    make_preprocessor,
)
from cre_ml.pipelines.params import OR_METHODS, PS_METHODS

LOGGER = logging.getLogger(__name__)


def build_propensity_model(method: str, random_state: int) -> Any:
    if method == "logistic":
        return LogisticRegression(max_iter=3000, solver="lbfgs")
    if method == "random_forest":
        return RandomForestClassifier(
            n_estimators=200,
            min_samples_leaf=5,
            random_state=random_state,
            n_jobs=1,
        )
    if method == "xgboost":
        from xgboost import XGBClassifier

        return XGBClassifier(
            n_estimators=200,
            learning_rate=0.05,
            max_depth=3,
            subsample=0.9,
            colsample_bytree=0.9,
            eval_metric="logloss",
            random_state=random_state,
            n_jobs=1,
        )
    raise InvalidInputError(f"Unsupported propensity method: {method!r}. Available: {list(PS_METHODS)}")


def build_outcome_model(method: str, random_state: int) -> Any:
    if method == "linear":
        return LinearRegression()
    if method == "random_forest":
        return RandomForestRegressor(
            n_estimators=200,
            min_samples_leaf=5,
            random_state=random_state,
            n_jobs=1,
        )
    if method == "xgboost":
        from xgboost import XGBRegressor

        return XGBRegressor(
            n_estimators=300,
            learning_rate=0.05,
            max_depth=4,
            subsample=0.9,
            colsample_bytree=0.9,
            objective="reg:squarederror",
            random_state=random_state,
            n_jobs=1,
        )
    if method == "catboost":
        from catboost import CatBoostRegressor

        return CatBoostRegressor(
            iterations=300,
            learning_rate=0.05,
            depth=4,
            loss_function="RMSE",
            random_seed=random_state,
            verbose=False,
            allow_writing_files=False,
        )
    raise InvalidInputError(f"Unsupported outcome method: {method!r}. Available: {list(OR_METHODS)}")


def make_model_pipeline(x_train: pd.DataFrame, model: Any) -> Pipeline:
    return Pipeline([("preprocess", make_preprocessor(x_train)), ("model", model)])


def build_cv_splits(z: np.ndarray, *, n_folds: int, seed: int) -> list[tuple[np.ndarray, np.ndarray]]:
    zv = np.asarray(z, dtype=int)
    min_arm = int(min(np.sum(zv == 1), np.sum(zv == 0)))
    if min_arm < 2:
        raise ValueError("Both treatment arms need at least 2 rows for cross-fitting.")
    k = max(2, min(int(n_folds), min_arm))
    cv = StratifiedKFold(n_splits=k, shuffle=True, random_state=seed)
    idx = np.arange(len(zv), dtype=int)
    return list(cv.split(idx, zv))


def crossfit_propensity(
    x: pd.DataFrame,
    z: np.ndarray,
    *,
    ps_method: str,
    n_folds: int,
    seed: int,
) -> np.ndarray:
    e_hat = np.full(len(z), np.nan, dtype=float)
    for tr_idx, te_idx in build_cv_splits(z, n_folds=n_folds, seed=seed):
        xtr = x.iloc[tr_idx]
        prop = make_model_pipeline(xtr, build_propensity_model(ps_method, seed + 11))
        prop.fit(xtr, z[tr_idx])
        e_hat[te_idx] = prop.predict_proba(x.iloc[te_idx])[:, 1]
    if np.isnan(e_hat).any():
        raise RuntimeError("Cross-fit propensity prediction produced NaNs.")
    return e_hat


def crossfit_outcomes(
    x: pd.DataFrame,
    y: np.ndarray,
    z: np.ndarray,
    *,
    or_method: str,
    n_folds: int,
    seed: int,
) -> tuple[np.ndarray, np.ndarray]:
    n = len(y)
    m1_hat = np.full(n, np.nan, dtype=float)
    m0_hat = np.full(n, np.nan, dtype=float)
    for tr_idx, te_idx in build_cv_splits(z, n_folds=n_folds, seed=seed):
        arm1_idx = tr_idx[z[tr_idx] == 1]
        arm0_idx = tr_idx[z[tr_idx] == 0]
        xte = x.iloc[te_idx]
        m1_hat[te_idx] = fit_arm_model(x.iloc[arm1_idx], y[arm1_idx], or_method=or_method, seed=seed + 17).predict(xte)
        m0_hat[te_idx] = fit_arm_model(x.iloc[arm0_idx], y[arm0_idx], or_method=or_method, seed=seed + 29).predict(xte)
    if np.isnan(m1_hat).any() or np.isnan(m0_hat).any():
        raise RuntimeError("Cross-fit outcome prediction produced NaNs.")
    return m1_hat, m0_hat


def fit_arm_model(x: pd.DataFrame, y: np.ndarray, *, or_method: str, seed: int) -> Pipeline:
    if len(y) < 2:
        raise ValueError("Too few rows in a treatment arm for outcome modeling.")
    reg = make_model_pipeline(x, build_outcome_model(or_method, seed))
    reg.fit(x, y)
    return reg


def aipw_from_nuisance(
    y: np.ndarray,
    z: np.ndarray,
    e_hat: np.ndarray,
    m1_hat: np.ndarray,
    m0_hat: np.ndarray,
    *,
    propensity_clip: float,
) -> np.ndarray:
    e = np.clip(np.asarray(e_hat, dtype=float), propensity_clip, 1.0 - propensity_clip)
    zv = np.asarray(z, dtype=float)
    return m1_hat - m0_hat + (zv * (y - m1_hat) / e) - ((1.0 - zv) * (y - m0_hat) / (1.0 - e))


@dataclass
class ITEEstimator(ABC):
    ps_method: str = "xgboost"
    or_method: str = "xgboost"
    seed: int = 0
    n_folds: int = 3
    propensity_clip: float = 0.01
    offset: str | None = None

    name: ClassVar[str] = ""

    def estimate(self, y: Any, z: Any, x: pd.DataFrame) -> np.ndarray:
        yv = as_float_array(y, name="y")
        zv = as_treatment_array(z, name="z")
        xv = check_covariates(x).reset_index(drop=True)
        check_same_length(y=yv, z=zv, X=xv)
        if zv.min() == zv.max():
            raise InvalidInputError("'z' must contain both treated and control units to estimate ITE.")
        try:
            ite = np.asarray(self._estimate(yv, zv, xv), dtype=float)
        except InvalidInputError:
            raise
        except Exception as exc:
            raise EstimationFailure(f"ITE method '{self.name}' failed: {type(exc).__name__}: {exc}") from exc
        if ite.shape != yv.shape or not np.isfinite(ite).all():
            raise EstimationFailure(f"ITE method '{self.name}' returned {ite.shape} values or non-finite estimates.")
        LOGGER.debug("ITE method %s: n=%d mean=%.4f", self.name, len(ite), float(np.mean(ite)))
        return ite

    def features(self, x: pd.DataFrame) -> pd.DataFrame:
        if self.offset is not None and self.offset in x.columns and x.shape[1] > 1:
            return x.drop(columns=[self.offset])
        return x

    @abstractmethod
    def _estimate(self, y: np.ndarray, z: np.ndarray, x: pd.DataFrame) -> np.ndarray: ...


@dataclass
class AIPWEstimator(ITEEstimator):
    name: ClassVar[str] = "aipw"

    def _estimate(self, y: np.ndarray, z: np.ndarray, x: pd.DataFrame) -> np.ndarray:
        xf = self.features(x)
        e_hat = crossfit_propensity(xf, z, ps_method=self.ps_method, n_folds=self.n_folds, seed=self.seed)
        m1_hat, m0_hat = crossfit_outcomes(xf, y, z, or_method=self.or_method, n_folds=self.n_folds, seed=self.seed)
        return aipw_from_nuisance(y, z, e_hat, m1_hat, m0_hat, propensity_clip=self.propensity_clip)


@dataclass
class SIPWEstimator(ITEEstimator):
    name: ClassVar[str] = "sipw"

    def _estimate(self, y: np.ndarray, z: np.ndarray, x: pd.DataFrame) -> np.ndarray:
        xf = self.features(x)
        e_hat = crossfit_propensity(xf, z, ps_method=self.ps_method, n_folds=self.n_folds, seed=self.seed)
        e = np.clip(e_hat, self.propensity_clip, 1.0 - self.propensity_clip)
        w1 = z / e
        w0 = (1 - z) / (1.0 - e)
        w1 = w1 / np.mean(w1)
        w0 = w0 / np.mean(w0)
        return y * (w1 - w0)


@dataclass
class SLearnerEstimator(ITEEstimator):
    name: ClassVar[str] = "slearner"

    def _estimate(self, y: np.ndarray, z: np.ndarray, x: pd.DataFrame) -> np.ndarray:
        xf = self.features(x).copy()
        xf["__treatment__"] = z.astype(float)
        model = make_model_pipeline(xf, build_outcome_model(self.or_method, self.seed + 17))
        model.fit(xf, y)
        x1 = xf.assign(__treatment__=1.0)
        x0 = xf.assign(__treatment__=0.0)
        return model.predict(x1) - model.predict(x0)


@dataclass
class TLearnerEstimator(ITEEstimator):
    name: ClassVar[str] = "tlearner"

    def _estimate(self, y: np.ndarray, z: np.ndarray, x: pd.DataFrame) -> np.ndarray:
        xf = self.features(x)
        arm1 = z == 1
        reg1 = fit_arm_model(xf.loc[arm1], y[arm1], or_method=self.or_method, seed=self.seed + 17)
        reg0 = fit_arm_model(xf.loc[~arm1], y[~arm1], or_method=self.or_method, seed=self.seed + 29)
        return reg1.predict(xf) - reg0.predict(xf)


@dataclass
class XLearnerEstimator(ITEEstimator):
    name: ClassVar[str] = "xlearner"

    def _estimate(self, y: np.ndarray, z: np.ndarray, x: pd.DataFrame) -> np.ndarray:
        xf = self.features(x)
        arm1 = z == 1
        x1, y1 = xf.loc[arm1], y[arm1]
        x0, y0 = xf.loc[~arm1], y[~arm1]
        reg1 = fit_arm_model(x1, y1, or_method=self.or_method, seed=self.seed + 17)
        reg0 = fit_arm_model(x0, y0, or_method=self.or_method, seed=self.seed + 29)

        d1 = y1 - reg0.predict(x1)
        d0 = reg1.predict(x0) - y0
        tau1 = fit_arm_model(x1, d1, or_method=self.or_method, seed=self.seed + 31)
        tau0 = fit_arm_model(x0, d0, or_method=self.or_method, seed=self.seed + 37)

        e_hat = crossfit_propensity(xf, z, ps_method=self.ps_method, n_folds=self.n_folds, seed=self.seed)
        e = np.clip(e_hat, self.propensity_clip, 1.0 - self.propensity_clip)
        return e * tau0.predict(xf) + (1.0 - e) * tau1.predict(xf)


@dataclass
class TPoissonEstimator(ITEEstimator):
    """T-learner with one Poisson GLM per arm for count outcomes.

    When ``offset`` names a covariate, it is the exposure: each arm models the
    rate ``y / exposure`` weighted by exposure, and effects are reported on the
    count scale of each unit.
    """

    name: ClassVar[str] = "tpoisson"
    alpha: float = 1e-4

    def _estimate(self, y: np.ndarray, z: np.ndarray, x: pd.DataFrame) -> np.ndarray:
        if np.any(y < 0):
            raise InvalidInputError("'tpoisson' requires a non-negative count outcome.")
        if self.offset is not None:
            if self.offset not in x.columns:
                raise InvalidInputError(f"Offset covariate not found: {self.offset!r}")
            exposure = pd.to_numeric(x[self.offset], errors="coerce").to_numpy(dtype=float)
            if not np.all(np.isfinite(exposure) & (exposure > 0)):
                raise InvalidInputError(f"Offset covariate {self.offset!r} must be strictly positive.")
        else:
            exposure = np.ones(len(y), dtype=float)

        xf = self.features(x)
        rate = y / exposure
        preds: dict[int, np.ndarray] = {}
        for arm in (0, 1):
            mask = z == arm
            model = Pipeline(
                [
                    ("preprocess", make_preprocessor(xf.loc[mask])),
                    ("scale", StandardScaler()),
                    ("poisson", PoissonRegressor(alpha=self.alpha, max_iter=1000)),
                ]
            )
            model.fit(xf.loc[mask], rate[mask], poisson__sample_weight=exposure[mask])
            preds[arm] = model.predict(xf)
        return exposure * (preds[1] - preds[0])


ESTIMATORS: dict[str, type[ITEEstimator]] = {
    cls.name: cls
    for cls in (
        AIPWEstimator,
        SIPWEstimator,
        SLearnerEstimator,
        TLearnerEstimator,
        XLearnerEstimator,
        TPoissonEstimator,
    )
}


def build_ite_estimator(
    ite_method: str,
    *,
    ps_method: str = "xgboost",
    or_method: str = "xgboost",
    offset: str | None = None,
    seed: int = 0,
) -> ITEEstimator:
    cls = ESTIMATORS.get(ite_method)
    if cls is None:
        raise InvalidInputError(f"Unsupported ITE method: {ite_method!r}. Available: {sorted(ESTIMATORS)}")
    if ps_method not in PS_METHODS:
        raise InvalidInputError(f"Unsupported propensity method: {ps_method!r}. Available: {list(PS_METHODS)}")
    if or_method not in OR_METHODS:
        raise InvalidInputError(f"Unsupported outcome method: {or_method!r}. Available: {list(OR_METHODS)}")
    return cls(ps_method=ps_method, or_method=or_method, offset=offset, seed=seed)


def estimate_ite(
    y: Any,
    z: Any,
    x: pd.DataFrame,
    ite_method: str = "aipw",
    *,
    ps_method: str = "xgboost",
    or_method: str = "xgboost",
    offset: str | None = None,
    seed: int = 0,
) -> np.ndarray:
    estimator = build_ite_estimator(
        ite_method,
        ps_method=ps_method,
        or_method=or_method,
        offset=offset,
        seed=seed,
    )
    return estimator.estimate(y, z, x)
