"""Synthetic CRE benchmark data and rule-recovery metrics.

Covariates are equicorrelated latent normals (correlation ``rho``) mapped to
``[0, 1]``; with ``binary_covariates`` they are thresholded at 0.5. Treatment
effects are driven by up to four ground-truth rules with alternating signs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from scipy.special import expit
from scipy.stats import norm

from cre_ml.pipelines.common import InvalidInputError, dedupe_keep_order
from cre_ml.pipelines.rules import Rule, generate_rules_matrix

LOGGER = logging.getLogger(__name__)

GROUND_TRUTH_RULES = (
    "x1>0.5 & x2<=0.5",
    "x5>0.5 & x6<=0.5",
    "x4>0.5",
    "x5<=0.5 & x7>0.5 & x8<=0.5",
)
CONFOUNDING = ("no", "lin", "nonlin")
MIN_COVARIATES = 8


@dataclass(frozen=True)
class CreDataset:
    y: np.ndarray
    z: np.ndarray
    x: pd.DataFrame
    ite: np.ndarray


def ground_truth_rules(n_rules: int) -> list[Rule]:
    if isinstance(n_rules, bool) or not isinstance(n_rules, int) or not 1 <= n_rules <= len(GROUND_TRUTH_RULES):
        raise InvalidInputError(
            f"Synthetic dataset with {n_rules!r} rules is not available; choose 1..{len(GROUND_TRUTH_RULES)}."
        )
    return [Rule.parse(text) for text in GROUND_TRUTH_RULES[:n_rules]]


def _covariates(n: int, p: int, rho: float, binary: bool, rng: np.random.Generator) -> pd.DataFrame:
    cov = np.full((p, p), rho, dtype=float)
    np.fill_diagonal(cov, 1.0)
    latent = rng.multivariate_normal(np.zeros(p), cov, size=n, method="cholesky")
    values = norm.cdf(latent)
    if binary:
        values = (values > 0.5).astype(int)
    return pd.DataFrame(values, columns=[f"x{j + 1}" for j in range(p)])


def _baseline(x: pd.DataFrame, confounding: str) -> np.ndarray:
    if confounding == "no":
        return np.zeros(len(x), dtype=float)
    x1, x3, x4 = (x[c].to_numpy(dtype=float) for c in ("x1", "x3", "x4"))
    if confounding == "lin":
        return x1 + x3 + x4
    return 3.0 * np.cos(x1) + x3 * x4


def _propensity(x: pd.DataFrame, confounding: str) -> np.ndarray:
    if confounding == "no":
        return np.full(len(x), 0.5)
    logit = -1.0 + x["x1"].to_numpy(dtype=float) - x["x2"].to_numpy(dtype=float) + x["x3"].to_numpy(dtype=float)
    return expit(logit)


def generate_cre_dataset(
    n: int = 1000,
    rho: float = 0.0,
    n_rules: int = 2,
    p: int = 10,
    effect_size: float = 2.0,
    binary_covariates: bool = True,
    binary_outcome: bool = False,
    confounding: str = "no",
    *,
    seed: int = 2021,
) -> CreDataset:
    if isinstance(n, bool) or not isinstance(n, int) or n < 2:
        raise InvalidInputError(f"'n' must be an integer >= 2, got {n!r}.")
    if isinstance(p, bool) or not isinstance(p, int) or p < MIN_COVARIATES:
        raise InvalidInputError(f"'p' must be an integer >= {MIN_COVARIATES}, got {p!r}.")
    if not 0.0 <= rho < 1.0:
        raise InvalidInputError(f"'rho' must be in [0, 1), got {rho}.")
    if confounding not in CONFOUNDING:
        raise InvalidInputError(f"Unsupported 'confounding': {confounding!r}. Available: {list(CONFOUNDING)}")
    rules = ground_truth_rules(n_rules)

    rng = np.random.default_rng(seed)
    x = _covariates(n, p, float(rho), binary_covariates, rng)
    z = rng.binomial(1, _propensity(x, confounding)).astype(int)

    signs = np.where(np.arange(len(rules)) % 2 == 0, 1.0, -1.0)
    tau = generate_rules_matrix(x, rules).to_numpy(dtype=float) @ (signs * float(effect_size))
    base = _baseline(x, confounding)

    if binary_outcome:
        prob0 = expit(base - 0.5 * tau)
        prob1 = expit(base + 0.5 * tau)
        ite = prob1 - prob0
        y = rng.binomial(1, np.where(z == 1, prob1, prob0)).astype(float)
    else:
        ite = tau
        y = base + z * tau + rng.normal(0.0, 1.0, size=n)

    LOGGER.info(
        "Generated synthetic CRE dataset: n=%d p=%d rules=%d treated=%.3f",
        n,
        p,
        len(rules),
        float(z.mean()),
    )
    return CreDataset(y=np.asarray(y, dtype=float), z=z, x=x, ite=np.asarray(ite, dtype=float))


def extract_effect_modifiers(rules: Iterable[Rule | str], x_names: Sequence[str]) -> list[str]:
    used: set[str] = set()
    for rule in rules:
        if not isinstance(rule, Rule):
            rule = Rule.parse(rule)
        used.update(rule.features)
    return [str(name) for name in dedupe_keep_order(x_names) if str(name) in used]


def _normalize(item: Any) -> Any:
    if isinstance(item, Rule):
        return item
    text = str(item)
    if "<=" in text or ">" in text:
        return Rule.parse(text)
    return text


def evaluate(ground_truth: Iterable[Any], prediction: Iterable[Any]) -> dict[str, float]:
    """Set overlap between true and discovered rules (or effect modifiers).

    String rules are parsed first, so condition order and formatting do not
    matter.
    """
    truth = {_normalize(item) for item in ground_truth}
    pred = {_normalize(item) for item in prediction}
    inter = len(truth & pred)
    union = len(truth | pred)
    return {
        "IoU": inter / union if union else 1.0,
        "recall": inter / len(truth) if truth else 1.0,
        "precision": inter / len(pred) if pred else 0.0,
    }
