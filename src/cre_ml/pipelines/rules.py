"""Decision-rule representation and the rule indicator matrix builder.

A rule is a conjunction of ``feature <= threshold`` / ``feature > threshold``
conditions. The condition tuple is the canonical form used for equality,
deduplication and evaluation; ``Rule.expression`` only renders it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd

from cre_ml.pipelines.common import InvalidInputError, check_covariates, dedupe_keep_order

OPERATORS = ("<=", ">")
COND_RE = re.compile(r"^(?P<feature>.+?)\s*(?P<op><=|>)\s*(?P<threshold>[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)$")
SPLIT_RE = re.compile(r"\s*&\s*|\s+AND\s+")


@dataclass(frozen=True)
class Condition:
    feature: str
    op: str
    threshold: float

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise InvalidInputError(f"Unsupported rule operator '{self.op}'; expected one of {OPERATORS}.")
        object.__setattr__(self, "threshold", float(self.threshold))
        if not np.isfinite(self.threshold):
            raise InvalidInputError(f"Rule threshold for '{self.feature}' must be finite.")

    def to_text(self) -> str:
        return f"{self.feature}{self.op}{self.threshold!r}"

    def evaluate(self, values: pd.Series) -> np.ndarray:
        arr = values.to_numpy(dtype=float)
        with np.errstate(invalid="ignore"):
            if self.op == "<=":
                return arr <= self.threshold
            return arr > self.threshold


@dataclass(frozen=True)
class Rule:
    conditions: tuple[Condition, ...]

    def __post_init__(self) -> None:
        if not self.conditions:
            raise InvalidInputError("A rule needs at least one condition.")

    @classmethod
    def from_conditions(cls, conditions: Iterable[Condition | tuple[str, str, float]]) -> Rule:
        # Tightest bound per (feature, op): min for "<=", max for ">".
        bounds: dict[tuple[str, str], float] = {}
        for cond in conditions:
            if not isinstance(cond, Condition):
                feature, op, threshold = cond
                cond = Condition(str(feature), str(op), float(threshold))
            key = (cond.feature, cond.op)
            if key not in bounds:
                bounds[key] = cond.threshold
            elif cond.op == "<=":
                bounds[key] = min(bounds[key], cond.threshold)
            else:
                bounds[key] = max(bounds[key], cond.threshold)
        ordered = sorted(bounds.items(), key=lambda kv: (kv[0][0], OPERATORS.index(kv[0][1])))
        return cls(tuple(Condition(feature, op, thr) for (feature, op), thr in ordered))

    @classmethod
    def parse(cls, text: str) -> Rule:
        parts = [p.strip() for p in SPLIT_RE.split(str(text).strip()) if p.strip()]
        conditions: list[Condition] = []
        for part in parts:
            m = COND_RE.match(part)
            if not m:
                raise InvalidInputError(f"Unsupported rule condition: '{part}'")
            conditions.append(Condition(m.group("feature").strip(), m.group("op"), float(m.group("threshold"))))
        return cls.from_conditions(conditions)

    @property
    def expression(self) -> str:
        return " & ".join(c.to_text() for c in self.conditions)

    @property
    def length(self) -> int:
        return len(self.conditions)

    @property
    def features(self) -> list[str]:
        return dedupe_keep_order(c.feature for c in self.conditions)

    def mask(self, x: pd.DataFrame) -> np.ndarray:
        out = np.ones(len(x), dtype=bool)
        for cond in self.conditions:
            out &= cond.evaluate(x[cond.feature])
        return out

    def __str__(self) -> str:
        return self.expression


def dedupe_rules(rules: Iterable[Rule]) -> list[Rule]:
    return dedupe_keep_order(rules)


def check_rule_covariates(x: pd.DataFrame, rules: Sequence[Rule]) -> None:
    known = set(x.columns)
    for rule in rules:
        if not isinstance(rule, Rule):
            raise InvalidInputError(f"Expected Rule objects, got {type(rule).__name__}.")
        missing = [f for f in rule.features if f not in known]
        if missing:
            raise InvalidInputError(f"Rule '{rule.expression}' references unknown covariates: {missing}")
        non_numeric = [f for f in rule.features if not pd.api.types.is_numeric_dtype(x[f])]
        if non_numeric:
            raise InvalidInputError(f"Rule '{rule.expression}' references non-numeric covariates: {non_numeric}")


def generate_rules_matrix(x: pd.DataFrame, rules: Sequence[Rule]) -> pd.DataFrame:
    x = check_covariates(x)
    rules = list(rules)
    check_rule_covariates(x, rules)
    columns = {rule.expression: rule.mask(x).astype(np.int64) for rule in rules}
    if len(columns) != len(rules):
        raise InvalidInputError("Rule expressions must be distinct to build an indicator matrix.")
    return pd.DataFrame(columns, index=x.index, columns=[rule.expression for rule in rules])
