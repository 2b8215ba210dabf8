"""Shared utilities, error types and input contracts for the CRE pipeline."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import numpy as np
import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.impute import SimpleImputer
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder


class InvalidInputError(ValueError):
    """Malformed input or out-of-range parameter, raised at a component boundary."""


class EstimationFailure(RuntimeError):
    """An underlying estimation model failed to fit or predict."""


def dedupe_keep_order(items: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    out: list[Any] = []
    for item in items:
        if item not in seen:
            out.append(item)
            seen.add(item)
    return out


def as_float_array(values: Any, *, name: str) -> np.ndarray:
    if isinstance(values, str) or values is None:
        raise InvalidInputError(f"'{name}' must be a numeric vector, got {type(values).__name__}.")
    try:
        arr = np.asarray(values, dtype=float)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"'{name}' must be a numeric vector.") from exc
    if arr.ndim == 2 and arr.shape[1] == 1:
        arr = arr[:, 0]
    if arr.ndim != 1:
        raise InvalidInputError(f"'{name}' must be one-dimensional, got shape {arr.shape}.")
    if arr.size == 0:
        raise InvalidInputError(f"'{name}' is empty.")
    if not np.isfinite(arr).all():
        raise InvalidInputError(f"'{name}' contains missing or non-finite values.")
    return arr


def as_treatment_array(values: Any, *, name: str = "z") -> np.ndarray:
    arr = as_float_array(values, name=name)
    if not np.isin(arr, [0.0, 1.0]).all():
        raise InvalidInputError(f"'{name}' must be a binary 0/1 treatment vector.")
    return arr.astype(int)


def check_covariates(x: Any, *, name: str = "X") -> pd.DataFrame:
    if not isinstance(x, pd.DataFrame):
        raise InvalidInputError(f"'{name}' must be a pandas DataFrame with named columns, got {type(x).__name__}.")
    if x.shape[1] == 0:
        raise InvalidInputError(f"'{name}' has no columns.")
    if x.columns.duplicated().any():
        dupes = sorted({str(c) for c in x.columns[x.columns.duplicated()]})
        raise InvalidInputError(f"'{name}' has duplicated column names: {dupes}")
    return x


def check_same_length(**arrays: Any) -> int:
    lengths = {name: len(values) for name, values in arrays.items() if values is not None}
    if len(set(lengths.values())) > 1:
        raise InvalidInputError(f"Row counts do not match across inputs: {lengths}")
    return next(iter(lengths.values()))


def prepare_covariates(x: pd.DataFrame) -> pd.DataFrame:
    """Return an all-numeric copy of ``x``.

    Boolean columns become 0/1 and categorical/object columns are one-hot
    encoded as ``<column>_<level>`` indicators, so every rule condition can be
    expressed as a numeric threshold.
    """
    x = check_covariates(x)
    out = x.copy()
    out.columns = [str(c) for c in out.columns]

    bool_cols = [c for c in out.columns if pd.api.types.is_bool_dtype(out[c])]
    for col in bool_cols:
        out[col] = out[col].astype(int)

    cat_cols = [c for c in out.columns if not pd.api.types.is_numeric_dtype(out[c])]
    if cat_cols:
        out = pd.get_dummies(out, columns=cat_cols, prefix_sep="_", dtype=int)
    if out.columns.duplicated().any():
        raise InvalidInputError("One-hot encoding produced duplicated column names; rename the covariates.")
    return out


def make_preprocessor(x_train: pd.DataFrame) -> ColumnTransformer:
    num_cols = x_train.select_dtypes(include=[np.number, "boolean"]).columns.tolist()
    cat_cols = [c for c in x_train.columns if c not in num_cols]

    transformers: list[tuple[str, object, list[str]]] = []
    if num_cols:
        transformers.append(("num", Pipeline([("imputer", SimpleImputer(strategy="median"))]), num_cols))
    if cat_cols:
        transformers.append(
            (
                "cat",
                Pipeline(
                    [
                        ("imputer", SimpleImputer(strategy="most_frequent")),
                        ("onehot", OneHotEncoder(handle_unknown="ignore", sparse_output=False)),
                    ]
                ),
                cat_cols,
            )
        )
    if not transformers:
        raise InvalidInputError("No valid numeric/categorical columns for preprocessing.")
    return ColumnTransformer(transformers=transformers, remainder="drop")
