"""Honest splitting into disjoint discovery and inference subsamples."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split

from cre_ml.pipelines.common import (
    InvalidInputError,
    as_float_array,
    as_treatment_array,
    check_covariates,
    check_same_length,
)


@dataclass(frozen=True)
class Subsample:
    y: np.ndarray
    z: np.ndarray
    x: pd.DataFrame
    ite: np.ndarray | None
    index: np.ndarray

    def __len__(self) -> int:
        return int(len(self.index))


def honest_splitting(
    y: Any,
    z: Any,
    x: pd.DataFrame,
    ratio_dis: float,
    ite: Any = None,
    *,
    seed: int = 2021,
) -> tuple[Subsample, Subsample]:
    if not 0.0 < float(ratio_dis) < 1.0:
        raise InvalidInputError(f"'ratio_dis' must be in (0, 1), got {ratio_dis}.")
    yv = as_float_array(y, name="y")
    zv = as_treatment_array(z, name="z")
    xv = check_covariates(x)
    itev = None if ite is None else as_float_array(ite, name="ite")
    n = check_same_length(y=yv, z=zv, X=xv, ite=itev)

    positions = np.arange(n, dtype=int)
    try:
        dis_idx, inf_idx = train_test_split(
            positions,
            train_size=float(ratio_dis),
            shuffle=True,
            random_state=seed,
        )
    except ValueError as exc:
        raise InvalidInputError(f"Cannot split {n} rows with ratio_dis={ratio_dis}: {exc}") from exc
    dis_idx = np.sort(dis_idx)
    inf_idx = np.sort(inf_idx)

    def take(idx: np.ndarray) -> Subsample:
        return Subsample(
            y=yv[idx],
            z=zv[idx],
            x=xv.iloc[idx].reset_index(drop=True),
            ite=None if itev is None else itev[idx],
            index=idx,
        )

    return take(dis_idx), take(inf_idx)
