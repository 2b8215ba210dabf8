import numpy as np
import pandas as pd
import pytest

from cre_ml.pipelines import cre as cr
from cre_ml.pipelines.common import InvalidInputError
from cre_ml.pipelines.cre_dataset import generate_cre_dataset, ground_truth_rules
from cre_ml.pipelines.honest_splitting import honest_splitting


def _noisy_synthetic(n: int = 2000, seed: int = 2021) -> tuple[np.ndarray, np.ndarray, pd.DataFrame, np.ndarray]:
    data = generate_cre_dataset(n=n, rho=0.0, n_rules=2, p=10, effect_size=2.0, seed=seed)
    rng = np.random.default_rng(seed + 1)
    ite = data.ite + rng.normal(0.0, 0.5, size=n)
    return data.y, data.z, data.x, ite


def test_cre_recovers_ground_truth_subgroups() -> None:
    y, z, x, ite = _noisy_synthetic()
    result = cr.cre(y, z, x, hyper_params={"penalty_rl": 0.0}, ite=ite, seed=2021)

    assert list(result.M) == list(cr.STAGE_COUNTS)
    counts = list(result.M.values())
    assert all(a >= b for a, b in zip(counts, counts[1:]))
    assert len(result.CATE) == len(result.rules) + 1
    assert result.CATE.loc[0, "Rule"] == "(Intercept)"

    estimates = result.CATE.set_index("Rule")["Estimate"]
    for truth, sign in zip(ground_truth_rules(2), (1.0, -1.0)):
        matches = [r for r in result.rules if np.array_equal(r.mask(x), truth.mask(x))]
        assert matches, f"{truth.expression} not recovered; got {[r.expression for r in result.rules]}"
        assert float(estimates[matches[0].expression]) == pytest.approx(2.0 * sign, abs=0.5)

    assert result.ite_pred.shape == (len(y),)
    assert np.allclose(cr.predict_ite(result, x), result.ite_pred)


def test_cre_without_rules_predicts_inference_mean() -> None:
    y, z, x, ite = _noisy_synthetic(n=400)
    result = cr.cre(y, z, x, hyper_params={"ntrees_rf": 0, "ntrees_gbm": 0}, ite=ite, seed=5)

    _, inference = honest_splitting(y, z, x, 0.5, ite, seed=5)
    assert result.rules == []
    assert result.M["generated"] == 0
    assert len(result.CATE) == 1
    assert np.allclose(result.ite_pred, float(np.mean(inference.ite)))


def test_cre_estimates_ite_and_selects_on_inference_sample() -> None:
    data = generate_cre_dataset(n=600, n_rules=1, effect_size=3.0, seed=8)
    method_params = {
        "ite_method_dis": "tlearner",
        "or_method_dis": "linear",
        "ite_method_inf": "aipw",
        "ps_method_inf": "logistic",
        "or_method_inf": "linear",
        "selection_sample": "inference",
    }
    hyper_params = {"ntrees_rf": 5, "ntrees_gbm": 5, "stability_selection": False}
    result = cr.cre(data.y, data.z, data.x, method_params, hyper_params, seed=8)

    assert result.method_params.selection_sample == "inference"
    assert result.hyper_params.stability_selection is False
    assert result.selection_table is not None
    assert np.isfinite(result.ite_pred).all()
    assert result.M["select_significant"] == len(result.rules)


def test_cre_handles_categorical_intervention_variable() -> None:
    y, z, x, ite = _noisy_synthetic(n=400)
    x = x.assign(region=np.where(x["x3"] > 0.5, "north", "south"))
    result = cr.cre(
        y,
        z,
        x,
        hyper_params={"intervention_vars": ["x1", "x2", "region"], "ntrees_rf": 5, "ntrees_gbm": 5},
        ite=ite,
        seed=3,
    )
    allowed = {"x1", "x2", "region_north", "region_south"}
    assert {f for r in result.rules for f in r.features} <= allowed


def test_cre_rejects_invalid_inputs() -> None:
    y, z, x, ite = _noisy_synthetic(n=100)
    with pytest.raises(InvalidInputError):
        cr.cre(y, z, x.to_numpy(), ite=ite)
    with pytest.raises(InvalidInputError):
        cr.cre(y[:50], z, x, ite=ite)
    with pytest.raises(InvalidInputError):
        cr.cre(y, z, x, hyper_params={"intervention_vars": ["x99"]}, ite=ite)
    with pytest.raises(InvalidInputError):
        cr.cre(y, z, x, method_params={"ratio_dis": 0.0}, ite=ite)


def test_predict_ite_on_rows_missing_a_category_level() -> None:
    rng = np.random.default_rng(11)
    n = 800
    x = pd.DataFrame({"x1": rng.binomial(1, 0.5, size=n), "x2": rng.binomial(1, 0.5, size=n)})
    x["region"] = np.where(rng.random(n) > 0.5, "north", "south")
    ite = 2.0 * (x["region"] == "south").to_numpy(dtype=float) + rng.normal(0.0, 0.5, size=n)
    y = rng.normal(size=n)
    z = rng.binomial(1, 0.5, size=n)

    result = cr.cre(
        y,
        z,
        x,
        hyper_params={"intervention_vars": ["region", "x2"], "penalty_rl": 0.0, "ntrees_rf": 5, "ntrees_gbm": 5},
        ite=ite,
        seed=11,
    )
    assert any(f.startswith("region_") for r in result.rules for f in r.features)
    assert result.encoded_levels == {"region": ["region_north", "region_south"]}

    north = x[x["region"] == "north"].head(5)
    out = cr.predict_ite(result, north)
    assert out.shape == (5,)
    assert np.isfinite(out).all()
    assert np.allclose(out, result.ite_pred[north.index.to_numpy()])

    with pytest.raises(InvalidInputError):
        cr.predict_ite(result, north.drop(columns=["region"]))
