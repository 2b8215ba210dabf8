import numpy as np
import pytest

from cre_ml.pipelines import cre_dataset as cd
from cre_ml.pipelines.common import InvalidInputError
from cre_ml.pipelines.rules import Rule


def test_ground_truth_rules_are_nested_prefixes() -> None:
    two = cd.ground_truth_rules(2)
    four = cd.ground_truth_rules(4)
    assert [r.expression for r in two] == ["x1>0.5 & x2<=0.5", "x5>0.5 & x6<=0.5"]
    assert four[:2] == two
    assert four[3] == Rule.parse("x5<=0.5 & x7>0.5 & x8<=0.5")
    with pytest.raises(InvalidInputError):
        cd.ground_truth_rules(5)


def test_generate_binary_dataset_shapes_and_effects() -> None:
    data = cd.generate_cre_dataset(n=500, n_rules=2, p=10, effect_size=2.0, seed=1)

    assert data.x.shape == (500, 10)
    assert list(data.x.columns) == [f"x{j}" for j in range(1, 11)]
    assert set(np.unique(data.x.to_numpy())) <= {0, 1}
    assert set(np.unique(data.z)) == {0, 1}
    assert set(np.unique(data.ite)) <= {-2.0, 0.0, 2.0}

    r1 = cd.ground_truth_rules(1)[0].mask(data.x)
    r2 = cd.ground_truth_rules(2)[1].mask(data.x)
    assert np.allclose(data.ite, 2.0 * r1 - 2.0 * r2)


def test_generate_continuous_confounded_dataset() -> None:
    data = cd.generate_cre_dataset(
        n=300,
        rho=0.3,
        n_rules=4,
        p=12,
        binary_covariates=False,
        confounding="nonlin",
        seed=2,
    )
    values = data.x.to_numpy()
    assert values.min() >= 0.0 and values.max() <= 1.0
    assert len(np.unique(values[:, 0])) > 2
    assert np.isfinite(data.y).all()


def test_generate_binary_outcome_reports_probability_effects() -> None:
    data = cd.generate_cre_dataset(n=300, binary_outcome=True, confounding="lin", seed=3)
    assert set(np.unique(data.y)) <= {0.0, 1.0}
    assert np.all(np.abs(data.ite) < 1.0)


def test_generate_rejects_bad_arguments() -> None:
    with pytest.raises(InvalidInputError):
        cd.generate_cre_dataset(p=5)
    with pytest.raises(InvalidInputError):
        cd.generate_cre_dataset(confounding="strong")
    with pytest.raises(InvalidInputError):
        cd.generate_cre_dataset(rho=1.0)


def test_extract_effect_modifiers_follows_covariate_order() -> None:
    names = [f"x{j}" for j in range(1, 11)]
    out = cd.extract_effect_modifiers(["x5>0.5 & x1<=0.5", Rule.parse("x2>0.5")], names)
    assert out == ["x1", "x2", "x5"]


def test_evaluate_ignores_condition_order() -> None:
    truth = ["x1>0.5 & x2<=0.5", "x5>0.5 & x6<=0.5"]
    pred = ["x2<=0.5 & x1>0.5", "x4>0.5"]
    out = cd.evaluate(truth, pred)
    assert out["IoU"] == pytest.approx(1.0 / 3.0)
    assert out["recall"] == pytest.approx(0.5)
    assert out["precision"] == pytest.approx(0.5)

    modifiers = cd.evaluate(["x1", "x2"], ["x1"])
    assert modifiers == {"IoU": 0.5, "recall": 0.5, "precision": 1.0}
    assert cd.evaluate(truth, [])["precision"] == 0.0
