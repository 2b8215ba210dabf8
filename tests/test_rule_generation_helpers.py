import numpy as np
import pandas as pd
import pytest
from sklearn.tree import DecisionTreeRegressor

from cre_ml.pipelines import rule_generation as rg
from cre_ml.pipelines.common import InvalidInputError
from cre_ml.pipelines.rules import Rule


def _binary_data(n: int = 300, p: int = 6, seed: int = 5) -> tuple[pd.DataFrame, np.ndarray]:
    rng = np.random.default_rng(seed)
    x = pd.DataFrame(rng.integers(0, 2, size=(n, p)), columns=[f"x{j + 1}" for j in range(p)])
    ite = 2.0 * ((x["x1"] > 0.5) & (x["x2"] <= 0.5)).to_numpy(dtype=float) + rng.normal(0.0, 0.1, size=n)
    return x, ite


def test_tree_path_rules_emits_every_node_up_to_depth() -> None:
    x = pd.DataFrame({"a": [0.0, 0.0, 1.0, 1.0] * 10, "b": [0.0, 1.0, 0.0, 1.0] * 10})
    y = x["a"].to_numpy() * 2.0 + x["b"].to_numpy()
    tree = DecisionTreeRegressor(max_depth=2, random_state=0).fit(x, y)

    shallow = rg.tree_path_rules(tree, ["a", "b"], max_depth=1)
    deep = rg.tree_path_rules(tree, ["a", "b"], max_depth=2)

    assert [r.expression for r in shallow] == ["a<=0.5", "a>0.5"]
    assert len(deep) == 6
    assert Rule.parse("a>0.5 & b<=0.5") in deep


def test_generate_rules_returns_bounded_rules_over_known_covariates() -> None:
    x, ite = _binary_data()
    rules = rg.generate_rules(x, ite, ntrees_rf=10, ntrees_gbm=10, node_size=10, max_depth=3, seed=1)

    assert rules
    assert len(rules) == len(set(rules))
    assert all(1 <= r.length <= 3 for r in rules)
    assert {f for r in rules for f in r.features} <= set(x.columns)
    assert Rule.parse("x1>0.5 & x2<=0.5") in rules


def test_generate_rules_is_reproducible_for_a_seed() -> None:
    x, ite = _binary_data()
    a = rg.generate_rules(x, ite, ntrees_rf=5, ntrees_gbm=5, seed=9)
    b = rg.generate_rules(x, ite, ntrees_rf=5, ntrees_gbm=5, seed=9)
    assert a == b


def test_generate_rules_restricts_to_intervention_vars() -> None:
    x, ite = _binary_data()
    rules = rg.generate_rules(x, ite, ["x2", "x3"], ntrees_rf=5, ntrees_gbm=5, seed=2)
    assert rules
    assert {f for r in rules for f in r.features} <= {"x2", "x3"}


def test_generate_rules_without_trees_is_empty() -> None:
    x, ite = _binary_data(n=50)
    assert rg.generate_rules(x, ite, ntrees_rf=0, ntrees_gbm=0) == []


def test_generate_rules_without_replacement_subsamples() -> None:
    x, ite = _binary_data()
    rules = rg.generate_rules(x, ite, ntrees_rf=5, ntrees_gbm=0, replace=False, seed=4)
    assert rules


def test_generate_rules_rejects_invalid_inputs() -> None:
    x, ite = _binary_data(n=50)
    with pytest.raises(InvalidInputError):
        rg.generate_rules(x, ite, node_size=0)
    with pytest.raises(InvalidInputError):
        rg.generate_rules(x, ite[:10])
    with pytest.raises(InvalidInputError):
        rg.generate_rules(x, ite, ["x99"])
    with pytest.raises(InvalidInputError):
        rg.generate_rules(x.assign(x1=["a"] * len(x)), ite)
