import numpy as np
import pandas as pd
import pytest

from cre_ml.pipelines import rule_filters as rf
from cre_ml.pipelines.common import InvalidInputError
from cre_ml.pipelines.rules import Rule, generate_rules_matrix


def _grid() -> tuple[pd.DataFrame, np.ndarray]:
    x = pd.DataFrame({"x1": [0, 1] * 50, "x2": [0, 0, 1, 1] * 25, "x3": list(range(100))})
    ite = 2.0 * x["x1"].to_numpy(dtype=float)
    return x, ite


def test_prune_rule_drops_irrelevant_condition() -> None:
    x, ite = _grid()
    out = rf.prune_rule(Rule.parse("x1>0.5 & x2<=0.5"), x, ite, t_decay=0.025)
    assert out == Rule.parse("x1>0.5")


def test_filter_irrelevant_rules_prunes_and_dedupes() -> None:
    x, ite = _grid()
    rules = [Rule.parse("x1>0.5 & x2<=0.5"), Rule.parse("x1>0.5 & x2>0.5"), Rule.parse("x1<=0.5")]
    out = rf.filter_irrelevant_rules(rules, x, ite, t_decay=0.025)
    assert out == [Rule.parse("x1>0.5"), Rule.parse("x1<=0.5")]


def test_filter_irrelevant_rules_zero_decay_is_identity() -> None:
    x, ite = _grid()
    rules = [Rule.parse("x1>0.5 & x2<=0.5"), Rule.parse("x3<=40.5")]
    assert rf.filter_irrelevant_rules(rules, x, ite, t_decay=0.0) == rules
    assert rf.filter_irrelevant_rules([], x, ite, t_decay=0.1) == []
    with pytest.raises(InvalidInputError):
        rf.filter_irrelevant_rules(rules, x, ite, t_decay=-1.0)


def test_rule_relevance_scores_informative_rule_highest() -> None:
    x, ite = _grid()
    rules = [Rule.parse("x1>0.5"), Rule.parse("x2>0.5")]
    scores = rf.rule_relevance(rules, x, ite)
    assert scores["x1>0.5"] == pytest.approx(1.0)
    assert scores["x2>0.5"] == pytest.approx(0.0)


def test_filter_extreme_rules_drops_rare_and_constant_columns() -> None:
    rules = [Rule.parse("a>0.5"), Rule.parse("b>0.5"), Rule.parse("c>0.5"), Rule.parse("d>0.5")]
    matrix = pd.DataFrame(
        {
            "a>0.5": [0] * 200,
            "b>0.5": [1] * 200,
            "c>0.5": [0, 1] * 100,
            "d>0.5": [1] + [0] * 199,
        }
    )
    out_matrix, out_rules = rf.filter_extreme_rules(matrix, rules, t_ext=0.01)
    assert out_rules == [rules[2]]
    assert list(out_matrix.columns) == ["c>0.5"]

    _, permissive = rf.filter_extreme_rules(matrix, rules, t_ext=0.0)
    assert permissive == [rules[2], rules[3]]
    with pytest.raises(InvalidInputError):
        rf.filter_extreme_rules(matrix, rules, t_ext=0.5)


def test_filter_correlated_rules_drops_exactly_one_of_a_perfect_pair() -> None:
    rules = [Rule.parse("a>0.5"), Rule.parse("b>0.5"), Rule.parse("c>0.5")]
    matrix = pd.DataFrame(
        {
            "a>0.5": [0, 1, 0, 1, 1, 0],
            "b>0.5": [0, 1, 0, 1, 1, 0],
            "c>0.5": [1, 1, 0, 0, 1, 0],
        }
    )
    _, kept = rf.filter_correlated_rules(matrix, rules, t_corr=0.9)
    assert kept == [rules[0], rules[2]]

    relevance = pd.Series({"a>0.5": 0.1, "b>0.5": 0.8, "c>0.5": 0.3})
    kept_matrix, kept = rf.filter_correlated_rules(matrix, rules, t_corr=0.9, relevance=relevance)
    assert kept == [rules[1], rules[2]]
    assert list(kept_matrix.columns) == ["b>0.5", "c>0.5"]


def test_filter_correlated_rules_zero_threshold_keeps_first_generated() -> None:
    rules = [Rule.parse("a>0.5"), Rule.parse("b>0.5"), Rule.parse("c>0.5")]
    matrix = pd.DataFrame(
        {
            "a>0.5": [0, 1, 0, 1, 1, 0],
            "b>0.5": [0, 1, 0, 1, 1, 0],
            "c>0.5": [1, 1, 0, 0, 1, 0],
        }
    )
    kept_matrix, kept = rf.filter_correlated_rules(matrix, rules, t_corr=0.0)
    assert kept == [rules[0]]
    assert list(kept_matrix.columns) == ["a>0.5"]


def test_filter_correlated_rules_zero_threshold_keeps_one_per_group() -> None:
    rules = [Rule.parse("a>0.5"), Rule.parse("b>0.5"), Rule.parse("d>0.5"), Rule.parse("e>0.5")]
    matrix = pd.DataFrame(
        {
            "a>0.5": [0, 0, 1, 1, 0, 0, 1, 1],
            "b>0.5": [0, 0, 1, 1, 0, 0, 1, 1],
            "d>0.5": [0, 1, 0, 1, 0, 1, 0, 1],
            "e>0.5": [0, 1, 0, 1, 0, 1, 0, 1],
        }
    )
    _, kept = rf.filter_correlated_rules(matrix, rules, t_corr=0.0)
    assert kept == [rules[0], rules[2]]

    relevance = pd.Series({"a>0.5": 0.1, "b>0.5": 0.9, "d>0.5": 0.1, "e>0.5": 0.8})
    _, kept = rf.filter_correlated_rules(matrix, rules, t_corr=0.0, relevance=relevance)
    assert kept == [rules[1], rules[3]]


def test_filter_correlated_rules_infinite_threshold_keeps_all() -> None:
    rules = [Rule.parse("a>0.5"), Rule.parse("b>0.5")]
    matrix = pd.DataFrame({"a>0.5": [0, 1, 1, 0], "b>0.5": [0, 1, 1, 0]})
    _, kept = rf.filter_correlated_rules(matrix, rules, t_corr=float("inf"))
    assert kept == rules
    _, kept_default = rf.filter_correlated_rules(matrix, rules, t_corr=1.0)
    assert kept_default == rules


def test_permissive_filters_round_trip_candidate_set() -> None:
    x, ite = _grid()
    rules = [Rule.parse("x1>0.5 & x2<=0.5"), Rule.parse("x2>0.5"), Rule.parse("x3<=30.5")]

    kept = rf.filter_irrelevant_rules(rules, x, ite, t_decay=0.0)
    matrix = generate_rules_matrix(x, kept)
    matrix, kept = rf.filter_extreme_rules(matrix, kept, t_ext=0.0)
    matrix, kept = rf.filter_correlated_rules(matrix, kept, t_corr=float("inf"))

    assert kept == rules
    assert list(matrix.columns) == [r.expression for r in rules]


def test_check_rules_matrix_validates_shape() -> None:
    rules = [Rule.parse("a>0.5")]
    out = rf.check_rules_matrix(np.array([[0], [1]]), rules)
    assert list(out.columns) == ["a>0.5"]
    with pytest.raises(InvalidInputError):
        rf.check_rules_matrix(np.array([[0, 1]]), rules)
    with pytest.raises(InvalidInputError):
        rf.check_rules_matrix([[0], [1]], rules)
