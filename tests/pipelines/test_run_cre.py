import json

import numpy as np
import pandas as pd

from cre_ml.pipelines import run_cre as rc
from cre_ml.pipelines.cre_dataset import generate_cre_dataset


def test_parse_name_list_strips_and_drops_empty() -> None:
    assert rc.parse_name_list(" x1, x2 ,,x3 ") == ["x1", "x2", "x3"]
    assert rc.parse_name_list("") is None
    assert rc.parse_name_list(None) is None


def test_parse_args_maps_flags_to_params() -> None:
    args = rc.parse_args(["--no-stability-selection", "--t-decay", "0", "--intervention-vars", "x1,x2"])
    hp = rc.hyper_params_from_args(args)
    mp = rc.method_params_from_args(args)
    assert hp.stability_selection is False
    assert hp.t_decay == 0.0
    assert hp.intervention_vars == ("x1", "x2")
    assert mp.ite_method_dis == "aipw"


def test_run_writes_artifacts_from_csv(tmp_path) -> None:
    data = generate_cre_dataset(n=600, n_rules=2, seed=4)
    rng = np.random.default_rng(4)
    frame = data.x.assign(y=data.y, z=data.z, tau=data.ite + rng.normal(0.0, 0.3, size=len(data.y)))
    csv_path = tmp_path / "obs.csv"
    frame.to_csv(csv_path, index=False)
    out_dir = tmp_path / "out"

    args = rc.parse_args(
        [
            "--data-path",
            str(csv_path),
            "--ite-col",
            "tau",
            "--out-dir",
            str(out_dir),
            "--ntrees-rf",
            "5",
            "--ntrees-gbm",
            "5",
            "--seed",
            "4",
        ]
    )
    out = rc.run(args)

    for name in (
        "cate_summary.csv",
        "ite_pred.csv",
        "rule_counts.json",
        "cate_plot.png",
        "cre_result.joblib",
        "cre_runlog.txt",
    ):
        assert (out_dir / name).exists(), name

    payload = json.loads((out_dir / "rule_counts.json").read_text(encoding="utf-8"))
    assert set(payload["M"]) == {
        "generated",
        "filter_irrelevant",
        "filter_extreme",
        "filter_correlated",
        "select_lasso",
        "select_significant",
    }
    assert payload["config"]["n_covariates"] == 10
    assert len(pd.read_csv(out_dir / "ite_pred.csv")) == 600
    assert out["metrics"] is None


def test_run_synthetic_reports_rule_recovery(tmp_path) -> None:
    args = rc.parse_args(
        [
            "--synthetic",
            "--synthetic-n",
            "400",
            "--out-dir",
            str(tmp_path),
            "--ite-method-dis",
            "tlearner",
            "--or-method-dis",
            "linear",
            "--ite-method-inf",
            "tlearner",
            "--or-method-inf",
            "linear",
            "--ntrees-rf",
            "5",
            "--ntrees-gbm",
            "5",
        ]
    )
    out = rc.run(args)
    assert set(out["metrics"]) == {"IoU", "recall", "precision"}
    assert "rule_recovery" in (tmp_path / "cre_runlog.txt").read_text(encoding="utf-8")
