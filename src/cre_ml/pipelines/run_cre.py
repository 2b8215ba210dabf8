"""Command-line entrypoint: run the causal rule ensemble on a CSV table.

Writes the CATE table, per-unit ITE predictions, stage rule counts, a CATE
plot, the pickled result and a short run log to the output directory.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

import joblib
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from cre_ml.pipelines import cre_dataset as cd
from cre_ml.pipelines.common import InvalidInputError
from cre_ml.pipelines.cre import CreResult, cre
from cre_ml.pipelines.params import (
    ITE_METHODS,
    OR_METHODS,
    PS_METHODS,
    SELECTION_SAMPLES,
    HyperParams,
    MethodParams,
)
from cre_ml.pipelines.paths import resolve_out_dir

LOGGER = logging.getLogger(__name__)


def parse_name_list(raw: str | None) -> list[str] | None:
    if raw is None:
        return None
    names = [part.strip() for part in raw.split(",") if part.strip()]
    return names or None


def plot_cate(summary: pd.DataFrame, out_path: Path) -> None:
    frame = summary.iloc[::-1].reset_index(drop=True)
    estimates = frame["Estimate"].to_numpy(dtype=float)
    lower = np.maximum(estimates - frame["CI_Lower"].to_numpy(dtype=float), 0.0)
    upper = np.maximum(frame["CI_Upper"].to_numpy(dtype=float) - estimates, 0.0)
    ypos = np.arange(len(frame))

    plt.figure(figsize=(8, max(2.5, 0.6 * len(frame) + 1.5)))
    plt.errorbar(estimates, ypos, xerr=[lower, upper], fmt="o", color="tab:blue", capsize=4)
    plt.axvline(0.0, color="grey", linestyle="--", linewidth=1)
    plt.yticks(ypos, frame["Rule"].astype(str).tolist(), fontsize=8)
    plt.xlabel("Estimate")
    plt.title("Conditional Average Treatment Effect by rule")
    plt.tight_layout()
    plt.savefig(out_path, dpi=150)
    plt.close()


def load_observations(
    data_path: Path,
    *,
    outcome_col: str,
    treatment_col: str,
    ite_col: str | None,
) -> tuple[np.ndarray, np.ndarray, pd.DataFrame, np.ndarray | None]:
    frame = pd.read_csv(data_path)
    needed = [outcome_col, treatment_col] + ([ite_col] if ite_col else [])
    missing = [c for c in needed if c not in frame.columns]
    if missing:
        raise InvalidInputError(f"Columns not found in {data_path}: {missing}")
    y = frame[outcome_col].to_numpy(dtype=float)
    z = frame[treatment_col].to_numpy(dtype=float)
    ite = frame[ite_col].to_numpy(dtype=float) if ite_col else None
    x = frame.drop(columns=needed)
    return y, z, x, ite


def method_params_from_args(args: argparse.Namespace) -> MethodParams:
    return MethodParams(
        ratio_dis=float(args.ratio_dis),
        ite_method_dis=args.ite_method_dis,
        ps_method_dis=args.ps_method_dis,
        or_method_dis=args.or_method_dis,
        ite_method_inf=args.ite_method_inf,
        ps_method_inf=args.ps_method_inf,
        or_method_inf=args.or_method_inf,
        selection_sample=args.selection_sample,
    )


def hyper_params_from_args(args: argparse.Namespace) -> HyperParams:
    return HyperParams(
        intervention_vars=parse_name_list(args.intervention_vars),
        offset=args.offset or None,
        ntrees_rf=int(args.ntrees_rf),
        ntrees_gbm=int(args.ntrees_gbm),
        node_size=int(args.node_size),
        max_nodes=int(args.max_nodes),
        max_depth=int(args.max_depth),
        replace=not args.no_replace,
        t_decay=float(args.t_decay),
        t_ext=float(args.t_ext),
        t_corr=float(args.t_corr),
        t_pvalue=float(args.t_pvalue),
        stability_selection=not args.no_stability_selection,
        cutoff=float(args.cutoff),
        pfer=float(args.pfer),
        penalty_rl=float(args.penalty_rl),
    )


def save_artifacts(*, out_dir: Path, result: CreResult, config: dict[str, Any]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    result.CATE.to_csv(out_dir / "cate_summary.csv", index=False)
    pd.DataFrame({"ite_pred": result.ite_pred}).to_csv(out_dir / "ite_pred.csv", index=False)
    if result.selection_table is not None:
        result.selection_table.to_csv(out_dir / "rule_selection.csv", index=False)

    payload = {"config": config, **result.to_dict()}
    with (out_dir / "rule_counts.json").open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, allow_nan=True)

    plot_cate(result.CATE, out_dir / "cate_plot.png")
    joblib.dump(result, out_dir / "cre_result.joblib")


def build_parser() -> argparse.ArgumentParser:
    defaults_m = MethodParams()
    defaults_h = HyperParams()

    parser = argparse.ArgumentParser(description="Causal rule ensemble: discover and estimate heterogeneous effects.")
    parser.add_argument("--data-path", type=Path, default=None, help="CSV with outcome, treatment and covariates.")
    parser.add_argument(
        "--synthetic",
        action="store_true",
        help="Run on a generated benchmark dataset instead of --data-path.",
    )
    parser.add_argument("--synthetic-n", type=int, default=2000)
    parser.add_argument("--synthetic-rules", type=int, default=2)
    parser.add_argument("--outcome-col", type=str, default="y")
    parser.add_argument("--treatment-col", type=str, default="z")
    parser.add_argument("--ite-col", type=str, default=None, help="Optional column with precomputed ITE.")
    parser.add_argument("--out-dir", type=Path, default=None)
    parser.add_argument("--run-tag", type=str, default="latest")
    parser.add_argument("--seed", type=int, default=2021)
    parser.add_argument("--n-jobs", type=int, default=1)

    parser.add_argument("--ratio-dis", type=float, default=defaults_m.ratio_dis)
    parser.add_argument("--ite-method-dis", choices=ITE_METHODS, default=defaults_m.ite_method_dis)
    parser.add_argument("--ps-method-dis", choices=PS_METHODS, default=defaults_m.ps_method_dis)
    parser.add_argument("--or-method-dis", choices=OR_METHODS, default=defaults_m.or_method_dis)
    parser.add_argument("--ite-method-inf", choices=ITE_METHODS, default=defaults_m.ite_method_inf)
    parser.add_argument("--ps-method-inf", choices=PS_METHODS, default=defaults_m.ps_method_inf)
    parser.add_argument("--or-method-inf", choices=OR_METHODS, default=defaults_m.or_method_inf)
    parser.add_argument("--selection-sample", choices=SELECTION_SAMPLES, default=defaults_m.selection_sample)

    parser.add_argument("--intervention-vars", type=str, default=None, help="Comma-separated covariate names.")
    parser.add_argument("--offset", type=str, default=None)
    parser.add_argument("--ntrees-rf", type=int, default=defaults_h.ntrees_rf)
    parser.add_argument("--ntrees-gbm", type=int, default=defaults_h.ntrees_gbm)
    parser.add_argument("--node-size", type=int, default=defaults_h.node_size)
    parser.add_argument("--max-nodes", type=int, default=defaults_h.max_nodes)
    parser.add_argument("--max-depth", type=int, default=defaults_h.max_depth)
    parser.add_argument("--no-replace", action="store_true", help="Subsample forest trees without replacement.")
    parser.add_argument("--t-decay", type=float, default=defaults_h.t_decay)
    parser.add_argument("--t-ext", type=float, default=defaults_h.t_ext)
    parser.add_argument("--t-corr", type=float, default=defaults_h.t_corr)
    parser.add_argument("--t-pvalue", type=float, default=defaults_h.t_pvalue)
    parser.add_argument("--no-stability-selection", action="store_true", help="Use cross-validated Lasso instead.")
    parser.add_argument("--cutoff", type=float, default=defaults_h.cutoff)
    parser.add_argument("--pfer", type=float, default=defaults_h.pfer)
    parser.add_argument("--penalty-rl", type=float, default=defaults_h.penalty_rl)
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def run(args: argparse.Namespace) -> dict[str, Any]:
    out_dir = resolve_out_dir(args.out_dir, args.run_tag)
    out_dir.mkdir(parents=True, exist_ok=True)

    truth = None
    if args.synthetic:
        data = cd.generate_cre_dataset(n=int(args.synthetic_n), n_rules=int(args.synthetic_rules), seed=int(args.seed))
        y, z, x, ite = data.y, data.z, data.x, None
        truth = cd.ground_truth_rules(int(args.synthetic_rules))
        source = f"synthetic(n={args.synthetic_n}, rules={args.synthetic_rules})"
    else:
        if args.data_path is None:
            raise InvalidInputError("Provide --data-path or --synthetic.")
        LOGGER.info("Loading dataset from %s", args.data_path)
        y, z, x, ite = load_observations(
            Path(args.data_path),
            outcome_col=args.outcome_col,
            treatment_col=args.treatment_col,
            ite_col=args.ite_col,
        )
        source = str(args.data_path)

    result = cre(
        y,
        z,
        x,
        method_params=method_params_from_args(args),
        hyper_params=hyper_params_from_args(args),
        ite=ite,
        seed=int(args.seed),
        n_jobs=int(args.n_jobs),
    )

    config = {
        "source": source,
        "out_dir": str(out_dir),
        "seed": int(args.seed),
        "n_rows": int(len(y)),
        "n_covariates": int(x.shape[1]),
    }
    metrics = None
    if truth is not None:
        metrics = cd.evaluate(truth, result.rules)
        config["rule_recovery"] = metrics
    save_artifacts(out_dir=out_dir, result=result, config=config)

    runlog = [
        f"source={source}",
        f"seed={args.seed}",
        f"rows={len(y)}",
        *(f"{key}={value}" for key, value in result.M.items()),
        f"rules={[r.expression for r in result.rules]}",
    ]
    if metrics is not None:
        runlog.append(f"rule_recovery={metrics}")
    (out_dir / "cre_runlog.txt").write_text("\n".join(runlog), encoding="utf-8")

    print(f"Saved CRE outputs to: {out_dir}")
    print(f"Rules per stage: {result.M}")
    print(result.CATE.to_string(index=False))

    return {
        "out_dir": out_dir,
        "result": result,
        "cate_df": result.CATE,
        "metrics": metrics,
    }


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )
    args = parse_args()
    run(args)


if __name__ == "__main__":
    main()
