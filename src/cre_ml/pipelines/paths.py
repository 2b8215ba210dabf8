"""Shared path helpers for pipeline entrypoints."""

from __future__ import annotations

from pathlib import Path

DEFAULT_OUT_DIR = Path("outputs/cre")


def project_root() -> Path:
    try:
        return Path(__file__).resolve().parents[3]
    except Exception:
        return Path.cwd()


def resolve_out_dir(explicit_path: Path | None, run_tag: str = "latest") -> Path:
    if explicit_path is not None:
        return Path(explicit_path)
    return project_root() / DEFAULT_OUT_DIR / run_tag
