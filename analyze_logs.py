#!/usr/bin/env python3
"""Summarize node-harness JSONL event logs per test group and plot them."""
import argparse
import json
import math
import statistics
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd

plt.style.use("seaborn-v0_8-whitegrid")
plt.rcParams.update(
    {
        "figure.figsize": (8, 5),
        "axes.titlesize": 12,
        "axes.labelsize": 11,
        "xtick.labelsize": 10,
        "ytick.labelsize": 10,
        "legend.fontsize": 10,
    }
)


def _mean_std(values: List[float]) -> Tuple[float, float]:
    if not values:
        return (math.nan, math.nan)
    if len(values) == 1:
        return (values[0], 0.0)
    return (statistics.mean(values), statistics.stdev(values))


def _read_events(log_file: Path) -> List[Dict]:
    events: List[Dict] = []
    with log_file.open("r", encoding="utf-8", errors="ignore") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict) and "event" in record:
                events.append(record)
    # Records without seq keep their file order.
    events.sort(key=lambda e: e.get("seq", 0))
    return events


def _exited_unexpectedly(events: List[Dict]) -> bool:
    ready = False
    stop_requested = False
    for e in events:
        if e["event"] == "node_ready":
            ready = True
        elif e["event"] == "node_stop_requested":
            stop_requested = True
        elif e["event"] == "node_exit" and ready and not stop_requested:
            return True
    return False


def _parse_group(log_file: Path) -> Tuple[Optional[Dict], Optional[str]]:
    events = _read_events(log_file)
    if not events:
        return None, "no events"

    start = next((e for e in events if e["event"] == "group_start"), None)
    if start is None:
        return None, "no group_start event"
    end = next((e for e in events if e["event"] == "group_end"), None)
    ready = next((e for e in events if e["event"] == "node_ready"), None)
    timeout = next((e for e in events if e["event"] in ("node_start_timeout", "group_setup_timeout")), None)
    gate = next((e for e in events if e["event"] == "gate_acquired"), None)

    return {
        "log_file": str(log_file),
        "run_id": start.get("run_id"),
        "title": start.get("title", ""),
        "provider": start.get("provider", "http"),
        "gate_wait_ms": (gate["ts_ms"] - start["ts_ms"]) if gate else math.nan,
        "gate_polls": gate.get("poll_count", 0) if gate else 0,
        "ready_ms": ready.get("ready_ms", math.nan) if ready else math.nan,
        "timed_out": 1 if timeout else 0,
        "rpc_requests": sum(1 for e in events if e["event"] == "rpc_request"),
        "rpc_errors": sum(1 for e in events if e["event"] == "rpc_error"),
        "unexpected_exit": 1 if _exited_unexpectedly(events) else 0,
        "duration_ms": end.get("duration_ms", math.nan) if end else math.nan,
        "completed": 1 if end else 0,
    }, None


def _collect_groups(logs_root: Path) -> Tuple[List[Dict], List[Tuple[str, str]]]:
    rows: List[Dict] = []
    skipped: List[Tuple[str, str]] = []
    for lf in sorted(logs_root.rglob("harness-*.jsonl")):
        row, reason = _parse_group(lf)
        if row is None:
            skipped.append((str(lf), reason or "unknown"))
        else:
            rows.append(row)
    return rows, skipped


def _save_df(df: pd.DataFrame, out_csv: Path) -> None:
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_csv, index=False)


def _plot_bar_with_error(df: pd.DataFrame, x_col: str, y_col: str, title: str, ylabel: str, out_png: Path) -> None:
    xs = sorted(df[x_col].unique().tolist())
    means = []
    stds = []
    labels = [str(x) for x in xs]
    for x in xs:
        vals = df[df[x_col] == x][y_col].dropna().astype(float).tolist()
        m, s = _mean_std(vals)
        means.append(m)
        stds.append(s)
    xpos = list(range(len(xs)))
    plt.figure()
    plt.bar(xpos, means, yerr=stds, capsize=5, alpha=0.85, color="#4c78a8")
    plt.xticks(xpos, labels, rotation=30, ha="right")
    plt.title(title)
    plt.xlabel(x_col)
    plt.ylabel(ylabel)
    plt.grid(True, axis="y", linestyle="--", linewidth=0.5)
    plt.tight_layout()
    out_png.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_png, dpi=170)
    plt.close()


def analyze(logs_root: Path, plots: bool = True) -> Optional[pd.DataFrame]:
    out_dir = logs_root / "analysis"
    rows, skipped = _collect_groups(logs_root)
    if not rows:
        print(f"[WARN] no harness event logs in {logs_root}")
        return None

    df = pd.DataFrame(rows)
    _save_df(df, out_dir / "harness_per_group.csv")

    summary = (
        df.groupby(["title", "provider"], as_index=False)
        .agg(
            ready_mean=("ready_ms", "mean"),
            ready_std=("ready_ms", "std"),
            gate_wait_mean=("gate_wait_ms", "mean"),
            rpc_requests=("rpc_requests", "sum"),
            rpc_errors=("rpc_errors", "sum"),
            timeouts=("timed_out", "sum"),
            unexpected_exits=("unexpected_exit", "sum"),
            runs=("run_id", "count"),
        )
        .sort_values("title")
    )
    _save_df(summary, out_dir / "harness_summary.csv")

    if plots:
        _plot_bar_with_error(
            df, "title", "ready_ms",
            "Spawn to ready latency per group",
            "Ready latency (ms)",
            out_dir / "harness_ready_ms.png",
        )
        _plot_bar_with_error(
            df, "title", "rpc_errors",
            "RPC transport errors per group",
            "Errors per run",
            out_dir / "harness_rpc_errors.png",
        )

    with (out_dir / "harness_skipped_logs.txt").open("w", encoding="utf-8") as f:
        for name, reason in skipped:
            f.write(f"{name} :: {reason}\n")
    return summary


def main() -> None:
    ap = argparse.ArgumentParser(description="Analyze node-harness event logs and generate plots")
    ap.add_argument("--logs-root", default="logs")
    ap.add_argument("--no-plots", action="store_true")
    args = ap.parse_args()

    logs_root = Path(args.logs_root).resolve()
    summary = analyze(logs_root, plots=not args.no_plots)
    if summary is not None:
        print(summary.to_string(index=False))
        print(f"[DONE] analysis written under {logs_root / 'analysis'}")


if __name__ == "__main__":
    main()
