import json
import sys

import pytest

import main
from test_replay import _log


def test_replay_cli_exports_nodes_and_constraints(tmp_path, monkeypatch):
    """End to end: replay a log, optimize with gtsam, export JSON, KPIs and plots."""
    pytest.importorskip("gtsam")
    scans = tmp_path / "scans.json"
    scans.write_text(json.dumps(_log()), encoding="utf-8")
    out = tmp_path / "out"
    kpi = tmp_path / "kpi.jsonl"
    monkeypatch.setattr(sys, "argv", [
        "main.py", "--scans", str(scans), "--export-path", str(out),
        "--optimize-every-n-scans", "2", "--kpi-log", str(kpi), "--plot", "--threads", "1",
    ])
    main.main()

    nodes = json.loads((out / "trajectory_nodes.json").read_text(encoding="utf-8"))
    assert len(nodes["a"]) == 4
    assert nodes["a"][3]["translation"][0] == pytest.approx(1.5, abs=1e-3)
    constraints = json.loads((out / "constraints.json").read_text(encoding="utf-8"))
    assert constraints["counts"]["intra_submap"] == 6
    assert (out / "trajectories_xy.png").exists()
    events = [json.loads(line)["event"] for line in kpi.read_text(encoding="utf-8").splitlines()]
    assert "scan_insert" in events
    assert "optimization_end" in events


def test_build_options_applies_overrides(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "argv", [
        "main.py", "--scans", "x.json", "--export-path", str(tmp_path),
        "--global-sampling-ratio", "0.5", "--final-iterations", "7", "--robust", "none",
    ])
    opts = main.build_options(main.parse_args())
    assert opts.global_sampling_ratio == pytest.approx(0.5)
    assert opts.max_num_final_iterations == 7
    assert opts.optimization_problem.robust_kind == "none"
    assert opts.optimize_every_n_scans == 90
