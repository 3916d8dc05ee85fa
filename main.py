import argparse, os, json, logging
import time
from typing import Dict, List

from spg_backend.constraint_builder import PriorPoseMatcher
from spg_backend.models import ConstraintTag
from spg_backend.options import PoseGraphOptions, load_options, validate_options
from spg_backend.pose_graph import SparsePoseGraph
from spg_backend.replay import ReplayConfig, build_trajectories, load_replay_log, replay
from spg_backend.transform import Rigid3
from spg_common.kpi_logging import KPILogger
from spg_common.viz import plot_trajectories_2d, plot_trajectories_3d

logger = logging.getLogger("spg.cli")


def parse_args():
    ap = argparse.ArgumentParser(description="Replay a recorded scan log through the sparse pose graph backend.")
    ap.add_argument("--scans", required=True, help="Path to the replay log (JSON)")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--config", default=None, help="JSON options file (see spg_backend.options)")
    ap.add_argument("--optimize-every-n-scans", type=int, default=None,
                    help="Override optimize_every_n_scans (0 disables periodic optimization)")
    ap.add_argument("--global-sampling-ratio", type=float, default=None,
                    help="Override global_sampling_ratio")
    ap.add_argument("--final-iterations", type=int, default=None,
                    help="Override max_num_final_iterations")
    ap.add_argument("--robust", choices=["none", "huber", "cauchy"], default=None,
                    help="Robust kernel for loop-closure constraints")
    ap.add_argument("--threads", type=int, default=None, help="Constraint search worker threads")
    ap.add_argument("--match-score", type=float, default=1.0,
                    help="Score reported by the prior-pose matcher used for replay")
    ap.add_argument("--quat-order", choices=["wxyz", "xyzw"], default="wxyz", help="Quaternion order in file")
    ap.add_argument("--kpi-log", default=None, help="Write KPI events as JSON lines to this file")
    ap.add_argument("--plot", action="store_true", help="Export XY and 3D trajectory plots")
    ap.add_argument("--log", default="INFO", help="Logging level")
    return ap.parse_args()


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def build_options(args) -> PoseGraphOptions:
    opts = load_options(args.config) if args.config else PoseGraphOptions()
    if args.optimize_every_n_scans is not None:
        opts.optimize_every_n_scans = args.optimize_every_n_scans
    if args.global_sampling_ratio is not None:
        opts.global_sampling_ratio = args.global_sampling_ratio
    if args.final_iterations is not None:
        opts.max_num_final_iterations = args.final_iterations
    if args.robust is not None:
        opts.optimization_problem.robust_kind = args.robust
    if args.threads is not None:
        opts.constraint_builder.num_threads = args.threads
    validate_options(opts)
    return opts


def _pose_to_dict(pose: Rigid3) -> Dict[str, List[float]]:
    q = pose.quaternion()
    return {"translation": [float(v) for v in pose.translation],
            "rotation": [q.w, q.x, q.y, q.z]}


def export_trajectory_nodes(graph: SparsePoseGraph, names: List[str], out_path: str) -> int:
    payload = {}
    count = 0
    for trajectory_id, nodes in enumerate(graph.get_trajectory_nodes()):
        label = names[trajectory_id] if trajectory_id < len(names) else str(trajectory_id)
        payload[label] = [
            {"time": node.constant_data.time, **_pose_to_dict(node.pose)} for node in nodes
        ]
        count += len(nodes)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    return count


def export_constraints(graph: SparsePoseGraph, out_path: str) -> Dict[str, int]:
    rows = []
    counts = {tag.value: 0 for tag in ConstraintTag}
    for c in graph.constraints():
        counts[c.tag.value] += 1
        rows.append({
            "submap": [c.submap_id.trajectory_id, c.submap_id.submap_index],
            "node": [c.node_id.trajectory_id, c.node_id.node_index],
            "tag": c.tag.value,
            "pose": _pose_to_dict(c.pose.zbar_ij),
        })
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump({"counts": counts, "constraints": rows}, f, indent=2)
    return counts


def main():
    args = parse_args()
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)

    opts = build_options(args)
    log = load_replay_log(args.scans, ReplayConfig(quaternion_order=args.quat_order))
    if log.num_scans == 0:
        raise ValueError("No scans found in replay log; nothing to optimize")

    kpi = KPILogger(log_path=args.kpi_log, emit_to_logger=False) if args.kpi_log else None
    names = [t.name for t in log.trajectories]
    try:
        graph = SparsePoseGraph.create(opts, PriorPoseMatcher(score=args.match_score), kpi=kpi)
        with graph:
            t0 = time.perf_counter()
            trajectories = replay(log, graph, build_trajectories(log))
            logger.info("Inserted %d scans in %.2f s; running final optimization",
                        log.num_scans, time.perf_counter() - t0)
            graph.run_final_optimization()

            n_nodes = export_trajectory_nodes(graph, names, os.path.join(out_dir, "trajectory_nodes.json"))
            counts = export_constraints(graph, os.path.join(out_dir, "constraints.json"))
            logger.info("Exported %d nodes and constraints %s to %s", n_nodes, counts, out_dir)
            logger.info("Connected trajectories: %s", graph.get_connected_trajectories())

            if args.plot:
                submap_poses = [graph.get_submap_transforms(t) for t in trajectories]
                plot_trajectories_2d(graph.get_trajectory_nodes(), os.path.join(out_dir, "trajectories_xy.png"),
                                     submap_poses=submap_poses, names=names)
                plot_trajectories_3d(graph.get_trajectory_nodes(), os.path.join(out_dir, "trajectories_3d.png"),
                                     names=names)
    finally:
        if kpi:
            kpi.close()


if __name__ == "__main__":
    main()
