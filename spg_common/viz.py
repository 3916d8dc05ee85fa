from typing import Dict, Optional, Sequence

import numpy as np

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt


def _positions(poses) -> np.ndarray:
    coords = [np.asarray(p.translation, dtype=float) for p in poses]
    return np.asarray(coords).reshape(-1, 3)


def extract_xyz_per_trajectory(trajectory_nodes, names: Optional[Sequence[str]] = None) -> Dict[str, np.ndarray]:
    """Map trajectory label -> (N, 3) node positions, from ``get_trajectory_nodes()``."""
    out = {}
    for trajectory_id, nodes in enumerate(trajectory_nodes):
        if not nodes:
            continue
        label = names[trajectory_id] if names and trajectory_id < len(names) else str(trajectory_id)
        out[label] = _positions(node.pose for node in nodes)
    return out


def plot_trajectories_2d(trajectory_nodes, path_png: str, submap_poses=None,
                         names: Optional[Sequence[str]] = None):
    traj = extract_xyz_per_trajectory(trajectory_nodes, names)
    plt.figure(figsize=(8, 6))
    for label, xyz in traj.items():
        plt.plot(xyz[:, 0], xyz[:, 1], label=label)
    for trajectory_id, poses in enumerate(submap_poses or []):
        if poses:
            xyz = _positions(poses)
            plt.scatter(xyz[:, 0], xyz[:, 1], marker="s", s=12,
                        label=f"submaps {names[trajectory_id] if names else trajectory_id}")
    plt.axis('equal')
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    plt.legend()
    plt.title("Trajectories (XY)")
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()


def plot_trajectories_3d(trajectory_nodes, path_png: str, names: Optional[Sequence[str]] = None):
    traj = extract_xyz_per_trajectory(trajectory_nodes, names)
    from mpl_toolkits.mplot3d import Axes3D  # noqa
    fig = plt.figure(figsize=(8, 6))
    ax = fig.add_subplot(111, projection='3d')
    for label, xyz in traj.items():
        ax.plot(xyz[:, 0], xyz[:, 1], xyz[:, 2], label=label)
    ax.set_xlabel("x [m]"); ax.set_ylabel("y [m]"); ax.set_zlabel("z [m]")
    ax.legend()
    ax.set_title("Trajectories (3D)")
    fig.tight_layout()
    fig.savefig(path_png, dpi=150)
    plt.close(fig)
