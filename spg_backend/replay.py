"""Load recorded scan logs and replay them through a pose graph.

Log layout (JSON)::

    {"trajectories": [
        {"name": "a",
         "submaps": [{"local_pose": P}, ...],
         "scans": [{"time": t, "pose": P, "covariance": [...36] | [[6x6]],
                    "matching_submap": i, "insertion_submaps": [i] | [i, j],
                    "finishes_submap": i, "points": [[x, y, z], ...]}, ...],
         "imu": [{"time": t, "linear_acceleration": [..],
                  "angular_velocity": [..]}, ...]}]}

A pose ``P`` is ``{"translation": [x, y, z], "rotation": [w, x, y, z]}``.
Submap indices refer to the trajectory's own ``submaps`` list.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

import numpy as np

from .models import Submap, Trajectory, to_covariance
from .robust import make_spd
from .transform import Quaternion, Rigid3, Translation

logger = logging.getLogger("spg.replay")


@dataclass
class ReplayConfig:
    quaternion_order: str = "wxyz"   # logs default to [w,x,y,z]
    validate_schema: bool = True


@dataclass
class ScanRecord:
    trajectory_index: int
    time: float
    pose: Rigid3
    covariance: Optional[np.ndarray]
    matching_submap: int
    insertion_submaps: List[int]
    finishes_submap: Optional[int] = None
    points: Optional[np.ndarray] = None


@dataclass
class ImuRecord:
    trajectory_index: int
    time: float
    linear_acceleration: np.ndarray
    angular_velocity: np.ndarray


@dataclass
class TrajectoryLog:
    name: str
    submap_poses: List[Rigid3]
    scans: List[ScanRecord] = field(default_factory=list)
    imu: List[ImuRecord] = field(default_factory=list)


@dataclass
class ReplayLog:
    trajectories: List[TrajectoryLog]

    @property
    def num_scans(self) -> int:
        return sum(len(t.scans) for t in self.trajectories)


def _q_from_list(q: List[float], order: str) -> Quaternion:
    if order == "wxyz":
        if len(q) != 4: raise ValueError("Quaternion must be [w,x,y,z]")
        return Quaternion(q[0], q[1], q[2], q[3])
    elif order == "xyzw":
        if len(q) != 4: raise ValueError("Quaternion must be [x,y,z,w]")
        return Quaternion(q[3], q[0], q[1], q[2])
    else:
        raise ValueError(f"Unsupported quaternion order: {order}")


def _t_from_list(t: List[float]) -> Translation:
    if len(t) != 3: raise ValueError("Translation must be [x,y,z]")
    return Translation(t[0], t[1], t[2])


def _parse_pose(d: Dict[str, Any], cfg: ReplayConfig) -> Rigid3:
    """Accept {"rotation":[...], "translation":[...]}, or {"pose":{...}}."""
    src = d.get("pose", d) if isinstance(d.get("pose"), dict) else d
    return Rigid3.from_quaternion(_q_from_list(src["rotation"], cfg.quaternion_order),
                                  _t_from_list(src["translation"]))


def _vector3(values: Any, what: str) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.shape != (3,):
        raise ValueError(f"{what} must be [x,y,z], got shape {arr.shape}")
    return arr


def _parse_points(points: Any) -> np.ndarray:
    if points is None:
        return np.zeros((0, 3), dtype=np.float32)
    arr = np.asarray(points, dtype=np.float32)
    if arr.size == 0:
        return np.zeros((0, 3), dtype=np.float32)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"points must be a list of [x,y,z], got shape {arr.shape}")
    return arr


def _parse_scan(item: Dict[str, Any], trajectory_index: int, num_submaps: int,
                cfg: ReplayConfig) -> ScanRecord:
    insertion = [int(i) for i in item["insertion_submaps"]]
    if len(insertion) not in (1, 2):
        raise ValueError(f"insertion_submaps must list one or two submaps, got {insertion}")
    matching = int(item["matching_submap"])
    finishes = item.get("finishes_submap")
    finishes = None if finishes is None else int(finishes)
    if finishes is not None and finishes != insertion[0]:
        raise ValueError(f"finishes_submap {finishes} must be the first insertion submap {insertion[0]}")
    for idx in insertion + [matching]:
        if not 0 <= idx < num_submaps:
            raise ValueError(f"submap index {idx} out of range (trajectory has {num_submaps})")
    cov = item.get("covariance")
    return ScanRecord(
        trajectory_index=trajectory_index,
        time=float(item["time"]),
        pose=_parse_pose(item["pose"], cfg),
        covariance=None if cov is None else make_spd(to_covariance(cov)),
        matching_submap=matching,
        insertion_submaps=insertion,
        finishes_submap=finishes,
        points=_parse_points(item.get("points")),
    )


def _validate_submap_lifecycle(traj: TrajectoryLog) -> None:
    """A finished submap must not receive further scans."""
    finished = set()
    for n, scan in enumerate(sorted(traj.scans, key=lambda s: s.time)):
        for idx in scan.insertion_submaps:
            if idx in finished:
                raise ValueError(f"trajectory {traj.name!r}: scan {n} inserts into finished submap {idx}")
        if scan.finishes_submap is not None:
            finished.add(scan.finishes_submap)


def parse_replay_log(data: Dict[str, Any], cfg: Optional[ReplayConfig] = None) -> ReplayLog:
    cfg = cfg or ReplayConfig()
    if not isinstance(data, dict) or not isinstance(data.get("trajectories"), list):
        raise ValueError("Replay log must be an object with a 'trajectories' list")

    trajectories: List[TrajectoryLog] = []
    for t_idx, raw in enumerate(data["trajectories"]):
        name = str(raw.get("name", t_idx))
        try:
            submaps = [_parse_pose(s.get("local_pose", s), cfg) for s in raw.get("submaps", []) or []]
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"trajectory {name!r}: malformed submap: {e}") from e
        if not submaps and raw.get("scans"):
            raise ValueError(f"trajectory {name!r} has scans but no submaps")
        traj = TrajectoryLog(name=name, submap_poses=submaps)
        for s_idx, item in enumerate(raw.get("scans", []) or []):
            try:
                traj.scans.append(_parse_scan(item, t_idx, len(submaps), cfg))
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f"trajectory {name!r}: malformed scan[{s_idx}]: {e}") from e
        for i_idx, item in enumerate(raw.get("imu", []) or []):
            try:
                traj.imu.append(ImuRecord(
                    trajectory_index=t_idx,
                    time=float(item["time"]),
                    linear_acceleration=_vector3(item["linear_acceleration"], "linear_acceleration"),
                    angular_velocity=_vector3(item["angular_velocity"], "angular_velocity"),
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f"trajectory {name!r}: malformed imu[{i_idx}]: {e}") from e
        if cfg.validate_schema:
            _validate_submap_lifecycle(traj)
            unknown = sorted(set(raw) - {"name", "submaps", "scans", "imu"})
            if unknown:
                logger.warning("trajectory %r: ignoring unknown fields %s", name, unknown)
        trajectories.append(traj)
    return ReplayLog(trajectories=trajectories)


def load_replay_log(path: str, cfg: Optional[ReplayConfig] = None) -> ReplayLog:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    log = parse_replay_log(data, cfg)
    logger.info("Loaded %s: %d trajectories, %d scans", path, len(log.trajectories), log.num_scans)
    return log


def iter_events(log: ReplayLog) -> Iterator[Union[ScanRecord, ImuRecord]]:
    """Yield scans and IMU samples of all trajectories sorted by time.

    Ties keep file order, trajectory by trajectory.
    """
    events: List[Union[ScanRecord, ImuRecord]] = []
    for traj in log.trajectories:
        events.extend(traj.imu)
        events.extend(traj.scans)
    events.sort(key=lambda e: e.time)
    for e in events:
        yield e


def build_trajectories(log: ReplayLog) -> List[Trajectory]:
    """Host-side submap containers, one per logged trajectory."""
    return [Trajectory([Submap(pose) for pose in t.submap_poses], name=t.name)
            for t in log.trajectories]


def replay(log: ReplayLog, graph, trajectories: Optional[List[Trajectory]] = None) -> List[Trajectory]:
    """Feed every event of ``log`` into ``graph`` in time order.

    Submaps are marked finished right before the scan that finishes them is
    inserted, the way a local SLAM frontend would.
    """
    trajectories = trajectories if trajectories is not None else build_trajectories(log)
    num_scans = 0
    for event in iter_events(log):
        trajectory = trajectories[event.trajectory_index]
        if isinstance(event, ImuRecord):
            graph.add_imu_data(trajectory, event.time, event.linear_acceleration, event.angular_velocity)
            continue
        if event.finishes_submap is not None:
            trajectory.get(event.finishes_submap).finish()
        graph.add_scan(
            event.time,
            event.points,
            event.pose,
            event.covariance,
            trajectory,
            trajectory.get(event.matching_submap),
            [trajectory.get(i) for i in event.insertion_submaps],
        )
        num_scans += 1
        if num_scans % 500 == 0:
            logger.info("Replayed %d / %d scans", num_scans, log.num_scans)
    return trajectories
