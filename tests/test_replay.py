import json

import numpy as np
import pytest

from conftest import make_graph
from spg_backend.replay import (
    ImuRecord,
    ReplayConfig,
    ScanRecord,
    iter_events,
    load_replay_log,
    parse_replay_log,
    replay,
)


def _pose(x, rotation=(1.0, 0.0, 0.0, 0.0)):
    return {"translation": [x, 0.0, 0.0], "rotation": list(rotation)}


def _log():
    return {"trajectories": [{
        "name": "a",
        "submaps": [{"local_pose": _pose(0.0)}, {"local_pose": _pose(2.0)}],
        "scans": [
            {"time": 0.0, "pose": _pose(0.0), "matching_submap": 0, "insertion_submaps": [0]},
            {"time": 1.0, "pose": _pose(0.5), "matching_submap": 0, "insertion_submaps": [0],
             "points": [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]},
            {"time": 2.0, "pose": _pose(1.0), "matching_submap": 0, "insertion_submaps": [0, 1],
             "covariance": (np.eye(6) * 0.01).tolist()},
            {"time": 3.0, "pose": _pose(1.5), "matching_submap": 0, "insertion_submaps": [0, 1],
             "finishes_submap": 0},
        ],
        "imu": [{"time": 0.5, "linear_acceleration": [0.0, 0.0, 9.81], "angular_velocity": [0.0, 0.0, 0.0]}],
    }]}


def test_parse_scans_and_imu():
    log = parse_replay_log(_log())
    assert log.num_scans == 4
    traj = log.trajectories[0]
    assert traj.name == "a"
    assert len(traj.submap_poses) == 2
    assert np.allclose(traj.submap_poses[1].translation, [2.0, 0.0, 0.0])
    assert traj.scans[0].covariance is None
    assert traj.scans[1].points.shape == (2, 3)
    assert traj.scans[2].covariance.shape == (6, 6)
    assert traj.scans[3].finishes_submap == 0
    assert traj.imu[0].linear_acceleration[2] == pytest.approx(9.81)


def test_xyzw_quaternion_order():
    data = _log()
    for scan in data["trajectories"][0]["scans"]:
        scan["pose"]["rotation"] = [0.0, 0.0, 0.0, 1.0]
    for submap in data["trajectories"][0]["submaps"]:
        submap["local_pose"]["rotation"] = [0.0, 0.0, 0.0, 1.0]
    log = parse_replay_log(data, ReplayConfig(quaternion_order="xyzw"))
    assert np.allclose(log.trajectories[0].scans[0].pose.rotation, np.eye(3))


@pytest.mark.parametrize("mutate", [
    lambda d: d.pop("trajectories"),
    lambda d: d["trajectories"][0]["scans"][3].update(finishes_submap=1),
    lambda d: d["trajectories"][0]["scans"][0].update(insertion_submaps=[5]),
    lambda d: d["trajectories"][0]["scans"][0].update(insertion_submaps=[0, 1, 1]),
    lambda d: d["trajectories"][0]["scans"][0].pop("pose"),
    lambda d: d["trajectories"][0]["scans"].append(
        {"time": 4.0, "pose": _pose(2.0), "matching_submap": 0, "insertion_submaps": [0, 1]}),
])
def test_malformed_logs_are_rejected(mutate):
    data = _log()
    mutate(data)
    with pytest.raises(ValueError):
        parse_replay_log(data)


def test_events_interleave_trajectories_by_time():
    data = _log()
    second = json.loads(json.dumps(data["trajectories"][0]))
    second["name"] = "b"
    for scan in second["scans"]:
        scan["time"] += 0.25
    second["imu"] = []
    data["trajectories"].append(second)

    events = list(iter_events(parse_replay_log(data)))
    times = [e.time for e in events]
    assert times == sorted(times)
    assert isinstance(events[0], ScanRecord)
    assert [e.trajectory_index for e in events if isinstance(e, ScanRecord)][:4] == [0, 1, 0, 1]
    assert sum(isinstance(e, ImuRecord) for e in events) == 1


def test_replay_feeds_the_pose_graph(tmp_path):
    path = tmp_path / "scans.json"
    path.write_text(json.dumps(_log()), encoding="utf-8")
    log = load_replay_log(str(path))

    graph, problem = make_graph()
    trajectories = replay(log, graph)
    graph.wait_for_all_computations()

    assert graph.get_next_trajectory_node_index() == 4
    assert trajectories[0].get(0).finished
    assert not trajectories[0].get(1).finished
    assert len(problem.imu_data[0]) == 1
    nodes = graph.get_trajectory_nodes()[0]
    assert nodes[1].constant_data.point_cloud.shape == (2, 3)
    assert np.allclose(nodes[3].pose.translation, [1.5, 0.0, 0.0])
