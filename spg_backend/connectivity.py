"""Union-find over trajectory ids.

Global localization runs on worker threads and records the trajectories it
links here; the pose graph reads the partition after each optimization.
"""
from __future__ import annotations

import threading
from collections import Counter
from typing import Dict, List, Tuple


class TrajectoryConnectivity:

    def __init__(self):
        self._lock = threading.Lock()
        self._forest: Dict[int, int] = {}
        self._connection_map: Counter = Counter()

    def add(self, trajectory_id: int) -> None:
        with self._lock:
            self._forest.setdefault(trajectory_id, trajectory_id)

    def connect(self, trajectory_id_a: int, trajectory_id_b: int) -> None:
        """Record one more link between two trajectories (added if unseen)."""
        with self._lock:
            self._forest.setdefault(trajectory_id_a, trajectory_id_a)
            self._forest.setdefault(trajectory_id_b, trajectory_id_b)
            self._union(trajectory_id_a, trajectory_id_b)
            self._connection_map[self._sorted_pair(trajectory_id_a, trajectory_id_b)] += 1

    def transitively_connected(self, trajectory_id_a: int, trajectory_id_b: int) -> bool:
        with self._lock:
            if trajectory_id_a not in self._forest or trajectory_id_b not in self._forest:
                return False
            return self._find_set(trajectory_id_a) == self._find_set(trajectory_id_b)

    def connection_count(self, trajectory_id_a: int, trajectory_id_b: int) -> int:
        with self._lock:
            return self._connection_map.get(self._sorted_pair(trajectory_id_a, trajectory_id_b), 0)

    def connected_components(self) -> List[List[int]]:
        """Return groups of trajectory ids, each sorted, ordered by smallest id."""
        with self._lock:
            groups: Dict[int, List[int]] = {}
            for trajectory_id in sorted(self._forest):
                groups.setdefault(self._find_set(trajectory_id), []).append(trajectory_id)
            return sorted(groups.values(), key=lambda g: g[0])

    @staticmethod
    def _sorted_pair(a: int, b: int) -> Tuple[int, int]:
        return (a, b) if a <= b else (b, a)

    def _find_set(self, trajectory_id: int) -> int:
        root = trajectory_id
        while self._forest[root] != root:
            root = self._forest[root]
        # Path compression
        while self._forest[trajectory_id] != root:
            self._forest[trajectory_id], trajectory_id = root, self._forest[trajectory_id]
        return root

    def _union(self, a: int, b: int) -> None:
        root_a = self._find_set(a)
        root_b = self._find_set(b)
        if root_a != root_b:
            self._forest[max(root_a, root_b)] = min(root_a, root_b)
