from spg_backend.connectivity import TrajectoryConnectivity


def test_components_without_links():
    c = TrajectoryConnectivity()
    c.add(0)
    c.add(1)
    c.add(0)
    assert c.connected_components() == [[0], [1]]
    assert not c.transitively_connected(0, 1)
    assert c.transitively_connected(1, 1)


def test_links_are_transitive_and_counted():
    c = TrajectoryConnectivity()
    for t in range(4):
        c.add(t)
    c.connect(3, 1)
    c.connect(1, 2)
    c.connect(2, 1)
    assert c.transitively_connected(3, 2)
    assert not c.transitively_connected(0, 3)
    assert c.connection_count(1, 2) == 2
    assert c.connection_count(1, 3) == 1
    assert c.connection_count(2, 3) == 0
    assert c.connected_components() == [[0], [1, 2, 3]]


def test_connect_adds_unknown_trajectories():
    c = TrajectoryConnectivity()
    c.connect(5, 7)
    assert c.connected_components() == [[5, 7]]
    assert not c.transitively_connected(5, 9)
