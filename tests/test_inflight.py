from taskboard.engine.inflight import InFlightTracker


class TestHold:
    def test_hold_marks_id_in_flight(self):
        tracker = InFlightTracker()
        tracker.hold(1, "m-1")
        assert tracker.is_held(1) is True
        assert tracker.held_ids() == [1]

    def test_unheld_id(self):
        tracker = InFlightTracker()
        assert tracker.is_held(1) is False
        assert tracker.held_ids() == []

    def test_rehold_is_noop(self):
        tracker = InFlightTracker()
        tracker.hold(1, "m-1")
        tracker.hold(1, "m-1")
        assert tracker.release(1, "m-1") is True
        assert tracker.is_held(1) is False

    def test_held_ids_in_hold_order(self):
        tracker = InFlightTracker()
        tracker.hold(2, "m-1")
        tracker.hold("tmp-1700000000000", "m-2")
        tracker.hold(2, "m-3")
        assert tracker.held_ids() == [2, "tmp-1700000000000"]


class TestRelease:
    def test_last_release_frees_id(self):
        tracker = InFlightTracker()
        tracker.hold(1, "m-1")
        assert tracker.release(1, "m-1") is True
        assert tracker.is_held(1) is False

    def test_release_with_other_holders_keeps_id(self):
        tracker = InFlightTracker()
        tracker.hold(1, "m-1")
        tracker.hold(1, "m-2")
        assert tracker.release(1, "m-1") is False
        assert tracker.is_held(1) is True
        assert tracker.release(1, "m-2") is True

    def test_release_unknown_hold(self):
        tracker = InFlightTracker()
        tracker.hold(1, "m-1")
        assert tracker.release(1, "m-9") is False
        assert tracker.release(2, "m-1") is False
        assert tracker.is_held(1) is True

    def test_release_all(self):
        tracker = InFlightTracker()
        tracker.hold(1, "m-1")
        tracker.hold("tmp-1700000000000", "m-2")
        tracker.release_all()
        assert tracker.held_ids() == []

    def test_held_ids_returns_copy(self):
        tracker = InFlightTracker()
        tracker.hold(1, "m-1")
        tracker.held_ids().append(2)
        assert tracker.held_ids() == [1]
