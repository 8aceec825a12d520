import pytest

from fcc import db
from fcc.errors import LockUnavailable
from fcc.reconciler import CapacityController, CycleState
from fcc.runtime import CapacitySpec, HealthStatus


def _promote(fleet, rounds=2):
    """Run enough health rounds to cross the healthy threshold."""
    for _ in range(rounds):
        fleet.checker.run_once()


def _boot(fleet):
    fleet.controller.recover()
    report = fleet.controller.reconcile_once()
    _promote(fleet)
    return report


def test_recover_seeds_initial_spec_once(fleet):
    spec = fleet.controller.recover()
    assert spec == CapacitySpec(min_size=1, max_size=6, desired=2, image="worker:v1")
    fleet.controller.recover()
    assert len(fleet.store.list_versions()) == 1


def test_first_cycle_scales_out_to_desired(fleet):
    report = _boot(fleet)
    assert report.state is CycleState.SCALING_OUT
    assert report.launched == ["m-1", "m-2"]
    assert fleet.registry.current_healthy_set() == {"m-1", "m-2"}

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.STABLE
    assert report.live == report.desired == 2


def test_scale_from_two_to_five_under_lock(fleet):
    _boot(fleet)
    versions_before = len(fleet.store.list_versions())

    version, spec = fleet.controller.set_desired_capacity(5)
    assert spec.desired == 5
    assert fleet.store.get_spec() == spec
    assert len(fleet.store.list_versions()) == versions_before + 1
    assert fleet.locks.is_held(fleet.controller.lock_key) is None

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.SCALING_OUT
    assert report.launched == ["m-3", "m-4", "m-5"]

    new = set(report.launched)
    for mid in new:
        assert fleet.registry.is_registered(mid)
        assert fleet.controller.members[mid].health is HealthStatus.UNKNOWN
    assert fleet.registry.current_healthy_set() == {"m-1", "m-2"}

    fleet.checker.run_once()
    assert fleet.registry.current_healthy_set() == {"m-1", "m-2"}
    fleet.checker.run_once()
    assert fleet.registry.current_healthy_set() == {"m-1", "m-2", "m-3", "m-4", "m-5"}

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.STABLE
    assert report.live == 5


def test_desired_outside_bounds_is_rejected(fleet):
    _boot(fleet)
    versions = fleet.store.list_versions()
    with pytest.raises(ValueError):
        fleet.controller.set_desired_capacity(7)
    with pytest.raises(ValueError):
        fleet.controller.set_desired_capacity(0)
    assert fleet.store.list_versions() == versions
    # a failed write leaves the lock free
    assert fleet.locks.is_held(fleet.controller.lock_key) is None


def test_bounds_can_change_with_desired(fleet):
    _boot(fleet)
    _, spec = fleet.controller.set_desired_capacity(8, max_size=10)
    assert spec.max_size == 10
    assert spec.min_size == 1


def test_set_desired_requires_the_fleet_lock(fleet):
    _boot(fleet)
    fleet.locks.acquire(fleet.controller.lock_key, "other-operator", lease_s=30)
    with pytest.raises(LockUnavailable):
        fleet.controller.set_desired_capacity(3)
    assert fleet.store.get_spec().desired == 2


def test_cycle_is_skipped_when_lock_is_held(fleet):
    fleet.controller.recover()
    fleet.locks.acquire(fleet.controller.lock_key, "someone-else", lease_s=30)

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.SKIPPED
    assert fleet.compute.launched == []

    fleet.clock.advance(31)
    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.SCALING_OUT


def test_second_controller_for_same_fleet_is_a_no_op(fleet):
    fleet.controller.recover()
    other = CapacityController(
        fleet="test",
        compute=fleet.compute,
        registry=fleet.registry,
        checker=fleet.checker,
        locks=fleet.locks,
        store=fleet.store,
        runtime=fleet.runtime,
        sleep=fleet.clock.sleep,
        clock=fleet.clock,
    )
    fleet.locks.acquire(fleet.controller.lock_key, fleet.controller.holder, lease_s=30)
    assert other.reconcile_once().state is CycleState.SKIPPED


@pytest.mark.parametrize("sequence", [[6, 1, 4, 6, 2], [3, 3, 1, 5]])
def test_live_count_stays_within_bounds(fleet, sequence):
    _boot(fleet)
    for desired in sequence:
        fleet.controller.set_desired_capacity(desired)
        for _ in range(3):
            fleet.controller.reconcile_once()
            live = len(fleet.controller.live_members())
            assert 1 <= live <= 6
            _promote(fleet)
        assert len(fleet.controller.live_members()) == desired
        assert fleet.controller.reconcile_once().state is CycleState.STABLE


def test_scale_in_prefers_unhealthy_members(fleet):
    _boot(fleet)
    fleet.outcomes["m-1"] = False
    _promote(fleet)
    assert fleet.controller.members["m-1"].health is HealthStatus.UNHEALTHY

    fleet.controller.set_desired_capacity(1)
    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.SCALING_IN
    assert report.terminated == ["m-1"]
    assert fleet.compute.terminated == ["m-1"]
    assert not fleet.registry.is_registered("m-1")
    assert "m-1" not in [m.id for m in fleet.checker.tracked()]


def test_drain_waits_for_in_flight_then_forces_after_timeout(fleet):
    _boot(fleet)
    fleet.outcomes["m-2"] = False
    _promote(fleet)
    fleet.runtime.begin_request("m-2")
    start = fleet.clock()

    fleet.controller.set_desired_capacity(1)
    report = fleet.controller.reconcile_once()

    assert report.terminated == ["m-2"]
    assert fleet.clock() - start == pytest.approx(5, abs=0.2)
    messages = [e["message"] for e in db.latest_events() if e["member"] == "m-2"]
    assert any("Drain timed out" in m for m in messages)


def test_drain_without_in_flight_does_not_wait(fleet):
    _boot(fleet)
    start = fleet.clock()
    fleet.controller.set_desired_capacity(1)
    fleet.controller.reconcile_once()
    assert fleet.clock() == start


def test_launch_is_retried_with_backoff(fleet):
    fleet.controller.recover()
    fleet.compute.launch_failures = 2
    start = fleet.clock()

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.SCALING_OUT
    assert len(report.launched) == 2
    assert fleet.clock() - start == pytest.approx(0.5 + 1.0)


def test_provisioning_failure_marks_cycle_failed(fleet):
    fleet.controller.recover()
    fleet.compute.launch_failures = 3

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.FAILED
    assert report.launched == []
    assert fleet.registry.registered_ids() == []
    assert fleet.store.get_spec().desired == 2
    assert fleet.locks.is_held(fleet.controller.lock_key) is None

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.SCALING_OUT
    assert len(report.launched) == 2


def test_failed_terminate_is_retried_next_cycle(fleet):
    _boot(fleet)
    fleet.controller.set_desired_capacity(1)
    fleet.compute.terminate_failures = 3

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.FAILED
    pending = list(fleet.controller.pending_termination)
    assert len(pending) == 1
    assert not fleet.registry.is_registered(pending[0])
    assert len(fleet.controller.live_members()) == 1

    report = fleet.controller.reconcile_once()
    assert report.terminated == pending
    assert fleet.controller.pending_termination == {}
    assert report.state is CycleState.STABLE


def test_unhealthy_member_is_replaced_create_before_destroy(fleet):
    _boot(fleet)
    fleet.outcomes["m-1"] = False
    _promote(fleet)

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.REPLACING
    assert report.launched == ["m-3"]
    assert report.terminated == ["m-1"]
    assert fleet.compute.ops[-2:] == [("launch", "m-3"), ("terminate", "m-1")]
    assert len(fleet.controller.live_members()) == 2


def test_replacement_at_max_drains_first(fleet):
    fleet.controller.recover()
    fleet.controller.set_desired_capacity(2, max_size=2)
    fleet.controller.reconcile_once()
    _promote(fleet)
    fleet.outcomes["m-1"] = False
    _promote(fleet)

    fleet.controller.reconcile_once()
    assert fleet.compute.ops[-2:] == [("terminate", "m-1"), ("launch", "m-3")]
    assert len(fleet.compute.running) <= 2


def test_image_change_rotates_one_member_at_a_time(fleet):
    _boot(fleet)
    fleet.controller.set_desired_capacity(2, image="worker:v2")

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.REPLACING
    images = sorted(m.image for m in fleet.controller.live_members())
    assert images == ["worker:v1", "worker:v2"]

    # the replacement is not healthy yet, so the rotation waits
    assert fleet.controller.reconcile_once().state is CycleState.STABLE

    _promote(fleet)
    assert fleet.controller.reconcile_once().state is CycleState.REPLACING
    _promote(fleet)
    assert fleet.controller.reconcile_once().state is CycleState.STABLE
    assert {m.image for m in fleet.controller.live_members()} == {"worker:v2"}


def test_vanished_member_is_dropped_and_replaced(fleet):
    _boot(fleet)
    fleet.compute.running.pop("m-1")

    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.SCALING_OUT
    assert report.launched == ["m-3"]
    assert not fleet.registry.is_registered("m-1")


def test_restarted_controller_recovers_last_intended_state(fleet):
    _boot(fleet)
    fleet.controller.set_desired_capacity(4)

    restarted = CapacityController(
        fleet="test",
        compute=fleet.compute,
        registry=fleet.registry,
        checker=fleet.checker,
        locks=fleet.locks,
        store=fleet.store,
        runtime=fleet.runtime,
        initial_spec=CapacitySpec(min_size=1, max_size=6, desired=1, image="worker:v1"),
        sleep=fleet.clock.sleep,
        clock=fleet.clock,
    )
    spec = restarted.recover()
    assert spec.desired == 4
    assert sorted(restarted.members) == ["m-1", "m-2"]

    report = restarted.reconcile_once()
    assert report.launched == ["m-3", "m-4"]


def test_status_reports_spec_members_and_lock(fleet):
    _boot(fleet)
    status = fleet.controller.status()
    assert status["spec"]["desired"] == 2
    assert status["live"] == 2
    assert status["healthy"] == 2
    assert status["lock_holder"] is None
    assert status["last_cycle"]["state"] == "scaling_out"
    assert {m["health"] for m in status["members"]} == {"healthy"}


def test_long_scale_in_keeps_the_fleet_lock_for_its_whole_run(fleet):
    _boot(fleet)
    fleet.controller.set_desired_capacity(6)
    fleet.controller.reconcile_once()
    _promote(fleet)
    for mid in fleet.controller.members:
        fleet.runtime.begin_request(mid)
    fleet.controller.set_desired_capacity(1)

    # Production drain timeout: five forced drains take far longer than one lease.
    fleet.controller.drain_timeout_s = 30
    stolen = []

    def sleep(seconds):
        fleet.clock.sleep(seconds)
        lease = fleet.locks.acquire(fleet.controller.lock_key, "second-controller", 30)
        if lease is not None:
            stolen.append(lease)

    fleet.controller.sleep = sleep
    start = fleet.clock()
    report = fleet.controller.reconcile_once()

    assert fleet.clock() - start > 4 * 30
    assert stolen == []
    assert report.state is CycleState.SCALING_IN
    assert len(report.terminated) == 5
    assert fleet.locks.is_held(fleet.controller.lock_key) is None


def test_cycle_stops_when_its_lease_is_taken_over(fleet):
    _boot(fleet)
    fleet.runtime.begin_request("m-1")
    fleet.runtime.begin_request("m-2")
    fleet.controller.set_desired_capacity(1)

    def sleep(seconds):
        fleet.clock.sleep(seconds)
        if fleet.locks.is_held(fleet.controller.lock_key) == fleet.controller.holder:
            fleet.locks.release(fleet.controller.lock_key, fleet.controller.holder)
            fleet.locks.acquire(fleet.controller.lock_key, "second-controller", 30)

    fleet.controller.sleep = sleep
    report = fleet.controller.reconcile_once()

    assert report.state is CycleState.FAILED
    assert "Lost the lease" in report.message
    assert report.terminated == []
    assert fleet.compute.terminated == []
    for member in fleet.controller.members.values():
        assert not member.draining
        assert fleet.registry.is_registered(member.id)
    assert len(fleet.controller.live_members()) == 2
    assert fleet.locks.is_held(fleet.controller.lock_key) == "second-controller"


def test_recover_while_another_controller_holds_the_lock(fleet):
    fleet.locks.acquire(fleet.controller.lock_key, "other-controller", lease_s=30)

    assert fleet.controller.recover() is None
    assert fleet.store.latest_version() is None
    assert fleet.controller.reconcile_once().state is CycleState.SKIPPED

    fleet.locks.release(fleet.controller.lock_key, "other-controller")
    report = fleet.controller.reconcile_once()
    assert report.state is CycleState.SCALING_OUT
    assert report.launched == ["m-1", "m-2"]
    assert fleet.store.get_spec() == CapacitySpec(min_size=1, max_size=6, desired=2, image="worker:v1")
