from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock, Thread
from typing import Callable, TypeVar

from . import db
from .alerts import send_email
from .compute import ComputeProvider
from .errors import LockUnavailable, ProvisioningFailure
from .health import HealthChecker
from .locks import DistributedLock, new_holder_token
from .registry import TargetRegistry
from .runtime import CapacitySpec, FleetMember, HealthStatus, Lease, RuntimeState
from .settings import settings
from .state_store import VersionedStateStore

T = TypeVar("T")


class CycleState(str, Enum):
    EVALUATING = "evaluating"
    SCALING_OUT = "scaling_out"
    SCALING_IN = "scaling_in"
    REPLACING = "replacing"
    STABLE = "stable"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class CycleReport:
    state: CycleState
    desired: int | None = None
    live: int = 0
    launched: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    message: str = ""
    finished_at: str = field(default_factory=db.utc_now)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "desired": self.desired,
            "live": self.live,
            "launched": list(self.launched),
            "terminated": list(self.terminated),
            "message": self.message,
            "finished_at": self.finished_at,
        }


class CapacityController:
    """Continuously drives the fleet's live member count toward the desired count.

    One cycle runs under the fleet lock; a second concurrent cycle is skipped,
    not queued. The desired count is read from the state store on every
    cycle, so a restarted controller picks up the last recorded intent.
    """

    def __init__(
        self,
        fleet: str,
        compute: ComputeProvider,
        registry: TargetRegistry,
        checker: HealthChecker,
        locks: DistributedLock,
        store: VersionedStateStore,
        runtime: RuntimeState,
        initial_spec: CapacitySpec | None = None,
        lease_s: float | None = None,
        provision_attempts: int | None = None,
        provision_backoff_s: float | None = None,
        drain_timeout_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fleet = fleet
        self.compute = compute
        self.registry = registry
        self.checker = checker
        self.locks = locks
        self.store = store
        self.runtime = runtime
        self.initial_spec = initial_spec
        self.lease_s = lease_s if lease_s is not None else settings.lock_lease_s
        self.provision_attempts = max(1, int(provision_attempts or settings.provision_attempts))
        self.provision_backoff_s = (
            provision_backoff_s if provision_backoff_s is not None else settings.provision_backoff_s
        )
        self.drain_timeout_s = drain_timeout_s if drain_timeout_s is not None else settings.drain_timeout_s
        self.sleep = sleep
        self.clock = clock

        self.lock_key = f"fleet:{fleet}"
        self.holder = f"controller-{new_holder_token()}"
        self.members: dict[str, FleetMember] = {}
        self.pending_termination: dict[str, FleetMember] = {}
        self.last_report: CycleReport | None = None
        self._members_lock = Lock()
        self._stop = False
        self._thr: Thread | None = None

    # Lifecycle

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True

    def _loop(self) -> None:
        db.log_event("INFO", "Capacity controller started", fleet=self.fleet)
        while not self._stop:
            try:
                self.reconcile_once()
            except Exception as e:
                db.log_event("ERROR", f"Reconcile cycle crashed: {type(e).__name__}: {e}", fleet=self.fleet)
            self.sleep(max(1, settings.poll_interval_s))

    def recover(self) -> CapacitySpec | None:
        """Load the last recorded spec and re-adopt members that are still running.

        Seeds the store with ``initial_spec`` when nothing was ever recorded.
        If another controller holds the fleet lock, seeding is left to the
        first cycle that gets it.
        """
        spec = self.store.get_spec()
        if spec is None and self.initial_spec is not None:
            try:
                with self.locks.hold(self.lock_key, lease_s=self.lease_s) as lease:
                    self._seed_initial_spec(lease)
            except LockUnavailable as e:
                db.log_event("INFO", f"Initial spec not seeded yet: {e}", fleet=self.fleet)
            spec = self.store.get_spec()

        for member_id, image in self.compute.discover():
            if member_id in self.members:
                continue
            self._adopt(FleetMember(id=member_id, image=image, address=self.compute.address(member_id)))
            db.log_event("INFO", "Re-adopted running member", fleet=self.fleet, member=member_id)
        return spec

    def _seed_initial_spec(self, lease: Lease) -> None:
        if self.store.latest_version() is None:
            self.store.put_spec(self.initial_spec, expected_version=None, fence=lease.fence)
            db.log_event("INFO", f"Recorded initial capacity spec {self.initial_spec}", fleet=self.fleet)

    # Operator mutation

    def set_desired_capacity(
        self,
        desired: int,
        min_size: int | None = None,
        max_size: int | None = None,
        image: str | None = None,
        holder: str | None = None,
    ) -> tuple[int, CapacitySpec]:
        """Locked read-modify-write of the capacity spec.

        The new spec is durably recorded before any cycle acts on it. Raises
        LockUnavailable if another writer holds the fleet lock, StaleWrite if
        the store moved on underneath a reclaimed lease, ValueError on bounds.
        """
        with self.locks.hold(self.lock_key, holder=holder, lease_s=self.lease_s) as lease:
            base_version = self.store.latest_version()
            current = self.store.get_spec() or self.initial_spec
            if current is None and (min_size is None or max_size is None or image is None):
                raise ValueError("No capacity spec recorded yet; min_size, max_size and image are required.")
            new = CapacitySpec(
                min_size=min_size if min_size is not None else current.min_size,
                max_size=max_size if max_size is not None else current.max_size,
                desired=int(desired),
                image=image or current.image,
            )
            version = self.store.put_spec(new, expected_version=base_version, fence=lease.fence)
        db.log_event(
            "INFO",
            f"Desired capacity set to {new.desired} (min={new.min_size}, max={new.max_size}) as version {version}",
            fleet=self.fleet,
        )
        return version, new

    # Reconciliation

    def live_members(self) -> list[FleetMember]:
        with self._members_lock:
            return [m for m in self.members.values() if not m.draining]

    def reconcile_once(self) -> CycleReport:
        lease = self.locks.acquire(self.lock_key, self.holder, self.lease_s)
        if lease is None:
            report = CycleReport(CycleState.SKIPPED, message="Fleet lock unavailable; retry next cycle.")
            self.last_report = report
            return report
        try:
            report = self._cycle(lease)
        finally:
            self.locks.release(self.lock_key, self.holder)
        self.last_report = report
        return report

    def _renew_lease(self) -> None:
        if not self.locks.renew(self.lock_key, self.holder, self.lease_s):
            raise LockUnavailable(f"Lost the lease on '{self.lock_key}' mid-cycle.")

    def _cycle(self, lease: Lease) -> CycleReport:
        report = CycleReport(CycleState.EVALUATING)
        if self.initial_spec is not None:
            self._seed_initial_spec(lease)
        spec = self.store.get_spec()
        if spec is None:
            report.state = CycleState.SKIPPED
            report.message = "No capacity spec recorded."
            return report
        report.desired = spec.desired

        try:
            self._finish_pending_terminations(report)
            self._prune_vanished()

            live = self.live_members()
            if len(live) < spec.desired:
                report.state = CycleState.SCALING_OUT
                for _ in range(spec.desired - len(live)):
                    report.launched.append(self._launch(spec.image).id)
            elif len(live) > spec.desired:
                report.state = CycleState.SCALING_IN
                # Unhealthy/unknown first, then newest.
                victims = sorted(live, key=lambda m: (m.health is HealthStatus.HEALTHY, -m.launched_at))
                for m in victims[: len(live) - spec.desired]:
                    self._drain_and_terminate(m)
                    report.terminated.append(m.id)
            elif self._replace_one(spec, live, report):
                report.state = CycleState.REPLACING
            else:
                report.state = CycleState.STABLE
        except ProvisioningFailure as e:
            report.state = CycleState.FAILED
            report.message = str(e)
            db.log_event("ERROR", f"Reconcile cycle failed: {e}", fleet=self.fleet)
            if settings.enable_email:
                send_email(f"CYCLE FAILED: {self.fleet}", str(e))
        except LockUnavailable as e:
            # Whoever reclaimed the lease owns the fleet now; stop acting on it.
            report.state = CycleState.FAILED
            report.message = str(e)
            db.log_event("WARN", f"Reconcile cycle aborted: {e}", fleet=self.fleet)

        report.live = len(self.live_members())
        if report.state is not CycleState.STABLE:
            db.log_event(
                "INFO" if report.state is not CycleState.FAILED else "WARN",
                f"Cycle {report.state.value}: desired={report.desired} live={report.live} "
                f"launched={len(report.launched)} terminated={len(report.terminated)}",
                fleet=self.fleet,
            )
        return report

    def _replace_one(self, spec: CapacitySpec, live: list[FleetMember], report: CycleReport) -> bool:
        """Replace one unhealthy or outdated member.

        Launch first when there is headroom below max, otherwise drain first.
        Image rotation waits until no member is still in unknown health.
        """
        stale = [m for m in live if m.health is HealthStatus.UNHEALTHY]
        if not stale:
            if any(m.health is HealthStatus.UNKNOWN for m in live):
                return False
            stale = [m for m in live if m.image != spec.image]
        if not stale:
            return False
        old = stale[0]
        reason = "unhealthy" if old.health is HealthStatus.UNHEALTHY else f"image {old.image} != {spec.image}"
        db.log_event("INFO", f"Replacing member ({reason})", fleet=self.fleet, member=old.id)
        if len(live) + 1 <= spec.max_size:
            report.launched.append(self._launch(spec.image).id)
            self._drain_and_terminate(old)
        else:
            self._drain_and_terminate(old)
            report.launched.append(self._launch(spec.image).id)
        report.terminated.append(old.id)
        return True

    def _launch(self, image: str) -> FleetMember:
        member_id = self._with_retries("launch", lambda: self.compute.launch(image))
        try:
            address = self.compute.address(member_id)
        except Exception as e:
            self._with_retries("terminate", lambda: self.compute.terminate(member_id))
            raise ProvisioningFailure(f"Launched {member_id} but could not resolve its address: {e}") from e
        member = FleetMember(id=member_id, image=image, address=address)
        self._adopt(member)
        db.log_event("INFO", f"Launched member from {image}", fleet=self.fleet, member=member_id)
        return member

    def _adopt(self, member: FleetMember) -> None:
        # Registered in unknown health: not routable until the checker says so.
        with self._members_lock:
            self.members[member.id] = member
        self.registry.register(member)
        self.checker.track(member)

    def _drain_and_terminate(self, member: FleetMember) -> None:
        member.draining = True
        self.registry.deregister(member.id)
        self.checker.untrack(member.id)

        try:
            deadline = self.clock() + self.drain_timeout_s
            while self.runtime.active_requests(member.id) > 0 and self.clock() < deadline:
                self.sleep(0.1)
                self._renew_lease()
            self._renew_lease()
        except LockUnavailable:
            # Put the member back as it was; the new lease holder decides its fate.
            member.draining = False
            self.registry.register(member)
            self.checker.track(member)
            raise
        remaining = self.runtime.active_requests(member.id)
        if remaining:
            db.log_event(
                "WARN",
                f"Drain timed out with {remaining} in-flight requests; forcing termination",
                fleet=self.fleet,
                member=member.id,
            )

        with self._members_lock:
            self.members.pop(member.id, None)
        try:
            self._with_retries("terminate", lambda: self.compute.terminate(member.id))
        except (ProvisioningFailure, LockUnavailable):
            self.pending_termination[member.id] = member
            raise
        db.log_event("INFO", "Terminated member", fleet=self.fleet, member=member.id)

    def _finish_pending_terminations(self, report: CycleReport) -> None:
        for member_id in list(self.pending_termination):
            self._with_retries("terminate", lambda: self.compute.terminate(member_id))
            self.pending_termination.pop(member_id, None)
            report.terminated.append(member_id)
            db.log_event("INFO", "Terminated member left over from a failed cycle", fleet=self.fleet, member=member_id)

    def _prune_vanished(self) -> None:
        for m in self.live_members():
            if self.compute.is_running(m.id):
                continue
            self.registry.deregister(m.id)
            self.checker.untrack(m.id)
            with self._members_lock:
                self.members.pop(m.id, None)
            db.log_event("WARN", "Member vanished; dropping it from the fleet", fleet=self.fleet, member=m.id)

    def _with_retries(self, op: str, fn: Callable[[], T]) -> T:
        last: Exception | None = None
        for attempt in range(1, self.provision_attempts + 1):
            self._renew_lease()
            try:
                return fn()
            except Exception as e:
                last = e
                db.log_event(
                    "WARN",
                    f"{op} attempt {attempt}/{self.provision_attempts} failed: {type(e).__name__}: {e}",
                    fleet=self.fleet,
                )
                if attempt < self.provision_attempts:
                    self.sleep(self.provision_backoff_s * (2 ** (attempt - 1)))
        raise ProvisioningFailure(f"{op} failed after {self.provision_attempts} attempts: {last}") from last

    # Read-only status

    def status(self) -> dict:
        spec = self.store.get_spec()
        with self._members_lock:
            members = [m.to_dict() for m in self.members.values()]
        healthy = self.registry.current_healthy_set()
        return {
            "fleet": self.fleet,
            "spec": None
            if spec is None
            else {"min_size": spec.min_size, "max_size": spec.max_size, "desired": spec.desired, "image": spec.image},
            "spec_version": self.store.latest_version(),
            "live": len([m for m in members if not m["draining"]]),
            "healthy": len(healthy),
            "members": members,
            "pending_termination": sorted(self.pending_termination),
            "lock_holder": self.locks.is_held(self.lock_key),
            "last_cycle": self.last_report.to_dict() if self.last_report else None,
        }
