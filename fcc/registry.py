from __future__ import annotations

from threading import Lock

from .runtime import FleetMember, HealthStatus


class TargetRegistry:
    """Members eligible for traffic: registered AND healthy.

    Writers serialize on ``_lock`` and publish a fresh immutable tuple; readers
    just read the current reference, so routing never waits on a health
    transition and vice versa.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._registered: dict[str, FleetMember] = {}
        self._healthy: tuple[FleetMember, ...] = ()

    def register(self, member: FleetMember) -> None:
        with self._lock:
            self._registered[member.id] = member
            self._publish()

    def deregister(self, member_id: str) -> None:
        with self._lock:
            if self._registered.pop(member_id, None) is not None:
                self._publish()

    def refresh(self, member_id: str) -> None:
        """Re-evaluate eligibility after ``member_id`` changed health."""
        with self._lock:
            if member_id in self._registered:
                self._publish()

    def _publish(self) -> None:
        self._healthy = tuple(
            m for m in self._registered.values() if m.health is HealthStatus.HEALTHY and not m.draining
        )

    def healthy_members(self) -> tuple[FleetMember, ...]:
        return self._healthy

    def current_healthy_set(self) -> frozenset[str]:
        return frozenset(m.id for m in self._healthy)

    def is_registered(self, member_id: str) -> bool:
        return member_id in self._registered

    def registered_ids(self) -> list[str]:
        with self._lock:
            return list(self._registered)
