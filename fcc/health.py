from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock, Thread
from typing import Callable

import httpx

from . import db
from .alerts import send_email
from .errors import ProbeFailure, ProbeTimeout
from .registry import TargetRegistry
from .runtime import FleetMember, HealthStatus
from .settings import settings


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    latency_ms: float | None = None
    timed_out: bool = False


def check_health(url: str, timeout_s: float = 2.0) -> ProbeResult:
    """Call a member health endpoint.

    Expected JSON: {"status": "healthy"}. A timeout counts as a failure.
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return ProbeResult(False, f"HTTP {resp.status_code}", latency_ms)
        try:
            data = resp.json()
        except ValueError:
            return ProbeResult(False, "Invalid JSON", latency_ms)
        if isinstance(data, dict) and data.get("status") == "healthy":
            return ProbeResult(True, "Healthy", latency_ms)
        return ProbeResult(False, f"Unhealthy payload: {data!r}", latency_ms)
    except httpx.TimeoutException:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult(False, "Timed out", latency_ms, timed_out=True)
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult(False, f"No response: {type(e).__name__}", latency_ms)


Probe = Callable[[FleetMember], ProbeResult]


class HealthChecker:
    """Probes tracked members and applies threshold hysteresis.

    unknown/unhealthy -> healthy needs ``healthy_threshold`` consecutive
    successes; healthy/unknown -> unhealthy needs ``unhealthy_threshold``
    consecutive failures. Counter updates are serialized per member, probes of
    different members run in parallel.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        probe: Probe | None = None,
        healthy_threshold: int | None = None,
        unhealthy_threshold: int | None = None,
        interval_s: float | None = None,
        timeout_s: float | None = None,
        path: str | None = None,
        fleet: str | None = None,
    ):
        self.registry = registry
        self.healthy_threshold = max(1, int(healthy_threshold or settings.healthy_threshold))
        self.unhealthy_threshold = max(1, int(unhealthy_threshold or settings.unhealthy_threshold))
        self.interval_s = interval_s if interval_s is not None else settings.health_interval_s
        self.timeout_s = timeout_s if timeout_s is not None else settings.health_timeout_s
        self.path = path or settings.health_path
        self.fleet = fleet or settings.fleet_id
        self.probe = probe or self._http_probe
        self._members: dict[str, FleetMember] = {}
        self._member_locks: dict[str, Lock] = {}
        self._lock = Lock()
        self._stop = False
        self._thr: Thread | None = None

    def _http_probe(self, member: FleetMember) -> ProbeResult:
        return check_health(f"{member.address}{self.path}", timeout_s=self.timeout_s)

    def track(self, member: FleetMember) -> None:
        with self._lock:
            self._members[member.id] = member
            self._member_locks.setdefault(member.id, Lock())

    def untrack(self, member_id: str) -> None:
        with self._lock:
            self._members.pop(member_id, None)
            self._member_locks.pop(member_id, None)

    def tracked(self) -> list[FleetMember]:
        with self._lock:
            return list(self._members.values())

    def probe_member(self, member_id: str) -> HealthStatus | None:
        """Run one probe for ``member_id`` and return its resulting status."""
        with self._lock:
            member = self._members.get(member_id)
            mlock = self._member_locks.get(member_id)
        if member is None or mlock is None:
            return None

        try:
            result = self.probe(member)
        except ProbeTimeout as e:
            result = ProbeResult(False, f"Timed out: {e}", timed_out=True)
        except ProbeFailure as e:
            result = ProbeResult(False, str(e))
        except Exception as e:
            result = ProbeResult(False, f"Probe error: {type(e).__name__}: {e}")

        with mlock:
            return self._apply(member, result)

    def _apply(self, member: FleetMember, result: ProbeResult) -> HealthStatus:
        prev = member.health
        if result.ok:
            member.consecutive_successes += 1
            member.consecutive_failures = 0
            if prev is not HealthStatus.HEALTHY and member.consecutive_successes >= self.healthy_threshold:
                member.health = HealthStatus.HEALTHY
        else:
            member.consecutive_failures += 1
            member.consecutive_successes = 0
            if prev is not HealthStatus.UNHEALTHY and member.consecutive_failures >= self.unhealthy_threshold:
                member.health = HealthStatus.UNHEALTHY

        if member.health is not prev:
            self.registry.refresh(member.id)
            self._on_transition(member, prev, result)
        return member.health

    def _on_transition(self, member: FleetMember, prev: HealthStatus, result: ProbeResult) -> None:
        if member.health is HealthStatus.HEALTHY:
            db.log_event("INFO", f"Member became healthy (was {prev.value})", fleet=self.fleet, member=member.id)
        else:
            db.log_event(
                "WARN",
                f"Member became unhealthy after {member.consecutive_failures} failed checks: {result.message}",
                fleet=self.fleet,
                member=member.id,
            )
        self._maybe_email(member, result.message)

    def _maybe_email(self, member: FleetMember, msg: str) -> None:
        if not settings.enable_email:
            return
        ok = member.health is HealthStatus.HEALTHY
        subject = f"{'RECOVERED' if ok else 'DOWN'}: {self.fleet} ({member.id})"
        body = f"Fleet: {self.fleet}\nMember: {member.id}\nStatus: {member.health.value}\nDetail: {msg}"
        send_email(subject, body)

    def run_once(self) -> dict[str, HealthStatus | None]:
        ids = [m.id for m in self.tracked()]
        if not ids:
            return {}
        with ThreadPoolExecutor(max_workers=min(32, len(ids))) as pool:
            statuses = list(pool.map(self.probe_member, ids))
        return dict(zip(ids, statuses))

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True

    def _loop(self) -> None:
        db.log_event("INFO", "Health checker started", fleet=self.fleet)
        while not self._stop:
            try:
                self.run_once()
            except Exception as e:
                db.log_event("ERROR", f"Health check round failed: {type(e).__name__}: {e}", fleet=self.fleet)
            time.sleep(max(0.1, self.interval_s))
