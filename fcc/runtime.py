from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from threading import Lock


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class FleetMember:
    id: str
    image: str
    address: str
    launched_at: float = field(default_factory=time.time)
    # Mutated only by the health checker.
    health: HealthStatus = HealthStatus.UNKNOWN
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    draining: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        d["health"] = self.health.value
        return d


@dataclass(frozen=True)
class CapacitySpec:
    min_size: int
    max_size: int
    desired: int
    image: str

    def __post_init__(self) -> None:
        if self.min_size < 0:
            raise ValueError("min_size must be >= 0")
        if self.max_size < self.min_size:
            raise ValueError("max_size must be >= min_size")
        if not (self.min_size <= self.desired <= self.max_size):
            raise ValueError(f"desired={self.desired} must be within [{self.min_size}, {self.max_size}]")
        if not self.image:
            raise ValueError("image must not be empty")

    def to_json(self) -> bytes:
        return json.dumps(asdict(self), sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "CapacitySpec":
        data = json.loads(raw.decode("utf-8"))
        return cls(
            min_size=int(data["min_size"]),
            max_size=int(data["max_size"]),
            desired=int(data["desired"]),
            image=str(data["image"]),
        )


FORWARD = "forward"
FIXED_RESPONSE = "fixed-response"


@dataclass(frozen=True)
class RoutingRule:
    priority: int
    path: str  # fnmatch-style pattern, e.g. "/api/*"
    action: str  # forward|fixed-response
    status_code: int = 404
    body: str = "Not Found"

    def __post_init__(self) -> None:
        if self.action not in {FORWARD, FIXED_RESPONSE}:
            raise ValueError(f"Unknown rule action: {self.action!r}")

    @property
    def is_catch_all(self) -> bool:
        return self.path == "*"


@dataclass(frozen=True)
class Lease:
    key: str
    holder: str
    acquired_at: float
    expires_at: float | None
    fence: int


@dataclass(frozen=True)
class StateVersion:
    version: int
    payload: bytes
    created_at: str
    fence: int | None = None


class RuntimeState:
    """In-memory counters shared by the router and the controller."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.rr_index: dict[str, int] = {}  # key -> idx
        self.in_flight: dict[str, int] = {}  # member_id -> active requests

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i

    def begin_request(self, member_id: str) -> None:
        with self.lock:
            self.in_flight[member_id] = self.in_flight.get(member_id, 0) + 1

    def end_request(self, member_id: str) -> None:
        with self.lock:
            n = self.in_flight.get(member_id, 0) - 1
            if n <= 0:
                self.in_flight.pop(member_id, None)
            else:
                self.in_flight[member_id] = n

    def active_requests(self, member_id: str) -> int:
        with self.lock:
            return self.in_flight.get(member_id, 0)
