import os as _os
import sys
from types import SimpleNamespace

import pytest
from cryptography.fernet import Fernet

# Ensure project root is importable (so `import fcc` / `import main` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fcc import db  # noqa: E402
from fcc.health import HealthChecker, ProbeResult  # noqa: E402
from fcc.locks import DistributedLock  # noqa: E402
from fcc.reconciler import CapacityController  # noqa: E402
from fcc.registry import TargetRegistry  # noqa: E402
from fcc.runtime import CapacitySpec, RuntimeState  # noqa: E402
from fcc.settings import Settings  # noqa: E402
from fcc.state_store import VersionedStateStore  # noqa: E402


@pytest.fixture(autouse=True)
def tmp_db(tmp_path, monkeypatch):
    """Point every test at its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "fcc-test.db")))
    db.init_db()
    return tmp_path / "fcc-test.db"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeCompute:
    """Compute collaborator double: ids are m-1, m-2, ..."""

    def __init__(self):
        self.running: dict[str, str] = {}
        self.launched: list[str] = []
        self.terminated: list[str] = []
        self.ops: list[tuple[str, str]] = []
        self.launch_failures = 0
        self.terminate_failures = 0
        self._n = 0

    def launch(self, image: str) -> str:
        if self.launch_failures > 0:
            self.launch_failures -= 1
            raise RuntimeError("quota exceeded")
        self._n += 1
        member_id = f"m-{self._n}"
        self.running[member_id] = image
        self.launched.append(member_id)
        self.ops.append(("launch", member_id))
        return member_id

    def terminate(self, member_id: str) -> None:
        if self.terminate_failures > 0:
            self.terminate_failures -= 1
            raise RuntimeError("api unavailable")
        self.running.pop(member_id, None)
        self.terminated.append(member_id)
        self.ops.append(("terminate", member_id))

    def is_running(self, member_id: str) -> bool:
        return member_id in self.running

    def address(self, member_id: str) -> str:
        return f"http://{member_id}:8080"

    def discover(self) -> list[tuple[str, str]]:
        return list(self.running.items())


@pytest.fixture
def state_key():
    return Fernet.generate_key()


@pytest.fixture
def fleet(clock, state_key):
    """A fully wired controller with scripted probes and a fake compute layer.

    ``fleet.outcomes[member_id] = False`` makes that member's probes fail.
    """
    outcomes: dict[str, bool] = {}
    compute = FakeCompute()
    runtime = RuntimeState()
    registry = TargetRegistry()
    locks = DistributedLock(clock=clock)
    store = VersionedStateStore("capacity/test", key=state_key, block_public_access=True)
    checker = HealthChecker(
        registry,
        probe=lambda m: ProbeResult(outcomes.get(m.id, True), "scripted"),
        healthy_threshold=2,
        unhealthy_threshold=2,
        interval_s=0.1,
        timeout_s=0.1,
        path="/health",
        fleet="test",
    )
    controller = CapacityController(
        fleet="test",
        compute=compute,
        registry=registry,
        checker=checker,
        locks=locks,
        store=store,
        runtime=runtime,
        initial_spec=CapacitySpec(min_size=1, max_size=6, desired=2, image="worker:v1"),
        lease_s=30,
        provision_attempts=3,
        provision_backoff_s=0.5,
        drain_timeout_s=5,
        sleep=clock.sleep,
        clock=clock,
    )
    return SimpleNamespace(
        outcomes=outcomes,
        compute=compute,
        runtime=runtime,
        registry=registry,
        locks=locks,
        store=store,
        checker=checker,
        controller=controller,
        clock=clock,
    )
