from __future__ import annotations

import secrets
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from . import db
from .errors import LockUnavailable
from .runtime import Lease


def new_holder_token() -> str:
    return secrets.token_hex(8)


class DistributedLock:
    """Mutual exclusion over the ``locks`` table.

    Acquisition is one conditional upsert: the row is taken if it does not
    exist, was released, or its lease has expired. Every successful
    acquisition bumps the key's fence, which is never reset, so writers can
    tag state with it and late holders can be rejected downstream.

    Long holders call ``renew`` to push their expiry and must stop once it
    returns False. A holder that never renews is not stopped; the state
    store rejects its late writes by fence instead.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    def acquire(self, key: str, holder: str, lease_s: float | None = None) -> Lease | None:
        """Return the Lease on success, None if someone else holds ``key``."""
        now = self.clock()
        expires_at = now + lease_s if lease_s is not None else None
        with db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO locks (lock_key, holder, acquired_at, expires_at, fence)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(lock_key) DO UPDATE SET
                  holder=excluded.holder,
                  acquired_at=excluded.acquired_at,
                  expires_at=excluded.expires_at,
                  fence=locks.fence+1
                WHERE locks.holder IS NULL
                   OR (locks.expires_at IS NOT NULL AND locks.expires_at < excluded.acquired_at)
                """,
                (key, holder, now, expires_at),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM locks WHERE lock_key=?", (key,)).fetchone()
        return Lease(
            key=key,
            holder=row["holder"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
            fence=row["fence"],
        )

    def release(self, key: str, holder: str) -> bool:
        """Release ``key`` if ``holder`` still owns it. False means not-holder."""
        with db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE locks SET holder=NULL, acquired_at=NULL, expires_at=NULL
                WHERE lock_key=? AND holder=?
                """,
                (key, holder),
            )
            return cur.rowcount == 1

    def renew(self, key: str, holder: str, lease_s: float | None = None) -> bool:
        """Push the expiry of a lease ``holder`` still owns. False means it was lost."""
        now = self.clock()
        expires_at = now + lease_s if lease_s is not None else None
        with db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE locks SET expires_at=?
                WHERE lock_key=? AND holder=? AND (expires_at IS NULL OR expires_at >= ?)
                """,
                (expires_at, key, holder, now),
            )
            return cur.rowcount == 1

    def is_held(self, key: str) -> str | None:
        """Return the current holder of ``key`` or None if free or expired."""
        lease = self.current(key)
        return lease.holder if lease else None

    def current(self, key: str) -> Lease | None:
        now = self.clock()
        with db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM locks
                WHERE lock_key=? AND holder IS NOT NULL
                  AND (expires_at IS NULL OR expires_at >= ?)
                """,
                (key, now),
            ).fetchone()
        if not row:
            return None
        return Lease(
            key=row["lock_key"],
            holder=row["holder"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
            fence=row["fence"],
        )

    def stale_locks(self) -> list[Lease]:
        """Locks whose lease ran out without a release (abandoned holders)."""
        now = self.clock()
        with db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM locks
                WHERE holder IS NOT NULL AND expires_at IS NOT NULL AND expires_at < ?
                ORDER BY lock_key
                """,
                (now,),
            ).fetchall()
        return [
            Lease(
                key=r["lock_key"],
                holder=r["holder"],
                acquired_at=r["acquired_at"],
                expires_at=r["expires_at"],
                fence=r["fence"],
            )
            for r in rows
        ]

    @contextmanager
    def hold(self, key: str, holder: str | None = None, lease_s: float | None = None) -> Iterator[Lease]:
        """Acquire without blocking; raise LockUnavailable if already held."""
        holder = holder or new_holder_token()
        lease = self.acquire(key, holder, lease_s)
        if lease is None:
            raise LockUnavailable(f"Lock '{key}' is held by {self.is_held(key) or 'another holder'}.")
        try:
            yield lease
        finally:
            self.release(key, holder)
