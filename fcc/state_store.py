from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from . import db
from .errors import ConfigurationError, DeletionProtected, StaleWrite
from .runtime import CapacitySpec, StateVersion
from .settings import settings


class VersionedStateStore:
    """Append-only, encrypted, versioned blobs in the ``state_versions`` table.

    ``put`` always creates a new version. Nothing here deletes or rewrites a
    version, and the table itself carries triggers that abort UPDATE/DELETE.
    """

    def __init__(self, name: str, key: str | bytes | None = None, block_public_access: bool | None = None):
        if block_public_access is None:
            block_public_access = settings.block_public_access
        if not block_public_access:
            raise ConfigurationError("State store requires public access blocking (FCC_BLOCK_PUBLIC_ACCESS=true).")
        key = key if key is not None else settings.state_key
        if not key:
            raise ConfigurationError("No encryption key configured for the state store (FCC_STATE_KEY).")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as e:
            raise ConfigurationError(f"Invalid state store key: {e}") from e
        self.name = name

    def put(self, payload: bytes, expected_version: int | None = None, fence: int | None = None) -> int:
        """Append ``payload`` and return the new version id.

        ``expected_version`` turns the write into a compare-and-append: it must
        equal the current latest version. ``fence`` must not be lower than any
        fence already written to this store. Either mismatch raises StaleWrite.
        """
        token = self._fernet.encrypt(payload)
        conn = db.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT MAX(version) AS v, MAX(fence) AS f FROM state_versions WHERE store=?",
                (self.name,),
            ).fetchone()
            latest, max_fence = row["v"], row["f"]
            if expected_version is not None and latest != expected_version:
                raise StaleWrite(f"Expected version {expected_version}, latest is {latest}.")
            if fence is not None and max_fence is not None and fence < max_fence:
                raise StaleWrite(f"Fence {fence} is older than already written fence {max_fence}.")
            cur = conn.execute(
                "INSERT INTO state_versions (store, payload, fence, created_at) VALUES (?, ?, ?, ?)",
                (self.name, token, fence, db.utc_now()),
            )
            conn.commit()
            return int(cur.lastrowid)
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, version: int | None = None) -> bytes:
        return self.get_version(version).payload

    def get_version(self, version: int | None = None) -> StateVersion:
        with db.connect() as conn:
            if version is None:
                row = conn.execute(
                    "SELECT * FROM state_versions WHERE store=? ORDER BY version DESC LIMIT 1", (self.name,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM state_versions WHERE store=? AND version=?", (self.name, version)
                ).fetchone()
        if not row:
            raise KeyError(f"No state version {version if version is not None else '(latest)'} in '{self.name}'.")
        try:
            payload = self._fernet.decrypt(row["payload"])
        except InvalidToken as e:
            raise ConfigurationError(f"Cannot decrypt version {row['version']}: wrong key.") from e
        return StateVersion(version=row["version"], payload=payload, created_at=row["created_at"], fence=row["fence"])

    def latest_version(self) -> int | None:
        with db.connect() as conn:
            row = conn.execute("SELECT MAX(version) AS v FROM state_versions WHERE store=?", (self.name,)).fetchone()
        return row["v"]

    def list_versions(self) -> list[int]:
        with db.connect() as conn:
            rows = conn.execute(
                "SELECT version FROM state_versions WHERE store=? ORDER BY version ASC", (self.name,)
            ).fetchall()
        return [r["version"] for r in rows]

    def destroy(self) -> None:
        raise DeletionProtected(f"State store '{self.name}' cannot be deleted.")

    # CapacitySpec helpers

    def put_spec(self, spec: CapacitySpec, expected_version: int | None = None, fence: int | None = None) -> int:
        return self.put(spec.to_json(), expected_version=expected_version, fence=fence)

    def get_spec(self, version: int | None = None) -> CapacitySpec | None:
        try:
            return CapacitySpec.from_json(self.get(version))
        except KeyError:
            return None
