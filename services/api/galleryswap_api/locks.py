"""Cross-process mutual exclusion for scheduled jobs.

Postgres advisory locks belong to the server connection that took them, while
an ORM ``Session`` hands its connection back to the pool on every commit. The
lock therefore lives on a connection of its own, checked out for the whole
``with`` block and released on that same connection.
"""

from __future__ import annotations

import contextlib
import hashlib
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session

from galleryswap_api.eventlog import log


def lock_name(*parts: object) -> str:
    return ":".join(str(p) for p in parts)


def advisory_lock_key(*, name: str) -> int:
    raw = f"galleryswap:{str(name)}".encode("utf-8")
    digest = hashlib.sha256(raw).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=True)


class AdvisoryLock:
    def __init__(self, bind: Engine, *, name: str) -> None:
        self.bind = bind
        self.name = str(name)
        self.key = advisory_lock_key(name=self.name)
        self._conn: Connection | None = None

    @property
    def enforced(self) -> bool:
        # SQLite serializes writers itself.
        return getattr(self.bind.dialect, "name", "") == "postgresql"

    def acquire(self) -> bool:
        if not self.enforced:
            return True
        conn = self.bind.connect()
        try:
            got = bool(
                conn.execute(
                    text("SELECT pg_try_advisory_lock(:k)"), {"k": self.key}
                ).scalar()
            )
            conn.commit()
        except Exception as exc:  # noqa: BLE001
            conn.close()
            log(
                "locks",
                "acquire failed",
                level="error",
                name=self.name,
                error=str(exc)[:400],
            )
            return False
        if not got:
            conn.close()
            return False
        self._conn = conn
        return True

    def release(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            released = bool(
                conn.execute(
                    text("SELECT pg_advisory_unlock(:k)"), {"k": self.key}
                ).scalar()
            )
            conn.commit()
        except Exception as exc:  # noqa: BLE001
            # Dropping the server session releases every lock it holds.
            conn.invalidate()
            log(
                "locks",
                "release failed",
                level="error",
                name=self.name,
                error=str(exc)[:400],
            )
        else:
            if not released:
                log("locks", "lock was not held", level="warning", name=self.name)
        finally:
            conn.close()


@contextlib.contextmanager
def advisory_lock(session: Session, *, name: str) -> Iterator[bool]:
    """Yields False when another process holds ``name``."""
    lock = AdvisoryLock(session.get_bind(), name=name)
    acquired = lock.acquire()
    try:
        yield acquired
    finally:
        lock.release()
