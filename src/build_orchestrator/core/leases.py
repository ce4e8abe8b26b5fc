"""Per-project ownership leases.

Only the orchestrator holding a project's lease may treat the project's
in-progress agent tasks as orphans. The holder renews the lease from its loop;
a lease whose heartbeat is older than the TTL is free to take over, so a
crashed process does not keep its projects.
"""

import logging
import sqlite3
from datetime import datetime, timedelta

from build_orchestrator.db.engine import format_ts, parse_ts, utcnow

logger = logging.getLogger(__name__)

LEASE_TTL = timedelta(seconds=60)


def acquire(
    db: sqlite3.Connection,
    project_id: str,
    owner: str,
    ttl: timedelta = LEASE_TTL,
    now: datetime | None = None,
) -> bool:
    """Take or refresh the lease. False while another owner's lease is live."""
    now = now or utcnow()
    db.execute(
        """INSERT INTO project_leases (project_id, owner, heartbeat_at) VALUES (?, ?, ?)
           ON CONFLICT(project_id) DO UPDATE SET
             owner = excluded.owner,
             heartbeat_at = excluded.heartbeat_at
           WHERE project_leases.owner = excluded.owner OR project_leases.heartbeat_at < ?""",
        (project_id, owner, format_ts(now), format_ts(now - ttl)),
    )
    db.commit()
    acquired = holder(db, project_id) == owner
    if not acquired:
        logger.debug("Lease on %s held by another orchestrator", project_id)
    return acquired


def renew(db: sqlite3.Connection, project_id: str, owner: str, now: datetime | None = None) -> bool:
    """Bump the heartbeat. False if the lease was lost to another owner."""
    cursor = db.execute(
        "UPDATE project_leases SET heartbeat_at = ? WHERE project_id = ? AND owner = ?",
        (format_ts(now or utcnow()), project_id, owner),
    )
    db.commit()
    return cursor.rowcount == 1


def release(db: sqlite3.Connection, project_id: str, owner: str) -> None:
    db.execute("DELETE FROM project_leases WHERE project_id = ? AND owner = ?", (project_id, owner))
    db.commit()


def holder(db: sqlite3.Connection, project_id: str) -> str | None:
    row = db.execute("SELECT owner FROM project_leases WHERE project_id = ?", (project_id,)).fetchone()
    return row["owner"] if row else None


def live_holder(
    db: sqlite3.Connection,
    project_id: str,
    ttl: timedelta = LEASE_TTL,
    now: datetime | None = None,
) -> str | None:
    """The owner of an unexpired lease, or None."""
    row = db.execute(
        "SELECT owner, heartbeat_at FROM project_leases WHERE project_id = ?", (project_id,)
    ).fetchone()
    if not row:
        return None
    if parse_ts(row["heartbeat_at"]) < (now or utcnow()) - ttl:
        return None
    return row["owner"]
