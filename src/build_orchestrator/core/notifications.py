"""Human-facing notifications: open questions raised by agents, plus Slack posts."""

import json
import logging
import sqlite3
from datetime import datetime

from build_orchestrator.db.models import Notification
from build_orchestrator.integrations import slack as slack_mod

logger = logging.getLogger(__name__)


def create_notification(
    db: sqlite3.Connection,
    project_id: str,
    source: str,
    source_id: str,
    questions: list[dict],
) -> Notification:
    """Record open questions that block ``source_id`` until a human answers."""
    cur = db.execute(
        """INSERT INTO open_questions (project_id, source, source_id, questions)
           VALUES (?, ?, ?, ?)""",
        (project_id, source, source_id, json.dumps(questions)),
    )
    db.commit()
    return get_notification(db, cur.lastrowid)


def get_notification(db: sqlite3.Connection, notification_id: int) -> Notification | None:
    row = db.execute(
        "SELECT * FROM open_questions WHERE id = ?", (notification_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_notification(row)


def list_notifications(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = "open",
) -> list[Notification]:
    query = "SELECT * FROM open_questions WHERE project_id = ?"
    params: list = [project_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    rows = db.execute(query + " ORDER BY id", params).fetchall()
    return [_row_to_notification(r) for r in rows]


def resolve_notification(db: sqlite3.Connection, notification_id: int) -> Notification:
    if not get_notification(db, notification_id):
        raise ValueError(f"Notification not found: {notification_id}")
    db.execute(
        "UPDATE open_questions SET status = 'resolved', resolved_at = datetime('now') WHERE id = ?",
        (notification_id,),
    )
    db.commit()
    return get_notification(db, notification_id)


def resolve_for_source(db: sqlite3.Connection, source_id: str) -> int:
    cur = db.execute(
        """UPDATE open_questions SET status = 'resolved', resolved_at = datetime('now')
           WHERE source_id = ? AND status = 'open'""",
        (source_id,),
    )
    db.commit()
    return cur.rowcount


def notify_slack(
    token: str | None,
    channel: str | None,
    text: str,
    blocks: list[dict] | None = None,
):
    """Post to Slack when configured. Best-effort: failures are logged, not raised."""
    if not token or not channel:
        return
    try:
        slack_mod.send_message(token, channel, text, blocks=blocks)
    except Exception:
        logger.exception("Failed to send Slack notification")


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        project_id=row["project_id"],
        source=row["source"],
        source_id=row["source_id"],
        questions=json.loads(row["questions"]),
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
        resolved_at=_parse_dt(row["resolved_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
