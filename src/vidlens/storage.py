from __future__ import annotations

import sqlite3
from typing import Any

from .db import connect_db
from .models import JOB_DONE, JOB_DOWNLOADING, JOB_FAILED, Job
from .utils import utc_now_iso

_JOB_COLUMNS = "id, message_id, url, file_path, status, created_at, updated_at"


def init_db(path: str) -> sqlite3.Connection:
    return connect_db(path)


def create_job(conn: Any, message_id: int, url: str, file_path: str) -> Job:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO downloads (message_id, url, file_path, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(message_id) DO UPDATE SET
            url=excluded.url,
            file_path=excluded.file_path,
            status=excluded.status,
            created_at=excluded.created_at,
            updated_at=excluded.updated_at
        """,
        (message_id, url, file_path, JOB_DOWNLOADING, now, now),
    )
    conn.commit()
    job = get_job(conn, message_id)
    if job is None:
        raise RuntimeError(f"job_create_failed message_id={message_id}")
    return job


def mark_job_done(conn: Any, message_id: int) -> bool:
    return _finish_job(conn, message_id, JOB_DONE)


def mark_job_failed(conn: Any, message_id: int) -> bool:
    return _finish_job(conn, message_id, JOB_FAILED)


def _finish_job(conn: Any, message_id: int, status: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE downloads
        SET status = ?, updated_at = ?
        WHERE message_id = ? AND status = ?
        """,
        (status, utc_now_iso(), message_id, JOB_DOWNLOADING),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_job(conn: Any, message_id: int) -> Job | None:
    cursor = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM downloads WHERE message_id = ?",
        (message_id,),
    )
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def get_latest_job_for_url(conn: Any, url: str) -> Job | None:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM downloads
        WHERE url = ?
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (url,),
    )
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def get_job_url(conn: Any, message_id: int) -> str | None:
    job = get_job(conn, message_id)
    return job.url if job else None


def list_jobs(conn: Any, limit: int = 50) -> list[Job]:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM downloads
        ORDER BY id DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def count_jobs(conn: Any) -> int:
    row = conn.execute("SELECT COUNT(*) FROM downloads").fetchone()
    return int(row[0] or 0)


def _row_to_job(row: tuple) -> Job:
    job_id, message_id, url, file_path, status, created_at, updated_at = row
    return Job(
        id=int(job_id),
        message_id=int(message_id),
        url=url,
        file_path=file_path,
        status=status,
        created_at=created_at,
        updated_at=updated_at,
    )
