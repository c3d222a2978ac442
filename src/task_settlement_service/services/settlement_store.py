"""SQLite-backed storage for drafts, tasks, stages, applicants, payment intents, users and events."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


class DraftAlreadyPostedError(Exception):
    """Raised when a draft that already produced a task is posted again."""


class DuplicateApplicationError(Exception):
    """Raised when a user applies twice to the same task."""


class TaskNotOpenError(Exception):
    """Raised when an application targets a task that is no longer open."""


class StaleVersionError(Exception):
    """Raised when a compare-and-swap on a task or applicant loses the race."""


class WinnerAlreadySelectedError(Exception):
    """Raised when a task already has an accepted or confirmed applicant."""


class DuplicateIntentError(Exception):
    """Raised when a live escrow intent already exists for a draft, or a reference is reused."""


class DuplicateRatingError(Exception):
    """Raised when a party rates the same task twice."""


_BOOL_COLUMNS = frozenset({"delivered", "paid", "manual_confirmation"})


class SettlementStore:
    """
    SQLite-backed storage for every settlement record.

    Task rows carry a ``version`` counter. Every task mutation is a
    compare-and-swap on it; a zero row count means another writer won.
    """

    _DRAFT_COLUMNS: tuple[str, ...] = (
        "draft_id",
        "creator_id",
        "description",
        "fields",
        "skill_level",
        "fee",
        "completion_hours",
        "revision_hours",
        "penalty_per_hour",
        "expiry_hours",
        "exchange_strategy",
        "manual_confirmation",
        "task_id",
        "created_at",
        "updated_at",
    )
    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "draft_id",
        "creator_id",
        "description",
        "fields",
        "skill_level",
        "fee",
        "currency",
        "completion_seconds",
        "revision_seconds",
        "penalty_per_hour",
        "exchange_strategy",
        "manual_confirmation",
        "offer_expiry",
        "status",
        "accepted_applicant_id",
        "doer_id",
        "decisions_locked_at",
        "payout_locked_at",
        "version",
        "created_at",
        "taken_at",
        "funded_at",
        "completed_at",
        "canceled_at",
        "canceled_by",
        "cancel_reason",
        "expired_at",
    )
    _STAGE_COLUMNS: tuple[str, ...] = (
        "task_id",
        "stage_num",
        "percent",
        "amount",
        "delivered",
        "paid",
        "delivered_at",
        "paid_at",
        "review_deadline",
        "payout_reference",
        "payout_id",
        "payout_error",
    )
    _APPLICANT_COLUMNS: tuple[str, ...] = (
        "applicant_id",
        "task_id",
        "user_id",
        "cover_text",
        "status",
        "applied_at",
        "accepted_at",
        "confirm_deadline",
        "confirmed_at",
        "declined_at",
        "canceled_at",
        "last_reminder_at",
    )
    _INTENT_COLUMNS: tuple[str, ...] = (
        "intent_id",
        "user_id",
        "kind",
        "draft_id",
        "task_id",
        "amount",
        "currency",
        "provider",
        "reference",
        "status",
        "refund_status",
        "gateway_charge_id",
        "checkout_handle",
        "failure_reason",
        "refund_reason",
        "created_at",
        "paid_at",
        "failed_at",
        "voided_at",
        "refund_requested_at",
        "refunded_at",
    )
    _USER_COLUMNS: tuple[str, ...] = (
        "user_id",
        "payout_bank_name",
        "payout_account_number",
        "total_earned",
        "total_spent",
        "total_penalties",
        "tasks_completed",
        "tasks_posted",
        "rating_count",
        "average_rating",
        "created_at",
    )
    _USER_COUNTERS = frozenset(
        {
            "total_earned",
            "total_spent",
            "total_penalties",
            "tasks_completed",
            "tasks_posted",
        }
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS drafts (
                    draft_id TEXT PRIMARY KEY,
                    creator_id TEXT NOT NULL,
                    description TEXT,
                    fields TEXT NOT NULL DEFAULT '[]',
                    skill_level TEXT,
                    fee INTEGER,
                    completion_hours INTEGER,
                    revision_hours INTEGER,
                    penalty_per_hour INTEGER,
                    expiry_hours INTEGER,
                    exchange_strategy TEXT,
                    manual_confirmation INTEGER NOT NULL DEFAULT 0,
                    task_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    draft_id TEXT NOT NULL UNIQUE,
                    creator_id TEXT NOT NULL,
                    description TEXT NOT NULL,
                    fields TEXT NOT NULL,
                    skill_level TEXT NOT NULL,
                    fee INTEGER NOT NULL CHECK (fee > 0),
                    currency TEXT NOT NULL,
                    completion_seconds INTEGER NOT NULL,
                    revision_seconds INTEGER NOT NULL,
                    penalty_per_hour INTEGER NOT NULL,
                    exchange_strategy TEXT NOT NULL,
                    manual_confirmation INTEGER NOT NULL DEFAULT 0,
                    offer_expiry TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open',
                    accepted_applicant_id TEXT,
                    doer_id TEXT,
                    decisions_locked_at TEXT,
                    payout_locked_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    taken_at TEXT,
                    funded_at TEXT,
                    completed_at TEXT,
                    canceled_at TEXT,
                    canceled_by TEXT,
                    cancel_reason TEXT,
                    expired_at TEXT
                );

                CREATE TABLE IF NOT EXISTS stages (
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    stage_num INTEGER NOT NULL CHECK (stage_num >= 1),
                    percent INTEGER NOT NULL,
                    amount INTEGER NOT NULL,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    paid INTEGER NOT NULL DEFAULT 0,
                    delivered_at TEXT,
                    paid_at TEXT,
                    review_deadline TEXT,
                    payout_reference TEXT UNIQUE,
                    payout_id TEXT,
                    payout_error TEXT,
                    PRIMARY KEY (task_id, stage_num),
                    CHECK (paid = 0 OR delivered = 1)
                );

                CREATE TABLE IF NOT EXISTS applicants (
                    applicant_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    user_id TEXT NOT NULL,
                    cover_text TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    applied_at TEXT NOT NULL,
                    accepted_at TEXT,
                    confirm_deadline TEXT,
                    confirmed_at TEXT,
                    declined_at TEXT,
                    canceled_at TEXT,
                    last_reminder_at TEXT,
                    UNIQUE(task_id, user_id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_winning_applicant
                    ON applicants(task_id)
                    WHERE status IN ('accepted', 'confirmed');

                CREATE TABLE IF NOT EXISTS payment_intents (
                    intent_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    draft_id TEXT,
                    task_id TEXT,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    currency TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    reference TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL DEFAULT 'pending',
                    refund_status TEXT NOT NULL DEFAULT 'none',
                    gateway_charge_id TEXT,
                    checkout_handle TEXT,
                    failure_reason TEXT,
                    refund_reason TEXT,
                    created_at TEXT NOT NULL,
                    paid_at TEXT,
                    failed_at TEXT,
                    voided_at TEXT,
                    refund_requested_at TEXT,
                    refunded_at TEXT
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_live_escrow_intent
                    ON payment_intents(draft_id)
                    WHERE kind = 'escrow' AND status IN ('pending', 'paid');

                CREATE INDEX IF NOT EXISTS ix_payment_intents_task
                    ON payment_intents(task_id);

                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    payout_bank_name TEXT,
                    payout_account_number TEXT,
                    total_earned INTEGER NOT NULL DEFAULT 0,
                    total_spent INTEGER NOT NULL DEFAULT 0,
                    total_penalties INTEGER NOT NULL DEFAULT 0,
                    tasks_completed INTEGER NOT NULL DEFAULT 0,
                    tasks_posted INTEGER NOT NULL DEFAULT 0,
                    rating_count INTEGER NOT NULL DEFAULT 0,
                    average_rating REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ratings (
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    rater_id TEXT NOT NULL,
                    ratee_id TEXT NOT NULL,
                    score INTEGER NOT NULL CHECK (score BETWEEN 1 AND 5),
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (task_id, rater_id)
                );

                CREATE TABLE IF NOT EXISTS events (
                    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    task_id TEXT,
                    user_id TEXT,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_events_task ON events(task_id, event_id);
                """
            )
            self._db.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE; roll back on any exception."""
        with self._lock:
            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            self._db.commit()

    @staticmethod
    def _row_to_dict(row: sqlite3.Row, columns: tuple[str, ...]) -> dict[str, Any]:
        record = {column: row[column] for column in columns}
        for column in _BOOL_COLUMNS.intersection(columns):
            record[column] = bool(record[column])
        if "fields" in record and isinstance(record["fields"], str):
            record["fields"] = json.loads(record["fields"])
        return record

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in _BOOL_COLUMNS and isinstance(value, bool):
            return int(value)
        if column == "fields" and isinstance(value, list):
            return json.dumps(value)
        return value

    def _insert(
        self,
        db: sqlite3.Connection,
        table: str,
        columns: tuple[str, ...],
        data: dict[str, Any],
    ) -> None:
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"  # nosec B608
        db.execute(sql, tuple(self._encode(column, data[column]) for column in columns))

    @staticmethod
    def _set_clause(updates: dict[str, Any], allowed: tuple[str, ...]) -> str:
        if any(column not in allowed for column in updates):
            msg = "Attempted to update unknown column"
            raise ValueError(msg)
        return ", ".join(f"{column} = ?" for column in updates)

    def _select(
        self,
        table: str,
        columns: tuple[str, ...],
        where: str,
        params: Iterable[object],
    ) -> list[dict[str, Any]]:
        sql = f"SELECT {', '.join(columns)} FROM {table} {where}"  # nosec B608
        with self._lock:
            rows = self._db.execute(sql, tuple(params)).fetchall()
        return [self._row_to_dict(row, columns) for row in rows]

    def _task_cas(
        self,
        db: sqlite3.Connection,
        task_id: str,
        updates: dict[str, Any],
        expected_version: int,
        expected_status: str | None = None,
    ) -> None:
        assignments = ["version = version + 1"]
        if updates:
            assignments.insert(0, self._set_clause(updates, self._TASK_COLUMNS))
        params: list[object] = [self._encode(column, value) for column, value in updates.items()]
        query = (
            "UPDATE tasks SET " + ", ".join(assignments) + " WHERE task_id = ? AND version = ?"
        )  # nosec B608
        params.extend([task_id, expected_version])
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)
        if db.execute(query, params).rowcount == 0:
            msg = f"Task {task_id} changed concurrently"
            raise StaleVersionError(msg)

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def get_draft(self, draft_id: str) -> dict[str, Any] | None:
        rows = self._select("drafts", self._DRAFT_COLUMNS, "WHERE draft_id = ?", (draft_id,))
        return rows[0] if rows else None

    def save_draft(self, draft: dict[str, Any]) -> None:
        """Insert or replace a draft that has not been posted yet."""
        with self._transaction() as db:
            existing = db.execute(
                "SELECT task_id FROM drafts WHERE draft_id = ?", (draft["draft_id"],)
            ).fetchone()
            if existing is not None and existing["task_id"] is not None:
                msg = f"Draft {draft['draft_id']} was already posted"
                raise DraftAlreadyPostedError(msg)
            db.execute("DELETE FROM drafts WHERE draft_id = ?", (draft["draft_id"],))
            self._insert(db, "drafts", self._DRAFT_COLUMNS, draft)

    # ------------------------------------------------------------------
    # Tasks and stages
    # ------------------------------------------------------------------

    def insert_task(
        self,
        task: dict[str, Any],
        stages: list[dict[str, Any]],
        posted_at: str,
    ) -> None:
        """Insert a task with its stages and mark the originating draft as posted."""
        try:
            with self._transaction() as db:
                self._insert(db, "tasks", self._TASK_COLUMNS, task)
                for stage in stages:
                    self._insert(
                        db,
                        "stages",
                        self._STAGE_COLUMNS,
                        {column: stage.get(column) for column in self._STAGE_COLUMNS}
                        | {"task_id": task["task_id"], "delivered": 0, "paid": 0},
                    )
                cursor = db.execute(
                    "UPDATE drafts SET task_id = ?, updated_at = ? "
                    "WHERE draft_id = ? AND task_id IS NULL",
                    (task["task_id"], posted_at, task["draft_id"]),
                )
                if cursor.rowcount == 0:
                    msg = f"Draft {task['draft_id']} was already posted"
                    raise DraftAlreadyPostedError(msg)
                self._ensure_user(db, task["creator_id"], posted_at)
                db.execute(
                    "UPDATE users SET tasks_posted = tasks_posted + 1 WHERE user_id = ?",
                    (task["creator_id"],),
                )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                msg = f"Draft {task['draft_id']} was already posted"
                raise DraftAlreadyPostedError(msg) from exc
            raise

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        rows = self._select("tasks", self._TASK_COLUMNS, "WHERE task_id = ?", (task_id,))
        return rows[0] if rows else None

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_version: int,
        expected_status: str | None = None,
    ) -> int:
        """Compare-and-swap update; returns the number of affected rows (0 or 1)."""
        try:
            with self._transaction() as db:
                self._task_cas(db, task_id, updates, expected_version, expected_status)
        except StaleVersionError:
            return 0
        return 1

    def list_tasks(
        self,
        status: str | None,
        creator_id: str | None,
        doer_id: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if creator_id is not None:
            clauses.append("creator_id = ?")
            params.append(creator_id)
        if doer_id is not None:
            clauses.append("doer_id = ?")
            params.append(doer_id)

        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        where += " ORDER BY created_at DESC"
        if limit is not None:
            where += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                where += " OFFSET ?"
                params.append(offset)
        return self._select("tasks", self._TASK_COLUMNS, where, params)

    def list_tasks_by_status(self, statuses: Iterable[str]) -> list[dict[str, Any]]:
        wanted = list(statuses)
        placeholders = ", ".join("?" for _ in wanted)
        return self._select(
            "tasks",
            self._TASK_COLUMNS,
            f"WHERE status IN ({placeholders}) ORDER BY created_at",
            wanted,
        )

    def count_tasks(self) -> int:
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def get_stages(self, task_id: str) -> list[dict[str, Any]]:
        return self._select(
            "stages", self._STAGE_COLUMNS, "WHERE task_id = ? ORDER BY stage_num", (task_id,)
        )

    def update_stage(
        self,
        task_id: str,
        stage_num: int,
        updates: dict[str, Any],
        *,
        require_unpaid: bool,
    ) -> int:
        set_clause = self._set_clause(updates, self._STAGE_COLUMNS)
        params: list[object] = [self._encode(column, value) for column, value in updates.items()]
        query = "UPDATE stages SET " + set_clause + " WHERE task_id = ? AND stage_num = ?"  # nosec B608
        params.extend([task_id, stage_num])
        if require_unpaid:
            query += " AND paid = 0"
        with self._lock:
            cursor = self._db.execute(query, params)
            self._db.commit()
        return int(cursor.rowcount)

    def update_task_and_stage(
        self,
        task_id: str,
        stage_num: int,
        *,
        expected_version: int,
        task_updates: dict[str, Any],
        stage_updates: dict[str, Any],
    ) -> None:
        """Apply a task CAS and an unpaid-stage update atomically."""
        with self._transaction() as db:
            self._task_cas(db, task_id, task_updates, expected_version)
            set_clause = self._set_clause(stage_updates, self._STAGE_COLUMNS)
            params: list[object] = [
                self._encode(column, value) for column, value in stage_updates.items()
            ]
            params.extend([task_id, stage_num])
            cursor = db.execute(
                "UPDATE stages SET " + set_clause + " WHERE task_id = ? AND stage_num = ? "
                "AND paid = 0",  # nosec B608
                params,
            )
            if cursor.rowcount == 0:
                msg = f"Stage {stage_num} of task {task_id} is already paid"
                raise StaleVersionError(msg)

    def list_stages_awaiting_review(self) -> list[dict[str, Any]]:
        """Delivered, unpaid stages that carry an auto-confirm deadline."""
        return self._select(
            "stages",
            self._STAGE_COLUMNS,
            "WHERE delivered = 1 AND paid = 0 AND review_deadline IS NOT NULL "
            "ORDER BY review_deadline",
            (),
        )

    def complete_task(
        self,
        task_id: str,
        *,
        expected_version: int,
        task_updates: dict[str, Any],
        user_deltas: dict[str, dict[str, int]],
        completed_at: str,
    ) -> None:
        """Mark a task completed and credit both parties' stats in one transaction."""
        with self._transaction() as db:
            self._task_cas(db, task_id, task_updates, expected_version)
            for user_id, deltas in user_deltas.items():
                self._ensure_user(db, user_id, completed_at)
                self._apply_user_deltas(db, user_id, deltas)

    # ------------------------------------------------------------------
    # Applicants
    # ------------------------------------------------------------------

    def insert_applicant(self, applicant: dict[str, Any]) -> None:
        """Insert an application; the task must still be open."""
        try:
            with self._transaction() as db:
                row = db.execute(
                    "SELECT status FROM tasks WHERE task_id = ?", (applicant["task_id"],)
                ).fetchone()
                if row is None or row["status"] != "open":
                    msg = f"Task {applicant['task_id']} is not open"
                    raise TaskNotOpenError(msg)
                self._insert(db, "applicants", self._APPLICANT_COLUMNS, applicant)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateApplicationError("This user already applied to this task") from exc
            raise

    def get_applicant(self, applicant_id: str) -> dict[str, Any] | None:
        rows = self._select(
            "applicants", self._APPLICANT_COLUMNS, "WHERE applicant_id = ?", (applicant_id,)
        )
        return rows[0] if rows else None

    def list_applicants(self, task_id: str) -> list[dict[str, Any]]:
        return self._select(
            "applicants",
            self._APPLICANT_COLUMNS,
            "WHERE task_id = ? ORDER BY applied_at",
            (task_id,),
        )

    def list_applicants_by_status(self, status: str) -> list[dict[str, Any]]:
        return self._select(
            "applicants",
            self._APPLICANT_COLUMNS,
            "WHERE status = ? ORDER BY applied_at",
            (status,),
        )

    def update_applicant(
        self,
        applicant_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str,
    ) -> int:
        set_clause = self._set_clause(updates, self._APPLICANT_COLUMNS)
        params: list[object] = list(updates.values())
        params.extend([applicant_id, expected_status])
        with self._lock:
            cursor = self._db.execute(
                "UPDATE applicants SET " + set_clause + " WHERE applicant_id = ? AND status = ?",  # nosec B608
                params,
            )
            self._db.commit()
        return int(cursor.rowcount)

    def claim_reminder(self, applicant_id: str, *, previous: str | None, now: str) -> int:
        """Stamp ``last_reminder_at`` only if nobody else stamped it since ``previous``."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE applicants SET last_reminder_at = ? "
                "WHERE applicant_id = ? AND status = 'accepted' AND last_reminder_at IS ?",
                (now, applicant_id, previous),
            )
            self._db.commit()
        return int(cursor.rowcount)

    def accept_applicant(
        self,
        task_id: str,
        applicant_id: str,
        *,
        expected_version: int,
        accepted_at: str,
        confirm_deadline: str,
    ) -> list[str]:
        """
        Accept one applicant and decline every other pending applicant.

        Returns the ids of the applicants declined as a consequence.
        """
        try:
            with self._transaction() as db:
                self._task_cas(db, task_id, {}, expected_version, expected_status="open")
                winners = db.execute(
                    "SELECT COUNT(*) FROM applicants "
                    "WHERE task_id = ? AND status IN ('accepted', 'confirmed')",
                    (task_id,),
                ).fetchone()
                if winners is not None and int(winners[0]) > 0:
                    msg = f"Task {task_id} already has an accepted applicant"
                    raise WinnerAlreadySelectedError(msg)
                cursor = db.execute(
                    "UPDATE applicants SET status = 'accepted', accepted_at = ?, "
                    "confirm_deadline = ? "
                    "WHERE applicant_id = ? AND task_id = ? AND status = 'pending'",
                    (accepted_at, confirm_deadline, applicant_id, task_id),
                )
                if cursor.rowcount == 0:
                    msg = f"Applicant {applicant_id} is no longer pending"
                    raise StaleVersionError(msg)
                declined = [
                    str(row["applicant_id"])
                    for row in db.execute(
                        "SELECT applicant_id FROM applicants WHERE task_id = ? AND status = 'pending'",
                        (task_id,),
                    ).fetchall()
                ]
                db.execute(
                    "UPDATE applicants SET status = 'declined', declined_at = ? "
                    "WHERE task_id = ? AND status = 'pending'",
                    (accepted_at, task_id),
                )
        except sqlite3.IntegrityError as exc:
            msg = f"Task {task_id} already has an accepted applicant"
            raise WinnerAlreadySelectedError(msg) from exc
        return declined

    def confirm_applicant(
        self,
        task_id: str,
        applicant_id: str,
        *,
        expected_version: int,
        confirmed_at: str,
        task_updates: dict[str, Any],
    ) -> None:
        """Confirm the accepted applicant and apply the task transition atomically."""
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE applicants SET status = 'confirmed', confirmed_at = ? "
                "WHERE applicant_id = ? AND task_id = ? AND status = 'accepted'",
                (confirmed_at, applicant_id, task_id),
            )
            if cursor.rowcount == 0:
                msg = f"Applicant {applicant_id} is no longer accepted"
                raise StaleVersionError(msg)
            self._task_cas(db, task_id, task_updates, expected_version, expected_status="open")

    def expire_task(
        self,
        task_id: str,
        *,
        expected_version: int,
        expired_at: str,
    ) -> list[str]:
        """Expire an open task and decline its remaining applicants."""
        with self._transaction() as db:
            self._task_cas(
                db,
                task_id,
                {"status": "expired", "expired_at": expired_at},
                expected_version,
                expected_status="open",
            )
            declined = [
                str(row["applicant_id"])
                for row in db.execute(
                    "SELECT applicant_id FROM applicants "
                    "WHERE task_id = ? AND status IN ('pending', 'accepted')",
                    (task_id,),
                ).fetchall()
            ]
            db.execute(
                "UPDATE applicants SET status = 'declined', declined_at = ? "
                "WHERE task_id = ? AND status IN ('pending', 'accepted')",
                (expired_at, task_id),
            )
        return declined

    # ------------------------------------------------------------------
    # Payment intents
    # ------------------------------------------------------------------

    def insert_intent(self, intent: dict[str, Any]) -> None:
        try:
            with self._transaction() as db:
                self._insert(db, "payment_intents", self._INTENT_COLUMNS, intent)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                msg = "A live escrow intent or the same reference already exists"
                raise DuplicateIntentError(msg) from exc
            raise

    def get_intent(self, intent_id: str) -> dict[str, Any] | None:
        rows = self._select(
            "payment_intents", self._INTENT_COLUMNS, "WHERE intent_id = ?", (intent_id,)
        )
        return rows[0] if rows else None

    def get_intent_by_reference(self, reference: str) -> dict[str, Any] | None:
        rows = self._select(
            "payment_intents", self._INTENT_COLUMNS, "WHERE reference = ?", (reference,)
        )
        return rows[0] if rows else None

    def find_live_escrow_intent(self, draft_id: str) -> dict[str, Any] | None:
        rows = self._select(
            "payment_intents",
            self._INTENT_COLUMNS,
            "WHERE draft_id = ? AND kind = 'escrow' AND status IN ('pending', 'paid')",
            (draft_id,),
        )
        return rows[0] if rows else None

    def list_intents(
        self,
        *,
        task_id: str | None = None,
        draft_id: str | None = None,
        kind: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[object] = []
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if draft_id is not None:
            clauses.append("draft_id = ?")
            params.append(draft_id)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return self._select(
            "payment_intents", self._INTENT_COLUMNS, where + " ORDER BY created_at", params
        )

    def update_intent(
        self,
        intent_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str,
        expected_refund_status: str | None = None,
    ) -> int:
        """Check-then-set on the intent's current status; returns affected rows."""
        set_clause = self._set_clause(updates, self._INTENT_COLUMNS)
        params: list[object] = list(updates.values())
        query = "UPDATE payment_intents SET " + set_clause + " WHERE intent_id = ? AND status = ?"  # nosec B608
        params.extend([intent_id, expected_status])
        if expected_refund_status is not None:
            query += " AND refund_status = ?"
            params.append(expected_refund_status)
        with self._lock:
            cursor = self._db.execute(query, params)
            self._db.commit()
        return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Users and ratings
    # ------------------------------------------------------------------

    def _ensure_user(self, db: sqlite3.Connection, user_id: str, created_at: str) -> None:
        db.execute(
            "INSERT OR IGNORE INTO users (user_id, created_at) VALUES (?, ?)",
            (user_id, created_at),
        )

    def _apply_user_deltas(
        self, db: sqlite3.Connection, user_id: str, deltas: dict[str, int]
    ) -> None:
        if any(column not in self._USER_COUNTERS for column in deltas):
            msg = "Attempted to update unknown user counter"
            raise ValueError(msg)
        if not deltas:
            return
        set_clause = ", ".join(f"{column} = {column} + ?" for column in deltas)
        db.execute(
            "UPDATE users SET " + set_clause + " WHERE user_id = ?",  # nosec B608
            [*deltas.values(), user_id],
        )

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        rows = self._select("users", self._USER_COLUMNS, "WHERE user_id = ?", (user_id,))
        return rows[0] if rows else None

    def set_payout_destination(
        self,
        user_id: str,
        bank_name: str,
        account_number: str,
        updated_at: str,
    ) -> None:
        with self._transaction() as db:
            self._ensure_user(db, user_id, updated_at)
            db.execute(
                "UPDATE users SET payout_bank_name = ?, payout_account_number = ? "
                "WHERE user_id = ?",
                (bank_name, account_number, user_id),
            )

    def add_user_stats(self, user_id: str, deltas: dict[str, int], now: str) -> None:
        with self._transaction() as db:
            self._ensure_user(db, user_id, now)
            self._apply_user_deltas(db, user_id, deltas)

    def record_rating(
        self,
        task_id: str,
        rater_id: str,
        ratee_id: str,
        score: int,
        created_at: str,
    ) -> None:
        """Insert a rating and fold it into the ratee's running average."""
        try:
            with self._transaction() as db:
                db.execute(
                    "INSERT INTO ratings (task_id, rater_id, ratee_id, score, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (task_id, rater_id, ratee_id, score, created_at),
                )
                self._ensure_user(db, ratee_id, created_at)
                db.execute(
                    "UPDATE users SET "
                    "average_rating = (average_rating * rating_count + ?) / (rating_count + 1), "
                    "rating_count = rating_count + 1 WHERE user_id = ?",
                    (score, ratee_id),
                )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower() or "primary" in str(exc).lower():
                raise DuplicateRatingError("This party already rated this task") from exc
            raise

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(
        self,
        event_type: str,
        task_id: str | None,
        user_id: str | None,
        payload: dict[str, Any],
        created_at: str,
    ) -> dict[str, Any]:
        with self._lock:
            cursor = self._db.execute(
                "INSERT INTO events (event_type, task_id, user_id, payload, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (event_type, task_id, user_id, json.dumps(payload, default=str), created_at),
            )
            self._db.commit()
        return {
            "event_id": int(cursor.lastrowid or 0),
            "event_type": event_type,
            "task_id": task_id,
            "user_id": user_id,
            "payload": payload,
            "created_at": created_at,
        }

    def list_events(
        self,
        after: int | None,
        task_id: str | None,
        user_id: str | None,
        limit: int,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[object] = []
        if after is not None:
            clauses.append("event_id > ?")
            params.append(after)
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        params.append(limit)
        with self._lock:
            rows = self._db.execute(
                "SELECT event_id, event_type, task_id, user_id, payload, created_at FROM events"
                + where
                + " ORDER BY event_id LIMIT ?",  # nosec B608
                params,
            ).fetchall()
        return [
            {
                "event_id": row["event_id"],
                "event_type": row["event_type"],
                "task_id": row["task_id"],
                "user_id": row["user_id"],
                "payload": json.loads(row["payload"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
