"""State store for the autonomous operation system.

Single source of truth for run state, the circuit breaker's error
window, tracked tasks, approval requests, deployments, known-good
versions and reports. Replaces the original flag files
(``.yolo_active``, ``.yolo_pause``, ``.no_deploy``, ``.yolo_status``)
with one SQLite database.

Single writer, many readers: every operation runs under one
``threading.Lock`` and writes commit in a single transaction, so a
status reader never sees a half-applied transition. Async callers go
through ``asyncio.to_thread`` like every other DB access in the package.
"""

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from ..exceptions import DatabaseError
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    AutonomyLevel,
    ControlSignal,
    CycleReport,
    DeploymentRun,
    Environment,
    OutcomeEvent,
    PauseReason,
    QualityReport,
    RunSettings,
    RunState,
    Task,
    TaskStatus,
    TERMINAL_TASK_STATUSES,
    next_run_state,
)

logger = structlog.get_logger("yolo.state")

SCHEMA_VERSION = 1

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS control (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        origin_goal TEXT NOT NULL,
        description TEXT NOT NULL,
        status TEXT NOT NULL,
        archived INTEGER NOT NULL DEFAULT 0,
        data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_archived ON tasks(archived, status)",
    """
    CREATE TABLE IF NOT EXISTS approvals (
        task_id TEXT PRIMARY KEY,
        decision TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS outcomes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        succeeded INTEGER NOT NULL,
        source TEXT NOT NULL,
        detail TEXT,
        recorded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deployments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        version_tag TEXT NOT NULL,
        outcome TEXT,
        data TEXT NOT NULL,
        started_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS known_good (
        environment TEXT PRIMARY KEY,
        version_tag TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cycle_reports (
        cycle_id TEXT PRIMARY KEY,
        started_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
)


class StateStore:
    """Durable state for the control loop and its human control surface."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    # ========== Lifecycle ==========

    async def initialize(self) -> None:
        """Open the database and create the schema."""
        await asyncio.to_thread(self.initialize_sync)

    def initialize_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA busy_timeout=5000")
                for statement in _SCHEMA:
                    self._conn.execute(statement)
                self._conn.execute(
                    "INSERT OR IGNORE INTO control (key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )
                self._conn.commit()
            except (sqlite3.Error, OSError) as e:
                raise DatabaseError(
                    f"Cannot open state store: {e}", operation="initialize"
                ) from e
        logger.info("state_store_initialized", path=str(self.db_path))

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError("State store is not initialized", operation="connect")
        return self._conn

    # ========== Helpers ==========

    @staticmethod
    def _format_timestamp(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _parse_timestamp(ts_str: Optional[str]) -> Optional[datetime]:
        if not ts_str:
            return None
        try:
            return datetime.fromisoformat(ts_str)
        except ValueError:
            return None

    def _get_control(self, key: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT value FROM control WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def _set_control(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self.conn.execute("DELETE FROM control WHERE key = ?", (key,))
        else:
            self.conn.execute(
                "INSERT OR REPLACE INTO control (key, value) VALUES (?, ?)",
                (key, value),
            )

    # ========== Run state ==========

    async def get_run_state(self) -> Tuple[RunState, Optional[PauseReason]]:
        return await asyncio.to_thread(self.get_run_state_sync)

    def get_run_state_sync(self) -> Tuple[RunState, Optional[PauseReason]]:
        with self._lock:
            state = RunState(self._get_control("run_state") or RunState.INACTIVE.value)
            reason = self._get_control("pause_reason")
            return state, PauseReason(reason) if reason else None

    async def apply_signal(
        self,
        signal: ControlSignal,
        *,
        reason: Optional[PauseReason] = None,
        settings: Optional[RunSettings] = None,
    ) -> RunState:
        """Apply one control signal atomically. See ``apply_signal_sync``."""
        return await asyncio.to_thread(self.apply_signal_sync, signal, reason, settings)

    def apply_signal_sync(
        self,
        signal: ControlSignal,
        reason: Optional[PauseReason] = None,
        settings: Optional[RunSettings] = None,
    ) -> RunState:
        """Move the run along the state graph in one transaction.

        START stores the run-settings snapshot; PAUSE records its reason
        (HUMAN_OVERRIDE when omitted); RESUME clears it; STOP resets the
        run (settings, pause reason, start time).

        Raises:
            InvalidTransitionError: If the signal is illegal from the
                current state. Nothing is written in that case.
        """
        with self._lock:
            current = RunState(self._get_control("run_state") or RunState.INACTIVE.value)
            new_state = next_run_state(current, signal)
            try:
                self._set_control("run_state", new_state.value)
                if signal == ControlSignal.START:
                    if settings is None:
                        settings = RunSettings()
                    self._set_control("run_settings", settings.model_dump_json())
                    self._set_control("started_at", self._format_timestamp(datetime.now()))
                    self._set_control("pause_reason", None)
                elif signal == ControlSignal.PAUSE:
                    self._set_control(
                        "pause_reason", (reason or PauseReason.HUMAN_OVERRIDE).value
                    )
                elif signal == ControlSignal.RESUME:
                    self._set_control("pause_reason", None)
                elif signal == ControlSignal.STOP:
                    self._set_control("pause_reason", None)
                    self._set_control("run_settings", None)
                    self._set_control("started_at", None)
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise DatabaseError(
                    f"Run state transition failed: {e}", operation="update", table="control"
                ) from e
        logger.info(
            "run_state_transition",
            signal=signal.value,
            from_state=current.value,
            to_state=new_state.value,
            reason=reason.value if reason else None,
        )
        return new_state

    async def get_run_settings(self) -> Optional[RunSettings]:
        return await asyncio.to_thread(self.get_run_settings_sync)

    def get_run_settings_sync(self) -> Optional[RunSettings]:
        with self._lock:
            raw = self._get_control("run_settings")
        return RunSettings.model_validate_json(raw) if raw else None

    async def get_started_at(self) -> Optional[datetime]:
        return await asyncio.to_thread(self._get_timestamp_sync, "started_at")

    async def get_last_run(self) -> Optional[datetime]:
        return await asyncio.to_thread(self._get_timestamp_sync, "last_run_at")

    def _get_timestamp_sync(self, key: str) -> Optional[datetime]:
        with self._lock:
            return self._parse_timestamp(self._get_control(key))

    async def touch_last_run(self, when: Optional[datetime] = None) -> datetime:
        """Record a cycle run. Never moves the stored timestamp backwards."""
        return await asyncio.to_thread(self._touch_last_run_sync, when or datetime.now())

    def _touch_last_run_sync(self, when: datetime) -> datetime:
        with self._lock:
            existing = self._parse_timestamp(self._get_control("last_run_at"))
            if existing is not None and existing >= when:
                return existing
            self._set_control("last_run_at", self._format_timestamp(when))
            self.conn.commit()
            return when

    # ========== Error window ==========

    async def record_outcome(self, event: OutcomeEvent, retention: int) -> None:
        await asyncio.to_thread(self._record_outcome_sync, event, retention)

    def _record_outcome_sync(self, event: OutcomeEvent, retention: int) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO outcomes (succeeded, source, detail, recorded_at) VALUES (?, ?, ?, ?)",
                (
                    1 if event.succeeded else 0,
                    event.source,
                    event.detail,
                    self._format_timestamp(event.recorded_at),
                ),
            )
            # Ring buffer: keep only the newest ``retention`` rows
            self.conn.execute(
                """
                DELETE FROM outcomes WHERE id NOT IN (
                    SELECT id FROM outcomes ORDER BY id DESC LIMIT ?
                )
                """,
                (retention,),
            )
            self.conn.commit()

    async def recent_outcomes(self, limit: int) -> List[OutcomeEvent]:
        return await asyncio.to_thread(self.recent_outcomes_sync, limit)

    def recent_outcomes_sync(self, limit: int) -> List[OutcomeEvent]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM outcomes ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            OutcomeEvent(
                succeeded=bool(row["succeeded"]),
                source=row["source"],
                detail=row["detail"] or "",
                recorded_at=self._parse_timestamp(row["recorded_at"]) or datetime.now(),
            )
            for row in rows
        ]

    async def clear_outcomes(self) -> None:
        await asyncio.to_thread(self._clear_outcomes_sync)

    def _clear_outcomes_sync(self) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM outcomes")
            self.conn.commit()

    # ========== Tasks ==========

    async def save_task(self, task: Task) -> None:
        """Insert or update a task. Terminal tasks are archived."""
        await asyncio.to_thread(self._save_task_sync, task)

    def _save_task_sync(self, task: Task) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO tasks
                    (id, origin_goal, description, status, archived, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.origin_goal,
                    task.description,
                    task.status.value,
                    1 if task.status in TERMINAL_TASK_STATUSES else 0,
                    task.model_dump_json(),
                    self._format_timestamp(task.created_at),
                    self._format_timestamp(task.updated_at),
                ),
            )
            self.conn.commit()

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await asyncio.to_thread(self._get_task_sync, task_id)

    def _get_task_sync(self, task_id: str) -> Optional[Task]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return Task.model_validate_json(row["data"]) if row else None

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        include_archived: bool = False,
        limit: int = 200,
    ) -> List[Task]:
        """List tracked tasks, newest first."""
        return await asyncio.to_thread(self._list_tasks_sync, status, include_archived, limit)

    def _list_tasks_sync(
        self, status: Optional[TaskStatus], include_archived: bool, limit: int
    ) -> List[Task]:
        query = "SELECT data FROM tasks WHERE 1=1"
        params: list = []
        if not include_archived:
            query += " AND archived = 0"
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [Task.model_validate_json(row["data"]) for row in rows]

    # ========== Approvals ==========

    async def save_approval(self, request: ApprovalRequest) -> None:
        await asyncio.to_thread(self._save_approval_sync, request)

    def _save_approval_sync(self, request: ApprovalRequest) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO approvals (task_id, decision, expires_at, data) VALUES (?, ?, ?, ?)",
                (
                    request.task_id,
                    request.decision.value,
                    self._format_timestamp(request.expires_at),
                    request.model_dump_json(),
                ),
            )
            self.conn.commit()

    async def get_approval(self, task_id: str) -> Optional[ApprovalRequest]:
        return await asyncio.to_thread(self._get_approval_sync, task_id)

    def _get_approval_sync(self, task_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM approvals WHERE task_id = ?", (task_id,)
            ).fetchone()
        return ApprovalRequest.model_validate_json(row["data"]) if row else None

    async def list_approvals(
        self, decision: Optional[ApprovalDecision] = None
    ) -> List[ApprovalRequest]:
        return await asyncio.to_thread(self._list_approvals_sync, decision)

    def _list_approvals_sync(
        self, decision: Optional[ApprovalDecision]
    ) -> List[ApprovalRequest]:
        query = "SELECT data FROM approvals"
        params: list = []
        if decision:
            query += " WHERE decision = ?"
            params.append(decision.value)
        query += " ORDER BY expires_at ASC"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [ApprovalRequest.model_validate_json(row["data"]) for row in rows]

    async def resolve_approval(
        self,
        task_id: str,
        decision: ApprovalDecision,
        decided_by: Optional[str] = None,
        decided_at: Optional[datetime] = None,
    ) -> Optional[ApprovalRequest]:
        """Resolve a pending request (compare-and-set).

        Returns the updated request, or None if the request does not
        exist or was already resolved. The first resolution wins.
        """
        return await asyncio.to_thread(
            self._resolve_approval_sync, task_id, decision, decided_by, decided_at
        )

    def _resolve_approval_sync(
        self,
        task_id: str,
        decision: ApprovalDecision,
        decided_by: Optional[str],
        decided_at: Optional[datetime],
    ) -> Optional[ApprovalRequest]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM approvals WHERE task_id = ? AND decision = ?",
                (task_id, ApprovalDecision.PENDING.value),
            ).fetchone()
            if row is None:
                return None
            request = ApprovalRequest.model_validate_json(row["data"])
            request = request.model_copy(
                update={
                    "decision": decision,
                    "decided_at": decided_at or datetime.now(),
                    "decided_by": decided_by,
                }
            )
            self.conn.execute(
                "UPDATE approvals SET decision = ?, data = ? WHERE task_id = ?",
                (decision.value, request.model_dump_json(), task_id),
            )
            self.conn.commit()
            return request

    async def count_pending_approvals(self) -> int:
        return await asyncio.to_thread(self._count_pending_sync)

    def _count_pending_sync(self) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM approvals WHERE decision = ?",
                (ApprovalDecision.PENDING.value,),
            ).fetchone()
        return row["n"]

    # ========== Deployments ==========

    async def save_deployment(self, run: DeploymentRun) -> DeploymentRun:
        """Insert or update a deployment run. Returns it with ``id`` set."""
        return await asyncio.to_thread(self._save_deployment_sync, run)

    def _save_deployment_sync(self, run: DeploymentRun) -> DeploymentRun:
        with self._lock:
            if run.id is None:
                cursor = self.conn.execute(
                    "INSERT INTO deployments (version_tag, outcome, data, started_at) VALUES (?, ?, ?, ?)",
                    (
                        run.version_tag,
                        run.outcome.value if run.outcome else None,
                        "{}",
                        self._format_timestamp(run.started_at),
                    ),
                )
                run = run.model_copy(update={"id": cursor.lastrowid})
            self.conn.execute(
                "UPDATE deployments SET outcome = ?, data = ? WHERE id = ?",
                (run.outcome.value if run.outcome else None, run.model_dump_json(), run.id),
            )
            self.conn.commit()
        return run

    async def last_deployment(self) -> Optional[DeploymentRun]:
        return await asyncio.to_thread(self._last_deployment_sync)

    def _last_deployment_sync(self) -> Optional[DeploymentRun]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM deployments ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return DeploymentRun.model_validate_json(row["data"]) if row else None

    async def get_deployment_by_tag(self, version_tag: str) -> Optional[DeploymentRun]:
        return await asyncio.to_thread(self._get_deployment_by_tag_sync, version_tag)

    def _get_deployment_by_tag_sync(self, version_tag: str) -> Optional[DeploymentRun]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM deployments WHERE version_tag = ? ORDER BY id DESC LIMIT 1",
                (version_tag,),
            ).fetchone()
        return DeploymentRun.model_validate_json(row["data"]) if row else None

    async def get_known_good(self, environment: Environment) -> Optional[str]:
        return await asyncio.to_thread(self._get_known_good_sync, environment)

    def _get_known_good_sync(self, environment: Environment) -> Optional[str]:
        with self._lock:
            row = self.conn.execute(
                "SELECT version_tag FROM known_good WHERE environment = ?",
                (environment.value,),
            ).fetchone()
        return row["version_tag"] if row else None

    async def set_known_good(self, environment: Environment, version_tag: str) -> None:
        await asyncio.to_thread(self._set_known_good_sync, environment, version_tag)

    def _set_known_good_sync(self, environment: Environment, version_tag: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO known_good (environment, version_tag, updated_at) VALUES (?, ?, ?)",
                (environment.value, version_tag, self._format_timestamp(datetime.now())),
            )
            self.conn.commit()
        logger.info("known_good_updated", environment=environment.value, version=version_tag)

    async def clear_known_good(self, environment: Environment) -> None:
        await asyncio.to_thread(self._clear_known_good_sync, environment)

    def _clear_known_good_sync(self, environment: Environment) -> None:
        with self._lock:
            self.conn.execute(
                "DELETE FROM known_good WHERE environment = ?", (environment.value,)
            )
            self.conn.commit()
        logger.info("known_good_cleared", environment=environment.value)

    # ========== Flags and reports ==========

    async def set_deploy_hold(self, held: bool) -> None:
        await asyncio.to_thread(self._set_flag_sync, "deploy_hold", held)

    async def get_deploy_hold(self) -> bool:
        return await asyncio.to_thread(self._get_flag_sync, "deploy_hold")

    def _set_flag_sync(self, key: str, value: bool) -> None:
        with self._lock:
            self._set_control(key, "1" if value else None)
            self.conn.commit()

    def _get_flag_sync(self, key: str) -> bool:
        with self._lock:
            return self._get_control(key) == "1"

    async def set_in_progress(self, marker: Optional[dict]) -> None:
        """Persist (or clear) the branch a pipeline is currently mutating."""
        await asyncio.to_thread(self._set_json_sync, "in_progress", marker)

    async def get_in_progress(self) -> Optional[dict]:
        return await asyncio.to_thread(self._get_json_sync, "in_progress")

    def _set_json_sync(self, key: str, value: Optional[dict]) -> None:
        with self._lock:
            self._set_control(key, json.dumps(value) if value is not None else None)
            self.conn.commit()

    def _get_json_sync(self, key: str) -> Optional[dict]:
        with self._lock:
            raw = self._get_control(key)
        return json.loads(raw) if raw else None

    async def save_quality_report(self, report: QualityReport) -> None:
        await asyncio.to_thread(self._set_json_sync, "quality_report", report.model_dump(mode="json"))

    async def get_quality_report(self) -> Optional[QualityReport]:
        raw = await asyncio.to_thread(self._get_json_sync, "quality_report")
        return QualityReport.model_validate(raw) if raw else None

    async def save_cycle_report(self, report: CycleReport) -> None:
        await asyncio.to_thread(self._save_cycle_report_sync, report)

    def _save_cycle_report_sync(self, report: CycleReport) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO cycle_reports (cycle_id, started_at, data) VALUES (?, ?, ?)",
                (report.cycle_id, self._format_timestamp(report.started_at), report.model_dump_json()),
            )
            self.conn.commit()

    async def recent_cycle_reports(self, limit: int = 10) -> List[CycleReport]:
        return await asyncio.to_thread(self._recent_cycle_reports_sync, limit)

    def _recent_cycle_reports_sync(self, limit: int) -> List[CycleReport]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT data FROM cycle_reports ORDER BY started_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [CycleReport.model_validate_json(row["data"]) for row in rows]

    async def get_autonomy_level(self) -> Optional[AutonomyLevel]:
        settings = await self.get_run_settings()
        return settings.autonomy_level if settings else None
