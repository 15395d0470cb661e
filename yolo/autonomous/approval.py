"""Human approval workflow for gated tasks.

A gated task gets one ApprovalRequest. The first resolution wins:
APPROVED or REJECTED from a human, or TIMED_OUT once ``expires_at``
passes. Decisions that arrive after a request is resolved are ignored
and logged.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import structlog

from ..notifications import Channel, NotificationDispatcher
from .database import StateStore
from .exceptions import ApprovalError
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    RiskAssessment,
    Task,
    TaskStatus,
)

logger = structlog.get_logger("yolo.approval")

TIMEOUT_REASON = "rejected-by-timeout"

# A timeout never approves
TIMEOUT_OUTCOMES = (TaskStatus.REJECTED, TaskStatus.FAILED)


class ApprovalWorkflow:
    """Creates, resolves and expires approval requests."""

    def __init__(
        self,
        store: StateStore,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = datetime.now,
        poll_interval: float = 5.0,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.poll_interval = poll_interval
        self._events: Dict[str, asyncio.Event] = {}

    async def submit(
        self, task: Task, assessment: RiskAssessment, timeout_minutes: float
    ) -> ApprovalRequest:
        """Open an approval request and move the task to APPROVAL_PENDING."""
        if task.status != TaskStatus.GENERATED or not task.requires_approval:
            raise ApprovalError(
                f"Task in status {task.status.value} cannot be submitted for approval",
                task_id=task.id,
            )

        now = self.clock()
        request = ApprovalRequest(
            task_id=task.id,
            description=task.description,
            risk_level=assessment.risk_level,
            reasons=list(assessment.reasons),
            created_at=now,
            expires_at=now + timedelta(minutes=timeout_minutes),
        )
        await self.store.save_approval(request)
        await self.store.save_task(
            task.model_copy(update={"status": TaskStatus.APPROVAL_PENDING, "updated_at": now})
        )

        logger.info(
            "approval_requested",
            task_id=task.id,
            risk_level=request.risk_level.value,
            expires_at=request.expires_at.isoformat(),
        )
        if self.notifier:
            reasons = "; ".join(request.reasons) or "policy"
            self.notifier.notify(
                Channel.APPROVAL,
                f"Approval needed for task {task.id} ({request.risk_level.value} risk): "
                f"{task.description}\nReasons: {reasons}\n"
                f"Reply `yolo approve {task.id}` or `yolo reject {task.id}` "
                f"before {request.expires_at:%Y-%m-%d %H:%M}.",
            )
        return request

    async def decide(
        self,
        task_id: str,
        approved: bool,
        decided_by: Optional[str] = None,
        timeout_status: TaskStatus = TaskStatus.REJECTED,
    ) -> Optional[ApprovalRequest]:
        """Record a human decision.

        Returns the resolved request, or None when the request was
        already resolved or its deadline has passed (late decision,
        ignored). An overdue request is expired on the spot with
        ``timeout_status``, exactly as the next cycle would.

        Raises:
            ApprovalError: If no request exists for ``task_id``.
        """
        decision = ApprovalDecision.APPROVED if approved else ApprovalDecision.REJECTED
        existing = await self.store.get_approval(task_id)
        if existing is None:
            raise ApprovalError(f"No approval request for task {task_id}", task_id=task_id)

        now = self.clock()
        resolved = None
        if existing.is_pending and now >= existing.expires_at:
            await self._expire(existing, now, timeout_status)
        elif existing.is_pending:
            resolved = await self.store.resolve_approval(
                task_id, decision, decided_by=decided_by, decided_at=now
            )
        if resolved is None:
            current = await self.store.get_approval(task_id)
            logger.warning(
                "late_decision_ignored",
                task_id=task_id,
                decision=decision.value,
                existing_decision=current.decision.value,
            )
            return None

        status = TaskStatus.APPROVED if approved else TaskStatus.REJECTED
        await self._update_task(task_id, status, None)
        logger.info("approval_decided", task_id=task_id, decision=decision.value)
        self._wake(task_id)
        return resolved

    async def expire_overdue(
        self,
        now: Optional[datetime] = None,
        timeout_status: TaskStatus = TaskStatus.REJECTED,
    ) -> List[ApprovalRequest]:
        """Resolve every overdue pending request as TIMED_OUT."""
        now = now or self.clock()
        expired = []
        for request in await self.store.list_approvals(ApprovalDecision.PENDING):
            if request.expires_at > now:
                continue
            resolved = await self._expire(request, now, timeout_status)
            if resolved is not None:
                expired.append(resolved)
        return expired

    async def _expire(
        self, request: ApprovalRequest, now: datetime, timeout_status: TaskStatus
    ) -> Optional[ApprovalRequest]:
        if timeout_status not in TIMEOUT_OUTCOMES:
            raise ApprovalError(
                f"Timeout cannot resolve a task as {timeout_status.value}", task_id=request.task_id
            )
        resolved = await self.store.resolve_approval(
            request.task_id, ApprovalDecision.TIMED_OUT, decided_by="timeout", decided_at=now
        )
        if resolved is None:
            return None
        await self._update_task(
            request.task_id,
            timeout_status,
            TIMEOUT_REASON if timeout_status == TaskStatus.REJECTED else "approval timed out",
        )
        logger.info(
            "approval_timed_out",
            task_id=request.task_id,
            outcome=timeout_status.value,
        )
        if self.notifier:
            self.notifier.notify(
                Channel.INFO,
                f"Approval for task {request.task_id} timed out; "
                f"task {timeout_status.value}.",
            )
        self._wake(request.task_id)
        return resolved

    async def wait(self, task_id: str, timeout: float) -> ApprovalDecision:
        """Wait up to ``timeout`` seconds for a decision.

        Decisions from other processes are picked up by polling the
        store. If the deadline passes the request is resolved as
        TIMED_OUT and the task rejected.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        event = self._events.setdefault(task_id, asyncio.Event())
        try:
            while True:
                request = await self.store.get_approval(task_id)
                if request is None:
                    raise ApprovalError(f"No approval request for task {task_id}", task_id=task_id)
                if not request.is_pending:
                    return request.decision

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(event.wait(), timeout=min(remaining, self.poll_interval))
                except asyncio.TimeoutError:
                    pass
        finally:
            self._events.pop(task_id, None)

        resolved = await self.store.resolve_approval(
            task_id, ApprovalDecision.TIMED_OUT, decided_by="timeout", decided_at=self.clock()
        )
        if resolved is None:
            request = await self.store.get_approval(task_id)
            return request.decision
        await self._update_task(task_id, TaskStatus.REJECTED, TIMEOUT_REASON)
        logger.info("approval_timed_out", task_id=task_id, outcome=TaskStatus.REJECTED.value)
        return ApprovalDecision.TIMED_OUT

    async def approved_tasks(self) -> List[Task]:
        """Approved tasks waiting for the pipeline, oldest first."""
        tasks = await self.store.list_tasks(status=TaskStatus.APPROVED)
        return sorted(tasks, key=lambda t: t.created_at)

    async def _update_task(
        self, task_id: str, status: TaskStatus, error: Optional[str]
    ) -> None:
        task = await self.store.get_task(task_id)
        if task is None:
            return
        await self.store.save_task(
            task.model_copy(
                update={"status": status, "error_message": error, "updated_at": self.clock()}
            )
        )

    def _wake(self, task_id: str) -> None:
        event = self._events.get(task_id)
        if event is not None:
            event.set()
