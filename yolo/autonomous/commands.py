"""Command handlers for the YOLO control surface.

Each ``handle_*`` method takes the raw argument string and returns the
text shown to the operator. ``dispatch`` routes a command name to its
handler; the CLI in ``yolo.main`` and any chat front end share it.
"""

from typing import Awaitable, Callable, Dict, Optional

import structlog

from ..exceptions import ConfigurationError, YoloError
from .manager import AutonomousManager
from .models import DeploymentOutcome, StatusSnapshot, TaskStatus

logger = structlog.get_logger("yolo.loop")

_STATUS_MARKS = {
    "generated": "[ ]",
    "approval_pending": "[?]",
    "approved": "[+]",
    "executing": "[>]",
    "succeeded": "[x]",
    "failed": "[X]",
    "rejected": "[-]",
}


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "never"


def format_status(snapshot: StatusSnapshot) -> str:
    """Render a status snapshot the way ``yolo_status.sh`` printed it."""
    state = snapshot.run_state.value.upper()
    if snapshot.pause_reason:
        state += f" ({snapshot.pause_reason.value})"

    lines = [
        "YOLO MODE STATUS",
        f"State: {state}",
        f"Autonomy level: {snapshot.autonomy_level.value if snapshot.autonomy_level else '-'}",
        f"Started: {_fmt_time(snapshot.started_at)}",
        f"Last run: {_fmt_time(snapshot.last_run_at)}",
        f"Next run: {_fmt_time(snapshot.next_run_at)}",
        f"Pending approvals: {snapshot.pending_approvals}",
        f"Active tasks: {snapshot.active_tasks}",
        f"Recent error rate: {snapshot.recent_error_rate:.1%} "
        f"({snapshot.outcomes_in_window} outcomes in window)",
        f"Circuit breaker: {'TRIPPED' if snapshot.breaker_tripped else 'ok'}",
        f"Deploy hold: {'ON' if snapshot.deploy_hold else 'off'}",
    ]

    if snapshot.last_deployment:
        dep = snapshot.last_deployment
        outcome = dep.outcome.value if dep.outcome else "in progress"
        lines.append(f"Last deployment: {dep.version_tag} {outcome} ({dep.stage.value})")
    else:
        lines.append("Last deployment: none")

    if snapshot.last_quality_report:
        qr = snapshot.last_quality_report
        ready = "YES" if qr.deployment_ready else "NO"
        lines.append(f"Last quality report: {qr.summary()}, deployment ready: {ready}")

    if snapshot.recently_rejected:
        lines.append("Recently rejected:")
        for task in snapshot.recently_rejected:
            why = f" ({task.error_message})" if task.error_message else ""
            lines.append(f"  {task.id[:12]} {task.description[:60]}{why}")

    return "\n".join(lines)


class AutonomousCommands:
    """Handlers for the control-surface commands."""

    def __init__(self, manager: AutonomousManager):
        self.manager = manager
        self._handlers: Dict[str, Callable[[str, str], Awaitable[str]]] = {
            "start": self.handle_start,
            "stop": self.handle_stop,
            "pause": self.handle_pause,
            "resume": self.handle_resume,
            "status": self.handle_status,
            "approve": self.handle_approve,
            "reject": self.handle_reject,
            "promote": self.handle_promote,
            "hold": self.handle_hold,
            "release": self.handle_release,
            "tasks": self.handle_tasks,
        }

    @property
    def commands(self):
        return sorted(self._handlers)

    async def dispatch(self, command: str, args: str = "", sender: str = "cli") -> str:
        """Route ``command`` to its handler.

        Control-surface errors (illegal transitions, bad config, unknown
        task ids) come back as text rather than exceptions.
        """
        handler = self._handlers.get(command.lower())
        if handler is None:
            return f"Unknown command: {command}. Available: {', '.join(self.commands)}"
        logger.info("command_received", command=command, sender=sender)
        try:
            return await handler(args.strip(), sender)
        except ConfigurationError as e:
            return "Cannot start, configuration problems:\n" + "\n".join(
                f"  - {p}" for p in e.problems
            )
        except YoloError as e:
            return f"Error: {e.message}"

    async def handle_start(self, args: str, sender: str) -> str:
        settings = await self.manager.start()
        return (
            f"YOLO mode ACTIVE.\n"
            f"Autonomy level: {settings.autonomy_level.value}\n"
            f"Cycle: every {settings.cycle_minutes:g} min, "
            f"{settings.working_hours.start:%H:%M}-{settings.working_hours.end:%H:%M} "
            f"{settings.working_hours.timezone}\n"
            f"Auto-merge: {'on' if settings.auto_merge else 'off'}, "
            f"auto-deploy: {'on' if settings.auto_deploy else 'off'}"
        )

    async def handle_stop(self, args: str, sender: str) -> str:
        await self.manager.stop()
        return "YOLO mode STOPPED."

    async def handle_pause(self, args: str, sender: str) -> str:
        await self.manager.pause()
        return "YOLO mode PAUSED. Use `resume` to continue."

    async def handle_resume(self, args: str, sender: str) -> str:
        await self.manager.resume()
        return "YOLO mode RESUMED. Error window cleared."

    async def handle_status(self, args: str, sender: str) -> str:
        return format_status(await self.manager.status())

    async def handle_approve(self, args: str, sender: str) -> str:
        return await self._decide(args, sender, approved=True)

    async def handle_reject(self, args: str, sender: str) -> str:
        return await self._decide(args, sender, approved=False)

    async def _decide(self, task_id: str, sender: str, approved: bool) -> str:
        if not task_id:
            return f"Usage: {'approve' if approved else 'reject'} <task-id>"
        if approved:
            resolved = await self.manager.approve(task_id, decided_by=sender)
        else:
            resolved = await self.manager.reject(task_id, decided_by=sender)
        if resolved is None:
            return f"Task {task_id} was already resolved; decision ignored."
        verb = "approved" if approved else "rejected"
        return f"Task {task_id} {verb}."

    async def handle_promote(self, args: str, sender: str) -> str:
        if not args:
            return "Usage: promote <version-tag>"
        run = await self.manager.promote(args)
        if run.outcome == DeploymentOutcome.SUCCESS:
            return f"Promoted {run.version_tag} to production."
        return f"Promotion of {run.version_tag} ended {run.outcome.value}: {run.error_message}"

    async def handle_hold(self, args: str, sender: str) -> str:
        await self.manager.hold_deployments()
        return "Deployments on hold."

    async def handle_release(self, args: str, sender: str) -> str:
        await self.manager.release_deployments()
        return "Deployment hold released."

    async def handle_tasks(self, args: str, sender: str) -> str:
        status: Optional[TaskStatus] = None
        include_archived = False
        if args == "all":
            include_archived = True
        elif args:
            try:
                status = TaskStatus(args)
            except ValueError:
                return f"Unknown status {args!r}. Use one of: {', '.join(s.value for s in TaskStatus)}"
            include_archived = True

        tasks = await self.manager.list_tasks(status=status, include_archived=include_archived)
        if not tasks:
            return "No tasks."
        lines = ["Tasks:"]
        for task in tasks:
            mark = _STATUS_MARKS.get(task.status.value, "[ ]")
            lines.append(f"{mark} {task.id} {task.kind.value}: {task.description[:70]}")
        return "\n".join(lines)
