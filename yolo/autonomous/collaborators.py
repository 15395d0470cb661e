"""Collaborators the control loop drives: code, VCS and deployment.

Each is a narrow ``Protocol`` so tests can hand in in-memory fakes. The
concrete classes shell out through ``run_command`` (argument lists, no
shell) and raise on failure.
"""

import asyncio
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import structlog

from ..exceptions import CommandError, ErrorCategory, error_output
from .exceptions import GitOperationError
from .models import Environment, QualityReport, Task
from .process import run_command
from .quality_gates import QualityGateRunner

logger = structlog.get_logger("yolo.pipeline")
deploy_logger = structlog.get_logger("yolo.deploy")

_SKIP_DIRS = ("venv", ".venv", "__pycache__", ".git", "node_modules", "dist", "build")
_MARKER_PATTERN = re.compile(r"\b(TODO|FIXME|XXX)\b")
_MARKER_SUFFIXES = frozenset(
    {".py", ".js", ".jsx", ".ts", ".tsx", ".go", ".rs", ".java", ".rb", ".sh", ".c", ".h", ".cpp"}
)


class CodeCollaborator(Protocol):
    async def run_verification_suite(
        self, task_id: Optional[str] = None, revision: Optional[str] = None
    ) -> QualityReport: ...

    async def apply_formatting(self) -> bool: ...

    async def apply_task(self, task: Task) -> None: ...

    async def list_outstanding_markers(self) -> int: ...


class VCSCollaborator(Protocol):
    async def create_branch(self, name: str) -> None: ...

    async def checkout(self, name: str) -> None: ...

    async def commit(self, message: str) -> Optional[str]: ...

    async def merge_to_main(self, branch: str, main: str, message: str) -> str: ...

    async def tag(self, name: str, message: str) -> None: ...

    async def current_branch(self) -> str: ...

    async def has_uncommitted_changes(self) -> bool: ...

    async def discard_changes(self) -> None: ...

    async def delete_branch(self, name: str) -> None: ...

    async def stash_push(self, message: str) -> bool: ...

    async def stash_pop(self) -> None: ...

    async def head_revision(self) -> str: ...


class DeploymentCollaborator(Protocol):
    async def build_artifact(self) -> str: ...

    async def package(self, artifact: str) -> str: ...

    async def deploy(self, env: Environment, package: str, version: str) -> None: ...

    async def run_smoke_tests(self, env: Environment) -> bool: ...

    async def rollback(self, env: Environment, version: Optional[str]) -> None: ...


def substitute(command: Sequence[str], values: Dict[str, str]) -> List[str]:
    """Fill ``{name}`` placeholders in each argument.

    Arguments that end up empty are dropped.
    """
    argv = []
    for arg in command:
        for key, value in values.items():
            arg = arg.replace("{" + key + "}", value)
        if arg:
            argv.append(arg)
    return argv


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


class GitRepository:
    """VCS collaborator backed by the ``git`` CLI."""

    def __init__(self, repo_dir: Path, timeout: float = 60):
        self.repo_dir = repo_dir
        self.timeout = timeout

    async def _run_git(self, *args: str) -> str:
        """Run a git command and return stripped output."""
        cmd = ["git"] + list(args)
        try:
            result = await run_command(cmd, self.repo_dir, self.timeout)
        except (OSError, RuntimeError) as e:
            raise GitOperationError(
                f"git {args[0]} could not run: {e}", category=ErrorCategory.INFRASTRUCTURE
            ) from e
        if not result.ok:
            raise GitOperationError(
                f"git {args[0]} failed (exit {result.return_code})",
                output=result.output,
            )
        return result.output.strip()

    async def current_branch(self) -> str:
        return await self._run_git("rev-parse", "--abbrev-ref", "HEAD")

    async def head_revision(self) -> str:
        return await self._run_git("rev-parse", "HEAD")

    async def has_uncommitted_changes(self) -> bool:
        return bool(await self._run_git("status", "--porcelain"))

    async def branch_exists(self, name: str) -> bool:
        try:
            await self._run_git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}")
        except GitOperationError:
            return False
        return True

    async def stash_push(self, message: str) -> bool:
        """Stash tracked and untracked changes. False if there was nothing to stash."""
        if not await self.has_uncommitted_changes():
            return False
        await self._run_git("stash", "push", "--include-untracked", "-m", message)
        logger.info("git_stash_pushed", message=message)
        return True

    async def stash_pop(self) -> None:
        await self._run_git("stash", "pop")
        logger.info("git_stash_popped")

    async def create_branch(self, name: str) -> None:
        await self._run_git("checkout", "-b", name)

    async def checkout(self, name: str) -> None:
        await self._run_git("checkout", name)

    async def discard_changes(self) -> None:
        await self._run_git("reset", "--hard", "HEAD")
        await self._run_git("clean", "-fd")

    async def delete_branch(self, name: str) -> None:
        await self._run_git("branch", "-D", name)

    async def commit(self, message: str) -> Optional[str]:
        """Stage everything and commit. Returns the new revision, or None if clean."""
        if not await self.has_uncommitted_changes():
            return None
        await self._run_git("add", "-A")
        await self._run_git("commit", "-m", message, "--no-verify")
        return await self.head_revision()

    async def merge_to_main(self, branch: str, main: str, message: str) -> str:
        """Merge ``branch`` into ``main`` with a merge commit.

        On conflict the merge is aborted before raising, so ``main`` is
        left untouched.
        """
        await self.checkout(main)
        try:
            await self._run_git("merge", "--no-ff", "-m", message, branch)
        except GitOperationError:
            try:
                await self._run_git("merge", "--abort")
            except GitOperationError as abort_err:
                logger.error("git_merge_abort_failed", error=str(abort_err))
            raise
        return await self.head_revision()

    async def tag(self, name: str, message: str) -> None:
        await self._run_git("tag", "-a", name, "-m", message)


# ---------------------------------------------------------------------------
# Codebase
# ---------------------------------------------------------------------------


class ShellCodebase:
    """Code collaborator running configured commands in the project."""

    def __init__(
        self,
        project_path: Path,
        quality_runner: QualityGateRunner,
        task_command: Optional[List[str]] = None,
        format_commands: Iterable[List[str]] = (),
        marker_paths: Iterable[str] = (".",),
        timeout: float = 600,
    ):
        self.project_path = project_path
        self.quality_runner = quality_runner
        self.task_command = list(task_command or [])
        self.format_commands = [list(c) for c in format_commands]
        self.marker_paths = list(marker_paths)
        self.timeout = timeout

    async def run_verification_suite(
        self, task_id: Optional[str] = None, revision: Optional[str] = None
    ) -> QualityReport:
        return await self.quality_runner.run(task_id=task_id, revision=revision)

    async def apply_formatting(self) -> bool:
        """Run every format/fix command. Returns False if any of them failed."""
        all_ok = True
        for command in self.format_commands:
            try:
                result = await run_command(command, self.project_path, self.timeout)
            except FileNotFoundError:
                logger.warning("format_command_not_found", command=command[0])
                all_ok = False
                continue
            if not result.ok:
                logger.warning(
                    "format_command_failed",
                    command=command[0],
                    return_code=result.return_code,
                )
                all_ok = False
        return all_ok

    async def apply_task(self, task: Task) -> None:
        """Apply the change a task describes.

        Runs the configured task command (with ``{task_id}``,
        ``{description}`` and ``{kind}`` filled in), then the format
        commands.

        Raises:
            CommandError: If the task command fails.
        """
        if self.task_command:
            argv = substitute(
                self.task_command,
                {"task_id": task.id, "description": task.description, "kind": task.kind.value},
            )
            try:
                result = await run_command(argv, self.project_path, self.timeout)
            except (OSError, RuntimeError) as e:
                raise CommandError(
                    f"Task command could not run: {e}",
                    command=argv,
                    category=ErrorCategory.INFRASTRUCTURE,
                    task_id=task.id,
                ) from e
            if not result.ok:
                raise CommandError(
                    f"Task command failed (exit {result.return_code})",
                    command=argv,
                    return_code=result.return_code,
                    output=result.output,
                )
        await self.apply_formatting()

    async def list_outstanding_markers(self) -> int:
        return await asyncio.to_thread(self._count_markers_sync)

    def _count_markers_sync(self) -> int:
        count = 0
        for rel in self.marker_paths:
            root = (self.project_path / rel).resolve()
            if not root.exists():
                continue
            for path in root.rglob("*"):
                if path.suffix not in _MARKER_SUFFIXES or not path.is_file():
                    continue
                if any(skip in path.relative_to(root).parts for skip in _SKIP_DIRS):
                    continue
                try:
                    content = path.read_text(errors="replace")
                except OSError:
                    continue
                count += len(_MARKER_PATTERN.findall(content))
        return count


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class ShellDeployer:
    """Deployment collaborator running configured commands.

    Commands accept ``{env}``, ``{version}``, ``{artifact}`` and
    ``{package}`` placeholders. A stage with no command is a no-op.
    """

    def __init__(self, project_path: Path, commands: Dict[str, List[str]], timeout: float = 900):
        self.project_path = project_path
        self.commands = commands
        self.timeout = timeout

    async def _run(self, stage: str, values: Dict[str, str]) -> Optional[str]:
        command = self.commands.get(stage)
        if not command:
            deploy_logger.info("deploy_stage_not_configured", stage=stage)
            return None
        argv = substitute(command, values)
        deploy_logger.info("deploy_command", stage=stage, command=argv[0], env=values.get("env"))
        try:
            result = await run_command(argv, self.project_path, self.timeout)
        except (OSError, RuntimeError) as e:
            raise CommandError(
                f"{stage} command could not run: {e}",
                command=argv,
                category=ErrorCategory.INFRASTRUCTURE,
            ) from e
        if not result.ok:
            raise CommandError(
                f"{stage} command failed (exit {result.return_code})",
                command=argv,
                return_code=result.return_code,
                output=result.output,
            )
        lines = [line for line in result.output.splitlines() if line.strip()]
        return lines[-1].strip() if lines else ""

    async def build_artifact(self) -> str:
        return await self._run("build", {}) or str(self.project_path)

    async def package(self, artifact: str) -> str:
        return await self._run("package", {"artifact": artifact}) or artifact

    async def deploy(self, env: Environment, package: str, version: str) -> None:
        await self._run("deploy", {"env": env.value, "package": package, "version": version})

    async def run_smoke_tests(self, env: Environment) -> bool:
        try:
            await self._run("smoke_test", {"env": env.value})
        except CommandError as e:
            deploy_logger.warning(
                "smoke_tests_failed", env=env.value, error=e.message, output=error_output(e)
            )
            return False
        return True

    async def rollback(self, env: Environment, version: Optional[str]) -> None:
        await self._run("rollback", {"env": env.value, "version": version or ""})
