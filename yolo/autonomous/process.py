"""Subprocess helper shared by git, verification and deployment commands.

Commands always run as an argument list through
``asyncio.create_subprocess_exec``. There is no shell.
"""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import structlog

logger = structlog.get_logger("yolo.pipeline")

OUTPUT_TAIL = 2000


@dataclass
class CommandResult:
    command: List[str]
    return_code: Optional[int]
    output: str
    duration_seconds: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.return_code == 0 and not self.timed_out


def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def run_command(
    command: Sequence[str],
    cwd: Path,
    timeout: float,
) -> CommandResult:
    """Run ``command`` in ``cwd`` and capture combined output.

    A timeout or a cancelled await kills the child. A missing
    executable raises FileNotFoundError to the caller.
    """
    argv = list(command)
    start = time.monotonic()
    process = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _terminate(process)
        await process.wait()
        logger.warning("command_timeout", command=argv[0], timeout=timeout)
        return CommandResult(
            command=argv,
            return_code=None,
            output=f"Timed out after {timeout}s",
            duration_seconds=time.monotonic() - start,
            timed_out=True,
        )
    except asyncio.CancelledError:
        _terminate(process)
        raise

    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    return CommandResult(
        command=argv,
        return_code=process.returncode,
        output=output[-OUTPUT_TAIL:],
        duration_seconds=time.monotonic() - start,
    )
