"""Custom exception hierarchy for YOLO mode.

Provides precise error classification across all subsystems, enabling
targeted error handling, escalation decisions, and audit context.

Every exception carries an ErrorCategory so callers can decide between
"fail this task and let the next cycle try again" (TRANSIENT),
"give up" (PERMANENT), and "the environment is broken" (INFRASTRUCTURE).
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for escalation decisions."""
    TRANSIENT = "transient"          # Tool failed this time (tests, build, deploy)
    PERMANENT = "permanent"          # Will not resolve on its own (bad input, illegal transition)
    INFRASTRUCTURE = "infrastructure"  # Tool missing, config broken, disk issues


class YoloError(Exception):
    """Base exception for all YOLO mode errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for escalation decisions.
        module: Originating module name (e.g. "autonomous.pipeline").
        output: Tail of the failing tool's output, kept for the audit log.
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        output: str = "",
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.output = output
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Configuration exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(YoloError):
    """Invalid or missing configuration.

    Defaults to INFRASTRUCTURE because config issues are environmental
    and won't resolve by retrying. ``problems`` lists every validation
    failure found so Start can report all of them at once.
    """

    def __init__(
        self,
        message: str = "",
        *,
        problems: Optional[list[str]] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.problems = list(problems or [])
        super().__init__(
            message, category=category, module=module or "config", **context
        )


# ---------------------------------------------------------------------------
# Database exceptions
# ---------------------------------------------------------------------------

class DatabaseError(YoloError):
    """Error during state store operations.

    Attributes:
        operation: The DB operation that failed (e.g. "insert", "query").
        table: The table involved (if known).
    """

    def __init__(
        self,
        message: str = "",
        *,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.operation = operation
        self.table = table
        super().__init__(
            message, category=category, module=module or "database", **context
        )


# ---------------------------------------------------------------------------
# External command exceptions
# ---------------------------------------------------------------------------

class CommandError(YoloError):
    """An external command (git, build, deploy) could not be run or failed.

    Attributes:
        command: The argv that was executed.
        return_code: Process exit code (None if it never started or timed out).
        output: Tail of the combined stdout/stderr.
    """

    def __init__(
        self,
        message: str = "",
        *,
        command: Optional[list[str]] = None,
        return_code: Optional[int] = None,
        output: str = "",
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.command = list(command or [])
        self.return_code = return_code
        super().__init__(
            message, category=category, module=module or "commands", output=output, **context
        )


# ---------------------------------------------------------------------------
# Notification exceptions
# ---------------------------------------------------------------------------

class NotificationError(YoloError):
    """Failed to deliver a notification (non-critical, never propagated)."""

    def __init__(
        self,
        message: str = "",
        *,
        channel: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.channel = channel
        super().__init__(
            message, category=category, module=module or "notifications", **context
        )


# ---------------------------------------------------------------------------
# Helpers for failure handling
# ---------------------------------------------------------------------------

def error_category(error: BaseException) -> ErrorCategory:
    """Category of any exception; foreign ones are classified by type."""
    if isinstance(error, YoloError):
        return error.category
    if isinstance(error, OSError):
        return ErrorCategory.INFRASTRUCTURE
    return ErrorCategory.PERMANENT


def error_message(error: BaseException) -> str:
    if isinstance(error, YoloError):
        return error.message or type(error).__name__
    return f"{type(error).__name__}: {error}"


def error_output(error: BaseException, tail: int = 1000) -> str:
    """Tail of the tool output attached to ``error`` ("" if none)."""
    output = error.output if isinstance(error, YoloError) else ""
    return output[-tail:].strip() if output else ""


def error_detail(error: BaseException, tail: int = 1000) -> str:
    """Message followed by the output tail, as stored on tasks and deployments."""
    output = error_output(error, tail)
    message = error_message(error)
    return f"{message}\n{output}" if output else message
