from __future__ import annotations

from dataclasses import dataclass
import subprocess
from typing import Callable, Literal

ErrorCategory = Literal["retryable", "fatal"]
CommandRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]

DEFAULT_COMMAND_TIMEOUT = 900
TIMED_OUT_RETURNCODE = -1

_RETRYABLE_PATTERNS = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection refused",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "unable to connect",
    "too many requests",
    "rate limit",
)


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return f"{self.stderr}\n{self.stdout}"


class AdapterCommandError(RuntimeError):
    def __init__(
        self,
        *,
        message: str,
        result: CommandResult,
        category: ErrorCategory,
        operation: str | None = None,
    ) -> None:
        self.result = result
        self.category = category
        self.operation = operation
        super().__init__(self._build_message(message))

    @property
    def retryable(self) -> bool:
        return self.category == "retryable"

    @property
    def cause(self) -> str:
        """Operation label plus the tool's own output, without command line or object names."""
        if not self.operation:
            return str(self)
        return f"{self.operation}: {self._detail()}"

    def mentions(self, *fragments: str) -> bool:
        text = self.result.output.lower()
        return any(fragment.lower() in text for fragment in fragments)

    @classmethod
    def from_error(cls, exc: AdapterCommandError, message: str) -> AdapterCommandError:
        return cls(message=message, result=exc.result, category=exc.category, operation=exc.operation)

    def _detail(self) -> str:
        detail = (self.result.stderr or self.result.stdout).strip()
        if len(detail) > 400:
            detail = f"{detail[:397]}..."
        return detail

    def _build_message(self, message: str) -> str:
        cmd = " ".join(self.result.command)
        return (
            f"{message} (category={self.category}, returncode={self.result.returncode}, "
            f"command={cmd!r}, detail={self._detail()!r})"
        )


class ResourceConflictError(AdapterCommandError):
    """The platform object being created already exists."""


class ResourceNotFoundError(AdapterCommandError):
    """The platform object being read does not exist."""


def default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=False,
            timeout=DEFAULT_COMMAND_TIMEOUT,
        )
    except subprocess.TimeoutExpired as exc:
        return subprocess.CompletedProcess(
            args=command,
            returncode=TIMED_OUT_RETURNCODE,
            stdout=_decode(exc.stdout),
            stderr=f"{_decode(exc.stderr)}\ncommand timed out after {exc.timeout}s".strip(),
        )


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def classify_error(*, returncode: int, stderr: str, stdout: str) -> ErrorCategory:
    if returncode < 0:
        return "retryable"
    text = f"{stderr}\n{stdout}".lower()
    if any(pattern in text for pattern in _RETRYABLE_PATTERNS):
        return "retryable"
    return "fatal"


def run_command(
    command: list[str],
    *,
    runner: CommandRunner | None = None,
    error_message: str,
    operation: str | None = None,
) -> CommandResult:
    active_runner = runner or default_runner
    completed = active_runner(command)
    result = CommandResult(
        command=command,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    if result.returncode != 0:
        raise AdapterCommandError(
            message=error_message,
            result=result,
            category=classify_error(
                returncode=result.returncode,
                stderr=result.stderr,
                stdout=result.stdout,
            ),
            operation=operation,
        )
    return result
