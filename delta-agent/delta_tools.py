"""
Filesystem and shell tools the model can drive.

Everything here is confined to a project root. A relative path is checked
before the filesystem is touched at all; absolute paths and '..' components
are refused. That containment check is the only sandboxing there is.

Nothing in this module raises on a bad tool request. Failures come back as
text so they can be fed into the next model turn.
"""

import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Callable, Optional, Union

from tool_protocol import (
    EXECUTE_COMMAND,
    READ_FILE,
    WRITE_FILE_DELTA,
    DeltaSpec,
    ToolCall,
)


PathLike = Union[str, Path]


# ---------------------------------------------------------------------------
# Path safety
# ---------------------------------------------------------------------------


class UnsafePathError(ValueError):
    pass


def validate_relative_path(path: str) -> None:
    """
    Validate that a path is safe (relative, no escapes).

    Checked purely on the string, so it can run before any filesystem
    access. Both separators are considered because model output does not
    care which platform we run on.

    Raises UnsafePathError if the path is unsafe.
    """
    if not path or not path.strip():
        raise UnsafePathError("Path cannot be empty")

    if "\0" in path:
        raise UnsafePathError("Path contains null byte")

    if (
        path.startswith(("/", "\\"))
        or PurePosixPath(path).is_absolute()
        or PureWindowsPath(path).is_absolute()
        or PureWindowsPath(path).drive
    ):
        raise UnsafePathError(f"Path must be relative, not absolute: {path}")

    parts = path.replace("\\", "/").split("/")
    if ".." in parts:
        raise UnsafePathError(f"Path attempts to escape project root: {path}")

    if path.startswith("~"):
        raise UnsafePathError(f"Path cannot use home directory expansion: {path}")


def resolve_project_path(relative_path: str, project_root: Path) -> Path:
    """
    Join a validated relative path onto the project root.

    Symlinks are resolved on both sides, so a link inside the project that
    points outside of it is refused as well.
    """
    root_resolved = project_root.resolve()
    target = (project_root / relative_path).resolve()
    try:
        target.relative_to(root_resolved)
    except ValueError:
        raise UnsafePathError(f"Path '{relative_path}' resolves outside project root: {target}")
    return project_root / relative_path


def _read_text(path: Path) -> str:
    # newline="" keeps \r\n intact so the substring search sees the real bytes.
    with path.open("r", encoding="utf-8", newline="") as f:
        return f.read()


def _write_text(path: Path, content: str) -> None:
    with path.open("w", encoding="utf-8", newline="") as f:
        f.write(content)


# ---------------------------------------------------------------------------
# Delta patcher
# ---------------------------------------------------------------------------


class PatchStatus(Enum):
    CREATED = "created"
    REPLACED = "replaced"
    PATCHED = "patched"
    NOT_FOUND = "not_found"
    IO_ERROR = "io_error"


@dataclass
class PatchOutcome:
    status: PatchStatus
    path: str
    searched: Optional[str] = None
    existing: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (PatchStatus.CREATED, PatchStatus.REPLACED, PatchStatus.PATCHED)

    def render(self) -> str:
        if self.status is PatchStatus.CREATED:
            return f"Created new file: {self.path}"
        if self.status is PatchStatus.REPLACED:
            return f"Replaced entire file: {self.path}"
        if self.status is PatchStatus.PATCHED:
            return f"Applied delta to: {self.path}"
        if self.status is PatchStatus.NOT_FOUND:
            return (
                f"Error: Could not find specified content in {self.path}\n"
                f"Searching for:\n{self.searched}"
            )
        return f"Error: {self.reason}"


def apply_delta(root: PathLike, relative_path: str, old_content: str, new_content: str) -> PatchOutcome:
    """
    Apply an old -> new substitution to a file under `root`.

    - Missing file: create it (and its parents) with new_content.
    - Empty old_content: overwrite the whole file.
    - Otherwise replace the first exact occurrence of old_content. No fuzzy
      matching: if the text is not there the outcome is NOT_FOUND and the
      file is left alone.
    """
    try:
        validate_relative_path(relative_path)
    except UnsafePathError as e:
        return PatchOutcome(PatchStatus.IO_ERROR, relative_path, reason=f"Unsafe target file path: {e}")

    try:
        target = resolve_project_path(relative_path, Path(root))
    except UnsafePathError as e:
        return PatchOutcome(PatchStatus.IO_ERROR, relative_path, reason=f"Unsafe target file path: {e}")
    except (OSError, RuntimeError) as e:
        # resolve() raises RuntimeError on symlink loops before Python 3.13
        return PatchOutcome(PatchStatus.IO_ERROR, relative_path, reason=f"Cannot resolve target file path: {e}")

    shown = str(target)

    try:
        exists = target.exists()
        is_file = target.is_file()
    except OSError as e:
        return PatchOutcome(PatchStatus.IO_ERROR, shown, reason=f"Cannot access target file: {e}")

    if not exists:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            _write_text(target, new_content)
        except OSError as e:
            return PatchOutcome(PatchStatus.IO_ERROR, shown, reason=f"Error creating file: {e}")
        return PatchOutcome(PatchStatus.CREATED, shown)

    if not is_file:
        return PatchOutcome(PatchStatus.IO_ERROR, shown, reason=f"Path is not a file: {shown}")

    if not old_content:
        try:
            _write_text(target, new_content)
        except OSError as e:
            return PatchOutcome(PatchStatus.IO_ERROR, shown, reason=f"Error writing file: {e}")
        return PatchOutcome(PatchStatus.REPLACED, shown)

    try:
        existing = _read_text(target)
    except (OSError, UnicodeDecodeError) as e:
        return PatchOutcome(PatchStatus.IO_ERROR, shown, reason=f"Error reading file: {e}")

    pos = existing.find(old_content)
    if pos == -1:
        return PatchOutcome(PatchStatus.NOT_FOUND, shown, searched=old_content, existing=existing)

    updated = existing[:pos] + new_content + existing[pos + len(old_content):]
    try:
        _write_text(target, updated)
    except OSError as e:
        return PatchOutcome(PatchStatus.IO_ERROR, shown, reason=f"Error applying delta: {e}")
    return PatchOutcome(PatchStatus.PATCHED, shown)


# ---------------------------------------------------------------------------
# Shell commands
# ---------------------------------------------------------------------------


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    def render(self) -> str:
        return f"stdout:\n{self.stdout}\nstderr:\n{self.stderr}\nexit_code: {self.exit_code}"


CommandRunner = Callable[[str, Path], CommandResult]


def shell_argv(command: str) -> list:
    if os.name == "nt":
        return ["cmd", "/C", command]
    return ["sh", "-c", command]


def run_shell_command(command: str, cwd: Path, timeout: Optional[float] = None) -> CommandResult:
    """
    Run `command` through the platform shell in `cwd` and capture its output.

    A process killed by a signal has no exit code; it is reported as -1.
    Raises OSError if the shell cannot be spawned and
    subprocess.TimeoutExpired if a timeout was given and hit.
    """
    proc = subprocess.run(
        shell_argv(command),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=str(cwd),
        timeout=timeout,
    )
    exit_code = proc.returncode if proc.returncode >= 0 else -1
    return CommandResult(
        stdout=proc.stdout.decode("utf-8", errors="replace"),
        stderr=proc.stderr.decode("utf-8", errors="replace"),
        exit_code=exit_code,
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class ToolExecutor:
    """Dispatch ToolCalls against one project root. Always returns text."""

    def __init__(
        self,
        project_root: PathLike,
        runner: Optional[CommandRunner] = None,
        command_timeout: Optional[float] = None,
    ):
        self.project_root = Path(project_root)
        self.command_timeout = command_timeout
        self.runner = runner or (lambda command, cwd: run_shell_command(command, cwd, timeout=self.command_timeout))

    def execute(self, call: ToolCall) -> str:
        if call.name == READ_FILE:
            return self.read_file(call.parameter)
        if call.name == WRITE_FILE_DELTA:
            return self.write_file_delta(call)
        if call.name == EXECUTE_COMMAND:
            return self.execute_command(call.parameter)
        return f"Unknown tool: {call.name}"

    def read_file(self, path: str) -> str:
        try:
            validate_relative_path(path)
            target = resolve_project_path(path, self.project_root)
        except UnsafePathError:
            return "Error: Unsafe file path"
        except (OSError, RuntimeError) as e:
            return f"Error reading file: {e}"
        try:
            return _read_text(target)
        except (OSError, UnicodeDecodeError) as e:
            return f"Error reading file: {e}"

    def write_file_delta(self, call: ToolCall) -> str:
        delta = call.delta
        if delta is None:
            try:
                delta = DeltaSpec.from_parameter(call.parameter)
            except ValueError as e:
                return f"Error: {e}"
        return apply_delta(self.project_root, delta.path, delta.old_content, delta.new_content).render()

    def execute_command(self, command: str) -> str:
        try:
            result = self.runner(command, self.project_root)
        except subprocess.TimeoutExpired:
            return f"Error executing command: timed out after {self.command_timeout}s"
        except (OSError, ValueError) as e:
            return f"Error executing command: {e}"
        return result.render()


def execute_tool(call: ToolCall, root: PathLike) -> str:
    return ToolExecutor(root).execute(call)
