"""
Tool-call protocol for delta-agent.

The model never gets a structured tool API. It answers in free text and
embeds requests in one of two shapes:

    read_file("src/main.rs")          read_file: "src/main.rs"
    execute_command("cargo check")    execute_command: "cargo check"

or, to change a file, a patch block:

    CHANGE: src/lib.rs
    <<<<<<< CURRENT
    pub fn old() {}
    =======
    pub fn new() {}
    >>>>>>> NEW

This module recovers those requests as ToolCall values. Parsing never
raises: text with no recognizable tool syntax just yields an empty list.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


READ_FILE = "read_file"
EXECUTE_COMMAND = "execute_command"
WRITE_FILE_DELTA = "write_file_delta"

DELTA_SENTINEL = ":::"

CHANGE_PREFIX = "CHANGE:"
CURRENT_MARKER = "<<<<<<< CURRENT"
DIVIDER_MARKER = "======="
NEW_MARKER = ">>>>>>> NEW"

# Some models wrap a command as code{"command":"..."} instead of using the
# documented syntax.
COMMAND_QUIRK_MARKER = 'code{"command":"'

# Opening fence plus its language tag (```rust, ```sh, ```bash, ```).
FENCE_RE = re.compile(r"```[\w.+#-]*")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeltaSpec:
    """A targeted substitution in one file. Empty old_content replaces the file."""

    path: str
    old_content: str
    new_content: str

    def serialize(self) -> str:
        return f"{self.path}{DELTA_SENTINEL}{self.old_content}\n{self.new_content}"

    @classmethod
    def from_parameter(cls, parameter: str) -> "DeltaSpec":
        """
        Split a serialized write_file_delta parameter.

        The path ends at the first ':::' and old/new are separated by the
        first newline after it, so only single-line old content survives
        this route. Raises ValueError when either separator is missing.
        """
        if DELTA_SENTINEL not in parameter:
            raise ValueError("Invalid delta format: missing ':::' after the path")
        path, rest = parameter.split(DELTA_SENTINEL, 1)
        if "\n" not in rest:
            raise ValueError("Invalid delta content: missing newline between old and new content")
        old_content, new_content = rest.split("\n", 1)
        return cls(path=path.strip(), old_content=old_content, new_content=new_content)

    def render_block(self) -> str:
        """Render the patch-block wire format for this delta."""
        lines = [f"{CHANGE_PREFIX} {self.path}", CURRENT_MARKER]
        if self.old_content:
            lines.append(self.old_content)
        lines.append(DIVIDER_MARKER)
        if self.new_content:
            lines.append(self.new_content)
        lines.append(NEW_MARKER)
        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class ToolCall:
    """
    One tool invocation recovered from model text.

    Equality and hashing only consider (name, parameter). Patch blocks also
    keep the parsed DeltaSpec so the executor does not have to split the
    serialized parameter again.
    """

    name: str
    parameter: str
    delta: Optional[DeltaSpec] = field(default=None, compare=False, repr=False)

    @classmethod
    def for_delta(cls, delta: DeltaSpec) -> "ToolCall":
        return cls(name=WRITE_FILE_DELTA, parameter=delta.serialize(), delta=delta)

    def as_pair(self) -> Tuple[str, str]:
        return (self.name, self.parameter)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class BlockState(Enum):
    SEEKING = "seeking"
    IN_CURRENT = "in_current"
    IN_NEW = "in_new"


def strip_code_fences(text: str) -> str:
    """Remove ``` fence markers (and language tags) wherever they appear."""
    return FENCE_RE.sub("", text)


def _is_change_line(stripped: str) -> bool:
    return stripped.startswith(CHANGE_PREFIX)


def _is_block_delimiter(stripped: str) -> bool:
    return (
        _is_change_line(stripped)
        or stripped.startswith("<<<<<<<")
        or stripped.startswith(DIVIDER_MARKER)
        or stripped.startswith(">>>>>>>")
    )


def _trim_block(lines: List[str]) -> str:
    # The delimiters sit on their own lines, so at most one blank line on
    # either side belongs to the markup rather than the content.
    if lines and not lines[0].strip():
        lines = lines[1:]
    if lines and not lines[-1].strip():
        lines = lines[:-1]
    return "\n".join(lines)


def extract_patch_blocks(text: str) -> List[ToolCall]:
    """
    Scan for CHANGE:/CURRENT/NEW blocks with a three-state machine.

    SEEKING holds a pending path once a CHANGE: line was seen and waits for
    the CURRENT marker; other lines are ignored. IN_CURRENT collects old
    content until the divider, IN_NEW collects new content until the NEW
    marker, which emits the block.

    A CHANGE: line in any state abandons the block in progress and starts a
    new one, and EOF abandons whatever is open. Abandoned blocks emit
    nothing.
    """
    calls: List[ToolCall] = []
    state = BlockState.SEEKING
    path: Optional[str] = None
    current: List[str] = []
    new: List[str] = []

    for line in text.splitlines():
        stripped = line.strip()

        if _is_change_line(stripped):
            path = stripped[len(CHANGE_PREFIX):].strip()
            state = BlockState.SEEKING
            current, new = [], []
            continue

        if state is BlockState.SEEKING:
            if path is not None and stripped.startswith(CURRENT_MARKER):
                state = BlockState.IN_CURRENT
        elif state is BlockState.IN_CURRENT:
            if stripped.startswith(DIVIDER_MARKER):
                state = BlockState.IN_NEW
            else:
                current.append(line)
        elif state is BlockState.IN_NEW:
            if stripped.startswith(NEW_MARKER):
                if path:
                    delta = DeltaSpec(path=path, old_content=_trim_block(current), new_content=_trim_block(new))
                    calls.append(ToolCall.for_delta(delta))
                state = BlockState.SEEKING
                path = None
                current, new = [], []
            else:
                new.append(line)

    return calls


def _between_quotes(text: str) -> Optional[str]:
    text = text.strip()
    if not text or text[0] not in "\"'":
        return None
    quote = text[0]
    end = text.find(quote, 1)
    if end == -1:
        return None
    return text[1:end]


def _call_syntax_param(line: str, tool: str) -> Optional[str]:
    # tool("arg") / tool('arg')
    start = line.find(f"{tool}(")
    if start == -1:
        return None
    inner = line[start + len(tool) + 1:]
    quoted = _between_quotes(inner)
    if quoted is not None:
        param = quoted
    else:
        close = inner.find(")")
        if close == -1:
            return None
        param = inner[:close].strip().strip('"').strip("'")
    return param or None


def _label_syntax_param(line: str, tool: str) -> Optional[str]:
    # tool: "arg" / tool: 'arg'
    start = line.find(f"{tool}:")
    if start == -1:
        return None
    return _between_quotes(line[start + len(tool) + 1:]) or None


def _quirk_command_param(line: str) -> Optional[str]:
    start = line.find(COMMAND_QUIRK_MARKER)
    if start == -1:
        return None
    rest = line[start + len(COMMAND_QUIRK_MARKER):]
    end = rest.find('"')
    if end == -1:
        return None
    return rest[:end] or None


def extract_tool_param(line: str, tool: str) -> Optional[str]:
    """Return the first parameter for `tool` on this line, or None."""
    param = _call_syntax_param(line, tool)
    if param is None:
        param = _label_syntax_param(line, tool)
    if param is None and tool == EXECUTE_COMMAND:
        param = _quirk_command_param(line)
    return param


def extract_simple_calls(text: str) -> List[ToolCall]:
    """
    Pick read_file/execute_command calls out of individual lines.

    Both tools are matched independently, so one line can yield at most
    one call of each.
    """
    calls: List[ToolCall] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or _is_block_delimiter(line):
            continue
        for tool in (READ_FILE, EXECUTE_COMMAND):
            if tool not in line and not (tool == EXECUTE_COMMAND and COMMAND_QUIRK_MARKER in line):
                continue
            param = extract_tool_param(line, tool)
            if param:
                calls.append(ToolCall(name=tool, parameter=param))
    return calls


def dedupe_calls(calls: List[ToolCall]) -> List[ToolCall]:
    seen = set()
    unique: List[ToolCall] = []
    for call in calls:
        if call in seen:
            continue
        seen.add(call)
        unique.append(call)
    return unique


class ResponseParser:
    """
    Turn a raw model reply into an ordered, de-duplicated list of ToolCalls.

    A reply is treated either as a patch-block reply or as a simple-call
    reply: once a well-formed patch block is found, simple calls in the
    same reply are ignored.
    """

    def parse(self, raw_text: str) -> List[ToolCall]:
        text = strip_code_fences(raw_text or "")
        calls = extract_patch_blocks(text)
        if not calls:
            calls = extract_simple_calls(text)
        return dedupe_calls(calls)


def parse_tool_calls(raw_text: str) -> List[ToolCall]:
    return ResponseParser().parse(raw_text)
