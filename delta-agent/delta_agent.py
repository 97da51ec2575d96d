#!/usr/bin/env python3
"""
delta-agent

Conversational coding agent driven by a hosted (or local) completion model.

Each turn:
    - builds the context (system prompt, project, bounded history),
    - waits on the tokens-per-minute limiter,
    - asks the model for a reply,
    - scrapes the reply for tool calls (read_file, execute_command, and
      CHANGE: patch blocks),
    - runs them in order against the project directory and feeds the
      results back into the history.

With --task the agent keeps going on its own until a reply contains no tool
calls (or --max-steps is hit). Without it, you get an interactive prompt.

Typical usage:

    export LLM_URL=https://<resource>.openai.azure.com/openai/deployments/<name>
    export LLM_KEY=...
    delta-agent --project path/to/project --task "make cargo check pass"
"""

import argparse
import datetime
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from delta_tools import ToolExecutor
from llm_clients import (
    DEFAULT_API_VERSION,
    DEFAULT_DEPLOYMENT,
    HostedLLM,
    LLMConfigError,
    LLMError,
    filter_thinking_tokens,
)
from tool_protocol import ResponseParser
from tpm_limiter import RateLimiter, TokenEstimator


DEFAULT_TPM = 20000
DEFAULT_MIN_INTERVAL = 1.0
DEFAULT_MAX_HISTORY = 40


# ---------------------------------------------------------------------------
# Prompt and context
# ---------------------------------------------------------------------------


def build_system_prompt() -> str:
    """Instructions for the tool protocol understood by tool_protocol.py."""
    return (
        "You are an expert coding assistant with direct access to a project directory.\n"
        "You cannot act on the project yourself; you request actions with the tools below\n"
        "and the system runs them and replies with the results.\n\n"
        "TOOLS:\n"
        "  read_file: \"relative/path\"\n"
        "    - Returns the file contents\n\n"
        "  execute_command: \"shell command\"\n"
        "    - Runs the command in the project root\n"
        "    - Returns stdout, stderr and the exit code\n\n"
        "  File changes use this EXACT format:\n"
        "  CHANGE: relative/path\n"
        "  <<<<<<< CURRENT\n"
        "  exact existing text to replace\n"
        "  =======\n"
        "  replacement text\n"
        "  >>>>>>> NEW\n"
        "    - CURRENT must match the file exactly, including whitespace\n"
        "    - Only the first occurrence of CURRENT is replaced\n"
        "    - Leave CURRENT empty to write the whole file (or create it)\n\n"
        "RULES:\n"
        "- Always use paths relative to the project root; absolute paths and '..' are refused.\n"
        "- Read a file before changing it, and copy CURRENT from what you read.\n"
        "- Either send CHANGE blocks or read_file/execute_command calls in one reply, not both.\n"
        "- Write complete, working code. No placeholders.\n"
        "- Wait for the tool results before deciding the next step.\n"
        "- When the task is done, reply with a short summary and no tool calls.\n\n"
        "EXAMPLES:\n"
        "execute_command: \"ls -la\"\n"
        "read_file: \"src/main.rs\"\n"
        "CHANGE: src/lib.rs\n"
        "<<<<<<< CURRENT\n"
        "pub fn old() {}\n"
        "=======\n"
        "pub fn new() {}\n"
        ">>>>>>> NEW\n"
    )


def build_messages(history: List[Dict[str, str]], project_root: Path) -> List[Dict[str, str]]:
    system = f"{build_system_prompt()}\nProject: {project_root}\n"
    return [{"role": "system", "content": system}] + list(history)


def render_context(messages: List[Dict[str, str]]) -> str:
    return "".join(f"{m['role']}: {m['content']}\n\n" for m in messages)


def prune_history(history: List[Dict[str, str]], max_messages: int = DEFAULT_MAX_HISTORY) -> List[Dict[str, str]]:
    """
    Keep the history bounded.

    Once it grows past max_messages, the oldest half of the budget is
    dropped and a short note tells the model that older context is gone.
    """
    if len(history) <= max_messages:
        return history

    drop = max(1, max_messages // 2)
    note = {
        "role": "user",
        "content": (
            f"[CONTEXT MANAGEMENT: Pruned {drop} older messages to stay within the context budget. "
            "Re-read files if you need their current contents.]"
        ),
    }
    return [note] + history[drop:]


def format_tool_results(results: List["ToolResult"]) -> str:
    blocks = [f"Tool: {r.name}\nResult:\n{r.result}" for r in results]
    return "Tool Results:\n" + "\n\n".join(blocks)


def ensure_logs_dir(project_root: Path) -> Path:
    logs_dir = project_root / ".delta-agent" / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def now_utc_string() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%dT%H%M%SZ")


# ---------------------------------------------------------------------------
# Turn loop
# ---------------------------------------------------------------------------


@dataclass
class ToolResult:
    name: str
    parameter: str
    result: str

    def as_triple(self) -> Tuple[str, str, str]:
        return (self.name, self.parameter, self.result)


@dataclass
class TurnResult:
    response_text: str
    tools: List[ToolResult]
    wait_seconds: float
    input_tokens: int
    output_tokens: int
    current_usage: int
    lifetime_usage: int


@dataclass
class AgentSession:
    llm: Any
    executor: ToolExecutor
    limiter: RateLimiter
    estimator: TokenEstimator = field(default_factory=TokenEstimator)
    parser: ResponseParser = field(default_factory=ResponseParser)
    history: List[Dict[str, str]] = field(default_factory=list)
    max_history: int = DEFAULT_MAX_HISTORY
    logs_dir: Optional[Path] = None
    step: int = 0

    @property
    def project_root(self) -> Path:
        return self.executor.project_root


def _preview(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def run_turn(session: AgentSession) -> TurnResult:
    """
    Run one model turn against the current history.

    Raises LLMError if the completion service fails; the history is left
    as it was in that case.
    """
    session.step += 1
    messages = build_messages(session.history, session.project_root)
    input_tokens = session.estimator.estimate(render_context(messages))

    wait = session.limiter.wait_if_needed()

    print(f"[AGENT] Step {session.step} - querying LLM ({input_tokens} input tokens est.)...", file=sys.stderr)
    sys.stderr.flush()

    raw = session.llm.chat(messages)
    response_text = filter_thinking_tokens(raw)
    output_tokens = session.estimator.estimate(response_text)

    session.limiter.record_usage(input_tokens + output_tokens)
    actual = getattr(session.llm, "last_usage", None)
    if actual is not None:
        session.limiter.refine_last_usage(actual)

    if session.logs_dir is not None:
        log_path = session.logs_dir / f"agent_step_{session.step}_{now_utc_string()}.txt"
        try:
            # Tool commands may have removed the directory since the last turn.
            session.logs_dir.mkdir(parents=True, exist_ok=True)
            log_path.write_text(response_text, encoding="utf-8")
        except OSError as e:
            print(f"[AGENT] WARNING: could not write transcript {log_path}: {e}", file=sys.stderr)
            sys.stderr.flush()

    print("[AGENT OUTPUT BEGIN]")
    print(response_text)
    print("[AGENT OUTPUT END]")
    sys.stdout.flush()

    calls = session.parser.parse(response_text)
    results: List[ToolResult] = []
    for call in calls:
        print(f"[AGENT TOOL] {call.name}: {_preview(call.parameter, 60)}", file=sys.stderr)
        sys.stderr.flush()
        result = session.executor.execute(call)
        print("[AGENT TOOL RESULT BEGIN]")
        print(_preview(result, 2000))
        print("[AGENT TOOL RESULT END]")
        sys.stdout.flush()
        results.append(ToolResult(call.name, call.parameter, result))

    session.history.append({"role": "assistant", "content": response_text})
    if results:
        session.history.append({"role": "user", "content": format_tool_results(results)})
    session.history = prune_history(session.history, session.max_history)

    return TurnResult(
        response_text=response_text,
        tools=results,
        wait_seconds=wait,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        current_usage=session.limiter.current_usage(),
        lifetime_usage=session.limiter.lifetime_usage(),
    )


def agent_loop(session: AgentSession, task: str, max_steps: int = 25) -> List[TurnResult]:
    """Work on `task` until the model stops calling tools or max_steps runs out."""
    session.history.append({"role": "user", "content": task})
    turns: List[TurnResult] = []

    for _ in range(max_steps):
        try:
            turn = run_turn(session)
        except LLMError as e:
            print(f"[AGENT] LLM ERROR: {e}", file=sys.stderr)
            sys.stderr.flush()
            break
        turns.append(turn)
        if not turn.tools:
            print("[AGENT] No tool calls in reply; task finished.", file=sys.stderr)
            break
    else:
        print(f"[AGENT] Reached max_steps={max_steps} without finishing. Stopping.", file=sys.stderr)

    sys.stderr.flush()
    return turns


# ---------------------------------------------------------------------------
# Interactive mode
# ---------------------------------------------------------------------------


HELP_TEXT = (
    "Commands:\n"
    "  /help     - Show this help\n"
    "  /exit     - Exit the agent (/quit works too)\n"
    "  /clear    - Clear conversation history\n"
    "  /history  - Show conversation history\n"
    "  /stats    - Show token usage\n\n"
    "Tools the model can use:\n"
    "  read_file: \"path\"         - Read file contents\n"
    "  execute_command: \"cmd\"    - Run shell command\n"
    "  CHANGE: path              - Modify file (delta format)\n"
)


def handle_command(session: AgentSession, line: str) -> Optional[bool]:
    """
    Handle a slash command.

    Returns None if `line` is not a command, False to leave the REPL and
    True to keep going.
    """
    command = line.strip()
    if command in ("/exit", "/quit"):
        print("Goodbye!")
        return False
    if command == "/clear":
        session.history.clear()
        print("History cleared")
        return True
    if command == "/history":
        for msg in session.history:
            print(f"{msg['role']}: {msg['content']}\n")
        return True
    if command == "/help":
        print(HELP_TEXT)
        return True
    if command == "/stats":
        stats = session.limiter.stats()
        print(
            f"Tokens this minute: {stats['current_tpm']}/{stats['max_tpm']} "
            f"({stats['tpm_usage_percent']:.1f}%), total: {stats['total_tokens']}"
        )
        return True
    return None


def interactive_loop(session: AgentSession) -> None:
    print(f"delta-agent - project: {session.project_root}")
    print("Commands: /help /exit /clear /history /stats\n")

    while True:
        try:
            line = input("You> ")
        except (EOFError, KeyboardInterrupt):
            print()
            break

        if not line.strip():
            continue

        handled = handle_command(session, line)
        if handled is False:
            break
        if handled:
            continue

        session.history.append({"role": "user", "content": line.strip()})
        try:
            run_turn(session)
        except LLMError as e:
            # Drop the unanswered message so the next attempt starts clean.
            session.history.pop()
            print(f"[AGENT] LLM ERROR: {e}", file=sys.stderr)
            sys.stderr.flush()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def create_llm(args: argparse.Namespace) -> Any:
    if args.backend == "local":
        if not args.model:
            raise LLMConfigError("--model (or LLM_MODEL) must point at a local model directory")
        model_path = Path(args.model).resolve()
        if not model_path.is_dir():
            raise LLMConfigError(f"Model path is not a directory: {model_path}")

        from local_llm import LocalLLM

        return LocalLLM(
            model_path=str(model_path),
            max_new_tokens=args.max_new_tokens or 2048,
            temperature=0.1 if args.temperature is None else args.temperature,
            max_input_tokens=args.max_input_tokens,
        )

    return HostedLLM.from_env(
        deployment=args.model,
        api_version=args.api_version,
        max_tokens=args.max_new_tokens or 6000,
        temperature=args.temperature,
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="delta-agent: LLM coding agent with patch-block file edits",
    )
    parser.add_argument(
        "--project",
        default=os.environ.get("PROJECT_PATH", "."),
        help="Path to the project root (default: $PROJECT_PATH or .)",
    )
    parser.add_argument(
        "--backend",
        choices=["hosted", "local"],
        default=os.environ.get("LLM_BACKEND", "hosted"),
        help="Completion backend (default: hosted)",
    )
    parser.add_argument(
        "--model",
        default=os.environ.get("LLM_MODEL"),
        help=f"Hosted deployment name (default {DEFAULT_DEPLOYMENT}) or local HF model directory",
    )
    parser.add_argument("--api-version", default=os.environ.get("LLM_VERSION", DEFAULT_API_VERSION))
    parser.add_argument("--tpm", type=int, default=_env_int("LLM_TPM", DEFAULT_TPM), help="Tokens per minute budget")
    parser.add_argument(
        "--min-interval",
        type=float,
        default=_env_float("LLM_MIN_INTERVAL", DEFAULT_MIN_INTERVAL),
        help="Minimum seconds between requests",
    )
    parser.add_argument(
        "--max-input-tokens",
        type=int,
        default=None,
        help="Prompt token budget for the local backend (default: context window minus --max-new-tokens)",
    )
    parser.add_argument("--max-new-tokens", type=int, default=None)
    parser.add_argument("--temperature", type=float, default=None)
    parser.add_argument("--task", default=None, help="Run autonomously on this task instead of the prompt")
    parser.add_argument("--max-steps", type=int, default=25)
    parser.add_argument("--max-history", type=int, default=DEFAULT_MAX_HISTORY)
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=0,
        help="Seconds before an execute_command is abandoned (0 = no limit)",
    )
    parser.add_argument("--no-logs", action="store_true", help="Do not write per-step transcripts")
    return parser


def main() -> None:
    load_dotenv()
    args = build_arg_parser().parse_args()

    project_root = Path(args.project).resolve()
    if not project_root.is_dir():
        print(f"[ERROR] Project path is not a directory: {project_root}", file=sys.stderr)
        sys.exit(1)

    try:
        llm = create_llm(args)
        limiter = RateLimiter(args.tpm, args.min_interval, verbose=True)
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)

    session = AgentSession(
        llm=llm,
        executor=ToolExecutor(project_root, command_timeout=args.command_timeout or None),
        limiter=limiter,
        estimator=TokenEstimator(getattr(llm, "tokenizer", None)),
        max_history=args.max_history,
        logs_dir=None if args.no_logs else ensure_logs_dir(project_root),
    )

    print(f"[INFO] Project root: {project_root}", file=sys.stderr)
    sys.stderr.flush()

    if args.task:
        agent_loop(session, args.task, max_steps=args.max_steps)
    else:
        interactive_loop(session)


if __name__ == "__main__":
    main()
