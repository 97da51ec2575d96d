#!/usr/bin/env python3
"""
Tests for the turn loop, history management and the hosted client.
"""

import tempfile
from pathlib import Path

import requests

from delta_agent import (
    AgentSession,
    agent_loop,
    build_messages,
    format_tool_results,
    handle_command,
    prune_history,
    run_turn,
    ToolResult,
)
from delta_tools import ToolExecutor
from llm_clients import HostedLLM, LLMConfigError, LLMError, filter_thinking_tokens
from tpm_limiter import RateLimiter


class ScriptedLLM:
    """Replays canned replies and remembers what it was sent."""

    def __init__(self, replies, usage=None):
        self.replies = list(replies)
        self.usage = usage
        self.last_usage = None
        self.calls = []

    def chat(self, messages):
        self.calls.append(messages)
        self.last_usage = self.usage
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def make_session(tmp, llm, **kwargs):
    limiter = RateLimiter(100000, min_interval=0, clock=lambda: 0.0, sleep=lambda s: None)
    return AgentSession(llm=llm, executor=ToolExecutor(tmp), limiter=limiter, **kwargs)


PATCH_REPLY = """<|start|>assistant<|channel|>Fixing the greeting.
CHANGE: greet.py
<<<<<<< CURRENT
print("helo")
=======
print("hello")
>>>>>>> NEW
<|end|>"""


def test_agent_loop_patches_and_stops():
    with tempfile.TemporaryDirectory() as tmp:
        (Path(tmp) / "greet.py").write_text('print("helo")\n')
        llm = ScriptedLLM([PATCH_REPLY, "All done."], usage=400)
        session = make_session(tmp, llm)

        turns = agent_loop(session, "fix the typo", max_steps=5)

        assert len(turns) == 2
        assert (Path(tmp) / "greet.py").read_text() == 'print("hello")\n'
        assert turns[0].tools[0].name == "write_file_delta"
        assert turns[1].tools == []

        roles = [m["role"] for m in session.history]
        assert roles == ["user", "assistant", "user", "assistant"], roles
        assert "<|end|>" not in session.history[1]["content"]
        assert session.history[2]["content"].startswith(
            "Tool Results:\nTool: write_file_delta\nResult:\nApplied delta to: "
        )

        # The second request carried the tool results back to the model.
        assert llm.calls[1][-1]["content"].startswith("Tool Results:")
        assert llm.calls[1][0]["role"] == "system"

        # Provider usage replaced the estimates.
        assert session.limiter.current_usage() == 800
    print("✓ Agent loop applies a patch and stops when no tools are called")


def test_agent_loop_respects_max_steps():
    with tempfile.TemporaryDirectory() as tmp:
        llm = ScriptedLLM(['execute_command("echo again")'] * 3)
        session = make_session(tmp, llm)
        turns = agent_loop(session, "loop forever", max_steps=3)
        assert len(turns) == 3
        assert all(t.tools for t in turns)
        name, parameter, result = turns[0].tools[0].as_triple()
        assert (name, parameter) == ("execute_command", "echo again")
        assert result.startswith("stdout:\nagain\n")
    print("✓ max_steps bounds the autonomous loop")


def test_llm_error_stops_loop():
    with tempfile.TemporaryDirectory() as tmp:
        llm = ScriptedLLM([LLMError("service unavailable")])
        session = make_session(tmp, llm)
        assert agent_loop(session, "anything") == []
        assert session.history == [{"role": "user", "content": "anything"}]
    print("✓ LLM failure ends the loop without touching history")


def test_run_turn_writes_transcript():
    with tempfile.TemporaryDirectory() as tmp:
        logs = Path(tmp) / "logs"
        logs.mkdir()
        session = make_session(tmp, ScriptedLLM(["nothing to do"]), logs_dir=logs)
        session.history.append({"role": "user", "content": "hi"})

        turn = run_turn(session)

        assert turn.response_text == "nothing to do"
        assert turn.output_tokens == 3
        files = list(logs.iterdir())
        assert len(files) == 1 and files[0].name.startswith("agent_step_1_")
        assert files[0].read_text() == "nothing to do"
    print("✓ Per-step transcript written")


def test_transcript_survives_removed_logs_dir():
    with tempfile.TemporaryDirectory() as tmp:
        logs = Path(tmp) / ".delta-agent" / "logs"
        llm = ScriptedLLM(['execute_command("rm -rf .delta-agent")', "done"])
        session = make_session(tmp, llm, logs_dir=logs)

        turns = agent_loop(session, "clean up", max_steps=3)

        assert len(turns) == 2
        assert any(f.name.startswith("agent_step_2_") for f in logs.iterdir())

        # A logs path that cannot become a directory only costs the transcript.
        blocker = Path(tmp) / "not_a_dir"
        blocker.write_text("")
        session = make_session(tmp, ScriptedLLM(["still fine"]), logs_dir=blocker / "logs")
        session.history.append({"role": "user", "content": "hi"})
        assert run_turn(session).response_text == "still fine"
    print("✓ Transcript logging never ends the turn")


def test_prune_history():
    history = [{"role": "user", "content": str(i)} for i in range(40)]
    assert prune_history(history, 40) is history

    history.append({"role": "assistant", "content": "40"})
    pruned = prune_history(history, 40)
    assert len(pruned) == 22
    assert pruned[0]["content"].startswith("[CONTEXT MANAGEMENT: Pruned 20 older messages")
    assert pruned[1]["content"] == "20"
    assert pruned[-1]["content"] == "40"
    print("✓ History pruned to the newest messages")


def test_messages_and_results_format():
    messages = build_messages([{"role": "user", "content": "go"}], Path("/work/proj"))
    assert messages[0]["role"] == "system"
    assert "CHANGE:" in messages[0]["content"]
    assert "/work/proj" in messages[0]["content"]
    assert messages[1:] == [{"role": "user", "content": "go"}]

    text = format_tool_results([
        ToolResult("read_file", "a.txt", "A"),
        ToolResult("execute_command", "ls", "stdout:\n"),
    ])
    assert text == "Tool Results:\nTool: read_file\nResult:\nA\n\nTool: execute_command\nResult:\nstdout:\n"
    print("✓ Context and tool result messages formatted")


def test_slash_commands():
    with tempfile.TemporaryDirectory() as tmp:
        session = make_session(tmp, ScriptedLLM([]))
        session.history.append({"role": "user", "content": "x"})
        assert handle_command(session, "/stats") is True
        assert handle_command(session, "/history") is True
        assert handle_command(session, "/clear") is True
        assert session.history == []
        assert handle_command(session, "/quit") is False
        assert handle_command(session, "/exit") is False
        assert handle_command(session, "please read main.rs") is None
    print("✓ Slash commands handled")


def test_filter_thinking_tokens():
    raw = "<|start|>assistant<|channel|>analysis<|message|>Answer<|end|>"
    assert filter_thinking_tokens(raw) == "analysisAnswer"
    assert filter_thinking_tokens("  plain  ") == "plain"
    print("✓ Channel markers removed")


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self.ok = status_code < 400
        self._body = body
        self.text = str(body)

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    def __init__(self, response):
        self.headers = {}
        self.response = response
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def test_hosted_llm_request():
    body = {"choices": [{"message": {"content": "hi"}}], "usage": {"total_tokens": 42}}
    session = FakeSession(FakeResponse(200, body))
    llm = HostedLLM("https://example.test/openai/deployments/x/", "secret", session=session)

    assert llm.chat([{"role": "user", "content": "hello"}]) == "hi"
    assert llm.last_usage == 42
    assert session.headers["api-key"] == "secret"

    url, payload, _ = session.posts[0]
    assert url == "https://example.test/openai/deployments/x/chat/completions?api-version=2024-05-01-preview"
    assert payload["temperature"] == 0.7
    assert payload["max_tokens"] == 6000
    assert payload["messages"] == [{"role": "user", "content": "hello"}]
    print("✓ Hosted client request and usage")


def test_hosted_llm_errors():
    for response in (
        FakeResponse(429, {"error": "too many requests"}),
        FakeResponse(200, {"choices": []}),
        FakeResponse(200, ValueError("not json")),
        requests.ConnectionError("refused"),
    ):
        llm = HostedLLM("https://example.test", "k", session=FakeSession(response))
        try:
            llm.chat([{"role": "user", "content": "x"}])
        except LLMError:
            assert llm.last_usage is None
            continue
        raise AssertionError(f"expected LLMError for {response!r}")

    for endpoint, key in (("", "k"), ("https://example.test", "")):
        try:
            HostedLLM(endpoint, key, session=FakeSession(None))
        except LLMConfigError:
            continue
        raise AssertionError("missing configuration accepted")
    print("✓ Hosted client failures raise LLMError / LLMConfigError")


if __name__ == "__main__":
    print("Testing agent loop...\n")

    test_agent_loop_patches_and_stops()
    test_agent_loop_respects_max_steps()
    test_llm_error_stops_loop()
    test_run_turn_writes_transcript()
    test_transcript_survives_removed_logs_dir()
    test_prune_history()
    test_messages_and_results_format()
    test_slash_commands()
    test_filter_thinking_tokens()
    test_hosted_llm_request()
    test_hosted_llm_errors()

    print("\n✓ All tests passed!")
