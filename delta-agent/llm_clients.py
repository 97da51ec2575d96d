"""
Completion service clients.

Backends share one duck-typed interface:

    reply = llm.chat([{"role": "system", "content": ...}, ...])
    llm.last_usage   # provider-reported total tokens of that call, or None

HostedLLM (here) talks to an Azure-OpenAI-compatible chat completions
endpoint. LocalLLM (local_llm.py) runs a Hugging Face model with
transformers; it is imported only when the local backend is selected.
"""

import os
import sys
from typing import Any, Dict, List, Optional

import requests


THINKING_MARKERS = ("<|start|>assistant<|channel|>", "<|message|>", "<|end|>")

DEFAULT_API_VERSION = "2024-05-01-preview"
DEFAULT_DEPLOYMENT = "DeepSeek-V3-0324"


class LLMConfigError(ValueError):
    pass


class LLMError(RuntimeError):
    pass


def filter_thinking_tokens(text: str) -> str:
    """Drop channel markers some chat templates leak into the reply."""
    for marker in THINKING_MARKERS:
        text = text.replace(marker, "")
    return text.strip()


# ---------------------------------------------------------------------------
# Hosted backend
# ---------------------------------------------------------------------------


class HostedLLM:
    def __init__(
        self,
        endpoint: str,
        api_key: str,
        deployment: str = DEFAULT_DEPLOYMENT,
        api_version: str = DEFAULT_API_VERSION,
        max_tokens: Optional[int] = 6000,
        temperature: float = 0.7,
        timeout: float = 300.0,
        session: Optional[requests.Session] = None,
    ):
        if not endpoint:
            raise LLMConfigError("LLM_URL not set")
        if not api_key:
            raise LLMConfigError("LLM_KEY not set")
        self.endpoint = endpoint.rstrip("/")
        self.deployment = deployment
        self.api_version = api_version
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.last_usage: Optional[int] = None
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "api-key": api_key,
                "Content-Type": "application/json",
            }
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> "HostedLLM":
        kwargs: Dict[str, Any] = {
            "endpoint": os.environ.get("LLM_URL", ""),
            "api_key": os.environ.get("LLM_KEY", ""),
            "deployment": os.environ.get("LLM_MODEL", DEFAULT_DEPLOYMENT),
            "api_version": os.environ.get("LLM_VERSION", DEFAULT_API_VERSION),
        }
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)

    def chat_url(self) -> str:
        return f"{self.endpoint}/chat/completions?api-version={self.api_version}"

    def chat(self, messages: List[Dict[str, str]]) -> str:
        payload = {
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": 1.0,
            "frequency_penalty": 0.0,
            "presence_penalty": 0.0,
            "model": self.deployment,
        }
        print(f"[LLM] POST {self.chat_url()} ({len(messages)} messages)", file=sys.stderr)
        sys.stderr.flush()

        self.last_usage = None
        try:
            resp = self.session.post(self.chat_url(), json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise LLMError(f"completion request failed: {e}") from e

        if not resp.ok:
            raise LLMError(f"completion service error {resp.status_code}: {resp.text[:500]}")

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMError(f"unexpected completion response: {e}") from e

        usage = data.get("usage") or {}
        if isinstance(usage.get("total_tokens"), int):
            self.last_usage = usage["total_tokens"]
        return content or ""

