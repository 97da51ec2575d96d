"""
Local completion backend: a Hugging Face causal LM on torch.

Same interface as llm_clients.HostedLLM (chat() plus last_usage), plus the
tokenizer, which the agent hands to TokenEstimator so limiter accounting
uses exact counts.

The prompt is held to an input budget. When the conversation outgrows it,
the oldest tokens are cut so the system prompt tail and the newest tool
results survive; the agent's own history pruning normally keeps this from
happening.
"""

import sys
from typing import Any, Dict, List, Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer


DEFAULT_CONTEXT_TOKENS = 32768

# Tokenizers without a configured limit report a huge sentinel value.
UNBOUNDED_CONTEXT = 10 ** 8


def pick_dtype() -> torch.dtype:
    if torch.cuda.is_available():
        return torch.bfloat16
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.bfloat16
    return torch.float32


def print_device_summary() -> None:
    if torch.cuda.is_available():
        names = [torch.cuda.get_device_name(i) for i in range(torch.cuda.device_count())]
        print(f"[LLM] torch {torch.__version__} on CUDA: {', '.join(names)}", file=sys.stderr)
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        print(f"[LLM] torch {torch.__version__} on Apple MPS", file=sys.stderr)
    else:
        print(f"[LLM] torch {torch.__version__} on CPU (install a CUDA wheel for GPU use)", file=sys.stderr)
    sys.stderr.flush()


def context_window(tokenizer: Any) -> int:
    limit = getattr(tokenizer, "model_max_length", None)
    if not limit or limit >= UNBOUNDED_CONTEXT:
        return DEFAULT_CONTEXT_TOKENS
    return int(limit)


class LocalLLM:
    """
    chat() over a local model.

    tokenizer and model can be passed in directly; otherwise both are
    loaded from model_path. max_input_tokens defaults to whatever the
    context window leaves after max_new_tokens.
    """

    def __init__(
        self,
        model_path: str,
        max_new_tokens: int = 2048,
        temperature: float = 0.1,
        max_input_tokens: Optional[int] = None,
        tokenizer: Any = None,
        model: Any = None,
    ):
        if tokenizer is None or model is None:
            print_device_summary()
            print(f"[LLM] Loading model from {model_path}", file=sys.stderr)
            sys.stderr.flush()
            tokenizer = AutoTokenizer.from_pretrained(model_path, trust_remote_code=True)
            model = AutoModelForCausalLM.from_pretrained(
                model_path,
                dtype=pick_dtype(),
                device_map="auto",
                trust_remote_code=True,
            )

        self.model_path = model_path
        self.tokenizer = tokenizer
        self.model = model
        self.tokenizer.truncation_side = "left"
        self.max_new_tokens = max_new_tokens
        self.temperature = temperature
        self.max_input_tokens = max_input_tokens or max(context_window(tokenizer) - max_new_tokens, 1)
        self.last_usage: Optional[int] = None

    def _format_messages(self, messages: List[Dict[str, str]]) -> str:
        if getattr(self.tokenizer, "chat_template", None):
            return self.tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
        lines = [f"### {m['role'].capitalize()}\n{m['content'].strip()}\n" for m in messages]
        lines.append("### Assistant\n")
        return "\n".join(lines)

    def _generation_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "max_new_tokens": self.max_new_tokens,
            "pad_token_id": self.tokenizer.eos_token_id,
            "do_sample": self.temperature > 0.0,
        }
        if kwargs["do_sample"]:
            kwargs["temperature"] = self.temperature
        return kwargs

    def chat(self, messages: List[Dict[str, str]]) -> str:
        prompt = self._format_messages(messages)
        inputs = self.tokenizer(
            prompt,
            return_tensors="pt",
            truncation=True,
            max_length=self.max_input_tokens,
        ).to(self.model.device)
        prompt_tokens = int(inputs["input_ids"].shape[1])

        if prompt_tokens >= self.max_input_tokens:
            print(
                f"[LLM] WARNING: prompt cut to the newest {self.max_input_tokens} tokens",
                file=sys.stderr,
            )
        print(f"[LLM] Generating from {prompt_tokens} prompt tokens...", file=sys.stderr)
        sys.stderr.flush()

        with torch.no_grad():
            output_ids = self.model.generate(**inputs, **self._generation_kwargs())

        generated = output_ids[0, prompt_tokens:]
        self.last_usage = prompt_tokens + int(generated.shape[0])
        return self.tokenizer.decode(generated, skip_special_tokens=True).strip()
