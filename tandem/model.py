"""Model backend boundary: provider routing and the LiteLLM-backed ModelClient."""

import functools
import json
import os
import uuid

from . import fmt
from .report import ConfigError, TransportError
from .transcript import (
    AssistantTurn,
    TextBlock,
    ToolRequestBlock,
    ToolResultTurn,
    UserText,
)

PROVIDERS = ("anthropic", "openrouter", "lmstudio")
DEFAULT_MODELS = {"anthropic": "claude-sonnet-4-5-20250929"}
API_KEY_ENV = {"anthropic": "ANTHROPIC_API_KEY", "openrouter": "OPENROUTER_API_KEY"}
LMSTUDIO_BASE_URL = "http://127.0.0.1:1234"
DEFAULT_MAX_OUTPUT_TOKENS = 4000


@functools.cache
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across wire-format messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def resolve_provider(
    provider: str,
    model: str | None,
    api_key: str | None,
    base_url: str | None,
) -> tuple[str, dict, str | None]:
    """Map provider settings to a LiteLLM model string and call kwargs.

    Returns (model_str, kwargs, missing_key_message). The last item is
    None when credentials are present; otherwise it describes what is
    missing so the first model call can report it.
    """
    if provider not in PROVIDERS:
        raise ConfigError(
            f"unknown provider {provider!r} (expected one of: {', '.join(PROVIDERS)})"
        )

    model = model or DEFAULT_MODELS.get(provider)
    if not model:
        raise ConfigError(f"--model is required when --provider is {provider}")

    missing = None
    if provider == "lmstudio":
        model_str = f"openai/{model}"
        kwargs = {"api_base": f"{base_url or LMSTUDIO_BASE_URL}/v1", "api_key": "lm-studio"}
        return model_str, kwargs, None

    key = api_key or os.environ.get(API_KEY_ENV[provider])
    if not key:
        missing = (
            f"no API key for provider {provider!r}: "
            f"set {API_KEY_ENV[provider]} or pass --api-key"
        )

    if provider == "anthropic":
        model_str = f"anthropic/{model.removeprefix('anthropic/')}"
    else:
        # Only strip a doubled prefix; "openrouter/free" is a real model id.
        bare_id = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        model_str = f"openrouter/{bare_id}"

    kwargs = {"api_key": key}
    if base_url:
        kwargs["api_base"] = base_url
    return model_str, kwargs, missing


def tool_schema(spec) -> dict:
    """Render a ToolSpec as a function-calling tool definition."""
    return {
        "type": "function",
        "function": {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.input_schema,
        },
    }


def _encode_arguments(value) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def encode_transcript(turns, system_prompt: str | None = None) -> list[dict]:
    """Translate transcript turns into chat-completion messages.

    Text blocks are concatenated in order; tool requests keep their order
    in tool_calls. Each tool result becomes its own "tool" message.
    """
    messages: list[dict] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    for turn in turns:
        if isinstance(turn, UserText):
            messages.append({"role": "user", "content": turn.text})
        elif isinstance(turn, AssistantTurn):
            msg: dict = {"role": "assistant", "content": turn.text or None}
            requests = turn.tool_requests
            if requests:
                msg["tool_calls"] = [
                    {
                        "id": block.id,
                        "type": "function",
                        "function": {
                            "name": block.name,
                            "arguments": _encode_arguments(block.input),
                        },
                    }
                    for block in requests
                ]
            elif msg["content"] is None:
                msg["content"] = ""
            messages.append(msg)
        elif isinstance(turn, ToolResultTurn):
            for result in turn.results:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.request_id,
                        "content": result.content,
                    }
                )
        else:
            raise TypeError(f"cannot encode {type(turn).__name__}")
    return messages


def _decode_arguments(raw):
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw
    return parsed if isinstance(parsed, dict) else raw


def decode_message(msg, finish_reason: str | None = None) -> AssistantTurn:
    """Build an AssistantTurn from a chat-completion message object."""
    blocks: list = []

    content = getattr(msg, "content", None)
    if isinstance(content, str):
        if content:
            blocks.append(TextBlock(content))
    elif isinstance(content, list):
        for part in content:
            text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
            if text:
                blocks.append(TextBlock(text))
    elif content is not None:
        raise TransportError(f"unexpected message content type: {type(content).__name__}")

    seen_ids: set[str] = set()
    for tc in getattr(msg, "tool_calls", None) or []:
        fn = getattr(tc, "function", None)
        name = getattr(fn, "name", None)
        if not name:
            raise TransportError("tool call without a function name in model response")
        call_id = getattr(tc, "id", None) or f"call_{uuid.uuid4().hex[:12]}"
        if call_id in seen_ids:
            raise TransportError(f"duplicate tool call id {call_id!r} in model response")
        seen_ids.add(call_id)
        blocks.append(
            ToolRequestBlock(
                id=call_id,
                name=name,
                input=_decode_arguments(getattr(fn, "arguments", None)),
            )
        )

    return AssistantTurn(blocks=tuple(blocks), finish_reason=finish_reason)


class ModelClient:
    """One-shot chat-completion calls through LiteLLM.

    Credentials are read at construction; a missing key is reported as a
    ConfigError by the first send(). Calls are never retried here.
    """

    def __init__(
        self,
        *,
        provider: str = "anthropic",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        temperature: float | None = None,
        verbose: bool = False,
    ):
        self.provider = provider
        self.model_str, self._kwargs, self._missing_key = resolve_provider(
            provider, model, api_key, base_url
        )
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.verbose = verbose

    @property
    def model_id(self) -> str:
        return self.model_str.split("/", 1)[1]

    def send(self, transcript, system_prompt: str | None, catalog) -> AssistantTurn:
        """Submit the transcript and return the model's next turn."""
        if self._missing_key:
            raise ConfigError(self._missing_key)

        import litellm

        litellm.suppress_debug_info = True

        turns = transcript.snapshot() if hasattr(transcript, "snapshot") else tuple(transcript)
        messages = encode_transcript(turns, system_prompt)
        tools = [tool_schema(spec) for spec in catalog]

        completion_kwargs = dict(
            model=self.model_str,
            messages=messages,
            max_tokens=self.max_output_tokens,
            num_retries=0,
            **self._kwargs,
        )
        if tools:
            completion_kwargs["tools"] = tools
            completion_kwargs["tool_choice"] = "auto"
        if self.temperature is not None:
            completion_kwargs["temperature"] = self.temperature

        if self.verbose:
            fmt.model_info(
                f"Calling model {self.model_str} with max_tokens={self.max_output_tokens}"
            )

        try:
            response = litellm.completion(**completion_kwargs)
        except Exception as e:
            raise TransportError(f"LLM call failed: {e}") from e

        try:
            choice = response.choices[0]
        except (AttributeError, IndexError, TypeError) as e:
            raise TransportError(f"malformed model response: {e}") from e
        return decode_message(choice.message, getattr(choice, "finish_reason", None))
