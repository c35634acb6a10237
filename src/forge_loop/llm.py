# llm.py
# Model collaborator. The orchestrator only depends on the ModelClient
# protocol; OpenRouterModel is the default transport.
#
# complete() returns either a lazy iterator of StreamDelta (stream=True) or a
# single Completion. Callers must accept both shapes.

from typing import Iterator, Protocol

import openai
from loguru import logger
from openai import OpenAI

from forge_loop.errors import TransportError
from forge_loop.models import ChatMessage, Completion, CompletionOptions, StreamDelta, Usage

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class ModelClient(Protocol):
    def complete(
        self, messages: list[ChatMessage], options: CompletionOptions
    ) -> Iterator[StreamDelta] | Completion: ...


def _usage(raw) -> Usage | None:
    if raw is None:
        return None
    return Usage(
        input_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        output_tokens=getattr(raw, "completion_tokens", 0) or 0,
    )


class OpenRouterModel:
    """
    Chat-completions client for any OpenAI-compatible endpoint.

    Example:
        model = OpenRouterModel("x-ai/grok-code-fast-1", api_key="...")
        reply = model.complete(messages, CompletionOptions(stream=False))
    """

    def __init__(self, model: str, api_key: str | None = None, base_url: str = DEFAULT_BASE_URL) -> None:
        self.model = model
        self._client = OpenAI(base_url=base_url, api_key=api_key)

    def complete(
        self, messages: list[ChatMessage], options: CompletionOptions
    ) -> Iterator[StreamDelta] | Completion:
        payload = [m.model_dump() for m in messages]
        extra = {"reasoning": {"enabled": True}} if options.want_reasoning else None
        logger.debug(f"[MODEL] {self.model}: {len(payload)} message(s), stream={options.stream}")

        if options.stream:
            return self._stream(payload, options, extra)

        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=payload,
                temperature=options.temperature,
                extra_body=extra,
            )
        except openai.OpenAIError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

        message = response.choices[0].message
        return Completion(
            text=(message.content or "").strip(),
            usage=_usage(response.usage),
            reasoning=getattr(message, "reasoning", None),
        )

    def _stream(self, payload: list[dict], options: CompletionOptions, extra: dict | None) -> Iterator[StreamDelta]:
        # Errors surface while iterating, so wrapping the create() call alone is not enough.
        try:
            stream = self._client.chat.completions.create(
                model=self.model,
                messages=payload,
                temperature=options.temperature,
                stream=True,
                stream_options={"include_usage": True},
                extra_body=extra,
            )
            for chunk in stream:
                usage = _usage(chunk.usage)
                if not chunk.choices:
                    if usage is not None:
                        yield StreamDelta(usage=usage)
                    continue
                delta = chunk.choices[0].delta
                yield StreamDelta(
                    content_delta=delta.content or "",
                    reasoning_delta=getattr(delta, "reasoning", None),
                    usage=usage,
                )
        except openai.OpenAIError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc
