from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from openai import OpenAI, OpenAIError

from citation_pipeline.errors import CompletionError, ScoringFailure

logger = logging.getLogger(__name__)

Message = dict[str, str]

_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


class CompletionClient(Protocol):
    def complete(
        self,
        messages: list[Message],
        *,
        temperature: float = 0.3,
        max_tokens: int = 1000,
        json_mode: bool = True,
    ) -> str: ...


class OpenAICompletionClient:
    """Chat-completions client for one model; raises ``CompletionError`` on any failure."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        base_url: str | None = None,
        timeout: float = 60.0,
        max_retries: int = 2,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self._client: OpenAI | None = None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
        return self._client

    def complete(
        self,
        messages: list[Message],
        *,
        temperature: float = 0.3,
        max_tokens: int = 1000,
        json_mode: bool = True,
    ) -> str:
        if not self.api_key:
            raise CompletionError("OPENAI_API_KEY not set")

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = self.client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            raise CompletionError(f"{self.model} completion failed: {exc}") from exc

        if not response.choices:
            raise CompletionError(f"{self.model} returned no choices")
        return response.choices[0].message.content or ""


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_payload(text: str | None) -> dict[str, Any] | None:
    """Decode the JSON object in a completion, tolerating fences, prose and trailing commas."""
    if not text:
        return None
    cleaned = _CONTROL_CHARS_RE.sub("", _FENCE_RE.sub("", text)).strip()

    candidates = [cleaned]
    balanced = _first_balanced_object(cleaned)
    if balanced is not None and balanced != cleaned:
        candidates.append(balanced)

    for candidate in candidates:
        for variant in (candidate, _TRAILING_COMMA_RE.sub(r"\1", candidate)):
            try:
                decoded = json.loads(variant)
            except json.JSONDecodeError:
                continue
            if isinstance(decoded, dict):
                return decoded
    logger.debug("completion did not contain a JSON object: %.200s", text)
    return None


def request_json(
    client: CompletionClient,
    messages: list[Message],
    *,
    stage: str,
    temperature: float = 0.3,
    max_tokens: int = 1000,
) -> dict[str, Any]:
    """Run one JSON-mode completion and decode it, raising ``ScoringFailure`` on either failure."""
    try:
        raw = client.complete(messages, temperature=temperature, max_tokens=max_tokens, json_mode=True)
    except CompletionError as exc:
        raise ScoringFailure(stage, str(exc)) from exc
    payload = parse_json_payload(raw)
    if payload is None:
        raise ScoringFailure(stage, "malformed JSON from completion")
    return payload
