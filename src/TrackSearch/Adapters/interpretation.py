"""Text generation over the Anthropic Messages API.

Three calls share one request path:

- ``interpret`` writes the 2-3 paragraph interpretation of a song's lyrics.
- ``describe`` turns a prepared prompt into a one-sentence short description.
- ``expand_query`` rewrites a discovery query into one to three paraphrases.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ..errors import AdapterError
from ..logging import get_logger, log_event
from .base import AdapterResult, HttpAdapter, schema_error
from .prompts import build_interpretation_prompt, build_query_expansion_prompt

__all__ = ["Generation", "InterpretationAdapter", "parse_query_expansion"]

LOGGER = get_logger(__name__, base_fields={"component": "adapters", "service": "anthropic"})

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")
MAX_EXPANSIONS = 3


@dataclass(frozen=True, slots=True)
class Generation:
    """Generated text and its token usage."""

    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class _ContentBlock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    text: Optional[str] = None


class _Usage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    input_tokens: int = 0
    output_tokens: int = 0


class _MessageResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: Optional[str] = None
    content: List[_ContentBlock]
    usage: _Usage = _Usage()


def parse_query_expansion(text: str, original: str) -> List[str]:
    """Extract up to three paraphrases from a model reply.

    The reply should be a JSON array of strings. An array embedded in extra
    prose is also accepted. Anything else falls back to ``[original]``.

    Examples:
        >>> parse_query_expansion('["a b", "c d"]', "x")
        ['a b', 'c d']
        >>> parse_query_expansion("no idea", "x")
        ['x']
    """

    candidates: Any = None
    for raw in (text.strip(), *(_JSON_ARRAY.findall(text)[:1])):
        try:
            candidates = json.loads(raw)
        except ValueError:
            continue
        break
    if not isinstance(candidates, list):
        return [original]
    queries = [item.strip() for item in candidates if isinstance(item, str) and item.strip()]
    return queries[:MAX_EXPANSIONS] or [original]


class InterpretationAdapter(HttpAdapter):
    """LLM-backed interpretation, description and query expansion."""

    service = "anthropic"

    def __init__(
        self,
        *args: Any,
        api_key: Optional[str] = None,
        api_version: str = "2023-06-01",
        model: str = "claude-sonnet-4-5-20250929",
        description_model: Optional[str] = None,
        interpretation_max_tokens: int = 1024,
        description_max_tokens: int = 150,
        expansion_max_tokens: int = 200,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._api_key = api_key
        self._headers.update(
            {
                "x-api-key": api_key or "",
                "anthropic-version": api_version,
                "content-type": "application/json",
            }
        )
        self._model = model
        self._description_model = description_model or model
        self._interpretation_max_tokens = interpretation_max_tokens
        self._description_max_tokens = description_max_tokens
        self._expansion_max_tokens = expansion_max_tokens

    async def interpret(
        self, title: str, artist: str, album: str, lyrics: str
    ) -> AdapterResult[Generation]:
        prompt = build_interpretation_prompt(title, artist, album, lyrics)
        return await self._guard(
            self._complete(prompt, self._model, self._interpretation_max_tokens),
            call="interpret",
        )

    async def describe(self, prompt: str) -> AdapterResult[Generation]:
        return await self._guard(
            self._complete(prompt, self._description_model, self._description_max_tokens),
            call="describe",
        )

    async def expand_query(self, query: str) -> AdapterResult[List[str]]:
        return await self._guard(self._expand(query), call="expand_query")

    async def _expand(self, query: str) -> List[str]:
        generation = await self._complete(
            build_query_expansion_prompt(query), self._description_model, self._expansion_max_tokens
        )
        queries = parse_query_expansion(generation.text, query)
        log_event(LOGGER, "debug", "query_expanded", original=query, expanded=queries)
        return queries

    async def _complete(self, prompt: str, model: str, max_tokens: int) -> Generation:
        if not self._api_key:
            raise AdapterError(
                "Anthropic API key is not configured",
                service=self.service,
                status_code=401,
                retryable=False,
            )
        response = await self._send(
            "POST",
            "messages",
            json={
                "model": model,
                "max_tokens": max_tokens,
                "messages": [{"role": "user", "content": prompt}],
            },
        )
        try:
            message = _MessageResponse.model_validate(self._json(response))
        except PydanticValidationError as exc:
            raise schema_error(self.service, f"{exc.error_count()} invalid field(s)") from exc
        text = "".join(block.text or "" for block in message.content if block.type == "text").strip()
        if not text:
            raise AdapterError(
                "Empty completion received from LLM",
                service=self.service,
                status_code=500,
                retryable=True,
            )
        return Generation(
            text=text,
            model=message.model or model,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )
