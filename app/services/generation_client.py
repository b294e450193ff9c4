"""
Generation Client - Timeout/parse contract around the generative capability.

Talks to an OpenAI-compatible chat-completions endpoint and returns either a
canonical WorkflowDocument or a typed GenerationError. Never retries.
"""

import asyncio
import json
import time
from collections.abc import Iterator
from typing import Any

import httpx

from app.config import Settings, settings
from app.exceptions import (
    GenerationError,
    GenerationTimeoutError,
    UnparsableOutputError,
    UpstreamGenerationError,
)
from app.models.domain import GenerationContext, GenerationResult, WorkflowDocument
from app.observability.logging import get_logger
from app.observability.metrics import metrics

logger = get_logger(__name__)

_CLOSERS = {"{": "}", "[": "]"}


def _top_level_spans(text: str) -> Iterator[tuple[int, int]]:
    """
    Balanced top-level object/array spans, in order of appearance.

    One pass over the text. A delimiter that never closes, or closes with the
    wrong bracket, is discarded and the balanced spans found inside it are
    yielded in its place.
    """
    open_at: list[tuple[int, str]] = []
    # Balanced spans directly inside each open delimiter
    nested: list[list[tuple[int, int]]] = []
    in_string = False
    escaped = False
    for index, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            # Quotes in prose outside any delimiter are not strings
            in_string = bool(open_at)
        elif ch in _CLOSERS:
            open_at.append((index, _CLOSERS[ch]))
            nested.append([])
        elif ch in "}]" and open_at:
            start, closer = open_at.pop()
            inner = nested.pop()
            if ch != closer:
                for spans in nested:
                    yield from spans
                yield from inner
                open_at.clear()
                nested.clear()
                continue
            if nested:
                nested[-1].append((start, index + 1))
            else:
                yield start, index + 1
    for spans in nested:
        yield from spans


def parse_workflow_output(text: str) -> tuple[WorkflowDocument, str | None]:
    """
    Recover the structured document from raw model output.

    Policy, in order:
    1. the whole body parses as an object or array
    2. the first balanced top-level object/array that parses
    3. UnparsableOutputError

    Returns the document and any surrounding prose (None when there is none).
    """
    stripped = text.strip()
    try:
        whole = json.loads(stripped)
    except ValueError:
        pass
    else:
        if isinstance(whole, (dict, list)):
            return WorkflowDocument(content=whole), None

    for start, end in _top_level_spans(text):
        try:
            candidate = json.loads(text[start:end])
        except ValueError:
            continue
        commentary = (text[:start] + text[end:]).strip()
        # Drop leftover code fences around the extracted document
        commentary = commentary.replace("```json", "").replace("```", "").strip()
        return WorkflowDocument(content=candidate), commentary or None

    raise UnparsableOutputError(stripped[:200])


class GenerationClient:
    """
    Client for the generative capability.

    The HTTP client is injectable so tests can supply an httpx.MockTransport.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
        temperature: float = 0.3,
        max_output_tokens: int = 4000,
        timeout_seconds: float = 90.0,
        fast_timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_seconds = timeout_seconds
        self.fast_timeout_seconds = fast_timeout_seconds
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(
        cls, config: Settings = settings, http_client: httpx.AsyncClient | None = None
    ) -> "GenerationClient":
        """Build a client from application settings."""
        return cls(
            api_url=config.generation_api_url,
            api_key=config.generation_api_key,
            model=config.generation_model,
            temperature=config.generation_temperature,
            max_output_tokens=config.generation_max_output_tokens,
            timeout_seconds=config.generation_timeout_seconds,
            fast_timeout_seconds=config.fast_generation_timeout_seconds,
            http_client=http_client,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def generate(self, context: GenerationContext, fast: bool = False) -> GenerationResult:
        """
        Generate a workflow document for the given context.

        Raises:
            GenerationTimeoutError: Call exceeded its timeout
            UpstreamGenerationError: Non-success response or unreachable endpoint
            UnparsableOutputError: No structured document in the output
        """
        timeout = self.fast_timeout_seconds if fast else self.timeout_seconds
        start = time.perf_counter()
        try:
            result = await self._generate(context, timeout)
        except GenerationError as e:
            duration = time.perf_counter() - start
            metrics.record_generation(e.kind, duration, fast)
            logger.warning(
                "generation_failed",
                error_kind=e.kind,
                error=str(e),
                fast=fast,
                duration_seconds=duration,
            )
            raise

        duration = time.perf_counter() - start
        metrics.record_generation("success", duration, fast)
        logger.info(
            "generation_succeeded",
            model=self.model,
            fast=fast,
            duration_seconds=duration,
            has_commentary=result.commentary is not None,
        )
        return result

    async def _generate(self, context: GenerationContext, timeout: float) -> GenerationResult:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": context.system_context},
                {"role": "user", "content": context.user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.http_client.post(
                    self.api_url,
                    json=payload,
                    headers=headers,
                    timeout=httpx.Timeout(timeout),
                ),
                timeout=timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise GenerationTimeoutError(timeout) from e
        except httpx.HTTPError as e:
            raise UpstreamGenerationError(503, f"Generation endpoint unreachable: {e}") from e
        latency_ms = int((time.perf_counter() - start) * 1000)

        if not response.is_success:
            raise UpstreamGenerationError(response.status_code, response.text[:1000])

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UnparsableOutputError(response.text[:200]) from e
        if not isinstance(content, str) or not content.strip():
            raise UnparsableOutputError(response.text[:200])

        document, commentary = parse_workflow_output(content)
        return GenerationResult(
            document=document,
            commentary=commentary,
            model=self.model,
            latency_ms=latency_ms,
        )
