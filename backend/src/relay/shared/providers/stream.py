"""Stream normalizer — provider event streams in, ordered text deltas out.

Every supported provider speaks some flavour of server-sent events: lines
prefixed with ``data:`` carrying one JSON event each.  The event grammars
differ, so each ``ProviderSpec`` supplies a delta parser that turns one
decoded event into a text fragment (or ``None`` for bookkeeping events).
"""

from __future__ import annotations

import codecs
from typing import Any, AsyncIterator, Callable

import orjson
import structlog

from relay.domain.exceptions import ProgressCallbackError
from relay.shared.observability.metrics import STREAM_CHUNKS
from relay.shared.providers.cancellation import CancellationToken, guarded
from relay.shared.providers.types import DeltaParser

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[str], None]

DATA_MARKER = "data:"
DONE_SENTINEL = "[DONE]"


# ── Delta parsers ────────────────────────────────────────────
def parse_openai_delta(event: Any) -> str | None:
    """``{"choices": [{"delta": {"content": "..."}}]}`` (OpenAI, Groq, xAI, Perplexity)."""
    if not isinstance(event, dict):
        return None
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    delta = first.get("delta") if isinstance(first, dict) else None
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) and content else None


def parse_anthropic_delta(event: Any) -> str | None:
    """``{"type": "content_block_delta", "delta": {"text": "..."}}``."""
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta")
    text = delta.get("text") if isinstance(delta, dict) else None
    return text if isinstance(text, str) and text else None


def parse_gemini_delta(event: Any) -> str | None:
    """``{"candidates": [{"content": {"parts": [{"text": "..."}]}}]}``."""
    if not isinstance(event, dict):
        return None
    candidates = event.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = candidates[0]
    content = first.get("content") if isinstance(first, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return None
    text = "".join(
        p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)
    )
    return text or None


def parse_default_delta(event: Any) -> str | None:
    """Accept either the OpenAI-compatible or the Anthropic grammar."""
    return parse_openai_delta(event) or parse_anthropic_delta(event)


# ── Normalizer ───────────────────────────────────────────────
class StreamNormalizer:
    """Decode one provider's byte stream into text deltas.

    Usage::

        normalizer = StreamNormalizer("openai", parse_openai_delta)
        text = await normalizer.normalize(response.aiter_bytes(), on_progress=print)
    """

    def __init__(self, provider_id: str, parse_delta: DeltaParser = parse_default_delta) -> None:
        self._provider_id = provider_id
        self._parse_delta = parse_delta

    async def normalize(
        self,
        chunks: AsyncIterator[bytes],
        on_progress: ProgressCallback | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        """Consume ``chunks`` to the end and return the concatenated text.

        Fragments reach ``on_progress`` in wire order as soon as their line is
        complete.  ``chunks`` is closed on every exit path.  An exception from
        ``on_progress`` surfaces as ``ProgressCallbackError``.
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        parts: list[str] = []

        def emit(line: str) -> None:
            fragment = self._parse_line(line)
            if fragment is None:
                return
            parts.append(fragment)
            STREAM_CHUNKS.labels(provider=self._provider_id).inc()
            if on_progress is not None:
                try:
                    on_progress(fragment)
                except Exception as exc:
                    raise ProgressCallbackError(self._provider_id, exc) from exc

        iterator = chunks.__aiter__()
        try:
            while True:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                try:
                    chunk = await guarded(iterator.__anext__(), cancel_token)
                except StopAsyncIteration:
                    break
                pending += decoder.decode(chunk)
                *lines, pending = pending.split("\n")
                for line in lines:
                    emit(line)

            pending += decoder.decode(b"", final=True)
            for line in pending.split("\n"):
                emit(line)
        finally:
            await _close_reader(chunks)

        return "".join(parts)

    def _parse_line(self, line: str) -> str | None:
        line = line.strip()
        if not line.startswith(DATA_MARKER):
            return None
        payload = line[len(DATA_MARKER):].strip()
        if not payload or payload == DONE_SENTINEL:
            return None
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError as exc:
            logger.warning(
                "stream_event_malformed",
                provider=self._provider_id,
                error=str(exc),
                payload=payload[:120],
            )
            return None
        return self._parse_delta(event)


async def _close_reader(chunks: AsyncIterator[bytes]) -> None:
    aclose = getattr(chunks, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError as exc:
        # aclose() on a generator that is still running raises; the owner releases it.
        logger.debug("stream_reader_close_failed", error=str(exc))
