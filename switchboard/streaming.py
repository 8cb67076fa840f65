"""
Stream normalizers: one per wire format, one output shape.

Every provider stream ends up as incremental (text, thoughts) updates and a
final StreamResult. Normalizers are synchronous: the provider owns the socket
and feeds lines (or raw chunks) in as they arrive.

Guarantees shared by all of them:
  - updates never shrink: len(text) and len(thoughts) are non-decreasing
  - finish() returns exactly the last (text, thoughts) handed to the sink
  - a malformed line is skipped, never fatal
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from switchboard.cancellation import UpdateSink
from switchboard.errors import ParseError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class StreamResult:
    text: str = ""
    thoughts: str | None = None
    images: list[dict] = field(default_factory=list)


class StreamNormalizer:
    """
    Base normalizer.

    Subclasses implement _decode() (line -> payload or None) and _consume()
    (payload -> whether to emit), plus _snapshot() for the current state.
    """

    name = "base"

    def __init__(self, on_update: UpdateSink | None = None):
        self._on_update = on_update
        self._last: tuple[str, str | None] | None = None
        self._line_buffer = ""
        self.images: list[dict] = []
        self._seen_images: set[str] = set()

    # ---- input ----

    def feed(self, chunk: str) -> None:
        """Feed an arbitrary slice of the body; complete lines are processed."""
        self._line_buffer += chunk
        lines = self._line_buffer.split("\n")
        self._line_buffer = lines.pop()
        for line in lines:
            self.feed_line(line)

    def feed_line(self, line: str) -> None:
        try:
            payload = self._decode(line)
            if payload is None:
                return
            emit = self._consume(payload)
        except ParseError as e:
            logger.debug("%s: skipping unparsable line: %s", self.name, e)
            return
        if emit:
            self._deliver(self._snapshot())

    def finish(self) -> StreamResult:
        """Flush buffered input, deliver the final state if it changed."""
        tail = self._line_buffer
        self._line_buffer = ""
        if tail.strip():
            self.feed_line(tail)
        self._flush()
        snapshot = self._snapshot()
        if snapshot != self._last and (self._last is not None or snapshot[0] or snapshot[1]):
            self._deliver(snapshot)
        text, thoughts = self._last if self._last is not None else ("", None)
        return StreamResult(text=text, thoughts=thoughts, images=list(self.images))

    # ---- hooks ----

    def _decode(self, line: str) -> Any:
        raise NotImplementedError

    def _consume(self, payload: Any) -> bool:
        raise NotImplementedError

    def _snapshot(self) -> tuple[str, str | None]:
        raise NotImplementedError

    def _flush(self) -> None:
        """Called once at end of stream before the final snapshot."""

    # ---- helpers ----

    def _deliver(self, snapshot: tuple[str, str | None]) -> None:
        self._last = snapshot
        if self._on_update is not None:
            self._on_update(*snapshot)

    def _add_image(self, url: Any) -> None:
        if not isinstance(url, str) or not url.startswith("http"):
            return
        if url in self._seen_images:
            return
        self._seen_images.add(url)
        self.images.append({"url": url, "alt": "Generated Image"})

    @staticmethod
    def _loads(data_str: str) -> Any:
        try:
            return json.loads(data_str)
        except json.JSONDecodeError as e:
            raise ParseError(f"bad JSON: {data_str[:80]!r}") from e


def _sse_data(line: str) -> str | None:
    """Return the payload of a `data:` line, or None for anything else."""
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    data_str = stripped[5:].strip()
    if not data_str or data_str == "[DONE]":
        return None
    return data_str


def _none_if_empty(value: str) -> str | None:
    return value or None


# ---------------------------------------------------------------------------
# <think> tag splitting
# ---------------------------------------------------------------------------

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"


class ThinkTagSplitter:
    """
    Streaming splitter for inline <think>...</think> reasoning.

    Works on the incoming delta only, character by character. A trailing
    fragment that might still turn into a tag ("<", "<th", "</thin") is held
    in `pending` and not shown anywhere until the next character settles it,
    so content only ever moves forward into the right buffer.
    """

    OUTSIDE_TAG = "outside"
    INSIDE_TAG = "inside"

    def __init__(self):
        self.state = self.OUTSIDE_TAG
        self.visible = ""
        self.thoughts = ""
        self.pending = ""
        self._closed_blocks = 0

    def feed(self, chunk: str) -> None:
        for ch in chunk:
            self._step(ch)

    def flush(self) -> None:
        """End of stream: whatever is pending belongs to the current state."""
        self._write(self.pending)
        self.pending = ""

    def _step(self, ch: str) -> None:
        tag = OPEN_TAG if self.state == self.OUTSIDE_TAG else CLOSE_TAG
        candidate = self.pending + ch
        if tag.startswith(candidate):
            if candidate == tag:
                self.pending = ""
                self._toggle()
            else:
                self.pending = candidate
            return

        # Not a tag after all. "<" only occurs at the start of either tag,
        # so the new character can at most begin a fresh candidate.
        self._write(self.pending)
        self.pending = ""
        if tag.startswith(ch):
            self.pending = ch
        else:
            self._write(ch)

    def _toggle(self) -> None:
        if self.state == self.OUTSIDE_TAG:
            if self._closed_blocks:
                self.thoughts += "\n"
            self.state = self.INSIDE_TAG
        else:
            self._closed_blocks += 1
            self.state = self.OUTSIDE_TAG

    def _write(self, text: str) -> None:
        if not text:
            return
        if self.state == self.OUTSIDE_TAG:
            self.visible += text
        else:
            self.thoughts += text


# ---------------------------------------------------------------------------
# OpenAI-compatible SSE
# ---------------------------------------------------------------------------

class OpenAIStreamNormalizer(StreamNormalizer):
    """
    `data: {"choices":[{"delta":{"content":..., "reasoning_content":...}}]}`

    Inline <think> blocks and the reasoning_content field both land in thoughts.
    """

    name = "openai"

    def __init__(self, on_update: UpdateSink | None = None):
        super().__init__(on_update)
        self.splitter = ThinkTagSplitter()
        self.reasoning = ""
        self.finish_reason: str | None = None

    def _decode(self, line: str) -> Any:
        data_str = _sse_data(line)
        if data_str is None:
            return None
        return self._loads(data_str)

    def _consume(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            raise ParseError("event is not an object")
        choices = payload.get("choices")
        if not choices:
            err = payload.get("error")
            if isinstance(err, dict):
                raise TransportError(f"API Error: {err.get('message') or err}")
            return False
        choice = choices[0] if isinstance(choices[0], dict) else {}
        delta = choice.get("delta") or {}
        content = delta.get("content")
        if isinstance(content, str) and content:
            self.splitter.feed(content)
        reasoning = delta.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            self.reasoning += reasoning
        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]
        return True

    def _flush(self) -> None:
        self.splitter.flush()

    def _snapshot(self) -> tuple[str, str | None]:
        thoughts = (self.reasoning + self.splitter.thoughts).strip()
        return self.splitter.visible, _none_if_empty(thoughts)


# ---------------------------------------------------------------------------
# Claude SSE
# ---------------------------------------------------------------------------

class ClaudeStreamNormalizer(StreamNormalizer):
    """
    Typed events: content_block_delta carries text_delta or thinking_delta;
    message_delta carries the stop reason. Reasoning is its own event type,
    so no tag stripping.
    """

    name = "claude"

    def __init__(self, on_update: UpdateSink | None = None):
        super().__init__(on_update)
        self.text = ""
        self.thinking = ""
        self.stop_reason: str | None = None

    def _decode(self, line: str) -> Any:
        data_str = _sse_data(line)
        if data_str is None:
            return None
        return self._loads(data_str)

    def _consume(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            raise ParseError("event is not an object")
        etype = payload.get("type")
        if etype == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                self.text += delta["text"]
            elif delta.get("type") == "thinking_delta" and delta.get("thinking"):
                self.thinking += delta["thinking"]
        elif etype == "message_delta":
            self.stop_reason = (payload.get("delta") or {}).get("stop_reason")
        elif etype == "error":
            err = payload.get("error") or {}
            raise TransportError(f"API Error: {err.get('message') or err}")
        return True

    def _snapshot(self) -> tuple[str, str | None]:
        return self.text, _none_if_empty(self.thinking.strip())


# ---------------------------------------------------------------------------
# Grok JSON lines
# ---------------------------------------------------------------------------

# Backend-internal render markers, never model output
FILTERED_TAGS = ("xaiartifact", "xai:tool_usage_card", "grok:render")


class GrokStreamNormalizer(StreamNormalizer):
    """
    One JSON object per line, `data:` prefix optional.
    `isThinking` routes the token; image URLs are harvested from any frame.
    """

    name = "grok"

    def __init__(self, on_update: UpdateSink | None = None):
        super().__init__(on_update)
        self.text = ""
        self.thoughts = ""

    def _decode(self, line: str) -> Any:
        data_str = line.strip()
        if data_str.startswith("data:"):
            data_str = data_str[5:].strip()
        if not data_str or data_str == "[DONE]":
            return None
        return self._loads(data_str)

    @staticmethod
    def _result(payload: dict) -> dict:
        result = payload.get("result")
        if isinstance(result, dict) and isinstance(result.get("response"), dict):
            return result["response"]
        if isinstance(payload.get("response"), dict):
            return payload["response"]
        if isinstance(result, dict):
            return result
        return payload

    def _consume(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            raise ParseError("frame is not an object")
        result = self._result(payload)
        self._harvest_images(result)

        token = result.get("token")
        if token is None:
            token = result.get("text")
        if not isinstance(token, str):
            return False
        if any(tag in token for tag in FILTERED_TAGS):
            return False

        if result.get("messageTag") == "header":
            token = f"\n\n{token}\n\n"
        if result.get("isThinking") is True:
            self.thoughts += token
        else:
            self.text += token
        return True

    def _harvest_images(self, result: dict) -> None:
        for key in ("fileUri", "fileUrl", "imageUri", "imageUrl"):
            self._add_image(result.get(key))
        image = result.get("image")
        if isinstance(image, dict):
            self._add_image(image.get("url"))
            self._add_image(image.get("fileUri"))
        images = result.get("images")
        if isinstance(images, list):
            for img in images:
                if isinstance(img, str):
                    self._add_image(img)
                elif isinstance(img, dict):
                    self._add_image(img.get("url") or img.get("fileUri") or img.get("imageUrl"))

    def _snapshot(self) -> tuple[str, str | None]:
        return self.text, _none_if_empty(self.thoughts)


# ---------------------------------------------------------------------------
# Gemini web frames
# ---------------------------------------------------------------------------

def _dig(obj: Any, *path: int) -> Any:
    """Index into nested lists, returning None on any miss."""
    for idx in path:
        if not isinstance(obj, list) or idx >= len(obj):
            return None
        obj = obj[idx]
    return obj


class GeminiWebNormalizer(StreamNormalizer):
    """
    Gemini web StreamGenerate body: `)]}'` guard, length-prefix lines and
    JSON arrays holding ["wrb.fr", null, "<inner json>"] frames. Each frame
    repeats the whole answer so far, so we only emit when it grows.
    """

    name = "gemini-web"

    def __init__(self, on_update: UpdateSink | None = None):
        super().__init__(on_update)
        self.text = ""
        self.thoughts = ""
        self.context: dict | None = None
        self.found = False

    def _decode(self, line: str) -> Any:
        stripped = line.strip()
        if not stripped.startswith("["):
            return None
        return self._loads(stripped)

    def _consume(self, payload: Any) -> bool:
        if not isinstance(payload, list):
            raise ParseError("frame is not an array")
        emit = False
        for item in payload:
            if not (isinstance(item, list) and len(item) > 2 and item[0] == "wrb.fr"):
                continue
            if not isinstance(item[2], str):
                continue
            inner = self._loads(item[2])
            candidate = _dig(inner, 4, 0)
            text = _dig(candidate, 1, 0)
            if not isinstance(text, str):
                continue
            self.found = True
            thoughts = _dig(candidate, 37, 0, 0)
            if len(text) > len(self.text):
                self.text = text
                emit = True
            if isinstance(thoughts, str) and len(thoughts) > len(self.thoughts):
                self.thoughts = thoughts
                emit = True
            self._harvest(inner, candidate)
        return emit

    def _harvest(self, inner: list, candidate: list) -> None:
        conv_id = _dig(inner, 1, 0)
        resp_id = _dig(inner, 1, 1)
        choice_id = _dig(candidate, 0)
        if conv_id and resp_id:
            self.context = {
                "conversation_id": conv_id,
                "response_id": resp_id,
                "choice_id": choice_id or "",
            }
        generated = _dig(candidate, 12, 7, 0)
        if isinstance(generated, list):
            for img in generated:
                self._add_image(_dig(img, 0, 3, 3))

    def _snapshot(self) -> tuple[str, str | None]:
        return self.text, _none_if_empty(self.thoughts)


# ---------------------------------------------------------------------------
# Single-shot responses
# ---------------------------------------------------------------------------

def complete_once(
    result: StreamResult,
    on_update: UpdateSink | None = None,
) -> StreamResult:
    """Identity normalizer for non-streaming APIs: one update, the whole answer."""
    if on_update is not None:
        on_update(result.text, result.thoughts)
    return result
