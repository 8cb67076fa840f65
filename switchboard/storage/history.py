"""
Bounded conversation history.

All conversations live under one key of a KeyValueStore, newest first. Every
write goes through the eviction policy; if the store still rejects it (quota),
one more of the oldest conversations is dropped and the write retried once.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from switchboard.errors import ConversationNotFound, StorageError, StorageQuotaError
from switchboard.models import Attachment, ChatResult, Conversation, Message, now_ms
from switchboard.storage.kv_store import KeyValueStore
from switchboard.storage.policy import SESSIONS_KEY, StoragePolicy, apply_storage_policy, sort_by_timestamp

logger = logging.getLogger(__name__)

TITLE_LENGTH = 30
DEFAULT_TITLE = "Quick Ask"
EXPORT_FORMATS = ("json", "jsonl", "markdown")


def make_title(text: str) -> str:
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + "..."
    return text or DEFAULT_TITLE


class HistoryStore:
    """Conversation CRUD over a KeyValueStore, with eviction on every write."""

    def __init__(
        self,
        store: KeyValueStore,
        policy: StoragePolicy | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.policy = policy or StoragePolicy()
        self._clock = clock

    # ------------------------------------------------------------------
    # Load / persist
    # ------------------------------------------------------------------

    def _load(self) -> list[Conversation]:
        raw = self.store.get(SESSIONS_KEY) or []
        return [Conversation.from_dict(c) for c in raw if isinstance(c, dict)]

    def _threshold(self) -> int | None:
        """Byte budget to enforce, or None while usage is comfortably low."""
        quota = getattr(self.store, "quota_bytes", None)
        if not isinstance(quota, int) or quota <= 0:
            quota = self.policy.quota_bytes
        threshold = int(quota * self.policy.storage_threshold_ratio)
        try:
            used = self.store.used_bytes()
        except StorageError as e:
            logger.debug("Usage unknown (%s), enforcing byte budget", e)
            return threshold
        if used is None or used >= threshold:
            return threshold
        return None

    def _persist(self, conversations: list[Conversation]) -> list[Conversation]:
        result = apply_storage_policy(conversations, self.policy, self._threshold())
        kept = result.conversations
        if result.removed_count:
            logger.info("Evicted %d conversation(s) (%s)", result.removed_count, ", ".join(result.reasons))
        try:
            self.store.set(SESSIONS_KEY, [c.to_dict() for c in kept])
        except StorageQuotaError as e:
            if not kept:
                raise StorageError(f"History write rejected: {e.message}") from e
            logger.warning("History write rejected (%s), dropping oldest and retrying", e.message)
            kept = kept[:-1]
            try:
                self.store.set(SESSIONS_KEY, [c.to_dict() for c in kept])
            except StorageQuotaError as e2:
                raise StorageError(f"History write rejected after trimming: {e2.message}") from e2
        return kept

    def _touch(self, conversation_id: str, mutate: Callable[[Conversation], None]) -> Conversation:
        """Apply `mutate`, bump the timestamp, move to front, persist."""
        conversations = self._load()
        for i, conv in enumerate(conversations):
            if conv.id == conversation_id:
                break
        else:
            raise ConversationNotFound(f"No conversation '{conversation_id}'")
        conv = conversations.pop(i)
        mutate(conv)
        conv.timestamp = self._clock()
        conversations.insert(0, conv)
        self._persist(conversations)
        return conv

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, title: str = "") -> Conversation:
        conv = Conversation(title=title or DEFAULT_TITLE, timestamp=self._clock())
        conversations = self._load()
        conversations.insert(0, conv)
        self._persist(conversations)
        return conv

    def append(self, conversation_id: str, message: Message) -> Conversation:
        return self._touch(conversation_id, lambda c: c.messages.append(message))

    def save_interaction(
        self,
        text: str,
        result: ChatResult,
        files: list[Attachment] | tuple[Attachment, ...] | None = None,
    ) -> Conversation:
        """Store a new conversation: the prompt and its reply."""
        images = [f.data_url for f in files] if files else None
        conv = Conversation(
            title=make_title(text),
            timestamp=self._clock(),
            messages=[
                Message(role="user", text=text, attachments=images),
                _assistant_message(result),
            ],
            continuation_context=result.continuation_context,
        )
        conversations = self._load()
        conversations.insert(0, conv)
        self._persist(conversations)
        logger.debug("Saved conversation %s (%s)", conv.id, conv.title)
        return conv

    def append_result(self, conversation_id: str, result: ChatResult) -> Conversation:
        def mutate(conv: Conversation) -> None:
            conv.messages.append(_assistant_message(result))
            conv.continuation_context = result.continuation_context

        return self._touch(conversation_id, mutate)

    def append_user(
        self,
        conversation_id: str,
        text: str,
        images: list[str] | None = None,
        is_tool_output: bool = False,
    ) -> Conversation:
        message = Message(role="user", text=text, attachments=images or None, is_tool_output=is_tool_output)
        return self.append(conversation_id, message)

    def truncate_last_assistant(self, conversation_id: str) -> Message | None:
        """Remove the trailing assistant reply (regenerate). Returns it, if any."""
        removed: list[Message] = []

        def mutate(conv: Conversation) -> None:
            if conv.messages and conv.messages[-1].role == "assistant":
                removed.append(conv.messages.pop())

        self._touch(conversation_id, mutate)
        return removed[0] if removed else None

    def delete(self, conversation_id: str) -> bool:
        conversations = self._load()
        kept = [c for c in conversations if c.id != conversation_id]
        if len(kept) == len(conversations):
            return False
        self._persist(kept)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, conversation_id: str) -> Conversation:
        for conv in self._load():
            if conv.id == conversation_id:
                return conv
        raise ConversationNotFound(f"No conversation '{conversation_id}'")

    def list(self) -> list[Conversation]:
        return sort_by_timestamp(self._load())

    def export(self, conversation_id: str | None = None, fmt: str = "json") -> list[dict] | str:
        """
        Export one conversation (or all).

        json:     full stored records
        jsonl:    {"messages": [{"role", "content"}]} per conversation, tool output skipped
        markdown: readable transcript
        """
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unknown export format '{fmt}', expected one of {EXPORT_FORMATS}")
        conversations = [self.get(conversation_id)] if conversation_id else self.list()

        if fmt == "markdown":
            return "\n\n".join(to_markdown(c) for c in conversations)
        if fmt == "jsonl":
            return [
                {"messages": [
                    {"role": m.role, "content": m.text}
                    for m in c.messages
                    if not m.is_tool_output
                ]}
                for c in conversations
            ]
        return [c.to_dict() for c in conversations]


def _assistant_message(result: ChatResult) -> Message:
    return Message(
        role="assistant",
        text=result.text,
        thoughts=result.thoughts,
        generated_images=list(result.images) or None,
        thought_signature=result.thought_signature,
    )


def to_markdown(conv: Conversation) -> str:
    lines = [f"# {conv.title or 'Chat'}", ""]
    when = datetime.fromtimestamp(conv.timestamp / 1000) if conv.timestamp else datetime.now()
    lines += [f"*{when:%Y-%m-%d %H:%M}*", "", "---", ""]
    for msg in conv.messages:
        if msg.is_tool_output:
            continue
        lines += ["**User**" if msg.role == "user" else "**Assistant**", ""]
        if msg.thoughts:
            lines += ["<details>", "<summary>Thinking</summary>", "", msg.thoughts, "", "</details>", ""]
        lines += [msg.text or "", ""]
        if msg.attachments:
            lines += ["*[Image attached]*", ""]
        if msg.generated_images:
            lines += [f"*[{len(msg.generated_images)} image(s) generated]*", ""]
    return "\n".join(lines).rstrip() + "\n"
