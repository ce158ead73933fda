"""Conversation transcript with streaming reconciliation.

Owns the ordered conversation log and the two "open entry" pointers that
let streaming events update a bubble in place:

- User track: idle → speaking → processing → (final) → idle. One ephemeral
  user entry at a time, created lazily on speech activity and released on
  transcription completion.
- Assistant track: idle → waiting → streaming → (final) → idle. One open
  assistant entry at a time. Going from waiting to streaming keeps the same
  entry id so the displayed bubble morphs instead of duplicating. A response
  without text discards the placeholder.

Entries are frozen; every update is a read-compute-replace at the same log
index, and finalized entries are never replaced again.

Typical usage:
    transcript = Transcript()
    transcript.start_user_speech()
    transcript.commit_user_speech()
    transcript.complete_user_transcription("hello")
    transcript.append_assistant_delta("Hi")
    transcript.finalize_assistant("Hi there")
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum

logger = logging.getLogger(__name__)

PROCESSING_PLACEHOLDER = "Processing speech…"


class Role(Enum):
    """Conversation participant."""

    USER = "user"
    ASSISTANT = "assistant"


class EntryStatus(Enum):
    """Display status of an entry. Streaming assistant entries carry None."""

    SPEAKING = "speaking"
    PROCESSING = "processing"
    WAITING = "waiting"
    FINAL = "final"


class UserTrackState(Enum):
    """User track of the transcript state machine."""

    IDLE = "idle"
    SPEAKING = "speaking"
    PROCESSING = "processing"


class AssistantTrackState(Enum):
    """Assistant track of the transcript state machine."""

    IDLE = "idle"
    WAITING = "waiting"
    STREAMING = "streaming"


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class ConversationEntry:
    """Single conversation log entry.

    Attributes:
        id: Opaque identifier, stable for the entry's lifetime.
        role: Who produced the entry.
        content: Text, mutable (by replacement) until finalized.
        created_at: Creation timestamp (UTC).
        updated_at: Last update timestamp, if ever updated.
        is_final: Whether the entry is finalized and immutable.
        status: Display status, None while an assistant entry streams.
    """

    role: Role
    content: str = ""
    status: EntryStatus | None = None
    is_final: bool = False
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime | None = None


# Called with (entry, removed) after every log change.
TranscriptListener = Callable[[ConversationEntry, bool], None]


class Transcript:
    """Ordered conversation log with open-entry tracking.

    Not thread-safe; mutate from the event loop that processes channel
    messages.
    """

    def __init__(self) -> None:
        self._entries: list[ConversationEntry] = []
        self._user_entry_id: str | None = None
        self._assistant_entry_id: str | None = None
        self.user_state = UserTrackState.IDLE
        self.assistant_state = AssistantTrackState.IDLE
        self._listeners: list[TranscriptListener] = []

    @property
    def entries(self) -> list[ConversationEntry]:
        """Snapshot of the log in display order."""
        return list(self._entries)

    @property
    def open_user_entry_id(self) -> str | None:
        """Identifier of the ephemeral user entry, if one is open."""
        return self._user_entry_id

    @property
    def open_assistant_entry_id(self) -> str | None:
        """Identifier of the open assistant entry, if one is open."""
        return self._assistant_entry_id

    def get(self, entry_id: str) -> ConversationEntry | None:
        """Look up an entry by id."""
        index = self._index_of(entry_id)
        return self._entries[index] if index is not None else None

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        """Register a change listener.

        Args:
            listener: Called with the changed entry and whether it was removed

        Returns:
            Callable that unsubscribes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- user track -------------------------------------------------------

    def start_user_speech(self) -> ConversationEntry:
        """Open the ephemeral user entry, or reuse the one already open."""
        entry = self._open_user_entry()
        if entry is None:
            entry = self._append(
                ConversationEntry(role=Role.USER, status=EntryStatus.SPEAKING)
            )
            self._user_entry_id = entry.id
        else:
            entry = self._update(entry.id, status=EntryStatus.SPEAKING) or entry
        self.user_state = UserTrackState.SPEAKING
        return entry

    def stop_user_speech(self) -> None:
        """Speech stopped; the entry keeps its speaking status until commit."""
        entry = self._open_user_entry()
        if entry is not None:
            self._update(entry.id, status=EntryStatus.SPEAKING)

    def commit_user_speech(self) -> ConversationEntry | None:
        """Audio buffer committed: show the processing placeholder."""
        entry = self._open_user_entry()
        if entry is None:
            return None
        self.user_state = UserTrackState.PROCESSING
        return self._update(
            entry.id, content=PROCESSING_PLACEHOLDER, status=EntryStatus.PROCESSING
        )

    def update_user_partial(self, text: str, append: bool = False) -> ConversationEntry | None:
        """Show a partial transcription in the ephemeral user entry.

        Args:
            text: Partial transcript, or a transcript fragment when append is set
            append: Accumulate onto previous partial text instead of replacing

        Returns:
            Updated entry, or None when no user entry is open
        """
        entry = self._open_user_entry()
        if entry is None:
            return None
        if append and entry.status is not EntryStatus.PROCESSING:
            text = entry.content + text
        self.user_state = UserTrackState.SPEAKING
        return self._update(
            entry.id, content=text, status=EntryStatus.SPEAKING, is_final=False
        )

    def complete_user_transcription(self, text: str) -> ConversationEntry | None:
        """Finalize the ephemeral user entry and release the pointer.

        The pointer is released even when no entry is open, so the next
        speech_started always opens a new entry.
        """
        entry = self._open_user_entry()
        finalized = None
        if entry is not None:
            finalized = self._update(
                entry.id,
                content=text,
                status=EntryStatus.FINAL,
                is_final=True,
                updated_at=_now(),
            )
        self._user_entry_id = None
        self.user_state = UserTrackState.IDLE
        return finalized

    def add_user_text(self, text: str) -> ConversationEntry:
        """Append a typed, already-final user message."""
        return self._append(
            ConversationEntry(
                role=Role.USER, content=text, status=EntryStatus.FINAL, is_final=True
            )
        )

    # -- assistant track --------------------------------------------------

    def open_assistant_waiting(self) -> ConversationEntry:
        """Show a waiting placeholder unless an assistant entry is already open."""
        entry = self._open_assistant_entry()
        if entry is not None:
            return entry
        entry = self._append(
            ConversationEntry(role=Role.ASSISTANT, status=EntryStatus.WAITING)
        )
        self._assistant_entry_id = entry.id
        self.assistant_state = AssistantTrackState.WAITING
        return entry

    def append_assistant_delta(self, delta: str) -> ConversationEntry | None:
        """Append a streamed fragment to the open assistant entry.

        Opens a new streaming entry seeded with the delta when none is open.
        Empty deltas are ignored.
        """
        if not delta:
            return None
        entry = self._open_assistant_entry()
        if entry is not None and not entry.is_final:
            status = None if entry.status is EntryStatus.WAITING else entry.status
            updated = self._update(entry.id, content=entry.content + delta, status=status)
        else:
            updated = self._append(ConversationEntry(role=Role.ASSISTANT, content=delta))
            self._assistant_entry_id = updated.id
        self.assistant_state = AssistantTrackState.STREAMING
        return updated

    def finalize_assistant(self, text: str) -> ConversationEntry:
        """Finalize the open assistant entry with the complete response text.

        Appends a new final entry when no assistant entry is open.
        """
        entry = self._open_assistant_entry()
        self._assistant_entry_id = None
        self.assistant_state = AssistantTrackState.IDLE

        if entry is not None:
            finalized = self._update(
                entry.id,
                content=text,
                status=EntryStatus.FINAL,
                is_final=True,
                updated_at=_now(),
            )
            if finalized is not None:
                return finalized

        return self._append(
            ConversationEntry(
                role=Role.ASSISTANT,
                content=text,
                status=EntryStatus.FINAL,
                is_final=True,
            )
        )

    def discard_open_assistant(self) -> ConversationEntry | None:
        """Drop the open assistant placeholder without leaving a trace.

        Idempotent: a second call with nothing open does nothing.
        """
        entry_id = self._assistant_entry_id
        self._assistant_entry_id = None
        self.assistant_state = AssistantTrackState.IDLE
        if entry_id is None:
            return None

        index = self._index_of(entry_id)
        if index is None or self._entries[index].is_final:
            return None
        removed = self._entries.pop(index)
        self._notify(removed, removed=True)
        return removed

    # -- lifecycle --------------------------------------------------------

    def release_open_entries(self) -> None:
        """Release both open-entry pointers at session teardown.

        A waiting assistant placeholder that never received content is
        removed; partially streamed text stays in the log as-is.
        """
        entry = self._open_assistant_entry()
        if entry is not None and entry.status is EntryStatus.WAITING and not entry.content:
            self.discard_open_assistant()
        self._assistant_entry_id = None
        self._user_entry_id = None
        self.assistant_state = AssistantTrackState.IDLE
        self.user_state = UserTrackState.IDLE

    # -- internals --------------------------------------------------------

    def _open_user_entry(self) -> ConversationEntry | None:
        if self._user_entry_id is None:
            return None
        return self.get(self._user_entry_id)

    def _open_assistant_entry(self) -> ConversationEntry | None:
        if self._assistant_entry_id is None:
            return None
        return self.get(self._assistant_entry_id)

    def _index_of(self, entry_id: str) -> int | None:
        for index in range(len(self._entries) - 1, -1, -1):
            if self._entries[index].id == entry_id:
                return index
        return None

    def _append(self, entry: ConversationEntry) -> ConversationEntry:
        self._entries.append(entry)
        self._notify(entry)
        return entry

    def _update(self, entry_id: str, **changes: object) -> ConversationEntry | None:
        index = self._index_of(entry_id)
        if index is None:
            return None
        current = self._entries[index]
        if current.is_final:
            logger.warning(
                "Ignoring update to finalized entry",
                extra={"entry_id": entry_id, "role": current.role.value},
            )
            return None
        updated = replace(current, **changes)  # type: ignore[arg-type]
        self._entries[index] = updated
        self._notify(updated)
        return updated

    def _notify(self, entry: ConversationEntry, removed: bool = False) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry, removed)
            except Exception as e:
                logger.error(
                    "Transcript listener failed",
                    extra={"entry_id": entry.id, "error": str(e)},
                )

    def __len__(self) -> int:
        """Return number of entries in the log."""
        return len(self._entries)

    def __repr__(self) -> str:
        """Return string representation of the transcript."""
        return (
            f"Transcript(size={len(self._entries)}, "
            f"user={self.user_state.value}, assistant={self.assistant_state.value})"
        )
