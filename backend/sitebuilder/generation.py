"""
Streamed-generation consumer.

Consumes the SSE events emitted by the generate endpoint and rebuilds, while
the stream is still open, the set of generated files plus the commentary
shown to the user.

State machine for one request:

    idle -> thinking -> streaming -> applying -> complete
              \\            \\           \\
               +------------+-----------+--> error

Every ``stream`` event appends to a single accumulator and the whole
accumulator is re-scanned for closed ``<file>`` blocks. Events must be fed
in the order they were read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, Callable, Iterable

from loguru import logger

from sitebuilder.exceptions import GenerationError, InvalidTransitionError
from sitebuilder.file_tags import (
    extract_explanation,
    find_trailing_partial,
    has_tag_leakage,
    infer_file_type,
    iter_complete_files,
    tail_after_last_file,
)
from sitebuilder.models import ChatMessage, GeneratedFile, MessageMetadata, MessageType
from sitebuilder.sse_utils import aiter_sse_payloads, iter_sse_payloads


class GenerationState(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"
    APPLYING = "applying"
    COMPLETE = "complete"
    ERROR = "error"


_ACTIVE = {GenerationState.THINKING, GenerationState.STREAMING}

_TRANSITIONS: dict[GenerationState, set[GenerationState]] = {
    GenerationState.IDLE: {
        GenerationState.THINKING,
        GenerationState.STREAMING,
        GenerationState.APPLYING,
        GenerationState.COMPLETE,
        GenerationState.ERROR,
    },
    GenerationState.THINKING: {
        GenerationState.THINKING,
        GenerationState.STREAMING,
        GenerationState.APPLYING,
        GenerationState.COMPLETE,
        GenerationState.ERROR,
    },
    GenerationState.STREAMING: {
        GenerationState.THINKING,
        GenerationState.STREAMING,
        GenerationState.APPLYING,
        GenerationState.COMPLETE,
        GenerationState.ERROR,
    },
    GenerationState.APPLYING: {GenerationState.COMPLETE, GenerationState.ERROR},
    GenerationState.COMPLETE: set(),
    GenerationState.ERROR: set(),
}


class ChatLog:
    """Append-only chat history, rendered newest-last."""

    def __init__(self, messages: Iterable[ChatMessage] | None = None):
        self._messages: list[ChatMessage] = list(messages or [])

    def add(
        self,
        content: str,
        type: MessageType | str,
        metadata: MessageMetadata | dict | None = None,
    ) -> ChatMessage | None:
        """Append a message. Returns None when a duplicate system message is suppressed."""
        type = MessageType(type)
        last = self._messages[-1] if self._messages else None
        if (
            type is MessageType.SYSTEM
            and last is not None
            and last.type is MessageType.SYSTEM
            and last.content == content
        ):
            return None
        if isinstance(metadata, dict):
            metadata = MessageMetadata(**metadata)
        message = ChatMessage(content=content, type=type, metadata=metadata)
        self._messages.append(message)
        return message

    def clear(self) -> None:
        self._messages.clear()

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> ChatMessage | None:
        return self._messages[-1] if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)


@dataclass
class GenerationProgress:
    """UI state of one generation request, owned by a single request at a time."""

    state: GenerationState = GenerationState.IDLE
    is_generating: bool = False
    is_streaming: bool = False
    is_thinking: bool = False
    is_edit: bool = False
    status: str = ""
    streamed_code: str = ""
    current_file: GeneratedFile | None = None
    files: list[GeneratedFile] = field(default_factory=list)
    thinking_text: str = ""
    thinking_duration: float | None = None
    components: list[dict[str, Any]] = field(default_factory=list)
    packages: list[str] = field(default_factory=list)
    explanation: str = ""
    generated_code: str = ""
    packages_to_install: list[str] = field(default_factory=list)
    error: str | None = None
    processed_paths: set[str] = field(default_factory=set)
    _consumed: int = 0

    # -- lifecycle -------------------------------------------------------

    def reset(self, keep_files: bool = False) -> None:
        """Fresh record. Kept files count as already processed for this request."""
        files = list(self.files) if keep_files else []
        fresh = GenerationProgress(files=files, processed_paths={f.path for f in files})
        self.__dict__.update(fresh.__dict__)

    def begin(self, edit: bool = False, status: str = "Sending request...") -> None:
        """Start a new request. Edit mode keeps the files of the previous one."""
        if self.state not in (GenerationState.IDLE, GenerationState.COMPLETE):
            logger.warning(f"[consumer] New request while {self.state.value}; forcing reset")
        self.reset(keep_files=edit)
        self.is_edit = edit
        self.is_generating = True
        self.status = status

    def transition(self, new_state: GenerationState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Cannot go from {self.state.value} to {new_state.value}")
        self.state = new_state

    def fail(self, message: str) -> None:
        self.transition(GenerationState.ERROR)
        self.error = message
        self.status = message
        self.is_generating = False
        self.is_streaming = False
        self.is_thinking = False
        self.current_file = None

    def finish(self, status: str = "Complete") -> None:
        self.transition(GenerationState.COMPLETE)
        self.is_generating = False
        self.is_streaming = False
        self.is_thinking = False
        self.current_file = None
        self.status = status

    # -- file extraction -------------------------------------------------

    def sync_files(self) -> None:
        """Re-scan the accumulator for newly closed blocks and the trailing partial."""
        matches = list(iter_complete_files(self.streamed_code))
        for m in matches[self._consumed:]:
            self._upsert(m.path, m.content)
            self.processed_paths.add(m.path)
        self._consumed = len(matches)

        partial = find_trailing_partial(self.streamed_code)
        if partial and partial[0] not in self.processed_paths:
            path, content = partial
            self.current_file = GeneratedFile(path=path, content=content, type=infer_file_type(path))
        else:
            self.current_file = None

    def _upsert(self, path: str, content: str) -> None:
        index = next((i for i, f in enumerate(self.files) if f.path == path), None)
        entry = GeneratedFile(
            path=path,
            content=content,
            type=infer_file_type(path),
            completed=True,
            edited=index is not None,
        )
        if index is None:
            self.files.append(entry)
        else:
            self.files[index] = entry

    @property
    def display_tail(self) -> str:
        return tail_after_last_file(self.streamed_code)

    @property
    def file_paths(self) -> list[str]:
        return [f.path for f in self.files]

    def to_wire(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "isGenerating": self.is_generating,
            "isStreaming": self.is_streaming,
            "isThinking": self.is_thinking,
            "status": self.status,
            "streamedCode": self.streamed_code,
            "currentFile": self.current_file.to_wire() if self.current_file else None,
            "files": [f.to_wire() for f in self.files],
            "thinkingText": self.thinking_text,
            "thinkingDuration": self.thinking_duration,
        }


def final_pass_files(generated_code: str) -> list[GeneratedFile]:
    """One-shot extraction from the final text, first position kept for repeated paths."""
    by_path: dict[str, GeneratedFile] = {}
    for m in iter_complete_files(generated_code):
        by_path[m.path] = GeneratedFile(
            path=m.path, content=m.content, type=infer_file_type(m.path), completed=True
        )
    return list(by_path.values())


class StreamedGenerationConsumer:
    """Apply generate-endpoint events to a progress record and a chat log."""

    def __init__(
        self,
        progress: GenerationProgress,
        chat: ChatLog,
        apply_after_complete: bool = False,
    ):
        self.progress = progress
        self.chat = chat
        self.apply_after_complete = apply_after_complete
        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            "status": self._on_status,
            "thinking": self._on_thinking,
            "thinking_complete": self._on_thinking_complete,
            "stream": self._on_stream,
            "conversation": self._on_conversation,
            "component": self._on_component,
            "package": self._on_package,
            "app": self._on_app,
            "tool_code": self._on_tool_code,
            "complete": self._on_complete,
            "error": self._on_error,
        }

    # -- entry points ----------------------------------------------------

    def handle(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"[consumer] Ignoring event type {event_type!r}")
            return
        handler(event)

    def consume_lines(self, lines: Iterable[str]) -> GenerationProgress:
        for payload in iter_sse_payloads(lines):
            self.handle(payload)
        return self.progress

    async def consume(self, lines: AsyncIterable[str]) -> GenerationProgress:
        """Read the stream to the end, one event at a time, in order."""
        async for payload in aiter_sse_payloads(lines):
            self.handle(payload)
        return self.progress

    def abort(self, message: str) -> None:
        """Terminal failure: surface the message and move to the error state."""
        if self.progress.state in (GenerationState.COMPLETE, GenerationState.ERROR):
            logger.warning(f"[consumer] Abort after {self.progress.state.value}: {message}")
            return
        logger.error(f"[consumer] Generation failed: {message}")
        self.progress.fail(message)
        self.chat.add(f"Error: {message}", MessageType.ERROR)

    # -- handlers --------------------------------------------------------

    def _enter(self, state: GenerationState) -> None:
        if self.progress.state is not state:
            self.progress.transition(state)

    def _on_status(self, event: dict[str, Any]) -> None:
        self.progress.status = event.get("message", "")

    def _on_thinking(self, event: dict[str, Any]) -> None:
        self._enter(GenerationState.THINKING)
        self.progress.is_thinking = True
        self.progress.is_streaming = False
        self.progress.thinking_text += event.get("text", "")

    def _on_thinking_complete(self, event: dict[str, Any]) -> None:
        p = self.progress
        p.is_thinking = False
        p.thinking_duration = event.get("duration")
        content = p.thinking_text.strip() or "Thinking complete"
        self.chat.add(content, MessageType.THOUGHT, MessageMetadata(duration=p.thinking_duration))

    def _on_stream(self, event: dict[str, Any]) -> None:
        self._enter(GenerationState.STREAMING)
        p = self.progress
        p.is_streaming = True
        p.is_thinking = False
        p.streamed_code += event.get("text", "")
        p.sync_files()

    def _on_conversation(self, event: dict[str, Any]) -> None:
        text = (event.get("text") or "").strip()
        if not text:
            return
        if has_tag_leakage(text):
            logger.debug("[consumer] Dropping conversation text with tag leakage")
            return
        self.chat.add(text, MessageType.AI)

    def _on_component(self, event: dict[str, Any]) -> None:
        name = event.get("name", "")
        self.progress.components.append(
            {"name": name, "path": event.get("path", ""), "index": event.get("index")}
        )
        self.progress.status = f"Generated {name}"

    def _on_package(self, event: dict[str, Any]) -> None:
        name = event.get("name", "")
        if name and name not in self.progress.packages:
            self.progress.packages.append(name)
        self.progress.status = event.get("message") or f"Installing {name}"

    def _on_app(self, event: dict[str, Any]) -> None:
        self.progress.status = "Generated main App.jsx"

    def _on_tool_code(self, event: dict[str, Any]) -> None:
        path = (event.get("args") or {}).get("path")
        if not path:
            return
        tool = event.get("tool_name")
        if tool == "edit_file":
            self.chat.add(f"Edited: {path}", MessageType.SYSTEM, MessageMetadata(edited_files=[path]))
        elif tool == "read_file":
            self.chat.add(f"Read: {path}", MessageType.SYSTEM, MessageMetadata(read_files=[path]))

    def _on_complete(self, event: dict[str, Any]) -> None:
        p = self.progress
        generated_code = event.get("generatedCode") or p.streamed_code
        p.generated_code = generated_code

        final_files = final_pass_files(generated_code)
        if p._consumed == 0:
            # No block closed during the stream; kept edit-mode files are overwritten in place
            for f in final_files:
                p._upsert(f.path, f.content)
                p.processed_paths.add(f.path)
        elif len(final_files) != p._consumed:
            logger.debug(
                f"[consumer] Keeping {len(p.files)} streamed files over {len(final_files)} from final pass"
            )

        p.current_file = None
        p.explanation = event.get("explanation") or extract_explanation(generated_code)
        p.packages_to_install = list(event.get("packagesToInstall") or [])
        p.is_streaming = False
        p.is_thinking = False
        if self.apply_after_complete:
            p.transition(GenerationState.APPLYING)
            p.status = "Applying generated code..."
        else:
            p.finish("Generation complete")

    def _on_error(self, event: dict[str, Any]) -> None:
        message = event.get("error") or event.get("message") or "Unknown error"
        self.abort(message)
        raise GenerationError(message)
