"""Streaming multipart upload receiver and upload session arena.

The request body is fed chunk by chunk into python-multipart's push parser.
Parser callbacks only record events; after each transport chunk the
receiver drains them through a small state machine that enforces the
configured limits, buffers accepted files and discards rejected parts
without holding their bytes.
"""

import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.requests import ClientDisconnect

from src.core.config import Settings, get_settings
from src.core.exceptions import UploadStreamError, ValidationFailure
from src.observability.metrics import UPLOAD_BYTES, UPLOAD_PARTS_REJECTED, UPLOAD_SESSIONS_ACTIVE

logger = logging.getLogger(__name__)


class ProgressStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class UploadProgress:
    file_id: str
    file_name: str
    bytes_received: int = 0
    total_bytes: int = 0
    percentage: int = 0
    status: ProgressStatus = ProgressStatus.UPLOADING
    error: str | None = None

    def advance(self, percentage: int) -> None:
        """Move the percentage forward; it never goes back."""
        self.percentage = max(self.percentage, min(percentage, 100))

    def to_dict(self) -> dict:
        return {
            "file_id": self.file_id,
            "file_name": self.file_name,
            "bytes_received": self.bytes_received,
            "total_bytes": self.total_bytes,
            "percentage": self.percentage,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass(frozen=True)
class RawFile:
    """A fully received file part."""

    id: str
    file_name: str
    mime_type: str
    content: bytes
    field_name: str = "files"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class RejectedFile:
    file_name: str
    error: str


@dataclass
class UploadSession:
    id: str
    user_id: str
    created_at: float
    expires_at: float
    files: dict[str, bytearray] = field(default_factory=dict)
    progress: dict[str, UploadProgress] = field(default_factory=dict)
    completed: bool = False
    completed_at: float | None = None
    error: str | None = None
    errors: list[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.error = message
        self.errors.append(message)


@dataclass
class UploadResult:
    session_id: str
    files: list[RawFile]
    fields: dict[str, str]
    errors: list[str]
    rejected: list[RejectedFile] = field(default_factory=list)


class UploadSessionArena:
    """In-memory registry of upload sessions with an explicit expiry per session."""

    def __init__(self, max_age_seconds: int = 30 * 60, clock: Callable[[], float] = time.time):
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._sessions: dict[str, UploadSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def create(self, user_id: str, session_id: str | None = None) -> UploadSession:
        session_id = session_id or str(uuid4())
        if session_id in self._sessions:
            raise ValidationFailure(
                "Upload session already exists",
                [{"field": "session_id", "message": f"Session {session_id} is already in use"}],
            )
        now = self._clock()
        session = UploadSession(
            id=session_id,
            user_id=user_id,
            created_at=now,
            expires_at=now + self.max_age_seconds,
        )
        self._sessions[session_id] = session
        UPLOAD_SESSIONS_ACTIVE.set(len(self._sessions))
        return session

    def get(self, session_id: str) -> UploadSession | None:
        return self._sessions.get(session_id)

    def progress(self, session_id: str) -> list[UploadProgress] | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return list(session.progress.values())

    def set_file_status(
        self,
        session_id: str,
        file_id: str,
        status: ProgressStatus,
        error: str | None = None,
    ) -> None:
        session = self._sessions.get(session_id)
        if session is None or file_id not in session.progress:
            return
        progress = session.progress[file_id]
        progress.status = status
        progress.error = error

    def fail_pending(self, session_id: str, message: str) -> None:
        """Mark files that never reached a final status as failed, and the session with them."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        for progress in session.progress.values():
            if progress.status in (ProgressStatus.UPLOADING, ProgressStatus.PROCESSING):
                progress.status = ProgressStatus.ERROR
                progress.error = message
        session.record_error(message)

    def mark_completed(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        now = self._clock()
        session.completed = True
        session.completed_at = now
        session.expires_at = now + self.max_age_seconds

    def release(self, session_id: str, grace_seconds: float = 0) -> None:
        """Shorten a session's lifetime to `grace_seconds` from now, or drop it."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        if grace_seconds <= 0:
            self._sessions.pop(session_id, None)
            UPLOAD_SESSIONS_ACTIVE.set(len(self._sessions))
            return
        session.expires_at = min(session.expires_at, self._clock() + grace_seconds)

    def sweep(self, now: float | None = None) -> int:
        """Remove expired sessions. Returns how many were removed."""
        now = self._clock() if now is None else now
        expired = [sid for sid, s in self._sessions.items() if s.expires_at <= now]
        for sid in expired:
            del self._sessions[sid]
        UPLOAD_SESSIONS_ACTIVE.set(len(self._sessions))
        if expired:
            logger.info(f"[Uploads] Swept {len(expired)} expired upload sessions")
        return len(expired)


class ReceiverState(str, Enum):
    RECEIVING = "receiving"
    DRAINING_REJECTED_PART = "draining_rejected_part"
    FINISHED = "finished"
    ERRORED = "errored"


class _Event(str, Enum):
    PART_BEGIN = "part_begin"
    HEADER_FIELD = "header_field"
    HEADER_VALUE = "header_value"
    HEADER_END = "header_end"
    HEADERS_DONE = "headers_done"
    PART_DATA = "part_data"
    PART_END = "part_end"
    END = "end"


@dataclass
class _FilePart:
    file_id: str
    file_name: str
    mime_type: str
    field_name: str
    buffer: bytearray


@dataclass
class _FieldPart:
    name: str
    buffer: bytearray


class UploadStateMachine:
    """Applies multipart events to one upload session.

    The parser callbacks below only append to `events`; `drain()` does the
    work. Kept separate from the receiver so it can be driven directly.
    """

    def __init__(self, settings: Settings, session: UploadSession, content_length: int | None = None):
        self.settings = settings
        self.session = session
        self.state = ReceiverState.RECEIVING
        self.events: list[tuple[_Event, bytes]] = []

        self.files: list[RawFile] = []
        self.fields: dict[str, str] = {}
        self.rejected: list[RejectedFile] = []
        self._file_parts_seen = 0
        self._field_parts_seen = 0

        # Per-file bytes are unknown while streaming; the request length is the
        # best available upper bound, else the per-file limit.
        self._progress_denominator = (
            content_length if content_length and content_length > 0 else settings.max_file_size_bytes
        )

        self._part: _FilePart | _FieldPart | None = None
        self._headers: dict[bytes, bytes] = {}
        self._header_field = b""
        self._header_value = b""

    # Parser callbacks

    def on_part_begin(self) -> None:
        self.events.append((_Event.PART_BEGIN, b""))

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self.events.append((_Event.HEADER_FIELD, data[start:end]))

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self.events.append((_Event.HEADER_VALUE, data[start:end]))

    def on_header_end(self) -> None:
        self.events.append((_Event.HEADER_END, b""))

    def on_headers_finished(self) -> None:
        self.events.append((_Event.HEADERS_DONE, b""))

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        self.events.append((_Event.PART_DATA, data[start:end]))

    def on_part_end(self) -> None:
        self.events.append((_Event.PART_END, b""))

    def on_end(self) -> None:
        self.events.append((_Event.END, b""))

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_end": self.on_end,
        }

    # Event processing

    def drain(self) -> None:
        events, self.events = self.events, []
        for event, data in events:
            self.feed(event, data)

    def feed(self, event: _Event, data: bytes = b"") -> None:
        if self.state in (ReceiverState.FINISHED, ReceiverState.ERRORED):
            return

        if event is _Event.PART_BEGIN:
            self._part = None
            self._headers = {}
            self._header_field = b""
            self._header_value = b""
            self.state = ReceiverState.RECEIVING
        elif event is _Event.HEADER_FIELD:
            self._header_field += data
        elif event is _Event.HEADER_VALUE:
            self._header_value += data
        elif event is _Event.HEADER_END:
            self._headers[self._header_field.lower()] = self._header_value
            self._header_field = b""
            self._header_value = b""
        elif event is _Event.HEADERS_DONE:
            self._start_part()
        elif event is _Event.PART_DATA:
            if self.state is ReceiverState.RECEIVING:
                self._receive_data(data)
        elif event is _Event.PART_END:
            if self.state is ReceiverState.RECEIVING:
                self._finish_part()
            self._part = None
            self.state = ReceiverState.RECEIVING
        elif event is _Event.END:
            self.state = ReceiverState.FINISHED

    def fail(self, message: str) -> None:
        self.state = ReceiverState.ERRORED
        self.session.record_error(message)
        for progress in self.session.progress.values():
            if progress.status is ProgressStatus.UPLOADING:
                progress.status = ProgressStatus.ERROR
                progress.error = message

    def result(self) -> UploadResult:
        return UploadResult(
            session_id=self.session.id,
            files=list(self.files),
            fields=dict(self.fields),
            errors=list(self.session.errors),
            rejected=list(self.rejected),
        )

    def _reject(self, message: str, file_name: str | None = None) -> None:
        self.state = ReceiverState.DRAINING_REJECTED_PART
        self.session.record_error(message)
        if file_name is not None:
            self.rejected.append(RejectedFile(file_name=file_name, error=message))
        UPLOAD_PARTS_REJECTED.inc()
        logger.warning(f"[Uploads] Session {self.session.id}: {message}")

    def _start_part(self) -> None:
        _, options = parse_options_header(self._headers.get(b"content-disposition", b""))
        name = options.get(b"name", b"").decode("utf-8", errors="replace")

        if b"filename" not in options:
            self._field_parts_seen += 1
            if self._field_parts_seen > self.settings.max_fields:
                self._reject(f"Too many fields: field {name} ignored")
                return
            self._part = _FieldPart(name=name, buffer=bytearray())
            return

        file_name = options[b"filename"].decode("utf-8", errors="replace")
        mime_type = self._headers.get(b"content-type", b"application/octet-stream")
        mime_type = mime_type.decode("latin-1").split(";", 1)[0].strip().lower()
        self._file_parts_seen += 1

        if self._file_parts_seen > self.settings.max_files_per_request:
            self._reject(
                f"Too many files: {file_name} ignored (limit {self.settings.max_files_per_request})",
                file_name,
            )
            return
        if mime_type not in self.settings.allowed_mime_types:
            self._reject(f"Unsupported file type: {mime_type}", file_name)
            return

        file_id = str(uuid4())
        buffer = bytearray()
        self.session.files[file_id] = buffer
        self.session.progress[file_id] = UploadProgress(file_id=file_id, file_name=file_name)
        self._part = _FilePart(
            file_id=file_id,
            file_name=file_name,
            mime_type=mime_type,
            field_name=name,
            buffer=buffer,
        )

    def _receive_data(self, data: bytes) -> None:
        part = self._part
        if part is None:
            return

        if isinstance(part, _FieldPart):
            if len(part.buffer) + len(data) > self.settings.max_field_size_bytes:
                self._reject(f"Field {part.name} exceeds maximum size limit")
                return
            part.buffer.extend(data)
            return

        if len(part.buffer) + len(data) > self.settings.max_file_size_bytes:
            message = f"File {part.file_name} exceeds maximum size limit"
            self.session.files.pop(part.file_id, None)
            progress = self.session.progress[part.file_id]
            progress.status = ProgressStatus.ERROR
            progress.error = message
            self._reject(message, part.file_name)
            return

        part.buffer.extend(data)
        UPLOAD_BYTES.inc(len(data))
        progress = self.session.progress[part.file_id]
        progress.bytes_received = len(part.buffer)
        # 100 is reserved for a finished part
        progress.advance(min(99, round(progress.bytes_received / self._progress_denominator * 100)))

    def _finish_part(self) -> None:
        part = self._part
        if isinstance(part, _FieldPart):
            self.fields[part.name] = part.buffer.decode("utf-8", errors="replace")
            return
        if part is None:
            return

        raw = RawFile(
            id=part.file_id,
            file_name=part.file_name,
            mime_type=part.mime_type,
            content=bytes(part.buffer),
            field_name=part.field_name,
        )
        self.files.append(raw)
        self.session.files.pop(part.file_id, None)

        progress = self.session.progress[part.file_id]
        progress.bytes_received = raw.size
        progress.total_bytes = raw.size
        progress.advance(100)
        progress.status = ProgressStatus.PROCESSING
        logger.debug(f"[Uploads] Received {raw.file_name} ({raw.size} bytes)")


class StreamingUploadReceiver:
    """Parses a multipart/form-data stream into raw files and form fields."""

    def __init__(self, settings: Settings, arena: UploadSessionArena):
        self.settings = settings
        self.arena = arena

    async def receive(
        self,
        stream: AsyncIterator[bytes],
        content_type: str,
        content_length: int | None = None,
        user_id: str = "",
        session_id: str | None = None,
    ) -> UploadResult:
        """Consume the whole stream.

        Raises:
            UploadStreamError: Not multipart, malformed body, or the client
                went away before the closing boundary.
        """
        media_type, params = parse_options_header(content_type or "")
        boundary = params.get(b"boundary")
        if media_type.lower() != b"multipart/form-data" or not boundary:
            raise UploadStreamError("Expected multipart/form-data with a boundary")

        session = self.arena.create(user_id, session_id)
        machine = UploadStateMachine(self.settings, session, content_length)
        parser = MultipartParser(boundary, machine.callbacks())

        logger.info(
            f"[Uploads] Session {session.id} started for user {user_id}, "
            f"content_length={content_length}"
        )

        try:
            async for chunk in stream:
                if chunk:
                    parser.write(chunk)
                machine.drain()
            parser.finalize()
            machine.drain()
        except MultipartParseError as e:
            machine.fail(f"Malformed multipart body: {e}")
            raise UploadStreamError(
                "Malformed multipart body", {"session_id": session.id}
            ) from e
        except ClientDisconnect as e:
            machine.fail("Client disconnected during upload")
            raise UploadStreamError(
                "Client disconnected during upload", {"session_id": session.id}
            ) from e

        if machine.state is not ReceiverState.FINISHED:
            machine.fail("Upload stream ended before the closing boundary")
            raise UploadStreamError(
                "Upload stream ended before the closing boundary", {"session_id": session.id}
            )

        self.arena.mark_completed(session.id)
        result = machine.result()
        logger.info(
            f"[Uploads] Session {session.id} finished: {len(result.files)} files, "
            f"{len(result.rejected)} rejected"
        )
        return result


# Singleton instance
_arena: UploadSessionArena | None = None


def get_upload_arena() -> UploadSessionArena:
    """Get or create the global UploadSessionArena instance."""
    global _arena
    if _arena is None:
        _arena = UploadSessionArena(max_age_seconds=get_settings().session_max_age_seconds)
    return _arena
