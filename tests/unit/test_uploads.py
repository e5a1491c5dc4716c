"""Unit tests for the streaming upload receiver and session arena."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from src.core.config import Settings
from src.core.exceptions import UploadStreamError, ValidationFailure
from src.rag.uploads import (
    ProgressStatus,
    StreamingUploadReceiver,
    UploadProgress,
    UploadSessionArena,
)
from tests.conftest import (
    SAMPLE_TEXT,
    content_type_header,
    field_part,
    file_part,
    multipart_body,
    stream_chunks,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _receiver(settings: Settings, arena: UploadSessionArena | None = None) -> StreamingUploadReceiver:
    return StreamingUploadReceiver(settings, arena if arena is not None else UploadSessionArena())


# ---------------------------------------------------------------------------
# StreamingUploadReceiver
# ---------------------------------------------------------------------------


class TestStreamingUploadReceiver:
    @pytest.mark.asyncio
    async def test_receives_files_and_fields(self, settings: Settings) -> None:
        arena = UploadSessionArena()
        body = multipart_body(
            [
                field_part("title", "Finance notes"),
                file_part("q1.txt", SAMPLE_TEXT.encode()),
                file_part("q2.md", b"# Q2\n\nMore numbers.", "text/markdown"),
                field_part("chunkSize", "1000"),
            ]
        )

        result = await _receiver(settings, arena).receive(
            stream_chunks(body),
            content_type_header(),
            content_length=len(body),
            user_id="user-1",
            session_id="session-1",
        )

        assert result.session_id == "session-1"
        assert [f.file_name for f in result.files] == ["q1.txt", "q2.md"]
        assert result.files[0].content == SAMPLE_TEXT.encode()
        assert result.files[1].mime_type == "text/markdown"
        assert result.fields == {"title": "Finance notes", "chunkSize": "1000"}
        assert result.errors == []
        assert result.rejected == []

        session = arena.get("session-1")
        assert session is not None
        assert session.completed is True
        assert session.user_id == "user-1"
        for progress in session.progress.values():
            assert progress.percentage == 100
            assert progress.status is ProgressStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_generates_session_id(self, settings: Settings) -> None:
        body = multipart_body([file_part("a.txt", SAMPLE_TEXT.encode())])
        result = await _receiver(settings).receive(stream_chunks(body), content_type_header())
        assert result.session_id

    @pytest.mark.asyncio
    async def test_content_type_parameters_are_stripped(self, settings: Settings) -> None:
        body = multipart_body([file_part("a.txt", SAMPLE_TEXT.encode(), "text/plain; charset=utf-8")])
        result = await _receiver(settings).receive(stream_chunks(body), content_type_header())
        assert result.files[0].mime_type == "text/plain"

    @pytest.mark.asyncio
    async def test_unsupported_part_is_drained(self, settings: Settings) -> None:
        body = multipart_body(
            [
                file_part("photo.png", b"\x89PNG" + b"\x00" * 500, "image/png"),
                file_part("notes.txt", SAMPLE_TEXT.encode()),
            ]
        )

        result = await _receiver(settings).receive(stream_chunks(body, size=32), content_type_header())

        assert [f.file_name for f in result.files] == ["notes.txt"]
        assert result.files[0].content == SAMPLE_TEXT.encode()
        assert len(result.rejected) == 1
        assert result.rejected[0].file_name == "photo.png"
        assert result.rejected[0].error == "Unsupported file type: image/png"
        assert result.errors == ["Unsupported file type: image/png"]

    @pytest.mark.asyncio
    async def test_oversized_file_is_rejected(self) -> None:
        settings = Settings(_env_file=None, max_file_size_bytes=100)
        arena = UploadSessionArena()
        body = multipart_body(
            [
                file_part("big.txt", b"a" * 400),
                file_part("small.txt", b"small file body"),
            ]
        )

        result = await _receiver(settings, arena).receive(
            stream_chunks(body, size=16), content_type_header(), session_id="s-big"
        )

        assert [f.file_name for f in result.files] == ["small.txt"]
        assert result.rejected[0].file_name == "big.txt"
        assert "exceeds maximum size limit" in result.rejected[0].error

        statuses = {p.file_name: p.status for p in arena.get("s-big").progress.values()}
        assert statuses == {"big.txt": ProgressStatus.ERROR, "small.txt": ProgressStatus.PROCESSING}
        assert arena.get("s-big").files == {}

    @pytest.mark.asyncio
    async def test_too_many_files(self) -> None:
        settings = Settings(_env_file=None, max_files_per_request=1)
        body = multipart_body(
            [file_part("one.txt", SAMPLE_TEXT.encode()), file_part("two.txt", SAMPLE_TEXT.encode())]
        )

        result = await _receiver(settings).receive(stream_chunks(body), content_type_header())

        assert [f.file_name for f in result.files] == ["one.txt"]
        assert result.rejected[0].file_name == "two.txt"
        assert result.rejected[0].error.startswith("Too many files")

    @pytest.mark.asyncio
    async def test_oversized_field_is_dropped(self) -> None:
        settings = Settings(_env_file=None, max_field_size_bytes=8)
        body = multipart_body(
            [field_part("title", "a title that is far too long"), field_part("overlap", "50")]
        )

        result = await _receiver(settings).receive(stream_chunks(body), content_type_header())

        assert result.fields == {"overlap": "50"}
        assert result.errors == ["Field title exceeds maximum size limit"]

    @pytest.mark.asyncio
    async def test_too_many_fields(self) -> None:
        settings = Settings(_env_file=None, max_fields=1)
        body = multipart_body([field_part("title", "Notes"), field_part("overlap", "50")])

        result = await _receiver(settings).receive(stream_chunks(body), content_type_header())

        assert result.fields == {"title": "Notes"}
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_missing_boundary(self, settings: Settings) -> None:
        arena = UploadSessionArena()
        with pytest.raises(UploadStreamError):
            await _receiver(settings, arena).receive(stream_chunks(b"data"), "multipart/form-data")
        assert len(arena) == 0

    @pytest.mark.asyncio
    async def test_not_multipart(self, settings: Settings) -> None:
        with pytest.raises(UploadStreamError):
            await _receiver(settings).receive(stream_chunks(b"{}"), "application/json")

    @pytest.mark.asyncio
    async def test_truncated_stream(self, settings: Settings) -> None:
        arena = UploadSessionArena()
        body = multipart_body([file_part("a.txt", SAMPLE_TEXT.encode())], close=False)

        with pytest.raises(UploadStreamError) as exc_info:
            await _receiver(settings, arena).receive(
                stream_chunks(body), content_type_header(), session_id="s-cut"
            )

        assert exc_info.value.details["session_id"] == "s-cut"
        session = arena.get("s-cut")
        assert session.error == "Upload stream ended before the closing boundary"
        assert session.completed is False

    @pytest.mark.asyncio
    async def test_garbage_body(self, settings: Settings) -> None:
        with pytest.raises(UploadStreamError):
            await _receiver(settings).receive(
                stream_chunks(b"definitely not a multipart body at all"), content_type_header()
            )

    @pytest.mark.asyncio
    async def test_duplicate_session_id(self, settings: Settings) -> None:
        arena = UploadSessionArena()
        arena.create("user-1", "taken")
        body = multipart_body([file_part("a.txt", SAMPLE_TEXT.encode())])

        with pytest.raises(ValidationFailure):
            await _receiver(settings, arena).receive(
                stream_chunks(body), content_type_header(), session_id="taken"
            )

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, settings: Settings) -> None:
        arena = UploadSessionArena()
        body = multipart_body([file_part("long.txt", b"0123456789" * 300)])
        seen: list[int] = []

        async def observed(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
            async for chunk in chunks:
                yield chunk
                session = arena.get("s-progress")
                if session is not None:
                    seen.extend(p.percentage for p in session.progress.values())

        await _receiver(settings, arena).receive(
            observed(stream_chunks(body, size=100)),
            content_type_header(),
            content_length=len(body),
            session_id="s-progress",
        )

        assert len(seen) > 5
        assert seen == sorted(seen)
        assert all(0 <= p <= 100 for p in seen)
        assert max(p for p in seen if p < 100) <= 99
        assert seen[-1] == 100


# ---------------------------------------------------------------------------
# UploadProgress
# ---------------------------------------------------------------------------


class TestUploadProgress:
    def test_advance_never_goes_back(self) -> None:
        progress = UploadProgress(file_id="f", file_name="a.txt")
        progress.advance(40)
        progress.advance(10)
        assert progress.percentage == 40

    def test_advance_caps_at_100(self) -> None:
        progress = UploadProgress(file_id="f", file_name="a.txt")
        progress.advance(250)
        assert progress.percentage == 100

    def test_to_dict_uses_status_value(self) -> None:
        progress = UploadProgress(file_id="f", file_name="a.txt", status=ProgressStatus.ERROR)
        assert progress.to_dict()["status"] == "error"


# ---------------------------------------------------------------------------
# UploadSessionArena
# ---------------------------------------------------------------------------


class TestUploadSessionArena:
    def test_create_and_get(self) -> None:
        arena = UploadSessionArena()
        session = arena.create("user-1")
        assert arena.get(session.id) is session
        assert session.id in arena

    def test_sweep_removes_expired_sessions(self) -> None:
        clock = FakeClock(1000)
        arena = UploadSessionArena(max_age_seconds=60, clock=clock)
        arena.create("user-1", "old")
        clock.now = 1030
        arena.create("user-1", "fresh")

        clock.now = 1061
        assert arena.sweep() == 1
        assert "old" not in arena
        assert "fresh" in arena

    def test_release_shortens_lifetime(self) -> None:
        clock = FakeClock(1000)
        arena = UploadSessionArena(max_age_seconds=600, clock=clock)
        arena.create("user-1", "s1")

        arena.release("s1", grace_seconds=10)

        assert arena.sweep(now=1009) == 0
        assert arena.sweep(now=1011) == 1

    def test_release_without_grace_removes_now(self) -> None:
        arena = UploadSessionArena()
        arena.create("user-1", "s1")
        arena.release("s1", grace_seconds=0)
        assert arena.get("s1") is None

    def test_release_unknown_session_is_noop(self) -> None:
        UploadSessionArena().release("missing", grace_seconds=10)

    def test_mark_completed_extends_expiry(self) -> None:
        clock = FakeClock(1000)
        arena = UploadSessionArena(max_age_seconds=60, clock=clock)
        session = arena.create("user-1", "s1")
        clock.now = 1050
        arena.mark_completed("s1")

        assert session.completed is True
        assert session.completed_at == 1050
        assert session.expires_at == 1110

    def test_set_file_status(self) -> None:
        arena = UploadSessionArena()
        session = arena.create("user-1", "s1")
        session.progress["f1"] = UploadProgress(file_id="f1", file_name="a.txt")

        arena.set_file_status("s1", "f1", ProgressStatus.ERROR, "boom")

        assert session.progress["f1"].status is ProgressStatus.ERROR
        assert session.progress["f1"].error == "boom"
        assert arena.progress("s1") == [session.progress["f1"]]

    def test_progress_for_unknown_session(self) -> None:
        assert UploadSessionArena().progress("missing") is None

    def test_fail_pending_marks_unfinished_files(self) -> None:
        arena = UploadSessionArena()
        session = arena.create("user-1", "s1")
        session.progress["done"] = UploadProgress(
            file_id="done", file_name="a.txt", status=ProgressStatus.COMPLETED
        )
        session.progress["busy"] = UploadProgress(
            file_id="busy", file_name="b.txt", status=ProgressStatus.PROCESSING
        )

        arena.fail_pending("s1", "Database error: down")

        assert session.progress["done"].status is ProgressStatus.COMPLETED
        assert session.progress["busy"].status is ProgressStatus.ERROR
        assert session.progress["busy"].error == "Database error: down"
        assert session.error == "Database error: down"

    def test_fail_pending_unknown_session_is_noop(self) -> None:
        UploadSessionArena().fail_pending("missing", "boom")
