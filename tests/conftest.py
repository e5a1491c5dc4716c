"""Shared pytest fixtures for the knowledge service test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.core.config import Settings
from src.rag.uploads import RawFile

BOUNDARY = "----knowledgeboundary7MA4YWxk"

SAMPLE_TEXT = (
    "Quarterly revenue grew by twelve percent. Operating costs stayed flat. "
    "The board approved a new hiring plan for the platform team."
)


# ---------------------------------------------------------------------------
# Multipart helpers
# ---------------------------------------------------------------------------


def file_part(
    file_name: str,
    data: bytes,
    content_type: str = "text/plain",
    field: str = "files",
) -> tuple[str, str | None, str | None, bytes]:
    return (field, file_name, content_type, data)


def field_part(name: str, value: str) -> tuple[str, str | None, str | None, bytes]:
    return (name, None, None, value.encode("utf-8"))


def multipart_body(parts: list[tuple], boundary: str = BOUNDARY, close: bool = True) -> bytes:
    """Encode parts as a multipart/form-data body.

    Each part is (field name, file name or None, content type or None, data).
    """
    out = bytearray()
    for name, file_name, content_type, data in parts:
        out += f"--{boundary}\r\n".encode()
        disposition = f'Content-Disposition: form-data; name="{name}"'
        if file_name is not None:
            disposition += f'; filename="{file_name}"'
        out += f"{disposition}\r\n".encode()
        if content_type is not None:
            out += f"Content-Type: {content_type}\r\n".encode()
        out += b"\r\n" + data + b"\r\n"
    if close:
        out += f"--{boundary}--\r\n".encode()
    return bytes(out)


def content_type_header(boundary: str = BOUNDARY) -> str:
    return f"multipart/form-data; boundary={boundary}"


async def stream_chunks(body: bytes, size: int = 64) -> AsyncIterator[bytes]:
    for start in range(0, len(body), size):
        yield body[start : start + size]


def make_raw_file(
    file_name: str = "report.txt",
    content: bytes = SAMPLE_TEXT.encode(),
    mime_type: str = "text/plain",
    file_id: str | None = None,
) -> RawFile:
    return RawFile(
        id=file_id or f"id-{file_name}",
        file_name=file_name,
        mime_type=mime_type,
        content=content,
    )


def chat_response(content: str | None) -> SimpleNamespace:
    """Shape of an openai chat completion with one choice."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults only (no .env file)."""
    return Settings(_env_file=None)


@pytest.fixture
def mock_blob_store() -> AsyncMock:
    store = AsyncMock()
    store.upload.side_effect = lambda path, data, content_type: f"http://blob.local/knowledge-files/{path}"
    return store


@pytest.fixture
def mock_knowledge_store() -> AsyncMock:
    store = AsyncMock()
    store.bulk_insert.side_effect = lambda entries: entries
    return store


@pytest.fixture
def mock_agents() -> AsyncMock:
    agents = AsyncMock()
    agents.exists_in_tenant.return_value = True
    return agents


@pytest.fixture
def mock_vector_writer() -> MagicMock:
    return MagicMock()
