"""Sentence-packing chunker with overlap.

Text is split into sentences which are packed greedily into chunks of at
most `max_length` characters. Each new chunk is seeded with a tail of the
previous one (up to `overlap` characters) so context carries across the
boundary; a seeded chunk is therefore bounded by `max_length + overlap`.
Sentences that do not fit in a chunk on their own are packed word by word,
and a single word longer than a chunk is cut into seeded pieces.
"""

import re

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_BOUNDARY = re.compile(r"[.!?]+\s+")

LARGE_TEXT_CHARS = 1_000_000
MEDIUM_TEXT_CHARS = 500_000


def split_sentences(text: str) -> list[str]:
    """Split on runs of .!? followed by whitespace, keeping the terminator."""
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]


def overlap_seed(chunk: str, overlap: int) -> str:
    """Tail of `chunk` used to seed the next chunk.

    The last `overlap` characters, trimmed to start after the first sentence
    boundary inside them. Without a boundary the raw tail is used.
    """
    if overlap <= 0:
        return ""
    tail = chunk[-overlap:]
    match = _SENTENCE_BOUNDARY.search(tail)
    if match:
        tail = tail[match.end() :]
    return tail.strip()


class _ChunkBuilder:
    def __init__(self, max_length: int, overlap: int):
        self.max_length = max_length
        self.overlap = overlap
        self.chunks: list[str] = []
        self.current = ""

    def add(self, piece: str) -> None:
        """Append a sentence or word that is itself within max_length."""
        candidate = f"{self.current} {piece}" if self.current else piece
        if len(candidate) <= self.max_length:
            self.current = candidate
            return

        seed = self.close()
        seeded = f"{seed} {piece}" if seed else piece
        if len(seeded) <= self.max_length + self.overlap:
            self.current = seeded
        else:
            self.current = piece

    def add_long_sentence(self, sentence: str) -> None:
        for word in sentence.split():
            if len(word) <= self.max_length:
                self.add(word)
                continue
            self.add_hard_split(word, self.close())

    def add_hard_split(self, word: str, seed: str) -> None:
        """Cut a word longer than a chunk into max_length pieces.

        The first piece takes the previous chunk's seed when it fits; each
        later piece starts with the raw last `overlap` characters of the
        piece before it.
        """
        pieces = [word[start : start + self.max_length] for start in range(0, len(word), self.max_length)]
        seeded: list[str] = []
        for i, piece in enumerate(pieces):
            if i > 0:
                tail = pieces[i - 1][-self.overlap :] if self.overlap else ""
                seeded.append(tail + piece)
            elif seed and len(seed) + 1 + len(piece) <= self.max_length + self.overlap:
                seeded.append(f"{seed} {piece}")
            else:
                seeded.append(piece)
        # The last piece stays open so following words pack onto it
        self.chunks.extend(seeded[:-1])
        self.current = seeded[-1]

    def close(self) -> str:
        """Emit the current chunk and return the seed for the next one."""
        if not self.current:
            return ""
        closed = self.current
        self.chunks.append(closed)
        self.current = ""
        return overlap_seed(closed, self.overlap)

    def finish(self) -> list[str]:
        if self.current.strip():
            self.chunks.append(self.current)
        self.current = ""
        return self.chunks


def chunk_text(text: str, max_length: int = 5000, overlap: int = 200) -> list[str]:
    """Split text into overlapping chunks.

    Args:
        text: Normalized document text
        max_length: Target maximum characters per chunk
        overlap: Maximum characters carried over from the previous chunk

    Returns:
        Chunks in document order; empty for blank text
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")
    if overlap < 0 or overlap >= max_length:
        raise ValueError(f"overlap must be in [0, {max_length}), got {overlap}")

    builder = _ChunkBuilder(max_length, overlap)
    for sentence in split_sentences(text):
        if len(sentence) > max_length:
            builder.add_long_sentence(sentence)
        else:
            builder.add(sentence)
    return builder.finish()


def effective_chunk_size(text_length: int, requested: int) -> int:
    """Raise the chunk size for very large documents to bound chunk count."""
    if text_length > LARGE_TEXT_CHARS:
        return max(requested, 10000)
    if text_length > MEDIUM_TEXT_CHARS:
        return max(requested, 8000)
    return requested


__all__ = [
    "chunk_text",
    "effective_chunk_size",
    "overlap_seed",
    "split_sentences",
]
