"""
Fixed-window text chunking with overlap.

Chunk ``i`` spans ``[i*(S-O), i*(S-O)+S)`` clipped to the text length, and
chunking stops at the first chunk that reaches the end of the text. Offsets
are character offsets into the original string.
"""

from dataclasses import dataclass

from ..core.exceptions import ChunkConfigError


@dataclass(frozen=True)
class TextChunk:
    index: int
    start_offset: int
    end_offset: int
    content: str


def validate_chunk_config(chunk_size: int, chunk_overlap: int) -> None:
    """Raise ChunkConfigError unless ``chunk_size > 0`` and ``0 <= chunk_overlap < chunk_size``."""
    if (
        isinstance(chunk_size, bool)
        or isinstance(chunk_overlap, bool)
        or not isinstance(chunk_size, int)
        or not isinstance(chunk_overlap, int)
    ):
        raise ChunkConfigError(chunk_size, chunk_overlap)
    if chunk_size <= 0 or chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ChunkConfigError(chunk_size, chunk_overlap)


def split_text(text: str, chunk_size: int, chunk_overlap: int) -> list[TextChunk]:
    """Split ``text`` into overlapping fixed-size chunks.

    The last chunk may be shorter than ``chunk_size``. Empty text yields no
    chunks.

    Example:
        >>> [(c.start_offset, c.end_offset) for c in split_text("x" * 2500, 1000, 200)]
        [(0, 1000), (800, 1800), (1600, 2500)]
    """
    validate_chunk_config(chunk_size, chunk_overlap)

    chunks: list[TextChunk] = []
    step = chunk_size - chunk_overlap
    length = len(text)
    start = 0
    while start < length:
        end = min(start + chunk_size, length)
        chunks.append(TextChunk(index=len(chunks), start_offset=start, end_offset=end, content=text[start:end]))
        if end == length:
            break
        start += step
    return chunks


def reconstruct_text(contents: list[str], chunk_overlap: int) -> str:
    """Inverse of ``split_text``: drop the leading overlap of every chunk after the first."""
    if not contents:
        return ""
    return contents[0] + "".join(content[chunk_overlap:] for content in contents[1:])
