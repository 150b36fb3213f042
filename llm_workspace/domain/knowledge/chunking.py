from pathlib import Path
from typing import Iterable, List


def chunk_text(text: str, chunk_size: int, overlap: int) -> List[str]:
    """Split text into windows of ``chunk_size`` UTF-8 bytes sharing ``overlap`` bytes.

    Text no longer than ``chunk_size`` bytes is returned as a single chunk.
    Window edges are moved back to the nearest character boundary, so a
    chunk never splits a code point and never exceeds ``chunk_size`` bytes
    (unless a single character is wider than the window). For ASCII text the
    window advances by exactly ``chunk_size - overlap``.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")

    data = text.encode("utf-8")
    if len(data) <= chunk_size:
        return [text]

    chunks = []
    start = 0
    while start < len(data):
        end = _char_boundary(data, min(start + chunk_size, len(data)))
        if end <= start:
            # one character wider than the window
            end = start + 1
            while end < len(data) and _is_continuation(data[end]):
                end += 1
        chunks.append(data[start:end].decode("utf-8"))
        if end == len(data):
            break

        next_start = _char_boundary(data, end - overlap)
        start = next_start if next_start > start else end

    return chunks


def _is_continuation(byte: int) -> bool:
    return (byte & 0xC0) == 0x80


def _char_boundary(data: bytes, index: int) -> int:
    """Move ``index`` back until it does not point inside a character"""
    while 0 < index < len(data) and _is_continuation(data[index]):
        index -= 1
    return index


def is_indexable(path: Path, extensions: Iterable[str]) -> bool:
    """Check the file extension against the allow-list (without the dot)"""
    suffix = path.suffix.lower().lstrip(".")
    if not suffix:
        return False
    return suffix in {ext.lower().lstrip(".") for ext in extensions}
