"""Split long outbound text for IRC (512 byte line limit) at word boundaries."""

from __future__ import annotations

from tobby.core.constants import MAX_LINE_BYTES

# Break at a space only if it falls past this fraction of the chunk
_WORD_BREAK_RATIO = 0.7


def _valid_prefix(data: bytes) -> bytes:
    """Longest prefix of data that decodes as UTF-8."""
    while data:
        try:
            data.decode("utf-8", errors="strict")
            return data
        except UnicodeDecodeError:
            data = data[:-1]
    return data


def split_message(content: str, max_bytes: int = MAX_LINE_BYTES) -> list[str]:
    """Split one line into chunks of at most max_bytes.

    We use 450 to leave room for "PRIVMSG #channel :", the source prefix and tags.
    Never splits in the middle of a UTF-8 multi-byte character. A chunk ends at
    the last space when that space lies past 70% of the chunk; the space stays
    on the end of the chunk so the chunks join back to the original text.
    """
    if not content:
        return []
    encoded = content.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return [content]

    chunks: list[str] = []
    start = 0
    while start < len(encoded):
        remaining = encoded[start:]
        if len(remaining) <= max_bytes:
            chunks.append(remaining.decode("utf-8", errors="replace"))
            break
        chunk_bytes = _valid_prefix(remaining[:max_bytes])
        if not chunk_bytes:
            # Invalid UTF-8 at start; take one byte (decode will replace)
            chunk_bytes = remaining[:1]
        next_start = start + len(chunk_bytes)
        last_space = chunk_bytes.rfind(b" ")
        if last_space > len(chunk_bytes) * _WORD_BREAK_RATIO:
            chunk_bytes = chunk_bytes[: last_space + 1]
            next_start = start + len(chunk_bytes)
        chunks.append(chunk_bytes.decode("utf-8", errors="replace"))
        start = next_start
    return chunks


def split_text(text: str, max_bytes: int = MAX_LINE_BYTES) -> list[tuple[str, bool]]:
    """Split multi-line text into wire-sized lines.

    Returns (line, concat) pairs: concat is True when the line continues the
    previous one (it came from splitting a long line) rather than starting a
    new line of the original text.
    """
    parts: list[tuple[str, bool]] = []
    for line in text.replace("\r\n", "\n").split("\n"):
        chunks = split_message(line, max_bytes) or [""]
        for i, chunk in enumerate(chunks):
            parts.append((chunk, i > 0))
    # Trailing empty lines carry nothing
    while len(parts) > 1 and parts[-1] == ("", False):
        parts.pop()
    return parts
