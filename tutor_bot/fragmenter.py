import logging
import re
from typing import List, Optional, Set, Tuple

# Telegram rejects messages longer than 4096 characters; keep a margin for markup.
DEFAULT_MAX_FRAGMENT_LENGTH = 4000

# A blank line followed by one of the emoji the tutor opens a message with.
_MESSAGE_BREAK_RE = re.compile(r"\n\n(?=👋|🤔|💡|⚠️|✅|❌|❓)")

logger = logging.getLogger(__name__)


def _flush(parts: List[Tuple[str, str]], lines: List[str], pending: str) -> str:
    """Emit `lines` as one fragment; returns the text still owed to the next one.

    Telegram refuses blank messages, so a chunk of only whitespace is not
    emitted. It moves into the separator of the following fragment instead.
    """
    chunk = "\n".join(lines)
    if chunk.strip():
        parts.append((pending, chunk))
        return ""
    return pending + chunk


def split_message_parts(text: str, max_length: int = DEFAULT_MAX_FRAGMENT_LENGTH) -> List[Tuple[str, str]]:
    """
    Split `text` into fragments of at most `max_length` characters.

    Returns (separator, fragment) pairs where separator is the exact text that
    sat between the previous fragment and this one: "" for the first fragment
    and between pieces of a hard-split line, newlines (plus any blank run that
    was skipped) otherwise. Therefore
    "".join(sep + frag for sep, frag in parts) == text.

    Lines are kept whole where possible. A line longer than `max_length` is cut
    into max-sized pieces, each its own fragment. Fragments are never empty and
    never blank, except for trailing whitespace that fits nowhere else: that
    comes last, as its own blank fragments.
    """
    if max_length < 1:
        raise ValueError("max_length must be positive")
    if len(text) <= max_length:
        return [("", text)]

    parts: List[Tuple[str, str]] = []
    hard_pieces: Set[int] = set()
    pending = ""
    current: Optional[List[str]] = None
    current_len = 0

    for n, line in enumerate(text.split("\n")):
        if current is not None:
            if current_len + 1 + len(line) <= max_length:
                current.append(line)
                current_len += 1 + len(line)
                continue
            pending = _flush(parts, current, pending)
            current = None
        if n:
            pending += "\n"

        if len(line) > max_length:
            for i in range(0, len(line), max_length):
                piece = line[i : i + max_length]
                if not piece.strip():
                    pending += piece
                    continue
                hard_pieces.add(len(parts))
                parts.append((pending, piece))
                pending = ""
        else:
            current = [line]
            current_len = len(line)

    if current is not None:
        pending = _flush(parts, current, pending)

    if pending:
        last = len(parts) - 1
        if parts and last not in hard_pieces and len(parts[last][1]) + len(pending) <= max_length:
            sep, frag = parts[last]
            parts[last] = (sep, frag + pending)
        else:
            for i in range(0, len(pending), max_length):
                parts.append(("", pending[i : i + max_length]))

    return parts


def split_message(text: str, max_length: int = DEFAULT_MAX_FRAGMENT_LENGTH) -> List[str]:
    """Split `text` into delivery-sized chunks.

    A text that fits is returned as is. Otherwise blank fragments (trailing
    whitespace only) are left out, so every chunk is something Telegram will send.
    """
    if len(text) <= max_length:
        return [text]
    return [fragment for _, fragment in split_message_parts(text, max_length) if fragment.strip()]


def first_logical_message(text: str) -> str:
    """
    The model sometimes writes several chat messages in one completion
    (blank line, then a new emoji-led paragraph). Only the first one is sent.
    """
    pieces = _MESSAGE_BREAK_RE.split(text)
    if len(pieces) > 1:
        logger.warning("Model generated %d messages; sending only the first one", len(pieces))
        first = pieces[0].strip()
        if first:
            return first
    return text
