"""Tests for splitting long completions into delivery-sized fragments."""

import random

import pytest

from tutor_bot.fragmenter import first_logical_message, split_message, split_message_parts


def _rejoin(parts):
    return "".join(sep + frag for sep, frag in parts)


def test_short_text_is_returned_unchanged():
    text = "line one\nline two"
    assert split_message(text, 4000) == [text]


def test_text_exactly_at_limit_is_one_fragment():
    text = "x" * 4000
    assert split_message(text, 4000) == [text]


def test_empty_text_yields_one_empty_fragment():
    assert split_message("", 4000) == [""]


def test_single_long_line_is_hard_split():
    fragments = split_message("a" * 9000, 4000)
    assert [len(f) for f in fragments] == [4000, 4000, 1000]


def test_lines_are_kept_whole():
    lines = [f"line-{i:03d}" for i in range(10)]  # 8 chars each
    text = "\n".join(lines)
    fragments = split_message(text, 26)
    assert fragments == [
        "line-000\nline-001\nline-002",
        "line-003\nline-004\nline-005",
        "line-006\nline-007\nline-008",
        "line-009",
    ]


def test_hard_split_pieces_are_not_merged_with_neighbours():
    text = "a\n" + "b" * 30 + "\nc"
    assert split_message(text, 10) == ["a", "b" * 10, "b" * 10, "b" * 10, "c"]


def test_blank_line_after_full_chunk_moves_into_separator():
    parts = split_message_parts("abcde\n\nxy", 5)
    assert parts == [("", "abcde"), ("\n", "\nxy")]
    assert _rejoin(parts) == "abcde\n\nxy"


def test_trailing_newline_after_full_chunk_is_kept():
    parts = split_message_parts("abcde\n", 5)
    assert [frag for _, frag in parts] == ["abcde", "\n"]
    assert _rejoin(parts) == "abcde\n"
    assert split_message("abcde\n", 5) == ["abcde"]


def test_blank_lines_at_chunk_boundary_are_not_a_fragment():
    text = "A" * 10 + "\n\n\n" + "B" * 10
    parts = split_message_parts(text, 10)
    assert parts == [("", "A" * 10), ("\n\n\n", "B" * 10)]
    assert _rejoin(parts) == text
    assert split_message(text, 10) == ["A" * 10, "B" * 10]


def test_trailing_newline_is_not_merged_into_hard_split_piece():
    parts = split_message_parts("xxxxxx\n", 4)
    assert parts == [("", "xxxx"), ("", "xx"), ("", "\n")]
    assert split_message("xxxxxx\n", 4) == ["xxxx", "xx"]


def test_blank_run_inside_long_line_moves_into_separator():
    parts = split_message_parts("ab" + " " * 6 + "cd", 3)
    assert parts == [("", "ab "), ("   ", "  c"), ("", "d")]
    assert _rejoin(parts) == "ab" + " " * 6 + "cd"


def test_blank_line_before_oversized_line():
    parts = split_message_parts("abc\n\nxxxxx", 3)
    assert parts == [("", "abc"), ("\n\n", "xxx"), ("", "xx")]


def test_invalid_max_length():
    with pytest.raises(ValueError):
        split_message("abc", 0)


def test_generated_texts_roundtrip_within_bounds():
    rng = random.Random(1234)
    for _ in range(500):
        length = rng.randint(0, 80)
        text = "".join(rng.choice("ab \n\n") for _ in range(length))
        max_length = rng.randint(1, 12)
        parts = split_message_parts(text, max_length)

        assert _rejoin(parts) == text
        fragments = [frag for _, frag in parts]
        if len(text) <= max_length:
            assert fragments == [text]
            continue
        blank_tail = False
        for frag in fragments:
            assert 0 < len(frag) <= max_length
            if frag.strip():
                # Blank fragments only ever trail the text.
                assert not blank_tail
            else:
                blank_tail = True
        assert all(f.strip() for f in split_message(text, max_length))


class TestFirstLogicalMessage:
    """Only the first emoji-led message of a multi-message completion is sent."""

    def test_single_message_untouched(self):
        text = "💡 Tip one.\n\nMore about the tip."
        assert first_logical_message(text) == text

    def test_keeps_first_of_several(self):
        text = "👋 Hi there!\n\n🤔 What would you like to learn?\n\n💡 Try asking about waxing."
        assert first_logical_message(text) == "👋 Hi there!"

    def test_empty_first_part_keeps_whole_text(self):
        text = "\n\n✅ Done"
        assert first_logical_message(text) == text
