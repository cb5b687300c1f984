"""
Unit Tests for Telegram formatting helpers.
"""

from pm_controller.formatting import (
    escape_html,
    strip_html,
    markdown_to_telegram_html,
    split_message,
    MAX_MESSAGE_LENGTH,
)


class TestMarkdownConversion:
    """Tests for markdown -> Telegram HTML."""

    def test_bold_heading_and_bullets(self):
        html = markdown_to_telegram_html("## Plan\n- **one**\n* two")
        assert html == "<b>Plan</b>\n• <b>one</b>\n• two"

    def test_escapes_raw_html(self):
        """Angle brackets from LLM output never become tags."""
        assert markdown_to_telegram_html("a < b & c") == "a &lt; b &amp; c"

    def test_code_is_not_formatted(self):
        html = markdown_to_telegram_html("Run `**x** <y>` now")
        assert "<code>**x** &lt;y&gt;</code>" in html

    def test_code_block(self):
        html = markdown_to_telegram_html("```python\nprint('<hi>')\n```")
        assert html == "<pre>print('&lt;hi&gt;')</pre>"

    def test_link_and_italic(self):
        html = markdown_to_telegram_html("See [docs](https://example.com/a_b) _now_")
        assert '<a href="https://example.com/a_b">docs</a>' in html
        assert "<i>now</i>" in html

    def test_snake_case_untouched(self):
        assert markdown_to_telegram_html("use task_store_dir") == "use task_store_dir"


class TestHtmlHelpers:

    def test_escape_and_strip(self):
        assert escape_html("<b>&") == "&lt;b&gt;&amp;"
        assert strip_html("<b>Hi</b> &lt;there&gt;") == "Hi <there>"


class TestSplitMessage:
    """Tests for chunking long replies."""

    def test_short_text_single_chunk(self):
        assert split_message("hello") == ["hello"]

    def test_splits_on_newlines(self):
        text = "\n".join(["x" * 30] * 10)
        chunks = split_message(text, max_length=100)
        assert all(len(c) <= 100 for c in chunks)
        assert "\n".join(chunks) == text

    def test_long_line_split_on_spaces(self):
        text = " ".join(["word"] * 100)
        chunks = split_message(text, max_length=50)
        assert all(len(c) <= 50 for c in chunks)
        assert " ".join(chunks).split() == text.split()

    def test_long_word_hard_cut(self):
        chunks = split_message("y" * 250, max_length=100)
        assert [len(c) for c in chunks] == [100, 100, 50]

    def test_default_limit(self):
        chunks = split_message("z\n" * MAX_MESSAGE_LENGTH)
        assert all(len(c) <= MAX_MESSAGE_LENGTH for c in chunks)
        assert len(chunks) > 1
