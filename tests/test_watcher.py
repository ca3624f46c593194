"""Tests for the rolling-window prompt watcher."""

import time

from claude_remote.watcher import Watcher, hash_prompt, strip_ansi


class TestStripAnsi:
    def test_colors_removed(self):
        assert strip_ansi("\x1b[1;33mDo you want to proceed? (y/n)\x1b[0m ") == "Do you want to proceed? (y/n) "

    def test_osc_title_removed(self):
        assert strip_ansi("\x1b]0;claude\x07hello") == "hello"

    def test_cursor_and_charset_sequences(self):
        assert strip_ansi("\x1b[2K\x1b[1G\x1b(Bdone\x1b[?25h") == "done"

    def test_keeps_newlines_and_tabs(self):
        assert strip_ansi("a\r\n\tb") == "a\r\n\tb"

    def test_caps_input_length(self):
        text = "x" * 50 + "y" * 50
        assert strip_ansi(text, max_chars=50) == "y" * 50

    def test_pathological_input_is_fast(self):
        hostile = ("\x1b[" + "1;" * 5000) * 20
        start = time.monotonic()
        strip_ansi(hostile)
        assert time.monotonic() - start < 1.0

    def test_unterminated_osc(self):
        assert strip_ansi("\x1b]8;;http://x") == ""


class TestHashPrompt:
    def test_stable_and_order_sensitive(self):
        assert hash_prompt("ab") == hash_prompt("ab")
        assert hash_prompt("ab") != hash_prompt("ba")
        assert len(hash_prompt("anything")) == 8


class TestWatcher:
    def test_detects_prompt(self):
        watcher = Watcher()
        trigger = watcher.process("\x1b[1mProceed? (y/n)\x1b[0m")

        assert trigger is not None
        assert [o.value for o in trigger.options] == ['y', 'n']
        assert trigger.prompt == "Proceed? (y/n)"
        assert watcher.awaiting

    def test_unchanged_prompt_reported_once(self):
        watcher = Watcher()
        triggers = [watcher.process("Proceed? (y/n)\r\n") for _ in range(10)]

        assert sum(1 for t in triggers if t is not None) == 1

    def test_reset_allows_same_prompt_again(self):
        watcher = Watcher()
        assert watcher.process("Proceed? (y/n)") is not None
        watcher.reset()
        assert not watcher.awaiting
        assert watcher.get_window() == ""
        assert watcher.process("Proceed? (y/n)") is not None

    def test_prompt_split_across_chunks(self):
        watcher = Watcher()
        assert watcher.process("Which one?\r\n1. Apply\r\n") is None
        trigger = watcher.process("2. Skip\r\n")

        assert trigger is not None
        assert [o.label for o in trigger.options] == ['1', '2']

    def test_different_prompt_replaces_held_trigger(self):
        watcher = Watcher()
        first = watcher.process("Proceed? (y/n)\n")
        second = watcher.process("Allow? (y/n/a)\n")

        assert second is not None
        assert second.fingerprint != first.fingerprint
        assert watcher.trigger is second

    def test_window_is_bounded(self):
        watcher = Watcher(max_lines=5)
        watcher.process("\n".join(f"line {i}" for i in range(20)))

        assert watcher.get_window().split("\n") == [f"line {i}" for i in range(15, 20)]
        assert len(watcher.lines) == 5

    def test_blank_lines_skipped(self):
        watcher = Watcher()
        watcher.process("a\r\n\r\n   \r\nb\r\n")
        assert watcher.lines == ["a", "b"]

    def test_trigger_dropped_when_scrolled_out(self):
        watcher = Watcher(max_lines=3)
        assert watcher.process("Proceed? (y/n)\n") is not None
        watcher.process("one\ntwo\nthree\n")

        assert watcher.trigger is None

    def test_to_message(self):
        watcher = Watcher()
        message = watcher.process("(a)pply (r)eject").to_message()

        assert message['type'] == 'options'
        assert message['options'] == [{'label': 'Apply', 'value': 'a'}, {'label': 'Reject', 'value': 'r'}]
        assert message['patternName'] == 'letter-in-parens'
        assert isinstance(message['detectedAt'], int)

    def test_prompt_split_mid_line(self):
        watcher = Watcher()
        assert watcher.process("Continue? (y") is None
        trigger = watcher.process("/n) ")

        assert trigger is not None
        assert trigger.prompt == "Continue? (y/n)"
        assert watcher.get_window() == "Continue? (y/n) "

    def test_unfinished_line_completed_by_newline(self):
        watcher = Watcher()
        first = watcher.process("Proceed? (y/n)")
        assert watcher.partial == "Proceed? (y/n)"

        assert watcher.process("\r\n") is None
        assert watcher.lines == ["Proceed? (y/n)"]
        assert watcher.partial == ""
        assert watcher.trigger is first

    def test_reset_clears_unfinished_line(self):
        watcher = Watcher()
        watcher.process("Continue? (y")
        watcher.reset()
        assert watcher.process("/n) ") is None
