"""Tests for prompt option extraction."""

import re

import pytest

from claude_remote.option_parser import (Option, OptionPattern, PatternLibrary,
                                         parse_options)


class TestBuiltinPatterns:
    def test_yes_no(self):
        result = parse_options("Proceed? (y/n)")
        assert result.options == [Option('Yes', 'y'), Option('No', 'n')]
        assert result.pattern_name == 'yes-no'
        assert result.prompt == "Proceed? (y/n)"

    @pytest.mark.parametrize("text", ["Overwrite? [y/n]", "Continue [Y/n]", "Delete [y/N]", "Go (Y/N)"])
    def test_yes_no_variants(self, text):
        result = parse_options(text)
        assert [o.value for o in result.options] == ['y', 'n']

    def test_yes_no_always(self):
        result = parse_options("Allow this tool? (y/n/always)")
        assert result.pattern_name == 'yes-no-always'
        assert result.options == [Option('Yes', 'y'), Option('No', 'n'), Option('Always', 'a')]

    def test_numbered_list(self):
        result = parse_options("What next?\n1. Apply\n2. Skip")
        assert result.options == [Option('1', '1'), Option('2', '2')]
        assert result.prompt == "What next?"

    def test_numbered_list_with_selection_marker(self):
        text = "Do you want to make this edit?\n❯ 1. Yes\n  2. Yes, allow all edits\n  3. No\n"
        result = parse_options(text)
        assert [o.value for o in result.options] == ['1', '2', '3']
        assert result.prompt == "Do you want to make this edit?"

    def test_numbered_list_sorted_and_distinct(self):
        result = parse_options("3. Three\n1. One\n3. Three again\n2. Two")
        assert [o.label for o in result.options] == ['1', '2', '3']

    def test_numbered_ignores_out_of_range(self):
        result = parse_options("21. Too far\n25. Way too far")
        assert result is None

    def test_single_numbered_line_does_not_qualify(self):
        assert parse_options("1. Only one option here") is None

    def test_numbered_requires_uppercase(self):
        assert parse_options("1. lower\n2. case") is None

    def test_press_enter(self):
        result = parse_options("Press Enter to continue")
        assert result.options == [Option('OK', '')]

    def test_enter_to_confirm(self):
        result = parse_options("Enter to confirm · Esc to cancel")
        assert result.pattern_name == 'press-enter'

    def test_letter_in_parens(self):
        result = parse_options("(a)pply (r)eject")
        assert result.options == [Option('Apply', 'a'), Option('Reject', 'r')]

    def test_letter_in_parens_requires_two(self):
        assert parse_options("only (a)pply here") is None

    def test_numbered_beats_press_enter(self):
        text = "Pick one\n1. Yes\n2. No\nEnter to select"
        assert parse_options(text).pattern_name == 'numbered-options'

    def test_no_prompt(self):
        assert parse_options("Just some regular output") is None
        assert parse_options("") is None
        assert parse_options(None) is None

    def test_only_recent_lines_considered(self):
        text = "Proceed? (y/n)\n" + "\n".join(f"line {i}" for i in range(60))
        assert parse_options(text) is None


class TestPatternLibrary:
    def test_default_order(self):
        names = [p.name for p in PatternLibrary().patterns]
        assert names == ['numbered-options', 'yes-no-always', 'yes-no', 'press-enter', 'letter-in-parens']

    def test_register_higher_priority_wins(self):
        library = PatternLibrary()
        library.register(OptionPattern(
            name='approve',
            regex=re.compile(r'approve\?', re.IGNORECASE),
            extract=lambda m, t: [Option('Approve', 'approve'), Option('Deny', 'deny')],
        ), priority=20)

        result = library.parse("Approve? (y/n)")
        assert result.pattern_name == 'approve'

    def test_ties_keep_registration_order(self):
        first = OptionPattern('first', re.compile('x'), lambda m, t: [Option('A', 'a')], priority=3)
        second = OptionPattern('second', re.compile('x'), lambda m, t: [Option('B', 'b')], priority=3)
        library = PatternLibrary(patterns=[])
        library.register(first)
        library.register(second)

        assert [p.name for p in library.patterns] == ['first', 'second']
        assert library.parse("x").pattern_name == 'first'

    def test_register_rejects_incomplete_pattern(self):
        with pytest.raises(ValueError):
            PatternLibrary().register(OptionPattern('', re.compile('x'), lambda m, t: None))

    def test_extractor_returning_none_falls_through(self):
        library = PatternLibrary()
        library.register(OptionPattern('never', re.compile('Proceed'), lambda m, t: None), priority=50)
        assert library.parse("Proceed? (y/n)").pattern_name == 'yes-no'

    def test_contains_trigger(self):
        library = PatternLibrary()
        assert library.contains_trigger("Continue? (y/n)")
        assert not library.contains_trigger("Compiling...")
