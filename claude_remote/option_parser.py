"""
Option Parsing

Turns a window of plain terminal text into the structured choices a Claude
Code prompt offers (yes/no, numbered menu, letter menu, press enter).
"""

import itertools
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional

# Only the tail of the window is ever considered
MAX_PARSE_LINES = 50

DEFAULT_PROMPT = 'Select option:'


@dataclass(frozen=True)
class Option:
    label: str
    value: str

    def to_dict(self):
        return {'label': self.label, 'value': self.value}


@dataclass
class ParseResult:
    prompt: str
    options: List[Option]
    pattern_name: str


@dataclass
class OptionPattern:
    """A recognizer regex plus an extractor producing choices.

    ``extract(match, text)`` returns the options, or None when the window
    does not really qualify. ``prompt(match, text)`` returns the prompt text
    shown to the user; by default the line holding the last match.
    """
    name: str
    regex: re.Pattern
    extract: Callable[[re.Match, str], Optional[List[Option]]]
    priority: int = 5
    prompt: Optional[Callable[[re.Match, str], str]] = None

    def describe(self, match, text):
        if self.prompt is not None:
            return self.prompt(match, text)
        return _line_of_last_match(self.regex, text) or DEFAULT_PROMPT


def _line_of_last_match(regex, text):
    last = None
    for last in regex.finditer(text):
        pass
    if last is None:
        return None
    start = text.rfind('\n', 0, last.start()) + 1
    end = text.find('\n', last.end())
    if end == -1:
        end = len(text)
    return text[start:end].strip()


# ============================================================================
# Built-in patterns
# ============================================================================

# "1. Option", optionally behind a selection marker or box border
NUMBERED_LINE = re.compile(r'^[ \t›❯>\*│|]*(\d{1,2})\.\s+[A-Z]')
NUMBERED_WINDOW = re.compile(r'^[ \t›❯>\*│|]*\d{1,2}\.\s+[A-Z]', re.MULTILINE)

LETTER_IN_PARENS = re.compile(r'\(([a-z])\)([a-z]+)', re.IGNORECASE)


def _yes_no(match, text):
    return [Option('Yes', 'y'), Option('No', 'n')]


def _yes_no_always(match, text):
    return [Option('Yes', 'y'), Option('No', 'n'), Option('Always', 'a')]


def _press_enter(match, text):
    return [Option('OK', '')]


def _numbered(match, text):
    found = set()
    for line in text.split('\n'):
        m = NUMBERED_LINE.match(line)
        if m:
            num = int(m.group(1))
            if 1 <= num <= 20:
                found.add(num)

    if len(found) < 2:
        return None
    return [Option(str(num), str(num)) for num in sorted(found)]


def _numbered_prompt(match, text):
    """The nearest non-option line above the first numbered option."""
    lines = text.split('\n')
    first = None
    for i, line in enumerate(lines):
        if NUMBERED_LINE.match(line):
            first = i
            break
    if first is None:
        return DEFAULT_PROMPT

    for line in reversed(lines[:first]):
        stripped = line.strip(' \t│|')
        if stripped:
            return stripped
    return DEFAULT_PROMPT


def _letters(match, text):
    options = []
    for m in LETTER_IN_PARENS.finditer(text):
        letter = m.group(1).lower()
        options.append(Option(letter.upper() + m.group(2), letter))
    return options if len(options) >= 2 else None


DEFAULT_PATTERNS = [
    OptionPattern(
        name='yes-no',
        regex=re.compile(r'\(y/n\)|\[y/n\]', re.IGNORECASE),
        extract=_yes_no,
        priority=10,
    ),
    OptionPattern(
        name='yes-no-always',
        regex=re.compile(r'\(y/n/a(?:lways)?\)', re.IGNORECASE),
        extract=_yes_no_always,
        priority=11,
    ),
    OptionPattern(
        name='numbered-options',
        regex=NUMBERED_WINDOW,
        extract=_numbered,
        priority=15,
        prompt=_numbered_prompt,
    ),
    OptionPattern(
        name='press-enter',
        regex=re.compile(r'press\s+enter|Enter to (?:confirm|select)', re.IGNORECASE),
        extract=_press_enter,
        priority=9,
    ),
    OptionPattern(
        name='letter-in-parens',
        regex=LETTER_IN_PARENS,
        extract=_letters,
        priority=8,
    ),
]


# ============================================================================
# Pattern library
# ============================================================================

@dataclass
class _Entry:
    pattern: OptionPattern
    priority: int
    order: int = field(compare=False)


class PatternLibrary:
    """Ordered set of option patterns, highest priority first.

    The first pattern that both matches the window and extracts a
    qualifying option list wins; results are never merged across patterns.
    """

    def __init__(self, patterns: Optional[List[OptionPattern]] = None):
        self._entries: List[_Entry] = []
        self._counter = itertools.count()
        for pattern in DEFAULT_PATTERNS if patterns is None else patterns:
            self.register(pattern)

    def register(self, pattern: OptionPattern, priority: Optional[int] = None):
        """Add a pattern. Ties in priority keep registration order."""
        if not getattr(pattern, 'name', None) or getattr(pattern, 'regex', None) is None \
                or not callable(getattr(pattern, 'extract', None)):
            raise ValueError('Pattern must have name, regex, and extract properties')

        if priority is None:
            priority = pattern.priority
        self._entries.append(_Entry(pattern, priority, next(self._counter)))
        self._entries.sort(key=lambda e: (-e.priority, e.order))

    @property
    def patterns(self) -> List[OptionPattern]:
        return [e.pattern for e in self._entries]

    def parse(self, text) -> Optional[ParseResult]:
        """Return the options offered by the most recent lines of ``text``."""
        if not text or not isinstance(text, str):
            return None

        lines = text.strip().split('\n')
        recent = '\n'.join(lines[-MAX_PARSE_LINES:])

        for entry in self._entries:
            pattern = entry.pattern
            match = pattern.regex.search(recent)
            if not match:
                continue
            options = pattern.extract(match, recent)
            if options:
                return ParseResult(
                    prompt=pattern.describe(match, recent),
                    options=list(options),
                    pattern_name=pattern.name,
                )
        return None

    def contains_trigger(self, text) -> bool:
        return self.parse(text) is not None


def parse_options(text) -> Optional[ParseResult]:
    """Parse with a fresh library of the built-in patterns."""
    return PatternLibrary().parse(text)
