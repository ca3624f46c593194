"""
Terminal Watcher

Consumes raw PTY output, keeps a rolling window of recent lines and reports
when Claude Code starts waiting for input. Each distinct prompt is reported
exactly once until the watcher is reset.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional

from .option_parser import Option, PatternLibrary

log = logging.getLogger(__name__)

MAX_LINES = 50
MAX_INPUT_CHARS = 100000

# Each alternative stops at the next ESC/BEL, so stripping stays linear
# even for unterminated or hostile sequences.
ANSI_PATTERN = re.compile(
    r'\x1b\[[0-?]*[ -/]*[@-~]'              # CSI: colors, cursor movement
    r'|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?'  # OSC: window title, hyperlinks
    r'|\x1b[PX^_][^\x1b]*(?:\x1b\\)?'       # DCS / SOS / PM / APC
    r'|\x1b[ -/]+[0-~]'                     # charset selection, e.g. ESC ( B
    r'|\x1b[0-~]'                           # two-byte escapes
    r'|\x9b[0-?]*[ -/]*[@-~]'               # 8-bit CSI
)
CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')


def strip_ansi(text, max_chars=MAX_INPUT_CHARS):
    """Remove terminal escape sequences, keeping at most the last ``max_chars``."""
    if len(text) > max_chars:
        text = text[-max_chars:]
    text = ANSI_PATTERN.sub('', text)
    return CONTROL_CHARS.sub('', text)


def hash_prompt(text):
    """Cheap order-sensitive 32-bit string hash, hex encoded."""
    h = 0
    for char in text:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    return format(h, '08x')


@dataclass
class Trigger:
    prompt: str
    options: List[Option]
    pattern_name: str
    fingerprint: str
    detected_at: float = field(default_factory=time.time)

    def to_message(self):
        return {
            'type': 'options',
            'prompt': self.prompt,
            'options': [o.to_dict() for o in self.options],
            'patternName': self.pattern_name,
            'detectedAt': int(self.detected_at * 1000),
        }


class Watcher:
    """Rolling-window prompt detector.

    Two states: idle (``trigger`` is None) and awaiting (holding a trigger).
    Not thread-safe; the session engine calls it under the session lock.
    """

    def __init__(self, library: Optional[PatternLibrary] = None,
                 max_lines=MAX_LINES, max_input_chars=MAX_INPUT_CHARS):
        self.library = library or PatternLibrary()
        self.max_lines = max_lines
        self.max_input_chars = max_input_chars
        self.lines: List[str] = []
        # Text after the last newline, completed by a later chunk
        self.partial = ''
        self.trigger: Optional[Trigger] = None

    @property
    def awaiting(self) -> bool:
        return self.trigger is not None

    def process(self, data) -> Optional[Trigger]:
        """Feed a chunk of output. Returns a trigger only when it is new."""
        stripped = strip_ansi(data, self.max_input_chars)

        *complete, partial = (self.partial + stripped).split('\n')
        self.partial = partial[-self.max_input_chars:]

        for line in complete:
            line = line.rstrip('\r')
            if line.strip():
                self.lines.append(line)

        if len(self.lines) > self.max_lines:
            self.lines = self.lines[-self.max_lines:]

        result = self.library.parse(self.get_window())
        if result is None:
            if self.trigger is not None:
                log.debug(f"[watcher] Prompt left the window (was: {self.trigger.fingerprint})")
                self.trigger = None
            return None

        values = ','.join(o.value for o in result.options)
        fingerprint = hash_prompt(f"{result.pattern_name}|{result.prompt}|{values}")

        if self.trigger is not None and self.trigger.fingerprint == fingerprint:
            return None

        self.trigger = Trigger(
            prompt=result.prompt,
            options=result.options,
            pattern_name=result.pattern_name,
            fingerprint=fingerprint,
        )
        log.info(f"[watcher] NEW prompt detected! Type: {result.pattern_name}, Sig: {fingerprint}")
        return self.trigger

    def get_window(self):
        """The most recent ``max_lines`` lines, including an unfinished last line."""
        lines = list(self.lines)
        partial = self.partial.rstrip('\r')
        if partial.strip():
            lines.append(partial)
        return '\n'.join(lines[-self.max_lines:])

    def reset(self):
        """Forget the window and any held trigger."""
        self.lines = []
        self.partial = ''
        self.trigger = None
