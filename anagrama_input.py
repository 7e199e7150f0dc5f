"""
Letter-constrained line editor with a slash-command palette.

One editor handles exactly one submission: a guess built from the letters of
the current puzzle, or a `/command` picked from the palette shown below the
input line. Keys are read one at a time from a blessed Terminal.
"""
from __future__ import annotations

import logging
import signal
import sys
import threading
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Literal, Optional, Sequence

from blessed import Terminal


log = logging.getLogger(__name__)


COMMAND_PREFIX = "/"
PROMPT = "  › "
CTRL_C_NOTICE = "  Use /exit to return to menu or /quit to exit."

KEY_ENTER = "KEY_ENTER"
KEY_BACKSPACE = "KEY_BACKSPACE"
KEY_ESCAPE = "KEY_ESCAPE"
KEY_UP = "KEY_UP"
KEY_DOWN = "KEY_DOWN"
KEY_TAB = "KEY_TAB"
KEY_CTRL_C = "KEY_CTRL_C"

Mode = Literal["word", "command"]

# what the session driver has to do after a key was handled
ActionKind = Literal["ignore", "render", "update", "submit", "notice"]

NoticeKind = Literal["ctrl_c", "info"]

UpdateFn = Callable[[str, FrozenSet[int]], None]  # fn(buffer, consumed_indices)


@dataclass(frozen=True)
class CommandInfo:
    name: str
    description: str


@dataclass(frozen=True)
class EditResult:
    buffer: str
    is_command: bool



#====================================
# Keys
#====================================

_KEY_ALIASES = {
    '\r': KEY_ENTER, '\n': KEY_ENTER,
    '\x7f': KEY_BACKSPACE, '\x08': KEY_BACKSPACE,
    '\t': KEY_TAB,
    '\x1b': KEY_ESCAPE,
    '\x03': KEY_CTRL_C,
}
_NAMED_KEYS = {KEY_ENTER, KEY_BACKSPACE, KEY_ESCAPE, KEY_UP, KEY_DOWN, KEY_TAB}


def normalize_key(key) -> Optional[str]:
    """
    Map a blessed Keystroke (or a plain str) to an editor key token:
    one of the KEY_* names above, or a single printable character.
    Anything else becomes None.
    """
    text = str(key)
    if text in _KEY_ALIASES:
        return _KEY_ALIASES[text]
    name = getattr(key, "name", None)
    if name in _NAMED_KEYS:
        return name
    if len(text) == 1 and text.isprintable() and not getattr(key, "is_sequence", False):
        return text
    return None



#====================================
# Pool tracking
#====================================

class LetterPool:
    """
    The scrambled letters of one puzzle attempt, and which of them are
    currently used by the input buffer.

    Positions are tracked, not letters: the pool may hold the same letter
    more than once.
    """
    def __init__(self, letters: Iterable[str]):
        self.letters = tuple(ch.upper() for ch in letters)
        self.consumed: set = set()

    def __len__(self):
        return len(self.letters)

    def try_consume(self, letter: str) -> Optional[int]:
        target = letter.upper()
        for i, ch in enumerate(self.letters):
            if ch == target and i not in self.consumed:
                self.consumed.add(i)
                return i
        return None

    def release(self, letter: str) -> Optional[int]:
        # frees the highest matching position, i.e. the tile typed last
        target = letter.upper()
        matches = [i for i in self.consumed if self.letters[i] == target]
        if not matches:
            return None
        idx = max(matches)
        self.consumed.discard(idx)
        return idx

    def reset(self):
        self.consumed.clear()

    def is_consumed(self, index: int) -> bool:
        return index in self.consumed



#====================================
# Editor state machine
#====================================

class InputEditor:
    """
    Owns the buffer, the mode, the pool tracker and the palette selection.
    `handle_key` is the only mutator; it never renders.
    """
    def __init__(self, pool: Iterable[str], commands: Sequence[CommandInfo] = (), prefix: str = COMMAND_PREFIX):
        self.pool = LetterPool(pool)
        self.commands = list(commands)
        self.prefix = prefix
        self.buffer = ""
        self.mode: Mode = "word"
        self.filtered: List[CommandInfo] = []
        self.selected = 0
        self.notice_kind: Optional[NoticeKind] = None  # what is drawn below the input, if anything

    @property
    def is_command(self) -> bool:
        return self.mode == "command"

    @property
    def consumed(self) -> FrozenSet[int]:
        return frozenset(self.pool.consumed)

    @property
    def selection(self) -> Optional[CommandInfo]:
        if self.is_command and 0 <= self.selected < len(self.filtered):
            return self.filtered[self.selected]
        return None

    def result(self) -> EditResult:
        return EditResult(self.buffer, self.is_command)

    def _refilter(self):
        typed = self.buffer.lower()
        self.filtered = [c for c in self.commands if c.name.lower().startswith(typed)]
        self.selected = 0

    def _to_word_mode(self):
        self.mode = "word"
        self.filtered = []
        self.selected = 0

    def handle_key(self, key: Optional[str]) -> ActionKind:
        if key == KEY_CTRL_C:
            # replaces any other notice, but is never drawn twice in a row
            if self.notice_kind == "ctrl_c":
                return "ignore"
            self.notice_kind = "ctrl_c"
            return "notice"

        # any other key takes the notice down on the next redraw
        dismissed = self.notice_kind is not None
        self.notice_kind = None
        kind = self._handle(key)
        if kind == "ignore" and dismissed:
            return "render"
        return kind

    def _handle(self, key: Optional[str]) -> ActionKind:
        if key is None:
            return "ignore"

        if key in (KEY_UP, KEY_DOWN):
            if not (self.is_command and self.filtered):
                return "ignore"
            step = -1 if key == KEY_UP else 1
            self.selected = (self.selected + step) % len(self.filtered)
            return "render"

        if key == KEY_TAB:
            picked = self.selection
            if picked is None:
                return "ignore"
            self.buffer = picked.name
            self._refilter()
            return "render"

        if key == KEY_ENTER:
            picked = self.selection
            if picked is not None:
                self.buffer = picked.name
            log.debug("submit %r (command=%s)", self.buffer, self.is_command)
            return "submit"

        if key == KEY_BACKSPACE:
            if not self.buffer:
                return "ignore"
            last = self.buffer[-1]
            self.buffer = self.buffer[:-1]
            if self.is_command:
                if not self.buffer.startswith(self.prefix):
                    self._to_word_mode()
                else:
                    self._refilter()
                return "render"
            self.pool.release(last)
            return "update"

        if key == KEY_ESCAPE:
            self.buffer = ""
            self.pool.reset()
            self._to_word_mode()
            return "update"

        if len(key) != 1:
            return "ignore"

        if self.is_command:
            self.buffer += key
            self._refilter()
            return "render"

        if key == self.prefix and not self.buffer:
            self.mode = "command"
            self.buffer = key
            self._refilter()
            return "render"

        if not (key.isascii() and key.isalpha()):
            return "ignore"
        if self.pool.try_consume(key) is None:
            return "ignore"
        self.buffer += key.upper()
        return "update"



#====================================
# Rendering
#====================================

class OverlayRenderer:
    """
    Draws the input line and the lines below it (palette or notice).

    Only relative cursor movement is used. Every overlay call first erases
    exactly the number of lines it is told were drawn before, and returns the
    number it leaves behind, so callers can keep the count exact.
    """
    def __init__(self, term: Terminal, prompt: str = PROMPT, stream=None):
        self.term = term
        self.prompt = prompt
        self.stream = stream if stream is not None else term.stream
        self.column = 0

    def _write(self, text: str):
        self.stream.write(text)
        self.stream.flush()

    def _back_to_input(self, lines: int) -> str:
        t = self.term
        return t.move_up(lines) + t.move_x(self.column)

    def _erase_below(self, lines: int) -> str:
        if lines <= 0:
            return ""
        t = self.term
        out = ""
        for _ in range(lines):
            out += t.move_down(1) + "\r" + t.clear_eol
        return out + self._back_to_input(lines)

    def _clip(self, line: str) -> str:
        # one entry must stay one physical row, or the line count drifts
        return self.term.truncate(line, max(1, self.term.width - 1))

    def render_input(self, buffer: str):
        t = self.term
        self.column = len(self.prompt) + len(buffer)
        self._write("\r" + t.clear_eol + t.bold_white(self.prompt) + buffer)

    def render_menu(self, entries: Sequence[CommandInfo], selected: int, previous_lines: int) -> int:
        t = self.term
        out = t.hide_cursor + self._erase_below(previous_lines)
        for i, cmd in enumerate(entries):
            name = f"  {cmd.name:<12}"
            if i == selected:
                line = t.on_color_rgb(0x33, 0x33, 0x33) + t.white + name + cmd.description + t.normal
            else:
                line = t.bright_black(name) + t.dim(cmd.description)
            out += "\r\n" + t.clear_eol + self._clip(line) + t.normal
        if entries:
            out += self._back_to_input(len(entries))
        self._write(out + t.normal_cursor)
        return len(entries)

    def render_notice(self, text: str, previous_lines: int) -> int:
        t = self.term
        out = self._erase_below(previous_lines)
        out += "\r\n" + t.clear_eol + self._clip(t.bright_black(text)) + self._back_to_input(1)
        self._write(out)
        return 1

    def clear_menu(self, line_count: int) -> int:
        if line_count > 0:
            self._write(self._erase_below(line_count))
        return 0

    def finish(self):
        self._write("\r\n")



#====================================
# Keystroke stream
#====================================

_keyboard_lock = threading.Lock()


class KeyReader:
    """
    Exclusive, scoped ownership of the terminal's keystroke stream.

    Entering puts the terminal in cbreak mode and routes SIGINT into the
    stream as KEY_CTRL_C; leaving restores both. Only one reader may be open
    per process.
    """
    def __init__(self, term: Terminal, cancel: Optional[threading.Event] = None, poll: float = 0.05):
        self.term = term
        self.cancel = cancel
        self.poll = poll
        self._stack: Optional[ExitStack] = None
        self._interrupts = 0

    def __enter__(self) -> 'KeyReader':
        if not _keyboard_lock.acquire(blocking=False):
            raise RuntimeError("another editor already owns the keyboard")
        stack = ExitStack()
        stack.callback(_keyboard_lock.release)
        try:
            stack.enter_context(self.term.cbreak())
            if threading.current_thread() is threading.main_thread():
                previous = signal.signal(signal.SIGINT, self._on_sigint)
                stack.callback(signal.signal, signal.SIGINT, previous)
        except BaseException:
            stack.close()
            raise
        self._stack = stack
        return self

    def __exit__(self, *exc):
        stack, self._stack = self._stack, None
        if stack is not None:
            stack.close()
        return False

    def _on_sigint(self, signum, frame):
        self._interrupts += 1

    def __iter__(self):
        while self.cancel is None or not self.cancel.is_set():
            if self._interrupts:
                self._interrupts -= 1
                yield KEY_CTRL_C
                continue
            key = self.term.inkey(timeout=self.poll)
            if key:
                yield normalize_key(key)



#====================================
# Session
#====================================

class InputSession:
    """
    Drives one editor: feeds it keys, calls `on_update` for word-mode
    changes and keeps the overlay line count in step with the screen.
    """
    def __init__(self, editor: InputEditor, renderer: OverlayRenderer, keys: Iterable[Optional[str]],
                 on_update: Optional[UpdateFn] = None, notice: Optional[str] = None,
                 cancel: Optional[threading.Event] = None):
        self.editor = editor
        self.renderer = renderer
        self.keys = keys
        self.on_update = on_update
        self.notice = notice
        self.cancel = cancel
        self.overlay_lines = 0

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def _redraw(self):
        ed, r = self.editor, self.renderer
        r.render_input(ed.buffer)
        self.overlay_lines = r.render_menu(ed.filtered, ed.selected, self.overlay_lines)

    def run(self) -> Optional[EditResult]:
        ed, r = self.editor, self.renderer
        r.render_input(ed.buffer)
        if self.notice:
            self.overlay_lines = r.render_notice(self.notice, self.overlay_lines)
            ed.notice_kind = "info"

        for key in self.keys:
            if self._cancelled():
                break
            kind = ed.handle_key(key)
            if kind == "ignore":
                continue
            if kind == "notice":
                self.overlay_lines = r.render_notice(CTRL_C_NOTICE, self.overlay_lines)
                continue
            if kind == "submit":
                self.overlay_lines = r.clear_menu(self.overlay_lines)
                r.finish()
                return ed.result()
            if kind == "update":
                # the callback may redraw the whole screen; nothing may be left below us
                self.overlay_lines = r.clear_menu(self.overlay_lines)
                if self.on_update:
                    self.on_update(ed.buffer, ed.consumed)
            self._redraw()

        self.overlay_lines = r.clear_menu(self.overlay_lines)
        log.debug("input session ended without submission")
        return None


def interactive_input(pool: Sequence[str], on_update: Optional[UpdateFn] = None,
                      commands: Sequence[CommandInfo] = (), term: Optional[Terminal] = None,
                      notice: Optional[str] = None, cancel: Optional[threading.Event] = None) -> Optional[EditResult]:
    '''
    Blocks until Enter and returns what was typed.
    Returns None only when `cancel` was set before that.
    '''
    term = term or Terminal(stream=sys.stdout)
    editor = InputEditor(pool, commands)
    renderer = OverlayRenderer(term)
    with KeyReader(term, cancel=cancel) as keys:
        return InputSession(editor, renderer, keys, on_update=on_update, notice=notice, cancel=cancel).run()
