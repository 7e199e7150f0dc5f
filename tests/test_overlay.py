from __future__ import annotations

import io
import signal
import threading
from contextlib import contextmanager

import pytest

import anagrama_input
from anagrama_input import (
    CTRL_C_NOTICE, KEY_BACKSPACE, KEY_CTRL_C, KEY_DOWN, KEY_ENTER, KEY_ESCAPE, KEY_TAB, PROMPT,
    CommandInfo, EditResult, InputEditor, InputSession, KeyReader, OverlayRenderer,
)


@pytest.fixture
def out():
    return io.StringIO()


@pytest.fixture
def renderer(term, out):
    return OverlayRenderer(term, stream=out)


def drain(screen, out):
    screen.feed(out.getvalue())
    out.seek(0)
    out.truncate()


# --- renderer ---

def test_render_input_redraws_whole_line(renderer, screen, out):
    renderer.render_input("CARTE")
    renderer.render_input("CAR")
    drain(screen, out)
    assert screen.line(0) == PROMPT + "CAR"
    assert screen.col == len(PROMPT) + 3


def test_render_menu_reports_lines_written(renderer, screen, out, commands):
    renderer.render_input("/")
    count = renderer.render_menu(commands, 0, 0)
    drain(screen, out)
    assert count == len(commands)
    below = screen.lines_below(0)
    assert len(below) == len(commands)
    assert below[0].split() == ["/help", "Show", "all", "commands"]
    assert below[-1].split()[0] == "/shuffle"
    # cursor is back at the end of the input
    assert (screen.row, screen.col) == (0, len(PROMPT) + 1)


def test_clear_menu_leaves_nothing_behind(renderer, screen, out, commands):
    renderer.render_input("/")
    count = renderer.render_menu(commands, 2, 0)
    assert renderer.clear_menu(count) == 0
    drain(screen, out)
    assert screen.lines_below(0) == []
    assert screen.row == 0
    assert screen.line(0) == PROMPT + "/"


def test_shrinking_menu_erases_stale_lines(renderer, screen, out, commands):
    renderer.render_input("/")
    count = renderer.render_menu(commands, 0, 0)
    renderer.render_input("/h")
    count = renderer.render_menu(commands[:2], 1, count)
    drain(screen, out)
    assert count == 2
    assert [line.split()[0] for line in screen.lines_below(0)] == ["/help", "/hint"]


def test_empty_menu_returns_zero(renderer, screen, out, commands):
    renderer.render_input("/")
    count = renderer.render_menu(commands, 0, 0)
    renderer.render_input("/zz")
    assert renderer.render_menu([], 0, count) == 0
    drain(screen, out)
    assert screen.lines_below(0) == []


def test_overlay_does_not_touch_lines_above(renderer, screen, out, commands):
    screen.feed("header\r\nsubheader\r\n")
    renderer.render_input("/")
    count = renderer.render_menu(commands, 0, 0)
    renderer.clear_menu(count)
    drain(screen, out)
    assert screen.line(0) == "header"
    assert screen.line(1) == "subheader"
    assert screen.line(2) == PROMPT + "/"
    assert screen.lines_below(2) == []


def test_notice_is_one_line(renderer, screen, out):
    renderer.render_input("CA")
    assert renderer.render_notice(CTRL_C_NOTICE, 0) == 1
    drain(screen, out)
    assert screen.lines_below(0) == [CTRL_C_NOTICE.rstrip()]
    assert screen.row == 0


def test_long_lines_are_clipped_to_one_row(renderer, screen, out, term, monkeypatch):
    monkeypatch.setattr(type(term), "width", property(lambda self: 40))
    entries = [CommandInfo("/reveal", "Reveal letters from the target word, one at a time"),
               CommandInfo("/help", "Show all commands")]
    renderer.render_input("/")
    count = renderer.render_menu(entries, 0, 0)
    drain(screen, out)
    below = screen.lines_below(0)
    assert count == len(below) == 2
    assert all(len(line) < 40 for line in below)
    assert below[0].startswith("  /reveal")
    assert (screen.row, screen.col) == (0, len(PROMPT) + 1)

    count = renderer.render_notice("  " + "a very long notice " * 5, count)
    drain(screen, out)
    below = screen.lines_below(0)
    assert count == len(below) == 1
    assert len(below[0]) < 40

    renderer.clear_menu(count)
    drain(screen, out)
    assert screen.lines_below(0) == []


# --- session ---

class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, buffer, consumed):
        self.calls.append((buffer, set(consumed)))


def run_session(renderer, keys, pool="CARTE", commands=(), **kw):
    editor = InputEditor(pool, commands)
    session = InputSession(editor, renderer, keys, **kw)
    return session, session.run()


def test_session_returns_word(renderer, screen, out):
    updates = Recorder()
    session, result = run_session(renderer, ["t", "r", "a", "z", "c", "e", KEY_ENTER], on_update=updates)
    assert result == EditResult("TRACE", False)
    assert [b for b, _ in updates.calls] == ["T", "TR", "TRA", "TRAC", "TRACE"]
    assert updates.calls[-1][1] == {0, 1, 2, 3, 4}
    drain(screen, out)
    assert screen.line(0) == PROMPT + "TRACE"


def test_session_command_leaves_no_overlay(renderer, screen, out, commands):
    updates = Recorder()
    session, result = run_session(renderer, ["/", "h", KEY_DOWN, KEY_ENTER], commands=commands, on_update=updates)
    assert result == EditResult("/hint", True)
    assert updates.calls == []
    assert session.overlay_lines == 0
    drain(screen, out)
    assert screen.lines_below(0) == []


def test_overlay_count_tracks_screen(renderer, screen, out, commands):
    editor = InputEditor("CARTE", commands)
    seen = []

    def keys():
        for key in ["/", "s", KEY_BACKSPACE, "h", KEY_TAB, KEY_BACKSPACE, KEY_BACKSPACE,
                    KEY_BACKSPACE, KEY_BACKSPACE, KEY_BACKSPACE, "C"]:
            yield key
            drain(screen, out)
            seen.append((session.overlay_lines, len(screen.lines_below(0))))
        yield KEY_ENTER

    session = InputSession(editor, renderer, keys())
    session.run()
    # compare after each key was fully handled (the next key pull happens after the redraw)
    for drawn, on_screen in seen[1:]:
        assert drawn == on_screen


def test_escape_calls_update_and_clears_menu(renderer, screen, out, commands):
    updates = Recorder()
    session, result = run_session(renderer, ["C", "/", KEY_ESCAPE, "/", "q", KEY_ESCAPE, KEY_ENTER],
                                  commands=commands, on_update=updates)
    assert result == EditResult("", False)
    assert updates.calls == [("C", {0}), ("", set()), ("", set())]
    drain(screen, out)
    assert screen.lines_below(0) == []


def test_ctrl_c_notice_then_dismissed(renderer, screen, out):
    editor = InputEditor("CARTE")
    states = []

    def keys():
        yield KEY_CTRL_C
        drain(screen, out)
        states.append(screen.lines_below(0))
        yield KEY_CTRL_C
        yield "Z"
        drain(screen, out)
        states.append(screen.lines_below(0))
        yield KEY_ENTER

    session = InputSession(editor, renderer, keys())
    assert session.run() == EditResult("", False)
    assert states == [[CTRL_C_NOTICE.rstrip()], []]


def test_initial_notice_goes_away_on_first_key(renderer, screen, out):
    editor = InputEditor("CARTE")
    states = []

    def keys():
        drain(screen, out)
        states.append(screen.lines_below(0))
        yield "C"
        drain(screen, out)
        states.append(screen.lines_below(0))
        yield KEY_ENTER

    InputSession(editor, renderer, keys(), notice="  Letters shuffled!").run()
    assert states == [["  Letters shuffled!"], []]


def test_ctrl_c_replaces_game_notice(renderer, screen, out):
    editor = InputEditor("CARTE")
    states = []

    def keys():
        yield KEY_CTRL_C
        drain(screen, out)
        states.append(screen.lines_below(0))
        yield KEY_ENTER

    InputSession(editor, renderer, keys(), notice="  Letters shuffled!").run()
    assert states == [[CTRL_C_NOTICE.rstrip()]]


def test_cancel_between_keys(renderer, screen, out, commands):
    cancel = threading.Event()
    editor = InputEditor("CARTE", commands)

    def keys():
        yield "/"
        cancel.set()
        yield "h"
        yield KEY_ENTER

    session = InputSession(editor, renderer, keys(), cancel=cancel)
    assert session.run() is None
    assert editor.buffer == "/"
    drain(screen, out)
    assert screen.lines_below(0) == []


# --- key reader ---

class FakeTerm:
    def __init__(self, keys=(), cancel=None):
        self.keys = list(keys)
        self.cancel = cancel
        self.modes = []

    @contextmanager
    def cbreak(self):
        self.modes.append("enter")
        try:
            yield
        finally:
            self.modes.append("exit")

    def inkey(self, timeout=None):
        if self.keys:
            return self.keys.pop(0)
        if self.cancel is not None:
            self.cancel.set()
        return ""


def test_key_reader_normalizes_and_stops_on_cancel():
    cancel = threading.Event()
    term = FakeTerm(["a", "\r", "\x1b[C", "/"], cancel)
    with KeyReader(term, cancel=cancel, poll=0) as reader:
        assert list(reader) == ["a", KEY_ENTER, None, "/"]
    assert term.modes == ["enter", "exit"]


def test_key_reader_turns_sigint_into_ctrl_c():
    cancel = threading.Event()
    term = FakeTerm(["x"], cancel)
    with KeyReader(term, cancel=cancel, poll=0) as reader:
        assert signal.getsignal(signal.SIGINT) == reader._on_sigint
        reader._on_sigint(signal.SIGINT, None)
        assert list(reader) == [KEY_CTRL_C, "x"]
    assert signal.getsignal(signal.SIGINT) != reader._on_sigint


def test_only_one_reader_at_a_time():
    term = FakeTerm()
    with KeyReader(term):
        with pytest.raises(RuntimeError):
            with KeyReader(FakeTerm()):
                pass
    # released, so a new one may open
    with KeyReader(term):
        pass


def test_reader_released_when_session_raises(term):
    fake = FakeTerm(["a"])

    def boom(buffer, consumed):
        raise ValueError("redraw failed")

    with pytest.raises(ValueError):
        with KeyReader(fake, poll=0) as keys:
            InputSession(InputEditor("ABC"), OverlayRenderer(term, stream=io.StringIO()), keys, on_update=boom).run()
    assert fake.modes == ["enter", "exit"]
    assert not anagrama_input._keyboard_lock.locked()
