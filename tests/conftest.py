from __future__ import annotations

import io
import re

import keyring
import pytest
from blessed import Terminal
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError
from rich.console import Console

import anagrama
from anagrama_input import CommandInfo


COMMANDS = [
    CommandInfo("/help", "Show all commands"),
    CommandInfo("/hint", "Get a hint"),
    CommandInfo("/exit", "Return to menu"),
    CommandInfo("/quit", "Exit the app"),
    CommandInfo("/shuffle", "Shuffle the letters"),
]


_TOKEN = re.compile(r"\x1b\[([0-9;?]*)([A-Za-z])|\x1b[()][0-9A-Za-z]|\x1b[78]|\r|\n|.", re.S)


class Screen:
    """
    Just enough of a VT100 to follow what the renderer writes: relative
    cursor moves, column moves, line erases and plain text. Styling is
    dropped. Scrollback is unbounded, so "\\n" never loses rows.
    """
    def __init__(self):
        self.rows = [[]]
        self.row = 0
        self.col = 0

    def _ensure(self):
        while len(self.rows) <= self.row:
            self.rows.append([])

    def feed(self, data: str):
        for m in _TOKEN.finditer(data):
            tok = m.group(0)
            if m.group(2):
                self._csi(m.group(1), m.group(2))
            elif tok == "\r":
                self.col = 0
            elif tok == "\n":
                self.row += 1
                self._ensure()
            elif tok.startswith("\x1b"):
                continue
            else:
                self._put(tok)

    def _csi(self, params: str, final: str):
        if params.startswith("?"):
            return
        first = params.split(";")[0]
        n = int(first) if first else None
        if final == "A":
            self.row = max(0, self.row - (n or 1))
        elif final == "B":
            self.row += n or 1
            self._ensure()
        elif final == "C":
            self.col += n or 1
        elif final == "D":
            self.col = max(0, self.col - (n or 1))
        elif final == "G":
            self.col = (n or 1) - 1
        elif final == "K":
            line = self.rows[self.row]
            if not n:
                del line[self.col:]
            elif n == 1:
                line[:self.col] = [" "] * min(self.col, len(line))
            else:
                line.clear()

    def _put(self, ch: str):
        line = self.rows[self.row]
        while len(line) < self.col:
            line.append(" ")
        if self.col < len(line):
            line[self.col] = ch
        else:
            line.append(ch)
        self.col += 1

    def line(self, row: int) -> str:
        return "".join(self.rows[row]).rstrip() if row < len(self.rows) else ""

    def lines_below(self, row: int) -> list:
        """Non-blank lines after `row`."""
        return [self.line(i) for i in range(row + 1, len(self.rows)) if self.line(i)]


@pytest.fixture
def term():
    return Terminal(kind="xterm-256color", stream=io.StringIO(), force_styling=True)


@pytest.fixture
def screen():
    return Screen()


@pytest.fixture
def commands():
    return list(COMMANDS)


@pytest.fixture
def quiet_console(monkeypatch):
    out = io.StringIO()
    monkeypatch.setattr(anagrama, "console", Console(file=out, width=100, color_system=None))
    return out


@pytest.fixture
def registry():
    """Lets a test register commands without leaking them into other tests."""
    saved = dict(anagrama._commands), dict(anagrama._aliases)
    yield anagrama._commands
    anagrama._commands.clear()
    anagrama._commands.update(saved[0])
    anagrama._aliases.clear()
    anagrama._aliases.update(saved[1])


class MemoryKeyring(KeyringBackend):
    priority = 1

    def __init__(self):
        super().__init__()
        self.passwords = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        if self.passwords.pop((service, username), None) is None:
            raise PasswordDeleteError(username)


@pytest.fixture(autouse=True)
def keychain():
    """Every test gets an empty keychain of its own, never the real one."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    path = tmp_path / "cli.json"
    monkeypatch.setattr(anagrama, "CONFIG_PATH", path)
    return path
