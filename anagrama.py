
import os
import sys

os.environ.setdefault('ESCDELAY', '25')  # reduce escape key delay (ms)

sys.modules['anagrama'] = sys.modules[__name__]  # so plugins can `import anagrama`

from blessed import Terminal
from rich import box
from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
import questionary
import keyring
from keyring.errors import KeyringError
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from typing import get_origin, get_args
from collections import namedtuple
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
import argparse
import functools
import glob
import inspect
import itertools
import json
import logging
import random
import signal
import threading
import time
import urllib.error
import urllib.request
import webbrowser

from anagrama_input import CommandInfo, EditResult, interactive_input


__version__ = "0.1.0"

DEFAULT_SITE_URL = os.environ.get("ANAGRAMA_URL", "https://playanagrama.com")
DEFAULT_API_URL = os.environ.get("ANAGRAMA_API_URL", "https://api.playanagrama.com")
CONFIG_DIR = Path(os.environ.get("ANAGRAMA_HOME") or Path.home() / ".anagrama")
CONFIG_PATH = CONFIG_DIR / "cli.json"
LOG_PATH = CONFIG_DIR / "cli.log"
PLUGIN_DIRS = [os.path.join(os.path.dirname(os.path.abspath(__file__)), "_anagrama"), str(CONFIG_DIR / "plugins")]

KEYCHAIN_SERVICE = "anagrama-cli"
KEYCHAIN_ACCOUNT = "auth-token"

MAX_LIVES = 5
ACCENT = "#F5A623"
FRAME = "#CC6B3D"

log = logging.getLogger("anagrama")

console = Console(highlight=False)


def setup_logging(debug: bool = False):
    '''
    The terminal belongs to the game, so logs only ever go to a file.
    '''
    level = logging.DEBUG if debug or os.environ.get("ANAGRAMA_DEBUG") in ("1", "true") else logging.INFO
    try:
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(LOG_PATH, encoding="utf-8")
    except OSError:
        handler = logging.NullHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)



#====================================
# Config
#====================================

@dataclass
class Config:
    base_url: Optional[str] = None  # site, for browser links
    api_url: Optional[str] = None
    token: Optional[str] = None
    user: dict = field(default_factory=dict)
    updated_at: Optional[str] = None
    minimal: bool = False

    @property
    def display_name(self) -> str:
        return self.user.get("displayName") or self.user.get("username") or "Player"

    @property
    def site(self) -> str:
        return normalize_base_url(self.base_url or DEFAULT_SITE_URL)

    @property
    def api(self) -> str:
        return normalize_base_url(self.api_url or DEFAULT_API_URL)

    def to_json(self) -> dict:
        out = {"baseUrl": self.base_url, "apiUrl": self.api_url, "token": self.token,
               "user": self.user or None, "updatedAt": self.updated_at, "minimal": self.minimal}
        return {k: v for k, v in out.items() if v is not None}

    @classmethod
    def from_json(cls, data: dict) -> 'Config':
        user = data.get("user")
        return cls(
            base_url=data.get("baseUrl"),
            api_url=data.get("apiUrl"),
            token=data.get("token"),
            user=user if isinstance(user, dict) else {},
            updated_at=data.get("updatedAt"),
            minimal=bool(data.get("minimal", False)),
        )


def normalize_base_url(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


def get_secure_token() -> Optional[str]:
    try:
        return keyring.get_password(KEYCHAIN_SERVICE, KEYCHAIN_ACCOUNT)
    except KeyringError as e:
        log.debug("keychain read failed: %s", e)
        return None


def set_secure_token(token: str) -> bool:
    try:
        keyring.set_password(KEYCHAIN_SERVICE, KEYCHAIN_ACCOUNT, token)
    except KeyringError as e:
        log.warning("keychain unavailable, keeping token in %s: %s", CONFIG_PATH, e)
        return False
    return True


def delete_secure_token():
    try:
        keyring.delete_password(KEYCHAIN_SERVICE, KEYCHAIN_ACCOUNT)
    except KeyringError as e:
        log.debug("keychain delete skipped: %s", e)


def _read_config_file(path: Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        log.warning("ignoring unreadable config %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def _write_config_file(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.chmod(path, 0o600)  # may hold the token when there is no keychain


def read_config(path: Optional[Path] = None) -> Config:
    '''
    Settings come from cli.json, the token from the OS keychain. A token
    left in the file (no keychain backend) is used when the keychain has none.
    '''
    config = Config.from_json(_read_config_file(Path(path or CONFIG_PATH)))
    config.token = get_secure_token() or config.token
    return config


def write_config(config: Config, path: Optional[Path] = None):
    data = config.to_json()
    if config.token and set_secure_token(config.token):
        del data["token"]
    _write_config_file(Path(path or CONFIG_PATH), data)


def migrate_token_to_keychain(path: Optional[Path] = None) -> bool:
    '''
    Moves a plaintext token written by an older client into the keychain.
    '''
    path = Path(path or CONFIG_PATH)
    data = _read_config_file(path)
    token = data.get("token")
    if not token or not set_secure_token(token):
        return False
    del data["token"]
    _write_config_file(path, data)
    log.info("moved token from %s to the keychain", path)
    console.print("✓ Migrated credentials to secure storage", style="green")
    return True



#====================================
# Commands & overridable hooks
#====================================

ArgSpec = namedtuple("ArgSpec", "name annotation default")

_commands: Dict[str, Tuple[Callable, list, str]] = {}  # name -> (fn, arg spec, description)
_aliases: Dict[str, str] = {}


def command(fn=None, *, name: Optional[str] = None, aliases: Tuple[str, ...] = ()):
    '''
    used like:

    @anagrama.command
    def reveal(game: anagrama.Game, count: int): pass

    now `/reveal 2` is a valid command during play.
    The first parameter always receives the running Game;
    the first docstring line is what the command palette shows.
    '''
    def register(fn):
        cmd_name = name or fn.__name__
        if cmd_name in _commands or cmd_name in _aliases:
            raise RuntimeError(f"command '/{cmd_name}' already registered")
        params = list(inspect.signature(fn).parameters.values())[1:]  # skip game
        spec = [ArgSpec(p.name, p.annotation, None if p.default is inspect.Parameter.empty else p.default)
                for p in params]
        description = (fn.__doc__ or "").strip().split("\n")[0]
        _commands[cmd_name] = (fn, spec, description)
        for alias in aliases:
            _aliases[alias] = cmd_name
        return fn
    return register(fn) if fn is not None else register


def command_infos() -> List[CommandInfo]:
    return [CommandInfo("/" + name, desc) for name, (_, _, desc) in _commands.items()]


TRUE_WORDS = ("on", "true", "1", "yes")
FALSE_WORDS = ("off", "false", "0", "no")


def parse_switch(word: str) -> bool:
    word = word.lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise ValueError(f"expected on/off, got {word!r}")


def _coerce_arg(word: str, annotation):
    """One typed word of a `/command` line, as the parameter's annotation asks."""
    if get_origin(annotation) is Union:
        members = [t for t in get_args(annotation) if t is not type(None)]
        annotation = members[0] if len(members) == 1 else str
    if annotation is bool:
        return parse_switch(word)
    if annotation in (str, inspect.Parameter.empty):
        return word
    return annotation(word)


def dispatch_command(text: str, game: 'Game') -> bool:
    '''
    Runs `/name args...`. Returns False when no such command exists.
    Missing trailing arguments get the parameter's default, or None.
    '''
    if not text.startswith("/"): return False
    parts = text[1:].split()
    if not parts: return False

    name, words = parts[0], parts[1:]
    name = _aliases.get(name, name)
    if name not in _commands: return False

    fn, spec, _ = _commands[name]
    parsed = []
    for arg, word in itertools.zip_longest(spec, words[:len(spec)]):
        if word is None:
            parsed.append(arg.default)
            continue
        try:
            parsed.append(_coerce_arg(word, arg.annotation))
        except ValueError:
            game.notice = f"  /{name}: bad value for {arg.name}: {word}"
            return True
    log.info("command /%s %s", name, " ".join(words))
    fn(game, *parsed)
    return True



# backend hooks a plugin may replace: name -> built-in implementation
BACKEND_HOOKS: Dict[str, Callable] = {}
OVERRIDES: Dict[str, Callable] = {}

def overridable(fn):
    name = fn.__name__
    BACKEND_HOOKS[name] = OVERRIDES[name] = fn
    @functools.wraps(fn)
    def call_hook(*a, **ka):
        return OVERRIDES[name](*a, **ka)
    return call_hook

def override(fn):
    '''
    @anagrama.override
    def submit_guess(config, guess): ...

    Swaps in a replacement for one backend hook. Each hook can be
    replaced once, and the replacement must take the same arguments.
    '''
    name = fn.__name__
    builtin = BACKEND_HOOKS.get(name)
    if builtin is None:
        raise RuntimeError(f"'{name}' is not a backend hook (one of: {', '.join(BACKEND_HOOKS)})")
    if OVERRIDES[name] is not builtin:
        raise RuntimeError(f"'{name}' already overridden")
    arity = len(inspect.signature(builtin).parameters)
    try:
        inspect.signature(fn).bind(*range(arity))
    except TypeError:
        raise TypeError(f"override of '{name}' must accept {arity} positional argument(s)") from None
    log.info("backend hook %s replaced by %s", name, fn.__module__)
    OVERRIDES[name] = fn
    return fn



#====================================
# Backend
#====================================

@dataclass
class ApiResponse:
    status: int
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status == 0 or self.status >= 400 or bool(self.data.get("error"))


def api_request(method: str, base_url: str, path: str, body: Any = None,
                token: Optional[str] = None, timeout: float = 15.0) -> ApiResponse:
    '''
    JSON in, JSON out. Never raises for HTTP or network failures:
    a connection error comes back as status 0 with an `error` message.
    '''
    headers = {"accept": "application/json"}
    payload = None
    if body is not None:
        payload = json.dumps(body).encode("utf-8")
        headers["content-type"] = "application/json"
    if token:
        headers["authorization"] = f"Bearer {token}"

    req = urllib.request.Request(f"{base_url}{path}", data=payload, headers=headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            status, raw = resp.status, resp.read()
    except urllib.error.HTTPError as e:
        status, raw = e.code, e.read()
    except OSError as e:
        log.warning("%s %s failed: %s", method, path, e)
        return ApiResponse(0, {"error": f"Could not reach {base_url} ({e})"})

    try:
        data = json.loads(raw.decode("utf-8")) if raw else {}
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    log.debug("%s %s -> %s", method, path, status)
    return ApiResponse(status, data)


def api_get(base_url: str, path: str, token: Optional[str] = None) -> ApiResponse:
    return api_request("GET", base_url, path, token=token)


def api_post(base_url: str, path: str, body: Any, token: Optional[str] = None) -> ApiResponse:
    return api_request("POST", base_url, path, body=body, token=token)


@overridable
def load_puzzle(config: Config) -> ApiResponse:
    """Today's puzzle, including the player's session so far."""
    return api_get(config.api, "/anagrama/api/puzzle", config.token)


@overridable
def submit_guess(config: Config, guess: str) -> ApiResponse:
    return api_post(config.api, "/anagrama/api/guess", {"guess": guess}, config.token)


@overridable
def request_hint(config: Config) -> ApiResponse:
    return api_post(config.api, "/anagrama/api/hint", {}, config.token)



#====================================
# Screens
#====================================

WELCOME_MESSAGES = [
    "Welcome back, {name}! Ready to unscramble some letters?",
    "{name} has entered the game! Time to make words happen.",
    "The letters tremble in fear... {name} is here!",
    "{name}! Your daily dose of word chaos awaits.",
    "Ah, {name}! The alphabet's favorite rearranger.",
    "{name} logged in! Let's turn scrambled eggs into words.",
    "Welcome, {name}! May your anagrams be ever solvable.",
    "{name}! Ready to give those letters a new identity?",
]

MARK_STYLES = {"correct": "black on green", "present": "black on yellow", "absent": "white on grey42"}


def random_welcome(name: str) -> str:
    return random.choice(WELCOME_MESSAGES).format(name=name)


def format_date_long(date_key: str) -> str:
    try:
        d = date.fromisoformat(date_key)
    except ValueError:
        return date_key
    return f"{d:%A, %B} {d.day}, {d.year}"


def render_marks(guess: str, marks: Optional[List[str]]) -> Text:
    out = Text()
    for i, ch in enumerate(guess.upper()):
        mark = marks[i] if marks and i < len(marks) else None
        out.append(f" {ch} ", style=MARK_STYLES.get(mark, ""))
    return out


def letter_tile(ch: str, used: bool) -> Text:
    if used:
        return Text(f" {ch.upper()} ", style="#666666 on #444444")
    return Text(f" {ch.upper()} ", style="bold #333333 on #E5E5E5")


def lives_text(lives_left: int) -> Text:
    out = Text("●" * lives_left, style=ACCENT)
    out.append("○" * max(0, MAX_LIVES - lives_left), style="grey50")
    return out


def print_homescreen(config: Config, minimal: bool = False):
    logged_in = bool(config.token)
    if minimal:
        console.print()
        console.print(f"  Anagrama CLI v{__version__}", style=f"bold {ACCENT}")
        if logged_in:
            console.print(Text.assemble(("  Welcome back, ", "grey50"), (config.display_name, "white"), ("!", "grey50")))
        console.print()
        return

    mascot = Text("   ╭───╮\n   │ A │\n   ╰───╯\n╭───╮ ╭───╮\n│ N │ │ A │\n╰───╯ ╰───╯", style=ACCENT)
    welcome = f"Welcome back, {config.display_name}!" if logged_in else "Welcome to Anagrama!"
    left = Group(Text(welcome, style="bold white"), Text(""), mascot, Text(""), Text(config.site, style="grey50"))

    tip = "Type /help during play for commands" if logged_in else "Log in to save your progress"
    right = Group(
        Text("Tips for getting started", style=ACCENT),
        Text(tip, style="white"),
        Text("─" * 36, style="grey50"),
        Text("How to play", style=ACCENT),
        Text("Find the target word from scrambled\nletters. You have 5 lives!", style="white"),
        Text(""),
        Text("/shuffle  Rearrange letters\n/help     Show all commands", style="grey50"),
    )
    grid = Table.grid(padding=(0, 2))
    grid.add_column(min_width=26)
    grid.add_column()
    grid.add_row(left, right)

    console.print()
    console.print(Panel(grid, title=f"Anagrama CLI v{__version__}", title_align="left",
                        border_style=FRAME, box=box.ROUNDED, width=76))
    console.print()


def print_commands():
    console.print()
    console.print("  Commands:", style=f"bold {ACCENT}")
    for info in command_infos():
        console.print(Text.assemble((f"  {info.name:<10}", "grey50"), (info.description, "white")))
    console.print()



#====================================
# Game
#====================================

@dataclass
class Guess:
    word: str
    marks: List[str]


@dataclass
class Game:
    config: Config
    date_key: str
    scramble: str
    target_length: int = 5
    attempts: int = 0
    alt_found: int = 0
    history: List[Guess] = field(default_factory=list)
    minimal: bool = False
    done: bool = False
    win: bool = False
    running: bool = True
    notice: Optional[str] = None  # one-shot line shown under the next prompt
    term: Optional[Terminal] = None

    @property
    def lives_left(self) -> int:
        return max(0, MAX_LIVES - self.attempts)

    @property
    def pool(self) -> List[str]:
        return list(self.scramble.upper())

    @classmethod
    def from_puzzle(cls, config: Config, data: dict, minimal: bool = False, term: Optional[Terminal] = None) -> 'Game':
        session = data.get("session") or {}
        game = cls(
            config=config,
            date_key=data.get("dateKey") or datetime.now(timezone.utc).date().isoformat(),
            scramble=data.get("scramble") or data.get("letters") or "",
            target_length=data.get("length") or 5,
            attempts=session.get("attempts") or 0,
            minimal=minimal,
            done=bool(session.get("done")),
            win=bool(session.get("win")),
            term=term,
        )
        for g in session.get("guesses") or []:
            game.history.append(Guess(g.get("word", ""), g.get("marks") or []))
            if g.get("isAlt"):
                game.alt_found += 1
        return game


def print_game_header(game: Game, used=frozenset(), current: str = ""):
    letters = game.scramble.upper()
    if game.minimal:
        console.print()
        console.print(Text.assemble((f"  {game.date_key} • Lives: ", "grey50"), lives_text(game.lives_left)))
        console.print(f"  {' '.join(letters)}", style=f"bold {ACCENT}")
        console.print()
        return

    console.print()
    console.print(Panel(Text("Anagrama", justify="center", style="bold white"),
                        box=box.DOUBLE, border_style=f"bold {ACCENT}", width=60))
    console.print()
    console.print(Text.assemble(("  Find the target word. Puzzle for ", "grey50"),
                                (format_date_long(game.date_key), "white"), (" (ET)", "grey50")))
    console.print()
    console.print(Text.assemble(("  Lives ", "grey50"), lives_text(game.lives_left),
                                ("                    Alt anagrams found: ", "grey50"), (str(game.alt_found), ACCENT)))
    console.print()
    console.print("  " + "─" * 57, style="grey50")
    console.print()

    console.print("  Find the target word:", style="grey50")
    console.print()
    typed = current.upper()
    mid = Text("    ")
    for i in range(game.target_length):
        mid.append("│", style="white")
        if i < len(typed):
            mid.append(f" {typed[i]} ", style=f"bold {ACCENT}")
        else:
            mid.append(" ? ", style="grey50")
        mid.append("│ ", style="white")
    console.print("    " + " ".join(["┌───┐"] * game.target_length), style="white")
    console.print(mid)
    console.print("    " + " ".join(["└───┘"] * game.target_length), style="white")
    console.print()

    console.print("  Available letters:", style="grey50")
    console.print()
    for start, stop, indent in ((0, 6, "      "), (6, None, "        ")):
        row = Text(indent)
        chunk = letters[start:stop]
        if not chunk:
            continue
        for i, ch in enumerate(chunk):
            if i:
                row.append("  ")
            row.append_text(letter_tile(ch, (start + i) in used))
        console.print(row)
    console.print()
    console.print("  " + "─" * 57, style="grey50")


def render_game(game: Game, clear: bool = True, used=frozenset(), current: str = ""):
    if clear:
        console.clear()
    print_game_header(game, used, current)
    if game.history:
        if not game.minimal:
            console.print("  Previous guesses:", style="grey50")
        for g in game.history:
            console.print(Text("    ").append_text(render_marks(g.word, g.marks)))
        console.print()
    if not game.minimal:
        console.print("    / for shortcuts", style="grey50")
    console.print()


def show_finished(game: Game):
    console.clear()
    console.print()
    title = "Already Solved!" if game.win else "Puzzle Complete"
    console.print(Panel(Text(title, justify="center", style="bold white"),
                        box=box.DOUBLE, border_style=f"bold {ACCENT}", width=60))
    console.print()
    if game.win:
        plural = "attempt" if game.attempts == 1 else "attempts"
        console.print("  🎉 You already solved today's puzzle!", style="bold green")
        console.print(f"     {format_date_long(game.date_key)}", style="grey50")
        console.print()
        console.print(f"     Solved in {game.attempts} {plural}", style="grey50")
    else:
        console.print("  You've already attempted today's puzzle.", style="yellow")
        console.print(f"     {format_date_long(game.date_key)}", style="grey50")
        console.print()
        console.print(f"     Used all {MAX_LIVES} lives", style="grey50")
    console.print()
    console.print("  Come back tomorrow for a new puzzle!", style="grey50")
    console.print()


def wait_for_key(term: Optional[Terminal]):
    term = term or Terminal()
    with term.cbreak():
        term.inkey()


def handle_guess(game: Game, answer: str):
    result = submit_guess(game.config, answer)
    if result.status == 0 or result.status >= 500:
        render_game(game)
        console.print("  Server error." if result.status else f"  {result.data.get('error')}", style="red")
        log.error("guess %r failed with status %s", answer, result.status)
        game.running = False
        return

    data = result.data
    marks = data.get("marks") or []
    accepted = bool(data.get("accepted"))
    is_target = bool(data.get("isTarget"))
    is_alt = bool(data.get("isAltAnagram"))

    if is_alt or (accepted and not is_target):
        game.alt_found += 1
    if marks:
        game.history.append(Guess(answer, marks))
    # alternate anagrams are free
    if not accepted and not is_alt:
        attempts = data.get("attempts")
        game.attempts = attempts if attempts is not None else game.attempts + 1
    if data.get("done") is not None:
        game.done = bool(data["done"])
    game.win = game.win or is_target

    render_game(game)
    if marks:
        console.print(Text("    ").append_text(render_marks(answer, marks)))

    msg = data.get("message")
    if msg and not is_target:
        if is_alt or accepted:
            console.print(f"    ✓ {msg}", style="cyan")
        elif "Not" in msg or "Invalid" in msg:
            console.print(f"    ✗ {msg}", style="red")
        else:
            console.print(f"    {msg}", style="yellow")

    if not accepted and not is_alt and not game.done:
        console.print(Text.assemble(("    Lives: ", "grey50"), lives_text(game.lives_left)))
    console.print()

    if game.done:
        if is_target:
            console.print("  🎉 You found it!", style="bold green")
            console.print(Text.assemble(("     The word was: ", "grey50"), (answer.upper(), "bold white")))
        else:
            console.print("  Game over. Better luck next time!", style="yellow")
        console.print()


def play(config: Config, minimal: bool = False, term: Optional[Terminal] = None):
    if not config.token:
        console.print("You need to log in first.")
        return

    with console.status("Loading today's puzzle...", spinner="dots"):
        puzzle = load_puzzle(config)
    if puzzle.failed:
        console.print("Failed to load puzzle.", style="red")
        if puzzle.data.get("error"):
            console.print(puzzle.data["error"])
        return

    game = Game.from_puzzle(config, puzzle.data, minimal=minimal or config.minimal, term=term or Terminal())
    log.info("puzzle %s loaded (%d letters, %d attempts used)", game.date_key, len(game.scramble), game.attempts)
    if game.done:
        show_finished(game)
        return

    render_game(game)
    while game.running and not game.done:
        notice, game.notice = game.notice, None
        result: Optional[EditResult] = interactive_input(
            game.pool,
            on_update=lambda buf, used: render_game(game, used=used, current=buf),
            commands=command_infos(),
            term=game.term,
            notice=notice,
        )
        if result is None:
            break
        answer = result.buffer.lower()
        if not answer:
            continue
        if result.is_command or answer.startswith("/"):
            if not dispatch_command(answer, game):
                render_game(game)
                game.notice = f"  Unknown command: {answer.split()[0]}. Type /help for commands."
            continue
        handle_guess(game, answer)



#====================================
# Built-in commands
#====================================

@command(name="help", aliases=("h",))
def help_command(game: Game):
    """Show all commands"""
    render_game(game)
    print_commands()
    console.print("    Press any key to continue...", style="grey50")
    wait_for_key(game.term)
    render_game(game)


@command(name="hint")
def hint_command(game: Game):
    """Get a hint"""
    result = request_hint(game.config)
    render_game(game)
    data = result.data
    if result.failed:
        console.print(f"  {data.get('error') or data.get('message') or 'No hints available'}", style="yellow")
    elif data.get("letter") and data.get("position") is not None:
        console.print(f"  💡 Hint: Position {data['position'] + 1} is \"{data['letter'].upper()}\"", style="cyan")
    elif data.get("hint"):
        console.print(f"  💡 {data['hint']}", style="cyan")
    elif data.get("message"):
        console.print(f"  {data['message']}", style="yellow")
    console.print()


@command(name="exit", aliases=("back", "menu"))
def exit_command(game: Game):
    """Return to menu"""
    console.print("  Returning to menu...", style="grey50")
    game.running = False


@command(name="quit", aliases=("q",))
def quit_command(game: Game):
    """Exit the app"""
    console.print("  Goodbye!", style="grey50")
    raise SystemExit(0)


@command(name="shuffle", aliases=("s",))
def shuffle_command(game: Game):
    """Shuffle the letters"""
    letters = list(game.scramble)
    random.shuffle(letters)
    game.scramble = "".join(letters)
    render_game(game)
    game.notice = "  Letters shuffled!"



#====================================
# Account
#====================================

def login(site_url: str, api_url: str, open_browser: bool = True, label: Optional[str] = None,
          sleep: Callable[[float], None] = time.sleep) -> Optional[Config]:
    config = read_config()
    start = api_post(api_url, "/cli/auth/start", {"label": label or "terminal", "clientName": "anagrama-cli"})
    data = start.data
    if start.status >= 400 or start.status == 0 or not data.get("device_code") or not data.get("verification_url"):
        console.print("Failed to start login.", style="red")
        if data.get("error"):
            console.print(data["error"])
        return None

    device_code = data["device_code"]
    user_code = data.get("user_code") or ""
    verification_url = data["verification_url"]
    interval = max(1, data.get("interval") or 3)
    expires_in = max(60, data.get("expires_in") or 900)

    console.print()
    console.print(Panel(Text("Link Your Account", justify="center", style="bold"), border_style="bold cyan", width=45))
    console.print()
    if user_code:
        console.print("  Your code:", style="grey50")
        console.print(Panel(Text(user_code, justify="center", style="bold white"),
                            box=box.DOUBLE, border_style="bold yellow", width=21))
    console.print(Text.assemble(("  Option 1: ", "grey50"), ("Auto-open browser (recommended)", "white")))
    console.print(f"  {verification_url}", style="blue")
    console.print()
    console.print(Text.assemble(("  Option 2: ", "grey50"), ("Enter code manually at:", "white")))
    console.print(f"  {site_url}/cli-auth?manual=true", style="blue")
    console.print()

    if open_browser:
        if webbrowser.open(verification_url):
            console.print("  ✓ Browser opened automatically", style="green")
        else:
            console.print("  (Could not open browser - use manual option)", style="yellow")
    console.print()

    deadline = time.monotonic() + expires_in
    with console.status("Waiting for browser authorization...", spinner="dots"):
        while time.monotonic() < deadline:
            poll = api_post(api_url, "/cli/auth/poll", {"device_code": device_code})
            log.debug("auth poll: %s %s", poll.status, poll.data.get("status"))
            if poll.status == 202 or poll.data.get("status") == "pending":
                sleep(interval)
                continue
            break
        else:
            poll = None

    if poll is None:
        console.print("Login timed out.", style="red")
        return None
    if not poll.data.get("token"):
        console.print("Login failed.", style="red")
        console.print(f"Status: {poll.status}", style="yellow")
        console.print(f"Response: {json.dumps(poll.data)}", style="yellow")
        if poll.data.get("error"):
            console.print(f"Error: {poll.data['error']}", style="red")
        log.warning("login failed with status %s", poll.status)
        return None

    config.base_url = site_url
    config.api_url = api_url
    config.token = poll.data["token"]
    config.user = poll.data.get("user") or {}
    config.updated_at = datetime.now(timezone.utc).isoformat()
    write_config(config)
    log.info("logged in as %s", config.display_name)
    return config


def logout():
    delete_secure_token()
    write_config(Config())
    console.print("Logged out. See you next time!", style="green")


def whoami(config: Config):
    if not config.token:
        console.print("Not logged in.")
        return
    last_login = "—"
    if config.updated_at:
        try:
            last_login = datetime.fromisoformat(config.updated_at).astimezone().strftime("%Y-%m-%d %H:%M")
        except ValueError:
            last_login = config.updated_at

    table = Table.grid(padding=(0, 2))
    table.add_column(style="grey50")
    table.add_column()
    table.add_row("Display Name:", Text(config.display_name, style="bold white"))
    table.add_row("Username:", "@" + (config.user.get("username") or "—"))
    table.add_row("User ID:", Text(config.user.get("userId") or "—", style="grey50"))
    table.add_row("Server:", Text(config.site, style="blue"))
    table.add_row("Last Login:", last_login)

    console.print()
    console.print(Panel(Text("Account Info", justify="center", style="bold"), border_style="bold cyan", width=37))
    console.print()
    console.print(Panel(table, box=box.SIMPLE, padding=(0, 1)))


def set_minimal(value: Optional[str]) -> bool:
    config = read_config()
    config.minimal = not config.minimal if value is None else parse_switch(value)
    write_config(config)
    return config.minimal



#====================================
# Menu, plugins, CLI
#====================================

EXIT_HINT = "\n  Use 'Exit' from the menu or type /quit to exit."


def _ignore_sigint(signum, frame):
    # ctrl-c never ends the app; the menu and /quit are the ways out
    log.debug("SIGINT ignored")
    console.print(EXIT_HINT, style="grey50")


def _pause():
    console.input("[grey50]Press Enter to continue...[/]")


def main_loop(minimal: bool = False):
    while True:
        config = read_config()
        use_minimal = minimal or config.minimal
        console.clear()
        print_homescreen(config, use_minimal)

        if not config.token:
            choices = [questionary.Choice("Log in to Anagrama", value="login"),
                       questionary.Choice("Exit", value="exit")]
        else:
            choices = [questionary.Choice("Play today's puzzle", value="play"),
                       questionary.Choice("Account info", value="whoami"),
                       questionary.Choice("Full mode" if use_minimal else "Minimal mode", value="minimal"),
                       questionary.Choice("Log out", value="logout"),
                       questionary.Choice("Exit", value="exit")]

        action = questionary.select("What would you like to do?", choices=choices).ask()
        try:
            if not _menu_action(action, config, minimal, use_minimal):
                return
        except KeyboardInterrupt:
            # without main()'s handler ctrl-c surfaces here; back to the menu
            console.print(EXIT_HINT, style="grey50")
            time.sleep(1)


def _menu_action(action: Optional[str], config: Config, minimal: bool, use_minimal: bool) -> bool:
    '''Runs one menu choice. False means leave the menu.'''
    if action is None:
        # ctrl-c in the menu itself
        console.print(EXIT_HINT, style="grey50")
        time.sleep(1)
    elif action == "login":
        new_config = login(normalize_base_url(DEFAULT_SITE_URL), normalize_base_url(DEFAULT_API_URL))
        if new_config:
            console.print()
            console.print("  " + random_welcome(new_config.display_name), style="bold green")
            console.print()
        time.sleep(2)
    elif action == "play":
        play(config, minimal)
        _pause()
    elif action == "whoami":
        whoami(config)
        _pause()
    elif action == "minimal":
        config.minimal = not use_minimal
        write_config(config)
    elif action == "logout":
        logout()
        time.sleep(1)
    else:
        console.print("Goodbye! Come back tomorrow for a new puzzle.", style="grey50")
        return False
    return True


def _load_plugins(plugin_dirs: Optional[List[str]] = None):
    for plugin_dir in plugin_dirs if plugin_dirs is not None else PLUGIN_DIRS:
        if not os.path.isdir(plugin_dir):
            continue
        for path in sorted(glob.glob(os.path.join(plugin_dir, "*.py"))):
            filename = os.path.basename(path)
            # plugin files starting with `_` arent loaded.
            if filename.startswith("_"):
                continue
            log.info("loading plugin %s", path)
            with open(path, "r", encoding="utf-8") as f:
                exec(compile(f.read(), path, "exec"), {"__name__": "__plugin__", "__file__": path})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="anagrama", description="Terminal client for Anagrama")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-m", "--minimal", action="store_true", help="Use minimal output mode (less visual clutter)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging to the log file")
    sub = parser.add_subparsers(dest="cmd")

    p = sub.add_parser("login", help="Link your Anagrama account")
    p.add_argument("-u", "--url", help="Frontend base URL")
    p.add_argument("--no-open", dest="open", action="store_false", help="Do not open the browser automatically")
    p.add_argument("-l", "--label", help="Label for this device")

    sub.add_parser("logout", help="Remove local credentials")
    sub.add_parser("whoami", help="Show current login")

    p = sub.add_parser("play", help="Play the daily Anagrama puzzle")
    p.add_argument("-u", "--url", help="API base URL")
    p.add_argument("-m", "--minimal", action="store_true", help="Use minimal output mode")

    p = sub.add_parser("minimal", help="Toggle minimal output mode")
    p.add_argument("value", nargs="?", choices=["on", "off", "true", "false", "1", "0"])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)
    _load_plugins()
    migrate_token_to_keychain()

    if threading.current_thread() is not threading.main_thread():
        return run_cli(args)
    previous = signal.signal(signal.SIGINT, _ignore_sigint)
    try:
        return run_cli(args)
    finally:
        signal.signal(signal.SIGINT, previous if previous is not None else signal.SIG_DFL)


def run_cli(args: argparse.Namespace) -> int:
    if args.cmd is None:
        main_loop(args.minimal)
    elif args.cmd == "login":
        config = read_config()
        site = normalize_base_url(args.url or config.base_url or DEFAULT_SITE_URL)
        new_config = login(site, config.api, open_browser=args.open, label=args.label)
        if not new_config:
            return 1
        console.print(random_welcome(new_config.display_name), style="bold green")
    elif args.cmd == "logout":
        logout()
    elif args.cmd == "whoami":
        whoami(read_config())
    elif args.cmd == "play":
        config = read_config()
        if args.url:
            config.api_url = normalize_base_url(args.url)
        play(config, args.minimal)
    elif args.cmd == "minimal":
        enabled = set_minimal(args.value)
        console.print(f"Minimal mode {'enabled' if enabled else 'disabled'}.", style="green")
    return 0


if __name__ == "__main__":
    sys.exit(main())
