from __future__ import annotations

import argparse
import enum
import logging
import os
import select
import subprocess
import sys
import termios
import tty
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, Union

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

__version__ = "0.1.0"

logger = logging.getLogger("vtpod")

APP_TITLE = "vtpod"
DEFAULT_POLL_MS = 200
ESCAPE_SEQUENCE_TIMEOUT = 0.01
PASTE_TIMEOUT = 0.1
MAX_ESCAPE_SEQUENCE = 32
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

PODMAN_PS_FORMAT = "table {{.ID}}\t{{.Names}}\t{{.Status}}"

LIST_HINT = "Arrows: navigate • Enter: select • Esc/q: back/quit"
OUTPUT_HINT = "Esc/Enter to go back"
INPUT_HINT = "Type and press Enter. Esc to cancel."

# SGR mouse reporting, focus reporting, bracketed paste.
EXTENDED_INPUT_ON = "\x1b[?1000h\x1b[?1006h\x1b[?1004h\x1b[?2004h"
EXTENDED_INPUT_OFF = "\x1b[?2004l\x1b[?1004l\x1b[?1006l\x1b[?1000l"
PASTE_START = "[200~"
PASTE_END = b"\x1b[201~"

ESCAPE_KEYS = {
    "[A": "UP",
    "[B": "DOWN",
    "[C": "RIGHT",
    "[D": "LEFT",
    "OA": "UP",
    "OB": "DOWN",
    "OC": "RIGHT",
    "OD": "LEFT",
    "[Z": "SHTAB",
    "[H": "HOME",
    "[F": "END",
    "[1~": "HOME",
    "[4~": "END",
    "[3~": "DELETE",
    "[5~": "PGUP",
    "[6~": "PGDN",
}

Event = tuple[str, str]


class TerminalError(RuntimeError):
    """The terminal could not be switched between UI and cooperative mode."""


class CommandError(RuntimeError):
    """An interactive child process could not be run to a successful exit."""


class PromptOrigin(enum.Enum):
    CHANGE_VT = "change_vt"
    PODMAN_START = "podman_start"
    PODMAN_STOP = "podman_stop"
    PODMAN_SHELL = "podman_shell"


@dataclass(frozen=True)
class Main:
    pass


@dataclass(frozen=True)
class VTMenu:
    pass


@dataclass(frozen=True)
class Desktops:
    pass


@dataclass(frozen=True)
class Podman:
    pass


@dataclass(frozen=True)
class Output:
    pass


@dataclass(frozen=True)
class Input:
    prompt: str
    origin: PromptOrigin


Screen = Union[Main, VTMenu, Desktops, Podman, Output, Input]


class ActionKind(enum.Enum):
    CHVT = "chvt"
    PODMAN_PS = "podman_ps"
    PODMAN_START = "podman_start"
    PODMAN_STOP = "podman_stop"
    PODMAN_SHELL = "podman_shell"
    QUIT = "quit"


@dataclass(frozen=True)
class Action:
    """Side effect requested by a transition; performed by the command runner."""

    kind: ActionKind
    argument: str = ""


@dataclass(frozen=True)
class Navigate:
    screen: Screen


@dataclass(frozen=True)
class Prompt:
    prompt: str
    origin: PromptOrigin


MenuTarget = Union[Navigate, Prompt, Action]


@dataclass(frozen=True)
class MenuItem:
    label: str
    target: MenuTarget


@dataclass(frozen=True)
class MenuDefinition:
    title: str
    items: tuple[MenuItem, ...]


@dataclass(frozen=True)
class NavigationState:
    current_screen: Screen = field(default_factory=Main)
    selected_index: int = 0
    input_buffer: str = ""
    output_message: str = ""


MENUS: dict[type, MenuDefinition] = {
    Main: MenuDefinition(
        "Main Menu",
        (
            MenuItem("VT Menu", Navigate(VTMenu())),
            MenuItem("Podman Menu", Navigate(Podman())),
            MenuItem("Quit", Action(ActionKind.QUIT)),
        ),
    ),
    VTMenu: MenuDefinition(
        "VT Menu",
        (
            MenuItem(
                "Change VT (ask number)",
                Prompt("Enter VT number (e.g. 1..12)", PromptOrigin.CHANGE_VT),
            ),
            MenuItem("Desktops", Navigate(Desktops())),
            MenuItem("Back to Main Menu", Navigate(Main())),
        ),
    ),
    Desktops: MenuDefinition(
        "Desktops",
        (
            MenuItem("Known: X11 VT (chvt 7)", Action(ActionKind.CHVT, "7")),
            MenuItem("Known: Wayland VT (chvt 8)", Action(ActionKind.CHVT, "8")),
            MenuItem("Back to VT Menu", Navigate(VTMenu())),
        ),
    ),
    Podman: MenuDefinition(
        "Podman Menu",
        (
            MenuItem("List containers", Action(ActionKind.PODMAN_PS)),
            MenuItem(
                "Start container",
                Prompt("Start container (id or name)", PromptOrigin.PODMAN_START),
            ),
            MenuItem(
                "Stop container",
                Prompt("Stop container (id or name)", PromptOrigin.PODMAN_STOP),
            ),
            MenuItem(
                "Open shell in container",
                Prompt("Open shell in container (id or name)", PromptOrigin.PODMAN_SHELL),
            ),
            MenuItem("Back to Main Menu", Navigate(Main())),
        ),
    ),
}

PARENTS: dict[type, Screen] = {
    VTMenu: Main(),
    Desktops: VTMenu(),
    Podman: Main(),
    # Output always returns to the Podman menu, whichever menu produced it.
    Output: Podman(),
}

ORIGIN_PARENTS: dict[PromptOrigin, Screen] = {
    PromptOrigin.CHANGE_VT: VTMenu(),
    PromptOrigin.PODMAN_START: Podman(),
    PromptOrigin.PODMAN_STOP: Podman(),
    PromptOrigin.PODMAN_SHELL: Podman(),
}

ORIGIN_ACTIONS: dict[PromptOrigin, ActionKind] = {
    PromptOrigin.CHANGE_VT: ActionKind.CHVT,
    PromptOrigin.PODMAN_START: ActionKind.PODMAN_START,
    PromptOrigin.PODMAN_STOP: ActionKind.PODMAN_STOP,
    PromptOrigin.PODMAN_SHELL: ActionKind.PODMAN_SHELL,
}


def menu_for(screen: Screen) -> MenuDefinition | None:
    return MENUS.get(type(screen))


def cycle_selection(index: int, item_count: int, delta: int) -> int:
    if item_count <= 0:
        return 0
    return (index + delta) % item_count


def parent_of(screen: Screen) -> Screen:
    if isinstance(screen, Input):
        return ORIGIN_PARENTS[screen.origin]
    return PARENTS.get(type(screen), Main())


def navigate(screen: Screen, output_message: str = "") -> NavigationState:
    return NavigationState(current_screen=screen, output_message=output_message)


def select_target(
    state: NavigationState,
    target: MenuTarget,
) -> tuple[NavigationState, Action | None]:
    if isinstance(target, Navigate):
        return navigate(target.screen), None
    if isinstance(target, Prompt):
        return navigate(Input(prompt=target.prompt, origin=target.origin)), None
    if target.kind is ActionKind.QUIT:
        return state, target
    return navigate(Output()), target


def transition_input(
    state: NavigationState,
    screen: Input,
    key: str,
) -> tuple[NavigationState, Action | None]:
    if key == "ESC":
        return navigate(parent_of(screen)), None
    if key == "BACKSPACE":
        return replace(state, input_buffer=state.input_buffer[:-1]), None
    if key == "ENTER":
        value = state.input_buffer.strip()
        if not value:
            return navigate(Output(), output_message="Empty input"), None
        return navigate(Output()), Action(ORIGIN_ACTIONS[screen.origin], value)
    if len(key) == 1 and key.isprintable():
        return replace(state, input_buffer=state.input_buffer + key), None
    return state, None


def transition(
    state: NavigationState,
    event: Event,
) -> tuple[NavigationState, Action | None]:
    """Apply one input event to the navigation state.

    Returns the next state and, when the event asks for one, the action the
    command runner has to perform. No I/O happens here.
    """
    event_type, key = event
    screen = state.current_screen
    if event_type == "paste" and isinstance(screen, Input):
        pasted = "".join(char for char in key if char.isprintable())
        return replace(state, input_buffer=state.input_buffer + pasted), None
    if event_type != "key":
        return state, None

    if isinstance(screen, Input):
        return transition_input(state, screen, key)
    if isinstance(screen, Output):
        if key in {"ESC", "ENTER", "q"}:
            return navigate(parent_of(screen)), None
        return state, None

    menu = menu_for(screen)
    if menu is None:
        return state, None
    # Ctrl+C only quits from menus, never from a prompt or output view.
    if key == "QUIT":
        return state, Action(ActionKind.QUIT)
    item_count = len(menu.items)
    if key == "DOWN":
        return replace(state, selected_index=cycle_selection(state.selected_index, item_count, 1)), None
    if key == "UP":
        return replace(state, selected_index=cycle_selection(state.selected_index, item_count, -1)), None
    if key == "ENTER":
        return select_target(state, menu.items[state.selected_index].target)
    if isinstance(screen, Main):
        if key in {"ESC", "q"}:
            return state, Action(ActionKind.QUIT)
        return state, None
    if key == "ESC":
        return navigate(parent_of(screen)), None
    return state, None


def complete_action(state: NavigationState, message: str) -> NavigationState:
    return replace(state, output_message=message)


def decode_output(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


class CommandRunner:
    def __init__(self, terminal: TerminalController) -> None:
        self.terminal = terminal

    def run_captured(self, cmd: str, args: list[str]) -> str:
        argv = [cmd, *args]
        logger.info("run captured: %s", argv)
        try:
            result = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            logger.warning("failed to spawn %s: %s", cmd, exc)
            return f"Failed to run {cmd}: {exc}"
        if result.returncode == 0:
            return decode_output(result.stdout)
        logger.warning("%s exited with status %s", argv, result.returncode)
        stderr = decode_output(result.stderr)
        if stderr.strip():
            return stderr
        return f"Command {cmd!r} {args!r} failed: exit status {result.returncode}"

    def run_interactive(self, cmd: str, args: list[str]) -> None:
        argv = [cmd, *args]
        logger.info("run interactive: %s", argv)
        with self.terminal.handoff():
            try:
                result = subprocess.run(argv, check=False)
            except OSError as exc:
                logger.warning("failed to spawn %s: %s", cmd, exc)
                raise CommandError(f"Failed to run {cmd}: {exc}") from exc
        if result.returncode != 0:
            logger.warning("%s exited with status %s", argv, result.returncode)
            raise CommandError(f"Command {cmd!r} {args!r} failed: exit status {result.returncode}")

    def chvt(self, vt: str) -> str:
        if not vt.strip():
            return "empty VT"
        return self.run_captured("sudo", ["chvt", vt])

    def podman_ps(self) -> str:
        return self.run_captured("podman", ["ps", "-a", "--format", PODMAN_PS_FORMAT])

    def podman_start(self, container: str) -> str:
        return self.run_captured("podman", ["start", container])

    def podman_stop(self, container: str) -> str:
        return self.run_captured("podman", ["stop", container])

    def podman_shell(self, container: str) -> str:
        try:
            self.run_interactive("podman", ["exec", "-it", container, "/bin/sh"])
        except CommandError as exc:
            logger.info("/bin/sh in %s failed (%s), retrying with /bin/bash", container, exc)
            try:
                self.run_interactive("podman", ["exec", "-it", container, "/bin/bash"])
            except CommandError as retry_exc:
                return str(retry_exc)
        return f"Exited shell for {container}"

    def perform(self, action: Action) -> str:
        logger.info("dispatch %s %r", action.kind.value, action.argument)
        if action.kind is ActionKind.CHVT:
            return self.chvt(action.argument)
        if action.kind is ActionKind.PODMAN_PS:
            return self.podman_ps()
        if action.kind is ActionKind.PODMAN_START:
            return self.podman_start(action.argument)
        if action.kind is ActionKind.PODMAN_STOP:
            return self.podman_stop(action.argument)
        if action.kind is ActionKind.PODMAN_SHELL:
            return self.podman_shell(action.argument)
        raise ValueError(f"Unsupported action: {action.kind.value}")


def _read_utf8_tail(fd: int, lead: int) -> bytes:
    if lead >= 0xF0:
        remaining = 3
    elif lead >= 0xE0:
        remaining = 2
    else:
        remaining = 1
    data = b""
    while remaining and select.select([fd], [], [], ESCAPE_SEQUENCE_TIMEOUT)[0]:
        chunk = os.read(fd, 1)
        if not chunk:
            break
        data += chunk
        remaining -= 1
    return data


def _read_paste(fd: int) -> str:
    data = b""
    while not data.endswith(PASTE_END):
        if not select.select([fd], [], [], PASTE_TIMEOUT)[0]:
            break
        chunk = os.read(fd, 1)
        if not chunk:
            break
        data += chunk
    return data.removesuffix(PASTE_END).decode("utf-8", errors="replace")


def _read_raw(fd: int, count: int) -> bytes:
    data = b""
    while len(data) < count and select.select([fd], [], [], ESCAPE_SEQUENCE_TIMEOUT)[0]:
        chunk = os.read(fd, 1)
        if not chunk:
            break
        data += chunk
    return data


def _read_escape(fd: int) -> Event:
    sequence = ""
    while select.select([fd], [], [], ESCAPE_SEQUENCE_TIMEOUT)[0]:
        chunk = os.read(fd, 1).decode("utf-8", errors="ignore")
        if not chunk:
            break
        sequence += chunk
        if len(sequence) == 1:
            if sequence not in {"[", "O"}:
                break
            continue
        if sequence[-1].isalpha() or sequence.endswith("~") or len(sequence) >= MAX_ESCAPE_SEQUENCE:
            break
    if sequence == PASTE_START:
        return ("paste", _read_paste(fd))
    if sequence.startswith("[<"):
        return ("mouse", sequence)
    if sequence == "[M":
        # X10 report: button, column and row follow as raw bytes.
        return ("mouse", sequence + _read_raw(fd, 3).decode("latin-1"))
    if sequence == "[I":
        return ("focus", "in")
    if sequence == "[O":
        return ("focus", "out")
    if not sequence or len(sequence) == 1:
        return ("key", "ESC")
    return ("key", ESCAPE_KEYS.get(sequence, "UNKNOWN"))


def read_event(fd: int, timeout: float) -> Event | None:
    """Wait up to ``timeout`` seconds for one input event on ``fd``."""
    ready, _, _ = select.select([fd], [], [], timeout)
    if not ready:
        return None
    data = os.read(fd, 1)
    if not data:
        return None
    if data[0] >= 0xC0:
        data += _read_utf8_tail(fd, data[0])
    key = data.decode("utf-8", errors="replace")
    if key in {"\r", "\n"}:
        return ("key", "ENTER")
    if key == "\t":
        return ("key", "TAB")
    if key in {"\x7f", "\b"}:
        return ("key", "BACKSPACE")
    if key == "\x03":
        return ("key", "QUIT")
    if key == "\x1b":
        return _read_escape(fd)
    return ("key", key)


class TerminalController:
    """Owns the terminal while the menu runs.

    ``enter``/``leave`` switch the whole exclusive mode (cbreak input,
    alternate screen, extended input reporting). ``suspend``/``resume`` only
    flip the input mode so a child process can use the same tty.
    """

    def __init__(self, console: Console, fd: int | None = None) -> None:
        self.console = console
        self.fd = sys.stdin.fileno() if fd is None else fd
        self._saved_attrs: list[Any] | None = None
        self._live: Live | None = None
        self._reporting = False

    def _write(self, sequence: str) -> None:
        self.console.file.write(sequence)
        self.console.file.flush()

    def enter(self) -> None:
        try:
            self._saved_attrs = termios.tcgetattr(self.fd)
            tty.setcbreak(self.fd)
        except termios.error as exc:
            raise TerminalError(f"cannot enable raw input: {exc}") from exc
        self._write(EXTENDED_INPUT_ON)
        self._reporting = True
        self._live = Live(
            Text(""),
            console=self.console,
            auto_refresh=False,
            screen=True,
            redirect_stdout=False,
            redirect_stderr=False,
            vertical_overflow="crop",
        )
        self._live.start()
        logger.debug("terminal entered exclusive mode")

    def leave(self) -> None:
        restore_error: termios.error | None = None
        if self._saved_attrs is not None:
            try:
                termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved_attrs)
            except termios.error as exc:
                restore_error = exc
            self._saved_attrs = None
        if self._live is not None:
            self._live.stop()
            self._live = None
        if self._reporting:
            self._write(EXTENDED_INPUT_OFF)
            self._reporting = False
        self.console.show_cursor(True)
        logger.debug("terminal left exclusive mode")
        if restore_error is not None:
            raise TerminalError(f"cannot restore terminal: {restore_error}") from restore_error

    def suspend(self) -> None:
        if self._saved_attrs is None:
            return
        try:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved_attrs)
        except termios.error as exc:
            raise TerminalError(f"cannot disable raw input: {exc}") from exc
        self.console.show_cursor(True)
        logger.debug("terminal suspended for child process")

    def resume(self) -> None:
        if self._saved_attrs is None:
            return
        try:
            tty.setcbreak(self.fd)
        except termios.error as exc:
            raise TerminalError(f"cannot re-enable raw input: {exc}") from exc
        self.console.show_cursor(False)
        logger.debug("terminal resumed after child process")

    @contextmanager
    def handoff(self) -> Iterator[None]:
        self.suspend()
        try:
            yield
        finally:
            self.resume()

    @contextmanager
    def session(self) -> Iterator[TerminalController]:
        try:
            self.enter()
            yield self
        finally:
            self.leave()

    def read_event(self, timeout: float) -> Event | None:
        return read_event(self.fd, timeout)

    def draw(self, renderable: Any) -> None:
        if self._live is not None:
            self._live.update(renderable, refresh=True)


def render_menu_list(items: tuple[MenuItem, ...], selected_index: int) -> Text:
    text = Text()
    for idx, item in enumerate(items):
        if idx:
            text.append("\n")
        if idx == selected_index:
            text.append(f"> {item.label}", style="bold yellow")
        else:
            text.append(f"  {item.label}")
    return text


def render_frame(title: str, body: Any, footer: str, body_title: str | None = None) -> Layout:
    root = Layout(name="root")
    root.split_column(
        Layout(
            Panel(Text(title, style="bold"), title=APP_TITLE, title_align="left", border_style="bright_blue"),
            name="header",
            size=3,
        ),
        Layout(Panel(body, title=body_title, border_style="cyan"), name="body"),
        Layout(Panel(Text(footer, style="dim"), border_style="blue"), name="footer", size=3),
    )
    return root


def render(state: NavigationState) -> Layout:
    screen = state.current_screen
    if isinstance(screen, Input):
        return render_frame(screen.prompt, Text(state.input_buffer), INPUT_HINT, body_title="Input")
    if isinstance(screen, Output):
        return render_frame("Output", Text(state.output_message), OUTPUT_HINT, body_title="Output")
    menu = menu_for(screen)
    if menu is None:
        return render_frame(APP_TITLE, Text(""), LIST_HINT)
    return render_frame(menu.title, render_menu_list(menu.items, state.selected_index), LIST_HINT)


@dataclass
class AppConfig:
    poll_seconds: float
    log_file: str | None
    log_level: str


def parse_args(argv: list[str]) -> AppConfig:
    parser = argparse.ArgumentParser(
        prog="vtpod",
        description="Terminal menu for switching virtual terminals and managing podman containers.",
    )
    parser.add_argument("--poll-ms", type=int, default=DEFAULT_POLL_MS, help="Input poll timeout in milliseconds.")
    parser.add_argument("--log-file", default=None, help="Write diagnostic logs to this file.")
    parser.add_argument("--log-level", choices=LOG_LEVELS, default="INFO")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)

    if args.poll_ms < 10:
        raise ValueError("--poll-ms must be >= 10")
    log_file = args.log_file.strip() if args.log_file else None
    if args.log_file is not None and not log_file:
        raise ValueError("--log-file must not be empty")

    return AppConfig(
        poll_seconds=args.poll_ms / 1000.0,
        log_file=log_file,
        log_level=args.log_level,
    )


def configure_logging(config: AppConfig) -> logging.Logger:
    # The tty belongs to the UI, so logs only ever go to a file.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(getattr(logging, config.log_level, logging.INFO))
    logger.propagate = False
    if config.log_file:
        handler: logging.Handler = logging.FileHandler(config.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    else:
        handler = logging.NullHandler()
    logger.addHandler(handler)
    return logger


def step(
    state: NavigationState,
    event: Event,
    runner: CommandRunner,
) -> tuple[NavigationState, bool]:
    new_state, action = transition(state, event)
    if action is None:
        return new_state, True
    if action.kind is ActionKind.QUIT:
        return new_state, False
    return complete_action(new_state, runner.perform(action)), True


def run(config: AppConfig, console: Console) -> int:
    terminal = TerminalController(console)
    runner = CommandRunner(terminal)
    state = NavigationState()
    logger.info("starting (poll %.3fs)", config.poll_seconds)
    with terminal.session():
        running = True
        while running:
            terminal.draw(render(state))
            event = terminal.read_event(config.poll_seconds)
            if event is None:
                continue
            state, running = step(state, event, runner)
    logger.info("quit requested")
    return 0


def main(argv: list[str] | None = None) -> int:
    console = Console()
    try:
        config = parse_args(argv if argv is not None else sys.argv[1:])
    except ValueError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return 2

    try:
        configure_logging(config)
    except OSError as exc:
        console.print(f"[red]Configuration error:[/red] cannot open log file: {exc}")
        return 2

    try:
        return run(config, console)
    except TerminalError as exc:
        logger.error("terminal error: %s", exc)
        console.print(f"[red]Terminal error:[/red] {exc}")
        return 1
    except KeyboardInterrupt:
        console.print("\n[bold]Stopped.[/bold]")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
