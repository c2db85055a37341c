from __future__ import annotations

from contextlib import contextmanager

import pytest

import vtpod
from vtpod import AppConfig, TerminalError, configure_logging, parse_args


def test_parse_args_defaults() -> None:
    config = parse_args([])
    assert config == AppConfig(poll_seconds=0.2, log_file=None, log_level="INFO")


def test_parse_args_overrides(tmp_path) -> None:
    log_file = tmp_path / "vtpod.log"
    config = parse_args(["--poll-ms", "50", "--log-file", str(log_file), "--log-level", "DEBUG"])
    assert config.poll_seconds == pytest.approx(0.05)
    assert config.log_file == str(log_file)
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize("argv", [["--poll-ms", "5"], ["--log-file", " "]])
def test_parse_args_rejects_bad_values(argv: list[str]) -> None:
    with pytest.raises(ValueError):
        parse_args(argv)


def test_main_reports_configuration_error(capsys) -> None:
    assert vtpod.main(["--poll-ms", "1"]) == 2
    assert "Configuration error" in capsys.readouterr().out


def test_configure_logging_writes_to_file(tmp_path) -> None:
    log_file = tmp_path / "vtpod.log"
    logger = configure_logging(AppConfig(poll_seconds=0.2, log_file=str(log_file), log_level="DEBUG"))
    try:
        logger.warning("podman missing")
    finally:
        configure_logging(AppConfig(poll_seconds=0.2, log_file=None, log_level="INFO"))
    line = log_file.read_text(encoding="utf-8")
    assert "| WARNING | vtpod | podman missing" in line


class FakeController:
    def __init__(self, console, events) -> None:
        self.events = list(events)
        self.frames: list = []
        self.sessions = 0

    @contextmanager
    def session(self):
        self.sessions += 1
        yield self

    @contextmanager
    def handoff(self):
        yield

    def draw(self, renderable) -> None:
        self.frames.append(renderable)

    def read_event(self, timeout: float):
        return self.events.pop(0)


def test_run_loop_renders_every_iteration(monkeypatch) -> None:
    events = [None, ("key", "DOWN"), ("mouse", "[<0;1;1M"), ("key", "ENTER"), ("key", "ESC"), None, ("key", "q")]
    controllers: list[FakeController] = []

    def factory(console):
        controller = FakeController(console, events)
        controllers.append(controller)
        return controller

    monkeypatch.setattr(vtpod, "TerminalController", factory)

    assert vtpod.run(AppConfig(poll_seconds=0.2, log_file=None, log_level="INFO"), console=None) == 0
    controller = controllers[0]
    assert controller.sessions == 1
    assert controller.events == []
    assert len(controller.frames) == len(events)


def test_main_returns_one_on_terminal_error(monkeypatch, capsys) -> None:
    def broken(config, console):
        raise TerminalError("cannot enable raw input: not a tty")

    monkeypatch.setattr(vtpod, "run", broken)
    assert vtpod.main([]) == 1
    assert "Terminal error" in capsys.readouterr().out


def test_main_stops_cleanly_on_interrupt(monkeypatch, capsys) -> None:
    def interrupted(config, console):
        raise KeyboardInterrupt

    monkeypatch.setattr(vtpod, "run", interrupted)
    assert vtpod.main([]) == 0
    assert "Stopped." in capsys.readouterr().out
