from __future__ import annotations

import logging
from pathlib import Path

import pytest

from fxflow.__main__ import main, resolve_log_level
from fxflow.canonical import EMPTY_HASH, state_hash
from fxflow.models import Event


def write_ledger(path: Path, names: list[str]) -> None:
    lines = [
        Event(name=name, before_hash=EMPTY_HASH, after_hash=state_hash({"step": name})).model_dump_json()
        for name in names
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def test_inspect_prints_counts_and_recent_events(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "ledger.jsonl"
    write_ledger(path, ["start:bot", "tool:search", "tool:search", "stop:bot"])

    assert main(["inspect", str(path), "--limit", "2"]) == 0

    out = capsys.readouterr().out
    assert "events=4" in out
    assert "  tool:search: 2" in out
    assert "  start:bot: 1" in out
    recent = out.split("recent:\n", 1)[1].splitlines()
    assert len(recent) == 2
    assert "stop:bot" in recent[-1]


def test_inspect_missing_file_returns_error(tmp_path: Path) -> None:
    assert main(["inspect", str(tmp_path / "missing.jsonl")]) == 1


def test_inspect_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        main([])


def test_log_level_falls_back_to_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    assert resolve_log_level(None) == logging.INFO
    monkeypatch.setenv("FX_LOG_LEVEL", "debug")
    assert resolve_log_level(None) == logging.DEBUG
    assert resolve_log_level("ERROR") == logging.ERROR


def test_invalid_log_level_environment_fails_cli(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "ledger.jsonl"
    write_ledger(path, ["start:bot"])
    monkeypatch.setenv("FX_LOG_LEVEL", "chatty")
    assert main(["inspect", str(path)]) == 1
    assert main(["--log-level", "warning", "inspect", str(path)]) == 0
