from __future__ import annotations

import json
from pathlib import Path

import pytest

from fxflow.canonical import EMPTY_HASH, state_hash
from fxflow.ledger import JsonlFileSink, Ledger, MemorySink, read_events
from fxflow.models import Event


class FailingSink(MemorySink):
    async def write(self, event: Event) -> None:
        raise OSError("disk full")


@pytest.mark.asyncio
async def test_emit_records_hashes_and_forwards_to_sink(ledger: Ledger, sink: MemorySink) -> None:
    event = await ledger.emit("increment", {"n": 1}, {"n": 2}, args=(1,), meta={"why": "test"})
    assert event.before_hash == state_hash({"n": 1})
    assert event.after_hash == state_hash({"n": 2})
    assert event.args == (1,)
    assert event.meta == {"why": "test"}
    assert ledger.events == (event,)
    assert sink.events == [event]


@pytest.mark.asyncio
async def test_observer_sees_event_and_resulting_state(sink: MemorySink) -> None:
    seen: list[tuple[str, object]] = []
    ledger = Ledger(sink, lambda event, state: seen.append((event.name, state)))
    await ledger.emit("start", None, {"ready": True})
    assert seen == [("start", {"ready": True})]
    assert ledger.events[0].before_hash == EMPTY_HASH


@pytest.mark.asyncio
async def test_sink_failure_propagates() -> None:
    ledger = Ledger(FailingSink())
    with pytest.raises(OSError, match="disk full"):
        await ledger.emit("step", {}, {})


@pytest.mark.asyncio
async def test_queries_over_recorded_events(ledger: Ledger) -> None:
    for name in ["a", "b", "a", "c"]:
        await ledger.emit(name, {}, {"name": name})
    assert [event.name for event in ledger.by_name("a")] == ["a", "a"]
    assert [event.name for event in ledger.recent(2)] == ["a", "c"]
    assert ledger.recent(0) == []
    assert ledger.stats() == {"a": 2, "b": 1, "c": 1}
    assert [event.name for event in ledger] == ["a", "b", "a", "c"]


@pytest.mark.asyncio
async def test_jsonl_sink_writes_one_event_per_line(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "ledger.jsonl"
    file_sink = JsonlFileSink(path)
    ledger = Ledger(file_sink)
    await ledger.emit("first", {}, {"x": 1})
    await ledger.emit("second", {"x": 1}, {"x": 1})
    await file_sink.flush()
    await file_sink.close()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["name"] == "first"

    loaded = read_events(path)
    assert [event.name for event in loaded] == ["first", "second"]
    assert loaded[0].id == ledger.events[0].id
    assert loaded[0].changed
    assert not loaded[1].changed


@pytest.mark.asyncio
async def test_jsonl_sink_appends_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "ledger.jsonl"
    for name in ["one", "two"]:
        file_sink = JsonlFileSink(path)
        await Ledger(file_sink).emit(name, {}, {})
        await file_sink.close()
    assert [event.name for event in read_events(path)] == ["one", "two"]


def test_read_events_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        read_events(tmp_path / "absent.jsonl")


def test_read_events_reports_bad_line(tmp_path: Path) -> None:
    path = tmp_path / "ledger.jsonl"
    good = Event(name="ok", before_hash=EMPTY_HASH, after_hash=EMPTY_HASH).model_dump_json()
    path.write_text(f"{good}\n\nnot json\n", encoding="utf-8")
    with pytest.raises(ValueError, match="line 3"):
        read_events(path)
