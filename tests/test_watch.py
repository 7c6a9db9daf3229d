"""watch モジュールのテスト（inotifyなしでロジックのみ）。"""

import json
import queue
import time
from pathlib import Path

from crowdlore.watch import BalanceWorker, InboxDebouncer, ProcessedEntry, ProcessedLog

SCENARIO_TOML = """
id = "d-007"
title = "The Silent Bell"
scenario = "The village bell has stopped ringing."
theme = "mystery"

[[options]]
id = "a"
text = "Climb the tower"
[options.effects]
curiosity = 2

[[options]]
id = "b"
text = "Ask the elders"
[options.effects]
reputation = 1

[[options]]
id = "c"
text = "Ignore it"
[options.effects]
stability = 1
"""


def _worker(tmp_path: Path, events: Path | None = None) -> BalanceWorker:
    q: queue.Queue[Path] = queue.Queue()
    return BalanceWorker(
        q,
        outbox=tmp_path / "out",
        processed=ProcessedLog(tmp_path / "processed.json"),
        seed=3,
        event_log_path=events,
    )


def test_processed_log_roundtrip(tmp_path: Path) -> None:
    p = tmp_path / "processed.json"
    log = ProcessedLog(p)
    f = tmp_path / "a.toml"
    log.record(f, ProcessedEntry(mtime_ns=123, scenario_id="d-001", balance_score=0.7, accepted=True))

    log2 = ProcessedLog(p)
    assert log2.is_done(f, 123)
    assert not log2.is_done(f, 124)
    assert log2.get(f).scenario_id == "d-001"


def test_processed_log_survives_corrupt_file(tmp_path: Path) -> None:
    p = tmp_path / "processed.json"
    p.write_text("{oops", encoding="utf-8")
    log = ProcessedLog(p)
    assert not log.is_done(tmp_path / "a.toml", 1)


def test_debounce_collapses(tmp_path: Path) -> None:
    q: queue.Queue[Path] = queue.Queue()
    d = InboxDebouncer(q, 0.05)

    f = tmp_path / "a.toml"
    d.touch(f)
    d.touch(f)
    d.touch(f)

    time.sleep(0.3)
    assert q.qsize() == 1
    assert q.get_nowait() == f
    assert d.pending() == 0


def test_debounce_cancel_all(tmp_path: Path) -> None:
    q: queue.Queue[Path] = queue.Queue()
    d = InboxDebouncer(q, 0.2)
    d.touch(tmp_path / "a.toml")
    d.touch(tmp_path / "b.toml")
    assert d.pending() == 2

    d.cancel_all()
    time.sleep(0.3)
    assert q.empty()


def test_worker_ignores_non_toml(tmp_path: Path) -> None:
    w = _worker(tmp_path)
    p = tmp_path / "x.txt"
    p.write_text("hi", encoding="utf-8")

    assert w.process(p) is None
    assert not (tmp_path / "out").exists()


def test_worker_balances_and_writes_outputs(tmp_path: Path) -> None:
    events = tmp_path / "events.log"
    w = _worker(tmp_path, events)
    src = tmp_path / "bell.toml"
    src.write_text(SCENARIO_TOML, encoding="utf-8")

    rep = w.process(src)

    assert rep == tmp_path / "out" / "bell.balance.md"
    assert "バランス調整レポート: The Silent Bell" in rep.read_text(encoding="utf-8")
    balanced = json.loads((tmp_path / "out" / "bell.balanced.json").read_text(encoding="utf-8"))
    assert balanced["id"] == "d-007"
    assert [o["id"] for o in balanced["options"]] == ["a", "b", "c"]
    assert "balanced: bell.toml" in events.read_text(encoding="utf-8")
    assert w.processed.get(src).scenario_id == "d-007"

    # 同じ mtime は二度処理しない
    assert w.process(src) is None


def test_worker_reports_invalid_scenario(tmp_path: Path) -> None:
    w = _worker(tmp_path)
    src = tmp_path / "broken.toml"
    src.write_text(
        'id = "d-008"\ntheme = "mystery"\n[[options]]\nid = "a"\ntext = "Only one"\n',
        encoding="utf-8",
    )

    rep = w.process(src)

    text = rep.read_text(encoding="utf-8")
    assert text.startswith("# crowdlore watch: 読み込みエラー")
    assert "exactly 3 options" in text
    assert not (tmp_path / "out" / "broken.balanced.json").exists()


def test_worker_reports_toml_syntax_error(tmp_path: Path) -> None:
    w = _worker(tmp_path)
    src = tmp_path / "syntax.toml"
    src.write_text("id = \n", encoding="utf-8")

    rep = w.process(src)
    assert "読み込みエラー" in rep.read_text(encoding="utf-8")
