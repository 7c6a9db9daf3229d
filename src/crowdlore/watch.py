"""候補シナリオ受付フォルダの監視。

inbox に候補シナリオ（.toml）が置かれたら、合成有権者で試投票してバランス調整し、
outbox に次の2つを書き出す。

- `<stem>.balance.md`: 調整レポート（読み込めなかった場合はエラーレポート）
- `<stem>.balanced.json`: 調整後のシナリオ（そのまま publish に渡せる）

エディタの保存連打はデバウンスでまとめる。処理済みの mtime とスコアは
processed.json に残し、同じ内容を二度調整しない。

Observer 起動部分は薄くし、デバウンス/ワーカー/処理記録はユニットテストで担保する。
"""

from __future__ import annotations

import json
import logging
import queue
import random
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from crowdlore.balance import BalanceResult, balance_scenario
from crowdlore.config import BalanceConfig
from crowdlore.errors import ValidationError
from crowdlore.report import render_balance_report
from crowdlore.scenario import load_scenario

logger = logging.getLogger(__name__)

SCENARIO_SUFFIX = ".toml"


@dataclass
class ProcessedEntry:
    mtime_ns: int
    scenario_id: str = ""
    balance_score: float | None = None
    accepted: bool = False


class ProcessedLog:
    """ファイルごとの最終処理結果（mtime / シナリオID / スコア）。"""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._entries: dict[str, ProcessedEntry] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self._entries = {k: ProcessedEntry(**v) for k, v in raw.items()}
        except (json.JSONDecodeError, TypeError, AttributeError):
            # 壊れていたら全件やり直す（調整は何度やっても結果が変わらない）
            logger.warning("processed log is corrupt, starting fresh: %s", self.path)
            self._entries = {}

    def is_done(self, p: Path, mtime_ns: int) -> bool:
        with self._lock:
            entry = self._entries.get(str(p))
        return entry is not None and mtime_ns <= entry.mtime_ns

    def get(self, p: Path) -> ProcessedEntry | None:
        with self._lock:
            return self._entries.get(str(p))

    def record(self, p: Path, entry: ProcessedEntry) -> None:
        with self._lock:
            self._entries[str(p)] = entry
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = {k: asdict(v) for k, v in self._entries.items()}
            self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def _event(event_log_path: Path | None, msg: str) -> None:
    if event_log_path is None:
        return
    event_log_path.parent.mkdir(parents=True, exist_ok=True)
    ts = time.strftime("%Y-%m-%d %H:%M:%S")
    with event_log_path.open("a", encoding="utf-8") as f:
        f.write(f"[{ts}] {msg}\n")


class InboxDebouncer:
    """同じファイルへの連続イベントを、最後の1回から delay 秒後の1件にまとめる。"""

    def __init__(
        self,
        q: queue.Queue[Path],
        delay: float,
        *,
        event_log_path: Path | None = None,
    ) -> None:
        self.q = q
        self.delay = delay
        self.event_log_path = event_log_path
        self._lock = threading.Lock()
        self._pending: dict[Path, threading.Timer] = {}

    def touch(self, p: Path, why: str = "update") -> None:
        with self._lock:
            old = self._pending.pop(p, None)
            if old is not None:
                old.cancel()
            timer = threading.Timer(self.delay, self._release, args=(p, why))
            timer.daemon = True
            self._pending[p] = timer
            timer.start()

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def cancel_all(self) -> None:
        with self._lock:
            for timer in self._pending.values():
                timer.cancel()
            self._pending.clear()

    def _release(self, p: Path, why: str) -> None:
        with self._lock:
            self._pending.pop(p, None)
        _event(self.event_log_path, f"queued({why}): {p.name}")
        self.q.put(p)


class BalanceWorker:
    def __init__(
        self,
        q: queue.Queue[Path],
        *,
        outbox: Path,
        processed: ProcessedLog,
        settings: BalanceConfig | None = None,
        seed: int | None = None,
        event_log_path: Path | None = None,
    ) -> None:
        self.q = q
        self.outbox = outbox
        self.processed = processed
        self.settings = settings or BalanceConfig()
        self.seed = seed
        self.event_log_path = event_log_path
        self._halt = threading.Event()

    def halt(self) -> None:
        self._halt.set()

    def run_forever(self) -> None:
        while not self._halt.is_set():
            try:
                p = self.q.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.process(p)
            except Exception as e:  # noqa: BLE001
                # 1件の失敗でワーカーを止めない
                _event(self.event_log_path, f"worker error: {p.name}: {type(e).__name__}: {e}")
                logger.error("balance worker failed on %s", p, exc_info=True)
            finally:
                self.q.task_done()

    def process(self, p: Path) -> Path | None:
        """1ファイルを調整してレポートのパスを返す。対象外・処理済みなら None。"""
        if p.suffix.lower() != SCENARIO_SUFFIX or not p.is_file():
            return None
        mtime_ns = p.stat().st_mtime_ns
        if self.processed.is_done(p, mtime_ns):
            return None

        self.outbox.mkdir(parents=True, exist_ok=True)
        report_path = self.outbox / f"{p.stem}.balance.md"
        started = time.strftime("%Y-%m-%d %H:%M:%S")

        try:
            scenario = load_scenario(p)
        except (ValidationError, ValueError) as e:
            # TOML構文エラー（TOMLDecodeError は ValueError）/ 形状エラー
            report_path.write_text(_error_report(p, e), encoding="utf-8")
            _event(self.event_log_path, f"rejected: {p.name}: {e}")
            self.processed.record(p, ProcessedEntry(mtime_ns=mtime_ns))
            return report_path

        result = balance_scenario(scenario, rng=random.Random(self.seed), settings=self.settings)
        report_path.write_text(
            render_balance_report(result, started=started, source=p.name), encoding="utf-8"
        )
        self._write_balanced(p, result)
        _event(
            self.event_log_path,
            f"balanced: {p.name} score={result.balance_score:.2f} accepted={result.accepted}",
        )
        self.processed.record(
            p,
            ProcessedEntry(
                mtime_ns=mtime_ns,
                scenario_id=scenario.id,
                balance_score=result.balance_score,
                accepted=result.accepted,
            ),
        )
        return report_path

    def _write_balanced(self, p: Path, result: BalanceResult) -> None:
        out = self.outbox / f"{p.stem}.balanced.json"
        out.write_text(
            json.dumps(result.scenario.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
        )


def _error_report(p: Path, e: Exception) -> str:
    return (
        "# crowdlore watch: 読み込みエラー\n\n"
        f"`{p.name}` を候補シナリオとして解釈できませんでした。\n\n"
        f"```\n{e}\n```\n"
    )


class _InboxHandler(FileSystemEventHandler):
    def __init__(self, debouncer: InboxDebouncer) -> None:
        self.debouncer = debouncer

    def _maybe(self, path: str, why: str) -> None:
        p = Path(path)
        if p.suffix.lower() == SCENARIO_SUFFIX:
            self.debouncer.touch(p, why)

    def on_created(self, event):  # type: ignore[override]
        if not event.is_directory:
            self._maybe(event.src_path, "created")

    def on_modified(self, event):  # type: ignore[override]
        if not event.is_directory:
            self._maybe(event.src_path, "modified")

    def on_moved(self, event):  # type: ignore[override]
        # 一時ファイルに書いてから rename するエディタ向け
        if not event.is_directory:
            self._maybe(event.dest_path, "moved")


def watch_inbox(
    *,
    inbox: Path,
    outbox: Path,
    processed_path: Path,
    debounce_seconds: float = 0.25,
    settings: BalanceConfig | None = None,
    seed: int | None = None,
    workers: int = 2,
    stop_file: Path | None = None,
    event_log_path: Path | None = None,
) -> None:
    """inbox を監視し続ける。stop_file が現れるか Ctrl-C で終了。"""
    q: queue.Queue[Path] = queue.Queue()
    processed = ProcessedLog(processed_path)
    debouncer = InboxDebouncer(q, debounce_seconds, event_log_path=event_log_path)

    pool = [
        BalanceWorker(
            q,
            outbox=outbox,
            processed=processed,
            settings=settings,
            seed=seed,
            event_log_path=event_log_path,
        )
        for _ in range(max(1, min(workers, 8)))
    ]
    for w in pool:
        threading.Thread(target=w.run_forever, daemon=True).start()

    inbox.mkdir(parents=True, exist_ok=True)
    for p in sorted(inbox.glob(f"**/*{SCENARIO_SUFFIX}")):
        debouncer.touch(p, "scan")

    obs = Observer()
    obs.schedule(_InboxHandler(debouncer), str(inbox), recursive=True)
    obs.start()
    _event(event_log_path, f"watching {inbox} -> {outbox}")
    try:
        while stop_file is None or not stop_file.exists():
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        debouncer.cancel_all()
        for w in pool:
            w.halt()
        obs.stop()
        obs.join()
        _event(event_log_path, "watch stopped")
