"""ストア境界: キーバリュー / ハッシュ / ソート済み集合。

投票の重複防止とカウンタは、ストア側の条件付き書き込み（set_if_absent）と
アトミックなインクリメント（hash_incr）で担保する。読み出して書き戻す方式は使わない。

実装:
- MemoryStore: プロセス内（ロックで直列化）。テストの土台。
- SqliteStore: `.crowdlore/store.db`。操作ごとにトランザクションを張るので、
  `crowdlore vote` を別プロセスで同時に叩いても1人1票とカウンタの整合が保たれる。
"""

from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Protocol

from crowdlore.errors import StorageError


class Store(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl: float | None = None) -> None: ...

    def set_if_absent(self, key: str, value: str, ttl: float | None = None) -> bool: ...

    def delete(self, key: str) -> None: ...

    def hash_set(self, key: str, field: str, value: str) -> None: ...

    def hash_get_all(self, key: str) -> dict[str, str]: ...

    def hash_delete(self, key: str, field: str) -> None: ...

    def hash_incr(self, key: str, increments: dict[str, int]) -> dict[str, int]: ...

    def sorted_set_add(self, key: str, member: str, score: float) -> None: ...

    def sorted_set_rank(self, key: str, member: str) -> int | None: ...

    def sorted_set_score(self, key: str, member: str) -> float | None: ...

    def sorted_set_card(self, key: str) -> int: ...

    def sorted_set_remove(self, key: str, member: str) -> None: ...


def _as_int(key: str, field: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as e:
        raise StorageError(f"hash field {key}.{field} is not an integer") from e


class MemoryStore:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._kv: dict[str, tuple[str, float | None]] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}

    # --- key/value

    def _live(self, key: str) -> str | None:
        item = self._kv.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._kv[key]
            return None
        return value

    def _expiry(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        with self._lock:
            self._kv[key] = (value, self._expiry(ttl))

    def set_if_absent(self, key: str, value: str, ttl: float | None = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._kv[key] = (value, self._expiry(ttl))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._kv.pop(key, None)
            self._hashes.pop(key, None)
            self._zsets.pop(key, None)

    # --- hash

    def hash_set(self, key: str, field: str, value: str) -> None:
        with self._lock:
            self._hashes.setdefault(key, {})[field] = value

    def hash_get_all(self, key: str) -> dict[str, str]:
        with self._lock:
            return dict(self._hashes.get(key, {}))

    def hash_delete(self, key: str, field: str) -> None:
        with self._lock:
            h = self._hashes.get(key)
            if h is not None:
                h.pop(field, None)

    def hash_incr(self, key: str, increments: dict[str, int]) -> dict[str, int]:
        """複数フィールドをまとめてアトミックに加算し、加算後の値を返す。"""
        with self._lock:
            h = self._hashes.setdefault(key, {})
            out = {f: _as_int(key, f, h.get(f, "0")) + int(n) for f, n in increments.items()}
            for f, v in out.items():
                h[f] = str(v)
            return out

    # --- sorted set

    def sorted_set_add(self, key: str, member: str, score: float) -> None:
        with self._lock:
            self._zsets.setdefault(key, {})[member] = float(score)

    def sorted_set_rank(self, key: str, member: str) -> int | None:
        """スコアの高い順で 0 始まりの順位。同点はメンバー名順。"""
        with self._lock:
            z = self._zsets.get(key, {})
            if member not in z:
                return None
            score = z[member]
            return sum(1 for m, s in z.items() if s > score or (s == score and m < member))

    def sorted_set_score(self, key: str, member: str) -> float | None:
        with self._lock:
            return self._zsets.get(key, {}).get(member)

    def sorted_set_card(self, key: str) -> int:
        with self._lock:
            return len(self._zsets.get(key, {}))

    def sorted_set_remove(self, key: str, member: str) -> None:
        with self._lock:
            z = self._zsets.get(key)
            if z is not None:
                z.pop(member, None)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS kv (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        expires_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hashes (
        key TEXT NOT NULL,
        field TEXT NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (key, field)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS zsets (
        key TEXT NOT NULL,
        member TEXT NOT NULL,
        score REAL NOT NULL,
        PRIMARY KEY (key, member)
    )
    """,
)


class SqliteStore:
    """SQLite ファイル上のストア。複数プロセス・複数スレッドから同じパスを開いてよい。

    接続は操作ごとに開く。書き込みは `BEGIN IMMEDIATE` で書き込みロックを先に取るので、
    set_if_absent の「確認して書く」と hash_incr の加算は他のプロセスと交差しない。
    """

    def __init__(
        self,
        path: Path,
        *,
        clock: Callable[[], float] = time.time,
        timeout: float = 30.0,
    ) -> None:
        self.path = path
        self._clock = clock
        self.timeout = timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._tx(write=True) as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)

    @contextmanager
    def _tx(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageError(f"cannot open store {self.path}: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageError(f"store {self.path}: {e}") from e
        finally:
            conn.close()

    # --- key/value

    def _live(self, conn: sqlite3.Connection, key: str) -> str | None:
        row = conn.execute("SELECT value, expires_at FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and self._clock() >= expires_at:
            return None
        return value

    def _expiry(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def get(self, key: str) -> str | None:
        with self._tx() as conn:
            return self._live(conn, key)

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        with self._tx(write=True) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, self._expiry(ttl)),
            )

    def set_if_absent(self, key: str, value: str, ttl: float | None = None) -> bool:
        with self._tx(write=True) as conn:
            # 期限切れの行は空きとみなす
            conn.execute(
                "DELETE FROM kv WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                (key, self._clock()),
            )
            cur = conn.execute(
                "INSERT OR IGNORE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, self._expiry(ttl)),
            )
            return cur.rowcount == 1

    def delete(self, key: str) -> None:
        with self._tx(write=True) as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.execute("DELETE FROM hashes WHERE key = ?", (key,))
            conn.execute("DELETE FROM zsets WHERE key = ?", (key,))

    # --- hash

    def hash_set(self, key: str, field: str, value: str) -> None:
        with self._tx(write=True) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO hashes (key, field, value) VALUES (?, ?, ?)",
                (key, field, value),
            )

    def hash_get_all(self, key: str) -> dict[str, str]:
        with self._tx() as conn:
            rows = conn.execute("SELECT field, value FROM hashes WHERE key = ?", (key,)).fetchall()
        return {f: v for f, v in rows}

    def hash_delete(self, key: str, field: str) -> None:
        with self._tx(write=True) as conn:
            conn.execute("DELETE FROM hashes WHERE key = ? AND field = ?", (key, field))

    def hash_incr(self, key: str, increments: dict[str, int]) -> dict[str, int]:
        """複数フィールドを1トランザクションで加算し、加算後の値を返す。"""
        out: dict[str, int] = {}
        with self._tx(write=True) as conn:
            for f, n in increments.items():
                row = conn.execute(
                    "SELECT value FROM hashes WHERE key = ? AND field = ?", (key, f)
                ).fetchone()
                out[f] = (_as_int(key, f, row[0]) if row else 0) + int(n)
                conn.execute(
                    "INSERT OR REPLACE INTO hashes (key, field, value) VALUES (?, ?, ?)",
                    (key, f, str(out[f])),
                )
        return out

    # --- sorted set

    def sorted_set_add(self, key: str, member: str, score: float) -> None:
        with self._tx(write=True) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO zsets (key, member, score) VALUES (?, ?, ?)",
                (key, member, float(score)),
            )

    def sorted_set_rank(self, key: str, member: str) -> int | None:
        """スコアの高い順で 0 始まりの順位。同点はメンバー名順。"""
        with self._tx() as conn:
            row = conn.execute(
                "SELECT score FROM zsets WHERE key = ? AND member = ?", (key, member)
            ).fetchone()
            if row is None:
                return None
            (ahead,) = conn.execute(
                "SELECT COUNT(*) FROM zsets WHERE key = ? AND (score > ? OR (score = ? AND member < ?))",
                (key, row[0], row[0], member),
            ).fetchone()
        return int(ahead)

    def sorted_set_score(self, key: str, member: str) -> float | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT score FROM zsets WHERE key = ? AND member = ?", (key, member)
            ).fetchone()
        return None if row is None else float(row[0])

    def sorted_set_card(self, key: str) -> int:
        with self._tx() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM zsets WHERE key = ?", (key,)).fetchone()
        return int(n)

    def sorted_set_remove(self, key: str, member: str) -> None:
        with self._tx(write=True) as conn:
            conn.execute("DELETE FROM zsets WHERE key = ? AND member = ?", (key, member))
