"""logging の初期化。

- 詳細ログ: `.crowdlore/logs/crowdlore.log`（ローテーションあり）
- 警告以上は端末にも rich で出す（CLI から呼ぶとき）

投票受付・締め処理・バランス調整の経過をあとから追えるようにする。
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"

_configured = False


def setup_logging(*, root: Path, level: str = "INFO", console: bool = True) -> Path:
    """ルートロガーにファイル（と端末）ハンドラを付ける。2回目以降は何もしない。"""
    global _configured

    log_path = root / ".crowdlore" / "logs" / "crowdlore.log"
    if _configured:
        return log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.addHandler(file_handler)

    if console:
        term = RichHandler(console=Console(stderr=True), level=logging.WARNING, show_path=False)
        root_logger.addHandler(term)

    # watchdog は inotify のイベントごとに DEBUG を出す
    logging.getLogger("watchdog").setLevel(logging.WARNING)

    _configured = True
    return log_path
