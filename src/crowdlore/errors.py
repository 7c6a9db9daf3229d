"""例外の分類。

- ValidationError: 入力（シナリオ形状・投票）の不正。理由文字列つきで呼び出し元へ返す。
- ProcessingError: 締め処理の失敗。ProcessingStatus に failed として残る。
- StorageError: ストアへの書き込み失敗。投票/締め処理の失敗として伝播させる。
"""

from __future__ import annotations


class CrowdLoreError(Exception):
    """crowdlore 内の例外の基底。"""


class ValidationError(CrowdLoreError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ProcessingError(CrowdLoreError):
    pass


class StorageError(CrowdLoreError):
    pass
