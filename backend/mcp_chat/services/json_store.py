"""キー単位で JSON ドキュメントを丸ごと読み書きする永続化ストア。"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from ..config import settings

logger = logging.getLogger(__name__)


class JsonStoreError(Exception):
    """JSON ストアの書き込みに失敗した場合のエラー。"""


class JsonStateStore:
    """
    永続化ストアのファサード。

    1 キー = 1 ファイル (<data_dir>/<key>.json)。部分更新は行わず、
    変更のたびにドキュメント全体を書き直す。
    """

    def __init__(self, data_dir: Optional[str] = None) -> None:
        self.data_dir = Path(data_dir or settings.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise JsonStoreError(f"不正なストレージキーです: {key!r}")
        return self.data_dir / f"{key}.json"

    def load(self, key: str) -> Optional[Any]:
        """
        キーに対応するドキュメントを読み込む。

        ファイルが無い場合や壊れている場合は None を返す（壊れたファイルは警告ログのみ）。
        """
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("%s の読み込みに失敗したため空として扱います", path, exc_info=True)
            return None

    def save(self, key: str, document: Any) -> None:
        """ドキュメント全体を一時ファイル経由でアトミックに書き換える。"""
        path = self._path_for(key)
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.data_dir), prefix=f".{key}.", suffix=".tmp"
            )
        except OSError as exc:
            raise JsonStoreError(f"{path} への書き込みに失敗しました: {exc}") from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise JsonStoreError(f"{path} への書き込みに失敗しました: {exc}") from exc

    def delete(self, key: str) -> None:
        """キーに対応するドキュメントを削除する。存在しない場合は何もしない。"""
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
