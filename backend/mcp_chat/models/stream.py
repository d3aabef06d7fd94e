"""チャットストリームの復号結果として得られるイベント。"""

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Delta:
    """アシスタント応答の断片。"""

    text: str


@dataclass(frozen=True)
class Done:
    """終端の [DONE] を受信した。"""


@dataclass(frozen=True)
class Error:
    """ストリームが失敗し、以降のイベントは発生しない。"""

    message: str


StreamEvent = Union[Delta, Done, Error]
