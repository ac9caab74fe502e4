# 〔このモジュールがすること〕
# 戦略の意思決定イベントを「1行JSON」で記録します（リングバッファ + 任意でファイル書き出し）。
# ログ項目例: signal/guard_skip/buy/force_hedge/exit_fired/exit_skipped/transition/drawdown など。

from __future__ import annotations

import json
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from pm_core.utils.logger import get_logger

logger = get_logger("pm_core.decision_log")


class DecisionLogger:
    """〔このクラスがすること〕
    意思決定イベントをリングバッファに蓄え、必要なら JSONL ファイルへ追記します。
    """

    def __init__(self, maxlen: int = 10000, filepath: Optional[str] = None) -> None:
        self._buf: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._path: Optional[str] = filepath

    def log(self, event: str, **fields: Any) -> None:
        """〔このメソッドがすること〕
        {t,event,...} 形式で記録します。ファイル指定があれば追記します。
        """
        rec: Dict[str, Any] = {"t": time.time(), "event": str(event)}
        rec.update(fields)
        self._buf.append(rec)
        if self._path:
            try:
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(rec, ensure_ascii=False, default=str) + "\n")
            except OSError as e:
                logger.warning("decision log write failed: %s", e)

    def latest(self, n: int = 100) -> List[Dict[str, Any]]:
        if n <= 0:
            return []
        return list(self._buf)[-n:]

    def events(self, name: str) -> List[Dict[str, Any]]:
        """〔このメソッドがすること〕 指定イベント名の記録だけを古い順に返します。"""
        return [r for r in self._buf if r.get("event") == name]
