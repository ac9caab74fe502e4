# src/pm_core/utils/logger.py
from __future__ import annotations

import copy
import csv
import datetime as _dt
import io
import logging
import logging.handlers
import os
import time as _time
from pathlib import Path
from typing import Final, Optional

from colorama import Fore, Style, init as _color_init

# ────────────────────────────────────────────────────────────
# 内部定数
# ────────────────────────────────────────────────────────────
_TZ: Final = _dt.timezone.utc
_LOG_FMT: Final = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FMT: Final = "%Y-%m-%d %H:%M:%S"
# PID も含めて CSV 出力する
_CSV_FIELDS_WITH_LOGGER: Final = ("asctime", "levelname", "process", "name", "message")
_CSV_FIELDS_NO_LOGGER: Final = ("asctime", "levelname", "process", "message")
_LEVEL_COLOR: Final = {
    logging.DEBUG: Fore.CYAN,
    logging.INFO: Fore.GREEN,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.MAGENTA,
}

_NOISY_NETWORK_LOGGERS: Final = (
    "websockets",
    "websockets.client",
    "httpx",
    "httpcore",
    "asyncio",
)

_LOGGER_CONFIGURED = False


def _utc_converter(timestamp: float | None) -> _time.struct_time:
    ts = 0.0 if timestamp is None else float(timestamp)
    return _dt.datetime.fromtimestamp(ts, tz=_TZ).timetuple()


class _ColorFormatter(logging.Formatter):
    """レベルに応じて色付けして表示するコンソール用フォーマッタ."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        record = copy.copy(record)
        color = _LEVEL_COLOR.get(record.levelno, "")
        if color:
            record.msg = f"{color}{record.msg}{Style.RESET_ALL}"
        return super().format(record)


class _CsvFormatter(logging.Formatter):
    """CSV 形式でログ行を生成するフォーマッタ."""

    def __init__(self, *, fields: tuple[str, ...], datefmt: str | None = None) -> None:
        super().__init__(None, datefmt)
        self._fields = fields

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        record = copy.copy(record)
        record.message = record.getMessage()
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)

        buffer = io.StringIO()
        row: list[str] = []
        for name in self._fields:
            if name == "asctime":
                row.append(self.formatTime(record, self.datefmt))
            elif name == "message":
                row.append(record.message)
            else:
                value = getattr(record, name, "")
                row.append("" if value is None else str(value))
        csv.writer(buffer).writerow(row)
        output = buffer.getvalue().rstrip("\r\n")
        if record.exc_text:
            output = f"{output}\n{record.exc_text}"
        return output


def create_csv_formatter(*, include_logger_name: bool = True) -> logging.Formatter:
    fields = _CSV_FIELDS_WITH_LOGGER if include_logger_name else _CSV_FIELDS_NO_LOGGER
    return _CsvFormatter(fields=fields, datefmt=_DATE_FMT)


def _coerce_level(value: str | int | None, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return default
    if text.lstrip("+-").isdecimal():
        return int(text)
    numeric = logging.getLevelName(text.upper())
    if isinstance(numeric, int):
        return numeric
    raise ValueError(f"Unknown log level: {value!r}")


class _BotFilter(logging.Filter):
    """bot 名に属するロガーと共通コア（pm_core）だけを通すフィルタ."""

    def __init__(self, bot_name: str) -> None:
        super().__init__()
        self._target = bot_name.lower()

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        name = (record.name or "").lower()
        if self._target == "runner" and name in {"__main__", "runner"}:
            return True
        return (
            name == self._target
            or name.startswith(f"{self._target}.")
            or name.startswith(f"bots.{self._target}")
            or name.startswith("pm_core.")
        )


# ────────────────────────────────────────────────────────────
# パブリック API
# ────────────────────────────────────────────────────────────
def setup_logger(
    bot_name: Optional[str] = None,
    *,
    console_level: str | int | None = None,
    file_level: str | int | None = None,
    log_root: Path | str = "logs",
) -> None:
    """
    ロガーをシングルトンで初期化する。

    ```python
    from pm_core.utils.logger import setup_logger

    setup_logger(bot_name="pairarb")
    logger = logging.getLogger(__name__)
    logger.info("hello")
    ```

    Console and rotating file handlers default to ``LOG_LEVEL`` (``INFO``
    when unset); explicit ``console_level`` / ``file_level`` win over the
    environment. Calling it again only re-targets the file handlers.
    """
    global _LOGGER_CONFIGURED

    default_level = _coerce_level(os.getenv("LOG_LEVEL"), default=logging.INFO)
    console_value = _coerce_level(console_level, default=default_level)
    file_value = _coerce_level(file_level, default=default_level)
    root_logger = logging.getLogger()

    target_dir = Path(log_root).resolve() / (bot_name or "common")
    target_dir.mkdir(parents=True, exist_ok=True)
    rotating_path = target_dir / f"{bot_name or 'common'}.csv"
    error_path = target_dir / "error.csv"

    # 別 bot 向けの回転ファイルは外す（同じパスなら再利用）
    rotating: logging.handlers.TimedRotatingFileHandler | None = None
    for handler in list(root_logger.handlers):
        if not isinstance(handler, logging.handlers.TimedRotatingFileHandler):
            continue
        if getattr(handler, "baseFilename", None) == str(rotating_path):
            rotating = handler
            continue
        root_logger.removeHandler(handler)
        handler.close()

    if rotating is None:
        rotating = logging.handlers.TimedRotatingFileHandler(
            filename=str(rotating_path),
            when="midnight",
            interval=1,
            backupCount=7,
            encoding="utf-8",
            utc=True,
        )
        root_logger.addHandler(rotating)
    rotating.setLevel(file_value)
    rotating.setFormatter(create_csv_formatter())
    rotating.filters[:] = []
    if bot_name:
        rotating.addFilter(_BotFilter(bot_name))

    has_error_file = any(
        isinstance(h, logging.FileHandler)
        and not isinstance(h, logging.handlers.TimedRotatingFileHandler)
        and getattr(h, "baseFilename", None) == str(error_path)
        for h in root_logger.handlers
    )
    if not has_error_file:
        eh = logging.FileHandler(str(error_path), encoding="utf-8")
        eh.setLevel(logging.WARNING)
        eh.setFormatter(create_csv_formatter())
        root_logger.addHandler(eh)

    if not _LOGGER_CONFIGURED:
        _color_init(strip=False)  # colorama 初期化
        ch = logging.StreamHandler()
        ch.setFormatter(_ColorFormatter(_LOG_FMT, datefmt=_DATE_FMT))
        root_logger.addHandler(ch)
        # タイムゾーンを UTC に統一
        logging.Formatter.converter = staticmethod(_utc_converter)  # type: ignore[assignment]
        _LOGGER_CONFIGURED = True

    root_level = min(console_value, file_value)
    root_logger.setLevel(root_level)
    for handler in root_logger.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(
            handler, logging.FileHandler
        ):
            handler.setLevel(console_value)
    for name in _NOISY_NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.INFO, root_level))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger with a daily rotating CSV file under ``logs/<component>/``."""

    logger = logging.getLogger(name)
    _attach_daily_file_handler(logger, logger.name)
    # 役割: 戦略ロガー(bots.*)が root に伝播して二重出力されるのを防ぐ
    if logger.name.startswith("bots."):
        logger.propagate = False
    return logger


def _resolve_log_path(logger_name: str) -> Path:
    """
    logger 名から logs/<component>/<component>.csv を返す。
    bots.<bot>.* は logs/<bot>/<bot>.csv、それ以外は先頭要素を使う。
    """
    parts = [p for p in logger_name.lower().split(".") if p]
    if len(parts) >= 2 and parts[0] == "bots":
        component = parts[1]
    else:
        component = parts[0] if parts else "root"
    log_dir = Path("logs") / component
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"{component}.csv"


def _attach_daily_file_handler(logger: logging.Logger, logger_name: str) -> None:
    if os.getenv("PM_DISABLE_FILE_LOGS", "0") == "1":
        return
    path = _resolve_log_path(logger_name)
    for handler in logger.handlers:
        if getattr(handler, "baseFilename", None) == str(path.resolve()):
            return

    file_handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(path),
        when="midnight",
        backupCount=14,
        encoding="utf-8",
        utc=True,
        delay=True,
    )
    file_handler.setLevel(logger.level)
    file_handler.setFormatter(create_csv_formatter())
    logger.addHandler(file_handler)
