from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO

LEVELS: dict[str, int] = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}

_MESSAGE_LIMIT = 2000
_TRACEBACK_LIMIT = 12000


def _clip(text: str, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)] + "…"


def _level_name(level: str, *, default: str = "INFO") -> str:
    name = (level or "").strip().upper()
    return name if name in LEVELS else default


def error_payload(exc: BaseException) -> dict[str, str]:
    """Type, message and traceback of `exc`, clipped for one log line."""
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {
        "type": type(exc).__name__,
        "message": _clip(str(exc), _MESSAGE_LIMIT),
        "traceback": _clip(tb, _TRACEBACK_LIMIT),
    }


class RunLogger:
    """
    JSONL event log of a crawl run.

    One JSON object per line with `ts`, `level`, `event`, `session_id` and, when known,
    `run_id`, `url` and a `data` mapping. Events under the minimum level are dropped.
    With `echo` set, WARN and ERROR events are also printed there as one short line.
    Safe to share between the crawl workers.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        overwrite: bool = True,
        run_id: str | None = None,
        session_id: str | None = None,
        min_level: str = "INFO",
        echo: TextIO | None = None,
    ) -> None:
        self._path = Path(path)
        self._truncate_on_open = bool(overwrite)
        self._run_id = (run_id or "").strip() or None
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._threshold = LEVELS[_level_name(min_level)]
        self._echo = echo
        self._stream: TextIO | None = None
        self._lock = Lock()

    @classmethod
    def open(cls, path: str | Path, **kwargs: Any) -> "RunLogger":
        logger = cls(path, **kwargs)
        logger._open_stream()
        return logger

    def __enter__(self) -> "RunLogger":
        self._open_stream()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.flush()
            finally:
                stream.close()

    def set_run_id(self, run_id: str) -> None:
        rid = (run_id or "").strip()
        if rid:
            self._run_id = rid

    def set_min_level(self, level: str) -> None:
        name = _level_name(level, default="")
        if name:
            self._threshold = LEVELS[name]

    def enabled_for(self, level: str) -> bool:
        return LEVELS[_level_name(level)] >= self._threshold

    def debug(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("DEBUG", event, url=url, **data)

    def info(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("INFO", event, url=url, **data)

    def warning(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("WARN", event, url=url, **data)

    def error(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("ERROR", event, url=url, **data)

    def exception(
        self,
        event: str,
        *,
        exc: BaseException,
        url: str | None = None,
        level: str = "ERROR",
        **data: Any,
    ) -> None:
        self.log(level, event, url=url, error=error_payload(exc), **data)

    def log(self, level: str, event: str, *, url: str | None = None, **data: Any) -> None:
        name = _level_name(level)
        if LEVELS[name] < self._threshold:
            return

        record: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": name,
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }
        if self._run_id:
            record["run_id"] = self._run_id
        target = (url or "").strip()
        if target:
            record["url"] = target
        if data:
            record["data"] = data

        self._append(record)

        if self._echo is not None and LEVELS[name] >= LEVELS["WARN"]:
            line = f"[{name}] {record['event']}"
            print(f"{line} {target}" if target else line, file=self._echo)

    def _open_stream(self) -> TextIO:
        with self._lock:
            if self._stream is None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                mode = "w" if self._truncate_on_open else "a"
                self._stream = self._path.open(mode, encoding="utf-8", newline="\n")
                # Reopening after close() must not wipe what was written.
                self._truncate_on_open = False
            return self._stream

    def _append(self, record: dict[str, Any]) -> None:
        line = json.dumps(
            record,
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        stream = self._open_stream()
        with self._lock:
            stream.write(line + "\n")
            stream.flush()
