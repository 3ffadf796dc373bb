"""CSV trace of link activity: connection attempts, calibration and button events."""
from __future__ import annotations

import asyncio
import contextlib
import csv
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence


TRACE_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "status",
    "button",
    "value",
    "message",
    "extra",
)


def _encode_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    try:
        return json.dumps(extra, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(extra)


@dataclass(slots=True)
class TraceRecord:
    """One row of the trace file."""

    timestamp: str
    event: str
    status: Optional[str] = None
    button: Optional[int] = None
    value: Optional[float] = None
    message: Optional[str] = None
    extra: str = ""

    def as_row(self, fields: Sequence[str]) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "event": self.event,
            "status": self.status or "",
            "button": "" if self.button is None else self.button,
            "value": "" if self.value is None else self.value,
            "message": self.message or "",
            "extra": self.extra,
        }
        return {key: row.get(key, "") for key in fields}


class MetricsLogger:
    """Append-only CSV writer shared by the link components.

    Rows are flushed as they are written so that an experiment crash leaves a
    complete trace behind. Writes are serialized with a lock because
    :meth:`log_async` runs them on worker threads.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fields: Sequence[str] | None = None,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.fields: Sequence[str] = tuple(fields) if fields else TRACE_FIELDS
        if "event" not in self.fields:
            raise ValueError("fields must include 'event'")

        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._static_extra: Dict[str, Any] = dict(static_extra or {})
        self._lock = threading.Lock()
        self._scopes = threading.local()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._write_header()

    def log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        button: Optional[int] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        record = TraceRecord(
            timestamp=self._now(),
            event=event,
            status=status,
            button=button,
            value=value,
            message=message,
            extra=_encode_extra(self._merged_extra(extra)),
        )
        row = record.as_row(self.fields)
        with self._lock:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore").writerow(row)
                handle.flush()

    async def log_async(self, event: str, **kwargs: Any) -> None:
        await asyncio.to_thread(self.log, event, **kwargs)

    @contextlib.contextmanager
    def scope(self, extra: Mapping[str, Any] | None = None, **extra_kwargs: Any) -> Iterator[None]:
        """Attach ``extra`` to every row logged on this thread inside the block."""
        layer: Dict[str, Any] = dict(extra or {})
        layer.update(extra_kwargs)
        stack = self._scope_stack()
        stack.append(layer)
        try:
            yield
        finally:
            stack.pop()

    @contextlib.contextmanager
    def timer(self, event: str, **extra: Any) -> Iterator[None]:
        """Log ``event`` with the block's duration in milliseconds."""
        started = perf_counter()
        try:
            yield
        except Exception as exc:
            elapsed = (perf_counter() - started) * 1000.0
            self.log(
                event,
                status="error",
                value=elapsed,
                message=str(exc),
                extra={**extra, "exception": type(exc).__name__},
            )
            raise
        else:
            self.log(event, status="ok", value=(perf_counter() - started) * 1000.0, extra=extra)

    def _write_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore").writeheader()

    def _now(self) -> str:
        try:
            moment = self._clock()
        except Exception:  # pragma: no cover - faulty injected clock
            moment = datetime.now(timezone.utc)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")

    def _merged_extra(self, extra: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        merged = dict(self._static_extra)
        for layer in self._scope_stack():
            merged.update(layer)
        if extra:
            merged.update(extra)
        return merged

    def _scope_stack(self) -> list[Dict[str, Any]]:
        stack = getattr(self._scopes, "stack", None)
        if stack is None:
            stack = []
            self._scopes.stack = stack
        return stack


__all__ = ["MetricsLogger", "TraceRecord", "TRACE_FIELDS"]
