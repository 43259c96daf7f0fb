# mqtt_test_server/audit/sinks.py

import logging
import sys
import threading
from typing import Optional, TextIO


class LogSink:
    """
    A single log destination. Every line is written while holding the
    sink's lock, so concurrent callers never interleave partial lines.
    """
    name = "sink"

    def __init__(self):
        self._lock = threading.Lock()

    def write_line(self, line: str) -> None:
        with self._lock:
            self._write(line + "\n")

    def _write(self, data: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class FileSink(LogSink):
    """Append-only text file, opened on construction and closed once."""

    def __init__(self, path: str, name: str = "file"):
        super().__init__()
        self.path = path
        self.name = name
        self._fh = open(path, "a", encoding="utf-8")

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def _write(self, data: str) -> None:
        self._fh.write(data)
        self._fh.flush()

    def close(self) -> None:
        with self._lock:
            if not self._fh.closed:
                self._fh.close()

    def __repr__(self) -> str:
        return f"FileSink({self.path!r})"


class ConsoleSink(LogSink):
    """
    Standard output, optionally mirrored line-by-line into a FileSink.
    """
    name = "console"

    def __init__(self,
                 stream: Optional[TextIO] = None,
                 mirror: Optional[FileSink] = None):
        super().__init__()
        self._stream = stream
        self.mirror = mirror

    @property
    def stream(self) -> TextIO:
        # resolved late so redirected stdout is honoured
        return self._stream if self._stream is not None else sys.stdout

    def write_line(self, line: str) -> None:
        super().write_line(line)
        if self.mirror is not None:
            self.mirror.write_line(line)

    def _write(self, data: str) -> None:
        self.stream.write(data)
        self.stream.flush()

    def close(self) -> None:
        if self.mirror is not None:
            self.mirror.close()


class SinkHandler(logging.Handler):
    """Routes operational log records into a sink (the console mirror file)."""

    def __init__(self, sink: LogSink, level=logging.NOTSET):
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(self.sink, "closed", False):
            return
        try:
            self.sink.write_line(self.format(record))
        except Exception:
            self.handleError(record)
