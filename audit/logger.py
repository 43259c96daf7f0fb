# mqtt_test_server/audit/logger.py

import logging
from typing import List, Optional

import config.settings as settings
from .records import AuditRecord, Category, EventKind
from .sinks import ConsoleSink, FileSink, LogSink

log = logging.getLogger(__name__)

CONSOLE_TEMPLATES = {
    EventKind.CONNECT:      "Client {client} connected: {detail}",
    EventKind.DISCONNECT:   "Client {client} disconnected: {detail}",
    EventKind.SUBSCRIBED:   "Client {client} subscribed {detail}",
    EventKind.UNSUBSCRIBED: "Client {client} unsubscribed {subject}",
    EventKind.MESSAGE:      "Message: {client}, Topic: {subject}, Payload: {detail}",
    EventKind.ERROR:        "Client {client}: {detail}",
}


def single_line(field: str) -> str:
    return field.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")


def neutralize(field: str) -> str:
    """Keep a value inside one quoted CSV column on one line."""
    return single_line(field.replace('"', "'"))


class AuditLogger:
    """
    Renders AuditRecords and dispatches them to the console and to the
    file sink that owns the record's category.
    """
    def __init__(self,
                 console: Optional[ConsoleSink] = None,
                 data: Optional[FileSink] = None,
                 status: Optional[FileSink] = None,
                 timestamps: bool = False,
                 time_format: str = settings.TIME_FORMAT):
        self.console     = console or ConsoleSink()
        self.data        = data
        self.status      = status
        self.timestamps  = timestamps
        self.time_format = time_format
        self._closed     = False

    @classmethod
    def from_config(cls, config) -> "AuditLogger":
        """
        Open every sink the configuration enables. If one cannot be opened
        the ones already opened are closed again before the error propagates.
        """
        opened: List[LogSink] = []
        try:
            mirror = FileSink(config.console_log, "console-log") if config.console_log else None
            if mirror:
                opened.append(mirror)
            data = FileSink(config.data_log, "data-log") if config.data_log else None
            if data:
                opened.append(data)
            status = FileSink(config.status_log, "status-log") if config.status_log else None
        except OSError:
            for sink in opened:
                sink.close()
            raise
        return cls(
            console=ConsoleSink(mirror=mirror),
            data=data,
            status=status,
            timestamps=config.timestamps,
        )

    # ─── Rendering ──────────────────────────────────────────────────────

    def render_console(self, record: AuditRecord) -> str:
        text = CONSOLE_TEMPLATES[record.kind].format(
            client=single_line(record.client_id),
            subject=single_line(record.subject),
            detail=single_line(record.detail),
        )
        return f"[{record.timestamp.strftime(self.time_format)}] [{record.kind.code}] {text}"

    def render_file(self, record: AuditRecord) -> str:
        # status rows name the event, data rows name the topic
        subject = record.subject if record.kind is EventKind.MESSAGE else record.kind.label
        fields = [record.client_id, subject, record.detail]
        if self.timestamps:
            fields.insert(0, record.timestamp.strftime(self.time_format))
        return ",".join(f'"{neutralize(f)}"' for f in fields)

    # ─── Dispatch ───────────────────────────────────────────────────────

    def file_sink_for(self, category: Category) -> Optional[FileSink]:
        if category is Category.MESSAGE:
            return self.data
        if category in (Category.LIFECYCLE, Category.STATUS):
            return self.status
        return None

    def log(self, record: AuditRecord) -> None:
        self._emit(self.console, self.render_console(record))
        sink = self.file_sink_for(record.category)
        if sink is not None:
            self._emit(sink, self.render_file(record))

    def _emit(self, sink: LogSink, line: str) -> None:
        try:
            sink.write_line(line)
        except (OSError, ValueError) as exc:
            log.error(f"⚠️ Write to {sink.name} failed: {exc}")

    def enabled_sinks(self) -> dict:
        return {
            "console":     True,
            "console_log": getattr(self.console.mirror, "path", None),
            "data_log":    getattr(self.data, "path", None),
            "status_log":  getattr(self.status, "path", None),
            "timestamps":  self.timestamps,
        }

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for sink in (self.data, self.status, self.console):
            if sink is not None:
                sink.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
