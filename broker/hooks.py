# mqtt_test_server/broker/hooks.py

import dataclasses
import json
import threading
from collections import Counter
from typing import Optional

from audit.logger import AuditLogger, single_line
from audit.records import AuditRecord, EventKind
from auth.allowlist import MessageFilter
from .events import Events, Hook


def _to_json(obj) -> str:
    """Serialise client/packet metadata; anything unserialisable becomes ""."""
    try:
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            obj = dataclasses.asdict(obj)
        return json.dumps(obj)
    except (TypeError, ValueError):
        return ""


def _payload_text(payload) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode("utf-8", errors="replace")
    return _to_json(payload)


class AuditHooks:
    """
    Wires the allow-list filter and the audit logger onto the broker hooks.
    """
    def __init__(self, audit: AuditLogger, message_filter: MessageFilter):
        self.audit = audit
        self.filter = message_filter
        self._counters = Counter()
        self._lock = threading.Lock()

    def register(self, events: Events) -> None:
        events.register(Hook.ERROR, self.on_error)
        events.register(Hook.CONNECT, self.on_connect)
        events.register(Hook.DISCONNECT, self.on_disconnect)
        events.register(Hook.SUBSCRIBE, self.on_subscribe)
        events.register(Hook.UNSUBSCRIBE, self.on_unsubscribe)
        events.register(Hook.MESSAGE, self.on_message)

    def _count(self, name: str) -> None:
        with self._lock:
            self._counters[name] += 1

    def stats(self) -> dict:
        with self._lock:
            return dict(self._counters)

    # ─── Lifecycle ──────────────────────────────────────────────────────

    def on_error(self, client, err: Exception) -> None:
        self._count("errors")
        self.audit.log(AuditRecord(client.client_id, EventKind.ERROR, detail=str(err)))

    def on_connect(self, client, packet: dict) -> None:
        self._count("connects")
        info = f'{{"Client":{_to_json(client)},"Packet":{_to_json(packet)}}}'
        self.audit.log(AuditRecord(client.client_id, EventKind.CONNECT, detail=info))

    def on_disconnect(self, client, err: Optional[BaseException]) -> None:
        self._count("disconnects")
        detail = "" if err is None else single_line(str(err))
        self.audit.log(AuditRecord(client.client_id, EventKind.DISCONNECT, detail=detail))

    def on_subscribe(self, topic_filter: str, client, qos: int) -> None:
        self._count("subscribes")
        self.audit.log(AuditRecord(client.client_id, EventKind.SUBSCRIBED,
                                   subject=topic_filter,
                                   detail=f"{topic_filter} (QOS{qos})"))

    def on_unsubscribe(self, topic_filter: str, client) -> None:
        self._count("unsubscribes")
        self.audit.log(AuditRecord(client.client_id, EventKind.UNSUBSCRIBED,
                                   subject=topic_filter, detail=topic_filter))

    # ─── Messages ───────────────────────────────────────────────────────

    def on_message(self, client, packet: dict) -> Optional[dict]:
        topic = str(packet.get("topic", ""))
        payload = _payload_text(packet.get("payload"))
        if not self.filter.admits(client.client_id, topic, payload):
            self._count("messages_rejected")
            return None
        self._count("messages_accepted")
        self.audit.log(AuditRecord(client.client_id, EventKind.MESSAGE,
                                   subject=topic, detail=payload))
        return packet
