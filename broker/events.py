# mqtt_test_server/broker/events.py

import enum
import logging
from typing import Callable, Dict, Optional

log = logging.getLogger(__name__)


class Hook(enum.Enum):
    ERROR       = "error"
    CONNECT     = "connect"
    DISCONNECT  = "disconnect"
    SUBSCRIBE   = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    MESSAGE     = "message"


class Events:
    """
    Handler slots the router calls on session activity.

    Signatures:
        ERROR       (client, err)
        CONNECT     (client, packet)
        DISCONNECT  (client, err or None)
        SUBSCRIBE   (filter, client, qos)
        UNSUBSCRIBE (filter, client)
        MESSAGE     (client, packet) -> packet to forward, or None to drop it
    """
    def __init__(self):
        self._handlers: Dict[Hook, Callable] = {}

    def register(self, hook: Hook, handler: Callable) -> None:
        if not isinstance(hook, Hook):
            raise TypeError(f"unknown hook {hook!r}")
        self._handlers[hook] = handler

    def notify(self, hook: Hook, *args) -> None:
        handler = self._handlers.get(hook)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            # a failing handler must not take the session down
            log.exception(f"{hook.value} handler failed")

    def on_message(self, client, packet: dict) -> Optional[dict]:
        handler = self._handlers.get(Hook.MESSAGE)
        if handler is None:
            return packet
        try:
            return handler(client, packet)
        except Exception:
            log.exception("message handler failed, forwarding unchanged")
            return packet
