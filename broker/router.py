# mqtt_test_server/broker/router.py

import asyncio
import json
import logging
import uuid
from typing import Optional, Set

from .events import Events, Hook
from .session import ClientInfo, Session, SessionManager
from .topics import match_topic

log = logging.getLogger(__name__)

MAX_QOS = 1


class ProtocolError(Exception):
    """The peer sent something that is not a valid packet."""


def _redact(pkt: dict) -> dict:
    if "password" not in pkt:
        return dict(pkt)
    return {k: v for k, v in pkt.items() if k != "password"}


def _peer_str(peer) -> str:
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return str(peer or "")


class Router:
    def __init__(self,
                 session_mgr: SessionManager,
                 events: Events,
                 listener: str = "t1"):
        self.session_mgr = session_mgr
        self.events      = events
        self.listener    = listener
        self._tasks: Set[asyncio.Task] = set()

    async def handle_client(self,
                            reader: asyncio.StreamReader,
                            writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._tasks.add(task)
        peer = _peer_str(writer.get_extra_info("peername"))
        session: Optional[Session] = None
        err: Optional[BaseException] = None
        try:
            # ─── 1) CONNECT ────────────────────────────────────────────────
            pkt = await self._recv_packet(reader)
            if not pkt or pkt.get("type") != "CONNECT":
                log.info(f"🚫 {peer} did not start with CONNECT")
                return

            username = str(pkt.get("username") or "")
            user = self.session_mgr.authenticate(username, str(pkt.get("password") or ""))
            if not user:
                log.info(f"🔒 Authentication failed for {username!r} from {peer}")
                await self._send_packet(writer, {"type": "CONNACK", "success": False})
                return

            client = ClientInfo(
                client_id=str(pkt.get("client_id") or f"auto-{uuid.uuid4().hex[:12]}"),
                username=username,
                remote=peer,
                listener=self.listener,
                tls=writer.get_extra_info("ssl_object") is not None,
            )
            session = self.session_mgr.create_session(client, user, writer)
            self.events.notify(Hook.CONNECT, client, _redact(pkt))
            await self._send(session, {"type": "CONNACK", "success": True,
                                       "client_id": client.client_id})

            # ─── 2) Main loop ──────────────────────────────────────────────
            while True:
                pkt = await self._recv_packet(reader)
                if pkt is None:
                    err = EOFError("connection closed by client")
                    break
                if pkt.get("type") == "DISCONNECT":
                    break
                await self._handle_packet(session, pkt)

        except (ProtocolError, ConnectionError, asyncio.IncompleteReadError) as exc:
            err = exc
            if session is not None:
                self.events.notify(Hook.ERROR, session.client, exc)
            else:
                log.warning(f"⚠️ {peer}: {exc}")

        # ─── 3) DISCONNECT ────────────────────────────────────────────────
        finally:
            if session is not None:
                self.session_mgr.terminate_session(session)
                self.events.notify(Hook.DISCONNECT, session.client, err)
            self._tasks.discard(task)
            await self._close(writer)

    async def _handle_packet(self, session: Session, pkt: dict):
        kind = pkt.get("type")
        if kind == "SUBSCRIBE":
            await self._handle_subscribe(session, self._topic(pkt), self._qos(pkt))
        elif kind == "UNSUBSCRIBE":
            await self._handle_unsubscribe(session, self._topic(pkt))
        elif kind == "PUBLISH":
            await self._handle_publish(session, pkt)
        elif kind == "PINGREQ":
            await self._send(session, {"type": "PINGRESP"})
        elif kind == "PUBACK":
            pass    # ack for an outbound QoS1 delivery
        else:
            raise ProtocolError(f"unexpected packet type {kind!r}")

    async def _handle_subscribe(self, session: Session, topic: str, qos: int):
        if not self.session_mgr.can_subscribe(session, topic):
            log.info(f"🚫 ACL denied SUBSCRIBE {topic!r} for {session.client.client_id!r}")
            await self._send(session, {"type": "SUBACK", "success": False, "topic": topic})
            return

        granted = min(qos, MAX_QOS)
        session.subscriptions[topic] = granted
        await self._send(session, {"type": "SUBACK", "success": True,
                                   "topic": topic, "qos": granted})
        self.events.notify(Hook.SUBSCRIBE, topic, session.client, granted)

    async def _handle_unsubscribe(self, session: Session, topic: str):
        session.subscriptions.pop(topic, None)
        await self._send(session, {"type": "UNSUBACK", "topic": topic})
        self.events.notify(Hook.UNSUBSCRIBE, topic, session.client)

    async def _handle_publish(self, session: Session, pkt: dict):
        topic = self._topic(pkt)
        qos = min(self._qos(pkt), MAX_QOS)
        pid = pkt.get("id")

        if not self.session_mgr.can_publish(session, topic):
            log.info(f"🚫 ACL denied PUBLISH {topic!r} for {session.client.client_id!r}")
            forward = None
        else:
            forward = self.events.on_message(session.client, pkt)

        if forward:
            await self._dispatch_publish(forward.get("topic", topic), forward.get("payload", ""), qos)
        if qos == 1 and pid is not None:
            await self._send(session, {"type": "PUBACK", "id": pid})

    async def _dispatch_publish(self, topic: str, payload, qos: int = 0):
        for sess in list(self.session_mgr.sessions.values()):
            granted = self._best_match(sess, topic)
            if granted is None:
                continue
            out = {
                "type":    "PUBLISH",
                "topic":   topic,
                "payload": payload,
                "retain":  False,
                "qos":     min(qos, granted),
            }
            if out["qos"] == 1:
                out["id"] = self.session_mgr.next_id(sess)
            try:
                await self._send(sess, out)
            except ConnectionError as exc:
                # the subscriber's own task reports its disconnect
                log.debug(f"delivery to {sess.client.client_id!r} failed: {exc}")

    @staticmethod
    def _best_match(session: Session, topic: str) -> Optional[int]:
        granted = [q for filt, q in session.subscriptions.items() if match_topic(filt, topic)]
        return max(granted) if granted else None

    @staticmethod
    def _topic(pkt: dict) -> str:
        topic = pkt.get("topic")
        if not isinstance(topic, str) or not topic:
            raise ProtocolError(f"{pkt.get('type')} packet without a topic")
        return topic

    @staticmethod
    def _qos(pkt: dict) -> int:
        qos = pkt.get("qos", 0)
        if qos not in (0, 1, 2):
            raise ProtocolError(f"invalid qos {qos!r}")
        return qos

    async def close_all(self):
        """Stop every connection task; no hook fires after this returns."""
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _recv_packet(self,
                           reader: asyncio.StreamReader) -> Optional[dict]:
        # newline‐delimited JSON framing
        try:
            line = await reader.readline()
        except ValueError as exc:
            # line longer than the stream limit
            raise ProtocolError(f"oversized packet: {exc}") from exc
        if not line:
            return None
        try:
            pkt = json.loads(line.decode().strip())
        except (UnicodeDecodeError, ValueError) as exc:
            raise ProtocolError(f"malformed packet: {exc}") from exc
        if not isinstance(pkt, dict):
            raise ProtocolError("malformed packet: expected a JSON object")
        return pkt

    async def _send(self, session: Session, packet: dict):
        async with session.send_lock:
            await self._send_packet(session.writer, packet)

    async def _send_packet(self,
                           writer: asyncio.StreamWriter,
                           packet: dict):
        data = (json.dumps(packet) + "\n").encode()
        writer.write(data)
        await writer.drain()

    async def _close(self,
                     writer: asyncio.StreamWriter):
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass
