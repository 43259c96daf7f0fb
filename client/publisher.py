# mqtt_test_server/client/publisher.py

import asyncio
import ssl
import json
import argparse
from typing import Optional

from config.settings import HOST, PORT


def make_ssl_context(cafile: Optional[str] = None,
                     certfile: Optional[str] = None,
                     keyfile: Optional[str] = None) -> ssl.SSLContext:
    """
    Client-side context: trust `cafile`, and present a client certificate
    when the broker runs in mutual TLS mode.
    """
    ctx = ssl.create_default_context(
        purpose=ssl.Purpose.SERVER_AUTH,
        cafile=cafile
    )
    if certfile:
        ctx.load_cert_chain(certfile=certfile, keyfile=keyfile)
    return ctx


async def close_writer(writer: asyncio.StreamWriter):
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


class Publisher:
    def __init__(self,
                 client_id: str,
                 topic: str,
                 message: str,
                 username: str = "",
                 password: str = "",
                 qos: int = 0,
                 host: str = HOST,
                 port: int = PORT,
                 ssl_context: Optional[ssl.SSLContext] = None):
        self.client_id   = client_id
        self.username    = username
        self.password    = password
        self.topic       = topic
        self.message     = message
        self.qos         = qos
        self.host        = host
        self.port        = port
        self.ssl_context = ssl_context
        # packet id counter
        self._next_id = 1

    def _get_packet_id(self) -> int:
        pid = self._next_id
        self._next_id = pid + 1 if pid < 0xFFFF else 1
        return pid

    async def run(self) -> bool:
        """Connect, publish once, disconnect. False if the broker refused us."""
        reader, writer = await asyncio.open_connection(self.host, self.port, ssl=self.ssl_context)

        # CONNECT
        connect_pkt = {
            "type":      "CONNECT",
            "client_id": self.client_id,
            "username":  self.username,
            "password":  self.password
        }
        writer.write((json.dumps(connect_pkt) + "\n").encode())
        await writer.drain()

        line = await reader.readline()
        resp = json.loads(line.decode()) if line else {}
        if not resp.get("success"):
            print("❌ Authentication failed")
            await close_writer(writer)
            return False

        print("✅ Connected, publishing…")

        # PUBLISH
        pub_pkt = {
            "type":    "PUBLISH",
            "topic":   self.topic,
            "payload": self.message,
            "qos":     self.qos
        }
        pub_id = None
        if self.qos >= 1:
            pub_id = self._get_packet_id()
            pub_pkt["id"] = pub_id

        writer.write((json.dumps(pub_pkt) + "\n").encode())
        await writer.drain()

        # QoS1 handshake; the broker handles the message before acking
        if pub_id is not None:
            ack = json.loads((await reader.readline()).decode())
            if ack.get("type") == "PUBACK" and ack.get("id") == pub_id:
                print(f"✅ PUBACK received for {pub_id}")
            else:
                print("⚠️ Unexpected PUBACK:", ack)

        # DISCONNECT
        writer.write((json.dumps({"type":"DISCONNECT"}) + "\n").encode())
        await writer.drain()
        await close_writer(writer)
        print("🔌 Disconnected")
        return True


if __name__ == "__main__":
    p = argparse.ArgumentParser(description="MQTT‑style test publisher")
    p.add_argument("--client-id",   required=True)
    p.add_argument("--username",    default="")
    p.add_argument("--password",    default="")
    p.add_argument("--topic",       required=True)
    p.add_argument("--message",     required=True)
    p.add_argument("--qos",         type=int, choices=[0,1], default=0,
                   help="Quality of Service level (0 or 1)")
    p.add_argument("--host",        default=HOST)
    p.add_argument("--port",        type=int, default=PORT)
    p.add_argument("--ca",          help="CA file to verify the broker (enables TLS)")
    p.add_argument("--cert",        help="Client certificate for mutual TLS")
    p.add_argument("--key",         help="Client key for mutual TLS")
    args = p.parse_args()

    publisher = Publisher(
        client_id=args.client_id,
        username=args.username,
        password=args.password,
        topic=args.topic,
        message=args.message,
        qos=args.qos,
        host=args.host,
        port=args.port,
        ssl_context=make_ssl_context(args.ca, args.cert, args.key) if args.ca else None
    )
    asyncio.run(publisher.run())
