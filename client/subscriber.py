# mqtt_test_server/client/subscriber.py

import asyncio
import ssl
import json
import argparse
from typing import Optional

from config.settings import HOST, PORT
from client.publisher import close_writer, make_ssl_context


class Subscriber:
    def __init__(self,
                 client_id: str,
                 topic: str,
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
        self.qos         = qos
        self.host        = host
        self.port        = port
        self.ssl_context = ssl_context
        # received PUBLISH packets, in arrival order
        self.messages: asyncio.Queue = asyncio.Queue()
        self.subscribed = asyncio.Event()

    async def run(self):
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
            return

        print("✅ Connected, subscribing…")

        # SUBSCRIBE
        sub_pkt = {
            "type":  "SUBSCRIBE",
            "topic": self.topic,
            "qos":   self.qos
        }
        writer.write((json.dumps(sub_pkt) + "\n").encode())
        await writer.drain()

        suback = json.loads((await reader.readline()).decode())
        if not suback.get("success"):
            print("❌ SUBSCRIBE failed")
            await close_writer(writer)
            return

        print(f"👂 Listening on '{self.topic}' (QoS {suback.get('qos', 0)})…")
        self.subscribed.set()

        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                pkt = json.loads(line.decode().strip())
                if pkt.get("type") != "PUBLISH":
                    continue

                pid = pkt.get("id")
                print(f"🔔 {pkt['topic']} → {pkt.get('payload')!r} [qos={pkt.get('qos', 0)}, id={pid}]")
                await self.messages.put(pkt)

                if pkt.get("qos") == 1 and pid is not None:
                    ack = {"type":"PUBACK","id":pid}
                    writer.write((json.dumps(ack) + "\n").encode())
                    await writer.drain()
        finally:
            await close_writer(writer)


if __name__ == "__main__":
    p = argparse.ArgumentParser(description="MQTT‑style test subscriber")
    p.add_argument("--client-id", required=True)
    p.add_argument("--username",  default="")
    p.add_argument("--password",  default="")
    p.add_argument("--topic",     required=True)
    p.add_argument("--qos",       type=int, choices=[0,1], default=0,
                   help="Requested QoS level (0 or 1)")
    p.add_argument("--host",      default=HOST)
    p.add_argument("--port",      type=int, default=PORT)
    p.add_argument("--ca",        help="CA file to verify the broker (enables TLS)")
    p.add_argument("--cert",      help="Client certificate for mutual TLS")
    p.add_argument("--key",       help="Client key for mutual TLS")
    args = p.parse_args()

    sub = Subscriber(
        client_id=args.client_id,
        username=args.username,
        password=args.password,
        topic=args.topic,
        qos=args.qos,
        host=args.host,
        port=args.port,
        ssl_context=make_ssl_context(args.ca, args.cert, args.key) if args.ca else None
    )
    try:
        asyncio.run(sub.run())
    except KeyboardInterrupt:
        pass
