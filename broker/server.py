# mqtt_test_server/broker/server.py

import argparse
import asyncio
import logging
import sys
from typing import Optional

import config.settings as settings
from audit.logger import AuditLogger
from audit.sinks import SinkHandler
from auth.allowlist import MessageFilter
from auth.auth import AuthFileError, load_auth_strategy
from config.settings import BrokerConfig, parse_address
from .events import Events
from .hooks import AuditHooks
from .router import Router
from .session import SessionManager
from .tls import IdentityError, build_identity, create_tls_context, tls_mode

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class BrokerServer:
    """An asyncio-based MQTT-style test broker with TLS, filtering and audit logs."""
    def __init__(self, config: Optional[BrokerConfig] = None):
        self.config = config or BrokerConfig()
        self.host, self.port = self.config.address

        # 1) TLS identity; any failure aborts before anything is opened
        self.identity = build_identity(
            server_cert=self.config.server_cert,
            server_key=self.config.server_key,
            ca_cert=self.config.ca_cert,
            key_password=self.config.key_password
        )
        self.ssl_context = create_tls_context(self.identity) if self.identity else None

        # 2) Authentication strategy (users file or allow everyone)
        self.auth = load_auth_strategy(self.config.user_file)

        # 3) Allow-list filter + audit sinks, wired onto the broker hooks
        self.filter = MessageFilter.from_config(self.config)
        self.audit = AuditLogger.from_config(self.config)
        self.hooks = AuditHooks(self.audit, self.filter)
        self.events = Events()
        self.hooks.register(self.events)

        # 4) Session manager + router
        self.sessions = SessionManager(self.auth)
        self.router = Router(session_mgr=self.sessions, events=self.events)

        self._server: Optional[asyncio.AbstractServer] = None
        self._stopped = False

    @property
    def tls_mode(self):
        return tls_mode(self.identity)

    async def handle_client(self,
                            reader: asyncio.StreamReader,
                            writer: asyncio.StreamWriter):
        peer = writer.get_extra_info('peername')
        log.debug(f"🔌 New connection from {peer}")
        await self.router.handle_client(reader, writer)

    async def serve(self) -> asyncio.AbstractServer:
        """Bind the listener and start accepting; returns once bound."""
        log.info(f"⏳ Starting broker on {self.host}:{self.port} ...")
        self._server = await asyncio.start_server(
            self.handle_client,
            self.host,
            self.port,
            ssl=self.ssl_context
        )
        addr = self._server.sockets[0].getsockname()
        self.port = addr[1]
        log.info(f"🚀 Broker listening on {addr} ({self.tls_mode.value})")
        return self._server

    async def start(self):
        await self.serve()
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def stop(self):
        """
        Stop accepting, end every session, then close the sinks. Sinks are
        closed only after the router guarantees no further hook calls.
        """
        if self._stopped:
            return
        self._stopped = True
        if self._server is not None:
            self._server.close()
        await self.router.close_all()
        if self._server is not None:
            await self._server.wait_closed()
        log.info("🛑 Broker stopped")
        self.audit.close()

    def close(self):
        """Release the sinks of a broker that was never started."""
        self.audit.close()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="mqtt-test-server",
                                description="MQTT test server with allow-list filtering and audit logs")
    p.add_argument("-v", "--version", action="store_true", help="Print version info")
    p.add_argument("-p", "--listen", default=settings.LISTEN,
                   help=f"Listen on IP:Port (default: {settings.LISTEN})")
    p.add_argument("-c", "--only-client", default="",
                   help="Only allow these client IDs (comma separated)")
    p.add_argument("-t", "--only-topic", default="",
                   help="Only allow these topics (comma separated)")
    p.add_argument("-w", "--only-word", default="",
                   help="Only allow these words in message content (comma separated)")
    p.add_argument("-m", "--data-log", default="", help="Log messages to a csv file")
    p.add_argument("-s", "--status-log", default="", help="Log state changes to a csv file")
    p.add_argument("-o", "--console-log", default="", help="Save the console log to a txt/log file")
    p.add_argument("-ts", "--timestamp", action="store_true", help="Use timestamps in logged files")
    p.add_argument("-u", "--user-file", default="", help="Users and permissions file (.json)")
    p.add_argument("-ca", "--ca-cert", default="", help="CA certificate file path")
    p.add_argument("-ce", "--server-cert", default="", help="Server certificate file path")
    p.add_argument("-ck", "--server-key", default="", help="Server key file path")
    p.add_argument("-cp", "--key-password", default="",
                   help="Server key password (the key file is then read as a raw RSA key)")
    p.add_argument("--diagnostics", default=settings.DIAGNOSTICS,
                   help="Serve diagnostics over HTTP on IP:Port (disabled by default)")
    return p


def _echo_config(config: BrokerConfig, broker: BrokerServer):
    f = broker.filter
    if f.client_ids.enabled:
        log.info(f"⚙️ Only clients: {list(f.client_ids.values)}")
    if f.topics.enabled:
        log.info(f"⚙️ Only topics: {list(f.topics.values)}")
    if f.keywords.enabled:
        log.info(f"⚙️ Only words: {list(f.keywords.values)}")
    identity = broker.identity
    if identity is not None:
        if identity.ca_pem:
            log.info(f"⚙️ CA certificate: {config.ca_cert} ({len(identity.ca_pem)})")
        log.info(f"⚙️ Server certificate: {config.server_cert} ({len(identity.cert_pem)})")
        log.info(f"⚙️ Server key: {config.server_key}")
    if config.key_password:
        log.info(f"⚙️ Server key password: ({len(config.key_password)})")


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    args = build_parser().parse_args(argv)
    log.info(f"MQTT test server v{settings.VERSION}")
    if args.version:
        return 0

    config = BrokerConfig.from_args(args)
    try:
        parse_address(config.listen)
        if config.diagnostics:
            parse_address(config.diagnostics)
        broker = BrokerServer(config)
    except (IdentityError, AuthFileError, ValueError) as exc:
        log.error(f"❌ {exc}")
        return 1
    except OSError as exc:
        log.error(f"❌ Cannot open log file {exc.filename}: {exc.strerror}")
        return 1

    handler = None
    if broker.audit.console.mirror is not None:
        handler = SinkHandler(broker.audit.console.mirror)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
    _echo_config(config, broker)

    diagnostics = None
    if config.diagnostics:
        from admin.web import DiagnosticsServer, create_app
        host, port = parse_address(config.diagnostics)
        diagnostics = DiagnosticsServer(create_app(broker), host, port)
        diagnostics.start()

    try:
        asyncio.run(broker.start())
    except KeyboardInterrupt:
        log.info("🛑 Broker shutting down")
    except OSError as exc:
        log.error(f"❌ Broker failed to start: {exc}")
        broker.close()
        return 1
    finally:
        if diagnostics is not None:
            diagnostics.stop()
        if handler is not None:
            logging.getLogger().removeHandler(handler)
    return 0


if __name__ == '__main__':
    sys.exit(main())
