# mqtt_test_server/config/settings.py

from dataclasses import dataclass
from typing import Tuple

VERSION     = "1.3.2"

HOST        = "127.0.0.1"
PORT        = 1883
LISTEN      = f"{HOST}:{PORT}"

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# disabled unless given on the command line, e.g. "127.0.0.1:9999"
DIAGNOSTICS = ""


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split "host:port" into its parts. An empty host means all interfaces.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {address!r} (expected HOST:PORT)")
    port_num = int(port)
    if port_num > 0xFFFF:
        raise ValueError(f"invalid port in listen address {address!r}")
    return host.strip("[]") or "0.0.0.0", port_num


@dataclass
class BrokerConfig:
    listen: str = LISTEN

    # comma separated allow-lists; empty disables the dimension
    only_client_ids: str = ""
    only_topics: str = ""
    only_words: str = ""

    data_log: str = ""
    status_log: str = ""
    console_log: str = ""
    timestamps: bool = False

    user_file: str = ""

    ca_cert: str = ""
    server_cert: str = ""
    server_key: str = ""
    key_password: str = ""

    diagnostics: str = DIAGNOSTICS

    @property
    def address(self) -> Tuple[str, int]:
        return parse_address(self.listen)

    @classmethod
    def from_args(cls, args) -> "BrokerConfig":
        return cls(
            listen=args.listen,
            only_client_ids=args.only_client,
            only_topics=args.only_topic,
            only_words=args.only_word,
            data_log=args.data_log,
            status_log=args.status_log,
            console_log=args.console_log,
            timestamps=args.timestamp,
            user_file=args.user_file,
            ca_cert=args.ca_cert,
            server_cert=args.server_cert,
            server_key=args.server_key,
            key_password=args.key_password,
            diagnostics=args.diagnostics,
        )
