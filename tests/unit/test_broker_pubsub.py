import asyncio
import csv
import json

import bcrypt
import pytest

from broker.server import BrokerServer
from broker.tls import TLSMode
from client.publisher import Publisher, make_ssl_context
from client.subscriber import Subscriber
from config.settings import BrokerConfig

HOST = "127.0.0.1"


def _rows(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


def _config(log_paths, **kwargs):
    return BrokerConfig(listen=f"{HOST}:0", data_log=log_paths.data,
                        status_log=log_paths.status, **kwargs)


async def _raw_session(port, *packets):
    """Send packets over a bare connection and return the broker's replies."""
    reader, writer = await asyncio.open_connection(HOST, port)
    replies = []
    for pkt in packets:
        writer.write((pkt if isinstance(pkt, bytes) else json.dumps(pkt).encode()) + b"\n")
        await writer.drain()
    while True:
        line = await asyncio.wait_for(reader.readline(), 5)
        if not line:
            break
        replies.append(json.loads(line))
    writer.close()
    return replies


@pytest.mark.asyncio
async def test_allow_list_scenario_end_to_end(log_paths):
    """sensor3 is rejected, sensor1 "alert: fire" is accepted, sensor1 "ok" is rejected."""
    broker = BrokerServer(_config(log_paths, only_client_ids="sensor1,sensor2", only_words="alert"))
    await broker.serve()
    try:
        sub = Subscriber("monitor", "#", qos=1, host=HOST, port=broker.port)
        sub_task = asyncio.create_task(sub.run())
        await asyncio.wait_for(sub.subscribed.wait(), 5)

        for client_id, payload in (("sensor3", "alert: fire"),
                                   ("sensor1", "ok"),
                                   ("sensor1", "alert: fire")):
            pub = Publisher(client_id, "building/1", payload, qos=1, host=HOST, port=broker.port)
            assert await pub.run()

        # the first forwarded message is the only admitted one
        pkt = await asyncio.wait_for(sub.messages.get(), 5)
        assert (pkt["topic"], pkt["payload"]) == ("building/1", "alert: fire")
        assert sub.messages.empty()

        sub_task.cancel()
        await asyncio.gather(sub_task, return_exceptions=True)
    finally:
        await broker.stop()

    assert _rows(log_paths.data) == [["sensor1", "building/1", "alert: fire"]]
    assert broker.hooks.stats()["messages_rejected"] == 2


@pytest.mark.asyncio
async def test_status_file_records_session_lifecycle(log_paths):
    broker = BrokerServer(_config(log_paths))
    await broker.serve()
    try:
        replies = await _raw_session(
            broker.port,
            {"type": "CONNECT", "client_id": "c1", "username": "u", "password": "hunter2"},
            {"type": "SUBSCRIBE", "topic": "a/#", "qos": 2},
            {"type": "UNSUBSCRIBE", "topic": "a/#"},
            {"type": "DISCONNECT"},
        )
    finally:
        await broker.stop()

    assert [r["type"] for r in replies] == ["CONNACK", "SUBACK", "UNSUBACK"]
    assert replies[1]["qos"] == 1

    rows = _rows(log_paths.status)
    assert [r[:2] for r in rows] == [
        ["c1", "Connect"], ["c1", "Subscribed"], ["c1", "Unsubscribed"], ["c1", "Disconnect"]]
    connect_detail = rows[0][2]
    assert '"' not in connect_detail
    assert "'Client':" in connect_detail and "'Packet':" in connect_detail
    assert "hunter2" not in connect_detail
    assert rows[1][2] == "a/# (QOS1)"
    assert rows[3][2] == ""


@pytest.mark.asyncio
async def test_protocol_error_reports_and_disconnects(log_paths, capsys):
    broker = BrokerServer(_config(log_paths))
    await broker.serve()
    try:
        replies = await _raw_session(
            broker.port,
            {"type": "CONNECT", "client_id": "c1"},
            b"{not json",
        )
    finally:
        await broker.stop()

    assert [r["type"] for r in replies] == ["CONNACK"]
    rows = _rows(log_paths.status)
    assert rows[-1][:2] == ["c1", "Disconnect"]
    assert "malformed packet" in rows[-1][2]
    assert "[E] Client c1: malformed packet" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_abrupt_close_is_logged_as_disconnect(log_paths):
    broker = BrokerServer(_config(log_paths))
    await broker.serve()
    try:
        reader, writer = await asyncio.open_connection(HOST, broker.port)
        writer.write(json.dumps({"type": "CONNECT", "client_id": "c9"}).encode() + b"\n")
        await writer.drain()
        assert json.loads(await reader.readline())["success"]
        writer.close()
        for _ in range(50):
            if not broker.sessions.sessions:
                break
            await asyncio.sleep(0.05)
    finally:
        await broker.stop()

    assert _rows(log_paths.status)[-1] == ["c9", "Disconnect", "connection closed by client"]


@pytest.mark.asyncio
async def test_users_file_authentication(log_paths, tmp_path):
    users = tmp_path / "users.json"
    users.write_text(json.dumps({
        "sensor1": {"password": bcrypt.hashpw(b"s3cret", bcrypt.gensalt()).decode(),
                    "publish": ["sensors/#"]},
    }))
    broker = BrokerServer(_config(log_paths, user_file=str(users)))
    await broker.serve()
    try:
        ok = Publisher("sensor1", "sensors/t", "21", username="sensor1", password="s3cret",
                       qos=1, host=HOST, port=broker.port)
        assert await ok.run()
        bad = Publisher("sensor1", "sensors/t", "21", username="sensor1", password="wrong",
                        host=HOST, port=broker.port)
        assert not await bad.run()
        denied = Publisher("sensor1", "other/t", "22", username="sensor1", password="s3cret",
                           qos=1, host=HOST, port=broker.port)
        assert await denied.run()
    finally:
        await broker.stop()

    # ACL-denied publishes never reach the message hook
    assert _rows(log_paths.data) == [["sensor1", "sensors/t", "21"]]


@pytest.mark.asyncio
async def test_mutual_tls_broker(pki, log_paths):
    broker = BrokerServer(_config(log_paths, server_cert=pki.cert_file,
                                  server_key=pki.key_file, ca_cert=pki.ca_file))
    assert broker.tls_mode is TLSMode.MUTUAL_TLS
    await broker.serve()
    try:
        ctx = make_ssl_context(pki.ca_file, pki.client_cert_file, pki.client_key_file)
        pub = Publisher("sensor1", "t", "over tls", qos=1, host=HOST, port=broker.port,
                        ssl_context=ctx)
        assert await pub.run()
    finally:
        await broker.stop()

    assert _rows(log_paths.data) == [["sensor1", "t", "over tls"]]
    assert "'tls': true" in _rows(log_paths.status)[0][2]


def test_server_auth_mode(pki, log_paths):
    broker = BrokerServer(_config(log_paths, server_cert=pki.cert_file, server_key=pki.key_file))
    try:
        assert broker.tls_mode is TLSMode.SERVER_AUTH
        assert broker.ssl_context is not None
    finally:
        broker.close()


def test_plaintext_mode(log_paths):
    broker = BrokerServer(_config(log_paths))
    try:
        assert broker.tls_mode is TLSMode.NO_TLS
        assert broker.ssl_context is None
    finally:
        broker.close()


def test_ca_alone_aborts_before_sinks_open(pki, log_paths):
    from broker.tls import IncompleteIdentityError
    with pytest.raises(IncompleteIdentityError):
        BrokerServer(_config(log_paths, ca_cert=pki.ca_file))
    with pytest.raises(FileNotFoundError):
        open(log_paths.data)


@pytest.mark.asyncio
async def test_same_client_id_takes_over_session(log_paths):
    broker = BrokerServer(_config(log_paths))
    await broker.serve()
    try:
        connect = json.dumps({"type": "CONNECT", "client_id": "dup"}).encode() + b"\n"
        r1, w1 = await asyncio.open_connection(HOST, broker.port)
        w1.write(connect)
        await w1.drain()
        assert json.loads(await r1.readline())["success"]

        r2, w2 = await asyncio.open_connection(HOST, broker.port)
        w2.write(connect)
        await w2.drain()
        assert json.loads(await r2.readline())["success"]

        # the first connection is closed by the broker
        assert await asyncio.wait_for(r1.readline(), 5) == b""
        assert broker.sessions.sessions["dup"].writer is not None
        assert len(broker.sessions.sessions) == 1
        w1.close()
        w2.close()
    finally:
        await broker.stop()


@pytest.mark.asyncio
async def test_cancelled_start_ends_idle_sessions_and_closes_sinks(log_paths):
    broker = BrokerServer(_config(log_paths))
    task = asyncio.create_task(broker.start())
    for _ in range(100):
        if broker._server is not None:
            break
        await asyncio.sleep(0.01)

    reader, writer = await asyncio.open_connection(HOST, broker.port)
    writer.write(json.dumps({"type": "CONNECT", "client_id": "idle"}).encode() + b"\n")
    await writer.drain()
    assert json.loads(await reader.readline())["success"]

    task.cancel()
    await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), 5)

    assert await asyncio.wait_for(reader.readline(), 5) == b""
    writer.close()
    assert broker.audit.status.closed
    assert _rows(log_paths.status)[-1] == ["idle", "Disconnect", ""]
