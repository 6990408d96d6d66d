"""End-to-end tests: a paramiko client against a running gateway."""

import signal
import socket
import threading
import time

import paramiko
import pytest

from config import ServerConfig
from key_store import AuthorizedKey, KeySet
from ssh_server import GatewayError, SSHBoxServer

JOIN_TIMEOUT = 20


@pytest.fixture
def start_server(host_key, client_key):
    started = []

    def start(command, args=(), **overrides):
        config = ServerConfig(
            bind="127.0.0.1:0",
            command=command,
            args=tuple(args),
            authorized_keys=KeySet([AuthorizedKey.from_pkey(client_key)]),
            channel_timeout=3.0,
            **overrides,
        )
        server = SSHBoxServer(config, host_key=host_key)
        server.listen()
        thread = threading.Thread(target=server.run, kwargs={"install_signal_handlers": False}, daemon=True)
        thread.start()
        started.append((server, thread))
        return server, thread

    yield start

    for server, thread in started:
        server.shutdown(timeout=5)
        thread.join(JOIN_TIMEOUT)


def connect(server, key, username="alice"):
    host, port = server.address
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    client.connect(
        host,
        port=port,
        username=username,
        pkey=key,
        look_for_keys=False,
        allow_agent=False,
        timeout=5,
    )
    return client


def read_until(channel, needle, timeout=5.0):
    data = b""
    deadline = time.monotonic() + timeout
    channel.settimeout(0.2)
    while needle not in data and time.monotonic() < deadline:
        try:
            chunk = channel.recv(4096)
        except socket.timeout:
            continue
        if not chunk:
            break
        data += chunk
    return data


class TestGateway:
    def test_interactive_echo(self, start_server, client_key):
        server, _ = start_server("cat")
        client = connect(server, client_key)
        try:
            channel = client.invoke_shell(term="xterm", width=100, height=30)
            channel.sendall(b"over the wire\n")
            assert b"over the wire" in read_until(channel, b"over the wire")
            channel.sendall(b"\x04")
            assert channel.recv_exit_status() == 0
        finally:
            client.close()

    def test_exit_status_reaches_client(self, start_server, client_key):
        server, _ = start_server("sh", ["-c", "exit 5"])
        client = connect(server, client_key)
        try:
            channel = client.invoke_shell()
            assert channel.recv_exit_status() == 5
        finally:
            client.close()

    def test_exec_request_runs_configured_command(self, start_server, client_key):
        server, _ = start_server("sh", ["-c", "echo configured"])
        client = connect(server, client_key)
        try:
            channel = client.get_transport().open_session()
            channel.get_pty()
            channel.exec_command("rm -rf /")
            assert b"configured" in read_until(channel, b"configured")
            assert channel.recv_exit_status() == 0
        finally:
            client.close()

    def test_window_change_reaches_pty(self, start_server, client_key):
        server, _ = start_server("sh", ["-c", "read line; stty size"])
        client = connect(server, client_key)
        try:
            channel = client.invoke_shell(width=80, height=24)
            channel.resize_pty(width=132, height=50)
            time.sleep(0.3)
            channel.sendall(b"go\n")
            assert b"50 132" in read_until(channel, b"50 132")
            assert channel.recv_exit_status() == 0
        finally:
            client.close()

    def test_no_pty_is_rejected(self, start_server, client_key):
        server, _ = start_server("cat")
        client = connect(server, client_key)
        try:
            channel = client.get_transport().open_session()
            channel.exec_command("cat")
            assert read_until(channel, b"\n") == b"No PTY requested.\n"
            assert channel.recv_exit_status() == 1
        finally:
            client.close()

    def test_unknown_key_is_denied(self, start_server, other_key):
        server, _ = start_server("cat")
        with pytest.raises(paramiko.AuthenticationException):
            connect(server, other_key)

    def test_fetched_key_is_accepted(self, start_server, other_key, host_key):
        server, _ = start_server("true", github_auth=True, keys_url="http://127.0.0.1:9/{identity}.keys")
        fetched = KeySet([AuthorizedKey.from_pkey(other_key)])
        server.authenticator.fetcher.fetch = lambda identity: fetched
        client = connect(server, other_key, username="octocat")
        try:
            assert client.invoke_shell().recv_exit_status() == 0
        finally:
            client.close()

    def test_unreachable_key_endpoint_falls_back(self, start_server, client_key, other_key):
        server, _ = start_server(
            "true", github_auth=True, keys_url="http://127.0.0.1:9/{identity}.keys", fetch_timeout=1.0
        )
        with pytest.raises(paramiko.AuthenticationException):
            connect(server, other_key)
        client = connect(server, client_key)
        try:
            assert client.invoke_shell().recv_exit_status() == 0
        finally:
            client.close()

    def test_second_session_channel_refused(self, start_server, client_key):
        server, _ = start_server("sh", ["-c", "sleep 1"])
        client = connect(server, client_key)
        try:
            transport = client.get_transport()
            first = transport.open_session()
            first.get_pty()
            first.invoke_shell()
            with pytest.raises(paramiko.ChannelException):
                transport.open_session()
            assert first.recv_exit_status() == 0
        finally:
            client.close()


class TestLifecycle:
    def test_bind_failure(self, host_key):
        blocker = socket.socket()
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        try:
            port = blocker.getsockname()[1]
            server = SSHBoxServer(ServerConfig(bind=f"127.0.0.1:{port}", command="true"), host_key=host_key)
            with pytest.raises(GatewayError):
                server.listen()
        finally:
            blocker.close()

    def test_signal_stops_listener_but_drains_sessions(self, start_server, client_key):
        server, thread = start_server("sh", ["-c", "sleep 1; exit 7"])
        host, port = server.address
        client = connect(server, client_key)
        try:
            channel = client.invoke_shell()
            time.sleep(0.2)

            server.handle_signal(signal.SIGTERM, None)
            assert server.wait_closed(5)
            with pytest.raises(ConnectionRefusedError):
                socket.create_connection((host, port), timeout=2).close()

            assert thread.is_alive()
            assert channel.recv_exit_status() == 7
        finally:
            client.close()

        thread.join(JOIN_TIMEOUT)
        assert not thread.is_alive()
        assert server.active_sessions == 0
