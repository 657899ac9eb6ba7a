"""
Tests for the IPC proxy: per-call connections, error mapping, date revival
and daemon discovery.
"""

import asyncio
import json
import shutil
import socket
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from fakes import TOKEN, FakeSession

from wacli.core.errors import IpcError, StaleStateError
from wacli.core.session import ConnectionStatus
from wacli.daemon.client import (
    IpcClient,
    call_port,
    probe_daemon,
    revive_dates,
    send_stop,
    try_connect_daemon,
)
from wacli.daemon.server import DaemonServer
from wacli.daemon.state import DaemonDescriptor, StateStore


def free_port() -> int:
    """A loopback port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class TestReviveDates(unittest.TestCase):
    def test_iso_strings_become_datetimes(self):
        value = revive_dates("2024-05-01T12:30:00+00:00")
        self.assertEqual(value, datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc))

    def test_trailing_z_is_utc(self):
        value = revive_dates("2024-05-01T12:30:00.123Z")
        self.assertEqual(value.tzinfo, timezone.utc)
        self.assertEqual(value.microsecond, 123000)

    def test_nested_structures(self):
        value = revive_dates(
            {"threads": [{"name": "Alice", "timestamp": "2024-05-01T12:30:00"}], "n": 3}
        )
        self.assertIsInstance(value["threads"][0]["timestamp"], datetime)
        self.assertEqual(value["threads"][0]["name"], "Alice")
        self.assertEqual(value["n"], 3)

    def test_other_strings_are_untouched(self):
        for text in ("hello", "2024-05-01", "2024-13-45T99:99:99", "", "111@c.us"):
            with self.subTest(text=text):
                self.assertEqual(revive_dates(text), text)

    def test_non_string_values_pass_through(self):
        self.assertIsNone(revive_dates(None))
        self.assertEqual(revive_dates(42), 42)
        self.assertIs(revive_dates(True), True)


class DaemonTestCase(unittest.IsolatedAsyncioTestCase):
    """Runs a real daemon with a FakeSession."""

    async def asyncSetUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = StateStore(Path(self.temp_dir) / "daemon.json")
        self.session = FakeSession(delays={"slow@c.us": 2.0})
        self.server = DaemonServer(self.session, self.store, token=TOKEN, boot_timeout=2.0)
        await self.server.boot()
        self.port = await self.server.listen()
        self.serve_task = asyncio.create_task(
            self.server.serve_until_stopped(handle_signals=False)
        )
        self.client = IpcClient(self.port, TOKEN)

    async def asyncTearDown(self):
        self.server.request_shutdown()
        await asyncio.wait_for(self.serve_task, 10)
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestIpcClient(DaemonTestCase):
    async def test_ping(self):
        self.assertEqual(await self.client.ping(), "pong")

    async def test_status_is_ready(self):
        self.assertEqual(self.client.status, ConnectionStatus.READY)
        self.assertEqual(await self.client.get_status(), "ready")

    async def test_get_threads_revives_dates(self):
        threads = await self.client.get_threads()
        self.assertEqual(threads[0]["name"], "Alice")
        self.assertEqual(
            threads[0]["timestamp"], datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        )

    async def test_search_and_find(self):
        results = await self.client.search_threads("fam")
        self.assertEqual(results[0]["thread"]["id"], "222@g.us")
        self.assertIsNone(await self.client.find_chat_by_name("Nobody"))
        self.assertEqual((await self.client.find_chat_by_name("alice"))["id"], "111@c.us")

    async def test_get_messages_with_and_without_limit(self):
        self.assertEqual(len(await self.client.get_messages("111@c.us")), 5)
        self.assertEqual(len(await self.client.get_messages("111@c.us", 3)), 3)

    async def test_send_calls(self):
        self.assertIsNone(await self.client.send_message("111@c.us", "hi"))
        await self.client.send_file("111@c.us", "/tmp/x.pdf", "report")
        await self.client.reply_to_message("msg-2", "sure")
        self.assertEqual(self.session.sent, [("111@c.us", "hi")])
        self.assertEqual(self.session.files, [("111@c.us", "/tmp/x.pdf", "report")])
        self.assertEqual(self.session.replies, [("msg-2", "sure")])

    async def test_remote_error_becomes_ipc_error(self):
        with self.assertRaises(IpcError) as context:
            await self.client.send_message("missing@c.us", "hi")
        self.assertEqual(str(context.exception), "Chat not found: missing@c.us")
        self.assertEqual(context.exception.method, "sendMessage")

    async def test_wrong_token_is_unauthorized(self):
        with self.assertRaises(IpcError) as context:
            await IpcClient(self.port, "wrong").ping()
        self.assertEqual(str(context.exception), "Unauthorized")

    async def test_call_timeout(self):
        client = IpcClient(self.port, TOKEN, call_timeout=0.2, slow_call_timeout=0.2)
        with self.assertRaises(IpcError) as context:
            await client.get_messages("slow@c.us")
        self.assertEqual(
            str(context.exception), 'IPC call "getMessages" timed out after 200 ms'
        )

    async def test_concurrent_calls_from_one_client(self):
        results = await asyncio.gather(*(self.client.ping() for _ in range(10)))
        self.assertEqual(results, ["pong"] * 10)

    async def test_destroy_and_mark_as_read_leave_daemon_running(self):
        await self.client.mark_as_read("111@c.us")
        await self.client.destroy()
        self.assertFalse(self.session.destroyed)
        self.assertEqual(await self.client.ping(), "pong")

    async def test_stop(self):
        self.assertEqual(await self.client.stop(), "stopping")
        await asyncio.wait_for(self.serve_task, 10)
        self.assertFalse(self.store.exists())

    async def test_send_stop(self):
        await send_stop(self.port, TOKEN, grace=0.1)
        await asyncio.wait_for(self.serve_task, 10)
        self.assertTrue(self.session.destroyed)


class TestCallFailures(unittest.IsolatedAsyncioTestCase):
    async def _serve(self, handler):
        server = await asyncio.start_server(handler, "127.0.0.1", 0)
        self.addAsyncCleanup(self._close, server)
        return server.sockets[0].getsockname()[1]

    async def _close(self, server):
        server.close()
        await server.wait_closed()

    async def test_connection_refused(self):
        port = free_port()
        with self.assertRaises(IpcError) as context:
            await call_port(port, TOKEN, "ping", timeout=1.0)
        self.assertTrue(str(context.exception).startswith('IPC call "ping" failed:'))

    async def test_socket_closed_before_response(self):
        async def handler(reader, writer):
            await reader.readline()
            writer.close()

        port = await self._serve(handler)
        with self.assertRaises(IpcError) as context:
            await call_port(port, TOKEN, "getThreads", timeout=2.0)
        self.assertEqual(
            str(context.exception), 'Socket closed before response for "getThreads"'
        )

    async def test_unrelated_lines_are_discarded(self):
        async def handler(reader, writer):
            req = json.loads(await reader.readline())
            writer.write(b"garbage\n")
            writer.write(b'{"id": "someone-else", "result": "nope"}\n')
            writer.write(
                (json.dumps({"id": req["id"], "result": "pong"}) + "\n").encode()
            )
            await writer.drain()
            writer.close()

        port = await self._serve(handler)
        self.assertEqual(await call_port(port, TOKEN, "ping", timeout=2.0), "pong")

    async def test_no_reply_times_out(self):
        async def handler(reader, writer):
            await reader.readline()
            # Hold the request until the caller gives up.
            await reader.read()
            writer.close()

        port = await self._serve(handler)
        with self.assertRaises(IpcError) as context:
            await call_port(port, TOKEN, "ping", timeout=0.1)
        self.assertIn("timed out after 100 ms", str(context.exception))

    async def test_send_stop_to_closed_port_is_silent(self):
        await send_stop(free_port(), TOKEN, grace=0.01)


class TestDiscovery(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = StateStore(Path(self.temp_dir) / "daemon.json")

    async def asyncTearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_no_descriptor(self):
        self.assertIsNone(await probe_daemon(self.store))
        self.assertIsNone(await try_connect_daemon(self.store))

    async def test_stale_descriptor(self):
        self.store.write(
            DaemonDescriptor(pid=999999, port=free_port(), started_at="", token=TOKEN)
        )
        with self.assertRaises(StaleStateError):
            await probe_daemon(self.store, probe_timeout=0.5)
        self.assertIsNone(await try_connect_daemon(self.store, probe_timeout=0.5))
        # Discovery alone never deletes the descriptor.
        self.assertTrue(self.store.exists())

    async def test_live_daemon(self):
        server = DaemonServer(FakeSession(), self.store, token=TOKEN)
        await server.boot()
        await server.listen()
        serve_task = asyncio.create_task(server.serve_until_stopped(handle_signals=False))
        try:
            client = await try_connect_daemon(self.store, call_timeout=5.0)
            self.assertIsNotNone(client)
            self.assertEqual(client.port, server.port)
            self.assertEqual(client.call_timeout, 5.0)
            self.assertEqual(client.descriptor, self.store.read())
        finally:
            server.request_shutdown()
            await asyncio.wait_for(serve_task, 10)

    async def test_token_mismatch_is_stale(self):
        server = DaemonServer(FakeSession(), self.store, token=TOKEN)
        await server.boot()
        await server.listen()
        serve_task = asyncio.create_task(server.serve_until_stopped(handle_signals=False))
        try:
            live = self.store.read()
            self.store.write(
                DaemonDescriptor(pid=live.pid, port=live.port, started_at="", token="stale-token")
            )
            self.assertIsNone(await try_connect_daemon(self.store))
        finally:
            server.request_shutdown()
            await asyncio.wait_for(serve_task, 10)


if __name__ == "__main__":
    unittest.main()
