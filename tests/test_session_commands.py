"""
Tests for the chat/message/send commands against an in-process FakeSession.
"""

import shutil
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from fakes import FakeSession, make_settings

from wacli.core.errors import WacliError
from wacli.ui.session_commands import (
    field,
    fetch_messages,
    format_timestamp,
    list_chats,
    logout,
    resolve_chat_id,
    send,
)


class TestHelpers(unittest.IsolatedAsyncioTestCase):
    def test_field_reads_dicts_and_objects(self):
        class Thread:
            name = "Alice"

        self.assertEqual(field({"name": "Bob"}, "name"), "Bob")
        self.assertEqual(field(Thread(), "name"), "Alice")
        self.assertEqual(field({}, "name", "?"), "?")

    def test_format_timestamp(self):
        self.assertEqual(format_timestamp(None), "")
        self.assertEqual(format_timestamp("yesterday"), "yesterday")
        when = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        self.assertEqual(len(format_timestamp(when)), len("2024-05-01 12:30"))

    async def test_resolve_chat_id(self):
        session = FakeSession()
        self.assertEqual(await resolve_chat_id(session, "999@c.us"), "999@c.us")
        self.assertEqual(await resolve_chat_id(session, "family"), "222@g.us")
        with self.assertRaises(WacliError):
            await resolve_chat_id(session, "Nobody")


class TestCommands(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.settings = make_settings(
            Path(self.temp_dir), session_factory="fakes:FakeSession"
        )

    async def asyncTearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_list_chats(self):
        threads = await list_chats(self.settings, limit=1)
        self.assertEqual([t["name"] for t in threads], ["Alice"])

    async def test_list_chats_with_search(self):
        threads = await list_chats(self.settings, search="fam")
        self.assertEqual([t["id"] for t in threads], ["222@g.us"])

    async def test_fetch_messages_by_name(self):
        messages = await fetch_messages(self.settings, "Alice", 2)
        self.assertEqual([m["threadId"] for m in messages], ["111@c.us", "111@c.us"])

    async def test_send_requires_content(self):
        with self.assertRaises(WacliError):
            await send(self.settings, "Alice")

    async def test_send_missing_file(self):
        with self.assertRaises(WacliError):
            await send(self.settings, "Alice", file_path=Path(self.temp_dir) / "nope.png")

    async def test_send_text_resolves_chat(self):
        self.assertEqual(await send(self.settings, "Alice", text="hi"), "111@c.us")

    async def test_session_error_propagates(self):
        with self.assertRaises(RuntimeError):
            await send(self.settings, "missing@c.us", text="hi")

    async def test_logout(self):
        session_dir = self.settings.auth_dir / "session-default"
        session_dir.mkdir(parents=True)
        (session_dir / "cookies").write_text("x")

        self.assertTrue(await logout(self.settings))
        self.assertFalse(session_dir.exists())
        self.assertFalse(await logout(self.settings))


if __name__ == "__main__":
    unittest.main()
