"""
Tests for the wire codec: framing, token checks and JSON encoding.
"""

import json
import re
import statistics
import time
import unittest
from dataclasses import dataclass
from datetime import datetime, timezone

from wacli.core.errors import ProtocolError
from wacli.daemon.protocol import (
    LineBuffer,
    deserialize_request,
    deserialize_response,
    generate_token,
    serialize_request,
    serialize_response,
    tokens_match,
)


class TestTokens(unittest.TestCase):
    def test_generated_token_is_64_hex_chars(self):
        token = generate_token()
        self.assertRegex(token, r"^[0-9a-f]{64}$")

    def test_generated_tokens_differ(self):
        self.assertNotEqual(generate_token(), generate_token())

    def test_tokens_match(self):
        secret = generate_token()
        self.assertTrue(tokens_match(secret, secret))
        self.assertFalse(tokens_match(secret[:-1] + ("0" if secret[-1] != "0" else "1"), secret))
        self.assertFalse(tokens_match("wrong", secret))
        self.assertFalse(tokens_match(secret + "0", secret))

    def test_missing_or_non_string_token_never_matches(self):
        secret = generate_token()
        for candidate in (None, "", 123, ["x"], {"token": secret}):
            with self.subTest(candidate=candidate):
                self.assertFalse(tokens_match(candidate, secret))

    def test_lone_surrogate_does_not_match(self):
        self.assertFalse(tokens_match("\ud800", generate_token()))

    def test_comparison_time_does_not_depend_on_mismatch_position(self):
        secret = generate_token()
        flip = {"0": "1"}
        candidates = {
            position: secret[:position]
            + flip.get(secret[position], "0")
            + secret[position + 1:]
            for position in (0, 32, 63)
        }

        def batch_time(candidate):
            start = time.perf_counter()
            for _ in range(200):
                tokens_match(candidate, secret)
            return time.perf_counter() - start

        samples = {position: [] for position in candidates}
        for _ in range(60):
            for position, candidate in candidates.items():
                samples[position].append(batch_time(candidate))

        medians = [statistics.median(values) for values in samples.values()]
        # Loose bound; only an early exit on the first differing byte would break it.
        self.assertLess(max(medians), min(medians) * 2.0)


class TestLineBuffer(unittest.TestCase):
    def test_single_chunk_with_several_lines(self):
        buffer = LineBuffer()
        self.assertEqual(buffer.feed(b"one\ntwo\nthr"), [b"one", b"two"])
        self.assertEqual(buffer.pending, b"thr")
        self.assertEqual(buffer.feed(b"ee\n"), [b"three"])
        self.assertEqual(buffer.pending, b"")

    def test_blank_lines_are_dropped(self):
        buffer = LineBuffer()
        self.assertEqual(buffer.feed(b"\n  \nping\n\n"), [b"ping"])

    def test_split_at_every_byte_boundary(self):
        payload = serialize_request("a", "ping", "t") + serialize_request(
            "b", "getThreads", "t", {"x": "é"}
        )
        for cut in range(len(payload) + 1):
            with self.subTest(cut=cut):
                buffer = LineBuffer()
                lines = buffer.feed(payload[:cut]) + buffer.feed(payload[cut:])
                self.assertEqual([deserialize_request(line)["id"] for line in lines], ["a", "b"])

    def test_byte_at_a_time(self):
        payload = serialize_response("r1", result="pong") + serialize_response("r2", error="boom")
        buffer = LineBuffer()
        lines = []
        for i in range(len(payload)):
            lines.extend(buffer.feed(payload[i:i + 1]))
        self.assertEqual(len(lines), 2)
        self.assertEqual(deserialize_response(lines[1]), {"id": "r2", "error": "boom"})

    def test_overlong_partial_line_is_dropped(self):
        buffer = LineBuffer(max_line=8)
        self.assertEqual(buffer.feed(b"ok\n" + b"x" * 20), [b"ok"])
        self.assertTrue(buffer.overflowed)
        self.assertEqual(buffer.pending, b"")

    def test_overlong_complete_line_is_dropped(self):
        buffer = LineBuffer(max_line=8)
        self.assertEqual(buffer.feed(b"y" * 9 + b"\nping\n"), [b"ping"])
        self.assertTrue(buffer.overflowed)

    def test_lines_within_limit(self):
        buffer = LineBuffer(max_line=8)
        self.assertEqual(buffer.feed(b"12345678\n1234"), [b"12345678"])
        self.assertFalse(buffer.overflowed)


class TestCodec(unittest.TestCase):
    def test_request_is_one_terminated_line(self):
        line = serialize_request("1", "sendMessage", "tok", {"chatId": "a@c.us", "text": "hi\nthere"})
        self.assertTrue(line.endswith(b"\n"))
        self.assertEqual(line.count(b"\n"), 1)
        self.assertEqual(
            json.loads(line),
            {
                "id": "1",
                "method": "sendMessage",
                "token": "tok",
                "params": {"chatId": "a@c.us", "text": "hi\nthere"},
            },
        )

    def test_request_without_params_omits_field(self):
        self.assertNotIn("params", json.loads(serialize_request("1", "ping", "tok")))

    def test_success_response_has_no_error_field(self):
        self.assertEqual(json.loads(serialize_response("1", result=None)), {"id": "1", "result": None})

    def test_error_response_has_no_result_field(self):
        self.assertEqual(
            json.loads(serialize_response("1", result="ignored", error="Unauthorized")),
            {"id": "1", "error": "Unauthorized"},
        )

    def test_datetimes_are_encoded_as_iso_strings(self):
        when = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        decoded = json.loads(serialize_response("1", result=[{"timestamp": when}]))
        self.assertEqual(decoded["result"][0]["timestamp"], "2024-05-01T12:30:00+00:00")

    def test_dataclasses_are_encoded_as_objects(self):
        @dataclass
        class Thread:
            id: str
            name: str

        decoded = json.loads(serialize_response("1", result=Thread("a@c.us", "Alice")))
        self.assertEqual(decoded["result"], {"id": "a@c.us", "name": "Alice"})

    def test_unencodable_result_raises_type_error(self):
        with self.assertRaises(TypeError):
            serialize_response("1", result=object())

    def test_invalid_request_lines_raise_protocol_error(self):
        for line in (b"not json", b"[1, 2]", b"\xff\xfe", b'"string"'):
            with self.subTest(line=line):
                with self.assertRaises(ProtocolError) as context:
                    deserialize_request(line)
                self.assertEqual(str(context.exception), "Invalid JSON")

    def test_invalid_response_line_raises_protocol_error(self):
        with self.assertRaises(ProtocolError):
            deserialize_response(b"{broken")

    def test_request_ids_are_opaque(self):
        line = serialize_request("req-" + "x" * 40, "ping", "t")
        self.assertTrue(re.search(rb'"id": "req-x+"', line))


if __name__ == "__main__":
    unittest.main()
