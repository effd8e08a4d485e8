#!/usr/bin/env python3
"""
Tests for the text optimization engine and the model client.
"""

import json
import sys
import threading
import time
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from feedscribe.core.ai_client import (
    ChatClient, StreamDelta, StreamEnd, SingleShotReply, parse_sse_line, parse_single_shot_body,
)
from feedscribe.core.error_codes import (
    AllChunksFailedError, AuthenticationError, BadResponseError, NetworkError,
    RetryExhaustedError, TaskCancelled,
)
from feedscribe.core.http_retry import RetryingHttpClient
from feedscribe.core.models import AIModel, OptimizationTarget
from feedscribe.core.optimizer import TextOptimizer
from feedscribe.core.prompts import titled_prompt, continuation_prompt
from feedscribe.core.task_registry import CancelToken

OPENAI_TARGET = OptimizationTarget(
    AIModel('deepseek-chat', 'DeepSeek Chat', 'DeepSeek', 'https://llm.test/chat/completions'),
    'sk-test')
GEMINI_TARGET = OptimizationTarget(
    AIModel('gemini-2.5-flash', 'Gemini 2.5 Flash', 'Google',
            'https://gemini.test/v1beta/models/gemini-2.5-flash:generateContent'),
    'AIza-test')


def make_text(length: int) -> str:
    return "".join(chr(ord('a') + i % 26) for i in range(length))


class FakeChat:
    """
    Scripted model. `replies` maps the chunk text to a list of deltas (or an
    Exception). Optional per-text gates hold a chunk until released.
    """

    def __init__(self, replies, gates=None, delay=0.0):
        self.replies = replies
        self.gates = gates or {}
        self.finished = {text: threading.Event() for text in replies}
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def generate(self, system_prompt, text, target, cancel_event=None):
        with self._lock:
            self.calls.append((system_prompt, text))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            gate = self.gates.get(text)
            if gate is not None:
                gate.wait(5)
            if self.delay:
                time.sleep(self.delay)
            reply = self.replies[text]
            if isinstance(reply, Exception):
                raise reply
            for delta in reply:
                if cancel_event is not None and cancel_event.is_set():
                    raise TaskCancelled()
                yield delta
        finally:
            with self._lock:
                self.in_flight -= 1
            self.finished[text].set()


class TestSingleRequest(unittest.TestCase):

    def test_streams_title_and_content(self):
        text = "short transcript"
        chat = FakeChat({text: ["My Ti", "tle\n", "\nFirst ", "sentence."]})
        updates = []
        result = TextOptimizer(chat).optimize(text, OPENAI_TARGET,
                                              lambda t, c: updates.append((t, c)))

        self.assertEqual((result.title, result.content), ("My Title", "First sentence."))
        self.assertFalse(result.partial)
        self.assertEqual(updates[0], ("My Ti", ""))
        self.assertEqual(updates[-1], ("My Title", "First sentence."))
        self.assertEqual(chat.calls, [(titled_prompt(), text)])

    def test_single_request_truncates(self):
        text = make_text(50)
        truncated = text[:10] + "..."
        chat = FakeChat({truncated: ["T\n\nbody"]})
        optimizer = TextOptimizer(chat, chunk_chars=2000, single_max_chars=10)
        with self.assertLogs('feedscribe.core.optimizer', level='WARNING'):
            optimizer.optimize(text, OPENAI_TARGET)
        self.assertEqual(chat.calls[0][1], truncated)

    def test_single_request_error_propagates(self):
        text = "short"
        chat = FakeChat({text: RetryExhaustedError("gave up", cause="server", attempts=4)})
        with self.assertRaises(RetryExhaustedError):
            TextOptimizer(chat).optimize(text, OPENAI_TARGET)


class TestChunkedOptimization(unittest.TestCase):

    def setUp(self):
        self.text = make_text(5000)
        self.chunks = [self.text[0:2000], self.text[2000:4000], self.text[4000:5000]]

    def test_three_chunks_merged_in_order(self):
        chat = FakeChat({
            self.chunks[0]: ["Lecture ", "Title\n\n", "zero ", "clean"],
            self.chunks[1]: ["one ", "clean"],
            self.chunks[2]: ["two ", "clean"],
        })
        result = TextOptimizer(chat, concurrency=3, throttle_sec=0).optimize(self.text, OPENAI_TARGET)

        self.assertEqual(len(chat.calls), 3)
        self.assertLessEqual(chat.max_in_flight, 3)
        self.assertEqual(result.title, "Lecture Title")
        self.assertEqual(result.content, "zero clean\n\none clean\n\ntwo clean")

        prompts = {text: prompt for prompt, text in chat.calls}
        self.assertEqual(prompts[self.chunks[0]], titled_prompt())
        self.assertEqual(prompts[self.chunks[1]], continuation_prompt(1, 3))
        self.assertEqual(prompts[self.chunks[2]], continuation_prompt(2, 3))

    def test_live_merge_is_contiguous_prefix(self):
        gates = {c: threading.Event() for c in self.chunks}
        chat = FakeChat({
            self.chunks[0]: ["Title\n\n", "zero"],
            self.chunks[1]: ["one"],
            self.chunks[2]: ["two"],
        }, gates=gates)
        updates = []
        outcome = {}

        def run():
            outcome['result'] = TextOptimizer(chat, concurrency=3, throttle_sec=0).optimize(
                self.text, OPENAI_TARGET, lambda t, c: updates.append(c))

        worker = threading.Thread(target=run)
        worker.start()
        # Finish out of order: 2, then 1, then 0
        for idx in (2, 1, 0):
            gates[self.chunks[idx]].set()
            self.assertTrue(chat.finished[self.chunks[idx]].wait(5))
        worker.join(5)

        allowed = {"", "zero", "zero\n\none", "zero\n\none\n\ntwo"}
        for content in updates:
            self.assertIn(content, allowed)
        self.assertEqual(updates[-1], "zero\n\none\n\ntwo")
        self.assertEqual(outcome['result'].content, "zero\n\none\n\ntwo")
        self.assertEqual(outcome['result'].title, "Title")

    def test_concurrency_is_bounded(self):
        text = make_text(13000)
        pieces = [text[i:i + 2000] for i in range(0, len(text), 2000)]
        replies = {p: ["T\n\nx"] if i == 0 else [f"part{i}"] for i, p in enumerate(pieces)}
        chat = FakeChat(replies, delay=0.02)
        result = TextOptimizer(chat, concurrency=3, throttle_sec=0).optimize(text, OPENAI_TARGET)
        self.assertEqual(len(chat.calls), 7)
        self.assertLessEqual(chat.max_in_flight, 3)
        self.assertTrue(result.content.endswith("part6"))

    def test_failed_chunk_surfaces_and_final_keeps_others(self):
        chat = FakeChat({
            self.chunks[0]: ["Title\n\nzero"],
            self.chunks[1]: RetryExhaustedError("Server error 500 after 4 attempts",
                                                cause="server", attempts=4),
            self.chunks[2]: ["two"],
        })
        updates = []
        with self.assertLogs('feedscribe.core.optimizer', level='WARNING'):
            result = TextOptimizer(chat, throttle_sec=0).optimize(
                self.text, OPENAI_TARGET, lambda t, c: updates.append(c))

        self.assertEqual(result.content, "zero\n\ntwo")
        self.assertEqual(result.failed_chunks, [1])
        self.assertIn("Server error 500", result.chunk_errors[1])
        self.assertTrue(result.partial)
        for content in updates[:-1]:
            self.assertNotIn("two", content)

    def test_all_chunks_failed(self):
        error = RetryExhaustedError("Network error after 4 attempts", cause="network", attempts=4)
        chat = FakeChat({c: error for c in self.chunks})
        with self.assertRaises(AllChunksFailedError) as ctx:
            TextOptimizer(chat).optimize(self.text, OPENAI_TARGET)
        self.assertIn("Chunk 3: Network error", ctx.exception.message)

    def test_rejected_credential_stops_remaining_chunks(self):
        chat = FakeChat({
            self.chunks[0]: AuthenticationError("Credential rejected (401): bad key", status_code=401),
            self.chunks[1]: ["one"],
            self.chunks[2]: ["two"],
        })
        with self.assertLogs('feedscribe.core.optimizer', level='ERROR'):
            with self.assertRaises(AuthenticationError) as ctx:
                TextOptimizer(chat, concurrency=1).optimize(self.text, OPENAI_TARGET)
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(chat.calls, [(titled_prompt(), self.chunks[0])])

    def test_rejected_credential_with_parallel_chunks(self):
        gates = {self.chunks[1]: threading.Event(), self.chunks[2]: threading.Event()}
        chat = FakeChat({
            self.chunks[0]: AuthenticationError("Credential rejected (403): forbidden", status_code=403),
            self.chunks[1]: ["one"],
            self.chunks[2]: ["two"],
        }, gates=gates)
        outcome = {}

        def run():
            try:
                TextOptimizer(chat, concurrency=3).optimize(self.text, OPENAI_TARGET)
            except AuthenticationError as e:
                outcome['error'] = e

        with self.assertLogs('feedscribe.core.optimizer', level='ERROR'):
            worker = threading.Thread(target=run)
            worker.start()
            self.assertTrue(chat.finished[self.chunks[0]].wait(5))
            for gate in gates.values():
                gate.set()
            worker.join(5)

        self.assertFalse(worker.is_alive())
        self.assertEqual(outcome['error'].status_code, 403)

    def test_throttled_updates(self):
        chat = FakeChat({
            self.chunks[0]: ["T\n\n"] + ["z"] * 50,
            self.chunks[1]: ["o"] * 50,
            self.chunks[2]: ["t"] * 50,
        })
        updates = []
        frozen_clock = lambda: 100.0
        TextOptimizer(chat, throttle_sec=0.1, clock=frozen_clock).optimize(
            self.text, OPENAI_TARGET, lambda t, c: updates.append(c))
        # One throttled update plus the final merge
        self.assertEqual(len(updates), 2)

    def test_cancel(self):
        cancel = threading.Event()
        gates = {c: threading.Event() for c in self.chunks}
        chat = FakeChat({c: ["Title\n\n", "x"] for c in self.chunks}, gates=gates)
        errors = []

        def run():
            try:
                TextOptimizer(chat).optimize(self.text, OPENAI_TARGET, cancel_event=cancel)
            except TaskCancelled as e:
                errors.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        cancel.set()
        for gate in gates.values():
            gate.set()
        worker.join(5)
        self.assertEqual(len(errors), 1)

    def test_chunk_info(self):
        optimizer = TextOptimizer(FakeChat({}))
        self.assertEqual([len(c.text) for c in optimizer.chunk_info(self.text)], [2000, 2000, 1000])
        self.assertEqual(len(optimizer.chunk_info("short")), 1)
        self.assertEqual(optimizer.chunk_info(""), [])


def sse(payload) -> bytes:
    return b"data: " + json.dumps(payload).encode('utf-8')


def delta(content: str) -> bytes:
    return sse({'choices': [{'delta': {'content': content}}]})


def streaming_response(lines) -> requests.Response:
    resp = requests.Response()
    resp.status_code = 200
    resp._content = b''
    resp._content_consumed = True
    resp.iter_lines = lambda chunk_size=None: iter(lines)
    return resp


def json_response(body: dict) -> requests.Response:
    resp = requests.Response()
    resp.status_code = 200
    resp._content = json.dumps(body).encode('utf-8')
    resp._content_consumed = True
    return resp


class TestReplyParsing(unittest.TestCase):

    def test_parse_sse_line(self):
        self.assertEqual(parse_sse_line('data: {"choices":[{"delta":{"content":"Hi"}}]}'),
                         StreamDelta("Hi"))
        self.assertEqual(parse_sse_line("data: [DONE]"), StreamEnd())
        self.assertIsNone(parse_sse_line(": keep-alive"))
        self.assertIsNone(parse_sse_line('data: {"choices":[{"delta":{"role":"assistant"}}]}'))
        self.assertIsNone(parse_sse_line("data: {broken"))
        self.assertIsNone(parse_sse_line('data: {"choices": []}'))

    def test_parse_single_shot_body(self):
        body = {'candidates': [{'content': {'parts': [{'text': 'Title\n\nBody'}]},
                                'finishReason': 'STOP'}]}
        self.assertEqual(parse_single_shot_body(body), SingleShotReply('Title\n\nBody', 'STOP'))
        self.assertEqual(parse_single_shot_body({'candidates': [{}]}).text, '')
        with self.assertRaises(BadResponseError):
            parse_single_shot_body({'error': 'quota'})


class TestChatClient(unittest.TestCase):

    def setUp(self):
        self.session = mock.Mock(spec=requests.Session)
        self.client = ChatClient(RetryingHttpClient(session=self.session, sleep=lambda s: None),
                                 temperature=0.3)

    def test_openai_stream(self):
        self.session.request.return_value = streaming_response([
            b": ping", b"", delta("Hel"), delta("lo"), b"data: [DONE]", delta("ignored"),
        ])
        parts = list(self.client.generate("system", "text", OPENAI_TARGET))
        self.assertEqual(parts, ["Hel", "lo"])

        method, url = self.session.request.call_args[0]
        kwargs = self.session.request.call_args[1]
        self.assertEqual(url, OPENAI_TARGET.model.api_url)
        self.assertEqual(kwargs['headers']['Authorization'], "Bearer sk-test")
        self.assertTrue(kwargs['stream'])
        self.assertEqual(kwargs['json']['model'], 'deepseek-chat')
        self.assertEqual(kwargs['json']['messages'],
                         [{'role': 'system', 'content': 'system'}, {'role': 'user', 'content': 'text'}])
        self.assertTrue(kwargs['json']['stream'])

    def test_stream_cancel(self):
        cancel = threading.Event()
        self.session.request.return_value = streaming_response([delta("a"), delta("b")])
        stream = self.client.generate("system", "text", OPENAI_TARGET, cancel)
        self.assertEqual(next(stream), "a")
        cancel.set()
        with self.assertRaises(TaskCancelled):
            next(stream)

    def test_cancel_closes_stalled_stream(self):
        closed = threading.Event()

        def stalled(chunk_size=None):
            yield delta("a")
            # The server goes quiet; only closing the response ends the read
            closed.wait(10)
            raise requests.exceptions.ChunkedEncodingError("connection closed")

        resp = streaming_response([])
        resp.iter_lines = stalled
        resp.close = closed.set
        self.session.request.return_value = resp

        token = CancelToken()
        outcome = {}

        def consume():
            parts = []
            try:
                for part in self.client.generate("system", "text", OPENAI_TARGET, token):
                    parts.append(part)
            except TaskCancelled as e:
                outcome['error'] = e
            outcome['parts'] = parts

        worker = threading.Thread(target=consume)
        worker.start()
        time.sleep(0.1)
        started = time.monotonic()
        token.set()
        worker.join(2)

        self.assertFalse(worker.is_alive())
        self.assertLess(time.monotonic() - started, 1.0)
        self.assertTrue(closed.is_set())
        self.assertIsInstance(outcome['error'], TaskCancelled)
        self.assertEqual(outcome['parts'], ["a"])

    def test_stream_interrupted(self):
        def broken(chunk_size=None):
            yield delta("a")
            raise requests.exceptions.ChunkedEncodingError("connection broken")

        resp = streaming_response([])
        resp.iter_lines = broken
        self.session.request.return_value = resp
        stream = self.client.generate("system", "text", OPENAI_TARGET)
        self.assertEqual(next(stream), "a")
        with self.assertRaises(NetworkError):
            next(stream)

    def test_single_shot_provider(self):
        self.session.request.return_value = json_response(
            {'candidates': [{'content': {'parts': [{'text': 'Title\n\nBody'}]}}]})
        parts = list(self.client.generate("system", "text", GEMINI_TARGET))
        self.assertEqual(parts, ["Title\n\nBody"])

        kwargs = self.session.request.call_args[1]
        self.assertEqual(kwargs['headers'], {'x-goog-api-key': 'AIza-test'})
        body_text = kwargs['json']['contents'][0]['parts'][0]['text']
        self.assertIn("system", body_text)
        self.assertIn("text", body_text)
        self.assertNotIn('stream', kwargs)

    def test_single_shot_optimization_end_to_end(self):
        self.session.request.return_value = json_response(
            {'candidates': [{'content': {'parts': [{'text': 'Talk\n\nCleaned body'}]}}]})
        updates = []
        result = TextOptimizer(self.client).optimize("raw words", GEMINI_TARGET,
                                                     lambda t, c: updates.append((t, c)))
        self.assertEqual((result.title, result.content), ("Talk", "Cleaned body"))
        self.assertEqual(updates, [("Talk", "Cleaned body")])


if __name__ == "__main__":
    unittest.main()
