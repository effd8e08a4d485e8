#!/usr/bin/env python3
"""
End-to-end tests for TranscriptionService.
The HTTP session is a mock routed by URL, slicing is faked, and sleeps
are recorded instead of waited.
"""

import json
import os
import sys
import tempfile
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from feedscribe.core.config import AppConfig
from feedscribe.core.constants import TaskStatus, SPEECH_API_URL
from feedscribe.core.error_codes import ConfigurationError
from feedscribe.core.service import TranscriptionService

MB = 1024 * 1024
AI_URL = "https://api.deepseek.com/chat/completions"
WAV_STUB = b"RIFF\x00\x00\x00\x00WAVEfmt "


def _clean_env():
    patcher = mock.patch.dict(os.environ)
    patcher.start()
    for key in list(os.environ):
        if key.startswith("FEEDSCRIBE_"):
            del os.environ[key]
    return patcher


def json_response(status: int, body: dict) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = json.dumps(body).encode('utf-8')
    resp._content_consumed = True
    return resp


def stream_response(text_parts) -> requests.Response:
    lines = [b"data: " + json.dumps({'choices': [{'delta': {'content': p}}]}).encode('utf-8')
             for p in text_parts]
    lines.append(b"data: [DONE]")
    resp = requests.Response()
    resp.status_code = 200
    resp._content = b''
    resp._content_consumed = True
    resp.iter_lines = lambda chunk_size=None: iter(lines)
    return resp


class FakeSlicer:
    def __init__(self):
        self.calls = []

    def slice(self, path, start, end):
        self.calls.append((start, end))
        return WAV_STUB


class FakeEndpoints:
    """Routes session.request calls to scripted speech and model replies."""

    def __init__(self, transcripts=(), model_reply=("Title\n\n", "Clean text."),
                 speech_status=200, on_speech=None, model_status=200):
        self.transcripts = list(transcripts)
        self.model_reply = model_reply
        self.speech_status = speech_status
        self.on_speech = on_speech
        self.model_status = model_status
        self.speech_calls = []
        self.model_calls = []

    def __call__(self, method, url, **kwargs):
        if url == SPEECH_API_URL:
            self.speech_calls.append(kwargs)
            if self.on_speech:
                self.on_speech(len(self.speech_calls))
            if self.speech_status != 200:
                return json_response(self.speech_status, {'error': {'message': 'Invalid API Key'}})
            return json_response(200, {'text': self.transcripts.pop(0)})
        if url == AI_URL:
            self.model_calls.append(kwargs)
            if self.model_status != 200:
                return json_response(self.model_status, {'error': {'message': 'Incorrect API key'}})
            return stream_response(self.model_reply)
        raise AssertionError(f"unexpected url {url}")


class ServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.env = _clean_env()
        self.tmp = tempfile.TemporaryDirectory()
        self.config = AppConfig(Path(self.tmp.name) / "config.json", persist=False)
        self.config.update({
            'speech_credentials': [{'id': 'k1', 'key': 'gsk_pool_key', 'name': 'main'}],
            'api_keys': {'deepseek-chat': 'sk-ai-key'},
        })
        self.session = mock.Mock(spec=requests.Session)
        self.sleeps = []
        self.slicer = FakeSlicer()

    def tearDown(self):
        self.tmp.cleanup()
        self.env.stop()

    def make_service(self, endpoints: FakeEndpoints, init: bool = True) -> TranscriptionService:
        self.session.request.side_effect = endpoints
        service = TranscriptionService(self.config, session=self.session, slicer=self.slicer,
                                       sleep=self.sleeps.append,
                                       duration_probe=lambda path: 1500.0)
        return service.init() if init else service

    def make_media(self, name: str, size: int) -> Path:
        path = Path(self.tmp.name) / name
        with open(path, 'wb') as f:
            f.truncate(size)
        return path


class TestTranscription(ServiceTestCase):

    def test_small_file_completes(self):
        endpoints = FakeEndpoints(["hello from a short clip"])
        service = self.make_service(endpoints)
        task_id = service.transcribe(self.make_media("clip.mp3", 3 * MB))
        task = service.wait(task_id, timeout=5)

        self.assertEqual(task.status, TaskStatus.DONE)
        self.assertEqual(task.raw_text, "hello from a short clip")
        self.assertEqual(task.progress, 100)
        self.assertEqual(task.credential_id, "k1")
        self.assertEqual(len(endpoints.speech_calls), 1)
        self.assertEqual(endpoints.speech_calls[0]['headers']['Authorization'], "Bearer gsk_pool_key")

        stats = service.pool_stats()
        self.assertEqual(stats['current_load'], 0)
        self.assertEqual(stats['total_requests'], 1)

    def test_large_file_chunked(self):
        endpoints = FakeEndpoints(["one", "two", "three"])
        service = self.make_service(endpoints)
        task_id = service.transcribe(self.make_media("lecture.m4a", 40 * MB))
        task = service.wait(task_id, timeout=5)

        self.assertEqual(task.status, TaskStatus.DONE)
        self.assertEqual(task.raw_text, "one\ntwo\nthree")
        self.assertEqual((task.total_chunks, task.processed_chunks), (3, 3))
        self.assertEqual(len(self.slicer.calls), 3)
        self.assertEqual([c['files']['file'][0] for c in endpoints.speech_calls],
                         ["chunk_0.wav", "chunk_1.wav", "chunk_2.wav"])
        self.assertEqual(self.sleeps, [3.0, 3.0])

    def test_rejected_credential_ends_in_error(self):
        endpoints = FakeEndpoints(speech_status=401)
        service = self.make_service(endpoints)
        with self.assertLogs('feedscribe.core.service', level='ERROR'):
            task_id = service.transcribe(self.make_media("clip.mp3", MB))
            task = service.wait(task_id, timeout=5)

        self.assertEqual(task.status, TaskStatus.ERROR)
        self.assertIn("401", task.error)
        self.assertEqual(len(endpoints.speech_calls), 1)
        self.assertEqual(service.pool_stats()['current_load'], 0)

    def test_unexpected_error_is_reported(self):
        class BrokenSlicer:
            def slice(self, path, start, end):
                raise RuntimeError("decoder exploded")

        self.slicer = BrokenSlicer()
        service = self.make_service(FakeEndpoints())
        with self.assertLogs('feedscribe.core.service', level='ERROR'):
            task_id = service.transcribe(self.make_media("big.mp3", 40 * MB))
            task = service.wait(task_id, timeout=5)
        self.assertEqual(task.status, TaskStatus.ERROR)
        self.assertIn("Unexpected error: decoder exploded", task.error)

    def test_cancel_ends_done_with_partial_text(self):
        holder = {}

        def cancel_on_second(call_number):
            if call_number == 2:
                holder['service'].cancel_task(holder['service'].list_tasks()[0].id)

        endpoints = FakeEndpoints(["one", "two", "three"], on_speech=cancel_on_second)
        service = holder['service'] = self.make_service(endpoints)
        completed = []
        task_id = service.transcribe(self.make_media("lecture.mp3", 40 * MB),
                                     on_complete=completed.append)
        task = service.wait(task_id, timeout=5)

        self.assertEqual(task.status, TaskStatus.DONE)
        self.assertEqual(task.raw_text, "one")
        self.assertEqual(len(endpoints.speech_calls), 2)
        self.assertEqual(completed, [])
        self.assertEqual(service.pool_stats()['current_load'], 0)

    def test_missing_file(self):
        service = self.make_service(FakeEndpoints())
        with self.assertRaises(FileNotFoundError):
            service.transcribe(Path(self.tmp.name) / "nope.mp3")
        self.assertEqual(service.list_tasks(), [])


class TestCredentials(ServiceTestCase):

    def test_no_speech_key(self):
        self.config.update({'speech_credentials': []})
        service = self.make_service(FakeEndpoints())
        with self.assertRaises(ConfigurationError):
            service.transcribe(self.make_media("clip.mp3", MB))
        self.assertEqual(service.list_tasks(), [])

    def test_unknown_credential_id(self):
        service = self.make_service(FakeEndpoints())
        with self.assertRaises(ConfigurationError):
            service.transcribe(self.make_media("clip.mp3", MB), credential_id="missing")

    def test_default_credential_fallback(self):
        self.config.update({'speech_credentials': [], 'speech_api_key': 'gsk_single_key'})
        endpoints = FakeEndpoints(["text"])
        service = self.make_service(endpoints)
        task = service.wait(service.transcribe(self.make_media("clip.mp3", MB)), timeout=5)

        self.assertEqual(task.status, TaskStatus.DONE)
        self.assertEqual(task.credential_id, "default")
        self.assertEqual(endpoints.speech_calls[0]['headers']['Authorization'], "Bearer gsk_single_key")
        self.assertEqual(service.pool_stats()['total_requests'], 0)

    def test_speech_key_from_environment(self):
        self.config.update({'speech_credentials': []})
        os.environ['FEEDSCRIBE_SPEECH_API_KEY'] = 'gsk_env_key'
        service = self.make_service(FakeEndpoints())
        self.assertEqual(service.resolve_credential().key, 'gsk_env_key')

    def test_least_loaded_credential(self):
        self.config.update({'speech_credentials': [
            {'id': 'a', 'key': 'gsk_a'}, {'id': 'b', 'key': 'gsk_b'}]})
        service = self.make_service(FakeEndpoints())
        self.assertEqual(service.resolve_credential().id, 'a')
        service.pool.mark_in_use('a')
        self.assertEqual(service.resolve_credential().id, 'b')
        self.assertEqual(service.resolve_credential('a').id, 'a')

    def test_active_tasks_by_credential(self):
        service = self.make_service(FakeEndpoints())
        first = service.registry.create_task("a.mp3", credential_id="k1")
        second = service.registry.create_task("b.mp3", credential_id="k1")
        service.registry.create_task("c.mp3")
        finished = service.registry.create_task("d.mp3", credential_id="k2")
        service.registry.update_task(finished.id, status=TaskStatus.DONE)

        self.assertEqual(service.active_tasks_by_credential(), {'k1': [first.id, second.id]})

    def test_init_required(self):
        service = self.make_service(FakeEndpoints(), init=False)
        with self.assertRaises(RuntimeError):
            service.transcribe(self.make_media("clip.mp3", MB))
        with self.assertRaises(RuntimeError):
            service.pool_stats()
        service.init()
        self.assertIs(service.init(), service)
        self.assertEqual(service.pool_stats()['total_keys'], 1)


class TestOptimization(ServiceTestCase):

    def test_auto_optimize(self):
        endpoints = FakeEndpoints(["um so hello world"],
                                  model_reply=("Greeting\n", "\nSo, hello ", "world."))
        service = self.make_service(endpoints)
        completed = []
        task_id = service.transcribe(self.make_media("clip.mp3", MB), auto_optimize=True,
                                     on_complete=completed.append)
        task = service.wait(task_id, timeout=5)

        self.assertEqual(task.status, TaskStatus.DONE)
        self.assertEqual(task.raw_text, "um so hello world")
        self.assertEqual(task.optimized_title, "Greeting")
        self.assertEqual(task.optimized_text, "So, hello world.")
        self.assertEqual(len(completed), 1)
        self.assertEqual(completed[0].optimized_text, "So, hello world.")

        request = endpoints.model_calls[0]
        self.assertEqual(request['headers']['Authorization'], "Bearer sk-ai-key")
        self.assertEqual(request['json']['messages'][1]['content'], "um so hello world")

    def test_auto_optimize_without_model_key(self):
        self.config.update({'api_keys': {}})
        service = self.make_service(FakeEndpoints(["x"]))
        with self.assertRaises(ConfigurationError):
            service.transcribe(self.make_media("clip.mp3", MB), auto_optimize=True)
        self.assertEqual(service.list_tasks(), [])
        self.assertEqual(service.pool_stats()['current_load'], 0)

    def test_optimize_text(self):
        endpoints = FakeEndpoints(model_reply=("Notes\n\n", "Tidy ", "text."))
        service = self.make_service(endpoints)
        progress, completed = [], []
        task_id = service.optimize_text("rec1", "messy text", "notes.mp3",
                                        on_progress=lambda t, c: progress.append((t, c)),
                                        on_complete=lambda t, c: completed.append((t, c)))
        task = service.wait(task_id, timeout=5)

        self.assertTrue(task_id.startswith("opt-rec1-"))
        self.assertEqual(task.status, TaskStatus.DONE)
        self.assertEqual(task.raw_text, "messy text")
        self.assertEqual(task.file_name, "notes.mp3")
        self.assertEqual(completed, [("Notes", "Tidy text.")])
        self.assertEqual(progress[-1], ("Notes", "Tidy text."))
        self.assertIsNone(task.credential_id)

    def test_optimize_text_requires_model_key(self):
        self.config.update({'api_keys': {}})
        service = self.make_service(FakeEndpoints())
        with self.assertRaises(ConfigurationError):
            service.optimize_text("rec1", "text", "a.mp3")

    def test_rejected_model_key_stops_chunked_optimization(self):
        self.config.update({'optimize_chunk_chars': 500, 'optimize_concurrency': 1})
        endpoints = FakeEndpoints(model_status=401)
        service = self.make_service(endpoints)
        task_id = service.optimize_text("rec1", "word " * 300, "notes.mp3")
        task = service.wait(task_id, timeout=5)

        self.assertEqual(task.status, TaskStatus.ERROR)
        self.assertIn("Credential rejected (401)", task.error)
        self.assertEqual(len(endpoints.model_calls), 1)

    def test_optimize_finished_task(self):
        endpoints = FakeEndpoints(["raw words"], model_reply=("T\n\n", "Words."))
        service = self.make_service(endpoints)
        first = service.wait(service.transcribe(self.make_media("clip.mp3", MB)), timeout=5)

        new_id = service.optimize_task(first.id)
        optimized = service.wait(new_id, timeout=5)

        self.assertNotEqual(new_id, first.id)
        self.assertEqual(optimized.optimized_text, "Words.")
        self.assertEqual(service.get_task(first.id).optimized_text, "")

    def test_optimize_task_errors(self):
        service = self.make_service(FakeEndpoints())
        with self.assertRaises(KeyError):
            service.optimize_task("missing")
        empty = service.registry.create_task("silent.mp3")
        with self.assertRaises(ConfigurationError):
            service.optimize_task(empty.id)


if __name__ == "__main__":
    unittest.main()
