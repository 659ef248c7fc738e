"""
Tests for the HTTP endpoints
"""

import json
import os
import tempfile
import time
from pathlib import Path
from unittest.mock import patch

from django.apps import apps
from django.core.cache import caches
from django.test import SimpleTestCase

from downloads.exceptions import AccessDenied, ExtractionFailure, NotFoundError
from downloads.jobs import Job, JobRegistry
from downloads.progress import ChannelManager
from downloads.service.metadata import MetadataCache
from downloads.service.storage import FileSystemBlobStore
from downloads.tests.fakes import FakeExtractor, make_metadata


class ViewTestCase(SimpleTestCase):
    """Swaps the app's registry for one over a temporary directory"""

    def setUp(self):
        caches['metadata'].clear()
        self._tmp = tempfile.TemporaryDirectory()
        self.store = FileSystemBlobStore(Path(self._tmp.name) / 'work')
        self.store.ensure_root()
        self.metadata_cache = MetadataCache()
        self.extractor = FakeExtractor()
        self.dispatched = []
        self.purges = []
        self.registry = JobRegistry(
            self.store,
            self.metadata_cache,
            self.extractor,
            dispatcher=self.dispatched.append,
            purge_scheduler=lambda job_id, delay: self.purges.append((job_id, delay)),
        )

        self.app_config = apps.get_app_config('downloads')
        self._saved = (self.app_config.registry, self.app_config.channels)
        self.app_config.registry = self.registry
        self.app_config.channels = ChannelManager(self.registry, interval=0.01)

    def tearDown(self):
        self.app_config.registry, self.app_config.channels = self._saved
        self._tmp.cleanup()

    def _post_json(self, url, payload):
        return self.client.post(url, data=json.dumps(payload), content_type='application/json')

    def _completed_job(self):
        self.metadata_cache.store(make_metadata())
        job_id = self.registry.create_job('abc123', '137')
        self.registry.run_job(job_id)
        return job_id


class VideoInfoViewTest(ViewTestCase):
    """Tests for POST /api/videos/info"""

    url = '/api/videos/info'

    def test_describe(self):
        response = self._post_json(self.url, {'url': 'https://www.youtube.com/watch?v=abc123'})

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['id'], 'abc123')
        self.assertEqual(data['title'], 'Foo: Bar! #1')
        self.assertEqual(data['duration'], '2:05')
        self.assertEqual(data['views'], '2K views')
        self.assertEqual([f['format_id'] for f in data['formats']], ['137', '251'])
        self.assertIsNotNone(self.metadata_cache.get('abc123'))

    def test_form_encoded(self):
        response = self.client.post(self.url, {'url': 'https://youtu.be/abc123'})
        self.assertEqual(response.status_code, 200)

    def test_missing_url(self):
        response = self._post_json(self.url, {})
        self.assertEqual(response.status_code, 400)
        self.assertIn('url', response.json()['error'])

    def test_non_string_url(self):
        response = self._post_json(self.url, {'url': 123})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {'error': 'Invalid url'})
        self.assertIsNone(self.metadata_cache.get('abc123'))

    def test_url_is_stripped(self):
        response = self._post_json(self.url, {'url': '  '})
        self.assertEqual(response.status_code, 400)
        self.assertIn('url', response.json()['error'])

    def test_invalid_json(self):
        response = self.client.post(self.url, data='{not json', content_type='application/json')
        self.assertEqual(response.status_code, 400)

    def test_non_object_json(self):
        response = self._post_json(self.url, ['https://youtu.be/abc123'])
        self.assertEqual(response.status_code, 400)

    def test_bot_protection(self):
        self.extractor.describe_error = AccessDenied("Sign in to confirm you're not a bot")

        response = self._post_json(self.url, {'url': 'https://youtu.be/abc123'})

        self.assertEqual(response.status_code, 500)
        self.assertIn('bot protection', response.json()['error'])

    def test_video_not_found(self):
        self.extractor.describe_error = NotFoundError('Video not found')
        response = self._post_json(self.url, {'url': 'https://youtu.be/gone'})
        self.assertEqual(response.status_code, 404)

    def test_extraction_failure(self):
        self.extractor.describe_error = ExtractionFailure()
        response = self._post_json(self.url, {'url': 'https://youtu.be/abc123'})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {'error': 'Failed to fetch video information'})

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(self.url).status_code, 405)


class DownloadStartViewTest(ViewTestCase):
    """Tests for POST /api/videos/download"""

    url = '/api/videos/download'

    def setUp(self):
        super().setUp()
        self.metadata_cache.store(make_metadata())

    def test_start(self):
        response = self._post_json(self.url, {'videoId': 'abc123', 'formatId': '137'})

        self.assertEqual(response.status_code, 200)
        job_id = response.json()['jobId']
        self.assertEqual(len(job_id), 21)
        self.assertEqual(self.dispatched, [job_id])
        self.assertEqual(self.registry.snapshot(job_id).format_id, '137')

    def test_start_audio_only(self):
        response = self.client.post(self.url, {'videoId': 'abc123', 'isAudioOnly': 'true'})

        self.assertEqual(response.status_code, 200)
        snapshot = self.registry.snapshot(response.json()['jobId'])
        self.assertTrue(snapshot.is_audio_only)
        self.assertTrue(snapshot.output_key.endswith('.mp3'))

    def test_missing_video_id(self):
        response = self._post_json(self.url, {'formatId': '137'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.dispatched, [])

    def test_missing_format_id(self):
        response = self._post_json(self.url, {'videoId': 'abc123'})
        self.assertEqual(response.status_code, 400)

    def test_numeric_format_id(self):
        response = self._post_json(self.url, {'videoId': 'abc123', 'formatId': 137})

        self.assertEqual(response.status_code, 200)
        snapshot = self.registry.snapshot(response.json()['jobId'])
        self.assertEqual(snapshot.format_id, '137')
        self.assertTrue(snapshot.output_key.startswith('abc123-137-'))

    def test_non_string_ids(self):
        for payload in (
            {'videoId': 123, 'formatId': '137'},
            {'videoId': 'abc123', 'formatId': ['137']},
            {'videoId': 'abc123', 'formatId': True},
        ):
            with self.subTest(payload=payload):
                response = self._post_json(self.url, payload)
                self.assertEqual(response.status_code, 400)
                self.assertIn('error', response.json())
        self.assertEqual(self.dispatched, [])

    def test_video_never_described(self):
        response = self._post_json(self.url, {'videoId': 'zzz999', 'formatId': '137'})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'error': 'Video information not found'})


class DownloadProgressViewTest(ViewTestCase):
    """Tests for GET /api/videos/download-progress/<job_id>"""

    def _events(self, response):
        body = b''.join(response.streaming_content).decode()
        response.close()
        return [json.loads(chunk[len('data: '):]) for chunk in body.split('\n\n') if chunk]

    def test_headers(self):
        response = self.client.get('/api/videos/download-progress/missing')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Content-Type'], 'text/event-stream')
        self.assertEqual(response['Cache-Control'], 'no-cache')
        self.assertEqual(response['X-Accel-Buffering'], 'no')
        self._events(response)

    def test_unknown_job(self):
        response = self.client.get('/api/videos/download-progress/missing')
        self.assertEqual(self._events(response), [{'error': 'Download not found', 'percent': 0}])

    def test_completed_job(self):
        job_id = self._completed_job()

        events = self._events(self.client.get(f'/api/videos/download-progress/{job_id}'))

        self.assertEqual(len(events), 1)
        self.assertTrue(events[0]['completed'])
        self.assertEqual(events[0]['fileName'], 'Foo__Bar___1.mp4')
        self.assertEqual(self.app_config.channels.active_count, 0)

    def test_closing_response_closes_channel(self):
        self.metadata_cache.store(make_metadata())
        job_id = self.registry.create_job('abc123', '137')

        response = self.client.get(f'/api/videos/download-progress/{job_id}')
        self.assertEqual(self.app_config.channels.active_count, 1)

        response.close()

        self.assertEqual(self.app_config.channels.active_count, 0)
        self.assertEqual(self.registry.snapshot(job_id).state, Job.STATE_CREATED)


class DownloadFileViewTest(ViewTestCase):
    """Tests for GET/HEAD /api/videos/download/<job_id>"""

    def test_download(self):
        job_id = self._completed_job()

        response = self.client.get(f'/api/videos/download/{job_id}')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(b''.join(response.streaming_content), self.extractor.content)
        response.close()
        self.assertEqual(response['Content-Type'], 'video/mp4')
        self.assertEqual(response['Content-Length'], '2048')
        self.assertIn('attachment', response['Content-Disposition'])
        self.assertIn('Foo__Bar___1.mp4', response['Content-Disposition'])

        snapshot = self.registry.snapshot(job_id)
        self.assertEqual(snapshot.state, Job.STATE_RETRIEVED)
        self.assertEqual(self.purges, [(job_id, 300)])

    def test_repeated_download(self):
        job_id = self._completed_job()

        self.client.get(f'/api/videos/download/{job_id}').close()
        response = self.client.get(f'/api/videos/download/{job_id}')

        self.assertEqual(response.status_code, 200)
        response.close()

    def test_head_does_not_mark_retrieved(self):
        job_id = self._completed_job()

        response = self.client.head(f'/api/videos/download/{job_id}')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Content-Length'], '2048')
        self.assertIn('Foo__Bar___1.mp4', response['Content-Disposition'])
        self.assertEqual(self.registry.snapshot(job_id).state, Job.STATE_COMPLETE)
        self.assertEqual(self.purges, [])

    def test_head_not_ready(self):
        self.metadata_cache.store(make_metadata())
        job_id = self.registry.create_job('abc123', '137')
        self.assertEqual(self.client.head(f'/api/videos/download/{job_id}').status_code, 409)

    def test_not_ready(self):
        self.metadata_cache.store(make_metadata())
        job_id = self.registry.create_job('abc123', '137')

        response = self.client.get(f'/api/videos/download/{job_id}')

        self.assertEqual(response.status_code, 409)
        self.assertIn('not ready', response.json()['error'])

    def test_unknown_job(self):
        response = self.client.get('/api/videos/download/missing')
        self.assertEqual(response.status_code, 404)
        self.assertIn('error', response.json())

    def test_job_purged_during_retrieval(self):
        job_id = self._completed_job()

        with patch.object(self.registry, 'snapshot', return_value=None):
            response = self.client.get(f'/api/videos/download/{job_id}')
            head = self.client.head(f'/api/videos/download/{job_id}')

        self.assertEqual(response.status_code, 404)
        self.assertIn('error', response.json())
        self.assertEqual(head.status_code, 404)

    def test_failed_job(self):
        self.extractor.error = ExtractionFailure('Failed to download video: boom')
        job_id = self._completed_job()

        response = self.client.get(f'/api/videos/download/{job_id}')

        self.assertEqual(response.status_code, 404)
        self.assertIn('boom', response.json()['error'])

    def test_file_vanished(self):
        job_id = self._completed_job()
        (self.store.root / self.registry.snapshot(job_id).output_key).unlink()

        response = self.client.get(f'/api/videos/download/{job_id}')

        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.registry.snapshot(job_id).state, Job.STATE_COMPLETE)

    def test_file_emptied(self):
        job_id = self._completed_job()
        (self.store.root / self.registry.snapshot(job_id).output_key).write_bytes(b'')

        response = self.client.get(f'/api/videos/download/{job_id}')

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {'error': 'Download file is empty'})


class AvailableFilesViewTest(ViewTestCase):
    """Tests for GET /api/videos/available-files"""

    def test_lists_finished_files(self):
        now = time.time()
        older = self.store.root / 'old-137-1.mp4'
        older.write_bytes(b'x' * 1024 * 1024)
        os.utime(older, (now - 600, now - 600))
        (self.store.root / 'new-mp3-2.mp3').write_bytes(b'x' * 10)
        (self.store.root / 'partial-137-3.mp4.part').write_bytes(b'x')

        response = self.client.get('/api/videos/available-files')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {
                'files': [
                    {'name': 'new-mp3-2.mp3', 'size': '0.00 MB'},
                    {'name': 'old-137-1.mp4', 'size': '1.00 MB'},
                ]
            },
        )

    def test_empty(self):
        self.assertEqual(self.client.get('/api/videos/available-files').json(), {'files': []})


class DirectDownloadViewTest(ViewTestCase):
    """Tests for GET /api/videos/direct-download/<filename>"""

    def test_download(self):
        (self.store.root / 'abc-137-1.mp4').write_bytes(b'hello')

        response = self.client.get('/api/videos/direct-download/abc-137-1.mp4')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(b''.join(response.streaming_content), b'hello')
        response.close()
        self.assertIn('abc-137-1.mp4', response['Content-Disposition'])

    def test_missing(self):
        response = self.client.get('/api/videos/direct-download/nope.mp4')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'error': 'File not found'})

    def test_partial_file(self):
        (self.store.root / 'abc-137-1.mp4.part').write_bytes(b'hello')
        response = self.client.get('/api/videos/direct-download/abc-137-1.mp4.part')
        self.assertEqual(response.status_code, 404)

    def test_path_traversal(self):
        secret = Path(self._tmp.name) / 'secret.mp4'
        secret.write_bytes(b'secret')
        response = self.client.get('/api/videos/direct-download/..%2Fsecret.mp4')
        self.assertEqual(response.status_code, 404)

    def test_empty_file(self):
        (self.store.root / 'abc-137-1.mp4').write_bytes(b'')
        response = self.client.get('/api/videos/direct-download/abc-137-1.mp4')
        self.assertEqual(response.status_code, 500)
