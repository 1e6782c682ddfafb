import unittest
import asyncio
from unittest.mock import patch
import tempfile
import os
import sys
import shutil
import errno
import json
import sqlite3

import aiohttp
import cv2
import numpy as np
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from pydicom.dataset import Dataset, FileDataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

# Add the project directory to the path so we can import the modules
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Import the modules we want to test
import backend
import frames
import records
import scanclient
import scanvision
import storage


def write_dicom(path, pixels, instance_number = None, photometric = 'MONOCHROME2'):
    """Write a minimal single frame DICOM file."""
    meta = FileMetaDataset()
    meta.MediaStorageSOPClassUID = '1.2.840.10008.5.1.4.1.1.4'
    meta.MediaStorageSOPInstanceUID = generate_uid()
    meta.TransferSyntaxUID = ExplicitVRLittleEndian
    ds = FileDataset(path, {}, file_meta = meta, preamble = b"\0" * 128)
    ds.SOPClassUID = meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = meta.MediaStorageSOPInstanceUID
    ds.PatientName = 'Test^Patient'
    ds.PatientID = '12345'
    ds.StudyDate = '20250101'
    ds.Modality = 'MR'
    if instance_number is not None:
        ds.InstanceNumber = instance_number
    ds.Rows, ds.Columns = pixels.shape
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = photometric
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    ds.PixelData = pixels.astype(np.uint16).tobytes()
    ds.is_little_endian = True
    ds.is_implicit_VR = False
    ds.save_as(path)
    return path


def write_video(path, seconds, src_fps = 10, size = (64, 48)):
    """Write a small MJPEG video of the given duration."""
    writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*'MJPG'), src_fps, size)
    for i in range(int(seconds * src_fps)):
        writer.write(np.full((size[1], size[0], 3), (i * 3) % 256, dtype = np.uint8))
    writer.release()
    return path


def parse_events(body):
    """Decode the JSON events of an event stream body."""
    return [json.loads(line[6:]) for line in body.split('\n') if line.startswith('data: ')]


def model_reply(content):
    return {'choices': [{'message': {'role': 'assistant', 'content': content}}]}


STRUCTURED_REPLY = """```json
{
  "summary": "Small effusion in the left knee joint.",
  "recommendations": ["Orthopedic consultation"],
  "urgency": "medium",
  "frameAnalyses": [
    {"frameNumber": 2, "analysis": "Fluid in the suprapatellar recess", "confidence": 0.8, "findings": ["effusion"]}
  ]
}
```"""


class FakeChannel(scanvision.EventChannel):
    """Event channel keeping the events in memory."""

    def __init__(self):
        self.events = []
        self.comments = []
        self.closed = False

    async def send(self, event):
        self.events.append(event)

    async def comment(self, text):
        self.comments.append(text)

    async def close(self):
        self.closed = True


class FakeResponse:
    """Stand-in for a prepared aiohttp StreamResponse."""

    def __init__(self, fail = False):
        self.writes = []
        self.eof = False
        self.fail = fail

    async def write(self, data):
        if self.fail:
            raise ConnectionResetError("Cannot write to closing transport")
        self.writes.append(data)

    async def write_eof(self):
        self.eof = True


class FakeStorage:
    """In-memory storage bucket tracking upload concurrency."""

    def __init__(self, failures = None):
        self.uploads = []
        self.attempts = {}
        self.active = 0
        self.max_active = 0
        self.failures = failures or {}

    async def upload(self, path, data, content_type = 'application/octet-stream'):
        self.attempts[path] = self.attempts.get(path, 0) + 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0)
        self.active -= 1
        if self.failures.get(path):
            raise self.failures[path].pop(0)
        self.uploads.append(path)
        return {'path': path}

    def public_url(self, path):
        return f"https://storage.test/{path}"


class FakeStorageService:
    """Storage REST routes backed by a dict of buckets."""

    def __init__(self):
        self.objects = {}
        self.headers = []
        self.deleted = []

    def add_routes(self, app):
        app.router.add_post('/storage/v1/object/list/{bucket}', self.list_objects)
        app.router.add_post('/storage/v1/object/{bucket}/{path:.*}', self.upload)
        app.router.add_delete('/storage/v1/object/{bucket}', self.remove)
        app.router.add_get('/storage/v1/object/public/{bucket}/{path:.*}', self.download)

    async def upload(self, request):
        bucket = self.objects.setdefault(request.match_info['bucket'], {})
        path = request.match_info['path']
        if path in bucket:
            return web.json_response({'error': 'Duplicate'}, status = 409)
        self.headers.append({'x-upsert': request.headers.get('x-upsert'),
                             'Authorization': request.headers.get('Authorization')})
        bucket[path] = await request.read()
        return web.json_response({'Key': path})

    async def list_objects(self, request):
        prefix = (await request.json())['prefix']
        bucket = self.objects.get(request.match_info['bucket'], {})
        names = [p[len(prefix) + 1:] for p in bucket if p.startswith(prefix + '/')]
        return web.json_response([{'name': n} for n in names])

    async def remove(self, request):
        bucket = self.objects.get(request.match_info['bucket'], {})
        for path in (await request.json())['prefixes']:
            bucket.pop(path, None)
            self.deleted.append(path)
        return web.json_response([])

    async def download(self, request):
        data = self.objects.get(request.match_info['bucket'], {}).get(request.match_info['path'])
        if data is None:
            return web.Response(status = 404)
        return web.Response(body = data)


class RecordingSleep:
    """Sleep replacement recording the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestFrameWindowing(unittest.TestCase):
    """Test cases for pixel windowing and DICOM pixel decoding"""

    def test_window_maps_min_center_max(self):
        """Test that the observed min, center and max map to 0, 128 and 255"""
        result = frames.window_pixels(np.array([[0, 50, 100]]))
        self.assertEqual(result.tolist(), [[0, 128, 255]])
        self.assertEqual(result.dtype, np.uint8)

    def test_window_monochrome1_inverts(self):
        """Test that MONOCHROME1 data is inverted"""
        result = frames.window_pixels(np.array([[0, 50, 100]]), 'MONOCHROME1')
        self.assertEqual(result.tolist(), [[255, 127, 0]])

    def test_window_flat_image_is_black(self):
        """Test that an image with a single value maps to 0"""
        result = frames.window_pixels(np.array([[7, 7], [7, 7]]))
        self.assertEqual(result.tolist(), [[0, 0], [0, 0]])

    def test_decode_missing_pixel_data_returns_placeholder(self):
        """Test that a dataset without pixel data yields the placeholder"""
        ds = Dataset()
        ds.Rows = 2
        ds.Columns = 2
        pixels = frames.decode_dicom_pixels(ds)
        self.assertEqual(pixels.shape, (1, 1, 4))
        self.assertEqual(pixels.tolist(), [[[0, 0, 0, 255]]])

    def test_decode_missing_dimensions_returns_placeholder(self):
        """Test that a dataset without dimensions yields the placeholder"""
        pixels = frames.decode_dicom_pixels(Dataset())
        self.assertIs(pixels, frames.PLACEHOLDER_PIXELS)

    def test_default_max_frames(self):
        """Test the frame budget for a few sampling rates"""
        self.assertEqual(frames.default_max_frames(5), 150)
        self.assertEqual(frames.default_max_frames(10), 200)
        self.assertEqual(frames.default_max_frames(1), 30)


class TestFrameSources(unittest.TestCase):
    """Test cases for the video and DICOM frame sources"""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Tear down test fixtures after each test method."""
        shutil.rmtree(self.test_dir, ignore_errors = True)

    def test_dicom_partial_failure_and_ordering(self):
        """Test that unreadable files are skipped and the rest sorted by instance number"""
        base = np.arange(16).reshape(4, 4)
        paths = [
            write_dicom(os.path.join(self.test_dir, 'a.dcm'), base, 3),
            write_dicom(os.path.join(self.test_dir, 'b.dcm'), base, 1),
            write_dicom(os.path.join(self.test_dir, 'c.dcm'), base),
            write_dicom(os.path.join(self.test_dir, 'd.dcm'), base, 2),
        ]
        broken = os.path.join(self.test_dir, 'broken.dcm')
        with open(broken, 'wb') as f:
            f.write(b'this is not a dicom file')
        paths.insert(2, broken)

        result = list(frames.iter_dicom_frames(paths))

        self.assertEqual(len(result), 4)
        self.assertEqual([f.number for f in result], [1, 2, 3, 4])
        self.assertEqual([f.timestamp for f in result], [0.0, 1.0, 2.0, 3.0])
        self.assertEqual([f.metadata['fileName'] for f in result], ['c.dcm', 'b.dcm', 'd.dcm', 'a.dcm'])
        self.assertEqual(result[0].metadata['patientID'], '12345')
        self.assertEqual(result[0].metadata['modality'], 'MR')
        self.assertIsNone(result[0].metadata['instanceNumber'])
        self.assertEqual(result[1].pixels.shape, (4, 4, 4))

    def test_dicom_pixels_are_windowed(self):
        """Test that a DICOM file decodes to windowed opaque grayscale"""
        path = write_dicom(os.path.join(self.test_dir, 'x.dcm'), np.array([[0, 50], [100, 100]]), 1)
        frame = next(frames.iter_dicom_frames([path]))
        self.assertEqual(frame.pixels[..., 0].tolist(), [[0, 128], [255, 255]])
        self.assertTrue((frame.pixels[..., 3] == 255).all())

    def test_video_sampling(self):
        """Test that a 20 second video sampled at 5 fps yields 100 frames"""
        video = write_video(os.path.join(self.test_dir, 'clip.avi'), 20)
        result = list(frames.iter_video_frames(video, 5))
        self.assertEqual(len(result), 100)
        self.assertEqual([f.number for f in result], list(range(1, 101)))
        for k, frame in enumerate(result):
            self.assertAlmostEqual(frame.timestamp, k / 5)
        self.assertEqual(result[0].pixels.shape, (48, 64, 4))

    def test_video_respects_max_frames(self):
        """Test that sampling stops at the frame budget"""
        video = write_video(os.path.join(self.test_dir, 'clip.avi'), 4)
        result = list(frames.iter_video_frames(video, 5, max_frames = 7))
        self.assertEqual(len(result), 7)

    def test_video_unreadable_raises(self):
        """Test that a file that is not a video raises FrameSourceError"""
        path = os.path.join(self.test_dir, 'clip.mp4')
        with open(path, 'wb') as f:
            f.write(b'not a video')
        with self.assertRaises(frames.FrameSourceError):
            list(frames.iter_video_frames(path, 5))

    def test_png_data_url(self):
        """Test that frames encode as PNG data URLs"""
        url = frames.to_data_url(np.zeros((2, 2, 4), dtype = np.uint8))
        self.assertTrue(url.startswith('data:image/png;base64,iVBORw0KGgo'))


class TestRetryPolicy(unittest.IsolatedAsyncioTestCase):
    """Test cases for the backend retry policy"""

    async def test_retries_exhausted_on_503(self):
        """Test that a 503 is retried max_retries times, then re-raised"""
        calls = []
        sleep = RecordingSleep()

        async def call():
            calls.append(1)
            raise backend.BackendError("Service Unavailable", 503)

        with self.assertRaises(backend.BackendError):
            await backend.with_retry(call, 'test', max_retries = 3, base_delay = 0.5, sleep = sleep)
        self.assertEqual(len(calls), 4)
        self.assertEqual(len(sleep.delays), 3)
        for attempt, delay in enumerate(sleep.delays, start = 1):
            self.assertGreaterEqual(delay, 0.5 * 2 ** (attempt - 1))
            self.assertLessEqual(delay, 10.0)

    async def test_non_retryable_short_circuits(self):
        """Test that a 400 is raised after a single attempt"""
        calls = []
        sleep = RecordingSleep()

        async def call():
            calls.append(1)
            raise backend.BackendError("Bad Request", 400)

        with self.assertRaises(backend.BackendError):
            await backend.with_retry(call, 'test', sleep = sleep)
        self.assertEqual(len(calls), 1)
        self.assertEqual(sleep.delays, [])

    async def test_success_after_transient_errors(self):
        """Test that the result of the first successful attempt is returned"""
        outcomes = [OSError(errno.ECONNRESET, 'Connection reset'), asyncio.TimeoutError(), 'done']
        sleep = RecordingSleep()

        async def call():
            outcome = outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome

        self.assertEqual(await backend.with_retry(call, 'test', sleep = sleep), 'done')
        self.assertEqual(len(sleep.delays), 2)

    def test_is_retryable_error(self):
        """Test the classification of backend errors"""
        self.assertTrue(backend.is_retryable_error(backend.BackendError("x", 429))[0])
        self.assertTrue(backend.is_retryable_error(backend.BackendError("x", 500))[0])
        self.assertFalse(backend.is_retryable_error(backend.BackendError("x", 404))[0])
        self.assertTrue(backend.is_retryable_error(asyncio.TimeoutError())[0])
        self.assertTrue(backend.is_retryable_error(OSError(errno.ETIMEDOUT, 'timed out'))[0])
        self.assertTrue(backend.is_retryable_error(Exception("The service is currently unavailable"))[0])
        self.assertTrue(backend.is_retryable_error(Exception("Read timeout"))[0])
        self.assertFalse(backend.is_retryable_error(ValueError("bad payload"))[0])
        self.assertEqual(backend.is_retryable_error(backend.BackendError("x", 502))[2], 502)

    def test_is_retryable_error_uses_cause(self):
        """Test that an errno on the cause is found"""
        try:
            try:
                raise OSError(errno.ECONNREFUSED, 'refused')
            except OSError as e:
                raise RuntimeError('request failed') from e
        except RuntimeError as e:
            self.assertTrue(backend.is_retryable_error(e)[0])

    def test_backoff_delay_bounds(self):
        """Test that the backoff grows and is capped at 10 seconds"""
        for _ in range(20):
            delay = backend.backoff_delay(1, 0.5)
            self.assertTrue(0.5 <= delay <= 1.0)
            delay = backend.backoff_delay(3, 0.5)
            self.assertTrue(2.0 <= delay <= 2.5)
        self.assertEqual(backend.backoff_delay(10, 0.5), 10.0)


class TestReplyParsing(unittest.TestCase):
    """Test cases for the model reply parsing"""

    def test_fenced_json(self):
        """Test that markdown fences are removed"""
        reply = backend.parse_reply(STRUCTURED_REPLY)
        self.assertIsInstance(reply, backend.Structured)
        self.assertEqual(reply.analysis['urgency'], 'medium')

    def test_json_inside_prose(self):
        """Test that the outermost object is found inside prose"""
        reply = backend.parse_reply('Here is the report: {"summary": "ok", "urgency": "low"} Thanks.')
        self.assertIsInstance(reply, backend.Structured)
        self.assertEqual(reply.analysis['summary'], 'ok')

    def test_plain_text(self):
        """Test that plain text is kept as is"""
        reply = backend.parse_reply('No JSON at all')
        self.assertEqual(reply, backend.Unstructured('No JSON at all'))

    def test_unstructured_fallback(self):
        """Test the keyword heuristics on plain text replies"""
        text = "Mild edema.\nRecommendations:\n- Rest\n2. MRI follow-up\nUrgency: moderate"
        analysis = backend.to_overall_analysis(backend.Unstructured(text), [])
        self.assertEqual(analysis['summary'], text)
        self.assertEqual(analysis['recommendations'], ['Rest', 'MRI follow-up'])
        self.assertEqual(analysis['urgency'], 'medium')
        self.assertEqual(analysis['frameAnalyses'], [])

    def test_unstructured_defaults(self):
        """Test the defaults when no keywords are found"""
        analysis = backend.to_overall_analysis(backend.Unstructured("Normal study."), [])
        self.assertEqual(analysis['urgency'], 'low')
        self.assertEqual(len(analysis['recommendations']), 2)
        self.assertEqual(backend.extract_urgency("Immediate surgery"), 'high')

    def test_structured_normalization(self):
        """Test that structured replies are normalized field by field"""
        resolved = [
            {'number': 1, 'timestamp': 0.0, 'path': 's/frame_001.png', 'url': 'https://x/1'},
            {'number': 2, 'timestamp': 0.2, 'path': 's/frame_002.png', 'url': 'https://x/2'},
        ]
        parsed = {
            'summary': 'Findings',
            'recommendations': ['a', 1],
            'urgency': 'CRITICAL',
            'frameAnalyses': [
                {'frameNumber': '2', 'analysis': 'x', 'confidence': 1.7, 'findings': ['f']},
                {'frameNumber': 1, 'timestamp': 5, 'analysis': 'y'},
                'junk',
            ]
        }
        analysis = backend.to_overall_analysis(backend.Structured(parsed), resolved)
        self.assertEqual(analysis['urgency'], 'low')
        self.assertEqual(analysis['recommendations'], ['a', '1'])
        first, second = analysis['frameAnalyses']
        self.assertEqual(first['frameNumber'], 2)
        self.assertEqual(first['timestamp'], 0.2)
        self.assertEqual(first['confidence'], 1.0)
        self.assertEqual(first['storageUrl'], 'https://x/2')
        self.assertEqual(second['timestamp'], 5)
        self.assertEqual(second['confidence'], 0.6)
        self.assertEqual(second['findings'], [])

    def test_build_prompt_with_dicom(self):
        """Test that the DICOM context is added to the prompt"""
        prompt = backend.build_prompt('Knee pain', 3, {'patientName': 'Doe^John', 'studyDate': '20250102', 'modality': 'MR'})
        self.assertIn('Knee pain', prompt)
        self.assertIn('Exam date: 2025-01-02', prompt)
        self.assertIn('3 frame(s)', prompt)
        self.assertNotIn('STUDY', backend.build_prompt('Knee pain', 3))


class TestAnalysisBackend(unittest.IsolatedAsyncioTestCase):
    """Test cases for the chat completions client"""

    async def asyncSetUp(self):
        self.requests = []
        self.statuses = []

        async def completions(request):
            self.requests.append(await request.json())
            status = self.statuses.pop(0) if self.statuses else 200
            if status != 200:
                return web.json_response({'error': 'busy'}, status = status)
            return web.json_response(model_reply(STRUCTURED_REPLY))

        async def models(request):
            return web.json_response({'data': [{'id': 'fake-model'}]})

        app = web.Application()
        app.router.add_post('/v1/chat/completions', completions)
        app.router.add_get('/v1/models', models)
        self.server = TestServer(app)
        await self.server.start_server()
        self.backend = backend.AnalysisBackend(str(self.server.make_url('/v1/chat/completions')), 'key', 'fake-model',
                                               max_retries = 2, base_delay = 0.001, timeout = 10)
        self.http = None

    async def asyncTearDown(self):
        if self.http is not None:
            await self.http.close()
        await self.server.close()

    async def session(self):
        self.http = aiohttp.ClientSession()
        return self.http

    async def test_payload_and_reply(self):
        """Test that all frames are sent in one request and the reply parsed"""
        http = await self.session()
        resolved = [{'number': 1, 'timestamp': 0.0, 'data_url': 'data:image/png;base64,AAAA'},
                    {'number': 2, 'timestamp': 0.2, 'data_url': 'data:image/png;base64,BBBB'}]
        reply = await self.backend.analyze(http, resolved, 'Knee pain')
        self.assertIsInstance(reply, backend.Structured)
        self.assertEqual(len(self.requests), 1)
        payload = self.requests[0]
        self.assertEqual(payload['model'], 'fake-model')
        self.assertEqual([m['role'] for m in payload['messages']], ['system', 'user'])
        content = payload['messages'][1]['content']
        self.assertEqual(content[0]['type'], 'text')
        self.assertEqual(content[1]['image_url']['url'], 'data:image/png;base64,AAAA')
        self.assertEqual(content[2]['text'], 'Frame 1 at 0.00s')
        self.assertEqual(content[4]['text'], 'Frame 2 at 0.20s')

    async def test_retry_then_success(self):
        """Test that a 503 followed by a 200 succeeds"""
        http = await self.session()
        self.statuses = [503]
        reply = await self.backend.analyze(http, [{'number': 1, 'timestamp': 0.0, 'data_url': 'data:,'}], 'x')
        self.assertIsInstance(reply, backend.Structured)
        self.assertEqual(len(self.requests), 2)

    async def test_health(self):
        """Test that the models endpoint is checked"""
        http = await self.session()
        self.assertTrue(await self.backend.health(http))


class TestUploads(unittest.IsolatedAsyncioTestCase):
    """Test cases for batched uploads"""

    async def test_batches_and_progress(self):
        """Test that uploads run in bounded batches with progress after each batch"""
        fake = FakeStorage()
        progress = []
        items = [(f"s/frame_{i:03d}.png", b'x', 'image/png') for i in range(25)]
        result = await storage.upload_in_batches(fake, items, batch_size = 10,
                                                 on_progress = lambda done, total: progress.append((done, total)))
        self.assertEqual(progress, [(10, 25), (20, 25), (25, 25)])
        self.assertEqual(fake.max_active, 10)
        self.assertEqual([r['path'] for r in result], [i[0] for i in items])
        self.assertEqual(result[0]['url'], 'https://storage.test/s/frame_000.png')

    async def test_transient_error_retried(self):
        """Test that transient errors are retried with exponential delays"""
        sleep = RecordingSleep()
        fake = FakeStorage({'a.png': [storage.StorageError("status 503", 503),
                                      storage.StorageError("Network error", None)]})
        result = await storage.upload_with_retry(fake, 'a.png', b'x', 'image/png', max_retries = 3,
                                                 base_delay = 1.0, sleep = sleep)
        self.assertEqual(result, {'path': 'a.png'})
        self.assertEqual(fake.attempts['a.png'], 3)
        self.assertEqual(sleep.delays, [1.0, 2.0])

    async def test_transient_error_exhausted(self):
        """Test that the last transient error is raised after max_retries attempts"""
        sleep = RecordingSleep()
        fake = FakeStorage({'a.png': [storage.StorageError("timeout", None) for _ in range(5)]})
        with self.assertRaises(storage.StorageError):
            await storage.upload_with_retry(fake, 'a.png', b'x', 'image/png', max_retries = 3, sleep = sleep)
        self.assertEqual(fake.attempts['a.png'], 3)

    async def test_permanent_error_not_retried(self):
        """Test that a collision fails at once and fails the batch"""
        sleep = RecordingSleep()
        fake = FakeStorage({'b.png': [storage.StorageError("status 409: Duplicate", 409)]})
        items = [('a.png', b'x', 'image/png'), ('b.png', b'x', 'image/png'), ('c.png', b'x', 'image/png')]
        with self.assertRaises(storage.StorageError):
            await storage.upload_in_batches(fake, items, batch_size = 10, sleep = sleep)
        self.assertEqual(fake.attempts['b.png'], 1)
        # The rest of the batch settled
        self.assertEqual(sorted(fake.uploads), ['a.png', 'c.png'])
        self.assertEqual(sleep.delays, [])

    async def test_collision_with_digits_in_key_not_retried(self):
        """Test that a key containing 503 does not make a collision retryable"""
        sleep = RecordingSleep()
        key = 'analysis_1760000503123/frame_001.png'
        fake = FakeStorage({key: [storage.StorageError(f"Upload of {key} failed with status 409: Duplicate",
                                                       409, 'Duplicate')]})
        with self.assertRaises(storage.StorageError):
            await storage.upload_with_retry(fake, key, b'x', 'image/png', max_retries = 3, sleep = sleep)
        self.assertEqual(fake.attempts[key], 1)
        self.assertEqual(sleep.delays, [])

    def test_is_transient_error(self):
        """Test that storage errors are classified on status and service text"""
        self.assertTrue(storage.is_transient_error(storage.StorageError("Upload of a.png failed", 504, 'Gateway')))
        self.assertTrue(storage.is_transient_error(storage.StorageError("failed", 500, 'upstream timeout')))
        self.assertFalse(storage.is_transient_error(storage.StorageError("Upload of IM0503.dcm failed", 400, 'Bad')))
        self.assertTrue(storage.is_transient_error(asyncio.TimeoutError()))

    async def test_upload_frames_sets_remote(self):
        """Test that uploaded frames carry their remote reference"""
        fake = FakeStorage()
        source = [frames.Frame(1, 0.0, np.zeros((2, 2, 4), dtype = np.uint8)),
                  frames.Frame(2, 0.2, np.zeros((2, 2, 4), dtype = np.uint8))]
        result = await storage.upload_frames(fake, source, 'sess', frames.encode_png)
        self.assertEqual(result[1].remote['path'], 'sess/frame_002.png')
        self.assertIsNone(source[1].remote)


class TestStorageClient(unittest.IsolatedAsyncioTestCase):
    """Test cases for the storage REST client against a fake service"""

    async def asyncSetUp(self):
        self.service = FakeStorageService()
        self.headers = self.service.headers
        self.deleted = self.service.deleted
        app = web.Application()
        self.service.add_routes(app)
        self.server = TestServer(app)
        await self.server.start_server()
        self.client = storage.StorageClient(str(self.server.make_url('/')), 'key', 'frames')

    async def asyncTearDown(self):
        await self.server.close()

    async def test_upload_list_remove(self):
        """Test that objects are uploaded without upsert, listed and removed"""
        await self.client.upload('sess/frame_001.png', b'png', 'image/png')
        await self.client.upload('sess/frame_002.png', b'png', 'image/png')
        self.assertEqual(self.headers[0]['x-upsert'], 'false')
        self.assertEqual(self.headers[0]['Authorization'], 'Bearer key')
        self.assertTrue(self.client.public_url('sess/frame_001.png').endswith(
            '/storage/v1/object/public/frames/sess/frame_001.png'))
        removed = await storage.remove_folder(self.client, 'sess')
        self.assertEqual(removed, 2)
        self.assertEqual(sorted(self.deleted), ['sess/frame_001.png', 'sess/frame_002.png'])

    async def test_collision_is_an_error(self):
        """Test that uploading an existing key fails with the status"""
        await self.client.upload('a.png', b'1', 'image/png')
        with self.assertRaises(storage.StorageError) as cm:
            await self.client.upload('a.png', b'2', 'image/png')
        self.assertEqual(cm.exception.status, 409)
        self.assertFalse(storage.is_transient_error(cm.exception))


class TestSubmissionEncoder(unittest.TestCase):
    """Test cases for input validation and submission fields"""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Tear down test fixtures after each test method."""
        shutil.rmtree(self.test_dir, ignore_errors = True)

    def test_validate_video(self):
        """Test that wrong types, missing and oversized files are rejected"""
        with self.assertRaises(scanclient.ValidationError):
            scanclient.validate_video(os.path.join(self.test_dir, 'missing.mp4'))
        text_file = os.path.join(self.test_dir, 'notes.txt')
        with open(text_file, 'wb') as f:
            f.write(b'x')
        with self.assertRaises(scanclient.ValidationError):
            scanclient.validate_video(text_file)
        big = os.path.join(self.test_dir, 'big.mp4')
        with open(big, 'wb') as f:
            f.truncate(scanclient.MAX_VIDEO_SIZE + 1)
        with self.assertRaises(scanclient.ValidationError):
            scanclient.validate_video(big)
        small = os.path.join(self.test_dir, 'small.mov')
        with open(small, 'wb') as f:
            f.write(b'x')
        self.assertEqual(scanclient.validate_video(small), 'video/mov')

    def test_validate_dicom_and_problem(self):
        """Test that an empty selection and an empty problem are rejected"""
        with self.assertRaises(scanclient.ValidationError):
            scanclient.validate_dicom([])
        with self.assertRaises(ValueError):
            scanclient.validate_problem('   ')
        self.assertEqual(scanclient.validate_problem('  Knee pain '), 'Knee pain')

    def test_video_fields_inline_and_remote(self):
        """Test the fields of inline and uploaded frames"""
        pixels = np.zeros((2, 2, 4), dtype = np.uint8)
        source = [frames.Frame(1, 0.0, pixels),
                  frames.Frame(2, 0.2, pixels, remote = {'path': 's/frame_002.png', 'url': 'https://x/2'})]
        fields = scanclient.build_submission_fields('video', ' Knee pain ', source, fps = 5)
        names = [name for name, _ in fields]
        values = dict(fields)
        self.assertEqual(names[:5], ['uploadMode', 'problem', 'frameCount', 'fps', 'frame_0'])
        self.assertEqual(values['problem'], 'Knee pain')
        self.assertEqual(values['frameCount'], '2')
        self.assertTrue(values['frame_0'].startswith('data:image/png;base64,'))
        self.assertEqual(values['frameUrl_1'], 'https://x/2')
        self.assertEqual(values['framePath_1'], 's/frame_002.png')
        self.assertEqual(values['frameNumber_1'], '2')
        self.assertEqual(values['timestamp_1'], '0.2')

    def test_dicom_fields_defaults(self):
        """Test the DICOM fields and their defaults"""
        pixels = np.zeros((2, 2, 4), dtype = np.uint8)
        source = [frames.Frame(1, 0.0, pixels, metadata = {'fileName': 'a.dcm', 'modality': None})]
        fields = scanclient.build_submission_fields('dicom', 'x', source, dicom_folder = 'dicom/patient-1',
                                                    dicom_assets = [{'path': 'dicom/patient-1/a.dcm', 'url': 'https://x/a'}])
        values = dict(fields)
        self.assertEqual(values['modality'], 'DICOM')
        self.assertTrue(values['patientID'].startswith('patient-'))
        self.assertEqual(values['dicomUrl_0'], 'https://x/a')
        self.assertEqual(values['fileName_0'], 'a.dcm')
        self.assertEqual(json.loads(values['metadata_0'])['fileName'], 'a.dcm')


class TestStreamConsumer(unittest.TestCase):
    """Test cases for the client side stream reader"""

    def test_byte_by_byte_with_trailing_line(self):
        """Test that events split anywhere are reassembled"""
        body = ('data: {"progress": 10, "step": "réception"}\n\n'
                'data: {"progress": 10, "step": "réception"}\n\n'
                ': keep-alive\n\n'
                'data: {"progress": 40, "step": "b"}\r\n\r\n'
                'data: {"progress": 100, "results": {"summary": "ok"}}').encode('utf-8')
        steps = []
        consumer = scanclient.StreamConsumer(on_step = steps.append)
        for i in range(len(body)):
            consumer.feed(body[i:i + 1])
        consumer.finish()
        self.assertEqual(consumer.steps, ['réception', 'b', 'completed'])
        self.assertEqual(steps, consumer.steps)
        self.assertEqual(consumer.results, {'summary': 'ok'})
        self.assertEqual(consumer.progress, 100)
        self.assertIsNone(consumer.error)

    def test_malformed_and_error(self):
        """Test that malformed data is skipped and the first terminal event wins"""
        consumer = scanclient.StreamConsumer()
        consumer.feed(b'data: {broken\n\ndata: {"error": "Error: boom"}\n\n'
                      b'data: {"progress": 100, "results": {}}\n\n')
        consumer.finish()
        self.assertEqual(consumer.error, 'Error: boom')
        self.assertIsNone(consumer.results)
        self.assertEqual(consumer.steps, ['error'])

    def test_progress_is_mapped_and_monotonic(self):
        """Test that progress is mapped into the range and never decreases"""
        seen = []
        consumer = scanclient.StreamConsumer(on_progress = seen.append)
        consumer.feed(b'data: {"progress": 40}\n\ndata: {"progress": 20}\n\ndata: {"progress": 60}\n\n')
        self.assertEqual(seen, [70.0, 80.0])

    def test_stream_closed_without_terminal_event(self):
        """Test that a stream without results or error is an error"""
        consumer = scanclient.StreamConsumer()
        consumer.feed(b'data: {"progress": 30, "step": "preparing_model"}\n\n')
        consumer.finish()
        self.assertEqual(consumer.error, scanclient.STREAM_CLOSED)
        self.assertTrue(consumer.done)


class TestProgressStream(unittest.IsolatedAsyncioTestCase):
    """Test cases for the server side stream invariants"""

    async def test_clamp_dedup_single_terminal(self):
        """Test that progress is clamped and only one terminal event goes out"""
        channel = FakeChannel()
        stream = scanvision.ProgressStream(channel)
        await stream.emit(15, 'loading_batch_1')
        await stream.emit(27.5, 'loading_batch_2')
        await stream.emit(20, 'frames_saved', frameCount = 60)
        await stream.emit(30, 'frames_saved')
        await stream.finish({'summary': 'ok'})
        await stream.fail('Error: late')
        await stream.emit(99, 'late')
        self.assertEqual(channel.events, [
            {'progress': 15, 'step': 'loading_batch_1'},
            {'progress': 27.5, 'step': 'loading_batch_2'},
            {'progress': 27.5, 'step': 'frames_saved', 'frameCount': 60},
            {'progress': 30},
            {'progress': 100, 'results': {'summary': 'ok'}},
        ])

    async def test_sse_framing_and_heartbeat(self):
        """Test the event framing, the keep-alive comments and closing"""
        response = FakeResponse()
        channel = scanvision.SSEChannel(response, keepalive_interval = 0.01)
        channel.start_heartbeat()
        await channel.send({'progress': 5})
        await asyncio.sleep(0.05)
        await channel.close()
        self.assertEqual(response.writes[0], b'data: {"progress": 5}\n\n')
        self.assertIn(b': keep-alive\n\n', response.writes)
        self.assertTrue(response.eof)
        with self.assertRaises(scanvision.StreamClosed):
            await channel.send({'progress': 10})

    async def test_disconnect_raises_stream_closed(self):
        """Test that a write to a gone client raises StreamClosed"""
        channel = scanvision.SSEChannel(FakeResponse(fail = True))
        with self.assertRaises(scanvision.StreamClosed):
            await channel.send({'progress': 5})


class TestSubmissionParsing(unittest.TestCase):
    """Test cases for the server side form parsing"""

    def test_metadata_fallback(self):
        """Test that study details come from the first frame metadata"""
        form = {'frameCount': '1', 'problem': 'x', 'frame_0': 'data:image/png;base64,AAAA',
                'metadata_0': json.dumps({'patientName': 'Doe^John', 'modality': 'CT'})}
        session = scanvision.parse_submission(form)
        self.assertEqual(session['dicom']['patientName'], 'Doe^John')
        self.assertEqual(session['dicom']['modality'], 'CT')
        self.assertTrue(session['sessionId'].startswith('analysis_'))
        self.assertEqual(session['frames'][0]['number'], 1)

    def test_invalid_submissions(self):
        """Test that missing frames and problems are rejected"""
        with self.assertRaises(ValueError):
            scanvision.parse_submission({'frameCount': '0', 'problem': 'x'})
        with self.assertRaises(ValueError):
            scanvision.parse_submission({'frameCount': 'many', 'problem': 'x'})
        with self.assertRaises(ValueError):
            scanvision.parse_submission({'frameCount': '1', 'problem': '  '})


class TestAnalysisServer(unittest.IsolatedAsyncioTestCase):
    """End to end tests of the analysis endpoints with a fake model and storage"""

    async def asyncSetUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.db_file = os.path.join(self.test_dir, 'test.db')
        self.temp_dir = os.path.join(self.test_dir, 'temp')
        self.model_requests = 0
        self.model_payloads = []
        self.model_status = 200
        self.server_requests = 0
        self.png = frames.encode_png(np.zeros((4, 4, 4), dtype = np.uint8))

        async def completions(request):
            self.model_requests += 1
            self.model_payloads.append(await request.json())
            if self.model_status != 200:
                return web.json_response({'error': 'unavailable'}, status = self.model_status)
            return web.json_response(model_reply(STRUCTURED_REPLY))

        async def frame_file(request):
            if request.match_info['name'] == 'missing.png':
                return web.Response(status = 404)
            return web.Response(body = self.png, content_type = 'image/png')

        outside = web.Application()
        outside.router.add_post('/v1/chat/completions', completions)
        outside.router.add_get('/frames/{name}', frame_file)
        self.storage = FakeStorageService()
        self.storage.add_routes(outside)
        self.outside = TestServer(outside)
        await self.outside.start_server()

        self.config = scanvision.load_config(files = [])
        self.config.set('general', 'SCANVISION_DB_PATH', self.db_file)
        self.config.set('general', 'TEMP_DIR', self.temp_dir)
        self.config.set('openai', 'OPENAI_URL', str(self.outside.make_url('/v1/chat/completions')))
        self.config.set('openai', 'RETRY_BASE_DELAY_MS', '1')
        app = scanvision.create_app(self.config)

        @web.middleware
        async def count_requests(request, handler):
            self.server_requests += 1
            return await handler(request)

        app.middlewares.append(count_requests)
        self.client = TestClient(TestServer(app))
        await self.client.start_server()
        self.config.set('client', 'SERVER_URL', str(self.client.make_url('/')).rstrip('/'))

    async def asyncTearDown(self):
        await self.client.close()
        await self.outside.close()
        shutil.rmtree(self.test_dir, ignore_errors = True)

    async def post_frames(self, fields):
        resp = await self.client.post('/api/analyze-frames', data = scanclient.encode_submission(fields))
        self.assertEqual(resp.status, 200)
        self.assertTrue(resp.headers['Content-Type'].startswith('text/event-stream'))
        self.assertEqual(resp.headers['Cache-Control'], 'no-cache, no-transform')
        return parse_events(await resp.text())

    def inline_fields(self, count, problem = 'Knee pain'):
        pixels = np.zeros((4, 4, 4), dtype = np.uint8)
        source = [frames.Frame(i + 1, i * 0.2, pixels) for i in range(count)]
        return scanclient.build_submission_fields('video', problem, source, fps = 5, session_id = 'analysis_test')

    def session_rows(self):
        with sqlite3.connect(self.db_file) as conn:
            return conn.execute('SELECT COUNT(*) FROM analysis_sessions').fetchone()[0]

    def assertStreamInvariants(self, events):
        progress = [e['progress'] for e in events if 'progress' in e]
        self.assertEqual(progress, sorted(progress))
        terminal = [e for e in events if 'results' in e or 'error' in e]
        self.assertEqual(len(terminal), 1)
        self.assertIs(events[-1], terminal[0])
        self.assertEqual(events[0], {'progress': 5, 'step': 'received_request'})

    async def test_happy_path_inline_frames(self):
        """Test a complete analysis of inline frames"""
        events = await self.post_frames(self.inline_fields(3))
        self.assertStreamInvariants(events)
        steps = [e['step'] for e in events if 'step' in e]
        self.assertEqual(steps, ['received_request', 'parsing_form_data', 'loading_frames_from_storage',
                                 'loading_batch_1', 'frames_saved', 'preparing_model', 'parsing_results',
                                 'finalizing', 'saving_to_database', 'cleanup'])
        results = events[-1]['results']
        self.assertEqual(events[-1]['progress'], 100)
        self.assertEqual(results['summary'], 'Small effusion in the left knee joint.')
        self.assertEqual(results['urgency'], 'medium')
        self.assertEqual(results['frameAnalyses'][0]['timestamp'], 0.2)
        self.assertEqual(self.model_requests, 1)
        self.assertEqual(self.session_rows(), 1)
        self.assertEqual(os.listdir(self.temp_dir), [])
        # The stored session is served back
        resp = await self.client.get('/api/sessions/analysis_test')
        self.assertEqual(resp.status, 200)
        stored = await resp.json()
        self.assertEqual(stored['frameCount'], 3)
        self.assertEqual(stored['frameAnalyses'][0]['findings'], ['effusion'])

    async def test_video_scenario_through_client(self):
        """Test that a 20 second video at 5 fps is analyzed as 100 frames"""
        video = write_video(os.path.join(self.test_dir, 'clip.avi'), 20)
        steps = []
        consumer = await scanclient.analyze_video(video, 'Knee pain', self.config, fps = 5, on_step = steps.append)
        self.assertIsNone(consumer.error)
        self.assertTrue(consumer.results['summary'])
        self.assertEqual(consumer.progress, 100)
        self.assertIn('loading_batch_2', steps)
        self.assertEqual(steps[-1], 'completed')
        with sqlite3.connect(self.db_file) as conn:
            self.assertEqual(conn.execute('SELECT frame_count FROM analysis_sessions').fetchone()[0], 100)

    async def test_zero_frames_is_an_error(self):
        """Test that a submission without frames fails before the model"""
        events = await self.post_frames([('uploadMode', 'video'), ('problem', 'x'), ('frameCount', '0')])
        self.assertStreamInvariants(events)
        self.assertEqual(events[-1], {'error': 'Error: No frames provided'})
        self.assertEqual(self.model_requests, 0)

    async def test_backend_exhausts_retries(self):
        """Test that a failing model ends in one error and no stored records"""
        self.model_status = 503
        events = await self.post_frames(self.inline_fields(2))
        self.assertStreamInvariants(events)
        self.assertIn('error', events[-1])
        self.assertTrue(events[-1]['error'].startswith('Error: '))
        self.assertEqual(self.model_requests, 4)
        self.assertEqual(self.session_rows(), 0)
        self.assertEqual(os.listdir(self.temp_dir), [])

    async def test_remote_frame_fetch_failure(self):
        """Test that a referenced frame answering 404 fails the request"""
        fields = [('uploadMode', 'video'), ('problem', 'x'), ('frameCount', '2'),
                  ('frameUrl_0', str(self.outside.make_url('/frames/ok.png'))), ('framePath_0', 's/ok.png'),
                  ('timestamp_0', '0'), ('frameNumber_0', '1'),
                  ('frameUrl_1', str(self.outside.make_url('/frames/missing.png'))), ('framePath_1', 's/missing.png'),
                  ('timestamp_1', '0.2'), ('frameNumber_1', '2')]
        events = await self.post_frames(fields)
        self.assertStreamInvariants(events)
        self.assertTrue(events[-1]['error'].startswith('Error: Failed to load frame 2'))
        self.assertEqual(self.model_requests, 0)

    async def test_remote_frames_carry_storage_reference(self):
        """Test that fetched frames keep their storage URL in the results"""
        url = str(self.outside.make_url('/frames/ok.png'))
        fields = [('uploadMode', 'video'), ('problem', 'x'), ('frameCount', '2'),
                  ('frameUrl_0', url), ('framePath_0', 's/1.png'), ('timestamp_0', '0'), ('frameNumber_0', '1'),
                  ('frameUrl_1', url), ('framePath_1', 's/2.png'), ('timestamp_1', '0.2'), ('frameNumber_1', '2')]
        events = await self.post_frames(fields)
        analysis = events[-1]['results']['frameAnalyses'][0]
        self.assertEqual(analysis['storagePath'], 's/2.png')
        self.assertEqual(analysis['storageUrl'], url)

    async def test_persistence_failure_is_ignored(self):
        """Test that a database failure does not fail the analysis"""
        with patch('records.db_save_analysis', side_effect = sqlite3.OperationalError('database is locked')) as mock_save:
            events = await self.post_frames(self.inline_fields(1))
        self.assertTrue(mock_save.called)
        self.assertStreamInvariants(events)
        self.assertIn('results', events[-1])

    async def test_server_side_video(self):
        """Test the analyze-video endpoint with server side extraction"""
        video = write_video(os.path.join(self.test_dir, 'clip.avi'), 2)
        consumer = await scanclient.analyze_video_on_server(video, 'Knee pain', self.config, fps = 5)
        self.assertIsNone(consumer.error)
        self.assertIn('frames_extracted', consumer.steps)
        self.assertTrue(consumer.results['summary'])

    def write_series(self):
        """Write three DICOM files and one unreadable file."""
        base = np.arange(16).reshape(4, 4)
        paths = [write_dicom(os.path.join(self.test_dir, f'IM{n:04d}.dcm'), base, n) for n in (503, 1, 2)]
        broken = os.path.join(self.test_dir, 'broken.dcm')
        with open(broken, 'wb') as f:
            f.write(b'this is not a dicom file')
        paths.insert(1, broken)
        return paths

    def use_storage(self):
        self.config.set('storage', 'STORAGE_URL', str(self.outside.make_url('/')).rstrip('/'))
        self.config.set('storage', 'STORAGE_KEY', 'key')
        self.config.set('storage', 'UPLOAD_BASE_DELAY_MS', '1')

    async def test_dicom_series_through_client(self):
        """Test that a DICOM series is analyzed with the study details in the prompt"""
        steps = []
        consumer = await scanclient.analyze_dicom(self.write_series(), 'Headache', self.config, on_step = steps.append)
        self.assertIsNone(consumer.error)
        self.assertTrue(consumer.results['summary'])
        self.assertEqual(steps[-1], 'completed')
        self.assertEqual(self.model_requests, 1)
        content = self.model_payloads[0]['messages'][1]['content']
        # One text part, then an image and a caption per readable file
        self.assertEqual(len(content), 7)
        prompt = content[0]['text']
        self.assertIn('Headache', prompt)
        self.assertIn('- Name: Test^Patient', prompt)
        self.assertIn('- ID: 12345', prompt)
        self.assertIn('- Modality: MR', prompt)

    async def test_empty_dicom_set_rejected_before_network(self):
        """Test that an empty DICOM selection never opens a stream"""
        with self.assertRaises(scanclient.ValidationError):
            await scanclient.analyze_dicom([], 'Headache', self.config)
        self.assertEqual(self.server_requests, 0)
        self.assertEqual(self.model_requests, 0)

    async def test_video_with_storage_and_purge(self):
        """Test that the video and frames are uploaded, referenced and purged"""
        self.use_storage()
        video = write_video(os.path.join(self.test_dir, 'clip.avi'), 2)
        progress = []
        consumer = await scanclient.analyze_video(video, 'Knee pain', self.config, fps = 5, purge_uploads = True,
                                                  on_progress = progress.append)
        self.assertIsNone(consumer.error)
        videos = list(self.storage.objects['medical-videos'])
        self.assertEqual(len(videos), 1)
        self.assertTrue(videos[0].endswith('-clip.avi'))
        # The frames were fetched from storage by the server, then purged
        analysis = consumer.results['frameAnalyses'][0]
        self.assertTrue(analysis['storagePath'].endswith('/frame_002.png'))
        self.assertIn('/storage/v1/object/public/medical-frames/', analysis['storageUrl'])
        self.assertEqual(self.storage.objects['medical-frames'], {})
        self.assertEqual(len(self.storage.deleted), 10)
        self.assertEqual(self.storage.headers[0]['Authorization'], 'Bearer key')
        self.assertTrue(any(25 < p <= 50 for p in progress))
        self.assertEqual(progress, sorted(progress))
        with sqlite3.connect(self.db_file) as conn:
            self.assertEqual(conn.execute('SELECT video_filename FROM analysis_sessions').fetchone()[0], 'clip.avi')

    async def test_dicom_with_storage_and_purge(self):
        """Test that DICOM files and frames are uploaded with progress, then purged"""
        self.use_storage()
        paths = self.write_series()
        progress = []
        consumer = await scanclient.analyze_dicom(paths, 'Headache', self.config, purge_uploads = True,
                                                  on_progress = progress.append)
        self.assertIsNone(consumer.error)
        # The unreadable file is stored too, only frames need decoding
        self.assertEqual(len(self.storage.deleted), 4 + 3)
        self.assertTrue(any(p.startswith('dicom/patient-') and p.endswith('/IM0503.dcm')
                            for p in self.storage.deleted))
        self.assertEqual(self.storage.objects['medical-videos'], {})
        self.assertEqual(self.storage.objects['medical-frames'], {})
        self.assertTrue(any(25 < p <= 50 for p in progress))
        self.assertEqual(consumer.results['frameAnalyses'][0]['storagePath'].rsplit('/', 1)[1], 'frame_002.png')

    async def test_health(self):
        """Test that the health endpoint reports the model"""
        resp = await self.client.get('/api/health')
        data = await resp.json()
        self.assertEqual(data['model'], 'medgemma-4b-it')
        # The fake model service has no models endpoint
        self.assertFalse(data['backend'])

    async def test_unknown_session(self):
        """Test that an unknown session is a 404"""
        resp = await self.client.get('/api/sessions/nope')
        self.assertEqual(resp.status, 404)


class TestRecords(unittest.TestCase):
    """Test cases for the record store"""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.test_dir = tempfile.mkdtemp()
        self.db_file = os.path.join(self.test_dir, 'test.db')
        records.db_init(self.db_file)

    def tearDown(self):
        """Tear down test fixtures after each test method."""
        shutil.rmtree(self.test_dir, ignore_errors = True)

    def test_db_init_creates_tables(self):
        """Test that db_init creates all required tables"""
        with sqlite3.connect(self.db_file) as conn:
            tables = [row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")]
        self.assertIn('analysis_sessions', tables)
        self.assertIn('analysis_frames', tables)

    def test_records_are_appended(self):
        """Test that saving the same session twice appends records"""
        analysis = {
            'summary': 'ok', 'recommendations': ['rest'], 'urgency': 'low',
            'frameAnalyses': [{'frameNumber': 1, 'timestamp': 0.0, 'analysis': 'a', 'confidence': 0.5,
                               'findings': ['f'], 'storagePath': None, 'storageUrl': None}]
        }
        records.db_save_analysis(self.db_file, 's1', 'x', 'clip.mp4', 1, analysis)
        analysis['summary'] = 'second'
        analysis['frameAnalyses'][0]['analysis'] = 'b'
        records.db_save_analysis(self.db_file, 's1', 'x', 'clip.mp4', 1, analysis)
        with sqlite3.connect(self.db_file) as conn:
            self.assertEqual(conn.execute('SELECT COUNT(*) FROM analysis_sessions').fetchone()[0], 2)
            self.assertEqual(conn.execute('SELECT COUNT(*) FROM analysis_frames').fetchone()[0], 2)
        session = records.db_get_session(self.db_file, 's1')
        self.assertEqual(session['summary'], 'second')
        self.assertEqual(session['videoFilename'], 'clip.mp4')
        self.assertEqual(session['recommendations'], ['rest'])
        # Only the frames of the latest run
        self.assertEqual(len(session['frameAnalyses']), 1)
        self.assertEqual(session['frameAnalyses'][0]['analysis'], 'b')


class TestScanVisionConfig(unittest.TestCase):
    """Test cases for the configuration"""

    def test_default_config_structure(self):
        """Test that the defaults hold every section"""
        for section in ('general', 'server', 'openai', 'storage', 'client'):
            self.assertIn(section, scanvision.DEFAULT_CONFIG)
        config = scanvision.load_config(files = [])
        self.assertEqual(config.getint('server', 'KEEPALIVE_INTERVAL'), 15)
        self.assertEqual(config.getint('server', 'FRAME_BATCH_SIZE'), 50)
        self.assertEqual(config.get('storage', 'STORAGE_URL'), '')

    def test_local_config_overrides(self):
        """Test that a configuration file overrides the defaults"""
        test_dir = tempfile.mkdtemp()
        try:
            path = os.path.join(test_dir, 'local.cfg')
            with open(path, 'w') as f:
                f.write('[server]\nPORT = 9000\n')
            config = scanvision.load_config(files = [path])
            self.assertEqual(config.getint('server', 'PORT'), 9000)
            self.assertEqual(config.get('openai', 'MAX_RETRIES'), '3')
        finally:
            shutil.rmtree(test_dir, ignore_errors = True)


if __name__ == '__main__':
    unittest.main()
