#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# ScanVision - Streaming medical frame analysis with a vision LLM.
# Copyright (C) 2025 Costin Stroie <costinstroie@eridu.eu.org>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# any later version.

# Standard library imports
import argparse
import asyncio
import base64
import binascii
import configparser
import json
import logging
import os
import shutil
import tempfile
import time

# Third-party imports
import aiohttp
from aiohttp import web

# Local imports
import records
from backend import AnalysisBackend, to_overall_analysis
from frames import FrameSourceError, iter_video_frames, default_max_frames, to_data_url

# Default configuration values
DEFAULT_CONFIG = {
    'general': {
        'SCANVISION_DB_PATH': 'scanvision.db',
        'TEMP_DIR': 'temp'
    },
    'server': {
        'HOST': '0.0.0.0',
        'PORT': '8000',
        'KEEPALIVE_INTERVAL': '15',
        'FRAME_BATCH_SIZE': '50',
        'MAX_REQUEST_MB': '512'
    },
    'openai': {
        'OPENAI_URL': 'http://127.0.0.1:8080/v1/chat/completions',
        'OPENAI_API_KEY': 'sk-your-api-key',
        'MODEL_NAME': 'medgemma-4b-it',
        'MAX_RETRIES': '3',
        'RETRY_BASE_DELAY_MS': '500',
        'REQUEST_TIMEOUT': '600'
    },
    'storage': {
        'STORAGE_URL': '',
        'STORAGE_KEY': '',
        'VIDEO_BUCKET': 'medical-videos',
        'FRAME_BUCKET': 'medical-frames',
        'UPLOAD_BATCH_SIZE': '10',
        'UPLOAD_MAX_RETRIES': '3',
        'UPLOAD_BASE_DELAY_MS': '1000'
    },
    'client': {
        'SERVER_URL': 'http://localhost:8000',
        'FPS': '5',
        'STREAM_GRACE_PERIOD': '60'
    }
}

# Headers of the event stream response
SSE_HEADERS = {
    'Content-Type': 'text/event-stream; charset=utf-8',
    'Cache-Control': 'no-cache, no-transform',
    'Connection': 'keep-alive',
    'X-Accel-Buffering': 'no',
}


def load_config(files = None):
    """
    Load the configuration.

    The defaults are overridden by scanvision.cfg, then by local.cfg.

    Args:
        files: Optional list of configuration files to read instead

    Returns:
        configparser.ConfigParser: The configuration
    """
    config = configparser.ConfigParser()
    config.read_dict(DEFAULT_CONFIG)
    if files is None:
        files = ['scanvision.cfg', 'local.cfg']
    for file_name in files:
        if config.read(file_name):
            logging.info(f"Configuration loaded from {file_name}")
    return config


def setup_logging(level = 'INFO', log_file = None):
    """
    Configure the root logger.

    Args:
        level: Log level name
        log_file: Optional log file, in addition to the console
    """
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level = getattr(logging, level),
        format = '%(asctime)s | %(levelname)8s | %(message)s',
        handlers = handlers
    )
    # Filter out noisy module logs
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('pydicom').setLevel(logging.WARNING)
    logging.getLogger().setLevel(getattr(logging, level))


class StreamClosed(Exception):
    """Raised when writing to a client that went away."""


class FrameFetchError(Exception):
    """Raised when a referenced frame cannot be downloaded."""


class EventChannel:
    """A one-way channel of JSON events towards the client."""

    async def send(self, event):
        raise NotImplementedError

    async def comment(self, text):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class SSEChannel(EventChannel):
    """
    Server-Sent Events over a prepared aiohttp StreamResponse.

    Every event is written as one 'data: <json>' message. While the channel
    is open a comment line is written every keepalive_interval seconds.
    """

    def __init__(self, response, keepalive_interval = 15):
        self.response = response
        self.keepalive_interval = keepalive_interval
        self.closed = False
        self.heartbeat = None
        # Heartbeat and events share the response
        self.lock = asyncio.Lock()

    async def _write(self, text):
        if self.closed:
            raise StreamClosed("Stream already closed")
        try:
            async with self.lock:
                await self.response.write(text.encode('utf-8'))
        except ConnectionError as e:
            self.closed = True
            raise StreamClosed(f"Client disconnected: {e}") from e

    async def send(self, event):
        await self._write(f"data: {json.dumps(event)}\n\n")

    async def comment(self, text):
        await self._write(f": {text}\n\n")

    def start_heartbeat(self):
        """Start the keep-alive task."""
        self.heartbeat = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self):
        try:
            while not self.closed:
                await asyncio.sleep(self.keepalive_interval)
                await self.comment('keep-alive')
        except StreamClosed:
            logging.debug("Heartbeat stopped, client is gone")

    async def close(self):
        """Stop the heartbeat and end the response, once."""
        if self.heartbeat is not None:
            self.heartbeat.cancel()
            try:
                await self.heartbeat
            except asyncio.CancelledError:
                pass
            self.heartbeat = None
        if self.closed:
            return
        self.closed = True
        try:
            await self.response.write_eof()
        except ConnectionError as e:
            logging.debug(f"Client gone before the end of the stream: {e}")


class ProgressStream:
    """
    Progress reporting over an event channel.

    Progress never goes backwards, a step is not repeated right after itself
    and exactly one terminal event (results or error) is sent, after which
    the stream stays silent.
    """

    def __init__(self, channel):
        self.channel = channel
        self.progress = 0
        self.step = None
        self.done = False

    async def emit(self, progress = None, step = None, **extra):
        if self.done:
            return
        event = {}
        if progress is not None:
            self.progress = max(self.progress, progress)
            event['progress'] = self.progress
        if step is not None and step != self.step:
            self.step = step
            event['step'] = step
        if not event:
            return
        event.update(extra)
        await self.channel.send(event)

    async def finish(self, results):
        if self.done:
            return
        self.done = True
        self.progress = 100
        await self.channel.send({'progress': 100, 'results': results})

    async def fail(self, message):
        if self.done:
            return
        self.done = True
        await self.channel.send({'error': message})


def parse_submission(form):
    """
    Read an analyze-frames submission.

    Args:
        form: Multipart fields (mapping of name to value)

    Returns:
        dict: sessionId, problem, frameCount, uploadMode, dicom, videoFilename
              and the list of frame references

    Raises:
        ValueError: On a missing or invalid frame count or an empty problem
    """
    try:
        frame_count = int(form.get('frameCount') or '0')
    except ValueError:
        raise ValueError(f"Invalid frame count: {form.get('frameCount')}")
    if frame_count <= 0:
        raise ValueError("No frames provided")
    problem = (form.get('problem') or '').strip()
    if not problem:
        raise ValueError("Problem statement is required")

    dicom = {key: form.get(key) or '' for key in ('patientName', 'patientID', 'studyDate', 'modality')}
    # Take the study details from the first frame when not sent on their own
    if not dicom['patientName'] and form.get('metadata_0'):
        try:
            first = json.loads(form.get('metadata_0'))
            for key in dicom:
                dicom[key] = dicom[key] or first.get(key) or ''
        except (ValueError, AttributeError) as e:
            logging.error(f"Failed to parse DICOM metadata: {e}")

    refs = []
    for i in range(frame_count):
        try:
            number = int(form.get(f'frameNumber_{i}') or i + 1)
            timestamp = float(form.get(f'timestamp_{i}') or 0)
        except ValueError:
            raise ValueError(f"Invalid frame number or timestamp for frame {i}")
        refs.append({
            'number': number,
            'timestamp': timestamp,
            'url': form.get(f'frameUrl_{i}'),
            'path': form.get(f'framePath_{i}'),
            'data_url': form.get(f'frame_{i}'),
        })

    video_filename = form.get('videoFilename') or None
    if not video_filename and form.get('videoPath'):
        video_filename = os.path.basename(form.get('videoPath'))
    return {
        'sessionId': form.get('sessionId') or f"analysis_{int(time.time() * 1000)}",
        'problem': problem,
        'frameCount': frame_count,
        'uploadMode': form.get('uploadMode') or 'video',
        'dicom': dicom if any(dicom.values()) else None,
        'videoFilename': video_filename,
        'frames': refs,
    }


def decode_data_url(data_url):
    """Return the bytes of a base64 data URL."""
    header, _, payload = data_url.partition(',')
    if not payload or ';base64' not in header:
        raise ValueError("Malformed frame data URL")
    try:
        return base64.b64decode(payload, validate = True)
    except binascii.Error as e:
        raise ValueError(f"Malformed frame data URL: {e}")


def _stage_frame(ref, data, frames_dir):
    """Write frame bytes into the request directory."""
    file_path = os.path.join(frames_dir, f"frame_{ref['number']:03d}.png")
    with open(file_path, 'wb') as f:
        f.write(data)
    return file_path


async def fetch_frame(http, ref, frames_dir):
    """
    Download one referenced frame and stage it locally.

    Raises:
        FrameFetchError: On a network error or a non-2xx answer
    """
    try:
        async with http.get(ref['url']) as resp:
            if not 200 <= resp.status < 300:
                raise FrameFetchError(f"Failed to load frame {ref['number']} from storage (status {resp.status})")
            data = await resp.read()
    except aiohttp.ClientError as e:
        raise FrameFetchError(f"Failed to load frame {ref['number']} from storage: {e}") from e
    logging.debug(f"Loaded frame {ref['number']} from {ref['url']}")
    return {
        'number': ref['number'],
        'timestamp': ref['timestamp'],
        'data_url': 'data:image/png;base64,' + base64.b64encode(data).decode('ascii'),
        'file': _stage_frame(ref, data, frames_dir),
        'path': ref['path'],
        'url': ref['url'],
    }


async def load_inline_frame(ref, frames_dir):
    """Decode one inline frame and stage it locally."""
    data = decode_data_url(ref['data_url'])
    return {
        'number': ref['number'],
        'timestamp': ref['timestamp'],
        'data_url': ref['data_url'],
        'file': _stage_frame(ref, data, frames_dir),
        'path': None,
        'url': None,
    }


async def resolve_frames(refs, http, frames_dir, stream, batch_size = 50):
    """
    Turn frame references into frames, one batch at a time.

    Remote frames of a batch are downloaded concurrently and the next batch
    starts once the current one has settled. Any failed download fails the
    whole request. References without a URL or inline data are skipped.

    Returns:
        list: Frame dicts (number, timestamp, data_url, file, path, url)
    """
    frames = []
    total = len(refs)
    for start in range(0, total, batch_size):
        await stream.emit(15 + start / total * 25, f"loading_batch_{start // batch_size + 1}")
        jobs = []
        for ref in refs[start:start + batch_size]:
            if ref['url'] and ref['path']:
                jobs.append(fetch_frame(http, ref, frames_dir))
            elif ref['data_url']:
                jobs.append(load_inline_frame(ref, frames_dir))
            else:
                logging.warning(f"Frame {ref['number']} has neither a URL nor inline data, skipped")
        outcomes = await asyncio.gather(*jobs, return_exceptions = True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        frames.extend(outcomes)
        logging.info(f"Batch complete: loaded {len(outcomes)} frames")
    return frames


async def persist_analysis(ctx, session, frame_count, analysis):
    """Store the analysis, logging and ignoring any failure."""
    try:
        stored = await asyncio.to_thread(records.db_save_analysis, ctx['db_file'],
                                         session['sessionId'], session['problem'],
                                         session.get('videoFilename'), frame_count, analysis)
        logging.info(f"Saved analysis session {session['sessionId']} with {stored} frame analyses")
    except Exception as e:
        logging.error(f"Failed to save analysis session {session['sessionId']}: {e}")


def remove_dir(path):
    """Delete a request directory, logging failures."""
    if not path or not os.path.isdir(path):
        return
    try:
        shutil.rmtree(path)
        logging.debug(f"Removed {path}")
    except OSError as e:
        logging.error(f"Failed to remove {path}: {e}")


def make_frames_dir(ctx):
    """Create a unique temporary directory for one request."""
    os.makedirs(ctx['temp_dir'], exist_ok = True)
    return tempfile.mkdtemp(prefix = 'frames_', dir = ctx['temp_dir'])


async def analyze_and_finish(frames, session, stream, ctx, frames_dir, model_progress = 30):
    """
    Common tail of both analysis flows.

    Calls the model once, normalizes the reply, stores it, cleans up the
    request directory and sends the results.
    """
    await stream.emit(model_progress, 'preparing_model', mode = 'single-call')
    start = time.time()
    reply = await ctx['backend'].analyze(ctx['http'], frames, session['problem'], session.get('dicom'),
                                         label = session['sessionId'])
    logging.info(f"Model answered for {session['sessionId']} in {time.time() - start:.1f}s")
    await stream.emit(90, 'parsing_results')
    analysis = to_overall_analysis(reply, frames)
    await stream.emit(95, 'finalizing')
    await stream.emit(96, 'saving_to_database')
    await persist_analysis(ctx, session, len(frames), analysis)
    await stream.emit(98, 'cleanup')
    await asyncio.to_thread(remove_dir, frames_dir)
    await stream.finish(analysis)


async def run_analysis(load_form, stream, ctx):
    """
    Run one analyze-frames request over a progress stream.

    Args:
        load_form: Coroutine function returning the multipart fields
        stream: ProgressStream of this request
        ctx: Mapping with backend, http, db_file, temp_dir and frame_batch_size
    """
    frames_dir = None
    session_id = None
    try:
        await stream.emit(5, 'received_request')
        session = parse_submission(await load_form())
        session_id = session['sessionId']
        logging.info(f"Analysis {session_id}: {session['frameCount']} frames in {session['uploadMode']} mode")
        await stream.emit(10, 'parsing_form_data')
        frames_dir = make_frames_dir(ctx)
        await stream.emit(15, 'loading_frames_from_storage')
        frames = await resolve_frames(session['frames'], ctx['http'], frames_dir, stream,
                                      ctx.get('frame_batch_size', 50))
        if not frames:
            raise ValueError("No frames could be loaded")
        await stream.emit(20, 'frames_saved', frameCount = len(frames))
        await analyze_and_finish(frames, session, stream, ctx, frames_dir)
    except StreamClosed as e:
        logging.warning(f"Analysis {session_id} aborted: {e}")
    except Exception as e:
        logging.error(f"Analysis {session_id} failed: {e}")
        try:
            await stream.fail(f"Error: {e}")
        except StreamClosed:
            logging.warning(f"Analysis {session_id}: client gone before the error was sent")
    finally:
        remove_dir(frames_dir)


async def run_video_analysis(load_form, stream, ctx):
    """
    Run one analyze-video request: the video itself is uploaded and the
    frames are extracted on the server.
    """
    frames_dir = None
    session_id = None
    try:
        await stream.emit(10, 'received_request')
        form = await load_form()
        video = form.get('video')
        if video is None or not hasattr(video, 'file'):
            raise ValueError("No video file provided")
        problem = (form.get('problem') or '').strip()
        if not problem:
            raise ValueError("Problem statement is required")
        try:
            fps = float(form.get('fps') or ctx.get('fps', 5))
        except ValueError:
            raise ValueError(f"Invalid sampling rate: {form.get('fps')}")
        if fps <= 0:
            raise ValueError(f"Invalid sampling rate: {fps}")
        file_name = os.path.basename(video.filename or 'video.mp4')
        session = {
            'sessionId': form.get('sessionId') or f"analysis_{int(time.time() * 1000)}",
            'problem': problem,
            'videoFilename': file_name,
            'dicom': None,
        }
        session_id = session['sessionId']
        frames_dir = make_frames_dir(ctx)
        video_file = os.path.join(frames_dir, file_name)
        with open(video_file, 'wb') as f:
            await asyncio.to_thread(shutil.copyfileobj, video.file, f)
        await stream.emit(20, 'video_saved')
        await stream.emit(30, 'extracting_frames')
        try:
            extracted = await asyncio.to_thread(lambda: list(iter_video_frames(video_file, fps, default_max_frames(fps))))
        except FrameSourceError as e:
            raise ValueError(f"Frame extraction failed: {e}")
        if not extracted:
            raise ValueError("No frames could be extracted from the video")
        frames = []
        for frame in extracted:
            frames.append({
                'number': frame.number,
                'timestamp': frame.timestamp,
                'data_url': await asyncio.to_thread(to_data_url, frame.pixels),
                'file': None,
                'path': None,
                'url': None,
            })
        await stream.emit(40, 'frames_extracted', method = 'opencv', frameCount = len(frames))
        await analyze_and_finish(frames, session, stream, ctx, frames_dir, model_progress = 60)
    except StreamClosed as e:
        logging.warning(f"Video analysis {session_id} aborted: {e}")
    except Exception as e:
        logging.error(f"Video analysis {session_id} failed: {e}")
        try:
            await stream.fail(f"Error: {e}")
        except StreamClosed:
            logging.warning(f"Video analysis {session_id}: client gone before the error was sent")
    finally:
        remove_dir(frames_dir)


async def stream_analysis(request, runner):
    """Open the event stream, run one analysis flow over it and close it."""
    response = web.StreamResponse(status = 200, headers = SSE_HEADERS)
    # Headers go out before the body is read
    await response.prepare(request)
    channel = SSEChannel(response, request.app['keepalive_interval'])
    channel.start_heartbeat()
    try:
        await runner(request.post, ProgressStream(channel), request.app)
    finally:
        await channel.close()
    return response


async def analyze_frames_handler(request):
    """
    Analyze prepared frames, streaming the progress as Server-Sent Events.

    Args:
        request: aiohttp request with multipart frame fields

    Returns:
        web.StreamResponse: The event stream
    """
    return await stream_analysis(request, run_analysis)


async def analyze_video_handler(request):
    """Analyze an uploaded video, streaming the progress as Server-Sent Events."""
    return await stream_analysis(request, run_video_analysis)


async def health_handler(request):
    """
    Report the configured model and whether its endpoint answers.

    Returns:
        web.json_response: Health status
    """
    backend = request.app['backend']
    healthy = await backend.health(request.app['http'])
    return web.json_response({
        'status': 'ok' if healthy else 'degraded',
        'model': backend.model,
        'backend': healthy,
    })


async def session_handler(request):
    """
    Get a stored analysis session.

    Returns:
        web.json_response: Session data or error
    """
    session_id = request.match_info['session_id']
    try:
        session = await asyncio.to_thread(records.db_get_session, request.app['db_file'], session_id)
    except Exception as e:
        logging.error(f"Error getting session {session_id}: {e}")
        return web.json_response({'error': 'Internal server error'}, status = 500)
    if session is None:
        return web.json_response({'error': 'Session not found'}, status = 404)
    return web.json_response(session)


async def start_http_session(app):
    """Create the shared client session and the database."""
    if app['http'] is None:
        app['http'] = aiohttp.ClientSession()
        app['own_http'] = True
    await asyncio.to_thread(records.db_init, app['db_file'])


async def close_http_session(app):
    if app.get('own_http'):
        await app['http'].close()


def create_app(config, backend = None, http = None):
    """
    Build the web application.

    Args:
        config: configparser.ConfigParser
        backend: Optional analysis backend, built from the configuration if missing
        http: Optional shared aiohttp ClientSession

    Returns:
        web.Application: The application
    """
    app = web.Application(client_max_size = config.getint('server', 'MAX_REQUEST_MB') * 1024 * 1024)
    if backend is None:
        backend = AnalysisBackend(config.get('openai', 'OPENAI_URL'),
                                  config.get('openai', 'OPENAI_API_KEY'),
                                  config.get('openai', 'MODEL_NAME'),
                                  max_retries = config.getint('openai', 'MAX_RETRIES'),
                                  base_delay = config.getint('openai', 'RETRY_BASE_DELAY_MS') / 1000,
                                  timeout = config.getint('openai', 'REQUEST_TIMEOUT'))
    app['backend'] = backend
    app['http'] = http
    app['own_http'] = False
    app['db_file'] = config.get('general', 'SCANVISION_DB_PATH')
    app['temp_dir'] = config.get('general', 'TEMP_DIR')
    app['keepalive_interval'] = config.getfloat('server', 'KEEPALIVE_INTERVAL')
    app['frame_batch_size'] = config.getint('server', 'FRAME_BATCH_SIZE')
    app['fps'] = config.getfloat('client', 'FPS')
    app.on_startup.append(start_http_session)
    app.on_cleanup.append(close_http_session)

    # API endpoints
    app.router.add_post('/api/analyze-frames', analyze_frames_handler)
    app.router.add_post('/api/analyze-video', analyze_video_handler)
    app.router.add_get('/api/health', health_handler)
    app.router.add_get('/api/sessions/{session_id}', session_handler)
    return app


async def main(config):
    """
    Start the web server and wait until cancelled.

    Args:
        config: configparser.ConfigParser
    """
    app = create_app(config)
    runner = web.AppRunner(app)
    await runner.setup()
    host = config.get('server', 'HOST')
    port = config.getint('server', 'PORT')
    site = web.TCPSite(runner, host, port)
    await site.start()
    logging.info(f"ScanVision listening on http://{host}:{port} using {app['backend'].model}")
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


def run():
    """Command line entry point of the server."""
    config = load_config()
    parser = argparse.ArgumentParser(description = "ScanVision - Streaming medical frame analysis with a vision LLM")
    parser.add_argument("--host", type = str, default = config.get('server', 'HOST'), help = "Address to listen on")
    parser.add_argument("--port", type = int, default = config.getint('server', 'PORT'), help = "Port to listen on")
    parser.add_argument("--model", type = str, default = config.get('openai', 'MODEL_NAME'), help = "Model name to use for analysis")
    parser.add_argument("--db", type = str, default = config.get('general', 'SCANVISION_DB_PATH'), help = "SQLite database file")
    parser.add_argument("--log-file", type = str, default = "scanvision.log", help = "Log file")
    parser.add_argument("--log-level", type = str, default = "INFO", choices = ["DEBUG", "INFO", "WARNING", "ERROR"], help = "Set logging level")
    args = parser.parse_args()
    # Command line overrides
    config.set('server', 'HOST', args.host)
    config.set('server', 'PORT', str(args.port))
    config.set('openai', 'MODEL_NAME', args.model)
    config.set('general', 'SCANVISION_DB_PATH', args.db)
    setup_logging(args.log_level, args.log_file)

    # Run
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        logging.info("ScanVision stopped by user. Shutting down.")
    finally:
        logging.shutdown()


# Command run
if __name__ == '__main__':
    run()
