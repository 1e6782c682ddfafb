#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# scanclient.py - Command line client for ScanVision
#
# Extracts the frames of a video or a set of DICOM files, optionally uploads
# them to object storage, submits them for analysis and follows the progress
# stream until the report arrives.
#
# Copyright (C) 2025 Costin Stroie <costinstroie@eridu.eu.org>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# any later version.

# Standard library imports
import argparse
import asyncio
import codecs
import json
import logging
import os
import sys
import time

# Third-party imports
import aiohttp

# Local imports
from frames import iter_video_frames, iter_dicom_frames, encode_png, to_data_url, FrameSourceError
from scanvision import load_config, setup_logging
from storage import StorageClient, StorageError, upload_frames, upload_video, upload_dicom_files, remove_folder

# Accepted video containers, by extension
VIDEO_TYPES = {
    '.mp4': 'video/mp4',
    '.avi': 'video/avi',
    '.mov': 'video/mov',
    '.wmv': 'video/wmv',
}
ALLOWED_VIDEO_TYPES = set(VIDEO_TYPES.values())
MAX_VIDEO_SIZE = 100 * 1024 * 1024

STREAM_CLOSED = "Stream closed before the analysis completed"


class ValidationError(ValueError):
    """Raised when the user input cannot be submitted."""


def validate_video(video_file, mime_type = None):
    """
    Check a video file before any processing.

    Args:
        video_file: Path to the video
        mime_type: Declared MIME type, taken from the extension if missing

    Returns:
        str: The MIME type of the video

    Raises:
        ValidationError: On a missing file, a wrong type or a file too large
    """
    if not os.path.isfile(video_file):
        raise ValidationError(f"Video file not found: {video_file}")
    if mime_type is None:
        mime_type = VIDEO_TYPES.get(os.path.splitext(video_file)[1].lower())
    if mime_type not in ALLOWED_VIDEO_TYPES:
        raise ValidationError("Invalid file type. Please upload MP4, AVI, MOV, or WMV files.")
    if os.path.getsize(video_file) > MAX_VIDEO_SIZE:
        raise ValidationError("File size too large. Please upload files smaller than 100MB.")
    return mime_type


def validate_dicom(dicom_files):
    if not dicom_files:
        raise ValidationError("Please select DICOM files")
    missing = [f for f in dicom_files if not os.path.isfile(f)]
    if missing:
        raise ValidationError(f"DICOM file not found: {missing[0]}")


def validate_problem(problem):
    if not problem or not problem.strip():
        raise ValidationError("Please describe the clinical problem")
    return problem.strip()


def build_submission_fields(mode, problem, frames, fps = None, dicom_folder = None, modality = None,
                            patient_id = None, dicom_assets = None, video_asset = None, session_id = None):
    """
    Build the ordered multipart fields of an analyze-frames submission.

    Frames with a remote reference are sent as URL and storage path, the
    others inline as PNG data URLs.

    Args:
        mode: 'video' or 'dicom'
        problem: Clinical question
        frames: List of Frame tuples
        fps: Sampling rate, video mode
        dicom_folder: Storage folder of the DICOM files, DICOM mode
        modality: Modality, DICOM mode (default from the first frame or 'DICOM')
        patient_id: Patient ID, DICOM mode (default from the first frame or generated)
        dicom_assets: Uploaded DICOM files, DICOM mode
        video_asset: Uploaded video, video mode
        session_id: Optional session identifier

    Returns:
        list: (name, value) tuples
    """
    fields = [('uploadMode', mode), ('problem', problem.strip())]
    if session_id:
        fields.append(('sessionId', session_id))
    if mode == 'video':
        fields.append(('frameCount', str(len(frames))))
        if fps is not None:
            fields.append(('fps', str(fps)))
        if video_asset:
            fields.append(('videoUrl', video_asset['url']))
            fields.append(('videoPath', video_asset['path']))
            fields.append(('videoFilename', video_asset['fileName']))
    else:
        first = (frames[0].metadata if frames else None) or {}
        fields.append(('dicomFolder', dicom_folder or ''))
        fields.append(('frameCount', str(len(frames))))
        fields.append(('modality', modality or first.get('modality') or 'DICOM'))
        fields.append(('patientID', patient_id or first.get('patientID') or f"patient-{int(time.time() * 1000)}"))
        for index, asset in enumerate(dicom_assets or []):
            fields.append((f'dicomUrl_{index}', asset['url']))
            fields.append((f'dicomPath_{index}', asset['path']))
    for index, frame in enumerate(frames):
        if frame.remote:
            fields.append((f'frameUrl_{index}', frame.remote['url']))
            fields.append((f'framePath_{index}', frame.remote['path']))
            fields.append((f'timestamp_{index}', str(frame.timestamp)))
            fields.append((f'frameNumber_{index}', str(frame.number)))
        else:
            fields.append((f'frame_{index}', to_data_url(frame.pixels)))
            fields.append((f'timestamp_{index}', str(frame.timestamp)))
        if mode == 'dicom' and frame.metadata:
            fields.append((f'metadata_{index}', json.dumps(frame.metadata)))
            fields.append((f'fileName_{index}', frame.metadata.get('fileName') or ''))
    return fields


def encode_submission(fields):
    """Encode submission fields as a multipart/form-data body."""
    writer = aiohttp.MultipartWriter('form-data')
    for name, value in fields:
        part = writer.append(value)
        part.set_content_disposition('form-data', name = name)
    return writer


class StreamConsumer:
    """
    Incremental reader of the analysis event stream.

    Bytes may arrive split anywhere, including inside a UTF-8 sequence or a
    line. Only 'data: ' lines are parsed; progress is mapped into
    progress_range and never goes backwards. The first results or error event
    ends the analysis and later events are ignored.
    """

    def __init__(self, progress_range = (50, 100), on_progress = None, on_step = None):
        self.low, self.high = progress_range
        self.on_progress = on_progress
        self.on_step = on_step
        self.progress = self.low
        self.steps = []
        self.results = None
        self.error = None
        self.done = False
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors = 'replace')
        self._buffer = ''

    def feed(self, chunk):
        """Process a chunk of the response body."""
        self._buffer += self._decoder.decode(chunk)
        while '\n' in self._buffer:
            line, _, self._buffer = self._buffer.partition('\n')
            self._handle_line(line.rstrip('\r'))

    def finish(self):
        """Process the trailing line at the end of the body."""
        self._buffer += self._decoder.decode(b'', final = True)
        trailing = self._buffer.strip()
        self._buffer = ''
        if trailing:
            self._handle_line(trailing)
        if not self.done:
            logging.warning(STREAM_CLOSED)
            self.error = STREAM_CLOSED
            self.done = True

    async def consume(self, content):
        """
        Read a whole aiohttp response stream.

        Returns:
            dict: The results, or None on error
        """
        async for chunk in content.iter_any():
            self.feed(chunk)
        self.finish()
        return self.results

    def _handle_line(self, line):
        if not line.startswith('data: '):
            return
        payload = line[6:].strip()
        if not payload:
            return
        try:
            event = json.loads(payload)
        except ValueError as e:
            logging.error(f"Error parsing stream data: {e}, line: {line[:100]}")
            return
        if isinstance(event, dict):
            self.handle_event(event)

    def handle_event(self, event):
        if self.done:
            return
        progress = event.get('progress')
        if isinstance(progress, (int, float)) and not isinstance(progress, bool):
            mapped = self.low + progress / 100 * (self.high - self.low)
            if mapped > self.progress:
                self.progress = mapped
                if self.on_progress:
                    self.on_progress(self.progress)
        step = event.get('step')
        if step:
            self._add_step(step)
        if event.get('results') is not None:
            self.results = event['results']
            self.progress = self.high
            self._add_step('completed')
            self.done = True
        elif event.get('error') is not None:
            self.error = str(event['error'])
            self.results = None
            self._add_step('error')
            self.done = True

    def _add_step(self, step):
        if self.steps and self.steps[-1] == step:
            return
        self.steps.append(step)
        if self.on_step:
            self.on_step(step)


def make_storage(config, bucket, session):
    """Storage client for a bucket, or None when storage is not configured."""
    url = config.get('storage', 'STORAGE_URL')
    if not url:
        return None
    return StorageClient(url, config.get('storage', 'STORAGE_KEY'), bucket, session)


def upload_options(config):
    return {
        'batch_size': config.getint('storage', 'UPLOAD_BATCH_SIZE'),
        'max_retries': config.getint('storage', 'UPLOAD_MAX_RETRIES'),
        'base_delay': config.getint('storage', 'UPLOAD_BASE_DELAY_MS') / 1000,
    }


def upload_progress(on_progress):
    """Map frame upload progress into the 25 to 50 band."""
    if not on_progress:
        return None
    return lambda done, total: on_progress(25 + done / total * 25)


async def post_for_stream(session, url, data, consumer, grace_period):
    """
    Post a submission and follow the event stream.

    The socket read timeout ends a stream that stays silent for longer than
    the grace period.
    """
    timeout = aiohttp.ClientTimeout(total = None, sock_read = grace_period)
    try:
        async with session.post(url, data = data, timeout = timeout) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise RuntimeError(f"Analysis failed with status {resp.status}: {text[:200]}")
            await consumer.consume(resp.content)
    except asyncio.TimeoutError:
        logging.error(f"No data from {url} for {grace_period}s")
        consumer.finish()
    return consumer


async def analyze_video(video_file, problem, config, fps = None, purge_uploads = False,
                        on_progress = None, on_step = None):
    """
    Extract the frames of a video locally and submit them for analysis.

    Returns:
        StreamConsumer: Final stream state, with results or error
    """
    mime_type = validate_video(video_file)
    problem = validate_problem(problem)
    fps = fps or config.getfloat('client', 'FPS')
    session_id = f"analysis_{int(time.time() * 1000)}"
    logging.info(f"Extracting frames from {video_file} at {fps} fps")
    frames = await asyncio.to_thread(lambda: list(iter_video_frames(video_file, fps)))
    if not frames:
        raise FrameSourceError(f"No frames could be extracted from {video_file}")
    logging.info(f"Extracted {len(frames)} frames")
    if on_progress:
        on_progress(25)
    consumer = StreamConsumer(on_progress = on_progress, on_step = on_step)
    async with aiohttp.ClientSession() as session:
        video_storage = make_storage(config, config.get('storage', 'VIDEO_BUCKET'), session)
        frame_storage = make_storage(config, config.get('storage', 'FRAME_BUCKET'), session)
        video_asset = None
        if frame_storage:
            video_asset = await upload_video(video_storage, video_file, mime_type)
            frames = await upload_frames(frame_storage, frames, session_id, encode_png,
                                         on_progress = upload_progress(on_progress), **upload_options(config))
            logging.info(f"Uploaded {len(frames)} frames to {frame_storage.bucket}/{session_id}")
        fields = await asyncio.to_thread(build_submission_fields, 'video', problem, frames,
                                         fps = fps, video_asset = video_asset, session_id = session_id)
        await post_for_stream(session, f"{config.get('client', 'SERVER_URL')}/api/analyze-frames",
                              encode_submission(fields), consumer, config.getfloat('client', 'STREAM_GRACE_PERIOD'))
        if purge_uploads and frame_storage:
            await remove_folder(frame_storage, session_id)
    return consumer


async def analyze_dicom(dicom_files, problem, config, purge_uploads = False, on_progress = None, on_step = None):
    """
    Decode a set of DICOM files locally and submit the images for analysis.

    Returns:
        StreamConsumer: Final stream state, with results or error
    """
    validate_dicom(dicom_files)
    problem = validate_problem(problem)
    stamp = int(time.time() * 1000)
    session_id = f"analysis_{stamp}"
    folder = f"dicom/patient-{stamp}"
    frames = await asyncio.to_thread(lambda: list(iter_dicom_frames(dicom_files)))
    if not frames:
        raise FrameSourceError("None of the selected DICOM files could be read")
    logging.info(f"Decoded {len(frames)} of {len(dicom_files)} DICOM files")
    if on_progress:
        on_progress(25)
    consumer = StreamConsumer(on_progress = on_progress, on_step = on_step)
    async with aiohttp.ClientSession() as session:
        dicom_storage = make_storage(config, config.get('storage', 'VIDEO_BUCKET'), session)
        frame_storage = make_storage(config, config.get('storage', 'FRAME_BUCKET'), session)
        dicom_assets = None
        if frame_storage:
            dicom_assets = await upload_dicom_files(dicom_storage, dicom_files, folder, **upload_options(config))
            frames = await upload_frames(frame_storage, frames, session_id, encode_png,
                                         on_progress = upload_progress(on_progress), **upload_options(config))
            logging.info(f"Uploaded {len(dicom_assets)} DICOM files to {folder}")
        fields = await asyncio.to_thread(build_submission_fields, 'dicom', problem, frames,
                                         dicom_folder = folder, dicom_assets = dicom_assets, session_id = session_id)
        await post_for_stream(session, f"{config.get('client', 'SERVER_URL')}/api/analyze-frames",
                              encode_submission(fields), consumer, config.getfloat('client', 'STREAM_GRACE_PERIOD'))
        if purge_uploads and frame_storage:
            await remove_folder(dicom_storage, folder)
            await remove_folder(frame_storage, session_id)
    return consumer


async def analyze_video_on_server(video_file, problem, config, fps = None, on_progress = None, on_step = None):
    """
    Send the video itself and let the server extract the frames.

    Returns:
        StreamConsumer: Final stream state, with results or error
    """
    mime_type = validate_video(video_file)
    problem = validate_problem(problem)
    consumer = StreamConsumer(progress_range = (0, 100), on_progress = on_progress, on_step = on_step)
    async with aiohttp.ClientSession() as session:
        with open(video_file, 'rb') as f:
            data = aiohttp.FormData()
            data.add_field('video', f, filename = os.path.basename(video_file), content_type = mime_type)
            data.add_field('problem', problem)
            data.add_field('fps', str(fps or config.getfloat('client', 'FPS')))
            await post_for_stream(session, f"{config.get('client', 'SERVER_URL')}/api/analyze-video",
                                  data, consumer, config.getfloat('client', 'STREAM_GRACE_PERIOD'))
    return consumer


def print_report(results):
    """Print an analysis report on the console."""
    print(f"Urgency: {results.get('urgency', 'low').upper()}")
    print()
    print(results.get('summary', ''))
    recommendations = results.get('recommendations') or []
    if recommendations:
        print()
        print("Recommendations:")
        for item in recommendations:
            print(f"  - {item}")
    for frame in results.get('frameAnalyses') or []:
        print()
        print(f"Frame {frame['frameNumber']} at {frame['timestamp']:.2f}s "
              f"(confidence {frame['confidence'] * 100:.0f}%)")
        print(f"  {frame['analysis']}")
        for finding in frame.get('findings') or []:
            print(f"  * {finding}")


def run():
    """Command line entry point of the client."""
    config = load_config()
    parser = argparse.ArgumentParser(description = "Submit a medical video or DICOM series to ScanVision")
    parser.add_argument("mode", choices = ["video", "dicom"], help = "Input type")
    parser.add_argument("files", nargs = "+", help = "Video file, or DICOM files")
    parser.add_argument("--problem", required = True, help = "Clinical problem to investigate")
    parser.add_argument("--server", default = config.get('client', 'SERVER_URL'), help = "ScanVision server URL")
    parser.add_argument("--fps", type = float, default = config.getfloat('client', 'FPS'), help = "Frame sampling rate")
    parser.add_argument("--server-extract", action = "store_true", help = "Let the server extract the video frames")
    parser.add_argument("--purge-uploads", action = "store_true", help = "Delete uploaded files after the analysis")
    parser.add_argument("--json", action = "store_true", help = "Print the raw results as JSON")
    parser.add_argument("--log-level", type = str, default = "INFO", choices = ["DEBUG", "INFO", "WARNING", "ERROR"], help = "Set logging level")
    args = parser.parse_args()
    config.set('client', 'SERVER_URL', args.server.rstrip('/'))
    setup_logging(args.log_level)

    def show_step(step):
        logging.info(f"Step: {step}")

    if args.mode == 'video':
        if len(args.files) != 1:
            parser.error("video mode takes exactly one file")
        if args.server_extract:
            job = analyze_video_on_server(args.files[0], args.problem, config, args.fps, on_step = show_step)
        else:
            job = analyze_video(args.files[0], args.problem, config, args.fps, args.purge_uploads, on_step = show_step)
    else:
        job = analyze_dicom(args.files, args.problem, config, args.purge_uploads, on_step = show_step)

    try:
        consumer = asyncio.run(job)
    except (ValidationError, FrameSourceError) as e:
        logging.error(str(e))
        sys.exit(2)
    except (aiohttp.ClientError, StorageError, RuntimeError) as e:
        logging.error(f"Processing failed: {e}")
        sys.exit(1)
    if consumer.error:
        logging.error(consumer.error)
        sys.exit(1)
    if args.json:
        print(json.dumps(consumer.results, indent = 2))
    else:
        print_report(consumer.results)


# Command run
if __name__ == '__main__':
    run()
