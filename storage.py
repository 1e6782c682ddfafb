#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# storage.py - Object storage client and batched uploads for ScanVision
#
# Speaks the Supabase storage REST API. Uploads never overwrite an existing
# object and stored objects are reachable at their public URL.
#
# Copyright (C) 2025 Costin Stroie <costinstroie@eridu.eu.org>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# any later version.

# Standard library imports
import asyncio
import json
import logging
import os
import re
import time
from urllib.parse import quote

# Third-party imports
import aiohttp

# Errors worth another upload attempt
TRANSIENT_PATTERN = re.compile(r'timeout|network|503|504', re.IGNORECASE)


class StorageError(Exception):
    """
    Raised when the storage service rejects a request.

    The detail is the service's own error text, without the object key.
    """

    def __init__(self, message, status = None, detail = None):
        super().__init__(message)
        self.status = status
        self.detail = message if detail is None else detail


class StorageClient:
    """
    Minimal client for one storage bucket.

    Args:
        base_url: Storage service URL (the project URL)
        api_key: Service or anon key
        bucket: Bucket name
        session: Optional shared aiohttp ClientSession
    """

    def __init__(self, base_url, api_key, bucket, session = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.bucket = bucket
        self.session = session

    def _headers(self, **extra):
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'apikey': self.api_key,
        }
        headers.update(extra)
        return headers

    def _object_url(self, path):
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(path)}"

    async def _request(self, method, url, **kwargs):
        # Use the shared session when there is one
        if self.session is not None:
            async with self.session.request(method, url, **kwargs) as resp:
                return resp.status, await resp.text()
        async with aiohttp.ClientSession() as session:
            async with session.request(method, url, **kwargs) as resp:
                return resp.status, await resp.text()

    async def upload(self, path, data, content_type = 'application/octet-stream', cache_control = '3600'):
        """
        Upload one object, failing if the key already exists.

        Args:
            path: Object key inside the bucket
            data: Bytes to store
            content_type: MIME type of the object
            cache_control: Cache lifetime in seconds

        Returns:
            dict: {'path': path}
        """
        headers = self._headers(**{
            'Content-Type': content_type,
            'cache-control': f'max-age={cache_control}',
            'x-upsert': 'false',
        })
        status, text = await self._request('POST', self._object_url(path), data = data, headers = headers)
        if status != 200:
            raise StorageError(f"Upload of {path} failed with status {status}: {text}", status, text)
        return {'path': path}

    def public_url(self, path):
        """Public URL of a stored object."""
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(path)}"

    async def remove(self, paths):
        """Delete a list of objects."""
        url = f"{self.base_url}/storage/v1/object/{self.bucket}"
        status, text = await self._request('DELETE', url, json = {'prefixes': list(paths)}, headers = self._headers())
        if status != 200:
            raise StorageError(f"Delete failed with status {status}: {text}", status, text)

    async def list(self, prefix):
        """
        List the objects directly under a folder.

        Returns:
            list: Entry dicts as returned by the service (with 'name')
        """
        url = f"{self.base_url}/storage/v1/object/list/{self.bucket}"
        payload = {'prefix': prefix, 'limit': 1000, 'offset': 0}
        status, text = await self._request('POST', url, json = payload, headers = self._headers())
        if status != 200:
            raise StorageError(f"Listing {prefix} failed with status {status}: {text}", status, text)
        return json.loads(text or '[]')


def is_transient_error(error):
    """
    Check whether an upload error is worth retrying.

    Args:
        error: Exception raised by the upload

    Returns:
        bool: True for timeouts, network failures and HTTP 503/504
    """
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientConnectionError)):
        return True
    if isinstance(error, StorageError):
        # Match the service text only, object keys may contain digits like 503
        if error.status in (503, 504):
            return True
        return bool(TRANSIENT_PATTERN.search(error.detail or ''))
    return bool(TRANSIENT_PATTERN.search(str(error)))


async def upload_with_retry(storage, path, data, content_type, max_retries = 3, base_delay = 1.0, sleep = asyncio.sleep):
    """
    Upload one object, retrying transient failures.

    At most max_retries attempts are made. After failed attempt k (0-indexed)
    the upload waits base_delay * 2**k seconds. Other errors propagate at once.

    Args:
        storage: StorageClient
        path: Object key
        data: Bytes to store
        content_type: MIME type
        max_retries: Maximum number of attempts
        base_delay: Base delay in seconds
        sleep: Coroutine used to wait

    Returns:
        dict: {'path': path}
    """
    last_error = None
    for attempt in range(max_retries):
        try:
            return await storage.upload(path, data, content_type)
        except Exception as e:
            last_error = e
            if not is_transient_error(e) or attempt >= max_retries - 1:
                raise
            delay = base_delay * 2 ** attempt
            logging.warning(f"Upload error for {path} on attempt {attempt + 1}/{max_retries}, retrying in {delay:.1f}s: {e}")
            await sleep(delay)
    raise StorageError(f"Failed to upload {path} after {max_retries} attempts: {last_error}")


async def upload_in_batches(storage, items, batch_size = 10, on_progress = None, max_retries = 3, base_delay = 1.0, sleep = asyncio.sleep):
    """
    Upload objects in fixed-size concurrent batches.

    All uploads of a batch run together and the next batch starts only after
    every upload of the current one has settled. The progress callback is
    called after each complete batch.

    Args:
        storage: StorageClient
        items: List of (path, data, content_type) tuples
        batch_size: Number of concurrent uploads
        on_progress: Optional callable(uploaded, total)
        max_retries: Attempts per object
        base_delay: Base retry delay in seconds
        sleep: Coroutine used to wait between retries

    Returns:
        list: {'path', 'url'} dicts in input order

    Raises:
        The first error of a failed batch, once that batch has settled
    """
    results = []
    total = len(items)
    for start in range(0, total, batch_size):
        batch = items[start:start + batch_size]
        outcomes = await asyncio.gather(
            *[upload_with_retry(storage, path, data, content_type, max_retries, base_delay, sleep)
              for path, data, content_type in batch],
            return_exceptions = True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        for outcome in outcomes:
            results.append({'path': outcome['path'], 'url': storage.public_url(outcome['path'])})
        if on_progress:
            on_progress(len(results), total)
    return results


async def upload_frames(storage, frames, session_id, encode, batch_size = 10, on_progress = None, **retry):
    """
    Upload extracted frames as PNG files under a session folder.

    Args:
        storage: StorageClient for the frame bucket
        frames: List of Frame tuples
        session_id: Folder name for this submission
        encode: Callable turning a pixel buffer into PNG bytes
        batch_size: Number of concurrent uploads
        on_progress: Optional callable(uploaded, total)

    Returns:
        list: New Frame tuples with the remote reference set
    """
    items = [(f"{session_id}/frame_{frame.number:03d}.png", encode(frame.pixels), 'image/png') for frame in frames]
    uploaded = await upload_in_batches(storage, items, batch_size, on_progress, **retry)
    return [frame._replace(remote = asset) for frame, asset in zip(frames, uploaded)]


async def upload_video(storage, video_file, content_type = 'video/mp4'):
    """
    Upload the original video file under a timestamped key.

    Returns:
        dict: UploadedAsset {'path', 'url', 'fileName'}
    """
    file_name = os.path.basename(video_file)
    key = f"{int(time.time() * 1000)}-{file_name}"
    with open(video_file, 'rb') as f:
        data = f.read()
    result = await storage.upload(key, data, content_type)
    logging.info(f"Video uploaded to storage as {result['path']}")
    return {'path': result['path'], 'url': storage.public_url(result['path']), 'fileName': file_name}


async def upload_dicom_files(storage, dicom_files, folder, batch_size = 10, **retry):
    """
    Upload raw DICOM files into a patient folder.

    Returns:
        list: UploadedAsset dicts in input order
    """
    items = []
    for dicom_file in dicom_files:
        with open(dicom_file, 'rb') as f:
            items.append((f"{folder}/{os.path.basename(dicom_file)}", f.read(), 'application/dicom'))
    uploaded = await upload_in_batches(storage, items, batch_size, **retry)
    return [dict(asset, fileName = os.path.basename(path)) for asset, path in zip(uploaded, dicom_files)]


async def remove_folder(storage, folder):
    """
    Delete every object directly under a folder.

    Returns:
        int: Number of deleted objects
    """
    entries = await storage.list(folder)
    paths = [f"{folder}/{entry['name']}" for entry in entries if entry.get('name')]
    if paths:
        await storage.remove(paths)
    logging.info(f"Removed {len(paths)} objects from {folder}")
    return len(paths)
