#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# frames.py - Video sampling and DICOM decoding into numbered RGBA frames
#
# Both sources yield frames numbered from 1 with RGBA pixel buffers ready
# to be PNG encoded.
#
# Copyright (C) 2025 Costin Stroie <costinstroie@eridu.eu.org>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# any later version.

# Standard library imports
import base64
import logging
import math
import os
from collections import namedtuple

# Third-party imports
import cv2
import numpy as np
from pydicom import dcmread
from pydicom.errors import InvalidDicomError

# One timestamped raster frame
Frame = namedtuple('Frame', ['number', 'timestamp', 'pixels', 'source', 'metadata', 'remote'],
                   defaults = (None, None, None))

# Returned when the pixel data of a DICOM file cannot be converted
PLACEHOLDER_PIXELS = np.array([[[0, 0, 0, 255]]], dtype = np.uint8)
PLACEHOLDER_PIXELS.setflags(write = False)

# Hard limit on the number of sampled video frames
MAX_VIDEO_FRAMES = 200
# Seconds of video covered by the default frame budget
MAX_VIDEO_SECONDS = 30


class FrameSourceError(Exception):
    """Raised when a frame source cannot be read at all."""


def default_max_frames(fps):
    """
    Frame budget for a sampling rate: 30 seconds worth, at most 200 frames.

    Args:
        fps: Sampling rate in frames per second

    Returns:
        int: Maximum number of frames to sample
    """
    return int(min(fps * MAX_VIDEO_SECONDS, MAX_VIDEO_FRAMES))


def iter_video_frames(video_file, fps, max_frames = None):
    """
    Sample a video file at a fixed rate.

    The video is decoded sequentially and, for every sample time k / fps, the
    first decoded frame at or after that time is emitted. Sampling stops when
    the frame budget is exhausted or the sample time reaches the end of the
    video.

    Args:
        video_file: Path to the video file
        fps: Sampling rate in frames per second
        max_frames: Maximum number of frames (default: 30 seconds, max 200)

    Yields:
        Frame: Sampled frames numbered from 1

    Raises:
        FrameSourceError: If the container cannot be opened
    """
    if fps <= 0:
        raise ValueError(f"Sampling rate must be positive, got {fps}")
    if max_frames is None:
        max_frames = default_max_frames(fps)
    cap = cv2.VideoCapture(video_file)
    if not cap.isOpened():
        cap.release()
        raise FrameSourceError(f"Cannot open video file {video_file}")
    try:
        src_fps = cap.get(cv2.CAP_PROP_FPS)
        src_count = cap.get(cv2.CAP_PROP_FRAME_COUNT)
        if not src_fps or src_fps <= 0 or math.isnan(src_fps):
            # Some containers do not declare a rate
            logging.warning(f"Video {video_file} has no frame rate, assuming 25 fps")
            src_fps = 25.0
        if src_count and src_count > 0:
            duration = src_count / src_fps
        else:
            duration = math.inf
        logging.info(f"Video loaded: {duration:.2f}s at {src_fps:.2f} fps, sampling at {fps} fps")
        number = 0
        index = 0
        while number < max_frames:
            sample_time = number / fps
            if sample_time >= duration:
                break
            ok, image = cap.read()
            if not ok:
                # End of stream, the declared duration was too optimistic
                break
            frame_time = index / src_fps
            index += 1
            # Skip source frames before the next sample time
            if frame_time + 1e-6 < sample_time:
                continue
            number += 1
            yield Frame(number = number,
                        timestamp = sample_time,
                        pixels = bgr_to_rgba(image),
                        source = video_file)
    finally:
        cap.release()


def bgr_to_rgba(image):
    """Convert an OpenCV BGR or grayscale image to RGBA."""
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)


def window_pixels(values, photometric = None):
    """
    Auto-window single-sample pixel data to 8 bit.

    Uses the observed global minimum and maximum as the window: center is
    (max + min) / 2 and width is max - min. Values are rescaled linearly to
    0..255 and clamped at the window edges. MONOCHROME1 data is inverted.

    Args:
        values: 2D array of raw pixel values
        photometric: Photometric interpretation from the DICOM header

    Returns:
        numpy array: 2D uint8 array
    """
    values = np.asarray(values, dtype = np.float64)
    minval = values.min()
    maxval = values.max()
    center = (maxval + minval) / 2
    width = maxval - minval
    lower = center - width / 2
    upper = center + width / 2
    if width > 0:
        scaled = (values - lower) / width * 255.0
    else:
        scaled = np.zeros_like(values)
    # The lower edge wins, a flat image is black
    scaled[values >= upper] = 255
    scaled[values <= lower] = 0
    scaled = np.clip(np.round(scaled), 0, 255)
    if photometric == 'MONOCHROME1':
        scaled = 255 - scaled
    return scaled.astype(np.uint8)


def decode_dicom_pixels(ds):
    """
    Convert the pixel data of a DICOM dataset to an RGBA buffer.

    Single-sample images are auto-windowed to grayscale, multi-sample images
    are copied channel for channel with an opaque alpha. Any failure yields
    the 1x1 placeholder instead of an exception.

    Args:
        ds: pydicom Dataset

    Returns:
        numpy array: H x W x 4 uint8 RGBA buffer
    """
    try:
        if 'Rows' not in ds or 'Columns' not in ds:
            raise ValueError("Missing required DICOM image dimensions")
        if 'PixelData' not in ds:
            raise ValueError("No pixel data found in DICOM file")
        rows = int(ds.Rows)
        columns = int(ds.Columns)
        samples = int(ds.get('SamplesPerPixel', 1) or 1)
        photometric = str(ds.get('PhotometricInterpretation', '')).strip()
        image = ds.pixel_array
        if samples == 1:
            # Multi-frame objects carry a leading frame axis, keep the first one
            if image.ndim == 3:
                image = image[0]
            gray = window_pixels(image, photometric)
            rgba = np.empty((rows, columns, 4), dtype = np.uint8)
            rgba[..., 0] = gray
            rgba[..., 1] = gray
            rgba[..., 2] = gray
            rgba[..., 3] = 255
        else:
            if image.ndim == 4:
                image = image[0]
            rgba = np.empty((rows, columns, 4), dtype = np.uint8)
            rgba[..., :3] = image[..., :3].astype(np.uint8)
            rgba[..., 3] = 255
        return rgba
    except Exception as e:
        logging.error(f"Error converting DICOM pixel data: {e}")
        return PLACEHOLDER_PIXELS


def extract_dicom_metadata(ds, file_name):
    """
    Extract the few DICOM header fields the analysis needs.

    Args:
        ds: pydicom Dataset
        file_name: Name of the source file

    Returns:
        dict: Metadata with missing values set to None
    """
    def text(keyword):
        value = ds.get(keyword)
        return str(value) if value not in (None, '') else None

    instance = ds.get('InstanceNumber')
    try:
        instance = int(instance) if instance not in (None, '') else None
    except (TypeError, ValueError):
        instance = None
    return {
        'patientName': text('PatientName'),
        'patientID': text('PatientID'),
        'studyDate': text('StudyDate'),
        'modality': text('Modality'),
        'seriesDescription': text('SeriesDescription'),
        'instanceNumber': instance,
        'fileName': file_name,
    }


def iter_dicom_frames(dicom_files):
    """
    Decode a set of DICOM files into frames, one per file.

    Files that cannot be parsed are logged and skipped. The remaining images
    are sorted by instance number (missing counts as 0, ties keep the input
    order) and numbered from 1.

    Args:
        dicom_files: Iterable of DICOM file paths

    Yields:
        Frame: One frame per readable file
    """
    decoded = []
    for dicom_file in dicom_files:
        file_name = os.path.basename(dicom_file)
        try:
            ds = dcmread(dicom_file)
        except (InvalidDicomError, OSError, ValueError) as e:
            logging.error(f"Error processing {file_name}: {e}")
            continue
        metadata = extract_dicom_metadata(ds, file_name)
        logging.debug(f"Parsed DICOM metadata: {metadata}")
        decoded.append((metadata, decode_dicom_pixels(ds), dicom_file))
    # Stable sort on the instance number
    decoded.sort(key = lambda item: item[0]['instanceNumber'] or 0)
    for index, (metadata, pixels, dicom_file) in enumerate(decoded):
        yield Frame(number = index + 1,
                    timestamp = float(index),
                    pixels = pixels,
                    source = dicom_file,
                    metadata = metadata)


def encode_png(pixels):
    """
    Encode an RGBA buffer as PNG.

    Args:
        pixels: H x W x 4 uint8 array

    Returns:
        bytes: PNG file content
    """
    ok, buffer = cv2.imencode('.png', cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGRA))
    if not ok:
        raise ValueError("PNG encoding failed")
    return buffer.tobytes()


def to_data_url(pixels):
    """Encode an RGBA buffer as a PNG data URL."""
    return 'data:image/png;base64,' + base64.b64encode(encode_png(pixels)).decode('ascii')
