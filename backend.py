#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# backend.py - Vision model retry policy, requests and reply parsing for ScanVision
# Copyright (C) 2025 Costin Stroie <costinstroie@eridu.eu.org>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# any later version.

# Standard library imports
import asyncio
import errno
import json
import logging
import random
import re
import socket
from collections import namedtuple

# Third-party imports
import aiohttp

# Upper bound for a single backoff delay, in seconds
MAX_BACKOFF = 10.0

# Low-level network failures that usually go away on their own
TRANSIENT_ERRNOS = {errno.ETIMEDOUT, errno.ECONNRESET, errno.ECONNREFUSED, errno.EPIPE}
TRANSIENT_GAI_ERRORS = {socket.EAI_AGAIN, socket.EAI_NONAME}

URGENCY_LEVELS = ('low', 'medium', 'high')

# Tagged backend replies
Structured = namedtuple('Structured', ['analysis'])
Unstructured = namedtuple('Unstructured', ['text'])

SYS_PROMPT = ("""
You are an expert radiologist reviewing frames of a medical imaging study.
Review every attached frame systematically and report your findings.

OUTPUT FORMAT:
You must respond with ONLY valid JSON in this exact format:
{
  "summary": "overall report as a string",
  "recommendations": ["next step", "..."],
  "urgency": "low" or "medium" or "high",
  "frameAnalyses": [
    {"frameNumber": number, "timestamp": number, "analysis": "string", "confidence": number from 0 to 1, "findings": ["string"]}
  ]
}

RULES:
- Output ONLY the JSON object, no text before or after
- Use double quotes for all keys and string values
- Only include frames with relevant findings in frameAnalyses
""").strip()

USR_PROMPT = ("""
PATIENT PROBLEM:
{problem}
{context}
You are analyzing {count} frame(s) from the medical imaging study. Review all frames systematically.
""").strip()


class BackendError(Exception):
    """Raised when the model endpoint answers with an error."""

    def __init__(self, message, status = None):
        super().__init__(message)
        self.status = status


def _error_errno(error):
    """Find an errno on the error, its wrapped OS error or its cause."""
    for candidate in (error, getattr(error, 'os_error', None), error.__cause__):
        code = getattr(candidate, 'errno', None)
        if code is not None:
            return code
    return None


def is_retryable_error(error):
    """
    Classify an error raised by a backend call.

    Args:
        error: The exception

    Returns:
        tuple: (retryable, reason, status)
    """
    status = getattr(error, 'status', None)
    if status is None and error.__cause__ is not None:
        status = getattr(error.__cause__, 'status', None)
    if isinstance(status, int):
        if status == 429:
            return True, 'rate_limited', status
        if status >= 500:
            return True, 'server_error', status
    code = _error_errno(error)
    if code in TRANSIENT_ERRNOS or code in TRANSIENT_GAI_ERRORS:
        return True, f'errno_{code}', status
    if isinstance(error, asyncio.TimeoutError):
        return True, 'timeout', status
    message = str(error).lower()
    if 'service is currently unavailable' in message or 'timeout' in message:
        return True, 'transient_message', status
    return False, 'non_retryable', status


def backoff_delay(attempt, base_delay):
    """
    Delay before the next attempt, with jitter.

    Args:
        attempt: The attempt that just failed, 1-indexed
        base_delay: Base delay in seconds

    Returns:
        float: Delay in seconds, at most MAX_BACKOFF
    """
    return min(base_delay * 2 ** (attempt - 1) + random.uniform(0, base_delay), MAX_BACKOFF)


async def with_retry(call, label = 'backend-call', max_retries = 3, base_delay = 0.5, sleep = asyncio.sleep):
    """
    Run a coroutine factory, retrying transient failures with backoff.

    The call is attempted at most 1 + max_retries times. Fatal errors and the
    error of the last attempt are re-raised.

    Args:
        call: Callable returning a new awaitable for each attempt
        label: Name used in the log lines
        max_retries: Number of retries after the first attempt
        base_delay: Base delay in seconds
        sleep: Coroutine used to wait

    Returns:
        The result of the first successful attempt
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await call()
            logging.debug(f"[{label}] attempt {attempt} succeeded")
            return result
        except Exception as e:
            retryable, reason, status = is_retryable_error(e)
            if not retryable:
                logging.error(f"[{label}] non-retryable error on attempt {attempt} ({reason}, status {status}): {e}")
                raise
            if attempt > max_retries:
                logging.error(f"[{label}] giving up after {attempt} attempts ({reason}, status {status}): {e}")
                raise
            delay = backoff_delay(attempt, base_delay)
            logging.warning(f"[{label}] attempt {attempt} failed ({reason}, status {status}), retrying in {delay:.2f}s: {e}")
            await sleep(delay)


def format_dicom_date(value):
    """Format a DICOM date (YYYYMMDD) as YYYY-MM-DD, empty if malformed."""
    if not value or len(value) != 8 or not value.isdigit():
        return ''
    return f"{value[:4]}-{value[4:6]}-{value[6:]}"


def build_prompt(problem, frame_count, dicom = None):
    """
    Create the user prompt.

    Args:
        problem: Clinical question
        frame_count: Number of attached frames
        dicom: Optional dict with patientName, patientID, studyDate, modality

    Returns:
        str: Prompt text
    """
    lines = []
    if dicom:
        if dicom.get('patientName'):
            lines.append(f"- Name: {dicom['patientName']}")
        if dicom.get('patientID'):
            lines.append(f"- ID: {dicom['patientID']}")
        if format_dicom_date(dicom.get('studyDate')):
            lines.append(f"- Exam date: {format_dicom_date(dicom['studyDate'])}")
        if dicom.get('modality'):
            lines.append(f"- Modality: {dicom['modality']}")
    context = ''
    if lines:
        context = "\nSTUDY:\n" + "\n".join(lines) + "\n"
    return USR_PROMPT.format(problem = problem or 'Not specified', context = context, count = frame_count)


class AnalysisBackend:
    """
    Client for an OpenAI compatible chat completions endpoint.

    Args:
        url: Chat completions URL
        api_key: Bearer token
        model: Model name
        max_retries: Retries after the first attempt
        base_delay: Base backoff delay in seconds
        timeout: Total request timeout in seconds
    """

    def __init__(self, url, api_key, model, max_retries = 3, base_delay = 0.5, timeout = 600):
        self.url = url
        self.api_key = api_key
        self.model = model
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout

    def build_payload(self, frames, problem, dicom = None):
        """
        Create the request body: the prompt followed by every frame.

        Args:
            frames: List of dicts with data_url, number and timestamp
            problem: Clinical question
            dicom: Optional DICOM context

        Returns:
            dict: JSON payload
        """
        content = [{"type": "text", "text": build_prompt(problem, len(frames), dicom)}]
        for frame in frames:
            content.append({"type": "image_url", "image_url": {"url": frame['data_url']}})
            content.append({"type": "text", "text": f"Frame {frame['number']} at {frame['timestamp']:.2f}s"})
        return {
            "model": self.model,
            "stream": False,
            "temperature": 0.2,
            "messages": [
                {
                    "role": "system",
                    "content": [{"type": "text", "text": SYS_PROMPT}]
                },
                {
                    "role": "user",
                    "content": content
                }
            ]
        }

    async def complete(self, session, payload):
        """
        Send one request and return the reply text.

        Raises:
            BackendError: On a non-200 answer or a malformed body
        """
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }
        timeout = aiohttp.ClientTimeout(total = self.timeout)
        async with session.post(self.url, headers = headers, json = payload, timeout = timeout) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise BackendError(f"{self.url} failed with status {resp.status}: {text[:200]}", resp.status)
            result = await resp.json(content_type = None)
        try:
            return result["choices"][0]["message"]["content"] or ''
        except (KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Malformed reply from {self.url}: {e}")

    async def analyze(self, session, frames, problem, dicom = None, label = 'all-frames'):
        """
        Analyze all frames in a single model call.

        Args:
            session: aiohttp ClientSession
            frames: List of dicts with data_url, number and timestamp
            problem: Clinical question
            dicom: Optional DICOM context
            label: Name used in the retry log lines

        Returns:
            Structured or Unstructured reply
        """
        payload = self.build_payload(frames, problem, dicom)
        logging.info(f"Sending {len(frames)} frames to {self.model}")
        text = await with_retry(lambda: self.complete(session, payload),
                                label = label,
                                max_retries = self.max_retries,
                                base_delay = self.base_delay)
        return parse_reply(text)

    async def health(self, session):
        """Check whether the models endpoint next to the chat URL answers."""
        try:
            url = self.url.replace("/chat/completions", "/models")
            async with session.get(url, headers = {'Authorization': f'Bearer {self.api_key}'},
                                   timeout = aiohttp.ClientTimeout(total = 5)) as resp:
                logging.info(f"Health check {url} → {resp.status}")
                return resp.status == 200
        except Exception as e:
            logging.warning(f"Health check failed for {self.url}: {e}")
            return False


def parse_reply(text):
    """
    Try to read the reply as the JSON analysis.

    Markdown code fences are removed first; if the whole text is not JSON,
    the outermost {...} block is tried.

    Args:
        text: Reply text

    Returns:
        Structured with the parsed dict, or Unstructured with the raw text
    """
    cleaned = (text or '').strip()
    # Clean up markdown code fences (```json ... ```, ``` ... ```, etc.)
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags = re.IGNORECASE | re.MULTILINE)
    cleaned = re.sub(r"\s*```$", "", cleaned, flags = re.MULTILINE)
    candidates = [cleaned]
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start != -1 and end > start:
        candidates.append(cleaned[start:end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return Structured(parsed)
    return Unstructured(text or '')


def extract_recommendations(text):
    """
    Scrape bullet or numbered lines following a 'recommendation' heading.

    Returns:
        list: Recommendations, or two generic ones when nothing was found
    """
    recommendations = []
    section = re.search(r"recommendations?[:\s]*([\s\S]*?)(?:urgency|$)", text, flags = re.IGNORECASE)
    if section:
        for line in section.group(1).split('\n'):
            line = line.strip()
            if line and re.match(r"^[\d\-\*•]", line):
                recommendations.append(re.sub(r"^[\d\-\*•][.)]?\s*", "", line))
    if not recommendations:
        recommendations = ['Follow up with clinician',
                           'Consider additional imaging if symptoms persist']
    return recommendations


def extract_urgency(text):
    """Guess the urgency level from keywords."""
    lower = text.lower()
    if 'high' in lower or 'urgent' in lower or 'immediate' in lower:
        return 'high'
    if 'medium' in lower or 'moderate' in lower:
        return 'medium'
    return 'low'


def _confidence(value):
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.6
    if value != value or value == 0:
        # NaN or missing
        return 0.6
    return max(0.0, min(1.0, value))


def to_overall_analysis(reply, frames):
    """
    Turn a backend reply into the overall analysis.

    Structured replies are normalized field by field. Unstructured replies
    keep the text as summary and get urgency and recommendations from the
    keyword heuristics, with no per-frame analyses.

    Args:
        reply: Structured or Unstructured
        frames: Resolved frames (dicts with number, timestamp, path, url)

    Returns:
        dict: OverallAnalysis with wire key names
    """
    by_number = {frame['number']: frame for frame in frames}
    if isinstance(reply, Unstructured):
        text = reply.text
        return {
            'summary': text or 'No analysis generated',
            'recommendations': extract_recommendations(text),
            'urgency': extract_urgency(text),
            'frameAnalyses': [],
        }
    parsed = reply.analysis
    analyses = []
    for item in parsed.get('frameAnalyses') or []:
        if not isinstance(item, dict):
            continue
        try:
            number = int(item.get('frameNumber') or 0)
        except (TypeError, ValueError):
            number = 0
        frame = by_number.get(number, {})
        timestamp = item.get('timestamp')
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            timestamp = frame.get('timestamp', 0)
        findings = item.get('findings')
        analyses.append({
            'frameNumber': number,
            'timestamp': timestamp,
            'analysis': str(item.get('analysis') or ''),
            'confidence': _confidence(item.get('confidence')),
            'findings': [str(f) for f in findings] if isinstance(findings, list) else [],
            'storagePath': frame.get('path'),
            'storageUrl': frame.get('url'),
        })
    recommendations = parsed.get('recommendations')
    urgency = str(parsed.get('urgency') or '').lower()
    return {
        'summary': str(parsed.get('summary') or ''),
        'recommendations': [str(r) for r in recommendations] if isinstance(recommendations, list) else [],
        'urgency': urgency if urgency in URGENCY_LEVELS else 'low',
        'frameAnalyses': analyses,
    }
