#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# records.py - Append-only SQLite record store for ScanVision analyses
# Copyright (C) 2025 Costin Stroie <costinstroie@eridu.eu.org>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# any later version.

# Standard library imports
import json
import logging
import sqlite3
import time
from typing import Optional


def db_init(db_file):
    """
    Initialize the SQLite database.

    Database Schema:

    analysis_sessions:
        - id (INTEGER, PRIMARY KEY)
        - session_id (TEXT): Submission identifier
        - problem_statement (TEXT): Clinical question
        - video_filename (TEXT): Name of the analyzed video, if any
        - frame_count (INTEGER): Number of analyzed frames
        - summary (TEXT): Overall report
        - recommendations (TEXT): JSON list of recommendations
        - urgency (TEXT): 'low', 'medium' or 'high'
        - created (TIMESTAMP): Insertion time

    analysis_frames:
        - id (INTEGER, PRIMARY KEY)
        - session_id (TEXT): Submission identifier
        - session_ref (INTEGER): Row id of the owning analysis_sessions record
        - frame_number (INTEGER): 1-based frame number
        - timestamp (REAL): Frame time in seconds
        - analysis (TEXT): Per frame analysis
        - confidence (REAL): Model confidence, 0 to 1
        - findings (TEXT): JSON list of findings
        - storage_path (TEXT): Object key of the frame, if stored
        - storage_url (TEXT): Public URL of the frame, if stored
        - created (TIMESTAMP): Insertion time
    """
    with sqlite3.connect(db_file) as conn:
        conn.execute('''
            CREATE TABLE IF NOT EXISTS analysis_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                problem_statement TEXT,
                video_filename TEXT,
                frame_count INTEGER,
                summary TEXT,
                recommendations TEXT,
                urgency TEXT CHECK(urgency IN ('low', 'medium', 'high')),
                created TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        conn.execute('''
            CREATE TABLE IF NOT EXISTS analysis_frames (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                session_ref INTEGER REFERENCES analysis_sessions(id),
                frame_number INTEGER,
                timestamp REAL,
                analysis TEXT,
                confidence REAL,
                findings TEXT,
                storage_path TEXT,
                storage_url TEXT,
                created TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        # Indexes for common query filters
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_sessions_session_id
            ON analysis_sessions(session_id)
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_frames_session_ref
            ON analysis_frames(session_ref)
        ''')
        logging.info(f"Initialized SQLite database {db_file}.")


def db_execute_query(db_file, query: str, params: tuple = (), fetch_mode: str = 'all') -> Optional[list]:
    """Execute a database query and return results.

    Args:
        db_file (str): Database file
        query (str): SQL query to execute
        params (tuple): Query parameters
        fetch_mode (str): 'all', 'one', or 'none' for fetchall(), fetchone(), or no fetch

    Returns:
        Query results based on fetch_mode
    """
    with sqlite3.connect(db_file) as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        if fetch_mode == 'all':
            return cursor.fetchall()
        elif fetch_mode == 'one':
            return cursor.fetchone()
        conn.commit()
        return cursor.rowcount


def db_execute_query_retry(db_file, query: str, params: tuple = (), max_retries: int = 3,
                           return_id: bool = False) -> Optional[int]:
    """Execute a write query, retrying while the database is locked.

    Args:
        db_file (str): Database file
        query (str): SQL query to execute
        params (tuple): Query parameters
        max_retries (int): Maximum number of attempts
        return_id (bool): Return the id of the inserted row instead of the row count

    Returns:
        Number of affected rows, or the inserted row id
    """
    with sqlite3.connect(db_file) as conn:
        for attempt in range(max_retries):
            try:
                cursor = conn.cursor()
                cursor.execute(query, params)
                conn.commit()
                return cursor.lastrowid if return_id else cursor.rowcount
            except sqlite3.OperationalError as e:
                if attempt < max_retries - 1:
                    logging.warning(f"Database busy, retrying: {e}")
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
    return None


def db_create_insert_query(table_name, *columns):
    """
    Build an INSERT query string. Records are never replaced.

    Args:
        table_name: Name of the table to insert into
        *columns: Variable number of column names

    Returns:
        str: Formatted SQL query string with placeholders
    """
    placeholders = ', '.join(['?'] * len(columns))
    columns_str = ', '.join(columns)
    return f'INSERT INTO {table_name} ({columns_str}) VALUES ({placeholders})'


def db_add_session(db_file, session_id, problem, video_filename, frame_count, analysis):
    """
    Add a finished analysis session.

    Args:
        db_file: Database file
        session_id: Submission identifier
        problem: Clinical question
        video_filename: Name of the analyzed video, or None
        frame_count: Number of analyzed frames
        analysis: OverallAnalysis dict

    Returns:
        int: Row id of the new session record
    """
    query = db_create_insert_query('analysis_sessions', 'session_id', 'problem_statement', 'video_filename',
                                   'frame_count', 'summary', 'recommendations', 'urgency')
    params = (
        session_id,
        problem,
        video_filename,
        frame_count,
        analysis['summary'],
        json.dumps(analysis['recommendations']),
        analysis['urgency']
    )
    return db_execute_query_retry(db_file, query, params, return_id = True)


def db_add_frame_result(db_file, session_id, session_ref, frame):
    """Add one FrameAnalysis of the session record session_ref."""
    query = db_create_insert_query('analysis_frames', 'session_id', 'session_ref', 'frame_number', 'timestamp',
                                   'analysis', 'confidence', 'findings', 'storage_path', 'storage_url')
    params = (
        session_id,
        session_ref,
        frame['frameNumber'],
        frame['timestamp'],
        frame['analysis'],
        frame['confidence'],
        json.dumps(frame['findings']),
        frame.get('storagePath'),
        frame.get('storageUrl')
    )
    return db_execute_query_retry(db_file, query, params)


def db_save_analysis(db_file, session_id, problem, video_filename, frame_count, analysis):
    """
    Store a session and all of its frame analyses.

    Returns:
        int: Number of stored frame analyses
    """
    session_ref = db_add_session(db_file, session_id, problem, video_filename, frame_count, analysis)
    for frame in analysis['frameAnalyses']:
        db_add_frame_result(db_file, session_id, session_ref, frame)
    return len(analysis['frameAnalyses'])


def db_get_session(db_file, session_id):
    """
    Get the latest stored session with its frame analyses.

    Returns:
        dict: Session data, or None if not found
    """
    row = db_execute_query(db_file, '''
        SELECT id, session_id, problem_statement, video_filename, frame_count, summary, recommendations, urgency, created
        FROM analysis_sessions
        WHERE session_id = ?
        ORDER BY id DESC
        LIMIT 1
    ''', (session_id,), fetch_mode = 'one')
    if not row:
        return None
    frames = db_execute_query(db_file, '''
        SELECT frame_number, timestamp, analysis, confidence, findings, storage_path, storage_url
        FROM analysis_frames
        WHERE session_ref = ?
        ORDER BY frame_number
    ''', (row[0],))
    return {
        'sessionId': row[1],
        'problem': row[2],
        'videoFilename': row[3],
        'frameCount': row[4],
        'summary': row[5],
        'recommendations': json.loads(row[6] or '[]'),
        'urgency': row[7],
        'created': row[8],
        'frameAnalyses': [{
            'frameNumber': f[0],
            'timestamp': f[1],
            'analysis': f[2],
            'confidence': f[3],
            'findings': json.loads(f[4] or '[]'),
            'storagePath': f[5],
            'storageUrl': f[6],
        } for f in frames]
    }
