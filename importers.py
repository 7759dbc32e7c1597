"""Bulk importers for the video catalog (CSV) and user accounts (JSON)."""
import csv
import io
import json
import os
from datetime import datetime, timezone

import requests
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from models import (
    db, Video, User, VideoProgress, Favorite, MockTestResult,
    VIDEO_TYPES, DEFAULT_EXAM, next_video_order,
)

CSV_COLUMNS = ('category', 'title', 'id', 'type')
FETCH_TIMEOUT = 30
REGISTERED_AT_FORMAT = '%B %d, %Y'


# ==================== VIDEO CSV ====================

def parse_video_rows(text):
    """Split CSV text into well-formed video rows and a count of skipped rows.

    A row is well-formed when it has exactly four non-empty cells and a known
    video type. Blank lines are ignored without being counted.
    """
    rows = []
    skipped = 0
    for cells in csv.reader(io.StringIO(text)):
        if not cells or all(not c.strip() for c in cells):
            continue
        cells = [c.strip() for c in cells]
        if len(cells) != len(CSV_COLUMNS) or not all(cells):
            skipped += 1
            continue
        row = dict(zip(CSV_COLUMNS, cells))
        row['type'] = row['type'].lower()
        if row['type'] not in VIDEO_TYPES:
            skipped += 1
            continue
        rows.append(row)
    return rows, skipped


def import_videos(text):
    """Append every well-formed row whose id is not already in the catalog."""
    rows, skipped = parse_video_rows(text)
    seen = {vid for (vid,) in db.session.query(Video.id)}
    order = next_video_order()
    added = 0
    for row in rows:
        if row['id'] in seen:
            skipped += 1
            continue
        db.session.add(Video(
            id=row['id'],
            title=row['title'],
            type=row['type'],
            category=row['category'],
            order=order,
        ))
        seen.add(row['id'])
        order += 1
        added += 1
    db.session.commit()
    return added, skipped


# ==================== USERS JSON ====================

def load_user_records(source):
    if source.startswith(('http://', 'https://')):
        response = requests.get(source, timeout=FETCH_TIMEOUT)
        response.raise_for_status()
        records = response.json()
    else:
        with open(os.path.expanduser(source), encoding='utf-8') as fh:
            records = json.load(fh)
    if not isinstance(records, list):
        raise ValueError('Expected a JSON array of users')
    return records


def parse_registered_at(value):
    """Read an exported registration date, ISO or ``October 17, 2026`` style."""
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        try:
            parsed = datetime.strptime(value, REGISTERED_AT_FORMAT)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_user(record, contact):
    user = User(
        contact_info=contact,
        full_name=str(record.get('fullName') or contact).strip(),
        password_hash=generate_password_hash(str(record['password'])),
        exam_choice=str(record.get('examChoice') or DEFAULT_EXAM),
    )
    registered_at = parse_registered_at(record.get('registeredAt'))
    if registered_at:
        user.registered_at = registered_at

    for exam, entries in (record.get('progress') or {}).items():
        # 1 and '1' name the same video once stringified
        done = {}
        for video_id, completed in (entries or {}).items():
            done[str(video_id)] = bool(completed)
        for video_id, completed in done.items():
            user.progress_entries.append(VideoProgress(exam=exam, video_id=video_id, completed=completed))

    for exam, videos in (record.get('favorites') or {}).items():
        seen = set()
        for video in videos or []:
            ref = video if isinstance(video, dict) else {'id': video}
            video_id = str(ref.get('id') or '').strip()
            if not video_id or video_id in seen:
                continue
            seen.add(video_id)
            user.favorites.append(
                Favorite(exam=exam, video_id=video_id, title=ref.get('title'), type=ref.get('type'))
            )

    for test in record.get('mockTestHistory') or []:
        if not isinstance(test, dict):
            continue
        user.mock_tests.append(MockTestResult(
            exam=test.get('exam') or user.exam_choice,
            test_name=test.get('testName') or 'Mock test',
            score=int(test.get('score', 0)),
            total=int(test.get('total', 0)),
        ))
    return user


def import_users(records, logger=None):
    """Insert users from exported records, hashing their plaintext passwords.

    Returns ``(imported, skipped)``. Records without a contact or password,
    contacts that already exist, and records that fail to convert or insert
    are skipped; the rest of the import carries on.
    """
    imported = 0
    skipped = 0
    for position, record in enumerate(records):
        if not isinstance(record, dict):
            if logger:
                logger.warning('Skipping record %d: not an object', position)
            skipped += 1
            continue
        contact = str(record.get('contactInfo') or '').strip().lower()
        if not contact or not record.get('password'):
            skipped += 1
            continue
        if User.query.filter_by(contact_info=contact).first():
            if logger:
                logger.warning('Skipping existing user %s', contact)
            skipped += 1
            continue

        try:
            db.session.add(build_user(record, contact))
            db.session.commit()
        except (AttributeError, TypeError, ValueError, IntegrityError) as e:
            db.session.rollback()
            if logger:
                logger.warning('Could not import user %s: %s', contact, e)
            skipped += 1
            continue
        if logger:
            logger.info('Imported user %s', contact)
        imported += 1
    return imported, skipped
