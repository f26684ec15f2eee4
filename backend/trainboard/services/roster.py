"""Bulk participant import.

``parse_roster`` turns an uploaded text table into candidate rows and
``reconcile`` splits the candidates into successful, duplicate and failed
entries. A bad row is recorded and skipped; it never aborts the batch.
"""
from collections.abc import Mapping
from dataclasses import dataclass, field
import csv
import io

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from trainboard import db
from trainboard.errors import EmailTaken, RegistrationClosed, TrainboardError, ValidationError
from trainboard.models import STATUS_ACTIVE, SessionParticipant
from trainboard.services.identity import create_guest
from trainboard.services.sessions import get_session
from trainboard.services.sync import feed

ROSTER_COLUMNS = ('name', 'email', 'phone', 'department', 'team')
QUOTES = ('"', "'")


def _unquote(value):
    value = (value or '').strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in QUOTES:
        value = value[1:-1].strip()
    return value


def parse_roster(text):
    """Parse a roster table whose header row contains at least ``name``.

    Known columns are name, email, phone, department and team, matched
    case-insensitively; others are ignored. Rows with an empty name are
    dropped here and never reach ``reconcile``.
    """
    reader = csv.reader(io.StringIO(text or ''), skipinitialspace=True)
    rows = [row for row in reader if any(cell.strip() for cell in row)]
    if not rows:
        raise ValidationError('The roster is empty')

    headers = [_unquote(h).lower() for h in rows[0]]
    if 'name' not in headers:
        raise ValidationError("The roster needs a 'name' column")

    candidates = []
    for row in rows[1:]:
        record = {}
        for index, header in enumerate(headers):
            if header not in ROSTER_COLUMNS or index >= len(row):
                continue
            value = _unquote(row[index])
            if value:
                record[header] = value
        if record.get('name'):
            candidates.append(record)
    return candidates


@dataclass
class ImportResult:
    successful: list = field(default_factory=list)
    duplicates: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.duplicates) + len(self.failed)

    def to_dict(self):
        return {
            'successful': [p.to_dict() for p in self.successful],
            'duplicates': list(self.duplicates),
            'failed': list(self.failed),
            'counts': {
                'successful': len(self.successful),
                'duplicates': len(self.duplicates),
                'failed': len(self.failed),
                'total': self.total,
            },
        }


def _existing_emails(session_id):
    rows = (
        db.session.query(SessionParticipant.email)
        .filter(
            SessionParticipant.session_id == session_id,
            SessionParticipant.is_active.is_(True),
            SessionParticipant.email.isnot(None),
        )
        .all()
    )
    return {email.lower() for (email,) in rows}


def reconcile(session_id, candidates):
    """Create guest participants for a batch, skipping duplicate emails.

    Emails are compared case-insensitively with active participants and with
    rows already accepted from this batch. Rows without an email are never
    duplicates. Every candidate lands in exactly one bucket.
    """
    session = get_session(session_id)
    if session.status != STATUS_ACTIVE:
        raise RegistrationClosed('Participants can only be added to an active session')

    result = ImportResult()
    seen = _existing_emails(session.id)
    for candidate in candidates or []:
        if not isinstance(candidate, Mapping):
            result.failed.append({'data': candidate, 'error': 'Malformed row'})
            continue
        data = dict(candidate)
        name = str(data.get('name') or '').strip()
        if not name:
            result.failed.append({'data': data, 'error': 'Name is required'})
            continue
        email = str(data.get('email') or '').strip().lower()
        if email and email in seen:
            result.duplicates.append({'name': name, 'email': email})
            continue

        try:
            participant = create_guest(session, data, publish=False)
        except EmailTaken:
            # Taken by a participant added after this batch started
            db.session.rollback()
            result.duplicates.append({'name': name, 'email': email})
            continue
        except TrainboardError as exc:
            db.session.rollback()
            result.failed.append({'data': data, 'error': exc.message})
            continue
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.warning(f"[import] row for {name!r} failed to save: {exc}")
            result.failed.append({'data': data, 'error': 'Could not save participant'})
            continue

        if email:
            seen.add(email)
        result.successful.append(participant)

    current_app.logger.info(
        f"[import] session={session.id} successful={len(result.successful)} "
        f"duplicates={len(result.duplicates)} failed={len(result.failed)}"
    )
    if result.successful:
        feed.publish(session.id)
    return result
