"""Participant identity within a session.

A participant row is keyed by ``ParticipantKey(session_id, user_id)``.
``user_id`` is either a registered account id or a generated guest id from
the ``guest-`` namespace, so the two spaces never overlap.
"""
from dataclasses import dataclass
from typing import Optional
import uuid

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from trainboard import db
from trainboard.errors import (
    AlreadyJoined,
    EmailTaken,
    ParticipantNotFound,
    RegistrationClosed,
    ValidationError,
)
from trainboard.models import (
    GUEST_PREFIX,
    ROLE_PARTICIPANT,
    STATUS_ACTIVE,
    ParticipantKey,
    SessionParticipant,
    utcnow,
)
from trainboard.services.concurrency import run_with_retry
from trainboard.services.sessions import get_session, get_session_by_join_code, register_team
from trainboard.services.sync import feed

PROFILE_FIELDS = ('name', 'email', 'phone', 'department')


def new_guest_id() -> str:
    return f"{GUEST_PREFIX}{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Identity:
    kind: str
    account_id: Optional[str] = None

    @classmethod
    def registered(cls, account_id) -> 'Identity':
        account_id = str(account_id or '').strip()
        if not account_id:
            raise ValidationError('Account id is required')
        if account_id.startswith(GUEST_PREFIX):
            raise ValidationError('Account ids may not use the guest namespace')
        return cls('registered', account_id)

    @classmethod
    def guest(cls) -> 'Identity':
        return cls('guest')

    @property
    def is_guest(self) -> bool:
        return self.kind == 'guest'

    def effective_user_id(self) -> str:
        # Each call for a guest mints a new id
        return new_guest_id() if self.is_guest else self.account_id


def _text(value):
    value = str(value).strip() if value is not None else ''
    return value or None


def clean_profile(profile, partial=False):
    """Normalize profile fields; email is lower-cased for comparisons."""
    profile = profile or {}
    cleaned = {}
    for field in PROFILE_FIELDS:
        if partial and field not in profile:
            continue
        cleaned[field] = _text(profile.get(field))
    if 'email' in cleaned and cleaned['email']:
        cleaned['email'] = cleaned['email'].lower()
    if (not partial or 'name' in profile) and not cleaned.get('name'):
        raise ValidationError('Name is required')
    return cleaned


def email_in_use(session_id, email, exclude_id=None) -> bool:
    if not email:
        return False
    query = SessionParticipant.query.filter(
        SessionParticipant.session_id == session_id,
        SessionParticipant.is_active.is_(True),
        func.lower(SessionParticipant.email) == email.lower(),
    )
    if exclude_id is not None:
        query = query.filter(SessionParticipant.id != exclude_id)
    return db.session.query(query.exists()).scalar()


def build_participant(session, user_id, profile, is_guest, role=ROLE_PARTICIPANT):
    """Return a new, unsaved participant with an empty score sheet."""
    fields = clean_profile(profile)
    now = utcnow()
    return SessionParticipant(
        id=ParticipantKey.of(session.id, user_id).encode(),
        session_id=session.id,
        user_id=str(user_id),
        name=fields['name'],
        email=fields['email'],
        phone=fields['phone'],
        department=fields['department'],
        team=_text((profile or {}).get('team')),
        scores={},
        total_score=0,
        is_active=True,
        is_guest=is_guest,
        role=role,
        joined_at=now,
        last_active=now,
    )


def _conflict(session_id, key, email):
    """Name the uniqueness rule a rejected insert or update ran into.

    Called after rollback; returns None when neither rule explains it.
    """
    holder = db.session.get(SessionParticipant, key) if key else None
    if holder is not None and holder.is_active:
        return AlreadyJoined(holder.id)
    if email_in_use(session_id, email, exclude_id=key):
        return EmailTaken()
    return None


def resolve_or_create(session_id, identity, profile):
    """Join a session as a registered user or a guest.

    An active record at the same key raises AlreadyJoined. A soft-deleted
    record at that key is reactivated as-is: scores, team and role survive.
    Its stored email must still be free unless the new profile replaces it.
    """
    session = get_session(session_id)
    if not session.accepts_registrations:
        raise RegistrationClosed()

    fields = clean_profile(profile)
    user_id = identity.effective_user_id()
    key = ParticipantKey.of(session.id, user_id).encode()
    existing = db.session.get(SessionParticipant, key)
    if existing is not None and existing.is_active:
        raise AlreadyJoined(existing.id)
    email = fields['email'] or (existing.email if existing is not None else None)
    if email_in_use(session.id, email, exclude_id=key):
        raise EmailTaken()

    if existing is not None:
        def _reactivate():
            participant = db.session.get(SessionParticipant, key)
            if participant.is_active:
                raise AlreadyJoined(participant.id)
            participant.is_active = True
            participant.deleted_at = None
            participant.last_active = utcnow()
            for field, value in fields.items():
                if value:
                    setattr(participant, field, value)
            return participant

        try:
            participant = run_with_retry(_reactivate, label=f"rejoin {key}")
        except IntegrityError:
            # Another participant took the email in the meantime
            raise EmailTaken()
        current_app.logger.info(f"[join] reactivated participant={key} session={session.id}")
    else:
        participant = build_participant(session, user_id, profile, is_guest=identity.is_guest)
        db.session.add(participant)
        try:
            db.session.commit()
        except IntegrityError:
            # Lost a race with a concurrent join for the same key or email
            db.session.rollback()
            conflict = _conflict(session.id, key, email)
            if conflict is None:
                raise
            raise conflict
        current_app.logger.info(
            f"[join] participant={key} session={session.id} guest={participant.is_guest}"
        )

    feed.publish(session.id)
    return participant


def join_by_code(join_code, identity, profile):
    session = get_session_by_join_code(join_code)
    return resolve_or_create(session.id, identity, profile)


def create_guest(session, profile, publish=True):
    """Admin creation path: always a fresh guest id, never AlreadyJoined.

    Registration may be closed; the session only has to be active.
    """
    if session.status != STATUS_ACTIVE:
        raise RegistrationClosed('Participants can only be added to an active session')
    participant = build_participant(session, new_guest_id(), profile, is_guest=True)
    if email_in_use(session.id, participant.email):
        raise EmailTaken()
    if participant.team:
        register_team(session, participant.team)
    db.session.add(participant)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise EmailTaken()
    current_app.logger.info(f"[join] guest added participant={participant.id} session={session.id}")
    if publish:
        feed.publish(session.id)
    return participant


def get_participant(participant_id, session_id=None, include_inactive=False):
    participant = db.session.get(SessionParticipant, participant_id) if participant_id else None
    if participant is None or (not participant.is_active and not include_inactive):
        raise ParticipantNotFound()
    if session_id is not None and participant.session_id != int(session_id):
        raise ParticipantNotFound()
    return participant


def active_participants(session_id):
    """Active participants ordered for the leaderboard.

    Ties on total score fall back to join time, then key, so every reader
    sees the same order.
    """
    return (
        SessionParticipant.query.filter_by(session_id=int(session_id), is_active=True)
        .order_by(
            SessionParticipant.total_score.desc(),
            SessionParticipant.joined_at.asc(),
            SessionParticipant.id.asc(),
        )
        .all()
    )


def search_participants(session_id, term):
    """Active participants whose name, email, department or phone contains ``term``.

    Matching ignores case; results keep the leaderboard order.
    """
    needle = (term or '').strip().lower()
    participants = active_participants(session_id)
    if not needle:
        return participants
    return [
        p for p in participants
        if any(needle in (value or '').lower() for value in (p.name, p.email, p.department, p.phone))
    ]


def update_profile(participant_id, changes, session_id=None):
    """Edit name/email/phone/department. Scores and team are not touched here."""
    fields = clean_profile(changes, partial=True)
    if not fields:
        raise ValidationError('Nothing to update')
    participant = get_participant(participant_id, session_id=session_id)
    if fields.get('email') and email_in_use(participant.session_id, fields['email'], exclude_id=participant.id):
        raise EmailTaken()

    def _update():
        target = get_participant(participant_id)
        for field, value in fields.items():
            setattr(target, field, value)
        return target

    try:
        participant = run_with_retry(_update, label=f"profile {participant_id}")
    except IntegrityError:
        raise EmailTaken()
    feed.publish(participant.session_id)
    return participant


def remove_participant(participant_id, session_id=None):
    """Soft delete: the row stays for the audit trail and a later rejoin."""
    get_participant(participant_id, session_id=session_id)

    def _deactivate():
        target = get_participant(participant_id)
        target.is_active = False
        target.deleted_at = utcnow()
        return target

    participant = run_with_retry(_deactivate, label=f"remove {participant_id}")
    current_app.logger.info(f"[remove] participant={participant.id} session={participant.session_id}")
    feed.publish(participant.session_id)
    return participant
