"""Session management: the read side used by the scoring core plus the
small set of admin actions the rest of the app needs (create, end, delete,
registration toggle, join code rotation, known-team list).
"""
from datetime import timezone
import copy

from flask import current_app

from trainboard import db
from trainboard.errors import SessionNotFound, InvalidJoinCode, ValidationError
from trainboard.models import (
    TrainingSession,
    SessionParticipant,
    ParticipantKey,
    DEFAULT_SCORING_CATEGORIES,
    ROLE_SESSION_ADMIN,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_DELETED,
    generate_join_code,
    utcnow,
)


def _clean_scale(scale):
    cfg = current_app.config
    scale = scale or {}
    try:
        low = int(scale.get('min', cfg.get('DEFAULT_SCALE_MIN', -50)))
        high = int(scale.get('max', cfg.get('DEFAULT_SCALE_MAX', 50)))
    except (TypeError, ValueError):
        raise ValidationError('Scoring scale bounds must be whole numbers')
    # Unscored categories count as 0, so the scale has to contain it
    if not low <= 0 <= high:
        raise ValidationError('Scoring scale must satisfy min <= 0 <= max')
    return {'min': low, 'max': high}


def _clean_categories(categories):
    if not categories:
        return copy.deepcopy(DEFAULT_SCORING_CATEGORIES)
    cleaned = {'positive': {}, 'negative': {}}
    seen = set()
    for group in ('positive', 'negative'):
        for key, entry in (categories.get(group) or {}).items():
            key = str(key).strip()
            if not key or key in seen:
                raise ValidationError(f'Category keys must be unique and non-empty ({key!r})')
            try:
                points = int((entry or {}).get('points'))
            except (TypeError, ValueError):
                raise ValidationError(f'Category {key} needs whole-number points')
            seen.add(key)
            cleaned[group][key] = {'name': str(entry.get('name') or key), 'points': points}
    if not seen:
        raise ValidationError('At least one scoring category is required')
    return cleaned


def create_session(data, creator):
    """Create a session and enroll its creator as a session admin."""
    name = (data.get('name') or '').strip()
    if not name:
        raise ValidationError('Session name is required')

    session = TrainingSession(
        name=name,
        description=(data.get('description') or '').strip(),
        join_code=generate_join_code(int(current_app.config.get('JOIN_CODE_LENGTH', 8))),
        status=STATUS_ACTIVE,
        registration_open=data.get('registration_open') is not False,
        scoring_categories=_clean_categories(data.get('scoring_categories')),
        scoring_scale=_clean_scale(data.get('scoring_scale')),
        teams=[],
        created_by=creator.id,
    )
    db.session.add(session)
    db.session.flush()

    from trainboard.services.identity import build_participant
    admin = build_participant(
        session,
        creator.account_id,
        {'name': creator.display_name or creator.email or creator.username, 'email': creator.email},
        is_guest=False,
        role=ROLE_SESSION_ADMIN,
    )
    db.session.add(admin)
    db.session.commit()
    current_app.logger.info(f"[session] created id={session.id} code={session.join_code} admin={admin.id}")
    return session


def get_session(session_id, include_deleted=False):
    try:
        session = db.session.get(TrainingSession, int(session_id))
    except (TypeError, ValueError):
        session = None
    if session is None or (session.status == STATUS_DELETED and not include_deleted):
        raise SessionNotFound()
    return session


def get_session_by_join_code(code):
    code = (code or '').strip().upper()
    session = None
    if code:
        session = TrainingSession.query.filter_by(
            join_code=code, status=STATUS_ACTIVE, registration_open=True
        ).first()
    if session is None:
        raise InvalidJoinCode()
    return session


def end_session(session):
    session.status = STATUS_COMPLETED
    session.registration_open = False
    session.ended_at = utcnow()
    db.session.commit()
    current_app.logger.info(f"[session] ended id={session.id}")
    return session


def delete_session(session):
    session.status = STATUS_DELETED
    session.registration_open = False
    session.deleted_at = utcnow()
    db.session.commit()
    current_app.logger.info(f"[session] deleted id={session.id}")
    return session


def set_registration(session, is_open):
    if is_open and session.status != STATUS_ACTIVE:
        raise ValidationError('Registration can only be opened on an active session')
    session.registration_open = bool(is_open)
    db.session.commit()
    return session


def regenerate_join_code(session):
    session.join_code = generate_join_code(int(current_app.config.get('JOIN_CODE_LENGTH', 8)))
    db.session.commit()
    return session.join_code


def register_team(session, team_name):
    """Add a name to the session's known teams. Adding a known name is a no-op.

    Does not commit; callers commit together with their own changes.
    """
    name = (team_name or '').strip()
    if not name:
        return False
    known = list(session.teams or [])
    if name in known:
        return False
    known.append(name)
    session.teams = known
    return True


def forget_team(session, team_name):
    known = [t for t in (session.teams or []) if t != team_name]
    if len(known) != len(session.teams or []):
        session.teams = known


def is_session_admin(session, user):
    if user is None or not getattr(user, 'is_authenticated', False):
        return False
    participant = db.session.get(
        SessionParticipant, ParticipantKey.of(session.id, user.account_id).encode()
    )
    return bool(participant and participant.is_active and participant.role == ROLE_SESSION_ADMIN)


def list_admin_sessions(user):
    """Active sessions where ``user`` holds an active sessionAdmin record, newest first."""
    if user is None or not getattr(user, 'is_authenticated', False):
        return []
    return (
        TrainingSession.query.join(
            SessionParticipant, SessionParticipant.session_id == TrainingSession.id
        )
        .filter(
            SessionParticipant.user_id == user.account_id,
            SessionParticipant.role == ROLE_SESSION_ADMIN,
            SessionParticipant.is_active.is_(True),
            TrainingSession.status == STATUS_ACTIVE,
        )
        .order_by(TrainingSession.created_at.desc(), TrainingSession.id.desc())
        .all()
    )


def _scores_outside(session, scale):
    """Names of active participants holding a category score outside ``scale``."""
    return [
        p.name
        for p in session.participants.filter_by(is_active=True)
        if any(not scale['min'] <= int(v) <= scale['max'] for v in (p.scores or {}).values())
    ]


def update_session(session, data):
    """Edit name, description, scoring catalog or scale of a live session.

    Scores already recorded are kept. A scale that would leave an existing
    category score out of range is refused.
    """
    if session.status == STATUS_DELETED:
        raise SessionNotFound()
    data = data or {}
    if 'name' in data:
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError('Session name is required')
        session.name = name
    if 'description' in data:
        session.description = (data.get('description') or '').strip()
    if 'scoring_categories' in data:
        session.scoring_categories = _clean_categories(data.get('scoring_categories'))
    if 'scoring_scale' in data:
        scale = _clean_scale(data.get('scoring_scale'))
        outside = _scores_outside(session, scale)
        if outside:
            raise ValidationError(
                f"Scores of {', '.join(outside)} fall outside {scale['min']} to {scale['max']}"
            )
        session.scoring_scale = scale
    session.updated_at = utcnow()
    db.session.commit()
    current_app.logger.info(f"[session] updated id={session.id} fields={','.join(sorted(data))}")
    return session


def session_stats(session):
    created = session.created_at
    if created is not None and created.tzinfo is None:
        # SQLite hands back naive values; they were written as UTC
        created = created.replace(tzinfo=timezone.utc)
    return {
        'session_id': session.id,
        'total_participants': session.participants.filter_by(is_active=True).count(),
        'team_count': len(session.teams or []),
        'registration_open': session.registration_open,
        'status': session.status,
        'days_running': (utcnow() - created).days if created else 0,
        'join_code': session.join_code,
    }
