from dataclasses import dataclass
from datetime import datetime, timezone
import copy
import secrets
import string

from flask_login import UserMixin
from sqlalchemy import event, func

from trainboard import db, bcrypt

STATUS_ACTIVE = 'active'
STATUS_COMPLETED = 'completed'
STATUS_DELETED = 'deleted'

ROLE_PARTICIPANT = 'participant'
ROLE_SESSION_ADMIN = 'sessionAdmin'

ACTIVITY_SCORE_CHANGE = 'score_change'

# Registered account ids are numeric strings, so this prefix can never collide
GUEST_PREFIX = 'guest-'

DEFAULT_SCORING_CATEGORIES = {
    'positive': {
        'participation': {'name': 'Active Participation', 'points': 5},
        'punctuality': {'name': 'Punctuality', 'points': 3},
        'helpfulness': {'name': 'Helping Others', 'points': 4},
        'excellence': {'name': 'Excellence', 'points': 10},
    },
    'negative': {
        'disruption': {'name': 'Disruption', 'points': -5},
        'lateness': {'name': 'Late Arrival', 'points': -2},
        'absence': {'name': 'Unexcused Absence', 'points': -10},
    },
}


def utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


@dataclass(frozen=True)
class ParticipantKey:
    """Composite identity of a participant within one session.

    Encoded as ``<len(session_id)>-<session_id>-<user_id>``. The length prefix
    tells the decoder exactly where the session id ends, so ids containing
    ``-`` round-trip without ambiguity.
    """

    session_id: str
    user_id: str

    def __post_init__(self):
        if not self.session_id or not self.user_id:
            raise ValueError('Both session_id and user_id are required to build a participant key')

    @classmethod
    def of(cls, session_id, user_id):
        return cls(str(session_id), str(user_id))

    def encode(self) -> str:
        return f"{len(self.session_id)}-{self.session_id}-{self.user_id}"

    @classmethod
    def decode(cls, value: str) -> 'ParticipantKey':
        length, sep, rest = (value or '').partition('-')
        if not sep or not length.isdigit():
            raise ValueError(f'Invalid participant key: {value!r}')
        size = int(length)
        session_id, tail = rest[:size], rest[size:]
        if len(session_id) != size or not tail.startswith('-') or len(tail) < 2:
            raise ValueError(f'Invalid participant key: {value!r}')
        return cls(session_id, tail[1:])

    def __str__(self):
        return self.encode()


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    display_name = db.Column(db.String(120), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    @property
    def account_id(self) -> str:
        return str(self.id)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'display_name': self.display_name,
            'email': self.email,
        }


def generate_join_code(length=8):
    """Generate a join code unique among sessions that are not deleted."""
    alphabet = string.ascii_uppercase + string.digits
    while True:
        code = ''.join(secrets.choice(alphabet) for _ in range(length))
        taken = TrainingSession.query.filter(
            TrainingSession.join_code == code,
            TrainingSession.status != STATUS_DELETED,
        ).first()
        if not taken:
            return code


class TrainingSession(db.Model):
    __tablename__ = 'training_session'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=False, default='')
    join_code = db.Column(db.String(12), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=STATUS_ACTIVE)  # active, completed, deleted
    registration_open = db.Column(db.Boolean, nullable=False, default=True)
    scoring_categories = db.Column(db.JSON, nullable=False, default=lambda: copy.deepcopy(DEFAULT_SCORING_CATEGORIES))
    scoring_scale = db.Column(db.JSON, nullable=False, default=lambda: {'min': -50, 'max': 50})
    teams = db.Column(db.JSON, nullable=False, default=list)  # known team names, insertion ordered
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    participants = db.relationship('SessionParticipant', back_populates='session', lazy='dynamic')

    @property
    def scale_min(self) -> int:
        return int((self.scoring_scale or {}).get('min', -50))

    @property
    def scale_max(self) -> int:
        return int((self.scoring_scale or {}).get('max', 50))

    @property
    def accepts_registrations(self) -> bool:
        return self.status == STATUS_ACTIVE and bool(self.registration_open)

    def category(self, key):
        """Return the catalog entry for a category key, positive or negative."""
        catalog = self.scoring_categories or {}
        for group in ('positive', 'negative'):
            entry = (catalog.get(group) or {}).get(key)
            if entry is not None:
                return entry
        return None

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'join_code': self.join_code,
            'status': self.status,
            'registration_open': self.registration_open,
            'scoring_categories': self.scoring_categories,
            'scoring_scale': {'min': self.scale_min, 'max': self.scale_max},
            'teams': list(self.teams or []),
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'ended_at': _iso(self.ended_at),
        }


class SessionParticipant(db.Model):
    __tablename__ = 'session_participant'
    __table_args__ = (
        db.UniqueConstraint('session_id', 'user_id', name='uq_session_participant_user'),
    )
    id = db.Column(db.String(160), primary_key=True)  # ParticipantKey.encode()
    session_id = db.Column(db.Integer, db.ForeignKey('training_session.id'), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=True, index=True)  # stored lower-cased
    phone = db.Column(db.String(64), nullable=True)
    department = db.Column(db.String(120), nullable=True)
    team = db.Column(db.String(64), nullable=True, index=True)
    scores = db.Column(db.JSON, nullable=False, default=dict)
    total_score = db.Column(db.Integer, nullable=False, default=0, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_guest = db.Column(db.Boolean, nullable=False, default=False)
    role = db.Column(db.String(16), nullable=False, default=ROLE_PARTICIPANT)
    joined_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_active = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False)
    session = db.relationship('TrainingSession', back_populates='participants')

    __mapper_args__ = {'version_id_col': version}

    @property
    def key(self) -> ParticipantKey:
        return ParticipantKey.decode(self.id)

    def to_dict(self):
        return {
            'id': self.id,
            'session_id': self.session_id,
            'user_id': self.user_id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'department': self.department,
            'team': self.team,
            'scores': dict(self.scores or {}),
            'total_score': self.total_score,
            'is_active': self.is_active,
            'is_guest': self.is_guest,
            'role': self.role,
            'joined_at': _iso(self.joined_at),
            'last_active': _iso(self.last_active),
        }


# One active holder per email within a session; removed participants free it
db.Index(
    'uq_session_participant_active_email',
    SessionParticipant.session_id,
    func.lower(SessionParticipant.email),
    unique=True,
    postgresql_where=SessionParticipant.is_active.is_(True),
    sqlite_where=SessionParticipant.is_active.is_(True),
)


class Activity(db.Model):
    __tablename__ = 'activity'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('training_session.id'), nullable=False, index=True)
    participant_id = db.Column(db.String(160), db.ForeignKey('session_participant.id'), nullable=False, index=True)
    type = db.Column(db.String(32), nullable=False, default=ACTIVITY_SCORE_CHANGE)
    category = db.Column(db.String(64), nullable=False)
    points = db.Column(db.Integer, nullable=False)
    previous_score = db.Column(db.Integer, nullable=False)
    new_score = db.Column(db.Integer, nullable=False)
    new_total_score = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False, default='')
    changed_by = db.Column(db.String(64), nullable=False)
    # Client supplied idempotency key; a retried request reuses it
    operation_id = db.Column(db.String(64), nullable=True, unique=True)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'session_id': self.session_id,
            'participant_id': self.participant_id,
            'type': self.type,
            'category': self.category,
            'points': self.points,
            'previous_score': self.previous_score,
            'new_score': self.new_score,
            'new_total_score': self.new_total_score,
            'reason': self.reason,
            'changed_by': self.changed_by,
            'operation_id': self.operation_id,
            'timestamp': _iso(self.timestamp),
        }


@event.listens_for(Activity, 'before_update')
def _activities_are_append_only(mapper, connection, target):
    raise ValueError('Activity records are immutable once written')
