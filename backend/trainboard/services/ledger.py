"""Score ledger: the only code path that writes participant scores.

Every accepted change updates the category score, the total and
``last_active`` and appends one Activity row, all in one transaction.
"""
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from trainboard import db
from trainboard.errors import OutOfRange, UnknownCategory, ValidationError
from trainboard.models import ACTIVITY_SCORE_CHANGE, Activity, utcnow
from trainboard.services.concurrency import run_with_retry
from trainboard.services.identity import get_participant
from trainboard.services.sync import feed


@dataclass(frozen=True)
class ScoreChange:
    participant_id: str
    session_id: int
    category: str
    delta: int
    new_category_score: int
    new_total_score: int
    activity_id: int
    replayed: bool = False

    @classmethod
    def from_activity(cls, activity, replayed=False) -> 'ScoreChange':
        return cls(
            participant_id=activity.participant_id,
            session_id=activity.session_id,
            category=activity.category,
            delta=activity.points,
            new_category_score=activity.new_score,
            new_total_score=activity.new_total_score,
            activity_id=activity.id,
            replayed=replayed,
        )

    def to_dict(self):
        return {
            'participant_id': self.participant_id,
            'session_id': self.session_id,
            'category': self.category,
            'delta': self.delta,
            'new_category_score': self.new_category_score,
            'new_total_score': self.new_total_score,
            'activity_id': self.activity_id,
            'replayed': self.replayed,
        }


def _recorded(operation_id, participant_id, category_key, delta) -> Optional[ScoreChange]:
    """Result of an earlier request carrying the same ``operation_id``.

    The id only replays the exact change it was first used for; reusing it
    for another participant, category or delta is refused.
    """
    if not operation_id:
        return None
    activity = Activity.query.filter_by(operation_id=operation_id).first()
    if activity is None:
        return None
    if (activity.participant_id, activity.category, activity.points) != (participant_id, category_key, delta):
        raise ValidationError('This operation id was already used for a different score change')
    return ScoreChange.from_activity(activity, replayed=True)


def _check_delta(delta):
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError('Score change must be a non-zero whole number')


def apply_delta(participant_id, category_key, delta, acting_admin_id, reason=None, operation_id=None):
    """Add ``delta`` to one category of a participant's score sheet.

    Raises ParticipantNotFound, UnknownCategory or OutOfRange without writing
    anything. A repeated ``operation_id`` returns the first result instead of
    applying the delta twice; reusing one for a different change is a
    ValidationError.
    """
    _check_delta(delta)
    operation_id = (operation_id or '').strip() or None
    previous = _recorded(operation_id, participant_id, category_key, delta)
    if previous is not None:
        current_app.logger.info(f"[score] replay operation={operation_id} participant={participant_id}")
        return previous

    def _attempt():
        participant = get_participant(participant_id)
        session = participant.session
        if session.category(category_key) is None:
            raise UnknownCategory(f'Unknown scoring category: {category_key}')

        scores = dict(participant.scores or {})
        before = int(scores.get(category_key, 0))
        after = before + delta
        if not session.scale_min <= after <= session.scale_max:
            raise OutOfRange(category_key, after, session.scale_min, session.scale_max)

        scores[category_key] = after
        total = sum(scores.values())
        now = utcnow()
        participant.scores = scores
        participant.total_score = total
        participant.last_active = now
        activity = Activity(
            session_id=participant.session_id,
            participant_id=participant.id,
            type=ACTIVITY_SCORE_CHANGE,
            category=category_key,
            points=delta,
            previous_score=before,
            new_score=after,
            new_total_score=total,
            reason=(reason or '').strip(),
            changed_by=str(acting_admin_id),
            operation_id=operation_id,
            timestamp=now,
        )
        db.session.add(activity)
        # Flush inside the attempt so a version conflict is raised here
        db.session.flush()
        return ScoreChange.from_activity(activity)

    try:
        change = run_with_retry(_attempt, label=f"score {participant_id}/{category_key}")
    except OutOfRange as exc:
        current_app.logger.warning(f"[score] rejected participant={participant_id} {exc.message}")
        raise
    except IntegrityError:
        # Same operation_id committed by a concurrent retry
        previous = _recorded(operation_id, participant_id, category_key, delta)
        if previous is None:
            raise
        return previous

    current_app.logger.info(
        f"[score] participant={participant_id} category={category_key} delta={delta:+d} "
        f"total={change.new_total_score} by={acting_admin_id}"
    )
    feed.publish(change.session_id)
    return change


def award_category(participant_id, category_key, acting_admin_id, reason=None, operation_id=None):
    """Apply the catalog's configured points for a category."""
    participant = get_participant(participant_id)
    entry = participant.session.category(category_key)
    if entry is None:
        raise UnknownCategory(f'Unknown scoring category: {category_key}')
    return apply_delta(
        participant_id, category_key, int(entry['points']), acting_admin_id,
        reason=reason, operation_id=operation_id,
    )


def recent_activities(session_id, limit=None):
    if limit is None:
        limit = int(current_app.config.get('ACTIVITY_FEED_LIMIT', 20))
    return (
        Activity.query.filter_by(session_id=int(session_id))
        .order_by(Activity.timestamp.desc(), Activity.id.desc())
        .limit(limit)
        .all()
    )


def participant_activities(participant_id, limit=50):
    return (
        Activity.query.filter_by(participant_id=participant_id)
        .order_by(Activity.timestamp.desc(), Activity.id.desc())
        .limit(limit)
        .all()
    )
