"""Teams are derived from participants' free-text ``team`` field.

No team row is stored: a team is visible while at least one active
participant names it. Renaming or deleting a team is done by re-pointing
its members.
"""
from dataclasses import dataclass, field
import math
from typing import List, Optional

from flask import current_app

from trainboard import db
from trainboard.errors import ValidationError
from trainboard.services.concurrency import run_with_retry
from trainboard.services.identity import active_participants, get_participant
from trainboard.services.sessions import forget_team, get_session, register_team
from trainboard.services.sync import feed


@dataclass
class TeamView:
    name: str
    members: list = field(default_factory=list)
    total_score: int = 0

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def avg_score(self) -> int:
        # Halves round up, -0.5 included, matching the leaderboard display
        if not self.members:
            return 0
        return math.floor(self.total_score / len(self.members) + 0.5)

    def to_dict(self, include_members=True):
        payload = {
            'name': self.name,
            'total_score': self.total_score,
            'avg_score': self.avg_score,
            'member_count': self.member_count,
        }
        if include_members:
            payload['members'] = [_member_dict(m) for m in self.members]
        return payload


def _member_dict(member):
    return member.to_dict() if hasattr(member, 'to_dict') else dict(member)


def _attr(member, name, default=None):
    if isinstance(member, dict):
        return member.get(name, default)
    return getattr(member, name, default)


def compute_teams(participants) -> List[TeamView]:
    """Group active participants by team, in order of first appearance."""
    teams = {}
    for member in participants:
        name = _attr(member, 'team')
        if not name or not _attr(member, 'is_active', True):
            continue
        view = teams.setdefault(name, TeamView(name=name))
        view.members.append(member)
        view.total_score += int(_attr(member, 'total_score', 0) or 0)
    return list(teams.values())


def rank_teams(teams) -> List[TeamView]:
    # sorted() is stable: equal totals keep discovery order
    return sorted(teams, key=lambda team: -team.total_score)


def session_teams(session_id) -> List[TeamView]:
    return rank_teams(compute_teams(active_participants(session_id)))


def _clean_name(team_name) -> Optional[str]:
    name = str(team_name).strip() if team_name is not None else ''
    return name or None


def assign_team(participant_ids, team_name, session_id=None):
    """Point each participant at ``team_name``, or unassign with None.

    Scores are never touched. All participants must exist and be active;
    otherwise nothing is changed.
    """
    name = _clean_name(team_name)
    ids = list(dict.fromkeys(participant_ids or []))
    if not ids:
        raise ValidationError('Choose at least one participant')
    for participant_id in ids:
        get_participant(participant_id, session_id=session_id)

    def _assign():
        updated = []
        for participant_id in ids:
            participant = get_participant(participant_id, session_id=session_id)
            participant.team = name
            if name:
                register_team(participant.session, name)
            updated.append(participant)
        return updated

    updated = run_with_retry(_assign, label=f"team {name or '-'}")
    session_ids = sorted({p.session_id for p in updated})
    current_app.logger.info(f"[team] assigned {len(updated)} participant(s) to team={name!r}")
    for sid in session_ids:
        feed.publish(sid, channels=('participants',))
    return updated


def members_of(session_id, team_name):
    return [p for p in active_participants(session_id) if p.team == team_name]


def rename_team(session_id, old_name, new_name):
    """Re-point every active member of ``old_name``. Returns the member count."""
    new = _clean_name(new_name)
    if not new:
        raise ValidationError('Team name is required')
    session = get_session(session_id)
    member_ids = [p.id for p in members_of(session.id, old_name)]
    if member_ids:
        assign_team(member_ids, new, session_id=session.id)
    forget_team(session, old_name)
    register_team(session, new)
    db.session.commit()
    current_app.logger.info(f"[team] renamed {old_name!r} -> {new!r} session={session.id} members={len(member_ids)}")
    return len(member_ids)


def delete_team(session_id, team_name):
    """Unassign every member; the team disappears with its last member."""
    session = get_session(session_id)
    member_ids = [p.id for p in members_of(session.id, team_name)]
    if member_ids:
        assign_team(member_ids, None, session_id=session.id)
    forget_team(session, team_name)
    db.session.commit()
    current_app.logger.info(f"[team] deleted {team_name!r} session={session.id} unassigned={len(member_ids)}")
    return len(member_ids)
