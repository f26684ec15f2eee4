from flask import Blueprint, jsonify, request, current_app
from flask_login import current_user, login_required

from trainboard.errors import PermissionDenied, ValidationError
from trainboard.services import identity as identity_svc
from trainboard.services import ledger, roster, teams as team_svc
from trainboard.services import sessions as session_svc
from trainboard.services.identity import Identity


sessions = Blueprint('sessions', __name__)


def _json():
    return request.get_json(silent=True) or {}


def _admin_session(session_id):
    """Load a session the logged-in user administers."""
    session = session_svc.get_session(session_id)
    if not session_svc.is_session_admin(session, current_user):
        raise PermissionDenied()
    return session


def _public_session(session):
    payload = session.to_dict()
    payload.pop('join_code', None)
    return payload


@sessions.route('', methods=['POST'])
@login_required
def create_session():
    session = session_svc.create_session(_json(), current_user)
    return jsonify(session.to_dict()), 201


@sessions.route('', methods=['GET'])
@login_required
def list_sessions():
    return jsonify([s.to_dict() for s in session_svc.list_admin_sessions(current_user)])


@sessions.route('/<int:session_id>', methods=['GET'])
def get_session(session_id):
    session = session_svc.get_session(session_id)
    if session_svc.is_session_admin(session, current_user):
        return jsonify(session.to_dict())
    return jsonify(_public_session(session))


@sessions.route('/<int:session_id>', methods=['PATCH'])
@login_required
def update_session(session_id):
    session = session_svc.update_session(_admin_session(session_id), _json())
    return jsonify(session.to_dict())


@sessions.route('/<int:session_id>/stats', methods=['GET'])
@login_required
def session_stats(session_id):
    return jsonify(session_svc.session_stats(_admin_session(session_id)))


@sessions.route('/code/<string:join_code>', methods=['GET'])
def get_session_by_code(join_code):
    session = session_svc.get_session_by_join_code(join_code)
    return jsonify(_public_session(session))


@sessions.route('/join', methods=['POST'])
def join_session():
    data = _json()
    profile = {k: data.get(k) for k in identity_svc.PROFILE_FIELDS}
    if current_user.is_authenticated:
        identity = Identity.registered(current_user.account_id)
        profile['name'] = profile['name'] or current_user.display_name or current_user.username
        profile['email'] = profile['email'] or current_user.email
    else:
        identity = Identity.guest()
    participant = identity_svc.join_by_code(data.get('join_code'), identity, profile)
    return jsonify(participant.to_dict()), 201


@sessions.route('/<int:session_id>/end', methods=['POST'])
@login_required
def end_session(session_id):
    session = session_svc.end_session(_admin_session(session_id))
    return jsonify(session.to_dict())


@sessions.route('/<int:session_id>/registration', methods=['POST'])
@login_required
def set_registration(session_id):
    data = _json()
    if not isinstance(data.get('open'), bool):
        raise ValidationError("'open' must be true or false")
    session = session_svc.set_registration(_admin_session(session_id), data['open'])
    return jsonify(session.to_dict())


@sessions.route('/<int:session_id>/join-code', methods=['POST'])
@login_required
def regenerate_join_code(session_id):
    code = session_svc.regenerate_join_code(_admin_session(session_id))
    return jsonify({'join_code': code})


@sessions.route('/<int:session_id>', methods=['DELETE'])
@login_required
def delete_session(session_id):
    session_svc.delete_session(_admin_session(session_id))
    return jsonify({'success': True})


@sessions.route('/<int:session_id>/participants', methods=['GET'])
def list_participants(session_id):
    session = session_svc.get_session(session_id)
    term = request.args.get('q')
    if term:
        participants = identity_svc.search_participants(session.id, term)
    else:
        participants = identity_svc.active_participants(session.id)
    return jsonify([p.to_dict() for p in participants])


@sessions.route('/<int:session_id>/participants', methods=['POST'])
@login_required
def add_participant(session_id):
    session = _admin_session(session_id)
    participant = identity_svc.create_guest(session, _json())
    return jsonify(participant.to_dict()), 201


@sessions.route('/<int:session_id>/participants/import', methods=['POST'])
@login_required
def import_participants(session_id):
    session = _admin_session(session_id)
    data = request.get_json(silent=True)
    if isinstance(data, dict) and isinstance(data.get('participants'), list):
        candidates = data['participants']
    elif isinstance(data, dict) and 'roster' in data:
        candidates = roster.parse_roster(data.get('roster'))
    else:
        candidates = roster.parse_roster(request.get_data(as_text=True))
    result = roster.reconcile(session.id, candidates)
    return jsonify(result.to_dict()), 201 if result.successful else 200


@sessions.route('/<int:session_id>/participants/<string:participant_id>', methods=['PATCH'])
@login_required
def update_participant(session_id, participant_id):
    _admin_session(session_id)
    participant = identity_svc.update_profile(participant_id, _json(), session_id=session_id)
    return jsonify(participant.to_dict())


@sessions.route('/<int:session_id>/participants/<string:participant_id>', methods=['DELETE'])
@login_required
def remove_participant(session_id, participant_id):
    _admin_session(session_id)
    identity_svc.remove_participant(participant_id, session_id=session_id)
    return jsonify({'success': True})


@sessions.route('/<int:session_id>/participants/<string:participant_id>/score', methods=['POST'])
@login_required
def score_participant(session_id, participant_id):
    _admin_session(session_id)
    identity_svc.get_participant(participant_id, session_id=session_id)
    data = _json()
    category = data.get('category')
    if not category:
        raise ValidationError('category is required')
    if data.get('delta') is None:
        change = ledger.award_category(
            participant_id, category, current_user.account_id,
            reason=data.get('reason'), operation_id=data.get('operation_id'),
        )
    else:
        change = ledger.apply_delta(
            participant_id, category, data.get('delta'), current_user.account_id,
            reason=data.get('reason'), operation_id=data.get('operation_id'),
        )
    return jsonify(change.to_dict()), 200 if change.replayed else 201


@sessions.route('/<int:session_id>/participants/<string:participant_id>/activities', methods=['GET'])
@login_required
def participant_activities(session_id, participant_id):
    _admin_session(session_id)
    participant = identity_svc.get_participant(participant_id, session_id=session_id, include_inactive=True)
    return jsonify([a.to_dict() for a in ledger.participant_activities(participant.id)])


@sessions.route('/<int:session_id>/activities', methods=['GET'])
def list_activities(session_id):
    session = session_svc.get_session(session_id)
    limit = request.args.get('limit', type=int)
    cap = int(current_app.config.get('ACTIVITY_FEED_LIMIT', 20))
    limit = cap if limit is None or limit <= 0 else min(limit, cap)
    return jsonify([a.to_dict() for a in ledger.recent_activities(session.id, limit)])


@sessions.route('/<int:session_id>/teams', methods=['GET'])
def list_teams(session_id):
    session = session_svc.get_session(session_id)
    return jsonify({
        'teams': [t.to_dict() for t in team_svc.session_teams(session.id)],
        'known_teams': list(session.teams or []),
    })


@sessions.route('/<int:session_id>/teams/assign', methods=['POST'])
@login_required
def assign_team(session_id):
    _admin_session(session_id)
    data = _json()
    participant_ids = data.get('participant_ids')
    if not isinstance(participant_ids, list):
        raise ValidationError('participant_ids must be a list')
    updated = team_svc.assign_team(participant_ids, data.get('team'), session_id=session_id)
    return jsonify([p.to_dict() for p in updated])


@sessions.route('/<int:session_id>/teams/<string:team_name>/rename', methods=['POST'])
@login_required
def rename_team(session_id, team_name):
    _admin_session(session_id)
    moved = team_svc.rename_team(session_id, team_name, _json().get('name'))
    return jsonify({'success': True, 'members': moved})


@sessions.route('/<int:session_id>/teams/<string:team_name>', methods=['DELETE'])
@login_required
def delete_team(session_id, team_name):
    _admin_session(session_id)
    unassigned = team_svc.delete_team(session_id, team_name)
    return jsonify({'success': True, 'unassigned': unassigned})


@sessions.route('/<int:session_id>/leaderboard', methods=['GET'])
def leaderboard(session_id):
    session = session_svc.get_session(session_id)
    return jsonify({
        'session': _public_session(session),
        'participants': [p.to_dict() for p in identity_svc.active_participants(session.id)],
        'teams': [t.to_dict(include_members=False) for t in team_svc.session_teams(session.id)],
    })
