import pytest

from trainboard.errors import RegistrationClosed, ValidationError
from trainboard.services import identity, roster, sessions


def test_parse_roster_maps_known_columns():
    text = (
        'Name, Email, Department, Badge\n'
        '"Ada Lovelace", ada@example.com, Engineering, 42\n'
        '\n'
        "'Bob', , Ops\n"
        ', nobody@example.com, Ops\n'
    )
    rows = roster.parse_roster(text)
    assert rows == [
        {'name': 'Ada Lovelace', 'email': 'ada@example.com', 'department': 'Engineering'},
        {'name': 'Bob', 'department': 'Ops'},
    ]


def test_parse_roster_requires_a_name_column():
    with pytest.raises(ValidationError):
        roster.parse_roster('email,team\nada@example.com,Red\n')
    with pytest.raises(ValidationError):
        roster.parse_roster('   \n')


def test_duplicate_emails_within_batch(training_session):
    result = roster.reconcile(training_session.id, [
        {'name': 'Ada', 'email': 'ada@example.com'},
        {'name': 'Ada again', 'email': 'ADA@example.com'},
    ])
    assert len(result.successful) == 1
    assert result.duplicates == [{'name': 'Ada again', 'email': 'ada@example.com'}]
    assert result.failed == []


def test_every_candidate_lands_in_one_bucket(training_session, add_guest):
    add_guest(training_session, 'Existing', email='taken@example.com')
    candidates = [
        {'name': 'New', 'email': 'new@example.com', 'team': 'Red'},
        {'name': 'Clash', 'email': 'Taken@example.com'},
        {'name': ''},
        'not a row',
        {'name': 'No email'},
        {'name': 'Also no email'},
    ]
    result = roster.reconcile(training_session.id, candidates)

    assert result.total == len(candidates)
    assert [p.name for p in result.successful] == ['New', 'No email', 'Also no email']
    assert [d['email'] for d in result.duplicates] == ['taken@example.com']
    assert [f['error'] for f in result.failed] == ['Name is required', 'Malformed row']
    assert 'Red' in training_session.teams
    assert all(p.is_guest for p in result.successful)


def test_import_works_while_registration_is_closed(training_session):
    sessions.set_registration(training_session, False)
    result = roster.reconcile(training_session.id, [{'name': 'Ada'}])
    assert len(result.successful) == 1
    assert len(identity.active_participants(training_session.id)) == 2


def test_import_into_ended_session_is_refused(training_session):
    sessions.end_session(training_session)
    with pytest.raises(RegistrationClosed):
        roster.reconcile(training_session.id, [{'name': 'Ada'}])


def test_import_result_counts(training_session):
    payload = roster.reconcile(training_session.id, [{'name': 'Ada'}, {'name': None}]).to_dict()
    assert payload['counts'] == {'successful': 1, 'duplicates': 0, 'failed': 1, 'total': 2}
    assert payload['successful'][0]['name'] == 'Ada'


def test_email_claimed_mid_import_counts_as_duplicate(training_session, add_guest, monkeypatch):
    add_guest(training_session, 'Ada', email='ada@example.com')
    # The batch read the email list and checked the row before Ada committed
    monkeypatch.setattr(roster, '_existing_emails', lambda session_id: set())
    monkeypatch.setattr(identity, 'email_in_use', lambda *args, **kwargs: False)

    result = roster.reconcile(training_session.id, [
        {'name': 'Ada copy', 'email': 'ada@example.com'},
        {'name': 'Bob', 'email': 'bob@example.com'},
    ])

    assert [p.name for p in result.successful] == ['Bob']
    assert result.duplicates == [{'name': 'Ada copy', 'email': 'ada@example.com'}]
    assert result.failed == []
