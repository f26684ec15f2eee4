import pytest
from sqlalchemy import text

from trainboard import create_app, db
from trainboard.errors import (
    ConcurrentUpdateError,
    OutOfRange,
    ParticipantNotFound,
    UnknownCategory,
    ValidationError,
)
from trainboard.models import Activity, User
from trainboard.services import identity, ledger
from trainboard.services.sessions import create_session
from trainboard.services.sync import ACTIVITIES, feed

from conftest import TestConfig


def test_total_always_matches_category_sum(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    ledger.apply_delta(ada.id, 'participation', 5, trainer.account_id)
    ledger.apply_delta(ada.id, 'lateness', -2, trainer.account_id)
    change = ledger.apply_delta(ada.id, 'participation', 3, trainer.account_id, reason='Answered twice')

    assert change.new_category_score == 8
    assert change.new_total_score == 6
    refreshed = identity.get_participant(ada.id)
    assert refreshed.scores == {'participation': 8, 'lateness': -2}
    assert refreshed.total_score == sum(refreshed.scores.values())


def test_each_change_appends_one_activity(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    ledger.apply_delta(ada.id, 'participation', 5, trainer.account_id, reason='  Good question  ')
    ledger.apply_delta(ada.id, 'participation', 2, trainer.account_id)

    activities = ledger.participant_activities(ada.id)
    assert len(activities) == 2
    newest, oldest = activities
    assert (oldest.previous_score, oldest.new_score, oldest.points) == (0, 5, 5)
    assert (newest.previous_score, newest.new_score, newest.new_total_score) == (5, 7, 7)
    assert oldest.reason == 'Good question'
    assert oldest.changed_by == trainer.account_id


def test_out_of_range_change_is_rejected_without_side_effects(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    ledger.apply_delta(ada.id, 'participation', 5, trainer.account_id)

    with pytest.raises(OutOfRange) as exc:
        ledger.apply_delta(ada.id, 'participation', 8, trainer.account_id)
    assert exc.value.attempted == 13
    assert (exc.value.minimum, exc.value.maximum) == (-10, 10)

    refreshed = identity.get_participant(ada.id)
    assert refreshed.total_score == 5
    assert Activity.query.filter_by(participant_id=ada.id).count() == 1


def test_scale_bounds_are_inclusive(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    assert ledger.apply_delta(ada.id, 'excellence', 10, trainer.account_id).new_category_score == 10
    assert ledger.apply_delta(ada.id, 'absence', -10, trainer.account_id).new_category_score == -10
    with pytest.raises(OutOfRange):
        ledger.apply_delta(ada.id, 'absence', -1, trainer.account_id)


def test_unknown_category_and_bad_delta(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    with pytest.raises(UnknownCategory):
        ledger.apply_delta(ada.id, 'karaoke', 1, trainer.account_id)
    for delta in (0, 1.5, True, '3'):
        with pytest.raises(ValidationError):
            ledger.apply_delta(ada.id, 'participation', delta, trainer.account_id)
    assert identity.get_participant(ada.id).total_score == 0


def test_removed_participant_cannot_be_scored(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    identity.remove_participant(ada.id)
    with pytest.raises(ParticipantNotFound):
        ledger.apply_delta(ada.id, 'participation', 5, trainer.account_id)


def test_award_category_uses_catalog_points(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    change = ledger.award_category(ada.id, 'helpfulness', trainer.account_id)
    assert change.delta == 4
    change = ledger.award_category(ada.id, 'disruption', trainer.account_id)
    assert change.delta == -5
    assert change.new_total_score == -1


def test_repeated_operation_id_applies_once(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    first = ledger.apply_delta(ada.id, 'participation', 5, trainer.account_id, operation_id='op-1')
    retry = ledger.apply_delta(ada.id, 'participation', 5, trainer.account_id, operation_id='op-1')

    assert not first.replayed
    assert retry.replayed
    assert retry.activity_id == first.activity_id
    assert identity.get_participant(ada.id).total_score == 5
    assert Activity.query.filter_by(participant_id=ada.id).count() == 1


def test_activities_cannot_be_edited(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    change = ledger.apply_delta(ada.id, 'participation', 5, trainer.account_id)
    activity = db.session.get(Activity, change.activity_id)
    activity.reason = 'rewritten'
    with pytest.raises(ValueError):
        db.session.commit()
    db.session.rollback()


def test_recent_activities_are_newest_first_and_capped(flask_app, training_session, add_guest, trainer):
    flask_app.config['ACTIVITY_FEED_LIMIT'] = 3
    ada = add_guest(training_session, 'Ada')
    for _ in range(5):
        ledger.apply_delta(ada.id, 'participation', 1, trainer.account_id)

    latest = ledger.recent_activities(training_session.id)
    assert [a.new_score for a in latest] == [5, 4, 3]


@pytest.fixture()
def file_app(tmp_path):
    # Two real connections are needed to simulate a second writer
    config = type('FileDbConfig', (TestConfig,), {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.db'}",
    })
    application = create_app(config)
    with application.app_context():
        import trainboard.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _trainer():
    user = User(username='trainer1', display_name='Trainer1')
    user.set_password('password')
    db.session.add(user)
    db.session.commit()
    return user


def _interfere_with(monkeypatch, times):
    """Make the next ``times`` participant reads race with an outside write.

    The outside write scores participation +5 on its own connection and bumps
    the row version, so the ledger's pending update is based on a stale read.
    """
    real_get = ledger.get_participant
    calls = {'count': 0}

    def racing_get(participant_id, *args, **kwargs):
        participant = real_get(participant_id, *args, **kwargs)
        if calls['count'] < times:
            calls['count'] += 1
            with db.engine.begin() as conn:
                conn.execute(
                    text(
                        "UPDATE session_participant "
                        "SET scores = :scores, total_score = :total, version = version + 1 "
                        "WHERE id = :id"
                    ),
                    {'scores': '{"participation": 5}', 'total': 5, 'id': participant_id},
                )
        return participant

    monkeypatch.setattr(ledger, 'get_participant', racing_get)
    return calls


def test_concurrent_write_is_retried_on_fresh_data(file_app, monkeypatch):
    trainer = _trainer()
    session = create_session({'name': 'Race', 'scoring_scale': {'min': -20, 'max': 20}}, trainer)
    ada = identity.create_guest(session, {'name': 'Ada'})
    calls = _interfere_with(monkeypatch, times=1)

    change = ledger.apply_delta(ada.id, 'excellence', 10, trainer.account_id)

    assert calls['count'] == 1
    assert change.new_total_score == 15
    refreshed = identity.get_participant(ada.id)
    assert refreshed.scores == {'participation': 5, 'excellence': 10}
    assert refreshed.total_score == 15


def test_gives_up_after_configured_retries(file_app, monkeypatch):
    file_app.config['LEDGER_MAX_RETRIES'] = 2
    trainer = _trainer()
    session = create_session({'name': 'Race'}, trainer)
    ada = identity.create_guest(session, {'name': 'Ada'})
    _interfere_with(monkeypatch, times=10)

    with pytest.raises(ConcurrentUpdateError):
        ledger.apply_delta(ada.id, 'excellence', 10, trainer.account_id)
    assert Activity.query.filter_by(participant_id=ada.id).count() == 0


def test_operation_id_cannot_be_reused_for_another_change(training_session, add_guest, trainer):
    ada = add_guest(training_session, 'Ada')
    bob = add_guest(training_session, 'Bob')
    ledger.apply_delta(ada.id, 'participation', 5, trainer.account_id, operation_id='op-1')

    with pytest.raises(ValidationError):
        ledger.apply_delta(bob.id, 'excellence', 3, trainer.account_id, operation_id='op-1')
    with pytest.raises(ValidationError):
        ledger.apply_delta(ada.id, 'participation', 4, trainer.account_id, operation_id='op-1')

    assert identity.get_participant(bob.id).total_score == 0
    assert identity.get_participant(ada.id).total_score == 5


def test_committed_change_is_published_even_if_participant_leaves_right_after(
    training_session, add_guest, trainer, monkeypatch
):
    ada = add_guest(training_session, 'Ada')
    real_get = ledger.get_participant
    calls = {'count': 0}

    def vanishing_get(participant_id, *args, **kwargs):
        calls['count'] += 1
        if calls['count'] > 1:
            raise ParticipantNotFound()
        return real_get(participant_id, *args, **kwargs)

    monkeypatch.setattr(ledger, 'get_participant', vanishing_get)
    received = []
    feed.subscribe(training_session.id, received.append, channel=ACTIVITIES)

    change = ledger.apply_delta(ada.id, 'participation', 5, trainer.account_id)

    assert change.session_id == training_session.id
    assert received[-1][0]['id'] == change.activity_id
