import importlib.util
import os

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.exc import IntegrityError

from conftest import BACKEND_ROOT

REVISION = os.path.join(BACKEND_ROOT, 'migrations', 'versions', '4b7e1c9d2a10_session_scoring_schema.py')


def _load_revision():
    found = importlib.util.spec_from_file_location('session_scoring_schema', REVISION)
    module = importlib.util.module_from_spec(found)
    found.loader.exec_module(module)
    return module


def _run(engine, step):
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            step()


def test_upgrade_then_downgrade_leaves_nothing_behind():
    revision = _load_revision()
    engine = sa.create_engine('sqlite://')

    _run(engine, revision.upgrade)
    insp = sa.inspect(engine)
    assert set(insp.get_table_names()) >= {'user', 'training_session', 'session_participant', 'activity'}
    indexes = {ix['name']: ix for ix in insp.get_indexes('session_participant')}
    assert indexes['uq_session_participant_active_email']['unique']

    with engine.begin() as conn:
        conn.execute(sa.text(
            "INSERT INTO training_session (id, name, description, join_code, status, registration_open,"
            " scoring_categories, scoring_scale, teams, created_at)"
            " VALUES (1, 'S', '', 'ABCD1234', 'active', 1, '{}', '{}', '[]', '2026-01-01')"
        ))
    row = (
        "INSERT INTO session_participant (id, session_id, user_id, name, email, scores, total_score,"
        " is_active, is_guest, role, joined_at, last_active, version)"
        " VALUES (:id, 1, :id, 'N', :email, '{}', 0, :active, 1, 'participant', '2026-01-01', '2026-01-01', 1)"
    )
    with engine.begin() as conn:
        conn.execute(sa.text(row), {'id': 'a', 'email': 'ada@example.com', 'active': 0})
        conn.execute(sa.text(row), {'id': 'b', 'email': 'ada@example.com', 'active': 1})
    with pytest.raises(IntegrityError):
        with engine.begin() as conn:
            conn.execute(sa.text(row), {'id': 'c', 'email': 'ADA@example.com', 'active': 1})

    _run(engine, revision.downgrade)
    assert sa.inspect(engine).get_table_names() == []
