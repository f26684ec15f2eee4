"""session scoring schema: user, training_session, session_participant, activity

Revision ID: 4b7e1c9d2a10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4b7e1c9d2a10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'user' not in existing_tables:
        op.create_table(
            'user',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('username', sa.String(length=64), nullable=False),
            sa.Column('password_hash', sa.String(length=256), nullable=False),
            sa.Column('display_name', sa.String(length=120), nullable=True),
            sa.Column('email', sa.String(length=255), nullable=True),
        )
        op.create_index('ix_user_username', 'user', ['username'], unique=True)

    op.create_table(
        'training_session',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('join_code', sa.String(length=12), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('registration_open', sa.Boolean(), nullable=False),
        sa.Column('scoring_categories', sa.JSON(), nullable=False),
        sa.Column('scoring_scale', sa.JSON(), nullable=False),
        sa.Column('teams', sa.JSON(), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_training_session_join_code', 'training_session', ['join_code'])

    op.create_table(
        'session_participant',
        sa.Column('id', sa.String(length=160), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('training_session.id'), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=64), nullable=True),
        sa.Column('department', sa.String(length=120), nullable=True),
        sa.Column('team', sa.String(length=64), nullable=True),
        sa.Column('scores', sa.JSON(), nullable=False),
        sa.Column('total_score', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_guest', sa.Boolean(), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_active', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.UniqueConstraint('session_id', 'user_id', name='uq_session_participant_user'),
    )
    op.create_index('ix_session_participant_session_id', 'session_participant', ['session_id'])
    op.create_index('ix_session_participant_email', 'session_participant', ['email'])
    op.create_index('ix_session_participant_team', 'session_participant', ['team'])
    op.create_index('ix_session_participant_total_score', 'session_participant', ['total_score'])
    op.create_index(
        'uq_session_participant_active_email',
        'session_participant',
        ['session_id', sa.text('lower(email)')],
        unique=True,
        postgresql_where=sa.text('is_active'),
        sqlite_where=sa.text('is_active = 1'),
    )

    op.create_table(
        'activity',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('training_session.id'), nullable=False),
        sa.Column('participant_id', sa.String(length=160), sa.ForeignKey('session_participant.id'), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False),
        sa.Column('previous_score', sa.Integer(), nullable=False),
        sa.Column('new_score', sa.Integer(), nullable=False),
        sa.Column('new_total_score', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('changed_by', sa.String(length=64), nullable=False),
        sa.Column('operation_id', sa.String(length=64), nullable=True, unique=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_activity_session_id', 'activity', ['session_id'])
    op.create_index('ix_activity_participant_id', 'activity', ['participant_id'])
    op.create_index('ix_activity_timestamp', 'activity', ['timestamp'])


def downgrade():
    op.drop_index('ix_activity_timestamp', table_name='activity')
    op.drop_index('ix_activity_participant_id', table_name='activity')
    op.drop_index('ix_activity_session_id', table_name='activity')
    op.drop_table('activity')

    op.drop_index('uq_session_participant_active_email', table_name='session_participant')
    op.drop_index('ix_session_participant_total_score', table_name='session_participant')
    op.drop_index('ix_session_participant_team', table_name='session_participant')
    op.drop_index('ix_session_participant_email', table_name='session_participant')
    op.drop_index('ix_session_participant_session_id', table_name='session_participant')
    op.drop_table('session_participant')

    op.drop_index('ix_training_session_join_code', table_name='training_session')
    op.drop_table('training_session')

    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
