"""create accounts, games, instances, turn sheets and jobs

Revision ID: 3c7e9a1f2b40
Revises:
Create Date: 2026-09-14 10:20:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c7e9a1f2b40'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column('id', sa.String(length=36), primary_key=True)


def _fk(name, target, nullable=False, **kwargs):
    return sa.Column(name, sa.String(length=36), sa.ForeignKey(target), nullable=nullable, **kwargs)


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    # Fresh installs only; a database that already has the turn sheet table is left alone
    if 'game_turn_sheet' in existing_tables:
        return

    op.create_table(
        'account',
        _id(),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('postal_address_line1', sa.String(length=255), nullable=True),
        sa.Column('postal_address_line2', sa.String(length=255), nullable=True),
        sa.Column('state_province', sa.String(length=128), nullable=True),
        sa.Column('country', sa.String(length=128), nullable=True),
        sa.Column('postal_code', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_account_email', 'account', ['email'], unique=True)

    op.create_table(
        'account_user',
        _id(),
        _fk('account_id', 'account.id', index=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=256), nullable=True),
    )
    op.create_index('ix_account_user_email', 'account_user', ['email'], unique=True)

    op.create_table(
        'game',
        _id(),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('game_type', sa.String(length=32), nullable=False, server_default='adventure'),
        sa.Column('turn_duration_hours', sa.Integer(), nullable=False, server_default='168'),
        sa.Column('max_turns', sa.Integer(), nullable=True),
        sa.Column('starting_location_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'game_location',
        _id(),
        _fk('game_id', 'game.id', index=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
    )
    # game <-> game_location is circular; SQLite cannot ALTER in a constraint
    if bind.dialect.name != 'sqlite':
        op.create_foreign_key(
            'fk_game_starting_location_id', 'game', 'game_location',
            ['starting_location_id'], ['id'],
        )

    op.create_table(
        'game_location_link',
        _id(),
        _fk('game_id', 'game.id', index=True),
        _fk('from_location_id', 'game_location.id', index=True),
        _fk('to_location_id', 'game_location.id'),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('link_order', sa.Integer(), nullable=False, server_default='0'),
    )

    op.create_table(
        'game_image',
        _id(),
        _fk('game_id', 'game.id', index=True),
        sa.Column('record_id', sa.String(length=36), nullable=True),
        sa.Column('sheet_type', sa.String(length=64), nullable=True),
        sa.Column('object_key', sa.String(length=255), nullable=False),
        sa.Column('mime_type', sa.String(length=64), nullable=False, server_default='image/png'),
    )

    op.create_table(
        'game_subscription',
        _id(),
        _fk('game_id', 'game.id', index=True),
        _fk('account_id', 'account.id', index=True),
        sa.Column('subscription_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending_approval'),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('renewal_period_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'game_instance',
        _id(),
        _fk('game_id', 'game.id', index=True),
        _fk('game_subscription_id', 'game_subscription.id', nullable=True, index=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='created', index=True),
        sa.Column('current_turn', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('player_capacity', sa.Integer(), nullable=False, server_default='4'),
        sa.Column('last_processed_at', sa.DateTime(), nullable=True),
        sa.Column('next_deadline', sa.DateTime(), nullable=True, index=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'game_subscription_instance',
        _id(),
        _fk('game_subscription_id', 'game_subscription.id', index=True),
        _fk('game_instance_id', 'game_instance.id', index=True),
        _fk('account_id', 'account.id', index=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending_approval'),
        sa.Column('character_name', sa.String(length=128), nullable=True),
        sa.Column('join_sheet_id', sa.String(length=36), nullable=True),
        sa.Column('token_hash', sa.String(length=128), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('game_subscription_id', 'game_instance_id', name='uq_subscription_instance'),
    )

    op.create_table(
        'game_character_instance',
        _id(),
        _fk('game_instance_id', 'game_instance.id', index=True),
        _fk('game_subscription_instance_id', 'game_subscription_instance.id', unique=True),
        _fk('account_id', 'account.id', index=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        _fk('location_id', 'game_location.id', nullable=True),
    )

    op.create_table(
        'game_turn_sheet',
        _id(),
        _fk('game_id', 'game.id', index=True),
        _fk('game_instance_id', 'game_instance.id', index=True),
        _fk('account_id', 'account.id', index=True),
        sa.Column('turn_number', sa.Integer(), nullable=False),
        sa.Column('sheet_type', sa.String(length=64), nullable=False),
        sa.Column('sheet_order', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('sheet_data', sa.Text(), nullable=False),
        sa.Column('scanned_data', sa.Text(), nullable=True),
        sa.Column('processing_status', sa.String(length=32), nullable=False, server_default='pending', index=True),
        sa.Column('is_completed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('scanned_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            'game_instance_id', 'account_id', 'turn_number', 'sheet_type', 'sheet_order',
            name='uq_game_turn_sheet_key',
        ),
    )

    op.create_table(
        'job',
        _id(),
        sa.Column('kind', sa.String(length=64), nullable=False),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='available', index=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('kind', 'key', name='uq_job_kind_key'),
    )


def downgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if bind.dialect.name != 'sqlite' and 'game' in existing_tables:
        op.drop_constraint('fk_game_starting_location_id', 'game', type_='foreignkey')

    for table in (
        'job',
        'game_turn_sheet',
        'game_character_instance',
        'game_subscription_instance',
        'game_instance',
        'game_subscription',
        'game_image',
        'game_location_link',
        'game_location',
        'game',
        'account_user',
        'account',
    ):
        if table in existing_tables:
            op.drop_table(table)
