"""add game items and character inventories

Revision ID: 8d41b06e5c13
Revises: 3c7e9a1f2b40
Create Date: 2026-10-18 09:05:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8d41b06e5c13'
down_revision = '3c7e9a1f2b40'
branch_labels = None
depends_on = None


def _fk(name, target, nullable=False, **kwargs):
    return sa.Column(name, sa.String(length=36), sa.ForeignKey(target), nullable=nullable, **kwargs)


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'game_item' in existing_tables:
        return

    with op.batch_alter_table('game_character_instance') as batch_op:
        batch_op.add_column(
            sa.Column('inventory_capacity', sa.Integer(), nullable=False, server_default='10')
        )

    op.create_table(
        'game_item',
        sa.Column('id', sa.String(length=36), primary_key=True),
        _fk('game_id', 'game.id', index=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('can_be_equipped', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('equipment_slot', sa.String(length=32), nullable=True),
        _fk('starting_location_id', 'game_location.id', nullable=True),
    )

    op.create_table(
        'game_item_instance',
        sa.Column('id', sa.String(length=36), primary_key=True),
        _fk('game_instance_id', 'game_instance.id', index=True),
        _fk('game_item_id', 'game_item.id'),
        _fk('character_instance_id', 'game_character_instance.id', nullable=True, index=True),
        _fk('location_id', 'game_location.id', nullable=True, index=True),
        sa.Column('is_equipped', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('equipment_slot', sa.String(length=32), nullable=True),
    )


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa.inspect(bind).get_table_names())

    for table in ('game_item_instance', 'game_item'):
        if table in existing_tables:
            op.drop_table(table)
    if 'game_character_instance' in existing_tables:
        with op.batch_alter_table('game_character_instance') as batch_op:
            batch_op.drop_column('inventory_capacity')
