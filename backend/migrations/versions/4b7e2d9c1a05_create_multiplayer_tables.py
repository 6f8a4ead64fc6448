"""create online_players, game_invitations, multiplayer_games, rooms

Revision ID: 4b7e2d9c1a05
Revises:
Create Date: 2025-09-14 10:20:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4b7e2d9c1a05'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'online_players' not in existing_tables:
        op.create_table(
            'online_players',
            sa.Column('username', sa.String(length=64), primary_key=True),
            sa.Column('last_seen', sa.DateTime(), nullable=False),
            sa.Column('is_available', sa.Boolean(), nullable=False, server_default=sa.true()),
        )
        op.create_index('ix_online_players_last_seen', 'online_players', ['last_seen'])

    if 'game_invitations' not in existing_tables:
        op.create_table(
            'game_invitations',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('from_username', sa.String(length=64), nullable=False),
            sa.Column('to_username', sa.String(length=64), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('expires_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_game_invitations_from_username', 'game_invitations', ['from_username'])
        op.create_index('ix_game_invitations_to_username', 'game_invitations', ['to_username'])

    if 'multiplayer_games' not in existing_tables:
        op.create_table(
            'multiplayer_games',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('player1', sa.String(length=64), nullable=False),
            sa.Column('player2', sa.String(length=64), nullable=False),
            sa.Column('current_round', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('player1_wins', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('player2_wins', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('game_state', sa.JSON(), nullable=True),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )

    if 'rooms' not in existing_tables:
        rooms = op.create_table(
            'rooms',
            sa.Column('name', sa.String(length=64), primary_key=True),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        )
        op.bulk_insert(rooms, [{'name': f'Room {i}', 'status': 'open'} for i in range(1, 6)])


def downgrade():
    op.drop_table('rooms')
    op.drop_table('multiplayer_games')
    op.drop_index('ix_game_invitations_to_username', table_name='game_invitations')
    op.drop_index('ix_game_invitations_from_username', table_name='game_invitations')
    op.drop_table('game_invitations')
    op.drop_index('ix_online_players_last_seen', table_name='online_players')
    op.drop_table('online_players')
