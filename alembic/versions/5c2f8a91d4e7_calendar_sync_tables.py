"""calendar sync tables and row level security

Revision ID: 5c2f8a91d4e7
Revises:
Create Date: 2026-10-19 09:12:44.301552

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '5c2f8a91d4e7'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


CURRENT_USER = "current_setting('app.current_user_id', true)"
CURRENT_ROLE = "current_setting('app.current_role', true)"
CURRENT_TEAM = "current_setting('app.current_team_id', true)"
IS_SYSTEM = f"{CURRENT_ROLE} = 'SYSTEM'"


def upgrade() -> None:
    """Upgrade schema."""

    # 1. Users (identity, role and team used by the policies)
    user_role = postgresql.ENUM('ATHLETE', 'COACH', name='user_role', create_type=False)
    user_role.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('role', user_role, nullable=False, server_default='ATHLETE'),
        sa.Column('team_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_team_id', 'users', ['team_id'])

    # 2. Calendar events
    op.create_table(
        'calendar_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source', sa.String(16), nullable=False),
        sa.Column('external_key', sa.String(1024), nullable=False),
        sa.Column('feed_uid', sa.String(1024), nullable=True),
        sa.Column('feed_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('title', sa.String(1024), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('location', sa.String(1024), nullable=True),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('source_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_cancelled', sa.Boolean, nullable=False, server_default=sa.text('false')),
        sa.Column('raw', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('owner_id', 'source', 'external_key', name='uq_calendar_events_owner_source_key'),
        sa.CheckConstraint("source IN ('provider', 'feed')", name='ck_calendar_events_source'),
    )
    op.create_index('idx_calendar_events_owner_start', 'calendar_events', ['owner_id', 'start_at'])

    # 3. Sync credentials
    op.create_table(
        'sync_credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(32), nullable=False, server_default='google'),
        sa.Column('access_token_encrypted', sa.LargeBinary, nullable=True),
        sa.Column('refresh_token_encrypted', sa.LargeBinary, nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resource_id', sa.String(255), nullable=False, server_default='primary'),
        sa.Column('sync_cursor', sa.Text, nullable=True),
        sa.Column('page_cursor', sa.Text, nullable=True),
        sa.Column('cursor_version', sa.Integer, nullable=False, server_default='0'),
        sa.Column('watch_channel_id', sa.String(255), nullable=True),
        sa.Column('watch_resource_id', sa.String(255), nullable=True),
        sa.Column('watch_channel_token', sa.String(255), nullable=True),
        sa.Column('watch_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('superseded_channel_id', sa.String(255), nullable=True),
        sa.Column('superseded_resource_id', sa.String(255), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_status', sa.String(32), nullable=True),
        sa.Column('last_sync_error', sa.Text, nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('user_id', 'provider', name='uq_sync_credentials_user_provider'),
    )
    op.create_index('ix_sync_credentials_watch_channel_id', 'sync_credentials', ['watch_channel_id'])

    # 4. Row level security. FORCE applies the policies to the table owner too.
    for table in ('users', 'calendar_events', 'sync_credentials'):
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")

    op.execute(f"""
        CREATE POLICY users_visibility ON users
        USING (
            id::text = {CURRENT_USER}
            OR {IS_SYSTEM}
            OR ({CURRENT_ROLE} = 'COACH' AND team_id::text = {CURRENT_TEAM})
        )
    """)

    op.execute(f"""
        CREATE POLICY calendar_events_owner ON calendar_events
        USING (owner_id::text = {CURRENT_USER} OR {IS_SYSTEM})
        WITH CHECK (owner_id::text = {CURRENT_USER} OR {IS_SYSTEM})
    """)

    # Coaches read (never write) their team athletes' events
    op.execute(f"""
        CREATE POLICY calendar_events_coach_read ON calendar_events
        FOR SELECT
        USING (
            {CURRENT_ROLE} = 'COACH'
            AND EXISTS (
                SELECT 1 FROM users u
                WHERE u.id = calendar_events.owner_id
                  AND u.role = 'ATHLETE'
                  AND u.team_id::text = {CURRENT_TEAM}
            )
        )
    """)

    op.execute(f"""
        CREATE POLICY sync_credentials_owner ON sync_credentials
        USING (user_id::text = {CURRENT_USER} OR {IS_SYSTEM})
        WITH CHECK (user_id::text = {CURRENT_USER} OR {IS_SYSTEM})
    """)


def downgrade() -> None:
    """Downgrade schema."""
    op.execute("DROP POLICY IF EXISTS sync_credentials_owner ON sync_credentials")
    op.execute("DROP POLICY IF EXISTS calendar_events_coach_read ON calendar_events")
    op.execute("DROP POLICY IF EXISTS calendar_events_owner ON calendar_events")
    op.execute("DROP POLICY IF EXISTS users_visibility ON users")

    op.drop_index('ix_sync_credentials_watch_channel_id', table_name='sync_credentials')
    op.drop_table('sync_credentials')
    op.drop_index('idx_calendar_events_owner_start', table_name='calendar_events')
    op.drop_table('calendar_events')
    op.drop_index('ix_users_team_id', table_name='users')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
    postgresql.ENUM(name='user_role').drop(op.get_bind(), checkfirst=True)
