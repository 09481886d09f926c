"""initial schema setup

Revision ID: 0001
Revises: 
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('username', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('password', sa.String(length=255), nullable=False),
        sa.Column('totp_secret', sa.String(length=64), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('limit', sa.BigInteger(), nullable=True),
        sa.Column('default_order', sa.String(length=16), nullable=False, server_default='uploaded_at'),
        sa.Column('default_asc', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('created_by', sa.String(length=36), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('last_access', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username', name='uq_users_username'),
    )
    op.create_table(
        'teams',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('limit', sa.BigInteger(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('created_by', sa.String(length=36), sa.ForeignKey('users.id'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug', name='uq_teams_slug'),
    )
    op.create_table(
        'team_members',
        sa.Column('team', sa.String(length=36), sa.ForeignKey('teams.id'), nullable=False),
        sa.Column('user', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('can_edit', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('can_delete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('can_config', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('team', 'user'),
        sa.UniqueConstraint('team', 'user', name='uq_team_members_team_user'),
    )
    op.create_table(
        'api_keys',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('owner', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('created_by', sa.String(length=36), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('last_used', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_api_keys_code'),
    )
    op.create_table(
        'login_attempts',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('username', sa.String(length=100), nullable=False),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('attempted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_login_attempts_username', 'login_attempts', ['username'])
    op.create_table(
        'uploads',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('slug', sa.String(length=32), nullable=False),
        sa.Column('filename', sa.String(length=255), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('public', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('downloads', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('limit', sa.Integer(), nullable=True),
        sa.Column('remaining', sa.Integer(), nullable=True),
        sa.Column('expiry_date', sa.Date(), nullable=True),
        sa.Column('password', sa.String(length=255), nullable=True),
        sa.Column('custom_slug', sa.String(length=100), nullable=True),
        sa.Column('owner_user', sa.String(length=36), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('owner_team', sa.String(length=36), sa.ForeignKey('teams.id'), nullable=True),
        sa.Column('uploaded_by', sa.String(length=36), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('remote_addr', sa.String(length=64), nullable=True),
        sa.Column('mime_type', sa.String(length=255), nullable=True),
        sa.Column('has_preview', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('preview_error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug', name='uq_uploads_slug'),
        sa.UniqueConstraint('owner_user', 'custom_slug', name='uq_uploads_user_custom_slug'),
        sa.UniqueConstraint('owner_team', 'custom_slug', name='uq_uploads_team_custom_slug'),
        sa.CheckConstraint('(owner_user IS NULL) <> (owner_team IS NULL)', name='ck_uploads_single_owner'),
        sa.CheckConstraint('NOT has_preview OR preview_error IS NULL', name='ck_uploads_preview_state'),
    )
    op.create_index('ix_uploads_owner_user', 'uploads', ['owner_user'])
    op.create_index('ix_uploads_owner_team', 'uploads', ['owner_team'])
    op.create_table(
        'tags',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('user', sa.String(length=36), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('team', sa.String(length=36), sa.ForeignKey('teams.id'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user', 'name', name='uq_tags_user_name'),
        sa.UniqueConstraint('team', 'name', name='uq_tags_team_name'),
        sa.CheckConstraint('("user" IS NULL) <> (team IS NULL)', name='ck_tags_single_owner'),
    )
    op.create_table(
        'upload_tags',
        sa.Column('upload', sa.String(length=36), sa.ForeignKey('uploads.id'), nullable=False),
        sa.Column('tag', sa.String(length=36), sa.ForeignKey('tags.id'), nullable=False),
        sa.PrimaryKeyConstraint('upload', 'tag'),
    )


def downgrade() -> None:
    op.drop_table('upload_tags')
    op.drop_table('tags')
    op.drop_index('ix_uploads_owner_team', table_name='uploads')
    op.drop_index('ix_uploads_owner_user', table_name='uploads')
    op.drop_table('uploads')
    op.drop_index('ix_login_attempts_username', table_name='login_attempts')
    op.drop_table('login_attempts')
    op.drop_table('api_keys')
    op.drop_table('team_members')
    op.drop_table('teams')
    op.drop_table('users')
