"""initial consent schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 09:12:44.210331

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

consent_status = postgresql.ENUM('SUBSCRIBED', 'UNSUBSCRIBED', 'NOT_SUBSCRIBED', name='consentstatus', create_type=False)
presentation_mode = postgresql.ENUM('OPT_IN', 'OPT_OUT', 'NO_CHECKBOX', name='presentationmode', create_type=False)


def upgrade() -> None:
    # Shared by four columns, so created once up front
    consent_status.create(op.get_bind(), checkfirst=True)
    presentation_mode.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'shop_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('opt_in_text', sa.Text(), nullable=True),
        sa.Column('opt_out_text', sa.Text(), nullable=True),
        sa.Column('no_checkbox_text', sa.Text(), nullable=True),
        sa.Column('marketing_info', sa.Text(), nullable=True),
        sa.Column('privacy_url', sa.Text(), nullable=True),
        sa.Column('platform_access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('provider_api_key_encrypted', sa.Text(), nullable=True),
        sa.Column('single_opt_list_id', sa.String(length=64), nullable=True),
        sa.Column('double_opt_list_id', sa.String(length=64), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop'),
    )
    op.create_index(op.f('ix_shop_settings_id'), 'shop_settings', ['id'], unique=False)

    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('platform_customer_id', sa.String(length=64), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('first_name', sa.String(length=255), nullable=True),
        sa.Column('last_name', sa.String(length=255), nullable=True),
        sa.Column('status', consent_status, nullable=True),
        sa.Column('last_consent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_consent_source', sa.String(length=50), nullable=True),
        sa.Column('last_mode', sa.String(length=20), nullable=True),
        sa.Column('last_region', sa.String(length=8), nullable=True),
        sa.Column('fence_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('fence_state', consent_status, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop', 'platform_customer_id', name='uq_customers_shop_platform_id'),
        sa.UniqueConstraint('shop', 'email', name='uq_customers_shop_email'),
    )
    op.create_index(op.f('ix_customers_id'), 'customers', ['id'], unique=False)
    op.create_index(op.f('ix_customers_shop'), 'customers', ['shop'], unique=False)

    op.create_table(
        'checkout_sessions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('checkout_token', sa.String(length=255), nullable=True),
        sa.Column('mode', presentation_mode, nullable=False),
        sa.Column('region', sa.String(length=8), nullable=True),
        sa.Column('ip_region', sa.String(length=8), nullable=True),
        sa.Column('billing_region', sa.String(length=8), nullable=True),
        sa.Column('display_text', sa.Text(), nullable=True),
        sa.Column('privacy_url', sa.Text(), nullable=True),
        sa.Column('marketing_preferences', sa.Text(), nullable=True),
        sa.Column('intended_status', consent_status, nullable=True),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('resolved_subscribed', sa.Boolean(), nullable=True),
        sa.Column('consent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('checkout_token'),
        sa.UniqueConstraint('order_id'),
    )
    op.create_index(op.f('ix_checkout_sessions_customer_id'), 'checkout_sessions', ['customer_id'], unique=False)

    op.create_table(
        'consent_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.Column('status', consent_status, nullable=True),
        sa.Column('region', sa.String(length=8), nullable=True),
        sa.Column('note', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('session_id', sa.String(length=36), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['session_id'], ['checkout_sessions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_consent_events_id'), 'consent_events', ['id'], unique=False)
    op.create_index(op.f('ix_consent_events_type'), 'consent_events', ['type'], unique=False)
    op.create_index('ix_consent_events_customer_created', 'consent_events', ['customer_id', 'created_at'], unique=False)
    op.create_index('ix_consent_events_session_created', 'consent_events', ['session_id', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_consent_events_session_created', table_name='consent_events')
    op.drop_index('ix_consent_events_customer_created', table_name='consent_events')
    op.drop_index(op.f('ix_consent_events_type'), table_name='consent_events')
    op.drop_index(op.f('ix_consent_events_id'), table_name='consent_events')
    op.drop_table('consent_events')
    op.drop_index(op.f('ix_checkout_sessions_customer_id'), table_name='checkout_sessions')
    op.drop_table('checkout_sessions')
    op.drop_index(op.f('ix_customers_shop'), table_name='customers')
    op.drop_index(op.f('ix_customers_id'), table_name='customers')
    op.drop_table('customers')
    op.drop_index(op.f('ix_shop_settings_id'), table_name='shop_settings')
    op.drop_table('shop_settings')
    presentation_mode.drop(op.get_bind(), checkfirst=True)
    consent_status.drop(op.get_bind(), checkfirst=True)
