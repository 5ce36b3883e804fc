"""001 Booking ingestion schema

Revision ID: 001_booking_ingestion
Revises:
Create Date: 2026-10-17

- Catalog (channels, products) and product aliases
- Raw message store (booking_emails)
- Bookings with their event timeline and addon line items
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_booking_ingestion'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'channels',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False, unique=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False, unique=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'product_aliases',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('product_id', sa.Integer(),
                  sa.ForeignKey('products.id', ondelete='SET NULL'), nullable=True),
        sa.Column('label', sa.String(255), nullable=False),
        sa.Column('normalized_label', sa.String(255), nullable=False, unique=True),
        sa.Column('match_type', sa.String(20), nullable=False, server_default='contains'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('hit_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_seen_at', sa.DateTime(), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('source', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_product_alias_order', 'product_aliases', ['active', 'priority', 'id'])

    op.create_table(
        'booking_emails',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('message_id', sa.String(255), nullable=False, unique=True),
        sa.Column('thread_id', sa.String(255), nullable=True),
        sa.Column('history_id', sa.String(255), nullable=True),
        sa.Column('from_address', sa.String(500), nullable=True),
        sa.Column('to_addresses', sa.Text(), nullable=True),
        sa.Column('cc_addresses', sa.Text(), nullable=True),
        sa.Column('subject', sa.String(1000), nullable=True),
        sa.Column('snippet', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('internal_date', sa.DateTime(), nullable=True),
        sa.Column('label_ids', sa.JSON(), nullable=True),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('payload_size_bytes', sa.Integer(), nullable=True),
        sa.Column('text_body', sa.Text(), nullable=True),
        sa.Column('html_body', sa.Text(), nullable=True),
        sa.Column('ingestion_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('last_processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_booking_email_status', 'booking_emails', ['ingestion_status', 'updated_at'])
    op.create_index('ix_booking_email_received', 'booking_emails', ['received_at'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('platform', sa.String(50), nullable=False),
        sa.Column('platform_booking_id', sa.String(255), nullable=False),
        sa.Column('platform_order_id', sa.String(255), nullable=True),
        sa.Column('channel_id', sa.Integer(),
                  sa.ForeignKey('channels.id', ondelete='SET NULL'), nullable=True),
        sa.Column('product_id', sa.Integer(),
                  sa.ForeignKey('products.id', ondelete='SET NULL'), nullable=True),
        sa.Column('product_name', sa.String(255), nullable=True),
        sa.Column('product_variant', sa.String(255), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(30), nullable=False, server_default='unknown'),
        sa.Column('guest_first_name', sa.String(255), nullable=True),
        sa.Column('guest_last_name', sa.String(255), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('guest_phone', sa.String(64), nullable=True),
        sa.Column('hotel_name', sa.String(255), nullable=True),
        sa.Column('pickup_location', sa.String(500), nullable=True),
        sa.Column('party_size_total', sa.Integer(), nullable=True),
        sa.Column('party_size_adults', sa.Integer(), nullable=True),
        sa.Column('party_size_children', sa.Integer(), nullable=True),
        sa.Column('experience_date', sa.Date(), nullable=True),
        sa.Column('experience_start_at', sa.DateTime(), nullable=True),
        sa.Column('experience_end_at', sa.DateTime(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('base_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('addons_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('price_gross', sa.Numeric(12, 2), nullable=True),
        sa.Column('price_net', sa.Numeric(12, 2), nullable=True),
        sa.Column('commission_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('commission_rate', sa.Numeric(5, 2), nullable=True),
        sa.Column('payment_method', sa.String(255), nullable=True),
        sa.Column('addons_snapshot', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('raw_payload_location', sa.String(1000), nullable=True),
        sa.Column('utm_source', sa.String(255), nullable=True),
        sa.Column('utm_medium', sa.String(255), nullable=True),
        sa.Column('utm_campaign', sa.String(255), nullable=True),
        sa.Column('status_changed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('last_email_message_id', sa.String(255), nullable=True),
        sa.Column('source_received_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('platform', 'platform_booking_id', name='uq_booking_platform_booking_id'),
    )
    op.create_index('ix_booking_platform_status', 'bookings', ['platform', 'status'])
    op.create_index('ix_booking_experience_date', 'bookings', ['platform', 'experience_date'])

    op.create_table(
        'booking_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email_id', sa.String(36),
                  sa.ForeignKey('booking_emails.id', ondelete='SET NULL'), nullable=True),
        sa.Column('email_message_id', sa.String(255), nullable=True),
        sa.Column('event_type', sa.String(20), nullable=False),
        sa.Column('platform', sa.String(50), nullable=False),
        sa.Column('status_after', sa.String(30), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=True),
        sa.Column('ingested_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('field_patch', sa.JSON(), nullable=True),
        sa.Column('applied_fields', sa.JSON(), nullable=True),
        sa.Column('event_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_booking_event_booking', 'booking_events', ['booking_id', 'occurred_at'])
    op.create_index('ix_booking_event_message', 'booking_events', ['email_message_id'])

    op.create_table(
        'booking_addons',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source_event_id', sa.String(36),
                  sa.ForeignKey('booking_events.id', ondelete='CASCADE'), nullable=True),
        sa.Column('platform_addon_id', sa.String(255), nullable=True),
        sa.Column('platform_addon_name', sa.String(255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('is_included', sa.Boolean(), server_default=sa.false()),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_booking_addon_booking', 'booking_addons', ['booking_id', 'source_event_id'])


def downgrade():
    op.drop_index('ix_booking_addon_booking', table_name='booking_addons')
    op.drop_table('booking_addons')
    op.drop_index('ix_booking_event_message', table_name='booking_events')
    op.drop_index('ix_booking_event_booking', table_name='booking_events')
    op.drop_table('booking_events')
    op.drop_index('ix_booking_experience_date', table_name='bookings')
    op.drop_index('ix_booking_platform_status', table_name='bookings')
    op.drop_table('bookings')
    op.drop_index('ix_booking_email_received', table_name='booking_emails')
    op.drop_index('ix_booking_email_status', table_name='booking_emails')
    op.drop_table('booking_emails')
    op.drop_index('ix_product_alias_order', table_name='product_aliases')
    op.drop_table('product_aliases')
    op.drop_table('products')
    op.drop_table('channels')
