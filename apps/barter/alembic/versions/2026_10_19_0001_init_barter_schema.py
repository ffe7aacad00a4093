"""init barter schema

Revision ID: 2026_10_19_0001
Revises: 
Create Date: 2026-10-19 00:01:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '2026_10_19_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # users
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index(op.f('ix_users_phone'), 'users', ['phone'], unique=True)

    # listings
    op.create_table(
        'listings',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('seller_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(length=128), nullable=False),
        sa.Column('description', sa.String(length=2048), nullable=True),
        sa.Column('price_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency_code', sa.String(length=3), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('allow_barter', sa.Boolean(), nullable=False),
        sa.Column('allow_cash_plus_barter', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('price_cents >= 0', name='ck_listing_price_nonneg'),
        sa.CheckConstraint('quantity >= 1', name='ck_listing_quantity_pos'),
    )
    op.create_index('ix_listings_seller', 'listings', ['seller_user_id'], unique=False)

    # offers
    op.create_table(
        'offers',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('listing_id', sa.Uuid(as_uuid=True), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('buyer_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('seller_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('currency_code', sa.String(length=3), nullable=False),
        sa.Column('offered_cash_cents', sa.BigInteger(), nullable=False),
        sa.Column('message', sa.String(length=2000), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('last_proposer_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('round', sa.Integer(), nullable=False),
        sa.Column('downpayment_status', sa.String(length=24), nullable=False),
        sa.Column('downpayment_cents', sa.BigInteger(), nullable=False),
        sa.Column('downpayment_paid_at', sa.DateTime(), nullable=True),
        sa.Column('downpayment_confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('timer_expires_at', sa.DateTime(), nullable=True),
        sa.Column('timer_extensions', sa.Integer(), nullable=False),
        sa.Column('timer_warned', sa.Boolean(), nullable=False),
        sa.Column('buyer_confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('seller_confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('pickup_pin', sa.String(length=12), nullable=True),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('dispute_status', sa.String(length=16), nullable=False),
        sa.Column('dispute_reason', sa.String(length=2000), nullable=True),
        sa.Column('disputed_by_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('disputed_at', sa.DateTime(), nullable=True),
        sa.Column('resolution', sa.String(length=16), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('receipt_number', sa.String(length=32), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('offered_cash_cents >= 0', name='ck_offer_cash_nonneg'),
        sa.UniqueConstraint('receipt_number'),
    )
    op.create_index('ix_offers_buyer', 'offers', ['buyer_user_id'], unique=False)
    op.create_index('ix_offers_seller', 'offers', ['seller_user_id'], unique=False)
    op.create_index('ix_offers_listing', 'offers', ['listing_id'], unique=False)
    op.create_index('ix_offers_status_timer', 'offers', ['status', 'timer_expires_at'], unique=False)

    # offer items
    op.create_table(
        'offer_items',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('offer_id', sa.Uuid(as_uuid=True), sa.ForeignKey('offers.id'), nullable=False),
        sa.Column('listing_id', sa.Uuid(as_uuid=True), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.CheckConstraint('quantity >= 1', name='ck_offer_item_quantity_pos'),
    )
    op.create_index('ix_offer_items_offer', 'offer_items', ['offer_id'], unique=False)

    # counter history
    op.create_table(
        'offer_revisions',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('offer_id', sa.Uuid(as_uuid=True), sa.ForeignKey('offers.id'), nullable=False),
        sa.Column('round', sa.Integer(), nullable=False),
        sa.Column('proposer_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('offered_cash_cents', sa.BigInteger(), nullable=False),
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('message', sa.String(length=2000), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('offer_id', 'round', name='uq_offer_revision_round'),
    )

    # seller brand settings
    op.create_table(
        'brand_settings',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('require_downpayment', sa.Boolean(), nullable=False),
        sa.Column('downpayment_type', sa.String(length=16), nullable=False),
        sa.Column('downpayment_value', sa.BigInteger(), nullable=False),
        sa.Column('default_timer_duration', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id'),
        sa.CheckConstraint('default_timer_duration >= 10 AND default_timer_duration <= 1440', name='ck_brand_timer_range'),
    )

    # notifications
    op.create_table(
        'notifications',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(length=128), nullable=False),
        sa.Column('message', sa.String(length=512), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_notifications_user_created', 'notifications', ['user_id', 'created_at'], unique=False)

    # audit
    op.create_table(
        'audit_events',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('audit_events')
    op.drop_index('ix_notifications_user_created', table_name='notifications')
    op.drop_table('notifications')
    op.drop_table('brand_settings')
    op.drop_table('offer_revisions')
    op.drop_index('ix_offer_items_offer', table_name='offer_items')
    op.drop_table('offer_items')
    op.drop_index('ix_offers_status_timer', table_name='offers')
    op.drop_index('ix_offers_listing', table_name='offers')
    op.drop_index('ix_offers_seller', table_name='offers')
    op.drop_index('ix_offers_buyer', table_name='offers')
    op.drop_table('offers')
    op.drop_index('ix_listings_seller', table_name='listings')
    op.drop_table('listings')
    op.drop_index(op.f('ix_users_phone'), table_name='users')
    op.drop_table('users')
