"""create_booking_tables

Revision ID: 7c1e4a9b2d30
Revises:
Create Date: 2026-10-19 09:12:44.318207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '7c1e4a9b2d30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum labels are the Python member names, matching SQLEnum's default storage
booking_status = sa.Enum(
    'PENDING', 'PENDING_NEGOTIATION', 'COUNTER_OFFER', 'ACCEPTED', 'TRAVELING',
    'ARRIVED', 'IN_PROGRESS', 'PENDING_COMPLETION', 'PENDING_PAYMENT',
    'PAYMENT_RECEIVED', 'COMPLETED', 'CANCELLED', 'REJECTED',
    name='booking_status',
)
payment_preference = sa.Enum('PAY_FIRST', 'PAY_LATER', name='payment_preference')
booking_payment_status = sa.Enum(
    'NONE', 'PENDING', 'HELD', 'RELEASED', 'REFUNDED', name='booking_payment_status'
)
payment_method = sa.Enum('CASH', 'GCASH', 'MAYA', name='payment_method')
actor_role = sa.Enum('CLIENT', 'PROVIDER', 'ADMIN', 'SYSTEM', name='actor_role')
refund_status = sa.Enum('PENDING', 'SUCCEEDED', 'FAILED', name='refund_status')
job_type = sa.Enum('REFUND_RECONCILIATION', 'OTHER', name='job_type')
job_status = sa.Enum('PENDING', 'PROCESSING', 'DONE', 'FAILED', name='job_status')

json_type = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')
money = sa.Numeric(14, 2)
derived_money = sa.Numeric(18, 6)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'bookings',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.String(length=128), nullable=False),
        sa.Column('provider_id', sa.String(length=128), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('service_category', sa.String(length=100), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('media_urls', json_type, nullable=False),
        sa.Column('status', booking_status, nullable=False),
        sa.Column('provider_price', money, nullable=False),
        sa.Column('offered_price', money, nullable=True),
        sa.Column('offered_total', derived_money, nullable=True),
        sa.Column('counter_offer_price', money, nullable=True),
        sa.Column('counter_offer_total', derived_money, nullable=True),
        sa.Column('counter_offer_note', sa.Text(), nullable=True),
        sa.Column('system_fee_percentage', sa.Numeric(6, 4), nullable=False),
        sa.Column('system_fee', derived_money, nullable=False),
        sa.Column('discount_amount', money, nullable=False, server_default='0'),
        sa.Column('discount_reason', sa.String(length=255), nullable=True),
        sa.Column('total_amount', derived_money, nullable=False),
        sa.Column('payment_preference', payment_preference, nullable=False),
        sa.Column('is_paid_upfront', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_status', booking_payment_status, nullable=False, server_default='NONE'),
        sa.Column('payment_method', payment_method, nullable=True),
        sa.Column('upfront_paid_amount', derived_money, nullable=False, server_default='0'),
        sa.Column('additional_paid_amount', derived_money, nullable=False, server_default='0'),
        sa.Column('final_amount', derived_money, nullable=True),
        sa.Column('settlements', json_type, nullable=False,
                  comment='Append-only payment records (cash and gateway escrow)'),
        sa.Column('is_negotiable', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('negotiation_history', json_type, nullable=False),
        sa.Column('additional_charges', json_type, nullable=False,
                  comment='Append-only provider charges; resolved entries never change'),
        sa.Column('admin_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('admin_rejected', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_by', actor_role, nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('reviewed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('review_rating', sa.Integer(), nullable=True),
        sa.Column('review_comment', sa.Text(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('work_done_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('client_confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('provider_price >= 0', name='booking_price_non_negative'),
        sa.CheckConstraint('total_amount >= 0', name='booking_total_non_negative'),
        sa.CheckConstraint(
            'review_rating IS NULL OR (review_rating >= 1 AND review_rating <= 5)',
            name='booking_review_rating_range',
        ),
    )
    op.create_index('ix_bookings_client_id', 'bookings', ['client_id'])
    op.create_index('ix_bookings_provider_id', 'bookings', ['provider_id'])
    op.create_index('ix_bookings_service_category', 'bookings', ['service_category'])
    op.create_index('ix_bookings_status', 'bookings', ['status'])
    op.create_index('ix_bookings_payment_status', 'bookings', ['payment_status'])
    op.create_index('ix_bookings_admin_approved', 'bookings', ['admin_approved'])
    op.create_index('ix_bookings_completed_at', 'bookings', ['completed_at'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('booking_id', sa.Uuid(), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('settlement_id', sa.String(length=64), nullable=False, unique=True),
        sa.Column('amount', derived_money, nullable=False),
        sa.Column('capture_ref', sa.String(length=255), nullable=True,
                  comment='Gateway reference of the captured payment being refunded'),
        sa.Column('status', refund_status, nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('external_ref', sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_refunds_booking_id', 'refunds', ['booking_id'])
    op.create_index('ix_refunds_status', 'refunds', ['status'])

    op.create_table(
        'jobs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('type', job_type, nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', job_status, nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('payload', json_type, nullable=True, comment='Summary of the last run'),
        sa.Column('lock_key', sa.BigInteger(), nullable=True, unique=True,
                  comment='Used with pg_try_advisory_lock for distributed locking'),
        *_timestamps(),
    )
    op.create_index('ix_jobs_type', 'jobs', ['type'])
    op.create_index('ix_jobs_scheduled_for', 'jobs', ['scheduled_for'])
    op.create_index('ix_jobs_status', 'jobs', ['status'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('jobs')
    op.drop_table('refunds')
    op.drop_table('bookings')

    bind = op.get_bind()
    for enum_type in (
        job_status, job_type, refund_status, actor_role,
        payment_method, booking_payment_status, payment_preference, booking_status,
    ):
        enum_type.drop(bind, checkfirst=True)
