"""Baseline schema for the referral settlement pipeline

Revision ID: baseline_settlement_schema
Revises: 
Create Date: 2026-10-18 00:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'baseline_settlement_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'agents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('external_id', sa.String(length=64), nullable=True),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('email', sa.String(length=320), nullable=True),
        sa.Column('tax_id', sa.String(length=12), nullable=True),
        sa.Column('is_self_employed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payout_method', sa.String(length=32), nullable=False, server_default='card'),
        sa.Column('card_number', sa.String(length=19), nullable=True),
        sa.Column('bank_account', sa.String(length=20), nullable=True),
        sa.Column('bank_bik', sa.String(length=9), nullable=True),
        sa.Column('provider_payee_id', sa.String(length=64), nullable=True),
        sa.Column('provider_requisite_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint('external_id'),
    )
    op.create_index('ix_agents_id', 'agents', ['id'])
    op.create_index('idx_agents_tax_id', 'agents', ['tax_id'])

    op.create_table(
        'clinics',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('report_emails', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index('ix_clinics_id', 'clinics', ['id'])

    op.create_table(
        'referrals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('agent_id', sa.Integer(), sa.ForeignKey('agents.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('clinic_id', sa.Integer(), sa.ForeignKey('clinics.id'), nullable=True),
        sa.Column('clinic_name', sa.String(length=255), nullable=True),
        sa.Column('patient_full_name', sa.String(length=255), nullable=False),
        sa.Column('patient_birthdate', sa.Date(), nullable=True),
        sa.Column('patient_phone', sa.String(length=50), nullable=True),
        sa.Column('patient_email', sa.String(length=320), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='new'),
        sa.Column('treatment_amount', sa.BigInteger(), nullable=True),
        sa.Column('commission_amount', sa.BigInteger(), nullable=True),
        sa.Column('commission_rate', sa.Numeric(6, 4), nullable=True),
        sa.Column('linked_report_id', sa.Integer(), nullable=True),
        sa.Column('settled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint('linked_report_id'),
        sa.CheckConstraint('treatment_amount IS NULL OR treatment_amount >= 0', name='ck_referrals_treatment_amount_non_negative'),
        sa.CheckConstraint('commission_amount IS NULL OR commission_amount >= 0', name='ck_referrals_commission_amount_non_negative'),
    )
    op.create_index('ix_referrals_id', 'referrals', ['id'])
    op.create_index('idx_referrals_agent_settled', 'referrals', ['agent_id', 'settled_at'])
    op.create_index('idx_referrals_clinic_status', 'referrals', ['clinic_id', 'status'])
    op.create_index('idx_referrals_status', 'referrals', ['status'])

    op.create_table(
        'referral_status_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('referral_id', sa.Integer(), sa.ForeignKey('referrals.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('from_status', sa.String(length=32), nullable=True),
        sa.Column('to_status', sa.String(length=32), nullable=False),
        sa.Column('actor', sa.String(length=100), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('treatment_amount', sa.BigInteger(), nullable=True),
        sa.Column('commission_amount', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index('ix_referral_status_history_id', 'referral_status_history', ['id'])
    op.create_index('idx_referral_history_referral', 'referral_status_history', ['referral_id'])

    op.create_table(
        'clinic_reports',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('source_id', sa.String(length=255), nullable=False),
        sa.Column('clinic_id', sa.Integer(), sa.ForeignKey('clinics.id'), nullable=True),
        sa.Column('email_from', sa.String(length=320), nullable=False),
        sa.Column('email_subject', sa.String(length=500), nullable=True),
        sa.Column('email_received_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('email_body_raw', sa.Text(), nullable=True),
        sa.Column('patient_name', sa.String(length=255), nullable=True),
        sa.Column('clinic_name', sa.String(length=255), nullable=True),
        sa.Column('visit_date', sa.Date(), nullable=True),
        sa.Column('treatment_amount', sa.BigInteger(), nullable=True),
        sa.Column('services', sa.JSON(), nullable=False),
        sa.Column('extraction_confidence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('match_confidence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending_review'),
        sa.Column('linked_referral_id', sa.Integer(), sa.ForeignKey('referrals.id'), nullable=True),
        sa.Column('suggested_referral_id', sa.Integer(), sa.ForeignKey('referrals.id'), nullable=True),
        sa.Column('reviewed_by', sa.String(length=100), nullable=True),
        sa.Column('reviewed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('reviewer_notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint('source_id'),
    )
    op.create_index('ix_clinic_reports_id', 'clinic_reports', ['id'])
    op.create_index('idx_clinic_reports_status', 'clinic_reports', ['status'])
    op.create_index('idx_clinic_reports_linked_referral', 'clinic_reports', ['linked_referral_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('agent_id', sa.Integer(), sa.ForeignKey('agents.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('referral_id', sa.Integer(), sa.ForeignKey('referrals.id'), nullable=True),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('gross_amount', sa.BigInteger(), nullable=False),
        sa.Column('tax_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('social_contributions', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('idempotency_key', sa.String(length=36), nullable=True),
        sa.Column('payout_method', sa.String(length=32), nullable=False),
        sa.Column('payout_destination', sa.String(length=64), nullable=True),
        sa.Column('provider_payment_id', sa.String(length=64), nullable=True),
        sa.Column('provider_status_code', sa.Integer(), nullable=True),
        sa.Column('provider_status_text', sa.String(length=255), nullable=True),
        sa.Column('submit_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_ambiguous', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('submitted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint('idempotency_key'),
        sa.UniqueConstraint('provider_payment_id'),
        sa.CheckConstraint('amount >= 0', name='ck_payments_amount_non_negative'),
    )
    op.create_index('ix_payments_id', 'payments', ['id'])
    op.create_index('idx_payments_agent_status', 'payments', ['agent_id', 'status'])
    op.create_index('idx_payments_status', 'payments', ['status'])

    op.create_table(
        'commission_tiers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('agent_id', sa.Integer(), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=True),
        sa.Column('min_monthly_revenue', sa.BigInteger(), nullable=False),
        sa.Column('commission_rate', sa.Numeric(6, 4), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint('min_monthly_revenue >= 0', name='ck_commission_tiers_threshold_non_negative'),
    )
    op.create_index('ix_commission_tiers_id', 'commission_tiers', ['id'])
    op.create_index('idx_commission_tiers_agent', 'commission_tiers', ['agent_id'])


def downgrade() -> None:
    op.drop_table('commission_tiers')
    op.drop_table('payments')
    op.drop_table('clinic_reports')
    op.drop_table('referral_status_history')
    op.drop_table('referrals')
    op.drop_table('clinics')
    op.drop_table('agents')
