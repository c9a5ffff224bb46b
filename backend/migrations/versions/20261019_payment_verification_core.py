"""Payment verification core: users, sessions, organizations, appointments, payments, queue, disputes, outbox

Revision ID: 20261019_payment_verification_core
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_payment_verification_core'
down_revision = None
branch_labels = None
depends_on = None


ACTIVE_PAYMENT_WHERE = "status IN ('PENDING_VERIFICATION', 'VERIFIED', 'AUTHORIZED', 'CAPTURED', 'REFUND_REQUESTED')"
OPEN_VERIFICATION_WHERE = "status IN ('PENDING_QUEUE', 'ESCALATED')"
OPEN_DISPUTE_WHERE = "stage != 'RESOLVED'"


def upgrade():
    # Users (every actor kind in one table)
    op.create_table('users',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('username', sa.String(length=64), nullable=False),
    sa.Column('email', sa.String(length=255), nullable=False),
    sa.Column('password_hash', sa.String(length=255), nullable=False),
    sa.Column('kind', sa.String(length=16), nullable=False),
    sa.Column('is_active', sa.Boolean(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('email'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_users_username'), ['username'], unique=True)
        batch_op.create_index(batch_op.f('ix_users_kind'), ['kind'], unique=False)
        batch_op.create_index('ix_users_kind_active', ['kind', 'is_active'], unique=False)

    op.create_table('session_tokens',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('user_id', sa.Integer(), nullable=False),
    sa.Column('token_hash', sa.String(length=255), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('last_used_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('is_revoked', sa.Boolean(), nullable=False),
    sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('revoked_reason', sa.String(length=255), nullable=True),
    sa.Column('user_agent', sa.String(length=512), nullable=True),
    sa.Column('ip_address', sa.String(length=45), nullable=True),
    sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('session_tokens', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_session_tokens_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_session_tokens_token_hash'), ['token_hash'], unique=True)
        batch_op.create_index(batch_op.f('ix_session_tokens_expires_at'), ['expires_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_session_tokens_is_revoked'), ['is_revoked'], unique=False)
        batch_op.create_index('ix_session_tokens_user_active', ['user_id', 'is_revoked'], unique=False)

    op.create_table('security_events',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('user_id', sa.Integer(), nullable=True),
    sa.Column('event_type', sa.String(length=64), nullable=False),
    sa.Column('resource', sa.String(length=128), nullable=True),
    sa.Column('action', sa.String(length=64), nullable=True),
    sa.Column('success', sa.Boolean(), nullable=False),
    sa.Column('reason', sa.Text(), nullable=True),
    sa.Column('ip_address', sa.String(length=45), nullable=True),
    sa.Column('user_agent', sa.String(length=512), nullable=True),
    sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('security_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_security_events_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_security_events_event_type'), ['event_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_security_events_success'), ['success'], unique=False)
        batch_op.create_index(batch_op.f('ix_security_events_occurred_at'), ['occurred_at'], unique=False)
        batch_op.create_index('ix_security_events_user_type', ['user_id', 'event_type'], unique=False)
        batch_op.create_index('ix_security_events_occurred', ['occurred_at'], unique=False)

    # Organizations (payment account routing)
    op.create_table('organizations',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('payment_account_mode', sa.String(length=24), nullable=False, server_default='DOCTOR_LEVEL'),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )

    # Appointments and per-doctor refund policies
    op.create_table('appointments',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('patient_user_id', sa.Integer(), nullable=False),
    sa.Column('doctor_user_id', sa.Integer(), nullable=False),
    sa.Column('organization_id', sa.Integer(), nullable=True),
    sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('status', sa.String(length=24), nullable=False),
    sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.ForeignKeyConstraint(['doctor_user_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['patient_user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('appointments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_appointments_patient_user_id'), ['patient_user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_appointments_doctor_user_id'), ['doctor_user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_appointments_organization_id'), ['organization_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_appointments_status'), ['status'], unique=False)
        batch_op.create_index('ix_appointments_doctor_scheduled', ['doctor_user_id', 'scheduled_at'], unique=False)

    op.create_table('doctor_refund_policies',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('doctor_user_id', sa.Integer(), nullable=False),
    sa.Column('refund_cutoff_minutes', sa.Integer(), nullable=False, server_default='1440'),
    sa.Column('refund_deduction_bps', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('allow_full_refund_on_doctor_cancellation', sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.CheckConstraint('refund_deduction_bps >= 0 AND refund_deduction_bps <= 10000', name='ck_refund_policy_bps_range'),
    sa.CheckConstraint('refund_cutoff_minutes >= 0', name='ck_refund_policy_cutoff_nonneg'),
    sa.ForeignKeyConstraint(['doctor_user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('doctor_refund_policies', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_doctor_refund_policies_doctor_user_id'), ['doctor_user_id'], unique=True)

    # Payment ledger
    op.create_table('payments',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('appointment_id', sa.Integer(), nullable=False),
    sa.Column('amount_cents', sa.Integer(), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=False),
    sa.Column('method', sa.String(length=32), nullable=False),
    sa.Column('status', sa.String(length=24), nullable=False),
    sa.Column('transaction_reference', sa.String(length=128), nullable=True),
    sa.Column('receipt_url', sa.String(length=512), nullable=True),
    sa.Column('external_provider', sa.String(length=40), nullable=True),
    sa.Column('external_status', sa.String(length=60), nullable=True),
    sa.Column('account_holder_type', sa.String(length=16), nullable=False, server_default='DOCTOR'),
    sa.Column('account_holder_id', sa.Integer(), nullable=False),
    sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('verified_by_user_id', sa.Integer(), nullable=True),
    sa.Column('verification_notes', sa.Text(), nullable=True),
    sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('refund_amount_cents', sa.Integer(), nullable=True),
    sa.Column('refund_requested_by_user_id', sa.Integer(), nullable=True),
    sa.Column('refund_requested_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('submitted_by_user_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.CheckConstraint('amount_cents > 0', name='ck_payments_amount_positive'),
    sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ),
    sa.ForeignKeyConstraint(['refund_requested_by_user_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['submitted_by_user_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['verified_by_user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payments_appointment_id'), ['appointment_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_method'), ['method'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_submitted_by_user_id'), ['submitted_by_user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_created_at'), ['created_at'], unique=False)
    op.create_index(
        'uq_payments_active_appointment', 'payments', ['appointment_id'], unique=True,
        sqlite_where=sa.text(ACTIVE_PAYMENT_WHERE),
        postgresql_where=sa.text(ACTIVE_PAYMENT_WHERE),
    )

    op.create_table('payment_status_events',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('payment_id', sa.Integer(), nullable=False),
    sa.Column('from_status', sa.String(length=24), nullable=True),
    sa.Column('to_status', sa.String(length=24), nullable=False),
    sa.Column('amount_cents', sa.Integer(), nullable=False),
    sa.Column('actor_user_id', sa.Integer(), nullable=True),
    sa.Column('note', sa.String(length=1000), nullable=True),
    sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['actor_user_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('payment_status_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_status_events_payment_id'), ['payment_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_status_events_to_status'), ['to_status'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_status_events_actor_user_id'), ['actor_user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_status_events_occurred_at'), ['occurred_at'], unique=False)
        batch_op.create_index('ix_payment_status_events_payment_occurred', ['payment_id', 'occurred_at'], unique=False)

    # Verification queue
    op.create_table('payment_verifications',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('payment_id', sa.Integer(), nullable=False),
    sa.Column('verifier_user_id', sa.Integer(), nullable=True),
    sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('status', sa.String(length=24), nullable=False),
    sa.Column('notes', sa.String(length=512), nullable=True),
    sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('disputed', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ),
    sa.ForeignKeyConstraint(['verifier_user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('payment_verifications', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_verifications_payment_id'), ['payment_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_verifications_verifier_user_id'), ['verifier_user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_verifications_status'), ['status'], unique=False)
        batch_op.create_index('ix_payment_verifications_status_created', ['status', 'created_at'], unique=False)
    op.create_index(
        'uq_payment_verifications_open_payment', 'payment_verifications', ['payment_id'], unique=True,
        sqlite_where=sa.text(OPEN_VERIFICATION_WHERE),
        postgresql_where=sa.text(OPEN_VERIFICATION_WHERE),
    )

    # Disputes and their append-only history
    op.create_table('payment_disputes',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('verification_id', sa.Integer(), nullable=False),
    sa.Column('stage', sa.String(length=24), nullable=False),
    sa.Column('resolution_status', sa.String(length=24), nullable=False),
    sa.Column('raised_by_user_id', sa.Integer(), nullable=False),
    sa.Column('notes', sa.String(length=1000), nullable=True),
    sa.Column('resolved_by_user_id', sa.Integer(), nullable=True),
    sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.ForeignKeyConstraint(['raised_by_user_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['resolved_by_user_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['verification_id'], ['payment_verifications.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('payment_disputes', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_disputes_verification_id'), ['verification_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_disputes_raised_by_user_id'), ['raised_by_user_id'], unique=False)
        batch_op.create_index('ix_payment_disputes_stage_created', ['stage', 'created_at'], unique=False)
    op.create_index(
        'uq_payment_disputes_open_verification', 'payment_disputes', ['verification_id'], unique=True,
        sqlite_where=sa.text(OPEN_DISPUTE_WHERE),
        postgresql_where=sa.text(OPEN_DISPUTE_WHERE),
    )

    op.create_table('payment_dispute_history',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('dispute_id', sa.Integer(), nullable=False),
    sa.Column('from_stage', sa.String(length=24), nullable=True),
    sa.Column('to_stage', sa.String(length=24), nullable=False),
    sa.Column('resolution_status', sa.String(length=24), nullable=False),
    sa.Column('changed_by_user_id', sa.Integer(), nullable=False),
    sa.Column('note', sa.String(length=1000), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['changed_by_user_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['dispute_id'], ['payment_disputes.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('payment_dispute_history', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_dispute_history_dispute_id'), ['dispute_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_dispute_history_changed_by_user_id'), ['changed_by_user_id'], unique=False)
        batch_op.create_index('ix_payment_dispute_history_dispute_created', ['dispute_id', 'created_at', 'id'], unique=False)

    # Transactional outbox
    op.create_table('outbox_events',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('aggregate_type', sa.String(length=40), nullable=False),
    sa.Column('aggregate_id', sa.Integer(), nullable=False),
    sa.Column('event_type', sa.String(length=64), nullable=False),
    sa.Column('payload', sa.JSON(), nullable=False),
    sa.Column('status', sa.String(length=16), nullable=False),
    sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('last_error', sa.String(length=1000), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('outbox_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_outbox_events_event_type'), ['event_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_outbox_events_status'), ['status'], unique=False)
        batch_op.create_index('ix_outbox_events_status_next_attempt', ['status', 'next_attempt_at'], unique=False)
        batch_op.create_index('ix_outbox_events_aggregate', ['aggregate_type', 'aggregate_id'], unique=False)


def downgrade():
    op.drop_table('outbox_events')
    op.drop_table('payment_dispute_history')
    op.drop_index('uq_payment_disputes_open_verification', table_name='payment_disputes')
    op.drop_table('payment_disputes')
    op.drop_index('uq_payment_verifications_open_payment', table_name='payment_verifications')
    op.drop_table('payment_verifications')
    op.drop_table('payment_status_events')
    op.drop_index('uq_payments_active_appointment', table_name='payments')
    op.drop_table('payments')
    op.drop_table('doctor_refund_policies')
    op.drop_table('appointments')
    op.drop_table('organizations')
    op.drop_table('security_events')
    op.drop_table('session_tokens')
    op.drop_table('users')
