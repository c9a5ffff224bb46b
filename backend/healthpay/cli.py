# Overview: Flask CLI command groups for bootstrap, queue maintenance, and outbox delivery.

# backend/healthpay/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates one user of each kind and the doctor's refund policy.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list [--kind STAFF]
#   List users with kind and active status.
# - python -m flask users create --username staff2 --email staff2@healthpay.local --password "Password123!" --kind STAFF
#   Create a user (prompts if options are omitted).
# - python -m flask users deactivate staff2
#   Deactivate a user and revoke their sessions.
#
# Verification queue:
# - python -m flask queue list [--unclaimed]
#   Show PENDING_QUEUE items, oldest first.
# - python -m flask queue sweep-stale-claims [--minutes 30]
#   Return claims older than the timeout to the queue. Safe to run from cron.
#
# Outbox:
# - python -m flask outbox dispatch [--limit 100]
#   Deliver committed side effects (appointment confirmation, notifications).
# - python -m flask outbox list [--status DEAD]
#   Show recent outbox rows.
# - python -m flask outbox requeue 42
#   Give a DEAD event a fresh set of attempts.
#
# Disputes:
# - python -m flask disputes replay 7
#   Print a dispute's history and check it folds to the stored stage.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User, DoctorRefundPolicy, PaymentDispute
from .models.auth import USER_KINDS, USER_KIND_PATIENT, USER_KIND_STAFF, USER_KIND_DOCTOR, USER_KIND_ADMIN
from .models.outbox import OUTBOX_STATUS_PENDING, OUTBOX_STATUS_FAILED, OUTBOX_STATUS_SENT, OUTBOX_STATUS_DEAD
from .services.auth_service import create_user, deactivate_user, PasswordValidationError, UserExistsError
from .services.session_service import revoke_all_user_sessions
from .services import verification_service
from .services import outbox_service
from .services import history_service
from .time_utils import to_utc_z


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize HealthPay with one account per actor kind.

    Creates:
    - Users: admin, staff, doctor, patient (all @healthpay.local)
    - A refund policy for the doctor (24h cutoff, no deduction)
    - All passwords default to: "Password123!"

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing HealthPay...")

    default_password = "Password123!"
    default_users = [
        ("admin", "admin@healthpay.local", USER_KIND_ADMIN),
        ("staff", "staff@healthpay.local", USER_KIND_STAFF),
        ("doctor", "doctor@healthpay.local", USER_KIND_DOCTOR),
        ("patient", "patient@healthpay.local", USER_KIND_PATIENT),
    ]

    click.echo("\nUSERS Creating default users...")
    for username, email, kind in default_users:
        try:
            create_user(username=username, email=email, password=default_password, kind=kind)
            click.echo(f"PASS Created user: {username} ({email}) as {kind}")
        except UserExistsError:
            click.echo(f"WARN  User '{username}' already exists, skipping...")
        except PasswordValidationError as e:
            click.echo(f"FAIL Password validation failed for '{username}': {str(e)}")

    doctor = db.session.query(User).filter_by(username="doctor").first()
    if doctor and not db.session.query(DoctorRefundPolicy).filter_by(doctor_user_id=doctor.id).first():
        db.session.add(DoctorRefundPolicy(
            doctor_user_id=doctor.id,
            refund_cutoff_minutes=1440,
            refund_deduction_bps=0,
            allow_full_refund_on_doctor_cancellation=True,
        ))
        db.session.commit()
        click.echo("PASS Created default refund policy for 'doctor'")

    click.echo("\n" + "="*60)
    click.echo("DONE HealthPay Initialized Successfully!")
    click.echo("="*60)
    click.echo("\nDefault Credentials (CHANGE IN PRODUCTION!):")
    for username, email, _ in default_users:
        click.echo(f"   {username:<8} -> {email:<26} / {default_password}")
    click.echo("")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


# =============================================================================
# USER MANAGEMENT COMMANDS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--kind', type=click.Choice(USER_KINDS), prompt=True, help='Actor kind')
@with_appcontext
def create_user_cli(username, email, password, kind):
    """
    Create a new user interactively.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(username=username, email=email, password=password, kind=kind)
        click.echo(f"PASS Created user: {username} ({email}) as {kind} (ID: {user.id})")
        click.echo("SECURITY Password securely hashed with bcrypt")

    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
    except UserExistsError as e:
        click.echo(f"FAIL {str(e)}")


@users_group.command('list')
@click.option('--kind', type=click.Choice(USER_KINDS), help='Filter by actor kind')
@with_appcontext
def list_users(kind):
    """List users with their kind."""
    query = db.session.query(User)
    if kind:
        query = query.filter_by(kind=kind)
    users = query.order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Username':<20} {'Kind':<10} {'Active':<8} {'Email'}")
    click.echo("="*70)
    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.kind:<10} {active_str:<8} {user.email}")
    click.echo("="*70 + "\n")


@users_group.command('deactivate')
@click.argument('username')
@with_appcontext
def deactivate_user_cli(username):
    """Deactivate a user and revoke their open sessions."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return

    deactivate_user(user.id)
    revoked = revoke_all_user_sessions(user.id, reason="User deactivated")
    click.echo(f"PASS Deactivated {username}; revoked {revoked} session(s)")


# =============================================================================
# VERIFICATION QUEUE COMMANDS
# =============================================================================

@click.group('queue')
def queue_group():
    """Verification queue inspection and maintenance."""


@queue_group.command('list')
@click.option('--unclaimed', is_flag=True, help='Only items nobody holds')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def list_queue_cli(unclaimed, limit):
    """Show PENDING_QUEUE items, oldest first."""
    items = verification_service.list_queue(include_claimed=not unclaimed, limit=limit)
    if not items:
        click.echo("Queue is empty.")
        return

    click.echo(f"{'ID':<6} {'Payment':<8} {'Verifier':<9} {'Claimed at':<22} {'Created at'}")
    for item in items:
        verifier = item.verifier_user_id if item.is_claimed else "-"
        claimed = to_utc_z(item.claimed_at) if item.is_claimed else "-"
        click.echo(f"{item.id:<6} {item.payment_id:<8} {verifier!s:<9} {claimed:<22} {to_utc_z(item.created_at)}")


@queue_group.command('sweep-stale-claims')
@click.option('--minutes', type=int, help='Claim timeout (defaults to VERIFICATION_CLAIM_TIMEOUT_MINUTES)')
@with_appcontext
def sweep_stale_claims_cli(minutes):
    """Return abandoned claims to the queue."""
    released = verification_service.sweep_stale_claims(timeout=minutes)
    click.echo(f"PASS Released {released} stale claim(s)")


# =============================================================================
# OUTBOX COMMANDS
# =============================================================================

@click.group('outbox')
def outbox_group():
    """Side-effect delivery (appointment confirmation, notifications)."""


@outbox_group.command('dispatch')
@click.option('--limit', type=int, help='Max events to deliver (defaults to OUTBOX_BATCH_SIZE)')
@with_appcontext
def dispatch_cli(limit):
    """Deliver pending outbox events."""
    counts = outbox_service.dispatch_pending(limit=limit)
    click.echo(f"PASS sent={counts['sent']} failed={counts['failed']} dead={counts['dead']}")


@outbox_group.command('list')
@click.option('--status', type=click.Choice([
    OUTBOX_STATUS_PENDING, OUTBOX_STATUS_SENT, OUTBOX_STATUS_FAILED, OUTBOX_STATUS_DEAD,
]), help='Filter by status')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def list_outbox_cli(status, limit):
    """Show recent outbox rows, newest first."""
    events = outbox_service.list_events(status=status, limit=limit)
    if not events:
        click.echo("No outbox events found.")
        return

    for event in events:
        click.echo(
            f"{event.id:<6} {event.event_type:<26} {event.status:<8} "
            f"attempts={event.attempts} {event.last_error or ''}"
        )


@outbox_group.command('requeue')
@click.argument('event_id', type=int)
@with_appcontext
def requeue_cli(event_id):
    """Retry a DEAD outbox event."""
    try:
        event = outbox_service.requeue_dead(event_id)
        click.echo(f"PASS Event {event.id} requeued")
    except (LookupError, ValueError) as e:
        click.echo(f"FAIL {str(e)}")


# =============================================================================
# DISPUTE COMMANDS
# =============================================================================

@click.group('disputes')
def disputes_group():
    """Dispute inspection commands."""


@disputes_group.command('replay')
@click.argument('dispute_id', type=int)
@with_appcontext
def replay_dispute_cli(dispute_id):
    """Print a dispute's history and compare it with the stored state."""
    dispute = db.session.get(PaymentDispute, dispute_id)
    if dispute is None:
        click.echo(f"FAIL Dispute {dispute_id} not found")
        return

    entries = history_service.replay(dispute_id)
    for entry in entries:
        click.echo(
            f"{to_utc_z(entry.created_at)}  {entry.from_stage or '-':<14} -> {entry.to_stage:<14} "
            f"{entry.resolution_status:<16} by {entry.changed_by_user_id}"
        )

    try:
        folded = history_service.fold_history(entries)
    except history_service.HistoryGapError as e:
        click.echo(f"FAIL {str(e)}")
        return

    if folded == (dispute.stage, dispute.resolution_status):
        click.echo(f"PASS History reproduces {dispute.stage}/{dispute.resolution_status}")
    else:
        click.echo(
            f"FAIL History folds to {folded[0]}/{folded[1]} "
            f"but dispute is {dispute.stage}/{dispute.resolution_status}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(queue_group)
    app.cli.add_command(outbox_group)
    app.cli.add_command(disputes_group)
