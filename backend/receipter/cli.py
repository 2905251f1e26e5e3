# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/receipter/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to receipter (PowerShell: $env:FLASK_APP="receipter").
# - Use: python -m flask <group> <command> [options]
#
# Database:
# - python -m flask db migrate [--dir path/to/sql]
#   Apply *.sql migrations in filename order (bundled migrations by default).
#
# Users:
# - python -m flask users create --username admin --password "Password123!x" --role admin
#   Create a user (prompts if options are omitted).
# - python -m flask users list
#   List all users with role and active status.
#
# Projects:
# - python -m flask projects create --name "Intake" --description "Spring intake" --client "Acme"
# - python -m flask projects list [--filter all]
# - python -m flask projects status 3 inactive
#
# Pallets (actor is the --user username):
# - python -m flask pallets allocate --project-id 3 --count 10 --user admin
# - python -m flask pallets close 12 --user admin
# - python -m flask pallets reopen 12 --user admin
# - python -m flask pallets cancel 12 --user admin
#
# Stock:
# - python -m flask stock import --project-id 3 --user admin stock.csv
#   CSV header: sku,description[,uom]

import click
from flask.cli import with_appcontext

from .extensions import get_store
from .models import User
from .services import auth_service, pallet_service, project_service, stock_service
from .services.auth_service import PasswordValidationError
from .store import MigrationError
from .time_utils import parse_iso_date
from .validation import DOMAIN_ERRORS


def _resolve_user_id(username: str) -> int:
    with get_store().read_tx() as session:
        user = session.query(User).filter(User.username == username).first()
    if user is None:
        raise click.ClickException(f"User '{username}' not found")
    return user.id


# ---------------------------------------------------------------------------
# db
# ---------------------------------------------------------------------------

@click.group('db')
def db_group():
    """Database schema commands."""


@db_group.command('migrate')
@click.option('--dir', 'directory', type=click.Path(file_okay=False), help='Directory of *.sql files')
@with_appcontext
def migrate_cli(directory):
    """Apply SQL migrations. Re-running is safe: bundled migrations are idempotent."""
    try:
        applied = get_store().apply_migrations(directory)
    except MigrationError as e:
        raise click.ClickException(str(e))
    for name in applied:
        click.echo(f"PASS Applied {name}")
    click.echo(f"PASS {len(applied)} migration(s) applied")


# ---------------------------------------------------------------------------
# users
# ---------------------------------------------------------------------------

@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(['admin', 'scanner', 'client']), prompt=True, help='Role')
@with_appcontext
def create_user_cli(username, password, role):
    """
    Create a new user.

    Password must meet strength requirements:
    - Minimum 12 characters
    - At least one uppercase letter, lowercase letter, digit and symbol
    """
    try:
        user = auth_service.create_user(get_store(), username=username, password=password, role=role)
        click.echo(f"PASS Created user: {user.username} (ID: {user.id}) with role '{user.role}'")
        click.echo("SECURITY Password securely hashed with bcrypt")

    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 12+ chars, uppercase, lowercase, digit, symbol")
    except DOMAIN_ERRORS as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")


@users_group.command('list')
@with_appcontext
def list_users_cli():
    """List all users with their roles."""
    users = auth_service.list_users(get_store())
    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "=" * 60)
    click.echo(f"{'ID':<5} {'Username':<30} {'Role':<10} {'Active'}")
    click.echo("=" * 60)
    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<30} {user.role:<10} {active_str}")
    click.echo("=" * 60 + "\n")


# ---------------------------------------------------------------------------
# projects
# ---------------------------------------------------------------------------

@click.group('projects')
def projects_group():
    """Project commands."""


@projects_group.command('create')
@click.option('--name', required=True, help='Project name')
@click.option('--description', required=True, help='Project description')
@click.option('--client', 'client_name', required=True, help='Client name')
@click.option('--date', 'project_date', help='Project date (YYYY-MM-DD, default today)')
@click.option('--code', help='Project code (derived from the name if omitted)')
@click.option('--user', 'username', default='admin', show_default=True, help='Acting username')
@with_appcontext
def create_project_cli(name, description, client_name, project_date, code, username):
    """Create a project with a unique code."""
    try:
        date_value = parse_iso_date(project_date)
    except ValueError:
        raise click.BadParameter("expected YYYY-MM-DD", param_hint="--date")

    try:
        project = project_service.create_project(
            get_store(),
            user_id=_resolve_user_id(username),
            name=name,
            description=description,
            client_name=client_name,
            project_date=date_value,
            code=code,
        )
        click.echo(f"PASS Created project: {project.name} (ID: {project.id}, Code: {project.code})")
    except DOMAIN_ERRORS as e:
        click.echo(f"FAIL Failed to create project: {str(e)}")


@projects_group.command('list')
@click.option('--filter', 'filter_name', type=click.Choice(['active', 'inactive', 'all']), default='active')
@with_appcontext
def list_projects_cli(filter_name):
    """List projects with pallet counts."""
    store = get_store()
    projects = project_service.list_projects(store, filter_name)
    if not projects:
        click.echo("No projects found.")
        return

    counts = project_service.pallet_counts_by_project(store, [p.id for p in projects])
    click.echo(f"{'ID':<5} {'Code':<24} {'Status':<9} {'Date':<11} {'Created':>8} {'Open':>6} {'Closed':>7}  Name")
    for p in projects:
        c = counts.get(p.id, {})
        click.echo(
            f"{p.id:<5} {p.code:<24} {p.status:<9} {p.project_date.isoformat():<11} "
            f"{c.get('created_count', 0):>8} {c.get('open_count', 0):>6} {c.get('closed_count', 0):>7}  {p.name}"
        )


@projects_group.command('status')
@click.argument('project_id', type=int)
@click.argument('status', type=click.Choice(['active', 'inactive']))
@click.option('--user', 'username', default='admin', show_default=True, help='Acting username')
@with_appcontext
def project_status_cli(project_id, status, username):
    """Set a project active or inactive."""
    try:
        project = project_service.set_project_status(
            get_store(), user_id=_resolve_user_id(username), project_id=project_id, status=status
        )
        click.echo(f"PASS Project {project.id} is now {project.status}")
    except DOMAIN_ERRORS as e:
        click.echo(f"FAIL {str(e)}")


# ---------------------------------------------------------------------------
# pallets
# ---------------------------------------------------------------------------

@click.group('pallets')
def pallets_group():
    """Pallet allocation and lifecycle commands."""


@pallets_group.command('allocate')
@click.option('--project-id', type=int, required=True, help='Project ID')
@click.option('--count', type=int, default=1, show_default=True, help='Number of pallets')
@click.option('--user', 'username', default='admin', show_default=True, help='Acting username')
@with_appcontext
def allocate_pallets_cli(project_id, count, username):
    """Allocate consecutive pallet ids and print their barcodes."""
    try:
        pallets = pallet_service.allocate_bulk(
            get_store(), user_id=_resolve_user_id(username), project_id=project_id, count=count
        )
    except DOMAIN_ERRORS as e:
        click.echo(f"FAIL {str(e)}")
        return
    for pallet in pallets:
        click.echo(f"{pallet.id:<8} {pallet.barcode}")
    click.echo(f"PASS Allocated {len(pallets)} pallet(s)")


def _transition_cli(action, pallet_id: int, username: str) -> None:
    store = get_store()
    try:
        pallet = pallet_service.load_pallet(store, pallet_id)
        pallet = action(
            store, user_id=_resolve_user_id(username), project_id=pallet.project_id, pallet_id=pallet_id
        )
        click.echo(f"PASS Pallet {pallet.id} is now {pallet.status}")
    except DOMAIN_ERRORS as e:
        click.echo(f"FAIL {str(e)}")


@pallets_group.command('close')
@click.argument('pallet_id', type=int)
@click.option('--user', 'username', default='admin', show_default=True, help='Acting username')
@with_appcontext
def close_pallet_cli(pallet_id, username):
    _transition_cli(pallet_service.close_pallet, pallet_id, username)


@pallets_group.command('reopen')
@click.argument('pallet_id', type=int)
@click.option('--user', 'username', default='admin', show_default=True, help='Acting username')
@with_appcontext
def reopen_pallet_cli(pallet_id, username):
    _transition_cli(pallet_service.reopen_pallet, pallet_id, username)


@pallets_group.command('cancel')
@click.argument('pallet_id', type=int)
@click.option('--user', 'username', default='admin', show_default=True, help='Acting username')
@with_appcontext
def cancel_pallet_cli(pallet_id, username):
    _transition_cli(pallet_service.cancel_pallet, pallet_id, username)


# ---------------------------------------------------------------------------
# stock
# ---------------------------------------------------------------------------

@click.group('stock')
def stock_group():
    """Stock catalogue commands."""


@stock_group.command('import')
@click.option('--project-id', type=int, required=True, help='Project ID')
@click.option('--user', 'username', default='admin', show_default=True, help='Acting username')
@click.argument('csv_file', type=click.File('r', encoding='utf-8-sig'))
@with_appcontext
def import_stock_cli(project_id, username, csv_file):
    """Upsert stock items from a CSV file (header: sku,description[,uom])."""
    try:
        result = stock_service.import_stock_csv(
            get_store(), user_id=_resolve_user_id(username), project_id=project_id, stream=csv_file
        )
    except DOMAIN_ERRORS as e:
        click.echo(f"FAIL {str(e)}")
        return
    click.echo(
        f"PASS Imported: {result['inserted']} inserted, {result['updated']} updated, "
        f"{result['errors']} error(s) (run {result['run_id']})"
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(db_group)
    app.cli.add_command(users_group)
    app.cli.add_command(projects_group)
    app.cli.add_command(pallets_group)
    app.cli.add_command(stock_group)
