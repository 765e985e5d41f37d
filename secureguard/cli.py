"""
Flask CLI commands: `flask --app secureguard <command>`.
"""

import click

from .campaigns import CampaignRegistry
from .db import db
from .errors import DuplicateUser
from .identity import IdentityStore


def ensure_admin(app) -> bool:
    """Create the configured admin account unless it already exists."""
    cfg = app.config
    identity = IdentityStore(db.session, cfg["MIN_PASSWORD_LENGTH"])
    if identity.find_by_username(cfg["ADMIN_USERNAME"]) is not None:
        return False
    try:
        identity.create(
            username=cfg["ADMIN_USERNAME"],
            email=cfg["ADMIN_EMAIL"],
            password=cfg["ADMIN_PASSWORD"],
            full_name="Administrator",
            is_admin=True,
        )
    except DuplicateUser:
        return False
    return True


def register_commands(app):

    @app.cli.command("init-db")
    def init_db():
        """Create all tables and the default admin."""
        db.create_all()
        created = ensure_admin(app)
        click.echo("Created tables: users, templates, campaigns, recipients")
        if created:
            click.echo(f"Created admin user: {app.config['ADMIN_USERNAME']}")

    @app.cli.command("launch-due")
    def launch_due():
        """Launch scheduled campaigns whose start time has passed."""
        launched = _registry(app).launch_due()
        click.echo(f"Launched {len(launched)} campaign(s)")

    @app.cli.command("complete-expired")
    def complete_expired():
        """Complete active campaigns whose end time has passed."""
        completed = _registry(app).complete_expired()
        click.echo(f"Completed {len(completed)} campaign(s)")


def _registry(app):
    cfg = app.config
    return CampaignRegistry(
        db.session,
        identity=IdentityStore(db.session, cfg["MIN_PASSWORD_LENGTH"]),
        token_bytes=cfg["TOKEN_BYTES"],
        max_token_attempts=cfg["TOKEN_MAX_ATTEMPTS"],
    )
