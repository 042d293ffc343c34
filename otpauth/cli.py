from __future__ import annotations

import click
from flask import current_app

from .db import create_tables
from .db_bootstrap import ensure_database_exists


def register_commands(app) -> None:
    @app.cli.command("init-db")
    def init_db_command():
        """Create the database (MySQL) and all tables."""
        ensure_database_exists(current_app.config["DATABASE_URL"])
        create_tables(current_app.extensions["db_engine"])
        click.echo("database ready")

    @app.cli.command("cleanup-expired")
    def cleanup_expired_command():
        """Delete expired OTP sessions and pending registrations."""
        sessions, registrations = current_app.extensions["auth_service"].cleanup_expired()
        click.echo(f"removed {sessions} otp sessions, {registrations} pending registrations")
