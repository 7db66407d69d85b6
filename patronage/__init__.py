import os
import logging

import click
from flask import Flask, jsonify

from patronage.config import config_by_name
from patronage.errors import BillingError
from patronage.extensions import db, migrate, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from patronage import models  # noqa: F401

    # --- Register blueprints ---
    from patronage.blueprints.webhooks import webhooks_bp
    from patronage.blueprints.subscriptions import subscriptions_bp
    from patronage.blueprints.tiers import tiers_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(tiers_bp)

    # --- Error handlers ---
    @app.errorhandler(BillingError)
    def billing_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed", "message": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "rate_limited", "message": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "server_error", "message": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    def _echo_report(title, report):
        click.echo("")
        click.echo("=" * 60)
        click.echo(title)
        click.echo("=" * 60)
        click.echo(f"  Examined:  {report.examined}")
        click.echo(f"  Expired:   {len(report.expired)}")
        click.echo(f"  Confirmed: {len(report.confirmed)}")
        click.echo(f"  Rejected:  {len(report.rejected)}")
        click.echo(f"  Extended:  {len(report.extended)}")
        click.echo(f"  Deferred:  {len(report.deferred)}")
        click.echo(f"  Skipped:   {len(report.skipped)}")
        click.echo("=" * 60)

    @app.cli.command("sweep-checkouts")
    @click.option("--dry-run", is_flag=True, help="List candidates without touching them.")
    def sweep_checkouts(dry_run):
        """Expire PENDING subscriptions whose checkout was abandoned.

        Paid checkouts whose webhook is long overdue are confirmed from
        the processor instead.

        Usage:
            flask sweep-checkouts
            flask sweep-checkouts --dry-run
        """
        from patronage.services.reconciliation_service import sweep_abandoned_checkouts
        report = sweep_abandoned_checkouts(dry_run=dry_run)
        _echo_report("Abandoned checkout sweep" + (" (dry run)" if dry_run else ""), report)

    @app.cli.command("sweep-subscriptions")
    @click.option("--dry-run", is_flag=True, help="List candidates without touching them.")
    def sweep_subscriptions(dry_run):
        """Expire subscriptions whose period or grace window ran out.

        Each candidate is re-checked against the processor first; a renewal
        whose webhook is late extends the subscription instead.

        Usage:
            flask sweep-subscriptions
            flask sweep-subscriptions --dry-run
        """
        from patronage.services.reconciliation_service import sweep_lapsed_subscriptions
        report = sweep_lapsed_subscriptions(dry_run=dry_run)
        _echo_report("Lapsed subscription sweep" + (" (dry run)" if dry_run else ""), report)
