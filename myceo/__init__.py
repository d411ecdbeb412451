import os
import logging

import click
from flask import Flask, jsonify

from myceo.config import config_by_name
from myceo.extensions import db, migrate, login_manager, csrf, limiter


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
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from myceo import models  # noqa: F401

    # --- Register blueprints ---
    from myceo.blueprints.auth import auth_bp
    from myceo.blueprints.checkout import checkout_bp
    from myceo.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(webhooks_bp)

    # Webhooks are authenticated by Stripe signature, not CSRF
    csrf.exempt(webhooks_bp)

    # --- Error handlers (JSON API) ---
    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({"error": getattr(e, "description", "Bad request")}), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests. Please slow down."}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only, nothing to render
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("replay-dead-letters")
    @click.option("--customer", default=None, help="Only replay events for this Stripe customer ID.")
    @click.option("--event-id", "event_ids", multiple=True, help="Only replay this event ID (repeatable).")
    @click.option("--limit", type=int, default=None, help="Max number of events to replay.")
    @click.option("--dry-run", is_flag=True, help="List matching events without replaying them.")
    def replay_dead_letters(customer, event_ids, limit, dry_run):
        """Replay unresolved webhook dead letters through the normal handlers.

        Usage:
            flask replay-dead-letters
            flask replay-dead-letters --customer cus_123 --dry-run
        """
        from myceo.models.dead_letter import WebhookDeadLetter
        from myceo.services.stripe_service import replay_dead_letter

        query = WebhookDeadLetter.query.filter(
            WebhookDeadLetter.resolved_at.is_(None)
        ).order_by(WebhookDeadLetter.created_at)
        if customer:
            query = query.filter(WebhookDeadLetter.stripe_customer_id == customer)
        if event_ids:
            query = query.filter(WebhookDeadLetter.stripe_event_id.in_(event_ids))
        if limit is not None:
            query = query.limit(limit)

        letters = query.all()
        if not letters:
            click.echo("No unresolved dead letters matched.")
            return

        succeeded = 0
        failed = 0
        for letter in letters:
            click.echo(
                f"Replaying {letter.stripe_event_id} ({letter.event_type}, "
                f"customer={letter.stripe_customer_id}, retries={letter.retry_count})"
            )
            if dry_run:
                continue

            ok, message = replay_dead_letter(letter)
            if ok:
                succeeded += 1
            else:
                failed += 1
                click.echo(f"  FAILED: {message}")

        if dry_run:
            click.echo(f"Dry run complete. {len(letters)} events would be replayed.")
            return

        summary = f"Replay complete: {succeeded} succeeded, {failed} failed, {len(letters)} total."
        if failed:
            raise click.ClickException(summary)
        click.echo(summary)

    @app.cli.command("verify-stripe-prices")
    def verify_stripe_prices():
        """Verify configured Stripe price IDs exist and are usable (same mode as key).

        Checks STRIPE_PRICE_<PLAN>_<PERIOD> for every plan tier and billing
        period. Run with prod env vars to confirm Live prices; run with test
        vars for Test mode.
        """
        import stripe as _stripe

        from myceo.models.parent import Parent

        api_key = app.config.get("STRIPE_SECRET_KEY")
        if not api_key:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return
        key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode: {key_mode}")
        click.echo("")

        _stripe.api_key = api_key

        def check_price(label: str, price_id: str) -> None:
            if not price_id:
                click.echo(f"  {label}: (not set)")
                return
            try:
                price = _stripe.Price.retrieve(price_id)
                livemode = getattr(price, "livemode", "?")
                recurring = price.get("recurring") or {}
                click.echo(f"  {label}: {price_id}")
                click.echo(
                    f"    exists=True, active={price.get('active', '?')}, "
                    f"livemode={livemode}, interval={recurring.get('interval', '-')}"
                )
                if livemode is True and key_mode != "Live":
                    click.echo("    WARNING: This price is Live but your key is Test.")
                elif livemode is False and key_mode == "Live":
                    click.echo("    WARNING: This price is Test but your key is Live.")
            except _stripe.InvalidRequestError as e:
                click.echo(f"  {label}: {price_id}")
                click.echo(f"    ERROR: {e}")

        for plan in Parent.TIERS:
            for period in Parent.BILLING_PERIODS:
                key = f"STRIPE_PRICE_{plan.upper()}_{period.upper()}"
                click.echo(f"{key}:")
                check_price(f"{plan}/{period}", app.config.get(key))
                click.echo("")

    @app.cli.command("generate-signup-key")
    def generate_signup_key():
        """Print a new Fernet key for SIGNUP_ENCRYPTION_KEY."""
        from myceo.services.signup_crypto import generate_key

        click.echo(generate_key())
