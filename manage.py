"""Management script for the database, plan catalogue and payment maintenance"""

import click
from flask.cli import FlaskGroup

from paygate import create_app, get_engine
from paygate.extensions import db
from paygate.models import SubscriptionPlan

DEFAULT_PLANS = [
    {"id": "basic", "name": "Basic", "price": "5.00", "duration_days": 30,
     "max_devices": 1, "bandwidth_limit": 10 * 1024 ** 3},
    {"id": "pro", "name": "Pro", "price": "10.00", "duration_days": 30,
     "max_devices": 3, "bandwidth_limit": None},
    {"id": "premium", "name": "Premium", "price": "20.00", "duration_days": 30,
     "max_devices": 5, "bandwidth_limit": None},
]

cli = FlaskGroup(create_app=create_app)


@cli.command("init-db")
def init_db():
    """Create all tables"""
    db.create_all()
    click.echo("✅ Database initialized successfully!")


@cli.command("drop-db")
@click.confirmation_option(prompt="⚠️  Are you sure you want to drop all tables?")
def drop_db():
    """Drop all database tables"""
    db.drop_all()
    click.echo("✅ Database dropped successfully!")


@cli.command("seed-plans")
def seed_plans():
    """Install the default subscription plans"""
    created = 0
    for plan in DEFAULT_PLANS:
        if db.session.get(SubscriptionPlan, plan["id"]) is not None:
            click.echo(f"⚠️  Plan '{plan['id']}' already exists. Skipping.")
            continue
        db.session.add(SubscriptionPlan(currency="USD", active=True, **plan))
        created += 1
    db.session.commit()
    click.echo(f"✅ {created} plan(s) created.")


@cli.command("sweep-expired")
def sweep_expired():
    """Expire stale pending transactions now"""
    expired = get_engine().sweep_expired()
    click.echo(f"✅ Expired {len(expired)} transaction(s).")


@cli.command("refund")
@click.argument("transaction_id")
@click.option("--amount", default=None, help="Partial amount; defaults to the full charge.")
def refund(transaction_id, amount):
    """Refund a completed transaction"""
    txn = get_engine().refund(transaction_id, amount)
    click.echo(f"✅ Refunded {txn.refunded_amount} {txn.currency} on {txn.id}")


@cli.command("payment-stats")
@click.option("--days", default=30, show_default=True, help="Look-back window in days.")
def payment_stats(days):
    """Transaction counts and totals per provider and status"""
    for row in get_engine().store.payment_stats(days=days):
        click.echo(
            f"{row['provider']:<16} {row['status']:<11} "
            f"count={row['count']:<6} total={row['total_amount']} avg={row['average_amount']}"
        )


if __name__ == "__main__":
    cli()
