# Overview: Flask CLI command groups for bootstrap and maintenance.

# backend/concessions/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (development; use `flask db upgrade` elsewhere).
# - python -m flask system seed-demo
#   Demo theater, users, catalog, combo and opening stock (idempotent).
#
# Theaters and users:
# - python -m flask theaters create --name "Grand Cinema" --code GRAND
# - python -m flask theaters list
# - python -m flask users create --theater-id 1 --username cashier1 --password "Password123" --role cashier
#
# Payments:
# - python -m flask payments sweep
#   Auto-cancel pending orders whose payment window closed (run every minute).
#
# Orders:
# - python -m flask orders quarantined --theater-id 1
# - python -m flask orders recover 42
#
# Stock:
# - python -m flask stock balance --theater-id 1 --product-id 3 [--source theater]
#
# Maintenance:
# - python -m flask broadcast prune [--hours 48]
# - python -m flask sessions cleanup [--days 30]

from decimal import Decimal

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import PipelineError
from .extensions import db
from .models import (
    Category,
    ComboComponent,
    ComboOffer,
    KioskType,
    Order,
    Product,
    Theater,
    User,
)
from .models.auth import ROLES, ROLE_CASHIER, ROLE_KIOSK, ROLE_MANAGER, ROLE_THEATER_ADMIN
from .models.orders import STATE_SYNC_FAILED
from .models.stock import KIND_OPENING, STOCK_SOURCES, STOCK_SOURCE_CAFE
from .models.tenancy import CHANNEL_KIOSK, CHANNEL_ONLINE_POS
from .services import (
    auth_service,
    broadcast_service,
    order_service,
    payment_config_service,
    payment_service,
    session_service,
    stock_ledger_service,
)
from .units import format_quantity


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables for the configured database."""
    db.create_all()
    click.echo(f"PASS Tables created on {current_app.config['SQLALCHEMY_DATABASE_URI']}")


DEMO_PASSWORD = "Password123"

DEMO_PRODUCTS = [
    # name, category, pack, stock unit, base price, tax, gst type, discount, opening stock
    ("Salted Popcorn", "Snacks", "1 Nos", "Nos", "100", "5", "EXCLUSIVE", "0", "50"),
    ("Cola", "Beverages", "1 Nos", "Nos", "118", "18", "INCLUSIVE", "10", "40"),
    ("Caramel Popcorn Mix", "Snacks", "150 g", "kg", "160", "5", "EXCLUSIVE", "0", "5"),
    ("Cold Coffee", "Beverages", "300 mL", "L", "140", "5", "INCLUSIVE", "0", "12"),
]


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """
    Seed one demo theater. Safe to re-run.

    Creates:
    - Theater "Grand Cinema" (order numbers GR0001...)
    - Users: admin, manager, cashier, kiosk (password "Password123")
    - Four products with opening cafe stock, one combo
    - Gateway enabled for online-pos and kiosk with the local gateway
    """
    click.echo("START Seeding demo data...")
    theater = db.session.query(Theater).filter_by(code="GRAND").first()
    if theater is None:
        theater = Theater(name="Grand Cinema", code="GRAND", address="1 Main Road", is_active=True)
        db.session.add(theater)
        db.session.flush()
        click.echo(f"PASS Created theater {theater.name} (ID: {theater.id})")
    else:
        click.echo(f"PASS Using existing theater {theater.name} (ID: {theater.id})")

    for username, role in (
        ("admin", ROLE_THEATER_ADMIN),
        ("manager", ROLE_MANAGER),
        ("cashier", ROLE_CASHIER),
        ("kiosk", ROLE_KIOSK),
    ):
        if db.session.query(User).filter_by(username=username).first() is None:
            auth_service.create_user(username, DEMO_PASSWORD, [role], theater_id=theater.id)
            click.echo(f"PASS Created user {username} ({role})")

    categories = {}
    for name in ("Snacks", "Beverages"):
        category = db.session.query(Category).filter_by(theater_id=theater.id, name=name).first()
        if category is None:
            category = Category(theater_id=theater.id, name=name)
            db.session.add(category)
            db.session.flush()
        categories[name] = category
    if db.session.query(KioskType).filter_by(theater_id=theater.id).first() is None:
        db.session.add(KioskType(theater_id=theater.id, name="Counter"))

    products = {}
    for name, category, pack, unit, price, tax, gst, discount, opening in DEMO_PRODUCTS:
        product = db.session.query(Product).filter_by(theater_id=theater.id, name=name).first()
        if product is None:
            product = Product(
                theater_id=theater.id,
                category_id=categories[category].id,
                name=name,
                pack_quantity=pack,
                stock_unit=unit,
                base_price=Decimal(price),
                tax_rate=Decimal(tax),
                gst_type=gst,
                discount_percent=Decimal(discount),
            )
            db.session.add(product)
            db.session.flush()
            stock_ledger_service.append_event(
                theater.id,
                product.id,
                stock_ledger_service.StockEvent(kind=KIND_OPENING, quantity=Decimal(opening), unit=unit),
            )
            click.echo(f"PASS Created product {name} with {opening} {unit}")
        products[name] = product

    if db.session.query(ComboOffer).filter_by(theater_id=theater.id).first() is None:
        combo = ComboOffer(
            theater_id=theater.id,
            name="Movie Combo",
            offer_price=Decimal("250"),
            tax_rate=Decimal("5"),
            gst_type="INCLUSIVE",
        )
        combo.components = [
            ComboComponent(position=0, product_id=products["Salted Popcorn"].id, per_combo_quantity=2),
            ComboComponent(position=1, product_id=products["Cola"].id, per_combo_quantity=1),
        ]
        db.session.add(combo)
        click.echo("PASS Created combo Movie Combo")

    for channel in (CHANNEL_ONLINE_POS, CHANNEL_KIOSK):
        payment_config_service.upsert_config(
            theater.id,
            channel,
            gateway_enabled=True,
            key_id="rzp_test_demo",
            key_secret="demo_secret",
        )

    db.session.commit()
    click.echo("DONE Demo data ready")


@click.group('theaters')
def theaters_group():
    """Theater management commands."""


@theaters_group.command('create')
@click.option('--name', prompt=True, help='Theater name (first two letters prefix order numbers)')
@click.option('--code', default=None, help='Short unique code')
@click.option('--address', default=None)
@with_appcontext
def create_theater(name, code, address):
    theater = Theater(name=name.strip(), code=code, address=address, is_active=True)
    db.session.add(theater)
    db.session.commit()
    click.echo(f"PASS Created theater {theater.name} (ID: {theater.id}, prefix {theater.order_prefix})")


@theaters_group.command('list')
@with_appcontext
def list_theaters():
    for theater in db.session.query(Theater).order_by(Theater.id).all():
        status = "active" if theater.is_active else "inactive"
        click.echo(f"{theater.id:>4}  {theater.order_prefix}  {theater.name} ({status})")


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--theater-id', type=int, default=None, help='Theater ID (omit for super_admin)')
@click.option('--username', prompt=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', 'roles', type=click.Choice(list(ROLES)), multiple=True, required=True, help='Role (repeatable)')
@with_appcontext
def create_user_cli(theater_id, username, password, roles):
    """Create an account. Password: 8+ characters with a letter and a digit."""
    try:
        user = auth_service.create_user(username, password, list(roles), theater_id=theater_id)
        db.session.commit()
    except PipelineError as e:
        db.session.rollback()
        click.echo(f"FAIL {e.message}")
        return
    click.echo(f"PASS Created user {user.username} (ID: {user.id}, roles: {', '.join(user.roles)})")


@click.group('payments')
def payments_group():
    """Payment maintenance commands."""


@payments_group.command('sweep')
@with_appcontext
def sweep_payments():
    """Cancel pending orders whose payment intent expired."""
    cancelled = payment_service.sweep_expired_intents()
    click.echo(f"PASS Cancelled {cancelled} expired order(s)")


@click.group('orders')
def orders_group():
    """Order inspection and recovery commands."""


@orders_group.command('quarantined')
@click.option('--theater-id', type=int, default=None)
@with_appcontext
def list_quarantined(theater_id):
    query = db.session.query(Order).filter(Order.state == STATE_SYNC_FAILED)
    if theater_id is not None:
        query = query.filter(Order.theater_id == theater_id)
    orders = query.order_by(Order.id).all()
    if not orders:
        click.echo("PASS No quarantined orders")
        return
    for order in orders:
        click.echo(f"{order.id:>6}  {order.order_number}  {order.failure_reason}")


@orders_group.command('recover')
@click.argument('order_id', type=int)
@with_appcontext
def recover_order(order_id):
    """Return a sync_failed order to paid (verified payment) or pending_payment."""
    try:
        order = order_service.recover_quarantined(order_id)
    except PipelineError as e:
        db.session.rollback()
        click.echo(f"FAIL {e.message}")
        return
    click.echo(f"PASS Order {order.order_number} is now {order.state}")


@click.group('stock')
def stock_group():
    """Stock ledger inspection commands."""


@stock_group.command('balance')
@click.option('--theater-id', type=int, required=True)
@click.option('--product-id', type=int, required=True)
@click.option('--source', type=click.Choice(list(STOCK_SOURCES)), default=STOCK_SOURCE_CAFE)
@with_appcontext
def stock_balance(theater_id, product_id, source):
    balance = stock_ledger_service.get_balance(theater_id, product_id, stock_source=source)
    click.echo(
        f"Product {product_id} ({source}) {balance.year}-{balance.month:02d}: "
        f"opening {format_quantity(balance.opening_this_month)} {balance.stock_unit}, "
        f"balance {format_quantity(balance.balance)} {balance.stock_unit}, "
        f"{len(balance.entries_this_month)} entries this month"
    )


@click.group('broadcast')
def broadcast_group():
    """Broadcast outbox maintenance."""


@broadcast_group.command('prune')
@click.option('--hours', type=int, default=None, help='Retention window (default BROADCAST_RETENTION_HOURS)')
@with_appcontext
def prune_events(hours):
    hours = hours if hours is not None else current_app.config["BROADCAST_RETENTION_HOURS"]
    deleted = broadcast_service.prune(hours)
    db.session.commit()
    click.echo(f"PASS Deleted {deleted} event(s) older than {hours}h")


@click.group('sessions')
def sessions_group():
    """Session maintenance."""


@sessions_group.command('cleanup')
@click.option('--days', type=int, default=30)
@with_appcontext
def cleanup_sessions(days):
    deleted = session_service.cleanup_expired_sessions(older_than_days=days)
    click.echo(f"PASS Deleted {deleted} expired or revoked session(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(theaters_group)
    app.cli.add_command(users_group)
    app.cli.add_command(payments_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(broadcast_group)
    app.cli.add_command(sessions_group)
