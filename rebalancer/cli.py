"""CLI tool for admin operations.

Usage:
    python -m rebalancer.cli <command>

Commands:
    init-db          create tables and run migrations
    add-user         register a custodial wallet for a Telegram user
    track-position   start monitoring an existing on-chain position
    scan-once        run a single scan and print the summary
    refresh-stats    recompute per-user aggregates from the position table
    serve            run the API and scheduler
"""

import asyncio
import getpass
import json
import sys

from sqlmodel import Session, select

from rebalancer.config import settings
from rebalancer.database import engine, create_db_and_tables
from rebalancer.models import User
from rebalancer.services.ledger import Ledger
from rebalancer.utils.logging import setup_logging


def init_db():
    create_db_and_tables()
    print("Database ready.")


def add_user():
    """Register a Telegram user and their Fernet-encrypted signing key."""
    from rebalancer.services.wallet import WalletError, seal_secret

    create_db_and_tables()

    raw_id = input("Telegram user id: ").strip()
    if not raw_id.isdigit():
        print("Telegram user id must be numeric.")
        sys.exit(1)
    telegram_id = int(raw_id)
    username = input("Username (optional): ").strip() or None

    with Session(engine) as session:
        existing = session.exec(select(User).where(User.telegram_id == telegram_id)).first()
        if existing:
            print(f"User with telegram id {telegram_id} already exists (id={existing.id}).")
            sys.exit(1)

    secret = getpass.getpass("Wallet secret key (base58): ")
    try:
        address, encrypted = seal_secret(secret)
    except WalletError as e:
        print(str(e))
        sys.exit(1)

    user = Ledger(engine).add_user(telegram_id, address, encrypted, username=username)
    print(f"\nUser {user.id} created for wallet {address}. Monitoring is enabled.")


async def _track_position(user_id: int, position_address: str):
    from rebalancer.engine.scanner import build_scanner

    scanner = build_scanner()
    pool = scanner.executor.pool
    try:
        snapshot = await pool.get_position(position_address)
        if snapshot is None or not snapshot.bins:
            print(f"Position {position_address} not found on-chain or empty.")
            sys.exit(1)
        active = await pool.get_active_bin()
    finally:
        await scanner.close()

    position = Ledger(engine).create_position(
        user_id=user_id,
        position_address=position_address,
        pool_address=settings.pool_address,
        base_amount=snapshot.base_total,
        quote_amount=snapshot.quote_total,
        entry_price=active.price,
        entry_bin=active.bin_id,
    )
    print(
        f"Tracking position {position.position_address}: bins {snapshot.min_bin}-{snapshot.max_bin}, "
        f"{snapshot.base_total} {settings.base_symbol} + {snapshot.quote_total} {settings.quote_symbol}"
    )


def track_position():
    create_db_and_tables()
    raw_id = input("User id: ").strip()
    if not raw_id.isdigit() or Ledger(engine).get_user(int(raw_id)) is None:
        print("Unknown user id.")
        sys.exit(1)
    position_address = input("Position address: ").strip()
    if not position_address:
        print("Position address cannot be empty.")
        sys.exit(1)
    asyncio.run(_track_position(int(raw_id), position_address))


async def _scan_once():
    from rebalancer.engine.scanner import build_scanner

    scanner = build_scanner()
    try:
        summary = await scanner.run_once()
    finally:
        await scanner.close()
    print(json.dumps(summary.to_dict(), indent=2))


def scan_once():
    create_db_and_tables()
    asyncio.run(_scan_once())


def refresh_stats():
    create_db_and_tables()
    ledger = Ledger(engine)
    with Session(engine) as session:
        user_ids = session.exec(select(User.id)).all()
    for user_id in user_ids:
        stats = ledger.update_user_stats(user_id)
        print(
            f"User {user_id}: {stats.active_positions} active, {stats.total_positions} closed, "
            f"PnL ${stats.total_pnl_usd:.2f}"
        )


def serve():
    import uvicorn

    host = sys.argv[2] if len(sys.argv) > 2 else "127.0.0.1"
    port = int(sys.argv[3]) if len(sys.argv) > 3 else 8000
    uvicorn.run("rebalancer.main:app", host=host, port=port)


COMMANDS = {
    "init-db": init_db,
    "add-user": add_user,
    "track-position": track_position,
    "scan-once": scan_once,
    "refresh-stats": refresh_stats,
    "serve": serve,
}


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m rebalancer.cli <command>")
        print(f"Commands: {', '.join(COMMANDS)}")
        sys.exit(1)

    command = COMMANDS.get(sys.argv[1])
    if command is None:
        print(f"Unknown command: {sys.argv[1]}")
        sys.exit(1)
    setup_logging()
    command()


if __name__ == "__main__":
    main()
