"""Durable position bookkeeping.

Every multi-row change (close old + open new + stats) happens inside one
session and one commit, so a failure leaves either the old state or the new
state, never a position that is both active and closed.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from rebalancer.engine.errors import PositionNotFoundError
from rebalancer.engine.settlement import Settlement
from rebalancer.models import Position, ScanLog, User, UserStats
from rebalancer.schemas.pool import CreatedPosition
from rebalancer.utils.logging import short_id

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Ledger:
    def __init__(self, db: Engine):
        self.db = db

    def _session(self) -> Session:
        return Session(self.db, expire_on_commit=False)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_monitored_users(self) -> list[tuple[User, list[Position]]]:
        """Users with automation on, each with their active positions (oldest first)."""
        with self._session() as session:
            users = session.exec(
                select(User).where(User.is_monitoring == True).order_by(User.id)
            ).all()
            result = []
            for user in users:
                positions = session.exec(
                    select(Position)
                    .where(Position.user_id == user.id, Position.is_active == True)
                    .order_by(Position.created_at)
                ).all()
                result.append((user, list(positions)))
        return result

    def get_position(self, address: str) -> Position | None:
        with self._session() as session:
            return session.exec(
                select(Position).where(Position.position_address == address)
            ).first()

    def get_user(self, user_id: int) -> User | None:
        with self._session() as session:
            return session.get(User, user_id)

    def list_positions(self, user_id: int | None = None, active_only: bool = False) -> list[Position]:
        with self._session() as session:
            query = select(Position)
            if user_id is not None:
                query = query.where(Position.user_id == user_id)
            if active_only:
                query = query.where(Position.is_active == True)
            return list(session.exec(query.order_by(Position.created_at.desc())).all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_user(
        self,
        telegram_id: int,
        wallet_address: str,
        wallet_secret_encrypted: str,
        username: str | None = None,
        is_monitoring: bool = True,
    ) -> User:
        with self._session() as session:
            user = User(
                telegram_id=telegram_id,
                username=username,
                wallet_address=wallet_address,
                wallet_secret_encrypted=wallet_secret_encrypted,
                is_monitoring=is_monitoring,
            )
            session.add(user)
            session.commit()
            session.refresh(user)
        logger.info(f"Added user {user.id} (telegram {telegram_id}, wallet {short_id(wallet_address)})")
        return user

    def set_monitoring(self, user_id: int, enabled: bool) -> User | None:
        with self._session() as session:
            user = session.get(User, user_id)
            if not user:
                return None
            user.is_monitoring = enabled
            user.updated_at = _now()
            session.add(user)
            session.commit()
        logger.info(f"User {user_id} monitoring {'enabled' if enabled else 'disabled'}")
        return user

    def touch_position(self, address: str):
        with self._session() as session:
            position = session.exec(
                select(Position).where(Position.position_address == address)
            ).first()
            if position:
                position.last_checked = _now()
                session.add(position)
                session.commit()

    def create_position(
        self,
        user_id: int,
        position_address: str,
        pool_address: str,
        base_amount: float,
        quote_amount: float,
        entry_price: float,
        entry_bin: int,
    ) -> Position:
        with self._session() as session:
            position = self._new_position(
                session, user_id, position_address, pool_address,
                base_amount, quote_amount, entry_price, entry_bin,
            )
            self._refresh_stats(session, user_id)
            session.commit()
            session.refresh(position)
        return position

    def record_reposition(
        self,
        old_address: str,
        settlement: Settlement,
        created: CreatedPosition,
        pool_address: str,
        entry_price: float,
        entry_bin: int,
    ) -> tuple[Position, Position]:
        """Close the old row and open the new one in a single commit."""
        with self._session() as session:
            old = self._require(session, old_address)
            self._close(session, old, settlement)
            new = self._new_position(
                session, old.user_id, created.address, pool_address,
                created.base_amount, created.quote_amount, entry_price, entry_bin,
            )
            self._refresh_stats(session, old.user_id, repositioned=True)
            session.commit()
            session.refresh(new)
        logger.info(
            f"[{short_id(old_address)}] Recorded reposition -> {short_id(created.address)} "
            f"(pnl=${settlement.pnl_usd:.2f})"
        )
        return old, new

    def record_failed_reposition(self, old_address: str, settlement: Settlement) -> Position:
        """Close the old row after its replacement could not be opened."""
        with self._session() as session:
            old = self._require(session, old_address)
            self._close(session, old, settlement)
            self._refresh_stats(session, old.user_id)
            session.commit()
        return old

    def close_stale_position(self, address: str) -> Position | None:
        """Mark a position gone from the chain as closed, without settlement figures."""
        with self._session() as session:
            position = session.exec(
                select(Position).where(Position.position_address == address)
            ).first()
            if not position or not position.is_active:
                return position
            position.is_active = False
            position.closed_at = _now()
            session.add(position)
            self._refresh_stats(session, position.user_id)
            session.commit()
        logger.warning(f"[{short_id(address)}] Not found on-chain, marked closed")
        return position

    def update_user_stats(self, user_id: int) -> UserStats:
        with self._session() as session:
            stats = self._refresh_stats(session, user_id)
            session.commit()
        return stats

    def position_stats(self, user_id: int) -> dict[str, Any]:
        with self._session() as session:
            stats = session.exec(select(UserStats).where(UserStats.user_id == user_id)).first()
            if stats is None:
                stats = self._refresh_stats(session, user_id)
                session.commit()
            return {
                "user_id": user_id,
                "total_positions": stats.total_positions,
                "active_positions": stats.active_positions,
                "total_base_fees": stats.total_base_fees,
                "total_quote_fees": stats.total_quote_fees,
                "total_pnl_usd": stats.total_pnl_usd,
                "repositions": stats.repositions,
                "updated_at": stats.updated_at,
            }

    def log_scan(
        self,
        status: str,
        action: str,
        user_id: int | None = None,
        position_address: str | None = None,
        message: str | None = None,
        **fields: Any,
    ):
        with self._session() as session:
            session.add(ScanLog(
                status=status,
                action=action,
                user_id=user_id,
                position_address=position_address,
                message=message,
                **fields,
            ))
            session.commit()

    def recent_scan_logs(self, limit: int = 50, position_address: str | None = None) -> list[ScanLog]:
        with self._session() as session:
            query = select(ScanLog)
            if position_address:
                query = query.where(ScanLog.position_address == position_address)
            return list(session.exec(query.order_by(ScanLog.timestamp.desc()).limit(limit)).all())

    # ------------------------------------------------------------------
    # Helpers (caller commits)
    # ------------------------------------------------------------------

    @staticmethod
    def _require(session: Session, address: str) -> Position:
        position = session.exec(
            select(Position).where(Position.position_address == address)
        ).first()
        if position is None:
            raise PositionNotFoundError(f"Position {address} is not tracked")
        return position

    @staticmethod
    def _new_position(
        session: Session,
        user_id: int,
        position_address: str,
        pool_address: str,
        base_amount: float,
        quote_amount: float,
        entry_price: float,
        entry_bin: int,
    ) -> Position:
        position = Position(
            position_address=position_address,
            user_id=user_id,
            pool_address=pool_address,
            base_amount=base_amount,
            quote_amount=quote_amount,
            entry_price=entry_price,
            entry_bin=entry_bin,
            is_active=True,
        )
        session.add(position)
        session.flush()
        return position

    @staticmethod
    def _close(session: Session, position: Position, settlement: Settlement) -> Position:
        if not position.is_active:
            logger.info(f"[{short_id(position.position_address)}] Already closed, leaving as is")
            return position
        position.is_active = False
        position.closed_at = _now()
        position.exit_price = settlement.exit_price
        position.exit_bin = settlement.exit_bin
        position.base_returned = settlement.base_returned
        position.quote_returned = settlement.quote_returned
        position.base_fees = settlement.base_fees
        position.quote_fees = settlement.quote_fees
        position.pnl_usd = settlement.pnl_usd
        position.pnl_percent = settlement.pnl_percent
        session.add(position)
        session.flush()
        return position

    @staticmethod
    def _refresh_stats(session: Session, user_id: int, repositioned: bool = False) -> UserStats:
        closed = session.exec(
            select(
                func.count(Position.id),
                func.coalesce(func.sum(Position.base_fees), 0.0),
                func.coalesce(func.sum(Position.quote_fees), 0.0),
                func.coalesce(func.sum(Position.pnl_usd), 0.0),
            ).where(Position.user_id == user_id, Position.is_active == False)
        ).one()
        active = session.exec(
            select(func.count(Position.id)).where(
                Position.user_id == user_id, Position.is_active == True
            )
        ).one()

        stats = session.exec(select(UserStats).where(UserStats.user_id == user_id)).first()
        if stats is None:
            stats = UserStats(user_id=user_id)
        stats.total_positions = closed[0]
        stats.total_base_fees = float(closed[1])
        stats.total_quote_fees = float(closed[2])
        stats.total_pnl_usd = float(closed[3])
        stats.active_positions = active
        if repositioned:
            stats.repositions += 1
        stats.updated_at = _now()
        session.add(stats)
        session.flush()
        return stats
