import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from db import SessionLocal, session_scope
from errors import StoreUnavailable
from models import Ban, WhitelistEntry, Verification, ConnectionLog

logger = logging.getLogger("gate.stores")


# ======================================================
# Base
# ======================================================

class _Store:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self):
        """
        Session bound to this store.
        Any database failure surfaces as StoreUnavailable.
        """
        try:
            with session_scope(self._session_factory) as db:
                yield db
        except SQLAlchemyError as e:
            logger.warning(f"{type(self).__name__} unavailable: {type(e).__name__}")
            raise StoreUnavailable(f"{type(self).__name__}: {e}") from e


# ======================================================
# Bans (read-only)
# ======================================================

class BanStore(_Store):
    def find_active(self, identities: Iterable[str], address: Optional[str]) -> List[Ban]:
        """
        Active bans naming any form of the identity, plus any active
        ban recorded against the connecting address, whatever its type.
        """
        forms = list(identities)
        conditions = [
            Ban.steam_id.in_(forms),
            Ban.steam_id_64.in_(forms),
            Ban.steam_id_3.in_(forms),
        ]
        if address:
            conditions.append(Ban.ip == address)

        with self._session() as db:
            rows = db.execute(
                select(Ban).where(Ban.status == "active", or_(*conditions))
            ).scalars().all()
        return list(rows)


# ======================================================
# Whitelist (read-only)
# ======================================================

class WhitelistStore(_Store):
    def find(self, identities: Iterable[str]) -> List[WhitelistEntry]:
        forms = list(identities)
        with self._session() as db:
            rows = db.execute(
                select(WhitelistEntry).where(
                    or_(
                        WhitelistEntry.steam_id.in_(forms),
                        WhitelistEntry.steam_id_64.in_(forms),
                        WhitelistEntry.steam_id_3.in_(forms),
                    )
                )
            ).scalars().all()
        return list(rows)


# ======================================================
# Verifications (owned by the verification cache)
# ======================================================

class VerificationStore(_Store):
    def get(self, steam_id: str) -> Optional[Verification]:
        with self._session() as db:
            return db.get(Verification, steam_id)

    def create_pending(
        self,
        steam_id: str,
        *,
        now: datetime,
        player_name: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[Verification]:
        """
        Insert a fresh pending record.
        Returns None if another writer created the record first.
        """
        row = Verification(
            steam_id=steam_id,
            player_name=player_name,
            ip_address=ip_address,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        with self._session() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return None
        return row

    def transition(
        self,
        steam_id: str,
        from_status: str,
        to_status: str,
        *,
        now: datetime,
        **fields,
    ) -> Optional[Verification]:
        """
        Compare-and-set status change.

        Applies only if the record is still in `from_status` and unchanged
        since it was read; returns the updated row, or None if the record
        moved underneath us. `updated_at` never goes backwards.
        """
        with self._session() as db:
            current = db.get(Verification, steam_id)
            if current is None or current.status != from_status:
                return None

            previous_updated_at = current.updated_at
            values = dict(fields)
            values["status"] = to_status
            values["updated_at"] = max(now, previous_updated_at)

            result = db.execute(
                update(Verification)
                .where(
                    Verification.steam_id == steam_id,
                    Verification.status == from_status,
                    Verification.updated_at == previous_updated_at,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()

            if result.rowcount != 1:
                return None

            db.refresh(current)
            return current


# ======================================================
# Connection log (append-only)
# ======================================================

class ConnectionLogStore(_Store):
    def append(
        self,
        *,
        steam_id: str,
        player_name: Optional[str],
        player_ip: str,
        server_name: Optional[str],
        server_address: Optional[str],
        verdict: Optional[str],
        connect_time: datetime,
    ) -> None:
        with self._session() as db:
            db.add(
                ConnectionLog(
                    steam_id=steam_id,
                    player_name=player_name or "",
                    player_ip=player_ip or "",
                    server_name=server_name,
                    server_address=server_address,
                    verdict=verdict,
                    connect_time=connect_time,
                )
            )
            db.commit()
