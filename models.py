from datetime import datetime, timezone

from sqlalchemy import Column, Integer, BigInteger, String, Text, Float, DateTime, Index

from db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; all persisted times are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Ban(Base):
    """
    Read-only model for bans.
    Written by the admin backend; the gate only reads it.
    """
    __tablename__ = "bans"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False, default="")
    steam_id = Column(String(32), nullable=False, index=True)
    steam_id_3 = Column(String(32), nullable=True)
    steam_id_64 = Column(String(32), nullable=True, index=True)
    ip = Column(String(45), nullable=False, default="", index=True)
    ban_type = Column(String(16), nullable=False, default="account")  # account / ip
    reason = Column(Text, nullable=True)
    duration = Column(String(32), nullable=False, default="permanent")
    status = Column(String(16), nullable=False, default="active")  # active / unbanned / expired
    admin_name = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=True)  # NULL = derived from duration
    created_at = Column(DateTime, nullable=False, default=utcnow)


class WhitelistEntry(Base):
    """
    Read-only model for the trusted-player whitelist.
    """
    __tablename__ = "whitelist"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    steam_id = Column(String(32), nullable=False, unique=True)
    steam_id_3 = Column(String(32), nullable=True)
    steam_id_64 = Column(String(32), nullable=True, index=True)
    name = Column(String(128), nullable=False, default="")
    status = Column(String(16), nullable=False, default="approved")  # approved / pending / rejected
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Verification(Base):
    """
    Reputation verification cache, keyed by SteamID64.
    The gate is the only writer of status transitions.
    """
    __tablename__ = "player_verifications"

    steam_id = Column(String(32), primary_key=True)
    player_name = Column(String(128), nullable=True)
    ip_address = Column(String(45), nullable=True)
    status = Column(String(16), nullable=False, default="pending")  # pending / verified / allowed / denied
    # Last terminal judgment, kept while a refresh is in flight
    verdict = Column(String(16), nullable=True)
    reason = Column(Text, nullable=True)
    steam_level = Column(Integer, nullable=True)
    playtime_minutes = Column(Integer, nullable=True)
    rating = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_status", "status"),)


class ConnectionLog(Base):
    """
    Append-only record of connection attempts, for audit and analytics.
    """
    __tablename__ = "player_records"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    player_name = Column(String(128), nullable=False, default="")
    steam_id = Column(String(32), nullable=False, index=True)
    player_ip = Column(String(45), nullable=False, default="")
    server_name = Column(String(128), nullable=True)
    server_address = Column(String(64), nullable=True)
    verdict = Column(String(16), nullable=True)
    connect_time = Column(DateTime, nullable=False, default=utcnow)
