import re
from datetime import datetime, timedelta
from typing import Iterable, NamedTuple, Optional

from models import Ban
from stores import BanStore, WhitelistStore


# =========================
# Ban durations
# =========================

_DURATION = re.compile(r"^(\d+)(s|m|h|d|mo|y)$")

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "mo": 30 * 86400,   # approximate
    "y": 365 * 86400,   # approximate
}


def parse_duration(spec: Optional[str]) -> Optional[timedelta]:
    """
    "30m", "7d", "1mo" -> timedelta.
    "permanent", "Until ..." and anything unrecognised -> None.
    """
    if not spec:
        return None

    match = _DURATION.match(spec.strip())
    if not match:
        return None

    return timedelta(seconds=int(match.group(1)) * _UNIT_SECONDS[match.group(2)])


def effective_expiry(ban: Ban) -> Optional[datetime]:
    if ban.expires_at is not None:
        return ban.expires_at

    duration = parse_duration(ban.duration)
    if duration is None or ban.created_at is None:
        return None
    return ban.created_at + duration


def is_enforceable(ban: Ban, now: datetime) -> bool:
    if ban.status != "active":
        return False
    expiry = effective_expiry(ban)
    return expiry is None or expiry > now


# =========================
# Ban check
# =========================

class BanCheckResult(NamedTuple):
    banned: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


def check_ban(
    store: BanStore,
    identities: Iterable[str],
    address: Optional[str],
    now: datetime,
) -> BanCheckResult:
    """
    Any enforceable ban on the identity or address denies.
    The most restrictive one is reported: permanent first, then latest expiry.
    """
    enforceable = [b for b in store.find_active(identities, address) if is_enforceable(b, now)]
    if not enforceable:
        return BanCheckResult(banned=False)

    def severity(ban: Ban):
        expiry = effective_expiry(ban)
        return (expiry is None, expiry or datetime.min)

    worst = max(enforceable, key=severity)
    return BanCheckResult(
        banned=True,
        reason=worst.reason or "Banned",
        expires_at=effective_expiry(worst),
    )


# =========================
# Whitelist check
# =========================

def check_whitelist(store: WhitelistStore, identities: Iterable[str]) -> bool:
    return any(entry.status == "approved" for entry in store.find(identities))
