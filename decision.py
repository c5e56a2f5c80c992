import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from audit import AuditSink, DecisionEvent
from checks import check_ban, check_whitelist
from errors import StoreUnavailable
from models import utcnow
from schemas import ProfileAttributes, ServerContext
from steam_ids import identity_forms, to_steam_id64
from stores import BanStore, ConnectionLogStore, WhitelistStore
from verification import VerificationCache, VerificationStatus

logger = logging.getLogger("gate.decision")


class Verdict(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"


class Rule(str, Enum):
    BAN = "ban"
    WHITELIST = "whitelist"
    VERIFICATION_DISABLED = "verification-disabled"
    CACHE_HIT = "cache-hit"
    CACHE_MISS = "cache-miss"
    AWAITING_JUDGMENT = "awaiting-judgment"
    STORE_UNAVAILABLE = "store-unavailable"


class DecisionResult(BaseModel):
    verdict: Verdict
    rule: Rule
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    stale: bool = False
    attributes: Optional[ProfileAttributes] = None


class DecisionEngine:
    """
    Answers "may this player connect now?".

    Strict precedence:
    - Ban           -> DENY (overrides everything)
    - Whitelist     -> ALLOW (no reputation lookup)
    - Cached verdict -> served as-is, even if stale (refresh in background)
    - Nothing yet   -> PENDING, reputation fetch scheduled

    PENDING and UNKNOWN are not engine policy: the caller decides whether
    they mean provisional entry, a queue, or a kick.
    """

    def __init__(
        self,
        *,
        bans: BanStore,
        whitelist: WhitelistStore,
        cache: VerificationCache,
        connections: ConnectionLogStore,
        audit: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._bans = bans
        self._whitelist = whitelist
        self._cache = cache
        self._connections = connections
        self._audit = audit
        self._clock = clock

    @property
    def cache(self) -> VerificationCache:
        return self._cache

    async def evaluate(
        self,
        identity: str,
        address: str,
        server: Optional[ServerContext] = None,
        player_name: Optional[str] = None,
    ) -> DecisionResult:
        """
        Never waits on the reputation source.
        Raises InvalidIdentity for malformed identities.
        """
        steam_id = to_steam_id64(identity)
        server = server or ServerContext()
        now = self._clock()

        try:
            result = self._decide(steam_id, address, server, player_name, now)
        except StoreUnavailable as e:
            # Never default to allow on infrastructure failure
            logger.error(f"Decision for {steam_id} unavailable: {e}")
            result = DecisionResult(
                verdict=Verdict.UNKNOWN,
                rule=Rule.STORE_UNAVAILABLE,
                reason="Access records unavailable",
            )

        self._record(steam_id, address, server, player_name, now, result)
        return result

    # --------------------------------------------------
    # Precedence
    # --------------------------------------------------

    def _decide(
        self,
        steam_id: str,
        address: str,
        server: ServerContext,
        player_name: Optional[str],
        now: datetime,
    ) -> DecisionResult:
        forms = identity_forms(steam_id)

        ban = check_ban(self._bans, forms, address, now)
        if ban.banned:
            return DecisionResult(
                verdict=Verdict.DENY,
                rule=Rule.BAN,
                reason=ban.reason,
                expires_at=ban.expires_at,
            )

        if check_whitelist(self._whitelist, forms):
            return DecisionResult(verdict=Verdict.ALLOW, rule=Rule.WHITELIST)

        if not server.verification_enabled:
            return DecisionResult(verdict=Verdict.ALLOW, rule=Rule.VERIFICATION_DISABLED)

        entry = self._cache.get(steam_id)

        if entry.verdict is not None:
            if entry.is_stale:
                self._refresh_in_background(steam_id, player_name, address)
            return DecisionResult(
                verdict=Verdict.ALLOW if entry.verdict == VerificationStatus.ALLOWED else Verdict.DENY,
                rule=Rule.CACHE_HIT,
                reason=entry.reason,
                stale=entry.is_stale,
                attributes=entry.attributes,
            )

        if entry.status == VerificationStatus.VERIFIED:
            return DecisionResult(
                verdict=Verdict.PENDING,
                rule=Rule.AWAITING_JUDGMENT,
                reason="Reputation fetched, awaiting judgment",
                attributes=entry.attributes,
            )

        # Absent or pending
        self._cache.ensure_fresh(steam_id, player_name=player_name, ip_address=address)
        return DecisionResult(
            verdict=Verdict.PENDING,
            rule=Rule.CACHE_MISS,
            reason="Reputation check in progress",
        )

    def _refresh_in_background(self, steam_id: str, player_name: Optional[str], address: str) -> None:
        # The stale verdict is still served if the refresh cannot start
        try:
            self._cache.ensure_fresh(steam_id, player_name=player_name, ip_address=address)
        except StoreUnavailable as e:
            logger.warning(f"Refresh for {steam_id} not scheduled: {e}")

    # --------------------------------------------------
    # Side effects (every evaluation)
    # --------------------------------------------------

    def _record(
        self,
        steam_id: str,
        address: str,
        server: ServerContext,
        player_name: Optional[str],
        now: datetime,
        result: DecisionResult,
    ) -> None:
        try:
            self._connections.append(
                steam_id=steam_id,
                player_name=player_name,
                player_ip=address,
                server_name=server.name,
                server_address=server.address,
                verdict=result.verdict.value,
                connect_time=now,
            )
        except StoreUnavailable as e:
            logger.warning(f"Connection log append failed for {steam_id}: {e}")

        self._audit.emit(
            DecisionEvent(
                timestamp=now,
                identity=steam_id,
                address=address,
                server_name=server.name,
                server_address=server.address,
                verdict=result.verdict.value,
                deciding_rule=result.rule.value,
                reason=result.reason,
            )
        )
