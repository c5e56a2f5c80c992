"""
Verification cache: the pending -> verified -> allowed/denied lifecycle.

    absent ──> pending ──> verified ──> allowed | denied
                  ^                          │
                  └──────── refresh ─────────┘

A terminal record older than the TTL is stale. Its verdict keeps being
served while a refresh runs (the verdict column survives the trip back
to pending, and through verified until a new judgment replaces it).
A failed fetch leaves the record pending and retryable
once the backoff lease lapses; a crashed worker's lease lapses after
the maximum pending age.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, NamedTuple, Optional

import httpx

from audit import AuditSink, FetchFailedEvent, TransitionEvent
from errors import FetchError, FetchTimeout, FetchFailure, InvalidTransition, StoreUnavailable
from lease import FetchLease
from models import Verification, utcnow
from policy import Judgment, VerificationPolicy, defer_to_plugin
from schemas import ProfileAttributes
from singleflight import SingleFlight
from stores import VerificationStore

logger = logging.getLogger("gate.verification")


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    ALLOWED = "allowed"
    DENIED = "denied"


TERMINAL = {VerificationStatus.ALLOWED, VerificationStatus.DENIED}

# None = absent (no record)
ALLOWED_TRANSITIONS = {
    None: {VerificationStatus.PENDING},
    VerificationStatus.PENDING: {VerificationStatus.VERIFIED},
    VerificationStatus.VERIFIED: TERMINAL,
    VerificationStatus.ALLOWED: {VerificationStatus.PENDING},
    VerificationStatus.DENIED: {VerificationStatus.PENDING},
}


def check_transition(
    steam_id: str,
    from_status: Optional[VerificationStatus],
    to_status: VerificationStatus,
) -> None:
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
        raise InvalidTransition(steam_id, from_status, to_status)


class CacheEntry(NamedTuple):
    status: Optional[VerificationStatus]        # None = absent
    attributes: Optional[ProfileAttributes]
    verdict: Optional[VerificationStatus]       # last allowed/denied judgment
    is_stale: bool
    reason: Optional[str] = None
    updated_at: Optional[datetime] = None


ABSENT = CacheEntry(status=None, attributes=None, verdict=None, is_stale=False)


def _attributes_of(row: Verification) -> Optional[ProfileAttributes]:
    attributes = ProfileAttributes(
        account_level=row.steam_level,
        playtime_minutes=row.playtime_minutes,
        rating=row.rating,
    )
    return None if attributes.is_empty() else attributes


class VerificationCache:
    def __init__(
        self,
        store: VerificationStore,
        fetcher,
        *,
        audit: AuditSink,
        lease: FetchLease,
        policy: VerificationPolicy = defer_to_plugin,
        ttl_seconds: int,
        fetch_timeout: float,
        max_pending_age: int,
        retry_backoff: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_pending_age < fetch_timeout:
            raise ValueError("max_pending_age must cover fetch_timeout")

        self._store = store
        self._fetcher = fetcher
        self._audit = audit
        self._lease = lease
        self._policy = policy
        self._ttl = timedelta(seconds=ttl_seconds)
        self._fetch_timeout = fetch_timeout
        self._max_pending_age = int(max_pending_age)
        self._retry_backoff = int(retry_backoff)
        self._clock = clock
        self._flights = SingleFlight()

    # ======================================================
    # Reads
    # ======================================================

    def get(self, steam_id: str) -> CacheEntry:
        """Current cached state. Store read only, never touches the network."""
        row = self._store.get(steam_id)
        if row is None:
            return ABSENT

        status = VerificationStatus(row.status)
        verdict = VerificationStatus(row.verdict) if row.verdict else None

        if status in TERMINAL:
            is_stale = self._clock() - row.updated_at > self._ttl
        else:
            # A verdict carried through a refresh is from an earlier cycle
            is_stale = verdict is not None

        return CacheEntry(
            status=status,
            attributes=None if status == VerificationStatus.PENDING else _attributes_of(row),
            verdict=verdict,
            is_stale=is_stale,
            reason=row.reason,
            updated_at=row.updated_at,
        )

    def in_flight(self, steam_id: str) -> bool:
        return steam_id in self._flights

    # ======================================================
    # Refresh scheduling
    # ======================================================

    def ensure_fresh(
        self,
        steam_id: str,
        *,
        player_name: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """
        Start (or join) the reputation fetch for an identity if it needs one.

        Returns the in-flight task, whose result is the CacheEntry after the
        fetch (None if it failed), or None when nothing needs fetching.
        Never waits on the network. Must be called from the event loop.
        """
        task = self._flights.get(steam_id)
        if task is not None:
            return task

        entry = self.get(steam_id)
        if not self._needs_fetch(entry):
            return None

        if not self._lease.acquire(steam_id, self._max_pending_age):
            logger.debug(f"Fetch for {steam_id} held by another worker or backing off")
            return None

        try:
            entered = self._enter_pending(steam_id, entry, player_name, ip_address)
        except StoreUnavailable:
            self._lease.release(steam_id)
            raise

        if not entered:
            self._lease.release(steam_id)
            return None

        return self._flights.start(steam_id, self._refresh(steam_id))

    async def drain(self) -> None:
        await self._flights.drain()

    def _needs_fetch(self, entry: CacheEntry) -> bool:
        if entry.status is None:
            return True
        if entry.status == VerificationStatus.PENDING:
            # No local fetch: retry, the lease decides whether it is our turn
            return True
        if entry.status in TERMINAL:
            return entry.is_stale
        # verified: fetched, awaiting judgment
        return False

    def _enter_pending(
        self,
        steam_id: str,
        entry: CacheEntry,
        player_name: Optional[str],
        ip_address: Optional[str],
    ) -> bool:
        now = self._clock()

        if entry.status is None:
            check_transition(steam_id, None, VerificationStatus.PENDING)
            row = self._store.create_pending(
                steam_id, now=now, player_name=player_name, ip_address=ip_address
            )
            if row is None:
                return False
            self._transitioned(steam_id, None, VerificationStatus.PENDING, now=now)
            return True

        if entry.status == VerificationStatus.PENDING:
            return True

        check_transition(steam_id, entry.status, VerificationStatus.PENDING)
        fields = dict(
            verdict=entry.status.value,
            steam_level=None,
            playtime_minutes=None,
            rating=None,
        )
        if player_name:
            fields["player_name"] = player_name
        if ip_address:
            fields["ip_address"] = ip_address

        row = self._store.transition(
            steam_id, entry.status.value, VerificationStatus.PENDING.value, now=now, **fields
        )
        if row is None:
            return False
        self._transitioned(
            steam_id, entry.status, VerificationStatus.PENDING, now=now, reason="refresh"
        )
        return True

    # ======================================================
    # Background fetch
    # ======================================================

    async def _refresh(self, steam_id: str) -> Optional[CacheEntry]:
        try:
            attributes = await asyncio.wait_for(
                self._fetcher.fetch(steam_id), timeout=self._fetch_timeout
            )
        except asyncio.TimeoutError:
            self._fetch_failed(
                steam_id, FetchTimeout(f"no answer within {self._fetch_timeout}s")
            )
            return None
        except FetchError as e:
            self._fetch_failed(steam_id, e)
            return None
        except httpx.HTTPError as e:
            self._fetch_failed(steam_id, FetchFailure(str(e)))
            return None
        except Exception as e:
            # Malformed payloads and fetcher bugs
            self._fetch_failed(steam_id, FetchFailure(f"{type(e).__name__}: {e}"))
            return None

        try:
            return self._complete(steam_id, attributes)
        except StoreUnavailable as e:
            logger.error(f"Could not record fetch result for {steam_id}: {e}")
            self._lease.hold(steam_id, self._retry_backoff)
            return None

    def _fetch_failed(self, steam_id: str, error: FetchError) -> None:
        logger.warning(f"Reputation fetch failed for {steam_id}: {type(error).__name__}: {error}")

        # Record stays pending; retry once the backoff lapses
        self._lease.hold(steam_id, self._retry_backoff)
        self._audit.emit(
            FetchFailedEvent(
                timestamp=self._clock(),
                identity=steam_id,
                error=f"{type(error).__name__}: {error}",
                retry_after_seconds=self._retry_backoff,
            )
        )

    def _complete(self, steam_id: str, attributes: ProfileAttributes) -> CacheEntry:
        try:
            now = self._clock()
            check_transition(steam_id, VerificationStatus.PENDING, VerificationStatus.VERIFIED)
            row = self._store.transition(
                steam_id,
                VerificationStatus.PENDING.value,
                VerificationStatus.VERIFIED.value,
                now=now,
                steam_level=attributes.account_level,
                playtime_minutes=attributes.playtime_minutes,
                rating=attributes.rating,
            )
            if row is None:
                logger.warning(f"Verification {steam_id} changed during fetch, result discarded")
                return self.get(steam_id)

            self._transitioned(
                steam_id,
                VerificationStatus.PENDING,
                VerificationStatus.VERIFIED,
                now=now,
                attributes=attributes,
            )

            judgment = self._judge(steam_id, attributes)
            if judgment is not None:
                try:
                    self._apply_judgment(
                        steam_id, VerificationStatus(judgment.status), judgment.reason
                    )
                except InvalidTransition:
                    logger.warning(f"Verification {steam_id} was judged elsewhere first")

            return self.get(steam_id)
        finally:
            self._lease.release(steam_id)

    def _judge(self, steam_id: str, attributes: ProfileAttributes) -> Optional[Judgment]:
        try:
            return self._policy(attributes)
        except Exception:
            # Record stays verified; the plugin or an admin can still judge it
            logger.exception(f"Verification policy failed for {steam_id}")
            return None

    # ======================================================
    # Judgment
    # ======================================================

    def resolve(
        self,
        steam_id: str,
        status: VerificationStatus,
        reason: Optional[str] = None,
    ) -> CacheEntry:
        """
        Judge a verified record allowed or denied.
        Used when the policy leaves judgment to the plugin or an admin.
        """
        status = VerificationStatus(status)
        current = self.get(steam_id)
        check_transition(steam_id, current.status, status)
        self._apply_judgment(steam_id, status, reason)
        return self.get(steam_id)

    def _apply_judgment(
        self,
        steam_id: str,
        status: VerificationStatus,
        reason: Optional[str],
    ) -> None:
        check_transition(steam_id, VerificationStatus.VERIFIED, status)

        now = self._clock()
        row = self._store.transition(
            steam_id,
            VerificationStatus.VERIFIED.value,
            status.value,
            now=now,
            verdict=status.value,
            reason=reason,
        )
        if row is None:
            raise InvalidTransition(steam_id, VerificationStatus.VERIFIED, status)

        self._transitioned(
            steam_id, VerificationStatus.VERIFIED, status, now=now, reason=reason
        )

    # ======================================================
    # Audit
    # ======================================================

    def _transitioned(
        self,
        steam_id: str,
        from_status: Optional[VerificationStatus],
        to_status: VerificationStatus,
        *,
        now: datetime,
        attributes: Optional[ProfileAttributes] = None,
        reason: Optional[str] = None,
    ) -> None:
        logger.info(
            f"Verification {steam_id}: {from_status.value if from_status else 'absent'} -> {to_status.value}"
        )
        self._audit.emit(
            TransitionEvent(
                timestamp=now,
                identity=steam_id,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value,
                attributes=attributes,
                reason=reason,
            )
        )
