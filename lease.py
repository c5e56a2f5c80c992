import logging
import uuid

import redis

logger = logging.getLogger("gate.lease")

# Delete only if the lease is still ours
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def lease_key(steam_id: str) -> str:
    return f"verification:lease:{steam_id}"


class FetchLease:
    """
    Cross-worker claim on an identity's reputation fetch.

    A lease lives at most `ttl` seconds, so a worker that dies mid-fetch
    blocks retries for no longer than the maximum pending age.
    If Redis is unreachable the lease is granted; in-process
    single-flight still holds.
    """

    def __init__(self, client: redis.Redis):
        self._client = client
        self._owner = uuid.uuid4().hex

    def acquire(self, steam_id: str, ttl: int) -> bool:
        try:
            return bool(self._client.set(lease_key(steam_id), self._owner, nx=True, ex=ttl))
        except redis.RedisError as e:
            logger.warning(f"Lease acquire degraded for {steam_id}: {type(e).__name__}")
            return True

    def release(self, steam_id: str) -> None:
        """
        Drop our lease. A lease that expired and was taken by another
        worker, or replaced by a backoff hold, is left alone.
        """
        try:
            released = self._client.eval(RELEASE_SCRIPT, 1, lease_key(steam_id), self._owner)
        except redis.RedisError as e:
            logger.warning(f"Lease release failed for {steam_id}: {type(e).__name__}")
            return

        if not released:
            logger.debug(f"Lease for {steam_id} no longer ours, left in place")

    def hold(self, steam_id: str, seconds: int) -> None:
        """Keep the lease for a retry backoff window after a failed fetch."""
        try:
            self._client.set(lease_key(steam_id), "backoff", ex=max(int(seconds), 1))
        except redis.RedisError as e:
            logger.warning(f"Lease backoff failed for {steam_id}: {type(e).__name__}")
