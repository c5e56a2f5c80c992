import hashlib
import hmac

from fastapi import HTTPException, Request, status

from config import settings

PLUGIN_KEY_HEADER = "x-api-key"
MIN_KEY_LENGTH = 20


def hash_plugin_key(raw_key: str) -> str:
    """
    SHA-256 of a plugin key.
    Raw keys are NEVER stored or logged; only their hashes are configured.
    """
    return hashlib.sha256(raw_key.encode()).hexdigest()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def require_plugin(request: Request) -> str:
    """
    Dependency: the caller is a registered game-server plugin.
    Returns the key hash, which identifies the plugin in logs.
    """
    raw_key = request.headers.get(PLUGIN_KEY_HEADER)
    if not raw_key:
        raise _unauthorized("API key missing")

    if len(raw_key) < MIN_KEY_LENGTH:
        raise _unauthorized("Invalid API key")

    key_hash = hash_plugin_key(raw_key)
    if not any(hmac.compare_digest(key_hash, known) for known in settings.plugin_key_hashes()):
        raise _unauthorized("Invalid API key")

    return key_hash
