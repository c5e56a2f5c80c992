import re
from typing import Set

from errors import InvalidIdentity


# Individual-account base for SteamID64
STEAM_ID64_BASE = 76561197960265728

_STEAM_ID2 = re.compile(r"^STEAM_([0-5]):([01]):(\d+)$")
_STEAM_ID3 = re.compile(r"^\[U:1:(\d+)\]$")
_STEAM_ID64 = re.compile(r"^\d{17}$")

MAX_IDENTITY_LENGTH = 32


def _account_id(identity: str) -> int:
    match = _STEAM_ID2.match(identity)
    if match:
        return int(match.group(3)) * 2 + int(match.group(2))

    match = _STEAM_ID3.match(identity)
    if match:
        return int(match.group(1))

    if _STEAM_ID64.match(identity):
        account_id = int(identity) - STEAM_ID64_BASE
        if account_id >= 0:
            return account_id

    raise InvalidIdentity(f"Unrecognised SteamID: {identity!r}")


def to_steam_id64(identity: str) -> str:
    """
    Normalize a SteamID2, SteamID3 or SteamID64 to SteamID64.

    Raises InvalidIdentity for anything else (including "BOT").
    """
    if not isinstance(identity, str):
        raise InvalidIdentity("Identity must be a string")

    identity = identity.strip()
    if not identity or len(identity) > MAX_IDENTITY_LENGTH:
        raise InvalidIdentity("Identity is empty or too long")

    return str(STEAM_ID64_BASE + _account_id(identity))


def to_steam_id2(steam_id64: str, universe: int = 1) -> str:
    account_id = int(steam_id64) - STEAM_ID64_BASE
    return f"STEAM_{universe}:{account_id % 2}:{account_id // 2}"


def to_steam_id3(steam_id64: str) -> str:
    return f"[U:1:{int(steam_id64) - STEAM_ID64_BASE}]"


def identity_forms(identity: str) -> Set[str]:
    """
    Every textual form a stored row may use for this identity.
    Ban and whitelist rows keep whatever form the admin typed.
    """
    steam_id64 = to_steam_id64(identity)
    return {
        steam_id64,
        to_steam_id2(steam_id64, universe=0),
        to_steam_id2(steam_id64, universe=1),
        to_steam_id3(steam_id64),
    }
