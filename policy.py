from typing import Callable, NamedTuple, Optional

from schemas import ProfileAttributes


class Judgment(NamedTuple):
    status: str            # "allowed" | "denied"
    reason: Optional[str]


# attributes -> Judgment, or None to leave the record "verified"
# for the game-server plugin (or an admin) to judge.
VerificationPolicy = Callable[[ProfileAttributes], Optional[Judgment]]


def defer_to_plugin(attributes: ProfileAttributes) -> Optional[Judgment]:
    return None


class ThresholdPolicy:
    """
    Minimum-bar judgment on fetched attributes.

    - Unset thresholds are ignored
    - A missing attribute fails its threshold
    - With no thresholds at all, judgment is deferred
    """

    def __init__(
        self,
        *,
        min_account_level: Optional[int] = None,
        min_playtime_minutes: Optional[int] = None,
        min_rating: Optional[float] = None,
    ):
        self.min_account_level = min_account_level
        self.min_playtime_minutes = min_playtime_minutes
        self.min_rating = min_rating

    @property
    def configured(self) -> bool:
        return any(
            t is not None
            for t in (self.min_account_level, self.min_playtime_minutes, self.min_rating)
        )

    def __call__(self, attributes: ProfileAttributes) -> Optional[Judgment]:
        if not self.configured:
            return None

        checks = (
            ("account level", attributes.account_level, self.min_account_level),
            ("playtime minutes", attributes.playtime_minutes, self.min_playtime_minutes),
            ("rating", attributes.rating, self.min_rating),
        )

        for label, value, minimum in checks:
            if minimum is None:
                continue
            if value is None:
                return Judgment("denied", f"{label} unavailable")
            if value < minimum:
                return Judgment("denied", f"{label} {value} below {minimum}")

        return Judgment("allowed", "meets reputation thresholds")


def policy_from_settings(settings) -> VerificationPolicy:
    policy = ThresholdPolicy(
        min_account_level=settings.MIN_ACCOUNT_LEVEL,
        min_playtime_minutes=settings.MIN_PLAYTIME_MINUTES,
        min_rating=settings.MIN_RATING,
    )
    return policy if policy.configured else defer_to_plugin
