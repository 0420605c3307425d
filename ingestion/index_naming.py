"""Time-partitioned destination index names."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

DEFAULT_INDEX_PREFIX = "analytics"


class RotationPolicy(str, Enum):
    """How often the destination index changes."""
    NO_ROTATION = "NoRotation"
    ONE_HOUR = "OneHour"
    ONE_DAY = "OneDay"
    ONE_WEEK = "OneWeek"
    ONE_MONTH = "OneMonth"

    @classmethod
    def parse(cls, value: str) -> Optional["RotationPolicy"]:
        """Accepts 'OneDay', 'one_day', 'ONE-DAY' and the like; None if unknown."""
        normalized = value.strip().replace("_", "").replace("-", "").lower()
        for policy in cls:
            if policy.value.lower() == normalized:
                return policy
        return None


def bucket_label(now: datetime, policy: RotationPolicy) -> str:
    """Calendar label of the bucket ``now`` falls in, in UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)

    if policy is RotationPolicy.ONE_HOUR:
        return now.strftime("%Y-%m-%d-%H")
    if policy is RotationPolicy.ONE_DAY:
        return now.strftime("%Y-%m-%d")
    if policy is RotationPolicy.ONE_WEEK:
        iso_year, iso_week, _ = now.isocalendar()
        return f"{iso_year}-w{iso_week:02d}"
    if policy is RotationPolicy.ONE_MONTH:
        return now.strftime("%Y-%m")
    raise ValueError(f"No bucket for rotation policy {policy.value}")


def index_name(
    now: datetime,
    policy: RotationPolicy = RotationPolicy.NO_ROTATION,
    prefix: str = DEFAULT_INDEX_PREFIX,
) -> str:
    """
    Compute the index records are written to at ``now``.

    Examples (policy -> name):
        NoRotation -> analytics
        OneHour    -> analytics-2024-05-01-13
        OneDay     -> analytics-2024-05-01
        OneWeek    -> analytics-2024-w18
        OneMonth   -> analytics-2024-05
    """
    if policy is RotationPolicy.NO_ROTATION:
        return prefix
    return f"{prefix}-{bucket_label(now, policy)}"
