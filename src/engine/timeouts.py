# src/engine/timeouts.py
from typing import Optional, Union

from engine.config import settings
from engine.records import Tier

TIER_MULTIPLIER = {
    Tier.FAST: 1,
    Tier.DEEP: 2,
}

# file count assumed when estimating a repository scan before it is cloned
ASSUMED_FILE_COUNT = 250


def calculate_timeout(
    file_count: int,
    tier: Union[Tier, str],
    base: Optional[float] = None,
    per_file: Optional[float] = None,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    """
    Deadline in seconds for one analyzer run:
    clamp(base + file_count * per_file * tier_multiplier, minimum, maximum).
    """
    base = settings.timeout_base_seconds if base is None else base
    per_file = settings.timeout_per_file_seconds if per_file is None else per_file
    minimum = settings.timeout_min_seconds if minimum is None else minimum
    maximum = settings.timeout_max_seconds if maximum is None else maximum

    multiplier = TIER_MULTIPLIER[Tier(tier)]
    raw = base + max(0, file_count) * per_file * multiplier
    return float(min(max(raw, minimum), maximum))


def estimate_duration(file_count: Optional[int], tier: Union[Tier, str]) -> int:
    count = ASSUMED_FILE_COUNT if file_count is None else file_count
    return int(round(calculate_timeout(count, tier)))
