"""Level curve computation.  Pure functions, no database access."""
from dataclasses import dataclass

# Step cost: A + B*(level-1) + C*(level-1)^2, flat after CAP_LEVEL
BASE_A = 150
BASE_B = 30
BASE_C = 1
CAP_LEVEL = 200


@dataclass(frozen=True)
class LevelProgress:
    level: int
    remainder: int


@dataclass(frozen=True)
class ExperienceSnapshot:
    """Level state before and after applying an XP delta to a running total."""
    previous_total: int
    new_total: int
    previous_level: int
    new_level: int
    levels_gained: int
    remainder_towards_next_level: int
    next_level_cost: int


def xp_for_next_level(level: int) -> int:
    """XP required to go from ``level`` to ``level + 1``.

    The quadratic curve is evaluated at ``min(level, CAP_LEVEL)``, so every
    level past the cap costs the same as the cap level itself.
    """
    step = min(max(level, 1), CAP_LEVEL) - 1
    return BASE_A + BASE_B * step + BASE_C * step * step


def total_xp_for_level(level: int) -> int:
    """Total XP needed to reach ``level`` starting from level 1 with 0 XP."""
    return sum(xp_for_next_level(i) for i in range(1, level))


def level_from_xp(xp: int) -> LevelProgress:
    """
    Map an XP total to a level.

    Walks up from level 1, subtracting each level's cost while the remaining
    pool covers it.  The remainder is the XP already earned towards the next
    level.
    """
    if xp <= 0:
        return LevelProgress(level=1, remainder=0)

    level = 1
    remaining = xp
    while True:
        cost = xp_for_next_level(level)
        if remaining < cost:
            return LevelProgress(level=level, remainder=remaining)
        remaining -= cost
        level += 1


def apply_experience_totals(previous_total: int, delta: int) -> ExperienceSnapshot:
    """Apply ``delta`` to ``previous_total`` and describe the level change."""
    new_total = previous_total + delta
    before = level_from_xp(previous_total)
    after = level_from_xp(new_total)
    return ExperienceSnapshot(
        previous_total=previous_total,
        new_total=new_total,
        previous_level=before.level,
        new_level=after.level,
        levels_gained=after.level - before.level,
        remainder_towards_next_level=after.remainder,
        next_level_cost=xp_for_next_level(after.level),
    )
