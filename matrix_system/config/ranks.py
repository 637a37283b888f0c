# matrix_system/config/ranks.py
"""
Matrix rank ladder configuration.

The ladder is an ordered table keyed by rank_key. New ranks are added as data
(RANK_CONFIG in the environment) rather than code. A rank key that is not on
the ladder is a configuration error and is never mapped to a default.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional
import logging

from matrix_system.errors import RankConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankDefinition:
    """One ladder position."""
    rank_key: str
    rank_name: str
    weekly_cap_cents: int
    eligible_depth: int
    min_active_recruits: int = 0
    min_team_size: int = 0
    min_retention_bp: int = 0  # basis points, 5000 = 50%
    min_support_actions: int = 0

    def toPublicDict(self) -> Dict[str, Any]:
        """Shape used by the dashboard read model."""
        return {
            "rank_key": self.rank_key,
            "rank_name": self.rank_name,
            "weekly_cap_cents": self.weekly_cap_cents,
            "eligible_depth": self.eligible_depth,
            "min_active_recruits": self.min_active_recruits,
            "min_team_size": self.min_team_size,
        }


# Built-in ladder, lowest first
DEFAULT_RANK_CONFIG: List[Dict[str, Any]] = [
    {"rank_key": "promoranger", "rank_name": "Promoranger",
     "weekly_cap_cents": 5000, "eligible_depth": 1,
     "min_active_recruits": 0, "min_team_size": 0, "min_retention_bp": 0, "min_support_actions": 0},
    {"rank_key": "entered_apprentice", "rank_name": "Entered Apprentice",
     "weekly_cap_cents": 10000, "eligible_depth": 2,
     "min_active_recruits": 3, "min_team_size": 5, "min_retention_bp": 5000, "min_support_actions": 3},
    {"rank_key": "fellow_craft", "rank_name": "Fellow Craft",
     "weekly_cap_cents": 15000, "eligible_depth": 3,
     "min_active_recruits": 5, "min_team_size": 15, "min_retention_bp": 5500, "min_support_actions": 3},
    {"rank_key": "master_mason", "rank_name": "Master Mason",
     "weekly_cap_cents": 20000, "eligible_depth": 4,
     "min_active_recruits": 8, "min_team_size": 30, "min_retention_bp": 6000, "min_support_actions": 4},
    {"rank_key": "presidential", "rank_name": "Presidential",
     "weekly_cap_cents": 25000, "eligible_depth": 5,
     "min_active_recruits": 12, "min_team_size": 50, "min_retention_bp": 7000, "min_support_actions": 5},
    {"rank_key": "diamond", "rank_name": "Diamond",
     "weekly_cap_cents": 50000, "eligible_depth": 6,
     "min_active_recruits": 20, "min_team_size": 100, "min_retention_bp": 8000, "min_support_actions": 6},
    {"rank_key": "blue_diamond", "rank_name": "Blue Diamond",
     "weekly_cap_cents": 100000, "eligible_depth": 7,
     "min_active_recruits": 35, "min_team_size": 250, "min_retention_bp": 9000, "min_support_actions": 8},
]

_INT_FIELDS = (
    "weekly_cap_cents",
    "eligible_depth",
    "min_active_recruits",
    "min_team_size",
    "min_retention_bp",
    "min_support_actions",
)


class RankLadder:
    """Ordered, immutable rank table."""

    def __init__(self, ranks: List[RankDefinition]):
        if not ranks:
            raise RankConfigurationError("Rank ladder is empty")

        self._ranks = list(ranks)
        self._positions: Dict[str, int] = {}

        for position, rank in enumerate(self._ranks):
            if rank.rank_key in self._positions:
                raise RankConfigurationError(f"Duplicate rank key '{rank.rank_key}'")
            self._positions[rank.rank_key] = position

    @classmethod
    def fromConfig(cls, raw_config: List[Dict[str, Any]]) -> "RankLadder":
        """
        Build ladder from raw config rows (lowest rank first).

        Raises:
            RankConfigurationError: On missing keys or invalid values
        """
        ranks = []
        for row in raw_config:
            try:
                values = {field: int(row.get(field, 0)) for field in _INT_FIELDS}
                rank = RankDefinition(
                    rank_key=str(row["rank_key"]),
                    rank_name=str(row.get("rank_name") or row["rank_key"]),
                    **values
                )
            except (KeyError, TypeError, ValueError) as e:
                raise RankConfigurationError(f"Invalid rank configuration row {row}: {e}")

            negative = [field for field in _INT_FIELDS if getattr(rank, field) < 0]
            if negative:
                raise RankConfigurationError(
                    f"Rank '{rank.rank_key}' has negative values: {', '.join(negative)}"
                )
            if rank.min_retention_bp > 10000:
                raise RankConfigurationError(
                    f"Rank '{rank.rank_key}' min_retention_bp exceeds 10000"
                )

            ranks.append(rank)

        return cls(ranks)

    def __len__(self):
        return len(self._ranks)

    def __iter__(self):
        return iter(self._ranks)

    def __contains__(self, rank_key: str) -> bool:
        return rank_key in self._positions

    def get(self, rank_key: str) -> RankDefinition:
        """
        Get rank by key.

        Raises:
            RankConfigurationError: If rank_key is not on the ladder
        """
        position = self._positions.get(rank_key)
        if position is None:
            raise RankConfigurationError(f"Rank '{rank_key}' is not configured")
        return self._ranks[position]

    def position(self, rank_key: str) -> int:
        self.get(rank_key)
        return self._positions[rank_key]

    def floor(self) -> RankDefinition:
        return self._ranks[0]

    def next(self, rank_key: str) -> Optional[RankDefinition]:
        """Rank one step up, None at the top."""
        position = self.position(rank_key)
        if position + 1 < len(self._ranks):
            return self._ranks[position + 1]
        return None

    def previous(self, rank_key: str) -> Optional[RankDefinition]:
        """Rank one step down, None at the floor."""
        position = self.position(rank_key)
        if position > 0:
            return self._ranks[position - 1]
        return None

    def toConfig(self) -> List[Dict[str, Any]]:
        return [asdict(rank) for rank in self._ranks]


# Lazy-loaded ladder cache
_LADDER_CACHE: Optional[RankLadder] = None


def get_rank_ladder() -> RankLadder:
    """
    Get rank ladder with caching.
    Loads from Config on first access (falls back to the built-in ladder).

    Returns:
        RankLadder instance
    """
    global _LADDER_CACHE

    if _LADDER_CACHE is None:
        from config import Config

        raw_config = Config.get(Config.RANK_CONFIG)
        if not raw_config:
            logger.info("RANK_CONFIG not set, using built-in rank ladder")
            raw_config = DEFAULT_RANK_CONFIG

        _LADDER_CACHE = RankLadder.fromConfig(raw_config)
        logger.info(f"Loaded rank ladder: {len(_LADDER_CACHE)} ranks")

    return _LADDER_CACHE


def set_rank_ladder(ladder: Optional[RankLadder]) -> None:
    """Replace the cached ladder (None forces a reload from Config)."""
    global _LADDER_CACHE
    _LADDER_CACHE = ladder
