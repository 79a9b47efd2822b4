"""
Section selection policies.

Every policy works on the catalog-ordered list of section ids for one
(level, mode, language) plus what the user has already been given. The
policies are pure: randomness comes from an injectable ``random.Random``.
"""
import random
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
from examprep.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

PRIMARY_WEIGHT = 1.0
OPTION_WEIGHT = 0.5


class SelectionStrategy(Enum):
    """Strategies for picking sections from a user's history."""
    FIRST_UNSEEN = "first_unseen"
    PRIORITY_SHUFFLE = "priority_shuffle"
    LEAST_USED = "least_used"
    RANDOM = "random"


@dataclass
class UsageHistory:
    """What one user has been given for a single (level, mode).

    ``assigned`` counts sessions where the section was the primary section;
    ``shown`` counts sessions where it was offered as an option but not taken.
    """
    assigned: Counter = field(default_factory=Counter)
    shown: Counter = field(default_factory=Counter)

    @property
    def seen(self) -> set:
        return set(self.assigned)

    def weight(self, section_id: int) -> float:
        return self.assigned[section_id] * PRIMARY_WEIGHT + self.shown[section_id] * OPTION_WEIGHT

    def weights(self) -> Dict[int, float]:
        return {sid: self.weight(sid) for sid in set(self.assigned) | set(self.shown)}


def _require(ordered: Sequence[int]) -> None:
    if not ordered:
        raise ConfigurationError("No sections available for selection")


def first_unseen(ordered: Sequence[int], seen: set, rng: Optional[random.Random] = None) -> Tuple[int, bool]:
    """First id in catalog order not in ``seen``.

    Once everything has been seen, a uniformly random id is returned with
    ``already_seen=True``.
    """
    _require(ordered)
    for sid in ordered:
        if sid not in seen:
            return sid, False
    return (rng or random).choice(list(ordered)), True


def paired_by_index(anchor_ordered: Sequence[int], anchor_id: int, paired_ordered: Sequence[int]) -> int:
    """Section at the anchor's position in ``paired_ordered``, wrapping when that list is shorter."""
    _require(paired_ordered)
    try:
        idx = list(anchor_ordered).index(anchor_id)
    except ValueError:
        raise ConfigurationError(f"Section id {anchor_id} not found in ordered list")
    return paired_ordered[idx % len(paired_ordered)]


def priority_pair(ordered: Sequence[int], seen: set, rng: Optional[random.Random] = None) -> Tuple[int, int]:
    """Two options, unseen sections first, each group shuffled independently.

    With a single section in the catalog both options are that section.
    """
    _require(ordered)
    rng = rng or random
    unseen = [sid for sid in ordered if sid not in seen]
    already = [sid for sid in ordered if sid in seen]
    rng.shuffle(unseen)
    rng.shuffle(already)
    pool = unseen + already
    return pool[0], (pool[1] if len(pool) > 1 else pool[0])


def least_used(ordered: Sequence[int], weights: Dict[int, float], count: int = 1,
               rng: Optional[random.Random] = None) -> List[int]:
    """Random picks among the sections with the lowest accumulated weight.

    When more picks are requested than there are minimum-weight sections the
    shuffled group is cycled.
    """
    _require(ordered)
    rng = rng or random
    lowest = min(weights.get(sid, 0.0) for sid in ordered)
    group = [sid for sid in ordered if weights.get(sid, 0.0) == lowest]
    rng.shuffle(group)
    return [group[i % len(group)] for i in range(count)]


def random_sections(ordered: Sequence[int], count: int = 1, rng: Optional[random.Random] = None) -> List[int]:
    _require(ordered)
    shuffled = list(ordered)
    (rng or random).shuffle(shuffled)
    return [shuffled[i % len(shuffled)] for i in range(count)]


class SectionSelector:
    """Dispatches to one history-based policy."""

    def __init__(self, strategy: SelectionStrategy = SelectionStrategy.LEAST_USED,
                 rng: Optional[random.Random] = None):
        self.strategy = strategy
        self.rng = rng

    def select(self, ordered: Sequence[int], history: UsageHistory, count: int = 1) -> List[int]:
        if self.strategy == SelectionStrategy.FIRST_UNSEEN:
            seen = set(history.seen)
            picks = []
            for _ in range(count):
                sid, _already = first_unseen(ordered, seen, self.rng)
                picks.append(sid)
                seen.add(sid)
            return picks
        elif self.strategy == SelectionStrategy.PRIORITY_SHUFFLE:
            return list(priority_pair(ordered, history.seen, self.rng))[:count]
        elif self.strategy == SelectionStrategy.LEAST_USED:
            return least_used(ordered, history.weights(), count, self.rng)
        else:
            return random_sections(ordered, count, self.rng)
