import json
import os
from typing import Dict, List

_DATA_PATH = os.path.join(os.path.dirname(__file__), 'data', 'weather.json')

# Rank used when a state is missing from a category table
DEFAULT_RANK = 50

with open(_DATA_PATH, encoding='utf-8') as fh:
    _data = json.load(fh)

CATEGORIES: List[dict] = _data['categories']
CATEGORY_NAMES: List[str] = [c['name'] for c in CATEGORIES]
STATE_CODES: Dict[str, str] = _data['states']
STATES: List[str] = sorted(STATE_CODES)

# category -> state -> 1-based rank
RANKINGS: Dict[str, Dict[str, int]] = {
    category: {state: idx + 1 for idx, state in enumerate(ordered)}
    for category, ordered in _data['rankings'].items()
}


def ranking(category: str, state: str) -> int:
    return RANKINGS.get(category, {}).get(state, DEFAULT_RANK)


def category_score(category: str, state: str, cap: int = 100) -> int:
    """Points for placing ``state`` in ``category``; lower is better."""
    return min(ranking(category, state), cap)


def is_category(name: str) -> bool:
    return name in RANKINGS
