import copy
import math
import random
from typing import Iterable, List, Optional, Set

from .rankings import STATES, category_score

SIDES = ('player1', 'player2')
ROUND_STATES = ('waiting', 'rolling', 'playing', 'complete')
ROUND_WINNERS = ('player1', 'player2', 'tie')


def other_side(side: str) -> str:
    return 'player2' if side == 'player1' else 'player1'


def normalize_name(name) -> str:
    return (name or '').strip().lower()


def side_for(game: Optional[dict], username) -> Optional[str]:
    """Resolve which side ``username`` plays in ``game`` by name match."""
    if not game:
        return None
    me = normalize_name(username)
    if not me:
        return None
    if me == normalize_name(game.get('player1')):
        return 'player1'
    if me == normalize_name(game.get('player2')):
        return 'player2'
    return None


def _initial_side() -> dict:
    return {
        'currentState': None,
        'score': 0,
        'usedCategories': [],
        'usedStates': [],
        'isReady': False,
        'preReady': False,
    }


def initial_game_state(player1_wins: int = 0, player2_wins: int = 0, version: int = 0) -> dict:
    return {
        'player1': _initial_side(),
        'player2': _initial_side(),
        'roundState': 'waiting',  # waiting, rolling, playing, complete
        'roundWinner': None,
        'player1_wins': player1_wins,
        'player2_wins': player2_wins,
        'version': version,
    }


def _unique_strings(values) -> List[str]:
    if not isinstance(values, list):
        return []
    out = []
    for v in values:
        if isinstance(v, str) and v not in out:
            out.append(v)
    return out


def _count(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value) or value < 0:
        return 0
    return int(value)


def _normalize_side(raw) -> dict:
    side = _initial_side()
    if isinstance(raw, dict):
        side.update(raw)
    side['currentState'] = side['currentState'] if isinstance(side['currentState'], str) else None
    score = side['score']
    if isinstance(score, bool) or not isinstance(score, (int, float)) or not math.isfinite(score):
        side['score'] = 0
    side['usedCategories'] = _unique_strings(side['usedCategories'])
    side['usedStates'] = _unique_strings(side['usedStates'])
    side['isReady'] = bool(side['isReady'])
    side['preReady'] = bool(side['preReady'])
    return side


def normalize_game_state(state) -> dict:
    """Return a well-formed copy of ``state``, filling gaps with defaults.

    Partial or corrupted documents coming back from the store or a peer
    broadcast are coerced rather than rejected.
    """
    raw = copy.deepcopy(state) if isinstance(state, dict) else {}
    out = initial_game_state()
    out.update(raw)
    for side in SIDES:
        out[side] = _normalize_side(raw.get(side))
    if out['roundState'] not in ROUND_STATES:
        out['roundState'] = 'waiting'
    if out['roundWinner'] not in ROUND_WINNERS:
        out['roundWinner'] = None
    out['player1_wins'] = _count(out.get('player1_wins'))
    out['player2_wins'] = _count(out.get('player2_wins'))
    out['version'] = _count(out.get('version'))
    return out


def used_states(state: dict) -> Set[str]:
    """Identifiers already consumed this round by either side."""
    used: Set[str] = set()
    for side in SIDES:
        used.update(state[side]['usedCategories'])
        used.update(state[side]['usedStates'])
    return used


def available_states(state: dict, states: Iterable[str] = STATES) -> List[str]:
    used = used_states(state)
    return [s for s in states if s not in used]


def is_side_complete(state: dict, side: str, per_round: int = 8) -> bool:
    return len(state[side]['usedCategories']) >= per_round


def roll_state(state: dict, side: str, rng: Optional[random.Random] = None,
               states: Iterable[str] = STATES) -> Optional[str]:
    """Roll a fresh state for ``side``; returns None when nothing is left."""
    pool = available_states(state, states)
    if not pool:
        return None
    chosen = (rng or random).choice(pool)
    player = state[side]
    player['currentState'] = chosen
    player['usedStates'].append(chosen)
    player['isReady'] = True
    if state['player1']['isReady'] and state['player2']['isReady']:
        state['roundState'] = 'playing'
    elif state['roundState'] == 'waiting':
        state['roundState'] = 'rolling'
    return chosen


def select_category(state: dict, side: str, category: str, cap: int = 100,
                    per_round: int = 8) -> Optional[int]:
    """Score ``category`` for the side's rolled state; None means no-op."""
    player = state[side]
    if not player['currentState'] or category in player['usedCategories']:
        return None
    if is_side_complete(state, side, per_round):
        return None
    score = category_score(category, player['currentState'], cap)
    player['score'] += score
    player['usedCategories'].append(category)
    if is_side_complete(state, side, per_round) and is_side_complete(state, other_side(side), per_round):
        resolve_round(state)
    return score


def resolve_round(state: dict) -> str:
    """Settle a finished round: lower total wins, equal totals tie."""
    p1 = state['player1']['score']
    p2 = state['player2']['score']
    if p1 < p2:
        winner = 'player1'
        state['player1_wins'] = state.get('player1_wins', 0) + 1
    elif p2 < p1:
        winner = 'player2'
        state['player2_wins'] = state.get('player2_wins', 0) + 1
    else:
        winner = 'tie'
    state['roundWinner'] = winner
    state['roundState'] = 'complete'
    return winner


def next_round_state(state: dict) -> dict:
    """Fresh round document that carries cumulative wins and the version."""
    current = normalize_game_state(state)
    return initial_game_state(
        player1_wins=current['player1_wins'],
        player2_wins=current['player2_wins'],
        version=current['version'],
    )
