import copy
import random
import time
from typing import Callable, List, Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from weatherguessr.models import (
    INVITE_ACCEPTED,
    INVITE_DECLINED,
    INVITE_EXPIRED,
    INVITE_PENDING,
    OPEN_SLOT,
)
from . import game_state as rules
from .rankings import STATES, is_category
from .realtime import RealtimeHub, SyncChannel, hub as default_hub, table_topic, ROW_CHANGE_EVENT
from .stores import GameStore, InvitationStore, PresenceStore, RoomStore, StaleWrite
from .timers import Ticker


def link_with(base_url: str, **params) -> str:
    """Return ``base_url`` with ``params`` merged into its query string."""
    parts = urlparse(base_url)
    query = {k: v[-1] for k, v in parse_qs(parts.query).items()}
    query.update({k: str(v) for k, v in params.items()})
    return urlunparse(parts._replace(query=urlencode(query)))


def link_param(url: Optional[str], name: str) -> Optional[str]:
    if not url:
        return None
    values = parse_qs(urlparse(url).query).get(name)
    return values[-1] if values else None


class MultiplayerSession:
    """One connected player's view of the lobby and their current game.

    Construct one per player and call ``init()``; call ``dispose()`` when
    the player leaves. All store failures are logged and swallowed; the
    only user-facing output goes through ``notify(message, level)``.
    ``render(session)`` is called whenever the visible state changes.
    """

    def __init__(self, app, realtime: Optional[RealtimeHub] = None,
                 render: Optional[Callable[['MultiplayerSession'], None]] = None,
                 notify: Optional[Callable[[str, str], None]] = None,
                 rng: Optional[random.Random] = None):
        self.app = app
        self.hub = realtime or default_hub
        self.render_hook = render
        self.notify_hook = notify
        self.rng = rng or random.Random()

        self.presence = PresenceStore(self.hub)
        self.invitations = InvitationStore(self.hub)
        self.games = GameStore(self.hub)
        self.rooms_store = RoomStore()

        self.current_user = ''
        self.current_game: Optional[dict] = None
        self.current_room: Optional[str] = None
        self.highlighted_invitation: Optional[int] = None
        self.is_online = False
        self.online_players: List[dict] = []
        self.pending_invitations: List[dict] = []
        self.rooms: List[dict] = []

        self.channel: Optional[SyncChannel] = None
        self._subscriptions = []
        self._initialized = False
        self._dirty = False
        self._refreshing = False
        self._last_refresh = 0.0

        cfg = app.config
        self.per_round = int(cfg.get('CATEGORIES_PER_ROUND', 8))
        self.score_cap = int(cfg.get('MAX_CATEGORY_SCORE', 100))
        self.invite_ttl = int(cfg.get('INVITE_TTL_SEC', 300))
        self.presence_window = int(cfg.get('PRESENCE_WINDOW_SEC', 1800))
        self.poll_interval = float(cfg.get('POLL_INTERVAL_SEC', 10))
        self.base_url = cfg.get('PUBLIC_BASE_URL', 'http://localhost:5173/')
        self.heartbeat_timer = Ticker(app, 'heartbeat', cfg.get('HEARTBEAT_INTERVAL_SEC', 30), self.heartbeat)
        self.poll_timer = Ticker(app, 'poll', self.poll_interval, self.refresh)

    # ---- lifecycle ----

    def init(self) -> None:
        if self._initialized:
            return
        self._subscriptions = [
            self.hub.subscribe(table_topic(PresenceStore.table), ROW_CHANGE_EVENT, self.handle_online_players_change),
            self.hub.subscribe(table_topic(InvitationStore.table), ROW_CHANGE_EVENT, self.handle_invitation_change),
            self.hub.subscribe(table_topic(GameStore.table), ROW_CHANGE_EVENT, self.handle_game_change),
        ]
        self.heartbeat_timer.start()
        self.poll_timer.start()
        self._initialized = True

    def dispose(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        self.go_offline()
        self.heartbeat_timer.stop()
        self.poll_timer.stop()
        self._leave_channel()
        self._initialized = False

    # ---- hooks ----

    def notify(self, message: str, level: str = 'info') -> None:
        self.app.logger.info(f"[notify] user={self.current_user} level={level} msg={message}")
        if self.notify_hook:
            self.notify_hook(message, level)

    def render(self) -> None:
        if self.render_hook:
            try:
                self.render_hook(self)
            except Exception:
                self.app.logger.exception(f"[render-failed] user={self.current_user}")

    # ---- presence ----

    def go_online(self, username: str, url: Optional[str] = None) -> bool:
        self.current_user = username
        if self.presence.upsert(username, is_available=True) is None:
            return False
        self.is_online = True
        self.app.logger.info(f"[presence-online] user={username}")
        self.refresh(force=True)
        if url:
            self.process_invite_link(url)
            self.process_game_link(url)
        return True

    def go_offline(self) -> None:
        if not self.current_user or not self.is_online:
            return
        if self.presence.remove(self.current_user):
            self.app.logger.info(f"[presence-offline] user={self.current_user}")
        self.is_online = False

    def heartbeat(self) -> None:
        if self.is_online and self.current_user:
            self.presence.touch(self.current_user)

    def my_side(self) -> Optional[str]:
        return rules.side_for(self.current_game, self.current_user)

    # ---- lobby views ----

    def refresh(self, force: bool = False) -> bool:
        """Reload lobby views (and the current game) if they may be stale.

        Called by the poll timer, by row-change events and by manual
        refresh. A recent refresh satisfies the poll unless a change event
        marked the views dirty in between.
        """
        if not self.is_online or self._refreshing:
            if self._refreshing:
                self._dirty = True
            return False
        elapsed = time.monotonic() - self._last_refresh
        if not (force or self._dirty or elapsed >= self.poll_interval):
            return False
        self._refreshing = True
        try:
            self._dirty = False
            self.load_online_players(render=False)
            self.load_pending_invitations(render=False)
            self.load_rooms(render=False)
            if self.current_game:
                self.reload_game(render=False)
            self._last_refresh = time.monotonic()
        finally:
            self._refreshing = False
        self.render()
        return True

    def load_online_players(self, render: bool = True) -> List[dict]:
        self.online_players = self.presence.list_online(exclude=self.current_user, window_sec=self.presence_window)
        if render:
            self.render()
        return self.online_players

    def load_pending_invitations(self, render: bool = True) -> List[dict]:
        self.pending_invitations = self.invitations.pending_for(self.current_user)
        if render:
            self.render()
        return self.pending_invitations

    def load_rooms(self, render: bool = True) -> List[dict]:
        self.rooms = self.rooms_store.list_rooms()
        if render:
            self.render()
        return self.rooms

    def join_room(self, name: str) -> str:
        self.current_room = name
        self.notify(f"Joined {name}", 'info')
        return link_with(self.base_url, room=name)

    def leave_room(self, name: str) -> None:
        if self.current_room == name:
            self.current_room = None
        self.notify(f"Left {name}", 'info')
        self.load_rooms()

    # ---- invitations ----

    def _is_self(self, username: str) -> bool:
        return rules.normalize_name(username) == rules.normalize_name(self.current_user)

    def send_invitation(self, to_username: str) -> Optional[dict]:
        if self._is_self(to_username):
            self.notify('You cannot challenge yourself!', 'error')
            return None
        invitation = self.invitations.create(self.current_user, to_username, ttl_sec=self.invite_ttl)
        if invitation is None:
            self.notify(f"Failed to send challenge to {to_username}", 'error')
            return None
        minutes = max(1, self.invite_ttl // 60)
        self.notify(f"Challenge sent to {to_username}! (expires in {minutes} min)", 'success')
        return invitation

    def create_invite_link(self, to_username: str) -> Optional[str]:
        if self._is_self(to_username):
            self.notify('You cannot challenge yourself!', 'error')
            return None
        invitation = self.invitations.create(self.current_user, to_username, ttl_sec=self.invite_ttl)
        if invitation is None:
            self.notify('Failed to create invite link', 'error')
            return None
        return link_with(self.base_url, inviteId=invitation['id'])

    def respond_to_invitation(self, invitation_id, response: str) -> Optional[dict]:
        """Accept or decline; acceptance starts a game and returns it."""
        if response not in (INVITE_ACCEPTED, INVITE_DECLINED):
            self.app.logger.warning(f"[invite-respond-invalid] id={invitation_id} response={response}")
            return None
        invitation = self.invitations.get(invitation_id)
        if not invitation:
            return None
        if not self._is_self(invitation['to_username']):
            self.notify(f"This invite is for {invitation['to_username']}.", 'info')
            return None
        updated = self.invitations.respond(invitation_id, response)
        if not updated:
            return None
        self.load_pending_invitations()
        if updated['status'] != response:
            self.notify('Invite is expired or invalid', 'error')
            return None
        if response == INVITE_ACCEPTED:
            return self.start_multiplayer_game(updated['from_username'], updated['to_username'])
        return None

    def process_invite_link(self, url: Optional[str]) -> Optional[dict]:
        invite_id = link_param(url, 'inviteId')
        if not invite_id:
            return None
        self.invitations.expire_overdue()
        invitation = self.invitations.get(invite_id)
        if not invitation:
            return None
        if invitation['status'] != INVITE_PENDING:
            self.notify('Invite link is expired or invalid', 'error')
            return None
        if not self._is_self(invitation['to_username']):
            self.notify(f"This invite is for {invitation['to_username']}.", 'info')
            return None
        self.highlighted_invitation = invitation['id']
        if not any(i['id'] == invitation['id'] for i in self.pending_invitations):
            self.load_pending_invitations(render=False)
        self.render()
        return invitation

    # ---- games ----

    def start_multiplayer_game(self, player1: str, player2: str) -> Optional[dict]:
        game = self.games.create(player1, player2, rules.initial_game_state())
        if game is None:
            return None
        self._enter_game(game)
        return self.current_game

    def create_game_link(self) -> Optional[str]:
        game = self.games.create(self.current_user, OPEN_SLOT, rules.initial_game_state())
        if game is None:
            self.notify('Failed to create game link', 'error')
            return None
        return link_with(self.base_url, gameId=game['id'])

    def process_game_link(self, url: Optional[str]) -> Optional[dict]:
        game_id = link_param(url, 'gameId')
        if not game_id:
            return None
        game = self.games.get(game_id)
        if not game:
            return None
        if rules.side_for(game, self.current_user) is None:
            if game['player2'] != OPEN_SLOT:
                self.notify('You are not part of this game link.', 'error')
                return None
            claimed = self.games.claim_open_slot(game['id'], self.current_user)
            if not claimed:
                return None
            game = claimed
        self._enter_game(game)
        return self.current_game

    def load_game(self, game_id) -> Optional[dict]:
        """Attach to an existing game without listening or touching presence."""
        game = self.games.get(game_id)
        if not game:
            return None
        game['game_state'] = rules.normalize_game_state(game['game_state'])
        self.current_game = game
        self.channel = SyncChannel(self.hub, game['id'])
        return self.current_game

    def reload_game(self, render: bool = True) -> Optional[dict]:
        if not self.current_game:
            return None
        game = self.games.get(self.current_game['id'])
        if game:
            self._accept_remote(game, render=render)
        return self.current_game

    def leave_game(self) -> None:
        if not self.current_game:
            return
        self.app.logger.info(f"[game-leave] game={self.current_game['id']} user={self.current_user}")
        self._leave_channel()
        self.current_game = None
        if self.is_online:
            self.presence.set_available(self.current_user, True)
        self.render()

    def _enter_game(self, game: dict) -> None:
        if self.current_game and self.current_game['id'] == game.get('id') and self.channel and self.channel.joined:
            return
        game = dict(game)
        game['game_state'] = rules.normalize_game_state(game.get('game_state'))
        self.current_game = game
        self._leave_channel()
        self.channel = SyncChannel(self.hub, game['id'])
        self.channel.join(self.handle_broadcast)
        if self.is_online:
            self.presence.set_available(self.current_user, False)
        self.app.logger.info(f"[game-enter] game={game['id']} user={self.current_user} side={self.my_side()}")
        self.render()
        self.send_game_state()

    def _leave_channel(self) -> None:
        if self.channel is not None:
            self.channel.leave()
            self.channel = None

    def send_game_state(self) -> None:
        if self.channel is not None and self.current_game:
            self.channel.send(self.current_game['game_state'])

    def _accept_remote(self, game: dict, render: bool = True) -> bool:
        """Replace the current game with ``game`` unless it is older."""
        if not self.current_game or game.get('id') != self.current_game['id']:
            return False
        incoming = rules.normalize_game_state(game.get('game_state'))
        local = self.current_game['game_state']
        if incoming['version'] < local['version']:
            self.app.logger.debug(
                f"[stale-ignore] game={game['id']} incoming={incoming['version']} local={local['version']}"
            )
            return False
        updated = dict(game)
        updated['game_state'] = incoming
        self.current_game = updated
        if render:
            self.render()
        return True

    # ---- round actions ----

    def update_game_state(self, game_state: dict, advance_round: bool = False) -> Optional[dict]:
        """Persist ``game_state`` as the next version and broadcast it.

        If a newer version is already stored the write is dropped and the
        stored game is reloaded; returns None in that case. A store
        failure keeps the local copy and still broadcasts it.
        """
        if not self.current_game:
            return None
        try:
            return self._persist(game_state, advance_round=advance_round)
        except StaleWrite as exc:
            self.app.logger.warning(
                f"[stale-write] game={exc.game_id} user={self.current_user} "
                f"incoming={exc.incoming} stored={exc.stored}"
            )
            self.reload_game()
            return None

    def _persist(self, game_state: dict, advance_round: bool = False) -> dict:
        state = rules.normalize_game_state(game_state)
        state['version'] = max(state['version'], self.current_game['game_state']['version']) + 1
        saved = self.games.save_state(self.current_game['id'], state, advance_round=advance_round)
        if saved is not None:
            saved['game_state'] = rules.normalize_game_state(saved['game_state'])
            self.current_game = saved
        else:
            self.current_game = dict(self.current_game, game_state=state)
        self.send_game_state()
        self.render()
        return self.current_game

    def _mutate(self, action: Callable[[dict], object], advance_round: bool = False):
        """Apply ``action`` to a copy of the state and persist it.

        If another write landed first, reload the stored game and replay
        the action once on top of it.
        """
        if not self.current_game:
            return None
        for attempt in (1, 2):
            state = copy.deepcopy(self.current_game['game_state'])
            result = action(state)
            if result is None:
                return None
            try:
                self._persist(state, advance_round=advance_round)
                return result
            except StaleWrite as exc:
                self.app.logger.info(
                    f"[replay] game={exc.game_id} user={self.current_user} attempt={attempt}"
                )
                if self.reload_game(render=False) is None:
                    return None
        self.render()
        return None

    def _own_side(self, side: Optional[str]) -> Optional[str]:
        side = side or self.my_side()
        return side if side in rules.SIDES else None

    def roll_state(self, side: Optional[str] = None) -> Optional[str]:
        side = self._own_side(side)
        if not side:
            return None

        def action(state):
            if state['roundState'] == 'complete' or rules.is_side_complete(state, side, self.per_round):
                return None
            chosen = rules.roll_state(state, side, rng=self.rng, states=STATES)
            if chosen is None:
                self.notify('No more states available!', 'error')
            return chosen

        chosen = self._mutate(action)
        if chosen:
            self.app.logger.info(f"[roll] game={self.current_game['id']} side={side} state={chosen}")
        return chosen

    def select_category(self, side: Optional[str], category: str) -> Optional[int]:
        side = self._own_side(side)
        if not side:
            return None
        if not is_category(category):
            self.app.logger.warning(f"[category-unknown] user={self.current_user} category={category}")
            return None

        def action(state):
            return rules.select_category(state, side, category, cap=self.score_cap, per_round=self.per_round)

        score = self._mutate(action)
        if score is not None:
            state = self.current_game['game_state']
            self.app.logger.info(
                f"[category] game={self.current_game['id']} side={side} category={category} score={score} "
                f"round_state={state['roundState']} winner={state['roundWinner']}"
            )
        return score

    def toggle_pre_ready(self, side: Optional[str] = None) -> Optional[bool]:
        side = self._own_side(side)
        if not side:
            return None

        def action(state):
            state[side]['preReady'] = not state[side]['preReady']
            return state[side]['preReady']

        return self._mutate(action)

    def next_round(self) -> Optional[dict]:
        if not self.current_game:
            return None

        def action(state):
            # Only a finished round can advance, so a second click replays as a no-op
            if state['roundState'] != 'complete':
                return None
            fresh = rules.next_round_state(state)
            state.clear()
            state.update(fresh)
            return state

        result = self._mutate(action, advance_round=True)
        if result is None:
            return None
        self.app.logger.info(
            f"[next_round] game={self.current_game['id']} round={self.current_game.get('current_round')}"
        )
        return self.current_game

    # ---- incoming events ----

    def handle_online_players_change(self, payload: dict) -> None:
        self._dirty = True
        self.refresh()

    def handle_invitation_change(self, payload: dict) -> None:
        new = payload.get('new') or {}
        event_type = payload.get('event_type')
        if event_type == 'INSERT' and self._is_self(new.get('to_username')) and new.get('status') == INVITE_PENDING:
            self.notify(f"{new.get('from_username')} has challenged you!", 'info')
        elif event_type == 'UPDATE' and self._is_self(new.get('from_username')):
            status = new.get('status')
            to = new.get('to_username')
            if status == INVITE_ACCEPTED:
                self.notify(f"{to} accepted your challenge!", 'success')
            elif status == INVITE_DECLINED:
                self.notify(f"{to} declined your challenge", 'info')
            elif status == INVITE_EXPIRED:
                self.notify(f"Your invite to {to} expired", 'info')
        self._dirty = True
        self.refresh()

    def handle_game_change(self, payload: dict) -> None:
        new = payload.get('new') or {}
        event_type = payload.get('event_type')
        if event_type == 'INSERT':
            if self.current_game is None and self.is_online and rules.side_for(new, self.current_user):
                self._enter_game(new)
            return
        if event_type == 'UPDATE' and self.current_game and new.get('id') == self.current_game['id']:
            self._accept_remote(new)

    def handle_broadcast(self, payload: dict) -> None:
        if not self.current_game or not isinstance(payload, dict) or 'game_state' not in payload:
            return
        self._accept_remote(dict(self.current_game, game_state=payload['game_state']))
