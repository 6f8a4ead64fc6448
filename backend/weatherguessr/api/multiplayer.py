from flask import Blueprint, jsonify, request, current_app
from weatherguessr.models import INVITE_ACCEPTED, INVITE_DECLINED, OPEN_SLOT
from weatherguessr.services.multiplayer import game_state as rules
from weatherguessr.services.multiplayer.realtime import STATE_EVENT, game_topic, hub
from weatherguessr.services.multiplayer.session import MultiplayerSession, link_with
from weatherguessr.services.multiplayer.stores import (
    GameStore,
    InvitationStore,
    PresenceStore,
    RoomStore,
    StaleWrite,
)


multiplayer = Blueprint('multiplayer', __name__)


def _username(data) -> str:
    return (data.get('username') or '').strip()


def _one_shot_session(username, notifications):
    """Session acting for ``username`` for the length of one request."""
    session = MultiplayerSession(
        current_app._get_current_object(),
        realtime=hub,
        notify=lambda message, level: notifications.append({'message': message, 'level': level}),
    )
    session.current_user = username
    return session


def _acting_session(game_id):
    """Build a one-shot session acting for the body's username in a game.

    Returns (session, notifications, None) or (None, None, error_response).
    """
    data = request.get_json(silent=True) or {}
    username = _username(data)
    if not username:
        return None, None, (jsonify({'error': 'username is required'}), 400)
    notifications = []
    session = _one_shot_session(username, notifications)
    if not session.load_game(game_id):
        return None, None, (jsonify({'error': 'Game not found'}), 404)
    if session.my_side() is None:
        return None, None, (jsonify({'error': 'You are not a player in this game'}), 403)
    return session, notifications, None


def _action_response(session, notifications, **extra):
    payload = {
        'game': session.current_game,
        'side': session.my_side(),
        'notifications': notifications,
    }
    payload.update(extra)
    return jsonify(payload)


# ---- presence ----

@multiplayer.route('/presence', methods=['GET'])
def list_presence():
    exclude = request.args.get('exclude')
    window = int(current_app.config.get('PRESENCE_WINDOW_SEC', 1800))
    return jsonify(PresenceStore(hub).list_online(exclude=exclude, window_sec=window))


@multiplayer.route('/presence/<string:username>', methods=['PUT'])
def go_online(username):
    data = request.get_json(silent=True) or {}
    row = PresenceStore(hub).upsert(username, is_available=bool(data.get('is_available', True)))
    if row is None:
        return jsonify({'error': 'Could not update presence'}), 500
    return jsonify(row)


@multiplayer.route('/presence/<string:username>', methods=['DELETE'])
def go_offline(username):
    if not PresenceStore(hub).remove(username):
        return jsonify({'error': 'Player is not online'}), 404
    return jsonify({'ok': True})


@multiplayer.route('/presence/<string:username>/heartbeat', methods=['POST'])
def heartbeat(username):
    if not PresenceStore(hub).touch(username):
        return jsonify({'error': 'Player is not online'}), 404
    return jsonify({'ok': True})


# ---- invitations ----

@multiplayer.route('/invitations', methods=['POST'])
def send_invitation():
    data = request.get_json(silent=True) or {}
    from_username = (data.get('from_username') or '').strip()
    to_username = (data.get('to_username') or '').strip()
    if not all([from_username, to_username]):
        return jsonify({'error': 'from_username and to_username are required'}), 400
    notifications = []
    session = _one_shot_session(from_username, notifications)
    invitation = session.send_invitation(to_username)
    if invitation is None:
        message = notifications[-1]['message'] if notifications else 'Could not create invitation'
        return jsonify({'error': message, 'notifications': notifications}), 400
    invitation['link'] = link_with(session.base_url, inviteId=invitation['id'])
    invitation['notifications'] = notifications
    return jsonify(invitation), 201


@multiplayer.route('/invitations', methods=['GET'])
def pending_invitations():
    to_username = (request.args.get('to') or '').strip()
    if not to_username:
        return jsonify({'error': 'to is required'}), 400
    return jsonify(InvitationStore(hub).pending_for(to_username))


@multiplayer.route('/invitations/<int:invitation_id>/respond', methods=['POST'])
def respond_to_invitation(invitation_id):
    data = request.get_json(silent=True) or {}
    username = _username(data)
    response = data.get('response')
    if not username:
        return jsonify({'error': 'username is required'}), 400
    if response not in (INVITE_ACCEPTED, INVITE_DECLINED):
        return jsonify({'error': 'response must be accepted or declined'}), 400
    notifications = []
    session = _one_shot_session(username, notifications)
    invitation = InvitationStore(hub).get(invitation_id)
    if not invitation:
        return jsonify({'error': 'Invitation not found'}), 404
    if rules.normalize_name(invitation['to_username']) != rules.normalize_name(username):
        return jsonify({'error': 'This invitation is not for you'}), 403
    game = session.respond_to_invitation(invitation_id, response)
    session.dispose()
    invitation = InvitationStore(hub).get(invitation_id)
    if response == INVITE_ACCEPTED and game is None:
        return jsonify({'error': 'Invitation is expired or invalid', 'invitation': invitation,
                        'notifications': notifications}), 409
    return jsonify({'invitation': invitation, 'game': game, 'notifications': notifications})


# ---- games ----

@multiplayer.route('/games/link', methods=['POST'])
def create_game_link():
    data = request.get_json(silent=True) or {}
    username = _username(data)
    if not username:
        return jsonify({'error': 'username is required'}), 400
    game = GameStore(hub).create(username, OPEN_SLOT, rules.initial_game_state())
    if game is None:
        return jsonify({'error': 'Could not create game'}), 500
    base = current_app.config.get('PUBLIC_BASE_URL', 'http://localhost:5173/')
    return jsonify({'game': game, 'link': link_with(base, gameId=game['id'])}), 201


@multiplayer.route('/games/<int:game_id>', methods=['GET'])
def get_game(game_id):
    game = GameStore(hub).get(game_id)
    if not game:
        return jsonify({'error': 'Game not found'}), 404
    game['game_state'] = rules.normalize_game_state(game['game_state'])
    return jsonify(game)


@multiplayer.route('/games/<int:game_id>/claim', methods=['POST'])
def claim_game(game_id):
    data = request.get_json(silent=True) or {}
    username = _username(data)
    if not username:
        return jsonify({'error': 'username is required'}), 400
    store = GameStore(hub)
    game = store.get(game_id)
    if not game:
        return jsonify({'error': 'Game not found'}), 404
    if rules.side_for(game, username):
        return jsonify(game)
    claimed = store.claim_open_slot(game_id, username)
    if not claimed:
        return jsonify({'error': 'You are not part of this game link.'}), 403
    return jsonify(claimed)


@multiplayer.route('/games/<int:game_id>/state', methods=['PUT'])
def put_game_state(game_id):
    """Raw state write for clients that run the round rules themselves."""
    data = request.get_json(silent=True) or {}
    state = data.get('game_state')
    if not isinstance(state, dict):
        return jsonify({'error': 'game_state is required'}), 400
    state = rules.normalize_game_state(state)
    try:
        game = GameStore(hub).save_state(game_id, state)
    except StaleWrite as exc:
        return jsonify({'error': 'Stale game_state version', 'stored_version': exc.stored}), 409
    if game is None:
        return jsonify({'error': 'Game not found'}), 404
    hub.publish(game_topic(game_id), STATE_EVENT, {'game_state': game['game_state']})
    return jsonify(game)


@multiplayer.route('/games/<int:game_id>/roll', methods=['POST'])
def roll_state(game_id):
    session, notifications, error = _acting_session(game_id)
    if error:
        return error
    rolled = session.roll_state()
    return _action_response(session, notifications, rolled=rolled)


@multiplayer.route('/games/<int:game_id>/category', methods=['POST'])
def select_category(game_id):
    session, notifications, error = _acting_session(game_id)
    if error:
        return error
    category = (request.get_json(silent=True) or {}).get('category')
    if not category or not isinstance(category, str):
        return jsonify({'error': 'category must be a non-empty string'}), 400
    score = session.select_category(None, category)
    return _action_response(session, notifications, score=score)


@multiplayer.route('/games/<int:game_id>/ready', methods=['POST'])
def toggle_ready(game_id):
    session, notifications, error = _acting_session(game_id)
    if error:
        return error
    pre_ready = session.toggle_pre_ready()
    return _action_response(session, notifications, pre_ready=pre_ready)


@multiplayer.route('/games/<int:game_id>/next-round', methods=['POST'])
def next_round(game_id):
    session, notifications, error = _acting_session(game_id)
    if error:
        return error
    if session.next_round() is None:
        return jsonify({'error': 'Round is not complete'}), 400
    return _action_response(session, notifications)


# ---- rooms ----

@multiplayer.route('/rooms', methods=['GET'])
def list_rooms():
    return jsonify(RoomStore().list_rooms())
