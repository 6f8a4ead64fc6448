from conftest import FixedRng
from weatherguessr import socketio
from weatherguessr.services.multiplayer import game_state as rules
from weatherguessr.services.multiplayer.timers import Ticker


def _events(sio_client, name):
    return [pkt['args'][0] for pkt in sio_client.get_received('/ws') if pkt['name'] == name]


def test_socket_connect_and_acks(sio_client):
    assert sio_client.is_connected('/ws')
    assert _events(sio_client, 'connected')

    sio_client.emit('join_game', {'game_id': 7}, namespace='/ws')
    assert _events(sio_client, 'joined') == [{'room': 'game:7'}]

    sio_client.emit('subscribe', {'table': 'game_invitations'}, namespace='/ws')
    assert _events(sio_client, 'subscribed') == [{'topic': 'table:game_invitations'}]

    sio_client.emit('subscribe', {'table': 'users'}, namespace='/ws')
    assert _events(sio_client, 'error')

    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    assert _events(sio_client, 'pong') == [{'n': 1}]


def test_remote_client_sees_row_changes(sio_client, client):
    sio_client.emit('subscribe', {'table': 'online_players'}, namespace='/ws')
    sio_client.get_received('/ws')

    client.put('/api/multiplayer/presence/alice')

    changes = _events(sio_client, 'row_change')
    assert changes[0]['event_type'] == 'INSERT'
    assert changes[0]['table'] == 'online_players'
    assert changes[0]['new']['username'] == 'alice'

    sio_client.emit('unsubscribe', {'table': 'online_players'}, namespace='/ws')
    sio_client.get_received('/ws')
    client.delete('/api/multiplayer/presence/alice')
    assert _events(sio_client, 'row_change') == []


def test_remote_client_receives_game_state(sio_client, make_session):
    alice = make_session('alice', rng=FixedRng('Oklahoma'))
    make_session('bob')
    game = alice.start_multiplayer_game('alice', 'bob')

    sio_client.emit('join_game', {'game_id': game['id']}, namespace='/ws')
    sio_client.get_received('/ws')

    alice.roll_state()

    states = _events(sio_client, 'state')
    assert states
    assert states[-1]['game_state']['player1']['currentState'] == 'Oklahoma'


def test_remote_broadcast_reaches_sessions(flask_app, sio_client, make_session):
    alice = make_session('alice')
    make_session('bob')
    game = alice.start_multiplayer_game('alice', 'bob')

    sio_client.emit('join_game', {'game_id': game['id']}, namespace='/ws')
    sio_client.get_received('/ws')

    state = rules.initial_game_state(version=5)
    state['player2']['preReady'] = True
    sio_client.emit('broadcast', {'game_id': game['id'], 'payload': {'game_state': state}}, namespace='/ws')

    assert alice.current_game['game_state']['version'] == 5
    assert alice.current_game['game_state']['player2']['preReady'] is True
    # The sender is skipped
    assert _events(sio_client, 'state') == []

    sio_client.emit('broadcast', {'game_id': game['id']}, namespace='/ws')
    assert _events(sio_client, 'error')


def test_broadcast_from_second_client(flask_app, sio_client):
    other = socketio.test_client(flask_app, namespace='/ws')
    try:
        sio_client.emit('join_game', {'game_id': 3}, namespace='/ws')
        other.emit('join_game', {'game_id': 3}, namespace='/ws')
        sio_client.get_received('/ws')
        other.get_received('/ws')

        other.emit('broadcast', {'game_id': 3, 'payload': {'game_state': {'version': 2}}}, namespace='/ws')

        assert _events(sio_client, 'state') == [{'game_state': {'version': 2}}]
        assert _events(other, 'state') == []
    finally:
        other.disconnect(namespace='/ws')


def test_ticker_is_idle_in_tests_and_ticks_on_demand(flask_app):
    calls = []
    ticker = Ticker(flask_app, 'probe', 1, lambda: calls.append(1))
    assert ticker.start() is False
    assert ticker.running is False

    ticker.tick()
    ticker.tick()
    assert len(calls) == 2


def test_ticker_swallows_task_errors(flask_app):
    def boom():
        raise RuntimeError('boom')

    ticker = Ticker(flask_app, 'boom', 1, boom)
    ticker.tick()
    assert ticker.running is False


def test_restart_retires_the_previous_loop(flask_app, monkeypatch):
    flask_app.config['ENABLE_TIMERS_IN_TESTS'] = True
    loops = []
    monkeypatch.setattr(socketio, 'start_background_task', lambda fn, *args: loops.append((fn, args)))
    calls = []
    ticker = Ticker(flask_app, 'poll', 0.2, lambda: calls.append(1))

    def sleep(_seconds):
        if len(calls) >= 3:
            ticker.stop()

    monkeypatch.setattr(socketio, 'sleep', sleep)

    assert ticker.start() is True
    ticker.stop()
    assert ticker.start() is True
    assert len(loops) == 2

    # The loop from the first start wakes up after the restart and exits
    first, first_args = loops[0]
    first(*first_args)
    assert calls == []

    second, second_args = loops[1]
    second(*second_args)
    assert len(calls) == 3
    assert ticker.running is False
