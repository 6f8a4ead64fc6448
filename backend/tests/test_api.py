from weatherguessr.services.multiplayer.rankings import category_score
from weatherguessr.services.multiplayer.session import link_param


def _accepted_game(client):
    inv = client.post('/api/multiplayer/invitations', json={'from_username': 'alice', 'to_username': 'bob'}).get_json()
    res = client.post(f"/api/multiplayer/invitations/{inv['id']}/respond", json={'username': 'bob', 'response': 'accepted'})
    assert res.status_code == 200
    return res.get_json()['game']


def test_index_and_catalog(client):
    assert 'Weatherguessr' in client.get('/').get_json()['message']
    catalog = client.get('/api/catalog').get_json()
    assert len(catalog['categories']) == 8
    assert len(catalog['states']) == 50


def test_presence_lifecycle(client):
    assert client.put('/api/multiplayer/presence/alice').status_code == 200
    assert client.put('/api/multiplayer/presence/bob', json={'is_available': False}).status_code == 200

    players = client.get('/api/multiplayer/presence?exclude=alice').get_json()
    assert [p['username'] for p in players] == ['bob']
    assert players[0]['is_available'] is False

    assert client.post('/api/multiplayer/presence/bob/heartbeat').status_code == 200
    assert client.delete('/api/multiplayer/presence/bob').status_code == 200
    assert client.delete('/api/multiplayer/presence/bob').status_code == 404
    assert client.post('/api/multiplayer/presence/bob/heartbeat').status_code == 404
    assert client.get('/api/multiplayer/presence?exclude=alice').get_json() == []


def test_invitation_create_and_list(client):
    res = client.post('/api/multiplayer/invitations', json={'from_username': 'alice', 'to_username': 'bob'})
    assert res.status_code == 201
    inv = res.get_json()
    assert inv['status'] == 'pending'
    assert link_param(inv['link'], 'inviteId') == str(inv['id'])

    pending = client.get('/api/multiplayer/invitations?to=bob').get_json()
    assert [i['id'] for i in pending] == [inv['id']]
    assert client.get('/api/multiplayer/invitations?to=alice').get_json() == []


def test_invitation_validation(client):
    res = client.post('/api/multiplayer/invitations', json={'from_username': 'alice', 'to_username': 'ALICE'})
    assert res.status_code == 400
    res = client.post('/api/multiplayer/invitations', json={'from_username': 'alice'})
    assert res.status_code == 400
    assert client.get('/api/multiplayer/invitations').status_code == 400


def test_respond_rules(client):
    inv = client.post('/api/multiplayer/invitations', json={'from_username': 'alice', 'to_username': 'bob'}).get_json()
    url = f"/api/multiplayer/invitations/{inv['id']}/respond"
    assert client.post(url, json={'username': 'bob', 'response': 'maybe'}).status_code == 400
    assert client.post(url, json={'username': 'carol', 'response': 'accepted'}).status_code == 403
    assert client.post('/api/multiplayer/invitations/999/respond',
                       json={'username': 'bob', 'response': 'accepted'}).status_code == 404

    res = client.post(url, json={'username': 'bob', 'response': 'declined'})
    assert res.status_code == 200
    assert res.get_json()['invitation']['status'] == 'declined'

    res = client.post(url, json={'username': 'bob', 'response': 'accepted'})
    assert res.status_code == 409


def test_accept_creates_game(client):
    game = _accepted_game(client)
    assert game['player1'] == 'alice'
    assert game['player2'] == 'bob'
    assert game['current_round'] == 1
    assert game['game_state']['roundState'] == 'waiting'

    fetched = client.get(f"/api/multiplayer/games/{game['id']}").get_json()
    assert fetched['id'] == game['id']
    assert client.get('/api/multiplayer/games/999').status_code == 404


def test_roll_and_category_actions(client):
    game = _accepted_game(client)
    base = f"/api/multiplayer/games/{game['id']}"

    assert client.post(f'{base}/roll', json={'username': 'mallory'}).status_code == 403
    assert client.post(f'{base}/roll', json={}).status_code == 400

    rolled = client.post(f'{base}/roll', json={'username': 'Alice'}).get_json()
    assert rolled['side'] == 'player1'
    state_name = rolled['rolled']
    assert rolled['game']['game_state']['player1']['currentState'] == state_name

    picked = client.post(f'{base}/category', json={'username': 'alice', 'category': 'wind'}).get_json()
    assert picked['score'] == category_score('wind', state_name)
    assert picked['game']['game_state']['player1']['score'] == picked['score']

    again = client.post(f'{base}/category', json={'username': 'alice', 'category': 'wind'}).get_json()
    assert again['score'] is None
    assert again['game']['game_state']['player1']['score'] == picked['score']

    assert client.post(f'{base}/category', json={'username': 'alice'}).status_code == 400


def test_ready_and_next_round(client):
    game = _accepted_game(client)
    base = f"/api/multiplayer/games/{game['id']}"

    res = client.post(f'{base}/ready', json={'username': 'bob'}).get_json()
    assert res['pre_ready'] is True
    assert res['game']['game_state']['player2']['preReady'] is True

    assert client.post(f'{base}/next-round', json={'username': 'bob'}).status_code == 400


def test_state_write_is_version_checked(client):
    game = _accepted_game(client)
    url = f"/api/multiplayer/games/{game['id']}/state"
    state = game['game_state']

    state['version'] = 1
    state['player1']['preReady'] = True
    res = client.put(url, json={'game_state': state})
    assert res.status_code == 200
    assert res.get_json()['game_state']['player1']['preReady'] is True

    res = client.put(url, json={'game_state': state})
    assert res.status_code == 409
    assert res.get_json()['stored_version'] == 1

    assert client.put(url, json={}).status_code == 400


def test_game_link_and_claim(client):
    res = client.post('/api/multiplayer/games/link', json={'username': 'alice'})
    assert res.status_code == 201
    body = res.get_json()
    assert body['game']['player2'] == 'TBD'
    game_id = body['game']['id']
    assert link_param(body['link'], 'gameId') == str(game_id)

    claimed = client.post(f'/api/multiplayer/games/{game_id}/claim', json={'username': 'bob'}).get_json()
    assert claimed['player2'] == 'bob'
    # Rejoining by a listed player is fine; anyone else is turned away
    assert client.post(f'/api/multiplayer/games/{game_id}/claim', json={'username': 'BOB'}).status_code == 200
    assert client.post(f'/api/multiplayer/games/{game_id}/claim', json={'username': 'carol'}).status_code == 403


def test_rooms(client):
    rooms = client.get('/api/multiplayer/rooms').get_json()
    assert [r['name'] for r in rooms] == ['Room 1', 'Room 2', 'Room 3', 'Room 4', 'Room 5']


def test_category_must_be_a_string(client):
    game = _accepted_game(client)
    base = f"/api/multiplayer/games/{game['id']}"
    client.post(f'{base}/roll', json={'username': 'alice'})
    res = client.post(f'{base}/category', json={'username': 'alice', 'category': ['wind']})
    assert res.status_code == 400
    assert res.get_json()['error'] == 'category must be a non-empty string'


def test_invitation_reports_session_notifications(client):
    res = client.post('/api/multiplayer/invitations', json={'from_username': 'alice', 'to_username': 'Alice'})
    assert res.status_code == 400
    body = res.get_json()
    assert body['error'] == 'You cannot challenge yourself!'
    assert body['notifications'] == [{'message': 'You cannot challenge yourself!', 'level': 'error'}]

    res = client.post('/api/multiplayer/invitations', json={'from_username': 'alice', 'to_username': 'bob'})
    assert res.status_code == 201
    assert res.get_json()['notifications'][0]['message'] == 'Challenge sent to bob! (expires in 5 min)'


def test_pending_invitations_ignore_name_case(client):
    inv = client.post('/api/multiplayer/invitations', json={'from_username': 'alice', 'to_username': 'bob'}).get_json()
    pending = client.get('/api/multiplayer/invitations?to=Bob').get_json()
    assert [i['id'] for i in pending] == [inv['id']]
