from chainplay.services import notifications


def _connected(sio_client):
    if not sio_client.is_connected('/ws'):
        sio_client.connect(namespace='/ws')
    assert sio_client.is_connected('/ws')
    # Flush the connect greeting
    sio_client.get_received('/ws')
    return sio_client


def test_socket_connect_and_join(sio_client):
    _connected(sio_client)

    sio_client.emit('join_player', {'player_id': 'p1'}, namespace='/ws')
    received = sio_client.get_received('/ws')
    joined = [pkt for pkt in received if pkt['name'] == 'joined']
    assert joined and joined[0]['args'][0]['room'] == 'player:p1'


def test_join_requires_player_id(sio_client):
    _connected(sio_client)
    sio_client.emit('join_player', {}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'error' for pkt in received)


def test_ping(sio_client):
    _connected(sio_client)
    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert {'name': 'pong', 'args': [{'n': 1}], 'namespace': '/ws'} in received


def test_player_room_receives_notifications(flask_app, sio_client):
    _connected(sio_client)
    sio_client.emit('join_player', {'player_id': 'p1'}, namespace='/ws')
    sio_client.get_received('/ws')

    notifications.notify_player('p1', 'party_invitation', season_id='s_1')
    notifications.notify_player('p2', 'party_invitation', season_id='s_2')

    received = [pkt for pkt in sio_client.get_received('/ws') if pkt['name'] == 'notification']
    assert [pkt['args'][0] for pkt in received] == [{'kind': 'party_invitation', 'season_id': 's_1'}]


def test_left_room_stops_notifications(flask_app, sio_client):
    _connected(sio_client)
    sio_client.emit('join_player', {'player_id': 'p1'}, namespace='/ws')
    sio_client.emit('leave_player', {'player_id': 'p1'}, namespace='/ws')
    sio_client.get_received('/ws')

    notifications.notify_player('p1', 'turn_assigned', turn_id='t_x')
    assert [pkt for pkt in sio_client.get_received('/ws') if pkt['name'] == 'notification'] == []


def test_flag_alerts_reach_admins(flask_app, sio_client, client, play):
    _connected(sio_client)
    sio_client.emit('join_admins', namespace='/ws')
    sio_client.get_received('/ws')

    first = play('p1')
    res = client.post(f'/api/turns/{first.id}/flags', json={'player_id': 'p2', 'reason': 'spam'})
    assert res.status_code == 201

    received = [pkt['args'][0] for pkt in sio_client.get_received('/ws') if pkt['name'] == 'notification']
    assert received[-1]['kind'] == 'flag_submitted'
    assert received[-1]['turn_id'] == first.id
    assert received[-1]['game_id'] == first.game_id
