from flask_socketio import join_room, leave_room, emit
from chainplay import socketio
from chainplay.services.notifications import ADMINS_ROOM, player_room


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_join_player(data):
    player_id = (data or {}).get('player_id')
    if not player_id:
        emit('error', {'message': 'player_id is required'})
        return
    room = player_room(player_id)
    join_room(room)
    emit('joined', {'room': room})


def handle_leave_player(data):
    player_id = (data or {}).get('player_id')
    if not player_id:
        emit('error', {'message': 'player_id is required'})
        return
    room = player_room(player_id)
    leave_room(room)
    emit('left', {'room': room})


def handle_join_admins(data=None):
    # Identity is checked upstream; this only subscribes the socket to flag alerts
    join_room(ADMINS_ROOM)
    emit('joined', {'room': ADMINS_ROOM})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    handlers = {
        'connect': handle_connect,
        'join_player': handle_join_player,
        'leave_player': handle_leave_player,
        'join_admins': handle_join_admins,
        'ping': handle_ping,
    }
    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        for event, handler in handlers.items():
            socketio.on_event(event, handler, namespace=namespace)
