from flask_socketio import join_room, leave_room, emit
from playbymail import socketio, db
from playbymail.models import GameInstance
from playbymail.services.games.notify import instance_room


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_watch_instance(data):
    instance_id = (data or {}).get('game_instance_id')
    if not instance_id:
        emit('error', {'message': 'game_instance_id is required'})
        return
    instance = db.session.get(GameInstance, instance_id)
    if instance is None:
        emit('error', {'message': f'game instance {instance_id} not found'})
        return
    room = instance_room(instance_id)
    join_room(room)
    emit('watching', {'room': room, 'instance': instance.to_dict()})


def handle_unwatch_instance(data):
    instance_id = (data or {}).get('game_instance_id')
    if not instance_id:
        emit('error', {'message': 'game_instance_id is required'})
        return
    room = instance_room(instance_id)
    leave_room(room)
    emit('unwatched', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on namespace '/ws'.

    Clients watch a game instance to receive instance_update and
    sheet_update events while its turns progress.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('watch_instance', handle_watch_instance, namespace='/ws')
    socketio.on_event('unwatch_instance', handle_unwatch_instance, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')
