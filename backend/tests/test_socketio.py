from playbymail import db
from playbymail.services.games.lifecycle import start_instance


def _names(received):
    return [pkt['name'] for pkt in received]


def test_socket_connect(sio_client):
    assert sio_client.is_connected('/ws')
    assert 'connected' in _names(sio_client.get_received('/ws'))


def test_watch_instance_receives_updates(sio_client, world, services):
    world.enroll('Aria the Bold', 'aria@example.com')
    sio_client.get_received('/ws')  # flush

    sio_client.emit('watch_instance', {'game_instance_id': world.instance.id}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert _names(received) == ['watching']
    assert received[0]['args'][0]['room'] == f'instance:{world.instance.id}'

    start_instance(db.session, services, world.instance.id)
    updates = [pkt['args'][0] for pkt in sio_client.get_received('/ws') if pkt['name'] == 'instance_update']
    assert updates[-1]['status'] == 'waiting_for_turn'


def test_unwatched_instance_is_quiet(sio_client, world, services):
    world.enroll('Aria the Bold', 'aria@example.com')
    sio_client.emit('watch_instance', {'game_instance_id': world.instance.id}, namespace='/ws')
    sio_client.emit('unwatch_instance', {'game_instance_id': world.instance.id}, namespace='/ws')
    assert 'unwatched' in _names(sio_client.get_received('/ws'))

    start_instance(db.session, services, world.instance.id)
    assert 'instance_update' not in _names(sio_client.get_received('/ws'))


def test_watch_requires_a_known_instance(sio_client, flask_app):
    sio_client.get_received('/ws')
    sio_client.emit('watch_instance', {}, namespace='/ws')
    sio_client.emit('watch_instance', {'game_instance_id': 'missing'}, namespace='/ws')
    assert _names(sio_client.get_received('/ws')) == ['error', 'error']


def test_ping(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert received[0]['name'] == 'pong'
    assert received[0]['args'][0] == {'n': 1}
