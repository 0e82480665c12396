from playbymail import socketio


NAMESPACE = '/ws'


def instance_room(instance_id: str) -> str:
    return f"instance:{instance_id}"


def emit_instance_update(instance) -> None:
    socketio.emit('instance_update', instance.to_dict(), to=instance_room(instance.id), namespace=NAMESPACE)


def emit_sheet_update(sheet) -> None:
    socketio.emit(
        'sheet_update',
        {
            'id': sheet.id,
            'game_instance_id': sheet.game_instance_id,
            'turn_number': sheet.turn_number,
            'sheet_type': sheet.sheet_type,
            'processing_status': sheet.processing_status,
        },
        to=instance_room(sheet.game_instance_id),
        namespace=NAMESPACE,
    )
