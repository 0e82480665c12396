import pytest

from playbymail import db
from playbymail.errors import ConflictOnSheetKey, IllegalTransition, SheetNotFound
from playbymail.models import GameTurnSheet, SheetStatus
from playbymail.services.turnsheets.store import (
    create_sheet,
    get_sheet_by_id,
    list_pending_sheets,
    list_turn_sheets,
    mark_awaiting_scan,
    mark_failed,
    mark_processed,
    write_scanned_data,
)


@pytest.fixture()
def player(world):
    return world.enroll('Aria the Bold', 'aria@example.com')


def _sheet(world, player, turn_number=1, sheet_order=1):
    return GameTurnSheet(
        game_id=world.game.id,
        game_instance_id=world.instance.id,
        account_id=player.account_id,
        turn_number=turn_number,
        sheet_type='location_choice',
        sheet_order=sheet_order,
        sheet_data={'location_name': 'Crossroads'},
    )


def test_create_sheet_starts_pending(world, player):
    sheet_id = create_sheet(db.session, _sheet(world, player))
    db.session.commit()
    sheet = get_sheet_by_id(db.session, sheet_id)
    assert sheet.processing_status == SheetStatus.PENDING
    assert sheet.is_completed is False
    assert sheet.get_sheet_data() == {'location_name': 'Crossroads'}


def test_sheet_key_is_unique(world, player):
    first = create_sheet(db.session, _sheet(world, player))
    with pytest.raises(ConflictOnSheetKey):
        create_sheet(db.session, _sheet(world, player))
    # The failed insert leaves the rest of the transaction usable
    create_sheet(db.session, _sheet(world, player, sheet_order=2))
    db.session.commit()
    assert [s.id for s in list_turn_sheets(db.session, world.instance.id, 1)][0] == first
    assert len(list_turn_sheets(db.session, world.instance.id, 1)) == 2


def test_full_lifecycle(world, player):
    sheet_id = create_sheet(db.session, _sheet(world, player))
    mark_awaiting_scan(db.session, sheet_id)
    write_scanned_data(db.session, sheet_id, b'{"choices": ["loc-1"]}')
    mark_processed(db.session, sheet_id)
    db.session.commit()

    sheet = get_sheet_by_id(db.session, sheet_id)
    assert sheet.processing_status == SheetStatus.PROCESSED
    assert sheet.is_completed is True
    assert sheet.get_scanned_data() == {'choices': ['loc-1']}
    assert sheet.scanned_at is not None
    assert sheet.completed_at is not None


def test_scan_requires_awaiting_scan(world, player):
    sheet_id = create_sheet(db.session, _sheet(world, player))
    with pytest.raises(IllegalTransition):
        write_scanned_data(db.session, sheet_id, {'choices': []})
    assert get_sheet_by_id(db.session, sheet_id).scanned_data is None


def test_scanned_data_is_written_once(world, player):
    sheet_id = create_sheet(db.session, _sheet(world, player))
    mark_awaiting_scan(db.session, sheet_id)
    write_scanned_data(db.session, sheet_id, {'choices': ['loc-1']})
    with pytest.raises(IllegalTransition):
        write_scanned_data(db.session, sheet_id, {'choices': ['loc-2']})
    assert get_sheet_by_id(db.session, sheet_id).get_scanned_data() == {'choices': ['loc-1']}


def test_only_scanned_sheets_are_processed(world, player):
    sheet_id = create_sheet(db.session, _sheet(world, player))
    mark_awaiting_scan(db.session, sheet_id)
    with pytest.raises(IllegalTransition):
        mark_processed(db.session, sheet_id)


def test_failed_is_terminal(world, player):
    sheet_id = create_sheet(db.session, _sheet(world, player))
    mark_failed(db.session, sheet_id, 'not returned before the turn deadline')
    # Failing twice is harmless
    mark_failed(db.session, sheet_id, 'again')
    with pytest.raises(IllegalTransition):
        mark_awaiting_scan(db.session, sheet_id)
    sheet = get_sheet_by_id(db.session, sheet_id)
    assert sheet.processing_status == SheetStatus.FAILED
    assert sheet.error_message == 'not returned before the turn deadline'


def test_processed_sheet_cannot_fail(world, player):
    sheet_id = create_sheet(db.session, _sheet(world, player))
    mark_awaiting_scan(db.session, sheet_id)
    write_scanned_data(db.session, sheet_id, {'choices': []})
    mark_processed(db.session, sheet_id)
    with pytest.raises(IllegalTransition):
        mark_failed(db.session, sheet_id, 'too late')


def test_pending_list_skips_terminal_sheets(world, player):
    other = world.enroll('Bram Stone', 'bram@example.com')
    open_id = create_sheet(db.session, _sheet(world, player))
    done_id = create_sheet(db.session, _sheet(world, other))
    create_sheet(db.session, _sheet(world, player, turn_number=2))
    mark_failed(db.session, done_id, 'lost in the post')
    db.session.commit()
    assert [s.id for s in list_pending_sheets(db.session, world.instance.id, 1)] == [open_id]


def test_unknown_sheet(flask_app):
    with pytest.raises(SheetNotFound):
        get_sheet_by_id(db.session, 'missing')
    with pytest.raises(SheetNotFound):
        mark_failed(db.session, 'missing', 'lost')
