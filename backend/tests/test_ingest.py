import base64
import json

import pytest

from playbymail import db
from playbymail.errors import IllegalTransition, InvalidCodeFormat, InvalidScanResult, SheetNotFound
from playbymail.models import GameTurnSheet, SheetStatus
from playbymail.services.games.lifecycle import start_instance
from playbymail.services.turnsheets.ingest import ingest_scan, read_sheet_code
from playbymail.services.turnsheets.store import write_scanned_data
from conftest import make_png


@pytest.fixture()
def turn_sheet(world, services):
    world.enroll('Aria the Bold', 'aria@example.com')
    start_instance(db.session, services, world.instance.id)
    return GameTurnSheet.query.filter_by(game_instance_id=world.instance.id, turn_number=1).one()


def test_issued_sheet_offers_the_exits(turn_sheet):
    assert turn_sheet.processing_status == SheetStatus.AWAITING_SCAN
    options = turn_sheet.get_sheet_data()['location_options']
    assert [(o['location_id'], o['name']) for o in options] == [
        ('loc-1', 'Enter the Forest'),
        ('loc-2', 'Follow the River'),
        ('loc-3', 'Return to Village'),
    ]


def test_location_choice_scan(turn_sheet, services, fake_openai):
    code = turn_sheet.get_sheet_data()['turn_sheet_code']
    fake_openai.queue_code(code)
    fake_openai.queue_structured({'choices': ['loc-1']})
    image = make_png(mark=(20, 60, 40, 80))

    result = ingest_scan(db.session, services, image)

    assert result.code_type == 'play'
    assert result.status == SheetStatus.SCANNED
    assert result.sheet_id == turn_sheet.id
    sheet = db.session.get(GameTurnSheet, turn_sheet.id)
    assert sheet.processing_status == SheetStatus.SCANNED
    assert sheet.get_scanned_data() == {'choices': ['loc-1']}
    assert services.object_store.get_object(f"scans/{sheet.game_instance_id}/{sheet.id}") == image


def test_invalid_choice_leaves_sheet_awaiting_scan(turn_sheet, services, fake_openai):
    fake_openai.queue_code(turn_sheet.get_sheet_data()['turn_sheet_code'])
    fake_openai.queue_structured({'choices': ['loc-99']})

    with pytest.raises(InvalidScanResult):
        ingest_scan(db.session, services, make_png())

    sheet = db.session.get(GameTurnSheet, turn_sheet.id)
    assert sheet.processing_status == SheetStatus.AWAITING_SCAN
    assert sheet.scanned_data is None


def test_sheet_is_scanned_only_once(turn_sheet, services, fake_openai):
    code = turn_sheet.get_sheet_data()['turn_sheet_code']
    fake_openai.queue_code(code)
    fake_openai.queue_structured({'choices': ['loc-2']})
    ingest_scan(db.session, services, make_png())

    fake_openai.queue_code(code)
    with pytest.raises(IllegalTransition):
        ingest_scan(db.session, services, make_png())
    assert db.session.get(GameTurnSheet, turn_sheet.id).get_scanned_data() == {'choices': ['loc-2']}


def test_unreadable_code(services, fake_openai, flask_app):
    fake_openai.queue_text('I cannot find any code on this page')
    with pytest.raises(InvalidCodeFormat):
        ingest_scan(db.session, services, make_png())


def test_code_for_unknown_sheet(services, fake_openai, flask_app):
    fake_openai.queue_code(services.codec.encode_play('no-such-sheet'))
    with pytest.raises(SheetNotFound):
        ingest_scan(db.session, services, make_png())


def test_code_is_picked_out_of_surrounding_text(services, fake_openai, flask_app):
    code = services.codec.encode_play('sheet-789')
    fake_openai.queue_text(f"Turn Sheet Code\n{code}\nReturn by Friday_the_thirteenth")
    assert read_sheet_code(services, make_png()) == code


def test_concurrent_scan_loses_the_race(turn_sheet, services, fake_openai, monkeypatch):
    processor = services.processors.get(turn_sheet.sheet_type)
    scan = processor.scan_turn_sheet

    def scan_while_another_worker_commits(sheet_data, image):
        answer = scan(sheet_data, image)
        # another worker stores its answer while this one is still reading
        write_scanned_data(db.session, turn_sheet.id, {'choices': ['loc-3']})
        db.session.commit()
        return answer

    monkeypatch.setattr(processor, 'scan_turn_sheet', scan_while_another_worker_commits)
    fake_openai.queue_code(turn_sheet.get_sheet_data()['turn_sheet_code'])
    fake_openai.queue_structured({'choices': ['loc-1']})

    with pytest.raises(IllegalTransition):
        ingest_scan(db.session, services, make_png())

    sheet = db.session.get(GameTurnSheet, turn_sheet.id)
    assert sheet.processing_status == SheetStatus.SCANNED
    assert sheet.get_scanned_data() == {'choices': ['loc-3']}


def test_code_with_non_ascii_signature(turn_sheet, services, fake_openai):
    forged = {'code_type': 'play', 'game_turn_sheet_id': turn_sheet.id, 'mac': 'éé'}
    code = base64.urlsafe_b64encode(json.dumps(forged).encode('utf-8')).rstrip(b'=').decode('ascii')
    fake_openai.queue_code(code)

    with pytest.raises(InvalidCodeFormat):
        ingest_scan(db.session, services, make_png())
    assert db.session.get(GameTurnSheet, turn_sheet.id).processing_status == SheetStatus.AWAITING_SCAN
