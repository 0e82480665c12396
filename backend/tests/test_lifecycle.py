from datetime import timedelta

import pytest

from playbymail import db
from playbymail.errors import (
    IllegalTransition,
    InstanceNotFound,
    PermanentFailure,
    SubscriptionNotFound,
    TransientFailure,
)
from playbymail.models import (
    EnrollmentStatus,
    GameImage,
    GameInstance,
    GameSubscription,
    GameSubscriptionInstance,
    GameTurnSheet,
    InstanceStatus,
    Job,
    JobStatus,
    SheetStatus,
    SubscriptionStatus,
    SubscriptionType,
    utcnow,
)
from playbymail.services.games.lifecycle import (
    abandon_instance,
    approve_subscription,
    cancel_subscription,
    get_subscription,
    lock_instance,
    renew_subscription,
    start_instance,
    transition_instance,
)
from playbymail.services.games.workers import JOB_HANDLERS
from playbymail.services.jobs import DELIVER_TURN_SHEET, run_next_job
from conftest import FAKE_PDF, make_png


def test_instance_status_graph(world):
    with pytest.raises(IllegalTransition):
        transition_instance(world.instance, InstanceStatus.COMPLETED)
    transition_instance(world.instance, InstanceStatus.STARTED)
    assert world.instance.status == InstanceStatus.STARTED


def test_start_mails_first_turn(world, services, mailer):
    aria = world.enroll('Aria the Bold', 'aria@example.com')
    now = utcnow()

    instance = start_instance(db.session, services, world.instance.id, now=now)

    assert instance.status == InstanceStatus.WAITING_FOR_TURN
    assert instance.current_turn == 0
    assert instance.started_at == now
    assert instance.next_deadline == now + timedelta(hours=24)
    sheet = GameTurnSheet.query.filter_by(game_instance_id=instance.id, turn_number=1).one()
    assert sheet.account_id == aria.account_id
    assert sheet.processing_status == SheetStatus.AWAITING_SCAN
    assert services.codec.decode_play(sheet.get_sheet_data()['turn_sheet_code']).game_turn_sheet_id == sheet.id

    assert len(mailer.sent) == 1
    mail = mailer.sent[0]
    assert mail.to == 'aria@example.com'
    assert mail.attachments[0].content == FAKE_PDF
    assert services.object_store.get_object(f"turn-sheets/{instance.id}/{sheet.id}.pdf") == FAKE_PDF

    with pytest.raises(IllegalTransition):
        start_instance(db.session, services, instance.id)


def test_unknown_instance(flask_app):
    with pytest.raises(InstanceNotFound):
        lock_instance(db.session, 'missing')


def test_player_without_a_location_gets_a_failed_sheet(world, services, mailer):
    world.enroll('Aria the Bold', 'aria@example.com', location_id=None)
    start_instance(db.session, services, world.instance.id)
    sheet = GameTurnSheet.query.one()
    assert sheet.processing_status == SheetStatus.FAILED
    assert 'no placed character' in sheet.error_message
    assert mailer.sent == []


def test_background_image_is_embedded(world, services):
    services.object_store.put_object('backgrounds/woods.png', make_png())
    db.session.add(GameImage(game_id=world.game.id, sheet_type='location_choice',
                             object_key='backgrounds/woods.png', mime_type='image/png'))
    db.session.commit()
    world.enroll('Aria the Bold', 'aria@example.com')
    start_instance(db.session, services, world.instance.id)
    sheet = GameTurnSheet.query.one()
    assert sheet.get_sheet_data()['background_image'].startswith('data:image/png;base64,')


def test_mail_outage_becomes_a_delivery_job(world, services, mailer):
    world.enroll('Aria the Bold', 'aria@example.com')
    mailer.fail_with = TransientFailure('smtp 421 service not available')
    start_instance(db.session, services, world.instance.id)

    sheet = GameTurnSheet.query.one()
    assert sheet.processing_status == SheetStatus.PENDING
    job = Job.query.one()
    assert (job.kind, job.key) == (DELIVER_TURN_SHEET, sheet.id)

    mailer.fail_with = None
    job = run_next_job(db.session, services, JOB_HANDLERS, now=utcnow() + timedelta(hours=1))
    assert job.status == JobStatus.COMPLETED
    assert db.session.get(GameTurnSheet, sheet.id).processing_status == SheetStatus.AWAITING_SCAN
    assert len(mailer.sent) == 1


def test_storage_error_does_not_strand_later_sheets(world, services, mailer, monkeypatch):
    world.enroll('Aria the Bold', 'aria@example.com')
    world.enroll('Bram the Quiet', 'bram@example.com')
    put_object = services.object_store.put_object
    calls = []

    def disk_full_once(key, data):
        calls.append(key)
        if len(calls) == 1:
            raise OSError(28, 'No space left on device')
        put_object(key, data)

    monkeypatch.setattr(services.object_store, 'put_object', disk_full_once)
    instance = start_instance(db.session, services, world.instance.id)

    assert instance.status == InstanceStatus.WAITING_FOR_TURN
    statuses = sorted(s.processing_status for s in GameTurnSheet.query.all())
    assert statuses == [SheetStatus.AWAITING_SCAN, SheetStatus.PENDING]
    pending = GameTurnSheet.query.filter_by(processing_status=SheetStatus.PENDING).one()
    job = Job.query.one()
    assert (job.kind, job.key) == (DELIVER_TURN_SHEET, pending.id)
    assert len(mailer.sent) == 1

    job = run_next_job(db.session, services, JOB_HANDLERS, now=utcnow() + timedelta(hours=1))
    assert job.status == JobStatus.COMPLETED
    assert db.session.get(GameTurnSheet, pending.id).processing_status == SheetStatus.AWAITING_SCAN
    assert len(mailer.sent) == 2


def test_refused_recipient_fails_the_sheet(world, services, mailer):
    world.enroll('Aria the Bold', 'aria@example.com')
    mailer.fail_with = PermanentFailure('recipient refused: aria@example.com')
    start_instance(db.session, services, world.instance.id)
    sheet = GameTurnSheet.query.one()
    assert sheet.processing_status == SheetStatus.FAILED
    assert sheet.error_message.startswith('PermanentFailure')
    assert Job.query.count() == 0


def test_abandon_closes_everything(world, services):
    world.enroll('Aria the Bold', 'aria@example.com')
    start_instance(db.session, services, world.instance.id)
    instance_id = world.instance.id

    instance = abandon_instance(db.session, instance_id)

    assert instance.status == InstanceStatus.ABANDONED
    assert instance.next_deadline is None
    sheet = GameTurnSheet.query.one()
    assert sheet.processing_status == SheetStatus.FAILED
    assert sheet.error_message == 'game instance abandoned'
    assert {e.status for e in GameSubscriptionInstance.query.all()} == {EnrollmentStatus.ARCHIVED}
    with pytest.raises(IllegalTransition):
        abandon_instance(db.session, instance_id)
    assert db.session.get(GameInstance, instance_id).status == InstanceStatus.ABANDONED


def test_subscription_lifecycle(world):
    now = utcnow()
    subscription = GameSubscription(
        game_id=world.game.id, account_id=world.manager_account.id,
        subscription_type=SubscriptionType.DESIGNER, renewal_period_days=30,
    )
    db.session.add(subscription)
    db.session.commit()
    assert subscription.status == SubscriptionStatus.PENDING_APPROVAL

    approve_subscription(db.session, subscription.id, now)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.expires_at == now + timedelta(days=30)

    # Renewing early extends from the current expiry
    renew_subscription(db.session, subscription.id, now + timedelta(days=10))
    assert subscription.expires_at == now + timedelta(days=60)

    cancel_subscription(db.session, subscription.id)
    assert subscription.status == SubscriptionStatus.CANCELLED
    with pytest.raises(IllegalTransition):
        renew_subscription(db.session, subscription.id)
    with pytest.raises(IllegalTransition):
        approve_subscription(db.session, subscription.id)


def test_unknown_subscription(flask_app):
    with pytest.raises(SubscriptionNotFound):
        get_subscription(db.session, 'missing')
