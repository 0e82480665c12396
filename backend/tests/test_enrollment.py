import re
from datetime import timedelta

import pytest

from playbymail import db
from playbymail.errors import IllegalTransition, InstanceFull, InvalidJoinToken, SubscriptionNotFound, TransientFailure
from playbymail.models import (
    Account,
    AccountUser,
    EnrollmentStatus,
    GameCharacterInstance,
    GameInstance,
    GameSubscription,
    GameSubscriptionInstance,
    GameTurnSheet,
    InstanceStatus,
    Job,
    SheetStatus,
    SubscriptionStatus,
    SubscriptionType,
    utcnow,
)
from playbymail.services.games.enrollment import approve_join_request, render_join_sheet, send_join_approval
from playbymail.services.jobs import SEND_JOIN_APPROVAL
from playbymail.services.turnsheets.ingest import ingest_scan
from playbymail.services.turnsheets.renderer import DocumentFormat
from conftest import make_png


JOIN_ANSWERS = {
    'email': 'Aria@Gmai1.com',
    'name': 'Aria Vance',
    'postal_address_line1': '12 Lantern Lane',
    'postal_address_line2': '',
    'state_province': 'Wellington',
    'country': 'New Zealand',
    'postal_code': '6011',
    'character_name': 'Aria the Bold',
}

TOKEN_RE = re.compile(r'token=([A-Za-z0-9_-]+)')


def _submit(services, fake_openai, world, answers=None):
    fake_openai.queue_code(services.codec.encode_join(world.manager_subscription.id))
    fake_openai.queue_structured(answers or JOIN_ANSWERS)
    return ingest_scan(db.session, services, make_png(mark=(30, 30, 200, 60)))


def _token(mail):
    return TOKEN_RE.search(mail.body_html).group(1)


def test_join_sheet_carries_the_join_code(world, services):
    html = render_join_sheet(db.session, services, world.manager_subscription.id, DocumentFormat.HTML).decode()
    assert 'Join Game' in html
    assert 'Character name' in html
    assert services.codec.encode_join(world.manager_subscription.id) in html


def test_join_sheet_needs_a_manager_subscription(world, services):
    player = world.enroll('Bram Stone', 'bram@example.com')
    with pytest.raises(SubscriptionNotFound):
        render_join_sheet(db.session, services, player.game_subscription_id)


def test_scanned_join_sheet_creates_pending_enrollment(world, services, fake_openai, mailer):
    result = _submit(services, fake_openai, world)

    assert result.code_type == 'join'
    assert result.status == EnrollmentStatus.PENDING_APPROVAL
    enrollment = db.session.get(GameSubscriptionInstance, result.game_subscription_instance_id)
    assert enrollment.game_instance_id == world.instance.id
    assert enrollment.character_name == 'Aria the Bold'

    account = db.session.get(Account, enrollment.account_id)
    assert account.email == 'aria@gmail.com'
    assert account.postal_code == '6011'
    assert AccountUser.query.filter_by(email='aria@gmail.com').count() == 1
    subscription = db.session.get(GameSubscription, enrollment.game_subscription_id)
    assert subscription.subscription_type == SubscriptionType.PLAYER
    assert subscription.status == SubscriptionStatus.PENDING_APPROVAL

    sheet = db.session.get(GameTurnSheet, result.sheet_id)
    assert sheet.turn_number == 0
    assert sheet.processing_status == SheetStatus.SCANNED
    # Domain typo fixed; the account email is also lowercased
    assert sheet.get_scanned_data()['email'] == 'Aria@gmail.com'

    assert len(mailer.sent) == 1
    mail = mailer.sent[0]
    assert mail.to == 'aria@gmail.com'
    assert f"/api/game-subscription-instances/{enrollment.id}/approve?token=" in mail.body_html


def test_confirming_the_link_enrolls_and_starts_a_full_instance(world, services, fake_openai, mailer):
    world.instance.player_capacity = 1
    db.session.commit()
    result = _submit(services, fake_openai, world)
    token = _token(mailer.sent[0])

    enrollment = approve_join_request(db.session, services, result.game_subscription_instance_id, token)

    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.token_hash is None
    assert db.session.get(GameSubscription, enrollment.game_subscription_id).status == SubscriptionStatus.ACTIVE
    character = GameCharacterInstance.query.filter_by(game_subscription_instance_id=enrollment.id).one()
    assert character.name == 'Aria the Bold'
    assert character.location_id == 'loc-start'
    assert db.session.get(GameTurnSheet, result.sheet_id).processing_status == SheetStatus.PROCESSED

    instance = db.session.get(GameInstance, world.instance.id)
    assert instance.status == InstanceStatus.WAITING_FOR_TURN
    first_sheet = GameTurnSheet.query.filter_by(game_instance_id=instance.id, turn_number=1).one()
    assert first_sheet.processing_status == SheetStatus.AWAITING_SCAN
    assert mailer.sent[-1].attachments[0].content.startswith(b'%PDF-')

    # Following the link again changes nothing
    again = approve_join_request(db.session, services, enrollment.id, token)
    assert again.status == EnrollmentStatus.ACTIVE
    assert GameCharacterInstance.query.count() == 1


def test_instance_waits_until_full(world, services, fake_openai, mailer):
    result = _submit(services, fake_openai, world)
    approve_join_request(db.session, services, result.game_subscription_instance_id, _token(mailer.sent[0]))
    assert db.session.get(GameInstance, world.instance.id).status == InstanceStatus.CREATED


def test_wrong_token_is_refused(world, services, fake_openai):
    result = _submit(services, fake_openai, world)
    with pytest.raises(InvalidJoinToken):
        approve_join_request(db.session, services, result.game_subscription_instance_id, 'not-the-token')
    enrollment = db.session.get(GameSubscriptionInstance, result.game_subscription_instance_id)
    assert enrollment.status == EnrollmentStatus.PENDING_APPROVAL


def test_expired_token_is_refused(world, services, fake_openai, mailer):
    result = _submit(services, fake_openai, world)
    later = utcnow() + timedelta(hours=73)
    with pytest.raises(InvalidJoinToken):
        approve_join_request(db.session, services, result.game_subscription_instance_id,
                             _token(mailer.sent[0]), now=later)


def test_resending_replaces_the_token(world, services, fake_openai, mailer):
    result = _submit(services, fake_openai, world)
    old_token = _token(mailer.sent[0])
    send_join_approval(db.session, services, result.game_subscription_instance_id)
    new_token = _token(mailer.sent[1])
    with pytest.raises(InvalidJoinToken):
        approve_join_request(db.session, services, result.game_subscription_instance_id, old_token)
    enrollment = approve_join_request(db.session, services, result.game_subscription_instance_id, new_token)
    assert enrollment.status == EnrollmentStatus.ACTIVE


def test_same_player_cannot_ask_twice(world, services, fake_openai):
    _submit(services, fake_openai, world)
    with pytest.raises(IllegalTransition):
        _submit(services, fake_openai, world)
    assert GameSubscriptionInstance.query.count() == 1


def test_join_without_an_open_instance(world, services, fake_openai):
    world.instance.status = InstanceStatus.ABANDONED
    db.session.commit()
    with pytest.raises(InstanceFull):
        _submit(services, fake_openai, world)
    assert Account.query.filter_by(email='aria@gmail.com').count() == 0


def test_mail_outage_queues_the_approval(world, services, fake_openai, mailer):
    mailer.fail_with = TransientFailure('smtp 421 service not available')
    result = _submit(services, fake_openai, world)

    job = Job.query.one()
    assert job.kind == SEND_JOIN_APPROVAL
    assert job.get_payload() == {'enrollment_id': result.game_subscription_instance_id}
    assert db.session.get(GameSubscriptionInstance, result.game_subscription_instance_id).status == \
        EnrollmentStatus.PENDING_APPROVAL
