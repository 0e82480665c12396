"""Joining a game by post.

A manager's join sheet carries a join code. When a filled-in join sheet is
scanned the player gets an account, a pending player subscription and a
pending enrollment on one of the manager's created instances, and is mailed a
confirmation link. Following the link enrolls the player.
"""
import logging
import secrets
from datetime import timedelta

from markupsafe import escape

from playbymail import bcrypt
from playbymail.errors import (
    IllegalTransition,
    InstanceFull,
    InvalidJoinToken,
    PlayByMailError,
    SubscriptionNotFound,
)
from playbymail.models import (
    Account,
    AccountUser,
    EnrollmentStatus,
    GameCharacterInstance,
    GameSubscription,
    GameSubscriptionInstance,
    GameTurnSheet,
    InstanceStatus,
    SheetStatus,
    SubscriptionStatus,
    SubscriptionType,
    new_id,
    utcnow,
)
from playbymail.services.collaborators import OutgoingMail
from playbymail.services.jobs import SEND_JOIN_APPROVAL, enqueue
from playbymail.services.turnsheets.processors import SheetType
from playbymail.services.turnsheets.renderer import DocumentFormat
from playbymail.services.turnsheets.store import create_sheet, mark_processed, write_scanned_data
from .delivery import active_enrollments
from .lifecycle import approve_subscription, find_open_instance, lock_instance, start_instance


logger = logging.getLogger(__name__)


def get_manager_subscription(session, game_subscription_id: str) -> GameSubscription:
    subscription = session.get(GameSubscription, game_subscription_id)
    if subscription is None or subscription.subscription_type != SubscriptionType.MANAGER:
        raise SubscriptionNotFound(f'manager subscription {game_subscription_id} not found')
    return subscription


def join_sheet_data(services, subscription: GameSubscription) -> dict:
    game = subscription.game
    return {
        'game_name': game.name,
        'game_description': game.description or '',
        'turn_sheet_code': services.codec.encode_join(subscription.id),
    }


def render_join_sheet(session, services, game_subscription_id: str, fmt=DocumentFormat.PDF) -> bytes:
    subscription = get_manager_subscription(session, game_subscription_id)
    processor = services.processors.get(SheetType.JOIN_GAME)
    return processor.generate_turn_sheet(fmt, join_sheet_data(services, subscription))


def _find_or_create_account(session, scan: dict) -> Account:
    email = scan['email'].lower()
    account = session.query(Account).filter_by(email=email).first()
    if account is None:
        account = Account(
            id=new_id(),
            name=scan['name'],
            email=email,
            postal_address_line1=scan.get('postal_address_line1') or None,
            postal_address_line2=scan.get('postal_address_line2') or None,
            state_province=scan.get('state_province') or None,
            country=scan.get('country') or None,
            postal_code=scan.get('postal_code') or None,
        )
        session.add(account)
        session.add(AccountUser(account_id=account.id, email=email))
        logger.info(f"[account-create] account={account.id}")
    return account


def _find_or_create_player_subscription(session, game_id: str, account: Account) -> GameSubscription:
    subscription = (
        session.query(GameSubscription)
        .filter(
            GameSubscription.game_id == game_id,
            GameSubscription.account_id == account.id,
            GameSubscription.subscription_type == SubscriptionType.PLAYER,
            GameSubscription.status.in_((SubscriptionStatus.PENDING_APPROVAL, SubscriptionStatus.ACTIVE)),
        )
        .first()
    )
    if subscription is None:
        subscription = GameSubscription(
            id=new_id(),
            game_id=game_id,
            account_id=account.id,
            subscription_type=SubscriptionType.PLAYER,
            status=SubscriptionStatus.PENDING_APPROVAL,
        )
        session.add(subscription)
    return subscription


def submit_join_request(session, services, game_subscription_id: str, image: bytes, now=None):
    """Scan a filled join sheet and create the pending enrollment."""
    manager = get_manager_subscription(session, game_subscription_id)
    if manager.status != SubscriptionStatus.ACTIVE:
        raise IllegalTransition(f'manager subscription {manager.id} is {manager.status}')
    processor = services.processors.get(SheetType.JOIN_GAME)
    sheet_data = join_sheet_data(services, manager)
    scan = processor.scan_turn_sheet(sheet_data, image)

    try:
        instance = find_open_instance(session, manager)
        if instance is None:
            raise InstanceFull(f'no open game instance under subscription {manager.id}')
        account = _find_or_create_account(session, scan)
        player = _find_or_create_player_subscription(session, manager.game_id, account)
        session.flush()
        existing = session.query(GameSubscriptionInstance).filter_by(
            game_subscription_id=player.id, game_instance_id=instance.id
        ).first()
        if existing is not None:
            raise IllegalTransition(f'account {account.id} already asked to join instance {instance.id}')

        sheet = GameTurnSheet(
            id=new_id(),
            game_id=manager.game_id,
            game_instance_id=instance.id,
            account_id=account.id,
            turn_number=0,
            sheet_type=SheetType.JOIN_GAME.value,
            sheet_order=1,
            sheet_data=processor.parse_sheet_data(sheet_data).model_dump_json(),
            processing_status=SheetStatus.AWAITING_SCAN,
        )
        create_sheet(session, sheet)
        write_scanned_data(session, sheet.id, scan)
        enrollment = GameSubscriptionInstance(
            id=new_id(),
            game_subscription_id=player.id,
            game_instance_id=instance.id,
            account_id=account.id,
            status=EnrollmentStatus.PENDING_APPROVAL,
            character_name=scan['character_name'],
            join_sheet_id=sheet.id,
        )
        session.add(enrollment)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(
        f"[join-request] subscription={manager.id} instance={instance.id} enrollment={enrollment.id} account={account.id}"
    )
    request_join_approval(session, services, enrollment.id, now)
    return enrollment


def send_join_approval(session, services, enrollment_id: str, now=None) -> None:
    """Issue a fresh approval token and mail the confirmation link."""
    now = now or utcnow()
    enrollment = session.get(GameSubscriptionInstance, enrollment_id)
    if enrollment is None:
        raise SubscriptionNotFound(f'enrollment {enrollment_id} not found')
    if enrollment.status != EnrollmentStatus.PENDING_APPROVAL:
        logger.info(f"[join-approval-skip] enrollment={enrollment_id} status={enrollment.status}")
        return
    token = secrets.token_urlsafe(32)
    enrollment.token_hash = bcrypt.generate_password_hash(token).decode('utf-8')
    enrollment.token_expires_at = now + timedelta(hours=int(services.config.get('JOIN_TOKEN_TTL_HOURS', 72)))
    session.commit()

    game = enrollment.subscription.game
    base_url = services.config.get('PUBLIC_BASE_URL', 'http://localhost:5000').rstrip('/')
    link = f"{base_url}/api/game-subscription-instances/{enrollment.id}/approve?token={token}"
    services.mailer.send(OutgoingMail(
        sender=services.config.get('MAIL_FROM', 'turns@playbymail.local'),
        to=enrollment.account.email,
        subject=f"Confirm your place in {game.name}",
        body_html=(
            f"<p>Hello {escape(enrollment.account.name)},</p>"
            f"<p>We received your join form for <strong>{escape(game.name)}</strong> "
            f"with the character {escape(enrollment.character_name or '')}.</p>"
            f"<p><a href=\"{escape(link)}\">Confirm your place</a></p>"
        ),
    ))
    logger.info(f"[join-approval-sent] enrollment={enrollment.id} expires={enrollment.token_expires_at.isoformat()}")


def request_join_approval(session, services, enrollment_id: str, now=None) -> None:
    try:
        send_join_approval(session, services, enrollment_id, now)
    except PlayByMailError as exc:
        if not exc.transient:
            raise
        session.rollback()
        enqueue(session, SEND_JOIN_APPROVAL, enrollment_id, {'enrollment_id': enrollment_id})
        session.commit()
        logger.warning(f"[join-approval-retry] enrollment={enrollment_id} error={exc}")


def approve_join_request(session, services, enrollment_id: str, token: str, now=None) -> GameSubscriptionInstance:
    """Confirm a join request and enroll the player."""
    now = now or utcnow()
    enrollment = session.get(GameSubscriptionInstance, enrollment_id)
    if enrollment is None:
        raise SubscriptionNotFound(f'enrollment {enrollment_id} not found')
    if enrollment.status == EnrollmentStatus.ACTIVE:
        return enrollment
    if enrollment.status != EnrollmentStatus.PENDING_APPROVAL:
        raise IllegalTransition(f'enrollment {enrollment_id} is {enrollment.status}')
    if (
        not token
        or not enrollment.token_hash
        or (enrollment.token_expires_at and enrollment.token_expires_at < now)
        or not bcrypt.check_password_hash(enrollment.token_hash, token)
    ):
        raise InvalidJoinToken('join confirmation link is invalid or has expired')

    try:
        instance = lock_instance(session, enrollment.game_instance_id)
        if instance.status != InstanceStatus.CREATED:
            raise IllegalTransition(f'instance {instance.id} is {instance.status} and no longer accepts players')
        enrolled = len(active_enrollments(session, instance.id))
        if enrolled >= instance.player_capacity:
            raise InstanceFull(f'instance {instance.id} is full')
        if enrollment.subscription.status == SubscriptionStatus.PENDING_APPROVAL:
            approve_subscription(session, enrollment.game_subscription_id, now)
        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.token_hash = None
        enrollment.token_expires_at = None
        session.add(GameCharacterInstance(
            game_instance_id=instance.id,
            game_subscription_instance_id=enrollment.id,
            account_id=enrollment.account_id,
            name=enrollment.character_name or enrollment.account.name,
            location_id=instance.game.starting_location_id,
        ))
        if enrollment.join_sheet_id:
            mark_processed(session, enrollment.join_sheet_id)
        full = enrolled + 1 >= instance.player_capacity
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"[join-approved] enrollment={enrollment.id} instance={instance.id} players={enrolled + 1}/{instance.player_capacity}")
    if full:
        start_instance(session, services, instance.id, now)
    return enrollment
