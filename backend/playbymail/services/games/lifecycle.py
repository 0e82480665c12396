"""Game instance and subscription state machines.

Instances::

    created -> started -> waiting_for_turn <-> processing -> completed
    abandoned from any non-terminal status

Subscriptions::

    pending_approval -> active -> expired
    active -> active (renewal), active -> cancelled
"""
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.exc import OperationalError

from playbymail.errors import IllegalTransition, InstanceBusy, InstanceNotFound, SubscriptionNotFound
from playbymail.models import (
    EnrollmentStatus,
    GameInstance,
    GameItem,
    GameItemInstance,
    GameSubscription,
    GameSubscriptionInstance,
    GameTurnSheet,
    InstanceStatus,
    SheetStatus,
    SubscriptionStatus,
    utcnow,
)
from playbymail.services.turnsheets.store import mark_failed
from .delivery import active_enrollments, deliver_turn_sheets, issue_turn_sheets
from .notify import emit_instance_update


logger = logging.getLogger(__name__)

INSTANCE_TRANSITIONS = {
    InstanceStatus.CREATED: {InstanceStatus.STARTED, InstanceStatus.ABANDONED},
    InstanceStatus.STARTED: {InstanceStatus.WAITING_FOR_TURN, InstanceStatus.PROCESSING, InstanceStatus.ABANDONED},
    InstanceStatus.WAITING_FOR_TURN: {InstanceStatus.PROCESSING, InstanceStatus.ABANDONED},
    InstanceStatus.PROCESSING: {InstanceStatus.WAITING_FOR_TURN, InstanceStatus.COMPLETED, InstanceStatus.ABANDONED},
    InstanceStatus.COMPLETED: set(),
    InstanceStatus.ABANDONED: set(),
}

SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.PENDING_APPROVAL: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.EXPIRED: set(),
    SubscriptionStatus.CANCELLED: set(),
}

# Statuses the scheduler looks at
SCHEDULABLE_STATUSES = (InstanceStatus.STARTED, InstanceStatus.WAITING_FOR_TURN)


def transition_instance(instance: GameInstance, target: str) -> None:
    if target not in INSTANCE_TRANSITIONS.get(instance.status, set()):
        raise IllegalTransition(f"instance {instance.id} cannot move from {instance.status} to {target}")
    logger.info(f"[instance-status] instance={instance.id} from={instance.status} to={target}")
    instance.status = target


def transition_subscription(subscription: GameSubscription, target: str) -> None:
    if target not in SUBSCRIPTION_TRANSITIONS.get(subscription.status, set()):
        raise IllegalTransition(f"subscription {subscription.id} cannot move from {subscription.status} to {target}")
    subscription.status = target


def turn_duration(instance: GameInstance) -> timedelta:
    return timedelta(hours=instance.game.turn_duration_hours)


def get_instance(session, instance_id: str) -> GameInstance:
    instance = session.get(GameInstance, instance_id)
    if instance is None:
        raise InstanceNotFound(f'game instance {instance_id} not found')
    return instance


def lock_instance(session, instance_id: str) -> GameInstance:
    """Load an instance with its row locked until the transaction ends."""
    try:
        instance = (
            session.query(GameInstance)
            .filter(GameInstance.id == instance_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
    except OperationalError as exc:
        raise InstanceBusy(f'game instance {instance_id} is locked by another worker') from exc
    if instance is None:
        raise InstanceNotFound(f'game instance {instance_id} not found')
    return instance


def archive_enrollments(session, instance_id: str) -> int:
    enrollments = (
        session.query(GameSubscriptionInstance)
        .filter(
            GameSubscriptionInstance.game_instance_id == instance_id,
            GameSubscriptionInstance.status != EnrollmentStatus.ARCHIVED,
        )
        .all()
    )
    for enrollment in enrollments:
        enrollment.status = EnrollmentStatus.ARCHIVED
        enrollment.token_hash = None
    return len(enrollments)


def place_items(session, instance) -> int:
    """Copy the game's items into a new instance at their starting locations."""
    items = (
        session.query(GameItem)
        .filter(GameItem.game_id == instance.game_id, GameItem.starting_location_id.isnot(None))
        .order_by(GameItem.id)
        .all()
    )
    for item in items:
        session.add(GameItemInstance(
            game_instance_id=instance.id,
            game_item_id=item.id,
            location_id=item.starting_location_id,
        ))
    session.flush()
    return len(items)


def start_instance(session, services, instance_id: str, now=None) -> GameInstance:
    """Start a created instance and mail the first turn's sheets."""
    now = now or utcnow()
    try:
        instance = lock_instance(session, instance_id)
        transition_instance(instance, InstanceStatus.STARTED)
        instance.started_at = now
        instance.last_processed_at = now
        instance.next_deadline = now + turn_duration(instance)
        place_items(session, instance)
        issued = issue_turn_sheets(session, services, instance, instance.current_turn + 1)
        transition_instance(instance, InstanceStatus.WAITING_FOR_TURN)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(
        f"[instance-start] instance={instance.id} turn={instance.current_turn + 1} sheets={len(issued)} "
        f"deadline={instance.next_deadline.isoformat()}"
    )
    emit_instance_update(instance)
    deliver_turn_sheets(session, services, issued)
    return instance


def abandon_instance(session, instance_id: str, now=None) -> GameInstance:
    now = now or utcnow()
    try:
        instance = lock_instance(session, instance_id)
        transition_instance(instance, InstanceStatus.ABANDONED)
        instance.completed_at = now
        instance.next_deadline = None
        open_sheets = (
            session.query(GameTurnSheet.id)
            .filter(
                GameTurnSheet.game_instance_id == instance.id,
                GameTurnSheet.processing_status.in_(SheetStatus.NON_TERMINAL),
            )
            .all()
        )
        for (sheet_id,) in open_sheets:
            mark_failed(session, sheet_id, 'game instance abandoned')
        archive_enrollments(session, instance.id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    emit_instance_update(instance)
    return instance


def get_subscription(session, subscription_id: str) -> GameSubscription:
    subscription = session.get(GameSubscription, subscription_id)
    if subscription is None:
        raise SubscriptionNotFound(f'game subscription {subscription_id} not found')
    return subscription


def approve_subscription(session, subscription_id: str, now=None) -> GameSubscription:
    """Activate a pending subscription. Does not commit."""
    now = now or utcnow()
    subscription = get_subscription(session, subscription_id)
    transition_subscription(subscription, SubscriptionStatus.ACTIVE)
    if subscription.expires_at is None:
        subscription.expires_at = now + timedelta(days=subscription.renewal_period_days)
    return subscription


def renew_subscription(session, subscription_id: str, now=None) -> GameSubscription:
    now = now or utcnow()
    subscription = get_subscription(session, subscription_id)
    transition_subscription(subscription, SubscriptionStatus.ACTIVE)
    start = max(now, subscription.expires_at or now)
    subscription.expires_at = start + timedelta(days=subscription.renewal_period_days)
    return subscription


def cancel_subscription(session, subscription_id: str) -> GameSubscription:
    subscription = get_subscription(session, subscription_id)
    transition_subscription(subscription, SubscriptionStatus.CANCELLED)
    return subscription


def expire_subscriptions(session, now=None) -> List[str]:
    """Expire or auto-renew lapsed subscriptions. Does not commit."""
    now = now or utcnow()
    lapsed = (
        session.query(GameSubscription)
        .filter(
            GameSubscription.status == SubscriptionStatus.ACTIVE,
            GameSubscription.expires_at.isnot(None),
            GameSubscription.expires_at <= now,
        )
        .all()
    )
    expired = []
    for subscription in lapsed:
        if subscription.auto_renew:
            renew_subscription(session, subscription.id, now)
            logger.info(f"[subscription-renew] subscription={subscription.id} expires={subscription.expires_at.isoformat()}")
        else:
            transition_subscription(subscription, SubscriptionStatus.EXPIRED)
            expired.append(subscription.id)
            logger.info(f"[subscription-expire] subscription={subscription.id}")
    return expired


def find_open_instance(session, subscription: GameSubscription) -> Optional[GameInstance]:
    """First created instance run under a manager subscription that still has room."""
    candidates = (
        session.query(GameInstance)
        .filter_by(game_subscription_id=subscription.id, status=InstanceStatus.CREATED)
        .order_by(GameInstance.created_at, GameInstance.id)
        .all()
    )
    for instance in candidates:
        if len(active_enrollments(session, instance.id)) < instance.player_capacity:
            return instance
    return None
