from typing import List

from playbymail import db, socketio
from playbymail.models import GameInstance, utcnow
from playbymail.services.jobs import PROCESS_GAME_TURN, enqueue, turn_job_key
from .lifecycle import SCHEDULABLE_STATUSES, expire_subscriptions


def find_ready_instances(session, now) -> List[GameInstance]:
    return (
        session.query(GameInstance)
        .filter(
            GameInstance.status.in_(SCHEDULABLE_STATUSES),
            GameInstance.next_deadline.isnot(None),
            GameInstance.next_deadline <= now,
        )
        .order_by(GameInstance.next_deadline)
        .all()
    )


def run_scheduler_tick(session, now=None, logger=None) -> List[str]:
    """Enqueue a turn job for every instance past its deadline.

    - Takes no instance locks; the turn processor serializes per instance
    - Job keys are (instance, next turn), so overlapping ticks enqueue once
    - A turn job that exhausted its attempts is queued again while the turn is due
    - Also expires or renews lapsed subscriptions
    Returns the keys of newly enqueued jobs.
    """
    now = now or utcnow()
    enqueued = []
    try:
        for instance in find_ready_instances(session, now):
            turn_number = instance.current_turn + 1
            key = turn_job_key(instance.id, turn_number)
            _, created = enqueue(session, PROCESS_GAME_TURN, key, {
                'game_instance_id': instance.id,
                'turn_number': turn_number,
            }, revive=True)
            if created:
                enqueued.append(key)
                if logger:
                    logger.info(
                        f"[turn-due] instance={instance.id} turn={turn_number} deadline={instance.next_deadline.isoformat()}"
                    )
        expire_subscriptions(session, now)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return enqueued


def schedule_turn_checks(app) -> None:
    """Start the periodic deadline check.

    - No-ops in TESTING mode unless ENABLE_SCHEDULER_IN_TESTS is set
    - Ticks every TURN_CADENCE_SECONDS on a Socket.IO background task
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return

    cadence = int(app.config.get('TURN_CADENCE_SECONDS', 60))
    app.logger.info(f"[scheduler-start] cadence={cadence}s")

    def _worker():
        while True:
            with app.app_context():
                try:
                    keys = run_scheduler_tick(db.session, logger=app.logger)
                    if keys:
                        app.logger.info(f"[scheduler-tick] enqueued={len(keys)}")
                except Exception:
                    app.logger.exception("[scheduler-error] tick failed")
                finally:
                    db.session.remove()
            socketio.sleep(cadence)

    socketio.start_background_task(_worker)
