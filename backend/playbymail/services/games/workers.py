import logging

from playbymail import db, socketio
from playbymail.errors import PartialFailure, WrongTurn
from playbymail.services import get_services
from playbymail.services.jobs import DELIVER_TURN_SHEET, PROCESS_GAME_TURN, SEND_JOIN_APPROVAL, run_next_job
from .delivery import deliver_turn_sheet
from .enrollment import send_join_approval
from .turns import process_turn


logger = logging.getLogger(__name__)


def handle_process_game_turn(session, services, payload: dict) -> None:
    instance_id = payload['game_instance_id']
    turn_number = int(payload['turn_number'])
    try:
        process_turn(session, services, instance_id, turn_number)
    except WrongTurn as exc:
        # Another worker already advanced this turn
        logger.info(f"[turn-skip] instance={instance_id} turn={turn_number} reason={exc}")
    except PartialFailure as exc:
        logger.warning(f"[turn-partial] instance={instance_id} turn={turn_number} failed={sorted(exc.result.failed)}")


def handle_deliver_turn_sheet(session, services, payload: dict) -> None:
    deliver_turn_sheet(session, services, payload['sheet_id'])


def handle_send_join_approval(session, services, payload: dict) -> None:
    send_join_approval(session, services, payload['enrollment_id'])


JOB_HANDLERS = {
    PROCESS_GAME_TURN: handle_process_game_turn,
    DELIVER_TURN_SHEET: handle_deliver_turn_sheet,
    SEND_JOIN_APPROVAL: handle_send_join_approval,
}


def work_jobs(app, limit=None) -> int:
    """Run queued jobs until the queue is idle or ``limit`` jobs ran."""
    ran = 0
    with app.app_context():
        services = get_services(app)
        while limit is None or ran < limit:
            if run_next_job(db.session, services, JOB_HANDLERS) is None:
                break
            ran += 1
    return ran


def start_job_workers(app) -> None:
    """Start JOB_WORKER_COUNT background loops draining the job table.

    - No-ops in TESTING mode unless ENABLE_SCHEDULER_IN_TESTS is set
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return

    poll = float(app.config.get('JOB_POLL_INTERVAL_SEC', 2))
    count = int(app.config.get('JOB_WORKER_COUNT', 2))

    def _worker(index: int):
        app.logger.info(f"[worker-start] worker={index} poll={poll}s")
        while True:
            try:
                ran = work_jobs(app)
            except Exception:
                app.logger.exception(f"[worker-error] worker={index}")
                ran = 0
            if not ran:
                socketio.sleep(poll)

    for index in range(count):
        socketio.start_background_task(_worker, index)
