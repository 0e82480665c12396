"""Turn processing for one (instance, turn).

The instance row stays locked for the whole transaction. Applying sheets,
advancing the turn counter and inserting the next turn's sheets commit
together; mailing those sheets happens afterwards.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List

from sqlalchemy import update

from playbymail.errors import PartialFailure, PlayByMailError, WrongTurn
from playbymail.models import GameInstance, InstanceStatus, SheetStatus, utcnow
from playbymail.services.turnsheets.store import list_pending_sheets, mark_failed, mark_processed
from .delivery import deliver_turn_sheets, issue_turn_sheets
from .lifecycle import archive_enrollments, lock_instance, transition_instance, turn_duration
from .notify import emit_instance_update


logger = logging.getLogger(__name__)

MISSED_REASON = 'not returned before the turn deadline'


@dataclass
class TurnResult:
    instance_id: str
    turn_number: int
    processed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    missed: List[str] = field(default_factory=list)
    issued: List[str] = field(default_factory=list)
    delivered: List[str] = field(default_factory=list)
    completed: bool = False

    def to_dict(self):
        return asdict(self)


def _game_over(instance: GameInstance, turn_number: int) -> bool:
    max_turns = instance.game.max_turns
    return max_turns is not None and turn_number >= max_turns


def _apply_sheets(session, services, instance, turn_number: int, result: TurnResult) -> None:
    for sheet in list_pending_sheets(session, instance.id, turn_number):
        if sheet.processing_status != SheetStatus.SCANNED:
            mark_failed(session, sheet.id, MISSED_REASON)
            result.missed.append(sheet.id)
            continue
        try:
            processor = services.processors.get(sheet.sheet_type)
            with session.begin_nested():
                processor.apply_scanned_data(session, instance, sheet)
                mark_processed(session, sheet.id)
        except PlayByMailError as exc:
            reason = f"{exc.kind}: {exc}"
            mark_failed(session, sheet.id, reason)
            result.failed[sheet.id] = reason
            logger.warning(f"[turn-sheet-failed] instance={instance.id} turn={turn_number} sheet={sheet.id} reason={reason}")
            continue
        result.processed.append(sheet.id)


def _advance(session, instance, turn_number: int, now, completed: bool) -> None:
    values = {'current_turn': turn_number, 'last_processed_at': now}
    if completed:
        transition_instance(instance, InstanceStatus.COMPLETED)
        values.update(status=InstanceStatus.COMPLETED, completed_at=now, next_deadline=None)
    else:
        transition_instance(instance, InstanceStatus.WAITING_FOR_TURN)
        values.update(status=InstanceStatus.WAITING_FOR_TURN, next_deadline=now + turn_duration(instance))
    advanced = session.execute(
        update(GameInstance)
        .where(GameInstance.id == instance.id, GameInstance.current_turn == turn_number - 1)
        .values(**values)
        .execution_options(synchronize_session='fetch')
    )
    if advanced.rowcount != 1:
        raise WrongTurn(f'instance {instance.id} advanced past turn {turn_number - 1} concurrently')


def process_turn(session, services, instance_id: str, turn_number: int, now=None) -> TurnResult:
    """Process ``turn_number`` for an instance.

    Raises WrongTurn when the instance is not at ``turn_number - 1``, which is
    what a duplicate or raced job sees. Raises PartialFailure, after
    committing, when some sheets could not be applied.
    """
    now = now or utcnow()
    result = TurnResult(instance_id=instance_id, turn_number=turn_number)
    try:
        instance = lock_instance(session, instance_id)
        if instance.current_turn + 1 != turn_number:
            raise WrongTurn(
                f'instance {instance_id} is at turn {instance.current_turn}, cannot process turn {turn_number}'
            )
        logger.info(f"[turn-start] instance={instance.id} turn={turn_number} status={instance.status}")
        transition_instance(instance, InstanceStatus.PROCESSING)

        _apply_sheets(session, services, instance, turn_number, result)

        result.completed = _game_over(instance, turn_number)
        _advance(session, instance, turn_number, now, result.completed)
        if result.completed:
            archive_enrollments(session, instance.id)
        else:
            result.issued = issue_turn_sheets(session, services, instance, turn_number + 1)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        f"[turn-commit] instance={instance_id} turn={turn_number} processed={len(result.processed)} "
        f"failed={len(result.failed)} missed={len(result.missed)} issued={len(result.issued)} "
        f"completed={result.completed}"
    )
    emit_instance_update(instance)
    if result.issued:
        result.delivered = deliver_turn_sheets(session, services, result.issued)
    if result.failed:
        raise PartialFailure(result)
    return result
