"""Sheet records and their status graph.

    pending -> awaiting_scan -> scanned -> processed
    failed is reachable from any non-terminal status

Every transition is a single UPDATE conditioned on the current status, so two
racing writers cannot both win. None of these functions commit; the caller
owns the transaction.
"""
import json
import logging
from typing import List, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from playbymail.errors import ConflictOnSheetKey, IllegalTransition, SheetNotFound
from playbymail.models import GameTurnSheet, SheetStatus, utcnow


logger = logging.getLogger(__name__)


def create_sheet(session, sheet: GameTurnSheet) -> str:
    if isinstance(sheet.sheet_data, dict):
        sheet.sheet_data = json.dumps(sheet.sheet_data)
    if sheet.processing_status is None:
        sheet.processing_status = SheetStatus.PENDING
    sheet.is_completed = sheet.processing_status == SheetStatus.PROCESSED
    try:
        with session.begin_nested():
            session.add(sheet)
            session.flush()
    except IntegrityError as exc:
        raise ConflictOnSheetKey(
            f'sheet already exists for instance={sheet.game_instance_id} account={sheet.account_id} '
            f'turn={sheet.turn_number} type={sheet.sheet_type} order={sheet.sheet_order}'
        ) from exc
    return sheet.id


def get_sheet_by_id(session, sheet_id: str) -> GameTurnSheet:
    sheet = session.get(GameTurnSheet, sheet_id)
    if sheet is None:
        raise SheetNotFound(f'turn sheet {sheet_id} not found')
    return sheet


def list_pending_sheets(session, instance_id: str, turn_number: int) -> List[GameTurnSheet]:
    return (
        session.query(GameTurnSheet)
        .filter(
            GameTurnSheet.game_instance_id == instance_id,
            GameTurnSheet.turn_number == turn_number,
            GameTurnSheet.processing_status.in_(SheetStatus.NON_TERMINAL),
        )
        .order_by(GameTurnSheet.sheet_order, GameTurnSheet.created_at, GameTurnSheet.id)
        .all()
    )


def list_turn_sheets(session, instance_id: str, turn_number: int) -> List[GameTurnSheet]:
    return (
        session.query(GameTurnSheet)
        .filter_by(game_instance_id=instance_id, turn_number=turn_number)
        .order_by(GameTurnSheet.sheet_order, GameTurnSheet.created_at, GameTurnSheet.id)
        .all()
    )


def _current_status(session, sheet_id: str) -> str:
    status = session.query(GameTurnSheet.processing_status).filter(GameTurnSheet.id == sheet_id).scalar()
    if status is None:
        raise SheetNotFound(f'turn sheet {sheet_id} not found')
    return status


def _transition(session, sheet_id: str, allowed_from, values: dict) -> None:
    values = dict(values, updated_at=utcnow())
    result = session.execute(
        update(GameTurnSheet)
        .where(GameTurnSheet.id == sheet_id, GameTurnSheet.processing_status.in_(tuple(allowed_from)))
        .values(**values)
        .execution_options(synchronize_session='fetch')
    )
    if result.rowcount == 1:
        return
    raise IllegalTransition(
        f"sheet {sheet_id} cannot move from {_current_status(session, sheet_id)} to {values['processing_status']}"
    )


def mark_awaiting_scan(session, sheet_id: str) -> None:
    _transition(session, sheet_id, [SheetStatus.PENDING], {'processing_status': SheetStatus.AWAITING_SCAN})


def write_scanned_data(session, sheet_id: str, data: Union[bytes, str, dict]) -> None:
    if isinstance(data, dict):
        data = json.dumps(data)
    elif isinstance(data, bytes):
        data = data.decode('utf-8')
    _transition(session, sheet_id, [SheetStatus.AWAITING_SCAN], {
        'processing_status': SheetStatus.SCANNED,
        'scanned_data': data,
        'scanned_at': utcnow(),
    })
    logger.info(f"[sheet-scanned] sheet={sheet_id}")


def mark_processed(session, sheet_id: str) -> None:
    _transition(session, sheet_id, [SheetStatus.SCANNED], {
        'processing_status': SheetStatus.PROCESSED,
        'is_completed': True,
        'completed_at': utcnow(),
    })


def mark_failed(session, sheet_id: str, reason: str) -> None:
    try:
        _transition(session, sheet_id, SheetStatus.NON_TERMINAL, {
            'processing_status': SheetStatus.FAILED,
            'error_message': reason,
        })
    except IllegalTransition:
        # Failing an already failed sheet is a no-op; a processed sheet stays processed
        if _current_status(session, sheet_id) != SheetStatus.FAILED:
            raise
        return
    logger.warning(f"[sheet-failed] sheet={sheet_id} reason={reason}")
