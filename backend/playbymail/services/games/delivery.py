"""Issuing and mailing turn sheets.

Sheet rows are inserted as pending inside the turn transaction. Rendering and
mailing happen only after that transaction commits; a mailed sheet moves to
awaiting_scan.
"""
import json
import logging
from datetime import timedelta
from typing import Iterable, List, Optional

from markupsafe import escape

from playbymail.errors import InvalidSheetData, ObjectNotFound, PlayByMailError
from playbymail.models import (
    Account,
    EnrollmentStatus,
    GameImage,
    GameSubscriptionInstance,
    GameTurnSheet,
    SheetStatus,
    new_id,
    utcnow,
)
from playbymail.services.collaborators import Attachment, OutgoingMail
from playbymail.services.jobs import DELIVER_TURN_SHEET, backoff_delay, enqueue
from playbymail.services.turnsheets.images import to_data_uri
from playbymail.services.turnsheets.renderer import DocumentFormat
from playbymail.services.turnsheets.store import create_sheet, get_sheet_by_id, mark_awaiting_scan, mark_failed


logger = logging.getLogger(__name__)

DEADLINE_FORMAT = '%A %d %B %Y, %H:%M UTC'


def active_enrollments(session, instance_id: str) -> List[GameSubscriptionInstance]:
    return (
        session.query(GameSubscriptionInstance)
        .filter_by(game_instance_id=instance_id, status=EnrollmentStatus.ACTIVE)
        .order_by(GameSubscriptionInstance.created_at, GameSubscriptionInstance.id)
        .all()
    )


def load_background(session, services, game_id: str, sheet_type: str) -> Optional[str]:
    image = (
        session.query(GameImage)
        .filter_by(game_id=game_id, sheet_type=sheet_type)
        .order_by(GameImage.id)
        .first()
    )
    if image is None:
        return None
    try:
        return to_data_uri(services.object_store.get_object(image.object_key), image.mime_type)
    except ObjectNotFound:
        logger.warning(f"[background-missing] game={game_id} sheet_type={sheet_type} key={image.object_key}")
        return None


def issue_turn_sheets(session, services, instance, turn_number: int) -> List[str]:
    """Insert pending sheets for every enrolled player. Does not commit.

    Each player gets one sheet per turn sheet type the game offers, numbered
    by ``sheet_order``. A sheet whose data cannot be built still gets a row,
    marked failed. Returns the ids of the sheets that are ready to mail.
    """
    game = instance.game
    deadline = instance.next_deadline.strftime(DEADLINE_FORMAT) if instance.next_deadline else None
    enrollments = active_enrollments(session, instance.id)
    issued = []
    for sheet_order, processor in services.processors.turn_sheets_for(game.game_type):
        if not processor.offered_in(session, game):
            continue
        sheet_type = processor.sheet_type.value
        background = load_background(session, services, game.id, sheet_type)
        count = 0
        for enrollment in enrollments:
            sheet = GameTurnSheet(
                id=new_id(),
                game_id=game.id,
                game_instance_id=instance.id,
                account_id=enrollment.account_id,
                turn_number=turn_number,
                sheet_type=sheet_type,
                sheet_order=sheet_order,
                processing_status=SheetStatus.PENDING,
            )
            common = {
                'game_name': game.name,
                'turn_number': turn_number,
                'player_name': enrollment.character_name or '',
                'turn_sheet_deadline': deadline,
                'turn_sheet_code': services.codec.encode_play(sheet.id),
                'background_image': background,
            }
            try:
                specific = processor.build_sheet_data(session, instance, enrollment, turn_number)
                data = processor.parse_sheet_data(dict(common, **specific))
            except InvalidSheetData as exc:
                sheet.sheet_data = json.dumps(common)
                create_sheet(session, sheet)
                mark_failed(session, sheet.id, str(exc))
                continue
            sheet.sheet_data = data.model_dump_json()
            create_sheet(session, sheet)
            issued.append(sheet.id)
            count += 1
        logger.info(
            f"[sheets-issued] instance={instance.id} turn={turn_number} type={sheet_type} "
            f"order={sheet_order} count={count}"
        )
    return issued


def _turn_sheet_mail(services, sheet: GameTurnSheet, account: Account, pdf: bytes) -> OutgoingMail:
    data = sheet.get_sheet_data()
    game_name = data.get('game_name') or 'your game'
    body = (
        f"<p>Hello {escape(account.name)},</p>"
        f"<p>Your turn {sheet.turn_number} sheet for <strong>{escape(game_name)}</strong> is attached. "
        f"Print it, mark your choices and send it back"
        + (f" by {escape(data['turn_sheet_deadline'])}" if data.get('turn_sheet_deadline') else '')
        + ".</p>"
    )
    return OutgoingMail(
        sender=services.config.get('MAIL_FROM', 'turns@playbymail.local'),
        to=account.email,
        subject=f"{game_name}: turn {sheet.turn_number} sheet",
        body_html=body,
        attachments=[Attachment(f"turn-{sheet.turn_number}-{sheet.sheet_type}.pdf", pdf)],
    )


def deliver_turn_sheet(session, services, sheet_id: str) -> bool:
    """Render, store and mail one pending sheet.

    Transient failures propagate so the caller can retry. Logical failures
    mark the sheet failed. Returns True once the sheet is awaiting its scan.
    """
    sheet = get_sheet_by_id(session, sheet_id)
    if sheet.processing_status != SheetStatus.PENDING:
        logger.info(f"[deliver-skip] sheet={sheet_id} status={sheet.processing_status}")
        return False
    account = session.get(Account, sheet.account_id)
    try:
        processor = services.processors.get(sheet.sheet_type)
        pdf = processor.generate_turn_sheet(DocumentFormat.PDF, sheet.sheet_data)
        services.object_store.put_object(f"turn-sheets/{sheet.game_instance_id}/{sheet.id}.pdf", pdf)
        services.mailer.send(_turn_sheet_mail(services, sheet, account, pdf))
    except PlayByMailError as exc:
        if exc.transient:
            raise
        mark_failed(session, sheet.id, f"{exc.kind}: {exc}")
        session.commit()
        return False
    mark_awaiting_scan(session, sheet.id)
    session.commit()
    logger.info(f"[deliver-done] instance={sheet.game_instance_id} turn={sheet.turn_number} sheet={sheet.id}")
    return True


def deliver_turn_sheets(session, services, sheet_ids: Iterable[str]) -> List[str]:
    """Deliver sheets after their turn committed; transient failures become retry jobs.

    Unexpected errors count as transient. A failing sheet never stops the
    ones after it from being mailed.
    """
    delivered = []
    for sheet_id in sheet_ids:
        try:
            if deliver_turn_sheet(session, services, sheet_id):
                delivered.append(sheet_id)
            continue
        except PlayByMailError as exc:
            if not exc.transient:
                session.rollback()
                logger.warning(f"[deliver-skip] sheet={sheet_id} error={exc.kind}: {exc}")
                continue
            error = exc
        except Exception as exc:
            logger.exception(f"[deliver-error] sheet={sheet_id}")
            error = exc
        session.rollback()
        delay = backoff_delay(1, int(services.config.get('JOB_BACKOFF_BASE_SEC', 10)))
        enqueue(session, DELIVER_TURN_SHEET, sheet_id, {'sheet_id': sheet_id},
                run_at=utcnow() + timedelta(seconds=delay))
        session.commit()
        logger.warning(f"[deliver-retry] sheet={sheet_id} delay={delay}s error={error}")
    return delivered
