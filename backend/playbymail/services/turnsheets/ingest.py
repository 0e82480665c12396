"""Scanned sheet ingestion.

The code printed on the sheet says which flow a scan belongs to: join codes
start an enrollment, play codes are answers to an issued turn sheet.
"""
import logging
import re
from dataclasses import asdict, dataclass
from typing import Optional

from playbymail.errors import ExtractionFailed, IllegalTransition, InvalidCodeFormat
from playbymail.models import SheetStatus
from playbymail.services.games.enrollment import submit_join_request
from playbymail.services.games.notify import emit_sheet_update
from .code import CodeType
from .store import get_sheet_by_id, write_scanned_data


logger = logging.getLogger(__name__)

# Shortest code the codec can produce is well above this
CODE_CANDIDATE_RE = re.compile(r'[A-Za-z0-9_-]{16,}')


@dataclass
class IngestResult:
    code_type: str
    status: str
    sheet_id: Optional[str] = None
    game_subscription_instance_id: Optional[str] = None

    def to_dict(self):
        return asdict(self)


def read_sheet_code(services, image: bytes) -> str:
    """OCR the code region of a scan and return the first candidate that classifies."""
    try:
        text = services.ocr.extract_text(image)
    except ExtractionFailed as exc:
        if exc.transient:
            raise
        raise InvalidCodeFormat(f'could not read the turn sheet code: {exc}') from exc
    candidates = sorted(set(CODE_CANDIDATE_RE.findall(text or '')), key=len, reverse=True)
    for candidate in candidates:
        try:
            services.codec.classify(candidate)
        except InvalidCodeFormat:
            continue
        return candidate
    raise InvalidCodeFormat('no turn sheet code found on the scan')


def ingest_scan(session, services, image: bytes) -> IngestResult:
    code = read_sheet_code(services, image)
    code_type = services.codec.classify(code)

    if code_type == CodeType.JOIN:
        payload = services.codec.decode_join(code)
        enrollment = submit_join_request(session, services, payload.game_subscription_id, image)
        return IngestResult(
            code_type=code_type.value,
            status=enrollment.status,
            sheet_id=enrollment.join_sheet_id,
            game_subscription_instance_id=enrollment.id,
        )

    payload = services.codec.decode_play(code)
    sheet = get_sheet_by_id(session, payload.game_turn_sheet_id)
    if sheet.processing_status != SheetStatus.AWAITING_SCAN:
        raise IllegalTransition(f'sheet {sheet.id} is {sheet.processing_status}, not awaiting a scan')
    processor = services.processors.get(sheet.sheet_type)
    logger.info(f"[ingest-scan] instance={sheet.game_instance_id} turn={sheet.turn_number} sheet={sheet.id} type={sheet.sheet_type}")
    scan = processor.scan_turn_sheet(sheet.sheet_data, image)

    try:
        write_scanned_data(session, sheet.id, scan)
        services.object_store.put_object(f"scans/{sheet.game_instance_id}/{sheet.id}", image)
        session.commit()
    except Exception:
        session.rollback()
        raise

    emit_sheet_update(sheet)
    logger.info(f"[ingest-done] instance={sheet.game_instance_id} turn={sheet.turn_number} sheet={sheet.id}")
    return IngestResult(code_type=code_type.value, status=SheetStatus.SCANNED, sheet_id=sheet.id)
