import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import ClassVar, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from playbymail.errors import IllegalTransition, InvalidScanResult, InvalidSheetData
from ..ocr import StructuredExtractionRequest
from ..renderer import DocumentFormat


logger = logging.getLogger(__name__)


class SheetType(str, Enum):
    JOIN_GAME = 'join_game'
    LOCATION_CHOICE = 'location_choice'
    INVENTORY_MANAGEMENT = 'inventory_management'


class BaseSheetData(BaseModel):
    """Fields every sheet template reads through the base layout."""
    game_name: str = ''
    turn_number: int = 0
    player_name: str = ''
    turn_sheet_title: Optional[str] = None
    turn_sheet_instructions: Optional[str] = None
    turn_sheet_deadline: Optional[str] = None
    turn_sheet_code: str = ''
    background_image: Optional[str] = None


def _load_json(value: Union[dict, str, bytes, None]) -> dict:
    if isinstance(value, dict):
        return value
    if not value:
        raise InvalidSheetData('sheet data is empty')
    try:
        loaded = json.loads(value)
    except ValueError as exc:
        raise InvalidSheetData(f'sheet data is not JSON: {exc}') from exc
    if not isinstance(loaded, dict):
        raise InvalidSheetData('sheet data is not a JSON object')
    return loaded


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    location = '.'.join(str(p) for p in err.get('loc', ())) or 'data'
    return f"{location}: {err.get('msg')}"


class TurnSheetProcessor(ABC):
    """Generation, scanning and validation for one sheet type."""

    sheet_type: ClassVar[SheetType]
    template_path: ClassVar[str]
    data_model: ClassVar[Type[BaseSheetData]]
    scan_model: ClassVar[Type[BaseModel]]
    default_title: ClassVar[str] = ''
    default_instructions: ClassVar[str] = ''

    def __init__(self, renderer, ocr):
        self.renderer = renderer
        self.ocr = ocr
        # Compiled once; the schema never changes after startup
        self.scan_schema = self.scan_model.model_json_schema()

    def parse_sheet_data(self, sheet_data) -> BaseSheetData:
        try:
            data = self.data_model.model_validate(_load_json(sheet_data))
        except ValidationError as exc:
            raise InvalidSheetData(f'{self.sheet_type.value} sheet data is invalid: {_first_error(exc)}') from exc
        if not data.turn_sheet_title:
            data.turn_sheet_title = self.default_title
        if not data.turn_sheet_instructions:
            data.turn_sheet_instructions = self.default_instructions
        return data

    def template_context(self, data: BaseSheetData) -> dict:
        return data.model_dump()

    @abstractmethod
    def generate_preview_data(self) -> dict:
        """Sample sheet data for designers previewing the layout."""

    def generate_turn_sheet(self, fmt: DocumentFormat, sheet_data) -> bytes:
        data = self.parse_sheet_data(sheet_data)
        return self.renderer.render(fmt, self.template_path, self.template_context(data))

    def scan_turn_sheet(self, sheet_data, image: bytes) -> dict:
        data = self.parse_sheet_data(sheet_data)
        blank = self.renderer.render_png(self.template_path, self.template_context(data))
        raw = self.ocr.extract_structured_data(StructuredExtractionRequest(
            instructions=self.scan_instructions(data),
            additional_context=self.scan_context(data),
            template_image=blank,
            filled_image=image,
            expected_schema=self.scan_schema,
        ))
        try:
            scan = self.scan_model.model_validate_json(raw)
        except ValidationError as exc:
            raise InvalidScanResult(f'{self.sheet_type.value} scan has the wrong shape: {_first_error(exc)}') from exc
        scan = self.validate_scan(data, scan)
        return scan.model_dump()

    @abstractmethod
    def scan_instructions(self, data: BaseSheetData) -> str:
        """What the OCR model should read off a filled sheet."""

    def scan_context(self, data: BaseSheetData) -> List[str]:
        context = []
        if data.game_name:
            context.append(f'Game name: {data.game_name}')
        context.append('The JSON must only contain the requested keys.')
        return context

    def validate_scan(self, data: BaseSheetData, scan: BaseModel) -> BaseModel:
        return scan

    def offered_in(self, session, game) -> bool:
        """Whether ``game`` issues this sheet type each turn."""
        return True

    def build_sheet_data(self, session, instance, enrollment, turn_number: int) -> dict:
        """Sheet data for an enrolled player's sheet in ``turn_number``."""
        raise InvalidSheetData(f'{self.sheet_type.value} sheets are not issued per turn')

    def apply_scanned_data(self, session, instance, sheet) -> None:
        """Apply a scanned sheet to game state inside the turn transaction."""
        raise IllegalTransition(f'{self.sheet_type.value} sheets have no turn effect')
