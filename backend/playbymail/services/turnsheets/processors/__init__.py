"""Sheet-type processors.

The set of sheet types is closed: ``SheetType`` lists them and
``PROCESSOR_CLASSES`` must cover every member, which is checked when the
registry is built at startup.
"""
from typing import Dict, List, Mapping, Tuple

from playbymail.errors import InvalidSheetData
from .base import BaseSheetData, SheetType, TurnSheetProcessor
from .inventory_management import InventoryManagementProcessor
from .join_game import JoinGameProcessor
from .location_choice import LocationChoiceProcessor


PROCESSOR_CLASSES = {
    SheetType.JOIN_GAME: JoinGameProcessor,
    SheetType.LOCATION_CHOICE: LocationChoiceProcessor,
    SheetType.INVENTORY_MANAGEMENT: InventoryManagementProcessor,
}

# Sheets issued to every enrolled player each turn, per game type.
# Position in the tuple is the sheet_order, which is also the order effects apply in.
TURN_SHEET_TYPES = {
    'adventure': (SheetType.LOCATION_CHOICE, SheetType.INVENTORY_MANAGEMENT),
}


class ProcessorRegistry:
    def __init__(self, processors: Mapping[SheetType, TurnSheetProcessor]):
        missing = [t.value for t in SheetType if t not in processors]
        if missing:
            raise RuntimeError(f"no processor registered for sheet types: {', '.join(missing)}")
        self._processors: Dict[SheetType, TurnSheetProcessor] = dict(processors)

    @classmethod
    def build(cls, renderer, ocr) -> 'ProcessorRegistry':
        return cls({sheet_type: klass(renderer, ocr) for sheet_type, klass in PROCESSOR_CLASSES.items()})

    @property
    def template_paths(self):
        return [p.template_path for p in self._processors.values()]

    def get(self, sheet_type) -> TurnSheetProcessor:
        try:
            return self._processors[SheetType(sheet_type)]
        except ValueError:
            raise InvalidSheetData(f'unknown sheet type {sheet_type!r}') from None

    def turn_sheets_for(self, game_type: str) -> List[Tuple[int, TurnSheetProcessor]]:
        """(sheet_order, processor) pairs for the sheets of one turn."""
        sheet_types = TURN_SHEET_TYPES.get(game_type)
        if not sheet_types:
            raise InvalidSheetData(f'game type {game_type!r} has no turn sheet')
        return [(order, self._processors[t]) for order, t in enumerate(sheet_types, start=1)]


__all__ = [
    'BaseSheetData',
    'InventoryManagementProcessor',
    'JoinGameProcessor',
    'LocationChoiceProcessor',
    'PROCESSOR_CLASSES',
    'ProcessorRegistry',
    'SheetType',
    'TurnSheetProcessor',
]
