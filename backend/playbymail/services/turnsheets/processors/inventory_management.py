"""Inventory sheets: pick up, drop, equip and unequip items.

Effects apply in a fixed order (unequip, drop, pick up, equip) so a player
can free a slot or make room and use it on the same sheet.
"""
import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from playbymail.errors import IllegalTransition, InvalidScanResult, InvalidSheetData
from playbymail.models import (
    EQUIPMENT_SLOTS,
    GameCharacterInstance,
    GameItem,
    GameItemInstance,
    GameLocation,
)
from .base import BaseSheetData, SheetType, TurnSheetProcessor


logger = logging.getLogger(__name__)


class InventoryItem(BaseModel):
    item_instance_id: str = Field(min_length=1)
    item_name: str = Field(min_length=1)
    item_description: str = ''
    is_equipped: bool = False
    equipment_slot: Optional[str] = None
    can_equip: bool = False


class LocationItem(BaseModel):
    item_instance_id: str = Field(min_length=1)
    item_name: str = Field(min_length=1)
    item_description: str = ''


class InventoryManagementData(BaseSheetData):
    character_name: str = Field(min_length=1)
    current_location_name: str = ''
    inventory_capacity: int = Field(ge=0)
    inventory_count: int = Field(ge=0)
    current_inventory: List[InventoryItem] = []
    location_items: List[LocationItem] = []


class EquipAction(BaseModel):
    item_instance_id: str
    slot: str


class InventoryManagementScanData(BaseModel):
    pick_up: List[str] = []
    drop: List[str] = []
    equip: List[EquipAction] = []
    unequip: List[str] = []


def _unique(ids):
    seen = []
    for item_id in ids:
        if item_id not in seen:
            seen.append(item_id)
    return seen


class InventoryManagementProcessor(TurnSheetProcessor):
    sheet_type = SheetType.INVENTORY_MANAGEMENT
    template_path = 'turn_sheet/inventory_management.html.j2'
    data_model = InventoryManagementData
    scan_model = InventoryManagementScanData
    default_title = 'Inventory Management'
    default_instructions = (
        'Manage your inventory by checking boxes to pick up items, drop items, equip items, '
        'or unequip items. Return this form by the deadline.'
    )

    def generate_preview_data(self) -> dict:
        return InventoryManagementData(
            game_name='The Whispering Woods',
            turn_number=1,
            player_name='Aria the Bold',
            turn_sheet_deadline='Friday',
            character_name='Aria the Bold',
            current_location_name='Crossroads',
            inventory_capacity=10,
            inventory_count=2,
            current_inventory=[
                InventoryItem(item_instance_id='preview-sword', item_name='Rusty Sword',
                              item_description='Notched, but still sharp.',
                              is_equipped=True, equipment_slot='weapon', can_equip=True),
                InventoryItem(item_instance_id='preview-bread', item_name='Stale Bread'),
            ],
            location_items=[
                LocationItem(item_instance_id='preview-cloak', item_name='Green Cloak',
                             item_description='Damp from the rain.'),
            ],
        ).model_dump()

    def scan_instructions(self, data) -> str:
        return (
            'You are comparing two images of a PlayByMail inventory management turn sheet.\n'
            '- Image 1 is the blank reference sheet.\n'
            '- Image 2 is the same sheet after the player marked it by hand.\n'
            'Items the character carries have Drop, Equip and Unequip checkboxes. Items lying at '
            'the location have a Pick Up checkbox. When Equip is marked the player also marks '
            'one slot: weapon, armor, clothing or jewelry.\n'
            'Return a JSON object with the keys "pick_up", "drop" and "unequip" holding lists of '
            'item_instance_id values, and "equip" holding objects with "item_instance_id" and '
            '"slot". Use empty lists for actions nobody marked.'
        )

    def scan_context(self, data) -> List[str]:
        context = super().scan_context(data)
        context.append(f'Character: {data.character_name}')
        if data.current_location_name:
            context.append(f'Location: {data.current_location_name}')
        context.append(f'Inventory: {data.inventory_count}/{data.inventory_capacity} items')
        for item in data.current_inventory:
            state = f'equipped as {item.equipment_slot}' if item.is_equipped else 'carried'
            context.append(f'Carried item "{item.item_name}" ({state}) has item_instance_id "{item.item_instance_id}"')
        for item in data.location_items:
            context.append(f'Item on the ground "{item.item_name}" has item_instance_id "{item.item_instance_id}"')
        context.append('Only use the item_instance_id values listed above.')
        return context

    def validate_scan(self, data, scan):
        carried = {i.item_instance_id for i in data.current_inventory}
        on_ground = {i.item_instance_id for i in data.location_items}
        for item_id in scan.pick_up:
            if item_id not in on_ground:
                raise InvalidScanResult(f'cannot pick up {item_id!r}: it is not at this location')
        for action, ids in (('drop', scan.drop), ('unequip', scan.unequip)):
            for item_id in ids:
                if item_id not in carried:
                    raise InvalidScanResult(f'cannot {action} {item_id!r}: it is not carried')
        equip = []
        for action in scan.equip:
            if action.item_instance_id not in carried:
                raise InvalidScanResult(f'cannot equip {action.item_instance_id!r}: it is not carried')
            if action.slot not in EQUIPMENT_SLOTS:
                raise InvalidScanResult(f'unknown equipment slot {action.slot!r}')
            if action.item_instance_id not in [e.item_instance_id for e in equip]:
                equip.append(action)
        return InventoryManagementScanData(
            pick_up=_unique(scan.pick_up),
            drop=_unique(scan.drop),
            equip=equip,
            unequip=_unique(scan.unequip),
        )

    def offered_in(self, session, game) -> bool:
        return session.query(GameItem.id).filter_by(game_id=game.id).first() is not None

    def build_sheet_data(self, session, instance, enrollment, turn_number: int) -> dict:
        character = session.query(GameCharacterInstance).filter_by(
            game_subscription_instance_id=enrollment.id
        ).first()
        if character is None or character.location_id is None:
            raise InvalidSheetData(f'enrollment {enrollment.id} has no placed character')
        location = session.get(GameLocation, character.location_id)
        if location is None:
            raise InvalidSheetData(f'character {character.id} is at an unknown location')
        carried = (
            session.query(GameItemInstance)
            .filter_by(game_instance_id=instance.id, character_instance_id=character.id)
            .order_by(GameItemInstance.is_equipped.desc(), GameItemInstance.id)
            .all()
        )
        on_ground = (
            session.query(GameItemInstance)
            .filter_by(game_instance_id=instance.id, location_id=location.id, character_instance_id=None)
            .order_by(GameItemInstance.id)
            .all()
        )
        return {
            'player_name': character.name,
            'character_name': character.name,
            'current_location_name': location.name,
            'inventory_capacity': character.inventory_capacity,
            'inventory_count': len(carried),
            'current_inventory': [
                {
                    'item_instance_id': i.id,
                    'item_name': i.item.name,
                    'item_description': i.item.description or '',
                    'is_equipped': i.is_equipped,
                    'equipment_slot': i.equipment_slot,
                    'can_equip': i.item.can_be_equipped,
                }
                for i in carried
            ],
            'location_items': [
                {
                    'item_instance_id': i.id,
                    'item_name': i.item.name,
                    'item_description': i.item.description or '',
                }
                for i in on_ground
            ],
        }

    def apply_scanned_data(self, session, instance, sheet) -> None:
        data = self.parse_sheet_data(sheet.sheet_data)
        scan = self.validate_scan(
            data, InventoryManagementScanData.model_validate(sheet.get_scanned_data() or {})
        )
        if not (scan.pick_up or scan.drop or scan.equip or scan.unequip):
            logger.info(f"[inventory-abstain] instance={instance.id} sheet={sheet.id} account={sheet.account_id}")
            return
        character = session.query(GameCharacterInstance).filter_by(
            game_instance_id=instance.id, account_id=sheet.account_id
        ).first()
        if character is None:
            raise IllegalTransition(f'account {sheet.account_id} has no character in instance {instance.id}')

        for item_id in scan.unequip:
            item = self._carried(session, instance, character, item_id)
            if not item.is_equipped:
                raise IllegalTransition(f'item {item_id} is not equipped')
            item.is_equipped = False
            item.equipment_slot = None

        for item_id in scan.drop:
            item = self._carried(session, instance, character, item_id)
            item.is_equipped = False
            item.equipment_slot = None
            item.character_instance_id = None
            item.location_id = character.location_id

        for item_id in scan.pick_up:
            item = session.get(GameItemInstance, item_id)
            if item is None or item.game_instance_id != instance.id:
                raise IllegalTransition(f'item {item_id} does not exist in instance {instance.id}')
            if item.character_instance_id is not None or item.location_id is None:
                raise IllegalTransition(f'item {item_id} is no longer lying on the ground')
            count = session.query(GameItemInstance).filter_by(character_instance_id=character.id).count()
            if count >= character.inventory_capacity:
                raise IllegalTransition(
                    f'character {character.id} cannot carry more than {character.inventory_capacity} items'
                )
            item.location_id = None
            item.character_instance_id = character.id
            session.flush()

        for action in scan.equip:
            item = self._carried(session, instance, character, action.item_instance_id)
            if not item.item.can_be_equipped:
                raise IllegalTransition(f'item {item.id} cannot be equipped')
            if item.item.equipment_slot and item.item.equipment_slot != action.slot:
                raise IllegalTransition(f'item {item.id} only fits the {item.item.equipment_slot} slot')
            occupied = (
                session.query(GameItemInstance)
                .filter(
                    GameItemInstance.character_instance_id == character.id,
                    GameItemInstance.equipment_slot == action.slot,
                    GameItemInstance.id != item.id,
                )
                .all()
            )
            for other in occupied:
                other.is_equipped = False
                other.equipment_slot = None
            item.is_equipped = True
            item.equipment_slot = action.slot
            session.flush()

        logger.info(
            f"[inventory-apply] instance={instance.id} sheet={sheet.id} character={character.id} "
            f"pick_up={len(scan.pick_up)} drop={len(scan.drop)} equip={len(scan.equip)} unequip={len(scan.unequip)}"
        )

    @staticmethod
    def _carried(session, instance, character, item_id) -> GameItemInstance:
        item = session.get(GameItemInstance, item_id)
        if item is None or item.game_instance_id != instance.id or item.character_instance_id != character.id:
            raise IllegalTransition(f'item {item_id} is not carried by character {character.id}')
        return item
