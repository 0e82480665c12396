import logging
from typing import List

from pydantic import BaseModel, Field, field_validator

from playbymail.errors import IllegalTransition, InvalidScanResult, InvalidSheetData
from playbymail.models import GameCharacterInstance, GameLocation, GameLocationLink
from .base import BaseSheetData, SheetType, TurnSheetProcessor


logger = logging.getLogger(__name__)


class LocationOption(BaseModel):
    location_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ''


class LocationChoiceData(BaseSheetData):
    location_name: str = Field(min_length=1)
    location_description: str = ''
    location_options: List[LocationOption] = Field(min_length=1)

    @field_validator('location_options')
    @classmethod
    def unique_location_ids(cls, options):
        ids = [o.location_id for o in options]
        if len(set(ids)) != len(ids):
            raise ValueError('location options must not repeat a location_id')
        return options


class LocationChoiceScanData(BaseModel):
    choices: List[str]


class LocationChoiceProcessor(TurnSheetProcessor):
    sheet_type = SheetType.LOCATION_CHOICE
    template_path = 'turn_sheet/location_choice.html.j2'
    data_model = LocationChoiceData
    scan_model = LocationChoiceScanData
    default_title = 'Where Will You Go?'
    default_instructions = (
        'Mark the box next to the place you want to travel to, then return this sheet before the deadline.'
    )

    def generate_preview_data(self) -> dict:
        return LocationChoiceData(
            game_name='The Whispering Woods',
            turn_number=1,
            player_name='Aria the Bold',
            turn_sheet_deadline='Friday',
            location_name='Crossroads',
            location_description='A weathered signpost leans in the mud where three paths meet.',
            location_options=[
                LocationOption(location_id='preview-forest', name='Enter the Forest',
                               description='Dark trees crowd the northern path.'),
                LocationOption(location_id='preview-river', name='Follow the River',
                               description='The water runs east toward the hills.'),
                LocationOption(location_id='preview-village', name='Return to Village',
                               description='Smoke rises from the chimneys to the south.'),
            ],
        ).model_dump()

    def scan_instructions(self, data) -> str:
        return (
            'You are comparing two images of a PlayByMail location choice turn sheet.\n'
            '- Image 1 is the blank reference sheet.\n'
            '- Image 2 is the same sheet after the player marked it by hand.\n'
            'Each option has a checkbox. Find every option whose checkbox the player marked '
            '(a tick, cross, filled box or circle) and return its location_id in a JSON object '
            'with the key "choices", in the order the options are printed. '
            'Return {"choices": []} when nothing is marked.'
        )

    def scan_context(self, data) -> List[str]:
        context = super().scan_context(data)
        for index, option in enumerate(data.location_options, start=1):
            context.append(f'Option {index}: "{option.name}" has location_id "{option.location_id}"')
        context.append('Only use the location_id values listed above.')
        return context

    def validate_scan(self, data, scan):
        offered = {o.location_id for o in data.location_options}
        choices = []
        for choice in scan.choices:
            if choice not in offered:
                raise InvalidScanResult(f'choice {choice!r} is not one of the offered locations')
            if choice not in choices:
                choices.append(choice)
        return LocationChoiceScanData(choices=choices)

    def build_sheet_data(self, session, instance, enrollment, turn_number: int) -> dict:
        character = session.query(GameCharacterInstance).filter_by(
            game_subscription_instance_id=enrollment.id
        ).first()
        if character is None or character.location_id is None:
            raise InvalidSheetData(f'enrollment {enrollment.id} has no placed character')
        location = session.get(GameLocation, character.location_id)
        if location is None:
            raise InvalidSheetData(f'character {character.id} is at an unknown location')
        links = (
            session.query(GameLocationLink)
            .filter_by(from_location_id=location.id)
            .order_by(GameLocationLink.link_order, GameLocationLink.name)
            .all()
        )
        options = []
        seen = set()
        for link in links:
            if link.to_location_id in seen:
                continue
            seen.add(link.to_location_id)
            options.append({
                'location_id': link.to_location_id,
                'name': link.name,
                'description': link.description or '',
            })
        if not options:
            raise InvalidSheetData(f'location {location.id} has no exits')
        return {
            'player_name': character.name,
            'location_name': location.name,
            'location_description': location.description or '',
            'location_options': options,
        }

    def apply_scanned_data(self, session, instance, sheet) -> None:
        data = self.parse_sheet_data(sheet.sheet_data)
        scan = self.validate_scan(data, LocationChoiceScanData.model_validate(sheet.get_scanned_data() or {}))
        if not scan.choices:
            logger.info(f"[location-abstain] instance={instance.id} sheet={sheet.id} account={sheet.account_id}")
            return
        character = session.query(GameCharacterInstance).filter_by(
            game_instance_id=instance.id, account_id=sheet.account_id
        ).first()
        if character is None:
            raise IllegalTransition(f'account {sheet.account_id} has no character in instance {instance.id}')
        destination = session.get(GameLocation, scan.choices[0])
        if destination is None or destination.game_id != instance.game_id:
            raise InvalidScanResult(f'location {scan.choices[0]} does not belong to this game')
        logger.info(
            f"[location-move] instance={instance.id} sheet={sheet.id} character={character.id} "
            f"from={character.location_id} to={destination.id}"
        )
        character.location_id = destination.id
