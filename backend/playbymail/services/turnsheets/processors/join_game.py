import re
from typing import List, Optional

from pydantic import BaseModel, field_validator

from playbymail.errors import InvalidScanResult
from .base import BaseSheetData, SheetType, TurnSheetProcessor


EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Domains the model tends to misread
EMAIL_DOMAIN_CORRECTIONS = {
    '@email.com': '@gmail.com',
    '@gmai1.com': '@gmail.com',
    '@gmaii.com': '@gmail.com',
    '@yaho.com': '@yahoo.com',
    '@yaho0.com': '@yahoo.com',
    '@hotmai1.com': '@hotmail.com',
    '@hotmaii.com': '@hotmail.com',
    '@out1ook.com': '@outlook.com',
}

JOIN_FIELDS = [
    {'key': 'email', 'label': 'Email address', 'boxes': None},
    {'key': 'name', 'label': 'Your name', 'boxes': None},
    {'key': 'postal_address_line1', 'label': 'Postal address', 'boxes': None},
    {'key': 'postal_address_line2', 'label': 'Postal address (line 2)', 'boxes': None},
    {'key': 'state_province', 'label': 'State / Province', 'boxes': None},
    {'key': 'country', 'label': 'Country', 'boxes': None},
    {'key': 'postal_code', 'label': 'Postal code', 'boxes': 10},
    {'key': 'character_name', 'label': 'Character name', 'boxes': None},
]


def normalize_email(email: str) -> str:
    email = re.sub(r'\s+', '', email or '')
    lowered = email.lower()
    for wrong, right in EMAIL_DOMAIN_CORRECTIONS.items():
        if lowered.endswith(wrong):
            return email[: -len(wrong)] + right
    return email


class JoinGameData(BaseSheetData):
    game_description: str = ''


class JoinGameScanData(BaseModel):
    email: str
    name: str
    postal_address_line1: Optional[str] = ''
    postal_address_line2: Optional[str] = ''
    state_province: Optional[str] = ''
    country: Optional[str] = ''
    postal_code: Optional[str] = ''
    character_name: str

    @field_validator('*', mode='before')
    @classmethod
    def strip_text(cls, value):
        if value is None:
            return ''
        if isinstance(value, str):
            return value.strip()
        return value


class JoinGameProcessor(TurnSheetProcessor):
    sheet_type = SheetType.JOIN_GAME
    template_path = 'turn_sheet/join_game.html.j2'
    data_model = JoinGameData
    scan_model = JoinGameScanData
    default_title = 'Join Game'
    default_instructions = (
        'Fill out your account information and character name, then return this form to join the game.'
    )

    def template_context(self, data) -> dict:
        context = super().template_context(data)
        context['join_fields'] = JOIN_FIELDS
        return context

    def generate_preview_data(self) -> dict:
        return JoinGameData(
            game_name='The Whispering Woods',
            game_description='A mysterious forest adventure played entirely by post.',
        ).model_dump()

    def scan_instructions(self, data) -> str:
        return (
            'You are comparing two images of a PlayByMail "Join Game" form.\n'
            '- Image 1 is the blank reference form.\n'
            '- Image 2 is the completed form containing handwriting.\n'
            'Extract the player\'s answers and return them as JSON with the keys:\n'
            'email, name, postal_address_line1, postal_address_line2, state_province, country, '
            'postal_code, character_name.\n\n'
            'For email addresses pay special attention to the domain portion. Common domains include '
            'gmail.com, yahoo.com, hotmail.com and outlook.com. Copy the address exactly as written, '
            'including the @ symbol and the full domain name.\n\n'
            'For all other fields copy the player\'s spelling exactly and leave values blank when fields are empty.'
        )

    def scan_context(self, data) -> List[str]:
        context = super().scan_context(data)
        if data.game_description:
            context.append(f'Game description: {data.game_description}')
        context.append('Return an empty string when the player left a field blank.')
        return context

    def validate_scan(self, data, scan):
        scan.email = normalize_email(scan.email)
        if not EMAIL_RE.match(scan.email):
            raise InvalidScanResult(f'join form email {scan.email!r} is not an email address')
        if not scan.name:
            raise InvalidScanResult('join form is missing the player name')
        if not scan.character_name:
            raise InvalidScanResult('join form is missing the character name')
        return scan
