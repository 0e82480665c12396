"""Turn sheet codes.

A code is the unpadded URL-safe base64 form of a small JSON object tagged
with ``code_type``. When a signing key is configured the object also carries
a truncated HMAC-SHA256 ``mac`` over the remaining fields. Decoding never
touches the database and never mutates anything.
"""
import base64
import binascii
import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from playbymail.errors import CodeTypeMismatch, InvalidCodeFormat


_CODE_RE = re.compile(r'^[A-Za-z0-9_-]+$')
_MAC_BYTES = 16
MAC_FIELD = 'mac'


class CodeType(str, Enum):
    JOIN = 'join'
    PLAY = 'play'


@dataclass(frozen=True)
class JoinPayload:
    game_subscription_id: str
    code_type: CodeType = CodeType.JOIN


@dataclass(frozen=True)
class PlayPayload:
    game_turn_sheet_id: str
    code_type: CodeType = CodeType.PLAY


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def _b64decode(code: str) -> bytes:
    if not isinstance(code, str) or not _CODE_RE.match(code) or len(code) % 4 == 1:
        raise InvalidCodeFormat('turn sheet code is not valid base64url')
    try:
        return base64.urlsafe_b64decode(code + '=' * (-len(code) % 4))
    except (binascii.Error, ValueError) as exc:
        raise InvalidCodeFormat(f'turn sheet code is not valid base64url: {exc}') from exc


def _canonical(fields: dict) -> bytes:
    return json.dumps(fields, sort_keys=True, separators=(',', ':')).encode('utf-8')


class TurnSheetCodec:
    """Encodes and decodes join/play codes, signing them when given a key."""

    def __init__(self, signing_key: Optional[bytes] = None):
        self._key = signing_key

    @property
    def signed(self) -> bool:
        return bool(self._key)

    def encode_join(self, game_subscription_id: str) -> str:
        return self._encode({'code_type': CodeType.JOIN.value, 'game_subscription_id': game_subscription_id})

    def encode_play(self, game_turn_sheet_id: str) -> str:
        return self._encode({'code_type': CodeType.PLAY.value, 'game_turn_sheet_id': game_turn_sheet_id})

    def classify(self, code: str) -> CodeType:
        payload = self._load(code)
        try:
            return CodeType(payload.get('code_type'))
        except (TypeError, ValueError):
            raise InvalidCodeFormat(f"unknown code_type {payload.get('code_type')!r}") from None

    def decode_join(self, code: str) -> JoinPayload:
        payload = self._load_typed(code, CodeType.JOIN)
        return JoinPayload(game_subscription_id=self._required(payload, 'game_subscription_id'))

    def decode_play(self, code: str) -> PlayPayload:
        payload = self._load_typed(code, CodeType.PLAY)
        return PlayPayload(game_turn_sheet_id=self._required(payload, 'game_turn_sheet_id'))

    def _encode(self, fields: dict) -> str:
        if self._key:
            fields = dict(fields, **{MAC_FIELD: self._mac(fields)})
        return _b64encode(json.dumps(fields, separators=(',', ':')).encode('utf-8'))

    def _mac(self, fields: dict) -> str:
        unsigned = {k: v for k, v in fields.items() if k != MAC_FIELD}
        digest = hmac.new(self._key, _canonical(unsigned), hashlib.sha256).digest()
        return _b64encode(digest[:_MAC_BYTES])

    def _load(self, code: str) -> dict:
        raw = _b64decode(code)
        try:
            payload = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as exc:
            raise InvalidCodeFormat('turn sheet code does not hold a JSON payload') from exc
        if not isinstance(payload, dict):
            raise InvalidCodeFormat('turn sheet code payload is not an object')
        return payload

    def _load_typed(self, code: str, expected: CodeType) -> dict:
        payload = self._load(code)
        actual = payload.get('code_type')
        if not isinstance(actual, str) or actual not in {t.value for t in CodeType}:
            raise InvalidCodeFormat(f'unknown code_type {actual!r}')
        if actual != expected.value:
            raise CodeTypeMismatch(f'expected a {expected.value} code, got {actual}')
        if self._key:
            mac = payload.get(MAC_FIELD)
            if not isinstance(mac, str) or not hmac.compare_digest(
                mac.encode('utf-8'), self._mac(payload).encode('ascii')
            ):
                raise InvalidCodeFormat('turn sheet code signature does not match')
        return payload

    @staticmethod
    def _required(payload: dict, field: str) -> str:
        value = payload.get(field)
        if not isinstance(value, str) or not value:
            raise InvalidCodeFormat(f'turn sheet code is missing {field}')
        return value
