"""Vision-model OCR for returned turn sheets.

The model is shown the blank sheet (rendered from the same sheet data that
was mailed) next to the player's scan and asked for JSON in a fixed shape.
Game rules are not checked here.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import openai
from openai import OpenAI

from playbymail.errors import ExtractionFailed
from .images import optimize_for_ocr, to_data_uri


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You read paper game forms that players filled in by hand. "
    "You compare a blank form with the completed copy and report only what the player marked or wrote. "
    "Answer with a single JSON object and nothing else."
)

CODE_PROMPT = (
    "This is a scanned game turn sheet. Near the bottom there is a region labelled 'Turn Sheet Code' "
    "containing a long code made of letters, digits, '-' and '_'. "
    "Transcribe that code exactly, character for character, and reply with the code only."
)


@dataclass
class StructuredExtractionRequest:
    instructions: str
    template_image: bytes
    filled_image: bytes
    expected_schema: dict
    additional_context: List[str] = field(default_factory=list)
    template_mime: str = 'image/png'


def expected_keys(schema: dict):
    """Top-level keys named by a JSON schema, with the subset that is required."""
    if 'properties' in schema:
        keys = list(schema['properties'])
        return keys, list(schema.get('required', keys))
    return list(schema), list(schema)


def conform_to_schema(text: str, schema: dict) -> bytes:
    body = (text or '').strip()
    if body.startswith('```'):
        body = body.strip('`')
        if body.lower().startswith('json'):
            body = body[4:]
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise ExtractionFailed(f'model reply is not JSON: {exc}', transient=False) from exc
    if not isinstance(data, dict):
        raise ExtractionFailed('model reply is not a JSON object', transient=False)
    keys, required = expected_keys(schema)
    missing = [k for k in required if k not in data]
    if missing:
        raise ExtractionFailed(f"model reply is missing keys: {', '.join(missing)}", transient=False)
    return json.dumps({k: data[k] for k in keys if k in data}).encode('utf-8')


class StructuredOCRClient:
    def __init__(self, api_key: Optional[str] = None, model: str = 'gpt-4o-mini', timeout: float = 45.0,
                 retries: int = 2, backoff_seconds: float = 1.0, client=None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise ExtractionFailed('OCR credential is not configured', transient=False)
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    def extract_structured_data(self, req: StructuredExtractionRequest) -> bytes:
        filled, filled_mime = optimize_for_ocr(req.filled_image)
        prompt = req.instructions
        if req.additional_context:
            prompt += '\n\n' + '\n'.join(req.additional_context)
        prompt += '\n\nReturn a JSON object that matches this JSON schema:\n' + json.dumps(req.expected_schema)
        content = [
            {'type': 'text', 'text': prompt},
            {'type': 'text', 'text': 'Image 1: the blank form.'},
            {'type': 'image_url', 'image_url': {'url': to_data_uri(req.template_image, req.template_mime), 'detail': 'high'}},
            {'type': 'text', 'text': 'Image 2: the completed form.'},
            {'type': 'image_url', 'image_url': {'url': to_data_uri(filled, filled_mime), 'detail': 'high'}},
        ]
        reply = self._complete(content, json_mode=True)
        return conform_to_schema(reply, req.expected_schema)

    def extract_text(self, image: bytes, prompt: str = CODE_PROMPT) -> str:
        optimized, mime = optimize_for_ocr(image)
        content = [
            {'type': 'text', 'text': prompt},
            {'type': 'image_url', 'image_url': {'url': to_data_uri(optimized, mime), 'detail': 'high'}},
        ]
        return self._complete(content, json_mode=False).strip()

    def _complete(self, content: list, json_mode: bool) -> str:
        system = SYSTEM_PROMPT if json_mode else 'You transcribe printed text from images exactly.'
        kwargs = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': system},
                {'role': 'user', 'content': content},
            ],
            'temperature': 0,
        }
        if json_mode:
            kwargs['response_format'] = {'type': 'json_object'}

        attempt = 0
        while True:
            attempt += 1
            try:
                response = self.client.chat.completions.create(**kwargs)
            except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as exc:
                if attempt > self.retries:
                    raise ExtractionFailed(f'OCR request failed after {attempt} attempts: {exc}') from exc
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"[ocr-retry] model={self.model} attempt={attempt} delay={delay}s error={exc}")
                time.sleep(delay)
                continue
            except openai.APIStatusError as exc:
                raise ExtractionFailed(f'OCR request rejected: {exc}', transient=False) from exc
            break

        reply = response.choices[0].message.content if response.choices else None
        if not reply:
            raise ExtractionFailed('OCR model returned an empty reply', transient=False)
        logger.debug(f"[ocr-reply] model={self.model} chars={len(reply)}")
        return reply
