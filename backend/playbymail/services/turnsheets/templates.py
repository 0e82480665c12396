"""Jinja2 template registry for turn sheets.

Every sheet template extends the shared base template and may only override
blocks the base declares. Both checks run once when the registry is built so a
bad template fails at startup instead of on a player's sheet.
"""
import logging
import os
from typing import Dict, Iterable

import jinja2
import qrcode
import qrcode.image.svg
from jinja2 import nodes
from markupsafe import Markup

from playbymail.errors import TemplateExecutionError, TemplateNotFound


logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), 'templates')
BASE_TEMPLATE = 'turn_sheet/base.html.j2'


def add(a, b):
    return a + b


def sub(a, b):
    return a - b


def mul(a, b):
    return a * b


def div(a, b):
    if not b:
        return 0
    return a / b


def code_mark(code: str) -> Markup:
    """Inline SVG QR mark for a sheet code."""
    if not code:
        return Markup('')
    image = qrcode.make(code, image_factory=qrcode.image.svg.SvgPathImage, box_size=8, border=2)
    svg = image.to_string(encoding='unicode')
    return Markup(svg)


class TemplateRegistry:
    def __init__(self, template_dir: str = DEFAULT_TEMPLATE_DIR, base_template: str = BASE_TEMPLATE):
        self.base_template = base_template
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(template_dir),
            autoescape=jinja2.select_autoescape(enabled_extensions=('html', 'j2'), default_for_string=True),
            keep_trailing_newline=True,
        )
        self.env.globals.update(add=add, sub=sub, mul=mul, div=div, code_mark=code_mark)
        self._templates: Dict[str, jinja2.Template] = {}

    @property
    def template_paths(self):
        return sorted(self._templates)

    def build(self, template_paths: Iterable[str]) -> 'TemplateRegistry':
        base = self._compile(self.base_template)
        base_blocks = set(base.blocks)
        for path in template_paths:
            template = self._compile(path)
            self._check_extends_base(path)
            unknown = sorted(set(template.blocks) - base_blocks)
            if unknown:
                raise TemplateExecutionError(
                    f"{path} overrides blocks not declared by {self.base_template}: {', '.join(unknown)}"
                )
            self._templates[path] = template
            logger.debug(f"[template-registered] path={path} blocks={sorted(template.blocks)}")
        return self

    def render(self, template_path: str, data: dict) -> str:
        template = self._templates.get(template_path)
        if template is None:
            raise TemplateNotFound(f'no registered template at {template_path}')
        try:
            return template.render(data)
        except (jinja2.TemplateError, ArithmeticError, TypeError, ValueError) as exc:
            raise TemplateExecutionError(f'{template_path}: {exc}') from exc

    def _compile(self, path: str) -> jinja2.Template:
        try:
            return self.env.get_template(path)
        except jinja2.TemplateNotFound as exc:
            raise TemplateNotFound(f'template {path} not found') from exc
        except jinja2.TemplateSyntaxError as exc:
            raise TemplateExecutionError(f'{path}:{exc.lineno}: {exc.message}') from exc

    def _check_extends_base(self, path: str) -> None:
        try:
            source, _, _ = self.env.loader.get_source(self.env, path)
        except jinja2.TemplateNotFound as exc:
            raise TemplateNotFound(f'template {path} not found') from exc
        parents = [
            node.template.value
            for node in self.env.parse(source).find_all(nodes.Extends)
            if isinstance(node.template, nodes.Const)
        ]
        if parents != [self.base_template]:
            raise TemplateExecutionError(f'{path} must extend {self.base_template}')
