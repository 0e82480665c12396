"""HTML to PDF/PNG rasterization through a headless Chrome subprocess."""
import logging
import os
import shutil
import subprocess
import tempfile
from enum import Enum
from pathlib import Path
from typing import Optional

from playbymail.errors import RenderFailed, RendererUnavailable
from .templates import TemplateRegistry


logger = logging.getLogger(__name__)

PDF_SIGNATURE = b'%PDF-'
PNG_SIGNATURE = b'\x89PNG\r\n\x1a\n'
MOCK_PDF = b'%PDF-1.4\n% mock-pdf-data-for-testing\n%%EOF\n'

# A4 at 150 dpi
PNG_WIDTH = 1240
PNG_HEIGHT = 1754

BROWSER_PATHS = (
    '/usr/bin/google-chrome',
    '/usr/bin/google-chrome-stable',
    '/usr/bin/chromium-browser',
    '/usr/bin/chromium',
    '/snap/bin/chromium',
    '/Applications/Google Chrome.app/Contents/MacOS/Google Chrome',
    '/Applications/Chromium.app/Contents/MacOS/Chromium',
)
BROWSER_NAMES = ('google-chrome', 'google-chrome-stable', 'chromium-browser', 'chromium', 'chrome')


class DocumentFormat(str, Enum):
    HTML = 'html'
    PDF = 'pdf'
    PNG = 'png'


class Renderer:
    """Renders registered templates and rasterizes them.

    Each rasterization gets its own browser process and scratch profile
    directory, both released when the call returns or fails.
    """

    def __init__(self, templates: TemplateRegistry, browser_path: Optional[str] = None,
                 timeout: int = 60, allow_mock_pdf: bool = False):
        self.templates = templates
        self.browser_path = browser_path
        self.timeout = timeout
        self.allow_mock_pdf = allow_mock_pdf

    def render(self, fmt: DocumentFormat, template_path: str, data: dict) -> bytes:
        fmt = DocumentFormat(fmt)
        if fmt == DocumentFormat.HTML:
            return self.render_html(template_path, data).encode('utf-8')
        if fmt == DocumentFormat.PDF:
            return self.render_pdf(template_path, data)
        return self.render_png(template_path, data)

    def render_html(self, template_path: str, data: dict, target: DocumentFormat = DocumentFormat.HTML) -> str:
        context = dict(data)
        context['render_target'] = DocumentFormat(target).value
        return self.templates.render(template_path, context)

    def render_pdf(self, template_path: str, data: dict) -> bytes:
        html = self.render_html(template_path, data, DocumentFormat.PDF)
        try:
            output = self._rasterize(html, DocumentFormat.PDF)
        except RendererUnavailable:
            if not self.allow_mock_pdf:
                raise
            logger.warning(f"[render-mock] template={template_path} no browser found, returning mock pdf")
            return MOCK_PDF
        return _check_signature(output, PDF_SIGNATURE, 'pdf')

    def render_png(self, template_path: str, data: dict) -> bytes:
        html = self.render_html(template_path, data, DocumentFormat.PNG)
        output = self._rasterize(html, DocumentFormat.PNG)
        return _check_signature(output, PNG_SIGNATURE, 'png')

    def find_browser(self) -> str:
        if self.browser_path:
            if os.path.isfile(self.browser_path) and os.access(self.browser_path, os.X_OK):
                return self.browser_path
            raise RendererUnavailable(f'configured renderer {self.browser_path} is not executable')
        for path in BROWSER_PATHS:
            if os.path.isfile(path) and os.access(path, os.X_OK):
                return path
        for name in BROWSER_NAMES:
            found = shutil.which(name)
            if found:
                return found
        raise RendererUnavailable('no headless Chrome or Chromium found')

    def _rasterize(self, html: str, fmt: DocumentFormat) -> bytes:
        browser = self.find_browser()
        with tempfile.TemporaryDirectory(prefix='turn-sheet-') as workdir:
            page = Path(workdir) / 'sheet.html'
            page.write_text(html, encoding='utf-8')
            out = Path(workdir) / f'sheet.{fmt.value}'
            cmd = self._command(browser, fmt, page, out, Path(workdir) / 'profile')
            try:
                proc = subprocess.run(
                    cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, timeout=self.timeout, check=False
                )
            except subprocess.TimeoutExpired as exc:
                raise RenderFailed(f'{fmt.value} render timed out after {self.timeout}s', transient=True) from exc
            except OSError as exc:
                raise RendererUnavailable(f'could not start {browser}: {exc}') from exc
            if proc.returncode != 0 or not out.exists():
                stderr = proc.stderr.decode('utf-8', errors='replace')[-500:]
                raise RenderFailed(f'{fmt.value} render exited {proc.returncode}: {stderr}', transient=True)
            return out.read_bytes()

    @staticmethod
    def _command(browser: str, fmt: DocumentFormat, page: Path, out: Path, profile: Path) -> list:
        cmd = [
            browser,
            '--headless=new',
            '--disable-gpu',
            '--no-sandbox',
            '--disable-dev-shm-usage',
            '--disable-extensions',
            '--no-first-run',
            '--no-default-browser-check',
            '--hide-scrollbars',
            '--force-device-scale-factor=1',
            '--run-all-compositor-stages-before-draw',
            '--virtual-time-budget=5000',
            f'--user-data-dir={profile}',
        ]
        if fmt == DocumentFormat.PDF:
            # Page size and margins come from the @page rule in the base template
            cmd += ['--no-pdf-header-footer', f'--print-to-pdf={out}']
        else:
            cmd += [
                f'--window-size={PNG_WIDTH},{PNG_HEIGHT}',
                '--default-background-color=ffffffff',
                f'--screenshot={out}',
            ]
        cmd.append(page.as_uri())
        return cmd


def _check_signature(output: bytes, signature: bytes, label: str) -> bytes:
    if not output or not output.startswith(signature):
        raise RenderFailed(f'renderer output is not a {label} document')
    return output
