from dataclasses import dataclass

from flask import current_app

from .collaborators import ConfigSecretStore, FilesystemObjectStore, LogMailer, SMTPMailer
from .turnsheets.code import TurnSheetCodec
from .turnsheets.ocr import StructuredOCRClient
from .turnsheets.processors import PROCESSOR_CLASSES, ProcessorRegistry
from .turnsheets.renderer import Renderer
from .turnsheets.templates import TemplateRegistry


EXTENSION_KEY = 'playbymail'


@dataclass
class TurnSheetServices:
    config: dict
    codec: TurnSheetCodec
    templates: TemplateRegistry
    renderer: Renderer
    ocr: StructuredOCRClient
    processors: ProcessorRegistry
    mailer: object
    object_store: FilesystemObjectStore
    secrets: ConfigSecretStore


def build_mailer(config):
    if config.get('MAIL_BACKEND') == 'smtp':
        return SMTPMailer(
            host=config['SMTP_HOST'],
            port=config.get('SMTP_PORT', 587),
            username=config.get('SMTP_USERNAME'),
            password=config.get('SMTP_PASSWORD'),
            use_tls=config.get('SMTP_USE_TLS', True),
            timeout=config.get('SMTP_TIMEOUT_SEC', 30),
        )
    return LogMailer()


def build_services(config) -> TurnSheetServices:
    secrets = ConfigSecretStore(config)
    signing_key = secrets.get_secret('CODE_SIGNING_SECRET') or secrets.get_secret('SECRET_KEY')
    templates = TemplateRegistry().build(klass.template_path for klass in PROCESSOR_CLASSES.values())
    renderer = Renderer(
        templates,
        browser_path=config.get('RENDERER_PATH_OVERRIDE'),
        timeout=config.get('RENDER_TIMEOUT_SEC', 60),
        allow_mock_pdf=bool(config.get('TESTING')),
    )
    ocr = StructuredOCRClient(
        api_key=config.get('OCR_API_KEY'),
        model=config.get('OCR_MODEL', 'gpt-4o-mini'),
        timeout=config.get('OCR_TIMEOUT_SEC', 45),
    )
    return TurnSheetServices(
        config=config,
        codec=TurnSheetCodec(signing_key),
        templates=templates,
        renderer=renderer,
        ocr=ocr,
        processors=ProcessorRegistry.build(renderer, ocr),
        mailer=build_mailer(config),
        object_store=FilesystemObjectStore(config.get('OBJECT_STORE_PATH', 'var/objects')),
        secrets=secrets,
    )


def get_services(app=None) -> TurnSheetServices:
    return (app or current_app).extensions[EXTENSION_KEY]
