import io
import json
import os
import sys
from types import SimpleNamespace

import pytest
from PIL import Image, ImageDraw
from sqlalchemy import event

# Ensure the backend root (containing the `playbymail` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from playbymail import create_app, db, socketio
from playbymail.models import (
    Account,
    AccountUser,
    EnrollmentStatus,
    Game,
    GameCharacterInstance,
    GameInstance,
    GameItem,
    GameLocation,
    GameLocationLink,
    GameSubscription,
    GameSubscriptionInstance,
    InstanceStatus,
    SubscriptionStatus,
    SubscriptionType,
    new_id,
)
from playbymail.services import get_services
from playbymail.services.turnsheets.renderer import DocumentFormat


DEV_USER_HEADER = 'X-Dev-User'
MANAGER_EMAIL = 'manager@example.com'
FAKE_PDF = b'%PDF-1.7\n% rendered-by-test\n%%EOF\n'


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    ENV_NAME = 'test'
    BCRYPT_LOG_ROUNDS = 4
    DEVELOPMENT_AUTH_BYPASS_HEADER = DEV_USER_HEADER
    MAIL_BACKEND = 'log'
    MAIL_FROM = 'turns@playbymail.test'
    PUBLIC_BASE_URL = 'http://playbymail.test'
    JOIN_TOKEN_TTL_HOURS = 72
    JOB_MAX_ATTEMPTS = 3
    JOB_BACKOFF_BASE_SEC = 10
    JOB_BACKOFF_MAX_SEC = 900


def make_png(size=(320, 452), mark=None) -> bytes:
    """A small sheet-shaped PNG, optionally with a filled box to stand in for a pen mark."""
    image = Image.new('RGB', size, 'white')
    if mark:
        ImageDraw.Draw(image).rectangle(mark, fill='black')
    out = io.BytesIO()
    image.save(out, format='PNG')
    return out.getvalue()


class FakeCompletions:
    def __init__(self):
        self.structured = []
        self.texts = []
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        queue = self.structured if 'response_format' in kwargs else self.texts
        if not queue:
            raise AssertionError('unexpected OCR request')
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


class FakeOpenAI:
    """Stands in for the OpenAI client: replies are queued by the test."""

    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)

    def queue_structured(self, reply):
        self.completions.structured.append(reply if isinstance(reply, (str, Exception)) else json.dumps(reply))

    def queue_code(self, code):
        self.completions.texts.append(f"Turn Sheet Code: {code}")

    def queue_text(self, text):
        self.completions.texts.append(text)

    @property
    def calls(self):
        return self.completions.calls


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send(self, mail):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(mail)


class FakeRasterizer:
    def __init__(self):
        self.calls = []

    def __call__(self, html, fmt):
        self.calls.append((DocumentFormat(fmt), html))
        if fmt == DocumentFormat.PNG:
            return make_png()
        return FAKE_PDF


def _enable_sqlite_savepoints(engine):
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; take over transaction control
    @event.listens_for(engine, 'connect')
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin(conn):
        conn.exec_driver_sql('BEGIN')


@pytest.fixture()
def fake_openai():
    return FakeOpenAI()


@pytest.fixture()
def mailer():
    return RecordingMailer()


@pytest.fixture()
def rasterizer():
    return FakeRasterizer()


@pytest.fixture()
def flask_app(tmp_path, fake_openai, mailer, rasterizer):
    class Config(TestConfig):
        OBJECT_STORE_PATH = str(tmp_path / 'objects')

    application = create_app(Config)
    with application.app_context():
        _enable_sqlite_savepoints(db.engine)
        # Ensure models are imported so tables are created
        import playbymail.models  # noqa: F401
        db.create_all()

        services = get_services(application)
        services.ocr._client = fake_openai
        services.ocr.backoff_seconds = 0
        services.mailer = mailer
        services.renderer._rasterize = rasterizer
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def services(flask_app):
    return get_services(flask_app)


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


class World:
    """A small adventure: a crossroads with three exits, each leading back."""

    def __init__(self, session, capacity=2, max_turns=None):
        self.session = session
        self.manager_account = Account(id=new_id(), name='Morgan Manager', email=MANAGER_EMAIL)
        self.manager_user = AccountUser(account_id=self.manager_account.id, email=MANAGER_EMAIL)
        self.manager_user.set_password('lantern-42')
        self.game = Game(
            id=new_id(),
            name='The Whispering Woods',
            description='A mysterious forest adventure played entirely by post.',
            game_type='adventure',
            turn_duration_hours=24,
            max_turns=max_turns,
        )
        session.add_all([self.manager_account, self.manager_user, self.game])
        session.flush()

        for location_id, name, description in (
            ('loc-start', 'Crossroads', 'A weathered signpost leans in the mud.'),
            ('loc-1', 'Deep Forest', 'Dark trees crowd around you.'),
            ('loc-2', 'Riverbank', 'The water runs east toward the hills.'),
            ('loc-3', 'Village', 'Smoke rises from the chimneys.'),
        ):
            session.add(GameLocation(id=location_id, game_id=self.game.id, name=name, description=description))
        for order, (to_id, name) in enumerate((
            ('loc-1', 'Enter the Forest'),
            ('loc-2', 'Follow the River'),
            ('loc-3', 'Return to Village'),
        ), start=1):
            session.add(GameLocationLink(game_id=self.game.id, from_location_id='loc-start',
                                         to_location_id=to_id, name=name, link_order=order))
            session.add(GameLocationLink(game_id=self.game.id, from_location_id=to_id,
                                         to_location_id='loc-start', name='Back to the Crossroads'))
        self.game.starting_location_id = 'loc-start'

        self.manager_subscription = GameSubscription(
            id=new_id(),
            game_id=self.game.id,
            account_id=self.manager_account.id,
            subscription_type=SubscriptionType.MANAGER,
            status=SubscriptionStatus.ACTIVE,
        )
        self.instance = GameInstance(
            id=new_id(),
            game_id=self.game.id,
            game_subscription_id=self.manager_subscription.id,
            status=InstanceStatus.CREATED,
            player_capacity=capacity,
        )
        session.add_all([self.manager_subscription, self.instance])
        session.commit()

    def enroll(self, name, email, location_id='loc-start'):
        account = Account(id=new_id(), name=name, email=email)
        subscription = GameSubscription(
            id=new_id(),
            game_id=self.game.id,
            account_id=account.id,
            subscription_type=SubscriptionType.PLAYER,
            status=SubscriptionStatus.ACTIVE,
        )
        enrollment = GameSubscriptionInstance(
            id=new_id(),
            game_subscription_id=subscription.id,
            game_instance_id=self.instance.id,
            account_id=account.id,
            status=EnrollmentStatus.ACTIVE,
            character_name=name,
        )
        character = GameCharacterInstance(
            game_instance_id=self.instance.id,
            game_subscription_instance_id=enrollment.id,
            account_id=account.id,
            name=name,
            location_id=location_id,
        )
        self.session.add_all([account, subscription, enrollment, character])
        self.session.commit()
        return enrollment

    def add_item(self, item_id, name, location_id='loc-start', can_be_equipped=False, equipment_slot=None):
        item = GameItem(id=item_id, game_id=self.game.id, name=name, can_be_equipped=can_be_equipped,
                        equipment_slot=equipment_slot, starting_location_id=location_id)
        self.session.add(item)
        self.session.commit()
        return item


@pytest.fixture()
def world(flask_app):
    return World(db.session)


@pytest.fixture()
def dev_headers(world):
    return {DEV_USER_HEADER: MANAGER_EMAIL}
