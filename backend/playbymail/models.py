from playbymail import db
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timezone
import json
import uuid


def utcnow() -> datetime:
    # Naive UTC so values compare cleanly after a round trip through SQLite
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class InstanceStatus:
    CREATED = 'created'
    STARTED = 'started'
    PROCESSING = 'processing'
    WAITING_FOR_TURN = 'waiting_for_turn'
    COMPLETED = 'completed'
    ABANDONED = 'abandoned'


class SheetStatus:
    PENDING = 'pending'
    AWAITING_SCAN = 'awaiting_scan'
    SCANNED = 'scanned'
    PROCESSED = 'processed'
    FAILED = 'failed'

    NON_TERMINAL = (PENDING, AWAITING_SCAN, SCANNED)


class SubscriptionType:
    PLAYER = 'player'
    MANAGER = 'manager'
    DESIGNER = 'designer'


class SubscriptionStatus:
    PENDING_APPROVAL = 'pending_approval'
    ACTIVE = 'active'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'


class EnrollmentStatus:
    PENDING_APPROVAL = 'pending_approval'
    ACTIVE = 'active'
    ARCHIVED = 'archived'


class JobStatus:
    AVAILABLE = 'available'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    DISCARDED = 'discarded'


class Account(db.Model):
    __tablename__ = 'account'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    postal_address_line1 = db.Column(db.String(255), nullable=True)
    postal_address_line2 = db.Column(db.String(255), nullable=True)
    state_province = db.Column(db.String(128), nullable=True)
    country = db.Column(db.String(128), nullable=True)
    postal_code = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    users = db.relationship('AccountUser', back_populates='account')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
        }


class AccountUser(UserMixin, db.Model):
    __tablename__ = 'account_user'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    account_id = db.Column(db.String(36), db.ForeignKey('account.id'), nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=True)
    account = db.relationship('Account', back_populates='users')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return bool(self.password_hash) and check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'account_id': self.account_id,
            'email': self.email,
        }


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)
    game_type = db.Column(db.String(32), default='adventure', nullable=False)
    turn_duration_hours = db.Column(db.Integer, default=168, nullable=False)
    max_turns = db.Column(db.Integer, nullable=True)  # null means open ended
    starting_location_id = db.Column(
        db.String(36), db.ForeignKey('game_location.id', name='fk_game_starting_location_id', use_alter=True),
        nullable=True,
    )
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'game_type': self.game_type,
            'turn_duration_hours': self.turn_duration_hours,
            'max_turns': self.max_turns,
        }


class GameLocation(db.Model):
    __tablename__ = 'game_location'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey('game.id'), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)


class GameLocationLink(db.Model):
    __tablename__ = 'game_location_link'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey('game.id'), nullable=False, index=True)
    from_location_id = db.Column(db.String(36), db.ForeignKey('game_location.id'), nullable=False, index=True)
    to_location_id = db.Column(db.String(36), db.ForeignKey('game_location.id'), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)
    link_order = db.Column(db.Integer, default=0, nullable=False)


class GameImage(db.Model):
    """Background asset for a game, optionally narrowed to a sheet type or location."""
    __tablename__ = 'game_image'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey('game.id'), nullable=False, index=True)
    record_id = db.Column(db.String(36), nullable=True)
    sheet_type = db.Column(db.String(64), nullable=True)
    object_key = db.Column(db.String(255), nullable=False)
    mime_type = db.Column(db.String(64), default='image/png', nullable=False)


EQUIPMENT_SLOTS = ('weapon', 'armor', 'clothing', 'jewelry')


class GameItem(db.Model):
    """An item a game designer placed in the world."""
    __tablename__ = 'game_item'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey('game.id'), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)
    can_be_equipped = db.Column(db.Boolean, default=False, nullable=False)
    equipment_slot = db.Column(db.String(32), nullable=True)  # null fits any slot
    starting_location_id = db.Column(db.String(36), db.ForeignKey('game_location.id'), nullable=True)


class GameItemInstance(db.Model):
    """A copy of an item in one running instance; carried or lying at a location."""
    __tablename__ = 'game_item_instance'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_instance_id = db.Column(db.String(36), db.ForeignKey('game_instance.id'), nullable=False, index=True)
    game_item_id = db.Column(db.String(36), db.ForeignKey('game_item.id'), nullable=False)
    character_instance_id = db.Column(
        db.String(36), db.ForeignKey('game_character_instance.id'), nullable=True, index=True
    )
    location_id = db.Column(db.String(36), db.ForeignKey('game_location.id'), nullable=True, index=True)
    is_equipped = db.Column(db.Boolean, default=False, nullable=False)
    equipment_slot = db.Column(db.String(32), nullable=True)

    item = db.relationship('GameItem')


class GameSubscription(db.Model):
    __tablename__ = 'game_subscription'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey('game.id'), nullable=False, index=True)
    account_id = db.Column(db.String(36), db.ForeignKey('account.id'), nullable=False, index=True)
    subscription_type = db.Column(db.String(16), nullable=False)  # player, manager, designer
    status = db.Column(db.String(32), default=SubscriptionStatus.PENDING_APPROVAL, nullable=False)
    auto_renew = db.Column(db.Boolean, default=False, nullable=False)
    renewal_period_days = db.Column(db.Integer, default=30, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    game = db.relationship('Game')
    account = db.relationship('Account')

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'account_id': self.account_id,
            'subscription_type': self.subscription_type,
            'status': self.status,
            'auto_renew': self.auto_renew,
            'expires_at': _iso(self.expires_at),
        }


class GameInstance(db.Model):
    __tablename__ = 'game_instance'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey('game.id'), nullable=False, index=True)
    game_subscription_id = db.Column(db.String(36), db.ForeignKey('game_subscription.id'), nullable=True, index=True)
    status = db.Column(db.String(32), default=InstanceStatus.CREATED, nullable=False, index=True)
    current_turn = db.Column(db.Integer, default=0, nullable=False)
    player_capacity = db.Column(db.Integer, default=4, nullable=False)
    last_processed_at = db.Column(db.DateTime, nullable=True)
    next_deadline = db.Column(db.DateTime, nullable=True, index=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    game = db.relationship('Game')

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'game_subscription_id': self.game_subscription_id,
            'status': self.status,
            'current_turn': self.current_turn,
            'player_capacity': self.player_capacity,
            'last_processed_at': _iso(self.last_processed_at),
            'next_deadline': _iso(self.next_deadline),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
        }


class GameSubscriptionInstance(db.Model):
    """A player subscription enrolled (or asking to enroll) in one game instance."""
    __tablename__ = 'game_subscription_instance'
    __table_args__ = (
        db.UniqueConstraint('game_subscription_id', 'game_instance_id', name='uq_subscription_instance'),
    )
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_subscription_id = db.Column(db.String(36), db.ForeignKey('game_subscription.id'), nullable=False, index=True)
    game_instance_id = db.Column(db.String(36), db.ForeignKey('game_instance.id'), nullable=False, index=True)
    account_id = db.Column(db.String(36), db.ForeignKey('account.id'), nullable=False, index=True)
    status = db.Column(db.String(32), default=EnrollmentStatus.PENDING_APPROVAL, nullable=False)
    character_name = db.Column(db.String(128), nullable=True)
    join_sheet_id = db.Column(db.String(36), nullable=True)
    token_hash = db.Column(db.String(128), nullable=True)
    token_expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    subscription = db.relationship('GameSubscription')
    account = db.relationship('Account')

    def to_dict(self):
        return {
            'id': self.id,
            'game_subscription_id': self.game_subscription_id,
            'game_instance_id': self.game_instance_id,
            'account_id': self.account_id,
            'status': self.status,
            'character_name': self.character_name,
        }


class GameCharacterInstance(db.Model):
    __tablename__ = 'game_character_instance'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_instance_id = db.Column(db.String(36), db.ForeignKey('game_instance.id'), nullable=False, index=True)
    game_subscription_instance_id = db.Column(
        db.String(36), db.ForeignKey('game_subscription_instance.id'), nullable=False, unique=True
    )
    account_id = db.Column(db.String(36), db.ForeignKey('account.id'), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    location_id = db.Column(db.String(36), db.ForeignKey('game_location.id'), nullable=True)
    inventory_capacity = db.Column(db.Integer, default=10, nullable=False)


class GameTurnSheet(db.Model):
    __tablename__ = 'game_turn_sheet'
    __table_args__ = (
        db.UniqueConstraint(
            'game_instance_id', 'account_id', 'turn_number', 'sheet_type', 'sheet_order',
            name='uq_game_turn_sheet_key',
        ),
    )
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey('game.id'), nullable=False, index=True)
    game_instance_id = db.Column(db.String(36), db.ForeignKey('game_instance.id'), nullable=False, index=True)
    account_id = db.Column(db.String(36), db.ForeignKey('account.id'), nullable=False, index=True)
    turn_number = db.Column(db.Integer, nullable=False)
    sheet_type = db.Column(db.String(64), nullable=False)
    sheet_order = db.Column(db.Integer, default=1, nullable=False)
    sheet_data = db.Column(db.Text, nullable=False)  # JSON object, fixed once rendered
    scanned_data = db.Column(db.Text, nullable=True)  # JSON object, written once
    processing_status = db.Column(db.String(32), default=SheetStatus.PENDING, nullable=False, index=True)
    is_completed = db.Column(db.Boolean, default=False, nullable=False)
    error_message = db.Column(db.Text, nullable=True)
    scanned_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def get_sheet_data(self) -> dict:
        return json.loads(self.sheet_data or '{}')

    def get_scanned_data(self):
        return json.loads(self.scanned_data) if self.scanned_data else None

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'game_instance_id': self.game_instance_id,
            'account_id': self.account_id,
            'turn_number': self.turn_number,
            'sheet_type': self.sheet_type,
            'sheet_order': self.sheet_order,
            'processing_status': self.processing_status,
            'is_completed': self.is_completed,
            'scanned_data': self.get_scanned_data(),
            'error_message': self.error_message,
            'scanned_at': _iso(self.scanned_at),
            'completed_at': _iso(self.completed_at),
        }


class Job(db.Model):
    __tablename__ = 'job'
    __table_args__ = (
        db.UniqueConstraint('kind', 'key', name='uq_job_kind_key'),
    )
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    kind = db.Column(db.String(64), nullable=False)
    key = db.Column(db.String(128), nullable=False)
    payload = db.Column(db.Text, nullable=False, default='{}')
    status = db.Column(db.String(16), default=JobStatus.AVAILABLE, nullable=False, index=True)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    scheduled_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    started_at = db.Column(db.DateTime, nullable=True)
    finished_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def get_payload(self) -> dict:
        return json.loads(self.payload or '{}')

    def to_dict(self):
        return {
            'id': self.id,
            'kind': self.kind,
            'key': self.key,
            'status': self.status,
            'attempts': self.attempts,
            'scheduled_at': _iso(self.scheduled_at),
            'last_error': self.last_error,
        }
