from flask import Blueprint, jsonify, request
from flask_login import login_required

from playbymail import db
from playbymail.models import GameTurnSheet
from playbymail.services import get_services
from playbymail.services.games.delivery import active_enrollments
from playbymail.services.games.enrollment import approve_join_request, render_join_sheet
from playbymail.services.games.lifecycle import abandon_instance, get_instance, start_instance
from .turn_sheets import document_response, requested_format


game_instances = Blueprint('game_instances', __name__)


@game_instances.route('/game-instances/<instance_id>', methods=['GET'])
@login_required
def get_game_instance(instance_id):
    instance = get_instance(db.session, instance_id)
    payload = instance.to_dict()
    payload['players'] = [e.to_dict() for e in active_enrollments(db.session, instance.id)]
    sheets = GameTurnSheet.query.filter_by(
        game_instance_id=instance.id, turn_number=instance.current_turn + 1
    ).order_by(GameTurnSheet.sheet_order, GameTurnSheet.created_at).all()
    payload['upcoming_sheets'] = [s.to_dict() for s in sheets]
    return jsonify(payload)


@game_instances.route('/game-instances/<instance_id>/start', methods=['POST'])
@login_required
def start_game_instance(instance_id):
    instance = start_instance(db.session, get_services(), instance_id)
    return jsonify(instance.to_dict())


@game_instances.route('/game-instances/<instance_id>/abandon', methods=['POST'])
@login_required
def abandon_game_instance(instance_id):
    instance = abandon_instance(db.session, instance_id)
    return jsonify(instance.to_dict())


@game_instances.route('/game-subscriptions/<subscription_id>/join-sheet', methods=['GET'])
@login_required
def join_sheet(subscription_id):
    fmt = requested_format()
    if fmt is None:
        return jsonify({'error': 'format must be one of html, pdf, png'}), 400
    content = render_join_sheet(db.session, get_services(), subscription_id, fmt)
    return document_response(content, fmt, f"join-{subscription_id}")


@game_instances.route('/game-subscription-instances/<enrollment_id>/approve', methods=['GET', 'POST'])
def approve_enrollment(enrollment_id):
    data = request.get_json(silent=True) or {}
    token = request.args.get('token') or data.get('token')
    if not token:
        return jsonify({'error': 'token is required'}), 400
    enrollment = approve_join_request(db.session, get_services(), enrollment_id, token)
    return jsonify(enrollment.to_dict())
