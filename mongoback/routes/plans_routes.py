"""
Backup plan routes - CRUD operations and manual runs.
"""

import json
from flask import Blueprint, jsonify, request

from mongoback import db
from mongoback.models import BackupPlan
from mongoback.backup.errors import ConfigError
from mongoback.backup.types import Plan
from mongoback import scheduler as scheduler_module
from mongoback.scheduler import sync_backup_plans, trigger_backup_now


bp = Blueprint('plans', __name__, url_prefix='/api/plans')

SECRET_KEYS = {'password', 'secret_key', 'access_key', 'passphrase', 'connection_string'}

# Names that collide with static routes under /api/status
RESERVED_NAMES = {'scheduler'}


def _redact(value):
    """Replace secrets in a plan configuration before returning it."""
    if isinstance(value, dict):
        return {
            key: ('****' if key in SECRET_KEYS and item else _redact(item))
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def _serialize(plan_record, include_config=False):
    data = {
        'id': plan_record.id,
        'name': plan_record.name,
        'description': plan_record.description,
        'enabled': plan_record.enabled,
        'created_at': plan_record.created_at.isoformat(),
        'updated_at': plan_record.updated_at.isoformat()
    }
    config = json.loads(plan_record.config)
    data['mode'] = config.get('mode') or 'single'
    data['schedule'] = (config.get('scheduler') or {}).get('cron')
    if include_config:
        data['config'] = _redact(config)
    return data


def _resync():
    """Refresh scheduled jobs when the scheduler runs in this process."""
    if scheduler_module.scheduler is not None:
        sync_backup_plans()


@bp.route('/', methods=['GET'])
def list_plans():
    """
    Get list of all backup plans.

    Returns:
        JSON array of backup plans
    """
    plans = BackupPlan.query.order_by(BackupPlan.name).all()
    return jsonify([_serialize(plan) for plan in plans])


@bp.route('/<int:plan_id>', methods=['GET'])
def get_plan(plan_id):
    """
    Get a single backup plan by ID, with secrets redacted.
    """
    plan_record = db.get_or_404(BackupPlan, plan_id)
    return jsonify(_serialize(plan_record, include_config=True))


@bp.route('/', methods=['POST'])
def create_plan():
    """
    Create a new backup plan.

    Request body:
        - name: Plan name (required)
        - description: Plan description (optional)
        - enabled: Enable plan (default: true)
        - config: Plan configuration object (required): target, scheduler,
          mode, encryption and destination sections

    Returns:
        JSON with created plan details
    """
    data = request.get_json(silent=True) or {}

    name = data.get('name')
    config = data.get('config')
    if not name:
        return jsonify({'error': 'Plan name is required'}), 400
    if name in RESERVED_NAMES:
        return jsonify({'error': f'Plan name is reserved: {name}'}), 400
    if not isinstance(config, dict):
        return jsonify({'error': 'Plan configuration is required'}), 400

    try:
        Plan.from_dict(name, config)
    except ConfigError as e:
        return jsonify({'error': str(e)}), 400

    if BackupPlan.query.filter_by(name=name).first():
        return jsonify({'error': f'Plan already exists: {name}'}), 409

    plan_record = BackupPlan(
        name=name,
        description=data.get('description'),
        enabled=bool(data.get('enabled', True)),
        config=json.dumps(config)
    )
    db.session.add(plan_record)
    db.session.commit()

    _resync()

    return jsonify(_serialize(plan_record, include_config=True)), 201


@bp.route('/<int:plan_id>', methods=['PUT'])
def update_plan(plan_id):
    """
    Update an existing backup plan.

    Request body may contain description, enabled and config; the name is
    immutable because it names the plan's storage directory.
    """
    plan_record = db.get_or_404(BackupPlan, plan_id)
    data = request.get_json(silent=True) or {}

    if 'config' in data:
        if not isinstance(data['config'], dict):
            return jsonify({'error': 'Plan configuration must be an object'}), 400
        try:
            Plan.from_dict(plan_record.name, data['config'])
        except ConfigError as e:
            return jsonify({'error': str(e)}), 400
        plan_record.config = json.dumps(data['config'])

    if 'description' in data:
        plan_record.description = data['description']
    if 'enabled' in data:
        plan_record.enabled = bool(data['enabled'])

    db.session.commit()
    _resync()

    return jsonify(_serialize(plan_record, include_config=True))


@bp.route('/<int:plan_id>', methods=['DELETE'])
def delete_plan(plan_id):
    """
    Delete a backup plan and its history. Stored archives are left in place.
    """
    plan_record = db.get_or_404(BackupPlan, plan_id)
    db.session.delete(plan_record)
    db.session.commit()
    _resync()

    return jsonify({'message': f'Plan deleted: {plan_record.name}'})


@bp.route('/<int:plan_id>/run', methods=['POST'])
def run_plan(plan_id):
    """
    Trigger a backup plan immediately.

    Returns:
        202 when the run was queued, 503 when no scheduler runs in this process
    """
    plan_record = db.get_or_404(BackupPlan, plan_id)

    try:
        trigger_backup_now(plan_record.id)
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({'message': f'Backup triggered: {plan_record.name}'}), 202
