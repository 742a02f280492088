"""
Backup history routes - browse backup attempts.
"""

from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request

from mongoback import db
from mongoback.models import BackupHistory


bp = Blueprint('history', __name__, url_prefix='/api/history')

VALID_STATUSES = ('running', 'success', 'failed')


def _serialize(record):
    return {
        'id': record.id,
        'plan_id': record.plan_id,
        'plan_name': record.plan.name,
        'status': record.status,
        'started_at': record.started_at.isoformat(),
        'completed_at': record.completed_at.isoformat() if record.completed_at else None,
        'duration_seconds': record.duration_seconds,
        'artifact_name': record.artifact_name,
        'file_size_bytes': record.file_size_bytes,
        'file_size_mb': round(record.file_size_bytes / 1024 / 1024, 2) if record.file_size_bytes else None,
        'error_message': record.error_message,
        'has_logs': bool(record.logs)
    }


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get backup history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/failed)
        - plan_id: Filter by plan ID
        - days: Only show attempts from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    status_filter = request.args.get('status')
    plan_id_filter = request.args.get('plan_id', type=int)
    days_filter = request.args.get('days', type=int)
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupHistory.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupHistory.status == status_filter)

    if plan_id_filter:
        query = query.filter(BackupHistory.plan_id == plan_id_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupHistory.started_at >= cutoff_date)

    total_count = query.count()

    records = query.order_by(
        BackupHistory.started_at.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_serialize(record) for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:history_id>', methods=['GET'])
def get_history_detail(history_id):
    """
    Get a single backup attempt including its captured logs.
    """
    record = db.get_or_404(BackupHistory, history_id)
    data = _serialize(record)
    data['logs'] = record.logs
    return jsonify(data)
