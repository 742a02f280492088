"""
Status routes - last backup result per plan.
"""

from flask import Blueprint, jsonify

from mongoback.models import BackupPlan, BackupHistory
from mongoback.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('status', __name__, url_prefix='/api/status')


def _last_finished(plan_record):
    return plan_record.history.filter(
        BackupHistory.status != 'running'
    ).order_by(BackupHistory.started_at.desc()).first()


@bp.route('/', methods=['GET'])
def list_status():
    """
    Get the last finished result of every plan that has run at least once.

    Returns:
        JSON array of {plan, timestamp, status, duration, name, size}
    """
    statuses = []
    for plan_record in BackupPlan.query.order_by(BackupPlan.name).all():
        last = _last_finished(plan_record)
        if last is not None:
            statuses.append(last.to_result_dict())
    return jsonify(statuses)


@bp.route('/<string:plan_name>', methods=['GET'])
def get_status(plan_name):
    """
    Get the last finished result of one plan.

    Returns:
        JSON result, or 404 when the plan is unknown or has not run yet
    """
    plan_record = BackupPlan.query.filter_by(name=plan_name).first()
    if plan_record is None:
        return jsonify({'error': f'Plan not found: {plan_name}'}), 404

    last = _last_finished(plan_record)
    if last is None:
        return jsonify({'error': f'No backup has finished for plan: {plan_name}'}), 404

    return jsonify(last.to_result_dict())


@bp.route('/scheduler', methods=['GET'])
def get_scheduler_status():
    """
    Get scheduler state and scheduled jobs with their next run times.
    """
    return jsonify({
        'running': is_scheduler_running(),
        'jobs': get_scheduled_jobs()
    })
