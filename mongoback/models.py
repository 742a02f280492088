import json
from datetime import datetime

from mongoback import db
from mongoback.backup.types import Plan


class BackupPlan(db.Model):
    """Stored backup plan"""
    __tablename__ = 'backup_plans'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    config = db.Column(db.Text, nullable=False)  # JSON plan configuration
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    history = db.relationship('BackupHistory', back_populates='plan', cascade='all, delete-orphan', lazy='dynamic')

    def to_plan(self) -> Plan:
        """Parse the stored configuration (raises ConfigError when invalid)."""
        return Plan.from_dict(self.name, json.loads(self.config))

    def __repr__(self):
        return f'<BackupPlan {self.name} enabled={self.enabled}>'


class BackupHistory(db.Model):
    """One backup attempt and its outcome"""
    __tablename__ = 'backup_history'

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('backup_plans.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    duration_seconds = db.Column(db.Float)
    artifact_name = db.Column(db.String(500))
    file_size_bytes = db.Column(db.BigInteger)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Log lines captured during the attempt

    # Relationship
    plan = db.relationship('BackupPlan', back_populates='history')

    def to_result_dict(self) -> dict:
        """Render the record in the status shape reported to callers."""
        return {
            'plan': self.plan.name,
            'timestamp': self.started_at.isoformat(),
            'status': self.status,
            'duration': self.duration_seconds,
            'name': self.artifact_name,
            'size': self.file_size_bytes,
        }

    def __repr__(self):
        return f'<BackupHistory plan_id={self.plan_id} status={self.status}>'
