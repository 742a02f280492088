import os
import tempfile


class Config:
    """Base configuration"""

    # Paths
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/tmp'
    STORAGE_DIR = os.environ.get('STORAGE_DIR') or '/data/storage'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # State database lives in the temp directory; temp cleanup never removes it
    STATE_FILE = os.environ.get('STATE_FILE') or 'mongoback.db'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(TEMP_DIR, STATE_FILE)}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # External tools
    MONGODUMP_PATH = os.environ.get('MONGODUMP_PATH') or 'mongodump'

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_MAX_WORKERS = int(os.environ.get('SCHEDULER_MAX_WORKERS', 3))
    SCHEDULER_MISFIRE_GRACE_TIME = int(os.environ.get('SCHEDULER_MISFIRE_GRACE_TIME', 300))  # seconds
    TEMP_CLEANUP_CRON = os.environ.get('TEMP_CLEANUP_CRON') or '0 1 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True
    LOG_LEVEL = 'DEBUG'

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'tmp')
    STORAGE_DIR = os.path.join(DATA_DIR, 'storage')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(TEMP_DIR, Config.STATE_FILE)}'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory state, no scheduler, console logging only"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    TEMP_DIR = os.path.join(tempfile.gettempdir(), 'mongoback-test', 'tmp')
    STORAGE_DIR = os.path.join(tempfile.gettempdir(), 'mongoback-test', 'storage')
    LOG_DIR = None
    SCHEDULER_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
