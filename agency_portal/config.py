import os

from dotenv import load_dotenv

load_dotenv()  # Load env vars before anything else


def _database_url():
    database_url = os.environ.get('DATABASE_URL')
    # Normalize Postgres URL
    if database_url and database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url or 'sqlite:////tmp/agency_portal.db'


class Config(object):
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.environ.get('SECRET_KEY', 'agency-portal-dev-key')
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Supabase (storage + auth tokens)
    SUPABASE_URL = os.environ.get('SUPABASE_URL')
    SUPABASE_KEY = os.environ.get('SUPABASE_KEY')
    SUPABASE_SERVICE_ROLE_KEY = os.environ.get('SUPABASE_SERVICE_ROLE_KEY')
    SUPABASE_JWT_SECRET = os.environ.get('SUPABASE_JWT_SECRET', SECRET_KEY)

    SIGNATURE_BUCKET = os.environ.get('SIGNATURE_BUCKET', 'signatures')
    DOCUMENT_BUCKET = os.environ.get('DOCUMENT_BUCKET', 'onboarding-documents')
    DELIVERABLE_BUCKET = os.environ.get('DELIVERABLE_BUCKET', 'deliverables')
    MAX_DOCUMENT_SIZE = 10 * 1024 * 1024  # 10MB
    ALLOWED_DOCUMENT_TYPES = [
        'application/pdf',
        'image/png',
        'image/jpeg',
        'image/jpg',
        'image/gif',
        'image/webp',
    ]

    DEFAULT_PROVIDER_NAME = os.environ.get('DEFAULT_PROVIDER_NAME', 'Service Provider')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class ProductionConfig(Config):
    pass


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'testing-secret'
    SUPABASE_JWT_SECRET = 'testing-jwt-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SUPABASE_URL = None
    SUPABASE_KEY = None
    SUPABASE_SERVICE_ROLE_KEY = None
    LOG_LEVEL = 'WARNING'


CONFIGS = {
    'production': ProductionConfig,
    'development': DevelopmentConfig,
    'testing': TestingConfig,
}


def get_config(name=None):
    """Resolves the config class from APP_SETTINGS (a short name or dotted path)."""
    name = name or os.environ.get('APP_SETTINGS', 'development')
    if name in CONFIGS:
        return CONFIGS[name]
    # Dotted path, e.g. "agency_portal.config.ProductionConfig"
    return name
