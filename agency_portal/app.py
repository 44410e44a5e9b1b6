import logging

from flask import Flask
from flask_login import LoginManager
from flask_migrate import Migrate
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from agency_portal.config import get_config
from agency_portal.errors import PortalError
from agency_portal.models import db, User
from agency_portal.services.supabase_service import init_supabase
from agency_portal.utils import api_response

RETRY_MESSAGE = "Something went wrong. Please try again."


def configure_logging(app):
    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))


def create_app(config_object=None):
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)
    app.config.from_object(config_object or get_config())
    configure_logging(app)

    # Supabase Setup
    try:
        app.supabase = init_supabase(app)
    except Exception as supabase_e:
        app.logger.error(f"Supabase Init Error: {supabase_e}")
        app.supabase = None
    if app.supabase is None:
        app.logger.info("Supabase not configured, uploads are stored inline")

    # --- INITIALIZE EXTENSIONS ---
    db.init_app(app)
    Migrate(app, db)

    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    from agency_portal.auth import load_user_from_request
    login_manager.request_loader(load_user_from_request)

    @login_manager.unauthorized_handler
    def unauthorized():
        return api_response(False, error="Not authenticated", status=401)

    # --- ERROR HANDLERS ---
    @app.errorhandler(PortalError)
    def portal_error(error):
        db.session.rollback()
        return api_response(False, error=error.message, status=error.status_code)

    @app.errorhandler(SQLAlchemyError)
    def database_error(error):
        db.session.rollback()
        app.logger.exception("Database error")
        return api_response(False, error=RETRY_MESSAGE, status=500)

    @app.errorhandler(HTTPException)
    def http_error(error):
        return api_response(False, error=error.description, status=error.code)

    @app.errorhandler(500)
    def internal_error(error):
        # Fail-safe rollback
        db.session.rollback()
        return api_response(False, error=RETRY_MESSAGE, status=500)

    # --- REGISTER BLUEPRINTS ---
    from agency_portal.auth import auth as auth_blueprint
    from agency_portal.routes.onboarding import onboarding_bp
    from agency_portal.routes.reports import reports_bp
    from agency_portal.routes.metrics import metrics_bp
    from agency_portal.routes.deliverables import deliverables_bp

    app.register_blueprint(auth_blueprint)
    app.register_blueprint(onboarding_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(metrics_bp)
    app.register_blueprint(deliverables_bp)

    @app.route('/health')
    def health():
        return api_response(data={'status': 'ok'})

    with app.app_context():
        if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite'):
            db.create_all()

    return app
