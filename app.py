import os
import logging
from flask import Flask, jsonify
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import DeclarativeBase
from werkzeug.middleware.proxy_fix import ProxyFix

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


db = SQLAlchemy(model_class=Base)
login_manager = LoginManager()


def create_app(config_overrides=None):
    """Application factory"""
    app = Flask(__name__)
    app.secret_key = os.environ.get("SESSION_SECRET", "fallback-secret-for-development-only")
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=2, x_host=2, x_for=2)

    app.config['SESSION_COOKIE_SECURE'] = os.environ.get('SESSION_COOKIE_SECURE') == '1'
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", "sqlite:///persta.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # Percoin / Stripe / jobs
    app.config['ADMIN_USER_IDS'] = [
        uid.strip() for uid in os.environ.get('ADMIN_USER_IDS', '').split(',') if uid.strip()
    ]
    app.config['APP_BASE_URL'] = os.environ.get('APP_BASE_URL', 'http://localhost:5000')
    app.config['STRIPE_SECRET_KEY'] = os.environ.get('STRIPE_SECRET_KEY')
    app.config['STRIPE_WEBHOOK_SECRET'] = os.environ.get('STRIPE_WEBHOOK_SECRET')
    app.config['CRON_SECRET'] = os.environ.get('CRON_SECRET')
    app.config['ACCOUNT_PURGE_CRON_SECRET'] = os.environ.get('ACCOUNT_PURGE_CRON_SECRET')
    app.config['ACCOUNT_FORFEITURE_HASH_SALT'] = os.environ.get('ACCOUNT_FORFEITURE_HASH_SALT', '')
    app.config['GEMINI_API_KEY'] = os.environ.get('GEMINI_API_KEY')
    app.config['STORAGE_ROOT'] = os.environ.get('STORAGE_ROOT', os.path.join(os.getcwd(), 'storage'))
    app.config['REDIS_URL'] = os.environ.get('REDIS_URL')

    if config_overrides:
        app.config.update(config_overrides)

    # Pool tuning only applies to server databases
    if not app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        engine_options = {
            "pool_recycle": 300,
            "pool_pre_ping": True,
        }
        if os.environ.get("PRODUCTION") == "1":
            app.config["DEBUG"] = False
            engine_options.update({
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30
            })
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    db.init_app(app)
    login_manager.init_app(app)

    from models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, user_id)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'authentication_required'}), 401

    from routes.errors import errors_bp
    from routes.auth import auth_bp
    from routes.posts import posts_bp
    from routes.users import users_bp
    from routes.account import account_bp
    from routes.credits import credits_bp
    from routes.webhooks import webhooks_bp
    from routes.notifications import notifications_bp
    from routes.challenges import challenges_bp
    from routes.referral import referral_bp
    from routes.generation import generation_bp
    from routes.admin import admin_bp
    from routes.internal import internal_bp

    app.register_blueprint(errors_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(posts_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(account_bp)
    app.register_blueprint(credits_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(challenges_bp)
    app.register_blueprint(referral_bp)
    app.register_blueprint(generation_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(internal_bp)

    @app.route('/health')
    def health_check():
        """Fast health check endpoint for deployment"""
        return jsonify({'status': 'ok'})

    with app.app_context():
        db.create_all()
        logger.info("Database tables created")

    return app
