import os
import logging
from logging.handlers import RotatingFileHandler
import sys

from flask import Flask, request, jsonify
from flask_wtf.csrf import CSRFProtect, CSRFError
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix


# Configure logging with rotation
def setup_logging():
    """
    Configure centralised logging with rotating files

    Levels:
    - DEBUG: detailed debugging information
    - INFO: successful operations and normal flow
    - WARNING: failed validations, expected business rejections
    - ERROR: unexpected server errors
    - CRITICAL: critical system errors
    """
    log_dir = os.environ.get('LOG_DIR', 'logs')
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    log_format = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # 10 MB per file, keep 10 files
    file_handler = RotatingFileHandler(
        filename=os.path.join(log_dir, 'invoice_app.log'),
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding='utf-8'
    )
    file_handler.setFormatter(log_format)
    file_handler.setLevel(logging.INFO)

    # Separate error log
    error_handler = RotatingFileHandler(
        filename=os.path.join(log_dir, 'invoice_errors.log'),
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding='utf-8'
    )
    error_handler.setFormatter(log_format)
    error_handler.setLevel(logging.ERROR)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_format)
    console_handler.setLevel(logging.DEBUG if os.environ.get("ENVIRONMENT") != "production" else logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    root_logger.addHandler(file_handler)
    root_logger.addHandler(error_handler)
    root_logger.addHandler(console_handler)

    # Quieter third-party libraries
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    logging.info("Logging configured")


setup_logging()

# create the app
app = Flask(__name__)

# Proper scheme/host behind a reverse proxy
app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)
# secret key for sessions - MUST be set in production
app.secret_key = os.environ.get("SESSION_SECRET")
if not app.secret_key:
    if os.environ.get("ENVIRONMENT") == "production":
        raise RuntimeError("SESSION_SECRET environment variable must be set in production")
    else:
        app.secret_key = "dev-secret-key-change-in-production"

# CSRF protection; API clients send the token in the X-CSRFToken header
csrf = CSRFProtect(app)
app.config['WTF_CSRF_TIME_LIMIT'] = 3600  # 1 hour token lifetime

# Rate limiting
app.config['RATELIMIT_ENABLED'] = os.environ.get('RATELIMIT_ENABLED', 'true').lower() == 'true'
limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=["1000 per hour"],
    storage_uri="memory://"
)

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get("ENVIRONMENT") == "production"
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = 24 * 60 * 60  # 1 day, in seconds

# configure the database
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", "sqlite:///invoices.db")
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
    "pool_recycle": 300,
    "pool_pre_ping": True,
}

# Import models and get db instance
import models  # noqa: F401
from models import db

# initialize the app with the extension, flask-sqlalchemy >= 3.0.x
db.init_app(app)

# Import routes after app initialization
from routes import auth, api, admin

app.register_blueprint(auth.bp)
app.register_blueprint(api.bp)
app.register_blueprint(admin.bp)

# Login is rate limited harder than the rest of the API
limiter.limit("10 per minute")(auth.login)


@app.route('/health')
@limiter.exempt
def health():
    return "OK", 200


@app.errorhandler(CSRFError)
def handle_csrf_error(e):
    return jsonify({'error': '安全性驗證失敗，請重新整理頁面', 'details': e.description}), 400


@app.after_request
def add_security_headers(response):
    """Add security headers for production"""
    if os.environ.get("ENVIRONMENT") == "production":
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

    if request.endpoint != 'health':
        response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate'
        response.headers['Pragma'] = 'no-cache'
        response.headers['Expires'] = '0'
    return response


# Run the application in development mode
if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=True)
