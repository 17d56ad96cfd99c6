"""
Flask application factory for Toll Reconciliation.
"""
from flask import Flask
from flask_caching import Cache
from pathlib import Path
import logging
import os

from config import config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Initialize cache (will be configured in create_app)
cache = Cache()


def create_app(config_name='default', test_config=None):
    """
    Application factory pattern.

    Args:
        config_name: Configuration name (for future environments)
        test_config: Optional overrides applied after the defaults

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    # App configuration
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['MAX_CONTENT_LENGTH'] = 50 * 1024 * 1024  # 50MB max file size
    app.config['TOLL_DATA_DIR'] = config.storage.base_dir

    # Cache configuration
    # SimpleCache is per process; dashboard snapshots are short-lived and cleared on writes
    app.config['CACHE_TYPE'] = 'SimpleCache'
    app.config['CACHE_DEFAULT_TIMEOUT'] = config.dashboard.cache_timeout

    if test_config:
        app.config.update(test_config)

    # Initialize cache with app
    cache.init_app(app)

    app.logger.info(f"[CACHE] Initialized {app.config['CACHE_TYPE']} with {app.config['CACHE_DEFAULT_TIMEOUT']}s timeout")

    # Ensure data folder exists
    Path(app.config['TOLL_DATA_DIR']).mkdir(parents=True, exist_ok=True)

    # Register blueprints
    from web.views import bp as main_bp
    app.register_blueprint(main_bp)

    return app

