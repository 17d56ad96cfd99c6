"""
Development server entrypoint for the toll reconciliation API.
"""
import logging
import os

from app import create_app

logger = logging.getLogger(__name__)

app = create_app()

if __name__ == '__main__':
    host = os.environ.get('HOST', '0.0.0.0')
    port = int(os.environ.get('PORT', 8080))
    debug = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
    logger.info(f"[APP] Serving toll data from {app.config['TOLL_DATA_DIR']} on {host}:{port}")
    app.run(host=host, port=port, debug=debug)
