import logging
import os

from aiohttp import web

from perfscope.main import app

logger = logging.getLogger(__name__)


if __name__ == '__main__':
    port = int(os.getenv('APP_PORT', 9002))
    logger.info(f'Starting perfscope service on port {port}')
    web.run_app(app, host='0.0.0.0', port=port)
