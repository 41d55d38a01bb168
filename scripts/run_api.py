"""
Run the advanced order API against the paper exchange

Configuration comes from ADV_ORDERS_* environment variables (or .env).
Paper books for the symbols listed in ADV_ORDERS_PAPER_BOOKS are seeded at
startup, e.g. ADV_ORDERS_PAPER_BOOKS="BTC-PERP:64000:64010,ETH-PERP:3100:3101".
"""

import os
import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from src.advanced_orders.config import load_service_config, configure_logging
from src.advanced_orders.manager import EngineManager
from src.advanced_orders.paper_gateway import PaperExchangeGateway
from src.advanced_orders.record_store import ExecutionRecordStore
from src.api.app import create_app

load_dotenv()

config = load_service_config()
configure_logging(config.log_level, config.log_file)

gateway = PaperExchangeGateway()
for entry in filter(None, os.getenv('ADV_ORDERS_PAPER_BOOKS', 'BTC-PERP:64000:64010').split(',')):
    symbol, bid, ask = entry.split(':')
    gateway.set_order_book(symbol, bid, ask, depth="100")
    logger.info(f"Paper book {symbol}: {bid} / {ask}")

store = ExecutionRecordStore(config.database_url)
manager = EngineManager(lambda user_id: gateway, store, config.engine)
app = create_app(manager, store)


if __name__ == "__main__":
    host = os.getenv('ADV_ORDERS_HOST', '127.0.0.1')
    port = int(os.getenv('ADV_ORDERS_PORT', '8000'))
    logger.info(f"🚀 Advanced order API on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())
