"""Expires payment orders nobody paid within the order window"""

import asyncio
import logging
from typing import Any, Dict, Optional

from services.order_manager import OrderManager

logger = logging.getLogger(__name__)


async def run_order_expiry(order_manager: Optional[OrderManager] = None) -> Dict[str, Any]:
    order_manager = order_manager or OrderManager()
    try:
        expired = await asyncio.to_thread(order_manager.expire_stale_orders)
        return {"success": True, "expired": expired}
    except Exception as e:
        logger.error(f"❌ ORDER_EXPIRY: sweep failed - {e}", exc_info=True)
        return {"success": False, "error": str(e)}
