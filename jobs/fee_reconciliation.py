"""
Outstanding Fee Reconciliation Job
Recomputes payer ledgers from fee contracts in bounded batches, correcting drift and
restoring accounts whose fee suspension no longer applies.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from config import Config
from services.outstanding_fee_ledger import OutstandingFeeLedger

logger = logging.getLogger(__name__)


async def run_fee_reconciliation(
    ledger: Optional[OutstandingFeeLedger] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, Any]:
    ledger = ledger or OutstandingFeeLedger()
    size = batch_size or Config.FEE_RECONCILIATION_BATCH_SIZE
    try:
        logger.info(f"📊 FEE_RECONCILIATION: starting batch of up to {size} accounts")
        report = await asyncio.to_thread(ledger.reconcile_accounts, size)
        return {
            "success": True,
            "processed": report.processed,
            "corrected": report.corrected,
            "unsuspended": report.unsuspended,
            "errors": report.errors,
        }
    except Exception as e:
        logger.error(f"❌ FEE_RECONCILIATION: batch failed - {e}", exc_info=True)
        return {"success": False, "error": str(e)}
