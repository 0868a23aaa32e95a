"""
Platform Fee Enforcement Job
Sends first and final reminders for unpaid platform fees and, once the grace period
ends, marks the fee overdue and suspends the payer.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Dict, Optional

from services.outstanding_fee_ledger import OutstandingFeeLedger

logger = logging.getLogger(__name__)


def _enforce_all(ledger: OutstandingFeeLedger) -> Dict[str, Any]:
    actions = Counter()
    errors = 0
    for contract_id in ledger.contracts_due_for_enforcement():
        try:
            action = ledger.enforce_contract_deadline(contract_id)
        except Exception as e:
            errors += 1
            logger.error(f"❌ FEE_ENFORCEMENT: contract {contract_id} failed - {e}", exc_info=True)
            continue
        if action:
            actions[action] += 1
    return {"success": True, "actions": dict(actions), "errors": errors}


async def run_fee_enforcement(ledger: Optional[OutstandingFeeLedger] = None) -> Dict[str, Any]:
    ledger = ledger or OutstandingFeeLedger()
    try:
        result = await asyncio.to_thread(_enforce_all, ledger)
        if result["actions"]:
            logger.info(f"✅ FEE_ENFORCEMENT: {result['actions']} ({result['errors']} errors)")
        else:
            logger.info("✅ FEE_ENFORCEMENT: nothing due")
        return result
    except Exception as e:
        logger.error(f"❌ FEE_ENFORCEMENT: run failed - {e}", exc_info=True)
        return {"success": False, "error": str(e)}
