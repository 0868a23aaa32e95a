"""Re-enqueues submissions stuck in processing past the pipeline timeout"""

import logging
from typing import Any, Dict, Optional

from config import Config
from services.submission_queue import SubmissionQueue

logger = logging.getLogger(__name__)


async def run_submission_recovery(
    queue: SubmissionQueue,
    stale_after_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    stale_after = Config.PIPELINE_TIMEOUT_SECONDS if stale_after_seconds is None else stale_after_seconds
    try:
        requeued = await queue.recover_in_flight(stale_after_seconds=stale_after)
        return {"success": True, "requeued": requeued}
    except Exception as e:
        logger.error(f"❌ SUBMISSION_RECOVERY: sweep failed - {e}", exc_info=True)
        return {"success": False, "error": str(e)}
