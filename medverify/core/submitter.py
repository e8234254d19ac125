"""
Action Submitter

Sends write intents to the ledger and reports the outcome.

Rules:
- Submits exactly what it is given; the guard has already run
- A Rejected outcome is surfaced verbatim and never retried
- A transport failure (SourceUnavailable) is surfaced as-is; retrying a
  write is the caller's decision, not ours
"""

from typing import TYPE_CHECKING

from ..observability import get_logger, get_metrics
from ..schemas import Receipt, WriteIntent
from .errors import Rejected

if TYPE_CHECKING:
    from ..db.ledger import LedgerWriter

logger = get_logger(__name__)


class ActionSubmitter:
    """Thin logging/metrics wrapper over LedgerWriter.send()."""

    def __init__(self, writer: "LedgerWriter"):
        self._writer = writer

    def submit(self, intent: WriteIntent) -> Receipt:
        token_id = getattr(intent, "token_id", None)
        logger.info(
            "Submitting intent",
            intent=intent.kind.value,
            token_id=token_id,
            sender=intent.sender,
        )

        try:
            receipt = self._writer.send(intent)
        except Rejected as e:
            get_metrics().record_submission(accepted=False)
            logger.warning(
                "Intent rejected by ledger",
                intent=intent.kind.value,
                token_id=token_id,
                reason=e.reason,
            )
            raise

        get_metrics().record_submission(accepted=True)
        logger.info(
            "Intent accepted",
            intent=intent.kind.value,
            token_id=receipt.token_id,
            transaction_hash=receipt.transaction_hash,
            log_position=receipt.log_position,
        )
        return receipt
