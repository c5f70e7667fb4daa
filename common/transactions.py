import logging
import time

from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (OperationalError, IntegrityError)


def run_atomic(func, *, attempts=None, backoff=None):
    """
    Run `func` inside one transaction, retrying the whole unit on lock and
    serialization failures.

    Each attempt starts a fresh `transaction.atomic()` block, so a failed
    attempt is fully rolled back before the next one begins. Domain errors
    raised by `func` propagate immediately.
    """
    attempts = attempts or settings.ORDER_TRANSACTION_ATTEMPTS
    backoff = settings.ORDER_TRANSACTION_BACKOFF if backoff is None else backoff

    for attempt in range(1, attempts + 1):
        try:
            with transaction.atomic():
                return func()
        except RETRYABLE_ERRORS as exc:
            # Only the outermost block can retry; an outer transaction still holds its locks.
            if attempt >= attempts or transaction.get_connection().in_atomic_block:
                raise
            logger.warning(
                "transaction_retry",
                extra={"attempt": attempt, "error": exc.__class__.__name__},
            )
            time.sleep(backoff * (2 ** (attempt - 1)))
