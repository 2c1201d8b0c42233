from typing import Optional

RAW_LIMIT = 2000

def truncate_raw(raw: Optional[str], limit: int = RAW_LIMIT) -> Optional[str]:
    if raw is None:
        return None
    if len(raw) <= limit:
        return raw
    return raw[:limit] + f"... [{len(raw) - limit} more chars]"

class ReconcileError(Exception):
    """
    Base for every failure that can end a reconciliation attempt.
    `raw` carries the vendor response (status + body) at the failing call.
    """
    kind = "ReconcileError"
    retryable = False

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.raw = truncate_raw(raw)

class NotLinked(ReconcileError):
    kind = "NotLinked"

class VendorUnreachable(ReconcileError):
    kind = "VendorUnreachable"
    retryable = True

class VendorRejected(ReconcileError):
    kind = "VendorRejected"

    def __init__(self, message: str, raw: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, raw)
        self.status_code = status_code

class BindMismatch(ReconcileError):
    kind = "BindMismatch"

class ProofTimeout(ReconcileError):
    kind = "ProofTimeout"
    retryable = True

class NoContentDetected(ReconcileError):
    kind = "NoContentDetected"
    retryable = True

class ConcurrentModification(ReconcileError):
    kind = "ConcurrentModification"
    retryable = True

class NoBaselineContent(ReconcileError):
    kind = "NoBaselineContent"
