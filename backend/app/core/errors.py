"""Error taxonomy shared by the mailbox client, reply store and sync engine.

Every error carries an HTTP status code and a stable error code so API routes
can translate it without knowing where it was raised.
"""


class LeadflowError(Exception):
    """Base exception for Leadflow errors."""

    def __init__(self, message: str, status_code: int = 500, error_code: str = "leadflow_error"):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class AuthExpiredError(LeadflowError):
    """Raised when mailbox credentials are stale and the user must re-authenticate."""

    def __init__(self, message: str = "Gmail authorization expired. Please reconnect your Gmail account."):
        super().__init__(
            message=message,
            status_code=401,
            error_code="auth_expired"
        )


class RemoteUnavailableError(LeadflowError):
    """Raised for transient network or mailbox API failures."""

    def __init__(self, message: str = "Gmail API is temporarily unavailable. Please try again later."):
        super().__init__(
            message=message,
            status_code=503,
            error_code="remote_unavailable"
        )


class CursorExpiredError(LeadflowError):
    """Raised when the mailbox no longer recognizes a history cursor."""

    def __init__(self, message: str = "History cursor expired; a full sync is required"):
        super().__init__(
            message=message,
            status_code=410,
            error_code="cursor_expired"
        )


class DuplicateReplyError(LeadflowError):
    """Raised when a reply is already stored. Callers treat this as a no-op."""

    def __init__(self, message: str = "Reply already stored"):
        super().__init__(
            message=message,
            status_code=409,
            error_code="duplicate_reply"
        )


class ReplyNotFoundError(LeadflowError):
    """Raised when a stored reply does not exist."""

    def __init__(self, message: str = "Reply not found"):
        super().__init__(
            message=message,
            status_code=404,
            error_code="reply_not_found"
        )


class GenerationFailedError(LeadflowError):
    """Raised when the AI collaborator fails or returns unusable output."""

    def __init__(self, message: str = "AI generation failed. Please try again."):
        super().__init__(
            message=message,
            status_code=502,
            error_code="generation_failed"
        )
