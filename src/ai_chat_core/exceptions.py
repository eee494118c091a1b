"""Custom exception classes for AI Chat Core."""


class ChatCoreError(Exception):
    """Base exception for AI Chat Core errors."""

    def __init__(self, message: str, code: str = "internal", detail: str = ""):
        self.message = message
        self.code = code
        self.detail = detail
        super().__init__(message)


class ChunkError(ChatCoreError):
    """Errors related to incoming stream chunks."""

    pass


class MalformedChunkError(ChunkError):
    """Chunk cannot be addressed or merged (missing ids, payload or type)."""

    def __init__(self, message: str = "Malformed chunk", detail: str = ""):
        super().__init__(message, code="malformed_chunk", detail=detail)


class LateChunkError(ChunkError):
    """Chunk arrived for a response that is already sealed."""

    def __init__(self, response_id: str, state: str, item_id: str = ""):
        target = f"{response_id}/{item_id}" if item_id else response_id
        super().__init__(f"Chunk for sealed {target} ({state})", code="late_chunk")
        self.response_id = response_id
        self.item_id = item_id
        self.state = state


class BackendError(ChatCoreError):
    """Errors related to message backends."""

    pass


class BackendFailureError(BackendError):
    """The backend failed while producing a response."""

    def __init__(self, message: str = "Backend failed", detail: str = ""):
        super().__init__(message, code="backend_failure", detail=detail)


class BackendAuthError(BackendError):
    """Authentication with the backend failed."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, code="auth_failed")


class StoreError(ChatCoreError):
    """Errors related to the message store."""

    pass


class AlreadyFlushedError(StoreError):
    """An entry with this id is already in the store."""

    def __init__(self, message_id: str):
        super().__init__(
            f"Message already flushed: {message_id}", code="already_flushed"
        )
        self.message_id = message_id


class HistoryStoreError(StoreError):
    """Persisted history could not be read or written."""

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message, code="history_store", detail=detail)
