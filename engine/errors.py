from typing import Optional


class ProtocolError(Exception):
    """Inbound frame could not be parsed into a known envelope."""

    def __init__(self, details: str):
        super().__init__(details)
        self.details = details


class DomainError(Exception):
    """Well-formed request that cannot be honoured. Raised before any state changes."""

    def __init__(self, error: str, message: Optional[str] = None, reply_type: str = "error"):
        super().__init__(message or error)
        self.error = error
        self.message = message or error
        self.reply_type = reply_type


class PersistenceError(Exception):
    pass


class ConnectionClosedError(Exception):
    def __init__(self, connection_id: str):
        super().__init__(f"connection {connection_id} is closed")
        self.connection_id = connection_id
