from __future__ import annotations


class ErrorCodes:
    WEBSOCKET_CONNECTION_FAILED = "WEBSOCKET_CONNECTION_FAILED"
    WEBSOCKET_CONNECTION_CLOSED = "WEBSOCKET_CONNECTION_CLOSED"
    INVALID_MARKET_DATA = "INVALID_MARKET_DATA"
    INVALID_CLIENT_COMMAND = "INVALID_CLIENT_COMMAND"
    UNKNOWN_CLIENT = "UNKNOWN_CLIENT"
    SLOW_CLIENT = "SLOW_CLIENT"


MALFORMED_JSON = "malformed-json"
MISSING_FIELD = "missing-field"
INVALID_FIELD = "invalid-field"


class RelayError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class MarketDataError(RelayError):
    """Upstream frame that could not be normalized; the frame is dropped."""

    def __init__(self, message: str, classification: str) -> None:
        super().__init__(message, ErrorCodes.INVALID_MARKET_DATA)
        self.classification = classification


class InvalidClientCommandError(RelayError):
    def __init__(self, message: str = "Invalid message format") -> None:
        super().__init__(message, ErrorCodes.INVALID_CLIENT_COMMAND)


class UnknownClientError(RelayError):
    def __init__(self, client_id: str) -> None:
        super().__init__(f"unknown client: {client_id}", ErrorCodes.UNKNOWN_CLIENT)
        self.client_id = client_id
