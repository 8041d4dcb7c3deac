from __future__ import annotations


class BridgeError(RuntimeError):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = str(message)


class SpawnError(BridgeError):
    status_code = 503


class SessionNotRunningError(BridgeError):
    status_code = 409


class BackendInvocationError(BridgeError):
    status_code = 502


class NotFoundError(BridgeError):
    status_code = 404


class ValidationError(BridgeError):
    status_code = 400
