class PortalError(Exception):
    """Base error for anything the API reports back as a JSON error envelope."""

    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PortalError):
    status_code = 400


class PermissionDenied(PortalError):
    status_code = 403


class NotFound(PortalError):
    status_code = 404


class Conflict(PortalError):
    status_code = 409


class StorageError(PortalError):
    status_code = 502
