class PFSError(Exception):
    """Base error raised by the store and mapped to an HTTP response"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(PFSError):
    status_code = 404


class ValidationError(PFSError):
    status_code = 400


class ConflictError(PFSError):
    status_code = 409


class StorageError(PFSError):
    status_code = 500
