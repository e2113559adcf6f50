from __future__ import annotations


class PetSOSError(Exception):
    """Base class for rejected operations; ``code`` is stable, the message names the invariant."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidArgument(PetSOSError):
    code = "invalid_argument"


class NotFound(PetSOSError):
    code = "not_found"


class Forbidden(PetSOSError):
    code = "forbidden"


class InvalidState(PetSOSError):
    code = "invalid_state"
