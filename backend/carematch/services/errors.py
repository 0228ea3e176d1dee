from typing import Any


class CareMatchError(Exception):
    """Base class for per-turn failures. None of these are fatal to the process."""


class ArgumentParseError(CareMatchError):
    def __init__(self, message: str, raw_payload: Any = None) -> None:
        super().__init__(message)
        self.raw_payload = raw_payload


class NotFoundError(CareMatchError):
    pass


class InvalidQueryError(CareMatchError):
    pass


class StorageError(CareMatchError):
    pass


class ModelCallError(CareMatchError):
    pass
