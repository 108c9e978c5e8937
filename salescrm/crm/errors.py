from __future__ import annotations

from fastapi import HTTPException, status


class AuthorizationError(HTTPException):
    """Ownership, visibility or role check failed."""

    def __init__(self, detail: str = "forbidden") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str = "not found") -> None:
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class NotAuthenticatedError(HTTPException):
    def __init__(self, detail: str = "not authenticated") -> None:
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class StorageError(HTTPException):
    """File could not be written, read or removed."""

    def __init__(self, detail: str = "file storage failed") -> None:
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


class FileRejectedError(StorageError):
    """Upload refused before anything touched the disk (size or extension)."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status.HTTP_400_BAD_REQUEST


class BadRequestError(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class ConflictError(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)
