from fastapi import HTTPException, status


class AppError(HTTPException):
    """Base error rendered as ``{"detail": {"code": ..., "message": ...}}``."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "InternalError"

    def __init__(self, message: str, code: str | None = None):
        self.code = code or self.default_code
        self.message = message
        super().__init__(
            status_code=self.status_code,
            detail={"code": self.code, "message": message},
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class BadRequestError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "BadRequest"


class UnauthorizedError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "Unauthorized"


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "Forbidden"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NotFound"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "Conflict"
