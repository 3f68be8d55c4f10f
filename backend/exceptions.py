# exceptions.py — Domain error taxonomy shared by services, jobs and the gateway
#
# Services raise these; main.py renders them as JSON responses and the chat
# gateway turns them into `error` events for the originating connection.


class AppError(Exception):
    """Base class for errors that map onto an HTTP status"""

    status_code = 500

    def __init__(self, message: str = "", status_code: int = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class PayloadValidationError(AppError):
    """Malformed payload rejected before it reaches the queue or the store"""
    status_code = 422


class BadRequestError(AppError):
    status_code = 400


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class UnknownQueueError(NotFoundError):
    def __init__(self, queue_name: str):
        super().__init__(f"Unknown queue: {queue_name}")
        self.queue_name = queue_name


class ExternalServiceError(AppError):
    """Email provider or GitHub API call failed"""
    status_code = 502

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class QueueUnavailableError(AppError):
    """Queue backend (Redis) could not be reached"""
    status_code = 503
