from typing import Optional


class TutorHubException(Exception):
    """Base exception for TutorHub application"""
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class ValidationError(TutorHubException):
    """Exception raised for validation errors"""
    status_code = 400


class InvalidTransitionError(TutorHubException):
    """Exception raised when a booking status change is not an edge of the lifecycle"""
    status_code = 400

    def __init__(self, source: str, target: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot change status from {source} to {target}")
        self.source = source
        self.target = target


class SessionInProgressError(TutorHubException):
    """Exception raised when cancelling a session that has already started"""
    status_code = 400

    def __init__(self, message: str = "Cannot cancel a session in progress. Please contact support."):
        super().__init__(message)


class AuthenticationError(TutorHubException):
    """Exception raised for authentication errors"""
    status_code = 401


class AuthorizationError(TutorHubException):
    """Exception raised for authorization errors"""
    status_code = 403


class NotFoundError(TutorHubException):
    """Exception raised when a requested entity does not exist"""
    status_code = 404


class SchedulingConflictError(TutorHubException):
    """Exception raised when a requested interval overlaps an active booking"""
    status_code = 409

    def __init__(self, message: str = "This time slot is already booked"):
        super().__init__(message)


class RateLimitExceededError(TutorHubException):
    """Exception raised when an actor exceeds an action budget"""
    status_code = 429

    def __init__(self, message: str, remaining: int = 0, reset_in: int = 0):
        super().__init__(message)
        self.remaining = remaining
        self.reset_in = reset_in


class PaymentError(TutorHubException):
    """Exception raised for payment processor failures; the action may be retried"""
    status_code = 500


class PaymentAmountMismatchError(TutorHubException):
    """Exception raised when the processor reports a paid amount other than the booking price"""
    status_code = 400


class WebhookVerificationError(TutorHubException):
    """Exception raised for unsigned or tampered payment notifications"""
    status_code = 400


class NotificationError(TutorHubException):
    """Exception raised for notification errors"""
    pass
