from typing import Optional


class TokenMonitorError(Exception):
    """
    Base class for errors raised by the token monitor.
    """


class FetchError(TokenMonitorError):
    """
    Raised when the pair-fetch endpoint fails or returns an unusable payload.
    "No data" is not a failure and never raises this.
    """


class RetriesExhaustedError(TokenMonitorError):
    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Operation failed after {attempts} attempt(s): {last_error}")


class ConfigurationError(TokenMonitorError, ValueError):
    """
    Invalid configuration supplied at startup or through a runtime update.
    """


class InvalidStatusError(TokenMonitorError, ValueError):
    def __init__(self, status: str, valid: list):
        self.status = status
        self.valid = valid
        super().__init__(f"Invalid status '{status}' (valid: {', '.join(valid)})")
