"""
Onboarding error types.

Validation problems (a step gate saying "not yet") are never raised; they
only flip the controller's validation flag. Everything here is operational:
a remote call, a draft save or an answer write that went wrong.
"""

from typing import Optional


class OnboardingError(Exception):
    """Base class for all onboarding errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class KoraAPIError(OnboardingError):
    """Error returned by (or while reaching) the case-management service."""

    def __init__(self, code: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"KoraAPIError(code={self.code!r}, status_code={self.status_code!r}, message={self.message!r})"


class StepActionError(OnboardingError):
    """A transition action failed; the step is not left."""

    def __init__(self, step_id: str, message: str):
        super().__init__(message)
        self.step_id = step_id


class AccountExistsError(StepActionError):
    """Signup attempted with an email that is already registered."""

    def __init__(self, step_id: str = "login"):
        super().__init__(
            step_id,
            "This email is already registered. Please use the 'Log In' option above.",
        )
        self.suggested_mode = "login"


class PersistenceError(OnboardingError):
    """Draft could not be saved or loaded."""


class UnknownAnswerKeyError(OnboardingError, KeyError):
    """Write to a key that no step field or engine slot declares."""

    def __init__(self, key: str):
        super().__init__(f"Unknown answer key: {key}")
        self.key = key

    def __str__(self) -> str:
        return self.message


class InvalidAnswerValueError(OnboardingError, ValueError):
    """Write of a value outside the allowed answer shapes."""

    def __init__(self, key: str, value):
        super().__init__(f"Invalid value for {key}: {type(value).__name__}")
        self.key = key
