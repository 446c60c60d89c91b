from __future__ import annotations


class SessionError(Exception):
    """Base class for session store errors."""


class StoreUnavailable(SessionError):
    """The document store could not be reached or rejected the operation."""


class EncodingError(SessionError):
    """An attribute value has no storable representation."""

    def __init__(self, value: object, reason: str | None = None):
        self.value = value
        msg = f"cannot encode value of type {type(value).__name__}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class DecodingError(SessionError):
    """A stored value could not be turned back into an attribute value."""


class InvalidSessionError(SessionError):
    """An attribute operation was attempted on an invalidated session."""


class ConfigurationError(SessionError):
    """A setting was changed while the owning component is running."""

    def __init__(self, component: str, setting: str):
        self.component = component
        self.setting = setting
        super().__init__(f"cannot change {setting} while {component} is running")


__all__ = [
    "SessionError",
    "StoreUnavailable",
    "EncodingError",
    "DecodingError",
    "InvalidSessionError",
    "ConfigurationError",
]
