"""
Error types shared by the ad template matching modules.
"""


class AdMatchError(Exception):
    """Base class for every error raised by the matching core."""


class ValidationError(AdMatchError, ValueError):
    """Malformed capture, empty template image or invalid duration."""


class PreconditionError(AdMatchError, ValueError):
    """Search image smaller than the template (correlation matching only)."""


class NotFound(AdMatchError, KeyError):
    """No template with the requested id."""

    def __init__(self, template_id):
        super().__init__(template_id)
        self.template_id = template_id

    def __str__(self) -> str:
        return f"ad template not found: {self.template_id}"


class StorageError(AdMatchError):
    """The template database could not be read or written."""
