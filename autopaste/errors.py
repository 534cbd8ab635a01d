"""Exceptions raised by the autopaste components."""


class AutopasteError(Exception):
    """Base class for autopaste errors."""


class ClipboardError(AutopasteError):
    """Raised when the system clipboard cannot be written."""


class InjectionError(AutopasteError):
    """Raised when a keystroke injection strategy fails."""


class WindowQueryError(AutopasteError):
    """Raised when the focused window cannot be queried."""
