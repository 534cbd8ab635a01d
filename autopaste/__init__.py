"""
Autopaste - Clipboard and auto-paste delivery for local dictation

Takes recognized text, copies it to the clipboard and pastes it into the
window the user last focused.
"""

__version__ = "1.0.0"

from autopaste.config import Config
from autopaste.service import PasteService

__all__ = ["PasteService", "Config", "__version__"]
