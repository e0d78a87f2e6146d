"""Error taxonomy for texture conversion.

Each class also derives from the builtin exception callers already handle
for that situation, so ``except ValueError`` around config loading or
``except IOError`` around image decoding keep working.
"""

from typing import Optional


class TextureConversionError(Exception):
    """Base class for all texture conversion failures."""


class ConfigurationError(TextureConversionError, ValueError):
    """Invalid settings or a missing external encoder binary."""


class InputError(TextureConversionError, IOError):
    """Unreadable, corrupt, empty, or zero-dimension source image."""


class ComputationError(TextureConversionError, RuntimeError):
    """A numeric sub-step could not run (e.g. no normal map, too few channels)."""


class EncodingError(TextureConversionError, RuntimeError):
    """The external encoder exited with an error or produced no output."""

    def __init__(self, message: str, returncode: Optional[int] = None,
                 output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output
