"""
Error types shared by the session lifecycle.

Recoverable errors (artifact validation, incompatible configs) re-arm the config
request; the rest end the operation they were raised from.
"""

from __future__ import annotations

from typing import Optional


class MultiworldError(RuntimeError):
    pass


class ConfigurationMissingError(MultiworldError):
    """A required external tool path (PYTHON_PATH, AP_PATH) is not set."""


class PreconditionMissingError(MultiworldError):
    """No guild/channel/host bound to the game."""


class InvalidTransitionError(MultiworldError):
    pass


class GameNotFoundError(MultiworldError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Game {code} not found")
        self.code = code


class ArtifactValidationError(MultiworldError):
    """The submitted YAML failed schema/content checks. Message is user-facing."""


class IncompatibleConfigError(MultiworldError):
    pass


class VersionIncompatibleError(IncompatibleConfigError):
    pass


class StateNotPermittedError(IncompatibleConfigError):
    pass


class EngineProcessFailure(MultiworldError):
    def __init__(self, message: str, diagnostics: Optional[str] = None, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics if diagnostics is not None else message
        self.exit_code = exit_code


class PortUnavailableError(MultiworldError):
    pass


class AttachmentError(MultiworldError):
    pass
