from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .exit_codes import ERR_CONFIG, ERR_EXTRACTION, ERR_INTERNAL


@dataclass
class VerifyError(Exception):
    message: str
    code: int = ERR_INTERNAL
    kind: str = "generic_error"

    def __str__(self) -> str:
        return self.message


class ConfigError(VerifyError):
    def __init__(self, message: str) -> None:
        super().__init__(message, ERR_CONFIG, "config_error")


class ExtractionError(VerifyError):
    """A source file could not be split into blocks (e.g. an unterminated fence)."""

    def __init__(self, path: Path, line: int, message: str) -> None:
        super().__init__(f"{path.as_posix()}:{line}: {message}", ERR_EXTRACTION, "extraction_error")
        self.path = path
        self.line = line
        self.reason = message


class SandboxError(VerifyError):
    def __init__(self, message: str) -> None:
        super().__init__(message, ERR_INTERNAL, "sandbox_error")
