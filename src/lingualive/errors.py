"""Error taxonomy for live sessions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    ENVIRONMENT = "EnvironmentError"
    PERMISSION = "PermissionError"
    CONFIGURATION = "ConfigurationError"
    DEVICE = "DeviceError"
    PROTOCOL = "ProtocolError"
    TRANSPORT = "TransportError"
    CODEC = "CodecError"


FATAL_KINDS = frozenset(
    {
        ErrorKind.ENVIRONMENT,
        ErrorKind.PERMISSION,
        ErrorKind.CONFIGURATION,
        ErrorKind.DEVICE,
        ErrorKind.TRANSPORT,
    }
)


@dataclass(frozen=True)
class SessionError:
    kind: ErrorKind
    message: str
    reason: Optional[str] = None


class LiveSessionError(Exception):
    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL_KINDS

    def to_session_error(self) -> SessionError:
        return SessionError(kind=self.kind, message=self.message, reason=self.reason)


class EnvironmentUnavailableError(LiveSessionError):
    """No secure transport or no usable audio API on this host."""

    kind = ErrorKind.ENVIRONMENT


class MicrophonePermissionError(LiveSessionError):
    kind = ErrorKind.PERMISSION


class ConfigurationError(LiveSessionError):
    kind = ErrorKind.CONFIGURATION


class DeviceError(LiveSessionError):
    kind = ErrorKind.DEVICE


class ProtocolError(LiveSessionError):
    kind = ErrorKind.PROTOCOL


class TransportError(LiveSessionError):
    kind = ErrorKind.TRANSPORT


class CodecError(LiveSessionError):
    kind = ErrorKind.CODEC
