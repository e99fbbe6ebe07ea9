"""Exception types raised by the refresh pipeline."""

from __future__ import annotations

from enum import Enum


class GasPricesError(Exception):
    """Base class for all gas prices errors."""


class FetchErrorKind(str, Enum):
    NETWORK = "network"
    PROTOCOL = "protocol"


class FetchError(GasPricesError):
    """Raised when the feed could not be retrieved."""

    def __init__(self, kind: FetchErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.args[0]}"


class DecodeError(GasPricesError):
    """Raised when the feed body is not a well-formed gas prices document."""


class StoreError(GasPricesError):
    """Raised when the price store cannot be read or written."""
