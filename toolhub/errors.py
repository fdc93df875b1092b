"""Error taxonomy shared by discovery, toolsets, extensions and the active surface.

Validation and precondition failures go back to the immediate caller.
Connectivity failures stay inside discovery and show up as unavailable tools.
"""


class HubError(Exception):
    """Base class for every error raised by toolhub."""


class ValidationError(HubError):
    """Malformed toolset or extension definition. User-correctable."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors: list[str] = list(errors or [])


class NotFoundError(HubError):
    """Missing toolset, extension or tool reference."""


class PreconditionError(HubError):
    """A precondition was not met (missing confirmation, nothing equipped). Nothing was changed."""


class ConnectivityError(HubError):
    """A downstream server could not be reached."""

    def __init__(self, server_name: str, message: str) -> None:
        super().__init__(f"{server_name}: {message}")
        self.server_name = server_name


class NotExposedError(HubError):
    """The tool exists but is outside the active surface."""


__all__ = [
    "ConnectivityError",
    "HubError",
    "NotExposedError",
    "NotFoundError",
    "PreconditionError",
    "ValidationError",
]
