"""Error taxonomy for pivot.

Configuration and storage errors abort a whole invocation. Credential errors
abort one project. Transport and decode errors are recorded against the
issue's sync state and never end the run.
"""

from __future__ import annotations

PROVIDER_NAME = "GitHub"


class PivotError(Exception):
    """Base class for all pivot errors."""


class ConfigError(PivotError):
    """Malformed or incomplete configuration."""


class StorageError(PivotError):
    """The embedded SQLite store is unreadable or unwritable."""


class CredentialError(PivotError):
    """Authentication/authorization failure against the remote API."""

    def __init__(self, status_code: int, message: str, suggestion: str = "") -> None:
        self.status_code = status_code
        self.message = message
        self.suggestion = suggestion
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"{PROVIDER_NAME} API error ({self.status_code}): {self.message}\n{self.suggestion}"


class TransportError(PivotError):
    """Network, DNS or timeout failure talking to the remote API."""


class RequestBuildError(TransportError):
    """The outbound request could not be constructed."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"failed to create request: {detail}")


class DecodeError(PivotError):
    """A successful response carried a body that could not be decoded."""

    def __init__(self, detail: str, body: str = "") -> None:
        self.detail = detail
        self.body = body
        super().__init__(f"failed to decode response: {detail}")


class RemoteAPIError(PivotError):
    """The remote API answered with an unexpected non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"unexpected status code: {status_code}, response: {body}")


class InvalidTransitionError(ValueError):
    """A sync-state transition that is not in the transition table."""

    def __init__(self, issue_id: int, from_state: str, to_state: str | None = None, *, event: str | None = None) -> None:
        self.issue_id = issue_id
        self.from_state = from_state
        self.to_state = to_state
        self.event = event
        if to_state is None:
            msg = f"Event '{event}' is not valid in state '{from_state}' for issue {issue_id}"
        else:
            msg = f"Transition '{from_state}' -> '{to_state}' is not allowed for issue {issue_id}"
        super().__init__(msg)
