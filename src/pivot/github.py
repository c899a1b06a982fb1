"""GitHub REST client and the ``RemoteIssueSource`` seam.

The sync and push orchestration never talks to HTTP directly: it is handed a
``RemoteIssueSource``. ``GitHubClient`` is the production implementation on
``httpx``; tests either mount an ``httpx.MockTransport`` or pass a fake
source.

The client makes exactly one attempt per call. Failures are classified into
the ``pivot.errors`` taxonomy and the caller records them against the sync
state; retry policy lives in ``SyncService.retry_failed``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from pivot.errors import CredentialError, DecodeError, RemoteAPIError, RequestBuildError, TransportError

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"
ACCEPT = "application/vnd.github.v3+json"
PER_PAGE = 100
USER_AGENT = "pivot-issues"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

_RETRY_HINT = "Check your network connection and try again"


@dataclass
class RemoteIssue:
    """One issue as reported by the remote API."""

    id: int
    number: int
    title: str
    body: str = ""
    state: str = "open"
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    closed_at: str | None = None
    html_url: str = ""

    @classmethod
    def from_api(cls, data: Any) -> RemoteIssue:
        """Build from a decoded issue object; raises ``DecodeError`` on a wrong shape."""
        if not isinstance(data, dict):
            msg = f"expected an issue object, got {type(data).__name__}"
            raise DecodeError(msg)
        try:
            return cls(
                id=int(data["id"]),
                number=int(data["number"]),
                title=str(data.get("title") or ""),
                body=str(data.get("body") or ""),
                state=str(data.get("state") or "open"),
                labels=[lbl["name"] if isinstance(lbl, dict) else str(lbl) for lbl in data.get("labels") or []],
                assignees=[a["login"] for a in data.get("assignees") or []],
                created_at=data.get("created_at"),
                updated_at=data.get("updated_at"),
                closed_at=data.get("closed_at"),
                html_url=str(data.get("html_url") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"malformed issue object: {exc!r}"
            raise DecodeError(msg) from exc


@dataclass
class CreateIssueRequest:
    """Body of a create (POST) or update (PATCH) call."""

    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    milestone: int | None = None
    state: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """POST body; empty fields are omitted."""
        payload: dict[str, Any] = {"title": self.title}
        if self.body:
            payload["body"] = self.body
        if self.labels:
            payload["labels"] = list(self.labels)
        if self.assignees:
            payload["assignees"] = list(self.assignees)
        if self.milestone is not None:
            payload["milestone"] = self.milestone
        if self.state:
            payload["state"] = self.state
        return payload

    def to_update_payload(self) -> dict[str, Any]:
        """PATCH body. GitHub keeps any field left out, so cleared fields are sent empty."""
        payload = self.to_payload()
        payload.update(body=self.body, labels=list(self.labels), assignees=list(self.assignees))
        return payload


@dataclass
class CreatedIssue:
    id: int
    number: int
    title: str
    state: str
    html_url: str = ""

    @classmethod
    def from_api(cls, data: Any) -> CreatedIssue:
        if not isinstance(data, dict):
            msg = f"expected an issue object, got {type(data).__name__}"
            raise DecodeError(msg)
        try:
            return cls(
                id=int(data["id"]),
                number=int(data["number"]),
                title=str(data.get("title") or ""),
                state=str(data.get("state") or "open"),
                html_url=str(data.get("html_url") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"malformed issue object: {exc!r}"
            raise DecodeError(msg) from exc


class RemoteIssueSource(Protocol):
    """Everything the sync core needs from a remote issue tracker."""

    def list_issues(self, owner: str, repo: str, token: str) -> list[RemoteIssue]: ...

    def create_issue(self, owner: str, repo: str, token: str, payload: CreateIssueRequest) -> CreatedIssue: ...

    def update_issue(self, owner: str, repo: str, token: str, number: int, payload: CreateIssueRequest) -> CreatedIssue: ...

    def ensure_credentials(self, owner: str, repo: str, token: str) -> None: ...


def missing_token_error() -> CredentialError:
    return CredentialError(401, "No GitHub token provided", "Run 'pivot init' to configure your GitHub token, or set it in config.yml")


def _reject_control_chars(**parts: str) -> None:
    for name, value in parts.items():
        if value and _CONTROL_CHARS.search(value):
            msg = f"{name} contains control characters"
            raise RequestBuildError(msg)


class GitHubClient:
    """Blocking GitHub REST client. One attempt per call, no internal retries."""

    def __init__(
        self,
        base_url: str = API_URL,
        *,
        timeout: float | httpx.Timeout | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {"base_url": base_url.rstrip("/"), "transport": transport}
        if timeout is not None:
            kwargs["timeout"] = timeout
        self._client = httpx.Client(**kwargs)

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _headers(token: str, *, has_body: bool = False) -> dict[str, str]:
        headers = {"Accept": ACCEPT, "User-Agent": USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if has_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _send(
        self,
        method: str,
        url: str,
        token: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        _reject_control_chars(url=url, token=token)
        try:
            request = self._client.build_request(
                method,
                url,
                headers=self._headers(token, has_body=json is not None),
                json=json,
                params=params,
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol, ValueError, TypeError) as exc:
            raise RequestBuildError(str(exc)) from exc

        try:
            response = self._client.send(request)
        except httpx.TimeoutException as exc:
            msg = f"{method} {request.url} timed out: {exc}"
            raise TransportError(msg) from exc
        except httpx.TransportError as exc:
            msg = f"{method} {request.url} failed: {exc}"
            raise TransportError(msg) from exc
        logger.debug("%s %s -> %d", method, request.url, response.status_code)
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            logger.warning("Undecodable response from %s: %s", response.request.url, exc, extra={"error": str(exc)})
            raise DecodeError(str(exc), response.text) from exc

    # -- Issues ---------------------------------------------------------------

    def list_issues(self, owner: str, repo: str, token: str) -> list[RemoteIssue]:
        """All issues (open and closed) of ``owner/repo``, following pagination.

        Pull requests, which the issues endpoint also returns, are skipped.
        """
        _reject_control_chars(owner=owner, repo=repo)
        url: str | None = f"/repos/{owner}/{repo}/issues"
        params: dict[str, Any] | None = {"state": "all", "per_page": PER_PAGE}
        issues: list[RemoteIssue] = []
        while url:
            response = self._send("GET", url, token, params=params)
            if response.status_code != 200:
                raise RemoteAPIError(response.status_code, response.text)
            data = self._decode(response)
            if not isinstance(data, list):
                msg = f"expected a list of issues, got {type(data).__name__}"
                raise DecodeError(msg, response.text)
            issues.extend(RemoteIssue.from_api(item) for item in data if not (isinstance(item, dict) and "pull_request" in item))
            # the next link already carries the query string
            url = response.links.get("next", {}).get("url")
            params = None
        return issues

    def create_issue(self, owner: str, repo: str, token: str, payload: CreateIssueRequest) -> CreatedIssue:
        _reject_control_chars(owner=owner, repo=repo)
        response = self._send("POST", f"/repos/{owner}/{repo}/issues", token, json=payload.to_payload())
        if response.status_code != 201:
            raise RemoteAPIError(response.status_code, response.text)
        return CreatedIssue.from_api(self._decode(response))

    def update_issue(self, owner: str, repo: str, token: str, number: int, payload: CreateIssueRequest) -> CreatedIssue:
        _reject_control_chars(owner=owner, repo=repo)
        response = self._send("PATCH", f"/repos/{owner}/{repo}/issues/{number}", token, json=payload.to_update_payload())
        if response.status_code != 200:
            raise RemoteAPIError(response.status_code, response.text)
        return CreatedIssue.from_api(self._decode(response))

    # -- Credentials ----------------------------------------------------------

    def validate_token(self, token: str) -> None:
        if not token:
            raise missing_token_error()

        response = self._send("GET", "/user", token)
        if response.status_code == 200:
            return
        if response.status_code == 401:
            raise CredentialError(
                401,
                "Invalid GitHub token",
                "Your GitHub token is invalid or expired. Run 'pivot init' to update it, or check your config.yml file",
            )
        if response.status_code == 403:
            raise CredentialError(
                403,
                "GitHub token lacks required permissions",
                "Your GitHub token needs 'repo' scope permissions. Create a new token at https://github.com/settings/tokens",
            )
        raise CredentialError(response.status_code, f"GitHub API returned unexpected status: {response.text}", _RETRY_HINT)

    def validate_repository_access(self, owner: str, repo: str, token: str) -> None:
        _reject_control_chars(owner=owner, repo=repo)
        response = self._send("GET", f"/repos/{owner}/{repo}", token)
        if response.status_code == 200:
            return
        if response.status_code == 404:
            raise CredentialError(
                404,
                f"Repository {owner}/{repo} not found or not accessible",
                "Check the repository name or ensure your token has access to this repository",
            )
        if response.status_code == 403:
            raise CredentialError(
                403,
                f"Access denied to repository {owner}/{repo}",
                "Your token doesn't have permission to access this repository. Ensure it has 'repo' scope",
            )
        raise CredentialError(response.status_code, f"Unexpected response when accessing repository: {response.text}", _RETRY_HINT)

    def ensure_credentials(self, owner: str, repo: str, token: str) -> None:
        """Validate the token, then repository access unless owner and repo are both empty."""
        self.validate_token(token)
        if owner or repo:
            self.validate_repository_access(owner, repo, token)
