from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
from typing import cast
from urllib.parse import urlencode, urlparse

from bountybot.models import IssueComment, IssueDetails, RepositoryDetails
from bountybot.observability import log_event
from bountybot.shell import run


LOGGER = logging.getLogger("bountybot.github_gateway")
_API_HOST = "api.github.com"
_RECENT_COMMENTS_PAGE_SIZE = 100


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub polling failure; caller should retry next poll."""


@dataclass(frozen=True)
class GitHubGateway:
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    def list_recent_comments(self, owner: str, repo: str) -> list[IssueComment]:
        query = urlencode(
            {
                "sort": "created",
                "direction": "desc",
                "per_page": str(_RECENT_COMMENTS_PAGE_SIZE),
            }
        )
        path = f"/repos/{owner}/{repo}/issues/comments?{query}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list of issue comments")

        comments: list[IssueComment] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                IssueComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    issue_url=_as_string(item_obj.get("issue_url")),
                    html_url=_as_string(item_obj.get("html_url")),
                    created_at=_as_optional_timestamp(item_obj.get("created_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="repo_issue_comments",
            repo_full_name=f"{owner}/{repo}",
            count=len(comments),
        )
        return comments

    def get_issue(self, issue_url: str) -> IssueDetails:
        payload = self._api_json("GET", api_path_from_url(issue_url))
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for issue")
        issue = IssueDetails(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            html_url=_as_string(payload_obj.get("html_url")),
            repository_url=_as_string(payload_obj.get("repository_url")),
        )
        log_event(LOGGER, "github_read", endpoint="issue", issue_number=issue.number)
        return issue

    def get_repository(self, repo_url: str) -> RepositoryDetails:
        payload = self._api_json("GET", api_path_from_url(repo_url))
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for repository")
        language = payload_obj.get("language")
        repository = RepositoryDetails(
            full_name=_as_string(payload_obj.get("full_name")),
            language=language if isinstance(language, str) and language else None,
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="repository",
            repo_full_name=repository.full_name,
        )
        return repository

    def post_issue_comment(self, owner: str, repo: str, issue_number: int, body: str) -> None:
        path = f"/repos/{owner}/{repo}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=f"{owner}/{repo}",
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_issue_comment_posted",
            repo_full_name=f"{owner}/{repo}",
            issue_number=issue_number,
        )

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False)
            try:
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_poll_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(
                    f"GitHub polling GET failed for path {path}: {exc}"
                ) from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload)
        return json.loads(raw) if raw.strip() else None


def api_path_from_url(url: str) -> str:
    """Turn an ``https://api.github.com/...`` URL into the path ``gh api`` expects."""
    candidate = url.strip()
    if candidate.startswith("/"):
        return candidate
    parsed = urlparse(candidate)
    if parsed.scheme != "https" or parsed.netloc != _API_HOST or not parsed.path:
        raise ValueError(f"Not a GitHub API URL: {url!r}")
    if parsed.query:
        return f"{parsed.path}?{parsed.query}"
    return parsed.path


def repo_coordinates_from_url(url: str) -> tuple[str, str]:
    """Return ``(owner, repo)`` from a ``.../repos/<owner>/<repo>[/...]`` API URL."""
    parts = [part for part in api_path_from_url(url).split("?", 1)[0].split("/") if part]
    try:
        repos_index = parts.index("repos")
        owner = parts[repos_index + 1]
        repo = parts[repos_index + 2]
    except (ValueError, IndexError) as exc:
        raise ValueError(f"Cannot find owner/repo in GitHub URL: {url!r}") from exc
    return owner, repo


def issue_target_from_url(issue_url: str) -> tuple[str, str, int]:
    """Return ``(owner, repo, issue_number)`` for an issue API URL."""
    owner, repo = repo_coordinates_from_url(issue_url)
    parts = [part for part in api_path_from_url(issue_url).split("?", 1)[0].split("/") if part]
    if len(parts) < 5 or parts[-2] != "issues":
        raise ValueError(f"Not a GitHub issue URL: {issue_url!r}")
    return owner, repo, _as_int(parts[-1], field="issue_number")


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_optional_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
