"""Code-hosting review API: change requests, reviews, comments, merge."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from skillops import __version__
from skillops.errors import MergeConflict, ReviewError

logger = logging.getLogger(__name__)

_SCORE_RE = re.compile(
    r"confidence\s+score\s*[:=]?\s*\**\s*(\d+(?:\.\d+)?)\s*\**\s*/\s*5",
    re.IGNORECASE,
)


def parse_confidence_score(body: str) -> float | None:
    match = _SCORE_RE.search(body or "")
    if match is None:
        return None
    return float(match.group(1))


@dataclass(frozen=True, slots=True)
class ChangeRequestRef:
    number: int
    url: str
    head: str
    base: str


@dataclass(frozen=True, slots=True)
class Review:
    id: int
    login: str
    state: str
    body: str
    submitted_at: str = ""

    @property
    def score(self) -> float | None:
        return parse_confidence_score(self.body)


@dataclass(frozen=True, slots=True)
class ReviewComment:
    id: int
    login: str
    body: str
    path: str = ""
    line: int | None = None
    review_id: int | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "login": self.login,
            "path": self.path,
            "line": self.line,
            "body": self.body,
        }


@dataclass(slots=True)
class MergeResult:
    merged: bool
    sha: str = ""
    message: str = ""
    warnings: list[str] = field(default_factory=list)


class ReviewService(Protocol):
    def changed_file_count(self, ref: ChangeRequestRef) -> int: ...

    def list_reviews(self, ref: ChangeRequestRef) -> list[Review]: ...

    def list_review_comments(
        self, ref: ChangeRequestRef, review: Review | None = None
    ) -> list[ReviewComment]: ...

    def merge(self, ref: ChangeRequestRef) -> MergeResult: ...


class ChangeRequestService(ReviewService, Protocol):
    def open_change_request(
        self, *, head: str, base: str, title: str, body: str
    ) -> ChangeRequestRef: ...

    def delete_branch(self, branch: str) -> bool: ...


def _github_headers(token: str) -> dict[str, str]:
    return {
        "Accept": "application/vnd.github+json",
        "Authorization": f"Bearer {token}",
        "X-GitHub-Api-Version": "2022-11-28",
        "User-Agent": f"skillops/{__version__}",
    }


def _login(item: dict[str, object]) -> str:
    user = item.get("user")
    if isinstance(user, dict):
        return str(user.get("login", "")).strip()
    return ""


class GitHubReviewClient:
    """GitHub REST implementation of :class:`ReviewService`."""

    def __init__(
        self,
        *,
        token: str,
        repo_full_name: str,
        base_url: str = "https://api.github.com",
        merge_method: str = "squash",
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if "/" not in repo_full_name:
            raise ReviewError(
                f"repository must be owner/name, got {repo_full_name!r}", retryable=False
            )
        self.owner, self.repo = repo_full_name.split("/", 1)
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._merge_method = merge_method
        self._timeout = timeout
        self._transport = transport

    @property
    def _repo_url(self) -> str:
        return f"{self._base_url}/repos/{self.owner}/{self.repo}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, object] | None = None,
        json: dict[str, object] | None = None,
    ) -> httpx.Response:
        try:
            with httpx.Client(
                timeout=self._timeout,
                headers=_github_headers(self._token),
                transport=self._transport,
            ) as client:
                return client.request(method, f"{self._repo_url}{path}", params=params, json=json)
        except httpx.HTTPError as exc:
            raise ReviewError(f"{method} {path} failed: {exc}") from exc

    def _expect(self, response: httpx.Response, what: str) -> object:
        if response.status_code >= 400:
            raise ReviewError(
                f"{what} failed: HTTP {response.status_code} {response.text[:300]}",
                retryable=response.status_code >= 500,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ReviewError(f"{what} returned a non-JSON body", retryable=False) from exc

    def _paged(self, path: str, what: str) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while page <= 10:
            payload = self._expect(
                self._request("GET", path, params={"per_page": 100, "page": page}), what
            )
            if not isinstance(payload, list):
                raise ReviewError(f"{what} payload is not a list", retryable=False)
            chunk = [item for item in payload if isinstance(item, dict)]
            items.extend(chunk)
            if len(chunk) < 100:
                break
            page += 1
        return items

    def open_change_request(
        self, *, head: str, base: str, title: str, body: str
    ) -> ChangeRequestRef:
        response = self._request(
            "POST",
            "/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        if response.status_code == 422:
            existing = self.find_open_change_request(head=head, base=base)
            if existing is not None:
                logger.info("Reusing open change request #%d for %s", existing.number, head)
                return existing
        payload = self._expect(response, "create pull request")
        if not isinstance(payload, dict):
            raise ReviewError("pull request payload is not an object", retryable=False)
        return _ref_from_payload(payload, head=head, base=base)

    def find_open_change_request(self, *, head: str, base: str) -> ChangeRequestRef | None:
        payload = self._expect(
            self._request(
                "GET",
                "/pulls",
                params={"state": "open", "head": f"{self.owner}:{head}", "base": base},
            ),
            "list pull requests",
        )
        if isinstance(payload, list):
            for item in payload:
                if isinstance(item, dict):
                    return _ref_from_payload(item, head=head, base=base)
        return None

    def changed_file_count(self, ref: ChangeRequestRef) -> int:
        payload = self._expect(self._request("GET", f"/pulls/{ref.number}"), "get pull request")
        if isinstance(payload, dict) and isinstance(payload.get("changed_files"), int):
            return int(payload["changed_files"])
        return len(self._paged(f"/pulls/{ref.number}/files", "list pull request files"))

    def list_reviews(self, ref: ChangeRequestRef) -> list[Review]:
        reviews: list[Review] = []
        for item in self._paged(f"/pulls/{ref.number}/reviews", "list reviews"):
            review_id = item.get("id")
            if not isinstance(review_id, int):
                continue
            reviews.append(
                Review(
                    id=review_id,
                    login=_login(item),
                    state=str(item.get("state", "")),
                    body=str(item.get("body") or ""),
                    submitted_at=str(item.get("submitted_at") or ""),
                )
            )
        return reviews

    def list_review_comments(
        self, ref: ChangeRequestRef, review: Review | None = None
    ) -> list[ReviewComment]:
        if review is not None:
            path = f"/pulls/{ref.number}/reviews/{review.id}/comments"
        else:
            path = f"/pulls/{ref.number}/comments"
        comments: list[ReviewComment] = []
        for item in self._paged(path, "list review comments"):
            comment_id = item.get("id")
            if not isinstance(comment_id, int):
                continue
            line = item.get("line")
            review_id = item.get("pull_request_review_id")
            comments.append(
                ReviewComment(
                    id=comment_id,
                    login=_login(item),
                    body=str(item.get("body") or ""),
                    path=str(item.get("path") or ""),
                    line=line if isinstance(line, int) else None,
                    review_id=review_id if isinstance(review_id, int) else None,
                )
            )
        return comments

    def merge(self, ref: ChangeRequestRef) -> MergeResult:
        response = self._request(
            "PUT",
            f"/pulls/{ref.number}/merge",
            json={"merge_method": self._merge_method},
        )
        if response.status_code in {405, 409}:
            message = ""
            try:
                body = response.json() if response.content else {}
            except (json.JSONDecodeError, UnicodeDecodeError):
                body = {"message": response.text[:300]}
            if isinstance(body, dict):
                message = str(body.get("message", ""))
            raise MergeConflict(
                f"pull request #{ref.number} cannot be merged: {message or response.status_code}"
            )
        payload = self._expect(response, "merge pull request")
        sha = str(payload.get("sha", "")) if isinstance(payload, dict) else ""
        logger.info("Merged pull request #%d (%s)", ref.number, sha)
        return MergeResult(merged=True, sha=sha, message=f"merged #{ref.number}")

    def delete_branch(self, branch: str) -> bool:
        response = self._request("DELETE", f"/git/refs/heads/{branch}")
        if response.status_code in {204, 200}:
            return True
        logger.warning("Remote branch %s not deleted: HTTP %d", branch, response.status_code)
        return False


def _ref_from_payload(payload: dict[str, object], *, head: str, base: str) -> ChangeRequestRef:
    number = payload.get("number")
    if not isinstance(number, int):
        raise ReviewError("pull request payload has no number", retryable=False)
    return ChangeRequestRef(
        number=number,
        url=str(payload.get("html_url", "")),
        head=head,
        base=base,
    )
