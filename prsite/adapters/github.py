"""GitHub API adapter."""

from typing import Any, Dict

import requests

from prsite.adapters.base import GitPlatformAdapter, GitPlatformError
from prsite.models import PRInstanceData


def _pr_from_api(repo: str, data: Dict[str, Any]) -> PRInstanceData:
    head = data.get("head") or {}
    head_repo = head.get("repo") or {}
    user = data.get("user") or {}
    account, _, name = repo.partition("/")
    return PRInstanceData(
        pr_id=data["number"],
        branch=head.get("ref", ""),
        source_repo_full_name=head_repo.get("full_name") or repo,
        pr_repo_account=account,
        pr_repo_name=name,
        pr_author=user.get("login", ""),
    )


class GitHubAdapter(GitPlatformAdapter):
    """GitHub API implementation."""

    def __init__(self, token: str, api_url: str = "https://api.github.com", timeout: int = 30) -> None:
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers["Authorization"] = f"token {token}"
        self._session.headers["Accept"] = "application/vnd.github.v3+json"

    def _request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
        json: Dict[str, Any] | None = None,
    ) -> requests.Response:
        url = f"{self._api_url}{path}" if path.startswith("/") else f"{self._api_url}/{path}"
        try:
            resp = self._session.request(method, url, params=params, json=json, timeout=self._timeout)
        except requests.RequestException as e:
            raise GitPlatformError(f"{method} {path}: {e}") from e
        if resp.status_code >= 400:
            msg = resp.text or resp.reason or str(resp.status_code)
            try:
                msg = resp.json().get("message", msg)
            except Exception:
                pass
            raise GitPlatformError(f"{resp.status_code}: {msg}")
        return resp

    def get_authenticated_login(self) -> str:
        data = self._request("GET", "/user").json()
        login = data.get("login")
        if not login:
            raise GitPlatformError("GET /user returned no login")
        return login

    def create_comment(self, repo: str, issue_number: int, body: str) -> int:
        resp = self._request("POST", f"/repos/{repo}/issues/{issue_number}/comments", json={"body": body})
        return resp.json().get("id", 0)

    def get_pr(self, repo: str, pr_number: int) -> PRInstanceData:
        resp = self._request("GET", f"/repos/{repo}/pulls/{pr_number}")
        return _pr_from_api(repo, resp.json())

    def download_archive(self, repo: str, ref: str) -> bytes:
        # requests follows the redirect to codeload and drops the auth header cross-host
        resp = self._request("GET", f"/repos/{repo}/zipball/{ref}")
        return resp.content
