from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from src.engine.errors import AuthError, HostingServiceError
from src.engine.models import ScopeType


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredRunner:
    """A runner as the hosting service lists it."""

    runner_id: int
    name: str
    status: str  # online|offline
    busy: bool
    labels: tuple[str, ...]


@dataclass(frozen=True)
class RunnerDownload:
    os: str
    architecture: str
    download_url: str
    filename: str
    sha256: str | None


@dataclass(frozen=True)
class ShortLivedToken:
    token: str
    expires_at: str | None


class GitHubClient:
    """The narrow slice of the GitHub Actions runners API the engine needs.

    Every call is bounded by `timeout_s`. 401/403 map to AuthError, anything
    else that goes wrong on the wire maps to HostingServiceError, which
    reconciliation passes treat as transient.
    """

    def __init__(
        self,
        *,
        token: str,
        scope_type: ScopeType,
        target: str,
        api_url: str = "https://api.github.com",
        web_url: str = "https://github.com",
        timeout_s: float = 30.0,
    ) -> None:
        self._token = token
        self.scope_type = ScopeType(scope_type)
        self.target = target.strip().strip("/")
        self._api_url = api_url.rstrip("/")
        self._web_url = web_url.rstrip("/")
        self._timeout_s = float(timeout_s)

    @property
    def _runners_base(self) -> str:
        if self.scope_type == ScopeType.REPO:
            owner, repo = self.target.split("/", 1)
            return f"/repos/{urllib.parse.quote(owner)}/{urllib.parse.quote(repo)}/actions/runners"
        return f"/orgs/{urllib.parse.quote(self.target)}/actions/runners"

    def registration_url(self) -> str:
        return f"{self._web_url}/{self.target}"

    def _request(self, method: str, path: str, *, query: dict[str, Any] | None = None) -> Any:
        url = f"{self._api_url}{path}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        req = urllib.request.Request(
            url,
            method=method,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self._token}",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "action-packer",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            body = ""
            try:
                body = e.read().decode("utf-8", errors="replace")
            except OSError:
                body = ""
            if e.code in (401, 403):
                raise AuthError(f"HTTP {e.code} for {method} {path}. {body[:200]}".strip()) from e
            if e.code == 404 and method == "DELETE":
                return None
            raise HostingServiceError(
                f"HTTP {e.code} for {method} {path}. {body[:200]}".strip(), status_code=e.code
            ) from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise HostingServiceError(f"Network error for {method} {path}: {e}") from e

        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise HostingServiceError(f"Invalid JSON from {method} {path}: {e}") from e

    def _token_call(self, kind: str) -> ShortLivedToken:
        obj = self._request("POST", f"{self._runners_base}/{kind}")
        if not isinstance(obj, dict) or not obj.get("token"):
            raise HostingServiceError(f"{kind} response carried no token")
        return ShortLivedToken(token=str(obj["token"]), expires_at=obj.get("expires_at"))

    def create_registration_token(self) -> ShortLivedToken:
        return self._token_call("registration-token")

    def create_remove_token(self) -> ShortLivedToken:
        return self._token_call("remove-token")

    @staticmethod
    def _parse_runner(obj: dict[str, Any]) -> RegisteredRunner:
        return RegisteredRunner(
            runner_id=int(obj["id"]),
            name=str(obj.get("name") or ""),
            status=str(obj.get("status") or "offline"),
            busy=bool(obj.get("busy", False)),
            labels=tuple(str(lbl.get("name")) for lbl in obj.get("labels") or [] if isinstance(lbl, dict)),
        )

    def list_runners(self) -> list[RegisteredRunner]:
        out: list[RegisteredRunner] = []
        page = 1
        while True:
            obj = self._request("GET", self._runners_base, query={"per_page": 100, "page": page})
            items = obj.get("runners") if isinstance(obj, dict) else None
            if not items:
                break
            out.extend(self._parse_runner(it) for it in items if isinstance(it, dict))
            total = int(obj.get("total_count") or 0)
            if len(out) >= total or len(items) < 100:
                break
            page += 1
        return out

    def get_runner(self, runner_id: int) -> RegisteredRunner | None:
        try:
            obj = self._request("GET", f"{self._runners_base}/{int(runner_id)}")
        except HostingServiceError as e:
            if e.status_code == 404:
                return None
            raise
        return self._parse_runner(obj) if isinstance(obj, dict) else None

    def find_runner_by_name(self, name: str) -> RegisteredRunner | None:
        for r in self.list_runners():
            if r.name == name:
                return r
        return None

    def delete_runner(self, runner_id: int) -> None:
        self._request("DELETE", f"{self._runners_base}/{int(runner_id)}")
        logger.info("Deregistered runner %s from %s", runner_id, self.target)

    def get_runner_downloads(self) -> list[RunnerDownload]:
        obj = self._request("GET", f"{self._runners_base}/downloads")
        if not isinstance(obj, list):
            return []
        return [
            RunnerDownload(
                os=str(it.get("os") or ""),
                architecture=str(it.get("architecture") or ""),
                download_url=str(it.get("download_url") or ""),
                filename=str(it.get("filename") or ""),
                sha256=it.get("sha256_checksum") or None,
            )
            for it in obj
            if isinstance(it, dict)
        ]
