"""GitHub REST client for pull-request operations."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


@dataclass
class PullRequest:
    """A created pull request."""

    url: str
    number: int

    def to_dict(self) -> dict:
        return {"url": self.url, "number": self.number}


class GitHubError(Exception):
    """GitHub API call failed; carries the provider's message."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class GitHubClient:
    """Thin aiohttp wrapper over the endpoints the fix workflow needs."""

    def __init__(self, api_url: str = "https://api.github.com", timeout: int = 30):
        self.api_url = api_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github.v3+json",
        }

    async def _request(self, method: str, path: str, token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.api_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, json=payload, headers=self._headers(token)) as resp:
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = {}
                    if not isinstance(data, dict):
                        data = {}

                    if resp.status >= 400:
                        message = data.get("message") or resp.reason or "GitHub request failed"
                        errors = data.get("errors")
                        if errors:
                            details = "; ".join(
                                e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors
                            )
                            message = f"{message}: {details}"
                        logger.error("GitHub %s %s failed (%s): %s", method, path, resp.status, message)
                        raise GitHubError(message, status=resp.status)

                    return data
        except aiohttp.ClientError as e:
            logger.error("GitHub %s %s request error: %s", method, path, e)
            raise GitHubError(f"GitHub request failed: {e}") from e

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        head: str,
        base: str,
        title: str,
        body: str,
        token: str,
    ) -> PullRequest:
        """Open a pull request from head into base."""
        data = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            token,
            {"title": title, "body": body, "head": head, "base": base},
        )
        pr = PullRequest(url=data.get("html_url", ""), number=int(data.get("number", 0)))
        logger.info("Created PR #%d for %s/%s: %s", pr.number, owner, repo, pr.url)
        return pr

    async def merge_pull_request(self, owner: str, repo: str, number: int, token: str) -> bool:
        """Merge a pull request; returns GitHub's merged flag."""
        data = await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/pulls/{number}/merge",
            token,
            {"merge_method": "squash"},
        )
        return bool(data.get("merged"))
