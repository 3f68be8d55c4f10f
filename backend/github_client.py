# github_client.py — Async GitHub REST API client
"""
Thin wrapper over httpx for the repository endpoints Collabute needs.
All HTTP and transport failures surface as ExternalServiceError so job
processors can let the queue retry them.
"""
import os
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from exceptions import ExternalServiceError

logger = logging.getLogger("collabute.github")

GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")


def parse_github_time(value: Optional[str]) -> Optional[datetime]:
    """GitHub timestamps are ISO 8601 with a trailing Z"""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GitHubClient:
    """GitHub API client for authenticated requests"""

    def __init__(
        self,
        access_token: str,
        base_url: str = GITHUB_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.base_url = base_url
        self._transport = transport
        self.session: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self.session = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"token {self.access_token}",
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "Collabute/1.0",
            },
            timeout=30.0,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self.session.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"GitHub API {path} returned {e.response.status_code}")
            raise ExternalServiceError("github", f"{path} returned {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"GitHub API {path} failed: {e}")
            raise ExternalServiceError("github", str(e) or type(e).__name__)
        return response.json()

    async def get_repository(self, full_name: str) -> Dict[str, Any]:
        return await self._get(f"/repos/{full_name}")

    async def get_repository_issues(self, full_name: str, state: str = "open") -> List[Dict[str, Any]]:
        return await self._get(f"/repos/{full_name}/issues", {"state": state, "per_page": 100})

    async def get_repository_commits(self, full_name: str) -> List[Dict[str, Any]]:
        return await self._get(f"/repos/{full_name}/commits", {"per_page": 100})

    async def get_repository_branches(self, full_name: str) -> List[Dict[str, Any]]:
        return await self._get(f"/repos/{full_name}/branches", {"per_page": 100})

    async def sync_repository_data(self, full_name: str) -> Dict[str, Any]:
        """Fetch metadata, issues, commits and branches concurrently"""
        repository, issues, commits, branches = await asyncio.gather(
            self.get_repository(full_name),
            self.get_repository_issues(full_name, "all"),
            self.get_repository_commits(full_name),
            self.get_repository_branches(full_name),
        )
        return {
            "repository": repository,
            "issues": issues,
            "commits": commits,
            "branches": branches,
        }
