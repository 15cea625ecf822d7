"""Community knowledge sources — conda-forge and GitHub, with graceful offline.

Both sources are advisory. Any network failure is logged and reported as
"no data" so the resolver can move on to its next strategy.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx
from packaging.version import InvalidVersion, Version

logger = logging.getLogger(__name__)

CONDA_FORGE_URL = "https://api.anaconda.org/package/conda-forge"
GITHUB_SEARCH_URL = "https://api.github.com/search/code"

RECENT_BUILDS = 10


def _resolve_token(token: Optional[str]) -> Optional[str]:
    """Resolve the GitHub token: explicit → GITHUB_TOKEN → GH_TOKEN."""
    return token or os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN")


class _JsonSource:
    def __init__(self, timeout: float, client: Optional[httpx.Client]):
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, follow_redirects=True)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _get_json(
        self,
        url: str,
        params: Optional[dict[str, str]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Optional[Any]:
        try:
            response = self._get_client().get(url, params=params, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException:
            logger.warning("Request timed out: %s", url)
        except httpx.HTTPError as e:
            logger.warning("Request failed for %s: %s", url, e)
        except ValueError as e:
            logger.warning("Invalid JSON from %s: %s", url, e)
        return None


class CondaForgeIndex(_JsonSource):
    """Secondary index: versions conda-forge has recently built."""

    def __init__(self, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        super().__init__(timeout, client)

    def recent_versions(self, package: str) -> list[str]:
        """Versions from the latest builds that carry dependency metadata, newest first."""
        data = self._get_json(f"{CONDA_FORGE_URL}/{package}")
        if not data:
            return []
        found: set[Version] = set()
        for build in data.get("files", [])[:RECENT_BUILDS]:
            if "dependencies" not in build or "version" not in build:
                continue
            try:
                found.add(Version(build["version"]))
            except InvalidVersion:
                continue
        return [str(v) for v in sorted(found, reverse=True)]


class GitHubPatternSource(_JsonSource):
    """Public requirements manifests that reference a package."""

    def __init__(
        self,
        timeout: float = 5.0,
        token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout, client)
        self.token = _resolve_token(token)

    @property
    def is_configured(self) -> bool:
        """Code search requires an authenticated request."""
        return bool(self.token)

    def manifest_count(self, package: str) -> int:
        """Number of requirements.txt files mentioning ``package``; 0 if unknown."""
        if not self.is_configured:
            logger.debug("GitHub token not set; skipping manifest search")
            return 0
        data = self._get_json(
            GITHUB_SEARCH_URL,
            params={"q": f"{package} in:file filename:requirements.txt", "per_page": "5"},
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self.token}",
            },
        )
        if not data:
            return 0
        return int(data.get("total_count") or len(data.get("items", [])))
