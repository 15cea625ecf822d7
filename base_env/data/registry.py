"""Upstream package registry client (PyPI JSON API)."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

logger = logging.getLogger(__name__)

PYPI_URL = "https://pypi.org/pypi"


class PyPIRegistry:
    """Versions and declared dependencies of published packages.

    Responses are cached in memory until ``clear_cache()``; the resolver
    clears it at the start of each pass. A timed-out or failed request is
    cached as "no data" for the rest of the pass.
    """

    def __init__(
        self,
        timeout: float = 5.0,
        base_url: str = PYPI_URL,
        client: Optional[httpx.Client] = None,
    ):
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._cache: dict[str, Optional[dict[str, Any]]] = {}

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, follow_redirects=True)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def clear_cache(self) -> None:
        self._cache.clear()

    def _fetch(self, path: str) -> Optional[dict[str, Any]]:
        if path in self._cache:
            return self._cache[path]
        data: Optional[dict[str, Any]] = None
        try:
            response = self._get_client().get(f"{self.base_url}/{path}/json")
            if response.status_code == 404:
                logger.debug("Registry has no entry for %s", path)
            else:
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.warning("Registry request timed out: %s", path)
        except httpx.HTTPError as e:
            logger.warning("Registry request failed for %s: %s", path, e)
        except ValueError as e:
            logger.warning("Registry returned invalid JSON for %s: %s", path, e)
        self._cache[path] = data
        return data

    def stable_versions(self, package: str) -> list[str]:
        """All non-yanked final releases, newest first."""
        data = self._fetch(canonicalize_name(package))
        if not data:
            return []
        versions = []
        for text, files in data.get("releases", {}).items():
            try:
                parsed = Version(text)
            except InvalidVersion:
                continue
            if parsed.is_prerelease or parsed.is_devrelease:
                continue
            if files and all(f.get("yanked") for f in files):
                continue
            versions.append(parsed)
        return [str(v) for v in sorted(versions, reverse=True)]

    def dependencies(self, package: str, version: str) -> dict[str, str]:
        """Declared runtime dependencies: {canonical_name: specifier}."""
        data = self._fetch(f"{canonicalize_name(package)}/{version}")
        if not data:
            return {}
        deps: dict[str, str] = {}
        for text in data.get("info", {}).get("requires_dist") or []:
            try:
                req = Requirement(text)
            except InvalidRequirement:
                continue
            if req.marker is not None and "extra" in str(req.marker):
                continue
            deps[canonicalize_name(req.name)] = str(req.specifier)
        return deps
