"""
plugin_apis.py
==============
Adapters for the Minecraft plugin marketplaces a server owner can install from.

Supported platforms:
  - **CurseForge**  – https://api.curseforge.com/v1
  - **Hangar**      – https://hangar.papermc.io/api/v1
  - **Modrinth**    – https://api.modrinth.com/v2
  - **Polymart**    – https://api.polymart.org/v1
  - **SpigotMC**    – https://api.spiget.org/v2 (Spiget mirror)

Each client exposes the same contract:
  - search(query, session, …)                → PaginatedResult (never raises)
  - list_versions(plugin_id, session)        → list of PluginVersion
  - resolve_download_url(plugin_id, version_id, session) → download URL string

Polymart additionally owns the account-linking handshake, backed by a
LinkStore (see link_store.py).
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10
DEFAULT_USER_AGENT = "PluginGateway/1.0"


# ──────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────

class PluginAPIError(Exception):
    """Base class for every failure raised by the plugin adapters."""


class UpstreamTransportError(PluginAPIError):
    """The marketplace could not be reached (DNS, connection, timeout)."""


class UpstreamBadResponse(PluginAPIError):
    """The marketplace answered, but not with something usable."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class NotFoundError(PluginAPIError):
    """A referenced record (link state, version, platform) does not exist."""


class ConfigurationError(PluginAPIError):
    """The gateway is missing configuration required for the request."""


class UserFacingInstallError(PluginAPIError):
    """Installing failed; the message is safe to show to the end user."""

    def __init__(self, message: str, download_url: Optional[str] = None) -> None:
        super().__init__(message)
        self.download_url = download_url


# ──────────────────────────────────────────────
#  Common Data Structures
# ──────────────────────────────────────────────

class PluginProvider(str, Enum):
    """Marketplaces a plugin can be installed from."""
    CURSEFORGE = "curseforge"
    HANGAR = "hangar"
    MODRINTH = "modrinth"
    POLYMART = "polymart"
    SPIGOTMC = "spigotmc"


@dataclass
class PluginSummary:
    """Normalised search hit returned by all adapters."""

    id: str
    name: str
    short_description: str
    url: str
    icon_url: Optional[str] = None
    external_url: Optional[str] = None   # set when the marketplace forbids direct download

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "short_description": self.short_description,
            "url": self.url,
            "icon_url": self.icon_url,
            "external_url": self.external_url,
        }


@dataclass
class PluginVersion:
    """Normalised version entry."""

    id: str
    name: str
    game_versions: Optional[List[str]] = None
    download_url: Optional[str] = None   # None when resolved at install time

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "name": self.name}
        if self.game_versions is not None:
            data["game_versions"] = self.game_versions
        if self.download_url is not None:
            data["download_url"] = self.download_url
        return data


@dataclass
class PaginatedResult:
    """One page of search hits plus the provider-declared (or capped) total."""

    items: List[PluginSummary] = field(default_factory=list)
    total: int = 0
    page_size: int = 1
    current_page: int = 1

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)

    def to_envelope(self) -> Dict[str, Any]:
        """Shape the page the way the panel's list endpoints return it."""
        return {
            "object": "list",
            "data": [item.to_dict() for item in self.items],
            "meta": {
                "pagination": {
                    "total": self.total,
                    "count": len(self.items),
                    "per_page": self.page_size,
                    "current_page": self.current_page,
                    "total_pages": self.total_pages,
                    "links": [],
                },
            },
        }


# ──────────────────────────────────────────────
#  Expiring Value (shared loader-tag cache)
# ──────────────────────────────────────────────

class ExpiringValue:
    """
    Holds a single value with an expiry time, reloaded lazily once stale.

    Args:
        ttl_seconds: Lifetime of a loaded value
        clock:       Time source (seconds), injectable for tests
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: Any = None
        self._expires_at: float = 0.0

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    async def get_or_load(self, loader: Callable[[], Awaitable[Any]]) -> Any:
        if self.expired:
            self._value = await loader()
            self._expires_at = self._clock() + self._ttl
        return self._value

    def clear(self) -> None:
        self._value = None
        self._expires_at = 0.0


# ──────────────────────────────────────────────
#  Base Client
# ──────────────────────────────────────────────

class ProviderClient:
    """
    Shared plumbing for every marketplace adapter.

    Subclasses set BASE / PROVIDER and implement ``_search``,
    ``list_versions`` and ``resolve_download_url``.  ``search`` wraps
    ``_search`` so an unreachable or misbehaving marketplace yields an empty
    page instead of an error.
    """

    BASE = ""
    PROVIDER: PluginProvider
    MAX_PAGE_SIZE: Optional[int] = None

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"User-Agent": self.user_agent, "Accept": "application/json"}

    async def _send(
        self,
        session: aiohttp.ClientSession,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Any, Dict[str, str]]:
        """Perform one request and return ``(decoded_json, lower-cased headers)``."""
        url = f"{self.BASE}/{path}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            async with session.request(
                method, url, params=params, json=payload, headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    logger.error(
                        "Received bad response from %s: %s %s -> HTTP %d: %s",
                        self.PROVIDER.value, method, url, resp.status, body,
                    )
                    raise UpstreamBadResponse(
                        f"{self.PROVIDER.value} returned HTTP {resp.status}",
                        status=resp.status, body=body,
                    )
                headers = {k.lower(): v for k, v in resp.headers.items()}
                try:
                    data = await resp.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError) as exc:
                    body = await resp.text()
                    logger.error(
                        "Undecodable response from %s: %s %s: %s",
                        self.PROVIDER.value, method, url, body,
                    )
                    raise UpstreamBadResponse(
                        f"{self.PROVIDER.value} returned a malformed body",
                        status=resp.status, body=body,
                    ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("%s request failed: %s %s: %r", self.PROVIDER.value, method, url, exc)
            raise UpstreamTransportError(f"Could not reach {self.PROVIDER.value}") from exc
        return data, headers

    def _expect_object(self, data: Any, what: str) -> Dict[str, Any]:
        """Reject bodies that are not a JSON object where one is required."""
        if not isinstance(data, dict):
            raise UpstreamBadResponse(
                f"{self.PROVIDER.value} returned an unexpected {what}",
                body=json.dumps(data)[:500],
            )
        return data

    async def _request(
        self,
        session: aiohttp.ClientSession,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        data, _ = await self._send(session, method, path, **kwargs)
        return data

    # ── Adapter contract ──

    async def search(
        self,
        query: str,
        session: aiohttp.ClientSession,
        *,
        page: int = 1,
        page_size: int = 20,
        mc_version: str = "",
        user_id: Optional[str] = None,
    ) -> PaginatedResult:
        """Search the marketplace; any upstream failure yields an empty page."""
        try:
            return await self._search(
                query, session, page=page, page_size=page_size,
                mc_version=mc_version, user_id=user_id,
            )
        except (PluginAPIError, AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "%s search failed (query=%r page=%d): %s",
                self.PROVIDER.value, query, page, exc,
            )
            return PaginatedResult(page_size=page_size, current_page=page)

    async def _search(
        self,
        query: str,
        session: aiohttp.ClientSession,
        *,
        page: int,
        page_size: int,
        mc_version: str,
        user_id: Optional[str],
    ) -> PaginatedResult:
        raise NotImplementedError

    async def list_versions(
        self,
        plugin_id: str,
        session: aiohttp.ClientSession,
    ) -> List[PluginVersion]:
        raise NotImplementedError

    async def resolve_download_url(
        self,
        plugin_id: str,
        version_id: str,
        session: aiohttp.ClientSession,
        *,
        user_id: Optional[str] = None,
    ) -> str:
        raise NotImplementedError


# ──────────────────────────────────────────────
#  CurseForge Client
# ──────────────────────────────────────────────

class CurseForgeAPI(ProviderClient):
    """
    Client for the CurseForge API v1.

    Requires an API key (``providers.curseforge_api_key`` in config.json or
    the CURSEFORGE_API_KEY environment variable).
    Get one at: https://console.curseforge.com/
    """

    BASE = "https://api.curseforge.com/v1"
    PROVIDER = PluginProvider.CURSEFORGE
    MAX_PAGE_SIZE = 50

    GAME_ID_MINECRAFT = 432
    CLASS_ID_BUKKIT_PLUGINS = 5
    SORT_FIELD_POPULARITY = 2
    # index + pageSize must stay <= 10000 upstream
    MAX_RESULT_WINDOW = 10000

    def __init__(self, api_key: str = "", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        h = super()._headers()
        if self.api_key:
            h["x-api-key"] = self.api_key
        return h

    def _require_key(self) -> None:
        if not self.api_key:
            raise ConfigurationError("CurseForge API key is not configured")

    @classmethod
    def max_total(cls, page_size: int) -> int:
        """Largest total that keeps every reachable page inside the result window."""
        max_page = (cls.MAX_RESULT_WINDOW - page_size) // page_size + 1
        return max_page * page_size

    async def _search(self, query, session, *, page, page_size, mc_version, user_id):
        if not self.api_key:
            logger.warning("CurseForge API key not set, skipping search")
            return PaginatedResult(page_size=page_size, current_page=page)

        offset = (page - 1) * page_size
        capped_total = self.max_total(page_size)
        if offset > self.MAX_RESULT_WINDOW - page_size:
            logger.debug("CurseForge page %d is past the result window", page)
            return PaginatedResult(
                total=capped_total, page_size=page_size, current_page=page,
            )

        data = await self._request(session, "GET", "mods/search", params={
            "index": offset,
            "pageSize": page_size,
            "gameId": self.GAME_ID_MINECRAFT,
            "classId": self.CLASS_ID_BUKKIT_PLUGINS,
            "gameVersion": mc_version or None,
            "searchFilter": query or None,
            "sortField": self.SORT_FIELD_POPULARITY,
            "sortOrder": "desc",
        })

        items = []
        for mod in data["data"]:
            logo = mod.get("logo") or {}
            items.append(PluginSummary(
                id=str(mod["id"]),
                name=mod["name"],
                short_description=mod.get("summary", ""),
                url=(mod.get("links") or {}).get("websiteUrl", ""),
                icon_url=logo.get("thumbnailUrl") or None,
            ))

        total = min(capped_total, int(data["pagination"]["totalCount"]))
        return PaginatedResult(
            items=items, total=total, page_size=page_size, current_page=page,
        )

    async def list_versions(self, plugin_id, session):
        """Get the files published for a CurseForge project."""
        self._require_key()
        data = await self._request(session, "GET", f"mods/{plugin_id}/files")

        return [
            PluginVersion(
                id=str(f["id"]),
                name=f.get("displayName") or f.get("fileName", ""),
                game_versions=f.get("gameVersions", []),
                download_url=f.get("downloadUrl"),
            )
            for f in data["data"]
        ]

    async def resolve_download_url(self, plugin_id, version_id, session, *, user_id=None):
        """Resolve the CDN URL of one CurseForge file."""
        self._require_key()
        data = await self._request(session, "GET", f"mods/{plugin_id}/files/{version_id}")

        data = self._expect_object(data, "file response")
        file_info = data.get("data") or {}
        url = file_info.get("downloadUrl") if isinstance(file_info, dict) else None
        if not url:
            # Authors can opt out of third-party distribution
            raise UpstreamBadResponse(
                f"CurseForge file {version_id} has no download URL"
            )
        return url.replace("edge", "mediafiles")


# ──────────────────────────────────────────────
#  Hangar Client (PaperMC)
# ──────────────────────────────────────────────

class HangarAPI(ProviderClient):
    """Client for the Hangar (PaperMC) API v1."""

    BASE = "https://hangar.papermc.io/api/v1"
    PROVIDER = PluginProvider.HANGAR
    MAX_PAGE_SIZE = 25

    @staticmethod
    def make_version_id(platform: str, version_name: str) -> str:
        """One Hangar version has a download per platform, so ids are composite."""
        return f"{platform}-{version_name}"

    @staticmethod
    def split_version_id(version_id: str) -> Tuple[str, str]:
        platform, sep, version_name = version_id.partition("-")
        if not sep or not platform or not version_name:
            raise NotFoundError(f"Malformed Hangar version id: {version_id!r}")
        return platform, version_name

    async def _search(self, query, session, *, page, page_size, mc_version, user_id):
        data = await self._request(session, "GET", "projects", params={
            "limit": page_size,
            "offset": (page - 1) * page_size,
            "query": query or None,
            "version": mc_version or None,
        })

        items = []
        for project in data["result"]:
            namespace = project.get("namespace") or {}
            owner = namespace.get("owner", "")
            slug = namespace.get("slug") or project["name"]
            items.append(PluginSummary(
                id=slug,
                name=project["name"],
                short_description=project.get("description", ""),
                url=f"https://hangar.papermc.io/{owner}/{slug}",
                icon_url=project.get("avatarUrl") or None,
            ))

        return PaginatedResult(
            items=items, total=int(data["pagination"]["count"]),
            page_size=page_size, current_page=page,
        )

    async def list_versions(self, plugin_id, session):
        """List the latest versions, one entry per (version, platform)."""
        data = await self._request(
            session, "GET", f"projects/{plugin_id}/versions",
            params={"limit": 25, "offset": 0},
        )

        versions: List[PluginVersion] = []
        for v in data["result"]:
            platform_versions = v.get("platformDependencies") or {}
            for platform, download in (v.get("downloads") or {}).items():
                versions.append(PluginVersion(
                    id=self.make_version_id(platform, v["name"]),
                    name=f"{v['name']} ({platform})",
                    game_versions=platform_versions.get(platform),
                    download_url=download.get("downloadUrl") or download.get("externalUrl"),
                ))
        return versions

    async def resolve_download_url(self, plugin_id, version_id, session, *, user_id=None):
        """Resolve the download for the platform encoded in the version id."""
        platform, version_name = self.split_version_id(version_id)
        data = await self._request(
            session, "GET", f"projects/{plugin_id}/versions/{quote(version_name, safe='')}",
        )

        data = self._expect_object(data, "version response")
        download = (data.get("downloads") or {}).get(platform)
        if download is None:
            raise NotFoundError(
                f"Hangar version {version_name} has no {platform} download"
            )
        url = download.get("downloadUrl") or download.get("externalUrl")
        if not url:
            raise UpstreamBadResponse(
                f"Hangar returned no download URL for {version_id}"
            )
        return url


# ──────────────────────────────────────────────
#  Modrinth Client
# ──────────────────────────────────────────────

class ModrinthAPI(ProviderClient):
    """Client for the Modrinth API v2."""

    BASE = "https://api.modrinth.com/v2"
    PROVIDER = PluginProvider.MODRINTH
    LOADER_CACHE_TTL = 24 * 3600

    def __init__(self, loader_cache: Optional[ExpiringValue] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.loader_cache = loader_cache or ExpiringValue(self.LOADER_CACHE_TTL)

    @staticmethod
    def build_facets(mc_version: str = "") -> str:
        """Build the Modrinth facet filter string."""
        facets = [["project_type:plugin"], ["server_side!=unsupported"]]
        if mc_version:
            facets.append([f"versions:{mc_version}"])
        return json.dumps(facets)

    async def _search(self, query, session, *, page, page_size, mc_version, user_id):
        data = await self._request(session, "GET", "search", params={
            "offset": (page - 1) * page_size,
            "limit": page_size,
            "facets": self.build_facets(mc_version),
            "query": query,
            "index": "relevance",
        })

        items = [
            PluginSummary(
                id=hit["project_id"],
                name=hit["title"],
                short_description=hit.get("description", ""),
                url=f"https://modrinth.com/plugin/{hit.get('slug', hit['project_id'])}",
                icon_url=hit.get("icon_url") or None,
            )
            for hit in data["hits"]
        ]
        return PaginatedResult(
            items=items, total=int(data["total_hits"]),
            page_size=page_size, current_page=page,
        )

    async def get_plugin_loaders(self, session: aiohttp.ClientSession) -> List[str]:
        """Loader tags that can run plugins; refreshed once a day."""

        async def _load() -> List[str]:
            tags = await self._request(session, "GET", "tag/loader")
            loaders = [
                tag["name"] for tag in tags
                if "plugin" in tag.get("supported_project_types", [])
            ]
            logger.debug("Loaded %d Modrinth plugin loaders", len(loaders))
            return loaders

        return await self.loader_cache.get_or_load(_load)

    @staticmethod
    def _primary_file(files: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not files:
            return None
        return next((f for f in files if f.get("primary")), files[0])

    async def list_versions(self, plugin_id, session):
        """Versions of a project that run on a plugin loader."""
        loaders = await self.get_plugin_loaders(session)
        data = await self._request(
            session, "GET", f"project/{plugin_id}/version",
            params={"loaders": json.dumps(loaders)},
        )

        versions = []
        for v in data:
            primary = self._primary_file(v.get("files", []))
            versions.append(PluginVersion(
                id=v["id"],
                name=v.get("name") or v.get("version_number", ""),
                game_versions=v.get("game_versions", []),
                download_url=primary.get("url") if primary else None,
            ))
        return versions

    async def resolve_download_url(self, plugin_id, version_id, session, *, user_id=None):
        """Resolve the primary file URL of one Modrinth version."""
        data = await self._request(session, "GET", f"project/{plugin_id}/version/{version_id}")

        data = self._expect_object(data, "version response")
        primary = self._primary_file(data.get("files") or [])
        if not primary or not primary.get("url"):
            raise UpstreamBadResponse(f"Modrinth version {version_id} has no files")
        return primary["url"]


# ──────────────────────────────────────────────
#  Polymart Client
# ──────────────────────────────────────────────

class PolymartAPI(ProviderClient):
    """
    Client for the Polymart API v1.

    Premium resources are only listed, and only downloadable, for users who
    linked their Polymart account; the link token lives in ``link_store``.
    """

    BASE = "https://api.polymart.org/v1"
    PROVIDER = PluginProvider.POLYMART
    MAX_PAGE_SIZE = 50
    STATE_BYTES = 50

    def __init__(self, link_store: Any, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.link_store = link_store

    def _token_for(self, user_id: Optional[str]) -> Optional[str]:
        if user_id is None:
            return None
        return self.link_store.get_token(user_id)

    def _unwrap(self, data: Any) -> Dict[str, Any]:
        return self._expect_object(self._expect_object(data, "body")["response"], "response")

    async def _search(self, query, session, *, page, page_size, mc_version, user_id):
        token = self._token_for(user_id)
        data = await self._request(session, "POST", "search", payload={
            "start": (page - 1) * page_size,
            "limit": page_size,
            "premium": None if token else "0",
            "token": token,
            "query": query,
        })
        response = self._unwrap(data)

        items = []
        for resource in response["result"]:
            items.append(PluginSummary(
                id=str(resource["id"]),
                name=resource["title"],
                short_description=resource.get("subtitle", ""),
                url=resource["url"],
                icon_url=resource.get("thumbnailURL") or None,
                external_url=None if resource.get("canDownload") else resource["url"],
            ))
        return PaginatedResult(
            items=items, total=int(response["total"]),
            page_size=page_size, current_page=page,
        )

    async def list_versions(self, plugin_id, session):
        """Recent updates of a resource; Polymart reports no total for these."""
        data = await self._request(session, "POST", "getResourceUpdates", payload={
            "resource_id": plugin_id,
            "start": 0,
            "limit": 50,
        })

        versions = []
        for update in self._unwrap(data)["updates"]:
            name = update["version"]
            title = update.get("title")
            if title and title != name:
                name = f"{name} - {title}"
            versions.append(PluginVersion(id=str(update["id"]), name=name))
        return versions

    async def resolve_download_url(self, plugin_id, version_id, session, *, user_id=None):
        """Polymart only hands out the latest file, so ``version_id`` is ignored."""
        data = await self._request(session, "POST", "getDownloadURL", payload={
            "resource_id": plugin_id,
            "token": self._token_for(user_id),
        })

        response = self._unwrap(data)
        if not response.get("success"):
            raise UpstreamBadResponse(
                f"Couldn't get download URL for Polymart resource {plugin_id}",
                body=json.dumps(response),
            )
        return response["result"]["url"]

    # ── Account linking ──

    async def begin_link(
        self,
        user_id: str,
        return_url: str,
        session: aiohttp.ClientSession,
    ) -> str:
        """
        Start linking a Polymart account.

        Stores a pending link keyed by a fresh random state and asks Polymart
        for the authorization page the browser must visit.

        Returns:
            Redirect URL on polymart.org
        """
        state = secrets.token_hex(self.STATE_BYTES)
        record = self.link_store.create_pending(user_id, state)

        try:
            data = await self._request(session, "POST", "authorizeUser", payload={
                "service": urlparse(return_url).hostname,
                "return_url": return_url,
                "return_token": False,
                "state": state,
            })
            response = self._unwrap(data)
            if not response.get("success"):
                raise UpstreamBadResponse(
                    "Couldn't request user authorization from Polymart",
                    body=json.dumps(response),
                )
            redirect_url = response["result"]["url"]
        except PluginAPIError:
            self.link_store.delete(record.id)
            raise
        except (AttributeError, KeyError, TypeError) as exc:
            self.link_store.delete(record.id)
            raise UpstreamBadResponse("Polymart authorization response was malformed") from exc

        logger.info("Polymart link started for user %s", user_id)
        return redirect_url

    def handle_callback(self, success: str, token: str, state: str) -> bool:
        """
        Complete (or abandon) a pending link when Polymart redirects back.

        Returns:
            True when the link now carries a token
        Raises:
            NotFoundError: no pending link matches ``state``
        """
        record = self.link_store.find_by_state(state)
        if record is None:
            raise NotFoundError("Unknown or expired Polymart link state")

        if success != "1" or not token:
            self.link_store.delete(record.id)
            logger.info("Polymart link declined for user %s", record.user_id)
            return False

        self.link_store.set_token(record.id, token)
        logger.info("Polymart account linked for user %s", record.user_id)
        return True

    def is_linked(self, user_id: str) -> bool:
        return self.link_store.is_linked(user_id)

    async def disconnect(self, user_id: str, session: aiohttp.ClientSession) -> int:
        """
        Invalidate every token of the user upstream (best effort) and forget them.

        Returns:
            Number of link records removed
        """
        for record in self.link_store.for_user(user_id):
            if not record.token:
                continue
            try:
                await self._request(session, "POST", "invalidateAuthToken", payload={
                    "token": record.token,
                })
            except PluginAPIError as exc:
                logger.warning(
                    "Could not invalidate Polymart token for user %s: %s", user_id, exc,
                )

        removed = self.link_store.delete_for_user(user_id)
        logger.info("Polymart disconnected for user %s (%d links removed)", user_id, removed)
        return removed


# ──────────────────────────────────────────────
#  SpigotMC Client (via Spiget API)
# ──────────────────────────────────────────────

class SpigotAPI(ProviderClient):
    """Client for the Spiget API (SpigotMC resource mirror)."""

    BASE = "https://api.spiget.org/v2"
    PROVIDER = PluginProvider.SPIGOTMC
    SITE = "https://www.spigotmc.org"
    DEFAULT_ICON = "https://static.spigotmc.org/styles/spigot/xenresource/resource_icon.png"
    DEFAULT_CORS_PROXY = "https://corsproxy.io/?"

    def __init__(
        self,
        cors_proxy: str = DEFAULT_CORS_PROXY,
        probe_timeout: float = DEFAULT_TIMEOUT,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.cors_proxy = cors_proxy
        self.probe_timeout = probe_timeout

    def icon_url(self, resource: Dict[str, Any]) -> str:
        """SpigotMC sends no CORS headers, so web icons go through a relay."""
        icon = resource.get("icon") or {}
        if icon.get("url"):
            url = f"https://spigotmc.org/{icon['url']}"
        elif icon.get("data"):
            return f"data:image/png;base64,{icon['data']}"
        else:
            url = self.DEFAULT_ICON
        if not self.cors_proxy:
            return url
        return self.cors_proxy + quote(url, safe="")

    def external_url(self, resource: Dict[str, Any]) -> Optional[str]:
        """Page the user must visit when the file is hosted off-site."""
        file_info = resource.get("file") or {}
        external = file_info.get("externalUrl") or ""
        if not (resource.get("external") and (external.endswith("html") or "hangar" in external)):
            return None
        if resource.get("premium"):
            return None
        return f"{self.SITE}/{file_info.get('url', '')}"

    async def _search(self, query, session, *, page, page_size, mc_version, user_id):
        path = f"search/resources/{quote(query, safe='')}" if query else "resources/free"
        data, headers = await self._send(session, "GET", path, params={
            "size": page_size,
            "page": page,
            "sort": "-downloads",
        })

        items = []
        for resource in data:
            rid = str(resource["id"])
            items.append(PluginSummary(
                id=rid,
                name=resource["name"],
                short_description=resource.get("tag", ""),
                url=f"{self.SITE}/resources/{rid}",
                icon_url=self.icon_url(resource),
                external_url=self.external_url(resource),
            ))

        page_count = headers.get("x-page-count")
        if page_count is not None and page_count.isdigit():
            total = max(int(page_count) * page_size, (page - 1) * page_size + len(items))
        else:
            total = (page - 1) * page_size + len(items)
        return PaginatedResult(
            items=items, total=total, page_size=page_size, current_page=page,
        )

    async def list_versions(self, plugin_id, session):
        """Spiget only lets the latest version be downloaded."""
        data = await self._request(session, "GET", f"resources/{plugin_id}/versions/latest")
        return [PluginVersion(id=str(data["id"]), name=data["name"])]

    async def resolve_download_url(self, plugin_id, version_id, session, *, user_id=None):
        """Resolve the final file URL of the latest version; ``version_id`` is ignored."""
        data = await self._request(session, "GET", f"resources/{plugin_id}")

        data = self._expect_object(data, "resource response")
        url = (data.get("file") or {}).get("externalUrl") or \
            f"{self.BASE}/resources/{plugin_id}/download"
        return await self.follow_redirect(url, session)

    async def follow_redirect(self, url: str, session: aiohttp.ClientSession) -> str:
        """Return the Location a HEAD request is redirected to, or ``url`` itself."""
        try:
            async with session.head(
                url, allow_redirects=False, headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.probe_timeout),
            ) as resp:
                location = resp.headers.get("Location")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("SpigotMC redirect probe failed for %s: %r", url, exc)
            return url
        return location or url
