"""
plugin_manager.py
=================
Plugin gateway for hosted Minecraft servers.

Orchestrates:
  - Dispatching requests to the adapter of the selected marketplace
  - Clamping page sizes to what each marketplace accepts
  - Installing a resolved plugin file into a server's /plugins directory
    through a file-transfer collaborator
  - The Polymart account-linking operations used by the web UI
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote, urlparse

import aiohttp

from plugin_apis import (
    ConfigurationError,
    PaginatedResult,
    PluginAPIError,
    PluginProvider,
    PluginVersion,
    PolymartAPI,
    ProviderClient,
    UpstreamBadResponse,
    UpstreamTransportError,
    UserFacingInstallError,
)

logger = logging.getLogger(__name__)

PLUGINS_DIRECTORY = "/plugins"
MAX_REQUEST_PAGE_SIZE = 50

_SERVER_REF = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_server_ref(server: str) -> str:
    if not _SERVER_REF.match(server or ""):
        raise ConfigurationError(f"Invalid server reference: {server!r}")
    return server


# ──────────────────────────────────────────────
#  File Transfer
# ──────────────────────────────────────────────

class FileTransfer:
    """Collaborator that fetches a remote file onto a hosted server."""

    async def pull(
        self,
        server: str,
        url: str,
        directory: str,
        session: aiohttp.ClientSession,
        *,
        use_header: bool = True,
        foreground: bool = True,
    ) -> Optional[Path]:
        raise NotImplementedError


class LocalFileTransfer(FileTransfer):
    """
    Pulls files into server directories on the local disk.

    Args:
        servers_dir: Directory holding one sub-directory per hosted server
        timeout:     Total download timeout in seconds
    """

    CHUNK_SIZE = 8192

    def __init__(self, servers_dir: str | Path, timeout: float = 300) -> None:
        self.servers_dir = Path(servers_dir)
        self.timeout = timeout
        self._background: List[asyncio.Task] = []

    def server_root(self, server: str) -> Path:
        return self.servers_dir / validate_server_ref(server)

    def target_dir(self, server: str, directory: str) -> Path:
        """Resolve ``directory`` (server-relative) and refuse to leave the server root."""
        root = self.server_root(server).resolve()
        target = (root / directory.lstrip("/")).resolve()
        if target != root and root not in target.parents:
            raise ConfigurationError(f"Directory escapes server root: {directory!r}")
        return target

    async def pull(self, server, url, directory, session, *, use_header=True, foreground=True):
        """
        Download ``url`` into ``directory`` of the server.

        With ``foreground=False`` the transfer runs as a task on the current
        loop and uses ``session`` after this call returns, so both must outlive
        it. Callers that wrap each request in ``asyncio.run`` (web API, CLI)
        must use the foreground mode.
        """
        target = self.target_dir(server, directory)
        if not foreground:
            task = asyncio.ensure_future(self._download(url, target, session, use_header))
            self._background.append(task)
            task.add_done_callback(self._background.remove)
            return None
        return await self._download(url, target, session, use_header)

    async def _download(
        self,
        url: str,
        target: Path,
        session: aiohttp.ClientSession,
        use_header: bool,
    ) -> Path:
        """Stream ``url`` into ``target`` and return the written file."""
        target.mkdir(parents=True, exist_ok=True)
        try:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    logger.error("Download failed: HTTP %d from %s", resp.status, url)
                    raise UpstreamBadResponse(
                        f"Download returned HTTP {resp.status}", status=resp.status,
                    )

                header_name = None
                if use_header and resp.content_disposition is not None:
                    header_name = resp.content_disposition.filename
                dest = target / self._safe_filename(header_name, url)
                part = dest.with_name(dest.name + ".part")

                written = 0
                try:
                    with open(part, "wb") as fh:
                        async for chunk in resp.content.iter_chunked(self.CHUNK_SIZE):
                            fh.write(chunk)
                            written += len(chunk)
                    os.replace(part, dest)
                finally:
                    # only complete files may land in the plugins directory
                    if part.exists():
                        part.unlink()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Download error from %s: %r", url, exc)
            raise UpstreamTransportError(f"Could not download {url}") from exc

        logger.info("Downloaded %s -> %s (%d bytes)", url, dest, written)
        return dest

    @staticmethod
    def _safe_filename(header_name: Optional[str], url: str) -> str:
        """Pick a file name from the response header, falling back to the URL."""
        candidate = header_name or unquote(urlparse(url).path.rsplit("/", 1)[-1])
        candidate = Path(candidate.replace("\\", "/")).name
        safe = "".join(c if c.isalnum() or c in "-_.+" else "-" for c in candidate)
        safe = safe.lstrip(".")
        return safe or "plugin.jar"


# ──────────────────────────────────────────────
#  Plugin Gateway
# ──────────────────────────────────────────────

class PluginGateway:
    """
    Entry point the web UI and CLI talk to.

    Args:
        clients:       One adapter per marketplace
        file_transfer: Collaborator used by ``install_plugin``
    """

    def __init__(
        self,
        clients: Dict[PluginProvider, ProviderClient],
        file_transfer: Optional[FileTransfer] = None,
    ) -> None:
        missing = [p.value for p in PluginProvider if p not in clients]
        if missing:
            raise ValueError(f"No adapter configured for: {', '.join(missing)}")
        self.clients = clients
        self.file_transfer = file_transfer

    # ================================================================
    #  DISPATCH
    # ================================================================

    @staticmethod
    def parse_provider(provider: str | PluginProvider) -> PluginProvider:
        """Raises ValueError for unknown provider names."""
        if isinstance(provider, PluginProvider):
            return provider
        return PluginProvider(provider.strip().lower())

    def get_client(self, provider: str | PluginProvider) -> ProviderClient:
        return self.clients[self.parse_provider(provider)]

    @property
    def polymart(self) -> PolymartAPI:
        return self.clients[PluginProvider.POLYMART]

    def clamp_page_size(self, provider: str | PluginProvider, page_size: int) -> int:
        cap = self.get_client(provider).MAX_PAGE_SIZE
        page_size = max(1, min(page_size, MAX_REQUEST_PAGE_SIZE))
        return min(page_size, cap) if cap else page_size

    # ================================================================
    #  SEARCH / VERSIONS
    # ================================================================

    async def search(
        self,
        provider: str | PluginProvider,
        session: aiohttp.ClientSession,
        *,
        query: str = "",
        page: int = 1,
        page_size: int = 20,
        mc_version: str = "",
        user_id: Optional[str] = None,
    ) -> PaginatedResult:
        """
        Search one marketplace.

        Args:
            provider:   Marketplace to search
            session:    aiohttp session
            query:      Free-text query (empty lists popular plugins)
            page:       1-based page number
            page_size:  Requested page size, clamped to the provider cap
            mc_version: Optional Minecraft version filter
            user_id:    Panel user, used for Polymart premium visibility

        Returns:
            PaginatedResult; empty when the marketplace is unavailable
        """
        client = self.get_client(provider)
        page_size = self.clamp_page_size(provider, page_size)
        return await client.search(
            query, session, page=max(1, page), page_size=page_size,
            mc_version=mc_version, user_id=user_id,
        )

    async def list_versions(
        self,
        provider: str | PluginProvider,
        plugin_id: str,
        session: aiohttp.ClientSession,
    ) -> List[PluginVersion]:
        """Installable versions of a plugin; upstream failures propagate."""
        client = self.get_client(provider)
        try:
            return await client.list_versions(plugin_id, session)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise UpstreamBadResponse(
                f"Unexpected {client.PROVIDER.value} version listing for {plugin_id}"
            ) from exc

    async def resolve_download_url(
        self,
        provider: str | PluginProvider,
        plugin_id: str,
        version_id: str,
        session: aiohttp.ClientSession,
        *,
        user_id: Optional[str] = None,
    ) -> str:
        client = self.get_client(provider)
        try:
            return await client.resolve_download_url(
                plugin_id, version_id, session, user_id=user_id,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise UpstreamBadResponse(
                f"Unexpected {client.PROVIDER.value} download response for {plugin_id}"
            ) from exc

    # ================================================================
    #  INSTALL
    # ================================================================

    async def install_plugin(
        self,
        server: str,
        provider: str | PluginProvider,
        plugin_id: str,
        version_id: str,
        session: aiohttp.ClientSession,
        *,
        user_id: Optional[str] = None,
    ) -> Optional[Path]:
        """
        Resolve a plugin version and stage it in the server's /plugins directory.

        Waits for the transfer to finish.

        Returns:
            Path of the staged file
        Raises:
            UserFacingInstallError: resolution or transfer failed
        """
        if self.file_transfer is None:
            raise ConfigurationError("No file transfer configured for installs")
        provider = self.parse_provider(provider)

        try:
            download_url = await self.resolve_download_url(
                provider, plugin_id, version_id, session, user_id=user_id,
            )
        except ConfigurationError:
            raise
        except PluginAPIError as exc:
            logger.error(
                "Could not resolve %s plugin %s (%s): %s",
                provider.value, plugin_id, version_id, exc,
            )
            raise UserFacingInstallError(
                "We couldn't find a download for this plugin version. "
                "Please try again later or pick another version."
            ) from exc

        logger.info(
            "Installing %s plugin %s (%s) on %s from %s",
            provider.value, plugin_id, version_id, server, download_url,
        )
        try:
            return await self.file_transfer.pull(
                server, download_url, PLUGINS_DIRECTORY, session,
                use_header=True, foreground=True,
            )
        except (PluginAPIError, OSError) as exc:
            logger.error("Plugin install failed for %s: %s", download_url, exc)
            raise UserFacingInstallError(
                "Looks like we couldn't download this plugin automatically. "
                f"You should still be able to download it in your browser at {download_url}",
                download_url=download_url,
            ) from exc

    # ================================================================
    #  POLYMART LINKING
    # ================================================================

    async def link_polymart(
        self,
        user_id: str,
        return_url: str,
        session: aiohttp.ClientSession,
    ) -> str:
        return await self.polymart.begin_link(user_id, return_url, session)

    def handle_polymart_callback(self, success: str, token: str, state: str) -> bool:
        return self.polymart.handle_callback(success, token, state)

    async def disconnect_polymart(self, user_id: str, session: aiohttp.ClientSession) -> int:
        return await self.polymart.disconnect(user_id, session)

    def is_polymart_linked(self, user_id: str) -> bool:
        return self.polymart.is_linked(user_id)
