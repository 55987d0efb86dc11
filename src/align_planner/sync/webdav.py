# src/align_planner/sync/webdav.py

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from urllib.parse import quote, unquote, urlparse

import httpx

from ..core.ports import RemoteEntry
from ..errors import NetworkError, RemoteNotFound

logger = logging.getLogger(__name__)

_DAV_NS = "{DAV:}"

_PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:">'
    "<d:prop><d:resourcetype/><d:getlastmodified/></d:prop>"
    "</d:propfind>"
)


def _parse_http_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        dt = parsedate_to_datetime(raw.strip())
    except (TypeError, ValueError):
        logger.debug("Unparseable getlastmodified: %r", raw)
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def _href_path(href: str) -> str:
    return unquote(urlparse(href).path).rstrip("/")


def parse_multistatus(body: bytes, request_path: str) -> list[RemoteEntry]:
    """
    Parse a PROPFIND (Depth: 1) multistatus body into child entries.

    The entry describing the listed collection itself is dropped.
    Raises ValueError/ET.ParseError on a malformed body.
    """
    root = ET.fromstring(body)
    if root.tag != f"{_DAV_NS}multistatus":
        raise ValueError(f"unexpected root element {root.tag}")

    self_path = _href_path(request_path)
    entries: list[RemoteEntry] = []
    for resp in root.iter(f"{_DAV_NS}response"):
        href = resp.findtext(f"{_DAV_NS}href")
        if not href:
            continue
        path = _href_path(href)
        if path == self_path:
            continue
        name = path.rsplit("/", 1)[-1]
        if not name:
            continue

        is_dir = False
        last_modified: datetime | None = None
        for propstat in resp.iter(f"{_DAV_NS}propstat"):
            status = propstat.findtext(f"{_DAV_NS}status") or ""
            if status and " 200 " not in f"{status} ":
                continue
            prop = propstat.find(f"{_DAV_NS}prop")
            if prop is None:
                continue
            rtype = prop.find(f"{_DAV_NS}resourcetype")
            if rtype is not None and rtype.find(f"{_DAV_NS}collection") is not None:
                is_dir = True
            lm = prop.findtext(f"{_DAV_NS}getlastmodified")
            if lm:
                last_modified = _parse_http_date(lm)

        entries.append(RemoteEntry(name=name, last_modified=last_modified, is_directory=is_dir))
    return entries


class WebDAVRemoteStore:
    """
    RemoteStore over WebDAV (httpx.AsyncClient, HTTP basic auth).

    Error mapping:
    - 404 on GET/PROPFIND -> RemoteNotFound
    - any other non-success status, transport failure or malformed PROPFIND body -> NetworkError

    No retries here: a failed call fails the sync operation that issued it.
    """

    def __init__(
            self,
            url: str,
            username: str,
            password: str | None,
            *,
            timeout_seconds: float = 30.0,
            transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        base = url.rstrip("/") + "/"
        self._base_path = urlparse(base).path.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base,
            auth=httpx.BasicAuth(username, password or ""),
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            transport=transport,
            follow_redirects=True,
        )
        logger.debug("WebDAV client created base=%s user=%s", base, username)

    @staticmethod
    def _rel(path: str) -> str:
        return quote(path.lstrip("/"), safe="/")

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, self._rel(path), **kwargs)
        except httpx.HTTPError as e:
            logger.warning("WebDAV %s %s failed: %s", method, path, e.__class__.__name__)
            raise NetworkError(f"{method} {path}: {e.__class__.__name__}: {e}") from e

    @staticmethod
    def _fail(resp: httpx.Response, method: str, path: str) -> NetworkError:
        logger.warning("WebDAV %s %s -> HTTP %s", method, path, resp.status_code)
        return NetworkError(f"{method} {path}: HTTP {resp.status_code}")

    async def exists(self, path: str) -> bool:
        resp = await self._request(
            "PROPFIND",
            path,
            headers={"Depth": "0", "Content-Type": "application/xml; charset=utf-8"},
            content=_PROPFIND_BODY,
        )
        if resp.status_code in (200, 207):
            return True
        if resp.status_code == 404:
            return False
        raise self._fail(resp, "PROPFIND", path)

    async def create_directory(self, path: str) -> None:
        resp = await self._request("MKCOL", path.rstrip("/") + "/")
        # 405: collection already exists.
        if resp.status_code in (200, 201, 405):
            return
        raise self._fail(resp, "MKCOL", path)

    async def list(self, path: str) -> list[RemoteEntry]:
        resp = await self._request(
            "PROPFIND",
            path.rstrip("/") + "/",
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
            content=_PROPFIND_BODY,
        )
        if resp.status_code == 404:
            raise RemoteNotFound(path)
        if resp.status_code not in (200, 207):
            raise self._fail(resp, "PROPFIND", path)
        try:
            return parse_multistatus(resp.content, f"{self._base_path}/{path.strip('/')}")
        except (ET.ParseError, ValueError) as e:
            raise NetworkError(f"PROPFIND {path}: malformed response ({e})") from e

    async def get(self, path: str) -> bytes:
        resp = await self._request("GET", path)
        if resp.status_code == 404:
            raise RemoteNotFound(path)
        if resp.status_code != 200:
            raise self._fail(resp, "GET", path)
        return resp.content

    async def put(self, path: str, data: bytes) -> None:
        resp = await self._request(
            "PUT",
            path,
            content=data,
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        if resp.status_code not in (200, 201, 204):
            raise self._fail(resp, "PUT", path)
        logger.debug("WebDAV PUT %s (%d bytes)", path, len(data))

    async def aclose(self) -> None:
        await self._client.aclose()
