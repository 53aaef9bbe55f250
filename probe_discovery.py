from __future__ import annotations

import logging
import os
import platform
import re
import shlex
import subprocess
from dataclasses import dataclass
from importlib import metadata as importlib_metadata
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import httpx
import openai

from probe_lib import ModelMetadata, join_url, truncate

logger = logging.getLogger(__name__)

DEFAULT_STATUS_CMD = "foundry service status"

_URL_RE = re.compile(r"https?://[\w.\-]+:\d+\S*", re.IGNORECASE)
_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+[\w.\-]*)")
_PLATFORM_TAG_RE = re.compile(
    r"-(cuda|directml|vulkan|webgpu|npu|qnn|openvino|generic)(?=-|$)", re.IGNORECASE
)
_DEVICE_SUFFIX_RE = re.compile(r"-(gpu|cpu|npu)$", re.IGNORECASE)
_VERSION_SUFFIX_RE = re.compile(r":\d+$")


class CatalogError(Exception):
    pass


@dataclass(frozen=True)
class ServiceInfo:
    running: bool
    raw_output: str
    base_url: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    status_url: Optional[str] = None


@dataclass(frozen=True)
class CatalogModel:
    id: str
    owned_by: Optional[str] = None


# ----------------------------
# Service locator
# ----------------------------

def _status_command(command: Optional[str]) -> List[str]:
    return shlex.split(command or os.getenv("SERVICE_STATUS_CMD") or DEFAULT_STATUS_CMD)


def parse_status_output(raw_output: str) -> ServiceInfo:
    """Pull the first http(s)://host:port URL out of the status text."""
    m = _URL_RE.search(raw_output)
    if not m:
        return ServiceInfo(running="running" in raw_output.lower(), raw_output=raw_output)
    status_url = m.group(0)
    parts = urlsplit(status_url)
    try:
        port = parts.port
    except ValueError:
        port = None
    if not parts.hostname or port is None:
        return ServiceInfo(running="running" in raw_output.lower(), raw_output=raw_output)
    return ServiceInfo(
        running=True,
        raw_output=raw_output,
        base_url=f"{parts.scheme}://{parts.hostname}:{port}/v1",
        host=parts.hostname,
        port=port,
        status_url=status_url,
    )


def detect_service(timeout_s: float = 10.0, command: Optional[str] = None) -> ServiceInfo:
    argv = _status_command(command)
    logger.info("Detecting service via `%s`", " ".join(argv))
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=timeout_s, check=False)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Service status command failed: %s: %s", type(e).__name__, e)
        return ServiceInfo(running=False, raw_output=str(e))

    raw = (proc.stdout or "").strip()
    if proc.returncode != 0:
        logger.warning("Service status exited with %s", proc.returncode)
        return ServiceInfo(running=False, raw_output=raw or (proc.stderr or "").strip())

    info = parse_status_output(raw)
    if info.base_url:
        logger.info("Detected service at %s", info.base_url)
    return info


# ----------------------------
# Model catalog
# ----------------------------

async def fetch_model_catalog(
    client: httpx.AsyncClient,
    base_url: str,
    api_key: Optional[str] = None,
) -> List[CatalogModel]:
    url = join_url(base_url, "/models")
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        r = await client.get(url, headers=headers)
    except httpx.HTTPError as e:
        raise CatalogError(f"GET {url} failed: {type(e).__name__}: {e}") from e

    if r.is_error:
        raise CatalogError(f"GET {url} returned {r.status_code}: {truncate(r.text, 300)}")
    try:
        data = r.json()
    except ValueError as e:
        raise CatalogError(f"GET {url} returned invalid JSON") from e

    items = data.get("data") if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise CatalogError("Unexpected response shape: missing data[] array")

    models: List[CatalogModel] = []
    for item in items:
        if isinstance(item, dict) and item.get("id"):
            owned_by = item.get("owned_by")
            models.append(CatalogModel(id=str(item["id"]), owned_by=str(owned_by) if owned_by else None))
    return models


def format_model_table(models: Sequence[CatalogModel]) -> str:
    lines = ["", "  #   Model ID                          Owner", "  " + "─" * 60]
    for i, m in enumerate(models, start=1):
        lines.append(f"  {i:>3} {m.id:<34} {m.owned_by or 'unknown'}")
    lines.append("")
    return "\n".join(lines)


# ----------------------------
# Alias resolution
# ----------------------------

def alias_key(model_id: str) -> str:
    """
    "Phi-4-mini-instruct-cuda-gpu:5" -> "phi-4-mini-instruct".
    Drops the `:N` version, execution-provider tags and a trailing device suffix.
    """
    key = _VERSION_SUFFIX_RE.sub("", model_id.strip()).lower()
    key = _PLATFORM_TAG_RE.sub("", key)
    return _DEVICE_SUFFIX_RE.sub("", key)


def resolve_model_id(requested: str, models: Sequence[CatalogModel]) -> Tuple[str, bool]:
    """
    Returns (model_id, changed). Tries, in order: exact id, case-insensitive id,
    alias, id prefix, id substring. First catalog entry wins within a stage.
    """
    ids = [m.id for m in models]
    if requested in ids:
        return requested, False

    wanted = requested.lower()
    stages = (
        lambda i: i.lower() == wanted,
        lambda i: alias_key(i) == wanted,
        lambda i: i.lower().startswith(wanted),
        lambda i: wanted in i.lower(),
    )
    for matches in stages:
        for model_id in ids:
            if matches(model_id):
                logger.info('Resolved model alias "%s" -> "%s"', requested, model_id)
                return model_id, True

    logger.warning('No model matching "%s" in catalog; using as-is', requested)
    return requested, False


# ----------------------------
# Service handle
# ----------------------------

class ServiceHandle:
    """
    Caller-owned connection to the local service. Open it with `async with`
    (or open()/aclose()); it owns the catalog client and caches the catalog.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._catalog: Optional[List[CatalogModel]] = None

    async def open(self) -> "ServiceHandle":
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport, timeout=self._timeout_s)
        return self

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ServiceHandle":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @property
    def catalog(self) -> Optional[List[CatalogModel]]:
        return self._catalog

    async def models(self, *, refresh: bool = False) -> List[CatalogModel]:
        if self._client is None:
            raise RuntimeError("ServiceHandle is not open")
        if self._catalog is None or refresh:
            self._catalog = await fetch_model_catalog(self._client, self.base_url, self.api_key)
            logger.info("Catalog: %d models at %s", len(self._catalog), self.base_url)
        return self._catalog

    async def resolve(self, requested: str) -> Tuple[str, bool]:
        return resolve_model_id(requested, await self.models())

    def resolve_model_metadata(self, model_id: str) -> Optional[ModelMetadata]:
        if not self._catalog:
            return None
        if not any(m.id == model_id for m in self._catalog):
            return None
        key = alias_key(model_id)
        variants = sum(1 for m in self._catalog if alias_key(m.id) == key)
        return ModelMetadata(alias=key, resolved_id=model_id, variant_count=variants)


# ----------------------------
# Version info
# ----------------------------

def _dist_version(name: str) -> str:
    try:
        return importlib_metadata.version(name)
    except importlib_metadata.PackageNotFoundError:
        return "unknown"


def service_cli_version(command: Optional[str] = None, timeout_s: float = 5.0) -> Optional[str]:
    argv = _status_command(command)[:1] + ["--version"]
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=timeout_s, check=False)
    except (OSError, subprocess.SubprocessError):
        return None
    m = _VERSION_RE.search(proc.stdout or "")
    return m.group(1) if m else None


def version_info(command: Optional[str] = None) -> Dict[str, Optional[str]]:
    return {
        "streamprobe": _dist_version("streamprobe"),
        "python": platform.python_version(),
        "httpx": httpx.__version__,
        "openai": openai.__version__,
        "service_cli": service_cli_version(command),
    }
