"""
Conversation archives.

Two independent sinks (local directory, GitHub contents API) receive
point-in-time snapshots of the live conversation. Triggers: hourly job,
daily rollover, manual admin request, emergency on shutdown/crash.

Archive documents written over time used different field names for the
message list; `parse_archive` normalizes all of them on read.
"""
from __future__ import annotations

import asyncio
import base64
import json
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
from loguru import logger

from .memory import AgentMemoryStore
from .states import ConversationState, Message


HOURLY_NAME = re.compile(r"(\d{4}-\d{2}-\d{2})_(\d{2})00\.json$")
LEGACY_REMOTE_NAME = re.compile(r"(\d{4}-\d{2}-\d{2})_(\d{2})-00\.json$")
DAILY_NAME = re.compile(r"(\d{4}-\d{2}-\d{2})_daily\.json$")


def archive_filename(when: datetime) -> str:
    return f"{when:%Y-%m-%d_%H}00.json"


def daily_filename(day: date) -> str:
    return f"{day:%Y-%m-%d}_daily.json"


def filename_timestamp(filename: str) -> int:
    """Epoch ms encoded in an archive filename (0 when unrecognized)."""
    for pattern in (HOURLY_NAME, LEGACY_REMOTE_NAME):
        m = pattern.search(filename)
        if m:
            dt = datetime.strptime(f"{m.group(1)} {m.group(2)}", "%Y-%m-%d %H").replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
    m = DAILY_NAME.search(filename)
    if m:
        dt = datetime.strptime(f"{m.group(1)} 23:59", "%Y-%m-%d %H:%M").replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return 0


def is_safe_filename(filename: str) -> bool:
    return bool(filename) and filename.endswith(".json") and not any(
        bad in filename for bad in ("/", "\\", "..")
    )


@dataclass
class ArchiveInfo:
    filename: str
    timestamp: int
    message_count: int = 0
    exchanges: int = 0
    size: Optional[int] = None
    created: Optional[str] = None
    source: str = "local"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "filename": self.filename,
            "timestamp": self.timestamp,
            "messageCount": self.message_count,
            "exchanges": self.exchanges,
            "source": self.source,
        }
        if self.size is not None:
            out["size"] = self.size
        if self.created is not None:
            out["created"] = self.created
        return out


class ArchiveShape(Enum):
    MESSAGES = "messages"
    CONVERSATION = "conversation"
    MEMORIES = "memories"
    RAW_LIST = "list"


@dataclass
class ArchiveDocument:
    messages: List[Message]
    shape: ArchiveShape
    archived_at: Optional[str] = None
    reason: Optional[str] = None
    total_exchanges: Optional[int] = None
    memory: Optional[Dict[str, Any]] = None

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self, filename: Optional[str] = None) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "archivedAt": self.archived_at,
            "reason": self.reason,
            "messageCount": self.message_count,
            "totalExchanges": self.total_exchanges,
            "messages": [m.to_dict() for m in self.messages],
            "sourceShape": self.shape.value,
        }
        if filename:
            out["filename"] = filename
        if self.memory is not None:
            out["memory"] = self.memory
        return out


def _memory_record_to_message(record: Dict[str, Any]) -> Message:
    content = record.get("content") or {}
    text = content.get("text", "") if isinstance(content, dict) else str(content)
    source = content.get("source") if isinstance(content, dict) else None
    ts = record.get("createdAt") or record.get("timestamp") or 0
    return Message.from_dict(
        {
            "id": record.get("id"),
            "timestamp": ts,
            "entity": source or record.get("entityId") or "UNKNOWN",
            "content": text,
            "image": content.get("image") if isinstance(content, dict) else None,
        }
    )


def _to_message(item: Dict[str, Any]) -> Message:
    if isinstance(item.get("content"), dict):
        return _memory_record_to_message(item)
    return Message.from_dict(item)


def parse_archive(raw: Any) -> ArchiveDocument:
    """Normalize any known archive document shape to an ArchiveDocument."""
    meta: Dict[str, Any] = {}
    if isinstance(raw, list):
        shape, items = ArchiveShape.RAW_LIST, raw
    elif isinstance(raw, dict):
        meta = raw
        for shape in (ArchiveShape.MESSAGES, ArchiveShape.CONVERSATION, ArchiveShape.MEMORIES):
            if isinstance(raw.get(shape.value), list):
                items = raw[shape.value]
                break
        else:
            raise ValueError("archive has no messages, conversation or memories list")
    else:
        raise ValueError(f"unsupported archive payload: {type(raw).__name__}")

    messages = [_to_message(i) for i in items if isinstance(i, dict)]
    total = meta.get("totalExchanges")
    memory = meta.get("memory")
    return ArchiveDocument(
        messages=messages,
        shape=shape,
        archived_at=meta.get("archivedAt"),
        reason=meta.get("reason"),
        total_exchanges=int(total) if isinstance(total, (int, float)) else None,
        memory=memory if isinstance(memory, dict) else None,
    )


def build_archive(state: ConversationState, reason: str, when: datetime, memory: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "archivedAt": when.astimezone(timezone.utc).isoformat(),
        "reason": reason,
        "messageCount": len(state.messages),
        "totalExchanges": state.total_exchanges,
        "messages": [m.to_dict() for m in state.messages],
    }
    if memory is not None:
        doc["memory"] = memory
    return doc


class LocalArchiveSink:
    name = "local"

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def write(self, filename: str, document: Dict[str, Any]) -> bool:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path = self.directory / filename
            path.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"archive_local_failed | file={filename} | {e}")
            return False

    def list(self) -> List[ArchiveInfo]:
        if not self.directory.is_dir():
            return []
        out: List[ArchiveInfo] = []
        try:
            for path in sorted(self.directory.glob("*.json"), reverse=True):
                stat = path.stat()
                out.append(
                    ArchiveInfo(
                        filename=path.name,
                        timestamp=filename_timestamp(path.name),
                        size=stat.st_size,
                        created=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                        source=self.name,
                    )
                )
        except OSError as e:
            logger.error(f"archive_local_list_failed | {e}")
        return out

    def read(self, filename: str) -> Optional[Any]:
        path = self.directory / filename
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.error(f"archive_local_read_failed | file={filename} | {e}")
            return None


class GitHubArchiveSink:
    """Archives stored in a GitHub repository through the contents API."""

    name = "github"
    api_url = "https://api.github.com"

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        folder: str = "archives",
        timeout: float = 30.0,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.token = token
        self.folder = folder
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Accept": "application/vnd.github.v3+json"}

    def _url(self, filename: Optional[str] = None) -> str:
        base = f"{self.api_url}/repos/{self.owner}/{self.repo}/contents/{self.folder}"
        return f"{base}/{filename}" if filename else base

    async def _existing_sha(self, filename: str) -> Optional[str]:
        try:
            resp = await self.client.get(self._url(filename), headers=self.headers)
        except httpx.HTTPError as e:
            logger.warning(f"archive_github_sha_check_failed | file={filename} | {e}")
            return None
        if resp.status_code == 200:
            return resp.json().get("sha")
        return None

    async def write(self, filename: str, document: Dict[str, Any], reason: str, when: datetime) -> bool:
        sha = await self._existing_sha(filename)
        body: Dict[str, Any] = {
            "message": f"Archive: {when.isoformat(timespec='minutes')} ({reason})",
            "content": base64.b64encode(json.dumps(document, ensure_ascii=False, indent=2).encode("utf-8")).decode("ascii"),
        }
        if sha:
            body["sha"] = sha
        try:
            resp = await self.client.put(self._url(filename), headers=self.headers, json=body)
        except httpx.HTTPError as e:
            logger.error(f"archive_github_failed | file={filename} | {e}")
            return False
        if resp.status_code in (200, 201):
            logger.info(f"archive_github_saved | file={self.folder}/{filename}")
            return True
        logger.error(f"archive_github_failed | file={filename} status={resp.status_code}")
        return False

    async def list(self) -> List[ArchiveInfo]:
        try:
            resp = await self.client.get(self._url(), headers=self.headers)
            resp.raise_for_status()
            entries = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"archive_github_list_failed | {e}")
            return []
        return [
            ArchiveInfo(filename=e["name"], timestamp=filename_timestamp(e["name"]), size=e.get("size"), source=self.name)
            for e in entries
            if isinstance(e, dict) and str(e.get("name", "")).endswith(".json")
        ]

    async def read(self, filename: str) -> Optional[Any]:
        try:
            resp = await self.client.get(self._url(filename), headers=self.headers)
            if resp.status_code != 200:
                return None
            payload = resp.json()
            return json.loads(base64.b64decode(payload["content"]).decode("utf-8"))
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"archive_github_read_failed | file={filename} | {e}")
            return None


@dataclass
class ArchiveResult:
    local_filename: Optional[str] = None
    remote_ok: bool = False
    reason: str = ""

    @property
    def success(self) -> bool:
        return bool(self.local_filename) or self.remote_ok


@dataclass
class _RemoteCache:
    entries: List[ArchiveInfo] = field(default_factory=list)
    fetched_at: float = 0.0


class ArchiveManager:
    """Snapshots the live conversation into every configured sink.

    Sinks fail independently: a local write error never blocks the GitHub
    upload and vice versa. Nothing is written while the history is empty.
    """

    def __init__(
        self,
        state_provider: Callable[[], ConversationState],
        local: LocalArchiveSink,
        remote: Optional[GitHubArchiveSink] = None,
        memory: Optional[AgentMemoryStore] = None,
        interval: float = 3600.0,
        cache_ttl: float = 300.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.state_provider = state_provider
        self.local = local
        self.remote = remote
        self.memory = memory
        self.interval = interval
        self.cache_ttl = cache_ttl
        self.clock = clock
        self.last_archive_date: date = clock().date()
        self._cache = _RemoteCache()
        self._task: Optional[asyncio.Task] = None

    def _snapshot(self, reason: str, when: datetime) -> Optional[Dict[str, Any]]:
        state = self.state_provider()
        if not state.messages:
            return None
        memory = self.memory.snapshot() if self.memory is not None else None
        return build_archive(state, reason, when, memory)

    def _write_local(self, filename: str, doc: Dict[str, Any], reason: str) -> Optional[str]:
        if self.local.write(filename, doc):
            logger.info(f"archive_local_saved | file={filename} messages={doc['messageCount']} reason={reason}")
            return filename
        return None

    async def _write_remote(self, filename: str, doc: Dict[str, Any], reason: str, when: datetime) -> bool:
        if self.remote is None:
            return False
        try:
            ok = await self.remote.write(filename, doc, reason, when)
        except Exception as e:
            logger.error(f"archive_github_error | file={filename} | {e}")
            return False
        if ok:
            self._cache.fetched_at = 0.0
        return ok

    def archive_local(self, reason: str, filename: Optional[str] = None) -> Optional[str]:
        when = self.clock()
        doc = self._snapshot(reason, when)
        if doc is None:
            return None
        return self._write_local(filename or archive_filename(when), doc, reason)

    async def archive(self, reason: str, filename: Optional[str] = None) -> ArchiveResult:
        when = self.clock()
        doc = self._snapshot(reason, when)
        result = ArchiveResult(reason=reason)
        if doc is None:
            logger.info(f"archive_skipped | reason={reason} | no messages")
            return result
        name = filename or archive_filename(when)
        result.local_filename = self._write_local(name, doc, reason)
        result.remote_ok = await self._write_remote(name, doc, reason, when)
        return result

    async def check_daily_rollover(self) -> Optional[ArchiveResult]:
        today = self.clock().date()
        if today == self.last_archive_date:
            return None
        if not self.state_provider().messages:
            return None
        logger.info(f"archive_daily_rollover | closing={self.last_archive_date}")
        result = await self.archive("daily_rollover", filename=daily_filename(self.last_archive_date))
        self.last_archive_date = today
        return result

    async def hourly_tick(self) -> Optional[ArchiveResult]:
        if not self.state_provider().messages:
            return None
        await self.check_daily_rollover()
        return await self.archive("hourly_snapshot")

    def emergency(self, reason: str) -> Optional[str]:
        """Synchronous local-only snapshot used while the process is dying."""
        try:
            return self.archive_local(reason)
        except Exception as e:
            logger.error(f"archive_emergency_failed | reason={reason} | {e}")
            return None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.hourly_tick()
            except Exception:
                logger.exception("archive_job_error (non-fatal)")

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"archive_job_started | interval={self.interval:.0f}s remote={'on' if self.remote else 'off'}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.remote is not None:
            await self.remote.aclose()

    def list_local(self) -> List[ArchiveInfo]:
        return self.local.list()

    async def _remote_listing(self) -> List[ArchiveInfo]:
        if self.remote is None:
            return []
        fresh = time.monotonic() - self._cache.fetched_at < self.cache_ttl
        if fresh and self._cache.entries:
            return self._cache.entries
        try:
            entries = await self.remote.list()
        except Exception as e:
            logger.error(f"archive_github_list_error | {e}")
            return self._cache.entries
        if entries:
            self._cache = _RemoteCache(entries=entries, fetched_at=time.monotonic())
        return entries

    async def list_archives(self) -> List[ArchiveInfo]:
        merged = {info.filename: info for info in self.list_local()}
        for info in await self._remote_listing():
            merged.setdefault(info.filename, info)
        return sorted(merged.values(), key=lambda a: (a.timestamp, a.filename), reverse=True)

    async def fetch_archive(self, filename: str) -> Optional[ArchiveDocument]:
        if not is_safe_filename(filename):
            logger.warning(f"archive_bad_filename | {filename!r}")
            return None
        raw = self.local.read(filename)
        if raw is None and self.remote is not None:
            try:
                raw = await self.remote.read(filename)
            except Exception as e:
                logger.error(f"archive_github_read_error | file={filename} | {e}")
                raw = None
        if raw is None:
            return None
        try:
            return parse_archive(raw)
        except ValueError as e:
            logger.error(f"archive_unreadable | file={filename} | {e}")
            return None
