"""
Tests for archive naming, legacy-shape parsing and the two sinks.

The GitHub sink runs against an httpx.MockTransport standing in for the
contents API.
"""
import base64
import json
from datetime import date, datetime, timezone

import httpx
import pytest

from backrooms.archive import (
    ArchiveManager,
    ArchiveShape,
    GitHubArchiveSink,
    LocalArchiveSink,
    archive_filename,
    build_archive,
    daily_filename,
    filename_timestamp,
    is_safe_filename,
    parse_archive,
)
from backrooms.states import ConversationState, Message


def _state(n=3):
    state = ConversationState()
    for i in range(n):
        state.append_turn(Message.create("CLAUDE_ALPHA" if i % 2 == 0 else "CLAUDE_OMEGA", f"line {i}"))
    return state


class MutableClock:
    def __init__(self, when):
        self.when = when

    def __call__(self):
        return self.when


class FakeContentsAPI:
    """In-memory GitHub contents API."""

    def __init__(self):
        self.files = {}
        self.puts = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        prefix = "/repos/owner/repo/contents/archives"
        assert path.startswith(prefix)
        name = path[len(prefix):].lstrip("/")
        if request.method == "PUT":
            body = json.loads(request.content)
            self.puts.append((name, body))
            status = 200 if name in self.files else 201
            self.files[name] = {"content": body["content"], "sha": f"sha-{len(self.puts)}"}
            return httpx.Response(status, json={"content": {"name": name}})
        if not name:
            listing = [{"name": n, "size": len(f["content"]), "type": "file"} for n, f in self.files.items()]
            return httpx.Response(200, json=listing)
        if name in self.files:
            return httpx.Response(200, json={"name": name, **self.files[name]})
        return httpx.Response(404, json={"message": "Not Found"})

    def sink(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return GitHubArchiveSink(owner="owner", repo="repo", token="t0ken", client=client)


class TestNaming:

    def test_hourly_name(self):
        assert archive_filename(datetime(2025, 3, 9, 7, 45)) == "2025-03-09_0700.json"

    def test_daily_name(self):
        assert daily_filename(date(2025, 3, 9)) == "2025-03-09_daily.json"

    def test_timestamp_from_both_hourly_formats(self):
        expected = int(datetime(2025, 3, 9, 7, tzinfo=timezone.utc).timestamp() * 1000)
        assert filename_timestamp("2025-03-09_0700.json") == expected
        assert filename_timestamp("2025-03-09_07-00.json") == expected
        assert filename_timestamp("random.json") == 0

    def test_safe_filenames(self):
        assert is_safe_filename("2025-03-09_0700.json")
        assert not is_safe_filename("../secrets.json")
        assert not is_safe_filename("a/b.json")
        assert not is_safe_filename("a\\b.json")
        assert not is_safe_filename("notes.txt")
        assert not is_safe_filename("")


class TestParseArchive:
    """Every historical document shape normalizes to the same messages"""

    def test_current_shape(self):
        doc = build_archive(_state(2), "manual_trigger", datetime(2025, 1, 1, tzinfo=timezone.utc))
        parsed = parse_archive(doc)
        assert parsed.shape is ArchiveShape.MESSAGES
        assert parsed.reason == "manual_trigger"
        assert parsed.total_exchanges == 2
        assert [m.content for m in parsed.messages] == ["line 0", "line 1"]

    def test_conversation_key(self):
        parsed = parse_archive({"conversation": [{"entity": "CLAUDE_OMEGA", "content": "old", "timestamp": 5}]})
        assert parsed.shape is ArchiveShape.CONVERSATION
        assert parsed.messages[0].entity == "CLAUDE_OMEGA"

    def test_memory_records(self):
        parsed = parse_archive(
            {
                "memories": [
                    {"id": "m1", "entityId": "ent-1", "createdAt": 77, "content": {"text": "hi", "source": "CLAUDE_ALPHA"}},
                    {"id": "m2", "entityId": "ent-2", "createdAt": 78, "content": {"text": "yo"}},
                ]
            }
        )
        assert parsed.shape is ArchiveShape.MEMORIES
        assert [(m.entity, m.content, m.timestamp) for m in parsed.messages] == [
            ("CLAUDE_ALPHA", "hi", 77),
            ("ent-2", "yo", 78),
        ]

    def test_bare_list(self):
        parsed = parse_archive([{"entity": "SYSTEM", "content": "boot"}])
        assert parsed.shape is ArchiveShape.RAW_LIST
        assert parsed.message_count == 1

    def test_unknown_shape(self):
        with pytest.raises(ValueError):
            parse_archive({"something": "else"})
        with pytest.raises(ValueError):
            parse_archive("text")


class TestArchiveManagerLocal:

    @pytest.mark.asyncio
    async def test_empty_history_writes_nothing(self, tmp_path):
        manager = ArchiveManager(lambda: ConversationState(), LocalArchiveSink(tmp_path))
        result = await manager.archive("manual_trigger")
        assert result.success is False
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_archive_writes_hourly_file(self, tmp_path, memory):
        memory.add("alpha", "a memory")
        clock = MutableClock(datetime(2025, 5, 1, 13, 20))
        manager = ArchiveManager(lambda: _state(3), LocalArchiveSink(tmp_path), memory=memory, clock=clock)
        result = await manager.archive("manual_trigger")
        assert result.success is True
        assert result.local_filename == "2025-05-01_1300.json"
        assert result.remote_ok is False

        doc = json.loads((tmp_path / "2025-05-01_1300.json").read_text(encoding="utf-8"))
        assert doc["messageCount"] == 3
        assert doc["reason"] == "manual_trigger"
        assert doc["memory"]["alpha"]["memories"][0]["content"] == "a memory"

    @pytest.mark.asyncio
    async def test_daily_rollover_writes_previous_day(self, tmp_path):
        clock = MutableClock(datetime(2025, 5, 1, 23, 10))
        manager = ArchiveManager(lambda: _state(2), LocalArchiveSink(tmp_path), clock=clock)
        assert await manager.check_daily_rollover() is None

        clock.when = datetime(2025, 5, 2, 0, 10)
        await manager.hourly_tick()
        names = sorted(p.name for p in tmp_path.iterdir())
        assert names == ["2025-05-01_daily.json", "2025-05-02_0000.json"]
        assert manager.last_archive_date == date(2025, 5, 2)

    def test_emergency_is_local_and_sync(self, tmp_path):
        manager = ArchiveManager(lambda: _state(1), LocalArchiveSink(tmp_path))
        name = manager.emergency("emergency_sigterm")
        doc = json.loads((tmp_path / name).read_text(encoding="utf-8"))
        assert doc["reason"] == "emergency_sigterm"

    @pytest.mark.asyncio
    async def test_fetch_rejects_traversal(self, tmp_path):
        manager = ArchiveManager(lambda: _state(1), LocalArchiveSink(tmp_path / "archives"))
        (tmp_path / "secret.json").write_text("[]", encoding="utf-8")
        assert await manager.fetch_archive("../secret.json") is None

    @pytest.mark.asyncio
    async def test_fetch_unreadable_is_none(self, tmp_path):
        (tmp_path / "2025-01-01_0100.json").write_text('{"weird": 1}', encoding="utf-8")
        manager = ArchiveManager(lambda: _state(1), LocalArchiveSink(tmp_path))
        assert await manager.fetch_archive("2025-01-01_0100.json") is None


class TestGitHubSink:

    @pytest.mark.asyncio
    async def test_write_creates_then_updates_with_sha(self):
        api = FakeContentsAPI()
        sink = api.sink()
        when = datetime(2025, 5, 1, 13, 0)
        doc = build_archive(_state(1), "hourly_snapshot", when)

        assert await sink.write("2025-05-01_1300.json", doc, "hourly_snapshot", when) is True
        assert "sha" not in api.puts[0][1]
        assert await sink.write("2025-05-01_1300.json", doc, "hourly_snapshot", when) is True
        assert api.puts[1][1]["sha"] == "sha-1"

        decoded = json.loads(base64.b64decode(api.puts[1][1]["content"]))
        assert decoded["messageCount"] == 1
        await sink.aclose()

    @pytest.mark.asyncio
    async def test_failed_put_reports_false(self):
        def handler(request):
            if request.method == "PUT":
                return httpx.Response(422, json={"message": "sha mismatch"})
            return httpx.Response(404)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = GitHubArchiveSink(owner="owner", repo="repo", token="t", client=client)
        assert await sink.write("x.json", {"messages": []}, "manual_trigger", datetime(2025, 1, 1)) is False
        await sink.aclose()

    @pytest.mark.asyncio
    async def test_manager_merges_listings_local_first(self, tmp_path):
        api = FakeContentsAPI()
        remote_only = build_archive(_state(4), "hourly_snapshot", datetime(2025, 4, 30, 9))
        api.files["2025-04-30_09-00.json"] = {
            "content": base64.b64encode(json.dumps(remote_only).encode()).decode(),
            "sha": "legacy",
        }
        clock = MutableClock(datetime(2025, 5, 1, 13, 0))
        manager = ArchiveManager(lambda: _state(2), LocalArchiveSink(tmp_path), remote=api.sink(), clock=clock)

        result = await manager.archive("manual_trigger")
        assert result.local_filename == "2025-05-01_1300.json"
        assert result.remote_ok is True

        listing = await manager.list_archives()
        assert [a.filename for a in listing] == ["2025-05-01_1300.json", "2025-04-30_09-00.json"]
        assert listing[0].source == "local"
        assert listing[1].source == "github"

        doc = await manager.fetch_archive("2025-04-30_09-00.json")
        assert doc is not None
        assert doc.message_count == 4
        await manager.stop()

    @pytest.mark.asyncio
    async def test_remote_failure_does_not_block_local(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("offline", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        remote = GitHubArchiveSink(owner="owner", repo="repo", token="t", client=client)
        manager = ArchiveManager(lambda: _state(1), LocalArchiveSink(tmp_path), remote=remote)
        result = await manager.archive("manual_trigger")
        assert result.local_filename is not None
        assert result.remote_ok is False
        assert await manager.list_archives() != []
        await manager.stop()
