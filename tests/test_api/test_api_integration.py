"""Integration tests for the API endpoints."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from tests.conftest import BASE_MTIME_NS, create_test_client, read_tree, write_file

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from httpx import AsyncClient

    from treeline.config import Settings


@pytest.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    async with create_test_client(test_settings) as ac:
        yield ac


@pytest.fixture
async def live(client: AsyncClient) -> Path:
    """Register store ``demo`` and seed its live tree."""
    resp = await client.post("/api/stores", json={"name": "demo"})
    assert resp.status_code == 201
    root = Path(resp.json()["live_path"])
    write_file(root, "a.txt", "hello\n", BASE_MTIME_NS)
    write_file(root, "src/main.py", "print('hi')\n", BASE_MTIME_NS)
    return root


async def _checkpoint(client: AsyncClient, message: str | None = None) -> int:
    resp = await client.post("/api/stores/demo/checkpoints", json={"message": message})
    assert resp.status_code == 201
    body = resp.json()
    assert body["created"] is True
    return body["checkpoint"]["version"]


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["database"] == "ok"
        assert data["storage"] == "ok"
        assert data["stores"] == 0


class TestStores:
    @pytest.mark.asyncio
    async def test_create_and_list(self, client: AsyncClient, live: Path) -> None:
        resp = await client.get("/api/stores")
        assert resp.status_code == 200
        stores = resp.json()
        assert [s["name"] for s in stores] == ["demo"]
        assert stores[0]["checkpoint_count"] == 0
        assert stores[0]["head_version"] is None
        assert live.is_dir()

    @pytest.mark.asyncio
    async def test_duplicate_name_is_conflict(self, client: AsyncClient, live: Path) -> None:
        resp = await client.post("/api/stores", json={"name": "demo"})
        assert resp.status_code == 409

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "../escape", "a/b", ".hidden"])
    async def test_invalid_name_rejected(self, client: AsyncClient, name: str) -> None:
        resp = await client.post("/api/stores", json={"name": name})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_store_is_not_found(self, client: AsyncClient) -> None:
        resp = await client.get("/api/stores/nope/checkpoints")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]


class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_create_list_get_latest(self, client: AsyncClient, live: Path) -> None:
        assert await _checkpoint(client, "first") == 1
        write_file(live, "b.txt", "second\n")
        assert await _checkpoint(client) == 2

        resp = await client.get("/api/stores/demo/checkpoints")
        assert resp.status_code == 200
        assert [cp["version"] for cp in resp.json()] == [2, 1]

        resp = await client.get("/api/stores/demo/checkpoints", params={"limit": 1})
        assert [cp["version"] for cp in resp.json()] == [2]

        resp = await client.get("/api/stores/demo/checkpoints/v1")
        assert resp.status_code == 200
        first = resp.json()
        assert first["message"] == "first"
        assert first["file_count"] == 2
        assert first["parent_version"] is None

        resp = await client.get("/api/stores/demo/checkpoints/latest")
        assert resp.json()["version"] == 2
        assert resp.json()["parent_version"] == 1

    @pytest.mark.asyncio
    async def test_latest_of_empty_store_is_not_found(
        self, client: AsyncClient, live: Path
    ) -> None:
        resp = await client.get("/api/stores/demo/checkpoints/latest")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_and_invalid_versions(self, client: AsyncClient, live: Path) -> None:
        assert (await client.get("/api/stores/demo/checkpoints/9")).status_code == 404
        assert (await client.get("/api/stores/demo/checkpoints/abc")).status_code == 422
        assert (await client.get("/api/stores/demo/checkpoints/0")).status_code == 422

    @pytest.mark.asyncio
    async def test_skip_if_unchanged_returns_200(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        resp = await client.post(
            "/api/stores/demo/checkpoints", json={"skip_if_unchanged": True}
        )
        assert resp.status_code == 200
        assert resp.json() == {"created": False, "checkpoint": None}

    @pytest.mark.asyncio
    async def test_delete_never_reuses_versions(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        await _checkpoint(client)
        resp = await client.delete("/api/stores/demo/checkpoints/2")
        assert resp.status_code == 204
        assert (await client.get("/api/stores/demo/checkpoints/2")).status_code == 404
        assert (await client.delete("/api/stores/demo/checkpoints/2")).status_code == 404
        assert await _checkpoint(client) == 3


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_with_default_pre_restore(
        self, client: AsyncClient, live: Path
    ) -> None:
        await _checkpoint(client)
        saved = read_tree(live)
        write_file(live, "a.txt", "edited\n")

        resp = await client.post("/api/stores/demo/checkpoints/1/restore")
        assert resp.status_code == 200
        assert resp.json() == {"version": 1, "pre_restore_version": 2}
        assert read_tree(live) == saved

        resp = await client.get("/api/stores/demo/checkpoints/2")
        assert resp.json()["message"] == "pre-restore"

    @pytest.mark.asyncio
    async def test_restore_without_pre_restore(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        write_file(live, "a.txt", "edited\n")
        resp = await client.post(
            "/api/stores/demo/checkpoints/v1/restore", json={"pre_restore": False}
        )
        assert resp.json() == {"version": 1, "pre_restore_version": None}
        stores = (await client.get("/api/stores")).json()
        assert stores[0]["checkpoint_count"] == 1
        assert stores[0]["head_version"] == 1

    @pytest.mark.asyncio
    async def test_restore_unknown_version(self, client: AsyncClient, live: Path) -> None:
        resp = await client.post("/api/stores/demo/checkpoints/5/restore")
        assert resp.status_code == 404


class TestDiffAndStatus:
    @pytest.mark.asyncio
    async def test_diff_between_versions(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        write_file(live, "a.txt", "hello\nworld\n", BASE_MTIME_NS)
        write_file(live, "src/util.py", "x = 1\n")
        (live / "src" / "main.py").unlink()
        await _checkpoint(client)

        resp = await client.get("/api/stores/demo/diff/v1/v2", params={"lines": True})
        assert resp.status_code == 200
        data = resp.json()
        assert (data["base"], data["target"]) == ("v1", "v2")
        assert data["summary"] == {"added": 1, "modified": 1, "deleted": 1}
        kinds = {c["path"]: c["change_type"] for c in data["changes"]}
        assert kinds == {"a.txt": "modified", "src/main.py": "deleted", "src/util.py": "added"}
        assert data["directories"] == {"src": "modified"}
        a = next(c for c in data["changes"] if c["path"] == "a.txt")
        assert (a["lines_added"], a["lines_deleted"]) == (1, 0)

    @pytest.mark.asyncio
    async def test_diff_against_current(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        write_file(live, "docs/new.md", "# new\n")
        resp = await client.get("/api/stores/demo/diff/1/current")
        data = resp.json()
        assert data["target"] == "current"
        assert data["directories"] == {"docs": "added"}

    @pytest.mark.asyncio
    async def test_file_diff(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        write_file(live, "a.txt", "goodbye\n")
        resp = await client.get("/api/stores/demo/diff/1/0/file", params={"path": "a.txt"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["binary"] is False
        assert "+goodbye" in data["diff"]
        assert (data["lines_added"], data["lines_deleted"]) == (1, 1)

    @pytest.mark.asyncio
    async def test_file_diff_rejects_traversal(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        resp = await client.get(
            "/api/stores/demo/diff/1/0/file", params={"path": "../../etc/passwd"}
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_file_diff_of_missing_file(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        resp = await client.get("/api/stores/demo/diff/1/0/file", params={"path": "ghost.txt"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_status(self, client: AsyncClient, live: Path) -> None:
        resp = await client.get("/api/stores/demo/status")
        assert resp.json() == {"has_changes": True, "latest_version": None, "diff": None}

        await _checkpoint(client)
        resp = await client.get("/api/stores/demo/status")
        data = resp.json()
        assert data["has_changes"] is False
        assert data["latest_version"] == 1

        write_file(live, "later.txt", "x")
        data = (await client.get("/api/stores/demo/status")).json()
        assert data["has_changes"] is True
        assert [c["path"] for c in data["diff"]["changes"]] == ["later.txt"]


class TestHashLookup:
    @pytest.mark.asyncio
    async def test_find_checkpoints_by_hash(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        write_file(live, "a.txt", "changed\n")
        await _checkpoint(client)
        digest = hashlib.sha256(b"print('hi')\n").hexdigest()
        resp = await client.get(f"/api/stores/demo/files/{digest}")
        assert resp.status_code == 200
        assert resp.json() == {"content_hash": digest, "versions": [2, 1]}

    @pytest.mark.asyncio
    async def test_malformed_hash(self, client: AsyncClient, live: Path) -> None:
        resp = await client.get("/api/stores/demo/files/not-a-hash")
        assert resp.status_code == 422


class TestTimeline:
    @pytest.mark.asyncio
    async def test_index_timeline_manifest_and_delta(
        self, client: AsyncClient, live: Path
    ) -> None:
        await _checkpoint(client, "base")
        write_file(live, "b.txt", "new\n")
        await _checkpoint(client, "add b")

        resp = await client.get("/api/stores/demo/index")
        assert resp.status_code == 200
        index = resp.json()
        assert index["store_name"] == "demo"
        assert sorted(index["manifests"]) == ["v1", "v2"]
        assert "v1:v2" in index["deltas"]

        timeline = (await client.get("/api/stores/demo/timeline")).json()
        assert [(e["version"], e["message"]) for e in timeline] == [(1, "base"), (2, "add b")]
        assert timeline[1]["summary"] == {"added": 1, "modified": 0, "deleted": 0}

        manifest = (await client.get("/api/stores/demo/manifest/v2")).json()
        assert sorted(manifest["files"]) == ["a.txt", "b.txt", "src/main.py"]

        delta = (await client.get("/api/stores/demo/delta/1/2")).json()
        assert delta["added"] == ["b.txt"]
        assert delta["deleted"] == []

    @pytest.mark.asyncio
    async def test_missing_manifest(self, client: AsyncClient, live: Path) -> None:
        await _checkpoint(client)
        assert (await client.get("/api/stores/demo/manifest/7")).status_code == 404
        assert (await client.get("/api/stores/demo/delta/1/7")).status_code == 404
