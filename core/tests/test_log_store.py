"""Tests for RunLogStore: JSONL events, atomic summaries and cancel markers."""

from pathlib import Path

import pytest

from scraperflow.runtime import RunLogStore


class TestRunLogStore:
    def test_ensure_run_dir_creates_directory(self, tmp_path: Path):
        store = RunLogStore(tmp_path / "logs")
        store.ensure_run_dir("run_1")
        assert (tmp_path / "logs" / "runs" / "run_1").is_dir()
        assert store.has_run("run_1")
        assert not store.has_run("run_2")

    @pytest.mark.asyncio
    async def test_append_and_load_events(self, tmp_path: Path):
        store = RunLogStore(tmp_path)
        store.ensure_run_dir("run_1")
        store.append_event("run_1", {"seq": 1, "type": "run_started"})
        store.append_event("run_1", {"seq": 2, "type": "run_ended"})

        events = await store.load_events("run_1")
        assert [e["seq"] for e in events] == [1, 2]

    @pytest.mark.asyncio
    async def test_corrupt_lines_skipped(self, tmp_path: Path):
        store = RunLogStore(tmp_path)
        store.ensure_run_dir("run_1")
        store.append_event("run_1", {"seq": 1})
        with open(tmp_path / "runs" / "run_1" / "events.jsonl", "a") as f:
            f.write('{"seq": 2, "trunc\n\n')

        events = await store.load_events("run_1")
        assert events == [{"seq": 1}]

    @pytest.mark.asyncio
    async def test_load_events_missing_run(self, tmp_path: Path):
        assert await RunLogStore(tmp_path).load_events("nope") == []

    @pytest.mark.asyncio
    async def test_save_and_load_summary(self, tmp_path: Path):
        store = RunLogStore(tmp_path)
        await store.save_summary("run_1", {"run_id": "run_1", "status": "succeeded"})

        summary = await store.load_summary("run_1")
        assert summary == {"run_id": "run_1", "status": "succeeded"}
        assert not (tmp_path / "runs" / "run_1" / "summary.tmp").exists()

    @pytest.mark.asyncio
    async def test_corrupt_summary_returns_none(self, tmp_path: Path):
        store = RunLogStore(tmp_path)
        store.ensure_run_dir("run_1")
        (tmp_path / "runs" / "run_1" / "summary.json").write_text("{not json")
        assert await store.load_summary("run_1") is None

    @pytest.mark.asyncio
    async def test_list_runs_newest_first(self, tmp_path: Path):
        store = RunLogStore(tmp_path)
        await store.save_summary("20260101T000000_a", {"run_id": "20260101T000000_a", "status": "failed"})
        await store.save_summary(
            "20260102T000000_b", {"run_id": "20260102T000000_b", "status": "succeeded"}
        )
        store.ensure_run_dir("20260103T000000_c")

        runs = await store.list_runs()
        assert [r["run_id"] for r in runs] == [
            "20260103T000000_c",
            "20260102T000000_b",
            "20260101T000000_a",
        ]
        assert runs[0]["status"] == "running"

        failed = await store.list_runs(status="failed")
        assert [r["run_id"] for r in failed] == ["20260101T000000_a"]
        assert len(await store.list_runs(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_list_runs_empty(self, tmp_path: Path):
        assert await RunLogStore(tmp_path / "missing").list_runs() == []

    def test_cancel_marker(self, tmp_path: Path):
        store = RunLogStore(tmp_path)
        assert store.request_cancel("run_1") is False
        store.ensure_run_dir("run_1")
        assert not store.cancel_requested("run_1")
        assert store.request_cancel("run_1") is True
        assert store.cancel_requested("run_1")
