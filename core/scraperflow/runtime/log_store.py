"""File-based storage for run logs.

Each run gets its own directory under ``runs/``. There is no shared index:
``list_runs()`` scans the directory and loads summary.json from each run, so
parallel runs (even in different processes) never contend on one file.

Events use JSONL (one JSON object per line), appended as they are emitted, so
the log is on disk even if the process dies mid-run. The summary is written
once, atomically, when the run ends.

Storage layout::

    {base_path}/
      runs/
        {run_id}/
          events.jsonl     # appended per event
          summary.json     # written once at run end
          cancel.request   # present when another process asked to cancel
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class RunLogStore:
    """Persists run events and summaries. Safe across runs via per-run directories."""

    def __init__(self, base_path: Path) -> None:
        self._base_path = Path(base_path)

    @property
    def runs_dir(self) -> Path:
        return self._base_path / "runs"

    def _get_run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def has_run(self, run_id: str) -> bool:
        return self._get_run_dir(run_id).is_dir()

    # -------------------------------------------------------------------
    # Incremental write (sync, called from the event log)
    # -------------------------------------------------------------------

    def ensure_run_dir(self, run_id: str) -> None:
        """Create the run directory immediately."""
        self._get_run_dir(run_id).mkdir(parents=True, exist_ok=True)

    def append_event(self, run_id: str, event: dict[str, Any]) -> None:
        """Append one JSONL line to events.jsonl. Sync."""
        path = self._get_run_dir(run_id) / "events.jsonl"
        line = json.dumps(event, ensure_ascii=False, default=str) + "\n"
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)

    # -------------------------------------------------------------------
    # Cross-process cancellation
    # -------------------------------------------------------------------

    def request_cancel(self, run_id: str) -> bool:
        """Drop a cancel marker into the run directory. False if the run is unknown."""
        run_dir = self._get_run_dir(run_id)
        if not run_dir.is_dir():
            return False
        (run_dir / "cancel.request").touch()
        return True

    def cancel_requested(self, run_id: str) -> bool:
        return (self._get_run_dir(run_id) / "cancel.request").exists()

    # -------------------------------------------------------------------
    # Summary write (async, called at run end)
    # -------------------------------------------------------------------

    async def save_summary(self, run_id: str, summary: dict[str, Any]) -> None:
        """Write summary.json atomically."""
        run_dir = self._get_run_dir(run_id)
        await asyncio.to_thread(run_dir.mkdir, parents=True, exist_ok=True)
        await self._write_json(run_dir / "summary.json", summary)

    # -------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------

    async def load_summary(self, run_id: str) -> dict[str, Any] | None:
        return await self._read_json(self._get_run_dir(run_id) / "summary.json")

    async def load_events(self, run_id: str) -> list[dict[str, Any]]:
        path = self._get_run_dir(run_id) / "events.jsonl"
        return await asyncio.to_thread(_read_jsonl, path)

    async def list_runs(self, status: str = "", limit: int = 20) -> list[dict[str, Any]]:
        """Load summaries, newest first.

        Directories without summary.json are in-progress runs and get a
        synthetic summary with status "running".
        """
        run_ids = await asyncio.to_thread(self._scan_run_dirs)
        summaries: list[dict[str, Any]] = []
        for run_id in run_ids:
            summary = await self.load_summary(run_id)
            if summary is None:
                summary = {"run_id": run_id, "status": "running", "started_at": None}
            if status and summary.get("status") != status:
                continue
            summaries.append(summary)

        # Run ids start with a UTC timestamp, so they sort chronologically.
        summaries.sort(key=lambda s: s["run_id"], reverse=True)
        return summaries[:limit]

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _scan_run_dirs(self) -> list[str]:
        if not self.runs_dir.exists():
            return []
        return [d.name for d in self.runs_dir.iterdir() if d.is_dir()]

    @staticmethod
    async def _write_json(path: Path, data: dict) -> None:
        """Write JSON atomically: write to .tmp then rename."""
        tmp = path.with_suffix(".tmp")
        content = json.dumps(data, indent=2, ensure_ascii=False, default=str)

        def _write() -> None:
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)

        await asyncio.to_thread(_write)

    @staticmethod
    async def _read_json(path: Path) -> dict | None:
        """Read and parse a JSON file. Returns None if missing or corrupt."""

        def _read() -> dict | None:
            if not path.exists():
                return None
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to read %s: %s", path, e)
                return None

        return await asyncio.to_thread(_read)


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Parse a JSONL file, skipping blank and corrupt lines (partial writes)."""
    results: list[dict[str, Any]] = []
    if not path.exists():
        return results
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    results.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning("Skipping corrupt JSONL line in %s: %s", path, e)
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
    return results
