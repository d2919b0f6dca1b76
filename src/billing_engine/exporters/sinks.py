"""Destinations for generated export files."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol


class ExportSink(Protocol):
    """Protocol for export file destinations."""

    async def write(self, file_name: str, data: bytes) -> str:
        """Persist the file and return its location."""
        ...


class LocalDirectorySink:
    """Writes export files into a local directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    async def write(self, file_name: str, data: bytes) -> str:
        path = self.directory / file_name
        await asyncio.to_thread(self._write, path, data)
        return str(path)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so a reader never sees a partial file
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)


class InMemoryExportSink:
    """Keeps export files in memory (tests and local development)."""

    def __init__(self, error: Exception | None = None, delay_seconds: float = 0.0):
        self.files: dict[str, bytes] = {}
        self.error = error
        self.delay_seconds = delay_seconds

    async def write(self, file_name: str, data: bytes) -> str:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        self.files[file_name] = data
        return f"memory://{file_name}"
