from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

logger = logging.getLogger("companion_bot")

TEMP_PREFIX = "temp_"
SAVED_PREFIX = "tts_"


@dataclass(frozen=True, slots=True)
class AudioFile:
    id: str
    filename: str
    path: Path
    audio_format: str
    size: int
    created_at: float
    text: str


class AudioFileManager:
    """Owns the audio directory: short-lived temp files and tracked saved files.

    Temp files (`temp_*`) exist only for one playback and are removed right
    after it or by `cleanup_temp_files`. Saved files are tracked in memory
    by id for the life of the process.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self._files: dict[str, AudioFile] = {}

    def init(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        logger.info("Audio directory ready: %s", self.directory)

    @staticmethod
    def _stamp() -> str:
        return f"{int(time.time() * 1000)}_{uuid4().hex[:8]}"

    async def save_audio_file(self, audio: bytes, audio_format: str, text: str) -> AudioFile:
        file_id = f"{SAVED_PREFIX}{self._stamp()}"
        filename = f"{file_id}.{audio_format}"
        path = self.directory / filename
        await asyncio.to_thread(self._write, path, audio)
        record = AudioFile(
            id=file_id,
            filename=filename,
            path=path,
            audio_format=audio_format,
            size=len(audio),
            created_at=time.time(),
            text=text,
        )
        self._files[file_id] = record
        logger.info("Audio file saved: %s (%s bytes)", filename, len(audio))
        return record

    async def create_temp_file(self, audio: bytes, audio_format: str) -> Path:
        path = self.directory / f"{TEMP_PREFIX}{self._stamp()}.{audio_format}"
        await asyncio.to_thread(self._write, path, audio)
        logger.debug("Created temporary audio file: %s", path.name)
        return path

    def _write(self, path: Path, audio: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(audio)

    def delete_temp_file(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError:
            logger.warning("Failed to delete temp audio file: %s", path)
            return False

    def get_audio_file(self, file_id: str) -> Optional[AudioFile]:
        return self._files.get(file_id)

    async def get_audio_data(self, file_id: str) -> Optional[bytes]:
        record = self._files.get(file_id)
        if record is None:
            return None
        try:
            return await asyncio.to_thread(record.path.read_bytes)
        except OSError:
            logger.warning("Failed to read audio file %s", file_id)
            return None

    def exists(self, file_id: str) -> bool:
        record = self._files.get(file_id)
        return record is not None and record.path.exists()

    def delete_audio_file(self, file_id: str) -> bool:
        record = self._files.get(file_id)
        if record is None:
            logger.warning("Audio file not found for deletion: %s", file_id)
            return False
        try:
            record.path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Failed to delete audio file %s", record.filename)
            return False
        del self._files[file_id]
        logger.info("Audio file deleted: %s", record.filename)
        return True

    def list_audio_files(self) -> List[AudioFile]:
        return list(self._files.values())

    def cleanup_old_files(self, older_than_hours: float = 24) -> int:
        cutoff = time.time() - older_than_hours * 3600
        stale = [file_id for file_id, record in self._files.items() if record.created_at < cutoff]
        deleted = sum(1 for file_id in stale if self.delete_audio_file(file_id))
        if deleted:
            logger.info("Cleaned up %s old audio files", deleted)
        return deleted

    def cleanup_temp_files(self, older_than_seconds: float = 0) -> int:
        if not self.directory.exists():
            return 0
        cutoff = time.time() - older_than_seconds
        deleted = 0
        for path in self.directory.glob(f"{TEMP_PREFIX}*"):
            try:
                stale = path.is_file() and path.stat().st_mtime <= cutoff
            except OSError:
                continue
            if stale and self.delete_temp_file(path):
                deleted += 1
        if deleted:
            logger.info("Cleaned up %s temporary audio files", deleted)
        return deleted

    def stats(self) -> Dict[str, Any]:
        files = list(self._files.values())
        total = sum(record.size for record in files)
        format_counts: dict[str, int] = {}
        for record in files:
            format_counts[record.audio_format] = format_counts.get(record.audio_format, 0) + 1
        return {
            "total_files": len(files),
            "total_size_bytes": total,
            "total_size_mb": round(total / (1024 * 1024), 2),
            "format_counts": format_counts,
            "directory": str(self.directory),
        }
