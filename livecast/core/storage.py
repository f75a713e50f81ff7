"""Recording file storage for livecast.

This module names finished recordings and writes them to the recording
directory, and lists or deletes what is there.
"""

import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

RECORDING_EXTENSIONS = ('mp3', 'aac', 'ogg', 'webm', 'mka')

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_.\-]')


def format_file_name(pattern: str, when: datetime, extension: str) -> str:
    """Expand a file name pattern for a recording.

    ``%Y %m %d %H %M %S`` are replaced with the zero-padded fields of *when*;
    every character outside ``[A-Za-z0-9_.-]`` then becomes ``_``.

    Example::

        >>> format_file_name('show_%Y%m%d-%H%M%S', datetime(2024, 1, 5, 3, 4, 5), 'mp3')
        'show_20240105-030405.mp3'
    """
    replacements = {
        '%Y': f'{when.year:04d}',
        '%m': f'{when.month:02d}',
        '%d': f'{when.day:02d}',
        '%H': f'{when.hour:02d}',
        '%M': f'{when.minute:02d}',
        '%S': f'{when.second:02d}',
    }
    name = pattern
    for token, value in replacements.items():
        name = name.replace(token, value)
    name = _UNSAFE_CHARS.sub('_', name)
    return f'{name}.{extension}'


class StorageManager:
    """Manages recording files on disk."""

    def __init__(self, storage_dir: str = "recordings/") -> None:
        """Initialize storage manager.

        Args:
            storage_dir: Directory that receives finished recordings
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def save_recording(
        self,
        data: bytes,
        pattern: str,
        extension: str,
        when: Optional[datetime] = None,
    ) -> Path:
        """Write a finished recording and return its path.

        An existing file with the same name gets a numeric suffix instead of
        being overwritten.
        """
        when = when or datetime.now()
        file_name = format_file_name(pattern, when, extension)
        path = self.storage_dir / file_name
        counter = 1
        while path.exists():
            path = self.storage_dir / f'{Path(file_name).stem}_{counter}.{extension}'
            counter += 1
        path.write_bytes(data)
        logger.info(f'Saved recording: {path} ({len(data)} bytes)')
        return path

    def list_recordings(self) -> List[Dict[str, Any]]:
        """List all stored recordings.

        Returns:
            List of recording metadata dictionaries, oldest first
        """
        recordings = []
        try:
            for audio_file in sorted(self.storage_dir.iterdir()):
                if audio_file.suffix.lstrip('.') not in RECORDING_EXTENSIONS:
                    continue
                recordings.append(self._describe(audio_file))
        except OSError as e:
            logger.error(f"Error listing recordings: {e}")

        return sorted(recordings, key=lambda r: r["created"])

    def get_recording_metadata(self, filename: str) -> Optional[Dict[str, Any]]:
        """Get metadata for a specific recording, or ``None`` if not found."""
        file_path = self.storage_dir / filename
        if file_path.exists():
            return self._describe(file_path)
        return None

    def delete_recording(self, filename: str) -> bool:
        """Delete a recording file.

        Returns:
            True if successful, False otherwise
        """
        try:
            file_path = self.storage_dir / filename
            if file_path.exists():
                file_path.unlink()
                logger.info(f"Deleted recording: {filename}")
                return True
        except OSError as e:
            logger.error(f"Error deleting recording: {e}")

        return False

    @staticmethod
    def _describe(path: Path) -> Dict[str, Any]:
        stat = path.stat()
        return {
            "name": path.stem,
            "path": str(path),
            "format": path.suffix.lstrip('.'),
            "size": stat.st_size,
            "created": stat.st_mtime,
        }
