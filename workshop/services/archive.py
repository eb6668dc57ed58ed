# services/archive.py
"""Zip-backed archive codec: write named entries, read them back by name."""
import io
import zipfile
import zlib
from typing import List, Optional

from workshop.errors import InvalidArchiveError


class ArchiveWriter:
    def __init__(self) -> None:
        self._buffer = io.BytesIO()
        self._zip = zipfile.ZipFile(self._buffer, "w", compression=zipfile.ZIP_DEFLATED)

    def write(self, name: str, data: bytes) -> None:
        self._zip.writestr(name, data)

    def finish(self) -> bytes:
        self._zip.close()
        return self._buffer.getvalue()


class ArchiveReader:
    def __init__(self, content: bytes) -> None:
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(content), "r")
        except (zipfile.BadZipFile, ValueError) as exc:
            raise InvalidArchiveError("Invalid backup file: not a zip archive") from exc

    def names(self) -> List[str]:
        return self._zip.namelist()

    def read(self, name: str) -> Optional[bytes]:
        try:
            return self._zip.read(name)
        except KeyError:
            return None
        except (zipfile.BadZipFile, zlib.error, NotImplementedError) as exc:
            raise InvalidArchiveError(f"Invalid backup file: entry {name} is corrupt") from exc

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> "ArchiveReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
