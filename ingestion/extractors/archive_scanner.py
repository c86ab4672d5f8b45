"""
Locates export.xml inside an uploaded export.zip without extracting it
"""

from typing import IO, List, Optional
from pathlib import PurePosixPath
import logging
import zipfile

from core.exceptions import InvalidArchiveError, ExportNotFoundError

logger = logging.getLogger(__name__)

EXPORT_NAME = "export.xml"
CDA_EXPORT_NAME = "export_cda.xml"

# How many entry names to remember, and how many to put in the error message
ENTRIES_REMEMBERED = 30
ENTRIES_REPORTED = 10


def is_junk_entry(name: str) -> bool:
    """macOS metadata that sits next to real files in user-made zips"""
    path = PurePosixPath(name)
    if "__MACOSX" in path.parts:
        return True
    return path.name == ".DS_Store" or path.name.startswith("._")


def locate_export(archive: zipfile.ZipFile) -> zipfile.ZipInfo:
    """
    Find the export.xml entry with a single pass over the entry table.

    Matches the basename case-insensitively at any depth. export_cda.xml is
    noted for the error message but never returned.

    Raises:
        ExportNotFoundError: if no export.xml entry exists
    """
    seen: List[str] = []
    total = 0
    cda_entry: Optional[str] = None

    for info in archive.infolist():
        total += 1
        if len(seen) < ENTRIES_REMEMBERED:
            seen.append(info.filename)

        if info.is_dir() or is_junk_entry(info.filename):
            continue

        basename = PurePosixPath(info.filename).name.lower()
        if basename == EXPORT_NAME:
            return info
        if basename == CDA_EXPORT_NAME and cda_entry is None:
            cda_entry = info.filename
            logger.debug(f"Found {cda_entry}, still looking for {EXPORT_NAME}")

    sample = ", ".join(seen[:ENTRIES_REPORTED]) or "(empty archive)"
    if cda_entry:
        message = (
            f"Archive contains {cda_entry} but no {EXPORT_NAME}; "
            f"upload the full Apple Health export. Entries: {sample}"
        )
    else:
        message = f"No {EXPORT_NAME} found in archive ({total} entries). Entries: {sample}"

    raise ExportNotFoundError(
        message,
        context={
            "found_export_cda": cda_entry is not None,
            "entries_seen": seen[:ENTRIES_REPORTED],
            "total_entries": total,
        }
    )


class ExportArchive:
    """
    Context manager exposing export.xml as a byte stream read straight
    from the zip container.

    Usage:
        with ExportArchive(zip_path) as export:
            result = parse_export(export.stream)

    Both the entry stream and the container are closed on exit.
    """

    def __init__(self, zip_path: str):
        self.zip_path = str(zip_path)
        self.entry_name: Optional[str] = None
        self.size: Optional[int] = None
        self.stream: Optional[IO[bytes]] = None
        self._archive: Optional[zipfile.ZipFile] = None

    def __enter__(self) -> "ExportArchive":
        try:
            self._archive = zipfile.ZipFile(self.zip_path)
        except (zipfile.BadZipFile, OSError) as e:
            raise InvalidArchiveError(
                "Uploaded file is not a valid zip archive",
                context={"zip_path": self.zip_path},
                original_exception=e
            )

        try:
            info = locate_export(self._archive)
            self.stream = self._archive.open(info)
        except (zipfile.BadZipFile, NotImplementedError) as e:
            self._archive.close()
            raise InvalidArchiveError(
                f"Cannot read export entry from archive: {e}",
                context={"zip_path": self.zip_path},
                original_exception=e
            )
        except BaseException:
            self._archive.close()
            raise

        self.entry_name = info.filename
        self.size = info.file_size
        logger.info(f"Located {self.entry_name} ({self.size / (1024 * 1024):.1f} MB uncompressed)")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self.stream is not None:
            self.stream.close()
            self.stream = None
        if self._archive is not None:
            self._archive.close()
            self._archive = None