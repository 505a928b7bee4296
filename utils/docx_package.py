import io
import logging
import os
import re
import shutil
import tempfile
import zipfile
import zlib
from typing import List, Tuple, Union

import requests

from utils.fill_errors import (
    CannotCreateOutputArchiveError,
    InvalidArchiveError,
    TemplateDownloadError,
    ZipSlipError,
)

PathLike = Union[str, "os.PathLike[str]"]

CONTENT_TYPES_PART = "[Content_Types].xml"

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
_SEPARATORS = re.compile(r"[\\/]")


class DocxPackage:
    """
    Safe access to the ZIP container of a DOCX file.

    Extraction refuses entries that would escape the destination directory
    (zip slip) and archives that look like ZIP bombs. Repacking writes a fresh
    archive next to the destination and only then moves it into place.
    """

    def __init__(self, max_file_size: int = 100 * 1024 * 1024,
                 max_zip_files: int = 10000,
                 max_uncompressed_size: int = 1024 * 1024 * 1024):
        self.logger = logging.getLogger(__name__)

        # ZIP bomb protection
        self.max_file_size = max_file_size
        self.max_zip_files = max_zip_files
        self.max_uncompressed_size = max_uncompressed_size

    def extract(self, archive_path: PathLike, destination: PathLike) -> str:
        """
        Extract every entry of the archive into an existing directory.

        All entry paths are checked before the first byte is written, so a
        malicious entry aborts the extraction without leaving files behind
        outside ``destination``.

        Returns:
            The real path of the extraction root.

        Raises:
            InvalidArchiveError: the archive cannot be opened or read.
            ZipSlipError: an entry path escapes the extraction root.
        """
        root = os.path.realpath(os.fspath(destination))
        archive_path = os.fspath(archive_path)

        try:
            file_size = os.path.getsize(archive_path)
        except OSError as e:
            raise InvalidArchiveError(f"cannot open {archive_path}: {e}")
        if file_size > self.max_file_size:
            raise InvalidArchiveError(
                f"file too large (>{self.max_file_size // (1024 * 1024)}MB)"
            )

        try:
            with zipfile.ZipFile(archive_path, "r") as archive:
                self.validate_archive(archive)
                plan = [
                    (info, self._safe_target_path(root, info.filename))
                    for info in archive.infolist()
                ]
                self.logger.debug(f"[DocxPackage] Extracting {len(plan)} entries into {root}")
                for info, target in plan:
                    if target is None:
                        continue
                    if info.is_dir():
                        os.makedirs(target, exist_ok=True)
                        continue
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    with archive.open(info, "r") as source, open(target, "wb") as sink:
                        shutil.copyfileobj(source, sink)
        except zipfile.BadZipFile as e:
            raise InvalidArchiveError(f"corrupted ZIP file: {e}")
        except (OSError, EOFError, RuntimeError, NotImplementedError, zipfile.LargeZipFile, zlib.error) as e:
            raise InvalidArchiveError(str(e))

        return root

    def validate_archive(self, archive: zipfile.ZipFile) -> None:
        """Reject archives with too many entries or too much declared content."""
        infos = archive.infolist()
        if len(infos) > self.max_zip_files:
            self.logger.warning(f"[DocxPackage] ZIP file contains too many files: {len(infos)} > {self.max_zip_files}")
            raise InvalidArchiveError(f"too many entries ({len(infos)})")

        total_uncompressed_size = 0
        for info in infos:
            total_uncompressed_size += info.file_size
            if total_uncompressed_size > self.max_uncompressed_size:
                self.logger.warning(f"[DocxPackage] ZIP file uncompressed size too large: {total_uncompressed_size}")
                raise InvalidArchiveError("uncompressed content too large")

    def _safe_target_path(self, root: str, entry_path: str):
        """Map an entry name to a path inside ``root`` or raise ZipSlipError.

        Returns None for entries that name the root itself.
        """
        if entry_path.startswith(("/", "\\")) or _DRIVE_PREFIX.match(entry_path):
            self.logger.error(f"[DocxPackage] Absolute entry path rejected: {entry_path}")
            raise ZipSlipError(entry_path)

        segments = [segment for segment in _SEPARATORS.split(entry_path) if segment not in ("", ".")]
        if ".." in segments:
            self.logger.error(f"[DocxPackage] Traversal entry path rejected: {entry_path}")
            raise ZipSlipError(entry_path)
        if not segments:
            return None

        target = os.path.realpath(os.path.join(root, *segments))
        if target != root and not target.startswith(root + os.sep):
            self.logger.error(f"[DocxPackage] Entry resolves outside extraction root: {entry_path}")
            raise ZipSlipError(entry_path)
        return target

    def repack(self, source_dir: PathLike, output_path: PathLike) -> int:
        """
        Zip every regular file under ``source_dir`` into ``output_path``.

        ``[Content_Types].xml`` goes first, the remaining files follow in
        sorted order. A pre-existing file at ``output_path`` is replaced only
        once the new archive is complete.

        Returns:
            Number of entries written.
        """
        source_dir = os.fspath(source_dir)
        output_path = os.fspath(output_path)
        files = self._collect_files(source_dir)

        output_dir = os.path.dirname(os.path.abspath(output_path))
        try:
            fd, temp_path = tempfile.mkstemp(prefix=".docx-filler-", suffix=".partial", dir=output_dir)
        except OSError as e:
            self.logger.error(f"[DocxPackage] Cannot create output archive {output_path}: {e}")
            raise CannotCreateOutputArchiveError(output_path, str(e))

        try:
            with os.fdopen(fd, "wb") as handle:
                with zipfile.ZipFile(handle, "w", zipfile.ZIP_DEFLATED) as archive:
                    for rel_path, full_path in files:
                        archive.write(full_path, rel_path)
            if os.path.exists(output_path):
                shutil.copymode(output_path, temp_path)
            else:
                os.chmod(temp_path, 0o644)
            os.replace(temp_path, output_path)
        except OSError as e:
            self.logger.error(f"[DocxPackage] Cannot create output archive {output_path}: {e}")
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise CannotCreateOutputArchiveError(output_path, str(e))

        self.logger.debug(f"[DocxPackage] Wrote {len(files)} entries to {output_path}")
        return len(files)

    def _collect_files(self, source_dir: str) -> List[Tuple[str, str]]:
        files = []
        for current, dirs, filenames in os.walk(source_dir):
            dirs.sort()
            for filename in filenames:
                full_path = os.path.join(current, filename)
                if os.path.islink(full_path) or not os.path.isfile(full_path):
                    continue
                rel_path = os.path.relpath(full_path, source_dir).replace(os.sep, "/")
                files.append((rel_path, full_path))
        files.sort(key=lambda item: (item[0] != CONTENT_TYPES_PART, item[0]))
        return files

    @staticmethod
    def download_template(url: str, timeout: float = 30) -> bytes:
        """Download template bytes from URL."""
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
            return response.content
        except requests.RequestException as e:
            raise TemplateDownloadError(url, str(e))

    @staticmethod
    def detect_docx(file_data: bytes) -> bool:
        """Check that bytes are a ZIP archive holding a WordprocessingML document."""
        if not file_data or not file_data.startswith(b"PK"):
            return False
        try:
            with zipfile.ZipFile(io.BytesIO(file_data), "r") as archive:
                names = set(archive.namelist())
        except zipfile.BadZipFile:
            return False
        return CONTENT_TYPES_PART in names and any(
            name.startswith("word/") and name.endswith(".xml") for name in names
        )
