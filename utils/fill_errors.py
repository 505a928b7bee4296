from typing import List


class DocxFillError(Exception):
    """Base class for every failure raised while filling a DOCX template."""


class TemplateNotFoundError(DocxFillError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Template file not found at: {path}")


class InvalidValuesError(DocxFillError):
    pass


class InvalidArchiveError(DocxFillError):
    def __init__(self, detail: str = ""):
        self.detail = detail
        message = "Invalid DOCX archive."
        if detail:
            message = f"Invalid DOCX archive: {detail}"
        super().__init__(message)


class MissingMainDocumentError(DocxFillError):
    def __init__(self, part: str = "word/document.xml"):
        self.part = part
        super().__init__(f"DOCX does not contain main document part {part}.")


class CannotCreateOutputArchiveError(DocxFillError):
    def __init__(self, path: str, detail: str = ""):
        self.path = path
        message = f"Cannot create output DOCX archive at: {path}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ZipSlipError(DocxFillError):
    """An archive entry would be written outside the extraction root."""

    def __init__(self, entry_path: str):
        self.entry_path = entry_path
        super().__init__(f"Unsafe ZIP entry path detected (zip slip): {entry_path}")


class PartProcessingError(DocxFillError):
    """A single XML part could not be read, parsed or written back.

    The orchestrator downgrades this to a warning and leaves the part as is.
    """

    def __init__(self, part: str, cause: Exception):
        self.part = part
        self.cause = cause
        super().__init__(f"Failed to process XML part {part}: {cause}")


class MissingKeysError(DocxFillError):
    def __init__(self, keys: List[str]):
        self.keys = sorted(keys)
        super().__init__(
            f"Template contains placeholders without values: {', '.join(self.keys)}."
        )


class TemplateDownloadError(DocxFillError):
    def __init__(self, url: str, detail: str):
        self.url = url
        super().__init__(f"Failed to download template from {url}: {detail}")
