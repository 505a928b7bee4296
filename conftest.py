import zipfile
from pathlib import Path
from typing import Dict, List, Union
from xml.sax.saxutils import escape

import pytest
from lxml import etree

W = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
NS = {"w": W}

CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
    '<Default Extension="xml" ContentType="application/xml"/>'
    '<Override PartName="/word/document.xml" '
    'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
    '</Types>'
)

PACKAGE_RELS = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
    '<Relationship Id="rId1" '
    'Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" '
    'Target="word/document.xml"/>'
    '</Relationships>'
)


def run(text: str, bold: bool = False) -> str:
    props = "<w:rPr><w:b/></w:rPr>" if bold else ""
    space = ' xml:space="preserve"' if text != text.strip() else ""
    return f"<w:r>{props}<w:t{space}>{escape(text)}</w:t></w:r>"


def paragraph(*runs: str) -> str:
    """Build a <w:p>; plain strings become runs, markup starting with '<w:' is kept."""
    return "<w:p>" + "".join(r if r.startswith("<w:") else run(r) for r in runs) + "</w:p>"


def wordml_part(body: str, root: str = "document") -> str:
    if root == "document":
        body = f"<w:body>{body}</w:body>"
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        f'<w:{root} xmlns:w="{W}">{body}</w:{root}>'
    )


def write_docx(path: Path, parts: Dict[str, Union[str, bytes]]) -> Path:
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in parts.items():
            archive.writestr(name, content)
    return path


def mark_entries_encrypted(path: Path) -> Path:
    """Set the 'encrypted' flag bit on every central directory record."""
    with zipfile.ZipFile(path, "r") as archive:
        central_dir = archive.start_dir
    data = bytearray(path.read_bytes())
    position = data.find(b"PK\x01\x02", central_dir)
    while position != -1:
        data[position + 8] |= 0x01
        position = data.find(b"PK\x01\x02", position + 4)
    path.write_bytes(bytes(data))
    return path


def read_part(path: Path, part: str) -> bytes:
    with zipfile.ZipFile(path, "r") as archive:
        return archive.read(part)


def paragraph_texts(xml: bytes) -> List[str]:
    root = etree.fromstring(xml)
    return ["".join(t.text or "" for t in p.iter(f"{{{W}}}t")) for p in root.iter(f"{{{W}}}p")]


def run_texts(xml: bytes) -> List[str]:
    root = etree.fromstring(xml)
    return [t.text or "" for t in root.iter(f"{{{W}}}t")]


@pytest.fixture
def make_docx(tmp_path):
    """Factory writing a minimal DOCX package into tmp_path."""

    def _make(body: str = "", name: str = "template.docx", extra_parts=None, document=None):
        parts = {
            "[Content_Types].xml": CONTENT_TYPES,
            "_rels/.rels": PACKAGE_RELS,
            "word/document.xml": document if document is not None else wordml_part(body),
        }
        parts.update(extra_parts or {})
        return write_docx(tmp_path / name, parts)

    return _make
