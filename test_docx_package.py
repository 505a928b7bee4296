"""Tests for safe DOCX extraction and repacking."""

import os
import zipfile

import pytest
import requests

from conftest import mark_entries_encrypted, write_docx
from utils.docx_package import DocxPackage
from utils.fill_errors import (
    CannotCreateOutputArchiveError,
    InvalidArchiveError,
    TemplateDownloadError,
    ZipSlipError,
)


@pytest.fixture
def package():
    return DocxPackage()


@pytest.fixture
def destination(tmp_path):
    path = tmp_path / "extract"
    path.mkdir()
    return path


class TestExtract:
    def test_extracts_entries_and_directories(self, package, tmp_path, destination):
        archive = write_docx(tmp_path / "a.docx", {
            "[Content_Types].xml": "<Types/>",
            "_rels/.rels": "<Relationships/>",
            "word/media/": "",
            "word/document.xml": "<doc/>",
        })
        root = package.extract(archive, destination)
        assert root == os.path.realpath(destination)
        assert (destination / "_rels" / ".rels").read_text() == "<Relationships/>"
        assert (destination / "word" / "document.xml").read_text() == "<doc/>"
        assert (destination / "word" / "media").is_dir()

    @pytest.mark.parametrize("entry", [
        "../../etc/passthrough",
        "word/../../escape.xml",
        "/etc/passthrough",
        "\\windows\\evil.xml",
        "..\\evil.xml",
        "C:/evil.xml",
    ])
    def test_zip_slip_is_rejected_before_writing(self, package, tmp_path, destination, entry):
        archive = write_docx(tmp_path / "evil.docx", {
            "word/document.xml": "<doc/>",
            entry: "pwned",
        })
        with pytest.raises(ZipSlipError) as excinfo:
            package.extract(archive, destination)
        assert excinfo.value.entry_path == entry
        assert entry in str(excinfo.value)
        assert os.listdir(destination) == []
        assert not (tmp_path / "etc").exists()

    def test_symlinked_directory_escape_is_rejected(self, package, tmp_path, destination):
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, destination / "word")
        archive = write_docx(tmp_path / "a.docx", {"word/document.xml": "<doc/>"})
        with pytest.raises(ZipSlipError):
            package.extract(archive, destination)
        assert os.listdir(outside) == []

    def test_not_a_zip(self, package, tmp_path, destination):
        bogus = tmp_path / "bogus.docx"
        bogus.write_bytes(b"this is not a zip archive at all")
        with pytest.raises(InvalidArchiveError):
            package.extract(bogus, destination)

    def test_encrypted_entry(self, package, make_docx, destination):
        archive = mark_entries_encrypted(make_docx())
        with pytest.raises(InvalidArchiveError) as excinfo:
            package.extract(archive, destination)
        assert "encrypted" in str(excinfo.value)

    def test_missing_archive(self, package, tmp_path, destination):
        with pytest.raises(InvalidArchiveError):
            package.extract(tmp_path / "missing.docx", destination)

    def test_too_many_entries(self, tmp_path, destination):
        archive = write_docx(tmp_path / "many.docx", {f"word/f{i}.xml": "<x/>" for i in range(5)})
        with pytest.raises(InvalidArchiveError):
            DocxPackage(max_zip_files=4).extract(archive, destination)

    def test_uncompressed_size_limit(self, tmp_path, destination):
        archive = write_docx(tmp_path / "big.docx", {"word/document.xml": "x" * 4096})
        with pytest.raises(InvalidArchiveError):
            DocxPackage(max_uncompressed_size=1024).extract(archive, destination)


class TestRepack:
    def test_writes_every_file_with_content_types_first(self, package, tmp_path):
        source = tmp_path / "tree"
        (source / "word" / "_rels").mkdir(parents=True)
        (source / "_rels").mkdir()
        (source / "word" / "document.xml").write_text("<doc/>")
        (source / "word" / "_rels" / "document.xml.rels").write_text("<rels/>")
        (source / "_rels" / ".rels").write_text("<rels/>")
        (source / "[Content_Types].xml").write_text("<Types/>")
        (source / "word" / "empty_dir").mkdir()

        output = tmp_path / "out.docx"
        count = package.repack(source, output)

        with zipfile.ZipFile(output) as archive:
            names = archive.namelist()
            assert archive.read("word/document.xml") == b"<doc/>"
            assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in archive.infolist())
        assert count == 4
        assert names[0] == "[Content_Types].xml"
        assert names[1:] == sorted(names[1:])
        assert "_rels/.rels" in names
        assert "word/empty_dir/" not in names

    def test_replaces_existing_output(self, package, tmp_path):
        source = tmp_path / "tree"
        source.mkdir()
        (source / "[Content_Types].xml").write_text("<Types/>")
        output = tmp_path / "out.docx"
        output.write_bytes(b"old content")

        package.repack(source, output)

        assert zipfile.is_zipfile(output)
        assert [name for name in os.listdir(tmp_path) if name.endswith(".partial")] == []

    def test_output_directory_missing(self, package, tmp_path):
        source = tmp_path / "tree"
        source.mkdir()
        (source / "[Content_Types].xml").write_text("<Types/>")
        with pytest.raises(CannotCreateOutputArchiveError):
            package.repack(source, tmp_path / "no" / "such" / "dir" / "out.docx")


class TestHelpers:
    def test_detect_docx(self, make_docx):
        assert DocxPackage.detect_docx(make_docx().read_bytes())
        assert not DocxPackage.detect_docx(b"PK not really")
        assert not DocxPackage.detect_docx(b"")

    def test_download_failure(self, monkeypatch):
        def fail(url, timeout):
            raise requests.ConnectionError("connection refused")

        monkeypatch.setattr(requests, "get", fail)
        with pytest.raises(TemplateDownloadError) as excinfo:
            DocxPackage.download_template("https://example.com/template.docx")
        assert "connection refused" in str(excinfo.value)
