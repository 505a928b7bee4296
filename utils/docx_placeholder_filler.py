import dataclasses
import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from typing import Dict, Iterator, Mapping, Optional, Tuple

from lxml import etree

from utils.docx_package import DocxPackage, PathLike
from utils.docx_parts import select_parts
from utils.fill_errors import (
    InvalidValuesError,
    MissingKeysError,
    PartProcessingError,
    TemplateNotFoundError,
)
from utils.fill_options import FillOptions, FillReport, MissingKeyPolicy, PartReport
from utils.placeholder_rewriter import PlaceholderRewriter, is_valid_key

# Characters an XML 1.0 text node cannot hold: C0 controls other than tab, LF
# and CR, lone surrogates, U+FFFE and U+FFFF
XML_INCOMPATIBLE_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


def sanitize_value(value: str) -> str:
    """Escape placeholder delimiters so a value can never read as <!key!>."""
    return value.replace("<!", "&lt;!").replace("!>", "!&gt;")


def sanitize_values(values: Mapping[str, str]) -> Dict[str, str]:
    return {key: sanitize_value(value) for key, value in values.items()}


class DocxPlaceholderFiller:
    """
    Fills <!key!> placeholders in a DOCX template.

    The template is extracted into a private scratch directory, each selected
    XML part is rewritten in place, and the directory is zipped into the
    output path. The scratch directory is removed whatever the outcome.

    Usage:
        report = DocxPlaceholderFiller().fill("template.docx", "out.docx",
                                              {"company_name": "ACME"})
    """

    def __init__(self, package: Optional[DocxPackage] = None,
                 max_xml_size: int = 50 * 1024 * 1024):
        self.logger = logging.getLogger(__name__)
        self.package = package or DocxPackage()

        # Security configuration for XML parsing
        self.max_xml_size = max_xml_size
        self.xml_parser = etree.XMLParser(
            resolve_entities=False,  # Disable entity resolution to prevent XXE
            no_network=True,         # Disable network access
            huge_tree=False,         # Disable huge tree support
            recover=False            # Malformed parts fail instead of being silently repaired
        )

    def fill(self, template: PathLike, output: PathLike, values: Mapping[str, str],
             options: Optional[FillOptions] = None) -> FillReport:
        """
        Replace placeholders in ``template`` and write the result to ``output``.

        Parts that cannot be parsed or written back are reported through
        ``options.on_warning`` and copied unchanged. With the ``error``
        missing-key policy the check runs after every part has been processed
        and before the output archive is written, so a failing call never
        creates or replaces ``output``.

        Raises:
            TemplateNotFoundError, InvalidValuesError, InvalidArchiveError,
            ZipSlipError, MissingMainDocumentError, MissingKeysError,
            CannotCreateOutputArchiveError
        """
        options = options or FillOptions()
        template = os.fspath(template)
        output = os.fspath(output)

        self._validate_inputs(template, values, options)
        processed_values = sanitize_values(values) if options.sanitize_values else dict(values)

        self.logger.info(f"[DocxPlaceholderFiller] Filling {template} -> {output} with {len(processed_values)} values "
                         f"(policy: {options.missing_key_policy.value}, selection: {options.selection.value})")

        with self._scratch_tree(options) as scratch:
            report = self._process_package(template, scratch, processed_values, options)

            if options.missing_key_policy == MissingKeyPolicy.ERROR and report.missing_keys:
                self.logger.error(f"[DocxPlaceholderFiller] Missing values for keys: {sorted(report.missing_keys)}")
                raise MissingKeysError(sorted(report.missing_keys))

            self.package.repack(scratch, output)

        self.logger.info(f"[DocxPlaceholderFiller] Fill completed - parts rewritten: {len(report.processed_parts)}, "
                         f"replacements: {report.replacements_count}, missing: {sorted(report.missing_keys)}")
        return report

    def scan(self, template: PathLike, options: Optional[FillOptions] = None) -> FillReport:
        """
        List the placeholders of a template without writing anything.

        No values are applied, so every key found is also reported missing;
        callers use this to check a value set before calling ``fill``.
        """
        options = dataclasses.replace(options or FillOptions(), missing_key_policy=MissingKeyPolicy.KEEP)
        template = os.fspath(template)
        self._validate_inputs(template, {}, options)

        with self._scratch_tree(options) as scratch:
            report = self._process_package(template, scratch, {}, options)

        self.logger.info(f"[DocxPlaceholderFiller] Scan completed - keys found: {sorted(report.found_keys)}")
        return report

    def _validate_inputs(self, template: str, values: Mapping[str, str], options: FillOptions) -> None:
        if options.validate_template and not os.path.exists(template):
            self.logger.error(f"[DocxPlaceholderFiller] Template not found: {template}")
            raise TemplateNotFoundError(template)

        if not isinstance(values, Mapping):
            raise InvalidValuesError(f"values must be a mapping, got {type(values).__name__}")

        for key, value in values.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise InvalidValuesError(f"values must map strings to strings, got {key!r}: {type(value).__name__}")
            bad_char = XML_INCOMPATIBLE_CHARS.search(value)
            if bad_char:
                raise InvalidValuesError(f"value for {key!r} contains a character XML cannot hold: {bad_char.group()!r}")
            if not is_valid_key(key):
                self._warn(options, f"Key {key!r} can never match a placeholder (allowed characters: A-Z a-z 0-9 _)")

    @contextmanager
    def _scratch_tree(self, options: FillOptions) -> Iterator[str]:
        scratch = tempfile.mkdtemp(prefix="docx-filler-")
        self.logger.debug(f"[DocxPlaceholderFiller] Scratch directory: {scratch}")
        try:
            yield scratch
        finally:
            try:
                shutil.rmtree(scratch)
            except OSError as e:
                self._warn(options, f"Failed to clean temp directory {scratch}: {e}")

    def _process_package(self, template: str, scratch: str, values: Dict[str, str],
                         options: FillOptions) -> FillReport:
        root = self.package.extract(template, scratch)
        parts = select_parts(root, options)

        rewriter = PlaceholderRewriter(
            values,
            missing_key_policy=options.missing_key_policy,
            preserve_whitespace=options.preserve_whitespace_when_needed,
            include_field_instructions=options.include_field_instruction_text,
        )

        report = FillReport()
        for part in parts:
            try:
                part_report, changed = self._process_part(root, part, rewriter)
            except PartProcessingError as e:
                self._warn(options, str(e))
                continue
            report = report.with_part(part, part_report, changed)

        return report

    def _process_part(self, root: str, part: str, rewriter: PlaceholderRewriter) -> Tuple[PartReport, bool]:
        """Rewrite one XML part on disk; the file is only touched when text changed."""
        path = os.path.join(root, *part.split("/"))

        try:
            with open(path, "rb") as handle:
                xml_content = handle.read()
            if len(xml_content) > self.max_xml_size:
                raise ValueError(f"XML content too large: {len(xml_content)} bytes > {self.max_xml_size} bytes")
            document = etree.fromstring(xml_content, parser=self.xml_parser)
            part_report, changed = rewriter.rewrite_document(document)
        except (OSError, ValueError, etree.XMLSyntaxError) as e:
            raise PartProcessingError(part, e)

        self.logger.debug(f"[DocxPlaceholderFiller] {part}: found {sorted(part_report.found_keys)}, "
                          f"replacements: {part_report.replacements_count}, changed: {changed}")
        if not changed:
            return part_report, False

        tree = document.getroottree()
        temp_path = f"{path}.tmp"
        try:
            data = etree.tostring(tree, encoding="UTF-8", xml_declaration=True,
                                  standalone=tree.docinfo.standalone)
            with open(temp_path, "wb") as handle:
                handle.write(data)
            os.replace(temp_path, path)
        except (OSError, ValueError, etree.SerialisationError) as e:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise PartProcessingError(part, e)

        return part_report, True

    def _warn(self, options: FillOptions, message: str) -> None:
        self.logger.warning(f"[DocxPlaceholderFiller] {message}")
        if options.on_warning is not None:
            options.on_warning(message)
