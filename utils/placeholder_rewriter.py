import logging
import re
from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from lxml import etree

from utils.fill_options import MissingKeyPolicy, PartReport

logger = logging.getLogger(__name__)

WORDML_NAMESPACES = (
    # Transitional
    "http://schemas.openxmlformats.org/wordprocessingml/2006/main",
    # Strict
    "http://purl.oclc.org/ooxml/wordprocessingml/main",
)
XML_SPACE_ATTR = "{http://www.w3.org/XML/1998/namespace}space"

PLACEHOLDER_PATTERN = re.compile(r"<!([A-Za-z0-9_]+)!>")
PLACEHOLDER_KEY_PATTERN = re.compile(r"[A-Za-z0-9_]+")


def _wordml_tags(local_name: str) -> List[str]:
    return [f"{{{ns}}}{local_name}" for ns in WORDML_NAMESPACES]


PARAGRAPH_TAGS = _wordml_tags("p")
TEXT_TAGS = _wordml_tags("t")
INSTR_TEXT_TAGS = _wordml_tags("instrText")


class SegmentKind(Enum):
    TEXT = "t"
    FIELD_INSTRUCTION = "instrText"


@dataclass
class TextSegment:
    """One editable text node of a paragraph (<w:t> or <w:instrText>)."""

    element: etree._Element
    kind: SegmentKind
    original_text: str
    text: str

    @property
    def changed(self) -> bool:
        return self.text != self.original_text


@dataclass(frozen=True)
class PlaceholderMatch:
    key: str
    start: int   # inclusive offset in the concatenated paragraph text
    end: int     # exclusive


def is_valid_key(key: str) -> bool:
    return isinstance(key, str) and PLACEHOLDER_KEY_PATTERN.fullmatch(key) is not None


def find_placeholders(text: str) -> List[PlaceholderMatch]:
    """Find <!key!> tokens, leftmost first and non-overlapping."""
    return [
        PlaceholderMatch(key=m.group(1), start=m.start(), end=m.end())
        for m in PLACEHOLDER_PATTERN.finditer(text)
    ]


def iter_paragraphs(root: etree._Element) -> Iterator[etree._Element]:
    """Yield every WordprocessingML paragraph in document order."""
    return root.iter(*PARAGRAPH_TAGS)


def _owning_paragraph(element: etree._Element) -> Optional[etree._Element]:
    parent = element.getparent()
    while parent is not None and parent.tag not in PARAGRAPH_TAGS:
        parent = parent.getparent()
    return parent


def collect_text_segments(paragraph: etree._Element,
                          include_field_instructions: bool = False) -> List[TextSegment]:
    """
    Collect the text nodes that make up the logical text of a paragraph.

    Text nodes may sit at any depth below the paragraph (runs inside
    hyperlinks, smart tags, content controls...). Nodes that belong to a
    nested paragraph, such as text box content, are left to that paragraph.
    """
    tags = TEXT_TAGS + INSTR_TEXT_TAGS if include_field_instructions else TEXT_TAGS

    segments = []
    for element in paragraph.iter(*tags):
        if _owning_paragraph(element) is not paragraph:
            continue
        kind = SegmentKind.FIELD_INSTRUCTION if element.tag in INSTR_TEXT_TAGS else SegmentKind.TEXT
        text = element.text or ""
        segments.append(TextSegment(element=element, kind=kind, original_text=text, text=text))
    return segments


def _prefix_sums(segments: List[TextSegment]) -> List[int]:
    offsets = [0]
    for segment in segments:
        offsets.append(offsets[-1] + len(segment.text))
    return offsets


def _segment_at(offsets: List[int], position: int) -> Optional[int]:
    """Index of the segment holding the character at ``position``."""
    if position < 0 or position >= offsets[-1]:
        return None
    return bisect_right(offsets, position) - 1


def locate_match(offsets: List[int], match: PlaceholderMatch) -> Optional[Tuple[Tuple[int, int], Tuple[int, int]]]:
    """
    Map a match onto ``((start_segment, start_offset), (end_segment, end_offset))``.

    The start lands in the segment holding the first character of the token
    and the end in the segment holding its last character, so empty runs
    around a placeholder are never chosen as the splice target.
    """
    first = _segment_at(offsets, match.start)
    last = _segment_at(offsets, match.end - 1)
    if first is None or last is None:
        return None
    return (first, match.start - offsets[first]), (last, match.end - offsets[last])


def splice_segments(segments: List[TextSegment], start: Tuple[int, int], end: Tuple[int, int],
                    replacement: str) -> None:
    start_index, start_offset = start
    end_index, end_offset = end

    if start_index == end_index:
        text = segments[start_index].text
        segments[start_index].text = text[:start_offset] + replacement + text[end_offset:]
        return

    segments[start_index].text = segments[start_index].text[:start_offset] + replacement
    for index in range(start_index + 1, end_index):
        segments[index].text = ""
    segments[end_index].text = segments[end_index].text[end_offset:]


def apply_matches(segments: List[TextSegment], matches: List[PlaceholderMatch],
                  values: Dict[str, str], missing_key_policy: MissingKeyPolicy) -> PartReport:
    """
    Substitute matches into the segment texts, rightmost match first.

    Offsets of matches further left stay valid because a splice only touches
    text at or after the start of the match being replaced.
    """
    offsets = _prefix_sums(segments)
    found, replaced, missing = set(), set(), set()
    count = 0

    for match in reversed(matches):
        found.add(match.key)
        if match.key in values:
            replaced.add(match.key)
            replacement = values[match.key]
        else:
            missing.add(match.key)
            if missing_key_policy != MissingKeyPolicy.BLANK:
                continue
            replacement = ""

        location = locate_match(offsets, match)
        if location is None:
            logger.debug(f"[PlaceholderRewriter] Cannot map <!{match.key}!> at {match.start}-{match.end} onto segments, skipped")
            continue

        splice_segments(segments, location[0], location[1], replacement)
        count += 1

    return PartReport(
        found_keys=frozenset(found),
        replaced_keys=frozenset(replaced),
        missing_keys=frozenset(missing),
        replacements_count=count,
    )


def requires_xml_space_preserve(text: str) -> bool:
    """Whether Word would collapse whitespace in this text without xml:space="preserve"."""
    if not text:
        return False
    if text[0] == " " or text[-1] == " ":
        return True
    return "  " in text or "\t" in text or "\n" in text


def apply_xml_space_preserve(element: etree._Element, text: str) -> None:
    """Set or clear xml:space="preserve" on a text element to match its text."""
    if requires_xml_space_preserve(text):
        element.set(XML_SPACE_ATTR, "preserve")
    elif XML_SPACE_ATTR in element.attrib:
        del element.attrib[XML_SPACE_ATTR]


class PlaceholderRewriter:
    """
    Replaces <!key!> placeholders inside WordprocessingML paragraphs.

    A placeholder may be split across several runs (Word splits text on
    spell-check marks, revisions and formatting changes), so matching runs on
    the concatenated paragraph text and replacements are mapped back onto the
    individual text nodes. Run formatting is left untouched.
    """

    def __init__(self, values: Dict[str, str],
                 missing_key_policy: MissingKeyPolicy = MissingKeyPolicy.KEEP,
                 preserve_whitespace: bool = True,
                 include_field_instructions: bool = False):
        self.logger = logger
        self.values = values
        self.missing_key_policy = MissingKeyPolicy(missing_key_policy)
        self.preserve_whitespace = preserve_whitespace
        self.include_field_instructions = include_field_instructions

    def rewrite_document(self, root: etree._Element) -> Tuple[PartReport, bool]:
        """Rewrite every paragraph under ``root``; returns (report, changed)."""
        report = PartReport()
        changed = False
        paragraph_count = 0

        for paragraph in iter_paragraphs(root):
            paragraph_count += 1
            paragraph_report, paragraph_changed = self.rewrite_paragraph(paragraph)
            report = report.merge(paragraph_report)
            changed = changed or paragraph_changed

        self.logger.debug(f"[PlaceholderRewriter] Scanned {paragraph_count} paragraphs - "
                          f"found: {len(report.found_keys)}, replacements: {report.replacements_count}, changed: {changed}")
        return report, changed

    def rewrite_paragraph(self, paragraph: etree._Element) -> Tuple[PartReport, bool]:
        segments = collect_text_segments(paragraph, self.include_field_instructions)
        if not segments:
            return PartReport(), False

        full_text = "".join(segment.text for segment in segments)
        matches = find_placeholders(full_text)
        if not matches:
            return PartReport(), False

        report = apply_matches(segments, matches, self.values, self.missing_key_policy)

        changed = False
        for segment in segments:
            if not segment.changed:
                continue
            segment.element.text = segment.text
            if self.preserve_whitespace and segment.kind == SegmentKind.TEXT:
                apply_xml_space_preserve(segment.element, segment.text)
            changed = True

        if changed:
            self.logger.debug(f"[PlaceholderRewriter] Paragraph rewritten - {len(segments)} segments, "
                              f"keys: {sorted(report.found_keys)}")
        return report, changed
