from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, Optional, Tuple


class MissingKeyPolicy(str, Enum):
    """What to do with a placeholder whose key has no value."""

    # Fail once every part has been processed, before anything is written
    ERROR = "error"
    # Leave the placeholder text as is: <!key!>
    KEEP = "keep"
    # Replace the placeholder with an empty string
    BLANK = "blank"


class PartsSelection(str, Enum):
    """Which XML parts inside the DOCX package are scanned."""

    # Main document + headers/footers (+ optional footnotes, endnotes, comments)
    STANDARD = "standard"
    # Every .xml file next to the main document part, relationship files excluded
    ALL_XML = "all_xml"


@dataclass(frozen=True)
class FillOptions:
    include_footnotes: bool = True
    include_endnotes: bool = True
    include_comments: bool = True
    selection: PartsSelection = PartsSelection.STANDARD

    missing_key_policy: MissingKeyPolicy = MissingKeyPolicy.KEEP

    # When a rewritten text node gets leading/trailing spaces, double spaces,
    # tabs or newlines, set xml:space="preserve" on it (and drop it otherwise).
    preserve_whitespace_when_needed: bool = True

    # Also scan <w:instrText> (field instructions). Some templates keep
    # placeholders inside fields.
    include_field_instruction_text: bool = False

    validate_template: bool = True

    # Escape <! and !> inside values so a value cannot become a placeholder
    sanitize_values: bool = True

    # Sink for non-fatal problems (a part that failed to parse, cleanup errors)
    on_warning: Optional[Callable[[str], None]] = field(default=None, compare=False)

    def __post_init__(self):
        # Accept plain strings coming from tool parameters
        object.__setattr__(self, "selection", PartsSelection(self.selection))
        object.__setattr__(self, "missing_key_policy", MissingKeyPolicy(self.missing_key_policy))


@dataclass(frozen=True)
class PartReport:
    """Placeholder statistics for one paragraph or one part."""

    found_keys: FrozenSet[str] = frozenset()
    replaced_keys: FrozenSet[str] = frozenset()
    missing_keys: FrozenSet[str] = frozenset()
    replacements_count: int = 0

    def merge(self, other: "PartReport") -> "PartReport":
        return PartReport(
            found_keys=self.found_keys | other.found_keys,
            replaced_keys=self.replaced_keys | other.replaced_keys,
            missing_keys=self.missing_keys | other.missing_keys,
            replacements_count=self.replacements_count + other.replacements_count,
        )


@dataclass(frozen=True)
class FillReport:
    processed_parts: Tuple[str, ...] = ()   # parts rewritten, paths inside the docx
    found_keys: FrozenSet[str] = frozenset()      # placeholders found in the template
    replaced_keys: FrozenSet[str] = frozenset()   # placeholders with a value
    missing_keys: FrozenSet[str] = frozenset()    # placeholders without a value
    replacements_count: int = 0

    def with_part(self, part: str, part_report: PartReport, changed: bool) -> "FillReport":
        return FillReport(
            processed_parts=self.processed_parts + ((part,) if changed else ()),
            found_keys=self.found_keys | part_report.found_keys,
            replaced_keys=self.replaced_keys | part_report.replaced_keys,
            missing_keys=self.missing_keys | part_report.missing_keys,
            replacements_count=self.replacements_count + part_report.replacements_count,
        )

    def to_dict(self) -> dict:
        return {
            "processed_parts": list(self.processed_parts),
            "found_keys": sorted(self.found_keys),
            "replaced_keys": sorted(self.replaced_keys),
            "missing_keys": sorted(self.missing_keys),
            "replacements_count": self.replacements_count,
        }
