import logging
import os
import posixpath
from typing import List, Optional

from lxml import etree

from utils.fill_errors import MissingMainDocumentError
from utils.fill_options import FillOptions, PartsSelection

logger = logging.getLogger(__name__)

DEFAULT_MAIN_PART = "word/document.xml"
PACKAGE_RELS_PART = "_rels/.rels"
OFFICE_DOCUMENT_REL_SUFFIX = "/officeDocument"

PACKAGE_RELS_NS = "http://schemas.openxmlformats.org/package/2006/relationships"

# Auxiliary parts and the FillOptions flag that enables each of them
NOTE_PARTS = (
    ("footnotes.xml", "include_footnotes"),
    ("endnotes.xml", "include_endnotes"),
    ("comments.xml", "include_comments"),
)

_rels_parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False, recover=False)


def resolve_main_part(root: str) -> str:
    """
    Find the main document part through the package relationships.

    Falls back to ``word/document.xml`` when ``_rels/.rels`` is absent,
    unreadable or does not declare an officeDocument relationship.
    """
    rels_path = os.path.join(root, *PACKAGE_RELS_PART.split("/"))
    if not os.path.isfile(rels_path):
        return DEFAULT_MAIN_PART

    try:
        with open(rels_path, "rb") as handle:
            rels_root = etree.fromstring(handle.read(), parser=_rels_parser)
    except (OSError, etree.XMLSyntaxError) as e:
        logger.warning(f"[PartLocator] Cannot read {PACKAGE_RELS_PART}, assuming {DEFAULT_MAIN_PART}: {e}")
        return DEFAULT_MAIN_PART

    for rel in rels_root.iter(f"{{{PACKAGE_RELS_NS}}}Relationship"):
        if rel.get("TargetMode") == "External":
            continue
        if not (rel.get("Type") or "").endswith(OFFICE_DOCUMENT_REL_SUFFIX):
            continue
        target = _normalize_part_name(rel.get("Target") or "")
        if target:
            return target

    return DEFAULT_MAIN_PART


def _normalize_part_name(target: str) -> Optional[str]:
    normalized = posixpath.normpath(target.replace("\\", "/").lstrip("/"))
    if normalized in ("", ".") or normalized.startswith(".."):
        return None
    return normalized


def select_parts(root: str, options: FillOptions) -> List[str]:
    """
    Decide which XML parts take part in placeholder replacement.

    Args:
        root: extraction root of the DOCX package
        options: FillOptions; its ``selection`` and include_* flags are read

    Returns:
        Relative part paths, deduplicated and sorted lexicographically.

    Raises:
        MissingMainDocumentError: the main document part is not in the package.
    """
    main_part = resolve_main_part(root)
    if not os.path.isfile(_part_file(root, main_part)):
        logger.error(f"[PartLocator] Main document part missing: {main_part}")
        raise MissingMainDocumentError(main_part)

    parts_dir = posixpath.dirname(main_part)
    parts = {main_part}

    if options.selection == PartsSelection.ALL_XML:
        for filename in _list_dir(root, parts_dir):
            if filename.lower().endswith(".xml") and not filename.endswith(".rels"):
                parts.add(posixpath.join(parts_dir, filename))
    else:
        for filename in _list_dir(root, parts_dir):
            if filename.endswith(".xml") and filename.startswith(("header", "footer")):
                parts.add(posixpath.join(parts_dir, filename))

        for filename, flag in NOTE_PARTS:
            part = posixpath.join(parts_dir, filename)
            if getattr(options, flag) and os.path.isfile(_part_file(root, part)):
                parts.add(part)

    selected = sorted(parts)
    logger.debug(f"[PartLocator] Selected {len(selected)} parts ({options.selection.value}): {selected}")
    return selected


def _part_file(root: str, part: str) -> str:
    return os.path.join(root, *part.split("/"))


def _list_dir(root: str, parts_dir: str) -> List[str]:
    directory = _part_file(root, parts_dir) if parts_dir else root
    if not os.path.isdir(directory):
        return []
    return sorted(
        name for name in os.listdir(directory)
        if os.path.isfile(os.path.join(directory, name))
    )
