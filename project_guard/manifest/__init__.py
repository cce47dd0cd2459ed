"""
Project manifest support: parsing, typed sections, serialization and
discovery of ``project.pbxproj`` files.
"""

from pathlib import Path
from typing import Optional

from .locate import MANIFEST_NAME, find_manifest
from .model import (
    GROUP_KINDS, FILE_KINDS, BuildFileSection, BuildPhaseSection, FileReferenceSection,
    GroupSection, Manifest, ProjectSection, Section, SectionKind, TargetSection
)
from .parser import find_conflict_markers, parse_plist
from .serializer import serialize_manifest


def parse_manifest(text: str, path: Optional[Path] = None) -> Manifest:
    """
    Parse manifest text into a typed Manifest.

    Raises:
        ManifestParseError: If the text is not a well-formed property list
    """
    data, duplicates = parse_plist(text)
    return Manifest.from_plist(data, duplicates, path=path)


def load_manifest(path: Path) -> Manifest:
    """Read and parse a manifest file."""
    with open(path, "r", encoding="utf-8") as f:
        return parse_manifest(f.read(), path=Path(path))


__all__ = [
    "MANIFEST_NAME", "find_manifest", "find_conflict_markers", "parse_plist",
    "parse_manifest", "load_manifest", "serialize_manifest",
    "Manifest", "Section", "SectionKind", "ProjectSection", "GroupSection",
    "FileReferenceSection", "BuildFileSection", "BuildPhaseSection", "TargetSection",
    "GROUP_KINDS", "FILE_KINDS",
]
