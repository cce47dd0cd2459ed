"""Strings table (.strings) checks."""

import codecs
import plistlib
from pathlib import Path
from typing import List
from xml.parsers.expat import ExpatError

from ..errors import ManifestParseError
from ..manifest.parser import parse_plist


def _decode(data: bytes) -> str:
    if data.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return data.decode("utf-16")
    if data.startswith(codecs.BOM_UTF8):
        return data[len(codecs.BOM_UTF8):].decode("utf-8")
    return data.decode("utf-8")


def validate(path: Path) -> List[str]:
    """Check that a strings table is a sequence of "key" = "value"; pairs."""
    data = path.read_bytes()

    if data.startswith((b"bplist", b"<?xml")):
        try:
            plistlib.loads(data)
            return []
        except (plistlib.InvalidFileException, ExpatError, ValueError):
            return [f"{path.name} is a malformed compiled strings table"]

    try:
        text = _decode(data)
    except UnicodeDecodeError:
        return [f"{path.name} is not UTF-8 or UTF-16 text"]

    try:
        table, duplicates = parse_plist("{" + text + "\n}")
    except ManifestParseError as e:
        return [f"{path.name} is not a valid strings table: {e}"]

    problems = [f"{path.name} defines key {key!r} more than once" for _, key, _ in duplicates]
    for key, value in table.items():
        if not isinstance(value, str):
            problems.append(f"{path.name} value for {key!r} is not a string")
    return problems
