"""Property list (.plist) checks."""

import plistlib
from pathlib import Path
from typing import List
from xml.parsers.expat import ExpatError

from ..errors import ManifestParseError
from ..manifest.parser import parse_plist


def validate(path: Path) -> List[str]:
    """Check that a property list loads as XML, binary or OpenStep text."""
    data = path.read_bytes()
    try:
        plistlib.loads(data)
        return []
    except (plistlib.InvalidFileException, ExpatError, ValueError):
        pass

    try:
        parse_plist(data.decode("utf-8"))
    except UnicodeDecodeError:
        return [f"{path.name} is neither a valid property list nor UTF-8 text"]
    except ManifestParseError as e:
        return [f"{path.name} is not a valid property list: {e}"]
    return []
