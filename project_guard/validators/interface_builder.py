"""Interface Builder document (.storyboard / .xib) checks."""

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List

ROOT_TAGS = ("document", "archive")


def validate(path: Path) -> List[str]:
    """Check that an Interface Builder file is well-formed XML with a known root."""
    try:
        root = ET.parse(path).getroot()
    except ET.ParseError as e:
        line, _ = e.position
        return [f"{path.name} is not well-formed XML (line {line})"]

    if root.tag not in ROOT_TAGS:
        return [f"{path.name} has unexpected root element <{root.tag}>"]
    if root.tag == "document" and not root.get("type"):
        return [f"{path.name} document has no type attribute"]
    return []
