"""Asset catalog (.xcassets) consistency checks."""

import json
from pathlib import Path
from typing import List

CONTENTS = "Contents.json"


def _load_contents(path: Path, problems: List[str], root: Path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        problems.append(f"{path.relative_to(root.parent)} is not valid JSON: {e.msg} (line {e.lineno})")
    except UnicodeDecodeError:
        problems.append(f"{path.relative_to(root.parent)} is not UTF-8 text")
    return None


def validate(catalog: Path) -> List[str]:
    """
    Check an asset catalog's Contents.json files and the images they list.

    Args:
        catalog: Path to the .xcassets directory

    Returns:
        Problem descriptions
    """
    if not catalog.is_dir():
        return [f"{catalog.name} is not a directory"]

    problems: List[str] = []
    if not (catalog / CONTENTS).exists():
        problems.append(f"{catalog.name} has no {CONTENTS}")

    for contents in sorted(catalog.rglob(CONTENTS)):
        data = _load_contents(contents, problems, catalog)
        if data is None:
            continue
        if not isinstance(data, dict):
            problems.append(f"{contents.relative_to(catalog.parent)} must contain a JSON object")
            continue

        for entry in data.get("images", []) or []:
            filename = entry.get("filename") if isinstance(entry, dict) else None
            if filename and not (contents.parent / filename).exists():
                problems.append(
                    f"{contents.parent.relative_to(catalog.parent)} lists missing image {filename}"
                )

    return problems
