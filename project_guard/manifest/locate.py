"""Find the manifest for a target path."""

from pathlib import Path
from typing import Optional, Tuple

from ..errors import ConfigError

MANIFEST_NAME = "project.pbxproj"
BUNDLE_SUFFIX = ".xcodeproj"


def find_manifest(target: str) -> Tuple[Optional[Path], Path]:
    """
    Resolve a project directory, an .xcodeproj bundle or a manifest file.

    Args:
        target: Path given by the caller

    Returns:
        (manifest path or None when no bundle exists, project root directory).
        The manifest path may not exist if the bundle is missing its manifest.

    Raises:
        ConfigError: If the target does not exist
    """
    path = Path(target).resolve()
    if not path.exists():
        raise ConfigError(f"Target path does not exist: {target}")

    if path.is_file():
        parent = path.parent
        root = parent.parent if parent.name.endswith(BUNDLE_SUFFIX) else parent
        return path, root

    if path.name.endswith(BUNDLE_SUFFIX):
        return path / MANIFEST_NAME, path.parent

    bundles = sorted(p for p in path.iterdir() if p.is_dir() and p.name.endswith(BUNDLE_SUFFIX))
    if not bundles:
        return None, path
    return bundles[0] / MANIFEST_NAME, path
