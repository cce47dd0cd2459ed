"""
Manifest Serializer
===================

Writes a Manifest back in the layout Xcode produces: objects grouped into
``/* Begin <isa> section */`` blocks sorted by isa and id, build files and
file references on a single line, and ids annotated with ``/* name */``.
"""

import re
from typing import Any, Dict, List

from .model import Manifest, Section, SectionKind

HEADER = "// !$*UTF8*$!"

_SAFE = re.compile(r"^[A-Za-z0-9_$/:.\-]+$")

_SINGLE_LINE_KINDS = (SectionKind.BUILD_FILE, SectionKind.FILE_REFERENCE)


def quote(value: str) -> str:
    """Quote a string unless it is a bare word."""
    if value and _SAFE.match(value) and "//" not in value and "___" not in value:
        return value
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


class ManifestSerializer:
    """Serialize a Manifest to project.pbxproj text."""

    def __init__(self, manifest: Manifest):
        self.manifest = manifest
        self._comments = self._build_comments()

    def _build_comments(self) -> Dict[str, str]:
        comments: Dict[str, str] = {}
        manifest = self.manifest
        for obj in manifest.objects.values():
            comments[obj.id] = self._describe(obj)
        project = manifest.root_project()
        if project is not None:
            comments[project.id] = "Project object"
        return comments

    def _describe(self, obj: Section) -> str:
        kind = obj.kind
        if kind is SectionKind.BUILD_FILE:
            target = self.manifest.get(obj.get("fileRef")) or self.manifest.get(obj.get("productRef"))
            phase = self._phase_name(obj.id)
            name = target.display_name if target is not None else "(missing)"
            return f"{name} in {phase}" if phase else name
        if kind is SectionKind.CONFIGURATION_LIST:
            return "Build configuration list"
        if kind in (SectionKind.SOURCES_PHASE, SectionKind.RESOURCES_PHASE,
                    SectionKind.FRAMEWORKS_PHASE, SectionKind.HEADERS_PHASE):
            return kind.value[3:-len("BuildPhase")]
        if kind is SectionKind.CONTAINER_ITEM_PROXY:
            return kind.value
        return obj.display_name

    def _phase_name(self, build_file_id: str) -> str:
        for obj in self.manifest.objects.values():
            if obj.kind.value.endswith("BuildPhase") and build_file_id in (obj.get("files") or []):
                if "name" in obj.fields:
                    return obj.fields["name"]
                return obj.kind.value[3:-len("BuildPhase")]
        return ""

    def _ref(self, value: str) -> str:
        text = quote(value)
        comment = self._comments.get(value)
        return f"{text} /* {comment} */" if comment else text

    def format_value(self, value: Any, indent: int, inline: bool = False) -> str:
        if isinstance(value, str):
            return self._ref(value)
        if isinstance(value, bytes):
            return f"<{value.hex()}>"
        if isinstance(value, list):
            if inline:
                items = "".join(f"{self.format_value(v, indent, True)}, " for v in value)
                return f"({items})"
            if not value:
                return "(\n" + "\t" * indent + ")"
            pad = "\t" * (indent + 1)
            body = "".join(f"{pad}{self.format_value(v, indent + 1)},\n" for v in value)
            return "(\n" + body + "\t" * indent + ")"
        if isinstance(value, dict):
            if inline:
                items = "".join(
                    f"{quote(k)} = {self.format_value(v, indent, True)}; " for k, v in value.items()
                )
                return "{" + items + "}"
            pad = "\t" * (indent + 1)
            body = "".join(
                f"{pad}{quote(k)} = {self.format_value(v, indent + 1)};\n" for k, v in value.items()
            )
            return "{\n" + body + "\t" * indent + "}"
        return quote(str(value))

    def _format_object(self, object_id: str, data: Dict[str, Any], single_line: bool) -> str:
        return f"\t\t{self._ref(object_id)} = {self.format_value(data, 2, inline=single_line)};\n"

    def serialize(self) -> str:
        manifest = self.manifest
        lines: List[str] = [HEADER, "{"]

        for key, value in manifest.to_plist().items():
            if key != "objects":
                lines.append(f"\t{quote(key)} = {self.format_value(value, 1)};")
                continue

            lines.append("\tobjects = {")
            by_isa: Dict[str, List[Section]] = {}
            for obj in manifest.objects.values():
                by_isa.setdefault(obj.isa, []).append(obj)

            for isa in sorted(by_isa):
                lines.append("")
                lines.append(f"/* Begin {isa} section */")
                for obj in sorted(by_isa[isa], key=lambda o: o.id):
                    single = obj.kind in _SINGLE_LINE_KINDS
                    lines.append(self._format_object(obj.id, obj.to_plist(), single).rstrip("\n"))
                lines.append(f"/* End {isa} section */")

            for object_id, raw in manifest.invalid_objects.items():
                lines.append(f"\t\t{quote(object_id)} = {self.format_value(raw, 2)};")
            lines.append("\t};")

        lines.append("}")
        return "\n".join(lines) + "\n"


def serialize_manifest(manifest: Manifest) -> str:
    """Serialize a Manifest to project.pbxproj text."""
    return ManifestSerializer(manifest).serialize()
