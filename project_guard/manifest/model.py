"""
Typed manifest representation.

Every entry of the ``objects`` dictionary becomes a Section: a dataclass
chosen by its ``isa`` (the SectionKind tag). Sections keep their raw field
dictionary as the single source of truth and expose typed accessors plus
the reference fields the integrity rules walk.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from ..errors import ManifestParseError


class SectionKind(Enum):
    """Object types found in a project manifest."""
    PROJECT = "PBXProject"
    GROUP = "PBXGroup"
    VARIANT_GROUP = "PBXVariantGroup"
    VERSION_GROUP = "XCVersionGroup"
    FILE_REFERENCE = "PBXFileReference"
    REFERENCE_PROXY = "PBXReferenceProxy"
    BUILD_FILE = "PBXBuildFile"
    SOURCES_PHASE = "PBXSourcesBuildPhase"
    RESOURCES_PHASE = "PBXResourcesBuildPhase"
    FRAMEWORKS_PHASE = "PBXFrameworksBuildPhase"
    HEADERS_PHASE = "PBXHeadersBuildPhase"
    COPY_FILES_PHASE = "PBXCopyFilesBuildPhase"
    SHELL_SCRIPT_PHASE = "PBXShellScriptBuildPhase"
    NATIVE_TARGET = "PBXNativeTarget"
    AGGREGATE_TARGET = "PBXAggregateTarget"
    LEGACY_TARGET = "PBXLegacyTarget"
    TARGET_DEPENDENCY = "PBXTargetDependency"
    CONTAINER_ITEM_PROXY = "PBXContainerItemProxy"
    BUILD_CONFIGURATION = "XCBuildConfiguration"
    CONFIGURATION_LIST = "XCConfigurationList"
    OTHER = "Other"

    @classmethod
    def from_isa(cls, isa: Optional[str]) -> "SectionKind":
        try:
            return cls(isa)
        except ValueError:
            return cls.OTHER


@dataclass
class Section:
    """One object of the manifest, tagged by its isa."""
    id: str
    isa: str
    fields: Dict[str, Any] = field(default_factory=dict)

    # Expected field types for a well-formed section
    REQUIRED_FIELDS: ClassVar[Dict[str, type]] = {}
    # Values that can be filled in when a field is missing
    DEFAULTS: ClassVar[Dict[str, Any]] = {}
    # Fields holding a single object id / a list of object ids
    REFERENCE_FIELDS: ClassVar[Tuple[str, ...]] = ()
    REFERENCE_LIST_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @property
    def kind(self) -> SectionKind:
        return SectionKind.from_isa(self.isa)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    @property
    def display_name(self) -> str:
        for key in ("name", "path"):
            value = self.fields.get(key)
            if isinstance(value, str) and value:
                return value
        return self.isa

    def references(self) -> List[Tuple[str, str]]:
        """(field, id) pairs for every declared reference."""
        refs = []
        for name in self.REFERENCE_FIELDS:
            value = self.fields.get(name)
            if isinstance(value, str):
                refs.append((name, value))
        for name in self.REFERENCE_LIST_FIELDS:
            value = self.fields.get(name)
            if isinstance(value, list):
                refs.extend((name, item) for item in value if isinstance(item, str))
        return refs

    def strings(self) -> Iterator[str]:
        """Every string value in the section, at any depth."""
        stack: List[Any] = [self.fields]
        while stack:
            value = stack.pop()
            if isinstance(value, str):
                yield value
            elif isinstance(value, dict):
                stack.extend(value.values())
            elif isinstance(value, list):
                stack.extend(value)

    def to_plist(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"isa": self.isa}
        data.update(self.fields)
        return data


@dataclass
class ProjectSection(Section):
    REQUIRED_FIELDS: ClassVar[Dict[str, type]] = {
        "mainGroup": str, "buildConfigurationList": str, "targets": list,
    }
    DEFAULTS: ClassVar[Dict[str, Any]] = {"targets": []}
    REFERENCE_FIELDS: ClassVar[Tuple[str, ...]] = ("mainGroup", "productRefGroup", "buildConfigurationList")
    REFERENCE_LIST_FIELDS: ClassVar[Tuple[str, ...]] = ("targets",)

    @property
    def main_group(self) -> Optional[str]:
        return self.fields.get("mainGroup")

    @property
    def product_ref_group(self) -> Optional[str]:
        return self.fields.get("productRefGroup")

    @property
    def build_configuration_list(self) -> Optional[str]:
        return self.fields.get("buildConfigurationList")

    @property
    def targets(self) -> List[str]:
        value = self.fields.get("targets")
        return list(value) if isinstance(value, list) else []

    @property
    def project_dir_path(self) -> str:
        return self.fields.get("projectDirPath") or ""


@dataclass
class GroupSection(Section):
    REQUIRED_FIELDS: ClassVar[Dict[str, type]] = {"children": list, "sourceTree": str}
    DEFAULTS: ClassVar[Dict[str, Any]] = {"children": [], "sourceTree": "<group>"}
    REFERENCE_FIELDS: ClassVar[Tuple[str, ...]] = ("currentVersion",)
    REFERENCE_LIST_FIELDS: ClassVar[Tuple[str, ...]] = ("children",)

    @property
    def children(self) -> List[str]:
        value = self.fields.get("children")
        return list(value) if isinstance(value, list) else []

    @property
    def path(self) -> Optional[str]:
        return self.fields.get("path")

    @property
    def source_tree(self) -> str:
        return self.fields.get("sourceTree", "<group>")


@dataclass
class FileReferenceSection(Section):
    REQUIRED_FIELDS: ClassVar[Dict[str, type]] = {"sourceTree": str}
    DEFAULTS: ClassVar[Dict[str, Any]] = {"sourceTree": "<group>"}

    @property
    def path(self) -> Optional[str]:
        return self.fields.get("path")

    @property
    def source_tree(self) -> str:
        return self.fields.get("sourceTree", "<group>")


@dataclass
class ReferenceProxySection(FileReferenceSection):
    REFERENCE_FIELDS: ClassVar[Tuple[str, ...]] = ("remoteRef",)


@dataclass
class BuildFileSection(Section):
    REFERENCE_FIELDS: ClassVar[Tuple[str, ...]] = ("fileRef", "productRef")

    @property
    def file_ref(self) -> Optional[str]:
        return self.fields.get("fileRef")


@dataclass
class BuildPhaseSection(Section):
    REQUIRED_FIELDS: ClassVar[Dict[str, type]] = {"files": list}
    DEFAULTS: ClassVar[Dict[str, Any]] = {
        "files": [], "buildActionMask": "2147483647", "runOnlyForDeploymentPostprocessing": "0",
    }
    REFERENCE_LIST_FIELDS: ClassVar[Tuple[str, ...]] = ("files",)

    @property
    def files(self) -> List[str]:
        value = self.fields.get("files")
        return list(value) if isinstance(value, list) else []


@dataclass
class TargetSection(Section):
    REQUIRED_FIELDS: ClassVar[Dict[str, type]] = {
        "name": str, "buildConfigurationList": str, "buildPhases": list,
    }
    DEFAULTS: ClassVar[Dict[str, Any]] = {"buildPhases": [], "dependencies": []}
    REFERENCE_FIELDS: ClassVar[Tuple[str, ...]] = ("buildConfigurationList", "productReference")
    REFERENCE_LIST_FIELDS: ClassVar[Tuple[str, ...]] = (
        "buildPhases", "dependencies", "packageProductDependencies",
    )

    @property
    def product_reference(self) -> Optional[str]:
        return self.fields.get("productReference")


@dataclass
class TargetDependencySection(Section):
    REFERENCE_FIELDS: ClassVar[Tuple[str, ...]] = ("target", "targetProxy")


@dataclass
class ContainerItemProxySection(Section):
    REQUIRED_FIELDS: ClassVar[Dict[str, type]] = {"containerPortal": str}
    REFERENCE_FIELDS: ClassVar[Tuple[str, ...]] = ("containerPortal",)


@dataclass
class BuildConfigurationSection(Section):
    REQUIRED_FIELDS: ClassVar[Dict[str, type]] = {"name": str, "buildSettings": dict}
    DEFAULTS: ClassVar[Dict[str, Any]] = {"buildSettings": {}}
    REFERENCE_FIELDS: ClassVar[Tuple[str, ...]] = ("baseConfigurationReference",)


@dataclass
class ConfigurationListSection(Section):
    REQUIRED_FIELDS: ClassVar[Dict[str, type]] = {"buildConfigurations": list}
    DEFAULTS: ClassVar[Dict[str, Any]] = {
        "buildConfigurations": [], "defaultConfigurationIsVisible": "0",
    }
    REFERENCE_LIST_FIELDS: ClassVar[Tuple[str, ...]] = ("buildConfigurations",)


@dataclass
class GenericSection(Section):
    """Object types the rules do not interpret."""


SECTION_TYPES = {
    SectionKind.PROJECT: ProjectSection,
    SectionKind.GROUP: GroupSection,
    SectionKind.VARIANT_GROUP: GroupSection,
    SectionKind.VERSION_GROUP: GroupSection,
    SectionKind.FILE_REFERENCE: FileReferenceSection,
    SectionKind.REFERENCE_PROXY: ReferenceProxySection,
    SectionKind.BUILD_FILE: BuildFileSection,
    SectionKind.SOURCES_PHASE: BuildPhaseSection,
    SectionKind.RESOURCES_PHASE: BuildPhaseSection,
    SectionKind.FRAMEWORKS_PHASE: BuildPhaseSection,
    SectionKind.HEADERS_PHASE: BuildPhaseSection,
    SectionKind.COPY_FILES_PHASE: BuildPhaseSection,
    SectionKind.SHELL_SCRIPT_PHASE: BuildPhaseSection,
    SectionKind.NATIVE_TARGET: TargetSection,
    SectionKind.AGGREGATE_TARGET: TargetSection,
    SectionKind.LEGACY_TARGET: TargetSection,
    SectionKind.TARGET_DEPENDENCY: TargetDependencySection,
    SectionKind.CONTAINER_ITEM_PROXY: ContainerItemProxySection,
    SectionKind.BUILD_CONFIGURATION: BuildConfigurationSection,
    SectionKind.CONFIGURATION_LIST: ConfigurationListSection,
}

GROUP_KINDS = (SectionKind.GROUP, SectionKind.VARIANT_GROUP, SectionKind.VERSION_GROUP)
FILE_KINDS = (SectionKind.FILE_REFERENCE,)


def build_section(object_id: str, data: Dict[str, Any]) -> Section:
    """Create the typed section for one raw object dictionary."""
    isa = data.get("isa", "")
    cls = SECTION_TYPES.get(SectionKind.from_isa(isa), GenericSection)
    fields = {k: v for k, v in data.items() if k != "isa"}
    return cls(id=object_id, isa=isa, fields=fields)


@dataclass
class Manifest:
    """
    A parsed project manifest.

    Attributes:
        archive_version: Top-level archiveVersion
        object_version: Top-level objectVersion
        root_object_id: Id of the PBXProject object
        objects: Typed sections by id, in file order
        invalid_objects: Entries of ``objects`` that are not dictionaries
            with an isa, kept verbatim
        extra: Other top-level keys (classes, ...)
        duplicate_ids: Object ids defined more than once, with the line of
            the dropped definition
        has_objects: Whether the top level had an ``objects`` dictionary
    """
    archive_version: Optional[str] = None
    object_version: Optional[str] = None
    root_object_id: Optional[str] = None
    objects: Dict[str, Section] = field(default_factory=dict)
    invalid_objects: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)
    duplicate_ids: List[Tuple[str, int]] = field(default_factory=list)
    has_objects: bool = True
    path: Optional[Path] = None

    @classmethod
    def from_plist(
        cls,
        data: Any,
        duplicates: Iterable[Tuple[Tuple[str, ...], str, int]] = (),
        path: Optional[Path] = None
    ) -> "Manifest":
        """Build a Manifest from parsed property list values."""
        if not isinstance(data, dict):
            raise ManifestParseError("top-level value is not a dictionary")

        manifest = cls(path=path)
        manifest.archive_version = data.get("archiveVersion")
        manifest.object_version = data.get("objectVersion")
        manifest.root_object_id = data.get("rootObject")
        manifest.extra = {
            k: v for k, v in data.items()
            if k not in ("archiveVersion", "objectVersion", "objects", "rootObject")
        }

        objects = data.get("objects")
        if not isinstance(objects, dict):
            manifest.has_objects = False
            objects = {}

        for object_id, raw in objects.items():
            if isinstance(raw, dict) and isinstance(raw.get("isa"), str):
                manifest.objects[object_id] = build_section(object_id, raw)
            else:
                manifest.invalid_objects[object_id] = raw

        manifest.duplicate_ids = [
            (key, line) for key_path, key, line in duplicates if key_path == ("objects",)
        ]
        return manifest

    # =========================================================================
    # Queries
    # =========================================================================

    def __contains__(self, object_id: str) -> bool:
        return object_id in self.objects or object_id in self.invalid_objects

    def get(self, object_id: Optional[str]) -> Optional[Section]:
        if object_id is None:
            return None
        return self.objects.get(object_id)

    @property
    def object_version_number(self) -> Optional[int]:
        try:
            return int(self.object_version)
        except (TypeError, ValueError):
            return None

    def root_project(self) -> Optional[ProjectSection]:
        obj = self.get(self.root_object_id)
        return obj if isinstance(obj, ProjectSection) else None

    def of_kind(self, *kinds: SectionKind) -> List[Section]:
        return [obj for obj in self.objects.values() if obj.kind in kinds]

    def parents(self) -> Dict[str, GroupSection]:
        """Map each group child id to the group containing it."""
        result: Dict[str, GroupSection] = {}
        for obj in self.objects.values():
            if isinstance(obj, GroupSection):
                for child in obj.children:
                    result.setdefault(child, obj)
        return result

    def referrers(self, target_id: str) -> List[Tuple[Section, str]]:
        """(section, field) pairs that reference an object id."""
        return [
            (obj, name)
            for obj in self.objects.values()
            for name, ref in obj.references()
            if ref == target_id
        ]

    def reachable_ids(self) -> Set[str]:
        """Ids reachable from the root object through any string value."""
        if self.root_object_id not in self.objects:
            return set()
        seen = {self.root_object_id}
        stack = [self.root_object_id]
        while stack:
            obj = self.objects[stack.pop()]
            for value in obj.strings():
                if value in self.objects and value not in seen:
                    seen.add(value)
                    stack.append(value)
        return seen

    # =========================================================================
    # Edits
    # =========================================================================

    def drop_reference(self, owner_id: str, field_name: str, target_id: str) -> bool:
        """
        Remove one id from an owner's reference field.

        Returns:
            False if the owner or the reference is no longer there
        """
        owner = self.get(owner_id)
        if owner is None:
            return False
        value = owner.fields.get(field_name)
        if isinstance(value, list) and target_id in value:
            owner.fields[field_name] = [item for item in value if item != target_id]
            return True
        if value == target_id:
            del owner.fields[field_name]
            return True
        return False

    def remove_object(self, object_id: str) -> List[str]:
        """
        Delete an object and every reference to it.

        Build files pointing at the object are removed as well, since they
        are meaningless without it.

        Returns:
            Ids of every object removed (empty if it did not exist)
        """
        if object_id not in self.objects:
            return []

        removed = [object_id]
        del self.objects[object_id]

        for obj, name in self.referrers(object_id):
            if isinstance(obj, BuildFileSection) and name in BuildFileSection.REFERENCE_FIELDS:
                removed.extend(self.remove_object(obj.id))
            elif obj.id in self.objects:
                self.drop_reference(obj.id, name, object_id)

        return removed

    def set_field(self, object_id: Optional[str], field_name: str, value: Any) -> bool:
        """Set a field on an object, or at the top level when object_id is None."""
        if object_id is None:
            if field_name == "archiveVersion":
                self.archive_version = value
            elif field_name == "objectVersion":
                self.object_version = value
            else:
                self.extra[field_name] = value
            return True
        obj = self.get(object_id)
        if obj is None:
            return False
        obj.fields[field_name] = value
        return True

    def to_plist(self) -> Dict[str, Any]:
        """Top-level dictionary in the order Xcode writes it."""
        data: Dict[str, Any] = {}
        if self.archive_version is not None:
            data["archiveVersion"] = self.archive_version
        if "classes" in self.extra:
            data["classes"] = self.extra["classes"]
        if self.object_version is not None:
            data["objectVersion"] = self.object_version
        objects: Dict[str, Any] = {oid: obj.to_plist() for oid, obj in self.objects.items()}
        objects.update(self.invalid_objects)
        data["objects"] = objects
        if self.root_object_id is not None:
            data["rootObject"] = self.root_object_id
        for key, value in self.extra.items():
            if key != "classes":
                data[key] = value
        return data
