"""
Integrity Checker for Project Guard
===================================

Audits a project manifest and its resource tree for structural corruption.
The checker never mutates anything; it returns a deterministic,
severity-ranked list of issues that the self-healer may act on.

Check Modes:
------------
- MINIMAL: manifest exists, has no merge-conflict markers, parses, and its
  root project and top-level groups resolve
- NORMAL: + dangling object ids, file references vs. the filesystem,
  unreachable objects, duplicate ids, stale objectVersion, orphaned files
- DETAILED: + section well-formedness, per-resource validators, write
  permissions, and a short probe for a transaction in flight

Issue Categories:
-----------------
MissingManifest, MissingReference, DanglingObject, MalformedManifestSection,
OrphanedResource, StaleVersionMarker, PermissionMismatch, InvalidResource,
InFlightTransaction
"""

import hashlib
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from .config import CheckMode, GuardConfig, get_config
from .errors import ManifestParseError
from .locks import LockInfo, LockTable
from .logger import GuardLogger, get_event_logger
from .manifest import (
    FILE_KINDS, FileReferenceSection, GroupSection, Manifest, ProjectSection, Section,
    SectionKind, TargetSection, find_conflict_markers, find_manifest, parse_manifest
)
from .manifest.model import BuildFileSection, GenericSection
from .transaction_log import TransactionLog
from .transactions import LOCK_SETTLE_SECONDS
from .validators import ValidatorRegistry

logger = logging.getLogger(__name__)


class Severity(Enum):
    """Severity of an integrity issue."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Sort rank, CRITICAL first."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.ERROR: 1,
    Severity.WARNING: 2,
    Severity.INFO: 3,
}


class IssueCategory(Enum):
    """Categories of structural defects."""
    MISSING_MANIFEST = "MissingManifest"
    MISSING_REFERENCE = "MissingReference"
    DANGLING_OBJECT = "DanglingObject"
    MALFORMED_SECTION = "MalformedManifestSection"
    ORPHANED_RESOURCE = "OrphanedResource"
    STALE_VERSION = "StaleVersionMarker"
    PERMISSION_MISMATCH = "PermissionMismatch"
    INVALID_RESOURCE = "InvalidResource"
    IN_FLIGHT_TRANSACTION = "InFlightTransaction"


class FixAction(Enum):
    """Machine-actionable repairs the fixer knows how to apply."""
    DROP_DANGLING_ID = "drop_dangling_id"        # Remove one id from a reference field
    DEDUPLICATE_OBJECTS = "deduplicate_objects"  # Rewrite the manifest without duplicate ids
    ADD_DEFAULT_FIELD = "add_default_field"      # Fill in a derivable default
    REMOVE_REFERENCE = "remove_reference"        # Delete a file reference and its build files
    REMOVE_OBJECT = "remove_object"              # Delete an object and references to it
    FIX_PERMISSIONS = "fix_permissions"          # Make a file writable by its owner


# Fixes that change the project's structure rather than tidy it
STRUCTURAL_ACTIONS = frozenset({
    FixAction.REMOVE_REFERENCE,
    FixAction.REMOVE_OBJECT,
    FixAction.FIX_PERMISSIONS,
})

# sourceTree values resolved against the filesystem; others (SDKROOT,
# BUILT_PRODUCTS_DIR, DEVELOPER_DIR, ...) point outside the project
_LOCAL_SOURCE_TREES = ("<group>", "SOURCE_ROOT", "<absolute>")

# Build settings naming project files that usually have no file reference
_REFERENCING_BUILD_SETTINGS = (
    "INFOPLIST_FILE", "CODE_SIGN_ENTITLEMENTS", "SWIFT_OBJC_BRIDGING_HEADER",
)


@dataclass
class SuggestedFix:
    """A repair the fixer can apply for an issue."""
    action: FixAction
    target: str                          # Object id or file path the fix acts on
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action.value, "target": self.target, "params": dict(self.params)}


@dataclass
class IntegrityIssue:
    """
    A detected structural defect in the manifest or its resource tree.

    The id is derived from category, path and description, so the same
    defect gets the same id on every run.
    """
    category: IssueCategory
    severity: Severity
    affected_path: str
    description: str
    suggested_fix: Optional[SuggestedFix] = None
    id: str = ""

    def __post_init__(self):
        if not self.id:
            digest = hashlib.sha1(f"{self.affected_path}|{self.description}".encode("utf-8")).hexdigest()
            self.id = f"{self.category.value}-{digest[:12]}"

    @property
    def sort_key(self):
        return (self.severity.rank, self.affected_path, self.category.value, self.description)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "affected_path": self.affected_path,
            "description": self.description,
            "suggested_fix": self.suggested_fix.to_dict() if self.suggested_fix else None,
        }


def sort_issues(issues: List[IntegrityIssue]) -> List[IntegrityIssue]:
    """Order issues by severity (CRITICAL first), then path, category and description."""
    return sorted(issues, key=lambda i: i.sort_key)


def severity_counts(issues: List[IntegrityIssue]) -> Dict[str, int]:
    counts = {s.value: 0 for s in Severity}
    for issue in issues:
        counts[issue.severity.value] += 1
    return counts


@dataclass
class _Context:
    """State shared by the rules of one check run."""
    manifest_path: Path
    root: Path
    manifest: Optional[Manifest] = None
    project: Optional[ProjectSection] = None
    resolved: Dict[str, Path] = field(default_factory=dict)
    issues: List[IntegrityIssue] = field(default_factory=list)

    def add(
        self,
        category: IssueCategory,
        severity: Severity,
        description: str,
        path: Optional[Union[str, Path]] = None,
        fix: Optional[SuggestedFix] = None
    ) -> None:
        affected = str(path if path is not None else self.manifest_path)
        self.issues.append(IntegrityIssue(category, severity, affected, description, fix))


class IntegrityChecker:
    """
    Read-only structural audit of a project manifest and resource tree.

    Usage:
        checker = IntegrityChecker()
        issues = checker.check("MyApp/", "normal")
        for issue in issues:
            print(issue.severity.value, issue.description)
    """

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        logger: Optional[GuardLogger] = None,
        validators: Optional[ValidatorRegistry] = None
    ):
        self.config = config or get_config()
        self.logger = logger or get_event_logger()
        self.validators = validators or ValidatorRegistry.default()

    def check(self, path: str, mode: Union[str, CheckMode, None] = None) -> List[IntegrityIssue]:
        """
        Check a project directory, .xcodeproj bundle or manifest file.

        Args:
            path: Target to check
            mode: minimal, normal or detailed (defaults to INTEGRITY_CHECK_MODE)

        Returns:
            Issues sorted by severity, then path

        Raises:
            ConfigError: If the mode is unknown or the path does not exist
        """
        if mode is None:
            mode = self.config.integrity.default_mode
        elif not isinstance(mode, CheckMode):
            mode = CheckMode.parse(mode)

        manifest_path, root = find_manifest(path)
        if manifest_path is None or not manifest_path.is_file():
            missing = manifest_path or root
            issue = IntegrityIssue(
                IssueCategory.MISSING_MANIFEST, Severity.CRITICAL, str(missing),
                "No project manifest found"
            )
            self.logger.event("ISSUE", issue.description, level=logging.ERROR)
            return [issue]

        ctx = _Context(manifest_path=manifest_path, root=root)

        if mode is CheckMode.DETAILED:
            self._probe_in_flight(ctx)

        if self._check_minimal(ctx) and mode is not CheckMode.MINIMAL:
            self._resolve_file_paths(ctx)
            self._check_normal(ctx)
            if mode is CheckMode.DETAILED:
                self._check_detailed(ctx)

        issues = sort_issues(ctx.issues)
        logger.info("Integrity check (%s) of %s found %d issue(s)", mode.value, manifest_path, len(issues))
        for issue in issues:
            self.logger.trace("%s %s: %s", issue.severity.value, issue.category.value, issue.description)
        return issues

    # =========================================================================
    # Minimal
    # =========================================================================

    def _check_minimal(self, ctx: _Context) -> bool:
        """Run the minimal rules; returns False when dependent checks must be skipped."""
        with open(ctx.manifest_path, "rb") as f:
            data = f.read()
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            # Fixes rewrite the manifest, so an undecodable one is never repaired
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.CRITICAL,
                    f"Manifest is not valid UTF-8 (byte 0x{data[e.start]:02x} at offset {e.start})")
            return False

        markers = find_conflict_markers(text)
        if markers:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.CRITICAL,
                    f"Unresolved merge conflict markers at line(s) {', '.join(map(str, markers[:5]))}")
            return False

        try:
            manifest = parse_manifest(text, path=ctx.manifest_path)
        except ManifestParseError as e:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.CRITICAL, f"Manifest does not parse: {e}")
            return False
        ctx.manifest = manifest

        if manifest.archive_version is None:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.WARNING,
                    "Manifest has no archiveVersion",
                    fix=SuggestedFix(FixAction.ADD_DEFAULT_FIELD, "archiveVersion",
                                     {"object": None, "field": "archiveVersion", "value": "1"}))

        if not manifest.has_objects:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.CRITICAL, "Manifest has no objects section")
            return False

        project = manifest.root_project()
        if project is None:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.CRITICAL,
                    f"rootObject {manifest.root_object_id or '(missing)'} does not resolve to a PBXProject")
            return False
        ctx.project = project

        main_group = manifest.get(project.main_group)
        if not isinstance(main_group, GroupSection):
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.CRITICAL,
                    f"Project mainGroup {project.main_group or '(missing)'} does not resolve to a group")
            return False

        if project.product_ref_group is not None and project.product_ref_group not in manifest:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.ERROR,
                    f"Project productRefGroup {project.product_ref_group} does not exist",
                    fix=SuggestedFix(FixAction.DROP_DANGLING_ID, project.id,
                                     {"owner": project.id, "field": "productRefGroup",
                                      "id": project.product_ref_group}))

        if project.build_configuration_list is None:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.ERROR,
                    "Project has no buildConfigurationList")
        elif project.build_configuration_list not in manifest:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.ERROR,
                    f"Project buildConfigurationList {project.build_configuration_list} does not exist")

        for target_id in project.targets:
            if target_id not in manifest:
                ctx.add(IssueCategory.DANGLING_OBJECT, Severity.ERROR,
                        f"Project targets list references missing object {target_id}",
                        fix=SuggestedFix(FixAction.DROP_DANGLING_ID, project.id,
                                         {"owner": project.id, "field": "targets", "id": target_id}))
        return True

    # =========================================================================
    # Normal
    # =========================================================================

    def _resolve_file_paths(self, ctx: _Context) -> None:
        """Map file reference (and synchronized folder) ids to filesystem paths."""
        manifest = ctx.manifest
        parents = manifest.parents()
        project_dir = (ctx.root / ctx.project.project_dir_path).resolve()
        main_group_id = ctx.project.main_group
        cache: Dict[str, Optional[Path]] = {}

        def resolve(obj: Section, visiting: Set[str]) -> Optional[Path]:
            if obj.id in cache:
                return cache[obj.id]
            if obj.id in visiting:
                return None
            visiting.add(obj.id)

            tree = obj.get("sourceTree", "<group>")
            rel = obj.get("path")
            result: Optional[Path] = None
            if tree == "<absolute>":
                result = Path(rel) if isinstance(rel, str) else None
            elif tree == "SOURCE_ROOT":
                result = project_dir / rel if isinstance(rel, str) else project_dir
            elif tree == "<group>":
                parent = parents.get(obj.id)
                if obj.id == main_group_id or parent is None:
                    base = project_dir
                else:
                    base = resolve(parent, visiting)
                if base is not None:
                    result = base / rel if isinstance(rel, str) else base

            cache[obj.id] = result
            return result

        for obj in manifest.objects.values():
            is_synced_folder = isinstance(obj, GenericSection) and obj.isa.startswith("PBXFileSystemSynchronized")
            if obj.kind in FILE_KINDS or is_synced_folder:
                if obj.get("sourceTree", "<group>") not in _LOCAL_SOURCE_TREES:
                    continue
                if not isinstance(obj.get("path"), str):
                    continue
                resolved = resolve(obj, set())
                if resolved is not None:
                    ctx.resolved[obj.id] = resolved

    def _product_ids(self, ctx: _Context) -> Set[str]:
        manifest = ctx.manifest
        products: Set[str] = set()
        group = manifest.get(ctx.project.product_ref_group)
        if isinstance(group, GroupSection):
            products.update(group.children)
        for obj in manifest.objects.values():
            if isinstance(obj, TargetSection) and obj.product_reference:
                products.add(obj.product_reference)
        return products

    def _check_normal(self, ctx: _Context) -> None:
        manifest = ctx.manifest

        for object_id, line in manifest.duplicate_ids:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.ERROR,
                    f"Object id {object_id} is defined more than once (line {line})",
                    fix=SuggestedFix(FixAction.DEDUPLICATE_OBJECTS, object_id, {"id": object_id}))

        version = manifest.object_version_number
        minimum = self.config.integrity.min_object_version
        if version is None:
            ctx.add(IssueCategory.STALE_VERSION, Severity.WARNING,
                    f"objectVersion {manifest.object_version!r} is missing or not a number")
        elif version < minimum:
            ctx.add(IssueCategory.STALE_VERSION, Severity.WARNING,
                    f"objectVersion {version} is older than the supported minimum {minimum}")

        self._check_dangling(ctx)
        self._check_file_references(ctx)
        self._check_unreachable(ctx)
        self._check_orphans(ctx)

    def _check_dangling(self, ctx: _Context) -> None:
        manifest = ctx.manifest
        for obj in manifest.objects.values():
            if isinstance(obj, ProjectSection):
                continue
            for field_name, ref in obj.references():
                if ref in manifest:
                    continue
                description = (f"{obj.isa} {obj.id} ({obj.display_name}) {field_name} "
                               f"references missing object {ref}")
                if isinstance(obj, BuildFileSection):
                    fix = SuggestedFix(FixAction.REMOVE_OBJECT, obj.id, {"id": obj.id})
                elif field_name in obj.REQUIRED_FIELDS and field_name not in obj.REFERENCE_LIST_FIELDS:
                    # Dropping a required single reference would break the section
                    fix = None
                else:
                    fix = SuggestedFix(FixAction.DROP_DANGLING_ID, obj.id,
                                       {"owner": obj.id, "field": field_name, "id": ref})
                ctx.add(IssueCategory.DANGLING_OBJECT, Severity.ERROR, description, fix=fix)

    def _check_file_references(self, ctx: _Context) -> None:
        products = self._product_ids(ctx)
        for object_id, resolved in ctx.resolved.items():
            obj = ctx.manifest.get(object_id)
            if obj.kind not in FILE_KINDS or object_id in products:
                continue
            if not resolved.exists():
                ctx.add(IssueCategory.MISSING_REFERENCE, Severity.ERROR,
                        f"File reference {object_id} ({obj.display_name}) points to a missing file",
                        path=resolved,
                        fix=SuggestedFix(FixAction.REMOVE_REFERENCE, object_id, {"id": object_id}))

    def _check_unreachable(self, ctx: _Context) -> None:
        manifest = ctx.manifest
        reachable = manifest.reachable_ids()
        for obj in manifest.objects.values():
            if obj.id not in reachable:
                ctx.add(IssueCategory.DANGLING_OBJECT, Severity.WARNING,
                        f"{obj.isa} {obj.id} ({obj.display_name}) is not reachable from the project",
                        fix=SuggestedFix(FixAction.REMOVE_OBJECT, obj.id, {"id": obj.id}))

    def _referenced_paths(self, ctx: _Context) -> Set[Path]:
        referenced = {p.resolve() for p in ctx.resolved.values()}
        project_dir = (ctx.root / ctx.project.project_dir_path).resolve()
        for obj in ctx.manifest.of_kind(SectionKind.BUILD_CONFIGURATION):
            settings = obj.get("buildSettings")
            if not isinstance(settings, dict):
                continue
            for key in _REFERENCING_BUILD_SETTINGS:
                value = settings.get(key)
                if isinstance(value, str) and value and "$" not in value:
                    referenced.add((project_dir / value).resolve())
        return referenced

    def _check_orphans(self, ctx: _Context) -> None:
        referenced = self._referenced_paths(ctx)
        extensions = tuple(e.lower() for e in self.config.integrity.resource_extensions)

        for dirpath, dirnames, filenames in os.walk(ctx.root):
            current = Path(dirpath)
            keep = []
            for name in sorted(dirnames):
                full = (current / name).resolve()
                if self.config.is_ignored_directory(name) or full in referenced:
                    continue
                if name.lower().endswith(extensions):
                    # Bundle-like resources (asset catalogs) are a single unit
                    ctx.add(IssueCategory.ORPHANED_RESOURCE, Severity.WARNING,
                            f"{name} is not referenced by the project", path=full)
                    continue
                keep.append(name)
            dirnames[:] = keep

            for name in sorted(filenames):
                if not name.lower().endswith(extensions):
                    continue
                full = (current / name).resolve()
                if full not in referenced:
                    ctx.add(IssueCategory.ORPHANED_RESOURCE, Severity.WARNING,
                            f"{name} is not referenced by the project", path=full)

    # =========================================================================
    # Detailed
    # =========================================================================

    def _check_detailed(self, ctx: _Context) -> None:
        self._check_sections(ctx)
        self._check_resources(ctx)
        self._check_permissions(ctx)

    def _check_sections(self, ctx: _Context) -> None:
        manifest = ctx.manifest

        for object_id in manifest.invalid_objects:
            ctx.add(IssueCategory.MALFORMED_SECTION, Severity.ERROR,
                    f"Object {object_id} is not a dictionary with an isa")

        for obj in manifest.objects.values():
            for field_name, expected in obj.REQUIRED_FIELDS.items():
                value = obj.fields.get(field_name)
                label = f"{obj.isa} {obj.id} ({obj.display_name})"
                if value is None:
                    fix = None
                    if field_name in obj.DEFAULTS:
                        fix = SuggestedFix(FixAction.ADD_DEFAULT_FIELD, obj.id, {
                            "object": obj.id, "field": field_name, "value": obj.DEFAULTS[field_name],
                        })
                    ctx.add(IssueCategory.MALFORMED_SECTION, Severity.ERROR,
                            f"{label} is missing required field {field_name}", fix=fix)
                elif not isinstance(value, expected):
                    ctx.add(IssueCategory.MALFORMED_SECTION, Severity.ERROR,
                            f"{label} field {field_name} should be a {_type_name(expected)}")

            if isinstance(obj, FileReferenceSection) and not obj.get("path") and not obj.get("name"):
                ctx.add(IssueCategory.MALFORMED_SECTION, Severity.WARNING,
                        f"{obj.isa} {obj.id} has neither a path nor a name")
            if isinstance(obj, BuildFileSection) and not obj.get("fileRef") and not obj.get("productRef"):
                ctx.add(IssueCategory.MALFORMED_SECTION, Severity.ERROR,
                        f"PBXBuildFile {obj.id} has neither a fileRef nor a productRef",
                        fix=SuggestedFix(FixAction.REMOVE_OBJECT, obj.id, {"id": obj.id}))

    def _check_resources(self, ctx: _Context) -> None:
        for object_id, resolved in sorted(ctx.resolved.items(), key=lambda item: str(item[1])):
            if not resolved.exists() or self.validators.validator_for(resolved) is None:
                continue
            for problem in self.validators.validate(resolved):
                ctx.add(IssueCategory.INVALID_RESOURCE, Severity.ERROR, problem, path=resolved)

    def _check_permissions(self, ctx: _Context) -> None:
        manifest_path = ctx.manifest_path
        if not os.access(manifest_path, os.W_OK):
            ctx.add(IssueCategory.PERMISSION_MISMATCH, Severity.ERROR,
                    "Manifest is not writable",
                    fix=SuggestedFix(FixAction.FIX_PERMISSIONS, str(manifest_path),
                                     {"path": str(manifest_path)}))

        bundle = manifest_path.parent
        if not os.access(bundle, os.W_OK | os.X_OK):
            ctx.add(IssueCategory.PERMISSION_MISMATCH, Severity.ERROR,
                    f"{bundle.name} directory is not writable", path=bundle)

    def _probe_in_flight(self, ctx: _Context) -> None:
        """Wait briefly for a transaction on the manifest; report it if it persists."""
        lock_dir = self.config.lock_directory
        if not lock_dir.exists():
            return

        log = TransactionLog(self.config.transaction_log_path)

        def is_stale(info: LockInfo) -> bool:
            return not log.is_open(info.txn_id) and info.age > LOCK_SETTLE_SECONDS

        table = LockTable(lock_dir, poll_interval=self.config.transactions.lock_poll_interval_ms / 1000.0,
                          create=False)
        timeout = self.config.integrity.lock_probe_timeout_ms / 1000.0
        holder = table.probe(str(ctx.manifest_path), timeout, is_stale)
        if holder is not None:
            ctx.add(IssueCategory.IN_FLIGHT_TRANSACTION, Severity.INFO,
                    f"Transaction {holder.txn_id} is modifying the manifest; results may be transient")


def _type_name(expected: type) -> str:
    return {str: "string", list: "list", dict: "dictionary"}.get(expected, expected.__name__)
