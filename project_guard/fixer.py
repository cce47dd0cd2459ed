"""
Repair Fixer for Project Guard
==============================

Turns an issue's suggested fix into a concrete change and applies it inside
a transaction supplied by the caller.

Fix Actions:
------------
- DROP_DANGLING_ID: remove a missing object's id from a reference field
- DEDUPLICATE_OBJECTS: rewrite the manifest, keeping the first definition
- ADD_DEFAULT_FIELD: fill in a field whose value can be derived
- REMOVE_REFERENCE / REMOVE_OBJECT: delete an object and everything that
  points at it
- FIX_PERMISSIONS: make a file writable by its owner

Safety Features:
----------------
- Every change is written through the transaction manager (backup first)
- The manifest is re-read inside the transaction, so a fix whose target
  has already gone raises TargetMissing instead of changing anything
- Diff preview for approval prompts
"""

import copy
import os
import stat
from dataclasses import dataclass
from difflib import unified_diff
from pathlib import Path
from typing import List, Optional, Tuple

from .checker import FixAction, IntegrityIssue
from .logger import GuardLogger, get_event_logger
from .manifest import parse_manifest, serialize_manifest
from .models import Transaction
from .transactions import TransactionManager


class TargetMissing(Exception):
    """The object or file a fix acts on is no longer there."""


@dataclass
class FixResult:
    """
    Result of applying a fix.

    Attributes:
        success: Whether the fix was applied
        description: What was done
        diff: Unified diff of the manifest change (if applicable)
    """
    success: bool
    description: str
    diff: Optional[str] = None


def generate_diff(original: str, modified: str, file_path: str) -> str:
    """Generate a unified diff between two versions of a file."""
    diff = unified_diff(
        original.splitlines(keepends=True),
        modified.splitlines(keepends=True),
        fromfile=f"a/{file_path}",
        tofile=f"b/{file_path}"
    )
    return "".join(diff)


class RepairFixer:
    """
    Applies suggested fixes through the transaction manager.

    Usage:
        fixer = RepairFixer(manager)
        with manager.transaction("REPAIR", fixer.resources_for(issue, manifest_path)) as txn:
            fixer.apply(issue, txn, manifest_path)
    """

    def __init__(self, manager: TransactionManager, logger: Optional[GuardLogger] = None):
        self.manager = manager
        self.logger = logger or get_event_logger()

    def resources_for(self, issue: IntegrityIssue, manifest_path: Path) -> List[str]:
        """Files the fix will touch (the resources its transaction locks)."""
        fix = issue.suggested_fix
        if fix is not None and fix.action is FixAction.FIX_PERMISSIONS:
            return [fix.params.get("path", fix.target)]
        return [str(manifest_path)]

    def render(self, issue: IntegrityIssue, manifest_path: Path) -> Tuple[str, str]:
        """
        Compute the manifest text after applying a fix, without writing it.

        Returns:
            (original text, modified text)

        Raises:
            TargetMissing: If the fix no longer applies
        """
        fix = issue.suggested_fix
        if fix is None:
            raise ValueError(f"Issue {issue.id} has no suggested fix")

        with open(manifest_path, "r", encoding="utf-8") as f:
            original = f.read()
        manifest = parse_manifest(original, path=manifest_path)
        params = fix.params

        if fix.action is FixAction.DROP_DANGLING_ID:
            if params["id"] in manifest:
                raise TargetMissing(f"{params['id']} exists again")
            if not manifest.drop_reference(params["owner"], params["field"], params["id"]):
                raise TargetMissing(f"{params['owner']}.{params['field']} no longer references {params['id']}")

        elif fix.action is FixAction.DEDUPLICATE_OBJECTS:
            if not any(object_id == params["id"] for object_id, _ in manifest.duplicate_ids):
                raise TargetMissing(f"{params['id']} is no longer duplicated")

        elif fix.action is FixAction.ADD_DEFAULT_FIELD:
            object_id = params.get("object")
            field_name = params["field"]
            if object_id is None:
                present = manifest.to_plist().get(field_name) is not None
            else:
                obj = manifest.get(object_id)
                if obj is None:
                    raise TargetMissing(f"{object_id} no longer exists")
                present = field_name in obj.fields
            if present:
                raise TargetMissing(f"{field_name} is already set")
            manifest.set_field(object_id, field_name, copy.deepcopy(params["value"]))

        elif fix.action in (FixAction.REMOVE_REFERENCE, FixAction.REMOVE_OBJECT):
            if not manifest.remove_object(params["id"]):
                raise TargetMissing(f"{params['id']} no longer exists")

        else:
            raise ValueError(f"{fix.action.value} does not change the manifest")

        return original, serialize_manifest(manifest)

    def preview(self, issue: IntegrityIssue, manifest_path: Path) -> Optional[str]:
        """Unified diff of what a fix would change, or None if it no longer applies."""
        fix = issue.suggested_fix
        if fix is None:
            return None
        if fix.action is FixAction.FIX_PERMISSIONS:
            return f"chmod u+w {fix.params.get('path', fix.target)}\n"
        try:
            original, modified = self.render(issue, manifest_path)
        except TargetMissing:
            return None
        return generate_diff(original, modified, manifest_path.name)

    def is_applicable(self, issue: IntegrityIssue, manifest_path: Path) -> bool:
        """Whether the fix's target still exists."""
        fix = issue.suggested_fix
        if fix is None:
            return False
        if fix.action is FixAction.FIX_PERMISSIONS:
            path = fix.params.get("path", fix.target)
            return os.path.exists(path) and not os.access(path, os.W_OK)
        try:
            self.render(issue, manifest_path)
        except TargetMissing:
            return False
        return True

    def apply(self, issue: IntegrityIssue, txn: Transaction, manifest_path: Path) -> FixResult:
        """
        Apply an issue's fix inside an open transaction.

        Raises:
            TargetMissing: If the fix no longer applies
        """
        fix = issue.suggested_fix

        if fix.action is FixAction.FIX_PERMISSIONS:
            path = fix.params.get("path", fix.target)
            if not os.path.exists(path):
                raise TargetMissing(f"{path} no longer exists")
            self.manager.backup_file(txn, path)
            mode = os.stat(path).st_mode
            os.chmod(path, stat.S_IMODE(mode) | stat.S_IWUSR)
            return FixResult(True, f"Made {path} writable")

        original, modified = self.render(issue, manifest_path)
        self.manager.write_file(txn, str(manifest_path), modified)
        diff = generate_diff(original, modified, manifest_path.name)
        return FixResult(True, f"{fix.action.value} on {fix.target}", diff)
