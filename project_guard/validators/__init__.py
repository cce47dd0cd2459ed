"""
Pluggable Resource Validators
=============================

The detailed integrity check hands every referenced resource to the
validator registered for its suffix. A validator takes a path and returns
a list of problem descriptions (empty when the resource looks sound).

Built-in validators:
    .xcassets              asset catalog Contents.json files and image files
    .storyboard, .xib      Interface Builder XML documents
    .plist                 property lists (XML, binary or OpenStep)
    .strings               strings tables
"""

from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import asset_catalog, interface_builder, property_list, strings_file

ResourceValidator = Callable[[Path], List[str]]


class ValidatorRegistry:
    """
    Maps file suffixes to resource validators.

    Usage:
        registry = ValidatorRegistry.default()
        registry.register(".json", my_json_validator)
        problems = registry.validate(Path("Assets.xcassets"))
    """

    def __init__(self):
        self._validators: Dict[str, ResourceValidator] = {}

    @classmethod
    def default(cls) -> "ValidatorRegistry":
        registry = cls()
        registry.register(".xcassets", asset_catalog.validate)
        registry.register(".storyboard", interface_builder.validate)
        registry.register(".xib", interface_builder.validate)
        registry.register(".plist", property_list.validate)
        registry.register(".strings", strings_file.validate)
        return registry

    def register(self, suffix: str, validator: ResourceValidator) -> None:
        """
        Register a validator for a file suffix.

        Args:
            suffix: Suffix including the dot, e.g. ".xib"
            validator: Callable returning problem descriptions
        """
        self._validators[suffix.lower()] = validator

    def validator_for(self, path: Path) -> Optional[ResourceValidator]:
        return self._validators.get(path.suffix.lower())

    def validate(self, path: Path) -> List[str]:
        validator = self.validator_for(path)
        if validator is None:
            return []
        return validator(path)

    @property
    def suffixes(self) -> List[str]:
        return sorted(self._validators)


__all__ = ["ResourceValidator", "ValidatorRegistry"]
