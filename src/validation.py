"""
Addon Validation - spec schema, selector, template and dependency checks.

Schema validation uses JSON Schema (Draft 7), the same dialect the CRD
openAPIV3Schema is written in.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import yaml
from jsonschema import Draft7Validator, ValidationError

from errors import AddonValidationError, DependencyError
from models import Addon, LifecycleStep
from version_cache import DependencyState, VersionCache

logger = logging.getLogger(__name__)

WORKFLOW_TYPE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "namePrefix": {"type": "string", "maxLength": 63},
        "template": {"type": "string"},
    },
}

ADDON_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["pkgName", "pkgVersion", "pkgType", "lifecycle"],
    "properties": {
        "pkgName": {"type": "string", "minLength": 1, "maxLength": 63},
        "pkgVersion": {"type": "string", "minLength": 1},
        "pkgType": {"type": "string", "enum": ["helm", "composite"]},
        "pkgDescription": {"type": "string"},
        "pkgDeps": {
            "type": "object",
            "additionalProperties": {"type": "string", "minLength": 1},
        },
        "secrets": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name"],
                "properties": {"name": {"type": "string", "minLength": 1}},
            },
        },
        "params": {
            "type": "object",
            "properties": {
                "namespace": {"type": "string"},
                "data": {"type": "object", "additionalProperties": {"type": "string"}},
            },
        },
        "lifecycle": {
            "type": "object",
            "required": ["prereqs", "install"],
            "properties": {
                "prereqs": WORKFLOW_TYPE_SCHEMA,
                "install": WORKFLOW_TYPE_SCHEMA,
                "delete": WORKFLOW_TYPE_SCHEMA,
            },
        },
    },
}


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against a JSON Schema.

    Args:
        spec: The resource specification to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = list(validator.iter_errors(spec))

        if not errors:
            return True, None

        # Collect all validation errors
        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def parse_workflow_template(template: str) -> Dict[str, Any]:
    """
    Parse a workflow template into a manifest dict.

    Raises:
        AddonValidationError: If the template is not a Workflow manifest
    """
    try:
        manifest = yaml.safe_load(template)
    except yaml.YAMLError as e:
        raise AddonValidationError(f"workflow template is not valid YAML: {e}")

    if not isinstance(manifest, dict):
        raise AddonValidationError("workflow template must be a YAML mapping")
    if manifest.get("kind") != "Workflow":
        raise AddonValidationError(
            f"workflow template kind must be Workflow, got {manifest.get('kind')!r}"
        )
    return manifest


class AddonValidator:
    """
    Validates an addon before any workflow is run for it.

    Dependency problems raise DependencyError tagged with the dependency
    state, so callers can tell waiting apart from invalid.
    """

    def __init__(self, addon: Addon, cache: VersionCache):
        self.addon = addon
        self.cache = cache

    def validate(self) -> None:
        """
        Run all checks.

        Raises:
            DependencyError: A dependency is pending or missing
            AddonValidationError: Any other validation failure
        """
        self._validate_schema()
        self._validate_selector()
        self._validate_templates()
        self._validate_duplicate()
        self._validate_dependencies()

    def _validate_schema(self) -> None:
        spec = self.addon.spec.model_dump(mode="json", by_alias=True, exclude_none=True)
        is_valid, error = validate_spec_against_schema(spec, ADDON_SPEC_SCHEMA)
        if not is_valid:
            raise AddonValidationError(f"invalid addon spec: {error}")

    def _validate_selector(self) -> None:
        try:
            self.addon.spec.selector.to_selector_string()
        except ValueError as e:
            raise AddonValidationError(f"label selector is invalid. {e}")

    def _validate_templates(self) -> None:
        for step in LifecycleStep:
            wt = self.addon.get_workflow_type(step)
            if wt is None or not wt.template:
                continue
            try:
                parse_workflow_template(wt.template)
            except AddonValidationError as e:
                raise AddonValidationError(f"{step.value} {e.message}")

    def _validate_duplicate(self) -> None:
        spec = self.addon.spec
        existing = self.cache.get_version(spec.pkg_name, spec.pkg_version)
        if existing is None:
            return
        if (existing.name, existing.namespace) != (self.addon.name, self.addon.namespace):
            raise AddonValidationError(
                f"package version {spec.pkg_name}:{spec.pkg_version} already exists "
                f"in addon {existing.namespace}/{existing.name} and cannot be "
                f"installed as a duplicate"
            )

    def _validate_dependencies(self) -> None:
        deps = self.addon.spec.pkg_deps
        if not deps:
            return

        self._detect_cycle()

        missing: List[str] = []
        pending: List[str] = []
        for pkg_name, pkg_version in sorted(deps.items()):
            state, _ = self.cache.check_dependency(pkg_name, pkg_version)
            if state is DependencyState.MISSING:
                missing.append(f"{pkg_name}:{pkg_version}")
            elif state is DependencyState.PENDING:
                pending.append(f"{pkg_name}:{pkg_version}")

        if missing:
            raise DependencyError(
                DependencyState.MISSING,
                f"required dependencies are not installed: {', '.join(missing)}",
            )
        if pending:
            raise DependencyError(
                DependencyState.PENDING,
                f"required dependencies are pending: {', '.join(pending)}",
            )

    def _detect_cycle(self) -> None:
        target = self.addon.spec.pkg_name
        stack = list(self.addon.spec.pkg_deps.items())
        visited = set()

        while stack:
            pkg_name, pkg_version = stack.pop()
            if pkg_name == target:
                raise AddonValidationError(
                    f"circular dependency detected for package {target}"
                )
            if (pkg_name, pkg_version) in visited:
                continue
            visited.add((pkg_name, pkg_version))

            version = self.cache.get_version(pkg_name, pkg_version)
            if version is not None:
                stack.extend(version.pkg_deps.items())
