"""Registry of migration templates."""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from ..models.template import (
    EXTERNAL_ID_PLACEHOLDER,
    SELECTED_IDS_PLACEHOLDER,
    MigrationTemplate,
)

logger = logging.getLogger(__name__)

_UNRESOLVED_PLACEHOLDER = re.compile(r"\{\w+\}")


class TemplateRegistry:
    """
    Registry for migration templates.

    Supports:
    - Loading templates from JSON files
    - Registering templates programmatically
    - Lookup by id, category or free-text search
    - Structural validation of templates

    One registry is created by the caller and handed to the engine.
    """

    def __init__(self, templates_dir: Optional[str] = None):
        """
        Initialize the template registry.

        Args:
            templates_dir: Directory containing template JSON files
        """
        self.templates: Dict[str, MigrationTemplate] = {}

        if templates_dir:
            self.load_from_directory(templates_dir)

    def load_from_directory(self, directory: str) -> int:
        """
        Load all template files from a directory.

        Args:
            directory: Path to directory containing template JSON files

        Returns:
            Number of templates loaded
        """
        loaded = 0
        path = Path(directory)

        if not path.exists():
            logger.warning(f"Template directory does not exist: {directory}")
            return 0

        for file_path in sorted(path.glob("**/*.json")):
            try:
                template = MigrationTemplate.from_json_file(str(file_path))
            except Exception as e:
                logger.error(f"Failed to load template from {file_path}: {e}")
                continue

            errors = self.validate_template(template)
            if errors:
                logger.error(f"Template {template.id} from {file_path} is invalid: {'; '.join(errors)}")
                continue

            self.register(template)
            loaded += 1
            logger.info(f"Loaded template: {template.id} from {file_path}")

        return loaded

    def register(self, template: MigrationTemplate) -> None:
        """Register a template, replacing any with the same id."""
        if template.id in self.templates:
            logger.warning(f"Replacing template {template.id}")
        self.templates[template.id] = template

    def get(self, template_id: str) -> Optional[MigrationTemplate]:
        return self.templates.get(template_id)

    def has(self, template_id: str) -> bool:
        return template_id in self.templates

    def remove(self, template_id: str) -> bool:
        return self.templates.pop(template_id, None) is not None

    def all(self) -> List[MigrationTemplate]:
        return list(self.templates.values())

    def ids(self) -> List[str]:
        return list(self.templates.keys())

    def by_category(self, category: str) -> List[MigrationTemplate]:
        return [t for t in self.templates.values() if t.category.lower() == category.lower()]

    def search(self, text: str) -> List[MigrationTemplate]:
        """Find templates whose id, name or description contains the text."""
        needle = text.lower()
        return [
            t for t in self.templates.values()
            if needle in t.id.lower() or needle in t.name.lower() or needle in t.description.lower()
        ]

    def count(self) -> int:
        return len(self.templates)

    def clear(self) -> None:
        self.templates.clear()

    @staticmethod
    def validate_template(template: MigrationTemplate) -> List[str]:
        """
        Check a template's structure.

        Returns:
            List of error messages, empty when the template is usable
        """
        errors = []

        if not template.id:
            errors.append("Template id is required")
        if not template.name:
            errors.append("Template name is required")
        if not template.etl_steps:
            errors.append("Template must have at least one ETL step")

        step_names = [s.step_name for s in template.etl_steps]
        duplicates = sorted({n for n in step_names if step_names.count(n) > 1})
        if duplicates:
            errors.append(f"Duplicate step names: {', '.join(duplicates)}")

        for name in template.execution_order:
            if name not in step_names:
                errors.append(f"Execution order references unknown step {name}")

        for step in template.etl_steps:
            if not step.extract_config.object_api_name:
                errors.append(f"Step {step.step_name} has no source object")
            if not step.load_config.target_object:
                errors.append(f"Step {step.step_name} has no target object")

            for dependency in step.dependencies:
                if dependency not in step_names:
                    errors.append(f"Step {step.step_name} depends on unknown step {dependency}")

            # Placeholders must all be ones the engine knows how to fill
            if step.extract_config.soql_query:
                resolved = (
                    step.extract_config.soql_query
                    .replace(EXTERNAL_ID_PLACEHOLDER, "External_Id__c")
                    .replace(SELECTED_IDS_PLACEHOLDER, "'000000000000000'")
                )
                leftover = _UNRESOLVED_PLACEHOLDER.findall(resolved)
                if leftover:
                    errors.append(
                        f"Step {step.step_name} query has unresolved placeholders: {', '.join(leftover)}"
                    )

        return errors
