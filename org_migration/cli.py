"""Command line interface for the org migration engine."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

from .config import EngineSettings
from .models.migration import MigrationProject
from .models.template import MigrationTemplate
from .orchestrator import MigrationEngine
from .templates.registry import TemplateRegistry

logger = logging.getLogger(__name__)


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Org Migration Tool - Migrate records between orgs"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run migration
    run_parser = subparsers.add_parser("run", help="Run a migration")
    run_parser.add_argument("--config", required=True, help="Path to migration config file")
    run_parser.add_argument("--dry-run", action="store_true", help="Simulate without writing to the target org")
    run_parser.add_argument("--rollback-on-failure", action="store_true",
                            help="Delete created records when the run fails")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Plan migration
    plan_parser = subparsers.add_parser("plan", help="Show migration order and identity fields")
    plan_parser.add_argument("--config", required=True, help="Path to migration config file")
    plan_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Validate templates
    templates_parser = subparsers.add_parser("validate-templates", help="Validate template files")
    templates_parser.add_argument("--templates-dir", required=True, help="Directory containing template files")

    args = parser.parse_args()

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.command == "run":
        sys.exit(run_migration(args))
    elif args.command == "plan":
        run_plan(args)
    elif args.command == "validate-templates":
        sys.exit(run_template_validation(args))
    else:
        parser.print_help()


def load_config(path: str) -> Dict[str, Any]:
    with open(path) as f:
        return json.load(f)


def build_engine(config_data: Dict[str, Any]) -> MigrationEngine:
    """Create an engine from a config file's settings, orgs and templates."""
    settings = EngineSettings.from_dict(config_data)
    templates_dir = config_data.get("templates_dir") or settings.templates_dir
    return MigrationEngine(
        settings=settings,
        template_registry=TemplateRegistry(templates_dir),
    )


def run_migration(args) -> int:
    """Run a migration from config file."""
    config_data = load_config(args.config)
    project_data = dict(config_data["project"])

    if args.dry_run:
        project_data.setdefault("options", {})["dry_run"] = True

    project = MigrationProject.from_dict(project_data)
    engine = build_engine(config_data)

    async def execute():
        result = await engine.execute_migration(project)
        if not result.success and args.rollback_on_failure and not project.options.dry_run:
            await engine.rollback()
        return result

    result = asyncio.run(execute())

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE" if result.success else "MIGRATION FAILED")
    print("=" * 60)
    print(f"Order: {' -> '.join(result.object_order)}")
    print(f"Records Processed: {result.total_records}")
    print(f"Succeeded: {result.successful_records}")
    print(f"Already Existed: {result.existing_records}")
    print(f"Failed: {result.failed_records}")
    if result.cancelled:
        print("Cancelled: yes")
    print(f"Duration: {result.duration:.2f} seconds")

    for error in result.errors:
        print(f"  - {error.get('object_type', 'run')}: {error['message']}")

    return 0 if result.success else 1


def run_plan(args):
    """Print the migration order and identity configuration."""
    config_data = load_config(args.config)
    project = MigrationProject.from_dict(config_data["project"])
    engine = build_engine(config_data)

    plan = asyncio.run(engine.plan_migration(project))
    print(json.dumps(plan, indent=2))


def run_template_validation(args) -> int:
    """Validate every template file in a directory."""
    all_errors = []
    files = sorted(Path(args.templates_dir).glob("**/*.json"))

    for file_path in files:
        try:
            template = MigrationTemplate.from_json_file(str(file_path))
        except (ValueError, KeyError) as e:
            errors = [f"Unreadable template: {e}"]
        else:
            errors = TemplateRegistry.validate_template(template)

        if errors:
            print(f"\n{file_path}:")
            for error in errors:
                print(f"  - {error}")
            all_errors.extend(errors)

    print(f"\nChecked {len(files)} template files")
    if not all_errors:
        print("Templates are valid!")
        return 0
    print(f"Found {len(all_errors)} validation errors")
    return 1


if __name__ == "__main__":
    main()
