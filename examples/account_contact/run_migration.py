#!/usr/bin/env python3
"""
Example: Sandbox to production Account + Contact migration

This script shows how to drive the org_migration engine from Python.

Usage:
    # Dry run (simulation)
    python run_migration.py --dry-run

    # Full migration
    python run_migration.py

    # With custom config
    python run_migration.py --config my_config.json

Credentials are read from the environment:
    ORG_MIGRATION_SANDBOX_INSTANCE_URL / ORG_MIGRATION_SANDBOX_ACCESS_TOKEN
    ORG_MIGRATION_PRODUCTION_INSTANCE_URL / ORG_MIGRATION_PRODUCTION_ACCESS_TOKEN
"""

import argparse
import asyncio
import dataclasses
import json
import logging
from pathlib import Path

from org_migration.config import EngineSettings
from org_migration.models.migration import MigrationProject
from org_migration.orchestrator import MigrationEngine
from org_migration.services.session_tracker import SessionEvent
from org_migration.templates.registry import TemplateRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('migration.log')
    ]
)
logger = logging.getLogger(__name__)

HERE = Path(__file__).parent


def print_progress(event: SessionEvent, session, payload):
    """Session listener printing batch progress."""
    if event == SessionEvent.PROGRESS and payload:
        print(
            f"  {payload['object_type']}: batch {payload['current_batch']}, "
            f"{payload['processed_records']}/{payload['total_records']} "
            f"({payload['percent_complete']}%)"
        )
    elif event != SessionEvent.PROGRESS:
        print(f"  {session.object_type}: {event.value}")


async def run(config_path: Path, dry_run: bool) -> bool:
    with open(config_path) as f:
        config_data = json.load(f)

    settings = EngineSettings.from_dict(config_data)
    registry = TemplateRegistry(str(config_path.parent / config_data.get("templates_dir", "templates")))
    engine = MigrationEngine(settings=settings, template_registry=registry)
    engine.tracker.add_listener(print_progress)

    project = MigrationProject.from_dict(config_data["project"])
    options = dataclasses.replace(project.options, dry_run=dry_run or project.options.dry_run)

    plan = await engine.plan_migration(project)
    print(f"Migration order: {' -> '.join(plan['object_order'])}")

    result = await engine.execute_migration(project, options)

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE" if result.success else "MIGRATION FAILED")
    print("=" * 60)
    for object_type, summary in result.object_results.items():
        print(
            f"{object_type}: {summary['successful_records']} succeeded "
            f"({summary['already_existed']} already existed), {summary['failed_records']} failed"
        )
        for error in summary["top_errors"]:
            print(f"    {error['count']}x {error['message']}")
    print(f"Duration: {result.duration:.2f} seconds")

    return result.success


def main():
    parser = argparse.ArgumentParser(description="Account + Contact migration example")
    parser.add_argument("--config", default=str(HERE / "config.json"), help="Path to config file")
    parser.add_argument("--dry-run", action="store_true", help="Simulate without writing to the target org")
    args = parser.parse_args()

    success = asyncio.run(run(Path(args.config), args.dry_run))
    raise SystemExit(0 if success else 1)


if __name__ == "__main__":
    main()
