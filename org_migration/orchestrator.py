"""Migration engine - coordinates a cross-org migration run."""

import asyncio
import dataclasses
import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .clients.connection import OrgConnection
from .config import EngineSettings
from .exceptions import (
    ConfigurationError,
    MigrationCancelledError,
    MigrationInProgressError,
    NoIdentityFieldError,
    SchemaResolutionError,
    ValidationBlockedError,
)
from .extractors.record_extractor import RecordExtractor, RelationshipInfo
from .loaders.record_loader import RecordLoader
from .models.migration import MigrationOptions, MigrationProject, MigrationResult, MigrationStatus
from .models.schema import ObjectDescribe, ObjectMapping
from .models.template import (
    EXTERNAL_ID_PLACEHOLDER,
    SELECTED_IDS_PLACEHOLDER,
    ETLStep,
    HookAction,
    LifecyclePoint,
    LoadOperation,
    MigrationTemplate,
)
from .services.dependency import DependencyResolver
from .services.field_mapping import FieldMappingEngine
from .services.identity import (
    ExternalIdConfig,
    ExternalIdResolver,
    build_cross_environment_query,
    identity_value,
)
from .services.retry import RetryPolicy
from .services.session_tracker import SessionTracker
from .services.soql import format_id_list
from .services.validation import ValidationEngine
from .templates.registry import TemplateRegistry

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class _RunContext:
    """Services and state scoped to one run."""
    project: MigrationProject
    options: MigrationOptions
    source: OrgConnection
    target: OrgConnection
    template: Optional[MigrationTemplate]
    result: MigrationResult
    resolver: ExternalIdResolver
    mapper: FieldMappingEngine
    validator: ValidationEngine
    loader: RecordLoader
    id_remap: Dict[str, str] = dataclasses.field(default_factory=dict)
    identities: Dict[str, ExternalIdConfig] = dataclasses.field(default_factory=dict)


class MigrationEngine:
    """
    Runs migrations between two orgs.

    Handles:
    - Schema discovery and dependency ordering
    - Identity field resolution per object type
    - Field mapping, from templates or generated
    - Batch streaming with validation, transformation and loading
    - Session tracking, cancellation and rollback
    - Run reports

    One run at a time per engine. Object types are processed one after the
    other in dependency order, and a batch is fully loaded before the next
    one is extracted.
    """

    def __init__(
        self,
        connections: Optional[Dict[str, OrgConnection]] = None,
        settings: Optional[EngineSettings] = None,
        template_registry: Optional[TemplateRegistry] = None,
        session_tracker: Optional[SessionTracker] = None,
        write_reports: bool = True
    ):
        """
        Initialize the engine.

        Args:
            connections: Org id -> connection; missing orgs are built from settings
            settings: Engine settings
            template_registry: Templates available to projects
            session_tracker: Session tracker shared with callers watching progress
            write_reports: Write a JSON report into the output directory after each run
        """
        self.settings = settings or EngineSettings()
        self.connections: Dict[str, OrgConnection] = dict(connections or {})
        self.templates = template_registry or TemplateRegistry()
        self.tracker = session_tracker or SessionTracker()
        self.write_reports = write_reports
        self.dependency_resolver = DependencyResolver()

        self._running = False
        self._cancel_event: Optional[asyncio.Event] = None
        self._loader: Optional[RecordLoader] = None
        self._current: Optional[_RunContext] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def _connection(self, org_id: str) -> OrgConnection:
        if org_id not in self.connections:
            self.connections[org_id] = self.settings.build_connection(org_id)
        return self.connections[org_id]

    @staticmethod
    def _error_entry(message: str, object_type: Optional[str] = None, **details: Any) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "message": message,
            "timestamp": datetime.utcnow().isoformat(),
        }
        if object_type:
            entry["object_type"] = object_type
        entry.update(details)
        return entry

    # Public API

    async def execute_migration(
        self,
        project: MigrationProject,
        options: Optional[MigrationOptions] = None
    ) -> MigrationResult:
        """
        Run a migration project.

        Never raises: every failure is reported in the returned result and in
        the owning session's error log.

        Args:
            project: What to migrate
            options: Execution options, defaulting to the project's

        Returns:
            MigrationResult for the run
        """
        options = options or project.options
        result = MigrationResult(session_id=project.id)

        if self._running:
            error = MigrationInProgressError("A migration is already running on this engine")
            result.errors.append(self._error_entry(str(error), error_type=type(error).__name__))
            return result

        self._running = True
        self._cancel_event = asyncio.Event()
        started = time.monotonic()
        logger.info(f"Starting migration {project.name or project.id}: {project.source_org_id} -> {project.target_org_id}")

        try:
            await self._run(project, options, result)
        except Exception as e:
            logger.error(f"Migration failed: {e}")
            result.errors.append(self._error_entry(str(e), error_type=type(e).__name__))
        finally:
            result.duration = time.monotonic() - started
            result.success = (
                not [e for e in result.errors if e.get("stage") != "report"]
                and not result.cancelled
                and result.failed_records == 0
                and bool(result.object_order)
                and all(
                    r.get("status") == MigrationStatus.COMPLETED.value
                    for r in result.object_results.values()
                )
                and len(result.object_results) == len(result.object_order)
            )
            self._running = False
            self._current = None
            if self.write_reports:
                self._save_report(project, result)

        logger.info(
            f"=== MIGRATION {'COMPLETED' if result.success else 'FINISHED WITH ERRORS'} === "
            f"{result.successful_records} succeeded, {result.failed_records} failed, "
            f"{result.existing_records} already existed in {result.duration:.2f}s"
        )
        return result

    def cancel_migration(self) -> bool:
        """
        Request cancellation of the active run.

        The run stops at the next batch boundary; the current session ends
        CANCELLED and no further object types start.

        Returns:
            True if a run was active
        """
        if not self._running or self._cancel_event is None:
            return False
        logger.warning("Cancellation requested")
        self._cancel_event.set()
        return True

    async def rollback(self) -> Dict[str, int]:
        """Delete the target records created by the last run, newest object type first."""
        if not self._loader:
            logger.error("No loader available for rollback")
            return {}

        logger.info("Starting rollback...")
        deleted = await self._loader.rollback()
        logger.info(f"Rollback completed: {deleted}")
        return deleted

    async def plan_migration(self, project: MigrationProject) -> Dict[str, Any]:
        """
        Describe what a run would do without extracting or writing.

        Returns:
            Migration order, dependencies and identity reports per object type
        """
        source = self._connection(project.source_org_id)
        target = self._connection(project.target_org_id)
        template = self._template_for(project)
        object_types = self._object_types(project, template)

        schemas = {obj: await self._describe(source, obj) for obj in object_types}
        order = self.dependency_resolver.order(object_types, schemas)
        resolver = ExternalIdResolver()

        identity = {}
        for obj in order:
            report = await resolver.validate_cross_environment(obj, source, target)
            identity[obj] = report.to_dict()

        return {
            "project_id": project.id,
            "object_order": order,
            "dependencies": self.dependency_resolver.dependencies(object_types, schemas),
            "identity": identity,
        }

    # Run phases

    def _template_for(self, project: MigrationProject) -> Optional[MigrationTemplate]:
        if not project.template_id:
            return None
        template = self.templates.get(project.template_id)
        if template is None:
            raise ConfigurationError(f"Template {project.template_id} not found")
        return template

    @staticmethod
    def _object_types(project: MigrationProject, template: Optional[MigrationTemplate]) -> List[str]:
        object_types = list(dict.fromkeys(project.object_types))
        if not object_types and template:
            object_types = [step.object_type for step in template.ordered_steps()]
        if not object_types:
            raise ConfigurationError("No object types to migrate")
        return object_types

    @staticmethod
    async def _describe(connection: OrgConnection, object_type: str) -> ObjectDescribe:
        try:
            return await connection.describe(object_type)
        except Exception as e:
            raise SchemaResolutionError(object_type, connection.org_id, str(e)) from e

    @staticmethod
    def _step(template: Optional[MigrationTemplate], object_type: str) -> Optional[ETLStep]:
        return template.step_for_object(object_type) if template else None

    async def _run(self, project: MigrationProject, options: MigrationOptions, result: MigrationResult) -> None:
        source = self._connection(project.source_org_id)
        target = self._connection(project.target_org_id)
        template = self._template_for(project)
        object_types = self._object_types(project, template)

        ctx = _RunContext(
            project=project,
            options=options,
            source=source,
            target=target,
            template=template,
            result=result,
            resolver=ExternalIdResolver(),
            mapper=FieldMappingEngine(),
            validator=ValidationEngine(source, target),
            loader=RecordLoader(target, dry_run=options.dry_run),
        )
        self._current = ctx
        self._loader = ctx.loader

        logger.info("=== PHASE 1: PLANNING ===")
        schemas = {obj: await self._describe(source, obj) for obj in object_types}
        result.object_order = self.dependency_resolver.order(object_types, schemas)

        # Configuration problems surface here, before anything is written
        for obj in result.object_order:
            step = self._step(template, obj)
            target_object = step.load_config.target_object if step else obj
            await self._describe(target, target_object)
            ctx.identities[obj] = await self._identity_config(ctx, obj, step, target_object)

        await self._dispatch_hooks(ctx, LifecyclePoint.PRE_MIGRATION)

        logger.info("=== PHASE 2: MIGRATION ===")
        for obj in result.object_order:
            if self._cancel_event.is_set():
                result.cancelled = True
                logger.warning(f"Cancelled before {obj}")
                break

            status = await self._migrate_object(ctx, obj)

            if status == MigrationStatus.CANCELLED:
                result.cancelled = True
                break
            if status == MigrationStatus.FAILED and not options.allow_partial_success:
                logger.error(f"Stopping migration after {obj} failed")
                break

        await self._dispatch_hooks(ctx, LifecyclePoint.POST_MIGRATION)

    async def _identity_config(
        self,
        ctx: _RunContext,
        object_type: str,
        step: Optional[ETLStep],
        target_object: str
    ) -> ExternalIdConfig:
        config = await ctx.resolver.build_config(object_type, ctx.source, ctx.target, target_object)
        if step and step.load_config.external_id_field != EXTERNAL_ID_PLACEHOLDER:
            config = ctx.resolver.manual_config(config.source_field, step.load_config.external_id_field)
        return config

    def _object_options(self, options: MigrationOptions, step: Optional[ETLStep]) -> MigrationOptions:
        """Options for one object type, with the template step's load overrides applied."""
        if not step:
            return options
        overrides: Dict[str, Any] = {}
        load = step.load_config
        if load.allow_partial_success is not None:
            overrides["allow_partial_success"] = load.allow_partial_success
        if load.use_bulk_api is not None:
            overrides["use_bulk_api"] = load.use_bulk_api
        batch_size = step.extract_config.batch_size or load.batch_size
        if batch_size:
            overrides["batch_size"] = batch_size
        return dataclasses.replace(options, **overrides)

    def _create_extractor(
        self,
        ctx: _RunContext,
        object_type: str,
        step: Optional[ETLStep],
        identity: ExternalIdConfig,
        batch_size: int
    ) -> RecordExtractor:
        """Build the extractor for an object type from its template step and the project filters."""
        selected = ctx.project.selected_record_ids.get(object_type, [])
        conditions = []
        base_query = None
        order_by = None

        if step:
            extract = step.extract_config
            order_by = extract.order_by
            if extract.filter_criteria:
                conditions.append(extract.filter_criteria)
            if extract.soql_query:
                base_query = build_cross_environment_query(extract.soql_query, identity.source_field)
                if SELECTED_IDS_PLACEHOLDER in base_query:
                    if not selected:
                        raise ConfigurationError(f"Query for {object_type} requires selected record ids")
                    base_query = base_query.replace(SELECTED_IDS_PLACEHOLDER, format_id_list(selected))
                    selected = []

        if ctx.project.filters.get(object_type):
            conditions.append(ctx.project.filters[object_type])
        if selected:
            conditions.append(f"Id IN ({format_id_list(selected)})")

        where = None
        if conditions:
            where = " AND ".join(f"({c})" for c in conditions) if len(conditions) > 1 else conditions[0]

        return RecordExtractor(
            ctx.source,
            object_type,
            base_query=base_query,
            where=where,
            order_by=order_by,
            batch_size=batch_size,
        )

    async def _build_mapping(
        self,
        ctx: _RunContext,
        object_type: str,
        step: Optional[ETLStep],
        target_object: str
    ) -> ObjectMapping:
        if step and step.transform_config.field_mappings:
            identity = ctx.identities[object_type]
            mapping = ctx.mapper.mapping_from_template(
                step,
                await ctx.source.describe(object_type),
                await ctx.target.describe(target_object),
                identity.source_field,
                identity.target_field,
            )
            ctx.mapper.cache_mapping(object_type, mapping)
            return mapping
        return await ctx.mapper.get_mapping(object_type, ctx.source, ctx.target, target_object)

    async def _migrate_object(self, ctx: _RunContext, object_type: str) -> MigrationStatus:
        """Migrate one object type in its own session and return the session's final status."""
        logger.info(f"=== MIGRATING {object_type} ===")
        result = ctx.result
        step = self._step(ctx.template, object_type)
        target_object = step.load_config.target_object if step else object_type
        identity = ctx.identities[object_type]
        options = self._object_options(ctx.options, step)

        session = await self.tracker.create_session(ctx.project.id, object_type)
        result.sessions[object_type] = session.id
        if result.session_id == ctx.project.id:
            result.session_id = session.id
        await self.tracker.start_session(session.id)
        await self._dispatch_hooks(ctx, LifecyclePoint.PRE_OBJECT, session.id)

        existing = 0
        status = MigrationStatus.RUNNING
        try:
            mapping = await self._build_mapping(ctx, object_type, step, target_object)
            extractor = self._create_extractor(ctx, object_type, step, identity, options.batch_size)
            total = await extractor.get_record_count()
            await self.tracker.update_progress(session.id, total_records=total)

            batch_number = 0
            stopped = False
            async for batch in extractor.stream_batches(options.batch_size):
                if self._cancel_event.is_set():
                    raise MigrationCancelledError(f"Migration cancelled during {object_type}")

                batch_number += 1
                await self.tracker.update_progress(session.id, current_batch=batch_number)
                batch_existing, stopped = await self._process_batch(
                    ctx, session.id, object_type, step, mapping, extractor, batch, options, total, batch_number
                )
                existing += batch_existing
                if stopped:
                    break

            if self._cancel_event.is_set() and not stopped:
                raise MigrationCancelledError(f"Migration cancelled during {object_type}")

            if stopped:
                await self.tracker.fail_session(session.id, f"Load of {object_type} stopped after record failures")
                status = MigrationStatus.FAILED
            else:
                await self.tracker.complete_session(session.id)
                status = MigrationStatus.COMPLETED

        except MigrationCancelledError as e:
            await self.tracker.cancel_session(session.id, str(e))
            status = MigrationStatus.CANCELLED

        except Exception as e:
            logger.error(f"Migration of {object_type} failed: {e}")
            details = {"error_type": type(e).__name__}
            if isinstance(e, ValidationBlockedError):
                details["issues"] = e.issues
            await self.tracker.fail_session(session.id, str(e), details)
            result.errors.append(self._error_entry(str(e), object_type, **details))
            status = MigrationStatus.FAILED

        finally:
            summary = await self.tracker.generate_summary(session.id)
            result.object_results[object_type] = summary
            result.total_records += summary["total_records"]
            result.successful_records += summary["successful_records"]
            result.failed_records += summary["failed_records"]
            result.existing_records += existing
            await self._dispatch_hooks(ctx, LifecyclePoint.POST_OBJECT, session.id)

        return status

    async def _process_batch(
        self,
        ctx: _RunContext,
        session_id: str,
        object_type: str,
        step: Optional[ETLStep],
        mapping: ObjectMapping,
        extractor: RecordExtractor,
        batch: List[Dict[str, Any]],
        options: MigrationOptions,
        total: int,
        batch_number: int
    ) -> Tuple[int, bool]:
        """
        Validate, transform, load and record one batch.

        Returns:
            (records that already existed, whether the object type must stop)
        """
        identity = ctx.identities[object_type]

        if options.enable_validation and step and step.validation_config:
            validation = await ctx.validator.validate_batch(
                step, batch, identity, ctx.project.selected_record_ids.get(object_type)
            )
            if validation.warnings:
                await self.tracker.add_error(
                    session_id,
                    f"{len(validation.warnings)} validation warnings in batch {batch_number}",
                    details={"warnings": [w.to_dict() for w in validation.warnings]},
                )
            if not validation.is_valid:
                raise ValidationBlockedError(object_type, [i.to_dict() for i in validation.errors])

        if options.preserve_relationships:
            await self._resolve_parents(ctx, extractor, batch)

        transformed = []
        for record in batch:
            target_record = ctx.mapper.transform_record(record, mapping, ctx.id_remap)
            if step:
                target_record = ctx.mapper.apply_record_type_mapping(
                    record, target_record, step.transform_config.record_type_mapping
                )
            transformed.append(target_record)
        if step and step.transform_config.lookup_mappings:
            await ctx.mapper.apply_lookup_mappings(batch, transformed, step.transform_config.lookup_mappings, ctx.target)

        # Record level checks fail single records instead of the batch
        rejected: Dict[str, List[str]] = {}
        if options.enable_validation:
            stamped = [r for _, r in ctx.loader.prepare_records(transformed, batch, identity)]
            target_describe = await ctx.target.describe(mapping.target_object)
            for issue in ctx.validator.check_records(batch, stamped, target_describe, identity.target_field):
                rejected.setdefault(issue.record_id, []).append(issue.message)

        to_load, to_load_sources = [], []
        for record, source_record in zip(transformed, batch):
            source_id = source_record.get("Id")
            if source_id in rejected:
                message = "; ".join(rejected[source_id])
                await self.tracker.record_failure(session_id, source_id, message, record)
                await self.tracker.add_error(session_id, message, source_id, {"batch": batch_number})
            else:
                to_load.append(record)
                to_load_sources.append(source_record)

        operation = step.load_config.operation if step else LoadOperation.UPSERT
        retry_policy = RetryPolicy.from_config(step.load_config.retry_config) if step else RetryPolicy()
        load_result = await ctx.loader.load(
            to_load,
            to_load_sources,
            mapping,
            ctx.id_remap,
            options,
            identity=identity,
            operation=operation,
            retry_policy=retry_policy,
            total_records=total,
            batch_offset=batch_number - 1,
        )

        for outcome in load_result.outcomes:
            if outcome.success:
                await self.tracker.record_success(
                    session_id,
                    outcome.source_id,
                    outcome.target_id,
                    outcome.record_data,
                    already_existed=not outcome.created,
                )
                continue

            error = outcome.error
            message = error.message if error else "Unknown error"
            await self.tracker.record_failure(session_id, outcome.source_id, message, outcome.record_data)
            await self.tracker.add_error(
                session_id,
                message,
                outcome.source_id,
                error.to_dict() if error else None,
            )

        failed = bool(rejected) or load_result.error_count > 0
        stop = load_result.stopped or (failed and not options.allow_partial_success)
        return load_result.existing_count, stop

    async def _resolve_parents(
        self,
        ctx: _RunContext,
        extractor: RecordExtractor,
        batch: List[Dict[str, Any]]
    ) -> None:
        """
        Map the batch's parent ids to target ids.

        Parents migrated earlier in the run are already in the remap. Others
        are found in the target by the identity value the parent carries in
        the source.
        """
        for relationship in await extractor.collect_relationships(batch):
            missing = [i for i in relationship.record_ids if i not in ctx.id_remap]
            if not missing:
                continue

            parent_type = relationship.referenced_object
            try:
                source_field = await ctx.resolver.resolve(parent_type, ctx.source)
                target_field = await ctx.resolver.resolve(parent_type, ctx.target)
            except NoIdentityFieldError as e:
                logger.debug(f"Cannot resolve {relationship.field} parents: {e}")
                continue

            pending = RelationshipInfo(relationship.field, parent_type, missing)
            parents = await extractor.extract_parent_records([pending], {parent_type: [source_field]})
            values = {
                parent_id: identity_value(record, source_field)
                for parent_id, record in parents.get(relationship.field, {}).items()
            }
            found = await RecordExtractor.lookup_target_ids(
                ctx.target, parent_type, target_field, [v for v in values.values() if v]
            )
            for parent_id, value in values.items():
                if value in found:
                    ctx.id_remap[parent_id] = found[value]

            logger.debug(f"{relationship.field}: resolved {len(found)} of {len(missing)} parents in target")

    async def _dispatch_hooks(
        self,
        ctx: _RunContext,
        point: LifecyclePoint,
        session_id: Optional[str] = None
    ) -> None:
        if not ctx.template:
            return

        for action in ctx.template.hook_actions(point):
            logger.debug(f"Hook {action.value} at {point.value}")
            if action == HookAction.CLEAR_VALIDATION_CACHE:
                ctx.validator.clear_cache()
            elif action == HookAction.LOG_SUMMARY:
                if session_id:
                    summary = await self.tracker.generate_summary(session_id)
                    logger.info(f"Summary for {summary['object_type']}: {json.dumps(summary, default=str)}")
                else:
                    logger.info(f"Run summary: {json.dumps(ctx.result.to_dict(), default=str)}")
            elif action == HookAction.WRITE_REPORT:
                self._save_report(ctx.project, ctx.result)

    def _save_report(self, project: MigrationProject, result: MigrationResult) -> Optional[Path]:
        """
        Save the migration report.

        A report that cannot be written is logged and recorded on the result
        with stage "report"; it does not change the outcome of the run.
        """
        logs_dir = Path(self.settings.output_dir) / "logs"
        filepath = logs_dir / f"migration_report_{project.id}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.json"
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            with open(filepath, 'w') as f:
                json.dump({"project": project.to_dict(), "result": result.to_dict()}, f, indent=2, default=str)
        except OSError as e:
            logger.error(f"Failed to save migration report: {e}")
            result.errors.append(self._error_entry(
                f"Failed to save migration report: {e}", error_type=type(e).__name__, stage="report"
            ))
            return None
        logger.info(f"Saved migration report to {filepath}")
        return filepath
