"""Loader writing records into a target org."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .base import BaseLoader, LoadResult
from ..clients.base import RemoteApiError, SaveResult
from ..clients.connection import OrgConnection
from ..exceptions import ConfigurationError
from ..extractors.record_extractor import RecordExtractor
from ..models.migration import MigrationOptions
from ..models.record import LoadError, LoadOutcome
from ..models.schema import ObjectMapping
from ..models.template import LoadOperation
from ..services.identity import ExternalIdConfig, identity_value
from ..services.retry import RetryPolicy
from ..services.soql import chunked

logger = logging.getLogger(__name__)

BULK_CHUNK_SIZE = 200

PreparedRecord = Tuple[Optional[str], Dict[str, Any]]


class RecordLoader(BaseLoader):
    """
    Loader for one target org.

    Supports:
    - Per-record writes in fixed-size batches below the bulk threshold
    - Multi-record bulk writes at or above it, chunks run with bounded concurrency
    - Insert, update and upsert by identity field
    - Error-code driven retry
    - Dry runs
    """

    def __init__(self, connection: OrgConnection, dry_run: bool = False):
        super().__init__(connection, dry_run)

    @staticmethod
    def should_use_bulk_api(record_count: int, options: MigrationOptions) -> bool:
        """An explicit option wins; otherwise the record count decides."""
        if options.use_bulk_api is not None:
            return options.use_bulk_api
        return record_count >= options.bulk_api_threshold

    @staticmethod
    def prepare_records(
        records: List[Dict[str, Any]],
        source_records: List[Dict[str, Any]],
        identity: Optional[ExternalIdConfig]
    ) -> List[PreparedRecord]:
        """Pair records with their source ids and stamp the identity field."""
        prepared = []
        for record, source_record in zip(records, source_records):
            record = dict(record)
            if identity:
                value = identity_value(source_record, identity.source_field)
                if value:
                    record[identity.target_field] = value
            prepared.append((source_record.get("Id"), record))
        return prepared

    async def load(
        self,
        records: List[Dict[str, Any]],
        source_records: List[Dict[str, Any]],
        object_mapping: ObjectMapping,
        id_remap: Dict[str, str],
        options: MigrationOptions,
        identity: Optional[ExternalIdConfig] = None,
        operation: LoadOperation = LoadOperation.UPSERT,
        retry_policy: Optional[RetryPolicy] = None,
        total_records: Optional[int] = None,
        batch_offset: int = 0
    ) -> LoadResult:
        """
        Load transformed records into the target org.

        Args:
            records: Transformed records, aligned with source_records
            source_records: The source records they came from
            object_mapping: Mapping that produced the records
            id_remap: Run-wide source id -> target id map, updated in place
            options: Migration options
            identity: Identity fields; required for upsert
            operation: insert, update or upsert
            retry_policy: Retry policy for remote errors
            total_records: Record count of the object type, used to pick the write path
            batch_offset: Index of the first batch, used in error reports

        Returns:
            LoadResult for the records
        """
        target_object = object_mapping.target_object
        if operation == LoadOperation.UPSERT and identity is None:
            raise ConfigurationError(f"Upsert of {target_object} requires an identity field")

        retry_policy = retry_policy or RetryPolicy()
        prepared = self.prepare_records(records, source_records, identity)
        use_bulk = self.should_use_bulk_api(total_records if total_records is not None else len(records), options)

        result = LoadResult(object_type=target_object, used_bulk_api=use_bulk)
        result.started_at = datetime.utcnow()

        if self.dry_run:
            for source_id, record in prepared:
                result.add_outcome(LoadOutcome(source_id=source_id, success=True, record_data=record))
            result.completed_at = datetime.utcnow()
            logger.info(f"[DRY RUN] Would write {len(prepared)} {target_object} records")
            return result

        if operation == LoadOperation.UPDATE:
            await self._attach_target_ids(prepared, target_object, id_remap, identity)

        identity_field = identity.target_field if identity else None
        if use_bulk:
            await self._load_bulk(prepared, target_object, operation, identity_field, options, retry_policy, batch_offset, result)
        else:
            await self._load_per_record(prepared, target_object, operation, identity_field, options, retry_policy, batch_offset, result)

        id_remap.update(result.id_mapping)
        self.track_created(target_object, result.created_ids)
        result.completed_at = datetime.utcnow()

        logger.info(
            f"Loaded {target_object}: {result.success_count} created, {result.existing_count} already existed, "
            f"{result.error_count} failed ({'bulk' if use_bulk else 'per-record'})"
        )
        return result

    async def _attach_target_ids(
        self,
        prepared: List[PreparedRecord],
        target_object: str,
        id_remap: Dict[str, str],
        identity: Optional[ExternalIdConfig]
    ) -> None:
        """Set Id on records being updated, from the remap or by identity value."""
        by_identity: Dict[str, str] = {}
        if identity:
            values = [r.get(identity.target_field) for sid, r in prepared if sid not in id_remap]
            by_identity = await RecordExtractor.lookup_target_ids(
                self.connection, target_object, identity.target_field, [str(v) for v in values if v]
            )

        for source_id, record in prepared:
            target_id = id_remap.get(source_id) if source_id else None
            if not target_id and identity and record.get(identity.target_field):
                target_id = by_identity.get(str(record[identity.target_field]))
            if target_id:
                record["Id"] = target_id

    async def _write_one(
        self,
        target_object: str,
        record: Dict[str, Any],
        operation: LoadOperation,
        identity_field: Optional[str]
    ) -> SaveResult:
        if operation == LoadOperation.UPSERT:
            save = await self.connection.upsert(target_object, identity_field, record)
        elif operation == LoadOperation.UPDATE:
            if not record.get("Id"):
                raise RemoteApiError("No target record to update", error_code="ENTITY_NOT_FOUND")
            save = await self.connection.update(target_object, record["Id"], record)
        else:
            save = await self.connection.create(target_object, record)

        if not save.success:
            codes = save.error_codes
            raise RemoteApiError(
                save.error_message,
                error_code=codes[0] if codes else None,
                fields=save.error_fields,
            )
        return save

    @staticmethod
    def _is_record_error(exc: Exception) -> bool:
        """Coded client errors belong to one record; anything else fails the batch."""
        if not isinstance(exc, RemoteApiError) or not exc.error_code:
            return False
        return exc.status_code is None or (exc.status_code < 500 and exc.status_code != 401)

    @staticmethod
    def _failure(
        batch_index: int,
        source_id: Optional[str],
        record: Dict[str, Any],
        message: str,
        fields: Optional[List[str]] = None,
        error_code: Optional[str] = None
    ) -> LoadOutcome:
        return LoadOutcome(
            source_id=source_id,
            success=False,
            error=LoadError(
                index=batch_index,
                source_id=source_id,
                message=message,
                fields=fields or [],
                error_code=error_code,
            ),
            record_data=record,
        )

    def _failure_from_exception(
        self,
        batch_index: int,
        source_id: Optional[str],
        record: Dict[str, Any],
        exc: Exception
    ) -> LoadOutcome:
        if isinstance(exc, RemoteApiError):
            return self._failure(batch_index, source_id, record, exc.message, exc.fields, exc.error_code)
        return self._failure(batch_index, source_id, record, str(exc))

    @staticmethod
    def _success(source_id: Optional[str], record: Dict[str, Any], save: SaveResult) -> LoadOutcome:
        return LoadOutcome(
            source_id=source_id,
            success=True,
            target_id=save.id,
            created=save.created,
            record_data=record,
        )

    async def _load_per_record(
        self,
        prepared: List[PreparedRecord],
        target_object: str,
        operation: LoadOperation,
        identity_field: Optional[str],
        options: MigrationOptions,
        retry_policy: RetryPolicy,
        batch_offset: int,
        result: LoadResult
    ) -> None:
        batch_size = max(options.batch_size, 1)

        for batch_number, batch in enumerate(chunked(prepared, batch_size)):
            batch_index = batch_offset + batch_number
            failures_before = result.error_count

            for position, (source_id, record) in enumerate(batch):
                try:
                    save = await retry_policy.call(self._write_one, target_object, record, operation, identity_field)
                except Exception as e:
                    if self._is_record_error(e):
                        result.add_outcome(self._failure_from_exception(batch_index, source_id, record, e))
                        continue

                    # The rest of the batch fails with the batch error
                    logger.error(f"Batch {batch_index} of {target_object} failed: {e}")
                    for failed_id, failed_record in batch[position:]:
                        result.add_outcome(self._failure_from_exception(batch_index, failed_id, failed_record, e))
                    break

                result.add_outcome(self._success(source_id, record, save))

            if result.error_count > failures_before and not options.allow_partial_success:
                result.stopped = True
                logger.error(f"Stopping {target_object} load after failures in batch {batch_index}")
                break

    async def _load_bulk(
        self,
        prepared: List[PreparedRecord],
        target_object: str,
        operation: LoadOperation,
        identity_field: Optional[str],
        options: MigrationOptions,
        retry_policy: RetryPolicy,
        batch_offset: int,
        result: LoadResult
    ) -> None:
        chunks = list(chunked(prepared, BULK_CHUNK_SIZE))
        concurrency = max(options.max_concurrent_batches, 1)
        semaphore = asyncio.Semaphore(concurrency)

        async def run_chunk(chunk_index: int, chunk: List[PreparedRecord]) -> List[LoadOutcome]:
            batch_index = batch_offset + chunk_index
            async with semaphore:
                try:
                    saves = await retry_policy.call(
                        self.connection.bulk_save,
                        target_object,
                        [record for _, record in chunk],
                        operation.value,
                        identity_field,
                    )
                except Exception as e:
                    logger.error(f"Bulk chunk {batch_index} of {target_object} failed: {e}")
                    return [self._failure_from_exception(batch_index, sid, rec, e) for sid, rec in chunk]

            outcomes = []
            for (source_id, record), save in zip(chunk, saves):
                if save.success:
                    outcomes.append(self._success(source_id, record, save))
                elif any(retry_policy.is_retryable_code(code) for code in save.error_codes):
                    outcomes.append(await self._resubmit(
                        batch_index, source_id, record, save, target_object, operation, identity_field, retry_policy
                    ))
                else:
                    codes = save.error_codes
                    outcomes.append(self._failure(
                        batch_index, source_id, record, save.error_message, save.error_fields,
                        codes[0] if codes else None,
                    ))

            # Records the API returned no result for
            for source_id, record in chunk[len(saves):]:
                outcomes.append(self._failure(
                    batch_index, source_id, record,
                    f"No result returned for record {len(outcomes) + 1} of bulk chunk {batch_index}",
                    error_code="MISSING_RESULT",
                ))
            return outcomes

        # Windows of concurrent chunks, so a failure without partial success stops further writes
        for start in range(0, len(chunks), concurrency):
            window = chunks[start:start + concurrency]
            failures_before = result.error_count
            outcome_lists = await asyncio.gather(*(
                run_chunk(start + offset, chunk) for offset, chunk in enumerate(window)
            ))
            for outcomes in outcome_lists:
                for outcome in outcomes:
                    result.add_outcome(outcome)

            if result.error_count > failures_before and not options.allow_partial_success:
                result.stopped = True
                logger.error(f"Stopping bulk load of {target_object} after failures")
                break

    async def _resubmit(
        self,
        batch_index: int,
        source_id: Optional[str],
        record: Dict[str, Any],
        save: SaveResult,
        target_object: str,
        operation: LoadOperation,
        identity_field: Optional[str],
        retry_policy: RetryPolicy
    ) -> LoadOutcome:
        """Write a record again after a retryable bulk failure, within the remaining retries."""
        codes = save.error_codes
        if retry_policy.max_retries < 1:
            return self._failure(batch_index, source_id, record, save.error_message, save.error_fields, codes[0])

        logger.warning(f"Retrying {target_object} record {source_id} after {codes[0]}")
        await asyncio.sleep(retry_policy.wait_seconds)
        remaining = RetryPolicy(
            max_retries=retry_policy.max_retries - 1,
            wait_seconds=retry_policy.wait_seconds,
            retryable_errors=retry_policy.retryable_errors,
        )
        try:
            resaved = await remaining.call(self._write_one, target_object, record, operation, identity_field)
        except Exception as e:
            return self._failure_from_exception(batch_index, source_id, record, e)
        return self._success(source_id, record, resaved)
