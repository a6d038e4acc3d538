"""Batch job tracker for bulk email and contact operations.

A bulk request selects items with simple criteria, then applies one
operation to each. Submission and processing are split:

1. submit_*_operation creates the job (pending), filters the user's rows,
   records one pending operation per match, moves the job to in_progress,
   queues it, and returns immediately
2. A single worker task drains the queue and runs each job's loop: items
   are processed one at a time in match order, each followed by an update
   of the job counters
3. cancel() flips a non-terminal job to cancelled; the loop notices before
   its next item and stops, leaving the rest of the operations pending

Whatever a handler raises, short of a storage error, fails only that item:
it is recorded on the operation and the loop goes on. A job-level failure
(an enumeration or storage error, or anything else escaping the loop) marks
the job failed with error details and fails its remaining operations.

Gmail calls go through asyncio.to_thread, since the client is blocking.

Usage:
    from finmail.engine.batch import BatchJobTracker

    tracker = BatchJobTracker(store, config)
    tracker.start()

    job = await tracker.submit_email_operation(user_id, request)
    status = await tracker.status(job.id)

    await tracker.stop()
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from finmail.config import get_config, reload_config_if_changed
from finmail.core.errors import BatchItemError, BatchJobError, DatabaseError
from finmail.core.logging import bind_batch_job, get_logger
from finmail.engine.criteria import (
    BulkContactOperation,
    BulkEmailOperation,
    ContactActions,
    EmailActions,
    filter_contacts,
    filter_emails,
)
from finmail.engine.sync import (
    MessageManagerFactory,
    build_message_manager,
    email_fields,
    persist_refreshed_tokens,
)

if TYPE_CHECKING:
    from finmail.config_schema import AppConfig
    from finmail.db.store import BatchJob, DatabaseStore, ItemType, User
    from finmail.gmail.messages import MessageManager

logger = get_logger(__name__)

def compute_progress(processed: int, total: int) -> int:
    """Percentage of items processed, rounded half up."""
    if total <= 0:
        return 0
    return math.floor(processed * 100 / total + 0.5)


class _JobContext:
    """Per-run state shared by the item handlers of one job."""

    def __init__(self, job: BatchJob, user: User | None):
        self.job = job
        self.user = user
        self.message_manager: MessageManager | None = None


class BatchJobTracker:
    """Creates, runs, cancels and reports on batch jobs.

    Attributes:
        _store: DatabaseStore for jobs, operations and the items they touch
        _config: Application configuration (item delay, limits)
        _manager_factory: Builds a Gmail MessageManager for email sync items
        _queue: Job IDs waiting for the worker
        _worker: The worker task, while started
    """

    def __init__(
        self,
        store: DatabaseStore,
        config: AppConfig,
        manager_factory: MessageManagerFactory = build_message_manager,
    ):
        self._store = store
        self._config = config
        self._manager_factory = manager_factory
        self._queue: asyncio.Queue[int] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

        self._email_handlers: dict[str, Callable[[int, EmailActions, _JobContext], Awaitable[dict]]] = {
            "categorize": self._categorize_email,
            "label": self._label_email,
            "export": self._export_email,
            "delete": self._delete_email,
            "sync": self._sync_email,
        }
        self._contact_handlers: dict[
            str, Callable[[int, ContactActions, _JobContext], Awaitable[dict]]
        ] = {
            "categorize": self._categorize_contact,
            "merge": self._merge_contact,
            "sync": self._sync_contact,
            "delete": self._delete_contact,
        }

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker task on the running event loop."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_worker(), name="batch-job-worker")
            logger.info("batch_worker_started")

    async def stop(self) -> None:
        """Cancel the worker task and wait for it to exit."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("batch_worker_stopped", queued=self._queue.qsize())

    async def wait_idle(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _run_worker(self) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self.process_job(job_id)
            except Exception as e:
                logger.exception("batch_worker_job_crashed", job_id=job_id, error=str(e))
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_email_operation(self, user_id: int, request: BulkEmailOperation) -> BatchJob:
        """Create and queue a job applying one operation to matching emails.

        Returns:
            The job, in_progress (or failed if enumeration failed)
        """
        job = await self._store.create_batch_job(
            user_id=user_id,
            type=request.operation,
            item_type="email",
            criteria=request.criteria.to_json(),
            actions=request.actions.to_json(),
        )

        try:
            emails = await self._store.get_financial_emails(user_id)
            matches = filter_emails(emails, request.criteria)
            items: list[tuple[int, ItemType]] = [(e.id, "email") for e in matches]
        except DatabaseError as e:
            return await self._fail_enumeration(job, e)

        return await self._enqueue(job, items)

    async def submit_contact_operation(
        self, user_id: int, request: BulkContactOperation
    ) -> BatchJob:
        """Create and queue a job applying one operation to matching contacts."""
        job = await self._store.create_batch_job(
            user_id=user_id,
            type=request.operation,
            item_type="contact",
            criteria=request.criteria.to_json(),
            actions=request.actions.to_json(),
        )

        try:
            contacts = await self._store.get_financial_contacts(user_id)
            matches = filter_contacts(contacts, request.criteria)
            items: list[tuple[int, ItemType]] = [(c.id, "contact") for c in matches]
        except DatabaseError as e:
            return await self._fail_enumeration(job, e)

        return await self._enqueue(job, items)

    async def _enqueue(self, job: BatchJob, items: list[tuple[int, ItemType]]) -> BatchJob:
        max_items = self._config.batch.max_items
        if len(items) > max_items:
            return await self._fail_enumeration(
                job,
                BatchJobError(
                    f"Criteria matched {len(items)} items, more than batch.max_items "
                    f"({max_items}). Narrow the criteria or raise the limit in config.yaml.",
                    job_id=job.id,
                ),
            )

        try:
            await self._store.create_batch_operations(job.id, items, job.type)
            await self._store.start_batch_job(job.id, total_items=len(items))
        except DatabaseError as e:
            return await self._fail_enumeration(job, e)

        await self._queue.put(job.id)
        logger.info(
            "batch_job_submitted",
            job_id=job.id,
            user_id=job.user_id,
            type=job.type,
            item_type=job.item_type,
            total_items=len(items),
        )
        return await self._store.get_batch_job(job.id)

    async def _fail_enumeration(self, job: BatchJob, error: Exception) -> BatchJob:
        logger.error("batch_job_enumeration_failed", job_id=job.id, error=str(error))
        await self._store.finish_batch_job(
            job.id,
            "failed",
            error_details={"stage": "enumeration", "error": str(error)},
        )
        return await self._store.get_batch_job(job.id)

    # ------------------------------------------------------------------
    # Queries and cancellation
    # ------------------------------------------------------------------

    async def cancel(self, job_id: int) -> BatchJob | None:
        """Cancel a pending or in-progress job.

        An item already being processed finishes; the loop stops before the
        next one.

        Returns:
            The cancelled job, or None if it does not exist

        Raises:
            BatchJobError: If the job is already completed, failed or cancelled
        """
        job = await self._store.get_batch_job(job_id)
        if job is None:
            return None

        if job.is_terminal or not await self._store.cancel_batch_job(job_id):
            current = await self._store.get_batch_job(job_id)
            raise BatchJobError(
                f"Batch job {job_id} is already {current.status} and cannot be cancelled.",
                job_id=job_id,
            )

        logger.info("batch_job_cancelled", job_id=job_id, processed_items=job.processed_items)
        return await self._store.get_batch_job(job_id)

    async def status(self, job_id: int) -> dict[str, Any] | None:
        """Job, its operations, and operation counts by status.

        Returns:
            {"job", "operations", "summary": {total, completed, failed, pending}},
            or None if the job does not exist
        """
        job = await self._store.get_batch_job(job_id)
        if job is None:
            return None

        operations = await self._store.get_batch_operations(job_id)
        counts = await self._store.count_batch_operations(job_id)
        return {
            "job": job,
            "operations": operations,
            "summary": {
                "total": len(operations),
                "completed": counts.get("completed", 0),
                "failed": counts.get("failed", 0),
                "pending": counts.get("pending", 0),
            },
        }

    async def list_jobs(self, user_id: int, active_only: bool = False) -> list[BatchJob]:
        """A user's recent jobs, or only the pending and in-progress ones."""
        if active_only:
            return await self._store.get_active_batch_jobs(user_id)
        return await self._store.get_batch_jobs(user_id, limit=self._config.batch.recent_jobs_limit)

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    async def process_job(self, job_id: int) -> BatchJob | None:
        """Run a job's items to completion, cancellation, or failure.

        Jobs that are not in_progress are skipped, so a job cancelled while
        still queued never starts.

        Returns:
            The job as it stands after the loop
        """
        if reload_config_if_changed():
            self.update_config(get_config())

        job = await self._store.get_batch_job(job_id)
        if job is None or job.status != "in_progress":
            logger.info(
                "batch_job_skipped",
                job_id=job_id,
                status=job.status if job else None,
            )
            return job

        bind_batch_job(job_id)
        start_time = time.monotonic()
        processed = successful = failed = 0
        delay = self._config.batch.item_delay_ms / 1000
        context = _JobContext(job, await self._store.get_user(job.user_id))

        logger.info("batch_job_started", type=job.type, item_type=job.item_type, total_items=job.total_items)

        try:
            operations = await self._store.get_batch_operations(job_id)

            for operation in operations:
                current = await self._store.get_batch_job(job_id)
                if current is None or current.status != "in_progress":
                    logger.info(
                        "batch_job_stopped",
                        status=current.status if current else None,
                        processed_items=processed,
                    )
                    return current

                if delay:
                    await asyncio.sleep(delay)

                item_start = time.monotonic()
                try:
                    result = await self._process_item(job, operation.item_id, context)
                except DatabaseError:
                    raise
                except Exception as e:
                    await self._store.complete_batch_operation(
                        operation.id,
                        "failed",
                        error_message=str(e),
                        processing_time=int((time.monotonic() - item_start) * 1000),
                    )
                    failed += 1
                    logger.warning(
                        "batch_item_failed",
                        item_id=operation.item_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                else:
                    await self._store.complete_batch_operation(
                        operation.id,
                        "completed",
                        result=result,
                        processing_time=int((time.monotonic() - item_start) * 1000),
                    )
                    successful += 1
                    logger.debug("batch_item_completed", item_id=operation.item_id)

                processed += 1
                await self._store.record_batch_progress(
                    job_id,
                    processed_items=processed,
                    successful_items=successful,
                    failed_items=failed,
                    progress=compute_progress(processed, job.total_items),
                )

            finished = await self._store.finish_batch_job(job_id, "completed")
            if finished and job.total_items == 0:
                await self._store.update_batch_job(job_id, progress=100)

        except Exception as e:
            await self._fail_running_job(job, e, successful, failed)

        finally:
            if context.message_manager is not None and context.user is not None:
                try:
                    await persist_refreshed_tokens(self._store, context.user, context.message_manager)
                except DatabaseError as e:
                    logger.warning("token_persist_failed", error=str(e))

            final = await self._store.get_batch_job(job_id)
            logger.info(
                "batch_job_finished",
                status=final.status if final else None,
                processed_items=processed,
                successful_items=successful,
                failed_items=failed,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            bind_batch_job(None)

        return final

    async def _fail_running_job(
        self, job: BatchJob, error: Exception, successful: int, failed: int
    ) -> None:
        """Fail the job and its remaining operations so the counters still add up."""
        logger.error("batch_job_failed", error=str(error), error_type=type(error).__name__)
        try:
            remaining = await self._store.fail_pending_batch_operations(
                job.id, f"Job failed before this item ran: {error}"
            )
            failed += remaining
            processed = successful + failed
            await self._store.record_batch_progress(
                job.id,
                processed_items=processed,
                successful_items=successful,
                failed_items=failed,
                progress=compute_progress(processed, job.total_items),
            )
            await self._store.finish_batch_job(
                job.id,
                "failed",
                error_details={"stage": "processing", "error": str(error)},
            )
        except DatabaseError as e:
            logger.error("batch_job_fail_record_failed", error=str(e))

    async def _process_item(self, job: BatchJob, item_id: int, context: _JobContext) -> dict:
        if job.item_type == "email":
            handler = self._email_handlers.get(job.type)
            actions: Any = EmailActions.model_validate(job.actions or {})
        else:
            handler = self._contact_handlers.get(job.type)
            actions = ContactActions.model_validate(job.actions or {})

        if handler is None:
            raise BatchItemError(f"Unknown {job.item_type} operation '{job.type}'")
        return await handler(item_id, actions, context)

    # ------------------------------------------------------------------
    # Email item handlers
    # ------------------------------------------------------------------

    async def _require_email(self, email_id: int, context: _JobContext):
        email = await self._store.get_financial_email(email_id)
        if email is None or email.user_id != context.job.user_id:
            raise BatchItemError(f"Email {email_id} no longer exists")
        return email

    async def _categorize_email(
        self, email_id: int, actions: EmailActions, context: _JobContext
    ) -> dict:
        email = await self._require_email(email_id, context)
        await self._store.update_financial_email(email.id, category=actions.new_category)
        return {"previousCategory": email.category, "category": actions.new_category}

    async def _label_email(self, email_id: int, actions: EmailActions, context: _JobContext) -> dict:
        email = await self._require_email(email_id, context)
        label = await self._store.get_finance_label(actions.new_label_id)
        if label is None or label.user_id != context.job.user_id:
            raise BatchItemError(f"Label {actions.new_label_id} not found")

        await self._store.set_email_label(email.id, label.id)
        return {"previousLabelId": email.label_id, "labelId": label.id, "labelName": label.name}

    async def _export_email(self, email_id: int, actions: EmailActions, context: _JobContext) -> dict:
        email = await self._require_email(email_id, context)
        await self._store.update_financial_email(email.id, is_exported=True)
        return {
            "exportType": actions.export_type or "metadata",
            "exportFormat": actions.export_format or self._config.export.default_format,
        }

    async def _delete_email(self, email_id: int, actions: EmailActions, context: _JobContext) -> dict:
        email = await self._require_email(email_id, context)
        await self._store.delete_financial_email(email.id)
        return {"deleted": True, "gmailId": email.gmail_id}

    async def _sync_email(self, email_id: int, actions: EmailActions, context: _JobContext) -> dict:
        email = await self._require_email(email_id, context)
        if context.message_manager is None:
            if context.user is None:
                raise BatchItemError(f"User {context.job.user_id} no longer exists")
            context.message_manager = self._manager_factory(context.user)

        parsed = await asyncio.to_thread(context.message_manager.get_email, email.gmail_id)
        await self._store.update_financial_email(email.id, **email_fields(parsed))
        return {"gmailId": email.gmail_id, "subject": parsed.subject}

    # ------------------------------------------------------------------
    # Contact item handlers
    # ------------------------------------------------------------------

    async def _require_contact(self, contact_id: int, context: _JobContext):
        contact = await self._store.get_financial_contact(contact_id)
        if contact is None or contact.user_id != context.job.user_id:
            raise BatchItemError(f"Contact {contact_id} no longer exists")
        return contact

    async def _categorize_contact(
        self, contact_id: int, actions: ContactActions, context: _JobContext
    ) -> dict:
        contact = await self._require_contact(contact_id, context)
        await self._store.update_financial_contact(contact.id, type=actions.new_type)
        return {"previousType": contact.type, "type": actions.new_type}

    async def _merge_contact(
        self, contact_id: int, actions: ContactActions, context: _JobContext
    ) -> dict:
        contact = await self._require_contact(contact_id, context)
        if actions.merge_into_id == contact.id:
            raise BatchItemError(f"Contact {contact.id} is the merge target and cannot merge into itself")

        target = await self._store.get_financial_contact(actions.merge_into_id)
        if target is None or target.user_id != context.job.user_id:
            raise BatchItemError(f"Merge target contact {actions.merge_into_id} not found")

        last_email_date = target.last_email_date
        if contact.last_email_date and (
            last_email_date is None or contact.last_email_date > last_email_date
        ):
            last_email_date = contact.last_email_date

        email_count = target.email_count + contact.email_count
        await self._store.update_financial_contact(
            target.id, email_count=email_count, last_email_date=last_email_date
        )
        await self._store.delete_financial_contact(contact.id)
        return {"mergedInto": target.id, "emailCount": email_count}

    async def _sync_contact(
        self, contact_id: int, actions: ContactActions, context: _JobContext
    ) -> dict:
        contact = await self._require_contact(contact_id, context)
        emails = await self._store.get_emails_from_sender(contact.user_id, contact.email)
        last_email_date = max((e.date for e in emails), default=None)
        await self._store.update_financial_contact(
            contact.id, email_count=len(emails), last_email_date=last_email_date
        )
        return {"emailCount": len(emails)}

    async def _delete_contact(
        self, contact_id: int, actions: ContactActions, context: _JobContext
    ) -> dict:
        contact = await self._require_contact(contact_id, context)
        await self._store.delete_financial_contact(contact.id)
        return {"deleted": True, "email": contact.email}
