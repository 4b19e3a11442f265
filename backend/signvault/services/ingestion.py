"""
Ingestion pipeline: turn an actionable webhook event into a registered,
content-addressed copy of the signed document.

Per document:

  claim        insert (provider, external_document_id) as 'pending'; the
               unique constraint makes this the idempotency check
  downloading  resolve the connection, get a valid token, download the PDF
               (one refresh-and-retry if the provider answers 401)
  uploaded     upsert the bytes at the deterministic path, hash them
  registered   write content_hash + registered_at; the row is final

Any failure marks the row 'failed' with "<kind>: <message>". If the object
was already uploaded it is deleted first, so no stored object exists
without a registered row describing it.

Operator uploads skip the download step: the bytes arrive with the request
and are vaulted under provider "manual" with their own hash as the external
id. Registrations and failures are also written to audit_log.

IngestionQueue runs the pipeline on a bounded asyncio.Queue drained by a
fixed number of worker tasks, detached from the webhook request.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from signvault.config import Settings
from signvault.errors import (
    ConnectionNotFound,
    DocumentNotFound,
    DownloadError,
    InternalError,
    InvalidRequest,
    PersistenceError,
    StorageError,
    VaultError,
)
from signvault.models.connection import Connection, Provider
from signvault.models.document import AuditAction, DocumentStatus, VaultedDocument
from signvault.models.webhook import IngestionJob
from signvault.repository import DuplicateKey, VaultRepository
from signvault.services.locks import KeyedLocks
from signvault.services.oauth import OAuthConnectionManager
from signvault.services.provider_base import DocumentRef, ProviderAdapter
from signvault.services.storage import ContentAddressStore, sha256_hex, storage_path_for

logger = logging.getLogger(__name__)

_MAX_REASON_CHARS = 500

# PostgREST filter literal for the stale-claim comparison
_STALE_CUTOFF_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def failure_reason(error: VaultError) -> str:
    return f"{error.kind}: {error}"[:_MAX_REASON_CHARS]


class IngestionPipeline:
    def __init__(
        self,
        repo: VaultRepository,
        store: ContentAddressStore,
        oauth: OAuthConnectionManager,
        adapters: dict[Provider, ProviderAdapter],
        settings: Settings,
        locks: Optional[KeyedLocks] = None,
    ):
        self._repo = repo
        self._store = store
        self._oauth = oauth
        self._adapters = adapters
        self._stale_after = timedelta(seconds=settings.ingestion_stale_after_seconds)
        self._locks = locks or KeyedLocks()

    async def ingest(self, job: IngestionJob) -> Optional[VaultedDocument]:
        """
        Run one job to completion.

        Returns the registered document, or None when the job was skipped
        (already registered, owned by another worker) or failed. Failures
        are recorded on the row, never raised.
        """
        key = (job.provider.value, job.external_document_id)
        async with self._locks.hold(key):
            row = self._claim(job)
            if row is None:
                return None
            return await self._process(job, row)

    async def vault_upload(
        self, data: bytes, file_name: Optional[str] = None
    ) -> tuple[VaultedDocument, bool]:
        """
        Vault a PDF handed over directly by an operator.

        The object is stored at manual/{sha256}.pdf and the hash doubles as
        the external document id, so uploading the same bytes again returns
        the existing registration.

        Returns:
            (document, created) where created is False for a re-upload.

        Raises:
            InvalidRequest: empty file, or the same content is being vaulted
                by another request right now.
            StorageError / PersistenceError: the row is left 'failed'.
        """
        if not data:
            raise InvalidRequest("Uploaded file is empty")

        content_hash = sha256_hex(data)
        job = IngestionJob(
            provider=Provider.MANUAL,
            external_document_id=content_hash,
            event_type="manual_upload",
        )
        async with self._locks.hold((Provider.MANUAL.value, content_hash)):
            existing = self._repo.get_document_by_key(Provider.MANUAL.value, content_hash)
            if existing and existing["status"] == DocumentStatus.REGISTERED.value:
                logger.info(f"Upload of already vaulted content {content_hash}")
                return VaultedDocument(**existing), False

            row = self._claim(job)
            if row is None:
                raise InvalidRequest("A document with this content is already being vaulted")

            document_id = row["id"]
            path = row["storage_path"]
            uploaded = False
            try:
                stored_hash = await self._upload(path, data)
                uploaded = True
                self._advance(
                    document_id,
                    {"status": DocumentStatus.UPLOADED.value, "content_hash": stored_hash},
                )
                document = self._register(
                    document_id,
                    stored_hash,
                    {"source": "manual", "file_name": file_name},
                )
            except VaultError as e:
                await self._fail(document_id, e, path if uploaded else None)
                raise
            except Exception as e:
                logger.exception(f"Unexpected error vaulting upload {content_hash}")
                error = InternalError(repr(e))
                await self._fail(document_id, error, path if uploaded else None)
                raise error from e
        return document, True

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def _claim(self, job: IngestionJob) -> Optional[dict]:
        now = _utcnow()
        try:
            return self._repo.insert_document(
                {
                    "id": str(uuid4()),
                    "provider": job.provider.value,
                    "external_document_id": job.external_document_id,
                    "connection_id": job.connection_id,
                    "storage_path": storage_path_for(job.provider.value, job.external_document_id),
                    "status": DocumentStatus.PENDING.value,
                    "attempts": 1,
                    "created_at": now.isoformat(),
                    "updated_at": now.isoformat(),
                }
            )
        except DuplicateKey:
            pass

        existing = self._repo.get_document_by_key(job.provider.value, job.external_document_id)
        if existing is None:
            logger.warning(f"Claim conflict for {job.provider.value}/{job.external_document_id} but no row found")
            return None
        if existing["status"] == DocumentStatus.REGISTERED.value:
            logger.info(f"{job.provider.value}/{job.external_document_id} already registered, skipping")
            return None

        stale_before = (now - self._stale_after).strftime(_STALE_CUTOFF_FORMAT)
        claimed = self._repo.reclaim_document(
            existing["id"],
            stale_before,
            {
                "status": DocumentStatus.PENDING.value,
                "attempts": int(existing.get("attempts") or 0) + 1,
                "failure_reason": None,
                "connection_id": job.connection_id or existing.get("connection_id"),
                "updated_at": now.isoformat(),
            },
        )
        if claimed is None:
            logger.info(
                f"{job.provider.value}/{job.external_document_id} is being ingested elsewhere, skipping"
            )
        return claimed

    # ------------------------------------------------------------------
    # Download -> upload -> register
    # ------------------------------------------------------------------

    async def _process(self, job: IngestionJob, row: dict) -> Optional[VaultedDocument]:
        document_id = row["id"]
        path = row["storage_path"]
        uploaded = False
        try:
            connection = self._connection_for(job, row)
            self._advance(
                document_id,
                {"status": DocumentStatus.DOWNLOADING.value, "connection_id": connection.id},
            )
            data = await self._download(connection, job)

            content_hash = await self._upload(path, data)
            uploaded = True
            self._advance(
                document_id,
                {"status": DocumentStatus.UPLOADED.value, "content_hash": content_hash},
            )
            return self._register(
                document_id,
                content_hash,
                {
                    "source": "webhook",
                    "provider": job.provider.value,
                    "external_document_id": job.external_document_id,
                    "event_type": job.event_type,
                },
            )
        except VaultError as e:
            await self._fail(document_id, e, path if uploaded else None)
            return None
        except Exception as e:
            logger.exception(f"Unexpected error ingesting {job.provider.value}/{job.external_document_id}")
            await self._fail(document_id, InternalError(repr(e)), path if uploaded else None)
            return None

    async def _upload(self, path: str, data: bytes) -> str:
        """
        Upload in a worker thread and return the content hash.

        The thread cannot be interrupted. If the job is cancelled (timeout,
        shutdown) mid-upload, wait for the thread to finish and remove
        whatever it wrote before letting the cancellation through.
        """
        upload = asyncio.ensure_future(asyncio.to_thread(self._store.put, path, data))
        try:
            return await asyncio.shield(upload)
        except asyncio.CancelledError:
            await asyncio.wait([upload])
            try:
                await asyncio.to_thread(self._store.delete, path)
                logger.info(f"Removed {path} written by a cancelled job")
            except StorageError as e:
                logger.error(f"Could not remove {path} after cancellation: {e}")
            raise

    def _register(self, document_id: str, content_hash: str, details: dict) -> VaultedDocument:
        now = _utcnow().isoformat()
        registered = self._repo.update_document(
            document_id,
            {
                "status": DocumentStatus.REGISTERED.value,
                "content_hash": content_hash,
                "registered_at": now,
                "updated_at": now,
            },
        )
        if registered is None:
            raise PersistenceError(f"Document {document_id} vanished before registration")

        logger.info(f"Registered document {document_id} sha256={content_hash}")
        self._audit(AuditAction.VAULTED, document_id, {**details, "content_hash": content_hash})
        return VaultedDocument(**registered)

    def _advance(self, document_id: str, fields: dict) -> None:
        fields = {**fields, "updated_at": _utcnow().isoformat()}
        if self._repo.update_document(document_id, fields) is None:
            raise PersistenceError(f"Document {document_id} is no longer claimable")

    def _connection_for(self, job: IngestionJob, row: dict) -> Connection:
        connection_id = job.connection_id or row.get("connection_id")
        if connection_id:
            return self._oauth.get_connection(connection_id)

        connection = self._oauth.resolve_connection(job.provider, job.external_account_id)
        if connection is None:
            account = job.external_account_id or "<unknown>"
            raise ConnectionNotFound(f"No {job.provider.value} connection for account {account}")
        return connection

    async def _download(self, connection: Connection, job: IngestionJob) -> bytes:
        adapter = self._adapters[job.provider]
        ref = DocumentRef(
            external_document_id=job.external_document_id,
            external_account_id=job.external_account_id or connection.external_account_id,
            base_uri=connection.base_uri,
        )
        token = await self._oauth.get_valid_access_token(connection)
        try:
            return await adapter.download_signed_document(token, ref)
        except DownloadError as e:
            if e.upstream_status != 401:
                raise
            logger.info(
                f"{job.provider.value} rejected token for connection {connection.id}, refreshing once"
            )
        token = await self._oauth.force_refresh(connection, token)
        return await adapter.download_signed_document(token, ref)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _fail(self, document_id: str, error: VaultError, uploaded_path: Optional[str]) -> None:
        if uploaded_path:
            try:
                await asyncio.to_thread(self._store.delete, uploaded_path)
                logger.info(f"Removed unregistered object {uploaded_path}")
            except StorageError as e:
                logger.error(f"Could not remove unregistered object {uploaded_path}: {e}")

        reason = failure_reason(error)
        logger.warning(f"Ingestion of document {document_id} failed: {reason}")
        try:
            self._repo.update_document(
                document_id,
                {
                    "status": DocumentStatus.FAILED.value,
                    "failure_reason": reason,
                    "updated_at": _utcnow().isoformat(),
                },
            )
        except PersistenceError as e:
            # The claim goes stale and becomes reclaimable
            logger.error(f"Could not mark document {document_id} failed: {e}")
            return
        self._audit(AuditAction.FAILED, document_id, {"reason": reason})

    def _audit(self, action: AuditAction, document_id: str, details: dict) -> None:
        """Best-effort audit_log row; a failure here never fails the document."""
        try:
            self._repo.insert_audit_event(
                {
                    "id": str(uuid4()),
                    "action": action.value,
                    "document_id": document_id,
                    "details": details,
                    "created_at": _utcnow().isoformat(),
                }
            )
        except PersistenceError as e:
            logger.warning(f"Could not record {action.value} for document {document_id}: {e}")

    async def mark_timed_out(self, job: IngestionJob, timeout: float) -> None:
        """
        Record a job cancelled by the worker's timeout as failed.

        The object is removed whatever the row's status says: the row may
        still read 'downloading' while an upload was already under way.
        Deleting a path that holds nothing is harmless.
        """
        row = self._repo.get_document_by_key(job.provider.value, job.external_document_id)
        if row is None or row["status"] == DocumentStatus.REGISTERED.value:
            return
        await self._fail(
            row["id"],
            InternalError(f"ingestion exceeded {timeout:g}s"),
            row["storage_path"],
        )

    def record_rejected(self, job: IngestionJob, reason: str) -> None:
        """
        Persist a job that never ran (e.g. the queue was full) as a failed
        row an operator can find and retry.
        """
        now = _utcnow().isoformat()
        try:
            row = self._repo.insert_document(
                {
                    "id": str(uuid4()),
                    "provider": job.provider.value,
                    "external_document_id": job.external_document_id,
                    "connection_id": job.connection_id,
                    "storage_path": storage_path_for(job.provider.value, job.external_document_id),
                    "status": DocumentStatus.FAILED.value,
                    "attempts": 0,
                    "failure_reason": reason,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        except DuplicateKey:
            existing = self._repo.get_document_by_key(job.provider.value, job.external_document_id)
            if existing and existing["status"] == DocumentStatus.FAILED.value:
                self._repo.update_document(existing["id"], {"failure_reason": reason, "updated_at": now})
        except PersistenceError as e:
            logger.error(
                f"Could not record rejected job {job.provider.value}/{job.external_document_id}: {e}"
            )
        else:
            self._audit(AuditAction.FAILED, row["id"], {"reason": reason})

    def retry_job(self, document_id: str) -> IngestionJob:
        """
        Build a job that re-runs ingestion for an existing, unregistered row.

        Raises:
            DocumentNotFound: unknown id.
            InvalidRequest: the document is already registered, or it was a
                manual upload (nothing to download; upload the file again).
        """
        row = self._repo.get_document(document_id)
        if row is None:
            raise DocumentNotFound(f"Document {document_id} not found")
        if row["status"] == DocumentStatus.REGISTERED.value:
            raise InvalidRequest(f"Document {document_id} is already registered")
        if row["provider"] == Provider.MANUAL.value:
            raise InvalidRequest(f"Document {document_id} was uploaded manually; upload the file again")
        return IngestionJob(
            provider=Provider(row["provider"]),
            external_document_id=row["external_document_id"],
            connection_id=row.get("connection_id"),
            event_type="operator_retry",
        )


class IngestionQueue:
    """
    Bounded queue of ingestion jobs with a fixed pool of worker tasks.

    enqueue() never blocks: when the queue is full the job is recorded as a
    failed document with reason "queue_full" for operator retry.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        workers: int = 4,
        maxsize: int = 1000,
        job_timeout: float = 120.0,
    ):
        self._pipeline = pipeline
        self._worker_count = workers
        self._job_timeout = job_timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._workers: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, pipeline: IngestionPipeline, settings: Settings) -> "IngestionQueue":
        return cls(
            pipeline,
            workers=settings.ingestion_workers,
            maxsize=settings.ingestion_queue_size,
            job_timeout=settings.ingestion_job_timeout_seconds,
        )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"ingestion-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info(f"Started {self._worker_count} ingestion workers")

    def enqueue(self, job: IngestionJob) -> bool:
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.error(
                f"Ingestion queue full, rejecting {job.provider.value}/{job.external_document_id}"
            )
            self._pipeline.record_rejected(job, "queue_full: ingestion queue is full")
            return False
        return True

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await asyncio.wait_for(self._pipeline.ingest(job), timeout=self._job_timeout)
            except asyncio.TimeoutError:
                logger.error(
                    f"worker {index}: {job.provider.value}/{job.external_document_id} "
                    f"timed out after {self._job_timeout:g}s"
                )
                try:
                    await self._pipeline.mark_timed_out(job, self._job_timeout)
                except Exception:
                    logger.exception(f"worker {index}: could not record timeout")
            except Exception:
                logger.exception(
                    f"worker {index}: unhandled error for {job.provider.value}/{job.external_document_id}"
                )
            finally:
                self._queue.task_done()

    async def shutdown(self, grace_seconds: float) -> None:
        """Let queued jobs finish for up to ``grace_seconds``, then cancel the workers."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"Shutdown grace period elapsed with {self._queue.qsize()} jobs still queued; "
                f"in-flight claims will be reclaimed once stale"
            )
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Ingestion workers stopped")
