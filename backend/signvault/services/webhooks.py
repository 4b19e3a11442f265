"""
Webhook receiver: authenticate, parse, classify, acknowledge, enqueue.

The receiver never downloads or uploads anything itself. Actionable events
become IngestionJobs on the IngestionQueue and the provider gets its 200 as
soon as they are queued; what happens next is visible only through the
vaulted_documents row.
"""

import hmac
import json
import logging
from typing import Any, Mapping
from uuid import uuid4

from signvault.errors import InvalidPayload, InvalidSignature, PersistenceError
from signvault.models.connection import Provider
from signvault.models.webhook import IngestionJob, SignaturePolicy, WebhookAck, WebhookEvent
from signvault.repository import VaultRepository
from signvault.services.ingestion import IngestionQueue
from signvault.services.provider_base import ProviderAdapter

logger = logging.getLogger(__name__)


class WebhookReceiver:
    def __init__(
        self,
        repo: VaultRepository,
        adapters: dict[Provider, ProviderAdapter],
        queue: IngestionQueue,
    ):
        self._repo = repo
        self._adapters = adapters
        self._queue = queue

    def authenticate(
        self,
        provider: Provider,
        body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> None:
        """
        Check the request signature against the provider's shared secret.

        Raises:
            InvalidSignature: signature mismatched, or missing under the
                'reject' policy.
        """
        adapter = self._adapters[provider]
        secret = adapter.webhook_secret
        if not secret:
            logger.warning(
                f"No {provider.value.upper()}_WEBHOOK_SECRET configured; "
                f"accepting unauthenticated {provider.value} webhook"
            )
            return

        provided = adapter.webhook_signature(headers, query)
        if not provided:
            if adapter.signature_policy == SignaturePolicy.WARN_IF_MISSING:
                logger.warning(f"Unsigned {provider.value} webhook accepted (policy warn_if_missing)")
                return
            raise InvalidSignature(f"Missing {provider.value} webhook signature")

        expected = adapter.expected_signature(secret, body)
        if not hmac.compare_digest(provided.strip().encode("utf-8"), expected.encode("utf-8")):
            logger.warning(f"Rejected {provider.value} webhook with invalid signature")
            raise InvalidSignature(f"Invalid {provider.value} webhook signature")

    def parse(self, provider: Provider, body: bytes) -> list[WebhookEvent]:
        try:
            payload: Any = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            raise InvalidPayload("Webhook body is not valid JSON")
        return self._adapters[provider].parse_webhook(payload)

    def receive(
        self,
        provider: Provider,
        body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> WebhookAck:
        """
        Handle one webhook delivery end to end (minus the ingestion itself).

        Raises:
            InvalidSignature: -> 401
            InvalidPayload: -> 400, nothing recorded or queued
        """
        self.authenticate(provider, body, headers, query)
        events = self.parse(provider, body)
        adapter = self._adapters[provider]

        ack = WebhookAck(events=len(events))
        for event in events:
            actionable = adapter.is_actionable(event)
            self._record(event, actionable)
            if not actionable:
                logger.info(
                    f"Ignoring {provider.value} event {event.event_type!r} "
                    f"for {event.external_document_id}"
                )
                continue

            ack.actionable += 1
            job = IngestionJob(
                provider=event.provider,
                external_document_id=event.external_document_id,
                external_account_id=event.external_account_id,
                event_type=event.event_type,
            )
            if self._queue.enqueue(job):
                ack.queued += 1
                logger.info(f"Queued ingestion of {provider.value}/{event.external_document_id}")
        return ack

    def _record(self, event: WebhookEvent, actionable: bool) -> None:
        """Best-effort audit row; a failure here must not lose the event."""
        try:
            self._repo.insert_webhook_event(
                {
                    "id": str(uuid4()),
                    "provider": event.provider.value,
                    "event_type": event.event_type,
                    "external_document_id": event.external_document_id,
                    "external_account_id": event.external_account_id,
                    "actionable": actionable,
                    "payload": event.raw_payload,
                    "received_at": event.received_at.isoformat(),
                }
            )
        except PersistenceError as e:
            logger.warning(f"Could not record {event.provider.value} webhook event: {e}")
