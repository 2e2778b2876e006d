"""
Message Dispatcher — executes a send node for one contact.

Pipeline:
  1. Validate node, channel, content and recipient address
  2. Suppression check (unsubscribed → skipped, transport never called)
  3. Resolve a verified sender identity
  4. Dedupe guard: reuse a sent message, surface a failed one, refuse in-flight
  5. Claim the dedupe key (queued row) and call the transport
  6. Record sent / failed on the outbound message
  7. On success, schedule the node's timeout jobs from sent_at

Validation, configuration, suppression and transport outcomes are returned in
DispatchResult; they never raise past dispatch().
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from channels.base import Transport, TransportError
from channels.suppression import SuppressionService
from core.dedupe import DedupeGuard, DedupeOutcome, build_dedupe_key
from core.errors import ConfigurationError, DispatchValidationError, EngineError
from core.scheduler import TimeoutScheduler
from database.store_base import BaseCampaignStore
from models.plan import Plan, SendNode
from models.schemas import (
    Contact, DispatchResult, MessageContent, OutboundMessage, OutboundState,
    SenderIdentity,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageDispatcher:

    def __init__(
        self,
        store: BaseCampaignStore,
        transport: Transport,
        scheduler: TimeoutScheduler,
        suppression: Optional[SuppressionService] = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.transport = transport
        self.scheduler = scheduler
        self.suppression = suppression or SuppressionService(store)
        self.guard = DedupeGuard(store)
        self._now = now_fn

    async def dispatch(
        self,
        tenant_id: str,
        campaign_id: str,
        contact: Contact,
        node: Any,
        plan: Plan,
        lead_id: Optional[str] = None,
    ) -> DispatchResult:
        log = logger.bind(tenant_id=tenant_id, campaign_id=campaign_id,
                          contact_id=contact.id, node_id=getattr(node, "id", None))

        # 1. Validate
        if not isinstance(node, SendNode):
            return self._error(log, DispatchValidationError(
                f"Node '{getattr(node, 'id', '?')}' is not a send node"))

        channel = getattr(node.channel, "value", node.channel)
        if not self.transport.supports(channel):
            log.warning("dispatch_skipped_channel_not_supported", channel=channel)
            return DispatchResult(skipped=True, skip_reason="channel_not_supported")

        try:
            subject, body, address = self._validate(node, contact, channel)
        except DispatchValidationError as e:
            return self._error(log, e)

        # 2. Suppression
        if await self.suppression.is_unsubscribed(tenant_id, channel, address):
            log.info("dispatch_skipped_unsubscribed", channel=channel)
            return DispatchResult(skipped=True, skip_reason="unsubscribed")

        # 3. Sender identity
        try:
            sender = await self._resolve_sender(tenant_id, node, plan, lead_id or contact.lead_id)
        except ConfigurationError as e:
            return self._error(log, e)

        # 4. Dedupe
        dedupe_key = build_dedupe_key(tenant_id, campaign_id, contact.id, node.id, channel)
        decision = await self.guard.check(tenant_id, dedupe_key)

        if decision.outcome == DedupeOutcome.ALREADY_SENT:
            return await self._already_sent(log, tenant_id, campaign_id, node, plan, decision.message)
        if decision.outcome == DedupeOutcome.PREVIOUSLY_FAILED:
            return DispatchResult(
                outbound_message_id=decision.message.id,
                error=decision.message.last_error or "previous send failed",
                error_kind="transport",
                deduplicated=True,
            )
        if decision.outcome == DedupeOutcome.IN_FLIGHT:
            return DispatchResult(
                outbound_message_id=decision.message.id,
                skipped=True,
                skip_reason="in_flight",
                error_kind="in_flight",
                deduplicated=True,
            )

        # 5. Claim, then send
        message = OutboundMessage(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            contact_id=contact.id,
            node_id=node.id,
            channel=channel,
            sender_identity_id=sender.id,
            dedupe_key=dedupe_key,
            content=MessageContent(subject=subject, body=body, to=address),
        )
        claim = await self.guard.claim(message)
        if not claim.should_send:
            return DispatchResult(
                outbound_message_id=claim.message.id if claim.message else None,
                skipped=True,
                skip_reason="in_flight",
                error_kind="in_flight",
                deduplicated=True,
            )

        try:
            provider_id = await self.transport.send(
                from_address=sender.formatted_from,
                to=address,
                subject=subject,
                html=body,
                correlation_id=dedupe_key,
                custom_args={
                    "tenant_id": tenant_id,
                    "campaign_id": campaign_id,
                    "node_id": node.id,
                    "outbound_message_id": message.id,
                },
            )
        except TransportError as e:
            # 7. Failure is final for this key; no automatic re-send
            await self.store.update_outbound_message(
                tenant_id, message.id,
                state=OutboundState.FAILED, last_error=str(e), error_at=self._now(),
            )
            log.error("dispatch_transport_failed",
                      outbound_message_id=message.id,
                      retryable=e.retryable,
                      error=str(e))
            return DispatchResult(outbound_message_id=message.id, error=str(e), error_kind="transport")

        # 6. Success
        sent_at = self._now()
        await self.store.update_outbound_message(
            tenant_id, message.id,
            state=OutboundState.SENT, provider_message_id=provider_id, sent_at=sent_at,
        )
        await self.store.update_campaign(tenant_id, campaign_id, last_message_id=message.id)
        log.info("message_sent",
                 outbound_message_id=message.id,
                 provider_message_id=provider_id,
                 channel=channel)

        result = DispatchResult(
            success=True,
            outbound_message_id=message.id,
            provider_message_id=provider_id,
        )
        await self._schedule_timeouts(log, result, tenant_id, campaign_id, node, plan, message.id, sent_at)
        return result

    # ── Steps ─────────────────────────────────────────────────

    @staticmethod
    def _validate(node: SendNode, contact: Contact, channel: str) -> tuple[str, str, str]:
        subject = (node.subject or "").strip()
        body = node.body or ""
        if not subject:
            raise DispatchValidationError(f"Send node '{node.id}' has no subject")
        if not body.strip():
            raise DispatchValidationError(f"Send node '{node.id}' has no body")
        address = contact.address_for(channel)
        if not address:
            raise DispatchValidationError(f"Contact {contact.id} has no {channel} address")
        return subject, body, address

    async def _resolve_sender(self, tenant_id: str, node: SendNode, plan: Plan,
                              lead_id: Optional[str]) -> SenderIdentity:
        """Node override → plan default → identity bound to the lead → any verified tenant identity."""
        explicit_id = node.sender_identity_id or plan.sender_identity_id
        if explicit_id:
            identity = await self.store.get_sender_identity(tenant_id, explicit_id)
            if identity is None:
                raise ConfigurationError(f"Sender identity {explicit_id} not found")
            if not identity.is_verified:
                raise ConfigurationError(f"Sender identity {explicit_id} is not verified")
            return identity

        if lead_id:
            bound = await self.store.list_sender_identities(tenant_id, lead_id=lead_id, verified_only=True)
            if bound:
                return bound[0]

        verified = await self.store.list_sender_identities(tenant_id, verified_only=True)
        if verified:
            return verified[0]
        raise ConfigurationError(f"No verified sender identity for tenant {tenant_id}")

    async def _already_sent(self, log, tenant_id: str, campaign_id: str, node: SendNode,
                            plan: Plan, message: OutboundMessage) -> DispatchResult:
        log.info("dispatch_deduplicated_already_sent",
                 outbound_message_id=message.id,
                 provider_message_id=message.provider_message_id)
        await self.store.update_campaign(tenant_id, campaign_id, last_message_id=message.id)
        result = DispatchResult(
            success=True,
            outbound_message_id=message.id,
            provider_message_id=message.provider_message_id,
            deduplicated=True,
        )
        # Heals a crash between send and scheduling; job ids make this idempotent
        await self._schedule_timeouts(log, result, tenant_id, campaign_id, node, plan,
                                      message.id, message.sent_at or self._now())
        return result

    async def _schedule_timeouts(self, log, result: DispatchResult, tenant_id: str,
                                 campaign_id: str, node: SendNode, plan: Plan,
                                 message_id: str, sent_at: datetime) -> None:
        try:
            report = await self.scheduler.schedule_node_timeouts(
                tenant_id, campaign_id, node, plan, message_id, base_time=sent_at,
            )
        except Exception as e:
            log.error("timeout_scheduling_failed_after_send",
                      outbound_message_id=message_id, error=str(e))
            result.scheduling_errors.append(str(e))
            return
        result.timeouts_scheduled = list(report.scheduled)
        result.scheduling_errors = [f"{e['event_type']}: {e['error']}" for e in report.errors]

    @staticmethod
    def _error(log, error: EngineError) -> DispatchResult:
        log.warning("dispatch_rejected", error_kind=error.kind, error=error.message)
        return DispatchResult(error=error.message, error_kind=error.kind)
