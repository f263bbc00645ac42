"""
Webhook Processor - reconciles gateway callbacks with queued messages.

Flow for every callback:
1. the raw payload is stored and committed before anything else
2. the payload is classified (declared type first, then by shape)
3. the handler runs; the raw record is marked processed

Handler failures keep processed=False so the recovery sweep retries them.
Unrecognized payloads are marked processed with the error kept, for manual
inspection. The HTTP endpoint acknowledges receipt in every case.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from outreach.core.clock import Clock, utcnow
from outreach.core.config import Settings
from outreach.core.events import EventBus, EventType
from outreach.core.exceptions import WebhookParseError
from outreach.core.logging import get_logger, log_async_operation
from outreach.core.validation import PhoneNumberValidator, TextSanitizer
from outreach.db.models.gateway_connection import GatewayConnection
from outreach.db.models.inbound_message import InboundMessage
from outreach.db.models.log_entry import LogCategory, LogLevel
from outreach.db.models.queued_message import QueuedMessage
from outreach.db.models.raw_webhook_event import RawWebhookEvent
from outreach.domain.services.activity_log_service import ActivityLogService
from outreach.domain.services.alert_service import TRANSPORT_DISCONNECTED, AlertService
from outreach.domain.services.compliance_service import ComplianceService
from outreach.state_machine.states import MessageStatus, allowed_sources

logger = get_logger(__name__)

KIND_STATUS = "message_status"
KIND_INBOUND = "message_received"
KIND_CONNECTIVITY = "instance_status"
KIND_QR_UPDATED = "qr_updated"

_DECLARED_TYPES: dict[str, str] = {
    "message_status": KIND_STATUS,
    "messagestatuscallback": KIND_STATUS,
    "message_received": KIND_INBOUND,
    "receivedcallback": KIND_INBOUND,
    "instance_status": KIND_CONNECTIVITY,
    "connected": KIND_CONNECTIVITY,
    "disconnected": KIND_CONNECTIVITY,
    "connectedcallback": KIND_CONNECTIVITY,
    "disconnectedcallback": KIND_CONNECTIVITY,
    "qr_updated": KIND_QR_UPDATED,
}

# Gateway status vocabulary -> lifecycle status; None means "nothing to do"
STATUS_MAP: dict[str, Optional[MessageStatus]] = {
    "delivered": MessageStatus.DELIVERED,
    "received": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "read_by_me": MessageStatus.READ,
    "played": MessageStatus.READ,
    "viewed": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
    "error": MessageStatus.FAILED,
    "sent": None,
    "pending": None,
    "queued": None,
}

_STATUS_TIMESTAMP_COLUMN = {
    MessageStatus.DELIVERED: "delivered_at",
    MessageStatus.READ: "read_at",
    MessageStatus.FAILED: "failed_at",
}

_STATUS_EVENT = {
    MessageStatus.DELIVERED: EventType.MESSAGE_DELIVERED,
    MessageStatus.READ: EventType.MESSAGE_READ,
    MessageStatus.FAILED: EventType.MESSAGE_DELIVERY_FAILED,
}

# epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 10**11


def classify(payload: Any) -> str:
    """
    Kind of callback: declared ``type`` first, then the payload shape.

    Raises:
        WebhookParseError: payload is not an object or matches no known kind.
    """
    if not isinstance(payload, dict):
        raise WebhookParseError("Webhook payload is not a JSON object")

    declared = payload.get("type")
    if isinstance(declared, str) and declared.strip():
        kind = _DECLARED_TYPES.get(declared.strip().lower())
        if kind is None:
            raise WebhookParseError(f"Unknown webhook type: {declared}", {"type": declared})
        return kind

    if (payload.get("messageId") or payload.get("ids")) and payload.get("status"):
        return KIND_STATUS
    if payload.get("phone") and (payload.get("message") or payload.get("text")):
        return KIND_INBOUND
    if "connected" in payload:
        return KIND_CONNECTIVITY

    raise WebhookParseError("Unrecognized webhook payload", {"keys": sorted(payload)[:20]})


def parse_event_time(value: Any) -> Optional[datetime]:
    """Epoch seconds, epoch milliseconds or ISO-8601 -> naive UTC; None if unparseable."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            value = int(text)
        else:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def _inbound_text(payload: dict) -> str:
    message = payload.get("message")
    if isinstance(message, str):
        return message
    text = payload.get("text")
    if isinstance(text, dict):
        return str(text.get("message") or "")
    if isinstance(text, str):
        return text
    return ""


def _external_ids(payload: dict) -> list[str]:
    ids = payload.get("ids")
    if isinstance(ids, list):
        return [str(i) for i in ids if i]
    message_id = payload.get("messageId") or payload.get("zaapId")
    return [str(message_id)] if message_id else []


class WebhookProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings,
        compliance: ComplianceService,
        alerts: AlertService,
        *,
        events: Optional[EventBus] = None,
        activity_log: Optional[ActivityLogService] = None,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._compliance = compliance
        self._alerts = alerts
        self._events = events or EventBus()
        self._activity_log = activity_log or ActivityLogService(session_factory, clock)
        self._clock = clock

    def _normalize(self, contact: str) -> str:
        return PhoneNumberValidator.normalize(contact, self._settings.DEFAULT_COUNTRY_CODE)

    # ── entry point ──

    async def receive(self, raw_payload: Any) -> dict[str, bool]:
        """Store, classify and handle one callback. Always acknowledges."""
        payload = raw_payload if isinstance(raw_payload, dict) else {"raw": raw_payload}
        try:
            record_id = await self._store_raw(payload)
        except Exception as e:
            logger.error(
                "Failed to store raw webhook",
                extra_data={"error": str(e)},
                exc_info=True,
            )
            return {"accepted": True}

        try:
            await self._process_record(record_id, raw_payload)
        except Exception as e:
            # the raw record stays unprocessed for the recovery sweep
            logger.error(
                "Webhook processing failed",
                extra_data={"record_id": record_id, "error": str(e)},
                exc_info=True,
            )
        return {"accepted": True}

    async def _store_raw(self, payload: dict) -> int:
        try:
            event_type = classify(payload)
        except WebhookParseError:
            event_type = payload.get("type") if isinstance(payload.get("type"), str) else "unknown"

        external_ids = _external_ids(payload)
        phone = payload.get("phone")
        async with self._session_factory() as session:
            record = RawWebhookEvent(
                event_type=str(event_type)[:50],
                payload=payload,
                external_id=external_ids[0][:200] if external_ids else None,
                contact=self._normalize(str(phone))[:20] if phone else None,
                processed=False,
                attempts=0,
                created_at=self._clock(),
            )
            session.add(record)
            await session.commit()
            return record.id

    async def _process_record(self, record_id: int, payload: Any) -> bool:
        kind = None
        try:
            kind = classify(payload)
            handler = {
                KIND_STATUS: self._handle_status,
                KIND_INBOUND: self._handle_inbound,
                KIND_CONNECTIVITY: self._handle_connectivity,
                KIND_QR_UPDATED: self._handle_qr_updated,
            }[kind]
            await handler(payload)
        except WebhookParseError as e:
            # retrying cannot help; keep the record for manual inspection
            await self._mark_processed(record_id, error=e.message)
            await self._activity_log.warning(
                LogCategory.WEBHOOK,
                "Unrecognized webhook payload kept for inspection",
                {"record_id": record_id, "kind": kind, "error": e.message, **e.details},
            )
            return False
        except Exception as e:
            logger.error(
                "Webhook handler failed",
                extra_data={"record_id": record_id, "kind": kind, "error": str(e)},
                exc_info=True,
            )
            await self._mark_failed(record_id, str(e))
            return False

        await self._mark_processed(record_id)
        return True

    async def _mark_processed(self, record_id: int, error: Optional[str] = None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(RawWebhookEvent)
                .where(RawWebhookEvent.id == record_id)
                .values(
                    processed=True,
                    processed_at=self._clock(),
                    processing_error=error[:1000] if error else None,
                )
            )
            await session.commit()

    async def _mark_failed(self, record_id: int, error: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(RawWebhookEvent)
                    .where(RawWebhookEvent.id == record_id)
                    .values(
                        processing_error=error[:1000],
                        attempts=RawWebhookEvent.attempts + 1,
                    )
                )
                await session.commit()
        except Exception as e:
            logger.error(
                "Failed to record webhook failure",
                extra_data={"record_id": record_id, "error": str(e)},
                exc_info=True,
            )

    # ── handlers ──

    async def _handle_status(self, payload: dict) -> None:
        raw_status = str(payload.get("status") or "").strip().lower()
        if raw_status not in STATUS_MAP:
            raise WebhookParseError(f"Unknown message status: {raw_status}")
        target = STATUS_MAP[raw_status]
        if target is None:
            return

        external_ids = _external_ids(payload)
        if not external_ids:
            raise WebhookParseError("Status callback without message id")

        now = self._clock()
        event_time = parse_event_time(payload.get("momment") or payload.get("timestamp")) or now
        values: dict[str, Any] = {
            "status": target,
            _STATUS_TIMESTAMP_COLUMN[target]: event_time,
            "updated_at": now,
        }
        if target == MessageStatus.READ:
            values["delivered_at"] = func.coalesce(QueuedMessage.delivered_at, event_time)
        if target == MessageStatus.FAILED:
            values["last_error"] = str(payload.get("error") or "delivery failed")[:1000]

        for external_id in external_ids:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(QueuedMessage)
                    .where(
                        QueuedMessage.external_id == external_id,
                        QueuedMessage.status.in_(allowed_sources(target)),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

            if not result.rowcount:
                # unknown id, duplicate or out-of-order callback
                logger.debug(
                    "Status callback matched no message",
                    extra_data={"external_id": external_id, "status": target.value},
                )
                continue

            await self._activity_log.info(
                LogCategory.WEBHOOK,
                f"Message {target.value}",
                {"external_id": external_id, "gateway_status": raw_status},
            )
            await self._events.publish(_STATUS_EVENT[target], {
                "external_id": external_id,
                "status": target.value,
                "at": event_time.isoformat(),
            })

    async def _latest_correlation_id(self, contact: str) -> Optional[str]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(QueuedMessage.correlation_id)
                    .where(QueuedMessage.contact == contact)
                    .order_by(QueuedMessage.created_at.desc(), QueuedMessage.id.desc())
                    .limit(1)
                )
                return result.scalar_one_or_none()
        except Exception as e:
            logger.warning(
                "Inbound correlation lookup failed",
                extra_data={"phone": PhoneNumberValidator.mask(contact), "error": str(e)},
            )
            return None

    async def _handle_inbound(self, payload: dict) -> None:
        if payload.get("fromMe") is True:
            return

        phone = payload.get("phone")
        if not phone:
            raise WebhookParseError("Inbound callback without phone")
        contact = self._normalize(str(phone))
        text = TextSanitizer.sanitize(_inbound_text(payload))

        if text and await self._compliance.process_inbound_text(contact, text):
            await self._activity_log.info(
                LogCategory.COMPLIANCE,
                "Contact opted out by reply",
                contact=contact,
            )
            await self._events.publish(EventType.CONTACT_OPTED_OUT, {
                "contact": PhoneNumberValidator.mask(contact),
            })
            return

        correlation_id = await self._latest_correlation_id(contact)
        async with self._session_factory() as session:
            session.add(InboundMessage(
                contact=contact,
                body=text,
                correlation_id=correlation_id,
                external_id=str(payload.get("messageId"))[:200] if payload.get("messageId") else None,
                payload=payload,
                received_at=parse_event_time(payload.get("momment") or payload.get("timestamp")) or self._clock(),
            ))
            await session.commit()

        await self._events.publish(EventType.INBOUND_RECEIVED, {
            "contact": PhoneNumberValidator.mask(contact),
            "correlation_id": correlation_id,
        })

    async def _handle_connectivity(self, payload: dict) -> None:
        if "connected" in payload:
            connected = bool(payload.get("connected"))
        else:
            connected = "disconnected" not in str(payload.get("type", "")).lower()

        instance_id = str(payload.get("instanceId") or self._settings.GATEWAY_INSTANCE_ID or "default")[:100]
        error = payload.get("error")
        changed = await self.record_connectivity(
            instance_id,
            connected,
            identity=payload.get("phone") or payload.get("connectedPhone"),
            error=str(error) if error else None,
        )
        if not changed:
            return

        await self._activity_log.record(
            *self._connectivity_log_args(connected),
            {"instance_id": instance_id},
        )
        await self._events.publish(EventType.CONNECTIVITY_CHANGED, {
            "instance_id": instance_id,
            "connected": connected,
        })
        if not connected:
            await self._alerts.trigger(
                TRANSPORT_DISCONNECTED,
                "Gateway instance disconnected",
                {"instance_id": instance_id, "error": str(error) if error else None},
            )

    async def _handle_qr_updated(self, payload: dict) -> None:
        """Pairing QR refreshed; nothing to reconcile, the code itself is not stored"""
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        await self._activity_log.info(
            LogCategory.TRANSPORT,
            "Gateway QR code updated",
            {
                "instance_id": payload.get("instanceId"),
                "has_qr_code": bool(payload.get("qr") or data.get("qr")),
            },
        )

    @staticmethod
    def _connectivity_log_args(connected: bool) -> tuple[LogLevel, LogCategory, str]:
        if connected:
            return LogLevel.INFO, LogCategory.TRANSPORT, "Gateway instance connected"
        return LogLevel.WARNING, LogCategory.TRANSPORT, "Gateway instance disconnected"

    async def record_connectivity(
        self,
        instance_id: str,
        connected: bool,
        *,
        identity: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Store the reported state for ``instance_id``.

        Returns True only for the call whose conditional UPDATE (or first
        insert) flipped the stored state, so concurrent opposite reports each
        see exactly the transition they caused.
        """
        now = self._clock()
        heartbeat = {
            "last_error": error[:1000] if error else None,
            "last_seen_at": now,
            "updated_at": now,
        }
        if identity:
            heartbeat["identity"] = str(identity)[:100]

        def flip():
            return (
                update(GatewayConnection)
                .where(
                    GatewayConnection.instance_id == instance_id,
                    or_(GatewayConnection.connected.is_(None), GatewayConnection.connected != connected),
                )
                .values(connected=connected, **heartbeat)
            )

        async with self._session_factory() as session:
            changed = (await session.execute(flip())).rowcount > 0
            if not changed:
                seen = await session.execute(
                    update(GatewayConnection)
                    .where(GatewayConnection.instance_id == instance_id)
                    .values(**heartbeat)
                )
                if not seen.rowcount:
                    try:
                        async with session.begin_nested():
                            session.add(GatewayConnection(instance_id=instance_id, connected=connected, **heartbeat))
                        changed = True
                    except IntegrityError:
                        # inserted concurrently
                        changed = (await session.execute(flip())).rowcount > 0
            await session.commit()
        return changed

    # ── maintenance ──

    @log_async_operation("reprocess_webhook_events")
    async def reprocess_unprocessed(self, limit: Optional[int] = None) -> int:
        """Retry unprocessed records from the recovery window; returns how many succeeded."""
        limit = limit or self._settings.WEBHOOK_RECOVERY_BATCH_SIZE
        since = self._clock() - timedelta(hours=self._settings.WEBHOOK_RECOVERY_WINDOW_HOURS)
        async with self._session_factory() as session:
            result = await session.execute(
                select(RawWebhookEvent.id, RawWebhookEvent.payload)
                .where(
                    RawWebhookEvent.processed.is_(False),
                    RawWebhookEvent.attempts < self._settings.WEBHOOK_MAX_ATTEMPTS,
                    RawWebhookEvent.created_at >= since,
                )
                .order_by(RawWebhookEvent.created_at.asc(), RawWebhookEvent.id.asc())
                .limit(limit)
            )
            pending = result.all()

        recovered = 0
        for record_id, payload in pending:
            if await self._process_record(record_id, self._original_payload(payload)):
                recovered += 1

        if pending:
            logger.info(
                "Webhook recovery sweep finished",
                extra_data={"candidates": len(pending), "recovered": recovered},
            )
        return recovered

    @staticmethod
    def _original_payload(stored: Any) -> Any:
        # non-object bodies are stored wrapped as {"raw": ...}
        if isinstance(stored, dict) and set(stored) == {"raw"}:
            return stored["raw"]
        return stored

    @log_async_operation("cleanup_old_webhook_events")
    async def cleanup_old_events(self, days: Optional[int] = None) -> int:
        """Delete processed records older than ``days`` (WEBHOOK_RETENTION_DAYS by default)."""
        days = days if days is not None else self._settings.WEBHOOK_RETENTION_DAYS
        cutoff = self._clock() - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(RawWebhookEvent).where(
                    RawWebhookEvent.processed.is_(True),
                    RawWebhookEvent.created_at < cutoff,
                )
            )
            await session.commit()
            return result.rowcount or 0
