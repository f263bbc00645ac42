"""
Tests for AlertService - rule lookup, deduplication and acknowledgement
"""
import asyncio

import pytest

from outreach.core.events import EventType
from outreach.db.models.alert import AlertSeverity
from outreach.domain.services.alert_service import (
    ALERT_RULES,
    DAILY_CAP_UTILIZATION,
    QUEUE_BACKLOG,
    TRANSPORT_DISCONNECTED,
)


class TestTrigger:
    @pytest.mark.unit
    async def test_creates_alert_with_rule_severity(self, pipeline, clock, recorded_events):
        alert = await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway down", {"instance_id": "inst-1"})

        assert alert is not None
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.triggered_at == clock()
        assert alert.acknowledged is False
        assert alert.details == {"instance_id": "inst-1"}

        triggered = [e for e in recorded_events if e.type == EventType.ALERT_TRIGGERED]
        assert triggered[0].data["rule_id"] == TRANSPORT_DISCONNECTED
        assert triggered[0].data["severity"] == "critical"

    @pytest.mark.unit
    async def test_severity_override(self, pipeline):
        alert = await pipeline.alerts.trigger(QUEUE_BACKLOG, "Backlog", severity=AlertSeverity.CRITICAL)
        assert alert.severity == AlertSeverity.CRITICAL

    @pytest.mark.unit
    async def test_unknown_rule(self, pipeline):
        with pytest.raises(ValueError):
            await pipeline.alerts.trigger("disk_full", "Disk full")

    @pytest.mark.unit
    def test_every_rule_is_keyed_by_its_id(self):
        assert all(rule.id == key for key, rule in ALERT_RULES.items())


class TestDeduplication:
    @pytest.mark.unit
    async def test_open_alert_suppresses_repeat(self, pipeline, clock):
        first = await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway down")
        clock.advance(minutes=30)
        second = await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway still down")

        assert first is not None
        assert second is None
        assert len(await pipeline.alerts.active_alerts()) == 1

    @pytest.mark.unit
    async def test_other_rules_not_suppressed(self, pipeline):
        await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway down")
        assert await pipeline.alerts.trigger(DAILY_CAP_UTILIZATION, "Cap 95% used") is not None

    @pytest.mark.unit
    async def test_new_alert_after_window(self, pipeline, clock, test_settings):
        await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway down")
        clock.advance(minutes=test_settings.ALERT_DEDUP_MINUTES + 1)

        assert await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway down again") is not None

    @pytest.mark.unit
    async def test_acknowledged_alert_does_not_suppress(self, pipeline):
        first = await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway down")
        await pipeline.alerts.acknowledge_alert(first.id, "ops")

        assert await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway down again") is not None

    @pytest.mark.unit
    async def test_concurrent_triggers_create_one_alert(self, pipeline):
        results = await asyncio.gather(*[
            pipeline.alerts.trigger(QUEUE_BACKLOG, "Backlog") for _ in range(5)
        ])

        assert sum(r is not None for r in results) == 1


class TestAcknowledge:
    @pytest.mark.unit
    async def test_acknowledge_once(self, pipeline, clock, recorded_events):
        alert = await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway down")

        assert await pipeline.alerts.acknowledge_alert(alert.id, "ops", "phone re-paired") is True
        assert await pipeline.alerts.acknowledge_alert(alert.id, "someone-else") is False

        assert await pipeline.alerts.active_alerts() == []
        acknowledged = [e for e in recorded_events if e.type == EventType.ALERT_ACKNOWLEDGED]
        assert len(acknowledged) == 1
        assert acknowledged[0].data == {"alert_id": alert.id, "acknowledged_by": "ops"}

    @pytest.mark.unit
    async def test_missing_alert(self, pipeline):
        assert await pipeline.alerts.acknowledge_alert(404, "ops") is False

    @pytest.mark.unit
    async def test_active_alerts_newest_first(self, pipeline, clock):
        older = await pipeline.alerts.trigger(TRANSPORT_DISCONNECTED, "Gateway down")
        clock.advance(minutes=1)
        newer = await pipeline.alerts.trigger(QUEUE_BACKLOG, "Backlog")

        assert [a.id for a in await pipeline.alerts.active_alerts()] == [newer.id, older.id]
        assert [a.id for a in await pipeline.alerts.active_alerts(limit=1)] == [newer.id]
