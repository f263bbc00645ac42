"""
Tests for the Health Monitor: component checks, overall status and the
alert rules evaluated on every tick.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from outreach.core.events import EventType
from outreach.db.models.alert import Alert, AlertSeverity
from outreach.db.models.log_entry import LogCategory
from outreach.domain.services.alert_service import (
    COMPLIANCE_BLOCKS_HIGH,
    DAILY_CAP_UTILIZATION,
    HIGH_FAILURE_RATE,
    QUEUE_BACKLOG,
    TRANSPORT_DISCONNECTED,
)
from outreach.domain.services.health_monitor import (
    STATUS_CRITICAL,
    STATUS_HEALTHY,
    STATUS_UNKNOWN,
    STATUS_WARNING,
    worst_status,
)
from outreach.runtime import build_pipeline
from outreach.state_machine.states import MessageStatus


@pytest.fixture
def tuned_pipeline(session_factory, test_settings, fake_transport, clock, events):
    """Pipeline with thresholds small enough to cross with a few rows"""
    def _build(**overrides):
        settings = test_settings.model_copy(update=overrides)
        return build_pipeline(session_factory, settings, transport=fake_transport, events=events, clock=clock)
    return _build


async def _alert_rules(session_factory) -> list[str]:
    async with session_factory() as session:
        result = await session.execute(select(Alert.rule_id).order_by(Alert.id))
        return list(result.scalars().all())


class TestWorstStatus:
    @pytest.mark.unit
    @pytest.mark.parametrize("statuses,expected", [
        ([], STATUS_HEALTHY),
        ([STATUS_HEALTHY, STATUS_HEALTHY], STATUS_HEALTHY),
        ([STATUS_HEALTHY, STATUS_WARNING], STATUS_WARNING),
        ([STATUS_WARNING, STATUS_UNKNOWN], STATUS_UNKNOWN),
        ([STATUS_UNKNOWN, STATUS_CRITICAL, STATUS_HEALTHY], STATUS_CRITICAL),
    ])
    def test_rank(self, statuses, expected):
        assert worst_status(statuses) == expected


class TestCheckHealth:
    @pytest.mark.unit
    async def test_healthy_snapshot(self, pipeline):
        snapshot = await pipeline.monitor.check_health()

        assert snapshot.status == STATUS_HEALTHY
        assert set(snapshot.components) == {"transport", "queue", "compliance", "persistence"}
        assert all(c.status == STATUS_HEALTHY for c in snapshot.components.values())
        assert snapshot.metrics["queue_backlog"] == 0
        assert snapshot.metrics["daily_sent"] == 0
        assert snapshot.metrics["failure_ratio"] == 0.0
        assert snapshot.metrics["compliance_blocks"] == 0
        assert snapshot.alerts == []
        assert pipeline.monitor.last_snapshot is snapshot

    @pytest.mark.unit
    async def test_disconnected_transport_is_critical(self, pipeline, fake_transport):
        fake_transport.connected = False
        fake_transport.connectivity_error = "phone offline"

        snapshot = await pipeline.monitor.check_health()

        assert snapshot.status == STATUS_CRITICAL
        transport = snapshot.components["transport"]
        assert transport.message == "phone offline"
        assert transport.details["connected"] is False

    @pytest.mark.unit
    async def test_webhook_reported_state_in_transport_details(self, pipeline, test_settings, clock):
        await pipeline.webhooks.record_connectivity(test_settings.GATEWAY_INSTANCE_ID, False, error="phone offline")

        snapshot = await pipeline.monitor.check_health()

        transport = snapshot.components["transport"]
        assert transport.details["connected"] is True
        assert transport.details["reported"] == {
            "connected": False,
            "last_seen_at": clock().isoformat(),
            "last_error": "phone offline",
        }

    @pytest.mark.unit
    async def test_no_reported_state_before_first_webhook(self, pipeline):
        snapshot = await pipeline.monitor.check_health()

        assert "reported" not in snapshot.components["transport"].details

    @pytest.mark.unit
    async def test_failing_probe_reports_unknown(self, pipeline, fake_transport):
        async def broken():
            raise RuntimeError("dns failure")

        fake_transport.get_connectivity = broken

        snapshot = await pipeline.monitor.check_health()

        assert snapshot.components["transport"].status == STATUS_UNKNOWN
        assert snapshot.components["transport"].message == "transport health check failed: dns failure"
        assert snapshot.status == STATUS_UNKNOWN

    @pytest.mark.unit
    async def test_delivery_metrics(self, pipeline, job_factory, clock):
        now = clock()
        await job_factory(status=MessageStatus.DELIVERED, sent_at=now, delivered_at=now)
        await job_factory(contact="5521988887777", status=MessageStatus.READ,
                          sent_at=now, delivered_at=now, read_at=now)

        snapshot = await pipeline.monitor.check_health()

        assert snapshot.metrics["daily_sent"] == 2
        assert snapshot.metrics["delivered_today"] == 2
        assert snapshot.metrics["read_today"] == 1

    @pytest.mark.unit
    async def test_snapshot_serializes(self, pipeline):
        data = (await pipeline.monitor.check_health()).to_dict()

        assert data["status"] == STATUS_HEALTHY
        assert data["components"]["persistence"]["details"]["latency_ms"] >= 0
        assert data["checked_at"] == "2026-10-14T13:00:00"


class TestRunTick:
    @pytest.mark.unit
    async def test_disconnect_alert_deduplicated(self, pipeline, fake_transport, session_factory, clock, recorded_events):
        fake_transport.connected = False

        first = await pipeline.monitor.run_tick()
        clock.advance(minutes=1)
        second = await pipeline.monitor.run_tick()

        assert first.status == second.status == STATUS_CRITICAL
        assert await _alert_rules(session_factory) == [TRANSPORT_DISCONNECTED]
        checked = [e for e in recorded_events if e.type == EventType.HEALTH_CHECKED]
        assert [e.data["new_alerts"] for e in checked] == [1, 0]

    @pytest.mark.unit
    async def test_healthy_tick_raises_no_alerts(self, pipeline, session_factory):
        snapshot = await pipeline.monitor.run_tick()

        assert snapshot.status == STATUS_HEALTHY
        assert await _alert_rules(session_factory) == []

    @pytest.mark.unit
    async def test_overlapping_tick_skipped(self, pipeline, fake_transport):
        inner = []
        original = fake_transport.get_connectivity

        async def reenter():
            inner.append(await pipeline.monitor.run_tick())
            return await original()

        fake_transport.get_connectivity = reenter

        assert await pipeline.monitor.run_tick() is not None
        assert inner == [None]

    @pytest.mark.unit
    async def test_queue_backlog_alert(self, tuned_pipeline, job_factory, session_factory):
        pipeline = tuned_pipeline(QUEUE_BACKLOG_ALERT_THRESHOLD=2, QUEUE_BACKLOG_WARNING=2, QUEUE_BACKLOG_CRITICAL=5)
        for i in range(3):
            await job_factory(contact=f"551199999000{i}")

        snapshot = await pipeline.monitor.run_tick()

        assert snapshot.components["queue"].status == STATUS_WARNING
        async with session_factory() as session:
            alert = (await session.execute(select(Alert))).scalars().one()
        assert alert.rule_id == QUEUE_BACKLOG
        assert alert.severity == AlertSeverity.WARNING
        assert alert.details["pending"] == 3

    @pytest.mark.unit
    async def test_high_failure_rate_alert(self, tuned_pipeline, job_factory, session_factory, clock):
        pipeline = tuned_pipeline(FAILURE_RATE_MIN_SAMPLE=2)
        await job_factory(status=MessageStatus.SENT, sent_at=clock() - timedelta(minutes=10))
        await job_factory(contact="5521988887777", status=MessageStatus.FAILED, failed_at=clock())

        snapshot = await pipeline.monitor.run_tick()

        assert snapshot.metrics["failure_ratio"] == 0.5
        assert snapshot.metrics["failure_sample"] == 2
        assert await _alert_rules(session_factory) == [HIGH_FAILURE_RATE]

    @pytest.mark.unit
    async def test_small_sample_does_not_alert(self, pipeline, job_factory, session_factory, clock):
        await job_factory(status=MessageStatus.FAILED, failed_at=clock())

        snapshot = await pipeline.monitor.run_tick()

        assert snapshot.metrics["failure_ratio"] == 1.0
        assert await _alert_rules(session_factory) == []

    @pytest.mark.unit
    async def test_daily_cap_alert(self, tuned_pipeline, job_factory, session_factory, clock):
        pipeline = tuned_pipeline(DAILY_MESSAGE_CAP=2)
        await job_factory(status=MessageStatus.SENT, sent_at=clock())
        await job_factory(contact="5521988887777", status=MessageStatus.SENT, sent_at=clock())

        snapshot = await pipeline.monitor.run_tick()

        assert snapshot.components["compliance"].status == STATUS_WARNING
        assert snapshot.metrics["daily_cap_utilization"] == 1.0
        assert await _alert_rules(session_factory) == [DAILY_CAP_UTILIZATION]

    @pytest.mark.unit
    async def test_compliance_blocks_alert(self, tuned_pipeline, session_factory, clock):
        pipeline = tuned_pipeline(COMPLIANCE_BLOCKS_ALERT_THRESHOLD=2)
        await pipeline.activity_log.warning(LogCategory.COMPLIANCE, "Job deferred by compliance")
        clock.advance(hours=2)
        for _ in range(3):
            await pipeline.activity_log.warning(LogCategory.COMPLIANCE, "Job deferred by compliance")
        await pipeline.activity_log.info(LogCategory.COMPLIANCE, "Contact opted out")

        snapshot = await pipeline.monitor.run_tick()

        assert snapshot.metrics["compliance_blocks"] == 3
        assert await _alert_rules(session_factory) == [COMPLIANCE_BLOCKS_HIGH]
