"""
Tests for the queued message lifecycle table
"""
import pytest

from outreach.core.exceptions import ErrorCode, InvalidStateTransitionError
from outreach.state_machine import (
    MESSAGE_TRANSITIONS,
    MessagePriority,
    MessageStatus,
    allowed_sources,
    can_transition,
    ensure_transition,
)
from outreach.state_machine.states import NON_TERMINAL_STATUSES, SENT_FAMILY, TERMINAL_STATUSES


class TestTransitionTable:
    @pytest.mark.unit
    def test_every_status_has_an_entry(self):
        assert set(MESSAGE_TRANSITIONS) == set(MessageStatus)

    @pytest.mark.unit
    @pytest.mark.parametrize("current,target", [
        (MessageStatus.PENDING, MessageStatus.PROCESSING),
        (MessageStatus.PENDING, MessageStatus.CANCELLED),
        (MessageStatus.PROCESSING, MessageStatus.PENDING),
        (MessageStatus.PROCESSING, MessageStatus.SENT),
        (MessageStatus.PROCESSING, MessageStatus.FAILED),
        (MessageStatus.PROCESSING, MessageStatus.CANCELLED),
        (MessageStatus.SENT, MessageStatus.DELIVERED),
        (MessageStatus.SENT, MessageStatus.READ),
        (MessageStatus.SENT, MessageStatus.FAILED),
        (MessageStatus.DELIVERED, MessageStatus.READ),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize("current,target", [
        (MessageStatus.SENT, MessageStatus.PENDING),
        (MessageStatus.DELIVERED, MessageStatus.SENT),
        (MessageStatus.READ, MessageStatus.DELIVERED),
        (MessageStatus.DELIVERED, MessageStatus.FAILED),
        (MessageStatus.FAILED, MessageStatus.PENDING),
        (MessageStatus.CANCELLED, MessageStatus.PROCESSING),
        (MessageStatus.PENDING, MessageStatus.SENT),
    ])
    def test_refused(self, current, target):
        assert not can_transition(current, target)

    @pytest.mark.unit
    def test_terminal_statuses_have_no_way_back(self):
        for status in TERMINAL_STATUSES:
            for target in NON_TERMINAL_STATUSES:
                assert not can_transition(status, target)

    @pytest.mark.unit
    def test_allowed_sources(self):
        assert set(allowed_sources(MessageStatus.READ)) == {MessageStatus.SENT, MessageStatus.DELIVERED}
        assert set(allowed_sources(MessageStatus.DELIVERED)) == {MessageStatus.SENT}
        assert set(allowed_sources(MessageStatus.FAILED)) == {MessageStatus.PROCESSING, MessageStatus.SENT}
        assert set(allowed_sources(MessageStatus.CANCELLED)) == set(NON_TERMINAL_STATUSES)

    @pytest.mark.unit
    def test_sent_family_order(self):
        assert SENT_FAMILY == (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ)

    @pytest.mark.unit
    def test_ensure_transition_raises_with_job_id(self):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            ensure_transition(MessageStatus.READ, MessageStatus.SENT, job_id=7)

        exc = exc_info.value
        assert exc.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert exc.status_code == 409
        assert exc.details == {"current_state": "read", "target_state": "sent", "job_id": 7}


class TestMessagePriority:
    @pytest.mark.unit
    @pytest.mark.parametrize("name,expected", [
        ("low", MessagePriority.LOW),
        ("Normal", MessagePriority.NORMAL),
        (" HIGH ", MessagePriority.HIGH),
        ("urgent", MessagePriority.URGENT),
        (MessagePriority.HIGH, MessagePriority.HIGH),
    ])
    def test_from_name(self, name, expected):
        assert MessagePriority.from_name(name) == expected

    @pytest.mark.unit
    def test_unknown_name(self):
        with pytest.raises(ValueError):
            MessagePriority.from_name("critical")

    @pytest.mark.unit
    def test_ordering(self):
        assert MessagePriority.URGENT > MessagePriority.HIGH > MessagePriority.NORMAL > MessagePriority.LOW
