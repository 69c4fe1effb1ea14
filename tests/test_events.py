"""
Tests for the loan event dispatcher
"""

import pytest
from datetime import datetime
from unittest.mock import Mock

from loan_engine.events import EventDispatcher, EventPayload, LoanEvent


def make_event(event_type=LoanEvent.EMI_PAYMENT_RECORDED):
    return EventPayload(
        event_type=event_type,
        entity_type="emi",
        entity_id="emi-123",
        data={"paid_amount": "5200.00"}
    )


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        """Test creating event payloads"""
        event = make_event()

        assert event.event_type == LoanEvent.EMI_PAYMENT_RECORDED
        assert event.entity_id == "emi-123"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        """Test event payload to/from dict"""
        original = make_event(LoanEvent.LOAN_DISBURSED)

        event_dict = original.to_dict()
        assert event_dict['event_type'] == "loan.disbursed"

        restored = EventPayload.from_dict(event_dict)
        assert restored.event_type == original.event_type
        assert restored.timestamp == original.timestamp
        assert restored.event_id == original.event_id


class TestEventDispatcher:
    """Test publish/subscribe"""

    def test_subscribe_and_publish(self):
        """Test handlers receive events of their type only"""
        dispatcher = EventDispatcher()
        handler = Mock()
        other = Mock()
        dispatcher.subscribe(LoanEvent.EMI_PAYMENT_RECORDED, handler)
        dispatcher.subscribe(LoanEvent.LOAN_NPA, other)

        event = make_event()
        dispatcher.publish(event)

        handler.assert_called_once_with(event)
        other.assert_not_called()

    def test_global_handlers(self):
        """Test catch-all handlers receive every event"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.publish(make_event(LoanEvent.LOAN_ORIGINATED))
        dispatcher.publish(make_event(LoanEvent.RISK_SCORED))

        assert handler.call_count == 2

    def test_unsubscribe(self):
        """Test unsubscribed handlers stop receiving events"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(LoanEvent.LOAN_CLOSED, handler)
        dispatcher.unsubscribe(LoanEvent.LOAN_CLOSED, handler)

        dispatcher.publish(make_event(LoanEvent.LOAN_CLOSED))

        handler.assert_not_called()
        dispatcher.unsubscribe(LoanEvent.LOAN_CLOSED, handler)

    def test_failing_handler_is_isolated(self):
        """Test one failing handler does not stop the others"""
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("subscriber down"))
        healthy = Mock()
        dispatcher.subscribe(LoanEvent.LOAN_FORECLOSED, failing)
        dispatcher.subscribe(LoanEvent.LOAN_FORECLOSED, healthy)

        dispatcher.publish(make_event(LoanEvent.LOAN_FORECLOSED))

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_handler_count_and_clear(self):
        """Test counting and clearing handlers"""
        dispatcher = EventDispatcher()
        dispatcher.subscribe(LoanEvent.LOAN_NPA, Mock())
        dispatcher.subscribe(LoanEvent.LOAN_NPA, Mock())
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count(LoanEvent.LOAN_NPA) == 2
        assert dispatcher.get_handler_count() == 3

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0
