"""
Tests for the event dispatcher and demo mode.
"""
from faers_core.events import DemoModeChanged, DemoModeState, EventDispatcher, WorkflowTransitioned

from conftest import START


def _transitioned():
    return WorkflowTransitioned(
        case_id="CASE-1",
        from_status="Draft",
        to_status="Data Entry Complete",
        actor_id="u-1",
        actor_username="jdoe",
        occurred_at=START,
    )


class TestEventDispatcher:
    """Tests for EventDispatcher."""

    def test_publish_reaches_subscribers_of_that_type(self):
        """Should deliver only to subscribers of the event's class."""
        dispatcher = EventDispatcher()
        transitions, demo = [], []
        dispatcher.subscribe(WorkflowTransitioned, transitions.append)
        dispatcher.subscribe(DemoModeChanged, demo.append)

        assert dispatcher.publish(_transitioned()) == 1
        assert len(transitions) == 1
        assert demo == []

    def test_unsubscribe(self):
        """Should stop delivering after unsubscribe."""
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe(WorkflowTransitioned, received.append)
        dispatcher.unsubscribe(WorkflowTransitioned, received.append)
        assert dispatcher.publish(_transitioned()) == 0
        assert received == []

    def test_failing_subscriber_is_isolated(self):
        """Should keep delivering when one subscriber raises."""
        dispatcher = EventDispatcher()
        received = []

        def broken(event):
            raise RuntimeError("notification service down")

        dispatcher.subscribe(WorkflowTransitioned, broken)
        dispatcher.subscribe(WorkflowTransitioned, received.append)

        assert dispatcher.publish(_transitioned()) == 2
        assert len(received) == 1

    def test_no_subscribers(self):
        """Should publish to nobody without error."""
        assert EventDispatcher().publish(_transitioned()) == 0


class TestDemoModeState:
    """Tests for DemoModeState."""

    def test_changes_are_published(self, clock):
        """Should publish each activation and deactivation."""
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe(DemoModeChanged, received.append)

        state = DemoModeState(dispatcher, clock=clock)
        assert not state.is_active

        state.activate()
        assert state.is_active
        clock.advance(minutes=5)
        state.deactivate()

        assert [e.enabled for e in received] == [True, False]
        assert received[1].changed_at == START.replace(minute=5)
