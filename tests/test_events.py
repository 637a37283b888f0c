# tests/test_events.py
"""
Tests for event intake: bus delivery, handler mapping, idempotent
replays and error containment.

Run:
    pytest tests/test_events.py -v
"""
import pytest

from models import EarningEntry, Member, SupportAction
from matrix_system.events.event_bus import EventBus, MatrixEvents, eventBus
from matrix_system.events.setup import setup_matrix_event_handlers, teardown_matrix_event_handlers


@pytest.fixture
def handlers(engine):
    """Matrix handlers registered on the global bus for one test."""
    setup_matrix_event_handlers()
    yield eventBus
    teardown_matrix_event_handlers()


async def emit_one(eventName, data):
    results = await eventBus.emit(eventName, data)
    assert len(results) == 1
    return results[0]


# =============================================================================
# TEST CLASS: EventBus
# =============================================================================

class TestEventBus:
    """Publish/subscribe behaviour."""

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = EventBus()
        calls = []

        async def broken(data):
            raise ValueError("bad payload")

        async def working(data):
            calls.append(data["n"])
            return data["n"] * 2

        bus.subscribe("test.event", broken)
        bus.subscribe("test.event", working)

        results = await bus.emit("test.event", {"n": 21})

        assert results == [None, 42]
        assert calls == [21]

    @pytest.mark.asyncio
    async def test_no_handlers(self):
        assert await EventBus().emit("nobody.listens", {}) == []

    @pytest.mark.asyncio
    async def test_subscribe_once_and_unsubscribe(self):
        bus = EventBus()

        def handler(data):
            return "sync ok"

        bus.subscribe("test.event", handler)
        bus.subscribe("test.event", handler)
        assert await bus.emit("test.event", {}) == ["sync ok"]

        bus.unsubscribe("test.event", handler)
        assert await bus.emit("test.event", {}) == []

    @pytest.mark.asyncio
    async def test_teardown_removes_matrix_handlers(self, engine):
        setup_matrix_event_handlers()
        teardown_matrix_event_handlers()

        assert await eventBus.emit(MatrixEvents.MEMBER_CREATED, {"parent_id": None}) == []


# =============================================================================
# TEST CLASS: consumed events
# =============================================================================

class TestMatrixEvents:
    """Each consumed event maps onto its service operation."""

    @pytest.mark.asyncio
    async def test_member_created(self, session, handlers):
        rootId = await emit_one(MatrixEvents.MEMBER_CREATED, {"parent_id": None})
        childId = await emit_one(
            MatrixEvents.MEMBER_CREATED,
            {"parent_id": rootId, "status": "past_due", "event_id": "evt-1"}
        )

        session.expire_all()
        child = session.get(Member, childId)
        assert child.parentID == rootId
        assert child.subscriptionStatus == "past_due"

    @pytest.mark.asyncio
    async def test_member_created_replay(self, session, handlers):
        rootId = await emit_one(MatrixEvents.MEMBER_CREATED, {"parent_id": None})
        payload = {"parent_id": rootId, "event_id": "evt-replay"}

        first = await emit_one(MatrixEvents.MEMBER_CREATED, payload)
        second = await emit_one(MatrixEvents.MEMBER_CREATED, payload)

        assert first == second
        assert session.query(Member).count() == 2

    @pytest.mark.asyncio
    async def test_member_created_invalid_parent_contained(self, session, handlers):
        result = await emit_one(MatrixEvents.MEMBER_CREATED, {"parent_id": 404})

        assert result is None
        assert session.query(Member).count() == 0

    @pytest.mark.asyncio
    async def test_subscription_changed(self, session, handlers):
        memberId = await emit_one(MatrixEvents.MEMBER_CREATED, {"parent_id": None})

        assert await emit_one(
            MatrixEvents.SUBSCRIPTION_CHANGED, {"member_id": memberId, "status": "canceled"}
        ) is True
        assert await emit_one(
            MatrixEvents.SUBSCRIPTION_CHANGED, {"member_id": memberId, "status": "paused"}
        ) is False
        assert await emit_one(MatrixEvents.SUBSCRIPTION_CHANGED, {"member_id": memberId}) is False

        session.expire_all()
        assert session.get(Member, memberId).subscriptionStatus == "canceled"

    @pytest.mark.asyncio
    async def test_support_action_recorded(self, session, handlers):
        sponsorId = await emit_one(MatrixEvents.MEMBER_CREATED, {"parent_id": None})
        recruitId = await emit_one(MatrixEvents.MEMBER_CREATED, {"parent_id": sponsorId})

        actionId = await emit_one(MatrixEvents.SUPPORT_ACTION_RECORDED, {
            "member_id": sponsorId,
            "action_type": "training_attended",
            "recruit_id": recruitId,
            "notes": "Module 2",
        })
        rejected = await emit_one(MatrixEvents.SUPPORT_ACTION_RECORDED, {
            "member_id": sponsorId,
            "action_type": "lunch",
        })

        assert actionId is not None
        assert rejected is None
        action = session.get(SupportAction, actionId)
        assert action.recruitID == recruitId
        assert action.notes == "Module 2"

    @pytest.mark.asyncio
    async def test_commission_trigger(self, session, handlers):
        sponsorId = await emit_one(MatrixEvents.MEMBER_CREATED, {"parent_id": None})
        recruitId = await emit_one(MatrixEvents.MEMBER_CREATED, {"parent_id": sponsorId})
        payload = {
            "beneficiary_id": sponsorId,
            "source_id": recruitId,
            "source_type": "residual_commission",
            "amount_cents": 1999,
            "event_id": "evt-comm",
        }

        first = await emit_one(MatrixEvents.COMMISSION_TRIGGER, payload)
        second = await emit_one(MatrixEvents.COMMISSION_TRIGGER, payload)

        assert first is not None
        assert first == second
        assert session.query(EarningEntry).count() == 1

    @pytest.mark.asyncio
    async def test_commission_trigger_errors_contained(self, session, handlers):
        sponsorId = await emit_one(MatrixEvents.MEMBER_CREATED, {"parent_id": None})

        missing = await emit_one(MatrixEvents.COMMISSION_TRIGGER, {"beneficiary_id": sponsorId})
        unknown = await emit_one(MatrixEvents.COMMISSION_TRIGGER, {
            "beneficiary_id": 999,
            "source_id": sponsorId,
            "source_type": "team_bonus",
            "amount_cents": 100,
        })

        assert missing is None
        assert unknown is None
        assert session.query(EarningEntry).count() == 0
