"""Tests for the instance lifecycle state machine."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from inspectra.core.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from inspectra.db.models import InstanceModel, NotificationOutboxModel
from inspectra.lifecycle.state_machine import check_transition, event_type_for
from inspectra.models import Actor, EventType, InstanceStatus
from inspectra.notifications.webhooks import SIGNATURE_HEADER, verify_signature


def _actor(role: str) -> Actor:
    return Actor(profile_id=uuid4(), role=role)


class TestCheckTransition:
    """Test the transition whitelist on its own."""

    @pytest.mark.parametrize(
        ("current", "new"),
        [
            ("pending", "in_progress"),
            ("pending", "void"),
            ("in_progress", "passed"),
            ("in_progress", "failed"),
            ("in_progress", "void"),
        ],
    )
    def test_allowed_for_any_role(self, current, new):
        check_transition(current, new, _actor("inspector"))

    @pytest.mark.parametrize(
        ("current", "new"),
        [
            ("pending", "pending"),
            ("pending", "passed"),
            ("in_progress", "pending"),
            ("passed", "failed"),
            ("failed", "in_progress"),
            ("void", "pending"),
            ("void", "in_progress"),
        ],
    )
    def test_rejected_pairs(self, current, new):
        with pytest.raises(InvalidTransition):
            check_transition(current, new, _actor("owner"))

    @pytest.mark.parametrize("role", ["owner", "admin"])
    @pytest.mark.parametrize("current", ["passed", "failed"])
    def test_privileged_revert(self, role, current):
        check_transition(current, "pending", _actor(role))

    @pytest.mark.parametrize("role", ["nurse", "inspector"])
    def test_revert_forbidden_for_others(self, role):
        with pytest.raises(Forbidden):
            check_transition("failed", "pending", _actor(role))

    def test_event_types(self):
        assert event_type_for("in_progress") is EventType.STARTED
        assert event_type_for("pending") is EventType.REVERTED
        assert event_type_for("passed") is EventType.PASSED
        assert event_type_for("void") is EventType.VOID


class TestTransition:
    """Test InstanceStateMachine.transition against the database."""

    @pytest.mark.asyncio
    async def test_happy_path_to_passed(
        self, engine_context, seed, make_instance, webhook_recorder, test_config
    ):
        instance_id = await make_instance()
        lifecycle = engine_context.lifecycle

        started = await lifecycle.transition(instance_id, "in_progress", seed.inspector)
        await engine_context.dispatcher.drain()
        assert started.status is InstanceStatus.IN_PROGRESS
        assert started.inspected_at is not None

        passed = await lifecycle.transition(instance_id, "passed", seed.inspector, remarks="All good")
        assert passed.status is InstanceStatus.PASSED
        assert passed.passed_at is not None
        assert passed.remarks == "All good"
        assert passed.template_task == "Fire extinguisher check"

        await engine_context.dispatcher.drain()

        events = await engine_context.events.list(instance_id)
        assert [e.event_type for e in events] == ["started", "passed"]
        assert events[1].payload == {"from": "in_progress", "to": "passed", "remarks": "All good"}

        assert webhook_recorder.paths() == ["/webhook/inspection-completed"]
        request = webhook_recorder.requests[0]
        assert verify_signature(
            request.content, request.headers[SIGNATURE_HEADER], test_config.webhooks.secret
        )
        body = json.loads(request.content)
        assert body["event"] == "inspection_completed"
        assert body["status"] == "passed"
        assert body["completed_by_profile_id"] == str(seed.inspector_id)

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_status_unchanged(self, engine_context, seed, make_instance, db):
        instance_id = await make_instance(status="passed")

        with pytest.raises(InvalidTransition):
            await engine_context.lifecycle.transition(instance_id, "in_progress", seed.owner)

        async with db.session() as session:
            row = await session.get(InstanceModel, instance_id)
            assert row.status == "passed"

        await engine_context.dispatcher.drain()
        assert await engine_context.events.list(instance_id) == []

    @pytest.mark.asyncio
    async def test_same_status_is_rejected(self, engine_context, seed, make_instance):
        instance_id = await make_instance()

        with pytest.raises(InvalidTransition):
            await engine_context.lifecycle.transition(instance_id, "pending", seed.owner)

    @pytest.mark.asyncio
    async def test_inspector_cannot_revert(self, engine_context, seed, make_instance, db):
        instance_id = await make_instance(status="failed")

        with pytest.raises(Forbidden):
            await engine_context.lifecycle.transition(instance_id, "pending", seed.inspector)

        async with db.session() as session:
            assert (await session.get(InstanceModel, instance_id)).status == "failed"

    @pytest.mark.asyncio
    async def test_admin_revert_clears_outcome(self, engine_context, seed, make_instance):
        instance_id = await make_instance(status="in_progress")
        await engine_context.lifecycle.transition(instance_id, "failed", seed.inspector)
        await engine_context.dispatcher.drain()

        reverted = await engine_context.lifecycle.transition(instance_id, "pending", seed.admin)

        assert reverted.status is InstanceStatus.PENDING
        assert reverted.failed_at is None
        assert reverted.passed_at is None

        await engine_context.dispatcher.drain()
        events = await engine_context.events.list(instance_id)
        assert [e.event_type for e in events] == ["failed", "reverted"]

    @pytest.mark.asyncio
    async def test_failed_alerts_owners_and_admins(
        self, engine_context, seed, make_instance, make_subscription, push_transport
    ):
        await make_subscription(seed.owner_id, "https://push.test/owner")
        await make_subscription(seed.admin_id, "https://push.test/admin")
        await make_subscription(seed.inspector_id, "https://push.test/inspector")
        instance_id = await make_instance(status="in_progress")

        await engine_context.lifecycle.transition(instance_id, "failed", seed.inspector)
        await engine_context.dispatcher.drain()

        endpoints = sorted(endpoint for endpoint, _ in push_transport.delivered)
        assert endpoints == ["https://push.test/admin", "https://push.test/owner"]
        assert push_transport.delivered[0][1]["title"] == "Inspection Failed"

    @pytest.mark.asyncio
    async def test_unknown_status(self, engine_context, seed, make_instance):
        instance_id = await make_instance()

        with pytest.raises(ValidationError):
            await engine_context.lifecycle.transition(instance_id, "archived", seed.owner)

    @pytest.mark.asyncio
    async def test_location_scoping(self, engine_context, seed, make_instance):
        instance_id = await make_instance()
        outsider = seed.actor(uuid4(), "owner", location_id=seed.other_location_id)

        with pytest.raises(Forbidden):
            await engine_context.lifecycle.transition(instance_id, "in_progress", outsider)

        with pytest.raises(NotFound):
            await engine_context.lifecycle.transition(
                instance_id, "in_progress", seed.owner, location_id=seed.other_location_id
            )

        with pytest.raises(NotFound):
            await engine_context.lifecycle.transition(uuid4(), "in_progress", seed.owner)


class TestAssign:
    """Test InstanceStateMachine.assign."""

    @pytest.mark.asyncio
    async def test_inspector_cannot_reassign(self, engine_context, seed, make_instance, db):
        instance_id = await make_instance()

        with pytest.raises(Forbidden):
            await engine_context.lifecycle.assign(instance_id, seed.inspector, profile_id=seed.inspector_id)

        async with db.session() as session:
            assert (await session.get(InstanceModel, instance_id)).assigned_to_profile_id is None

    @pytest.mark.asyncio
    async def test_reassignment_side_effects(
        self, engine_context, seed, make_instance, make_subscription, push_transport, webhook_recorder, db
    ):
        await make_subscription(seed.inspector_id, "https://push.test/inspector")
        instance_id = await make_instance()

        instance = await engine_context.lifecycle.assign(
            instance_id, seed.admin, profile_id=seed.inspector_id, email="contractor@example.com"
        )
        await engine_context.dispatcher.drain()

        assert instance.assigned_to_profile_id == seed.inspector_id
        assert instance.assigned_to_email == "contractor@example.com"

        assert [endpoint for endpoint, _ in push_transport.delivered] == ["https://push.test/inspector"]
        assert webhook_recorder.paths() == ["/webhook/assignment-changed"]

        async with db.session() as session:
            outbox = (await session.execute(select(NotificationOutboxModel))).scalars().all()
        assert [(row.type, row.to_email) for row in outbox] == [("assignment", "contractor@example.com")]

        events = await engine_context.events.list(instance_id)
        assert [e.event_type for e in events] == ["assigned"]
        assert events[0].payload["assigned_to_profile_id"] == str(seed.inspector_id)
        assert events[0].payload["previous_profile_id"] is None

    @pytest.mark.asyncio
    async def test_omitted_fields_are_kept(self, engine_context, seed, make_instance):
        instance_id = await make_instance(
            assigned_to_profile_id=seed.inspector_id, assigned_to_email="keep@example.com"
        )

        instance = await engine_context.lifecycle.assign(instance_id, seed.owner, profile_id=seed.admin_id)

        assert instance.assigned_to_profile_id == seed.admin_id
        assert instance.assigned_to_email == "keep@example.com"

    @pytest.mark.asyncio
    async def test_unassign(self, engine_context, seed, make_instance):
        instance_id = await make_instance(assigned_to_profile_id=seed.inspector_id)

        instance = await engine_context.lifecycle.assign(instance_id, seed.owner, profile_id=None)

        assert instance.assigned_to_profile_id is None

    @pytest.mark.asyncio
    async def test_terminal_instance_cannot_be_reassigned(self, engine_context, seed, make_instance):
        instance_id = await make_instance(status="void")

        with pytest.raises(InvalidTransition):
            await engine_context.lifecycle.assign(instance_id, seed.owner, profile_id=seed.inspector_id)

    @pytest.mark.asyncio
    async def test_unknown_profile(self, engine_context, seed, make_instance):
        instance_id = await make_instance()

        with pytest.raises(ValidationError):
            await engine_context.lifecycle.assign(instance_id, seed.owner, profile_id=uuid4())

    @pytest.mark.asyncio
    async def test_no_change_emits_nothing(self, engine_context, seed, make_instance, webhook_recorder):
        instance_id = await make_instance(assigned_to_profile_id=seed.inspector_id)

        await engine_context.lifecycle.assign(instance_id, seed.owner, profile_id=seed.inspector_id)
        await engine_context.dispatcher.drain()

        assert webhook_recorder.requests == []
        assert await engine_context.events.list(instance_id) == []


class TestQueriesAndCreation:
    """Test listing, manual creation, remarks and comments."""

    @pytest.mark.asyncio
    async def test_list_filters(self, engine_context, seed, make_instance):
        now = datetime.now(timezone.utc)
        soon = await make_instance(due_at=now + timedelta(days=1), assigned_to_profile_id=seed.inspector_id)
        await make_instance(status="passed", due_at=now - timedelta(days=3))

        pending = await engine_context.lifecycle.list_instances(seed.location_id, seed.owner, status="pending")
        assert [i.id for i in pending] == [soon]
        assert pending[0].template_task == "Fire extinguisher check"

        everything = await engine_context.lifecycle.list_instances(seed.location_id, seed.owner)
        assert len(everything) == 2
        assert everything[0].due_at < everything[1].due_at

        mine = await engine_context.lifecycle.list_instances(
            seed.location_id, seed.owner, assignee=seed.inspector_id
        )
        assert [i.id for i in mine] == [soon]

        with pytest.raises(Forbidden):
            await engine_context.lifecycle.list_instances(seed.other_location_id, seed.owner)

    @pytest.mark.asyncio
    async def test_create_instance(self, engine_context, seed):
        due_at = datetime(2030, 1, 1, tzinfo=timezone.utc)

        instance = await engine_context.lifecycle.create_instance(
            seed.admin, seed.location_id, seed.template_id, due_at, assigned_to_profile_id=seed.inspector_id
        )
        await engine_context.dispatcher.drain()

        assert instance.status is InstanceStatus.PENDING
        assert instance.due_at == due_at
        assert instance.created_by == seed.admin.user_id
        events = await engine_context.events.list(instance.id)
        assert [e.event_type for e in events] == ["created"]

    @pytest.mark.asyncio
    async def test_inspector_cannot_create(self, engine_context, seed):
        with pytest.raises(Forbidden):
            await engine_context.lifecycle.create_instance(
                seed.inspector, seed.location_id, seed.template_id, datetime.now(timezone.utc)
            )

    @pytest.mark.asyncio
    async def test_create_rejects_foreign_template(self, engine_context, seed):
        with pytest.raises(NotFound):
            await engine_context.lifecycle.create_instance(
                seed.owner, seed.location_id, uuid4(), datetime.now(timezone.utc)
            )

    @pytest.mark.asyncio
    async def test_set_remarks_and_comment(self, engine_context, seed, make_instance):
        instance_id = await make_instance()

        instance = await engine_context.lifecycle.set_remarks(instance_id, seed.inspector, "Cabinet locked")
        assert instance.remarks == "Cabinet locked"
        assert instance.status is InstanceStatus.PENDING

        event = await engine_context.lifecycle.comment(instance_id, seed.inspector, "  Key is at reception  ")
        assert event.event_type == "comment"
        assert event.payload == {"text": "Key is at reception"}

        with pytest.raises(ValidationError):
            await engine_context.lifecycle.comment(instance_id, seed.inspector, "   ")


class TestUpdate:
    """Test InstanceStateMachine.update, the combined single-write operation."""

    @pytest.mark.asyncio
    async def test_rejected_transition_discards_reassignment(
        self, engine_context, seed, make_instance, webhook_recorder, push_transport, db
    ):
        instance_id = await make_instance()

        with pytest.raises(InvalidTransition):
            await engine_context.lifecycle.update(
                instance_id, seed.admin, status="passed", profile_id=seed.inspector_id, remarks="n/a"
            )
        await engine_context.dispatcher.drain()

        async with db.session() as session:
            row = await session.get(InstanceModel, instance_id)
            assert (row.status, row.assigned_to_profile_id, row.remarks) == ("pending", None, None)
        assert webhook_recorder.requests == []
        assert push_transport.delivered == []
        assert await engine_context.events.list(instance_id) == []

    @pytest.mark.asyncio
    async def test_forbidden_revert_discards_reassignment(self, engine_context, seed, make_instance, db):
        instance_id = await make_instance(status="passed")
        nurse = seed.actor(uuid4(), "nurse")

        with pytest.raises(Forbidden):
            await engine_context.lifecycle.update(
                instance_id, nurse, status="pending", email="someone@example.com"
            )

        async with db.session() as session:
            assert (await session.get(InstanceModel, instance_id)).assigned_to_email is None

    @pytest.mark.asyncio
    async def test_applies_every_field_at_once(self, engine_context, seed, make_instance, webhook_recorder):
        instance_id = await make_instance()

        instance = await engine_context.lifecycle.update(
            instance_id,
            seed.owner,
            status="in_progress",
            remarks="Starting now",
            profile_id=seed.inspector_id,
        )
        await engine_context.dispatcher.drain()

        assert instance.status is InstanceStatus.IN_PROGRESS
        assert instance.remarks == "Starting now"
        assert instance.assigned_to_profile_id == seed.inspector_id
        assert sorted(webhook_recorder.paths()) == ["/webhook/assignment-changed"]
        events = await engine_context.events.list(instance_id)
        assert sorted(e.event_type for e in events) == ["assigned", "started"]

    @pytest.mark.asyncio
    async def test_events_carry_the_commit_time(self, engine_context, seed, make_instance):
        instance_id = await make_instance()

        started = await engine_context.lifecycle.transition(instance_id, "in_progress", seed.inspector)
        passed = await engine_context.lifecycle.transition(instance_id, "passed", seed.inspector)
        await engine_context.dispatcher.drain()

        events = await engine_context.events.list(instance_id)
        assert [e.event_type for e in events] == ["started", "passed"]
        assert events[0].event_at == started.inspected_at
        assert events[1].event_at == passed.passed_at
