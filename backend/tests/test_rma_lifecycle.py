"""
Tests for the RMA case store and lifecycle engine.
"""

from datetime import timedelta

import pytest

from rma import store as rma_store
from rma.errors import InvalidTransitionError, MissingRequiredFieldsError, WarrantyDecisionError
from rma.lifecycle import (
    STAGE_ORDER,
    TRANSITIONS,
    assign_case,
    check_transition,
    record_tracking,
    record_warranty_decision,
    transition_case,
)
from rma.store import create_case, list_events, normalize_serial_number


class TestTransitionTable:
    def test_every_transition_moves_forward(self):
        for stage, targets in TRANSITIONS.items():
            for target in targets:
                assert STAGE_ORDER.index(target) > STAGE_ORDER.index(stage)

    def test_terminal_stage_has_no_exits(self):
        assert TRANSITIONS["back_to_customer"] == frozenset()

    def test_serial_normalization(self):
        assert normalize_serial_number("  sn-001a ") == "SN-001A"
        assert normalize_serial_number("   ") is None
        assert normalize_serial_number(None) is None


@pytest.mark.asyncio
class TestCaseStore:
    async def test_new_case_starts_received_with_event(self, test_db, clock, make_case):
        case = await make_case(priority="high", serial_number="ab12")

        assert case.status == "received"
        assert case.serial_number == "AB12"
        assert case.sla_due_at == clock.now() + timedelta(hours=48)
        assert case.received_at is None

        events = await list_events(test_db, case.id)
        assert [event.event_type for event in events] == ["rma_received"]

    async def test_duplicate_return_id_is_deduped(self, test_db, clock):
        fields = {"source": "shopify_return_webhook", "issue_summary": "Broken", "shopify_return_id": "R-1"}
        first, first_deduped = await create_case(test_db, fields, clock)
        second, second_deduped = await create_case(test_db, {**fields, "issue_summary": "Other"}, clock)

        assert first_deduped is False
        assert second_deduped is True
        assert second.id == first.id
        assert second.issue_summary == "Broken"
        assert len(await list_events(test_db, first.id)) == 1

    async def test_insert_race_is_reported_as_deduped(self, test_db, clock, monkeypatch):
        fields = {"source": "shopify_return_webhook", "issue_summary": "Broken", "shopify_return_id": "R-9"}
        first, _ = await create_case(test_db, fields, clock)

        real_lookup = rma_store.find_existing_case
        lookups = []

        async def lookup_after_race(db, shopify_return_id, dedupe_key):
            lookups.append(shopify_return_id)
            # The first read misses: the winning row lands just after it.
            if len(lookups) == 1:
                return None
            return await real_lookup(db, shopify_return_id, dedupe_key)

        monkeypatch.setattr(rma_store, "find_existing_case", lookup_after_race)
        second, deduped = await create_case(test_db, {**fields, "issue_summary": "Other"}, clock)

        assert deduped is True
        assert second.id == first.id
        assert lookups == ["R-9", "R-9"]
        assert len(await list_events(test_db, first.id)) == 1

    async def test_requested_status_is_ignored_on_create(self, make_case):
        case = await make_case(status="testing")
        assert case.status == "received"


@pytest.mark.asyncio
class TestTransitions:
    async def test_forward_transition_stamps_timestamps(self, test_db, clock, make_case):
        case = await make_case()
        clock.advance(hours=2)

        event = await transition_case(test_db, case, "testing", clock, note="Bench test", actor="tech")

        assert case.status == "testing"
        assert case.inspected_at == clock.now()
        assert case.received_at == clock.now()
        assert event.event_type == "rma_testing"
        assert event.event_metadata == {
            "previous_status": "received",
            "next_status": "testing",
            "trigger": "manual",
        }

    async def test_skipping_ahead_is_allowed(self, test_db, clock, make_case):
        case = await make_case()
        await transition_case(test_db, case, "sent_to_manufacturer", clock)
        assert case.status == "sent_to_manufacturer"

    async def test_backward_transition_is_rejected(self, test_db, clock, make_case):
        case = await make_case()
        await transition_case(test_db, case, "sent_to_manufacturer", clock)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await transition_case(test_db, case, "testing", clock)

        assert exc_info.value.from_status == "sent_to_manufacturer"
        assert exc_info.value.to_status == "testing"
        assert case.status == "sent_to_manufacturer"

    async def test_same_stage_is_rejected(self, make_case):
        case = await make_case()
        with pytest.raises(InvalidTransitionError):
            check_transition(case, "received")

    async def test_unknown_stage_is_rejected(self, make_case):
        case = await make_case()
        with pytest.raises(InvalidTransitionError):
            check_transition(case, "lost_in_mail")

    async def test_back_to_customer_requires_outbound_tracking(self, test_db, clock, make_case):
        case = await make_case()
        await transition_case(test_db, case, "repaired_replaced", clock)
        events_before = len(await list_events(test_db, case.id))

        with pytest.raises(MissingRequiredFieldsError) as exc_info:
            await transition_case(test_db, case, "back_to_customer", clock)

        assert exc_info.value.missing_fields == ["outbound_carrier", "outbound_tracking_number"]
        assert case.status == "repaired_replaced"
        assert case.closed_at is None
        assert len(await list_events(test_db, case.id)) == events_before

    async def test_ordering_is_checked_before_fields(self, test_db, clock, make_case):
        case = await make_case(outbound_carrier="UPS", outbound_tracking_number="1Z")
        await transition_case(test_db, case, "back_to_customer", clock)

        with pytest.raises(InvalidTransitionError):
            await transition_case(test_db, case, "back_to_customer", clock)

    async def test_back_to_customer_closes_case(self, test_db, clock, make_case):
        case = await make_case(outbound_carrier="UPS", outbound_tracking_number="1Z999")
        await transition_case(test_db, case, "repaired_replaced", clock)
        clock.advance(days=1)

        await transition_case(test_db, case, "back_to_customer", clock)
        assert case.shipped_back_at == clock.now()
        assert case.closed_at == clock.now()


@pytest.mark.asyncio
class TestTracking:
    async def test_inbound_delivered_advances_to_testing(self, test_db, clock, make_case):
        case = await make_case()
        delivered = clock.now() - timedelta(hours=3)

        await record_tracking(
            test_db,
            case,
            clock,
            direction="inbound",
            carrier="AusPost",
            tracking_number="AP123",
            status="Delivered",
            delivered_at=delivered,
        )

        assert case.status == "testing"
        assert case.received_at == delivered
        assert case.inbound_tracking_number == "AP123"
        events = await list_events(test_db, case.id)
        assert [event.event_type for event in events] == ["rma_received", "tracking_update", "rma_testing"]
        assert events[-1].event_metadata["trigger"] == "inbound_tracking"

    async def test_inbound_in_transit_does_not_advance(self, test_db, clock, make_case):
        case = await make_case()
        await record_tracking(test_db, case, clock, direction="inbound", tracking_number="AP1", status="in_transit")
        assert case.status == "received"
        assert case.received_at is None

    async def test_outbound_tracking_ships_repaired_case(self, test_db, clock, make_case):
        case = await make_case()
        await transition_case(test_db, case, "repaired_replaced", clock)
        clock.advance(hours=1)

        await record_tracking(
            test_db,
            case,
            clock,
            direction="outbound",
            carrier="UPS",
            tracking_number="1Z999",
        )

        assert case.status == "back_to_customer"
        assert case.shipped_back_at == clock.now()
        assert case.closed_at == clock.now()
        assert case.delivered_back_at is None

    async def test_outbound_auto_advance_is_guarded(self, test_db, clock, make_case):
        case = await make_case()
        await transition_case(test_db, case, "repaired_replaced", clock)

        with pytest.raises(MissingRequiredFieldsError) as exc_info:
            await record_tracking(test_db, case, clock, direction="outbound", tracking_number="1Z999")

        assert exc_info.value.missing_fields == ["outbound_carrier"]
        assert case.status == "repaired_replaced"
        assert case.outbound_tracking_number is None
        assert case.shipped_back_at is None

    async def test_outbound_delivered_stamps_delivery(self, test_db, clock, make_case):
        case = await make_case(outbound_carrier="UPS", outbound_tracking_number="1Z")
        await transition_case(test_db, case, "back_to_customer", clock)
        clock.advance(days=2)

        await record_tracking(
            test_db,
            case,
            clock,
            direction="outbound",
            carrier="UPS",
            tracking_number="1Z",
            status="delivered",
        )
        assert case.delivered_back_at == clock.now()
        assert case.status == "back_to_customer"

    async def test_unknown_direction_is_rejected(self, test_db, clock, make_case):
        case = await make_case()
        with pytest.raises(ValueError):
            await record_tracking(test_db, case, clock, direction="sideways")


@pytest.mark.asyncio
class TestWarrantyAndAssignment:
    async def test_warranty_decision_updates_fields_not_status(self, test_db, clock, make_case):
        case = await make_case()
        event = await record_warranty_decision(
            test_db,
            case,
            clock,
            warranty_status="in_warranty",
            warranty_basis="acl",
            decision_notes="  Major failure under consumer law ",
            priority="urgent",
        )

        assert case.status == "received"
        assert case.warranty_status == "in_warranty"
        assert case.warranty_basis == "acl"
        assert case.warranty_decision_notes == "Major failure under consumer law"
        assert case.warranty_checked_at == clock.now()
        assert case.priority == "urgent"
        assert event.event_type == "warranty_decision"
        assert event.event_metadata["previous_priority"] == "normal"

    async def test_warranty_decision_requires_notes(self, test_db, clock, make_case):
        case = await make_case()
        with pytest.raises(WarrantyDecisionError):
            await record_warranty_decision(
                test_db,
                case,
                clock,
                warranty_status="out_of_warranty",
                warranty_basis="manufacturer",
                decision_notes="   ",
            )
        assert case.warranty_status == "unknown"

    async def test_assignment_lowercases_emails(self, test_db, clock, make_case):
        case = await make_case()
        event = await assign_case(
            test_db,
            case,
            clock,
            technician_name="Sam",
            technician_email=" Sam@Shop.Test ",
        )
        assert case.assigned_technician_email == "sam@shop.test"
        assert case.assigned_at == clock.now()
        assert event.event_type == "assignment"
