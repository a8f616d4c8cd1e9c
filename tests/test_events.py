"""
Event bus, outbox and inbound consumer tests.

Tests cover:
  - Outbox rows per terminal outcome and their payloads
  - dispatch_pending: publish, retry, give up after MAX_PUBLISH_ATTEMPTS
  - MemoryBus at-least-once delivery; Redis Streams decoding
  - solution.created / party.changes consumers: submit, duplicate, ignore, drop, retry
"""
import pytest

from approvals.integrations.event_bus import MemoryBus, RedisStreamBus, build_event_bus
from approvals.models.outbox import MAX_PUBLISH_ATTEMPTS, OutboxEvent
from approvals.models.workflow import WorkflowSubject
from approvals.services.event_consumers import (
    MAX_DELIVERY_ATTEMPTS,
    EventConsumer,
    handle_party_change,
    requires_approval,
)
from approvals.services.event_publisher import dispatch_pending, outbox_summary
from approvals.services.scheduled_jobs import dispatch_outbox, poll_inbound_events


class BrokenBus(MemoryBus):
    def publish(self, topic, key, payload):
        raise ConnectionError("bus unreachable")


def _auto_approved(orchestrator, entity_id="sol-1"):
    return orchestrator.submit("SOLUTION_CONFIGURATION", entity_id, {"solutionId": entity_id},
                               {"pricingVariance": 0}, "alice")["workflow_id"]


@pytest.fixture()
def consumer(app):
    return EventConsumer.from_app(app)


@pytest.fixture()
def party_template(make_template, publish_template):
    return publish_template(make_template("party-change-v1", entity_type="PARTY_CHANGE",
                                          decision_tables=[{"name": "severity", "rules": [
                                              {"rule_id": "high",
                                               "conditions": {"changeSeverity": "== 'HIGH'"},
                                               "outputs": {"approverRoles": ["KYC_ANALYST",
                                                                             "COMPLIANCE_OFFICER"],
                                                           "approvalCount": 2}},
                                              {"rule_id": "other",
                                               "outputs": {"approverRoles": ["KYC_ANALYST"]}},
                                          ]}]))


# ═════════════════════════════════════════════════════════════════════════
# OUTBOX
# ═════════════════════════════════════════════════════════════════════════

class TestOutbox:
    def test_dispatch_publishes_in_order(self, orchestrator, solution_template, bus):
        wid = _auto_approved(orchestrator)
        assert outbox_summary() == {"PENDING": 2, "PUBLISHED": 0, "FAILED": 0}

        stats = dispatch_pending(bus)
        assert stats == {"published": 2, "failed": 0, "given_up": 0}
        assert outbox_summary() == {"PENDING": 0, "PUBLISHED": 2, "FAILED": 0}

        approved = bus.messages("workflow.approved")
        assert len(approved) == 1
        assert approved[0].key == wid
        assert approved[0].payload["entityId"] == "sol-1"
        completed = bus.messages("workflow.completed")[0].payload
        assert completed["finalState"] == "COMPLETED"
        assert completed["resultCode"] == "AUTO_APPROVED"
        assert completed["callbackStatus"] == "SUCCEEDED"

        assert dispatch_pending(bus)["published"] == 0

    def test_failed_publish_retried_then_given_up(self, orchestrator, solution_template):
        _auto_approved(orchestrator)
        broken = BrokenBus()
        for _ in range(MAX_PUBLISH_ATTEMPTS - 1):
            assert dispatch_pending(broken) == {"published": 0, "failed": 2, "given_up": 0}
        assert dispatch_pending(broken) == {"published": 0, "failed": 2, "given_up": 2}

        row = OutboxEvent.query.first()
        assert row.status == "FAILED"
        assert row.attempts == MAX_PUBLISH_ATTEMPTS
        assert row.last_error == "bus unreachable"
        assert dispatch_pending(broken)["failed"] == 0

    def test_recovered_bus_publishes_backlog(self, orchestrator, solution_template, bus):
        _auto_approved(orchestrator)
        dispatch_pending(BrokenBus())
        assert dispatch_pending(bus)["published"] == 2
        assert OutboxEvent.query.filter_by(status="PUBLISHED").first().attempts == 1

    def test_pending_workflow_has_no_events(self, orchestrator, solution_template):
        orchestrator.submit("SOLUTION_CONFIGURATION", "sol-2", {}, {"pricingVariance": 15})
        assert OutboxEvent.query.count() == 0

    def test_dispatch_job(self, app, orchestrator, solution_template, bus):
        _auto_approved(orchestrator)
        assert dispatch_outbox(app)["published"] == 2
        assert len(bus.messages("workflow.completed")) == 1


# ═════════════════════════════════════════════════════════════════════════
# BUS BACKENDS
# ═════════════════════════════════════════════════════════════════════════

class TestMemoryBus:
    def test_unacked_message_is_redelivered(self):
        bus = MemoryBus()
        bus.publish("t", "k", {"n": 1})
        first = bus.read("t", "g", "c1")
        assert [m.payload for m in first] == [{"n": 1}]
        assert bus.read("t", "g", "c1")[0].id == first[0].id
        assert bus.read("t", "g", "c2") == []
        assert bus.pending_count("t", "g") == 1

        bus.ack("t", "g", first[0].id)
        assert bus.read("t", "g", "c1") == []
        assert bus.pending_count("t", "g") == 0

    def test_groups_are_independent(self):
        bus = MemoryBus()
        bus.publish("t", None, {"n": 1})
        bus.publish("t", None, {"n": 2})
        assert len(bus.read("t", "a", "c")) == 2
        assert len(bus.read("t", "b", "c", count=1)) == 1

    def test_payload_is_copied(self):
        bus = MemoryBus()
        payload = {"items": [1]}
        bus.publish("t", None, payload)
        payload["items"].append(2)
        assert bus.messages("t")[0].payload == {"items": [1]}

    def test_build_event_bus(self):
        assert isinstance(build_event_bus("memory://"), MemoryBus)
        assert isinstance(build_event_bus(None), MemoryBus)


class FakeRedis:
    def __init__(self):
        self.added = []
        self.acked = []
        self.groups = []
        self.backlog = []
        self.new = []

    def xadd(self, topic, fields):
        self.added.append((topic, fields))
        return f"{len(self.added)}-0"

    def xgroup_create(self, topic, group, id="0", mkstream=False):
        self.groups.append((topic, group))

    def xreadgroup(self, group, consumer, streams, count=10):
        (topic, start), = streams.items()
        entries = self.backlog if start == "0" else self.new
        return [(topic, entries)] if entries else []

    def xack(self, topic, group, message_id):
        self.acked.append(message_id)

    def ping(self):
        return True


class TestRedisStreamBus:
    def test_publish_encodes_payload(self):
        client = FakeRedis()
        RedisStreamBus("redis://x", client=client).publish("t", None, {"a": 1})
        assert client.added == [("t", {"key": "", "payload": '{"a": 1}'})]

    def test_backlog_read_first(self):
        client = FakeRedis()
        client.backlog = [("1-0", {"key": "k", "payload": '{"n": 1}'})]
        client.new = [("2-0", {"key": "", "payload": '{"n": 2}'})]
        bus = RedisStreamBus("redis://x", client=client)
        messages = bus.read("t", "g", "c")
        assert [(m.id, m.key, m.payload) for m in messages] == [("1-0", "k", {"n": 1})]
        assert client.groups == [("t", "g")]

        client.backlog = []
        assert [m.key for m in bus.read("t", "g", "c")] == [None]
        assert client.groups == [("t", "g")]

    def test_undecodable_payload(self):
        client = FakeRedis()
        client.new = [("1-0", {"payload": "{not json"})]
        assert RedisStreamBus("redis://x", client=client).read("t", "g", "c")[0].payload == {}


# ═════════════════════════════════════════════════════════════════════════
# INBOUND CONSUMERS
# ═════════════════════════════════════════════════════════════════════════

class TestPartyChangeMateriality:
    @pytest.mark.parametrize("event_type, changes, expected", [
        ("PARTY_CONTROL_CHANGE", {}, True),
        ("PARTY_RISK_RATING_CHANGED", {}, True),
        ("PARTY_JURISDICTION_CHANGED", {}, True),
        ("PARTY_STATUS_CHANGED", {"newStatus": "suspended"}, True),
        ("PARTY_STATUS_CHANGED", {"newStatus": "TERMINATED"}, True),
        ("PARTY_STATUS_CHANGED", {"newStatus": "ACTIVE"}, False),
        ("PARTY_ADDRESS_CHANGED", {}, False),
    ])
    def test_requires_approval(self, event_type, changes, expected):
        assert requires_approval(event_type, changes) is expected


class TestSolutionCreatedConsumer:
    def test_submits_and_acks(self, consumer, bus, solution_template):
        bus.publish("solution.created", "sol-5", {
            "solutionId": "sol-5", "solutionName": "Gold Savings", "pricingVariance": 15,
            "createdBy": "product-svc", "tenantId": "t1",
        })
        stats = consumer.poll_once()
        assert stats["received"] == 1
        assert stats["submitted"] == 1

        subject = WorkflowSubject.query.one()
        assert subject.workflow_instance_id == "solution-approval-sol-5"
        assert subject.state == "PENDING_APPROVAL"
        assert subject.initiated_by == "product-svc"
        assert subject.entity_metadata["tenantTier"] == "STANDARD"
        assert bus.pending_count("solution.created", "workflow-service") == 0

    def test_redelivered_event_is_duplicate(self, consumer, bus, solution_template):
        event = {"solutionId": "sol-5", "pricingVariance": 15}
        bus.publish("solution.created", "sol-5", event)
        bus.publish("solution.created", "sol-5", event)
        stats = consumer.poll_once()
        assert (stats["submitted"], stats["duplicates"]) == (1, 1)
        assert WorkflowSubject.query.count() == 1

    def test_malformed_dropped(self, consumer, bus, solution_template):
        bus.publish("solution.created", None, {"solutionName": "no id"})
        stats = consumer.poll_once()
        assert stats["dropped"] == 1
        assert bus.pending_count("solution.created", "workflow-service") == 0
        assert WorkflowSubject.query.count() == 0

    def test_missing_template_retried_then_dropped(self, consumer, bus):
        bus.publish("solution.created", "sol-5", {"solutionId": "sol-5"})
        for _ in range(MAX_DELIVERY_ATTEMPTS - 1):
            stats = consumer.poll_once()
            assert stats["failed"] == 1
            assert bus.pending_count("solution.created", "workflow-service") == 1
        assert consumer.poll_once()["dropped"] == 1
        assert bus.pending_count("solution.created", "workflow-service") == 0

    def test_recovers_once_template_is_published(self, consumer, bus, make_template,
                                                 publish_template):
        bus.publish("solution.created", "sol-5", {"solutionId": "sol-5", "pricingVariance": 3})
        assert consumer.poll_once()["failed"] == 1
        publish_template(make_template())
        assert consumer.poll_once()["submitted"] == 1

    def test_poll_job_uses_cached_consumer(self, app, bus, solution_template):
        bus.publish("solution.created", "sol-5", {"solutionId": "sol-5", "pricingVariance": 3})
        assert poll_inbound_events(app)["submitted"] == 1
        assert EventConsumer.from_app(app) is app.extensions["event_consumer"]


class TestPartyChangeConsumer:
    def test_material_change(self, consumer, bus, party_template):
        bus.publish("party.changes", "p-1", {
            "eventId": "evt-1", "eventType": "PARTY_CONTROL_CHANGE", "partyId": "p-1",
            "sourceSystem": "CORE", "changes": {"controller": "new"},
        })
        assert consumer.poll_once()["submitted"] == 1

        subject = WorkflowSubject.query.one()
        assert subject.workflow_instance_id == "party-change-p-1-evt-1"
        assert subject.entity_type == "PARTY_CHANGE"
        assert subject.priority == "HIGH"
        assert subject.entity_metadata["changeSeverity"] == "HIGH"
        assert subject.approval_plan["approver_roles"] == ["KYC_ANALYST", "COMPLIANCE_OFFICER"]

    def test_immaterial_change_ignored(self, consumer, bus, party_template):
        bus.publish("party.changes", "p-1", {"eventType": "PARTY_ADDRESS_CHANGED", "partyId": "p-1"})
        bus.publish("party.changes", "p-1", {"eventType": "PARTY_STATUS_CHANGED", "partyId": "p-1",
                                             "changes": {"newStatus": "ACTIVE"}})
        stats = consumer.poll_once()
        assert stats["ignored"] == 2
        assert WorkflowSubject.query.count() == 0
        assert bus.pending_count("party.changes", "workflow-service") == 0

    def test_instance_id_without_event_id(self, orchestrator, party_template):
        res = handle_party_change(orchestrator, {"eventType": "party_lei_changed", "partyId": "p-2"})
        assert res["workflow_instance_id"] == "party-change-p-2-PARTY_LEI_CHANGED"
        subject = WorkflowSubject.query.one()
        assert subject.priority == "MEDIUM"
        assert subject.entity_data["sourceSystem"] == "UNKNOWN"

    def test_party_approval_syncs(self, orchestrator, consumer, bus, party_template, http):
        bus.publish("party.changes", "p-1", {
            "eventId": "evt-9", "eventType": "PARTY_RISK_RATING_CHANGED", "partyId": "p-1",
            "sourceSystem": "CORE",
        })
        consumer.poll_once()
        wid = WorkflowSubject.query.one().workflow_id
        assert orchestrator.approve(wid, "kyc-1")["state"] == "COMPLETED"
        call = http.calls_to("/api/v1/parties/sync")[0]
        assert call["json"]["sourceId"] == "p-1"
        assert call["json"]["changeEvent"] == "PARTY_RISK_RATING_CHANGED"
