"""Tests for the Action Audit Store."""

from datetime import datetime

import pytest

from action_pipeline.audit.store import ActionAuditStore
from action_pipeline.models.action import ActionStatus, ProposedAction
from action_pipeline.models.results import (
    ActionRunRecord,
    PipelineRunRecord,
    PipelineState,
    RunInconsistency,
)


def _make_record(
    run_id: str,
    action_id: str = "act_1",
    opportunity_id: str = "opp_1",
    status: ActionStatus = ActionStatus.COMPLETED,
    inconsistent: bool = False,
) -> PipelineRunRecord:
    action = ProposedAction(
        id=action_id, type="EMAIL", opportunity_id=opportunity_id, status=status,
    )
    state = PipelineState.COMPLETED if status == ActionStatus.COMPLETED else PipelineState.CANCELLED
    inconsistencies = []
    if inconsistent:
        inconsistencies.append(RunInconsistency(
            action_id=action_id,
            sub_action_id="sub_call",
            sub_action_type="CALL",
            created_record_ids=["call_1"],
            description="Sub-action sub_call executed before main action was cancelled",
        ))
    return PipelineRunRecord(
        id=run_id,
        action=action,
        main=ActionRunRecord(action_id=action_id, action_type="EMAIL", status=status, state=state),
        inconsistencies=inconsistencies,
        started_at=datetime(2025, 3, 10, 12, 0, 0),
        finished_at=datetime(2025, 3, 10, 12, 0, 5),
    )


@pytest.fixture
def audit():
    store = ActionAuditStore(db_path=":memory:")
    yield store
    store.close()


class TestActionAuditStore:
    def test_append_and_retrieve(self, audit):
        signed = audit.append(_make_record("run_1"))
        assert signed.signature
        assert signed.prior_record_hash is None

        retrieved = audit.get_by_id("run_1")
        assert retrieved.signature == signed.signature
        assert retrieved.main.status == ActionStatus.COMPLETED

    def test_records_are_chained(self, audit):
        first = audit.append(_make_record("run_1"))
        second = audit.append(_make_record("run_2"))
        assert second.prior_record_hash == first.signature
        assert audit.verify_chain_integrity()

    def test_tampering_is_detected(self, audit):
        audit.append(_make_record("run_1"))
        audit.append(_make_record("run_2"))

        tampered = audit.get_by_id("run_1")
        tampered.main.error = "rewritten history"
        audit._conn.execute(
            "UPDATE pipeline_runs SET record_json = ? WHERE id = ?",
            (tampered.model_dump_json(), "run_1"),
        )
        assert not audit.verify_chain_integrity()

    def test_queries(self, audit):
        audit.append(_make_record("run_1", action_id="act_1", opportunity_id="opp_1"))
        audit.append(_make_record("run_2", action_id="act_2", opportunity_id="opp_1",
                                  status=ActionStatus.CANCELLED, inconsistent=True))
        audit.append(_make_record("run_3", action_id="act_1", opportunity_id="opp_2"))

        assert [r.id for r in audit.query_by_action("act_1")] == ["run_1", "run_3"]
        assert [r.id for r in audit.query_by_opportunity("opp_1")] == ["run_1", "run_2"]
        assert [r.id for r in audit.query_by_status("CANCELLED")] == ["run_2"]
        assert [r.id for r in audit.query_inconsistent()] == ["run_2"]
        assert [r.id for r in audit.query_recent(limit=2)] == ["run_2", "run_3"]
        assert audit.count() == 3

    def test_missing_run(self, audit):
        assert audit.get_by_id("run_ghost") is None
