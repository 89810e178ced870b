"""Row locking and optimistic retry tests."""
import pytest
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from approval_engine.core.exceptions import ConcurrencyConflictError, NotFoundError, TerminalStateError
from approval_engine.models import db
from approval_engine.models.approval import Approver, Decision, Proposal
from approval_engine.models.lifecycle_event import LifecycleEvent
from approval_engine.models.project import Project
from approval_engine.services import decision_ledger, proposal_lifecycle, stage_gate
from approval_engine.services.helpers.concurrency import get_for_update, retry_on_conflict
from approval_engine.utils.helpers import utcnow


def _require_sqlite():
    # the competing writer runs on a second connection; row locks would block it elsewhere
    if db.engine.dialect.name != "sqlite":
        pytest.skip("interleaving is simulated on SQLite only")


def _commit_competing_approval(approver_id, user_id, *, bump_version=True, proposal_status=None):
    """Commit an APPROVED decision from outside the session under test."""
    with db.engine.begin() as conn:
        conn.execute(insert(Decision).values(
            approver_id=approver_id, content="", status="APPROVED",
            decided_by=user_id, decided_at=utcnow(),
        ))
        if bump_version:
            conn.execute(
                update(Approver).where(Approver.id == approver_id)
                .values(version=Approver.version + 1, last_decided_at=utcnow())
            )
        if proposal_status:
            proposal_id = conn.execute(
                select(Approver.proposal_id).where(Approver.id == approver_id)
            ).scalar_one()
            conn.execute(
                update(Proposal).where(Proposal.id == proposal_id)
                .values(status=proposal_status, version=Proposal.version + 1)
            )


def _approved_count(approver_id):
    return db.session.execute(
        select(func.count(Decision.id))
        .where(Decision.approver_id == approver_id, Decision.status == "APPROVED")
    ).scalar_one()


class TestRetryOnConflict:
    def test_retries_once_then_succeeds(self):
        calls = []

        @retry_on_conflict
        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("version mismatch")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 2

    def test_second_conflict_becomes_conflict_error(self):
        calls = []

        @retry_on_conflict
        def always_stale():
            calls.append(1)
            raise StaleDataError("version mismatch")

        with pytest.raises(ConcurrencyConflictError) as exc:
            always_stale()
        assert len(calls) == 2
        assert exc.value.details == {"operation": "always_stale"}

    def test_domain_errors_are_not_retried(self):
        calls = []

        @retry_on_conflict
        def missing():
            calls.append(1)
            raise NotFoundError(resource="Proposal", resource_id=1)

        with pytest.raises(NotFoundError):
            missing()
        assert len(calls) == 1


class TestGetForUpdate:
    def test_loads_row(self, make_proposal):
        p = make_proposal()
        assert get_for_update(Proposal, p["id"]).title == "Homepage mockup"

    def test_soft_deleted_is_missing(self, make_proposal, developer):
        p = make_proposal()
        proposal_lifecycle.delete_proposal(p["id"], actor_id=developer.id)
        with pytest.raises(NotFoundError):
            get_for_update(Proposal, p["id"])
        assert get_for_update(Proposal, p["id"], include_deleted=True).is_deleted

    def test_stale_version_is_detected(self, make_proposal):
        p = make_proposal()
        proposal = db.session.get(Proposal, p["id"])
        # another writer bumped the version underneath us
        db.session.execute(
            update(Proposal).where(Proposal.id == p["id"]).values(version=Proposal.version + 1)
            .execution_options(synchronize_session=False)
        )
        proposal.title = "Renamed"
        with pytest.raises(StaleDataError):
            db.session.flush()
        db.session.rollback()


class TestSingleApprovedIndex:
    def test_second_approved_row_is_rejected(self, make_proposal, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        aid = approver_of(p, approver_a)
        db.session.add(Decision(approver_id=aid, status="APPROVED", decided_by=approver_a.id))
        db.session.commit()

        db.session.add(Decision(approver_id=aid, status="APPROVED", decided_by=approver_a.id))
        with pytest.raises(IntegrityError):
            db.session.flush()
        db.session.rollback()
        assert _approved_count(aid) == 1

    def test_rejections_are_not_constrained(self, make_proposal, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        aid = approver_of(p, approver_a)
        for _ in range(2):
            db.session.add(Decision(approver_id=aid, status="REJECTED", decided_by=approver_a.id))
        db.session.commit()
        assert len(db.session.get(Approver, aid).decisions) == 2


class TestConcurrentDecisions:
    def _race(self, monkeypatch, approver_id, user_id, **competing):
        """Let a competing approval commit after record_decision has passed its checks."""
        attempts = []
        original_load = decision_ledger._load_approver_for_update
        original_stamp = decision_ledger._decision_timestamp

        def load(pk):
            attempts.append(pk)
            return original_load(pk)

        def stamp(proposal, approver):
            if len(attempts) == 1:
                _commit_competing_approval(approver_id, user_id, **competing)
            return original_stamp(proposal, approver)

        monkeypatch.setattr(decision_ledger, "_load_approver_for_update", load)
        monkeypatch.setattr(decision_ledger, "_decision_timestamp", stamp)
        return attempts

    def test_stale_approver_version_is_retried_into_terminal(
        self, monkeypatch, make_proposal, approver_a, approver_b, approver_of,
    ):
        _require_sqlite()
        p = make_proposal([approver_a, approver_b], send=True)
        aid = approver_of(p, approver_a)
        attempts = self._race(monkeypatch, aid, approver_a.id)

        with pytest.raises(TerminalStateError):
            decision_ledger.record_decision(aid, "", "APPROVED", actor_id=approver_a.id)

        # first attempt lost on the version check, the retry saw the winner
        assert len(attempts) == 2
        assert _approved_count(aid) == 1
        assert LifecycleEvent.query.filter_by(event_type="DECISION_CREATED").count() == 0

    def test_unique_index_backs_the_version_check(
        self, monkeypatch, make_proposal, approver_a, approver_b, approver_of,
    ):
        _require_sqlite()
        p = make_proposal([approver_a, approver_b], send=True)
        aid = approver_of(p, approver_a)
        attempts = self._race(monkeypatch, aid, approver_a.id, bump_version=False)

        with pytest.raises(TerminalStateError):
            decision_ledger.record_decision(aid, "", "APPROVED", actor_id=approver_a.id)

        assert len(attempts) == 2
        assert _approved_count(aid) == 1

    def test_rejection_loses_to_concurrent_approval(
        self, monkeypatch, make_proposal, approver_a, approver_b, approver_of,
    ):
        _require_sqlite()
        p = make_proposal([approver_a, approver_b], send=True)
        aid = approver_of(p, approver_a)
        self._race(monkeypatch, aid, approver_a.id)

        with pytest.raises(TerminalStateError):
            decision_ledger.record_decision(aid, "No", "REJECTED", actor_id=approver_a.id)
        assert decision_ledger.approver_status(aid) == "APPROVED"
        assert [d["status"] for d in decision_ledger.list_decisions(aid)] == ["APPROVED"]


class TestPromoteDuringDecision:
    def test_promote_sees_approval_committed_during_evaluation(
        self, monkeypatch, project, developer, make_proposal, approver_a, approver_of,
    ):
        _require_sqlite()
        p = make_proposal([approver_a], send=True)
        aid = approver_of(p, approver_a)
        # the session under test already holds the proposal as UNDER_REVIEW
        assert db.session.get(Proposal, p["id"]).status == "UNDER_REVIEW"

        original = stage_gate._live_proposals

        def live_proposals(stage_id, *, for_update=False):
            if for_update:
                _commit_competing_approval(aid, approver_a.id, proposal_status="FINAL_APPROVED")
            return original(stage_id, for_update=for_update)

        monkeypatch.setattr(stage_gate, "_live_proposals", live_proposals)
        current = stage_gate.promote(project.id, actor_id=developer.id)

        assert current["current_stage_position"] == 2
        assert db.session.get(Project, project.id).current_stage_position == 2
