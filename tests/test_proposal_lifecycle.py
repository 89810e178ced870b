"""
Proposal lifecycle unit tests.

Tests cover:
  - Review rounds: empty roster, send/decide aggregation, resend after edit
  - send/resend error precedence per state
  - edit_content timestamps (updated_at vs last_sent_at)
  - recompute_status idempotency and stickiness of FINAL_APPROVED
  - Soft delete and attachment forwarding
  - Read projections
"""
from datetime import timezone

import pytest

from approval_engine.core.exceptions import (
    AlreadySentError,
    EmptyRosterError,
    FrozenPositionError,
    NoChangesError,
    NotFoundError,
    PermissionDenied,
    TerminalStateError,
    ValidationError,
    WrongStateError,
)
from approval_engine.models import db
from approval_engine.models.approval import Proposal
from approval_engine.models.attachment import Attachment
from approval_engine.models.project import Project
from approval_engine.services import attachments, decision_ledger, proposal_lifecycle
from approval_engine.services.attachments import STORE_EXTENSION_KEY


def _aware(value):
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ═════════════════════════════════════════════════════════════════════════
# REVIEW ROUNDS
# ═════════════════════════════════════════════════════════════════════════

class TestReviewRound:
    def test_send_without_approvers_fails(self, make_proposal, developer):
        p = make_proposal()
        assert p["status"] == "DRAFT"
        with pytest.raises(EmptyRosterError):
            proposal_lifecycle.send(p["id"], actor_id=developer.id)

    def test_send_then_partial_approval_then_rejection(
        self, make_proposal, developer, approver_a, approver_b, approver_of,
    ):
        p = make_proposal([approver_a, approver_b])
        sent = proposal_lifecycle.send(p["id"], actor_id=developer.id)
        assert sent["status"] == "UNDER_REVIEW"
        assert sent["last_sent_at"] is not None

        r1 = decision_ledger.record_decision(approver_of(sent, approver_a), "", "APPROVED", actor_id=approver_a.id)
        assert r1["proposal_status"] == "UNDER_REVIEW"

        r2 = decision_ledger.record_decision(approver_of(sent, approver_b), "", "REJECTED", actor_id=approver_b.id)
        assert r2["proposal_status"] == "FINAL_REJECTED"

    def test_resend_requires_edit(self, make_proposal, developer, approver_a, approver_b, approver_of):
        p = make_proposal([approver_a, approver_b], send=True)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "APPROVED", actor_id=approver_a.id)
        decision_ledger.record_decision(approver_of(p, approver_b), "", "REJECTED", actor_id=approver_b.id)

        with pytest.raises(NoChangesError):
            proposal_lifecycle.resend(p["id"], actor_id=developer.id)

        edited = proposal_lifecycle.edit_content(p["id"], content="v2 with fixes", actor_id=developer.id)
        assert edited["status"] == "FINAL_REJECTED"
        assert edited["changed_since_sent"] is True

        resent = proposal_lifecycle.resend(p["id"], actor_id=developer.id)
        assert resent["status"] == "UNDER_REVIEW"
        assert resent["changed_since_sent"] is False

    def test_second_round_completes(self, make_proposal, developer, approver_a, approver_b, approver_of):
        p = make_proposal([approver_a, approver_b], send=True)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "APPROVED", actor_id=approver_a.id)
        decision_ledger.record_decision(approver_of(p, approver_b), "", "REJECTED", actor_id=approver_b.id)
        proposal_lifecycle.edit_content(p["id"], content="v2", actor_id=developer.id)
        proposal_lifecycle.resend(p["id"], actor_id=developer.id)

        # old rejection still blocks approval until B decides again
        assert proposal_lifecycle.recompute_status(p["id"]) == "UNDER_REVIEW"
        result = decision_ledger.record_decision(approver_of(p, approver_b), "", "APPROVED", actor_id=approver_b.id)
        assert result["proposal_status"] == "FINAL_APPROVED"


# ═════════════════════════════════════════════════════════════════════════
# SEND / RESEND
# ═════════════════════════════════════════════════════════════════════════

class TestSend:
    def test_send_twice_is_already_sent(self, make_proposal, developer, approver_a):
        p = make_proposal([approver_a], send=True)
        with pytest.raises(AlreadySentError):
            proposal_lifecycle.send(p["id"], actor_id=developer.id)

    def test_send_final_approved_is_already_sent(self, make_proposal, developer, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "APPROVED", actor_id=approver_a.id)
        with pytest.raises(AlreadySentError):
            proposal_lifecycle.send(p["id"], actor_id=developer.id)

    def test_send_final_rejected_points_to_resend(self, make_proposal, developer, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "REJECTED", actor_id=approver_a.id)
        with pytest.raises(WrongStateError) as exc:
            proposal_lifecycle.send(p["id"], actor_id=developer.id)
        assert "resend" in str(exc.value)

    def test_send_stamps_last_sent_at_after_updated_at(self, make_proposal, developer, approver_a):
        p = make_proposal([approver_a], send=True)
        proposal = db.session.get(Proposal, p["id"])
        assert _aware(proposal.last_sent_at) >= _aware(proposal.updated_at)

    def test_only_creator_or_admin_may_send(self, make_proposal, admin, approver_a):
        p = make_proposal([approver_a])
        with pytest.raises(PermissionDenied):
            proposal_lifecycle.send(p["id"], actor_id=approver_a.id)
        assert proposal_lifecycle.send(p["id"], actor_id=admin.id)["status"] == "UNDER_REVIEW"

    def test_unknown_actor(self, make_proposal, approver_a):
        p = make_proposal([approver_a])
        with pytest.raises(PermissionDenied):
            proposal_lifecycle.send(p["id"], actor_id=None)


class TestResend:
    def test_never_sent(self, make_proposal, developer, approver_a):
        p = make_proposal([approver_a])
        with pytest.raises(WrongStateError):
            proposal_lifecycle.resend(p["id"], actor_id=developer.id)

    def test_under_review_with_edits_is_wrong_state(self, make_proposal, developer, approver_a):
        p = make_proposal([approver_a], send=True)
        proposal_lifecycle.edit_content(p["id"], content="tweak", actor_id=developer.id)
        with pytest.raises(WrongStateError):
            proposal_lifecycle.resend(p["id"], actor_id=developer.id)

    def test_under_review_without_edits_is_no_changes(self, make_proposal, developer, approver_a):
        p = make_proposal([approver_a], send=True)
        with pytest.raises(NoChangesError):
            proposal_lifecycle.resend(p["id"], actor_id=developer.id)

    def test_resend_moves_last_sent_at(self, make_proposal, developer, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        first_sent = _aware(db.session.get(Proposal, p["id"]).last_sent_at)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "REJECTED", actor_id=approver_a.id)
        proposal_lifecycle.edit_content(p["id"], title="Homepage mockup v2", actor_id=developer.id)
        proposal_lifecycle.resend(p["id"], actor_id=developer.id)
        assert _aware(db.session.get(Proposal, p["id"]).last_sent_at) > first_sent


# ═════════════════════════════════════════════════════════════════════════
# EDIT
# ═════════════════════════════════════════════════════════════════════════

class TestEditContent:
    def test_edit_never_changes_status(self, make_proposal, developer, approver_a):
        p = make_proposal([approver_a], send=True)
        edited = proposal_lifecycle.edit_content(p["id"], content="new", actor_id=developer.id)
        assert edited["status"] == "UNDER_REVIEW"
        assert edited["content"] == "new"

    def test_edit_moves_updated_at_past_last_sent_at(self, make_proposal, developer, approver_a):
        p = make_proposal([approver_a], send=True)
        proposal_lifecycle.edit_content(p["id"], content="new", actor_id=developer.id)
        proposal = db.session.get(Proposal, p["id"])
        assert _aware(proposal.updated_at) > _aware(proposal.last_sent_at)

    def test_identical_edit_is_not_a_change(self, make_proposal, developer, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "REJECTED", actor_id=approver_a.id)
        proposal_lifecycle.edit_content(p["id"], title=p["title"], content=p["content"], actor_id=developer.id)
        with pytest.raises(NoChangesError):
            proposal_lifecycle.resend(p["id"], actor_id=developer.id)

    def test_status_change_does_not_touch_updated_at(self, make_proposal, developer, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        before = _aware(db.session.get(Proposal, p["id"]).updated_at)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "REJECTED", actor_id=approver_a.id)
        assert _aware(db.session.get(Proposal, p["id"]).updated_at) == before

    def test_blank_title_rejected(self, make_proposal, developer):
        p = make_proposal()
        with pytest.raises(ValidationError):
            proposal_lifecycle.edit_content(p["id"], title="   ", actor_id=developer.id)

    def test_final_approved_is_frozen(self, make_proposal, developer, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "APPROVED", actor_id=approver_a.id)
        with pytest.raises(TerminalStateError):
            proposal_lifecycle.edit_content(p["id"], content="late change", actor_id=developer.id)


# ═════════════════════════════════════════════════════════════════════════
# RECOMPUTE
# ═════════════════════════════════════════════════════════════════════════

class TestRecomputeStatus:
    def test_idempotent(self, make_proposal, approver_a, approver_b):
        p = make_proposal([approver_a, approver_b], send=True)
        assert proposal_lifecycle.recompute_status(p["id"]) == "UNDER_REVIEW"
        assert proposal_lifecycle.recompute_status(p["id"]) == "UNDER_REVIEW"

    def test_unsent_is_draft(self, make_proposal, approver_a):
        p = make_proposal([approver_a])
        assert proposal_lifecycle.recompute_status(p["id"]) == "DRAFT"

    def test_final_approved_is_sticky(self, make_proposal, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "APPROVED", actor_id=approver_a.id)
        assert proposal_lifecycle.recompute_status(p["id"]) == "FINAL_APPROVED"

    def test_aggregation_law(self, make_proposal, approver_a, approver_b, approver_c, approver_of):
        p = make_proposal([approver_a, approver_b, approver_c], send=True)
        for user in (approver_a, approver_b):
            r = decision_ledger.record_decision(approver_of(p, user), "", "APPROVED", actor_id=user.id)
            assert r["proposal_status"] == "UNDER_REVIEW"
        r = decision_ledger.record_decision(approver_of(p, approver_c), "", "APPROVED", actor_id=approver_c.id)
        assert r["proposal_status"] == "FINAL_APPROVED"


# ═════════════════════════════════════════════════════════════════════════
# CREATE / DELETE / READ
# ═════════════════════════════════════════════════════════════════════════

class TestCreateProposal:
    def test_client_cannot_create(self, stages, approver_a):
        with pytest.raises(PermissionDenied):
            proposal_lifecycle.create_proposal(stages[0].id, "X", "", actor_id=approver_a.id)

    def test_title_required(self, stages, developer):
        with pytest.raises(ValidationError):
            proposal_lifecycle.create_proposal(stages[0].id, "  ", "", actor_id=developer.id)

    def test_unknown_stage(self, developer, project):
        with pytest.raises(NotFoundError):
            proposal_lifecycle.create_proposal(9999, "X", "", actor_id=developer.id)

    def test_completed_stage_is_frozen(self, project, stages, developer):
        proj = db.session.get(Project, project.id)
        proj.current_stage_position = 2
        db.session.commit()
        with pytest.raises(FrozenPositionError):
            proposal_lifecycle.create_proposal(stages[0].id, "Late", "", actor_id=developer.id)


class TestDeleteProposal:
    def test_soft_delete_hides_proposal(self, make_proposal, developer, stages):
        p = make_proposal()
        proposal_lifecycle.delete_proposal(p["id"], actor_id=developer.id)
        assert db.session.get(Proposal, p["id"]).deleted_at is not None
        with pytest.raises(NotFoundError):
            proposal_lifecycle.get_proposal(p["id"])
        assert proposal_lifecycle.list_stage_proposals(stages[0].id) == []

    def test_under_review_can_be_deleted(self, make_proposal, developer, approver_a):
        p = make_proposal([approver_a], send=True)
        proposal_lifecycle.delete_proposal(p["id"], actor_id=developer.id)
        assert db.session.get(Proposal, p["id"]).is_deleted

    def test_final_approved_cannot_be_deleted(self, make_proposal, developer, approver_a, approver_of):
        p = make_proposal([approver_a], send=True)
        decision_ledger.record_decision(approver_of(p, approver_a), "", "APPROVED", actor_id=approver_a.id)
        with pytest.raises(TerminalStateError):
            proposal_lifecycle.delete_proposal(p["id"], actor_id=developer.id)

    def test_delete_forwards_attachment_deletes(self, app, make_proposal, developer, approver_a, approver_of):
        forwarded = []

        class Store:
            def delete(self, reference):
                forwarded.append(reference)

        previous = app.extensions[STORE_EXTENSION_KEY]
        app.extensions[STORE_EXTENSION_KEY] = Store()
        try:
            p = make_proposal([approver_a], send=True)
            attachments.add_attachment("proposal", p["id"], kind="file",
                                       reference="s3://bucket/mock.png", actor_id=developer.id)
            d = decision_ledger.record_decision(approver_of(p, approver_a), "see notes", "REJECTED",
                                                actor_id=approver_a.id)
            attachments.add_attachment("decision", d["id"], kind="link",
                                       reference="https://notes.example/1", actor_id=approver_a.id)

            proposal_lifecycle.delete_proposal(p["id"], actor_id=developer.id)
        finally:
            app.extensions[STORE_EXTENSION_KEY] = previous

        assert forwarded == ["s3://bucket/mock.png", "https://notes.example/1"]
        assert Attachment.query.count() == 0

    def test_store_failure_does_not_undo_delete(self, app, make_proposal, developer):
        class BrokenStore:
            def delete(self, reference):
                raise OSError("store offline")

        previous = app.extensions[STORE_EXTENSION_KEY]
        app.extensions[STORE_EXTENSION_KEY] = BrokenStore()
        try:
            p = make_proposal()
            attachments.add_attachment("proposal", p["id"], kind="file",
                                       reference="s3://bucket/a.pdf", actor_id=developer.id)
            proposal_lifecycle.delete_proposal(p["id"], actor_id=developer.id)
        finally:
            app.extensions[STORE_EXTENSION_KEY] = previous

        assert db.session.get(Proposal, p["id"]).is_deleted


class TestReadProjection:
    def test_detail_includes_roster_and_flags(self, make_proposal, developer, approver_a, approver_b):
        p = make_proposal([approver_a, approver_b])
        assert p["has_attachments"] is False
        assert p["changed_since_sent"] is False
        assert p["approval_summary"] == {"total": 2, "approved": 0, "rejected": 0, "waiting": 2}
        assert [a["status"] for a in p["approvers"]] == ["NOT_RESPONDED", "NOT_RESPONDED"]
        assert p["creator"]["id"] == developer.id

        attachments.add_attachment("proposal", p["id"], kind="link",
                                   reference="https://figma.example/x", actor_id=developer.id)
        assert proposal_lifecycle.get_proposal(p["id"])["has_attachments"] is True

    def test_stage_listing_in_creation_order(self, make_proposal, stages):
        first = make_proposal(title="First")
        second = make_proposal(title="Second")
        listed = proposal_lifecycle.list_stage_proposals(stages[0].id)
        assert [p["id"] for p in listed] == [first["id"], second["id"]]
