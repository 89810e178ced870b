"""Project and Stage domain models for the stage gate."""

from datetime import datetime, timezone

from approval_engine.models import db


class Project(db.Model):
    """Collaboration project with an ordered list of stages.

    ``current_stage_position`` is the project-wide pointer to the actively
    worked stage.  It only ever moves forward (see stage_gate.promote).
    """

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    current_stage_position = db.Column(
        db.Integer, nullable=False, default=1,
        comment="1-based position of the active stage; monotonically increasing",
    )
    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    stages = db.relationship(
        "Stage",
        backref="project",
        order_by="Stage.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    members = db.relationship(
        "ProjectMember",
        backref="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "current_stage_position": self.current_stage_position,
            "stage_count": len(self.stages),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.name}>"


class Stage(db.Model):
    """Ordered phase of a project.

    Positions are 1-based and dense within a project.  Uniqueness is
    maintained by the stage gate service rather than a DB constraint,
    because renumbering passes through transient duplicates mid-flush.
    """

    __tablename__ = "stages"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    position = db.Column(db.Integer, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # Soft-deleted proposals go with the stage via ON DELETE CASCADE
    proposals = db.relationship("Proposal", backref="stage", lazy="dynamic", passive_deletes=True)

    __table_args__ = (
        db.Index("ix_stages_project_position", "project_id", "position"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "position": self.position,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Stage {self.id}: #{self.position} {self.name}>"
