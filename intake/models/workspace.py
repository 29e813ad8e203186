"""
Access-gate collaborator models: Company, User, Workspace, WorkspaceCollaborator.

These tables are provisioned by the identity/company services; this service
only reads them to resolve who owns a workspace and what the caller may do.
"""

from datetime import datetime, timezone

from intake.models import db

USER_ROLES = frozenset({"super_admin", "company_admin", "member", "viewer"})


class Company(db.Model):
    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Company {self.id} {self.name}>"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    role_name = db.Column(db.String(30), nullable=False, default="member")  # super_admin, company_admin, member, viewer
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<User {self.id} {self.email} [{self.role_name}]>"


class Workspace(db.Model):
    """A business/workspace whose questionnaire is being answered."""

    __tablename__ = "workspaces"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    purpose = db.Column(db.Text, default="")
    city = db.Column(db.String(100), default="")
    country = db.Column(db.String(100), default="")
    upload_decision_made = db.Column(db.Boolean, default=False)
    upload_decision = db.Column(db.String(50), nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    owner = db.relationship("User", foreign_keys=[owner_id])
    collaborators = db.relationship(
        "WorkspaceCollaborator", backref="workspace", cascade="all, delete-orphan", lazy="dynamic",
    )

    def has_collaborator(self, user_id: int) -> bool:
        return self.collaborators.filter_by(user_id=user_id).first() is not None

    def to_info_dict(self):
        """Summary block embedded in progress responses."""
        return {
            "id": self.id,
            "name": self.name,
            "purpose": self.purpose,
            "location": {
                "city": self.city or "",
                "country": self.country or "",
                "display": ", ".join(p for p in (self.city, self.country) if p),
            },
            "upload_decision_made": bool(self.upload_decision_made),
            "upload_decision": self.upload_decision,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Workspace {self.id} owner={self.owner_id}>"


class WorkspaceCollaborator(db.Model):
    __tablename__ = "workspace_collaborators"

    id = db.Column(db.Integer, primary_key=True)
    workspace_id = db.Column(
        db.Integer, db.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    added_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("workspace_id", "user_id", name="uq_workspace_collaborator"),
    )
