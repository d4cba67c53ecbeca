# models.py
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, CheckConstraint, UniqueConstraint, Index
from sqlalchemy.engine import Engine

db = SQLAlchemy()

ROLES = ("admin", "member")


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE clauses unless asked per connection
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


def _iso(value):
    return value.isoformat() if value is not None else None


# ── ADMIN ENTITIES ───────────────────────────────────────────────────────
class Team(db.Model):
    __tablename__ = "teams"
    id          = db.Column(db.Integer, primary_key=True)
    name        = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    webhook_url = db.Column(db.String(2048))
    created_by  = db.Column(db.Integer)
    created_at  = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at  = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "webhook_url": self.webhook_url,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class User(db.Model):
    __tablename__ = "users"
    id            = db.Column(db.Integer, primary_key=True)
    email         = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    name          = db.Column(db.String(255), nullable=False)
    role          = db.Column(db.Enum(*ROLES, name="user_role"), nullable=False, default="member")
    team_id       = db.Column(db.Integer, db.ForeignKey("teams.id", ondelete="SET NULL"), index=True)
    created_at    = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at    = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    team = db.relationship("Team", foreign_keys=[team_id])

    @property
    def is_admin(self):
        return self.role == "admin"

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "team_id": self.team_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Project(db.Model):
    __tablename__ = "projects"
    id          = db.Column(db.Integer, primary_key=True)
    team_id     = db.Column(db.Integer, db.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    name        = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    created_by  = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at  = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at  = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "team_id": self.team_id,
            "name": self.name,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ProjectAssignment(db.Model):
    __tablename__  = "project_assignments"
    __table_args__ = (UniqueConstraint("project_id", "user_id", name="uq_project_user"),)
    id          = db.Column(db.Integer, primary_key=True)
    project_id  = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id     = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "assigned_at": _iso(self.assigned_at),
        }


class DailyLog(db.Model):
    __tablename__ = "daily_logs"
    id                = db.Column(db.Integer, primary_key=True)
    user_id           = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id        = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    date              = db.Column(db.Date, nullable=False, index=True)
    task_description  = db.Column(db.Text, nullable=False)
    actual_time_spent = db.Column(db.String(10), nullable=False, default="0:00")
    tracked_time      = db.Column(db.String(10), nullable=False, default="0:00")
    created_at        = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at        = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "date": _iso(self.date),
            "task_description": self.task_description,
            "actual_time_spent": self.actual_time_spent,
            "tracked_time": self.tracked_time,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ── TEAM CHAT ────────────────────────────────────────────────────────────
class Conversation(db.Model):
    __tablename__  = "conversations"
    __table_args__ = (
        UniqueConstraint("participant_one_id", "participant_two_id", name="unique_conversation"),
        CheckConstraint("participant_one_id < participant_two_id", name="ordered_participants"),
    )
    id                       = db.Column(db.Integer, primary_key=True)
    participant_one_id       = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_two_id       = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id                  = db.Column(db.Integer, db.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    vanishing_mode           = db.Column(db.Boolean, default=False, nullable=False)
    vanishing_duration_hours = db.Column(db.Integer, default=24, nullable=False)
    last_message_at          = db.Column(db.DateTime, index=True)
    created_at               = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at               = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def participant_ids(self):
        return (self.participant_one_id, self.participant_two_id)

    def other_participant_id(self, user_id):
        return self.participant_two_id if self.participant_one_id == user_id else self.participant_one_id

    def to_dict(self):
        return {
            "id": self.id,
            "participant_one_id": self.participant_one_id,
            "participant_two_id": self.participant_two_id,
            "team_id": self.team_id,
            "vanishing_mode": bool(self.vanishing_mode),
            "vanishing_duration_hours": self.vanishing_duration_hours,
            "last_message_at": _iso(self.last_message_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Message(db.Model):
    __tablename__  = "messages"
    __table_args__ = (Index("idx_messages_conversation_created", "conversation_id", "created_at"),)
    id                  = db.Column(db.Integer, primary_key=True)
    conversation_id     = db.Column(db.Integer, db.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sender_id           = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content             = db.Column(db.Text, nullable=False)
    is_vanishing        = db.Column(db.Boolean, default=False, nullable=False)
    expires_at          = db.Column(db.DateTime, index=True)
    read_at             = db.Column(db.DateTime)
    reply_to_message_id = db.Column(db.Integer, db.ForeignKey("messages.id", ondelete="SET NULL"))
    created_at          = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at          = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sender   = db.relationship("User", foreign_keys=[sender_id])
    reply_to = db.relationship("Message", remote_side=[id], foreign_keys=[reply_to_message_id])

    def to_dict(self):
        data = {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender.name if self.sender else None,
            "content": self.content,
            "is_vanishing": bool(self.is_vanishing),
            "expires_at": _iso(self.expires_at),
            "read_at": _iso(self.read_at),
            "reply_to_message_id": self.reply_to_message_id,
            "reply_to": None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if self.reply_to is not None:
            data["reply_to"] = {
                "id": self.reply_to.id,
                "content": self.reply_to.content,
                "sender_name": self.reply_to.sender.name if self.reply_to.sender else None,
            }
        return data


class ChatNotification(db.Model):
    __tablename__  = "chat_notifications"
    __table_args__ = (
        UniqueConstraint("user_id", "message_id", name="uq_notification_user_message"),
        Index("idx_chat_notifications_unread", "user_id", "is_read"),
    )
    id              = db.Column(db.Integer, primary_key=True)
    user_id         = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message_id      = db.Column(db.Integer, db.ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    conversation_id = db.Column(db.Integer, db.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    is_read         = db.Column(db.Boolean, default=False, nullable=False)
    created_at      = db.Column(db.DateTime, default=datetime.utcnow)
