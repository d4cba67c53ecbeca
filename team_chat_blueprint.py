# team_chat_blueprint.py
from datetime import datetime, timedelta

from flask import Blueprint, Response, current_app, request
from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError

from chat_events import SSE_HEADERS, EventStream, broker
from errors import BadRequestError, ForbiddenError, NotFoundError, ok
from models import ChatNotification, Conversation, Message, User, db
from security import current_user, login_required

team_chat_bp = Blueprint("team_chat_bp", __name__)

MAX_MESSAGE_LENGTH = 5000
MESSAGES_PER_PAGE = 50
MAX_MESSAGES_PER_PAGE = 100
DEFAULT_VANISHING_HOURS = 24
MIN_VANISHING_HOURS = 1
MAX_VANISHING_HOURS = 168
PREVIEW_LENGTH = 100


# ── HELPERS ──────────────────────────────────────────────────────────────
def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _positive_int(value, field):
    if isinstance(value, bool):
        raise BadRequestError(f"{field} must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise BadRequestError(f"{field} must be a positive integer")
    if number < 1:
        raise BadRequestError(f"{field} must be a positive integer")
    return number


def _not_expired(now=None):
    now = now or datetime.utcnow()
    return or_(Message.expires_at.is_(None), Message.expires_at > now)


def teammate_ids(user: User):
    if user.team_id is None:
        return []
    rows = (db.session.query(User.id)
            .filter(User.team_id == user.team_id, User.id != user.id)
            .all())
    return [r[0] for r in rows]


def get_conversation_for(conversation_id: int, user_id: int) -> Conversation:
    conv = (Conversation.query
            .filter(Conversation.id == conversation_id,
                    or_(Conversation.participant_one_id == user_id,
                        Conversation.participant_two_id == user_id))
            .first())
    if conv is None:
        raise NotFoundError("Conversation not found")
    return conv


def get_or_create_conversation(user: User, participant_id: int):
    if user.id == participant_id:
        raise BadRequestError("Cannot create a conversation with yourself")
    other = db.session.get(User, participant_id)
    if other is None or user.team_id is None or other.team_id != user.team_id:
        raise ForbiddenError("Can only chat with team members")

    one, two = sorted((user.id, participant_id))
    conv = Conversation.query.filter_by(participant_one_id=one, participant_two_id=two).first()
    if conv is not None:
        return conv, False

    conv = Conversation(participant_one_id=one, participant_two_id=two, team_id=user.team_id,
                        vanishing_mode=True, vanishing_duration_hours=DEFAULT_VANISHING_HOURS)
    db.session.add(conv)
    try:
        db.session.commit()
    except IntegrityError:
        # the other participant opened it at the same moment
        db.session.rollback()
        conv = Conversation.query.filter_by(participant_one_id=one, participant_two_id=two).one()
        return conv, False
    return conv, True


def _unread_count(user_id: int, conversation_id: int) -> int:
    return (ChatNotification.query
            .filter_by(user_id=user_id, conversation_id=conversation_id, is_read=False)
            .count())


def conversation_details(conv: Conversation, user_id: int) -> dict:
    other = db.session.get(User, conv.other_participant_id(user_id))
    last = (Message.query
            .filter(Message.conversation_id == conv.id, _not_expired())
            .order_by(Message.id.desc())
            .first())
    data = conv.to_dict()
    data.update({
        "other_participant_id": other.id if other else None,
        "other_participant_name": other.name if other else None,
        "other_participant_email": other.email if other else None,
        "unread_count": _unread_count(user_id, conv.id),
        "last_message_preview": last.content[:PREVIEW_LENGTH] if last else None,
    })
    return data


# ── CONVERSATIONS ────────────────────────────────────────────────────────
@team_chat_bp.route("/conversations", methods=["GET"])
@login_required
def list_conversations():
    user = current_user()
    convs = (Conversation.query
             .filter(or_(Conversation.participant_one_id == user.id,
                         Conversation.participant_two_id == user.id))
             .order_by(Conversation.last_message_at.is_(None),
                       Conversation.last_message_at.desc(),
                       Conversation.created_at.desc())
             .all())
    return ok([conversation_details(c, user.id) for c in convs])


@team_chat_bp.route("/conversations", methods=["POST"])
@login_required
def create_conversation():
    user = current_user()
    participant_id = _positive_int(_body().get("participant_id"), "participant_id")
    conv, created = get_or_create_conversation(user, participant_id)
    if created:
        current_app.logger.info("Conversation %s opened between %s and %s", conv.id, user.id, participant_id)
    return ok({**conversation_details(conv, user.id), "created": created}, status=201 if created else 200)


@team_chat_bp.route("/conversations/<int:conversation_id>", methods=["GET"])
@login_required
def get_conversation(conversation_id):
    user = current_user()
    conv = get_conversation_for(conversation_id, user.id)
    return ok(conversation_details(conv, user.id))


# ── MESSAGES ─────────────────────────────────────────────────────────────
@team_chat_bp.route("/conversations/<int:conversation_id>/messages", methods=["GET"])
@login_required
def list_messages(conversation_id):
    user = current_user()
    get_conversation_for(conversation_id, user.id)

    limit = request.args.get("limit")
    limit = MESSAGES_PER_PAGE if limit in (None, "") else _positive_int(limit, "limit")
    limit = min(limit, MAX_MESSAGES_PER_PAGE)
    before = request.args.get("before")

    q = Message.query.filter(Message.conversation_id == conversation_id, _not_expired())
    if before not in (None, ""):
        q = q.filter(Message.id < _positive_int(before, "before"))
    rows = q.order_by(Message.id.desc()).limit(limit + 1).all()

    has_more = len(rows) > limit
    rows = list(reversed(rows[:limit]))
    return ok({
        "messages": [m.to_dict() for m in rows],
        "has_more": has_more,
        "next_cursor": rows[0].id if has_more and rows else None,
    })


@team_chat_bp.route("/conversations/<int:conversation_id>/messages", methods=["POST"])
@login_required
def send_message(conversation_id):
    user = current_user()
    data = _body()
    content = data.get("content")
    content = content.strip() if isinstance(content, str) else ""
    if not content:
        raise BadRequestError("Message content cannot be empty")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise BadRequestError(f"Message content cannot exceed {MAX_MESSAGE_LENGTH} characters")

    conv = get_conversation_for(conversation_id, user.id)

    reply_to_id = data.get("reply_to_message_id")
    if reply_to_id is not None:
        reply_to_id = _positive_int(reply_to_id, "reply_to_message_id")
        reply_to = db.session.get(Message, reply_to_id)
        if reply_to is None or reply_to.conversation_id != conv.id:
            raise BadRequestError("Invalid reply message")

    now = datetime.utcnow()
    expires_at = now + timedelta(hours=conv.vanishing_duration_hours) if conv.vanishing_mode else None
    msg = Message(conversation_id=conv.id, sender_id=user.id, content=content,
                  is_vanishing=bool(conv.vanishing_mode), expires_at=expires_at,
                  reply_to_message_id=reply_to_id, created_at=now, updated_at=now)
    db.session.add(msg)
    conv.last_message_at = now
    db.session.flush()

    recipient_id = conv.other_participant_id(user.id)
    db.session.add(ChatNotification(user_id=recipient_id, message_id=msg.id, conversation_id=conv.id))
    db.session.commit()

    payload = msg.to_dict()
    broker.publish(recipient_id, "new_message", {"conversation_id": conv.id, "message": payload})
    return ok(payload, status=201)


@team_chat_bp.route("/messages/<int:message_id>", methods=["DELETE"])
@login_required
def delete_message(message_id):
    user = current_user()
    msg = db.session.get(Message, message_id)
    if msg is None:
        raise NotFoundError("Message not found")
    if msg.sender_id != user.id:
        raise ForbiddenError("You can only delete your own messages")

    conv = db.session.get(Conversation, msg.conversation_id)
    db.session.delete(msg)
    db.session.commit()

    broker.publish(conv.other_participant_id(user.id), "message_deleted",
                   {"conversation_id": conv.id, "message_id": message_id})
    return ok(None, message="Message deleted")


# ── CONVERSATION ACTIONS ─────────────────────────────────────────────────
@team_chat_bp.route("/conversations/<int:conversation_id>/vanishing", methods=["PUT"])
@login_required
def update_vanishing_mode(conversation_id):
    user = current_user()
    data = _body()
    mode = data.get("vanishing_mode")
    if not isinstance(mode, bool):
        raise BadRequestError("vanishing_mode must be a boolean")

    conv = get_conversation_for(conversation_id, user.id)

    hours = data.get("vanishing_duration_hours")
    if hours is not None:
        if isinstance(hours, bool) or not isinstance(hours, int) \
                or not MIN_VANISHING_HOURS <= hours <= MAX_VANISHING_HOURS:
            raise BadRequestError("Vanishing duration must be between 1 and 168 hours (1 week)")
        conv.vanishing_duration_hours = hours
    conv.vanishing_mode = mode
    db.session.commit()

    broker.publish_many(conv.participant_ids, "vanishing_mode_changed", {
        "conversation_id": conv.id,
        "vanishing_mode": bool(conv.vanishing_mode),
        "vanishing_duration_hours": conv.vanishing_duration_hours,
        "changed_by_id": user.id,
    })
    return ok(conversation_details(conv, user.id))


@team_chat_bp.route("/conversations/<int:conversation_id>/read", methods=["POST"])
@login_required
def mark_as_read(conversation_id):
    user = current_user()
    up_to = _positive_int(_body().get("up_to_message_id"), "up_to_message_id")
    conv = get_conversation_for(conversation_id, user.id)

    (Message.query
     .filter(Message.conversation_id == conv.id,
             Message.sender_id != user.id,
             Message.id <= up_to,
             Message.read_at.is_(None))
     .update({Message.read_at: datetime.utcnow()}, synchronize_session=False))

    marked = (ChatNotification.query
              .filter(ChatNotification.user_id == user.id,
                      ChatNotification.conversation_id == conv.id,
                      ChatNotification.message_id <= up_to,
                      ChatNotification.is_read.is_(False))
              .update({ChatNotification.is_read: True}, synchronize_session=False))
    db.session.commit()

    broker.publish(conv.other_participant_id(user.id), "message_read", {
        "conversation_id": conv.id,
        "reader_id": user.id,
        "read_up_to_message_id": up_to,
    })
    return ok({"marked_count": marked})


@team_chat_bp.route("/conversations/<int:conversation_id>/typing", methods=["POST"])
@login_required
def typing_indicator(conversation_id):
    user = current_user()
    is_typing = _body().get("is_typing")
    if not isinstance(is_typing, bool):
        raise BadRequestError("is_typing must be a boolean")
    conv = get_conversation_for(conversation_id, user.id)
    broker.publish(conv.other_participant_id(user.id), "typing", {
        "conversation_id": conv.id,
        "user_id": user.id,
        "user_name": user.name,
        "is_typing": is_typing,
    })
    return ok(None)


# ── NOTIFICATIONS / MEMBERS ──────────────────────────────────────────────
@team_chat_bp.route("/notifications/unread", methods=["GET"])
@login_required
def unread_notifications():
    user = current_user()
    rows = (db.session.query(ChatNotification.conversation_id,
                             func.count(ChatNotification.id),
                             Conversation)
            .join(Conversation, Conversation.id == ChatNotification.conversation_id)
            .filter(ChatNotification.user_id == user.id, ChatNotification.is_read.is_(False))
            .group_by(ChatNotification.conversation_id, Conversation.id)
            .all())

    summary = []
    for conversation_id, count, conv in rows:
        other = db.session.get(User, conv.other_participant_id(user.id))
        summary.append({
            "conversation_id": conversation_id,
            "unread_count": count,
            "last_message_at": conv.last_message_at.isoformat() if conv.last_message_at else None,
            "other_participant_name": other.name if other else None,
        })
    summary.sort(key=lambda s: s["last_message_at"] or "", reverse=True)
    return ok({"total_unread": sum(s["unread_count"] for s in summary), "conversations": summary})


@team_chat_bp.route("/members", methods=["GET"])
@login_required
def team_members():
    user = current_user()
    if user.team_id is None:
        return ok([])
    members = (User.query
               .filter(and_(User.team_id == user.team_id, User.id != user.id))
               .order_by(User.name)
               .all())
    return ok([{
        "id": m.id,
        "name": m.name,
        "email": m.email,
        "role": m.role,
        "is_online": broker.is_online(m.id),
    } for m in members])


# ── EVENTS (SSE) ─────────────────────────────────────────────────────────
@team_chat_bp.route("/events", methods=["GET"])
@login_required
def subscribe_to_events():
    user = current_user()
    stream = EventStream(user.id, teammate_ids(user))
    # the stream outlives the request; give the connection back now
    db.session.close()
    return Response(stream, mimetype="text/event-stream", headers=SSE_HEADERS)
