import logging
from datetime import datetime, timedelta
from typing import Optional

from bson import ObjectId
from fastapi import Depends, Response

from auth import get_current_user
from database import get_db, utcnow
from errors import create_error
from plans import (
    DAILY_AI_GENERATION_LIMITS,
    HOURLY_MESSAGE_LIMITS,
    MAX_CHATS,
    MAX_MESSAGES_PER_CHAT,
    UNLIMITED,
    subscription_is_active,
    user_plan,
)

logger = logging.getLogger(__name__)


def count_messages(user_id: ObjectId, role: str, since: datetime) -> int:
    """Messages of `role` across all of the user's chats since `since`."""
    rows = list(get_db()["chat"].aggregate([
        {"$match": {"user": user_id, "messages.timestamp": {"$gte": since}}},
        {"$unwind": "$messages"},
        {"$match": {"messages.timestamp": {"$gte": since}, "messages.role": role}},
        {"$count": "total"},
    ]))
    return rows[0]["total"] if rows else 0


def require_chat_access(user: dict = Depends(get_current_user)) -> dict:
    plan = user_plan(user)
    if plan != "free" and not subscription_is_active(user):
        raise create_error(
            403,
            "Your subscription is not active. Please update your payment method to continue using advanced chat features.",
        )
    return user


def _upgrade(plan: str, starter: str, pro: str, top: str) -> str:
    if plan == "free":
        return starter
    if plan == "starter":
        return pro
    return top


def check_hourly_messages(user: dict, response: Optional[Response] = None) -> None:
    plan = user_plan(user)
    limit = HOURLY_MESSAGE_LIMITS[plan]
    now = utcnow()
    sent = count_messages(user["_id"], "user", now - timedelta(hours=1))
    if sent >= limit:
        logger.info("Hourly message limit hit for user %s (%s plan)", user["_id"], plan)
        hint = _upgrade(
            plan,
            "Upgrade to Starter plan for more messages!",
            "Upgrade to Pro plan for higher limits!",
            "You have reached your hourly message limit.",
        )
        raise create_error(
            429,
            f"Rate limit exceeded. {hint} You can send {limit} messages per hour on your {plan} plan.",
        )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - sent - 1))
        response.headers["X-RateLimit-Reset"] = (now + timedelta(hours=1)).isoformat() + "Z"
        response.headers["X-RateLimit-Plan"] = plan


def check_daily_generations(user: dict, response: Optional[Response] = None) -> Optional[str]:
    """
    Returns the limit message once the daily AI generation cap is used up,
    None while generations remain. Never blocks the user's own message.
    """
    plan = user_plan(user)
    limit = DAILY_AI_GENERATION_LIMITS[plan]
    if limit == UNLIMITED:
        return None
    now = utcnow()
    generated = count_messages(user["_id"], "assistant", now - timedelta(days=1))
    if response is not None:
        response.headers["X-AI-Limit"] = str(limit)
        response.headers["X-AI-Remaining"] = str(max(0, limit - generated - 1))
        response.headers["X-AI-Reset"] = (now + timedelta(days=1)).isoformat() + "Z"
    if generated < limit:
        return None

    logger.info("Daily AI generation limit hit for user %s (%s plan)", user["_id"], plan)
    hint = _upgrade(
        plan,
        "Upgrade to Starter for more AI generations!",
        "Upgrade to Pro for higher AI limits!",
        "Daily AI generation limit reached.",
    )
    return f"AI generation limit exceeded. {hint} You can generate {limit} AI responses per day on your {plan} plan."


def enforce_message_limits(response: Response, user: dict = Depends(require_chat_access)) -> dict:
    check_hourly_messages(user, response)
    return user


def check_chat_quota(user: dict) -> None:
    plan = user_plan(user)
    limit = MAX_CHATS[plan]
    if limit == UNLIMITED:
        return
    if get_db()["chat"].count_documents({"user": user["_id"]}) >= limit:
        hint = _upgrade(
            plan,
            "Upgrade to Starter plan for more chats!",
            "Upgrade to Pro plan for more chats!",
            "Delete some old chats to create new ones.",
        )
        raise create_error(403, f"Maximum chat limit reached ({limit} chats). {hint}")


def check_chat_length(user: dict, chat: dict) -> None:
    plan = user_plan(user)
    limit = MAX_MESSAGES_PER_CHAT[plan]
    if limit != UNLIMITED and chat.get("message_count", 0) >= limit:
        raise create_error(
            403,
            f"This conversation reached the {limit} message limit of your {plan} plan. Start a new chat or upgrade.",
        )
