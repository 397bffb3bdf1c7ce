import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, ConfigDict, Field

import chat_service
from chat_limits import (
    check_chat_length,
    check_chat_quota,
    check_daily_generations,
    check_hourly_messages,
    enforce_message_limits,
    require_chat_access,
)
from database import create_document, get_db, paginate, serialize_doc, to_object_id, utcnow
from errors import create_error
from plans import user_plan
from schemas import Chat, ChatMessage, MessageRole, to_document

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

MAX_MESSAGE_LENGTH = 5000
TITLE_LENGTH = 50
AI_UNAVAILABLE = "AI response temporarily unavailable. Your message was saved, please try again in a moment."


class CreateChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = Field(None, alias="initialMessage")


class MessageRequest(BaseModel):
    message: Optional[str] = None


def chats():
    return get_db()["chat"]


def title_from(content: str) -> str:
    content = content.strip()
    if len(content) <= TITLE_LENGTH:
        return content
    return content[:TITLE_LENGTH - 3] + "..."


def validate_message(content: Optional[str]) -> str:
    if content is None or not content.strip():
        raise create_error(400, "Message cannot be empty.")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise create_error(400, f"Message too long. Maximum length is {MAX_MESSAGE_LENGTH} characters.")
    return content.strip()


def _owned_chat(chat_id: str, user: dict) -> dict:
    chat = chats().find_one({"_id": to_object_id(chat_id, "Invalid chat ID format"), "user": user["_id"]})
    if not chat:
        raise create_error(404, "Chat conversation not found")
    return chat


def _append(chat_id, role: str, content: str) -> dict:
    message = to_document(ChatMessage(role=role, content=content))
    now = utcnow()
    chats().update_one(
        {"_id": chat_id},
        {
            "$push": {"messages": message},
            "$inc": {"message_count": 1},
            "$set": {"last_activity": now, "updated_at": now},
        },
    )
    return message


async def exchange(chat: dict, user: dict, content: str, limit_message: Optional[str] = None) -> dict:
    """
    Store the user's message, ask the model, store the reply.

    With `limit_message` set the daily generation cap is used up: the
    message is kept unanswered and the model is not called.
    """
    _append(chat["_id"], MessageRole.user.value, content)
    # the title is only ever set from the first message
    chats().update_one({"_id": chat["_id"], "title": None}, {"$set": {"title": title_from(content)}})

    chat = chats().find_one({"_id": chat["_id"]})
    if limit_message:
        return {"success": False, "message": limit_message, "data": {"chat": serialize_doc(chat)}}
    context = chat["messages"][-chat_service.CONTEXT_MESSAGES:]
    try:
        reply = await chat_service.generate_response(context, plan=user_plan(user))
    except chat_service.ChatServiceError as exc:
        logger.error("AI response failed for chat %s: %s", chat["_id"], exc)
        return {"success": False, "message": AI_UNAVAILABLE, "data": {"chat": serialize_doc(chat)}}

    assistant = _append(chat["_id"], MessageRole.assistant.value, reply)
    chat = chats().find_one({"_id": chat["_id"]})
    return {
        "success": True,
        "data": {"chat": serialize_doc(chat), "response": serialize_doc(assistant)},
    }


@router.get("/test")
async def test_connection():
    try:
        status = await chat_service.test_connection()
    except chat_service.ChatServiceError as exc:
        raise create_error(500, str(exc))
    return {"success": True, "data": status}


@router.post("", status_code=201)
@router.post("/", status_code=201, include_in_schema=False)
async def create_chat(
    response: Response,
    payload: Optional[CreateChatRequest] = None,
    user: dict = Depends(require_chat_access),
):
    check_chat_quota(user)
    content = limit_message = None
    if payload is not None and payload.message is not None:
        content = validate_message(payload.message)
        check_hourly_messages(user, response)
        limit_message = check_daily_generations(user, response)

    chat_id = create_document("chat", Chat(user=user["_id"]))
    chat = chats().find_one({"_id": to_object_id(chat_id)})
    logger.info("Created chat %s for user %s", chat_id, user["_id"])
    if content is None:
        return {"success": True, "data": {"chat": serialize_doc(chat)}}
    return await exchange(chat, user, content, limit_message)


@router.get("/history")
def chat_history(page: int = 1, limit: int = 20, user: dict = Depends(require_chat_access)):
    paging = paginate(page, limit, default_limit=20)
    query = {"user": user["_id"]}
    cursor = (
        chats()
        .find(query, {"messages": 0})
        .sort("last_activity", -1)
        .skip(paging["skip"])
        .limit(paging["limit"])
    )
    items = serialize_doc(list(cursor))
    total = chats().count_documents(query)
    return {
        "success": True,
        "results": len(items),
        "totalResults": total,
        "totalPages": math.ceil(total / paging["limit"]),
        "currentPage": paging["page"],
        "data": {"chats": items},
    }


@router.delete("/clear/all")
def clear_all_chats(user: dict = Depends(require_chat_access)):
    result = chats().delete_many({"user": user["_id"]})
    logger.info("Cleared %d chats for user %s", result.deleted_count, user["_id"])
    return {"success": True, "data": {"deletedCount": result.deleted_count}}


@router.get("/{chat_id}")
def get_chat(chat_id: str, user: dict = Depends(require_chat_access)):
    return {"success": True, "data": {"chat": serialize_doc(_owned_chat(chat_id, user))}}


@router.delete("/{chat_id}")
def delete_chat(chat_id: str, user: dict = Depends(require_chat_access)):
    chat = _owned_chat(chat_id, user)
    chats().delete_one({"_id": chat["_id"]})
    return {"success": True, "message": "Chat deleted"}


@router.post("/{chat_id}/message")
async def send_message(
    chat_id: str,
    payload: MessageRequest,
    response: Response,
    user: dict = Depends(enforce_message_limits),
):
    content = validate_message(payload.message)
    chat = _owned_chat(chat_id, user)
    check_chat_length(user, chat)
    return await exchange(chat, user, content, check_daily_generations(user, response))
