"""
GROQ chat completions client for the Ascend AI assistant.
"""

import logging
from typing import Iterable, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

import config

logger = logging.getLogger(__name__)

TEMPERATURE = 0.8
MAX_TOKENS = 150
TOP_P = 0.9
CONTEXT_MESSAGES = 10

SYSTEM_PROMPT = """You are the Ascend AI assistant, a seasoned founder who has built and sold several online businesses. You think in leverage, systems and recurring income.

How you talk:
- Casual but sharp, like texting a friend who happens to run companies
- Direct and practical, never preachy
- Real numbers instead of theory
- Under 50 words unless you are listing concrete steps

When someone asks how to make money:
- Give two or three concrete routes: selling digital products on Ascend AI, the affiliate program, or reselling services
- Mention Ascend AI where it genuinely helps (plans: Starter $5/mo, Pro $12/mo, Ultimate $25/mo)
- Push toward systems that earn every day rather than one-off wins

If the question is vague, ask one sharp clarifying question first. Always finish with a next action."""

PLAN_CONTEXT = {
    "free": "The user is on the free plan; point out upgrades only when they unlock something they asked for.",
    "starter": "The user is on the Starter plan.",
    "pro": "The user is on the Pro plan and can use advanced AI features.",
    "empire": "The user is on the Ultimate plan with unlimited usage.",
}


class ChatServiceError(Exception):
    pass


def _headers() -> dict:
    if not config.GROQ_API_KEY:
        raise ChatServiceError("GROQ_API_KEY is not configured")
    return {
        "Authorization": f"Bearer {config.GROQ_API_KEY}",
        "Content-Type": "application/json",
    }


def build_messages(history: Iterable[dict], plan: Optional[str] = None) -> list:
    prompt = SYSTEM_PROMPT
    if plan in PLAN_CONTEXT:
        prompt = f"{prompt}\n\n{PLAN_CONTEXT[plan]}"
    messages = [{"role": "system", "content": prompt}]
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    return messages


async def generate_response(history: Iterable[dict], plan: Optional[str] = None) -> str:
    payload = {
        "model": config.GROQ_MODEL,
        "messages": build_messages(history, plan),
        "temperature": TEMPERATURE,
        "max_tokens": MAX_TOKENS,
        "top_p": TOP_P,
    }
    timeout = ClientTimeout(total=config.GROQ_TIMEOUT_SECONDS)
    try:
        async with ClientSession(timeout=timeout) as session:
            async with session.post(
                f"{config.GROQ_BASE_URL}/chat/completions",
                json=payload,
                headers=_headers(),
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    logger.error("GROQ API error %s: %s", response.status, body[:200])
                    raise ChatServiceError(f"GROQ API Error: {response.status}")
                data = await response.json(content_type=None)
    except ClientError as exc:
        raise ChatServiceError(f"GROQ request failed: {exc}") from exc

    choices = data.get("choices") or []
    content = ((choices[0] if choices else {}).get("message") or {}).get("content")
    return content or "Unable to generate response."


async def test_connection() -> dict:
    timeout = ClientTimeout(total=config.GROQ_TIMEOUT_SECONDS)
    try:
        async with ClientSession(timeout=timeout) as session:
            async with session.get(f"{config.GROQ_BASE_URL}/models", headers=_headers()) as response:
                if response.status != 200:
                    raise ChatServiceError(f"API connection failed: {response.status}")
    except ClientError as exc:
        raise ChatServiceError(f"Connection test failed: {exc}") from exc
    return {"status": "connected", "model": config.GROQ_MODEL, "message": "Chat service is ready"}
