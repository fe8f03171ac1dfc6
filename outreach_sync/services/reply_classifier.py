"""
Reply categorisation

Known Smartlead category names map straight to a category and sentiment.
Replies that arrive without one are handed to the downstream classifier,
fire-and-forget: the webhook never waits on it and failures are only logged.
"""
import asyncio
from typing import List, Optional, Tuple

import aiohttp

from outreach_sync.config import get_settings
from outreach_sync.utils.logger import log

settings = get_settings()

CATEGORY_MAP = {
    "Interested": ("interested", "positive"),
    "Meeting Booked": ("meeting_request", "positive"),
    "Meeting Scheduled": ("meeting_request", "positive"),
    "Positive": ("interested", "positive"),
    "Not Interested": ("not_interested", "negative"),
    "Out of Office": ("out_of_office", "neutral"),
    "OOO": ("out_of_office", "neutral"),
    "Wrong Person": ("referral", "neutral"),
    "Unsubscribed": ("unsubscribe", "negative"),
    "Do Not Contact": ("unsubscribe", "negative"),
    "Neutral": ("neutral", "neutral"),
    "Question": ("question", "neutral"),
    "Not Now": ("not_now", "neutral"),
    "Bad Timing": ("not_now", "neutral"),
    "Referral": ("referral", "positive"),
    "Auto Reply": ("auto_reply", "neutral"),
}


def map_category(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """(reply_category, reply_sentiment) for a platform category name"""
    if not name:
        return None, None
    if name in CATEGORY_MAP:
        return CATEGORY_MAP[name]

    # Keyword fallback for categories a workspace defined itself
    lower = name.lower()
    if "not interested" in lower or "pass" in lower or "decline" in lower:
        return "not_interested", "negative"
    if "interested" in lower:
        return "interested", "positive"
    if "meeting" in lower or "booked" in lower or "call" in lower:
        return "meeting_request", "positive"
    if "ooo" in lower or "out of office" in lower or "vacation" in lower:
        return "out_of_office", "neutral"
    if "unsubscribe" in lower or "remove" in lower or "stop" in lower:
        return "unsubscribe", "negative"
    return "neutral", "neutral"


async def request_classification(activity_ids: List[int]):
    """POST activity ids to the classifier; never raises"""
    if not activity_ids:
        return
    if not settings.classifier_url:
        log.debug(f"Classifier not configured, {len(activity_ids)} replies left unclassified")
        return

    headers = {"Content-Type": "application/json"}
    if settings.classifier_token:
        headers["Authorization"] = f"Bearer {settings.classifier_token}"

    for i in range(0, len(activity_ids), settings.classifier_batch_size):
        batch = activity_ids[i:i + settings.classifier_batch_size]
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30)) as session:
                async with session.post(settings.classifier_url, json={"activity_ids": batch}, headers=headers) as response:
                    if response.status >= 400:
                        log.warning(f"Classifier returned {response.status} for {len(batch)} replies")
                    else:
                        log.info(f"Queued {len(batch)} replies for classification")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning(f"Classifier request failed: {e}")
