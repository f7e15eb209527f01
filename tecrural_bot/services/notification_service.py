"""Best-effort follow-up notifications sent after a diagnosis.

They run as tracked asyncio tasks: the webhook reply never waits for them and their
failures are logged, never propagated.
"""

import asyncio
from typing import Awaitable, Optional

from tecrural_bot.logging_config import get_logger, mask_phone
from tecrural_bot.services import messages
from tecrural_bot.services.channels.base import ChannelAdapter

logger = get_logger("notification_service")


class NotificationDispatcher:
    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, job: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(job, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job: Awaitable, name: str) -> None:
        try:
            await job
        except Exception as e:
            logger.warning(f"Notification {name} failed: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait for every scheduled notification (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


async def notify_whatsapp_diagnosis(
    whatsapp: ChannelAdapter,
    phone: str,
    crop_name: str,
    report_markdown: str,
    image_url: Optional[str] = None,
) -> bool:
    """Mirror a Telegram diagnosis to the user's WhatsApp (opt-in profile setting)."""
    summary = messages.format_notification_summary(crop_name, report_markdown)
    if image_url:
        await whatsapp.send_image(phone, image_url, caption=summary.split("\n", 1)[0])

    sent = await whatsapp.send_text(phone, summary)
    logger.info(
        "WhatsApp diagnosis notification",
        extra={"context": {"to": mask_phone(phone), "sent": sent}},
    )
    return sent


notification_dispatcher = NotificationDispatcher()
