"""Slack client for sending notifications."""

import os
from typing import Optional

import httpx
from loguru import logger


def get_webhook_url(channel: str = "#enrichment-alerts") -> Optional[str]:
    """Get Slack webhook URL from environment.

    Args:
        channel: Channel name (used to select webhook if multiple configured)

    Returns:
        Webhook URL or None if not configured
    """
    url = os.getenv("SLACK_WEBHOOK_URL")

    if channel == "#enrichment-alerts":
        url = os.getenv("SLACK_ALERTS_WEBHOOK_URL", url)

    return url


def send_message(
    text: str,
    channel: str = "#enrichment-alerts",
    webhook_url: Optional[str] = None,
) -> bool:
    """Send a message to Slack.

    Args:
        text: Message text (supports Slack markdown)
        channel: Channel name (for webhook selection)
        webhook_url: Override webhook URL

    Returns:
        True if sent successfully, False otherwise
    """
    url = webhook_url or get_webhook_url(channel)

    if not url:
        logger.debug(f"Slack webhook URL not configured for {channel}")
        return False

    try:
        response = httpx.post(
            url,
            json={"text": text},
            timeout=10.0,
        )
    except httpx.HTTPError as e:
        logger.error(f"Failed to send Slack message: {e}")
        return False

    if response.status_code == 200:
        logger.info(f"Sent Slack message to {channel}")
        return True
    logger.error(f"Slack API error: {response.status_code} - {response.text}")
    return False


def send_dead_letter_notification(
    job_id: str,
    company: str,
    reason_code: str,
    attempts: int,
    error: Optional[str] = None,
    webhook_url: Optional[str] = None,
) -> bool:
    """Send a formatted dead-letter alert.

    Returns:
        True if sent successfully
    """
    message = f"""*Enrichment job dead-lettered*
• Company: {company}
• Job: `{job_id}`
• Reason: `{reason_code}` after {attempts} attempt(s)"""
    if error:
        message += f"\n• Last error: {error[:300]}"

    return send_message(message, webhook_url=webhook_url)
