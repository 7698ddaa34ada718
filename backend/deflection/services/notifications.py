"""Notification service - Slack webhook alerts for permanently failed jobs."""

import httpx
import structlog

logger = structlog.get_logger()


async def send_slack_notification(
    webhook_url: str,
    text: str,
    blocks: list | None = None,
) -> bool:
    """Send a notification via Slack incoming webhook."""
    if not webhook_url:
        logger.info("slack_notification_skipped_no_webhook")
        return False

    payload: dict = {"text": text}
    if blocks:
        payload["blocks"] = blocks

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(webhook_url, json=payload)
            resp.raise_for_status()
        logger.info("slack_notification_sent", text=text[:100])
        return True
    except httpx.HTTPError as e:
        logger.error("slack_notification_failed", error=str(e))
        return False


def format_job_failure_notification(failure: dict) -> tuple[str, list]:
    """Format a permanently failed deflection job for Slack."""
    text = f"Deflection job {failure.get('job_id')} failed permanently"
    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": "Deflection Job Failed"}
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Job:* {failure.get('job_id')}"},
                {"type": "mrkdwn", "text": f"*Tenant:* {failure.get('tenant_id')}"},
                {"type": "mrkdwn", "text": f"*Ticket:* {failure.get('ticket_id')}"},
                {"type": "mrkdwn", "text": f"*Retries:* {failure.get('retry_count')}"},
            ]
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Error ({failure.get('error_kind', 'unknown')}):* {str(failure.get('error', ''))[:500]}"}
        },
    ]
    return text, blocks
