"""Slack Web API integration: execution outcomes and progress summaries."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

STATUS_EMOJI = {
    "Pending": ":white_circle:",
    "InProgress": ":large_blue_circle:",
    "Completed": ":white_check_mark:",
    "Blocked": ":red_circle:",
    "Failed": ":x:",
    "Cancelled": ":heavy_minus_sign:",
}


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
    client=None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = client or get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_execution_notification(
    task_id: int,
    title: str,
    success: bool,
    attempts: int,
    agent_id: str | None = None,
) -> list[dict]:
    emoji = STATUS_EMOJI["Completed" if success else "Failed"]
    outcome = "completed" if success else "failed"
    agent = f" | Agent: `{agent_id}`" if agent_id else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{emoji} *Task {outcome}*\n*{title}* (`#{task_id}`)\n"
                    f"Attempts: {attempts}{agent}"
                ),
            },
        }
    ]


def format_progress_update(report: dict) -> list[dict]:
    """Format a project progress report (ProgressTracker dict) as Slack blocks."""
    lines = [
        f":bar_chart: *Project Status: {report['name']}*",
        (
            f":white_check_mark: Done: {report['completed_tasks']} | "
            f":large_blue_circle: In Progress: {report['in_progress_tasks']} | "
            f":red_circle: Blocked: {report['blocked_tasks']} | "
            f"Total: {report['total_tasks']}"
        ),
        f"Progress: {report['progress']:.0f}%",
    ]
    for milestone in report.get("milestones", []):
        emoji = STATUS_EMOJI.get(milestone["status"], ":grey_question:")
        lines.append(f"{emoji} {milestone['title']}: {milestone['progress']:.0f}%")
    return [{"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}}]


class SlackNotifier:
    """Posts execution outcomes to a channel. Used as a TaskExecutor notifier."""

    def __init__(self, token: str | None, channel: str, client=None):
        self.token = token
        self.channel = channel
        self.client = client

    def __call__(self, result) -> SlackMessage:
        title = result.title or f"Task {result.task_id}"
        blocks = format_execution_notification(
            result.task_id, title, result.success, result.attempts, result.agent_id
        )
        text = f"Task {result.task_id} {'completed' if result.success else 'failed'}"
        logger.debug("Posting execution outcome for task %s to %s", result.task_id, self.channel)
        return send_message(self.token, self.channel, text, blocks, client=self.client)
