"""Slack Web API integration for orchestrator notifications."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


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
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_task_blocked(task_id: str, title: str, reason: str, project: str) -> list[dict]:
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":red_circle: *Task Blocked*\n*{title}* (`{task_id}`)\n"
                    f"Reason: *{reason}* | Project: {project}\n"
                    "It will be retried automatically unless a human closes or reopens it first."
                ),
            },
        }
    ]


def format_task_completed(task_id: str, title: str, project: str) -> list[dict]:
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":white_check_mark: *Task Completed*\n*{title}* (`{task_id}`)\nProject: {project}",
            },
        }
    ]


class SlackNotifier:
    """Posts orchestrator outcomes to a project's Slack channel when one is set."""

    def __init__(self, token: str | None):
        self.token = token

    def task_blocked(self, project, task, reason: str):
        if not self.token or not project.slack_channel:
            return
        send_message(
            self.token,
            project.slack_channel,
            f"Task blocked: {task.title} ({reason})",
            format_task_blocked(task.id, task.title, reason, project.id),
        )

    def task_completed(self, project, task):
        if not self.token or not project.slack_channel:
            return
        send_message(
            self.token,
            project.slack_channel,
            f"Task completed: {task.title}",
            format_task_completed(task.id, task.title, project.id),
        )
