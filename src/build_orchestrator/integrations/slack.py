"""Slack Web API integration: posting build events to a project's channel."""

from dataclasses import dataclass

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None) -> WebClient | None:
    """A WebClient for the bot token, or None when Slack is not configured."""
    if not token:
        return None
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Post ``text`` (the notification fallback) with optional Block Kit ``blocks``."""
    client = get_client(token)
    if client is None:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")
    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack rejected message to {channel}: {e.response.get('error', e)}") from e
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_open_questions(task_id: str, title: str, questions: list[dict]) -> list[dict]:
    """Blocks asking a human to answer an agent's open questions."""
    lines = "\n".join(f"• {q['text']}" for q in questions)
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":raising_hand: *Agent needs input*\n*{title}* (`{task_id}`)\n{lines}",
            },
        },
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"Task is blocked until answered. Unblock with `bo task unblock {task_id}`."}
            ],
        },
    ]


def format_escalation(task_id: str, title: str, attempts: int, reason: str) -> list[dict]:
    """Blocks announcing a task that used up its retries."""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":rotating_light: *Task escalated after {attempts} attempt(s)*\n"
                    f"*{title}* (`{task_id}`)\n"
                    f"Last failure: {reason[:300]}"
                ),
            },
        }
    ]


def format_task_done(task_id: str, title: str, branch: str) -> list[dict]:
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":white_check_mark: *Merged*\n*{title}* (`{task_id}`)\nBranch: `{branch}`",
            },
        }
    ]
