"""Tests for open-question notifications and Slack posting."""

import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from slack_sdk.errors import SlackApiError

from build_orchestrator.core import notifications as notifications_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.db.engine import init_db
from build_orchestrator.integrations import slack as slack_mod


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "test", "Test", tmp)
        tasks_mod.create_task(conn, "Schema", "test")
        yield conn
        conn.close()


QUESTIONS = [{"id": "q1", "text": "Postgres or SQLite?"}]


class TestOpenQuestions:
    def test_create_and_list(self, db):
        note = notifications_mod.create_notification(db, "test", "execute", "schema", QUESTIONS)
        assert note.status == "open"
        assert note.questions == QUESTIONS
        assert [n.id for n in notifications_mod.list_notifications(db, "test")] == [note.id]

    def test_resolve(self, db):
        note = notifications_mod.create_notification(db, "test", "execute", "schema", QUESTIONS)
        resolved = notifications_mod.resolve_notification(db, note.id)
        assert resolved.status == "resolved"
        assert resolved.resolved_at is not None
        assert notifications_mod.list_notifications(db, "test") == []
        assert len(notifications_mod.list_notifications(db, "test", status=None)) == 1

    def test_resolve_missing(self, db):
        with pytest.raises(ValueError, match="not found"):
            notifications_mod.resolve_notification(db, 999)

    def test_resolve_for_source(self, db):
        notifications_mod.create_notification(db, "test", "execute", "schema", QUESTIONS)
        notifications_mod.create_notification(db, "test", "execute", "schema", QUESTIONS)
        assert notifications_mod.resolve_for_source(db, "schema") == 2
        assert notifications_mod.resolve_for_source(db, "schema") == 0


class TestSlack:
    def test_send_requires_token(self):
        with pytest.raises(slack_mod.SlackError, match="not configured"):
            slack_mod.send_message(None, "#builds", "hi")

    def test_send_message(self):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "123.45"}
        with patch.object(slack_mod, "WebClient", return_value=client):
            msg = slack_mod.send_message("xoxb-test", "#builds", "Task merged", blocks=[])
        assert msg == slack_mod.SlackMessage(channel="C1", ts="123.45", text="Task merged")
        client.chat_postMessage.assert_called_once_with(channel="#builds", text="Task merged", blocks=[])

    def test_api_error_is_wrapped(self):
        client = MagicMock()
        client.chat_postMessage.side_effect = SlackApiError("boom", {"ok": False, "error": "channel_not_found"})
        with patch.object(slack_mod, "WebClient", return_value=client):
            with pytest.raises(slack_mod.SlackError, match="channel_not_found"):
                slack_mod.send_message("xoxb-test", "#nowhere", "hi")

    def test_notify_skips_without_channel(self):
        with patch.object(slack_mod, "send_message") as send:
            notifications_mod.notify_slack("xoxb-test", None, "hi")
            notifications_mod.notify_slack(None, "#builds", "hi")
        send.assert_not_called()

    def test_notify_logs_failures(self, caplog):
        with patch.object(slack_mod, "send_message", side_effect=slack_mod.SlackError("down")):
            notifications_mod.notify_slack("xoxb-test", "#builds", "hi")
        assert "Failed to send Slack notification" in caplog.text

    def test_block_formatters(self):
        blocks = slack_mod.format_open_questions("schema", "Schema", QUESTIONS)
        assert "Postgres or SQLite?" in blocks[0]["text"]["text"]
        assert "bo task unblock schema" in blocks[1]["elements"][0]["text"]
        escalation = slack_mod.format_escalation("schema", "Schema", 3, "tests failed")
        assert "after 3 attempt(s)" in escalation[0]["text"]["text"]
        done = slack_mod.format_task_done("schema", "Schema", "bo/schema")
        assert "`bo/schema`" in done[0]["text"]["text"]
