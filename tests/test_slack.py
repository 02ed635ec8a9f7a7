"""Tests for Slack notifications."""

from unittest.mock import MagicMock

import pytest

from taskpilot.core.executor import ExecutionResult
from taskpilot.db.models import ProcessingState
from taskpilot.integrations import slack as slack_mod


def _client():
    client = MagicMock()
    client.chat_postMessage.return_value = {"channel": "C123", "ts": "1700000000.0001"}
    return client


class TestSendMessage:
    def test_send(self):
        client = _client()
        msg = slack_mod.send_message(None, "#ops", "hello", client=client)
        assert msg.channel == "C123"
        assert msg.ts == "1700000000.0001"
        client.chat_postMessage.assert_called_once_with(channel="#ops", text="hello", blocks=None)

    def test_not_configured(self):
        with pytest.raises(slack_mod.SlackError):
            slack_mod.send_message(None, "#ops", "hello")

    def test_get_client_without_token(self):
        assert slack_mod.get_client(None) is None


class TestFormatting:
    def test_execution_notification(self):
        blocks = slack_mod.format_execution_notification(4, "Write docs", False, 5, "TaskExecutor_ab12cd34")
        text = blocks[0]["text"]["text"]
        assert ":x: *Task failed*" in text
        assert "*Write docs* (`#4`)" in text
        assert "Attempts: 5 | Agent: `TaskExecutor_ab12cd34`" in text

    def test_progress_update(self):
        report = {
            "name": "Shop",
            "progress": 25.0,
            "total_tasks": 5,
            "completed_tasks": 2,
            "in_progress_tasks": 1,
            "blocked_tasks": 0,
            "milestones": [{"title": "Backend", "status": "InProgress", "progress": 75.0}],
        }
        text = slack_mod.format_progress_update(report)[0]["text"]["text"]
        assert "*Project Status: Shop*" in text
        assert "Done: 2" in text
        assert "Progress: 25%" in text
        assert ":large_blue_circle: Backend: 75%" in text


class TestNotifier:
    def test_posts_execution_result(self):
        client = _client()
        notifier = slack_mod.SlackNotifier(None, "#ops", client=client)
        result = ExecutionResult(
            task_id=3,
            agent_id="TaskExecutor_1",
            success=True,
            attempts=1,
            state=ProcessingState.COMPLETED,
            title="Ship it",
        )
        msg = notifier(result)
        assert msg.channel == "C123"
        kwargs = client.chat_postMessage.call_args.kwargs
        assert kwargs["channel"] == "#ops"
        assert kwargs["text"] == "Task 3 completed"
        assert "*Ship it*" in kwargs["blocks"][0]["text"]["text"]
