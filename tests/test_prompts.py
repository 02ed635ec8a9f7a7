"""Tests for prompt assembly."""

import pytest

from taskpilot.core import prompts as prompts_mod
from taskpilot.core.prompts import PromptBuilder
from taskpilot.db.models import (
    AgentMetric,
    Message,
    Milestone,
    Project,
    Task,
    TaskDependency,
)
from taskpilot.errors import ValidationError


def _task():
    return Task(
        id=7,
        milestone_id=2,
        title="Write API",
        description="REST endpoints",
        priority="High",
        dependencies=[TaskDependency(task_id=7, depends_on_task_id=3, depends_on_title="Schema")],
    )


class TestPromptBuilder:
    def test_sections_in_call_order(self):
        prompt = (
            PromptBuilder()
            .with_instructions("Do it")
            .with_system_prompt("You are helpful")
            .build()
        )
        assert prompt == "Instructions:\nDo it\n\nSystem:\nYou are helpful"

    def test_task_context(self):
        prompt = PromptBuilder().with_task_context(_task()).build()
        assert "Title: Write API" in prompt
        assert "Priority: High" in prompt
        assert "Dependencies:\n- Schema" in prompt

    def test_project_and_milestone_context(self):
        project = Project(id=1, name="Launch", description="Ship it")
        milestone = Milestone(id=2, project_id=1, title="Alpha", success_criteria="Demo")
        builder = PromptBuilder().with_project_context(project).with_milestone_context(milestone)
        prompt = builder.build()
        assert "Project: Launch" in prompt
        assert "Success Criteria: Demo" in prompt
        assert builder.get_context() == {
            "project_id": 1,
            "project_name": "Launch",
            "milestone_id": 2,
            "milestone_title": "Alpha",
        }

    def test_history_window(self):
        messages = [Message(content=f"msg {i}", role="user") for i in range(15)]
        prompt = PromptBuilder().with_conversation_history(messages, max_messages=3).build()
        assert prompt == "Conversation History:\nuser: msg 12\nuser: msg 13\nuser: msg 14"

    def test_history_prefers_tokenized_content(self):
        messages = [Message(content="a\n\nb", tokenized_content="a b", role="assistant")]
        prompt = PromptBuilder().with_conversation_history(messages).build()
        assert "assistant: a b" in prompt

    def test_agent_context(self):
        metric = AgentMetric(agent_id="w", task_id=1, success_rate=87.5,
                             performance_metrics={"speed": 0.9})
        prompt = PromptBuilder().with_agent_context("w", metric).build()
        assert "Agent ID: w" in prompt
        assert "Success Rate: 87.50%" in prompt
        assert "- speed: 0.9" in prompt

    def test_constraints_examples_and_custom(self):
        prompt = (
            PromptBuilder()
            .with_constraints(["Be brief"])
            .with_examples([("2+2", "4")])
            .with_expected_output("A number")
            .with_custom_section("Notes", "None")
            .build()
        )
        assert "Constraints:\n- Be brief" in prompt
        assert "Examples:\nInput:\n2+2\nOutput:\n4" in prompt
        assert "Expected Output Format:\nA number" in prompt
        assert prompt.endswith("Notes:\nNone")

    @pytest.mark.parametrize(
        "call",
        [
            lambda b: b.with_system_prompt(""),
            lambda b: b.with_instructions(""),
            lambda b: b.with_constraints([]),
            lambda b: b.with_examples([]),
            lambda b: b.with_expected_output(""),
            lambda b: b.with_custom_section("", "x"),
            lambda b: b.with_custom_section("x", ""),
            lambda b: b.with_agent_context(""),
            lambda b: b.with_task_context(None),
            lambda b: b.with_conversation_history(None),
        ],
    )
    def test_empty_inputs_rejected(self, call):
        with pytest.raises(ValidationError):
            call(PromptBuilder())

    def test_clear_resets_everything(self):
        builder = PromptBuilder().with_task_context(_task())
        builder.clear()
        assert builder.build() == ""
        assert builder.get_context() == {}
        assert builder.with_instructions("Next").build() == "Instructions:\nNext"


class TestTaskPrompts:
    def test_task_prompt(self):
        prompt = prompts_mod.build_task_prompt(_task())
        assert prompt.startswith("System:\n" + prompts_mod.TASK_SYSTEM_PROMPT)
        assert prompts_mod.TASK_INSTRUCTIONS in prompt
        assert "- Report any errors or issues" in prompt
        assert "Conversation History" not in prompt

    def test_retry_prompt(self):
        history = [Message(content="I could not finish", role="assistant")]
        prompt = prompts_mod.build_retry_prompt(_task(), history)
        assert prompt.startswith("System:\n" + prompts_mod.RETRY_SYSTEM_PROMPT)
        assert "assistant: I could not finish" in prompt
        assert prompts_mod.RETRY_INSTRUCTIONS in prompt
        assert prompts_mod.TASK_INSTRUCTIONS not in prompt

    def test_prompts_do_not_leak(self):
        retry = prompts_mod.build_retry_prompt(_task(), [Message(content="zebra-note", role="user")])
        fresh = prompts_mod.build_task_prompt(_task())
        assert "zebra-note" not in fresh
        assert prompts_mod.RETRY_SYSTEM_PROMPT in retry
        assert prompts_mod.RETRY_SYSTEM_PROMPT not in fresh
