"""Tests for prompts.py."""

from jarvis.buffer import Message
from jarvis.prompts import build_system_prompt, create_notification_prompt, format_discussion


def test_format_discussion_tags_speakers():
    messages = [Message("Jarvis, lights on", 1.0, True), Message("sure", 2.0, False)]
    assert format_discussion(messages) == "Jarvis, lights on ({{user_name}})\nsure (other)"


def test_notification_prompt_shape():
    result = create_notification_prompt([Message("hey jarvis", 1.0, True)])
    prompt = result["notification"]["prompt"]
    assert result["notification"]["params"] == ["user_name", "user_facts", "user_conversations", "user_chat"]
    assert prompt.startswith("The Person you are talking to: {{user_name}}")
    assert "{{user_facts}}" in prompt
    assert prompt.rstrip().endswith("hey jarvis ({{user_name}})")
    assert "__DISCUSSION__" not in prompt


def test_system_prompt_uses_salutation():
    assert 'Address the user as "madam"' in build_system_prompt("madam")
