"""
Tests for session instructions and knowledge base loading.
"""

import json
from dataclasses import replace

from src.supportline.prompt_utils import (
    build_knowledge_base_context,
    build_system_instructions,
    load_knowledge_base,
    resolve_prompt,
)

KB = {
    "articles": [
        {
            "title": "Resetting your password",
            "content": {
                "overview": "Reset from the login page.",
                "solution": ["Click on Forgot password", "Check your inbox"],
                "important_notes": ["Links expire after 24 hours"],
            },
            "faq": [{"question": "No email?", "answer": "Check spam."}],
        },
        {"title": "Bare article"},
    ]
}


def test_context_rendering():
    context = build_knowledge_base_context(KB)
    first, second = context.split("\n\n")
    assert first.splitlines() == [
        "TITLE: Resetting your password",
        "OVERVIEW: Reset from the login page.",
        "SOLUTION: Click on Forgot password; Check your inbox",
        "NOTES: Links expire after 24 hours",
        "FAQ: Q: No email? A: Check spam.",
    ]
    assert second.splitlines() == ["TITLE: Bare article", "OVERVIEW: "]


def test_default_instructions_embed_company_and_kb(config):
    instructions = build_system_instructions(config, KB)
    assert "You are a Kayako AI support assistant." in instructions
    assert "TITLE: Resetting your password" in instructions
    assert "{KNOWLEDGE_BASE}" not in instructions
    assert "{COMPANY_NAME}" not in instructions
    assert "could you please share your email address" in instructions


def test_inline_override(config):
    custom = replace(config, openai_realtime_instructions="Help {COMPANY_NAME} users.\n{KNOWLEDGE_BASE}")
    instructions = build_system_instructions(custom, KB)
    assert instructions.startswith("Help Kayako users.\nTITLE: Resetting your password")


def test_file_override(config, tmp_path):
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("I am {AGENT_NAME}.", encoding="utf-8")
    custom = replace(config, openai_realtime_instructions_file=str(prompt_file))
    assert build_system_instructions(custom, KB) == "I am Support Assistant."


def test_missing_prompt_file_resolves_empty(config, tmp_path):
    assert resolve_prompt(config=config, inline_text="", file_path=str(tmp_path / "nope.txt")) == ""


def test_long_prompt_file_is_truncated(config, tmp_path):
    prompt_file = tmp_path / "long.txt"
    prompt_file.write_text("x" * 50, encoding="utf-8")
    assert resolve_prompt(config=config, inline_text="", file_path=str(prompt_file), max_chars=5) == "xxxxx"


def test_load_knowledge_base(tmp_path):
    path = tmp_path / "kb.json"
    path.write_text(json.dumps(KB), encoding="utf-8")
    assert len(load_knowledge_base(str(path))["articles"]) == 2


def test_load_missing_knowledge_base(tmp_path):
    assert load_knowledge_base(str(tmp_path / "missing.json")) == {"articles": []}


def test_load_broken_knowledge_base(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_knowledge_base(str(path)) == {"articles": []}

    wrong_shape = tmp_path / "list.json"
    wrong_shape.write_text("[1, 2]", encoding="utf-8")
    assert load_knowledge_base(str(wrong_shape)) == {"articles": []}


def test_bundled_knowledge_base_loads():
    kb = load_knowledge_base("data/knowledge_base.json")
    assert len(kb["articles"]) >= 3
