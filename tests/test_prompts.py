"""
Tests for task-type system instructions.
"""

from bulkjobs.llm.prompts import SPREADSHEET_BASE, SYSTEM_PROMPTS, get_system_prompt, infer_task_type


def test_known_and_unknown_task_types():
    assert get_system_prompt("translate") == SYSTEM_PROMPTS["TRANSLATE"]
    assert get_system_prompt(None) == SPREADSHEET_BASE
    assert get_system_prompt("POETRY") == SPREADSHEET_BASE


def test_every_prompt_builds_on_the_cell_rules():
    assert all(p.startswith(SPREADSHEET_BASE) for p in SYSTEM_PROMPTS.values())


def test_infer_task_type():
    assert infer_task_type("Translate {input} to French") == "TRANSLATE"
    assert infer_task_type("Summarize this review") == "SUMMARIZE"
    assert infer_task_type("Extract the email address") == "EXTRACT"
    assert infer_task_type("Write a haiku") == "GENERAL"
