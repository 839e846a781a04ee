import ast
import os

import pytest

from sheetquery.utils.prompting import render_prompt, truncate_text

AGENTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../sheetquery/agents"))


def get_agent_files():
    return [os.path.join(AGENTS_DIR, f) for f in sorted(os.listdir(AGENTS_DIR)) if f.endswith(".py")]


def test_no_fstring_prompts_ast():
    """
    Fails if an f-string is assigned to a variable named like '*PROMPT*' or
    '*TEMPLATE*'; spreadsheet text and JSON carry braces, so prompts go
    through render_prompt.
    """
    assert get_agent_files()
    for file_path in get_agent_files():
        with open(file_path, "r", encoding="utf-8") as f:
            tree = ast.parse(f.read())
        for node in ast.walk(tree):
            if not isinstance(node, ast.Assign):
                continue
            for target in node.targets:
                if not isinstance(target, ast.Name):
                    continue
                name = target.id.upper()
                if ("PROMPT" in name or "TEMPLATE" in name) and isinstance(node.value, ast.JoinedStr):
                    pytest.fail(f"{os.path.basename(file_path)} uses an f-string for '{target.id}'. Use render_prompt.")


def test_render_prompt_keeps_braces_and_dumps_structures():
    template = 'Query "$query" over {"steps": []} costs $$5 with $intent and $missing'
    rendered = render_prompt(template, query="ventas {2024}", intent={"type": "list"})
    assert 'Query "ventas {2024}"' in rendered
    assert '{"steps": []}' in rendered
    assert "costs $5" in rendered
    assert '"type": "list"' in rendered
    assert rendered.endswith("$missing")


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    clipped = truncate_text("x" * 100, 40)
    assert len(clipped) <= 40
    assert clipped.endswith("...[TRUNCATED]")
    assert truncate_text(None) == ""
