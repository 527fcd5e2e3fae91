"""Tests for system prompt rendering."""

from qwen_local.prompt import PLAN_MODE_SECTION, build_system_prompt
from qwen_local.tools import ToolContext


def test_default_template_mentions_cwd(tmp_path):
    prompt = build_system_prompt(ToolContext(tmp_path))
    assert str(tmp_path.resolve()) in prompt
    assert "PLAN MODE" not in prompt


def test_plan_mode_appends_section(tmp_path):
    prompt = build_system_prompt(ToolContext(tmp_path, plan_mode=True))
    assert prompt.endswith(PLAN_MODE_SECTION)


def test_custom_template(tmp_path):
    context = ToolContext(tmp_path)
    assert build_system_prompt(context, "cwd={cwd} mode={mode}\n") == (
        f"cwd={context.cwd} mode=normal"
    )
    context.set_plan_mode(True)
    assert build_system_prompt(context, "{mode}").startswith("plan\n")


def test_follows_cwd_changes(tmp_path):
    (tmp_path / "inner").mkdir()
    context = ToolContext(tmp_path)
    context.set_cwd("inner")
    assert str(tmp_path.resolve() / "inner") in build_system_prompt(context)
