"""System prompt construction."""

from pathlib import Path

from .tools import ToolContext

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

PLAN_MODE_SECTION = """

## PLAN MODE: ACTIVE
You are currently in PLAN MODE. In this mode:
- You should EXPLORE the codebase, READ files, SEARCH for patterns, and LIST directories
- You should ANALYZE the task and design an implementation approach
- You MUST NOT write, edit, or create any files
- You MUST NOT run any commands that modify state (git commit, npm install, rm, etc.)
- Read-only commands are OK (git status, git log, git diff, ls, etc.)
- Present your plan clearly with:
  1. Files that need to be created or modified
  2. The approach and architecture decisions
  3. Any risks or trade-offs
  4. A step-by-step implementation order
- When you've finished exploring and have a plan, tell the user and they can exit plan mode with /plan to toggle it off"""


def build_system_prompt(context: ToolContext, template: str | None = None) -> str:
    """Render the system prompt for the context's cwd and mode."""
    if template is None:
        template = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    mode = "plan" if context.plan_mode else "normal"
    prompt = template.format(cwd=context.cwd, mode=mode).rstrip("\n")
    if context.plan_mode:
        prompt += PLAN_MODE_SECTION
    return prompt
