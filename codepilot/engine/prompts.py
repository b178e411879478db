"""System prompt assembly."""
from __future__ import annotations

import os
import platform
from collections.abc import Iterable
from pathlib import Path

SYSTEM_PROMPT = """\
You are a software engineering agent working inside a single workspace.
You act only through the tools you are given. Use one step at a time,
read the result of each tool call, and then decide the next step.

RULES

- The workspace root is {workspace}. Every path you pass to a tool is
  resolved against it; paths outside the workspace are rejected.
- Prefer replace_in_file for targeted edits and write_to_file for new
  files or full rewrites.
- execute_command runs through {shell}. Long-running commands return a
  process_id while still running; poll them with get_command_result,
  feed them with send_command_input and stop them with terminate_command.
- Some tools require operator approval. A rejected call comes back as an
  error result carrying the operator's reason; adjust instead of retrying
  the same call.
- When the task is done, call attempt_completion with a summary of the
  result. If you cannot proceed without the operator, call ask_question.

SYSTEM INFORMATION

Operating System: {os_name}
Default Shell: {shell}
Home Directory: {home}
Workspace Directory: {workspace}
"""

USER_INSTRUCTIONS = """
USER'S CUSTOM INSTRUCTIONS

{instructions}
"""

HOST_ADDON = """
HOSTED TOOLS: {name}

{prompt}
"""


def default_shell() -> str:
    return os.environ.get("SHELL") or os.environ.get("COMSPEC") or "/bin/bash"


def build_system_prompt(
    workspace: str | Path,
    user_instructions: str = "",
    host_addons: Iterable[tuple[str, str]] = (),
) -> str:
    """Render the system prompt.

    ``host_addons`` holds ``(host_name, prompt)`` pairs contributed by
    configured protocol hosts.
    """
    prompt = SYSTEM_PROMPT.format(
        workspace=str(workspace).replace("\\", "/"),
        os_name=platform.system() or os.name,
        shell=default_shell(),
        home=str(Path.home()).replace("\\", "/"),
    )
    if user_instructions.strip():
        prompt += USER_INSTRUCTIONS.format(instructions=user_instructions.strip())
    for name, addon in host_addons:
        if addon and addon.strip():
            prompt += HOST_ADDON.format(name=name, prompt=addon.strip())
    return prompt
