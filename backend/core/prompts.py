"""System prompts for the agent loop."""

AGENT_SYSTEM_PROMPT = """You are a coding assistant working inside the user's project.

Use the tools to inspect and change the project instead of guessing:
- read_file before editing a file, and prefer edit_file or replace_lines over rewriting whole files
- glob_files, grep_files and lookup_symbols to find code
- run_command for builds, tests and git

Tool errors are returned to you as tool results. Read them and correct your
call rather than repeating it. When the task is done, answer with a short
summary of what you did. If a request cannot or should not be carried out with
the available tools, say so plainly."""

CHAT_SYSTEM_PROMPT = """You are a coding assistant. Tools are not available for this model,
so answer from the conversation alone."""


def add_working_directory(prompt: str, working_dir: str) -> str:
    """Append the working directory section unless it is already present."""
    if "## WORKING DIRECTORY" in prompt:
        return prompt
    return (
        f"{prompt}\n\n## WORKING DIRECTORY\n"
        f"All relative paths resolve against: {working_dir}\n"
        "Tools cannot access files outside this directory."
    )


def build_system_prompt(working_dir: str, use_agent: bool = True) -> str:
    base = AGENT_SYSTEM_PROMPT if use_agent else CHAT_SYSTEM_PROMPT
    return add_working_directory(base, working_dir)
