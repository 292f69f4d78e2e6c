"""Prompt text for the generation collaborator.

The engine does not depend on prompt wording; these builders exist so the
bundled providers get instructions that carry the context, grouped issues
and failure feedback the correction loop has accumulated.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Iterable, Sequence

from codemender.issues import Issue, group_and_prioritize
from codemender.structure import format_structure

if TYPE_CHECKING:
    from codemender.context import GenerationContext
    from codemender.outcome import CorrectionFeedback

SNIPPET_LINES_BEFORE = 2
SNIPPET_LINES_AFTER = 2

_LANGUAGES = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".rb": "ruby",
    ".sh": "bash",
    ".toml": "toml",
    ".json": "json",
    ".md": "markdown",
}

# One fence pair around the whole reply; fences inside the body are content
_WRAPPING_FENCE_RE = re.compile(r"\A\s*```[^\n`]*\n(?P<body>(?:.*?\n)?)```\s*\Z", re.DOTALL)


def language_for(path: str) -> str:
    return _LANGUAGES.get(PurePosixPath(path).suffix.lower(), "plaintext")


def strip_code_fences(text: str) -> str:
    """Remove the markdown fence a generator wrapped around file content.

    Only a fence pair enclosing the entire reply is removed. Anything else,
    including fenced blocks inside a README, is returned as written.
    """
    if not text:
        return ""
    match = _WRAPPING_FENCE_RE.match(text)
    if match is None:
        return text
    return match.group("body")


def code_snippet(
    content: str,
    line: int,
    before: int = SNIPPET_LINES_BEFORE,
    after: int = SNIPPET_LINES_AFTER,
) -> str:
    """Numbered excerpt of `content` around 1-indexed `line`."""
    lines = content.split("\n")
    if not lines:
        return ""
    index = min(max(line - 1, 0), len(lines) - 1)
    start = max(0, index - before)
    end = min(len(lines) - 1, index + after)
    width = len(str(end + 1))
    return "\n".join(f"{str(i + 1).rjust(width)}: {lines[i]}" for i in range(start, end + 1))


def strategy_for(group_key: str) -> str:
    """Fix strategy hint for an issue group heading."""
    if "Missing Identifier" in group_key:
        return (
            "A name is used but not defined. Check for a missing import, a typo "
            "or an undeclared variable, and fix whichever applies."
        )
    if "TYPE: UNUSED_IMPORT" in group_key:
        return "Remove the unused import, after checking nothing else relies on it."
    if "TYPE: SECURITY" in group_key:
        return "Apply secure coding practices: validate inputs and handle sensitive data correctly."
    if "TYPE: BEST_PRACTICE" in group_key:
        return "Refine the code to follow established patterns without changing behavior."
    if "TYPE: SYNTAX" in group_key and "ERROR" in group_key:
        return "Correct the exact syntax or type mistake the message points at."
    return (
        "Review the snippet and message, then apply the most targeted fix that "
        "resolves this issue."
    )


def format_issues_for_prompt(issues: Iterable[Issue], content: str, language: str) -> str:
    """Render issues grouped by fix strategy, each with a numbered snippet."""
    parts: list[str] = []
    for key, group in group_and_prioritize(issues).items():
        parts.append(f"--- Issue Group: {key} ---")
        parts.append(f"Suggested Strategy: {strategy_for(key)}")
        for issue in group:
            parts.append(f"Severity: {issue.severity.value.upper()}")
            parts.append(f"Type: {issue.kind.value}")
            parts.append(f"Line: {issue.line}")
            parts.append(f"Message: {issue.message}")
            if issue.code:
                parts.append(f"Issue Code: {issue.code}")
            parts.append("Problematic Code Snippet:")
            parts.append(f"```{language}\n{code_snippet(content, issue.line)}\n```")
        parts.append("")
    return "\n".join(parts)


def format_feedback(feedback: Sequence[CorrectionFeedback]) -> str:
    """Render attempt feedback, most specific first."""
    if not feedback:
        return ""
    parts = ["--- Feedback From Previous Attempts ---"]
    for item in feedback:
        kind = item.kind.value if item.kind else "improvement"
        parts.append(f"[{kind}] {item.message}")
        if item.issues_introduced:
            parts.append("Issues introduced by the last attempt:")
            parts.extend(f"- line {i.line}: {i.message}" for i in item.issues_introduced)
        if item.parsing_error:
            parts.append(f"Parsing error: {item.parsing_error}")
        if item.failed_output:
            parts.append(f"Rejected output (truncated):\n{item.failed_output}")
        if item.relevant_diff:
            parts.append(f"```diff\n{item.relevant_diff}\n```")
    parts.append("--- End Feedback ---")
    return "\n".join(parts)


def _context_block(context: GenerationContext | None) -> str:
    if context is None:
        return ""
    parts: list[str] = []
    if context.project_context:
        parts.append(f"**Project Context:**\n{context.project_context}")
    if context.relevant_snippets:
        parts.append("**Relevant Code Snippets:**\n" + "\n\n".join(context.relevant_snippets))
    structure = format_structure(context.file_structure)
    if structure:
        parts.append(structure)
    if context.recent_changes:
        parts.append(context.recent_changes)
    feedback = format_feedback(context.feedback)
    if feedback:
        parts.append(feedback)
    return "\n\n".join(parts)


_CONTENT_ONLY = (
    "Respond with ONLY the complete file content. No markdown fences, no "
    "explanations, no file headers."
)


def build_generation_prompt(
    path: str,
    instructions: str,
    context: GenerationContext | None = None,
) -> str:
    """Prompt for producing a new file from instructions."""
    return "\n\n".join(
        part
        for part in (
            f"Generate the file `{path}` ({language_for(path)}).",
            f"**Instructions:**\n{instructions}",
            _context_block(context),
            _CONTENT_ONLY,
        )
        if part
    )


def build_modification_prompt(
    path: str,
    instructions: str,
    current_content: str,
    context: GenerationContext | None = None,
) -> str:
    """Prompt for rewriting an existing file according to instructions."""
    language = language_for(path)
    return "\n\n".join(
        part
        for part in (
            f"Modify the file `{path}` ({language}).",
            f"**Instructions:**\n{instructions}",
            f"**Current Content:**\n```{language}\n{current_content}\n```",
            "Apply only the changes the instructions require; preserve everything else.",
            _context_block(context),
            _CONTENT_ONLY,
        )
        if part
    )


_PLAN_FORMAT = """Respond with ONLY a JSON object of this shape:
{
  "planDescription": "short summary",
  "steps": [
    {"step": 1, "action": "modify_file", "description": "...",
     "path": "relative/path", "modification_prompt": "what to change"},
    {"step": 2, "action": "create_file", "description": "...",
     "path": "relative/path", "content": "literal content"},
    {"step": 3, "action": "create_directory", "description": "...", "path": "relative/dir"},
    {"step": 4, "action": "run_command", "description": "...", "command": "shell command"}
  ]
}
Step numbers start at 1 and increase by one. Paths are relative to the
workspace root and must not contain '..'."""


def build_correction_plan_prompt(
    path: str,
    content: str,
    issues: Sequence[Issue],
    context: GenerationContext | None = None,
) -> str:
    """Prompt asking for a JSON correction plan that resolves `issues`."""
    language = language_for(path)
    return "\n\n".join(
        part
        for part in (
            f"The file `{path}` has {len(issues)} reported issue(s) that must be fixed.",
            "**Issues to Address:**\n" + format_issues_for_prompt(issues, content, language),
            f"**Current Content:**\n```{language}\n{content}\n```",
            "Make the smallest changes that resolve these exact issues. Do not "
            "refactor or reformat unrelated code.",
            _context_block(context),
            _PLAN_FORMAT,
        )
        if part
    )


GENERATION_SYSTEM_PROMPT = (
    "You are a careful software engineer. You write complete, working source "
    "files that follow the conventions of the surrounding project."
)

PLAN_SYSTEM_PROMPT = (
    "You repair source files. You answer with a JSON correction plan and "
    "nothing else: no prose, no markdown."
)
