"""Assistant instructions: base role plus call-time context.

The base instructions are deliberately short; the call-time block tells
the model who it is talking to and which response mode is active.
"""

from __future__ import annotations

from models.agent import AgentCallOptions

BASE_INSTRUCTIONS = """You are the school management system assistant.

Answer questions about the system, its features and the user's school data.
Use `retrieve_knowledge` before answering questions about how the system works.
Use `query_database` only for read-only lookups; the user must approve each query.
If a tool returns an error, explain the problem briefly instead of guessing."""

ROLE_LABELS = {
    "admin": "Administrator",
    "teacher": "Teacher",
    "student": "Student",
    "coordinator": "Coordinator",
    "secretary": "Secretary",
}

COMPLEX_INDICATORS = (
    "how does",
    "how do i",
    "explain",
    "step by step",
    "all the",
    "list all",
    "difference between",
    "compare",
    "describe",
    "why",
    "tutorial",
    "guide",
)

_MODE_INSTRUCTIONS = {
    "fast": (
        "## Current mode: FAST\n"
        "Be concise and direct. Use at most 3 knowledge base results."
    ),
    "detailed": (
        "## Current mode: DETAILED\n"
        "Give complete explanations with examples and context. "
        "Use up to 6 knowledge base results."
    ),
}


def detect_complexity(question: str) -> str:
    """Return ``"complex"`` when the question looks like it needs a long answer."""
    lowered = question.lower()
    return "complex" if any(i in lowered for i in COMPLEX_INDICATORS) else "simple"


def build_assistant_instructions(
    options: AgentCallOptions,
    prompt: str = "",
    base: str = BASE_INSTRUCTIONS,
) -> str:
    """Compose *base* instructions with the caller's context and mode."""
    context_lines: list[str] = []
    if options.user_name:
        context_lines.append(f"User: {options.user_name}")
    if options.user_role:
        context_lines.append(f"Role: {ROLE_LABELS.get(options.user_role, options.user_role)}")
    if options.school_name:
        context_lines.append(f"School: {options.school_name}")
    elif options.school_id:
        context_lines.append(f"School ID: {options.school_id}")

    sections = [base.strip()]
    if context_lines:
        sections.append("## Current user\n" + "\n".join(context_lines))
    sections.append(_MODE_INSTRUCTIONS[options.response_mode])
    if options.response_mode == "fast" and prompt and detect_complexity(prompt) == "complex":
        sections.append(
            "This question looks complex. Answer briefly and mention that "
            "detailed mode gives a fuller explanation."
        )
    return "\n\n".join(sections)
