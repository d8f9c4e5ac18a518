"""
Personalization prompt block: user guidance plus remembered facts.
"""

from typing import Optional

PERSONALIZATION_PREAMBLE = (
    "Apply the following user personalization to every answer unless they conflict "
    "with safety rules or the user's explicit override in this chat."
)


def compose_personalization_prompt(guidance: str, memory_contents: list[str]) -> Optional[str]:
    """Build the system block, or None when there is nothing to personalize with."""
    guidance = (guidance or "").strip()
    facts = [content.strip() for content in memory_contents if content and content.strip()]

    if not guidance and not facts:
        return None

    sections = [PERSONALIZATION_PREAMBLE]
    if guidance:
        sections.append("[USER GUIDANCE]\n" + guidance)
    if facts:
        sections.append(
            "[USER MEMORY] Known facts about this user:\n"
            + "\n".join(f"- {fact}" for fact in facts)
        )
    return "\n\n".join(sections)
