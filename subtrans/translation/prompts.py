"""
Prompt construction for subtitle batch translation.

All instructions go into the system prompt; the user message carries only
the workflow payload.
"""

from typing import Optional

from subtrans.translation.workflows import Workflow

DEFAULT_TEMPLATE = """You are translating subtitle text from {source_language} to {target_language}.

CRITICAL RULES:
1. Translate ONLY the text content
2. {format_rules}
3. Return EXACTLY {count} entries
4. Maintain natural dialogue flow for {target_language}
5. Use appropriate colloquialisms for {target_language}

DO NOT:
- Add ANY explanations, notes, or commentary before, after, or between entries
- Add alternative translations or suggestions
- Skip, merge or split entries
- Add extra entries beyond {count}

YOUR RESPONSE MUST contain the {count} translated entries and NOTHING else."""


def build_system_prompt(
    workflow: Workflow,
    source_lang: str,
    target_lang: str,
    count: int,
    custom_prompt: Optional[str] = None
) -> str:
    """
    Build the system prompt for one batch.

    A custom prompt replaces the default instructions; ``{target_language}``
    inside it is substituted. The workflow's format rules are always
    appended so custom prompts cannot break parsing.

    Args:
        workflow: Active workflow
        source_lang: Source language (name or code)
        target_lang: Target language (name or code)
        count: Number of entries in the batch
        custom_prompt: Optional user-provided instructions

    Returns:
        System prompt text
    """
    if custom_prompt:
        prompt = custom_prompt.replace("{target_language}", target_lang)
        return f"{prompt}\n\nFORMAT: {workflow.format_rules} Return exactly {count} entries."

    return DEFAULT_TEMPLATE.format(
        source_language=source_lang or "the detected language",
        target_language=target_lang,
        format_rules=workflow.format_rules,
        count=count,
    )
