"""
Output cleaning utilities for LLM translations.

Clean up common LLM output artifacts before workflow parsing:
- Remove <think>...</think> wrappers (chain-of-thought)
- Remove code fence markers
- Remove timecodes the model echoed back into entry text
"""

import re

_THINK_BLOCK = re.compile(r'<(think|thinking)>.*?</\1>', re.DOTALL | re.IGNORECASE)
_OPEN_THINK = re.compile(r'<(think|thinking)>.*\Z', re.DOTALL | re.IGNORECASE)
_CODE_FENCE = re.compile(r'^\s*```[a-zA-Z0-9_-]*\s*$', re.MULTILINE)
_TIMECODE = re.compile(
    r'\d{2}:\d{2}:\d{2}[,.]\d{3}\s*-->\s*\d{2}:\d{2}:\d{2}[,.]\d{3}[^\n]*\n?'
)


def clean_response(text: str) -> str:
    """
    Clean a raw batch response so workflow parsers only see payload.

    An unterminated <think> block (common mid-stream) is dropped entirely,
    since nothing after it is translation yet.

    Args:
        text: Raw LLM output

    Returns:
        Cleaned response text
    """
    if not text:
        return ""

    text = normalize_newlines(text)
    text = _THINK_BLOCK.sub('', text)
    text = _OPEN_THINK.sub('', text)
    text = _CODE_FENCE.sub('', text)
    return text.strip()


def clean_entry_text(text: str) -> str:
    """Strip echoed timecodes and normalize line endings of one translated entry."""
    if not text:
        return ""
    text = normalize_newlines(text)
    text = _TIMECODE.sub('', text)
    return text.strip()


def normalize_newlines(text: str) -> str:
    return text.replace('\r\n', '\n').replace('\r', '\n')


def has_reasoning_wrapper(text: str) -> bool:
    """
    Check if text contains reasoning wrappers that should be cleaned.

    Args:
        text: Text to check

    Returns:
        True if reasoning wrappers detected
    """
    if not text:
        return False

    patterns = [
        r'<think>',
        r'<thinking>',
        r'^```',
    ]

    return any(re.search(p, text, re.IGNORECASE | re.MULTILINE) for p in patterns)
