"""
Request/response shaping strategies ("workflows").

Each workflow serializes a batch of subtitle entries into the text sent to
a provider and parses the provider's answer back into keyed items. The
workflow is chosen once per job; the rest of the pipeline never branches
on the format.

Key modes:
    ordinal  -- items carry their 1-based position inside the batch
    index    -- items carry the subtitle entry index
    position -- no identity, items are matched by order
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Type

from subtrans.core.exceptions import ConfigurationError
from subtrans.core.models import SubtitleEntry, WorkflowMode
from subtrans.translation.output_cleaner import clean_response


@dataclass
class ParsedItem:
    """One translated unit recovered from a provider response."""
    key: Optional[int]
    text: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class Workflow(ABC):
    """Base class for request/response formats."""

    mode: WorkflowMode
    key_mode = "index"
    trusts_provider_timing = False
    format_rules = ""

    def format(self, entries: Sequence[SubtitleEntry]) -> str:
        """Serialize a batch into the request payload."""
        return self.render(self.items_for(entries))

    def items_for(self, entries: Sequence[SubtitleEntry]) -> List[ParsedItem]:
        if self.key_mode == "ordinal":
            return [ParsedItem(pos, e.text) for pos, e in enumerate(entries, start=1)]
        return [ParsedItem(e.index, e.text, e.start_time, e.end_time) for e in entries]

    @abstractmethod
    def render(self, items: List[ParsedItem]) -> str:
        """Serialize items in this workflow's shape."""

    @abstractmethod
    def parse(self, payload: str, expected: Optional[int] = None) -> List[ParsedItem]:
        """
        Parse a complete response.

        ``expected`` is the number of entries sent, when known; formats
        with more than one way to read a response use it to pick one.
        """

    def parse_partial(self, payload: str) -> List[ParsedItem]:
        """
        Parse a response that may still be growing.

        Only items that cannot change any more are returned. The default
        drops the last item, which may be cut mid-sentence.
        """
        return self.parse(payload)[:-1]


_NUMBERED_ITEM = re.compile(r'^(\d+)[.):\s-]+(.+)$', re.DOTALL)
_NUMBERED_LINE = re.compile(r'^(\d+)[.):\s-]+(.+)$')
_BLANK_LINE = re.compile(r'\n\s*\n+')


class NumberedWorkflow(Workflow):
    """Plain numbered list: ``1. text`` blocks separated by blank lines."""

    mode = WorkflowMode.NUMBERED
    key_mode = "ordinal"
    format_rules = (
        "PRESERVE the numbering exactly (1. 2. 3. etc.). "
        "Separate entries with a blank line and keep line breaks within each entry."
    )

    def render(self, items):
        blocks = []
        for item in items:
            text = re.sub(r'\n+', '\n', item.text.strip())
            blocks.append(f"{item.key}. {text}")
        return "\n\n".join(blocks)

    def parse(self, payload, expected=None):
        cleaned = clean_response(payload)
        by_block = self._parse_blocks(cleaned)
        if expected is not None and len(by_block) == expected:
            return by_block
        if expected is None and _BLANK_LINE.search(cleaned):
            return by_block

        # Some models drop the blank lines between entries
        by_line = self._parse_lines(cleaned)
        return by_line if len(by_line) > len(by_block) else by_block

    def parse_partial(self, payload):
        # a block is final once the next one has started
        return self._parse_blocks(clean_response(payload))[:-1]

    @staticmethod
    def _parse_blocks(cleaned: str) -> List[ParsedItem]:
        items = []
        for block in _BLANK_LINE.split(cleaned):
            match = _NUMBERED_ITEM.match(block.strip())
            if match:
                items.append(ParsedItem(int(match.group(1)), match.group(2).strip()))
        return items

    @staticmethod
    def _parse_lines(cleaned: str) -> List[ParsedItem]:
        """Split on numbered lines, counting a line as a new item only when its number follows the last one."""
        items: List[ParsedItem] = []
        current = None
        for line in cleaned.split('\n'):
            stripped = line.strip()
            if not stripped:
                continue
            match = _NUMBERED_LINE.match(stripped)
            if match and (current is None or int(match.group(1)) == current.key + 1):
                current = ParsedItem(int(match.group(1)), match.group(2).strip())
                items.append(current)
            elif current is not None:
                current.text += '\n' + stripped
        return items


_TAG = re.compile(r'<s\s+id=["\']?(\d+)["\']?\s*>(.*?)</s>', re.DOTALL | re.IGNORECASE)


class TaggedWorkflow(Workflow):
    """Each entry wrapped as ``<s id="N">text</s>`` using the entry index."""

    mode = WorkflowMode.TAGGED
    format_rules = (
        'Each entry is wrapped as <s id="N">text</s>. Return every entry wrapped '
        "in the same tag with the same id, translating only the text inside."
    )

    def render(self, items):
        return "\n".join(f'<s id="{item.key}">{item.text.strip()}</s>' for item in items)

    def parse(self, payload, expected=None):
        cleaned = clean_response(payload)
        return [ParsedItem(int(m.group(1)), m.group(2).strip()) for m in _TAG.finditer(cleaned)]

    def parse_partial(self, payload):
        # only closed tags match, so everything found is final
        return self.parse(payload)


class StructuredWorkflow(Workflow):
    """JSON array of ``{"id": N, "text": "..."}`` objects."""

    mode = WorkflowMode.STRUCTURED
    format_rules = (
        'Input is a JSON array of objects {"id": N, "text": "..."}. Return a JSON '
        "array with the same ids and translated text, and nothing else."
    )

    def render(self, items):
        return json.dumps([{"id": item.key, "text": item.text} for item in items], ensure_ascii=False)

    @staticmethod
    def _to_item(obj) -> Optional[ParsedItem]:
        if not isinstance(obj, dict):
            return None
        key = obj.get("id", obj.get("index"))
        text = obj.get("text", obj.get("translation"))
        if key is None or text is None:
            return None
        try:
            return ParsedItem(int(key), str(text))
        except (TypeError, ValueError):
            return None

    def parse(self, payload, expected=None):
        cleaned = clean_response(payload)
        start, end = cleaned.find('['), cleaned.rfind(']')
        if start != -1 and end > start:
            try:
                data = json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                data = None
            if isinstance(data, list):
                return [item for item in map(self._to_item, data) if item is not None]
        return self._scan_objects(cleaned)

    def parse_partial(self, payload):
        return self._scan_objects(clean_response(payload))

    def _scan_objects(self, text: str) -> List[ParsedItem]:
        """Decode every complete top-level object, tolerating truncated or invalid JSON around them."""
        decoder = json.JSONDecoder()
        items = []
        pos = text.find('{')
        while pos != -1:
            try:
                obj, end = decoder.raw_decode(text, pos)
            except json.JSONDecodeError:
                pos = text.find('{', pos + 1)
                continue
            item = self._to_item(obj)
            if item is not None:
                items.append(item)
            pos = text.find('{', end)
        return items


_SRT_TIMECODE = re.compile(
    r'^(\d{2}:\d{2}:\d{2}[,.]\d{3})\s*-->\s*(\d{2}:\d{2}:\d{2}[,.]\d{3})'
)


class RawTimedWorkflow(Workflow):
    """
    Raw SubRip text, timecodes included.

    Opt-in: the provider sees and returns timings, and those timings are
    kept. Items have no identity and are aligned by order.
    """

    mode = WorkflowMode.RAW_TIMED
    key_mode = "position"
    trusts_provider_timing = True
    format_rules = (
        "Input is SRT. Keep every cue number and timecode line unchanged and "
        "translate only the text lines."
    )

    def render(self, items):
        blocks = []
        for number, item in enumerate(items, start=1):
            timecode = f"{item.start_time} --> {item.end_time}"
            blocks.append(f"{number}\n{timecode}\n{item.text.strip()}")
        return "\n\n".join(blocks)

    def parse(self, payload, expected=None):
        cleaned = clean_response(payload)
        items = []
        for block in re.split(r'\n\s*\n+', cleaned):
            lines = [line for line in block.strip().split('\n')]
            if lines and lines[0].strip().isdigit():
                lines = lines[1:]
            if not lines:
                continue
            match = _SRT_TIMECODE.match(lines[0].strip())
            if not match:
                continue
            text = '\n'.join(line.strip() for line in lines[1:]).strip()
            items.append(ParsedItem(None, text, match.group(1), match.group(2)))
        return items


WORKFLOWS: Dict[WorkflowMode, Type[Workflow]] = {
    WorkflowMode.NUMBERED: NumberedWorkflow,
    WorkflowMode.TAGGED: TaggedWorkflow,
    WorkflowMode.STRUCTURED: StructuredWorkflow,
    WorkflowMode.RAW_TIMED: RawTimedWorkflow,
}


def get_workflow(mode) -> Workflow:
    """Instantiate the workflow for a mode (enum or its string value)."""
    try:
        mode = WorkflowMode(mode)
    except ValueError:
        raise ConfigurationError(
            f"Unknown workflow: {mode}",
            config_key="workflow",
            invalid_value=mode,
            valid_values=[m.value for m in WorkflowMode]
        )
    return WORKFLOWS[mode]()
