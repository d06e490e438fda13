"""
SubRip (.srt) source supplier.

Only what the pipeline needs: read cues into ``SubtitleEntry`` objects and
write translated entries back out.
"""

import re
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from subtrans.core.models import SubtitleEntry
from subtrans.translation.output_cleaner import normalize_newlines

_TIMECODE = re.compile(
    r'^\s*(\d{1,2}:\d{2}:\d{2}[,.]\d{1,3})\s*-->\s*(\d{1,2}:\d{2}:\d{2}[,.]\d{1,3})'
)


def _normalize_time(value: str) -> str:
    hms, _, millis = value.replace('.', ',').partition(',')
    hours, minutes, seconds = hms.split(':')
    return f"{int(hours):02d}:{minutes}:{seconds},{millis.ljust(3, '0')[:3]}"


def parse_srt(content: str) -> List[SubtitleEntry]:
    """
    Parse SubRip text.

    Cues are numbered 1..N in file order; the numbers written in the file
    are ignored because real-world files often repeat or skip them. Blocks
    without a timecode line are skipped.
    """
    content = normalize_newlines(content).lstrip('\ufeff')
    entries = []
    for block in re.split(r'\n\s*\n', content.strip()):
        lines = block.split('\n')
        for pos, line in enumerate(lines[:2]):
            match = _TIMECODE.match(line)
            if match:
                text = '\n'.join(l.rstrip() for l in lines[pos + 1:]).strip()
                entries.append(SubtitleEntry(
                    index=len(entries) + 1,
                    start_time=_normalize_time(match.group(1)),
                    end_time=_normalize_time(match.group(2)),
                    text=text,
                ))
                break
    return entries


def format_srt(entries: Iterable[SubtitleEntry]) -> str:
    """Serialize entries as SubRip, numbering cues in iteration order."""
    blocks = []
    for number, entry in enumerate(entries, start=1):
        blocks.append(f"{number}\n{entry.timecode}\n{entry.text}")
    return "\n\n".join(blocks) + ("\n" if blocks else "")


class SrtSource:
    """Supplies one job's entries and language pair from a SubRip file."""

    def __init__(self, path: str, target_lang: str, source_lang: Optional[str] = None, encoding: str = "utf-8-sig"):
        self.path = Path(path)
        self.target_lang = target_lang
        self.source_lang = source_lang or "auto"
        self.encoding = encoding

    def load(self) -> Tuple[List[SubtitleEntry], str, str]:
        content = self.path.read_text(encoding=self.encoding, errors="replace")
        return parse_srt(content), self.source_lang, self.target_lang

    @staticmethod
    def write(path: str, merged_text: str) -> Path:
        output = Path(path)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(merged_text, encoding="utf-8")
        return output
