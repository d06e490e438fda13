"""
Core data models for SubTrans.

Subtitle entries, batches, health and cache records used throughout the
translation pipeline. Records stored in the cache are converted to plain
dictionaries so any key-value backend can hold them.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Dict, Optional, Any, Set, Tuple
import hashlib
import json
import time


class WorkflowMode(Enum):
    """Request/response shaping strategies."""
    NUMBERED = "numbered"
    TAGGED = "tagged"
    STRUCTURED = "structured"
    RAW_TIMED = "raw_timed"


class RotationMode(Enum):
    """How often the active credential changes."""
    PER_BATCH = "per_batch"
    PER_REQUEST = "per_request"


class JobState(Enum):
    """Orchestrator states for a single job."""
    PLANNING = "planning"
    SELECT_CREDENTIAL = "select_credential"
    CALL = "call"
    RETRY = "retry"
    ROTATE = "rotate"
    FALLBACK = "fallback"
    ALIGN = "align"
    RECOVER = "recover"
    MERGE = "merge"
    CHECKPOINT = "checkpoint"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class SubtitleEntry:
    """One timed subtitle cue. ``index`` is its identity and is never reassigned."""
    index: int
    start_time: str
    end_time: str
    text: str

    def __post_init__(self):
        if self.index < 1:
            raise ValueError(f"Subtitle index must be >= 1, got {self.index}")

    @property
    def timecode(self) -> str:
        return f"{self.start_time} --> {self.end_time}"


@dataclass(frozen=True)
class Batch:
    """Contiguous ordered slice of entries plus the serialized request payload."""
    number: int
    entries: Tuple[SubtitleEntry, ...]
    payload: str
    estimated_tokens: int = 0

    @property
    def first_index(self) -> int:
        return self.entries[0].index

    @property
    def last_index(self) -> int:
        return self.entries[-1].index

    @property
    def indices(self) -> List[int]:
        return [entry.index for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class KeyHealth:
    """Per-credential error accounting, shared across jobs and processes."""
    error_count: int = 0
    window_start: float = 0.0
    cooldown_until: float = 0.0

    def is_cooling(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.cooldown_until > now

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "KeyHealth":
        if not data:
            return cls()
        return cls(
            error_count=int(data.get("error_count", 0)),
            window_start=float(data.get("window_start", 0.0)),
            cooldown_until=float(data.get("cooldown_until", 0.0)),
        )


@dataclass
class AlignmentResult:
    """
    Translated text resolved per entry index plus the indices still missing.

    ``unresolved`` lists entries that were filled with a marked copy of the
    source text after recovery gave up; they count as resolved.
    """
    resolved: Dict[int, str] = field(default_factory=dict)
    missing: Set[int] = field(default_factory=set)
    timings: Dict[int, Tuple[str, str]] = field(default_factory=dict)
    unresolved: Set[int] = field(default_factory=set)

    @property
    def is_complete(self) -> bool:
        return not self.missing

    def merge(self, other: "AlignmentResult") -> "AlignmentResult":
        """Fill this result's missing indices from ``other``; resolved entries are never overwritten."""
        for index in sorted(self.missing):
            if index in other.resolved:
                self.resolved[index] = other.resolved[index]
                if index in other.timings:
                    self.timings[index] = other.timings[index]
        self.missing -= set(other.resolved)
        return self

    @classmethod
    def combine(cls, results: List["AlignmentResult"]) -> "AlignmentResult":
        """Union of results covering disjoint entry sets (e.g. the two halves of a split batch)."""
        combined = cls()
        for result in results:
            combined.resolved.update(result.resolved)
            combined.timings.update(result.timings)
            combined.unresolved |= result.unresolved
            combined.missing |= result.missing
        combined.missing -= set(combined.resolved)
        return combined


@dataclass
class PartialRecord:
    """In-flight progress of a job, visible to pollers."""
    merged_text: str
    translated_count: int
    total_entries: int
    saved_at_sequence: int
    updated_at: float = field(default_factory=time.time)
    is_complete: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = "partial"
        return data


@dataclass
class FinalRecord:
    """Completed translation of a job."""
    merged_text: str
    translated_count: int
    total_entries: int
    unresolved_count: int = 0
    provider_summary: Dict[str, int] = field(default_factory=dict)
    completed_at: float = field(default_factory=time.time)
    is_complete: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = "final"
        return data


@dataclass
class ErrorRecord:
    """Short-lived record of an unrecoverable job failure."""
    error_type: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = "error"
        return data


@dataclass
class JobProgress:
    """What callers of ``submit_job`` receive."""
    fingerprint: str
    translated_count: int = 0
    total_entries: int = 0
    merged_text: str = ""
    is_complete: bool = False
    error: Optional[Dict[str, Any]] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @classmethod
    def from_record(cls, fingerprint: str, record: Dict[str, Any]) -> "JobProgress":
        """Build progress from a stored partial, final or error record."""
        kind = record.get("kind")
        if kind == "error":
            return cls(
                fingerprint=fingerprint,
                error={
                    "error_type": record.get("error_type"),
                    "message": record.get("message"),
                    "details": record.get("details", {}),
                },
            )
        return cls(
            fingerprint=fingerprint,
            translated_count=int(record.get("translated_count", 0)),
            total_entries=int(record.get("total_entries", 0)),
            merged_text=record.get("merged_text", ""),
            is_complete=bool(record.get("is_complete", False)),
        )


@dataclass
class JobOptions:
    """Per-job options that shape the request and therefore the fingerprint."""
    workflow: WorkflowMode = WorkflowMode.NUMBERED
    streaming: bool = False
    rotation_mode: RotationMode = RotationMode.PER_BATCH
    custom_prompt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow.value,
            "streaming": self.streaming,
            "rotation_mode": self.rotation_mode.value,
            "custom_prompt": self.custom_prompt,
        }


def make_fingerprint(
    entries: List[SubtitleEntry],
    source_lang: str,
    target_lang: str,
    options: JobOptions,
    provider_signature: List[Dict[str, Any]]
) -> str:
    """
    Stable identifier of a translation job.

    Covers the source content, the language pair, the workflow and the
    provider configuration (names and models, never credentials). Streaming
    and rotation granularity only affect delivery, not output, so they are
    left out.
    """
    payload = {
        "entries": [[e.index, e.start_time, e.end_time, e.text] for e in entries],
        "source": source_lang,
        "target": target_lang,
        "workflow": options.workflow.value,
        "prompt": options.custom_prompt,
        "providers": provider_signature,
    }
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
