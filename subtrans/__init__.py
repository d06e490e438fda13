"""
SubTrans: batch subtitle translation with provider rotation and partial delivery.

Usage:
    from subtrans import TranslationService, JobOptions
    from subtrans.utils.config_loader import load_config

    service = TranslationService(load_config())
    async for progress in service.submit_job(entries, "en", "fr", JobOptions()):
        print(progress.translated_count, "/", progress.total_entries)
"""

__version__ = "1.0.0"
__license__ = "MIT"

from subtrans.core.models import (
    SubtitleEntry,
    Batch,
    JobOptions,
    JobProgress,
    WorkflowMode,
    RotationMode,
)
from subtrans.core.config import PipelineConfig, ProviderConfig
from subtrans.core.orchestrator import TranslationService

__all__ = [
    "__version__",
    "SubtitleEntry",
    "Batch",
    "JobOptions",
    "JobProgress",
    "WorkflowMode",
    "RotationMode",
    "PipelineConfig",
    "ProviderConfig",
    "TranslationService",
]
