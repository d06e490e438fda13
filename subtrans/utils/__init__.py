"""Utility functions and helpers."""

from .logger import setup_logger, get_logger
from .cache import CacheStore, DiskCacheStore, MemoryCacheStore, TranslationMemory
from .config_loader import load_config, save_config

__all__ = [
    'setup_logger',
    'get_logger',
    'CacheStore',
    'DiskCacheStore',
    'MemoryCacheStore',
    'TranslationMemory',
    'load_config',
    'save_config',
]
