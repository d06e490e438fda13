"""Subtitle source suppliers."""

from .srt import SrtSource, parse_srt, format_srt

__all__ = ['SrtSource', 'parse_srt', 'format_srt']
