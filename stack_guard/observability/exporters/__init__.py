"""Observability exporters."""

from stack_guard.observability.exporters.jsonl_exporter import JsonlFileExporter
from stack_guard.observability.exporters.stdout_exporter import StdoutExporter

__all__ = [
    "StdoutExporter",
    "JsonlFileExporter",
]
