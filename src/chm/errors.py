#!/usr/bin/env python3
"""chm.errors

Failure kinds surfaced to the operator. Each carries the pipeline step it
came from so the CLI can print `[step] message` and exit.
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for failures the pipeline reports instead of crashing on."""

    step = "pipeline"

    def __init__(self, message: str, *, step: Optional[str] = None) -> None:
        super().__init__(message)
        if step is not None:
            self.step = step


class AssetError(PipelineError, FileNotFoundError):
    """A configured input is missing or unreadable. Fatal, raised before processing."""

    step = "assets"


class EmptySampleError(PipelineError, ValueError):
    """Filtering left nothing to fit or evaluate on."""

    step = "samples"


class ExportError(PipelineError, OSError):
    """An artifact could not be written (size ceiling, permissions, disk)."""

    step = "export"


class PairingError(PipelineError, ValueError):
    """Observed and predicted values could not be paired one-to-one."""

    step = "eval"
