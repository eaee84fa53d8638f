"""
Pipeline Module
===============

Lifecycle of the preview pipeline.

Components:
    - PipelineSupervisor: Start/stop/restart, hot swap, watchdog, janitor
    - PipelineState: IDLE / RUNNING / SWAPPING
    - CaptureSession: One capture process and its frame extractor
"""

from camstream.pipeline.supervisor import (
    CaptureSession,
    PipelineState,
    PipelineSupervisor,
)


__all__ = [
    "CaptureSession",
    "PipelineState",
    "PipelineSupervisor",
]
