"""Pipeline runner: component wiring and lifecycle."""

from workpipe.runners.pipeline import (
    WorkPipeline,
    build_report,
    build_store,
    format_report,
    run_pipeline,
)

__all__ = ["WorkPipeline", "build_report", "build_store", "format_report", "run_pipeline"]
