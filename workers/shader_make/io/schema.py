"""
Schema — Pydantic models for the shader_make run report.

One output file, written only when ``--report`` is given:
  run_report.json   — counts, per-task outcomes and written containers.

Runtime contract fields (present in every report):
  package_name, shader_make_version, schema_version.
"""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from shader_make import PACKAGE_NAME, SCHEMA_VERSION, __version__


# ── Per-task record ──────────────────────────────────────────────────────────

class TaskRecord(BaseModel):
    """Outcome of one compiled permutation."""
    source: str
    profile: str
    entry_point: str
    combined_defines: str
    output_base: str
    status: str              # COMPLETED | FAILED | LAUNCH_FAILED | ERROR
    attempts: int = 0
    diagnostics: str = ""
    outputs: List[str] = Field(default_factory=list)
    payload_sha256: Optional[str] = None
    payload_size: int = 0


# ── Container record ─────────────────────────────────────────────────────────

class ContainerRecord(BaseModel):
    """One container file (or one skipped group)."""
    group: str
    path: str
    encoding: str            # binary | text | "" when skipped
    labels: List[str] = Field(default_factory=list)
    status: str              # WRITTEN | SKIPPED
    error: str = ""


# ── Run report ───────────────────────────────────────────────────────────────

class RunCounts(BaseModel):
    directives: int = 0
    planned: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    up_to_date: int = 0
    unsupported: int = 0
    containers_written: int = 0
    containers_failed: int = 0


class RunReport(BaseModel):
    """Top-level report for one shader_make invocation."""
    package_name: str = PACKAGE_NAME
    shader_make_version: str = __version__
    schema_version: str = SCHEMA_VERSION

    platform: str
    config_file: str
    output_dir: str
    started_at: str
    finished_at: Optional[str] = None
    elapsed_ms: float = 0.0

    status: str = "SUCCESS"  # SUCCESS | FAILED | UP_TO_DATE | ABORTED
    error: Optional[str] = None

    counts: RunCounts = Field(default_factory=RunCounts)
    tasks: List[TaskRecord] = Field(default_factory=list)
    containers: List[ContainerRecord] = Field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 0 if self.status in ("SUCCESS", "UP_TO_DATE") else 1
