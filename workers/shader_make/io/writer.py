"""
Writer — serialize the shader_make run report to JSON.
"""
import json
from pathlib import Path

from shader_make.io.schema import RunReport


def write_report(report: RunReport, path: Path) -> Path:
    """
    Write *report* to *path*, creating parent directories.

    Returns the written path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            report.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )
    return path
