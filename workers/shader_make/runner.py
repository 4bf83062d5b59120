"""
shader_make runner — top-level orchestration: config file → compiled shaders.

Ties the phases together in a single ``run_shader_make`` call:

  1. plan     — load config, expand permutations, judge staleness (1 thread)
  2. compile  — worker pool drains the task queue (N threads)
  3. assemble — pack permutations into containers (1 thread, after join)

Callable from the CLI below or programmatically with an injected
compiler backend.
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from shader_make.core.assembler import ContainerAssembler, ContainerResult
from shader_make.core.compiler import ShaderCompiler, select_compiler
from shader_make.core.config_loader import load_config
from shader_make.core.errors import ConfigurationError, ShaderMakeError
from shader_make.core.planner import BuildPlan, TaskPlanner
from shader_make.core.scheduler import STATUS_COMPLETED, RunState, TaskResult, run_tasks
from shader_make.io.schema import ContainerRecord, RunCounts, RunReport, TaskRecord
from shader_make.io.writer import write_report
from shader_make.policy.context import BuildContext, OutputKinds, Platform
from shader_make.policy.settings import ShaderMakeSettings, load_settings

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Conversion helpers ───────────────────────────────────────────────────────

def _task_record(result: TaskResult) -> TaskRecord:
    task = result.task
    return TaskRecord(
        source=task.source,
        profile=task.profile,
        entry_point=task.entry_point,
        combined_defines=task.combined_defines,
        output_base=str(task.output_base),
        status=result.status,
        attempts=task.attempts,
        diagnostics=result.diagnostics,
        outputs=[str(p) for p in result.written],
        payload_sha256=result.payload_sha256,
        payload_size=result.payload_size,
    )


def _container_record(result: ContainerResult) -> ContainerRecord:
    return ContainerRecord(
        group=result.group,
        path=str(result.path),
        encoding=result.encoding,
        labels=list(result.labels),
        status=result.status,
        error=result.error,
    )


# ── Public API ───────────────────────────────────────────────────────────────

def plan_tasks(context: BuildContext) -> BuildPlan:
    """
    Load the config file and decide what to compile.

    Raises ConfigurationError / DependencyResolutionError; nothing has
    been compiled when either escapes.
    """
    lines = load_config(context.config_file, context.defines)
    return TaskPlanner(context).plan(lines)


def run_shader_make(
    context: BuildContext,
    compiler: Optional[ShaderCompiler] = None,
    report_path: Optional[Path] = None,
    terminate: Optional[threading.Event] = None,
) -> RunReport:
    """
    Run one full build.

    Parameters
    ----------
    context : BuildContext
        Frozen run configuration.
    compiler : ShaderCompiler, optional
        Backend to drive.  Defaults to the external process backend
        selected from ``context.compiler``.
    report_path : Path, optional
        Where to write the JSON run report.  Not written if None.
    terminate : threading.Event, optional
        Shared termination flag, e.g. set by a signal handler.

    Returns
    -------
    RunReport
        ``report.exit_code`` is the process exit status.  Planning and
        fatal assembly errors are raised after the report is written.
    """
    started = time.perf_counter()
    report = RunReport(
        platform=context.platform.value,
        config_file=str(context.config_file),
        output_dir=str(context.output_dir),
        started_at=_now(),
    )

    def _finish() -> RunReport:
        report.finished_at = _now()
        report.elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        if report_path is not None:
            write_report(report, report_path)
            logger.info("Wrote run report to %s", report_path)
        return report

    state: Optional[RunState] = None
    assembler = ContainerAssembler(context)
    try:
        context.validate()
        if compiler is None:
            compiler = select_compiler(context)

        # ── Step 1: plan ─────────────────────────────────────────────
        plan = plan_tasks(context)
        report.counts = RunCounts(
            directives=plan.directive_count,
            planned=len(plan.tasks),
            up_to_date=plan.up_to_date_count,
            unsupported=plan.unsupported_count,
        )
        if not plan.tasks:
            report.status = "UP_TO_DATE"
            return _finish()

        # ── Step 2: compile ──────────────────────────────────────────
        state = RunState(
            total=len(plan.tasks),
            retry_budget=context.retry_count,
            terminate=terminate,
        )
        run_tasks(context, compiler, plan.tasks, state)

        # ── Step 3: assemble ─────────────────────────────────────────
        if state.terminate.is_set():
            logger.warning("Terminated; skipping container assembly")
        else:
            failed_outputs = {
                r.task.output_base for r in state.results if r.status != STATUS_COMPLETED
            }
            assembler.assemble(plan.groups, failed_outputs)

    except ShaderMakeError as e:
        report.status = "FAILED"
        report.error = str(e)
        _fill_results(report, state, assembler)
        _finish()
        raise

    _fill_results(report, state, assembler)
    if state.failed.value or assembler.failed_groups:
        report.status = "FAILED"
    elif state.terminate.is_set():
        report.status = "ABORTED"
    else:
        report.status = "SUCCESS"
    return _finish()


def _fill_results(
    report: RunReport,
    state: Optional[RunState],
    assembler: ContainerAssembler,
) -> None:
    if state is not None:
        report.counts.completed = state.completed.value
        report.counts.failed = state.failed.value
        report.counts.retried = state.retried.value
        report.tasks = [_task_record(r) for r in state.results]
    report.containers = [_container_record(r) for r in assembler.results]
    report.counts.containers_written = sum(1 for r in assembler.results if r.status == "WRITTEN")
    report.counts.containers_failed = assembler.failed_groups


# ── CLI ──────────────────────────────────────────────────────────────────────

_COLORS = {
    logging.DEBUG: "\033[90m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[31m",
}
_RESET = "\033[0m"
_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"


class _ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = _COLORS.get(record.levelno)
        return f"{color}{text}{_RESET}" if color else text


def _configure_logging(verbose: bool, colorize: bool) -> None:
    handler = logging.StreamHandler()
    formatter_cls = _ColorFormatter if colorize else logging.Formatter
    handler.setFormatter(formatter_cls(_LOG_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[handler],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shader-make",
        description="shader_make — multi-threaded shader permutation compiler",
    )

    req = parser.add_argument_group("required options")
    req.add_argument("-p", "--platform", required=True, help="DXBC, DXIL or SPIRV")
    req.add_argument("-c", "--config", required=True, type=Path,
                     help="Configuration file with the list of shaders to compile")
    req.add_argument("-o", "--out", required=True, type=Path, help="Output directory")
    req.add_argument("--binary", action="store_true", help="Output native binary files")
    req.add_argument("--header", action="store_true", help="Output header files")
    req.add_argument("--blob", action="store_true", help="Output shader container files")
    req.add_argument("--headerBlob", action="store_true",
                     help="Output shader containers as header files")
    req.add_argument("--compiler", default=None,
                     help="Path to a specific FXC/DXC compiler (env: SHADERMAKE_COMPILER)")

    comp = parser.add_argument_group("compiler settings")
    comp.add_argument("-m", "--shaderModel", default=None,
                      help="Shader model for DXIL/SPIRV, always 5_0 for DXBC (default = 6_5)")
    comp.add_argument("-O", "--optimization", type=int, default=None,
                      help="Optimization level 0-3 (default = 3, disabled = 0)")
    comp.add_argument("--WX", action="store_true", help="Warnings are errors")
    comp.add_argument("--allResourcesBound", action="store_true", help="All resources bound")
    comp.add_argument("--PDB", action="store_true", help="Output PDB files in 'out/PDB/' folder")
    comp.add_argument("--stripReflection", action="store_true",
                      help="Strip reflection information from a shader binary")
    comp.add_argument("--matrixRowMajor", action="store_true",
                      help="Pack matrices in row-major order")

    incl = parser.add_argument_group("defines & include directories")
    incl.add_argument("-I", "--include", action="append", default=[],
                      help="Include directory (repeatable)")
    incl.add_argument("-D", "--define", action="append", default=[],
                      help="Macro definition in forms 'M=value' or 'M' (repeatable)")

    other = parser.add_argument_group("other options")
    other.add_argument("-f", "--force", action="store_true", help="Treat all source files as modified")
    other.add_argument("--sourceDir", default="", help="Source code directory")
    other.add_argument("--relaxedInclude", action="append", default=[],
                       help="Include file not invoking re-compilation (repeatable)")
    other.add_argument("--outputExt", default=None,
                       help="Extension for output files, default is one of .dxbc, .dxil, .spirv")
    other.add_argument("--serial", action="store_true", help="Disable multi-threading")
    other.add_argument("--flatten", action="store_true",
                       help="Flatten source directory structure in the output directory")
    other.add_argument("--continue", dest="continue_on_error", action="store_true",
                       help="Continue compilation if an error occurs")
    other.add_argument("--retries", type=int, default=None,
                       help="Run-wide budget of compiler launch retries (default = 0)")
    other.add_argument("--report", type=Path, default=None, help="Write a JSON run report")
    other.add_argument("--colorize", action="store_true", help="Colorize console output")
    other.add_argument("--verbose", action="store_true",
                       help="Print commands before they are executed")

    spirv = parser.add_argument_group("SPIRV options")
    spirv.add_argument("--vulkanVersion", default=None,
                       help="Vulkan environment version, maps to '-fspv-target-env' (default = 1.3)")
    spirv.add_argument("--spirvExt", action="append", default=[],
                       help="Add SPIR-V extension permitted to use (repeatable)")
    spirv.add_argument("--sRegShift", type=int, default=None, help="Register shift for sampler (s#) resources")
    spirv.add_argument("--tRegShift", type=int, default=None, help="Register shift for texture (t#) resources")
    spirv.add_argument("--bRegShift", type=int, default=None, help="Register shift for constant (b#) resources")
    spirv.add_argument("--uRegShift", type=int, default=None, help="Register shift for UAV (u#) resources")
    return parser


def _pick(value, default):
    return default if value is None else value


def context_from_args(
    args: argparse.Namespace,
    settings: Optional[ShaderMakeSettings] = None,
) -> BuildContext:
    """Build the frozen run context; CLI values win over settings."""
    settings = settings or load_settings()

    config_file = Path(args.config).absolute()
    if not config_file.exists():
        raise ConfigurationError(f"Config file '{args.config}' does not exist!")

    compiler = _pick(args.compiler, settings.COMPILER)
    spirv_extensions = tuple(args.spirvExt) or BuildContext.spirv_extensions

    tool_path: Optional[Path] = Path(sys.argv[0]).absolute() if sys.argv and sys.argv[0] else None
    if tool_path is not None and not tool_path.is_file():
        tool_path = None

    return BuildContext(
        platform=Platform.parse(args.platform),
        config_file=config_file,
        output_dir=Path(args.out).absolute(),
        output_kinds=OutputKinds(
            binary=args.binary,
            header=args.header,
            binary_blob=args.blob,
            header_blob=args.headerBlob,
        ),
        defines=tuple(args.define),
        include_dirs=tuple(config_file.parent / d for d in args.include),
        relaxed_includes=frozenset(args.relaxedInclude),
        source_dir=args.sourceDir,
        output_ext=_pick(args.outputExt, settings.OUTPUT_EXT),
        compiler=Path(compiler) if compiler else None,
        shader_model=_pick(args.shaderModel, settings.SHADER_MODEL),
        optimization_level=_pick(args.optimization, settings.OPTIMIZATION_LEVEL),
        warnings_are_errors=args.WX,
        all_resources_bound=args.allResourcesBound,
        pdb=args.PDB,
        strip_reflection=args.stripReflection,
        matrix_row_major=args.matrixRowMajor,
        vulkan_version=_pick(args.vulkanVersion, settings.VULKAN_VERSION),
        spirv_extensions=spirv_extensions,
        s_reg_shift=_pick(args.sRegShift, settings.S_REG_SHIFT),
        t_reg_shift=_pick(args.tRegShift, settings.T_REG_SHIFT),
        b_reg_shift=_pick(args.bRegShift, settings.B_REG_SHIFT),
        u_reg_shift=_pick(args.uRegShift, settings.U_REG_SHIFT),
        force=args.force,
        serial=args.serial,
        flatten=args.flatten,
        continue_on_error=args.continue_on_error,
        retry_count=_pick(args.retries, settings.RETRY_COUNT),
        verbose=args.verbose,
        tool_path=tool_path,
    )


def _install_interrupt_handler(terminate: threading.Event) -> None:
    def _handler(signum, frame):
        terminate.set()
        logger.warning("Aborting...")

    signal.signal(signal.SIGINT, _handler)
    if hasattr(signal, "SIGBREAK"):
        signal.signal(signal.SIGBREAK, _handler)


def print_summary(report: RunReport) -> None:
    if report.status == "UP_TO_DATE":
        print(f"All {report.platform} shaders are up to date.")
        return
    counts = report.counts
    if counts.failed:
        print(f"WARNING: {counts.failed} task(s) failed to complete!")
    if counts.containers_failed:
        print(f"WARNING: {counts.containers_failed} container(s) could not be assembled!")
    if report.status == "ABORTED":
        print(f"Aborted: {counts.completed} of {counts.planned} task(s) completed.")
    elif report.status == "SUCCESS":
        print(f"{counts.planned} task(s) completed successfully.")
    print(f"Elapsed time {report.elapsed_ms:.2f} ms")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for shader_make."""
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose, args.colorize)

    terminate = threading.Event()
    _install_interrupt_handler(terminate)

    try:
        context = context_from_args(args)
        report = run_shader_make(context, report_path=args.report, terminate=terminate)
    except ShaderMakeError as e:
        logger.error("%s", e)
        return 1

    print_summary(report)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
