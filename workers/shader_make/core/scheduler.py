"""
Task queue and worker pool — the concurrent compile phase.

N worker threads drain one shared stack of CompileTasks.  The queue lock
is held only for pop and re-enqueue; compiler invocations always happen
outside it.  Completed/failed counters and the retry budget are separate
atomics so progress can be read at any time.

Termination is cooperative: workers check the shared flag between tasks
and never abandon a compile in flight.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from shader_make.core.compiler import (
    CompileOutcome,
    CompileRequest,
    PlatformFlags,
    ShaderCompiler,
)
from shader_make.core.errors import CompileError, TransientLaunchError
from shader_make.core.planner import CompileTask
from shader_make.io.artifacts import write_artifacts
from shader_make.policy.context import BuildContext

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"
STATUS_LAUNCH_FAILED = "LAUNCH_FAILED"
STATUS_ERROR = "ERROR"


# ── Shared state ─────────────────────────────────────────────────────────────

class AtomicCounter:
    """Integer guarded by its own lock."""

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def try_consume(self) -> bool:
        """Decrement if positive.  Returns whether a unit was taken."""
        with self._lock:
            if self._value <= 0:
                return False
            self._value -= 1
            return True


class TaskQueue:
    """Pending tasks, serviced most-recently-planned first."""

    def __init__(self, tasks: Optional[List[CompileTask]] = None):
        self._tasks: List[CompileTask] = list(tasks or [])
        self._lock = threading.Lock()

    def pop(self) -> Optional[CompileTask]:
        with self._lock:
            if not self._tasks:
                return None
            return self._tasks.pop()

    def push(self, task: CompileTask) -> None:
        with self._lock:
            self._tasks.append(task)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)


@dataclass
class TaskResult:
    """Final outcome of one task, kept for the run report."""
    task: CompileTask
    status: str
    diagnostics: str = ""
    written: List[Path] = field(default_factory=list)
    payload_sha256: Optional[str] = None
    payload_size: int = 0


class RunState:
    """Run counters shared by every worker."""

    def __init__(
        self,
        total: int,
        retry_budget: int = 0,
        terminate: Optional[threading.Event] = None,
    ):
        self.total = total
        self.completed = AtomicCounter()
        self.failed = AtomicCounter()
        self.retried = AtomicCounter()
        self.retry_budget = AtomicCounter(retry_budget)
        # shared with the interrupt handler
        self.terminate = terminate if terminate is not None else threading.Event()
        self._results: List[TaskResult] = []
        self._results_lock = threading.Lock()

    def record(self, result: TaskResult) -> None:
        with self._results_lock:
            self._results.append(result)

    @property
    def results(self) -> List[TaskResult]:
        with self._results_lock:
            return list(self._results)

    @property
    def succeeded(self) -> bool:
        return not self.terminate.is_set() and self.failed.value == 0


# ── Worker pool ──────────────────────────────────────────────────────────────

def build_request(context: BuildContext, task: CompileTask, flags: PlatformFlags) -> CompileRequest:
    return CompileRequest(
        source_path=task.source_path,
        profile=task.profile,
        entry_point=task.entry_point,
        defines=tuple(task.defines) + tuple(context.defines),
        include_dirs=context.include_dirs,
        optimization_level=task.optimization_level,
        output_base=task.output_base,
        platform_flags=flags,
    )


class WorkerPool:
    """Runs every queued task through the compiler with N threads."""

    def __init__(self, context: BuildContext, compiler: ShaderCompiler, state: RunState):
        self.context = context
        self.compiler = compiler
        self.state = state
        self.flags = PlatformFlags.from_context(context)

    def run(self, queue: TaskQueue) -> RunState:
        """Start the workers and block until all of them exit."""
        count = self.context.worker_count
        logger.debug("Starting %d worker(s) for %d task(s)", count, len(queue))

        threads = [
            threading.Thread(
                target=self._worker, args=(queue,), name=f"shader-make-{i}", daemon=True,
            )
            for i in range(count)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return self.state

    def _worker(self, queue: TaskQueue) -> None:
        while not self.state.terminate.is_set():
            task = queue.pop()
            if task is None:
                return
            try:
                self._process(task, queue)
            except Exception as e:
                logger.exception("Unexpected error while compiling %s", task.source)
                self._fail(task, STATUS_ERROR, f"{type(e).__name__}: {e}\n")

    def _process(self, task: CompileTask, queue: TaskQueue) -> None:
        task.attempts += 1
        outcome = self.compiler.invoke(build_request(self.context, task, self.flags))
        try:
            outcome.raise_for_failure()
        except TransientLaunchError as e:
            if self.state.retry_budget.try_consume():
                self.state.retried.increment()
                logger.warning("%s", self._line("[ RETRY]", task, e.diagnostics))
                queue.push(task)
                return
            self._fail(task, STATUS_LAUNCH_FAILED, e.diagnostics)
            return
        except CompileError as e:
            self._fail(task, STATUS_FAILED, e.diagnostics)
            return

        self._succeed(task, outcome)

    def _succeed(self, task: CompileTask, outcome: CompileOutcome) -> None:
        written = write_artifacts(self.context, task.output_base, outcome.payload, task.has_defines)
        done = self.state.completed.increment()
        progress = 100.0 * done / max(self.state.total, 1)

        message = self._line(f"[{progress:5.1f}%]", task, outcome.diagnostics)
        if outcome.diagnostics:
            logger.warning("%s", message)
        else:
            logger.info("%s", message)

        self.state.record(TaskResult(
            task=task,
            status=STATUS_COMPLETED,
            diagnostics=outcome.diagnostics,
            written=written,
            payload_sha256=hashlib.sha256(outcome.payload).hexdigest(),
            payload_size=len(outcome.payload),
        ))

    def _fail(self, task: CompileTask, status: str, diagnostics: str) -> None:
        logger.error("%s", self._line("[ FAIL ]", task, diagnostics or "<no message text>!\n"))
        if not self.context.continue_on_error:
            self.state.terminate.set()
        self.state.failed.increment()
        self.state.record(TaskResult(task=task, status=status, diagnostics=diagnostics))

    def _line(self, tag: str, task: CompileTask, diagnostics: str) -> str:
        # one record per outcome keeps multi-line diagnostics contiguous
        line = (
            f"{tag} {self.context.platform.value} {task.source} "
            f"{{{task.entry_point}}} {{{task.combined_defines}}}"
        )
        if diagnostics:
            line += "\n" + diagnostics.rstrip("\n")
        return line


def run_tasks(
    context: BuildContext,
    compiler: ShaderCompiler,
    tasks: List[CompileTask],
    state: Optional[RunState] = None,
) -> RunState:
    """Compile *tasks* and return the final run state."""
    state = state or RunState(total=len(tasks), retry_budget=context.retry_count)
    WorkerPool(context, compiler, state).run(TaskQueue(tasks))
    return state
