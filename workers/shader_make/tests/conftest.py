"""
Test fixtures for shader_make.

Provides a small shader tree with a config file, a BuildContext factory
and a scripted compiler backend, so no real FXC/DXC is needed.
"""
from __future__ import annotations

import os
import textwrap
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import pytest

from shader_make.core.compiler import CompileOutcome, CompileRequest, ShaderCompiler
from shader_make.policy.context import BuildContext, OutputKinds, Platform

# Well in the past, so anything written by a test run is newer.
OLD_NS = 1_000_000_000 * 10**9


def set_mtime(path: Path, ns: int) -> None:
    os.utime(path, ns=(ns, ns))


# ── Sample shader sources ────────────────────────────────────────────────────

COMMON_HLSLI = textwrap.dedent("""\
    #pragma once
    #include "constants.hlsli"
    float3 Luminance(float3 c) { return dot(c, kLumaWeights); }
""")

CONSTANTS_HLSLI = textwrap.dedent("""\
    static const float3 kLumaWeights = float3(0.2126, 0.7152, 0.0722);
""")

DEBUG_HLSLI = textwrap.dedent("""\
    #define DEBUG_COLOR float4(1, 0, 1, 1)
""")

BLUR_HLSL = textwrap.dedent("""\
    #include "common.hlsli"
    #include <debug.hlsli>
    [numthreads(8, 8, 1)]
    void main(uint3 id : SV_DispatchThreadID) {}
""")

TONEMAP_HLSL = textwrap.dedent("""\
    #include "common.hlsli"
    float4 psMain(float4 pos : SV_Position) : SV_Target { return 0; }
""")

MESH_HLSL = textwrap.dedent("""\
    [outputtopology("triangle")]
    [numthreads(32, 1, 1)]
    void main() {}
""")

SHADERS_CFG = textwrap.dedent("""\
    // Post-processing passes
    shaders/blur.hlsl -T cs -D RADIUS={3,5}
    shaders/tonemap.hlsl -T ps -E psMain

    #ifdef WITH_MESH
    shaders/mesh.hlsl -T ms
    #endif
""")


@pytest.fixture
def shader_tree(tmp_path: Path) -> Path:
    """Project root with shaders/, include/ and shaders.cfg, all old."""
    root = tmp_path / "project"
    shaders = root / "shaders"
    include = root / "include"
    shaders.mkdir(parents=True)
    include.mkdir()

    files = {
        shaders / "common.hlsli": COMMON_HLSLI,
        shaders / "constants.hlsli": CONSTANTS_HLSLI,
        include / "debug.hlsli": DEBUG_HLSLI,
        shaders / "blur.hlsl": BLUR_HLSL,
        shaders / "tonemap.hlsl": TONEMAP_HLSL,
        shaders / "mesh.hlsl": MESH_HLSL,
        root / "shaders.cfg": SHADERS_CFG,
    }
    for path, text in files.items():
        path.write_text(text)
        set_mtime(path, OLD_NS)
    return root


@pytest.fixture
def make_context(shader_tree: Path) -> Callable[..., BuildContext]:
    """Factory for a BuildContext over *shader_tree*; kwargs override fields."""

    def _make(config_text: Optional[str] = None, **overrides) -> BuildContext:
        config_file = shader_tree / "shaders.cfg"
        if config_text is not None:
            config_file.write_text(textwrap.dedent(config_text))
            set_mtime(config_file, OLD_NS)
        context = BuildContext(
            platform=Platform.DXIL,
            config_file=config_file,
            output_dir=shader_tree / "out",
            output_kinds=OutputKinds(binary=True),
            include_dirs=(shader_tree / "include",),
            serial=True,
        )
        return replace(context, **overrides)

    return _make


# ── Scripted compiler ────────────────────────────────────────────────────────

class FakeCompiler(ShaderCompiler):
    """
    Returns a deterministic payload per permutation.

    *launch_failures* makes the first N invocations fail to start;
    *failing_sources* makes every compile of those source names fail.
    """

    name = "fake"

    def __init__(
        self,
        launch_failures: int = 0,
        failing_sources: Optional[Set[str]] = None,
        diagnostics: str = "",
        on_invoke: Optional[Callable[[CompileRequest], None]] = None,
    ):
        self.launch_failures = launch_failures
        self.failing_sources = failing_sources or set()
        self.diagnostics = diagnostics
        self.on_invoke = on_invoke
        self.requests: List[CompileRequest] = []
        self._lock = threading.Lock()

    @staticmethod
    def payload_for(request: CompileRequest) -> bytes:
        return f"{request.source_path.name}|{request.entry_point}|{' '.join(request.defines)}".encode()

    def invoke(self, request: CompileRequest) -> CompileOutcome:
        with self._lock:
            self.requests.append(request)
            launch_fail = self.launch_failures > 0
            if launch_fail:
                self.launch_failures -= 1

        if self.on_invoke is not None:
            self.on_invoke(request)
        if launch_fail:
            return CompileOutcome.launch_failure("spawn failed")
        if request.source_path.name in self.failing_sources:
            return CompileOutcome(
                success=False,
                diagnostics=f"{request.source_path}(3,1): error X3000: syntax error\n",
            )
        return CompileOutcome(
            success=True,
            payload=self.payload_for(request),
            diagnostics=self.diagnostics,
        )

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.requests)

    def sources(self) -> List[str]:
        with self._lock:
            return [r.source_path.name for r in self.requests]

    def counts_by_source(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for name in self.sources():
            counts[name] = counts.get(name, 0) + 1
        return counts


@pytest.fixture
def fake_compiler() -> FakeCompiler:
    return FakeCompiler()


@pytest.fixture
def make_compiler() -> Callable[..., FakeCompiler]:
    return FakeCompiler


@pytest.fixture
def touch() -> Callable[[Path, int], None]:
    """Set a file's mtime in nanoseconds."""
    return set_mtime
