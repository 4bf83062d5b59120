"""Tests for task planning: naming, staleness and container groups."""
from pathlib import Path

import pytest

from shader_make.core.directive import CompileDirective, permutation_suffix
from shader_make.core.errors import ConfigurationError, DependencyResolutionError
from shader_make.core.planner import compiled_name, strip_leading_dotdots
from shader_make.io.artifacts import binary_path, write_artifacts
from shader_make.policy.context import OutputKinds, Platform
from shader_make.runner import plan_tasks

FUTURE_NS = 4_000_000_000 * 10**9


def _materialize(context, plan) -> None:
    """Write every output the plan would produce, as a finished run would."""
    for task in plan.tasks:
        write_artifacts(context, task.output_base, b"payload", task.has_defines)
    for group in plan.groups.values():
        if group.needs_container and context.output_kinds.binary_blob:
            binary_path(context, group.output_base).write_bytes(b"NVSP")


class TestNaming:
    """Output names derived from a directive."""

    def test_extension_stripped(self):
        assert compiled_name(CompileDirective("fx/blur.hlsl", "cs"), False).as_posix() == "fx/blur"

    def test_entry_point_suffix(self):
        d = CompileDirective("fx/blur.hlsl", "cs", entry_point="blurH")
        assert compiled_name(d, False).as_posix() == "fx/blur_blurH"

    def test_flatten_and_output_override_drop_directories(self):
        assert compiled_name(CompileDirective("fx/blur.hlsl", "cs"), True).as_posix() == "blur"
        d = CompileDirective("fx/blur.hlsl", "cs", output_dir="post")
        assert compiled_name(d, False).as_posix() == "blur"

    def test_leading_dotdots_stripped(self):
        assert strip_leading_dotdots("../../lib/a.hlsl").as_posix() == "lib/a.hlsl"


class TestPlan:
    """Planning against the sample shader tree."""

    def test_first_run_schedules_everything(self, make_context, shader_tree: Path):
        ctx = make_context()
        plan = plan_tasks(ctx)
        bases = sorted(str(t.output_base.relative_to(ctx.output_dir)) for t in plan.tasks)
        assert bases == sorted([
            str(Path("shaders") / f"blur{permutation_suffix('RADIUS=3')}"),
            str(Path("shaders") / f"blur{permutation_suffix('RADIUS=5')}"),
            str(Path("shaders") / "tonemap_psMain"),
        ])
        assert plan.directive_count == 3
        assert (ctx.output_dir / "shaders").is_dir()

    def test_tasks_carry_resolved_arguments(self, make_context, shader_tree: Path):
        plan = plan_tasks(make_context(optimization_level=1))
        tonemap = next(t for t in plan.tasks if t.source == "shaders/tonemap.hlsl")
        assert tonemap.source_path == shader_tree / "shaders" / "tonemap.hlsl"
        assert tonemap.entry_point == "psMain"
        assert tonemap.optimization_level == 1
        assert not tonemap.has_defines

    def test_second_run_is_idempotent(self, make_context):
        ctx = make_context()
        _materialize(ctx, plan_tasks(ctx))
        plan = plan_tasks(ctx)
        assert plan.tasks == []
        assert plan.up_to_date_count == 3

    def test_touched_shared_include_invalidates_dependents(self, make_context, shader_tree, touch):
        ctx = make_context()
        _materialize(ctx, plan_tasks(ctx))
        touch(shader_tree / "shaders/constants.hlsli", FUTURE_NS)
        assert len(plan_tasks(ctx).tasks) == 3

    def test_touched_private_include_invalidates_only_its_users(self, make_context, shader_tree, touch):
        ctx = make_context()
        _materialize(ctx, plan_tasks(ctx))
        touch(shader_tree / "include/debug.hlsli", FUTURE_NS)
        assert {t.source for t in plan_tasks(ctx).tasks} == {"shaders/blur.hlsl"}

    def test_relaxed_include_does_not_invalidate(self, make_context, shader_tree, touch):
        ctx = make_context(relaxed_includes=frozenset({"debug.hlsli"}))
        _materialize(ctx, plan_tasks(ctx))
        touch(shader_tree / "include/debug.hlsli", FUTURE_NS)
        assert plan_tasks(ctx).tasks == []

    def test_config_change_invalidates_everything(self, make_context, shader_tree, touch):
        ctx = make_context()
        _materialize(ctx, plan_tasks(ctx))
        touch(shader_tree / "shaders.cfg", FUTURE_NS)
        assert len(plan_tasks(ctx).tasks) == 3

    def test_force_schedules_current_outputs(self, make_context):
        ctx = make_context()
        _materialize(ctx, plan_tasks(ctx))
        assert len(plan_tasks(make_context(force=True)).tasks) == 3

    def test_dxbc_skips_mesh_profile(self, make_context):
        ctx = make_context(platform=Platform.DXBC, defines=("WITH_MESH",))
        plan = plan_tasks(ctx)
        assert plan.unsupported_count == 1
        assert all(t.profile != "ms" for t in plan.tasks)

    def test_dxil_keeps_mesh_profile(self, make_context):
        plan = plan_tasks(make_context(defines=("WITH_MESH",)))
        assert any(t.profile == "ms" for t in plan.tasks)

    def test_duplicate_permutation_rejected(self, make_context):
        ctx = make_context("""\
            shaders/blur.hlsl -T cs -D RADIUS=3
            shaders/blur.hlsl -T cs -D RADIUS={3,5}
        """)
        with pytest.raises(ConfigurationError) as exc:
            plan_tasks(ctx)
        assert exc.value.line_number == 2
        assert "already produced by line 1" in str(exc.value)

    def test_hash_collision_named(self, make_context, monkeypatch):
        monkeypatch.setattr("shader_make.core.planner.permutation_suffix", lambda combined: "_0BADF00D")
        ctx = make_context("shaders/blur.hlsl -T cs -D RADIUS={3,5}\n")
        with pytest.raises(ConfigurationError) as exc:
            plan_tasks(ctx)
        message = str(exc.value)
        assert "Hash collision" in message
        assert "RADIUS=3" in message and "RADIUS=5" in message

    def test_output_dir_under_regular_file(self, make_context, shader_tree: Path):
        blocker = shader_tree / "blocker"
        blocker.write_text("")
        ctx = make_context(output_dir=blocker / "out")
        with pytest.raises(ConfigurationError) as exc:
            plan_tasks(ctx)
        assert "Can't create output directory" in str(exc.value)
        assert exc.value.line_number is not None

    def test_missing_source_raises(self, make_context):
        ctx = make_context("shaders/missing.hlsl -T cs\n")
        (ctx.output_dir / "shaders").mkdir(parents=True)
        with pytest.raises(DependencyResolutionError):
            plan_tasks(ctx)

    def test_optimization_clamped_and_overridden(self, make_context):
        ctx = make_context("""\
            shaders/blur.hlsl -T cs -O 7
            shaders/tonemap.hlsl -T ps -E psMain -O0
        """)
        levels = {t.source: t.optimization_level for t in plan_tasks(ctx).tasks}
        assert levels == {"shaders/blur.hlsl": 3, "shaders/tonemap.hlsl": 0}

    def test_output_override_and_flatten(self, make_context):
        ctx = make_context("""\
            shaders/blur.hlsl -T cs -o post
            shaders/tonemap.hlsl -T ps -E psMain
        """, flatten=True)
        bases = {t.source: t.output_base for t in plan_tasks(ctx).tasks}
        assert bases["shaders/blur.hlsl"] == ctx.output_dir / "post" / "blur"
        assert bases["shaders/tonemap.hlsl"] == ctx.output_dir / "tonemap_psMain"

    def test_leading_dotdots_do_not_escape_output_dir(self, make_context, shader_tree: Path):
        ctx = make_context(f"../{shader_tree.name}/shaders/tonemap.hlsl -T ps -E psMain\n")
        task = plan_tasks(ctx).tasks[0]
        assert task.output_base == ctx.output_dir / shader_tree.name / "shaders" / "tonemap_psMain"
        assert task.source_path == shader_tree / "shaders" / "tonemap.hlsl"

    def test_pdb_directory_created(self, make_context):
        ctx = make_context(pdb=True)
        plan_tasks(ctx)
        assert (ctx.output_dir / "shaders" / "PDB").is_dir()


class TestContainerGroups:
    """Container membership and group-consistent scheduling."""

    def _blob_context(self, make_context):
        return make_context(output_kinds=OutputKinds(binary_blob=True))

    def test_groups_keyed_by_base_name(self, make_context):
        ctx = self._blob_context(make_context)
        plan = plan_tasks(ctx)
        groups = {g.name: g for g in plan.groups.values()}
        assert set(groups) == {"shaders/blur", "shaders/tonemap_psMain"}
        blur = groups["shaders/blur"]
        assert [e.combined_defines for e in blur.entries] == ["RADIUS=3", "RADIUS=5"]
        assert blur.output_base == ctx.output_dir / "shaders" / "blur"
        assert blur.needs_container
        assert not groups["shaders/tonemap_psMain"].needs_container

    def test_no_groups_without_container_output(self, make_context):
        assert plan_tasks(make_context()).groups == {}

    def test_one_stale_member_schedules_whole_group(self, make_context):
        ctx = make_context(output_kinds=OutputKinds(binary=True, binary_blob=True))
        _materialize(ctx, plan_tasks(ctx))

        stale = ctx.output_dir / "shaders" / f"blur{permutation_suffix('RADIUS=5')}"
        binary_path(ctx, stale).unlink()

        plan = plan_tasks(ctx)
        assert sorted(t.combined_defines for t in plan.tasks) == ["RADIUS=3", "RADIUS=5"]
        assert [g.name for g in plan.groups.values()] == ["shaders/blur"]
        assert plan.up_to_date_count == 1

    def test_missing_container_file_makes_members_stale(self, make_context):
        ctx = self._blob_context(make_context)
        _materialize(ctx, plan_tasks(ctx))
        binary_path(ctx, ctx.output_dir / "shaders" / "blur").unlink()
        assert {t.source for t in plan_tasks(ctx).tasks} == {"shaders/blur.hlsl"}
