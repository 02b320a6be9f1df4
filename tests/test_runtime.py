"""Tests for toolhost/runtime.py — probing, execution, timeouts, cleanup.

These run real child processes using the current Python interpreter as
the "runtime", so no script runtime needs to be installed.
"""

import asyncio
import os
import sys
import time

import pytest

from toolhost.env import EnvVar
from toolhost.errors import ExecutionTimeoutError, PluginRuntimeError, RuntimeNotInstalledError
from toolhost.runtime import Availability, ExternalRuntime


def python_runtime(scratch_dir, **kwargs) -> ExternalRuntime:
    return ExternalRuntime(
        scratch_dir=scratch_dir,
        command=sys.executable,
        extension=".py",
        base_args=[],
        **kwargs,
    )


def leftover_scripts(scratch_dir):
    return sorted(p.name for p in scratch_dir.glob("temp_*"))


# ── Availability ───────────────────────────────────────────────────


class TestAvailability:
    def test_installed_to_dict(self):
        availability = Availability(installed=True, version="1.46.3", path="/usr/bin/deno")
        assert availability.to_dict() == {"installed": "true", "version": "1.46.3", "path": "/usr/bin/deno"}

    def test_missing_to_dict(self):
        assert Availability(installed=False).to_dict() == {"installed": "false"}


# ── Probing ────────────────────────────────────────────────────────


class TestProbe:
    @pytest.mark.asyncio
    async def test_probe_finds_interpreter(self, tmp_path):
        runtime = python_runtime(tmp_path)
        availability = await runtime.probe()
        assert availability.installed
        # "Python 3.x.y" -> second token
        assert availability.version == sys.version.split()[0]
        assert runtime.installed

    @pytest.mark.asyncio
    async def test_probe_missing_binary(self, tmp_path):
        runtime = ExternalRuntime(scratch_dir=tmp_path, command="toolhost-missing-runtime-xyz")
        availability = await runtime.probe()
        assert not availability.installed
        assert runtime.availability is availability
        assert not runtime.installed

    @pytest.mark.asyncio
    async def test_extra_paths_fallback(self, tmp_path):
        runtime = ExternalRuntime(
            scratch_dir=tmp_path,
            command=str(tmp_path / "nowhere" / "deno"),
            extra_paths=[sys.executable],
        )
        availability = await runtime.probe()
        assert availability.installed
        assert availability.path == sys.executable

    def test_candidates_start_with_command(self, tmp_path):
        runtime = ExternalRuntime(scratch_dir=tmp_path, command="deno", extra_paths=["/custom/deno"])
        candidates = runtime.candidates()
        assert candidates[0] == "deno"
        assert "/custom/deno" in candidates
        assert len(candidates) == len(set(candidates))

    def test_absolute_command_skips_well_known_dirs(self, tmp_path):
        runtime = ExternalRuntime(scratch_dir=tmp_path, command=str(tmp_path / "deno"))
        assert runtime.candidates() == [str(tmp_path / "deno")]

    def test_default_base_args(self, tmp_path):
        runtime = ExternalRuntime(scratch_dir=tmp_path)
        assert runtime.base_args[:2] == ["run", "--no-check"]
        assert "--allow-env" in runtime.base_args


# ── Execution ──────────────────────────────────────────────────────


class TestExecute:
    @pytest.mark.asyncio
    async def test_stdout_is_trimmed(self, tmp_path):
        runtime = python_runtime(tmp_path)
        output = await runtime.execute("print('  hello  ')\nprint()")
        assert output == "hello"

    @pytest.mark.asyncio
    async def test_runs_in_scratch_dir(self, tmp_path):
        runtime = python_runtime(tmp_path)
        output = await runtime.execute("import os; print(os.getcwd())")
        assert os.path.samefile(output, tmp_path)

    @pytest.mark.asyncio
    async def test_env_injected(self, tmp_path):
        runtime = python_runtime(tmp_path)
        output = await runtime.execute(
            "import os; print(os.environ['TOOLHOST_TEST_TOKEN'])",
            env=[EnvVar("TOOLHOST_TEST_TOKEN", "s3cret")],
        )
        assert output == "s3cret"

    @pytest.mark.asyncio
    async def test_nonzero_exit_carries_stderr(self, tmp_path):
        runtime = python_runtime(tmp_path)
        with pytest.raises(PluginRuntimeError) as exc_info:
            await runtime.execute("import sys; sys.stderr.write('it broke'); sys.exit(3)")
        assert "it broke" in exc_info.value.message
        assert leftover_scripts(tmp_path) == []

    @pytest.mark.asyncio
    async def test_nonzero_exit_without_stderr(self, tmp_path):
        runtime = python_runtime(tmp_path)
        with pytest.raises(PluginRuntimeError, match="code 4"):
            await runtime.execute("raise SystemExit(4)")

    @pytest.mark.asyncio
    async def test_temp_script_removed(self, tmp_path):
        runtime = python_runtime(tmp_path)
        await runtime.execute("print(1)")
        assert leftover_scripts(tmp_path) == []

    @pytest.mark.asyncio
    async def test_not_installed(self, tmp_path):
        runtime = ExternalRuntime(scratch_dir=tmp_path, command="toolhost-missing-runtime-xyz")
        with pytest.raises(RuntimeNotInstalledError):
            await runtime.execute("console.log(1)")
        assert leftover_scripts(tmp_path) == []

    @pytest.mark.asyncio
    async def test_concurrent_executions_use_distinct_files(self, tmp_path):
        runtime = python_runtime(tmp_path)
        outputs = await asyncio.gather(*(runtime.execute(f"print({i})") for i in range(5)))
        assert outputs == [str(i) for i in range(5)]
        assert leftover_scripts(tmp_path) == []


class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_raises_promptly(self, tmp_path):
        runtime = python_runtime(tmp_path, timeout=0.5)
        started = time.monotonic()
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            await runtime.execute("import time; time.sleep(30)")
        assert time.monotonic() - started < 5
        assert exc_info.value.seconds == 0.5
        assert exc_info.value.kind == "timeout"
        assert leftover_scripts(tmp_path) == []

    @pytest.mark.asyncio
    async def test_set_timeout(self, tmp_path):
        runtime = python_runtime(tmp_path, timeout=60)
        runtime.set_timeout(0.3)
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            await runtime.execute("import time; time.sleep(30)")
        assert exc_info.value.seconds == 0.3

    @pytest.mark.asyncio
    async def test_per_call_timeout_overrides_default(self, tmp_path):
        runtime = python_runtime(tmp_path, timeout=60)
        with pytest.raises(ExecutionTimeoutError):
            await runtime.execute("import time; time.sleep(30)", timeout=0.3)

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX-only")
    async def test_timed_out_child_is_killed(self, tmp_path):
        pid_file = tmp_path / "child.pid"
        runtime = python_runtime(tmp_path, timeout=1.0)
        script = (
            "import os, time\n"
            f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
            "time.sleep(30)\n"
        )
        with pytest.raises(ExecutionTimeoutError):
            await runtime.execute(script)

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)


# ── Installation ───────────────────────────────────────────────────


class TestInstall:
    @pytest.mark.asyncio
    async def test_streams_progress_then_probes(self, tmp_path, monkeypatch):
        installer = [sys.executable, "-c", "print('downloading'); print(); print('installed')"]
        monkeypatch.setattr("toolhost.runtime.INSTALL_POSIX", installer)
        monkeypatch.setattr("toolhost.runtime.INSTALL_WINDOWS", installer)
        runtime = python_runtime(tmp_path)
        progress = []
        assert await runtime.install(on_progress=progress.append)
        assert progress == ["downloading", "installed"]
        assert runtime.installed

    @pytest.mark.asyncio
    async def test_failed_installer(self, tmp_path, monkeypatch):
        installer = [sys.executable, "-c", "raise SystemExit(2)"]
        monkeypatch.setattr("toolhost.runtime.INSTALL_POSIX", installer)
        monkeypatch.setattr("toolhost.runtime.INSTALL_WINDOWS", installer)
        assert not await python_runtime(tmp_path).install()
