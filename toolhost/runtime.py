"""External script runtime: locate, run and install the Deno binary.

Each execution writes the generated script to a uniquely named temp file
in the plugins scratch directory, runs it with a fixed set of permission
flags and removes the file again on every exit path. Executions that
outlive their timeout have their whole process group killed.
"""

import asyncio
import os
import signal
import shutil
import sys
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from toolhost.env import EnvVar
from toolhost.errors import (
    ExecutionTimeoutError,
    PluginRuntimeError,
    RuntimeNotInstalledError,
    StorageError,
)
from toolhost.logging import log

KILL_WAIT_SECONDS = 5.0
CREATE_NO_WINDOW = 0x08000000

INSTALL_POSIX = ["sh", "-c", "curl -fsSL https://deno.land/install.sh | sh -s -- -y"]
INSTALL_WINDOWS = [
    "powershell",
    "-NoProfile",
    "-ExecutionPolicy",
    "Bypass",
    "-Command",
    "irm https://deno.land/install.ps1 | iex",
]


@dataclass
class Availability:
    """Result of probing for the runtime binary."""

    installed: bool
    version: str | None = None
    path: str | None = None

    def to_dict(self) -> dict[str, str]:
        """Convert to the string map shown to the UI."""
        result = {"installed": "true" if self.installed else "false"}
        if self.installed:
            result["version"] = self.version or "unknown"
            result["path"] = self.path or ""
        return result


def _process_kwargs() -> dict:
    if sys.platform == "win32":
        return {"creationflags": CREATE_NO_WINDOW}
    # New session so the whole tree can be killed with killpg
    return {"start_new_session": True}


async def terminate_process(proc: asyncio.subprocess.Process) -> None:
    """Kill a child started with _process_kwargs() and reap it."""
    if proc.returncode is not None:
        return
    try:
        if sys.platform == "win32":
            proc.kill()
        else:
            os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    try:
        await asyncio.wait_for(proc.wait(), KILL_WAIT_SECONDS)
    except asyncio.TimeoutError:
        log("warn", "Runtime process did not exit after kill", pid=proc.pid)


class ExternalRuntime:
    """Runs generated scripts against an installed interpreter binary."""

    def __init__(
        self,
        scratch_dir: Path,
        command: str = "deno",
        permissions: list[str] | None = None,
        extra_paths: list[str] | None = None,
        extension: str = ".ts",
        timeout: float = 30.0,
        probe_timeout: float = 10.0,
        base_args: list[str] | None = None,
    ):
        """Initialize the runtime.

        Args:
            scratch_dir: Directory for temp scripts; also the child's cwd.
            command: Binary name or path.
            permissions: Permission flags appended after ``run --no-check``.
            extra_paths: Extra candidate binary locations for probe().
            extension: Suffix for temp script files.
            timeout: Default execution timeout in seconds.
            probe_timeout: Timeout for ``<command> --version``.
            base_args: Replaces ``run --no-check <permissions>`` entirely.
        """
        self.scratch_dir = scratch_dir
        self.command = command
        self.extra_paths = list(extra_paths or [])
        self.extension = extension
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        if base_args is None:
            if permissions is None:
                permissions = ["--allow-read", "--allow-write", "--allow-net", "--allow-env"]
            base_args = ["run", "--no-check", *permissions]
        self.base_args = base_args
        self._availability: Availability | None = None

    @classmethod
    def from_config(cls, config, scratch_dir: Path) -> "ExternalRuntime":
        """Build a runtime from a RuntimeConfig."""
        return cls(
            scratch_dir=scratch_dir,
            command=config.command,
            permissions=config.permissions,
            extra_paths=config.extra_paths,
            timeout=config.timeout,
            probe_timeout=config.probe_timeout,
        )

    @property
    def availability(self) -> Availability | None:
        """Last probe result, or None if never probed."""
        return self._availability

    @property
    def installed(self) -> bool:
        return self._availability is not None and self._availability.installed

    def set_timeout(self, seconds: float) -> None:
        """Set the default execution timeout."""
        self.timeout = seconds

    # ----- Probing -----

    def candidates(self) -> list[str]:
        """Binary locations tried by probe(), in order."""
        found = [self.command]
        if which := shutil.which(self.command):
            found.append(which)
        found.extend(self.extra_paths)

        # Only bare names get the well-known install locations
        if os.sep not in self.command and "/" not in self.command:
            name = self.command
            if sys.platform == "win32" and not name.lower().endswith(".exe"):
                name += ".exe"
            dirs: list[Path] = []
            if deno_install := os.environ.get("DENO_INSTALL"):
                dirs.append(Path(deno_install) / "bin")
            dirs.append(Path.home() / ".deno" / "bin")
            if sys.platform == "win32":
                dirs.append(Path(r"C:\Program Files\deno"))
                dirs.append(Path(r"C:\ProgramData\chocolatey\bin"))
                if profile := os.environ.get("USERPROFILE"):
                    dirs.append(Path(profile) / ".deno" / "bin")
                for entry in os.environ.get("PATH", "").split(os.pathsep):
                    if entry.strip():
                        dirs.append(Path(entry.strip()))
            else:
                dirs.extend([Path("/usr/local/bin"), Path("/opt/homebrew/bin"), Path("/usr/bin")])
            found.extend(str(d / name) for d in dirs)

        unique: list[str] = []
        for candidate in found:
            if candidate not in unique:
                unique.append(candidate)
        return unique

    async def probe(self) -> Availability:
        """Look for a working binary. Never installs anything."""
        for candidate in self.candidates():
            version = await self._version_of(candidate)
            if version is not None:
                resolved = shutil.which(candidate) or candidate
                self._availability = Availability(installed=True, version=version, path=resolved)
                log("info", "Script runtime found", version=version, path=resolved)
                break
        else:
            self._availability = Availability(installed=False)
            log("warn", "Script runtime not installed", command=self.command)
        return self._availability

    async def _version_of(self, candidate: str) -> str | None:
        """Return the version reported by `candidate --version`, or None."""
        try:
            proc = await asyncio.create_subprocess_exec(
                candidate,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_process_kwargs(),
            )
        except OSError:
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), self.probe_timeout)
        except asyncio.TimeoutError:
            await terminate_process(proc)
            return None
        if proc.returncode != 0:
            return None
        lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
        tokens = lines[0].split() if lines else []
        # "deno 1.46.3 (stable, release, x86_64-unknown-linux-gnu)"
        return tokens[1] if len(tokens) > 1 else "unknown"

    # ----- Execution -----

    async def execute(
        self,
        script: str,
        env: list[EnvVar] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run a script and return its trimmed stdout.

        Raises:
            RuntimeNotInstalledError: no usable binary.
            ExecutionTimeoutError: the script ran past ``timeout``.
            PluginRuntimeError: non-zero exit; carries stderr.
            StorageError: the temp script could not be written or removed.
        """
        availability = self._availability or await self.probe()
        if not availability.installed:
            raise RuntimeNotInstalledError()

        timeout = self.timeout if timeout is None else timeout
        script_path = self.scratch_dir / f"temp_{uuid.uuid4().hex}{self.extension}"

        try:
            try:
                await asyncio.to_thread(self._write_script, script_path, script)
            except OSError as e:
                raise StorageError(f"cannot write {script_path.name}: {e}") from e
            output = await self._run(availability.path or self.command, script_path, env or [], timeout)
        except BaseException:
            self._discard(script_path, strict=False)
            raise
        self._discard(script_path, strict=True)
        return output

    def _write_script(self, script_path: Path, script: str) -> None:
        script_path.parent.mkdir(parents=True, exist_ok=True)
        script_path.write_text(script, encoding="utf-8")

    def _discard(self, script_path: Path, strict: bool) -> None:
        try:
            script_path.unlink(missing_ok=True)
        except OSError as e:
            if strict:
                raise StorageError(f"cannot remove {script_path.name}: {e}") from e
            log("error", "Failed to remove temp script", path=str(script_path), error=str(e))

    async def _run(self, binary: str, script_path: Path, env: list[EnvVar], timeout: float) -> str:
        child_env = os.environ.copy()
        for var in env:
            child_env[var.key] = var.value

        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                *self.base_args,
                str(script_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=child_env,
                cwd=str(self.scratch_dir),
                **_process_kwargs(),
            )
        except FileNotFoundError as e:
            # Binary removed since the last probe
            self._availability = None
            raise RuntimeNotInstalledError(str(e)) from e
        except OSError as e:
            raise StorageError(f"cannot start {binary}: {e}") from e

        started = time.monotonic()
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            await terminate_process(proc)
            log("warn", "Script execution timed out", timeout=timeout, pid=proc.pid)
            raise ExecutionTimeoutError(timeout) from None
        except asyncio.CancelledError:
            await terminate_process(proc)
            raise

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            log("warn", "Script exited with an error", code=proc.returncode, duration_ms=elapsed_ms)
            raise PluginRuntimeError(message or f"runtime exited with code {proc.returncode}")

        log("debug", "Script executed", duration_ms=elapsed_ms)
        return stdout.decode("utf-8", errors="replace").strip()

    # ----- Installation -----

    async def install(self, on_progress: Callable[[str], None] | None = None) -> bool:
        """Run the official installer, then probe again.

        Only ever called on explicit request; probe() and execute() never
        install. Each non-empty line of installer output goes to
        ``on_progress``.
        """
        argv = INSTALL_WINDOWS if sys.platform == "win32" else INSTALL_POSIX
        log("info", "Installing script runtime", command=" ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **_process_kwargs(),
            )
        except OSError as e:
            log("error", "Runtime installer could not start", error=str(e))
            return False

        if proc.stdout is not None:
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line and on_progress is not None:
                    on_progress(line)
        code = await proc.wait()

        if code != 0:
            log("error", "Runtime installation failed", code=code)
            return False

        availability = await self.probe()
        return availability.installed
