"""Sandboxed command execution.

Key security properties:
- One ephemeral, uniquely named container per invocation.
- Read-only root filesystem; the session workspace and a size-capped /tmp
  are the only writable paths.
- No network unless the caller explicitly asks for it.
- Memory/CPU caps, fixed non-root user, no privilege escalation.
- The container is force-removed on timeout, cancellation, and invocation
  error before control returns to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
import uuid
from pathlib import Path
from typing import Any

from .config import SandboxConfig
from .errors import SandboxUnavailableError
from .types import SandboxResult

logger = logging.getLogger(__name__)

NETWORK_MODES = ("none", "enabled")
TIMEOUT_EXIT_CODE = 124

SANDBOX_DOCKERFILE = """# Parley sandbox: isolated tool execution environment
FROM python:3.12-alpine

RUN apk add --no-cache curl bash git

# Non-root user matching the --user flag of the executor
RUN adduser -D -u 1000 sandbox
USER sandbox

WORKDIR /workspace
CMD ["sh"]
"""


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "\n...(truncated)"
    return text


class SandboxExecutor:
    """Runs shell commands inside a constrained Docker container."""

    def __init__(self, config: SandboxConfig):
        self.config = config
        self._ready: bool | None = None

    @property
    def sandboxed(self) -> bool:
        """True when commands will run inside containers."""
        return self.config.runtime == "docker" and self._ready is True

    async def is_ready(self) -> bool:
        """Check the container runtime and cache the answer."""
        if self.config.runtime == "none":
            self._ready = False
            return False
        try:
            code, out, err = await self._run_cli(
                ["docker", "info", "--format", "{{.ServerVersion}}"], timeout=10.0
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("docker not available: %s", e)
            self._ready = False
            return False

        self._ready = code == 0
        if not self._ready:
            logger.warning("docker not available: %s", err.strip() or out.strip())
        return self._ready

    async def ensure_image(self) -> bool:
        """Build the sandbox image if it is missing. Returns True when present."""
        if not self.sandboxed:
            return False
        code, _, _ = await self._run_cli(["docker", "image", "inspect", self.config.image], timeout=30.0)
        if code == 0:
            return True

        build_dir = Path(self.config.workspace_root).parent / "docker"
        build_dir.mkdir(parents=True, exist_ok=True)
        dockerfile = build_dir / "Dockerfile.sandbox"
        if not dockerfile.exists():
            dockerfile.write_text(SANDBOX_DOCKERFILE, encoding="utf-8")

        logger.info("building sandbox image %s", self.config.image)
        code, _, err = await self._run_cli(
            ["docker", "build", "-t", self.config.image, "-f", str(dockerfile), str(build_dir)],
            timeout=900.0,
        )
        if code != 0:
            logger.error("sandbox image build failed: %s", err.strip()[:400])
            return False
        return True

    def build_command(
        self,
        command: str,
        workspace: Path,
        network: str = "none",
        container_name: str | None = None,
    ) -> list[str]:
        """Assemble the ``docker run`` argv for one invocation."""
        if network not in NETWORK_MODES:
            raise ValueError(f"Invalid network mode: {network}. Must be one of {NETWORK_MODES}")
        name = container_name or f"parley-sandbox-{uuid.uuid4().hex[:8]}"
        docker_network = "none" if network == "none" else self.config.network_enabled_mode
        return [
            "docker",
            "run",
            "--rm",
            "--name",
            name,
            "--memory",
            self.config.memory,
            "--cpus",
            self.config.cpus,
            "--network",
            docker_network,
            "--read-only",
            "--tmpfs",
            f"/tmp:rw,size={self.config.tmpfs_size}",
            "-v",
            f"{workspace}:/workspace:rw",
            "--workdir",
            "/workspace",
            "--user",
            self.config.user,
            "--security-opt",
            "no-new-privileges",
            self.config.image,
            "sh",
            "-c",
            command,
        ]

    async def run(
        self,
        command: str,
        workspace: Path | str,
        timeout: float | None = None,
        network: str = "none",
    ) -> SandboxResult:
        """
        Execute ``command`` with ``workspace`` mounted as the working directory.

        Args:
            command: Shell command string
            workspace: Session workspace; created if missing, never removed
            timeout: Seconds before the command is killed (default from config)
            network: "none" (default) or "enabled"

        Returns:
            SandboxResult; timeouts are reported with timed_out=True

        Raises:
            SandboxUnavailableError: Docker is unavailable and unsandboxed
                fallback is not allowed
        """
        if network not in NETWORK_MODES:
            raise ValueError(f"Invalid network mode: {network}. Must be one of {NETWORK_MODES}")
        timeout = self.config.default_timeout_seconds if timeout is None else timeout
        workspace_path = Path(workspace).resolve()
        workspace_path.mkdir(parents=True, exist_ok=True)

        if await self._use_container():
            name = f"parley-sandbox-{uuid.uuid4().hex[:8]}"
            argv = self.build_command(command, workspace_path, network=network, container_name=name)
            try:
                return await self._execute(argv, timeout, container_name=name)
            except FileNotFoundError as e:
                self._ready = False
                raise SandboxUnavailableError(f"docker executable not found: {e}") from e

        logger.warning("running command WITHOUT sandbox isolation in %s", workspace_path)
        result = await self._execute(["sh", "-c", command], timeout, cwd=workspace_path)
        result.sandboxed = False
        return result

    async def _use_container(self) -> bool:
        if self.config.runtime == "none":
            return False
        ready = self._ready if self._ready is not None else await self.is_ready()
        if ready:
            return True
        if self.config.allow_unsandboxed:
            return False
        raise SandboxUnavailableError(
            "Docker is required for sandboxed execution but is not available"
        )

    async def _execute(
        self,
        argv: list[str],
        timeout: float,
        cwd: Path | None = None,
        container_name: str | None = None,
    ) -> SandboxResult:
        t0 = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            start_new_session=container_name is None,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._terminate(proc, container_name)
            logger.warning("command timed out after %gs", timeout)
            return SandboxResult(
                stdout="",
                stderr=f"Command timed out after {timeout:g} seconds",
                exit_code=TIMEOUT_EXIT_CODE,
                duration_s=round(time.monotonic() - t0, 3),
                timed_out=True,
            )
        except BaseException:
            # Cancellation from an outer deadline, or an invocation error.
            await self._terminate(proc, container_name)
            raise

        limit = self.config.max_output_chars
        return SandboxResult(
            stdout=_truncate(stdout.decode("utf-8", errors="replace"), limit),
            stderr=_truncate(stderr.decode("utf-8", errors="replace"), limit),
            exit_code=proc.returncode if proc.returncode is not None else 1,
            duration_s=round(time.monotonic() - t0, 3),
        )

    async def _terminate(self, proc: asyncio.subprocess.Process, container_name: str | None) -> None:
        if proc.returncode is None:
            try:
                if container_name is None:
                    os.killpg(proc.pid, signal.SIGKILL)
                else:
                    proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        if container_name is not None:
            await self.remove_container(container_name)

    async def remove_container(self, name: str) -> bool:
        """Force-remove a container. Failures are logged, never raised."""
        try:
            code, _, err = await self._run_cli(["docker", "rm", "-f", name], timeout=15.0)
        except (OSError, asyncio.TimeoutError) as e:
            logger.error("failed to remove container %s: %s", name, e)
            return False
        if code != 0 and "No such container" not in err:
            logger.error("failed to remove container %s: %s", name, err.strip())
            return False
        logger.debug("removed container %s", name)
        return True

    async def _run_cli(self, argv: list[str], timeout: float) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except BaseException:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        return (
            proc.returncode if proc.returncode is not None else 1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def doctor(self) -> dict[str, Any]:
        """Preflight: runtime present, image present, and a test command runnable."""
        if self.config.runtime == "none":
            return {
                "ok": True,
                "runtime": "none",
                "sandboxed": False,
                "warning": "sandbox disabled: commands run directly on the host",
            }

        if not await self.is_ready():
            return {
                "ok": self.config.allow_unsandboxed,
                "runtime": "docker",
                "sandboxed": False,
                "error": "docker_unavailable",
            }

        code, _, err = await self._run_cli(["docker", "image", "inspect", self.config.image], timeout=30.0)
        if code != 0:
            return {
                "ok": False,
                "runtime": "docker",
                "sandboxed": True,
                "error": "image_missing",
                "image": self.config.image,
                "stderr": err.strip()[:400],
            }

        check_dir = Path(self.config.workspace_root) / "_doctor"
        check = await self.run("echo sandbox-ok", check_dir, timeout=60.0)
        return {
            "ok": check.exit_code == 0 and "sandbox-ok" in check.stdout,
            "runtime": "docker",
            "sandboxed": True,
            "image": self.config.image,
            "check_exit_code": check.exit_code,
            "check_stderr": check.stderr[:400],
        }
