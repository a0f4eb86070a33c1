"""Chart render-and-apply and secrets-loading collaborators."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import subprocess
from pathlib import Path
from typing import Any

from src.pattern_orchestrator.constants import DEFAULT_SECRETS_SCRIPT
from src.pattern_orchestrator.protocols import ManifestRef

logger = logging.getLogger(__name__)


def helm_template_args(manifest: ManifestRef, binary: str = "helm") -> list[str]:
    """Build the ``helm template`` command line for *manifest*."""
    args = [binary, "template", "--name-template", manifest.release, manifest.chart]
    if manifest.version:
        args.extend(["--version", manifest.version])
    if manifest.namespace:
        args.extend(["--namespace", manifest.namespace])
    args.extend(manifest.options)
    return args


def _run_command(
    cmd: list[str], timeout: float, cwd: str | None = None, input: str | None = None
) -> tuple[int, str, str]:
    """Run *cmd* synchronously.

    Returns:
        Tuple of (return_code, stdout, stderr).  A timeout maps to 124 and a
        missing binary to 127.
    """
    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            input=input,
            capture_output=True,
            text=True,
            errors="replace",
            cwd=cwd,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return (124, "", f"{' '.join(cmd)} timed out after {timeout} seconds")
    except FileNotFoundError:
        return (127, "", f"{cmd[0]}: command not found")
    return (result.returncode, result.stdout, result.stderr)


class HelmDeployer:
    """Renders a chart with ``helm template`` and pipes it into ``oc apply``."""

    def __init__(
        self,
        helm_binary: str = "helm",
        oc_binary: str = "oc",
        cwd: Path | str | None = None,
        timeout: float = 300,
    ) -> None:
        self.helm_binary = helm_binary
        self.oc_binary = oc_binary
        self.cwd = str(cwd) if cwd else None
        self.timeout = timeout

    def _apply_sync(self, manifest: ManifestRef) -> tuple[bool, str]:
        rc, rendered, err = _run_command(
            helm_template_args(manifest, self.helm_binary), self.timeout, self.cwd
        )
        if rc != 0:
            return (False, err or rendered)
        rc, out, err = _run_command(
            [self.oc_binary, "apply", "-f-"], self.timeout, self.cwd, input=rendered
        )
        return (rc == 0, out + err)

    async def apply(self, manifest: ManifestRef, opts: dict[str, Any] | None = None) -> tuple[bool, str]:
        loop = asyncio.get_running_loop()
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return await loop.run_in_executor(pool, lambda: self._apply_sync(manifest))


class ScriptSecretsLoader:
    """Runs the pattern's secrets processing script with the pattern name."""

    def __init__(
        self,
        script: Path | str = DEFAULT_SECRETS_SCRIPT,
        cwd: Path | str | None = None,
        timeout: float = 600,
    ) -> None:
        self.script = Path(script)
        self.cwd = str(cwd) if cwd else None
        self.timeout = timeout

    def _run_sync(self, pattern_name: str) -> bool:
        script = self.script if self.script.is_absolute() or not self.cwd else Path(self.cwd) / self.script
        if not script.is_file():
            logger.warning("Secrets script not found at %s", script)
            return False
        rc, _, err = _run_command(["bash", str(script), pattern_name], self.timeout, self.cwd)
        if rc != 0:
            logger.error("Secrets loading for %s failed: %s", pattern_name, err.strip())
        return rc == 0

    async def load_secrets(self, pattern_name: str) -> bool:
        loop = asyncio.get_running_loop()
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return await loop.run_in_executor(pool, lambda: self._run_sync(pattern_name))
