"""``oc``-backed implementation of the :class:`ClusterClient` protocol."""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import re
import subprocess

from src.pattern_orchestrator.constants import KIND_APPLICATION, KIND_SUBSCRIPTION
from src.pattern_orchestrator.exceptions import ExternalActionFailure

logger = logging.getLogger(__name__)


class OcClusterClient:
    """Queries and commands against the cluster through the ``oc`` CLI.

    Each call runs ``subprocess.run`` on a worker thread, so many monitors can
    poll at once without blocking the event loop.
    """

    def __init__(self, binary: str = "oc", max_workers: int = 8, timeout: float = 60) -> None:
        self.binary = binary
        self.timeout = timeout
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="oc"
        )

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    def _run_sync(self, *args: str) -> tuple[int, str, str]:
        """Run an ``oc`` command synchronously.

        Returns:
            Tuple of (return_code, stdout, stderr).
        """
        cmd = [self.binary, *args]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return (124, "", f"{' '.join(cmd)} timed out after {self.timeout} seconds")
        except FileNotFoundError:
            return (127, "", f"{self.binary}: command not found")
        return (result.returncode, result.stdout, result.stderr)

    async def _run(self, *args: str) -> tuple[int, str, str]:
        """Async wrapper around :meth:`_run_sync`."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool, lambda: self._run_sync(*args))

    @staticmethod
    def _ns_args(namespace: str | None) -> list[str]:
        return ["-n", namespace] if namespace else []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def subscription_exists(self, name: str, namespace: str) -> bool:
        return await self.resource_exists(KIND_SUBSCRIPTION, name, namespace)

    async def subscription_install_state(self, name: str, namespace: str) -> str:
        rc, out, err = await self._run(
            "get", KIND_SUBSCRIPTION, name, "-n", namespace, "-o", "jsonpath={.status.state}"
        )
        if rc != 0:
            raise ExternalActionFailure(f"get {KIND_SUBSCRIPTION}/{name}", err)
        return out.strip()

    async def sync_unit_locate(self, name: str) -> str | None:
        rc, out, err = await self._run(
            "get",
            KIND_APPLICATION,
            "-A",
            "--no-headers",
            "-o",
            "custom-columns=NS:.metadata.namespace,NAME:.metadata.name",
        )
        if rc != 0:
            raise ExternalActionFailure(f"list {KIND_APPLICATION}", err)
        for line in out.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[1] == name:
                return parts[0]
        return None

    async def sync_unit_health(self, name: str, namespace: str) -> tuple[str, str]:
        rc, out, err = await self._run("get", KIND_APPLICATION, name, "-n", namespace, "-o", "json")
        if rc != 0:
            return ("Unknown", "Unknown")
        try:
            status = json.loads(out).get("status", {})
        except json.JSONDecodeError:
            return ("Unknown", "Unknown")
        sync = status.get("sync", {}).get("status") or "Unknown"
        health = status.get("health", {}).get("status") or "Unknown"
        return (sync, health)

    async def list_namespaces(self) -> list[str]:
        rc, out, err = await self._run("get", "namespaces", "-o", "name")
        if rc != 0:
            raise ExternalActionFailure("list namespaces", err)
        return [line.split("/", 1)[-1] for line in out.splitlines() if line.strip()]

    async def vault_ready(self, namespace: str) -> bool:
        rc, out, _ = await self._run(
            "get", "pods", "-n", namespace, "-l", "app.kubernetes.io/name=vault", "--no-headers"
        )
        if rc != 0 or not any("Running" in line for line in out.splitlines()):
            return False
        # A sealed vault exits non-zero but still reports its status.
        _, out, _ = await self._run(
            "exec", "-n", namespace, "deployment/vault", "--", "vault", "status", "-format=json"
        )
        try:
            status = json.loads(out)
        except ValueError:
            return False
        return isinstance(status, dict) and isinstance(status.get("initialized"), bool)

    async def pod_count(self, namespace: str) -> int:
        rc, out, _ = await self._run("get", "pods", "-n", namespace, "--no-headers", "-o", "name")
        if rc != 0:
            return 0
        return sum(1 for line in out.splitlines() if line.strip())

    async def resource_exists(self, kind: str, name: str, namespace: str | None) -> bool:
        rc, out, _ = await self._run(
            "get", kind, name, *self._ns_args(namespace), "--ignore-not-found", "-o", "name"
        )
        return rc == 0 and bool(out.strip())

    async def count_resources(self, kind: str, name_pattern: str | None = None) -> int:
        rc, out, err = await self._run(
            "get", kind, "-A", "--no-headers", "-o", "custom-columns=NAME:.metadata.name"
        )
        if rc != 0:
            if "the server doesn't have a resource type" in err:
                return 0
            raise ExternalActionFailure(f"count {kind}", err)
        names = [line.strip() for line in out.splitlines() if line.strip()]
        if name_pattern:
            matcher = re.compile(name_pattern)
            names = [n for n in names if matcher.search(n)]
        return len(names)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def delete(
        self, kind: str, name: str, namespace: str | None, force: bool = False
    ) -> bool:
        args = ["delete", kind, name, *self._ns_args(namespace), "--ignore-not-found=true", "--wait=false"]
        if force:
            args.extend(["--force", "--grace-period=0"])
        rc, _, err = await self._run(*args)
        if rc != 0:
            logger.warning("oc delete %s/%s failed: %s", kind, name, err.strip())
        return rc == 0

    async def list_selected(self, kind: str, selector: str, namespace: str) -> list[str]:
        rc, out, err = await self._run("get", kind, "-l", selector, "-n", namespace, "-o", "name")
        if rc != 0:
            raise ExternalActionFailure(f"list {kind} -l {selector}", err)
        return [line.split("/", 1)[-1] for line in out.splitlines() if line.strip()]

    async def delete_selected(self, kind: str, selector: str, namespace: str) -> int:
        rc, out, err = await self._run(
            "delete", kind, "-l", selector, "-n", namespace,
            "--ignore-not-found=true", "--wait=false", "-o", "name",
        )
        if rc != 0:
            raise ExternalActionFailure(f"delete {kind} -l {selector}", err)
        return sum(1 for line in out.splitlines() if line.strip())

    async def strip_finalizers(self, kind: str, name: str, namespace: str | None) -> bool:
        rc, _, err = await self._run(
            "patch", kind, name, *self._ns_args(namespace),
            "--type=merge", "-p", json.dumps({"metadata": {"finalizers": []}}),
        )
        if rc != 0:
            logger.warning("Could not strip finalizers from %s/%s: %s", kind, name, err.strip())
        return rc == 0

    async def whoami(self) -> str:
        rc, out, _ = await self._run("whoami")
        return out.strip() if rc == 0 else "UNKNOWN"
