# ABOUTME: Renders Helm charts for Helm-type Applications
# ABOUTME: Keeps a per-Application checkout and runs a dry-run helm install to obtain manifests

"""
Helm chart rendering.

The chart is rendered with the helm CLI against the target cluster:

    helm install <name>-<namespace> <checkout>/<path> \\
        --namespace <destination namespace> --dry-run --output json

A dry-run install (rather than `helm template`) lets charts that look up
cluster capabilities render the same way a real install would. The JSON
release document carries the rendered objects in its `manifest` field.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from cd_sync.errors import SourceNotFoundError, SourceResolutionError
from cd_sync.git.repo import GitCheckout

if TYPE_CHECKING:
    from collections.abc import Iterator

    from cd_sync.models import Application

logger = structlog.get_logger(__name__)


@contextmanager
def _kubeconfig_file(kubeconfig: str | None) -> Iterator[str | None]:
    if kubeconfig is None:
        yield None
        return
    fd, path = tempfile.mkstemp(prefix="cd-sync-kubeconfig-", suffix=".yaml")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(kubeconfig)
        yield path
    finally:
        os.unlink(path)


class HelmRenderer:
    """Checks out chart repositories and renders them with the helm CLI."""

    def __init__(self, helm_binary: str = "helm", cache_dir: Path = Path("/tmp")) -> None:
        self._helm = helm_binary
        self._cache_dir = cache_dir

    def checkout_path(self, app: Application) -> Path:
        return self._cache_dir / f"repo-{app.name}-{app.namespace}"

    def release_name(self, app: Application) -> str:
        return f"{app.name}-{app.namespace}"

    async def render(
        self,
        app: Application,
        token: str | None = None,
        kubeconfig: str | None = None,
    ) -> str:
        """
        Return the rendered multi-document manifest for `app`.

        Raises:
            CheckoutError: If the repository cannot be cloned or updated.
            SourceNotFoundError: If the chart path does not exist in the checkout.
            SourceResolutionError: If helm fails or prints something unexpected.
        """
        checkout = GitCheckout(app.source.repo_url, self.checkout_path(app), token=token)
        sha = await checkout.sync(app.source.target_revision)

        chart = checkout.local_path / app.source.path
        if not chart.is_dir():
            raise SourceNotFoundError(
                f"Chart path '{app.source.path}' not found at {app.source.target_revision}",
                sha,
            )

        args = [
            "install",
            self.release_name(app),
            str(chart),
            "--namespace",
            app.target_namespace,
            "--dry-run",
            "--output",
            "json",
        ]

        with _kubeconfig_file(kubeconfig) as kubeconfig_path:
            if kubeconfig_path:
                args.extend(["--kubeconfig", kubeconfig_path])
            stdout = await self._run(args)

        try:
            release = json.loads(stdout)
        except ValueError as e:
            raise SourceResolutionError("helm printed invalid JSON", str(e)) from e
        if not isinstance(release, dict):
            raise SourceResolutionError("helm printed an unexpected document")

        logger.debug("Rendered chart", chart=app.source.path, revision=sha)
        return str(release.get("manifest") or "")

    async def _run(self, args: list[str]) -> str:
        log = logger.bind(command=self._helm, args=args[:3])
        log.debug("Running helm")
        try:
            process = await asyncio.create_subprocess_exec(
                self._helm,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SourceResolutionError(f"Cannot run {self._helm}", str(e)) from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            log.warning("helm failed", returncode=process.returncode, stderr=message[:200])
            raise SourceResolutionError("helm install --dry-run failed", message[:500])
        return stdout.decode()
