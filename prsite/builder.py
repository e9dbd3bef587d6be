"""Fetch a pull request's source and run it as a site on its assigned port.

Each instance lives in <directory>/<PR number>/. The branch archive is
downloaded from the PR's head repository and extracted there; when a
command is configured it is started in the extracted tree with PORT and
PORTS in its environment.
"""

import io
import logging
import os
import shutil
import subprocess
import threading
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

from prsite.adapters.base import GitPlatformAdapter
from prsite.errors import BuildError, ExternalAPIError
from prsite.models import InstanceRecord

LOG = logging.getLogger("prsite.builder")


class SiteBuilder(ABC):
    """Provisioning backend for site instances."""

    @abstractmethod
    def provision(self, record: InstanceRecord) -> None:
        """Fetch and start the site for a new instance."""
        ...

    @abstractmethod
    def rebuild(self, record: InstanceRecord) -> None:
        """Replace a site in place, keeping its ports."""
        ...

    @abstractmethod
    def teardown(self, record: InstanceRecord) -> None:
        """Stop the site and delete its files."""
        ...


def _extract_archive(data: bytes, dest: Path) -> Path:
    """Extract a zipball into dest; return the project root inside it.

    GitHub zipballs wrap everything in a single <owner>-<repo>-<sha>/
    directory, which becomes the root.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            for member in zf.namelist():
                target = (dest / member).resolve()
                if not target.is_relative_to(dest.resolve()):
                    raise BuildError(f"Archive member escapes instance directory: {member}")
            zf.extractall(dest)
        entries = list(dest.iterdir())
    except zipfile.BadZipFile as e:
        raise BuildError(f"Invalid archive: {e}") from e
    except OSError as e:
        raise BuildError(f"Cannot extract archive into {dest}: {e}") from e
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest


class ArchiveSiteBuilder(SiteBuilder):
    """Downloads branch zipballs and runs an optional start command."""

    def __init__(
        self,
        adapter: GitPlatformAdapter,
        instances_dir: Path,
        command: List[str] | None = None,
        stop_timeout: int = 30,
    ) -> None:
        self._adapter = adapter
        self.instances_dir = Path(instances_dir)
        self._command = list(command or [])
        self._stop_timeout = stop_timeout
        self._processes: Dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def instance_dir(self, pr_id: int) -> Path:
        return self.instances_dir / str(pr_id)

    def provision(self, record: InstanceRecord) -> None:
        workdir = self.instance_dir(record.pr_id)
        self._clear(workdir)
        try:
            workdir.mkdir(parents=True)
        except OSError as e:
            raise BuildError(f"Cannot create {workdir}: {e}") from e
        try:
            data = self._adapter.download_archive(record.source_repo_full_name, record.branch)
        except ExternalAPIError as e:
            raise BuildError(f"Download of {record.source_repo_full_name}@{record.branch} failed: {e}") from e
        root = _extract_archive(data, workdir)
        LOG.info("PR #%s: extracted %s@%s into %s", record.pr_id, record.source_repo_full_name, record.branch, root)
        if self._command:
            self._start(record, root)

    def rebuild(self, record: InstanceRecord) -> None:
        self._stop(record.pr_id)
        self.provision(record)

    def teardown(self, record: InstanceRecord) -> None:
        self._stop(record.pr_id)
        workdir = self.instance_dir(record.pr_id)
        self._clear(workdir)
        LOG.info("PR #%s: removed %s", record.pr_id, workdir)

    def _clear(self, workdir: Path) -> None:
        if not workdir.exists():
            return
        try:
            shutil.rmtree(workdir)
        except OSError as e:
            raise BuildError(f"Cannot remove {workdir}: {e}") from e

    def _start(self, record: InstanceRecord, cwd: Path) -> None:
        env = {
            **os.environ,
            "PORT": str(record.assigned_port),
            "PORTS": ",".join(str(p) for p in record.assigned_ports),
            "PR_NUMBER": str(record.pr_id),
        }
        try:
            proc = subprocess.Popen(
                self._command,
                cwd=cwd,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise BuildError(f"Cannot start {self._command[0]}: {e}") from e
        with self._lock:
            self._processes[record.pr_id] = proc
        LOG.info("PR #%s: started %s (pid %s) on port %s", record.pr_id, self._command[0], proc.pid, record.assigned_port)

    def _stop(self, pr_id: int) -> None:
        with self._lock:
            proc = self._processes.pop(pr_id, None)
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self._stop_timeout)
        except subprocess.TimeoutExpired:
            LOG.warning("PR #%s: process %s did not stop, killing", pr_id, proc.pid)
            proc.kill()
            proc.wait()

    def is_running(self, pr_id: int) -> bool:
        with self._lock:
            proc = self._processes.get(pr_id)
        return proc is not None and proc.poll() is None
