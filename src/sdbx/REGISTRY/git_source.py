# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Source backed by a shallow git checkout kept in the source cache.
"""
import logging
import os
import shutil
import subprocess
import tempfile
from typing import List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..MODELS.errors import GitCommandError, OperationCancelled, SourceError
from ..MODELS.source_config import SOURCE_TYPE_GIT
from ..PARSERS.definition_parser import DefinitionParser
from ..UTILS.cancellation import CancellationToken, check_cancelled
from .base_source import BaseSource
from .source_cache import SourceCache

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2

network_retry = retry(
    retry=retry_if_exception_type(GitCommandError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, max=4),
    reraise=True,
)


class GitSource(BaseSource):
    """
    Clones ``url`` into ``<cache>/<name>`` and refreshes it when the cache TTL expires.

    A refresh never leaves a half-updated checkout: clones land in a
    temporary directory that is renamed into place, and updates fetch
    first and only reset the working tree once the fetch succeeded.
    """
    source_type = SOURCE_TYPE_GIT

    def __init__(self, name: str, url: str, cache: SourceCache, branch: str = "main",
                 sub_path: str = "", ssh_key: str = "", priority: int = 0,
                 enabled: bool = True, verified: bool = False,
                 parser: Optional[DefinitionParser] = None):
        super().__init__(name, priority, enabled, parser)
        self._url = url
        self._branch = branch or "main"
        self.sub_path = sub_path
        self.ssh_key = ssh_key
        self.verified = verified
        self.cache = cache

    @property
    def url(self) -> str:
        return self._url

    @property
    def branch(self) -> str:
        return self._branch

    @property
    def revision(self) -> str:
        return self.cache.get_commit(self.name)

    @property
    def fetched_at(self) -> str:
        return self.cache.get_last_updated(self.name)

    @property
    def repo_path(self) -> str:
        return str(self.cache.repo_path(self.name))

    def services_root(self) -> str:
        if self.sub_path:
            return os.path.join(self.repo_path, self.sub_path)
        return self.repo_path

    def is_cloned(self) -> bool:
        return os.path.isdir(os.path.join(self.repo_path, ".git"))

    def _prepare(self, ctx: Optional[CancellationToken]) -> None:
        """
        Makes sure a checkout exists, refreshing it when stale. A failed
        refresh falls back to the existing checkout.
        """
        if not self.is_cloned():
            self.update(ctx)
            return
        if not self.cache.needs_update(self.name):
            return
        try:
            self.update(ctx)
        except OperationCancelled:
            raise
        except SourceError as e:
            logger.warning("Could not refresh source %s, using existing checkout: %s", self.name, e)

    def update(self, ctx: Optional[CancellationToken] = None) -> None:
        """
        Clones or fast-forwards the checkout to the tip of the branch.

        :raises SourceError: If git fails.
        :raises OperationCancelled: If ``ctx`` is cancelled; the previous checkout is kept.
        """
        with self._lock:
            check_cancelled(ctx)
            if self.is_cloned():
                self._pull(ctx)
            else:
                self._clone(ctx)
            commit = self._run_git(["rev-parse", "HEAD"], cwd=self.repo_path, ctx=ctx).strip()
            self.cache.set_commit(self.name, commit)
            self.cache.mark_updated(self.name, url=self.url, branch=self.branch)
            logger.info("Source %s at %s", self.name, commit[:12])

    def _clone(self, ctx: Optional[CancellationToken]) -> None:
        tmp_dir = tempfile.mkdtemp(prefix=f".{self.name}-", dir=str(self.cache.cache_dir))
        try:
            self._fetch_clone(tmp_dir, ctx)
            check_cancelled(ctx)
            if os.path.exists(self.repo_path):
                shutil.rmtree(self.repo_path)
            os.replace(tmp_dir, self.repo_path)
        finally:
            if os.path.exists(tmp_dir):
                shutil.rmtree(tmp_dir, ignore_errors=True)

    @network_retry
    def _fetch_clone(self, target: str, ctx: Optional[CancellationToken]) -> None:
        # git refuses to clone into a non-empty directory left by a failed attempt
        for entry in os.listdir(target):
            path = os.path.join(target, entry)
            if os.path.isdir(path):
                shutil.rmtree(path)
            else:
                os.unlink(path)
        self._run_git(
            ["clone", "--branch", self.branch, "--single-branch", "--depth", "1", self.url, target],
            ctx=ctx,
        )

    def _pull(self, ctx: Optional[CancellationToken]) -> None:
        self._fetch(ctx)
        check_cancelled(ctx)
        self._run_git(["reset", "--hard", "FETCH_HEAD"], cwd=self.repo_path, ctx=ctx)

    @network_retry
    def _fetch(self, ctx: Optional[CancellationToken]) -> None:
        self._run_git(["fetch", "--depth", "1", "origin", self.branch], cwd=self.repo_path, ctx=ctx)

    def _git_env(self):
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        if self.ssh_key:
            key = os.path.expanduser(self.ssh_key)
            env["GIT_SSH_COMMAND"] = f"ssh -i {key} -o StrictHostKeyChecking=accept-new"
        return env

    def _run_git(self, args: List[str], cwd: Optional[str] = None,
                 ctx: Optional[CancellationToken] = None) -> str:
        """
        Runs a git command, killing it if ``ctx`` is cancelled.

        :return: The command's stdout.
        :raises GitCommandError: If git exits non-zero.
        """
        check_cancelled(ctx)
        try:
            process = subprocess.Popen(
                ["git"] + args,
                cwd=cwd,
                env=self._git_env(),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError:
            raise SourceError(self.name, "git executable not found")

        while True:
            try:
                stdout, stderr = process.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if ctx is not None and ctx.cancelled:
                    process.kill()
                    process.communicate()
                    ctx.raise_if_cancelled()

        if process.returncode != 0:
            raise GitCommandError(self.name, args, stderr or stdout)
        return stdout
