"""
Unit tests for definition sources and the source cache.
"""
import logging
import os
import shutil
import subprocess
from datetime import timedelta

import pytest
import yaml

from sdbx import __version__
from sdbx.MODELS.errors import OperationCancelled, ServiceNotFoundError, SourceError
from sdbx.REGISTRY.embedded_source import EmbeddedSource
from sdbx.REGISTRY.git_source import GitSource
from sdbx.REGISTRY.local_source import LocalSource
from sdbx.REGISTRY.source_cache import SourceCache
from sdbx.UTILS.cancellation import CancellationToken

from conftest import service_doc


class TestLocalSource:
    def test_list_and_load(self, tmp_path, write_service):
        write_service(tmp_path, "alpha", version="1.2.0")
        write_service(tmp_path, "beta", subdir="core")
        source = LocalSource("mine", str(tmp_path), priority=10)

        assert source.list_services() == ["alpha", "beta"]
        assert source.load_service("alpha").version == "1.2.0"
        assert source.has_service("beta")
        assert source.revision == "local"
        assert source.url == str(tmp_path)

    def test_missing_service(self, tmp_path):
        source = LocalSource("mine", str(tmp_path))
        with pytest.raises(ServiceNotFoundError):
            source.load_service("ghost")

    def test_missing_root_lists_nothing(self, tmp_path):
        assert LocalSource("mine", str(tmp_path / "nowhere")).list_services() == []

    def test_name_mismatch_is_renamed(self, tmp_path, write_service, caplog):
        path = write_service(tmp_path, "alpha")
        doc = service_doc("other")
        with open(path, "w") as f:
            yaml.safe_dump(doc, f)

        with caplog.at_level(logging.WARNING):
            definition = LocalSource("mine", str(tmp_path)).load_service("alpha")
        assert definition.name == "alpha"
        assert "metadata.name" in caplog.text

    def test_load_all_skips_malformed(self, tmp_path, write_service, caplog):
        write_service(tmp_path, "good")
        bad = tmp_path / "bad"
        bad.mkdir()
        (bad / "service.yaml").write_text("apiVersion: nope\nkind: Service\n")

        with caplog.at_level(logging.WARNING):
            definitions = LocalSource("mine", str(tmp_path)).load_all()
        assert list(definitions) == ["good"]
        assert "bad" in caplog.text

    def test_overrides(self, tmp_path, write_service):
        write_service(tmp_path, "alpha")
        (tmp_path / "alpha" / "override.yaml").write_text(yaml.safe_dump({
            "apiVersion": "sdbx.io/v1",
            "kind": "ServiceOverride",
            "spec": {"image": {"tag": "pinned"}},
        }))
        override = LocalSource("mine", str(tmp_path)).load_overrides("alpha")
        assert override.name == "alpha"
        assert override.spec.image.tag == "pinned"

    def test_cancelled_read(self, tmp_path, write_service):
        write_service(tmp_path, "alpha")
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            LocalSource("mine", str(tmp_path)).load_service("alpha", token)


class TestEmbeddedSource:
    def test_core_services_are_shipped(self):
        source = EmbeddedSource()
        names = source.list_services()
        for name in ("traefik", "authelia", "gluetun", "qbittorrent", "plex", "cloudflared"):
            assert name in names

    def test_revision_tracks_cli_version(self):
        source = EmbeddedSource()
        assert source.revision == f"embedded-{__version__}"
        assert source.url == "embedded"
        assert source.priority < 0


class TestSourceCache:
    def test_needs_update_until_marked(self, tmp_path):
        cache = SourceCache(str(tmp_path), timedelta(hours=1))
        assert cache.needs_update("official")
        cache.mark_updated("official", url="https://example.com/repo.git", branch="main")
        assert not cache.needs_update("official")
        assert cache.needs_update("other")

    def test_zero_ttl_always_stale(self, tmp_path):
        cache = SourceCache(str(tmp_path), timedelta(0))
        cache.mark_updated("official")
        assert cache.needs_update("official")

    def test_index_persists(self, tmp_path):
        cache = SourceCache(str(tmp_path))
        cache.set_commit("official", "abc123")
        cache.mark_updated("official", url="u", branch="b")

        reloaded = SourceCache(str(tmp_path))
        assert reloaded.get_commit("official") == "abc123"
        assert reloaded.get_last_updated("official") == cache.get_last_updated("official")

    def test_corrupt_index_is_ignored(self, tmp_path, caplog):
        (tmp_path / "cache.json").write_text("{not json")
        with caplog.at_level(logging.WARNING):
            cache = SourceCache(str(tmp_path))
        assert cache.get_commit("official") == ""
        assert cache.needs_update("official")

    def test_clear(self, tmp_path):
        cache = SourceCache(str(tmp_path))
        cache.repo_path("official").mkdir()
        (cache.repo_path("official") / "file").write_text("x")
        cache.set_commit("official", "abc")

        cache.clear("official")

        assert not cache.exists("official")
        assert cache.get_commit("official") == ""


def git(*args, cwd):
    env = dict(os.environ,
               GIT_AUTHOR_NAME="test", GIT_AUTHOR_EMAIL="test@example.com",
               GIT_COMMITTER_NAME="test", GIT_COMMITTER_EMAIL="test@example.com")
    return subprocess.run(["git", *args], cwd=cwd, env=env, check=True,
                          capture_output=True, text=True).stdout.strip()


@pytest.fixture
def upstream(tmp_path, write_service):
    repo = tmp_path / "upstream"
    repo.mkdir()
    git("init", "-q", cwd=repo)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=repo)
    write_service(repo / "services", "alpha", version="1.0.0")
    git("add", "-A", cwd=repo)
    git("commit", "-q", "-m", "initial", cwd=repo)
    return repo


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
class TestGitSource:
    def make_source(self, tmp_path, upstream, ttl=timedelta(hours=1)):
        cache = SourceCache(str(tmp_path / "cache"), ttl)
        return GitSource("team", f"file://{upstream}", cache, branch="main", sub_path="services")

    def test_clone_on_first_read(self, tmp_path, upstream):
        source = self.make_source(tmp_path, upstream)

        assert source.list_services() == ["alpha"]
        assert source.is_cloned()
        assert source.revision == git("rev-parse", "HEAD", cwd=upstream)
        assert source.fetched_at

    def test_update_moves_to_new_commit(self, tmp_path, upstream, write_service):
        source = self.make_source(tmp_path, upstream)
        source.update()

        write_service(upstream / "services", "alpha", version="2.0.0")
        git("commit", "-q", "-am", "bump", cwd=upstream)
        source.update()

        assert source.revision == git("rev-parse", "HEAD", cwd=upstream)
        assert source.load_service("alpha").version == "2.0.0"

    def test_fresh_cache_is_not_refetched(self, tmp_path, upstream, write_service):
        source = self.make_source(tmp_path, upstream)
        source.update()
        first = source.revision

        write_service(upstream / "services", "alpha", version="2.0.0")
        git("commit", "-q", "-am", "bump", cwd=upstream)

        assert source.load_service("alpha").version == "1.0.0"
        assert source.revision == first

    def test_bad_url_raises_source_error(self, tmp_path):
        cache = SourceCache(str(tmp_path / "cache"))
        source = GitSource("broken", f"file://{tmp_path / 'missing'}", cache)
        with pytest.raises(SourceError):
            source.update()
        assert not source.is_cloned()

    def test_cancelled_update_keeps_checkout(self, tmp_path, upstream):
        source = self.make_source(tmp_path, upstream)
        source.update()
        revision = source.revision
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            source.update(token)
        assert source.revision == revision
        assert source.is_cloned()
