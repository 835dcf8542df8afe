"""Tests for the local directory deployment backend."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from deployforge.backends import DeploymentBackend, LocalDirectoryBackend
from deployforge.models.deployments import RELEASE_MARKER


class TestLocalDirectoryBackend:
    def test_satisfies_protocol(self):
        assert isinstance(LocalDirectoryBackend(), DeploymentBackend)

    def test_transfer_stages_outside_target(self, artifact, staging_env, live_staging):
        backend = LocalDirectoryBackend()
        staged = backend.transfer(artifact, staging_env)
        try:
            assert (staged / "release" / "index.php").is_file()
            assert not staged.is_relative_to(live_staging)
            assert (live_staging / "index.php").read_text(encoding="utf-8") == "<?php // entry point v1\n"
        finally:
            backend.discard(staged)
        assert not staged.exists()

    def test_apply_replaces_tree_and_keeps_preserved(self, artifact, staging_env, live_staging):
        backend = LocalDirectoryBackend(["LocalSettings.php", "images", "cache"])
        staged = backend.transfer(artifact, staging_env)
        backend.apply(staged, staging_env)
        backend.discard(staged)

        assert (live_staging / "index.php").read_text(encoding="utf-8") == "<?php // entry point v2\n"
        assert not (live_staging / "includes" / "Legacy.php").exists()
        assert (live_staging / "LocalSettings.php").read_text(encoding="utf-8") == "<?php // live site settings\n"
        assert (live_staging / "images" / "a" / "ab" / "Logo.png").is_file()

    def test_apply_writes_release_marker(self, artifact, staging_env, live_staging):
        backend = LocalDirectoryBackend()
        staged = backend.transfer(artifact, staging_env)
        backend.apply(staged, staging_env)
        marker = json.loads((live_staging / RELEASE_MARKER).read_text(encoding="utf-8"))
        assert marker["artifact_name"] == artifact.artifact_name
        assert marker["environment"] == "staging"

    def test_transfer_detects_corruption(self, artifact, staging_env, live_staging):
        with artifact.path.open("ab") as fh:
            fh.write(b"tampered")
        with pytest.raises(ValueError, match="changed in transit"):
            LocalDirectoryBackend().transfer(artifact, staging_env)
        leftovers = [p for p in live_staging.parent.iterdir() if p.name.startswith(".staging.release-")]
        assert leftovers == []

    def test_apply_without_staged_release(self, tmp_dir, staging_env):
        with pytest.raises(FileNotFoundError):
            LocalDirectoryBackend().apply(tmp_dir / "nothing", staging_env)

    def test_preserve_paths_are_top_level_names(self):
        backend = LocalDirectoryBackend(["images/uploads", "cache"])
        assert backend.preserve_paths == ("images", "cache")

    def test_custom_staging_root(self, tmp_dir, artifact, staging_env):
        backend = LocalDirectoryBackend(staging_root=tmp_dir / "stage")
        staged = backend.transfer(artifact, staging_env)
        assert staged.parent == tmp_dir / "stage"
        backend.discard(staged)
