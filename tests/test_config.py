"""
Tests for enginedb.config.
"""

from __future__ import annotations

from pathlib import Path

import pytest

import enginedb.config as config_module
from enginedb.config import DEFAULT_CONFIG_PATH, get_config, load_config, reload_config
from enginedb.core.checker import FindingKind


class TestLoadConfig:
    """Tests for load_config."""

    def test_packaged_defaults(self) -> None:
        config = load_config()
        assert config.source == DEFAULT_CONFIG_PATH
        assert config.pool.size == 4
        assert config.housekeeping.concurrency == 4
        assert config.chunk_size == 128
        assert config.artwork.jpeg_quality == 70
        assert config.artwork.max_ratio == 0.75
        assert set(config.housekeeping.repair_kinds) == {k.value for k in FindingKind}

    def test_partial_override(self, tmp_path: Path) -> None:
        path = tmp_path / "override.toml"
        path.write_text('[pool]\nsize = 8\n\n[housekeeping]\nrepair_kinds = ["ordinal_gap"]\n')

        config = load_config(path)
        assert config.pool.size == 8
        assert config.pool.busy_timeout == 10.0
        assert config.housekeeping.repair_kinds == ["ordinal_gap"]
        assert config.chunk_size == 128

    @pytest.mark.parametrize(
        "content",
        [
            "[pool]\nsize = 0\n",
            "[batch]\nchunk_size = 0\n",
            "[artwork]\njpeg_quality = 100\n",
            "[artwork]\nmax_ratio = 1.5\n",
            'pool = "big"\n',
            '[pool]\njournal_mode = "fast"\n',
        ],
    )
    def test_invalid_values(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "bad.toml"
        path.write_text(content)
        with pytest.raises(ValueError):
            load_config(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")


class TestConfigSingleton:
    """Tests for get_config / reload_config."""

    def test_lazy_and_reloadable(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(config_module, "_config", None)
        first = get_config()
        assert get_config() is first

        path = tmp_path / "c.toml"
        path.write_text("[housekeeping]\nconcurrency = 2\n")
        reloaded = reload_config(path)
        assert reloaded.housekeeping.concurrency == 2
        assert get_config() is reloaded
