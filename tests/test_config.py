import tomllib
from pathlib import Path

import pytest

from agentcrew import __version__
from agentcrew.config import CrewConfig, dumps_toml, load_config, save_config
from agentcrew.errors import ValidationError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "crew.toml"
    config = CrewConfig.default()
    config.scheduler.min_delay_seconds = 1.5
    config.scheduler.max_delay_seconds = 2.5
    config.review.merge_method = "rebase"
    config.review.default_repository = "web-app"
    config.narration.history_limit = 7
    config.generator.primary = "template"
    config.generator.max_retries = 3
    config.host.backend = "memory"
    config.host.owner = "acme"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.scheduler.min_delay_seconds == 1.5
    assert loaded.scheduler.max_delay_seconds == 2.5
    assert loaded.scheduler.step_pause_seconds == 3.0
    assert loaded.review.merge_method == "rebase"
    assert loaded.review.default_repository == "web-app"
    assert loaded.narration.history_limit == 7
    assert loaded.generator.primary == "template"
    assert loaded.generator.max_retries == 3
    assert loaded.host.backend == "memory"
    assert loaded.host.owner == "acme"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.scheduler.min_delay_seconds == 5.0
    assert loaded.scheduler.max_delay_seconds == 15.0
    assert loaded.review.start_delay_seconds == 5.0
    assert loaded.review.stagger_seconds == 3.0
    assert loaded.review.settle_seconds == 5.0
    assert loaded.review.default_repository == "ai-test-repo"
    assert loaded.narration.recent_events_limit == 5


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(CrewConfig.default())

    for section in ("[scheduler]", "[review]", "[narration]", "[generator]", "[host]"):
        assert section in rendered
    assert "settle_seconds" in rendered
    assert "retry_backoff_seconds" in rendered
    assert 'merge_method = "squash"' in rendered


def test_inverted_delay_range_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "crew.toml"
    config_path.write_text(
        "[scheduler]\nmin_delay_seconds = 10.0\nmax_delay_seconds = 2.0\n", encoding="utf-8"
    )

    with pytest.raises(ValidationError, match="max_delay_seconds"):
        load_config(config_path)


def test_unknown_keys_and_bad_toml_are_validation_errors(tmp_path: Path) -> None:
    unknown = tmp_path / "unknown.toml"
    unknown.write_text("[review]\nsettle = 1\n", encoding="utf-8")
    broken = tmp_path / "broken.toml"
    broken.write_text("[review\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config(unknown)
    with pytest.raises(ValidationError):
        load_config(broken)


def test_unsupported_generator_is_rejected() -> None:
    config = CrewConfig.default()
    config.generator.fallback = "claude"  # type: ignore[assignment]

    with pytest.raises(ValidationError, match="generator"):
        config.validate()


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
