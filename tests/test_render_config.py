import json
import logging
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from render_config import (
    FontKind,
    RenderConfig,
    ServiceSettings,
    load_config,
    parse_resolution,
    resolve_font,
    save_config,
)


def _settings(tmp_path, **kw):
    base = dict(
        upload_dir=tmp_path / "uploads",
        render_dir=tmp_path / "renders",
        caption_dir=tmp_path / "captions",
        config_path=tmp_path / "config.json",
        fonts_dir=str(tmp_path / "missing-fonts"),
        font_file=str(tmp_path / "missing.ttf"),
        fallback_fonts_dir=str(tmp_path / "missing-fallback"),
        fallback_font_file=str(tmp_path / "missing-fallback.ttf"),
    )
    base.update(kw)
    return ServiceSettings(**base)


def test_parse_resolution():
    assert parse_resolution("1080x1920") == (1080, 1920)
    assert parse_resolution("720X1280") == (720, 1280)
    assert parse_resolution(None) is None
    for bad in ("1080", "axb", "0x100", "-5x10"):
        with pytest.raises(ValueError):
            parse_resolution(bad)


def test_missing_config_yields_defaults(tmp_path):
    config = load_config(tmp_path / "nope.json")
    assert config == RenderConfig()
    assert config.size == (1080, 1920)
    assert config.default_text == "Link in Bio"
    assert config.font_size is None


def test_corrupt_config_yields_defaults(tmp_path, caplog):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with caplog.at_level(logging.WARNING, logger="render_config"):
        assert load_config(path) == RenderConfig()
    assert any("unreadable" in r.getMessage() for r in caplog.records)


def test_save_then_load(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = RenderConfig(resolution="720x1280", font_size=60, font_color="#ff0000",
                          anchor="bottom", caption_mode="drawtext", jitter=True)
    save_config(config, path)
    assert json.loads(path.read_text())["font_color"] == "#FF0000"
    assert load_config(path) == config.model_copy(update={"font_color": "#FF0000"})
    assert [p.name for p in path.parent.iterdir()] == ["config.json"]


@pytest.mark.parametrize(
    "field, value",
    [("resolution", "big"), ("font_color", "red"), ("anchor", "left"), ("caption_mode", "srt"), ("font_size", 2)],
)
def test_invalid_config_values_are_rejected(field, value):
    with pytest.raises(ValidationError):
        RenderConfig(**{field: value})


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("RENDER_DIR", str(tmp_path / "r"))
    monkeypatch.setenv("FFMPEG_TIMEOUT", "12")
    monkeypatch.setenv("DOWNLOAD_TIMEOUT", "not-a-number")
    monkeypatch.setenv("ADMIN_PASSWORD", "pw")
    settings = ServiceSettings.from_env()
    assert settings.render_dir == tmp_path / "r"
    assert settings.ffmpeg_timeout == 12
    assert settings.download_timeout == 180
    assert settings.admin_password == "pw"
    settings.ensure_dirs()
    assert (tmp_path / "r").is_dir()


def test_resolve_font_primary(tmp_path):
    fonts = tmp_path / "fonts"
    fonts.mkdir()
    choice = resolve_font("ass", _settings(tmp_path, fonts_dir=str(fonts)))
    assert choice.kind is FontKind.PRIMARY
    assert choice.path == str(fonts)


def test_resolve_font_fallback_is_logged(tmp_path, caplog):
    font = tmp_path / "fallback.ttf"
    font.write_bytes(b"ttf")
    with caplog.at_level(logging.WARNING, logger="render_config"):
        choice = resolve_font("drawtext", _settings(tmp_path, fallback_font_file=str(font)))
    assert choice.kind is FontKind.FALLBACK
    assert choice.path == str(font)
    assert choice.available
    assert any("fallback" in r.getMessage() for r in caplog.records)


def test_resolve_font_missing_is_not_fatal(tmp_path):
    choice = resolve_font("drawtext", _settings(tmp_path))
    assert choice.kind is FontKind.MISSING
    assert not choice.available
    assert choice.path is None
