from __future__ import annotations

import io
from pathlib import Path

import yaml
from PIL import Image
from typer.testing import CliRunner

from stickerbot import __version__
from stickerbot.surfaces.cli.cli import app

runner = CliRunner()


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_sticker_command_writes_webp(tmp_path: Path, monkeypatch, make_image) -> None:
    monkeypatch.chdir(tmp_path)
    source = tmp_path / "cat.png"
    source.write_bytes(make_image(300, 150))
    target = tmp_path / "out" / "cat.webp"

    result = runner.invoke(app, ["sticker", str(source), str(target)])

    assert result.exit_code == 0, result.output
    image = Image.open(io.BytesIO(target.read_bytes()))
    assert image.format == "WEBP"
    assert image.size == (512, 512)


def test_sticker_command_rejects_non_images(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    source = tmp_path / "notes.txt"
    source.write_text("hello", encoding="utf-8")

    result = runner.invoke(app, ["sticker", str(source), str(tmp_path / "x.webp")])

    assert result.exit_code == 1
    assert not (tmp_path / "x.webp").exists()


def test_config_command_prints_effective_yaml(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.delenv("STICKERBOT_PORT", raising=False)
    (tmp_path / "stickerbot.yml").write_text(
        "server:\n  port: 4000\n", encoding="utf-8"
    )

    result = runner.invoke(app, ["config"])

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(result.output)
    assert data["server"]["port"] == 4000
    assert data["media"]["sticker_size"] == 512


def test_invalid_config_exits_with_message(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "stickerbot.yml").write_text(
        "media:\n  sticker_quality: 500\n", encoding="utf-8"
    )

    result = runner.invoke(app, ["run"])

    assert result.exit_code == 1
    assert "media.sticker_quality" in result.output
