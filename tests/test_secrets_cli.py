from __future__ import annotations

import io
from pathlib import Path
from typing import Any

import pytest

from open_llm_adapter import secrets_cli
from open_llm_adapter.config import OpenAICompatibleCredential, load_config_snapshot
from open_llm_adapter.secret_codec import load_secret_codec
from tests.yaml_test_utils import load_yaml_file, save_yaml_file


def _key_args(tmp_path: Path) -> list[str]:
    return [
        "--private-key",
        str(tmp_path / "keys" / "private.pem"),
        "--public-key",
        str(tmp_path / "keys" / "public.pem"),
    ]


def _keygen(tmp_path: Path) -> None:
    assert secrets_cli.main(["keygen", *_key_args(tmp_path), "--key-size", "1024"]) == 0


def test_keygen_writes_key_pair_and_refuses_overwrite(tmp_path: Path, capsys: Any) -> None:
    _keygen(tmp_path)

    assert "wrote" in capsys.readouterr().out
    assert (tmp_path / "keys" / "private.pem").exists()
    assert (tmp_path / "keys" / "public.pem").exists()
    with pytest.raises(SystemExit):
        secrets_cli.main(["keygen", *_key_args(tmp_path)])


def test_encrypt_then_decrypt(tmp_path: Path, capsys: Any) -> None:
    _keygen(tmp_path)
    capsys.readouterr()

    assert secrets_cli.main(["encrypt", *_key_args(tmp_path), "sk-secret"]) == 0
    ciphertext = capsys.readouterr().out.strip()
    assert ciphertext != "sk-secret"

    assert secrets_cli.main(["decrypt", *_key_args(tmp_path), ciphertext]) == 0
    assert capsys.readouterr().out.strip() == "sk-secret"


def test_encrypt_reads_value_from_stdin(
    tmp_path: Path, capsys: Any, monkeypatch: Any
) -> None:
    _keygen(tmp_path)
    capsys.readouterr()
    monkeypatch.setattr("sys.stdin", io.StringIO("sk-from-stdin\n"))

    assert secrets_cli.main(["encrypt", *_key_args(tmp_path), "-"]) == 0
    ciphertext = capsys.readouterr().out.strip()

    codec = load_secret_codec(tmp_path / "keys" / "private.pem")
    assert codec.decrypt(ciphertext) == "sk-from-stdin"


def test_decrypt_failure_returns_error_code(tmp_path: Path, capsys: Any) -> None:
    _keygen(tmp_path)

    assert secrets_cli.main(["decrypt", *_key_args(tmp_path), "bm90LWEtY2lwaGVy"]) == 1
    assert "decrypt:" in capsys.readouterr().err


def test_set_secret_updates_existing_credential(tmp_path: Path, capsys: Any) -> None:
    _keygen(tmp_path)
    config_path = tmp_path / "llm" / "openai.yaml"
    save_yaml_file(
        config_path,
        {
            "environments": {
                "development": {
                    "credentials": [{"name": "primary", "weight": 3, "models": ["gpt-4o"]}]
                }
            }
        },
    )

    exit_code = secrets_cli.main(
        [
            "set-secret",
            "--path",
            str(config_path),
            "--environment",
            "development",
            "--credential",
            "primary",
            *_key_args(tmp_path),
            "sk-primary",
        ]
    )

    assert exit_code == 0
    credential = load_yaml_file(config_path)["environments"]["development"]["credentials"][0]
    assert credential["weight"] == 3
    codec = load_secret_codec(tmp_path / "keys" / "private.pem")
    assert codec.decrypt(credential["api_key"]) == "sk-primary"
    snapshot = load_config_snapshot(
        config_path.parent, {"openai": OpenAICompatibleCredential}
    )
    assert snapshot.credentials_for("openai")[0].api_key == credential["api_key"]


def test_set_secret_creates_file_and_credential(tmp_path: Path) -> None:
    _keygen(tmp_path)
    config_path = tmp_path / "llm" / "bedrock.yaml"

    secrets_cli.main(
        [
            "set-secret",
            "--path",
            str(config_path),
            "--environment",
            "production",
            "--credential",
            "aws-1",
            "--field",
            "secret_access_key",
            *_key_args(tmp_path),
            "aws-secret",
        ]
    )

    credentials = load_yaml_file(config_path)["environments"]["production"]["credentials"]
    assert [credential["name"] for credential in credentials] == ["aws-1"]
    assert credentials[0]["enabled"] is True
    assert credentials[0]["secret_access_key"] != "aws-secret"


def test_show_summarizes_without_secrets(tmp_path: Path, capsys: Any) -> None:
    config_path = tmp_path / "openai.yaml"
    save_yaml_file(
        config_path,
        {
            "environments": {
                "development": {
                    "credentials": [
                        {"name": "a", "api_key": "Q0lQSEVSVEVYVA==", "models": ["gpt-4o"]},
                        {"name": "b", "api_key": "", "enabled": False, "weight": 0},
                    ]
                }
            }
        },
    )

    assert secrets_cli.main(["show", "--path", str(config_path)]) == 0
    output = capsys.readouterr().out

    assert "Q0lQSEVSVEVYVA==" not in output
    assert "api_key: set" in output
    assert "api_key: empty" in output
    assert "enabled: false" in output
