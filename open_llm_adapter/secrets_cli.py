from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

import yaml

from open_llm_adapter.config.settings import get_settings
from open_llm_adapter.errors import AdapterError
from open_llm_adapter.secret_codec import SecretCodec, load_secret_codec, write_keypair
from open_llm_adapter.utils.yaml_utils import load_yaml_dict, write_yaml_dict

SECRET_FIELDS = ("api_key", "access_key", "secret_access_key", "session_token")


def _read_value(args: argparse.Namespace) -> str:
    value = args.value
    if value is None or value == "-":
        value = sys.stdin.read()
    value = value.strip()
    if not value:
        raise SystemExit("error: empty value")
    return value


def cmd_keygen(args: argparse.Namespace) -> str:
    private_path = Path(args.private_key)
    if private_path.exists() and not args.force:
        raise SystemExit(f"error: '{private_path}' exists (use --force to overwrite)")
    write_keypair(SecretCodec.generate(args.key_size), private_path, args.public_key)
    return f"wrote {private_path} and {args.public_key}"


def cmd_encrypt(args: argparse.Namespace) -> str:
    codec = load_secret_codec(args.private_key, args.public_key)
    return codec.encrypt(_read_value(args))


def cmd_decrypt(args: argparse.Namespace) -> str:
    codec = load_secret_codec(args.private_key)
    return codec.decrypt(_read_value(args))


def _find_credential(
    data: dict[str, Any], environment: str, name: str
) -> dict[str, Any]:
    environments = data.setdefault("environments", {})
    env_block = environments.setdefault(environment, {}) or {}
    environments[environment] = env_block
    credentials = env_block.setdefault("credentials", [])
    for credential in credentials:
        if isinstance(credential, dict) and credential.get("name") == name:
            return credential
    credential = {"name": name, "enabled": True, "weight": 1}
    credentials.append(credential)
    return credential


def cmd_set_secret(args: argparse.Namespace) -> str:
    config_path = Path(args.path)
    data = load_yaml_dict(config_path) if config_path.exists() else {}
    codec = load_secret_codec(args.private_key, args.public_key)
    credential = _find_credential(data, args.environment, args.credential)
    credential[args.field] = codec.encrypt(_read_value(args))
    write_yaml_dict(config_path, data)
    return f"updated {args.field} of '{args.credential}' ({args.environment}) in {config_path}"


def cmd_show(args: argparse.Namespace) -> str:
    data = load_yaml_dict(args.path)
    summary: dict[str, Any] = {}
    for env_name, env_block in (data.get("environments") or {}).items():
        rows = []
        for credential in (env_block or {}).get("credentials") or []:
            if not isinstance(credential, dict):
                continue
            rows.append(
                {
                    "name": credential.get("name"),
                    "enabled": credential.get("enabled", True),
                    "weight": credential.get("weight", 1),
                    "models": credential.get("models") or [],
                    "secrets": {
                        field: "set" if credential.get(field) else "empty"
                        for field in SECRET_FIELDS
                        if field in credential
                    },
                }
            )
        summary[str(env_name)] = rows
    return yaml.safe_dump(summary, sort_keys=False).rstrip()


class SecretsCliParserBuilder:
    def __init__(self) -> None:
        settings = get_settings()
        self._private_key = settings.rsa_private_key_path
        self._public_key = settings.rsa_public_key_path
        self._key_size = settings.rsa_key_size
        self._parser = argparse.ArgumentParser(
            prog="open-llm-adapter-secrets",
            description="Manage RSA keys and encrypted credential secrets.",
        )
        self._subparsers = self._parser.add_subparsers(dest="command", required=True)

    def build(self) -> argparse.ArgumentParser:
        self._build_keygen()
        self._build_encrypt()
        self._build_decrypt()
        self._build_set_secret()
        self._build_show()
        return self._parser

    def _add_key_arguments(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--private-key", default=self._private_key)
        parser.add_argument("--public-key", default=self._public_key)

    @staticmethod
    def _add_value_argument(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "value", nargs="?", help="Value to process; '-' or omitted reads stdin."
        )

    def _build_keygen(self) -> None:
        parser = self._subparsers.add_parser("keygen", help="Generate an RSA key pair.")
        self._add_key_arguments(parser)
        parser.add_argument("--key-size", type=int, default=self._key_size)
        parser.add_argument("--force", action="store_true")
        parser.set_defaults(handler=cmd_keygen)

    def _build_encrypt(self) -> None:
        parser = self._subparsers.add_parser("encrypt", help="Encrypt a secret.")
        self._add_key_arguments(parser)
        self._add_value_argument(parser)
        parser.set_defaults(handler=cmd_encrypt)

    def _build_decrypt(self) -> None:
        parser = self._subparsers.add_parser("decrypt", help="Decrypt a ciphertext.")
        self._add_key_arguments(parser)
        self._add_value_argument(parser)
        parser.set_defaults(handler=cmd_decrypt)

    def _build_set_secret(self) -> None:
        parser = self._subparsers.add_parser(
            "set-secret", help="Encrypt a secret into a provider YAML credential."
        )
        parser.add_argument("--path", required=True, help="Provider YAML file.")
        parser.add_argument("--environment", default=get_settings().env)
        parser.add_argument("--credential", required=True)
        parser.add_argument("--field", choices=SECRET_FIELDS, default="api_key")
        self._add_key_arguments(parser)
        self._add_value_argument(parser)
        parser.set_defaults(handler=cmd_set_secret)

    def _build_show(self) -> None:
        parser = self._subparsers.add_parser(
            "show", help="Summarize credentials of a provider YAML file."
        )
        parser.add_argument("--path", required=True, help="Provider YAML file.")
        parser.set_defaults(handler=cmd_show)


def _build_parser() -> argparse.ArgumentParser:
    return SecretsCliParserBuilder().build()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        result = args.handler(args)
    except AdapterError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
