from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import cast

import base58
from solders.keypair import Keypair


DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_EXPLORER_URL = "https://explorer.solana.com/tx/{signature}"
DEFAULT_CREATE_TASK_URL = "https://api2.gib.work/tasks/public/transaction"
DEFAULT_TASK_URL = "https://app.gib.work/tasks/{task_id}"
DEFAULT_REQUIREMENTS = "PR to be merged"
DEFAULT_PRIVATE_KEY_ENV = "WALLET_PRIVATE_KEY"


@dataclass(frozen=True)
class RuntimeConfig:
    poll_interval_seconds: int = 30
    cleanup_interval_seconds: int = 86400
    processed_retention_seconds: int = 86400
    clock_skew_margin_seconds: int = 300


@dataclass(frozen=True)
class RepoConfig:
    repo_id: str
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AuthConfig:
    allowed_users: frozenset[str]

    def allows(self, login: str) -> bool:
        # An empty allow-list authorizes nobody.
        normalized = login.strip().lower()
        if not normalized:
            return False
        return normalized in self.allowed_users


@dataclass(frozen=True)
class SolanaConfig:
    rpc_url: str = DEFAULT_RPC_URL
    private_key_env: str = DEFAULT_PRIVATE_KEY_ENV
    payer: str | None = None
    explorer_url: str = DEFAULT_EXPLORER_URL
    max_send_retries: int = 5
    confirm_timeout_seconds: float = 60.0
    settle_delay_seconds: float = 5.0
    blockheight_retry_count: int = 3
    blockheight_retry_delay_seconds: float = 5.0


@dataclass(frozen=True)
class MarketplaceConfig:
    create_task_url: str = DEFAULT_CREATE_TASK_URL
    task_url: str = DEFAULT_TASK_URL
    requirements: str = DEFAULT_REQUIREMENTS
    request_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repos: tuple[RepoConfig, ...]
    auth: AuthConfig
    solana: SolanaConfig
    marketplace: MarketplaceConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _optional_table(data, "runtime") or {}
    repo_data = _require_table(data, "repo")
    auth_data = _optional_table(data, "auth") or {}
    solana_data = _optional_table(data, "solana") or {}
    marketplace_data = _optional_table(data, "marketplace") or {}

    runtime = RuntimeConfig(
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 30),
        cleanup_interval_seconds=_int_with_default(
            runtime_data, "cleanup_interval_seconds", 86400
        ),
        processed_retention_seconds=_int_with_default(
            runtime_data, "processed_retention_seconds", 86400
        ),
        clock_skew_margin_seconds=_int_with_default(
            runtime_data, "clock_skew_margin_seconds", 300
        ),
    )
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.cleanup_interval_seconds < 60:
        raise ConfigError("runtime.cleanup_interval_seconds must be >= 60")
    if runtime.processed_retention_seconds < runtime.poll_interval_seconds:
        raise ConfigError(
            "runtime.processed_retention_seconds must be >= runtime.poll_interval_seconds"
        )
    if runtime.clock_skew_margin_seconds < 0:
        raise ConfigError("runtime.clock_skew_margin_seconds must be >= 0")

    solana = SolanaConfig(
        rpc_url=_str_with_default(solana_data, "rpc_url", DEFAULT_RPC_URL),
        private_key_env=_str_with_default(
            solana_data, "private_key_env", DEFAULT_PRIVATE_KEY_ENV
        ),
        payer=_optional_str(solana_data, "payer"),
        explorer_url=_template_with_default(
            solana_data, "explorer_url", DEFAULT_EXPLORER_URL, placeholder="{signature}"
        ),
        max_send_retries=_int_with_default(solana_data, "max_send_retries", 5),
        confirm_timeout_seconds=_seconds_with_default(
            solana_data, "confirm_timeout_seconds", 60.0
        ),
        settle_delay_seconds=_seconds_with_default(solana_data, "settle_delay_seconds", 5.0),
        blockheight_retry_count=_int_with_default(solana_data, "blockheight_retry_count", 3),
        blockheight_retry_delay_seconds=_seconds_with_default(
            solana_data, "blockheight_retry_delay_seconds", 5.0
        ),
    )
    if solana.max_send_retries < 0:
        raise ConfigError("solana.max_send_retries must be >= 0")
    if solana.confirm_timeout_seconds <= 0:
        raise ConfigError("solana.confirm_timeout_seconds must be > 0")
    if solana.blockheight_retry_count < 0:
        raise ConfigError("solana.blockheight_retry_count must be >= 0")

    marketplace = MarketplaceConfig(
        create_task_url=_str_with_default(
            marketplace_data, "create_task_url", DEFAULT_CREATE_TASK_URL
        ),
        task_url=_template_with_default(
            marketplace_data, "task_url", DEFAULT_TASK_URL, placeholder="{task_id}"
        ),
        requirements=_str_with_default(marketplace_data, "requirements", DEFAULT_REQUIREMENTS),
        request_timeout_seconds=_seconds_with_default(
            marketplace_data, "request_timeout_seconds", 30.0
        ),
    )
    if marketplace.request_timeout_seconds <= 0:
        raise ConfigError("marketplace.request_timeout_seconds must be > 0")

    return AppConfig(
        runtime=runtime,
        repos=_load_repo_configs(repo_data),
        auth=AuthConfig(allowed_users=_allowed_users(auth_data, "allowed_users")),
        solana=solana,
        marketplace=marketplace,
    )


def load_wallet_keypair(
    config: SolanaConfig, *, environ: Mapping[str, str] | None = None
) -> Keypair:
    env = os.environ if environ is None else environ
    secret = env.get(config.private_key_env, "").strip()
    if not secret:
        raise ConfigError(
            f"{config.private_key_env} is required and must hold a base58 secret key"
        )
    try:
        return Keypair.from_bytes(base58.b58decode(secret))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{config.private_key_env} is not a valid base58 secret key") from exc


def payer_address(config: SolanaConfig, keypair: Keypair) -> str:
    return config.payer or str(keypair.pubkey())


def _load_repo_configs(repo_data: dict[str, object]) -> tuple[RepoConfig, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define at least one [repo.<id>] table")

    repos: list[RepoConfig] = []
    for repo_id, raw_value in sorted(repo_data.items()):
        repo_table = _require_repo_table(raw_value, table_name=f"[repo.{repo_id}]")
        repos.append(
            RepoConfig(
                repo_id=repo_id,
                owner=_require_str(repo_table, "owner"),
                name=_str_with_default(repo_table, "name", repo_id),
            )
        )
    _ensure_unique_full_names(repos)
    return tuple(repos)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_repo_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value.strip()


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value.strip()


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value.strip()


def _template_with_default(
    data: dict[str, object], key: str, default: str, *, placeholder: str
) -> str:
    value = _str_with_default(data, key, default)
    if placeholder not in value:
        raise ConfigError(f"{key} must contain the {placeholder} placeholder")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _seconds_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number of seconds")
    if value < 0:
        raise ConfigError(f"{key} must be >= 0")
    return float(value)


def _allowed_users(data: dict[str, object], key: str) -> frozenset[str]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")

    out: set[str] = set()
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        normalized = item.strip().lower()
        if not normalized:
            raise ConfigError(f"{key} entries must be non-empty strings")
        out.add(normalized)
    return frozenset(out)


def _ensure_unique_full_names(repos: list[RepoConfig]) -> None:
    seen: dict[str, str] = {}
    for repo in repos:
        key = repo.full_name.lower()
        existing_id = seen.get(key)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repo full_name {repo.full_name!r} across repo ids "
                f"{existing_id!r} and {repo.repo_id!r}"
            )
        seen[key] = repo.repo_id
