from __future__ import annotations

import json
import types
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from .errors import FixtureLoadError

USERS_FILE = "users.json"
TOKENS_FILE = "tokens.json"


@dataclass(frozen=True)
class IdentityRecord:
    """One virtual user's identity: credential plus user attributes."""

    index: int
    user_id: str
    token: str
    attributes: Mapping[str, Any]


class Fixture:
    """Read-only per-run test data shared by every worker slot.

    Lookups wrap around, so any identity index resolves to a record.
    """

    def __init__(
        self,
        records: Sequence[IdentityRecord],
        seeds: Mapping[str, Any] | None = None,
    ) -> None:
        if not records:
            raise FixtureLoadError("fixture must contain at least one identity")
        self._records = tuple(records)
        self._seeds = types.MappingProxyType(dict(seeds or {}))

    def __len__(self) -> int:
        return len(self._records)

    def get(self, index: int) -> IdentityRecord:
        return self._records[index % len(self._records)]

    @property
    def seeds(self) -> Mapping[str, Any]:
        return self._seeds

    def seed(self, name: str, default: Any = ()) -> Any:
        return self._seeds.get(name, default)


def load_fixture(source: str | Path) -> Fixture:
    path = Path(source)
    if path.is_dir():
        users = _read_json(path / USERS_FILE)
        tokens = _read_json(path / TOKENS_FILE)
        seeds = {
            seed_path.stem: _read_json(seed_path)
            for seed_path in sorted(path.glob("*.json"))
            if seed_path.name not in {USERS_FILE, TOKENS_FILE}
        }
    elif path.is_file():
        document = _read_json(path)
        if not isinstance(document, dict):
            raise FixtureLoadError(f"{path}: expected a JSON object at top level")
        users = document.get("users")
        tokens = document.get("tokens")
        seeds = document.get("seeds") or {}
        if not isinstance(seeds, dict):
            raise FixtureLoadError(f"{path}: 'seeds' must be an object")
    else:
        raise FixtureLoadError(f"fixture source {path} does not exist")

    records = build_records(users, tokens)
    frozen_seeds = {name: _freeze(_unwrap_seed(name, value)) for name, value in seeds.items()}
    return Fixture(records, frozen_seeds)


def build_records(users: Any, tokens: Any) -> list[IdentityRecord]:
    if not isinstance(users, list) or not users:
        raise FixtureLoadError("users must be a non-empty list")
    if not isinstance(tokens, list) or not tokens:
        raise FixtureLoadError("tokens must be a non-empty list")

    token_values = [_token_value(position, token) for position, token in enumerate(tokens)]
    records: list[IdentityRecord] = []
    for index, user in enumerate(users):
        if not isinstance(user, dict):
            raise FixtureLoadError(f"user #{index} is not an object")
        user_id = user.get("id") or user.get("userId")
        if not user_id:
            raise FixtureLoadError(f"user #{index} has no id")
        records.append(
            IdentityRecord(
                index=index,
                user_id=str(user_id),
                token=token_values[index % len(token_values)],
                attributes=_freeze(user),
            )
        )
    return records


def _token_value(position: int, token: Any) -> str:
    if isinstance(token, str) and token:
        return token
    if isinstance(token, dict) and isinstance(token.get("token"), str) and token["token"]:
        return token["token"]
    raise FixtureLoadError(f"token #{position} is neither a string nor a {{'token': ...}} object")


def _unwrap_seed(name: str, value: Any) -> Any:
    # challenges.json is shaped {"challenges": [...]}
    if isinstance(value, dict) and set(value) == {name}:
        return value[name]
    return value


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FixtureLoadError(f"missing fixture file {path}") from exc
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FixtureLoadError(f"cannot parse fixture file {path}: {exc}") from exc


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return types.MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


__all__ = ["Fixture", "IdentityRecord", "build_records", "load_fixture"]
