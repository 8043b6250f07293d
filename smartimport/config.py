"""YAML configuration loader for SmartImport.

Loads the seed config files from the config/ directory:
  categories.yaml, accounts.yaml, keywords.yaml, settings.yaml

settings.yaml holds the tunable constants of the suggestion, duplicate and
learning heuristics. Any key it omits keeps the default in Tuning.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path

import yaml

from smartimport.database.models import Account, Category


@dataclass(frozen=True)
class Tuning:
    """Heuristic constants. None of these are business rules."""
    # Rule matching
    rule_amount_bonus: float = 0.2
    rule_type_bonus: float = 0.1
    default_pattern_weight: float = 0.3
    learned_pattern_weight: float = 0.5
    # Historical similarity
    historical_base: float = 0.3
    historical_step: float = 0.1
    historical_cap: float = 0.8
    historical_amount_ratio: float = 0.5
    historical_prefix_len: int = 10
    # Keyword / default tiers
    keyword_confidence: float = 0.6
    default_confidence: float = 0.3
    account_hint_confidence: float = 0.9
    low_confidence_threshold: float = 0.5
    # Duplicate detection
    duplicate_threshold: float = 0.7
    duplicate_window_days: int = 3
    duplicate_amount_tolerance: float = 0.01
    duplicate_max_candidates: int = 5
    duplicate_single_confidence: float = 0.7
    duplicate_multi_confidence: float = 0.9
    # Learning
    reinforce_step: float = 0.05
    reinforce_cap: float = 0.95
    new_rule_confidence: float = 0.7
    max_keywords: int = 5
    learned_amount_margin: float = 0.2
    prune_after_days: int = 183
    prune_min_usage: int = 3
    decay_after_days: int = 91
    decay_step: float = 0.1
    decay_floor: float = 0.1
    # Processing
    max_workers: int | None = None
    lookup_timeout: float = 2.0
    date_policy: str = "today"  # "today" or "reject"
    decimal_comma: bool = True

    @classmethod
    def from_mapping(cls, data: dict | None) -> Tuning:
        """Build a Tuning from a settings mapping. Unknown keys are an error."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        return replace(cls(), **data)

    @property
    def workers(self) -> int:
        return self.max_workers or os.cpu_count() or 1


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._categories: list[Category] | None = None
        self._accounts: list[Account] | None = None
        self._keywords: dict[str, list[str]] | None = None
        self._settings: dict | None = None
        self._tuning: Tuning | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @staticmethod
    def _entries(data: dict | list, key: str) -> list[dict]:
        return data.get(key, []) if isinstance(data, dict) else data

    @property
    def categories(self) -> list[Category]:
        """Category directory: id, name and declared type of every category."""
        if self._categories is None:
            entries = self._entries(self._load("categories.yaml"), "categories")
            self._categories = [
                Category(id=str(e["id"]), name=e["name"], type=e.get("type"))
                for e in entries
            ]
        return self._categories

    @property
    def accounts(self) -> list[Account]:
        if self._accounts is None:
            entries = self._entries(self._load("accounts.yaml"), "accounts")
            self._accounts = [
                Account(id=str(e["id"]), name=e["name"], type=e.get("type"))
                for e in entries
            ]
        return self._accounts

    @property
    def keywords(self) -> dict[str, list[str]]:
        """Keyword table: category name stem -> keywords, in match order."""
        if self._keywords is None:
            data = self._load("keywords.yaml")
            table = data.get("keywords", data) if isinstance(data, dict) else {}
            self._keywords = {
                str(stem): [str(k) for k in (words or [])]
                for stem, words in table.items()
            }
        return self._keywords

    @property
    def settings(self) -> dict:
        if self._settings is None:
            data = self._load("settings.yaml")
            if not isinstance(data, dict):
                raise ValueError("settings.yaml must be a mapping")
            self._settings = data
        return self._settings

    @property
    def tuning(self) -> Tuning:
        if self._tuning is None:
            self._tuning = Tuning.from_mapping(self.settings.get("tuning"))
        return self._tuning

    @property
    def default_owner(self) -> str:
        """Owner used by the CLI when --owner is not given."""
        return self.settings.get("default_owner", "default")

    def category_by_id(self, category_id: str | None) -> Category | None:
        for cat in self.categories:
            if cat.id == category_id:
                return cat
        return None

    def account_by_id(self, account_id: str | None) -> Account | None:
        for acct in self.accounts:
            if acct.id == account_id:
                return acct
        return None
