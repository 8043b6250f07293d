"""Tests for smartimport.config: YAML configuration loader."""

import shutil

import pytest

from smartimport.config import Config, Tuning
from smartimport.database.models import Account, Category
from tests.conftest import FIXTURE_CONFIG_DIR


@pytest.fixture
def config_dir(tmp_path):
    d = tmp_path / "config"
    shutil.copytree(FIXTURE_CONFIG_DIR, d)
    return d


class TestConfigInit:
    def test_loads_from_config_dir(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.config_dir == FIXTURE_CONFIG_DIR

    def test_raises_on_missing_directory(self):
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config("/nonexistent/path")

    def test_raises_on_file_not_directory(self, tmp_path):
        f = tmp_path / "not_a_dir.yaml"
        f.write_text("test: true")
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config(f)


class TestDirectories:
    def test_accounts(self, config):
        assert [a.id for a in config.accounts] == ["conta-ordem", "poupanca", "cartao-credito"]
        assert config.accounts[1] == Account("poupanca", "Poupança", "savings")

    def test_categories(self, config):
        assert len(config.categories) == 10
        assert config.category_by_id("salario") == Category("salario", "Salário", "income")

    def test_every_category_declares_a_type(self, config):
        for cat in config.categories:
            assert cat.type in ("income", "expense", "transfer"), cat.id

    def test_lookup_by_id(self, config):
        assert config.account_by_id("poupanca").name == "Poupança"
        assert config.account_by_id("nope") is None
        assert config.category_by_id(None) is None

    def test_plain_list_file(self, config_dir):
        (config_dir / "accounts.yaml").write_text("- id: a1\n  name: Wallet\n")
        assert Config(config_dir).accounts == [Account("a1", "Wallet")]


class TestKeywords:
    def test_table_order_kept(self, config):
        stems = list(config.keywords)
        assert stems.index("transporte") < stems.index("utilidades")
        assert "gasolina" in config.keywords["transporte"]

    def test_values_are_strings(self, config_dir):
        (config_dir / "keywords.yaml").write_text("keywords:\n  habitacao: [renda, 123]\n")
        assert Config(config_dir).keywords == {"habitacao": ["renda", "123"]}


class TestSettings:
    def test_default_owner(self, config):
        assert config.default_owner == "tester"

    def test_tuning_overrides(self, config):
        assert config.tuning.max_workers == 2
        assert config.tuning.lookup_timeout == 5.0
        assert config.tuning.keyword_confidence == Tuning().keyword_confidence

    def test_unknown_setting(self, config_dir):
        (config_dir / "settings.yaml").write_text("tuning:\n  keyword_confidance: 0.7\n")
        with pytest.raises(ValueError, match="keyword_confidance"):
            Config(config_dir).tuning

    def test_no_tuning_section(self, config_dir):
        (config_dir / "settings.yaml").write_text("default_owner: ana\n")
        config = Config(config_dir)
        assert config.tuning == Tuning()
        assert config.default_owner == "ana"

    def test_settings_must_be_mapping(self, config_dir):
        (config_dir / "settings.yaml").write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="must be a mapping"):
            Config(config_dir).settings


class TestErrors:
    def test_missing_file(self, config_dir):
        (config_dir / "keywords.yaml").unlink()
        with pytest.raises(FileNotFoundError, match="keywords.yaml"):
            Config(config_dir).keywords

    def test_invalid_yaml(self, config_dir):
        (config_dir / "categories.yaml").write_text("categories: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            Config(config_dir).categories

    def test_empty_file(self, config_dir):
        (config_dir / "accounts.yaml").write_text("")
        with pytest.raises(ValueError, match="Empty config file"):
            Config(config_dir).accounts


class TestTuning:
    def test_from_empty_mapping(self):
        assert Tuning.from_mapping(None) == Tuning()

    def test_workers_default_to_cpu_count(self, monkeypatch):
        monkeypatch.setattr("smartimport.config.os.cpu_count", lambda: 6)
        assert Tuning().workers == 6
        assert Tuning(max_workers=3).workers == 3
